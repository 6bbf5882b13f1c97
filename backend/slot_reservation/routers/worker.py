from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..deps import get_event_queue, get_session, get_unit_of_work, require_worker_token
from ..domain.errors import QueueUnavailableError
from ..domain.repositories import UnitOfWorkFactory
from ..infrastructure.queue import EventQueue
from ..infrastructure.repositories import (
    SqlAlchemyEventRepository,
    SqlAlchemyReservationRepository,
    SqlAlchemySlotRepository,
)
from ..schemas import DrainRequest, DrainResult, SweepResult
from ..usecases import expiry as expiry_usecase
from ..usecases import webhooks as webhook_usecase
from ..usecases import worker as worker_usecase
from ..utils.audit_log import emit_audit_log
from ..utils.time import utc_now_naive
from .errors import to_http_exception

router = APIRouter(prefix="/worker", tags=["worker"], dependencies=[Depends(require_worker_token)])


@router.post("/drain", response_model=DrainResult)
async def drain_webhook_queue(
    payload: Optional[DrainRequest] = Body(default=None),
    queue: Optional[EventQueue] = Depends(get_event_queue),
    unit_of_work: UnitOfWorkFactory = Depends(get_unit_of_work),
) -> DrainResult:
    if queue is None:
        raise to_http_exception(QueueUnavailableError("event queue not configured"))
    settings = get_settings()
    requested = payload.batch_size if payload and payload.batch_size else settings.worker_batch_size
    batch_size = min(requested, settings.worker_max_batch_size)

    async def handle(event: dict[str, Any]) -> None:
        await webhook_usecase.process_payment_event(event, unit_of_work)

    processed = await worker_usecase.drain_queue(queue, handle, max_items=batch_size)
    return DrainResult(processed=processed)


@router.post("/sweep", response_model=SweepResult)
async def sweep_expired_holds(
    session: AsyncSession = Depends(get_session),
) -> SweepResult:
    settings = get_settings()
    async with session.begin():
        released = await expiry_usecase.sweep_expired_holds(
            SqlAlchemySlotRepository(session),
            SqlAlchemyReservationRepository(session),
            SqlAlchemyEventRepository(session),
            now=utc_now_naive(),
            limit=settings.worker_max_batch_size,
        )

    if released:
        try:
            emit_audit_log(
                action="holds.swept",
                initiator="system",
                reservation_id=None,
                slot_id=None,
                user_id=None,
                extra={"released": released},
            )
        except RuntimeError as exc:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failed") from exc
    return SweepResult(released=released)
