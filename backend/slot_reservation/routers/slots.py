from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_current_user_id, get_session
from ..domain.errors import DomainError, DuplicateSlotError
from ..infrastructure.repositories import SqlAlchemyCatalogRepository, SqlAlchemySlotRepository
from ..models import SlotStatus
from ..schemas import SlotCreate, SlotRead
from ..usecases import slots as slot_usecase
from ..utils.audit_log import emit_audit_log
from ..utils.time import to_utc_naive
from .errors import to_http_exception

router = APIRouter(prefix="", tags=["slots"])


@router.get("/slots", response_model=List[SlotRead])
async def list_slots(
    service_id: Optional[int] = Query(default=None, alias="serviceId"),
    provider_id: Optional[int] = Query(default=None, alias="providerId"),
    start: Optional[datetime] = Query(default=None, description="timezone-aware ISO 8601"),
    end: Optional[datetime] = Query(default=None, description="timezone-aware ISO 8601"),
    slot_status: Optional[SlotStatus] = Query(default=None, alias="status"),
    session: AsyncSession = Depends(get_session),
) -> list[SlotRead]:
    if (start is not None and start.tzinfo is None) or (end is not None and end.tzinfo is None):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start/end must have timezone")
    slot_repo = SqlAlchemySlotRepository(session)
    rows = await slot_usecase.list_slots(
        slot_repo,
        service_id=service_id,
        provider_id=provider_id,
        start=to_utc_naive(start) if start is not None else None,
        end=to_utc_naive(end) if end is not None else None,
        status=slot_status,
    )
    return [SlotRead.from_db(slot=slot) for slot in rows]


@router.post("/providers/{provider_id}/slots", response_model=SlotRead, status_code=status.HTTP_201_CREATED)
async def create_slot(
    provider_id: int,
    payload: SlotCreate,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> SlotRead:
    if payload.start_time.tzinfo is None or payload.end_time.tzinfo is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="startTime/endTime must have timezone")

    slot_repo = SqlAlchemySlotRepository(session)
    catalog_repo = SqlAlchemyCatalogRepository(session)
    try:
        async with session.begin():
            slot = await slot_usecase.create_slot(
                slot_repo,
                catalog_repo,
                provider_id=provider_id,
                service_id=payload.service_id,
                user_id=user_id,
                start_time=to_utc_naive(payload.start_time),
                end_time=to_utc_naive(payload.end_time),
            )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except IntegrityError as exc:
        raise to_http_exception(DuplicateSlotError("slot already exists")) from exc
    except DomainError as exc:
        raise to_http_exception(exc) from exc

    try:
        emit_audit_log(
            action="slot.created",
            initiator="provider",
            reservation_id=None,
            slot_id=slot.id,
            user_id=user_id,
            status_to=slot.status,
            extra={"provider_id": provider_id, "service_id": payload.service_id},
        )
    except RuntimeError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failed") from exc
    return SlotRead.from_db(slot=slot)
