from typing import List

from fastapi import APIRouter, Depends, HTTPException, Path, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..deps import get_current_user_id, get_session, get_slot_lock
from ..domain.errors import DomainError
from ..domain.locks import SlotLock
from ..domain.services import clamp_hold_minutes
from ..infrastructure.repositories import SqlAlchemyReservationRepository, SqlAlchemySlotRepository
from ..models import ReservationStatus
from ..schemas import ReservationCreate, ReservationRead
from ..usecases import reservations as reservation_usecase
from ..utils.audit_log import emit_audit_log
from ..utils.time import utc_now_naive
from .errors import to_http_exception

router = APIRouter(prefix="", tags=["reservations"])


@router.post("/reservations", response_model=ReservationRead, status_code=status.HTTP_201_CREATED)
async def create_reservation(
    payload: ReservationCreate,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
    lock: SlotLock = Depends(get_slot_lock),
) -> ReservationRead:
    settings = get_settings()
    hold_minutes = clamp_hold_minutes(
        payload.hold_minutes,
        default=settings.hold_minutes,
        maximum=settings.max_hold_minutes,
    )
    slot_repo = SqlAlchemySlotRepository(session)
    res_repo = SqlAlchemyReservationRepository(session)
    now = utc_now_naive()
    # the lock outlives the transaction so a competing request sees the committed hold
    try:
        async with reservation_usecase.slot_lock_held(lock, payload.slot_id, settings.lock_ttl_seconds):
            async with session.begin():
                reservation, slot = await reservation_usecase.claim_slot(
                    slot_repo,
                    res_repo,
                    slot_id=payload.slot_id,
                    user_id=user_id,
                    hold_minutes=hold_minutes,
                    now=now,
                )
    except DomainError as exc:
        raise to_http_exception(exc) from exc

    try:
        emit_audit_log(
            action="reservation.held",
            initiator="user",
            reservation_id=reservation.id,
            slot_id=slot.id,
            user_id=user_id,
            status_from=None,
            status_to=reservation.status,
            extra={"hold_expires_at": reservation.hold_expires_at.isoformat(), "hold_minutes": hold_minutes},
        )
    except RuntimeError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failed") from exc

    return ReservationRead.from_db(reservation=reservation, slot=slot, now=now)


@router.get("/me/reservations", response_model=List[ReservationRead])
async def list_my_reservations(
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> list[ReservationRead]:
    res_repo = SqlAlchemyReservationRepository(session)
    rows = await reservation_usecase.list_user_reservations(res_repo, user_id=user_id)
    now = utc_now_naive()
    return [ReservationRead.from_db(reservation=res, slot=slot, now=now) for res, slot in rows]


@router.get("/me/reservations/{reservation_id}", response_model=ReservationRead)
async def get_my_reservation(
    reservation_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> ReservationRead:
    res_repo = SqlAlchemyReservationRepository(session)
    row = await reservation_usecase.get_user_reservation(res_repo, reservation_id=reservation_id, user_id=user_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="reservation not found")
    reservation, slot = row
    return ReservationRead.from_db(reservation=reservation, slot=slot, now=utc_now_naive())


@router.post("/me/reservations/{reservation_id}/cancel", response_model=ReservationRead)
async def cancel_reservation(
    reservation_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> ReservationRead:
    slot_repo = SqlAlchemySlotRepository(session)
    res_repo = SqlAlchemyReservationRepository(session)
    now = utc_now_naive()
    async with session.begin():
        try:
            updated, slot, status_from = await reservation_usecase.cancel_reservation(
                slot_repo,
                res_repo,
                reservation_id=reservation_id,
                user_id=user_id,
                now=now,
            )
        except DomainError as exc:
            raise to_http_exception(exc) from exc

    if status_from != ReservationStatus.CANCELLED:
        try:
            emit_audit_log(
                action="reservation.cancelled",
                initiator="user",
                reservation_id=updated.id,
                slot_id=slot.id,
                user_id=user_id,
                status_from=status_from,
                status_to=updated.status,
            )
        except RuntimeError as exc:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failed") from exc

    return ReservationRead.from_db(reservation=updated, slot=slot, now=now)
