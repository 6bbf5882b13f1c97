from __future__ import annotations

import logging
from datetime import datetime

from ..domain.repositories import EventRepository, ReservationRepository, SlotRepository
from ..models import Reservation, ReservationStatus, SlotStatus

logger = logging.getLogger(__name__)


async def release_hold(
    slot_repo: SlotRepository,
    res_repo: ReservationRepository,
    reservation: Reservation,
    *,
    target: ReservationStatus,
    now: datetime,
) -> bool:
    """
    End a HOLD reservation and hand its slot back.

    Both updates are conditional: a reservation that already left HOLD is not
    touched, and a slot that is no longer HOLD (for example BOOKED by a
    successful payment) is never moved back to AVAILABLE.
    Returns True when this call ended the reservation.
    """
    ended = await res_repo.transition(
        reservation.id,
        expected=ReservationStatus.HOLD,
        target=target,
        now=now,
    )
    if not ended:
        return False
    freed = await slot_repo.transition(
        reservation.slot_id,
        expected=SlotStatus.HOLD,
        target=SlotStatus.AVAILABLE,
        now=now,
    )
    if not freed:
        logger.warning(
            "hold ended but slot was not in HOLD",
            extra={"reservation_id": reservation.id, "slot_id": reservation.slot_id},
        )
    return True


async def sweep_expired_holds(
    slot_repo: SlotRepository,
    res_repo: ReservationRepository,
    event_repo: EventRepository,
    *,
    now: datetime,
    limit: int = 100,
) -> int:
    expired = await res_repo.list_expired_holds(now=now, limit=limit)
    released = 0
    for reservation in expired:
        if not await release_hold(slot_repo, res_repo, reservation, target=ReservationStatus.EXPIRED, now=now):
            continue
        released += 1
        await event_repo.add(
            topic="reservation.expired",
            payload={"reservation_id": reservation.id, "slot_id": reservation.slot_id},
            user_id=reservation.user_id,
            now=now,
        )
    if released:
        logger.info("expired holds released", extra={"released": released, "scanned": len(expired)})
    return released
