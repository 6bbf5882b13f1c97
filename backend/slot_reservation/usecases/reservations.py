from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator

from ..domain.errors import (
    NotAuthorizedError,
    ReservationNotFoundError,
    ReservationNotHeldError,
    SlotBusyError,
    SlotNotAvailableError,
    SlotNotFoundError,
)
from ..domain.locks import SlotLock, slot_lock_key
from ..domain.repositories import ReservationRepository, SlotRepository
from ..domain.services import hold_expiry, is_hold_expired
from ..models import Reservation, ReservationStatus, Slot, SlotStatus
from .expiry import release_hold

logger = logging.getLogger(__name__)


async def reserve_slot(
    slot_repo: SlotRepository,
    res_repo: ReservationRepository,
    lock: SlotLock,
    *,
    slot_id: int,
    user_id: int,
    hold_minutes: int,
    lock_ttl_seconds: int,
    now: datetime,
) -> tuple[Reservation, Slot]:
    async with slot_lock_held(lock, slot_id, lock_ttl_seconds):
        return await claim_slot(
            slot_repo,
            res_repo,
            slot_id=slot_id,
            user_id=user_id,
            hold_minutes=hold_minutes,
            now=now,
        )


@asynccontextmanager
async def slot_lock_held(lock: SlotLock, slot_id: int, ttl_seconds: int) -> AsyncIterator[None]:
    """
    Hold the per-slot lock for the duration of the block.

    Callers open their transaction inside the block so the lock is released
    only after the hold is committed or rolled back.
    """
    key = slot_lock_key(slot_id)
    token = await lock.try_acquire(key, ttl_seconds)
    if token is None:
        raise SlotBusyError("slot is being reserved by another request")
    try:
        yield
    finally:
        await lock.release(key, token)


async def claim_slot(
    slot_repo: SlotRepository,
    res_repo: ReservationRepository,
    *,
    slot_id: int,
    user_id: int,
    hold_minutes: int,
    now: datetime,
) -> tuple[Reservation, Slot]:
    slot = await slot_repo.get(slot_id)
    if slot is None:
        raise SlotNotFoundError("slot not found")

    claimed = await slot_repo.transition(slot_id, expected=SlotStatus.AVAILABLE, target=SlotStatus.HOLD, now=now)
    if not claimed and await _release_stale_hold(slot_repo, res_repo, slot_id=slot_id, now=now):
        claimed = await slot_repo.transition(slot_id, expected=SlotStatus.AVAILABLE, target=SlotStatus.HOLD, now=now)
    if not claimed:
        raise SlotNotAvailableError("slot not available")

    reservation = await res_repo.create(
        slot_id=slot_id,
        user_id=user_id,
        hold_expires_at=hold_expiry(now, hold_minutes),
        now=now,
    )
    held = await slot_repo.get(slot_id)
    logger.info(
        "slot held",
        extra={"slot_id": slot_id, "reservation_id": reservation.id, "user_id": user_id},
    )
    return reservation, held or slot


async def _release_stale_hold(
    slot_repo: SlotRepository,
    res_repo: ReservationRepository,
    *,
    slot_id: int,
    now: datetime,
) -> bool:
    """Expire the slot's current hold if it has run out. Returns True when the slot became AVAILABLE."""
    hold = await res_repo.find_active_hold(slot_id)
    if hold is None or not is_hold_expired(hold.hold_expires_at, now):
        return False
    released = await release_hold(slot_repo, res_repo, hold, target=ReservationStatus.EXPIRED, now=now)
    if released:
        logger.info("stale hold expired on reserve", extra={"slot_id": slot_id, "reservation_id": hold.id})
    return released


async def cancel_reservation(
    slot_repo: SlotRepository,
    res_repo: ReservationRepository,
    *,
    reservation_id: int,
    user_id: int,
    now: datetime,
) -> tuple[Reservation, Slot, ReservationStatus]:
    """Give up a hold before paying. Returns the reservation, its slot and the status it left."""
    reservation = await res_repo.get(reservation_id)
    if reservation is None:
        raise ReservationNotFoundError("reservation not found")
    if reservation.user_id != user_id:
        raise NotAuthorizedError("not authorized for this reservation")
    # Idempotent: already cancelled returns as-is
    if reservation.status == ReservationStatus.CANCELLED:
        slot = await slot_repo.get(reservation.slot_id)
        if slot is None:
            raise SlotNotFoundError("slot not found")
        return reservation, slot, reservation.status
    if reservation.status != ReservationStatus.HOLD:
        raise ReservationNotHeldError("reservation is not in HOLD state")

    if not await release_hold(slot_repo, res_repo, reservation, target=ReservationStatus.CANCELLED, now=now):
        raise ReservationNotHeldError("reservation is not in HOLD state")

    row = await res_repo.get_for_user(reservation_id, user_id)
    if row is None:
        raise ReservationNotFoundError("reservation not found")
    updated, slot = row
    return updated, slot, ReservationStatus.HOLD


async def list_user_reservations(
    res_repo: ReservationRepository,
    *,
    user_id: int,
) -> list[tuple[Reservation, Slot]]:
    return await res_repo.list_by_user(user_id)


async def get_user_reservation(
    res_repo: ReservationRepository,
    *,
    reservation_id: int,
    user_id: int,
) -> tuple[Reservation, Slot] | None:
    return await res_repo.get_for_user(reservation_id, user_id)
