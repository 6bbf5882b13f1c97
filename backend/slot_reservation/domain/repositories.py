from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncContextManager, Callable, Iterable, Optional, Protocol

from ..models import (
    Booking,
    PaymentFlow,
    Payment,
    PaymentStatus,
    Provider,
    Reservation,
    ReservationStatus,
    Service,
    Slot,
    SlotStatus,
)


class SlotRepository(Protocol):
    async def get(self, slot_id: int) -> Slot | None: ...

    async def transition(
        self,
        slot_id: int,
        *,
        expected: SlotStatus,
        target: SlotStatus,
        now: datetime,
    ) -> bool:
        """Conditional status update. Returns False when the slot was not in `expected`."""
        ...

    async def create(
        self,
        *,
        provider_id: int,
        service_id: int,
        start_time: datetime,
        end_time: datetime,
    ) -> Slot: ...

    async def list_slots(
        self,
        *,
        service_id: int | None,
        provider_id: int | None,
        start: datetime | None,
        end: datetime | None,
    ) -> Iterable[Slot]: ...


class ReservationRepository(Protocol):
    async def create(
        self,
        *,
        slot_id: int,
        user_id: int,
        hold_expires_at: datetime,
        now: datetime,
    ) -> Reservation: ...

    async def get(self, reservation_id: int) -> Reservation | None: ...

    async def get_for_user(self, reservation_id: int, user_id: int) -> tuple[Reservation, Slot] | None: ...

    async def list_by_user(self, user_id: int) -> list[tuple[Reservation, Slot]]: ...

    async def find_active_hold(self, slot_id: int) -> Reservation | None: ...

    async def transition(
        self,
        reservation_id: int,
        *,
        expected: ReservationStatus,
        target: ReservationStatus,
        now: datetime,
    ) -> bool: ...

    async def list_expired_holds(self, *, now: datetime, limit: int) -> list[Reservation]: ...


class CatalogRepository(Protocol):
    async def get_service(self, service_id: int) -> Service | None: ...

    async def get_provider(self, provider_id: int) -> Provider | None: ...


@dataclass
class PaymentUpsert:
    processor_payment_id: str
    status: PaymentStatus
    processor_intent_id: Optional[str] = None
    user_id: Optional[int] = None
    reservation_id: Optional[int] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    flow: Optional[PaymentFlow] = None
    raw_payload: Optional[dict[str, Any]] = None
    refund: bool = False


class PaymentRepository(Protocol):
    async def get_by_processor_id(self, processor_payment_id: str) -> Payment | None: ...

    async def find_by_intent_id(self, intent_id: str) -> Payment | None: ...

    async def upsert(self, record: PaymentUpsert, *, now: datetime) -> Payment:
        """Insert or update by processor payment id without regressing a terminal status."""
        ...


class BookingRepository(Protocol):
    async def exists_for_payment(self, processor_payment_id: str) -> bool: ...

    async def get_by_reservation(self, reservation_id: int) -> Booking | None: ...

    async def create(
        self,
        *,
        user_id: int,
        service_id: int,
        provider_id: int,
        slot_id: int,
        reservation_id: int | None,
        processor_payment_id: str,
        now: datetime,
    ) -> Booking | None:
        """Returns None when a booking for this payment already exists."""
        ...

    async def mark_refunded(self, processor_payment_id: str) -> bool: ...

    async def list_by_user(self, user_id: int) -> list[Booking]: ...


class EventRepository(Protocol):
    async def add(self, *, topic: str, payload: dict[str, Any], user_id: int | None, now: datetime) -> None: ...


@dataclass
class Repositories:
    slots: SlotRepository
    reservations: ReservationRepository
    payments: PaymentRepository
    bookings: BookingRepository
    events: EventRepository


# A unit of work yields repositories bound to one transaction and commits on a clean exit.
UnitOfWorkFactory = Callable[[], AsyncContextManager[Repositories]]
