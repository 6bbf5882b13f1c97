"""In-memory stand-ins for the SQLAlchemy repositories, shared by use-case tests."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Optional

from slot_reservation.domain.repositories import PaymentUpsert, Repositories
from slot_reservation.domain.services import ensure_slot_transition, merge_payment_status
from slot_reservation.models import (
    Booking,
    BookingStatus,
    Payment,
    PaymentFlow,
    Provider,
    Reservation,
    ReservationStatus,
    Service,
    Slot,
    SlotStatus,
)


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class InMemoryStore:
    def __init__(self) -> None:
        self.slots: dict[int, Slot] = {}
        self.reservations: dict[int, Reservation] = {}
        self.payments: dict[str, Payment] = {}
        self.bookings: dict[str, Booking] = {}
        self.events: list[dict[str, Any]] = []
        self.services: dict[int, Service] = {}
        self.providers: dict[int, Provider] = {}
        self.fail_booking_insert = False
        self._ids = 0

    def next_id(self) -> int:
        self._ids += 1
        return self._ids

    def add_catalog(self, *, owner_user_id: int = 1, price_amount: int = 5000, currency: str = "USD") -> Service:
        now = utc_now_naive()
        provider = Provider(id=self.next_id(), owner_user_id=owner_user_id, name="Studio", created_at=now)
        service = Service(
            id=self.next_id(),
            provider_id=provider.id,
            title="Haircut",
            price_amount=price_amount,
            currency=currency,
            duration_minutes=60,
        )
        self.providers[provider.id] = provider
        self.services[service.id] = service
        return service

    def add_slot(self, service: Service, *, status: SlotStatus = SlotStatus.AVAILABLE) -> Slot:
        start = utc_now_naive().replace(microsecond=0) + timedelta(days=1)
        slot = Slot(
            id=self.next_id(),
            provider_id=service.provider_id,
            service_id=service.id,
            start_time=start,
            end_time=start + timedelta(hours=1),
            status=status,
            created_at=start,
            updated_at=start,
        )
        self.slots[slot.id] = slot
        return slot

    def topics(self) -> list[str]:
        return [event["topic"] for event in self.events]

    def repositories(self) -> Repositories:
        return Repositories(
            slots=FakeSlotRepo(self),
            reservations=FakeReservationRepo(self),
            payments=FakePaymentRepo(self),
            bookings=FakeBookingRepo(self),
            events=FakeEventRepo(self),
        )

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[Repositories]:
        yield self.repositories()


class FakeSlotRepo:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    async def get(self, slot_id: int) -> Slot | None:
        return self.store.slots.get(slot_id)

    async def transition(self, slot_id: int, *, expected: SlotStatus, target: SlotStatus, now: datetime) -> bool:
        ensure_slot_transition(expected, target)
        slot = self.store.slots.get(slot_id)
        if slot is None or slot.status != expected:
            return False
        slot.status = target
        slot.updated_at = now
        return True

    async def create(self, *, provider_id: int, service_id: int, start_time: datetime, end_time: datetime) -> Slot:
        now = utc_now_naive()
        slot = Slot(
            id=self.store.next_id(),
            provider_id=provider_id,
            service_id=service_id,
            start_time=start_time,
            end_time=end_time,
            status=SlotStatus.AVAILABLE,
            created_at=now,
            updated_at=now,
        )
        self.store.slots[slot.id] = slot
        return slot

    async def list_slots(
        self,
        *,
        service_id: int | None,
        provider_id: int | None,
        start: datetime | None,
        end: datetime | None,
    ) -> list[Slot]:
        rows = [
            slot
            for slot in self.store.slots.values()
            if (service_id is None or slot.service_id == service_id)
            and (provider_id is None or slot.provider_id == provider_id)
            and (start is None or slot.start_time >= start)
            and (end is None or slot.end_time <= end)
        ]
        return sorted(rows, key=lambda s: s.start_time)


class FakeReservationRepo:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    async def create(self, *, slot_id: int, user_id: int, hold_expires_at: datetime, now: datetime) -> Reservation:
        reservation = Reservation(
            id=self.store.next_id(),
            slot_id=slot_id,
            user_id=user_id,
            status=ReservationStatus.HOLD,
            hold_expires_at=hold_expires_at,
            created_at=now,
            updated_at=now,
        )
        self.store.reservations[reservation.id] = reservation
        return reservation

    async def get(self, reservation_id: int) -> Reservation | None:
        return self.store.reservations.get(reservation_id)

    async def get_for_user(self, reservation_id: int, user_id: int) -> Optional[tuple[Reservation, Slot]]:
        reservation = self.store.reservations.get(reservation_id)
        if reservation is None or reservation.user_id != user_id:
            return None
        return reservation, self.store.slots[reservation.slot_id]

    async def list_by_user(self, user_id: int) -> list[tuple[Reservation, Slot]]:
        rows = [r for r in self.store.reservations.values() if r.user_id == user_id]
        return [(r, self.store.slots[r.slot_id]) for r in sorted(rows, key=lambda r: r.id, reverse=True)]

    async def find_active_hold(self, slot_id: int) -> Reservation | None:
        holds = [
            r
            for r in self.store.reservations.values()
            if r.slot_id == slot_id and r.status == ReservationStatus.HOLD
        ]
        return max(holds, key=lambda r: r.id) if holds else None

    async def transition(
        self,
        reservation_id: int,
        *,
        expected: ReservationStatus,
        target: ReservationStatus,
        now: datetime,
    ) -> bool:
        reservation = self.store.reservations.get(reservation_id)
        if reservation is None or reservation.status != expected:
            return False
        reservation.status = target
        reservation.updated_at = now
        return True

    async def list_expired_holds(self, *, now: datetime, limit: int) -> list[Reservation]:
        rows = [
            r
            for r in self.store.reservations.values()
            if r.status == ReservationStatus.HOLD and r.hold_expires_at <= now
        ]
        return sorted(rows, key=lambda r: r.hold_expires_at)[:limit]


class FakeCatalogRepo:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    async def get_service(self, service_id: int) -> Service | None:
        return self.store.services.get(service_id)

    async def get_provider(self, provider_id: int) -> Provider | None:
        return self.store.providers.get(provider_id)


class FakePaymentRepo:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store
        self.upserts: list[PaymentUpsert] = []

    async def get_by_processor_id(self, processor_payment_id: str) -> Payment | None:
        return self.store.payments.get(processor_payment_id)

    async def find_by_intent_id(self, intent_id: str) -> Payment | None:
        for payment in self.store.payments.values():
            if intent_id in (payment.processor_payment_id, payment.processor_intent_id):
                return payment
        return None

    async def upsert(self, record: PaymentUpsert, *, now: datetime) -> Payment:
        self.upserts.append(record)
        existing = self.store.payments.get(record.processor_payment_id)
        if existing is None:
            existing = Payment(
                id=self.store.next_id(),
                processor_payment_id=record.processor_payment_id,
                status=record.status,
                flow=record.flow or PaymentFlow.INTENT,
                created_at=now,
            )
            self.store.payments[record.processor_payment_id] = existing
        else:
            existing.status = merge_payment_status(existing.status, record.status, refund=record.refund)
        for field in ("processor_intent_id", "user_id", "reservation_id", "amount", "currency", "flow", "raw_payload"):
            value = getattr(record, field)
            if value is not None:
                setattr(existing, field, value)
        existing.updated_at = now
        return existing


class FakeBookingRepo:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    async def exists_for_payment(self, processor_payment_id: str) -> bool:
        return processor_payment_id in self.store.bookings

    async def get_by_reservation(self, reservation_id: int) -> Booking | None:
        matches = [b for b in self.store.bookings.values() if b.reservation_id == reservation_id]
        return min(matches, key=lambda b: b.id) if matches else None

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
        if self.store.fail_booking_insert:
            raise RuntimeError("database unavailable")
        if processor_payment_id in self.store.bookings:
            return None
        booking = Booking(
            id=self.store.next_id(),
            user_id=user_id,
            service_id=service_id,
            provider_id=provider_id,
            slot_id=slot_id,
            reservation_id=reservation_id,
            processor_payment_id=processor_payment_id,
            status=BookingStatus.PAID,
            created_at=now,
        )
        self.store.bookings[processor_payment_id] = booking
        return booking

    async def mark_refunded(self, processor_payment_id: str) -> bool:
        booking = self.store.bookings.get(processor_payment_id)
        if booking is None or booking.status != BookingStatus.PAID:
            return False
        booking.status = BookingStatus.REFUNDED
        return True

    async def list_by_user(self, user_id: int) -> list[Booking]:
        return [b for b in self.store.bookings.values() if b.user_id == user_id]


class FakeEventRepo:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    async def add(self, *, topic: str, payload: dict[str, Any], user_id: int | None, now: datetime) -> None:
        self.store.events.append({"topic": topic, "payload": payload, "user_id": user_id})


class FakeGateway:
    def __init__(self, *, fail: Exception | None = None) -> None:
        self.fail = fail
        self.calls: list[dict[str, Any]] = []

    async def create_payment_intent(self, **kwargs: Any) -> Any:
        from slot_reservation.domain.gateway import ProcessorPayment

        self.calls.append({"kind": "intent", **kwargs})
        if self.fail is not None:
            raise self.fail
        return ProcessorPayment(
            processor_payment_id=f"pi_{kwargs['idempotency_key']}",
            status="requires_payment_method",
            client_secret="secret_123",
        )

    async def create_checkout_session(self, **kwargs: Any) -> Any:
        from slot_reservation.domain.gateway import ProcessorPayment

        self.calls.append({"kind": "checkout", **kwargs})
        if self.fail is not None:
            raise self.fail
        return ProcessorPayment(
            processor_payment_id=f"cs_{kwargs['idempotency_key']}",
            status="open",
            redirect_url="https://checkout.example/session",
        )

    def verify_event(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:  # pragma: no cover
        raise NotImplementedError


def intent_event(
    event_type: str,
    *,
    payment_id: str,
    metadata: dict[str, Any],
    created: datetime | None = None,
    status: str = "succeeded",
    amount: int = 5000,
) -> dict[str, Any]:
    moment = (created or utc_now_naive()).replace(tzinfo=timezone.utc)
    return {
        "id": f"evt_{payment_id}_{event_type}",
        "type": event_type,
        "created": int(moment.timestamp()),
        "data": {
            "object": {
                "id": payment_id,
                "object": "payment_intent",
                "amount": amount,
                "currency": "usd",
                "status": status,
                "metadata": {k: str(v) for k, v in metadata.items()},
            }
        },
    }


def booking_metadata(reservation: Reservation, slot: Slot) -> dict[str, Any]:
    return {
        "reservation_id": reservation.id,
        "slot_id": slot.id,
        "user_id": reservation.user_id,
        "service_id": slot.service_id,
        "provider_id": slot.provider_id,
    }
