from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, List, Optional, Tuple, cast

from sqlalchemy import Select, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..domain.repositories import (
    BookingRepository,
    CatalogRepository,
    EventRepository,
    PaymentRepository,
    PaymentUpsert,
    Repositories,
    ReservationRepository,
    SlotRepository,
    UnitOfWorkFactory,
)
from ..domain.services import ensure_slot_transition, merge_payment_status
from ..models import (
    Booking,
    BookingEvent,
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
from ..utils.time import utc_now_naive


class SqlAlchemySlotRepository(SlotRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, slot_id: int) -> Slot | None:
        stmt = select(Slot).where(Slot.id == slot_id).execution_options(populate_existing=True)
        return await self.session.scalar(stmt)

    async def transition(
        self,
        slot_id: int,
        *,
        expected: SlotStatus,
        target: SlotStatus,
        now: datetime,
    ) -> bool:
        ensure_slot_transition(expected, target)
        # compare-and-swap: the affected row count decides concurrent callers
        stmt = (
            update(Slot)
            .where(Slot.id == slot_id, Slot.status == expected)
            .values(status=target, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return cast(Any, result).rowcount == 1

    async def create(
        self,
        *,
        provider_id: int,
        service_id: int,
        start_time: datetime,
        end_time: datetime,
    ) -> Slot:
        now = utc_now_naive()
        slot = Slot(
            provider_id=provider_id,
            service_id=service_id,
            start_time=start_time,
            end_time=end_time,
            status=SlotStatus.AVAILABLE,
            created_at=now,
            updated_at=now,
        )
        self.session.add(slot)
        await self.session.flush()
        return slot

    async def list_slots(
        self,
        *,
        service_id: int | None,
        provider_id: int | None,
        start: datetime | None,
        end: datetime | None,
    ) -> List[Slot]:
        stmt = select(Slot)
        if service_id is not None:
            stmt = stmt.where(Slot.service_id == service_id)
        if provider_id is not None:
            stmt = stmt.where(Slot.provider_id == provider_id)
        if start is not None:
            stmt = stmt.where(Slot.start_time >= start)
        if end is not None:
            stmt = stmt.where(Slot.end_time <= end)
        rows = await self.session.scalars(stmt.order_by(Slot.start_time.asc()))
        return list(rows.all())


class SqlAlchemyReservationRepository(ReservationRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(
        self,
        *,
        slot_id: int,
        user_id: int,
        hold_expires_at: datetime,
        now: datetime,
    ) -> Reservation:
        reservation = Reservation(
            slot_id=slot_id,
            user_id=user_id,
            status=ReservationStatus.HOLD,
            hold_expires_at=hold_expires_at,
            created_at=now,
            updated_at=now,
        )
        self.session.add(reservation)
        await self.session.flush()
        return reservation

    async def get(self, reservation_id: int) -> Reservation | None:
        stmt = select(Reservation).where(Reservation.id == reservation_id).execution_options(populate_existing=True)
        return await self.session.scalar(stmt)

    async def get_for_user(self, reservation_id: int, user_id: int) -> Optional[Tuple[Reservation, Slot]]:
        stmt: Select[Tuple[Reservation, Slot]] = (
            select(Reservation, Slot)
            .join(Slot, Reservation.slot_id == Slot.id)
            .where(Reservation.id == reservation_id, Reservation.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        row = (await self.session.execute(stmt)).first()
        return cast(Optional[Tuple[Reservation, Slot]], row)

    async def list_by_user(self, user_id: int) -> List[Tuple[Reservation, Slot]]:
        stmt: Select[Tuple[Reservation, Slot]] = (
            select(Reservation, Slot)
            .join(Slot, Reservation.slot_id == Slot.id)
            .where(Reservation.user_id == user_id)
            .order_by(Reservation.created_at.desc())
            .execution_options(populate_existing=True)
        )
        rows = await self.session.execute(stmt)
        return cast(List[Tuple[Reservation, Slot]], list(rows.all()))

    async def find_active_hold(self, slot_id: int) -> Reservation | None:
        stmt = (
            select(Reservation)
            .where(Reservation.slot_id == slot_id, Reservation.status == ReservationStatus.HOLD)
            .order_by(Reservation.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return await self.session.scalar(stmt)

    async def transition(
        self,
        reservation_id: int,
        *,
        expected: ReservationStatus,
        target: ReservationStatus,
        now: datetime,
    ) -> bool:
        stmt = (
            update(Reservation)
            .where(Reservation.id == reservation_id, Reservation.status == expected)
            .values(status=target, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return cast(Any, result).rowcount == 1

    async def list_expired_holds(self, *, now: datetime, limit: int) -> List[Reservation]:
        stmt = (
            select(Reservation)
            .where(Reservation.status == ReservationStatus.HOLD, Reservation.hold_expires_at <= now)
            .order_by(Reservation.hold_expires_at.asc())
            .limit(limit)
        )
        rows = await self.session.scalars(stmt)
        return list(rows.all())


class SqlAlchemyCatalogRepository(CatalogRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_service(self, service_id: int) -> Service | None:
        return await self.session.scalar(select(Service).where(Service.id == service_id))

    async def get_provider(self, provider_id: int) -> Provider | None:
        return await self.session.scalar(select(Provider).where(Provider.id == provider_id))


class SqlAlchemyPaymentRepository(PaymentRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_processor_id(self, processor_payment_id: str) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.processor_payment_id == processor_payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return await self.session.scalar(stmt)

    async def find_by_intent_id(self, intent_id: str) -> Payment | None:
        stmt = select(Payment).where(
            (Payment.processor_payment_id == intent_id) | (Payment.processor_intent_id == intent_id)
        )
        return await self.session.scalar(stmt.limit(1))

    async def upsert(self, record: PaymentUpsert, *, now: datetime) -> Payment:
        existing = await self.get_by_processor_id(record.processor_payment_id)
        if existing is None:
            payment = Payment(
                processor_payment_id=record.processor_payment_id,
                processor_intent_id=record.processor_intent_id,
                user_id=record.user_id,
                reservation_id=record.reservation_id,
                amount=record.amount,
                currency=record.currency,
                status=record.status,
                flow=record.flow or PaymentFlow.INTENT,
                raw_payload=record.raw_payload,
                created_at=now,
                updated_at=now,
            )
            try:
                async with self.session.begin_nested():
                    self.session.add(payment)
                    await self.session.flush()
                return payment
            except IntegrityError:
                # lost an insert race on the unique processor id; fall through to update
                existing = await self.get_by_processor_id(record.processor_payment_id)
                if existing is None:
                    raise

        existing.status = merge_payment_status(existing.status, record.status, refund=record.refund)
        for field in ("processor_intent_id", "user_id", "reservation_id", "amount", "currency", "flow", "raw_payload"):
            value = getattr(record, field)
            if value is not None:
                setattr(existing, field, value)
        existing.updated_at = now
        await self.session.flush()
        return existing


class SqlAlchemyBookingRepository(BookingRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def exists_for_payment(self, processor_payment_id: str) -> bool:
        stmt = select(Booking.id).where(Booking.processor_payment_id == processor_payment_id)
        return await self.session.scalar(stmt) is not None

    async def get_by_reservation(self, reservation_id: int) -> Booking | None:
        stmt = (
            select(Booking)
            .where(Booking.reservation_id == reservation_id)
            .order_by(Booking.id)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return await self.session.scalar(stmt)

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
        if await self.exists_for_payment(processor_payment_id):
            return None
        booking = Booking(
            user_id=user_id,
            service_id=service_id,
            provider_id=provider_id,
            slot_id=slot_id,
            reservation_id=reservation_id,
            processor_payment_id=processor_payment_id,
            status=BookingStatus.PAID,
            created_at=now,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(booking)
                await self.session.flush()
        except IntegrityError:
            return None
        return booking

    async def mark_refunded(self, processor_payment_id: str) -> bool:
        stmt = (
            update(Booking)
            .where(Booking.processor_payment_id == processor_payment_id, Booking.status == BookingStatus.PAID)
            .values(status=BookingStatus.REFUNDED)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return cast(Any, result).rowcount == 1

    async def list_by_user(self, user_id: int) -> List[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.user_id == user_id)
            .order_by(Booking.created_at.desc())
            .execution_options(populate_existing=True)
        )
        rows = await self.session.scalars(stmt)
        return list(rows.all())


class SqlAlchemyEventRepository(EventRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def add(self, *, topic: str, payload: dict[str, Any], user_id: int | None, now: datetime) -> None:
        self.session.add(BookingEvent(topic=topic, payload=payload, user_id=user_id, created_at=now))
        await self.session.flush()


def build_repositories(session: AsyncSession) -> Repositories:
    return Repositories(
        slots=SqlAlchemySlotRepository(session),
        reservations=SqlAlchemyReservationRepository(session),
        payments=SqlAlchemyPaymentRepository(session),
        bookings=SqlAlchemyBookingRepository(session),
        events=SqlAlchemyEventRepository(session),
    )


def sqlalchemy_unit_of_work(session_factory: async_sessionmaker[AsyncSession]) -> UnitOfWorkFactory:
    @asynccontextmanager
    async def unit_of_work() -> AsyncIterator[Repositories]:
        async with session_factory() as session:
            async with session.begin():
                yield build_repositories(session)

    return unit_of_work
