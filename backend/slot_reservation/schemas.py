from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer
from pydantic.alias_generators import to_camel

from .domain.services import remaining_seconds
from .models import Booking, BookingStatus, PaymentStatus, Reservation, ReservationStatus, Slot, SlotStatus
from .utils.time import utc_naive_to_aware


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SlotCreate(ApiModel):
    service_id: int
    start_time: datetime
    end_time: datetime


class SlotRead(ApiModel):
    slot_id: int
    provider_id: int
    service_id: int
    start_time: datetime
    end_time: datetime
    status: SlotStatus

    @field_serializer("start_time", "end_time")
    def _ser_datetime(self, dt: datetime) -> str:
        return dt.isoformat()

    @classmethod
    def from_db(cls, *, slot: Slot) -> "SlotRead":
        return cls(
            slot_id=slot.id,
            provider_id=slot.provider_id,
            service_id=slot.service_id,
            start_time=utc_naive_to_aware(slot.start_time),
            end_time=utc_naive_to_aware(slot.end_time),
            status=slot.status,
        )


class ReservationCreate(ApiModel):
    slot_id: int
    hold_minutes: Optional[int] = Field(default=None, ge=1)


class ReservationRead(ApiModel):
    reservation_id: int
    slot_id: int
    user_id: int
    status: ReservationStatus
    hold_expires_at: datetime
    remaining_seconds: int
    slot_status: SlotStatus
    start_time: datetime
    end_time: datetime

    @field_serializer("hold_expires_at", "start_time", "end_time")
    def _ser_datetime(self, dt: datetime) -> str:
        return dt.isoformat()

    @classmethod
    def from_db(cls, *, reservation: Reservation, slot: Slot, now: datetime) -> "ReservationRead":
        seconds = 0
        if reservation.status == ReservationStatus.HOLD:
            seconds = remaining_seconds(now, reservation.hold_expires_at)
        return cls(
            reservation_id=reservation.id,
            slot_id=reservation.slot_id,
            user_id=reservation.user_id,
            status=reservation.status,
            hold_expires_at=utc_naive_to_aware(reservation.hold_expires_at),
            remaining_seconds=seconds,
            slot_status=slot.status,
            start_time=utc_naive_to_aware(slot.start_time),
            end_time=utc_naive_to_aware(slot.end_time),
        )


class PaymentCreate(ApiModel):
    reservation_id: int


class CheckoutCreate(PaymentCreate):
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class PaymentIntentRead(ApiModel):
    client_secret: Optional[str]
    payment_intent_id: str
    amount: int
    currency: str
    status: PaymentStatus


class CheckoutSessionRead(ApiModel):
    url: Optional[str]
    session_id: str
    amount: int
    currency: str


class BookingRead(ApiModel):
    booking_id: int
    slot_id: int
    service_id: int
    provider_id: int
    reservation_id: Optional[int]
    processor_payment_id: str
    status: BookingStatus
    created_at: datetime

    @field_serializer("created_at")
    def _ser_datetime(self, dt: datetime) -> str:
        return dt.isoformat()

    @classmethod
    def from_db(cls, *, booking: Booking) -> "BookingRead":
        return cls(
            booking_id=booking.id,
            slot_id=booking.slot_id,
            service_id=booking.service_id,
            provider_id=booking.provider_id,
            reservation_id=booking.reservation_id,
            processor_payment_id=booking.processor_payment_id,
            status=booking.status,
            created_at=utc_naive_to_aware(booking.created_at),
        )


class WebhookAck(ApiModel):
    received: bool = True
    queued: bool = False


class DrainRequest(ApiModel):
    batch_size: Optional[int] = Field(default=None, ge=1)


class DrainResult(ApiModel):
    processed: int


class SweepResult(ApiModel):
    released: int
