from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import Any, Mapping, Optional

from ..models import PaymentStatus, ReservationStatus, SlotStatus
from .errors import NotAuthorizedError, ReservationExpiredError, ReservationNotHeldError, StateConflictError

SLOT_TRANSITIONS: dict[SlotStatus, frozenset[SlotStatus]] = {
    SlotStatus.AVAILABLE: frozenset({SlotStatus.HOLD}),
    SlotStatus.HOLD: frozenset({SlotStatus.BOOKED, SlotStatus.AVAILABLE}),
    SlotStatus.BOOKED: frozenset(),
}

TERMINAL_PAYMENT_STATUSES = frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.FAILED, PaymentStatus.CANCELED})


def can_transition_slot(current: SlotStatus, target: SlotStatus) -> bool:
    return target in SLOT_TRANSITIONS[current]


def ensure_slot_transition(current: SlotStatus, target: SlotStatus) -> None:
    if not can_transition_slot(current, target):
        raise StateConflictError(f"slot cannot move from {current} to {target}")


def clamp_hold_minutes(requested: Optional[int], *, default: int, maximum: int) -> int:
    minutes = default if requested is None else int(requested)
    return min(max(1, minutes), maximum)


def hold_expiry(now: datetime, hold_minutes: int) -> datetime:
    return now + timedelta(minutes=hold_minutes)


def is_hold_expired(hold_expires_at: datetime, now: datetime) -> bool:
    return hold_expires_at <= now


def remaining_seconds(now: datetime, expires_at: datetime) -> int:
    """Whole seconds left on a hold, never negative. Intended for countdown displays."""
    return max(0, int((expires_at - now).total_seconds()))


@dataclass(frozen=True)
class ReservationSnapshot:
    user_id: int
    status: ReservationStatus
    hold_expires_at: datetime


def validate_payable(snapshot: ReservationSnapshot, *, user_id: int, now: datetime) -> None:
    """
    Pure validation run before a payment is created against a hold.
    Ownership is checked first so that strangers learn nothing about the state.
    """
    if snapshot.user_id != user_id:
        raise NotAuthorizedError("not authorized for this reservation")
    if snapshot.status != ReservationStatus.HOLD:
        raise ReservationNotHeldError("reservation is not in HOLD state")
    if is_hold_expired(snapshot.hold_expires_at, now):
        raise ReservationExpiredError("reservation has expired")


def map_processor_status(status: Optional[str]) -> PaymentStatus:
    if status in ("requires_action", "requires_payment_method", "requires_confirmation"):
        return PaymentStatus.REQUIRES_ACTION
    if status == "succeeded":
        return PaymentStatus.SUCCEEDED
    if status == "canceled":
        return PaymentStatus.CANCELED
    return PaymentStatus.PROCESSING


def merge_payment_status(
    current: Optional[PaymentStatus],
    incoming: PaymentStatus,
    *,
    refund: bool = False,
) -> PaymentStatus:
    """
    Resolve the status to store when a new processor status arrives.
    Terminal statuses are sticky; the only exit is a refund of a success.
    """
    if current is None or current == incoming:
        return incoming
    if current in TERMINAL_PAYMENT_STATUSES:
        if refund and current == PaymentStatus.SUCCEEDED and incoming == PaymentStatus.CANCELED:
            return incoming
        if current == PaymentStatus.FAILED and incoming == PaymentStatus.SUCCEEDED:
            # a failed attempt may be retried on the same intent
            return incoming
        return current
    return incoming


class EventKind(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    PROGRESS = "progress"
    REFUNDED = "refunded"
    IGNORED = "ignored"


_EVENT_KINDS: dict[str, EventKind] = {
    "payment_intent.succeeded": EventKind.SUCCEEDED,
    "payment_intent.payment_failed": EventKind.FAILED,
    "payment_intent.canceled": EventKind.CANCELED,
    "payment_intent.processing": EventKind.PROGRESS,
    "payment_intent.requires_action": EventKind.PROGRESS,
    "checkout.session.expired": EventKind.CANCELED,
    "checkout.session.async_payment_failed": EventKind.FAILED,
    "checkout.session.async_payment_succeeded": EventKind.SUCCEEDED,
    "charge.refunded": EventKind.REFUNDED,
}


def classify_event(event: Mapping[str, Any]) -> EventKind:
    event_type = str(event.get("type") or "")
    if event_type == "checkout.session.completed":
        obj = _event_object(event)
        # delayed payment methods complete the session before the money arrives
        if obj.get("payment_status") in ("paid", "no_payment_required"):
            return EventKind.SUCCEEDED
        return EventKind.PROGRESS
    return _EVENT_KINDS.get(event_type, EventKind.IGNORED)


@dataclass(frozen=True)
class PaymentContext:
    """Correlation data recovered from the processor object's own metadata."""

    processor_payment_id: Optional[str]
    processor_intent_id: Optional[str]
    reservation_id: Optional[int]
    slot_id: Optional[int]
    user_id: Optional[int]
    service_id: Optional[int]
    provider_id: Optional[int]
    amount: Optional[int]
    currency: Optional[str]
    processor_status: PaymentStatus
    occurred_at: Optional[datetime]

    @property
    def has_booking_metadata(self) -> bool:
        return None not in (self.reservation_id, self.slot_id, self.user_id, self.service_id, self.provider_id)


def extract_payment_context(event: Mapping[str, Any], kind: EventKind) -> PaymentContext:
    obj = _event_object(event)
    metadata = obj.get("metadata") or {}
    object_type = obj.get("object")

    intent_id: Optional[str]
    if object_type == "checkout.session":
        payment_id = obj.get("id")
        intent_id = _stripe_id(obj.get("payment_intent"))
        amount = obj.get("amount_total")
    elif object_type == "charge":
        intent_id = _stripe_id(obj.get("payment_intent"))
        payment_id = intent_id
        amount = obj.get("amount")
    else:
        payment_id = obj.get("id")
        intent_id = payment_id
        amount = obj.get("amount")

    currency = obj.get("currency")
    return PaymentContext(
        processor_payment_id=payment_id,
        processor_intent_id=intent_id,
        reservation_id=_int_or_none(metadata.get("reservation_id")),
        slot_id=_int_or_none(metadata.get("slot_id")),
        user_id=_int_or_none(metadata.get("user_id")),
        service_id=_int_or_none(metadata.get("service_id")),
        provider_id=_int_or_none(metadata.get("provider_id")),
        amount=amount if isinstance(amount, int) else None,
        currency=currency.upper() if isinstance(currency, str) else None,
        processor_status=_status_for(kind, obj),
        occurred_at=_epoch_to_utc_naive(event.get("created")),
    )


def _status_for(kind: EventKind, obj: Mapping[str, Any]) -> PaymentStatus:
    if kind == EventKind.SUCCEEDED:
        return PaymentStatus.SUCCEEDED
    if kind == EventKind.FAILED:
        return PaymentStatus.FAILED
    if kind in (EventKind.CANCELED, EventKind.REFUNDED):
        return PaymentStatus.CANCELED
    return map_processor_status(obj.get("status"))


def _event_object(event: Mapping[str, Any]) -> Mapping[str, Any]:
    data = event.get("data") or {}
    obj = data.get("object") if isinstance(data, Mapping) else None
    return obj if isinstance(obj, Mapping) else {}


def _stripe_id(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        inner = value.get("id")
        return inner if isinstance(inner, str) else None
    return None


def _int_or_none(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _epoch_to_utc_naive(value: Any) -> Optional[datetime]:
    if not isinstance(value, (int, float)):
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
