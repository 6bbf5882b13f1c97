"""
Applying verified processor events to local state.

Every event is applied in two phases, each in its own transaction:

1. the payment shadow row is upserted with the raw payload and committed, so
   the processor's view is never lost;
2. the reservation / slot / booking transition runs. A failure here is
   logged with enough ids to reconcile by hand and does not undo phase 1.

Replays are safe: booking existence per processor payment id is checked
before any transition, and every transition is a conditional update.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional

from ..domain.errors import StateConflictError
from ..domain.repositories import PaymentRepository, PaymentUpsert, Repositories, UnitOfWorkFactory
from ..domain.services import EventKind, PaymentContext, classify_event, extract_payment_context, is_hold_expired
from ..models import Payment, PaymentFlow, Reservation, ReservationStatus, SlotStatus
from ..utils.audit_log import emit_audit_log
from ..utils.time import utc_now_naive
from .expiry import release_hold

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookOutcome:
    kind: EventKind
    action: str
    processor_payment_id: Optional[str] = None
    reservation_id: Optional[int] = None
    slot_id: Optional[int] = None
    user_id: Optional[int] = None
    booking_id: Optional[int] = None


async def process_payment_event(
    event: Mapping[str, Any],
    unit_of_work: UnitOfWorkFactory,
    *,
    now: Optional[datetime] = None,
) -> WebhookOutcome:
    kind = classify_event(event)
    if kind == EventKind.IGNORED:
        logger.debug("ignoring processor event", extra={"event_type": event.get("type"), "event_id": event.get("id")})
        return WebhookOutcome(kind=kind, action="ignored")

    context = extract_payment_context(event, kind)
    if context.processor_payment_id is None:
        logger.warning(
            "processor event without payment id",
            extra={"event_type": event.get("type"), "event_id": event.get("id")},
        )
        return WebhookOutcome(kind=kind, action="ignored")

    now = now or utc_now_naive()

    async with unit_of_work() as repos:
        payment = await record_payment_event(repos.payments, event, kind, context, now=now)
    # later transitions key off the row that was actually written
    context = dataclasses.replace(context, processor_payment_id=payment.processor_payment_id)

    try:
        async with unit_of_work() as repos:
            outcome = await apply_payment_transition(repos, kind, context, now=now)
    except Exception:
        logger.exception(
            "payment transition failed",
            extra={
                "event_id": event.get("id"),
                "event_type": event.get("type"),
                "processor_payment_id": context.processor_payment_id,
                "reservation_id": context.reservation_id,
                "slot_id": context.slot_id,
            },
        )
        return WebhookOutcome(
            kind=kind,
            action="transition_failed",
            processor_payment_id=context.processor_payment_id,
            reservation_id=context.reservation_id,
            slot_id=context.slot_id,
            user_id=context.user_id,
        )

    _audit(outcome)
    return outcome


async def record_payment_event(
    payment_repo: PaymentRepository,
    event: Mapping[str, Any],
    kind: EventKind,
    context: PaymentContext,
    *,
    now: datetime,
) -> Payment:
    assert context.processor_payment_id is not None
    key = context.processor_payment_id
    flow: Optional[PaymentFlow] = None
    if str(event.get("type") or "").startswith("checkout.session."):
        flow = PaymentFlow.CHECKOUT
    elif context.processor_intent_id:
        # intent and charge events of a checkout payment belong to the session's row
        known = await payment_repo.find_by_intent_id(context.processor_intent_id)
        if known is not None:
            key = known.processor_payment_id

    return await payment_repo.upsert(
        PaymentUpsert(
            processor_payment_id=key,
            status=context.processor_status,
            processor_intent_id=context.processor_intent_id,
            user_id=context.user_id,
            reservation_id=context.reservation_id,
            amount=context.amount if kind != EventKind.REFUNDED else None,
            currency=context.currency,
            flow=flow,
            raw_payload=dict(event),
            refund=kind == EventKind.REFUNDED,
        ),
        now=now,
    )


async def apply_payment_transition(
    repos: Repositories,
    kind: EventKind,
    context: PaymentContext,
    *,
    now: datetime,
) -> WebhookOutcome:
    if kind == EventKind.SUCCEEDED:
        return await _confirm_booking(repos, context, now=now)
    if kind in (EventKind.FAILED, EventKind.CANCELED):
        return await _release_after_failure(repos, kind, context, now=now)
    if kind == EventKind.REFUNDED:
        return await _refund_booking(repos, context, now=now)
    return _outcome(kind, "recorded", context)


async def _confirm_booking(repos: Repositories, context: PaymentContext, *, now: datetime) -> WebhookOutcome:
    kind = EventKind.SUCCEEDED
    payment_id = context.processor_payment_id
    assert payment_id is not None

    if await repos.bookings.exists_for_payment(payment_id):
        return _outcome(kind, "duplicate", context)
    if not context.has_booking_metadata:
        logger.warning("successful payment without booking metadata", extra={"processor_payment_id": payment_id})
        return _outcome(kind, "unmatched", context)

    assert context.reservation_id is not None
    reservation = await repos.reservations.get(context.reservation_id)
    if reservation is None or reservation.slot_id != context.slot_id or reservation.user_id != context.user_id:
        logger.warning(
            "successful payment does not match a reservation",
            extra={"processor_payment_id": payment_id, "reservation_id": context.reservation_id},
        )
        return _outcome(kind, "unmatched", context)
    if reservation.status == ReservationStatus.CONFIRMED:
        return await _settle_confirmed(repos, reservation, context, now=now)

    paid_at = context.occurred_at or now
    if reservation.status != ReservationStatus.HOLD or is_hold_expired(reservation.hold_expires_at, paid_at):
        return await _record_orphan(repos, reservation, context, now=now)

    confirmed = await repos.reservations.transition(
        reservation.id,
        expected=ReservationStatus.HOLD,
        target=ReservationStatus.CONFIRMED,
        now=now,
    )
    if not confirmed:
        current = await repos.reservations.get(reservation.id)
        if current is not None and current.status == ReservationStatus.CONFIRMED:
            return await _settle_confirmed(repos, current, context, now=now)
        return await _record_orphan(repos, reservation, context, now=now)

    booked = await repos.slots.transition(
        reservation.slot_id,
        expected=SlotStatus.HOLD,
        target=SlotStatus.BOOKED,
        now=now,
    )
    if not booked:
        raise StateConflictError(f"slot {reservation.slot_id} is not held by reservation {reservation.id}")

    assert context.user_id is not None and context.service_id is not None and context.provider_id is not None
    booking = await repos.bookings.create(
        user_id=context.user_id,
        service_id=context.service_id,
        provider_id=context.provider_id,
        slot_id=reservation.slot_id,
        reservation_id=reservation.id,
        processor_payment_id=payment_id,
        now=now,
    )
    if booking is None:
        raise StateConflictError(f"booking for payment {payment_id} already exists")

    await repos.events.add(
        topic="booking.created",
        payload={
            "booking_id": booking.id,
            "reservation_id": reservation.id,
            "slot_id": reservation.slot_id,
            "service_id": context.service_id,
            "provider_id": context.provider_id,
            "processor_payment_id": payment_id,
        },
        user_id=context.user_id,
        now=now,
    )
    logger.info(
        "booking created",
        extra={"booking_id": booking.id, "reservation_id": reservation.id, "processor_payment_id": payment_id},
    )
    return _outcome(kind, "booked", context, booking_id=booking.id)


async def _settle_confirmed(
    repos: Repositories,
    reservation: Reservation,
    context: PaymentContext,
    *,
    now: datetime,
) -> WebhookOutcome:
    """A confirmed reservation is a duplicate only for the payment that booked it."""
    booking = await repos.bookings.get_by_reservation(reservation.id)
    own_ids = {context.processor_payment_id, context.processor_intent_id} - {None}
    if booking is not None and booking.processor_payment_id in own_ids:
        # sibling checkout session / intent event for the same payment
        return _outcome(EventKind.SUCCEEDED, "duplicate", context)
    return await _record_orphan(repos, reservation, context, now=now, reason="reservation_already_paid")


async def _record_orphan(
    repos: Repositories,
    reservation: Reservation,
    context: PaymentContext,
    *,
    now: datetime,
    reason: str = "hold_not_active",
) -> WebhookOutcome:
    """Money arrived for a hold that is gone. Nothing is booked; the payment needs a manual refund."""
    if reservation.status == ReservationStatus.HOLD:
        await release_hold(repos.slots, repos.reservations, reservation, target=ReservationStatus.EXPIRED, now=now)
    await repos.events.add(
        topic="payment.orphaned",
        payload={
            "reservation_id": reservation.id,
            "slot_id": reservation.slot_id,
            "processor_payment_id": context.processor_payment_id,
            "amount": context.amount,
            "currency": context.currency,
            "reason": reason,
        },
        user_id=context.user_id,
        now=now,
    )
    logger.warning(
        "payment succeeded for an inactive hold; refund required",
        extra={
            "reason": reason,
            "reservation_id": reservation.id,
            "slot_id": reservation.slot_id,
            "processor_payment_id": context.processor_payment_id,
        },
    )
    return _outcome(EventKind.SUCCEEDED, "orphaned", context)


async def _release_after_failure(
    repos: Repositories,
    kind: EventKind,
    context: PaymentContext,
    *,
    now: datetime,
) -> WebhookOutcome:
    if context.reservation_id is None:
        return _outcome(kind, "unmatched", context)
    reservation = await repos.reservations.get(context.reservation_id)
    if reservation is None:
        return _outcome(kind, "unmatched", context)

    released = await release_hold(
        repos.slots,
        repos.reservations,
        reservation,
        target=ReservationStatus.EXPIRED,
        now=now,
    )
    await repos.events.add(
        topic="payment.failed" if kind == EventKind.FAILED else "payment.canceled",
        payload={
            "reservation_id": reservation.id,
            "slot_id": reservation.slot_id,
            "processor_payment_id": context.processor_payment_id,
            "released": released,
        },
        user_id=reservation.user_id,
        now=now,
    )
    return _outcome(kind, "released" if released else "recorded", context)


async def _refund_booking(repos: Repositories, context: PaymentContext, *, now: datetime) -> WebhookOutcome:
    kind = EventKind.REFUNDED
    keys = [k for k in (context.processor_payment_id, context.processor_intent_id) if k]
    for key in dict.fromkeys(keys):
        if await repos.bookings.mark_refunded(key):
            await repos.events.add(
                topic="booking.refunded",
                payload={"processor_payment_id": key, "reservation_id": context.reservation_id},
                user_id=context.user_id,
                now=now,
            )
            return _outcome(kind, "refunded", context)
    return _outcome(kind, "recorded", context)


def _outcome(kind: EventKind, action: str, context: PaymentContext, *, booking_id: Optional[int] = None) -> WebhookOutcome:
    return WebhookOutcome(
        kind=kind,
        action=action,
        processor_payment_id=context.processor_payment_id,
        reservation_id=context.reservation_id,
        slot_id=context.slot_id,
        user_id=context.user_id,
        booking_id=booking_id,
    )


def _audit(outcome: WebhookOutcome) -> None:
    common: dict[str, Any] = {
        "initiator": "processor",
        "reservation_id": outcome.reservation_id,
        "slot_id": outcome.slot_id,
        "user_id": outcome.user_id,
        "processor_payment_id": outcome.processor_payment_id,
    }
    if outcome.action == "booked":
        emit_audit_log(
            action="booking.created",
            status_from=ReservationStatus.HOLD,
            status_to=ReservationStatus.CONFIRMED,
            extra={"booking_id": outcome.booking_id},
            **common,
        )
    elif outcome.action == "orphaned":
        emit_audit_log(action="payment.orphaned", message="refund required", **common)
    elif outcome.action == "released":
        emit_audit_log(
            action="reservation.expired",
            status_from=ReservationStatus.HOLD,
            status_to=ReservationStatus.EXPIRED,
            extra={"reason": f"payment.{outcome.kind.value}"},
            **common,
        )
    elif outcome.action == "refunded":
        emit_audit_log(action="booking.refunded", **common)
