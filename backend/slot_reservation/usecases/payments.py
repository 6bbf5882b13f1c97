from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..domain.errors import ReservationNotFoundError, ServiceNotFoundError, SlotNotAvailableError, SlotNotFoundError
from ..domain.gateway import PaymentGateway, ProcessorPayment
from ..domain.repositories import (
    CatalogRepository,
    PaymentRepository,
    PaymentUpsert,
    ReservationRepository,
    SlotRepository,
)
from ..domain.services import ReservationSnapshot, map_processor_status, validate_payable
from ..models import PaymentFlow, PaymentStatus, Reservation, Service, Slot, SlotStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentInitiation:
    reservation_id: int
    flow: PaymentFlow
    processor_payment_id: str
    status: PaymentStatus
    amount: int
    currency: str
    client_secret: Optional[str] = None
    redirect_url: Optional[str] = None


@dataclass(frozen=True)
class PaymentRequest:
    """Everything the processor call needs, read and validated before any network I/O."""

    reservation_id: int
    user_id: int
    flow: PaymentFlow
    amount: int
    currency: str
    product_name: str
    metadata: dict[str, str]
    idempotency_key: str
    success_url: str
    cancel_url: str


def idempotency_key_for(
    reservation_id: int,
    flow: PaymentFlow,
    *,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> str:
    """
    One processor object per reservation and flow, however often the client retries.

    Checkout keys also cover the return URLs: the processor rejects a reused key
    whose parameters differ, so a retry with new URLs gets its own session.
    """
    if flow == PaymentFlow.CHECKOUT:
        digest = hashlib.sha256(f"{success_url or ''}\n{cancel_url or ''}".encode()).hexdigest()[:16]
        return f"reservation-{reservation_id}-checkout-{digest}"
    return f"reservation-{reservation_id}"


def payment_metadata(reservation: Reservation, slot: Slot, service: Service) -> dict[str, str]:
    return {
        "reservation_id": str(reservation.id),
        "slot_id": str(slot.id),
        "service_id": str(service.id),
        "provider_id": str(slot.provider_id),
        "user_id": str(reservation.user_id),
        "slot_start_time": slot.start_time.isoformat(),
    }


async def prepare_payment(
    res_repo: ReservationRepository,
    slot_repo: SlotRepository,
    catalog_repo: CatalogRepository,
    *,
    user_id: int,
    reservation_id: int,
    flow: PaymentFlow,
    success_url: str,
    cancel_url: str,
    now: datetime,
) -> PaymentRequest:
    reservation = await res_repo.get(reservation_id)
    if reservation is None:
        raise ReservationNotFoundError("reservation not found")
    validate_payable(
        ReservationSnapshot(
            user_id=reservation.user_id,
            status=reservation.status,
            hold_expires_at=reservation.hold_expires_at,
        ),
        user_id=user_id,
        now=now,
    )

    slot = await slot_repo.get(reservation.slot_id)
    if slot is None:
        raise SlotNotFoundError("slot not found")
    if slot.status != SlotStatus.HOLD:
        raise SlotNotAvailableError("slot is not held")
    service = await catalog_repo.get_service(slot.service_id)
    if service is None:
        raise ServiceNotFoundError("service not found")

    return PaymentRequest(
        reservation_id=reservation.id,
        user_id=user_id,
        flow=flow,
        amount=service.price_amount,
        currency=service.currency.upper(),
        product_name=service.title,
        metadata=payment_metadata(reservation, slot, service),
        idempotency_key=idempotency_key_for(reservation.id, flow, success_url=success_url, cancel_url=cancel_url),
        success_url=success_url,
        cancel_url=cancel_url,
    )


async def request_processor_payment(gateway: PaymentGateway, request: PaymentRequest) -> ProcessorPayment:
    if request.flow == PaymentFlow.CHECKOUT:
        return await gateway.create_checkout_session(
            amount=request.amount,
            currency=request.currency,
            product_name=request.product_name,
            metadata=request.metadata,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
            idempotency_key=request.idempotency_key,
        )
    return await gateway.create_payment_intent(
        amount=request.amount,
        currency=request.currency,
        metadata=request.metadata,
        idempotency_key=request.idempotency_key,
    )


async def record_initiated_payment(
    payment_repo: PaymentRepository,
    request: PaymentRequest,
    processor: ProcessorPayment,
    *,
    now: datetime,
) -> PaymentInitiation:
    payment = await payment_repo.upsert(
        PaymentUpsert(
            processor_payment_id=processor.processor_payment_id,
            processor_intent_id=processor.processor_payment_id if request.flow == PaymentFlow.INTENT else None,
            status=map_processor_status(processor.status),
            user_id=request.user_id,
            reservation_id=request.reservation_id,
            amount=request.amount,
            currency=request.currency,
            flow=request.flow,
        ),
        now=now,
    )
    logger.info(
        "payment initiated",
        extra={
            "reservation_id": request.reservation_id,
            "processor_payment_id": processor.processor_payment_id,
            "flow": request.flow.value,
        },
    )
    return PaymentInitiation(
        reservation_id=request.reservation_id,
        flow=request.flow,
        processor_payment_id=processor.processor_payment_id,
        status=payment.status,
        amount=request.amount,
        currency=request.currency,
        client_secret=processor.client_secret,
        redirect_url=processor.redirect_url,
    )


async def initiate_payment(
    res_repo: ReservationRepository,
    slot_repo: SlotRepository,
    catalog_repo: CatalogRepository,
    payment_repo: PaymentRepository,
    gateway: PaymentGateway,
    *,
    user_id: int,
    reservation_id: int,
    flow: PaymentFlow,
    success_url: str,
    cancel_url: str,
    now: datetime,
) -> PaymentInitiation:
    request = await prepare_payment(
        res_repo,
        slot_repo,
        catalog_repo,
        user_id=user_id,
        reservation_id=reservation_id,
        flow=flow,
        success_url=success_url,
        cancel_url=cancel_url,
        now=now,
    )
    processor = await request_processor_payment(gateway, request)
    return await record_initiated_payment(payment_repo, request, processor, now=now)
