from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..deps import get_current_user_id, get_payment_gateway, get_session
from ..domain.errors import DomainError
from ..domain.gateway import PaymentGateway
from ..infrastructure.repositories import (
    SqlAlchemyCatalogRepository,
    SqlAlchemyPaymentRepository,
    SqlAlchemyReservationRepository,
    SqlAlchemySlotRepository,
)
from ..models import PaymentFlow
from ..schemas import CheckoutCreate, CheckoutSessionRead, PaymentCreate, PaymentIntentRead
from ..usecases import payments as payment_usecase
from ..usecases.payments import PaymentInitiation
from ..utils.audit_log import emit_audit_log
from ..utils.time import utc_now_naive
from .errors import to_http_exception

router = APIRouter(prefix="/payments", tags=["payments"])


async def _initiate(
    session: AsyncSession,
    gateway: PaymentGateway,
    *,
    user_id: int,
    reservation_id: int,
    flow: PaymentFlow,
    success_url: str,
    cancel_url: str,
) -> PaymentInitiation:
    # the processor round trip runs between two short transactions, never inside one
    try:
        async with session.begin():
            request = await payment_usecase.prepare_payment(
                SqlAlchemyReservationRepository(session),
                SqlAlchemySlotRepository(session),
                SqlAlchemyCatalogRepository(session),
                user_id=user_id,
                reservation_id=reservation_id,
                flow=flow,
                success_url=success_url,
                cancel_url=cancel_url,
                now=utc_now_naive(),
            )
        processor = await payment_usecase.request_processor_payment(gateway, request)
        async with session.begin():
            result = await payment_usecase.record_initiated_payment(
                SqlAlchemyPaymentRepository(session),
                request,
                processor,
                now=utc_now_naive(),
            )
    except DomainError as exc:
        raise to_http_exception(exc) from exc

    try:
        emit_audit_log(
            action="payment.initiated",
            initiator="user",
            reservation_id=result.reservation_id,
            slot_id=None,
            user_id=user_id,
            status_to=result.status,
            processor_payment_id=result.processor_payment_id,
            extra={"flow": flow.value, "amount": result.amount, "currency": result.currency},
        )
    except RuntimeError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failed") from exc
    return result


@router.post("/intent", response_model=PaymentIntentRead)
async def create_payment_intent(
    payload: PaymentCreate,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentIntentRead:
    settings = get_settings()
    result = await _initiate(
        session,
        gateway,
        user_id=user_id,
        reservation_id=payload.reservation_id,
        flow=PaymentFlow.INTENT,
        success_url=settings.checkout_success_url,
        cancel_url=settings.checkout_cancel_url,
    )
    return PaymentIntentRead(
        client_secret=result.client_secret,
        payment_intent_id=result.processor_payment_id,
        amount=result.amount,
        currency=result.currency,
        status=result.status,
    )


@router.post("/checkout", response_model=CheckoutSessionRead)
async def create_checkout_session(
    payload: CheckoutCreate,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> CheckoutSessionRead:
    settings = get_settings()
    result = await _initiate(
        session,
        gateway,
        user_id=user_id,
        reservation_id=payload.reservation_id,
        flow=PaymentFlow.CHECKOUT,
        success_url=payload.success_url or settings.checkout_success_url,
        cancel_url=payload.cancel_url or settings.checkout_cancel_url,
    )
    return CheckoutSessionRead(
        url=result.redirect_url,
        session_id=result.processor_payment_id,
        amount=result.amount,
        currency=result.currency,
    )
