import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from redis.exceptions import RedisError

from ..config import get_settings
from ..deps import get_event_queue, get_payment_gateway, get_unit_of_work
from ..domain.errors import SignatureInvalidError
from ..domain.gateway import PaymentGateway
from ..domain.repositories import UnitOfWorkFactory
from ..infrastructure.queue import EventQueue
from ..schemas import WebhookAck
from ..usecases import webhooks as webhook_usecase

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    queue: Optional[EventQueue] = Depends(get_event_queue),
    unit_of_work: UnitOfWorkFactory = Depends(get_unit_of_work),
) -> WebhookAck:
    payload = await request.body()
    try:
        event = gateway.verify_event(payload, stripe_signature)
    except SignatureInvalidError as exc:
        logger.warning("webhook signature rejected", extra={"reason": str(exc)})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature") from exc
    except RuntimeError as exc:
        logger.error("webhook secret not configured")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook not configured") from exc

    logger.info("webhook received", extra={"event_id": event.get("id"), "event_type": event.get("type")})

    if get_settings().webhook_mode == "queue" and queue is not None:
        try:
            await queue.push(event)
            return WebhookAck(queued=True)
        except RedisError as exc:
            logger.warning(
                "webhook enqueue failed; applying inline",
                extra={"event_id": event.get("id"), "error": str(exc)},
            )

    await webhook_usecase.process_payment_event(event, unit_of_work)
    return WebhookAck()
