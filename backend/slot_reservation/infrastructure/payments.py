from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

import stripe

from ..config import Settings
from ..domain.errors import PaymentProcessorError, SignatureInvalidError
from ..domain.gateway import ProcessorPayment

logger = logging.getLogger(__name__)


class StripePaymentGateway:
    """Thin async wrapper over the blocking stripe client."""

    def __init__(
        self,
        *,
        api_key: Optional[str],
        webhook_secret: Optional[str],
        api_version: Optional[str] = None,
        webhook_tolerance_seconds: int = stripe.Webhook.DEFAULT_TOLERANCE,
    ) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.api_version = api_version
        self.webhook_tolerance_seconds = webhook_tolerance_seconds

    def _request_options(self, idempotency_key: str) -> dict[str, Any]:
        if not self.api_key:
            raise PaymentProcessorError("stripe secret key not configured")
        options: dict[str, Any] = {"api_key": self.api_key, "idempotency_key": idempotency_key}
        if self.api_version:
            options["stripe_version"] = self.api_version
        return options

    async def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ProcessorPayment:
        options = self._request_options(idempotency_key)
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=amount,
                currency=currency.lower(),
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                **options,
            )
        except stripe.StripeError as exc:
            logger.warning("stripe_payment_intent_failed", extra={"error": str(exc), "idempotency_key": idempotency_key})
            raise PaymentProcessorError("payment processor rejected the request") from exc
        return ProcessorPayment(
            processor_payment_id=intent["id"],
            status=intent["status"],
            client_secret=intent["client_secret"],
        )

    async def create_checkout_session(
        self,
        *,
        amount: int,
        currency: str,
        product_name: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        idempotency_key: str,
    ) -> ProcessorPayment:
        options = self._request_options(idempotency_key)
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": currency.lower(),
                            "product_data": {"name": product_name},
                            "unit_amount": amount,
                        },
                        "quantity": 1,
                    }
                ],
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
                # refunds arrive as charge events that only know the intent
                payment_intent_data={"metadata": metadata},
                allow_promotion_codes=False,
                **options,
            )
        except stripe.StripeError as exc:
            logger.warning("stripe_checkout_failed", extra={"error": str(exc), "idempotency_key": idempotency_key})
            raise PaymentProcessorError("payment processor rejected the request") from exc
        return ProcessorPayment(
            processor_payment_id=session["id"],
            status=session["status"],
            redirect_url=session["url"],
        )

    def verify_event(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:
        if not self.webhook_secret:
            raise RuntimeError("stripe webhook secret not configured")
        if not signature:
            raise SignatureInvalidError("missing signature header")
        try:
            text = payload.decode("utf-8")
            # a signed delivery older than the tolerance is a replay
            stripe.WebhookSignature.verify_header(
                text,
                signature,
                self.webhook_secret,
                tolerance=self.webhook_tolerance_seconds,
            )
            event = json.loads(text)
        except (stripe.SignatureVerificationError, ValueError) as exc:
            raise SignatureInvalidError("invalid webhook signature") from exc
        if not isinstance(event, dict):
            raise SignatureInvalidError("webhook payload is not an object")
        return event


def build_payment_gateway(settings: Settings) -> StripePaymentGateway:
    return StripePaymentGateway(
        api_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        api_version=settings.stripe_api_version,
        webhook_tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
    )
