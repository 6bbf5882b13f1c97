from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol


@dataclass(frozen=True)
class ProcessorPayment:
    processor_payment_id: str
    status: Optional[str]
    client_secret: Optional[str] = None
    redirect_url: Optional[str] = None


class PaymentGateway(Protocol):
    async def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ProcessorPayment: ...

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
    ) -> ProcessorPayment: ...

    def verify_event(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:
        """Return the decoded event, raising SignatureInvalidError when it is not authentic."""
        ...
