"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from application.dtos.payments import (
    PaymentIntentDetails,
    RefundRequest,
    RefundResult,
    WebhookEvent,
)


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for the payment provider.

    Implementations should be async and side-effect free beyond IO.
    """

    provider: str

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent: ...

    async def refund(self, req: RefundRequest) -> RefundResult: ...

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentDetails: ...
