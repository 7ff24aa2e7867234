"""
Payment DTOs (Pydantic v2) used at the gateway boundary.
"""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class RefundRequest(BaseModel):
    payment_intent_id: str = Field(min_length=1)
    # Deterministic key so a redelivered event never refunds twice
    idempotency_key: str = Field(min_length=1)
    reason: str = "requested_by_customer"
    metadata: dict[str, str] = Field(default_factory=dict)


class RefundResult(BaseModel):
    refund_id: str
    status: str
    provider: str
    payment_intent_id: Optional[str] = None


class PaymentIntentDetails(BaseModel):
    """Subset of a provider payment intent used for buyer address resolution."""

    id: str
    status: Optional[str] = None
    shipping_state: Optional[str] = None
    billing_state: Optional[str] = None


class WebhookEvent(BaseModel):
    """A verified inbound webhook: signature checked, body decoded, not yet typed."""

    id: str
    type: str
    provider: str
    payload: dict[str, Any]


class WebhookAck(BaseModel):
    """Body returned to the provider once the event is durably recorded."""

    received: bool = True
    event_id: str
    type: str
    duplicate: bool = False
