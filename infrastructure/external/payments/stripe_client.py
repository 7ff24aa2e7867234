"""
Stripe adapter using the official stripe-python SDK.

- Webhooks are verified with ``stripe.WebhookSignature.verify_header``
  against the raw body before the JSON is decoded.
- Refunds carry a caller-supplied idempotency key.
- Payment intents are retrieved with ``latest_charge`` expanded so the
  billing address is available for compliance checks.
"""
from __future__ import annotations

import json
from typing import Any, Optional

import stripe

from application.dtos.payments import (
    PaymentIntentDetails,
    RefundRequest,
    RefundResult,
    WebhookEvent,
)
from core.settings import PaymentSettings, payment_settings
from core.logging_config import get_logger
from domain.common.exceptions import MalformedEventError
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentRecoverableError,
    PaymentSignatureError,
)


logger = get_logger(__name__)


def _as_dict(obj: Any) -> dict:
    """StripeObject -> plain dict (works across SDK major versions)."""
    if obj is None:
        return {}
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def _nested_state(obj: Optional[dict], *path: str) -> Optional[str]:
    cur: Any = obj
    for key in path:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur if isinstance(cur, str) and cur else None


class StripeClient(BasePaymentClient):
    provider = "stripe"
    transient_errors = (stripe.APIConnectionError, stripe.RateLimitError)

    def __init__(self, settings: Optional[PaymentSettings] = None):
        cfg = settings or payment_settings
        super().__init__(
            timeouts=cfg.timeouts.model_dump(),
            retry={"max": cfg.retry.max, "base": cfg.retry.base_backoff},
        )
        self._secret_key = cfg.stripe.secret_key
        self._webhook_secret = cfg.stripe.webhook_secret
        self._tolerance = cfg.webhook.tolerance_seconds
        if self._secret_key:
            # Module-level key for compatibility across SDK variants
            stripe.api_key = self._secret_key
        if cfg.stripe.api_version:
            stripe.api_version = cfg.stripe.api_version

    def _require_secret_key(self) -> None:
        if not self._secret_key:
            raise PaymentProviderError("STRIPE__SECRET_KEY not configured", provider=self.provider)

    def _translate(self, exc: Exception, operation: str) -> Exception:
        code = getattr(exc, "code", None)
        logger.warning(
            "stripe_call_failed",
            operation=operation,
            error_type=type(exc).__name__,
            provider_code=code,
            error=str(exc),
        )
        if isinstance(exc, self.transient_errors):
            return PaymentRecoverableError(str(exc), provider=self.provider, provider_code=code)
        return PaymentProviderError(str(exc), provider=self.provider, provider_code=code)

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:  # type: ignore[override]
        if not self._webhook_secret:
            raise PaymentSignatureError("Missing STRIPE__WEBHOOK_SECRET", provider=self.provider)
        lowered = {str(k).lower(): v for k, v in (headers or {}).items()}
        sig = lowered.get("stripe-signature")
        if not sig:
            raise PaymentSignatureError("Missing Stripe-Signature header", provider=self.provider)

        try:
            payload = body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise PaymentSignatureError("Webhook body is not valid UTF-8", provider=self.provider) from exc
        try:
            stripe.WebhookSignature.verify_header(payload, sig, self._webhook_secret, self._tolerance)
        except stripe.SignatureVerificationError as exc:
            raise PaymentSignatureError(str(exc), provider=self.provider) from exc

        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise MalformedEventError("Webhook body is not valid JSON") from exc
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise MalformedEventError("Webhook body is not a Stripe event")
        return WebhookEvent(
            id=str(event["id"]),
            type=str(event["type"]),
            provider=self.provider,
            payload=event,
        )

    async def refund(self, req: RefundRequest) -> RefundResult:  # type: ignore[override]
        self._require_secret_key()

        def _create():
            return stripe.Refund.create(
                payment_intent=req.payment_intent_id,
                reason=req.reason,
                metadata=req.metadata,
                idempotency_key=req.idempotency_key,
            )

        try:
            refund = _as_dict(await self._call(_create))
        except stripe.StripeError as exc:
            raise self._translate(exc, "refund") from exc
        self._log("stripe_refund_created", refund_id=refund.get("id"), payment_intent_id=req.payment_intent_id)
        return RefundResult(
            refund_id=str(refund["id"]),
            status=str(refund.get("status") or ""),
            provider=self.provider,
            payment_intent_id=req.payment_intent_id,
        )

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentDetails:  # type: ignore[override]
        self._require_secret_key()

        def _retrieve():
            return stripe.PaymentIntent.retrieve(payment_intent_id, expand=["latest_charge"])

        try:
            pi = _as_dict(await self._call(_retrieve))
        except stripe.StripeError as exc:
            raise self._translate(exc, "retrieve_payment_intent") from exc
        charge = pi.get("latest_charge")
        return PaymentIntentDetails(
            id=str(pi.get("id") or payment_intent_id),
            status=pi.get("status"),
            shipping_state=_nested_state(pi, "shipping", "address", "state"),
            billing_state=_nested_state(charge if isinstance(charge, dict) else None, "billing_details", "address", "state"),
        )
