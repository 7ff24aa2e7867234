"""
Compliance service: buyer address resolution and the automatic refund.

The decision itself is ``domain.compliance.gate.evaluate``; this service
adds the provider IO around it. A payment-intent lookup is bounded by a
short timeout and any failure leaves the state unresolved, which makes the
gate block. Refund errors are returned as a failed ``RefundOutcome``
rather than raised so the caller can fall back to manual review.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from application.dtos.payments import PaymentIntentDetails, RefundRequest
from application.ports.payment_gateway import PaymentGateway
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException
from domain.compliance.gate import (
    ComplianceDecision,
    DEFAULT_ALLOWED_STATE,
    ListingCategory,
    evaluate,
    is_restricted,
    resolve_buyer_state,
)


logger = get_logger(__name__)


@dataclass(frozen=True)
class RefundOutcome:
    ok: bool
    refund_id: Optional[str] = None
    error: Optional[str] = None


def compliance_refund_key(reference: str) -> str:
    return f"refund:compliance:{reference}"


class ComplianceService:
    def __init__(
        self,
        gateway: PaymentGateway,
        *,
        allowed_state: str = DEFAULT_ALLOWED_STATE,
        lookup_timeout_seconds: float = 3.0,
    ) -> None:
        self._gateway = gateway
        self.allowed_state = allowed_state
        self._lookup_timeout = lookup_timeout_seconds

    async def resolve_buyer_state(self, *known: Optional[str], payment_intent_id: Optional[str] = None) -> Optional[str]:
        """First usable state among ``known``, then the payment intent's shipping and billing."""
        state = resolve_buyer_state(*known)
        if state or not payment_intent_id:
            return state
        details = await self._lookup_payment_intent(payment_intent_id)
        if details is None:
            return None
        return resolve_buyer_state(details.shipping_state, details.billing_state)

    async def _lookup_payment_intent(self, payment_intent_id: str) -> Optional[PaymentIntentDetails]:
        try:
            return await asyncio.wait_for(
                self._gateway.retrieve_payment_intent(payment_intent_id),
                timeout=self._lookup_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("compliance_lookup_timeout", payment_intent_id=payment_intent_id, timeout=self._lookup_timeout)
        except BusinessException as exc:
            logger.warning("compliance_lookup_failed", payment_intent_id=payment_intent_id, error=exc.message)
        return None

    async def decide(
        self,
        category: ListingCategory,
        *known_states: Optional[str],
        payment_intent_id: Optional[str],
        funds_confirmed: bool,
    ) -> tuple[ComplianceDecision, Optional[str]]:
        """Return the gate decision and the buyer state it was based on.

        The address is only looked up when it can change the outcome.
        """
        if not is_restricted(category) or not funds_confirmed:
            return evaluate(category, None, not funds_confirmed, allowed_state=self.allowed_state), None
        state = await self.resolve_buyer_state(*known_states, payment_intent_id=payment_intent_id)
        return evaluate(category, state, False, allowed_state=self.allowed_state), state

    async def refund(
        self,
        *,
        payment_intent_id: Optional[str],
        reference: str,
        order_id: str,
        listing_id: str,
        reason: str,
    ) -> RefundOutcome:
        if not payment_intent_id:
            logger.error("compliance_refund_failed", order_id=order_id, error="payment intent unknown")
            return RefundOutcome(ok=False, error="payment intent unknown")
        request = RefundRequest(
            payment_intent_id=payment_intent_id,
            idempotency_key=compliance_refund_key(reference),
            metadata={
                "orderId": order_id,
                "listingId": listing_id,
                "reason": "compliance_violation",
                "detail": reason[:500],
            },
        )
        try:
            result = await self._gateway.refund(request)
        except BusinessException as exc:
            logger.error(
                "compliance_refund_failed",
                order_id=order_id,
                payment_intent_id=payment_intent_id,
                error_type=exc.error_type,
                error=exc.message,
            )
            return RefundOutcome(ok=False, error=exc.message)
        logger.info(
            "compliance_refund_issued",
            order_id=order_id,
            payment_intent_id=payment_intent_id,
            refund_id=result.refund_id,
        )
        return RefundOutcome(ok=True, refund_id=result.refund_id)
