"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003
    RATE_LIMITED = 60004

    # Inbound event errors (61xxx)
    MALFORMED_EVENT = 61000
    UNSUPPORTED_PROVIDER = 61001


# Stripe dispute.status -> chargeback status mirrored on orders
DISPUTE_STATUS_TO_CHARGEBACK = {
    "won": "won",
    "lost": "lost",
    "warning_needs_response": "open",
    "warning_under_review": "open",
    "warning_closed": "open",
    "needs_response": "open",
    "under_review": "open",
    "charge_refunded": "open",
    "prevented": "open",
}
