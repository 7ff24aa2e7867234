"""
Exceptions for payment providers mapped to unified BusinessException variants.
"""
from __future__ import annotations

from typing import Optional

from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


class PaymentError(BusinessException):
    code: PaymentCode = PaymentCode.PROVIDER_ERROR

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        provider_code: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        full_details = {"provider": provider, "provider_code": provider_code}
        if details:
            full_details.update(details)
        super().__init__(
            code=type(self).code,
            message=message,
            error_type=type(self).__name__,
            details=full_details,
        )


class PaymentProviderError(PaymentError):
    """Non-retryable provider failure (invalid request, card error, auth)."""
    code = PaymentCode.PROVIDER_ERROR


class PaymentRecoverableError(PaymentError):
    """Connection errors and rate limits that survived the retry budget."""
    code = PaymentCode.PROVIDER_RECOVERABLE


class PaymentTimeoutError(PaymentError):
    code = PaymentCode.TIMEOUT


class PaymentSignatureError(PaymentError):
    code = PaymentCode.SIGNATURE_ERROR


class UnsupportedProviderError(PaymentError):
    code = PaymentCode.UNSUPPORTED_PROVIDER
