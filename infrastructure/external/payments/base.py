"""
Base payment client implementing shared concerns: retry, threading, logging.

Provider SDKs are synchronous; calls run in a worker thread and transient
failures are retried with exponential backoff.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, Tuple, Type

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger
from application.dtos.payments import (
    PaymentIntentDetails,
    RefundRequest,
    RefundResult,
    WebhookEvent,
)
from application.ports.payment_gateway import PaymentGateway


logger = get_logger(__name__)


class BasePaymentClient(PaymentGateway):
    provider: str = "base"
    # Exception types worth retrying; subclasses narrow this to their SDK's errors
    transient_errors: Tuple[Type[BaseException], ...] = ()

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or {"connect": 1.0, "read": 3.0, "write": 3.0, "total": 5.0}
        self._retry_cfg = retry or {"max": 2, "base": 0.2}

    @property
    def total_timeout(self) -> float:
        return float(self._timeouts_cfg["total"])

    async def _call(self, fn: Callable[[], Any]) -> Any:
        """Run a blocking SDK call off the event loop, retrying transient errors."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception_type(self.transient_errors),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    self._log("payment_provider_retry", attempt=attempt.retry_state.attempt_number)
                return await asyncio.to_thread(fn)

    # Default implementations raise to force override where needed
    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:  # type: ignore[override]
        raise NotImplementedError

    async def refund(self, req: RefundRequest) -> RefundResult:  # type: ignore[override]
        raise NotImplementedError

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentDetails:  # type: ignore[override]
        raise NotImplementedError

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
