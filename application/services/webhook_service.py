"""
Inbound provider webhook pipeline.

verify signature -> type the event -> record it in the idempotency ledger
-> dispatch by ``kind``. A duplicate event is acknowledged without running
any handler. If a handler fails the ledger entry is released and the
error propagates, so the provider's redelivery is processed again.
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable

from application.dtos.outcomes import HandlerOutcome
from application.dtos.payments import WebhookAck, WebhookEvent
from application.dtos.webhook_events import EVENT_KINDS, parse_provider_event
from application.ports.payment_gateway import PaymentGateway
from application.services.dispute_service import DisputeService
from application.services.idempotency_ledger import IdempotencyLedger
from application.services.order_lifecycle_service import OrderLifecycleService
from core.logging_config import get_logger
from domain.common.exceptions import ResourceNotFoundException


logger = get_logger(__name__)

Handler = Callable[[Any], Awaitable[HandlerOutcome]]


def _ledger_payload(raw: dict[str, Any]) -> dict[str, Any]:
    """The part of the event kept for replay."""
    return {
        "id": raw.get("id"),
        "type": raw.get("type"),
        "created": raw.get("created"),
        "livemode": raw.get("livemode"),
        "data": {"object": (raw.get("data") or {}).get("object")},
    }


class WebhookService:
    def __init__(
        self,
        gateway: PaymentGateway,
        ledger: IdempotencyLedger,
        orders: OrderLifecycleService,
        disputes: DisputeService,
    ) -> None:
        self._gateway = gateway
        self._ledger = ledger
        self._handlers: dict[str, Handler] = {
            "checkout_completed": orders.handle_checkout_completed,
            "checkout_async_payment_succeeded": orders.handle_async_payment_succeeded,
            "checkout_async_payment_failed": orders.handle_async_payment_failed,
            "checkout_expired": orders.handle_checkout_expired,
            "wire_payment_succeeded": orders.handle_wire_succeeded,
            "wire_payment_canceled": orders.handle_wire_canceled,
            "dispute_created": disputes.handle_created,
            "dispute_updated": disputes.handle_updated,
            "dispute_closed": disputes.handle_closed,
            "dispute_funds_withdrawn": disputes.handle_funds_withdrawn,
            "dispute_funds_reinstated": disputes.handle_funds_reinstated,
            "account_updated": self._ignore,
            "ignored": self._ignore,
            "unhandled": self._ignore,
        }
        missing = EVENT_KINDS - set(self._handlers)
        if missing:
            raise RuntimeError(f"event kinds without a handler: {sorted(missing)}")

    async def handle(self, headers: dict[str, Any], body: bytes) -> WebhookAck:
        verified: WebhookEvent = self._gateway.parse_webhook(headers, body)
        event = parse_provider_event(verified.payload)

        recorded = await self._ledger.record_if_new(
            verified.id,
            event_type=verified.type,
            provider=verified.provider,
            correlation=event.correlation_ids(),
            payload=_ledger_payload(verified.payload),
        )
        if not recorded.is_new:
            logger.info("webhook_duplicate", event_id=verified.id, event_type=verified.type)
            return WebhookAck(event_id=verified.id, type=verified.type, duplicate=True)

        try:
            outcome = await self._dispatch(event)
        except Exception as exc:
            logger.error(
                "webhook_handler_failed",
                event_id=verified.id,
                event_type=verified.type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            await self._ledger.release(verified.id, error=f"{type(exc).__name__}: {exc}")
            raise
        logger.info(
            "webhook_processed",
            event_id=verified.id,
            event_type=verified.type,
            action=outcome.action,
            order_id=outcome.order_id,
        )
        return WebhookAck(event_id=verified.id, type=verified.type)

    async def replay(self, event_id: str) -> HandlerOutcome:
        """Re-run the handler for a recorded event; transitions stay guarded by order state."""
        record = await self._ledger.get(event_id)
        if record is None:
            raise ResourceNotFoundException("webhook_event", event_id)
        event = parse_provider_event(record.payload)
        outcome = await self._dispatch(event)
        logger.info("webhook_replayed", event_id=event_id, event_type=record.event_type, action=outcome.action)
        return outcome

    async def _dispatch(self, event: Any) -> HandlerOutcome:
        return await self._handlers[event.kind](event)

    async def _ignore(self, event: Any) -> HandlerOutcome:
        logger.info(
            "webhook_event_ignored",
            event_id=event.event_id,
            event_type=event.event_type,
            reason=getattr(event, "reason", None),
        )
        return HandlerOutcome("ignored", detail=event.event_type)
