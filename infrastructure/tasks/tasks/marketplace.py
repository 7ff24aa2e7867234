"""Periodic marketplace jobs: outbox drain and reservation sweep.

Each task runs in its own event loop (``asyncio.run``) and therefore
creates and disposes its own engine; pooled connections never cross loops.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

from celery import shared_task

from ..utils.base_task import BaseTask
from core.config import settings
from core.logging_config import get_logger
from infrastructure.container import MarketplaceServices, build_services
from infrastructure.database import build_engine, build_session_factory
from infrastructure.external.payments import get_payment_gateway

logger = get_logger(__name__)

T = TypeVar("T")


async def _with_services(fn: Callable[[MarketplaceServices], Awaitable[T]]) -> T:
    engine = build_engine(settings.database.url, echo=settings.database.echo)
    try:
        services = build_services(build_session_factory(engine), get_payment_gateway())
        return await fn(services)
    finally:
        await engine.dispose()


@shared_task(
    name="outbox.drain",
    bind=True,
    base=BaseTask,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": 3},
)
def drain_outbox(self, limit: int | None = None) -> dict:
    """Retry pending side effects; items past max attempts move to the dead state."""
    batch = limit or settings.outbox.batch_size
    summary = asyncio.run(_with_services(lambda s: s.dispatcher.drain(batch)))
    logger.info("outbox_drain_task_done", **summary)
    return summary


@shared_task(
    name="listings.clear_expired_reservations",
    bind=True,
    base=BaseTask,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": 3},
)
def clear_expired_reservations(self, limit: int | None = None) -> dict:
    """Release lapsed purchase reservations and cancel their pending orders."""
    batch = limit or settings.marketplace.reservation_sweep_batch_size
    summary = asyncio.run(_with_services(lambda s: s.listings.clear_expired_reservations(limit=batch)))
    logger.info("reservation_sweep_task_done", **summary)
    return summary


@shared_task(name="webhooks.replay", bind=True, base=BaseTask, max_retries=3, default_retry_delay=30)
def replay_webhook_event(self, event_id: str) -> dict:
    """Re-run a recorded provider event, e.g. after a handler bug fix."""
    outcome = asyncio.run(_with_services(lambda s: s.webhooks.replay(event_id)))
    return {"action": outcome.action, "order_id": outcome.order_id, "status": outcome.status}
