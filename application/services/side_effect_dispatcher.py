"""
Drains the side-effect outbox into the timeline, audit, notification and
offer sinks.

Each item is applied in its own transaction. A failure is logged
(``side_effect_failed``), counted against the item and retried by the next
drain; once ``max_attempts`` is reached the item is dead-lettered and stays
visible with ``status=dead``. Failures never propagate to the caller.
"""
from __future__ import annotations

from datetime import datetime
from typing import Awaitable, Callable, Iterable, List

from core.logging_config import get_logger
from domain.common.timeutils import utcnow
from domain.common.unit_of_work import AbstractUnitOfWork, UnitOfWorkFactory
from domain.side_effects.entity import (
    AuditRecord,
    Notification,
    OutboxItem,
    OutboxStatus,
    SideEffectKind,
    TimelineEntry,
)


logger = get_logger(__name__)

_Sink = Callable[[AbstractUnitOfWork, OutboxItem, datetime], Awaitable[None]]


async def _apply_timeline(uow: AbstractUnitOfWork, item: OutboxItem, now: datetime) -> None:
    p = item.payload
    await uow.timeline_repository.append(TimelineEntry(
        order_id=p["order_id"],
        entry_id=p["entry_id"],
        type=p["type"],
        label=p["label"],
        actor=p.get("actor", "system"),
        visibility=p.get("visibility", "buyer_seller"),
        meta=p.get("meta") or {},
        occurred_at=item.created_at or now,
    ))


async def _apply_audit(uow: AbstractUnitOfWork, item: OutboxItem, now: datetime) -> None:
    p = item.payload
    await uow.audit_repository.append(AuditRecord(
        action_type=p["action_type"],
        actor_uid=p.get("actor_uid", "system"),
        actor_role=p.get("actor_role", "system"),
        source=p.get("source", "webhook"),
        order_id=p.get("order_id"),
        listing_id=p.get("listing_id"),
        dispute_id=p.get("dispute_id"),
        before_state=p.get("before_state"),
        after_state=p.get("after_state"),
        metadata=p.get("metadata") or {},
        created_at=item.created_at or now,
    ))


async def _apply_notification(uow: AbstractUnitOfWork, item: OutboxItem, now: datetime) -> None:
    p = item.payload
    await uow.notification_repository.add_if_absent(Notification(
        event_type=p["event_type"],
        target_user_id=p["target_user_id"],
        entity_id=p["entity_id"],
        dedupe_key=p["dedupe_key"],
        payload=p.get("payload") or {},
    ))


async def _apply_offer_link(uow: AbstractUnitOfWork, item: OutboxItem, now: datetime) -> None:
    p = item.payload
    offer = await uow.offer_repository.get(p["offer_id"], for_update=True)
    if offer is None:
        logger.warning("offer_not_found", offer_id=p["offer_id"], order_id=p.get("order_id"))
        return
    offer.link(p["order_id"], p.get("checkout_session_id"), now, completed=bool(p.get("completed")))
    await uow.offer_repository.update(offer)


SINKS: dict[SideEffectKind, _Sink] = {
    SideEffectKind.TIMELINE: _apply_timeline,
    SideEffectKind.AUDIT: _apply_audit,
    SideEffectKind.NOTIFICATION: _apply_notification,
    SideEffectKind.OFFER_LINK: _apply_offer_link,
}

if set(SINKS) != set(SideEffectKind):
    raise RuntimeError("every side-effect kind needs a sink")


class SideEffectDispatcher:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        *,
        max_attempts: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._max_attempts = max_attempts
        self._clock = clock

    async def dispatch(self, item_ids: Iterable[int]) -> int:
        """Best-effort drain of items just committed by a transition."""
        done = 0
        for item_id in item_ids:
            if await self._process(item_id):
                done += 1
        return done

    async def drain(self, limit: int = 100) -> dict[str, int]:
        """Retry every pending item; used by the periodic task."""
        async with self._uow_factory(readonly=True) as uow:
            pending = await uow.outbox_repository.list_pending(limit)
        done = await self.dispatch(item.id for item in pending)
        summary = {"pending": len(pending), "done": done, "failed": len(pending) - done}
        if pending:
            logger.info("outbox_drained", **summary)
        return summary

    async def list_dead(self, limit: int = 100) -> List[OutboxItem]:
        async with self._uow_factory(readonly=True) as uow:
            return await uow.outbox_repository.list_dead(limit)

    async def _process(self, item_id: int) -> bool:
        try:
            async with self._uow_factory() as uow:
                item = await uow.outbox_repository.get_for_update(item_id)
                if item is None or item.status is not OutboxStatus.PENDING:
                    return False
                now = self._clock()
                await SINKS[item.kind](uow, item, now)
                item.mark_done(now)
                await uow.outbox_repository.save(item)
            return True
        except Exception as exc:
            logger.warning("side_effect_failed", item_id=item_id, error_type=type(exc).__name__, error=str(exc))
            await self._record_failure(item_id, exc)
            return False

    async def _record_failure(self, item_id: int, error: Exception) -> None:
        try:
            async with self._uow_factory() as uow:
                item = await uow.outbox_repository.get_for_update(item_id)
                if item is None or item.status is not OutboxStatus.PENDING:
                    return
                item.record_failure(
                    f"{type(error).__name__}: {error}",
                    max_attempts=self._max_attempts,
                    now=self._clock(),
                )
                await uow.outbox_repository.save(item)
        except Exception as exc:
            # The item stays pending and is picked up by the next drain
            logger.error("side_effect_failure_not_recorded", item_id=item_id, error=str(exc))
            return
        if item.status is OutboxStatus.DEAD:
            logger.error(
                "side_effect_dead_lettered",
                item_id=item_id,
                kind=item.kind.value,
                dedupe_key=item.dedupe_key,
                attempts=item.attempts,
                error=item.last_error,
            )
