"""
Dispute (chargeback) tracking.

Disputes are upserted by provider dispute ID on every event so that
out-of-order delivery never loses data. A dispute opening or moving to a
new status places the linked order on a chargeback payout hold; the order
``status`` itself is never changed here.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from application.dtos.outcomes import HandlerOutcome
from application.dtos.webhook_events import (
    DisputeClosed,
    DisputeCreated,
    DisputeFundsReinstated,
    DisputeFundsWithdrawn,
    DisputeObject,
    DisputeUpdated,
)
from application.services.side_effect_dispatcher import SideEffectDispatcher
from core.logging_config import get_logger
from domain.common.timeutils import utcnow
from domain.common.unit_of_work import AbstractUnitOfWork, UnitOfWorkFactory
from domain.dispute.entity import Dispute, normalize_dispute_status
from domain.order.entity import ChargebackStatus, Order
from domain.side_effects.entity import SideEffect, audit_record, timeline_entry


logger = get_logger(__name__)


class DisputeService:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        dispatcher: SideEffectDispatcher,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._dispatcher = dispatcher
        self._clock = clock

    async def _upsert(self, uow: AbstractUnitOfWork, obj: DisputeObject, now: datetime) -> tuple[Dispute, bool]:
        dispute = await uow.dispute_repository.get(obj.id, for_update=True)
        if dispute is not None:
            return dispute, False
        dispute = Dispute(
            id=obj.id,
            status=normalize_dispute_status(obj.status),
            amount=obj.amount or 0,
            currency=(obj.currency or "usd").lower(),
            reason=obj.reason,
            provider_status=obj.status,
            charge_id=obj.charge,
            payment_intent_id=obj.payment_intent,
            created_at=now,
            updated_at=now,
        )
        return dispute, True

    async def _linked_order(self, uow: AbstractUnitOfWork, dispute: Dispute) -> Optional[Order]:
        order = None
        if dispute.order_id:
            order = await uow.order_repository.get(dispute.order_id, for_update=True)
        if order is None and dispute.payment_intent_id:
            order = await uow.order_repository.find_by_payment_intent(dispute.payment_intent_id, for_update=True)
        if order is None:
            logger.warning(
                "dispute_order_not_found",
                dispute_id=dispute.id,
                payment_intent_id=dispute.payment_intent_id,
            )
        return order

    async def _save(self, uow: AbstractUnitOfWork, dispute: Dispute, created: bool) -> None:
        if created:
            await uow.dispute_repository.add(dispute)
        else:
            await uow.dispute_repository.update(dispute)

    async def _finish(self, ids: list[int]) -> None:
        if ids:
            await self._dispatcher.dispatch(ids)

    async def handle_created(self, event: DisputeCreated) -> HandlerOutcome:
        obj = event.dispute
        now = self._clock()
        async with self._uow_factory() as uow:
            dispute, created = await self._upsert(uow, obj, now)
            if not created:
                # updated/closed arrived first: fill gaps, keep its status
                dispute.merge_missing(
                    amount=obj.amount,
                    currency=obj.currency,
                    reason=obj.reason,
                    charge_id=obj.charge,
                    payment_intent_id=obj.payment_intent,
                    now=now,
                )
            order = await self._linked_order(uow, dispute)
            effects: list[SideEffect] = []
            if order is not None:
                dispute.order_id = order.id
                before = order.snapshot()
                order.apply_chargeback(
                    ChargebackStatus.OPEN,
                    reason=f"Chargeback opened: {obj.reason or 'unspecified'}",
                    now=now,
                    opened=True,
                )
                await uow.order_repository.update(order)
                effects = [
                    timeline_entry(
                        order.id, f"CHARGEBACK_OPENED:{dispute.id}", "CHARGEBACK_OPENED",
                        "Chargeback opened; payout on hold",
                        meta={"dispute_id": dispute.id, "reason": dispute.reason, "amount": dispute.amount},
                    ),
                    audit_record(
                        "chargeback_created",
                        correlation=event.event_id,
                        order_id=order.id,
                        listing_id=order.listing_id,
                        dispute_id=dispute.id,
                        before=before,
                        after=order.snapshot(),
                        metadata={"reason": dispute.reason, "amount": dispute.amount},
                    ),
                ]
            await self._save(uow, dispute, created)
            ids = await uow.outbox_repository.enqueue(effects)
        logger.info("dispute_created", dispute_id=dispute.id, order_id=dispute.order_id, new=created)
        await self._finish(ids)
        return HandlerOutcome(
            "applied" if dispute.order_id else "not_found",
            order_id=dispute.order_id,
            detail=dispute.id,
        )

    async def handle_updated(self, event: DisputeUpdated) -> HandlerOutcome:
        obj = event.dispute
        now = self._clock()
        async with self._uow_factory() as uow:
            dispute, created = await self._upsert(uow, obj, now)
            dispute.apply_provider_status(obj.status, now)
            order = await self._linked_order(uow, dispute)
            effects: list[SideEffect] = []
            if order is not None:
                dispute.order_id = order.id
                before = order.snapshot()
                status = ChargebackStatus(dispute.status.value)
                order.apply_chargeback(
                    status,
                    reason=f"Chargeback {status.value}",
                    now=now,
                    opened=False,
                )
                await uow.order_repository.update(order)
                effects = [
                    timeline_entry(
                        order.id, f"CHARGEBACK_UPDATED:{dispute.id}:{status.value}", "CHARGEBACK_UPDATED",
                        f"Chargeback {status.value}",
                        meta={"dispute_id": dispute.id, "provider_status": obj.status},
                    ),
                    audit_record(
                        "chargeback_updated",
                        correlation=event.event_id,
                        order_id=order.id,
                        listing_id=order.listing_id,
                        dispute_id=dispute.id,
                        before=before,
                        after=order.snapshot(),
                        metadata={"provider_status": obj.status},
                    ),
                ]
            await self._save(uow, dispute, created)
            ids = await uow.outbox_repository.enqueue(effects)
        logger.info("dispute_updated", dispute_id=dispute.id, status=dispute.status.value, order_id=dispute.order_id)
        await self._finish(ids)
        return HandlerOutcome(
            "applied" if dispute.order_id else "not_found",
            order_id=dispute.order_id,
            status=dispute.status.value,
            detail=dispute.id,
        )

    async def handle_closed(self, event: DisputeClosed) -> HandlerOutcome:
        def _close(dispute: Dispute, now: datetime) -> None:
            dispute.apply_provider_status(event.dispute.status, now)

        return await self._record_only(event.event_id, event.dispute, "chargeback_closed", _close)

    async def handle_funds_withdrawn(self, event: DisputeFundsWithdrawn) -> HandlerOutcome:
        def _withdrawn(dispute: Dispute, now: datetime) -> None:
            dispute.funds_withdrawn_at = dispute.funds_withdrawn_at or now
            dispute.updated_at = now

        return await self._record_only(event.event_id, event.dispute, "chargeback_funds_withdrawn", _withdrawn)

    async def handle_funds_reinstated(self, event: DisputeFundsReinstated) -> HandlerOutcome:
        def _reinstated(dispute: Dispute, now: datetime) -> None:
            dispute.funds_reinstated_at = dispute.funds_reinstated_at or now
            dispute.updated_at = now

        return await self._record_only(event.event_id, event.dispute, "chargeback_funds_reinstated", _reinstated)

    async def _record_only(
        self,
        correlation: str,
        obj: DisputeObject,
        action: str,
        mutate: Callable[[Dispute, datetime], None],
    ) -> HandlerOutcome:
        """Track the dispute without touching the order."""
        now = self._clock()
        async with self._uow_factory() as uow:
            dispute, created = await self._upsert(uow, obj, now)
            mutate(dispute, now)
            await self._save(uow, dispute, created)
            ids = await uow.outbox_repository.enqueue([
                audit_record(
                    action,
                    correlation=correlation,
                    order_id=dispute.order_id,
                    dispute_id=dispute.id,
                    metadata={"provider_status": obj.status, "status": dispute.status.value},
                ),
            ])
        logger.info(action, dispute_id=dispute.id, status=dispute.status.value)
        await self._finish(ids)
        return HandlerOutcome("applied", order_id=dispute.order_id, status=dispute.status.value, detail=dispute.id)

    async def get(self, dispute_id: str) -> Optional[Dispute]:
        async with self._uow_factory(readonly=True) as uow:
            return await uow.dispute_repository.get(dispute_id)

