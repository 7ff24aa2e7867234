"""
Idempotency ledger for inbound provider events.

``record_if_new`` is the only gate against double processing: a record is
created once per provider event ID inside its own transaction. When that
transaction fails for a reason other than a unique-key conflict the
ledger re-reads the record before deciding; it never assumes the event is
new.

Records are never deleted. When the handler for an event fails the record
is marked ``failed``; the provider's redelivery re-claims it with a
conditional update, so exactly one delivery gets to process it again.
"""
from __future__ import annotations

from typing import Any, Optional

from core.logging_config import get_logger
from domain.common.exceptions import (
    BusinessException,
    ConcurrencyConflictException,
    PersistenceException,
    TransientBackendError,
)
from domain.common.unit_of_work import UnitOfWorkFactory
from domain.idempotency.entity import IdempotencyRecord, LedgerResult, LedgerStatus


logger = get_logger(__name__)


class IdempotencyLedger:
    def __init__(self, uow_factory: UnitOfWorkFactory) -> None:
        self._uow_factory = uow_factory

    async def record_if_new(
        self,
        event_id: str,
        *,
        event_type: str,
        provider: str = "stripe",
        correlation: Optional[dict[str, Optional[str]]] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> LedgerResult:
        correlation = correlation or {}
        record = IdempotencyRecord(
            event_id=event_id,
            event_type=event_type,
            provider=provider,
            checkout_session_id=correlation.get("checkout_session_id"),
            payment_intent_id=correlation.get("payment_intent_id"),
            dispute_id=correlation.get("dispute_id"),
            charge_id=correlation.get("charge_id"),
            payload=payload or {},
        )
        try:
            async with self._uow_factory() as uow:
                existing = await uow.idempotency_repository.get(event_id)
                if existing is not None:
                    if existing.status is LedgerStatus.FAILED and await uow.idempotency_repository.reclaim(event_id):
                        logger.info("ledger_event_reclaimed", event_id=event_id, attempts=existing.attempts + 1)
                        return LedgerResult(is_new=True, reclaimed=True)
                    logger.info("ledger_event_seen", event_id=event_id, event_type=event_type)
                    return LedgerResult(is_new=False)
                await uow.idempotency_repository.add(record)
        except ConcurrencyConflictException:
            # A concurrent delivery of the same event won the insert
            logger.info("ledger_event_conflict", event_id=event_id, event_type=event_type)
            return LedgerResult(is_new=False)
        except PersistenceException as exc:
            logger.warning("ledger_transaction_failed", event_id=event_id, error=exc.message)
            return await self._recheck(event_id, exc)

        logger.info("ledger_event_recorded", event_id=event_id, event_type=event_type)
        return LedgerResult(is_new=True)

    async def _recheck(self, event_id: str, cause: Exception) -> LedgerResult:
        try:
            async with self._uow_factory(readonly=True) as uow:
                existing = await uow.idempotency_repository.get(event_id)
        except PersistenceException as exc:
            logger.error("ledger_recheck_failed", event_id=event_id, error=exc.message)
            raise TransientBackendError(
                "Idempotency state could not be confirmed", event_id=event_id
            ) from exc
        if existing is not None and existing.status is LedgerStatus.RECORDED:
            logger.info("ledger_recheck_found", event_id=event_id)
            return LedgerResult(is_new=False, rechecked=True)
        if existing is not None:
            # 失败记录需由重投认领，交给渠道稍后重试
            raise TransientBackendError("Idempotency record awaits redelivery", event_id=event_id) from cause
        raise TransientBackendError("Idempotency record was not written", event_id=event_id) from cause

    async def get(self, event_id: str) -> Optional[IdempotencyRecord]:
        async with self._uow_factory(readonly=True) as uow:
            return await uow.idempotency_repository.get(event_id)

    async def release(self, event_id: str, error: Optional[str] = None) -> None:
        """Mark an event whose handler failed so the provider's redelivery is processed.

        The record and its payload stay for audit and operator replay.
        Handlers re-check persisted order state before writing, so a partial
        first attempt cannot be applied twice.
        """
        try:
            async with self._uow_factory() as uow:
                marked = await uow.idempotency_repository.mark_failed(event_id, error)
        except BusinessException as exc:
            logger.error("ledger_release_failed", event_id=event_id, error=exc.message)
            return
        logger.warning("ledger_event_released", event_id=event_id, marked=marked)
