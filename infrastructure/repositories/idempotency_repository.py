"""
幂等账本仓储实现：依赖主键唯一约束完成原子的检查并设置
"""
from typing import Optional

from sqlalchemy import select, update

from domain.idempotency.entity import IdempotencyRecord, LedgerStatus
from domain.idempotency.repository import IdempotencyRepository
from infrastructure.models.webhook_event import WebhookEventModel
from infrastructure.repositories.base import SQLAlchemyRepository


class SQLAlchemyIdempotencyRepository(SQLAlchemyRepository, IdempotencyRepository):

    entity_name = "webhook_event"

    def _to_entity(self, model: WebhookEventModel) -> IdempotencyRecord:
        return IdempotencyRecord(
            event_id=model.event_id,
            event_type=model.event_type,
            provider=model.provider,
            checkout_session_id=model.checkout_session_id,
            payment_intent_id=model.payment_intent_id,
            dispute_id=model.dispute_id,
            charge_id=model.charge_id,
            payload=model.payload or {},
            status=LedgerStatus(model.status),
            attempts=model.attempts,
            last_error=model.last_error,
            created_at=model.created_at,
        )

    async def get(self, event_id: str) -> Optional[IdempotencyRecord]:
        result = await self._execute(select(WebhookEventModel).where(WebhookEventModel.event_id == event_id))
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def add(self, record: IdempotencyRecord) -> IdempotencyRecord:
        model = WebhookEventModel(
            event_id=record.event_id,
            provider=record.provider,
            event_type=record.event_type,
            checkout_session_id=record.checkout_session_id,
            payment_intent_id=record.payment_intent_id,
            dispute_id=record.dispute_id,
            charge_id=record.charge_id,
            payload=record.payload,
            status=record.status.value,
            attempts=record.attempts,
        )
        if record.created_at is not None:
            model.created_at = record.created_at
        self.session.add(model)
        await self._flush(key=record.event_id)
        return self._to_entity(model)

    async def mark_failed(self, event_id: str, error: Optional[str]) -> bool:
        result = await self._execute(
            update(WebhookEventModel)
            .where(
                WebhookEventModel.event_id == event_id,
                WebhookEventModel.status == LedgerStatus.RECORDED.value,
            )
            .values(status=LedgerStatus.FAILED.value, last_error=(error or "")[:1000])
        )
        return bool(result.rowcount)

    async def reclaim(self, event_id: str) -> bool:
        result = await self._execute(
            update(WebhookEventModel)
            .where(
                WebhookEventModel.event_id == event_id,
                WebhookEventModel.status == LedgerStatus.FAILED.value,
            )
            .values(status=LedgerStatus.RECORDED.value, attempts=WebhookEventModel.attempts + 1)
        )
        return result.rowcount == 1
