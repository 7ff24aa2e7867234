"""
副作用仓储实现：outbox、订单时间线、审计日志、通知
"""
from typing import Iterable, List, Optional

from sqlalchemy import select

from domain.side_effects.entity import (
    AuditRecord,
    Notification,
    OutboxItem,
    OutboxStatus,
    SideEffect,
    SideEffectKind,
    TimelineEntry,
)
from domain.side_effects.repository import (
    AuditLogRepository,
    NotificationRepository,
    OutboxRepository,
    TimelineRepository,
)
from infrastructure.models.order import OrderTimelineEventModel
from infrastructure.models.side_effect import AuditLogModel, NotificationModel, OutboxModel
from infrastructure.repositories.base import SQLAlchemyRepository
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyOutboxRepository(SQLAlchemyRepository, OutboxRepository):

    entity_name = "outbox"

    def _to_entity(self, model: OutboxModel) -> OutboxItem:
        return OutboxItem(
            id=model.id,
            kind=SideEffectKind(model.kind),
            dedupe_key=model.dedupe_key,
            payload=model.payload or {},
            status=OutboxStatus(model.status),
            attempts=model.attempts or 0,
            last_error=model.last_error,
            created_at=model.created_at,
            processed_at=model.processed_at,
        )

    async def enqueue(self, effects: Iterable[SideEffect]) -> List[int]:
        effects = list(effects)
        if not effects:
            return []
        keys = [e.dedupe_key for e in effects]
        result = await self._execute(select(OutboxModel.dedupe_key).where(OutboxModel.dedupe_key.in_(keys)))
        existing = set(result.scalars().all())

        models = []
        for effect in effects:
            if effect.dedupe_key in existing:
                continue
            # 同一批次内的重复也只写一次
            existing.add(effect.dedupe_key)
            models.append(OutboxModel(
                kind=effect.kind.value,
                dedupe_key=effect.dedupe_key,
                payload=effect.payload,
                status=OutboxStatus.PENDING.value,
                attempts=0,
            ))
        if not models:
            return []
        self.session.add_all(models)
        await self._flush(key=models[0].dedupe_key)
        logger.debug("outbox_enqueued", count=len(models), skipped=len(effects) - len(models))
        return [m.id for m in models]

    async def get_for_update(self, item_id: int) -> Optional[OutboxItem]:
        stmt = (
            select(OutboxModel)
            .where(OutboxModel.id == item_id)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        result = await self._execute(stmt)
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def list_pending(self, limit: int = 100) -> List[OutboxItem]:
        result = await self._execute(
            select(OutboxModel)
            .where(OutboxModel.status == OutboxStatus.PENDING.value)
            .order_by(OutboxModel.id)
            .limit(limit)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def list_dead(self, limit: int = 100) -> List[OutboxItem]:
        result = await self._execute(
            select(OutboxModel)
            .where(OutboxModel.status == OutboxStatus.DEAD.value)
            .order_by(OutboxModel.id.desc())
            .limit(limit)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def save(self, item: OutboxItem) -> OutboxItem:
        model = await self.session.get(OutboxModel, item.id)
        if model is None:
            raise ValueError(f"Outbox item {item.id} not found")
        model.status = item.status.value
        model.attempts = item.attempts
        model.last_error = item.last_error
        model.processed_at = item.processed_at
        await self._flush(key=item.dedupe_key)
        return self._to_entity(model)


class SQLAlchemyTimelineRepository(SQLAlchemyRepository, TimelineRepository):

    entity_name = "order_timeline"

    @staticmethod
    def _to_entity(model: OrderTimelineEventModel) -> TimelineEntry:
        return TimelineEntry(
            order_id=model.order_id,
            entry_id=model.entry_id,
            type=model.type,
            label=model.label,
            actor=model.actor,
            visibility=model.visibility,
            meta=model.meta or {},
            occurred_at=model.occurred_at,
        )

    async def append(self, entry: TimelineEntry) -> bool:
        result = await self._execute(
            select(OrderTimelineEventModel.id).where(
                OrderTimelineEventModel.order_id == entry.order_id,
                OrderTimelineEventModel.entry_id == entry.entry_id,
            )
        )
        if result.scalar_one_or_none() is not None:
            return False
        model = OrderTimelineEventModel(
            order_id=entry.order_id,
            entry_id=entry.entry_id,
            type=entry.type,
            label=entry.label,
            actor=entry.actor,
            visibility=entry.visibility,
            meta=entry.meta,
        )
        if entry.occurred_at is not None:
            model.occurred_at = entry.occurred_at
        self.session.add(model)
        await self._flush(key=f"{entry.order_id}:{entry.entry_id}")
        return True

    async def list_for_order(self, order_id: str) -> List[TimelineEntry]:
        result = await self._execute(
            select(OrderTimelineEventModel)
            .where(OrderTimelineEventModel.order_id == order_id)
            .order_by(OrderTimelineEventModel.occurred_at, OrderTimelineEventModel.id)
        )
        return [self._to_entity(m) for m in result.scalars().all()]


class SQLAlchemyAuditLogRepository(SQLAlchemyRepository, AuditLogRepository):

    entity_name = "audit_log"

    @staticmethod
    def _to_entity(model: AuditLogModel) -> AuditRecord:
        return AuditRecord(
            action_type=model.action_type,
            actor_uid=model.actor_uid,
            actor_role=model.actor_role,
            source=model.source,
            order_id=model.order_id,
            listing_id=model.listing_id,
            dispute_id=model.dispute_id,
            before_state=model.before_state,
            after_state=model.after_state,
            metadata=model.extra_metadata or {},
            created_at=model.created_at,
        )

    async def append(self, record: AuditRecord) -> None:
        model = AuditLogModel(
            action_type=record.action_type,
            actor_uid=record.actor_uid,
            actor_role=record.actor_role,
            source=record.source,
            order_id=record.order_id,
            listing_id=record.listing_id,
            dispute_id=record.dispute_id,
            before_state=record.before_state,
            after_state=record.after_state,
            extra_metadata=record.metadata,
        )
        if record.created_at is not None:
            model.created_at = record.created_at
        self.session.add(model)
        await self._flush(key=record.action_type)

    async def list_for_order(self, order_id: str) -> List[AuditRecord]:
        result = await self._execute(
            select(AuditLogModel)
            .where(AuditLogModel.order_id == order_id)
            .order_by(AuditLogModel.id)
        )
        return [self._to_entity(m) for m in result.scalars().all()]


class SQLAlchemyNotificationRepository(SQLAlchemyRepository, NotificationRepository):

    entity_name = "notification"

    @staticmethod
    def _to_entity(model: NotificationModel) -> Notification:
        return Notification(
            event_type=model.event_type,
            target_user_id=model.target_user_id,
            entity_id=model.entity_id,
            dedupe_key=model.dedupe_key,
            payload=model.payload or {},
            created_at=model.created_at,
        )

    async def add_if_absent(self, notification: Notification) -> bool:
        result = await self._execute(
            select(NotificationModel.id).where(NotificationModel.dedupe_key == notification.dedupe_key)
        )
        if result.scalar_one_or_none() is not None:
            return False
        self.session.add(NotificationModel(
            event_type=notification.event_type,
            target_user_id=notification.target_user_id,
            entity_id=notification.entity_id,
            dedupe_key=notification.dedupe_key,
            payload=notification.payload,
        ))
        await self._flush(key=notification.dedupe_key)
        return True

    async def list_for_user(self, user_id: str) -> List[Notification]:
        result = await self._execute(
            select(NotificationModel)
            .where(NotificationModel.target_user_id == user_id)
            .order_by(NotificationModel.id)
        )
        return [self._to_entity(m) for m in result.scalars().all()]
