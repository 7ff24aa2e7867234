"""
副作用相关模型：outbox、审计日志、通知
"""
from sqlalchemy import Column, DateTime, Integer, JSON, String, Text, UniqueConstraint, Index
from datetime import datetime, timezone

from .base import Base


class OutboxModel(Base):
    """副作用 outbox；status=dead 即死信"""
    __tablename__ = "side_effect_outbox"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(32), nullable=False, comment="timeline/audit/notification/offer_link")
    dedupe_key = Column(String(512), nullable=False, unique=True)
    payload = Column(JSON, nullable=False)
    status = Column(String(16), nullable=False, default="pending", comment="pending/done/dead")
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_outbox_status_id", "status", "id"),
    )


class AuditLogModel(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action_type = Column(String(64), nullable=False, index=True)
    actor_uid = Column(String(64), nullable=False)
    actor_role = Column(String(32), nullable=False)
    source = Column(String(32), nullable=False)
    order_id = Column(String(64), nullable=True, index=True)
    listing_id = Column(String(64), nullable=True)
    dispute_id = Column(String(255), nullable=True)
    before_state = Column(JSON, nullable=True)
    after_state = Column(JSON, nullable=True)
    # 使用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突
    extra_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)


class NotificationModel(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(64), nullable=False)
    target_user_id = Column(String(64), nullable=False, index=True)
    entity_id = Column(String(64), nullable=False)
    dedupe_key = Column(String(512), nullable=False)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_notifications_dedupe"),
    )
