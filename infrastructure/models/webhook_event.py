"""
Webhook 幂等账本模型：event_id 作为主键，插入即"检查并设置"；记录从不删除
"""
from sqlalchemy import Column, DateTime, Integer, JSON, String, Text
from datetime import datetime, timezone

from .base import Base


class WebhookEventModel(Base):
    __tablename__ = "webhook_events"

    event_id = Column(String(255), primary_key=True, comment="渠道事件ID")
    provider = Column(String(32), nullable=False, default="stripe")
    event_type = Column(String(128), nullable=False, index=True)
    checkout_session_id = Column(String(255), nullable=True, index=True)
    payment_intent_id = Column(String(255), nullable=True, index=True)
    dispute_id = Column(String(255), nullable=True)
    charge_id = Column(String(255), nullable=True)
    payload = Column(JSON, nullable=True, comment="规范化后的事件对象，用于人工重放")
    status = Column(String(16), nullable=False, default="recorded", comment="recorded / failed")
    attempts = Column(Integer, nullable=False, default=1, comment="处理次数")
    last_error = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )
