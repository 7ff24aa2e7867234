"""
拒付（dispute）数据库模型
"""
from sqlalchemy import Column, DateTime, Integer, String, Text
from datetime import datetime, timezone

from .base import Base


class DisputeModel(Base):
    __tablename__ = "disputes"

    id = Column(String(255), primary_key=True, comment="渠道 dispute ID")
    status = Column(String(16), nullable=False, comment="open/won/lost")
    provider_status = Column(String(64), nullable=True, comment="渠道原始状态")
    amount = Column(Integer, nullable=False, default=0, comment="最小货币单位")
    currency = Column(String(3), nullable=False, default="usd")
    reason = Column(Text, nullable=True)
    charge_id = Column(String(255), nullable=True)
    payment_intent_id = Column(String(255), nullable=True, index=True)
    order_id = Column(String(64), nullable=True, index=True)
    funds_withdrawn_at = Column(DateTime(timezone=True), nullable=True)
    funds_reinstated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
