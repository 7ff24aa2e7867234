"""
订单数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Boolean, Column, DateTime, Index, Integer, JSON, Numeric, String, Text, UniqueConstraint,
)
from datetime import datetime, timezone

from .base import Base


class OrderModel(Base):
    """
    订单数据库模型

    所有状态转换规则都在 domain.order.state_machine 中
    """
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True, comment="内部订单ID")

    listing_id = Column(String(64), nullable=False, index=True, comment="Listing ID")
    buyer_id = Column(String(64), nullable=False, index=True, comment="买家ID")
    seller_id = Column(String(64), nullable=False, index=True, comment="卖家ID")
    offer_id = Column(String(64), nullable=True, comment="来源报价ID")

    status = Column(String(32), nullable=False, index=True, comment="订单状态")
    payment_method = Column(String(32), nullable=False, comment="card/ach_debit/bank_transfer/wire")

    # 金额快照（创建时固定，不随费率变化）
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="订单金额")
    platform_fee = Column(Numeric(precision=15, scale=2), nullable=False, comment="平台服务费")
    seller_amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="卖家应得金额")
    platform_fee_percent = Column(Numeric(precision=6, scale=4), nullable=True, comment="下单时的费率")
    currency = Column(String(3), nullable=False, default="usd", comment="货币代码")
    quantity = Column(Integer, nullable=False, default=1, comment="数量")

    # 渠道关联
    checkout_session_id = Column(String(255), nullable=True, unique=True, comment="Checkout Session ID")
    payment_intent_id = Column(String(255), nullable=True, index=True, comment="PaymentIntent ID")
    seller_stripe_account_id = Column(String(255), nullable=True, comment="卖家 Connect 账户")

    paid_at = Column(DateTime(timezone=True), nullable=True, comment="资金确认时间")
    dispute_deadline_at = Column(DateTime(timezone=True), nullable=True, comment="争议窗口截止时间")
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    # 正交标记
    admin_hold = Column(Boolean, nullable=False, default=False, comment="运营冻结")
    admin_hold_reason = Column(Text, nullable=True)
    payout_hold_reason = Column(String(32), nullable=False, default="none", comment="none/protection_window/chargeback")
    chargeback_status = Column(String(16), nullable=False, default="none", comment="none/open/won/lost")

    # 合规
    compliance_violation = Column(Boolean, nullable=False, default=False)
    compliance_violation_reason = Column(Text, nullable=True)
    needs_manual_review = Column(Boolean, nullable=False, default=False, index=True, comment="自动退款失败，待人工处理")
    transfer_permit_required = Column(Boolean, nullable=False, default=False)
    transfer_permit_status = Column(String(16), nullable=False, default="none")
    refund_id = Column(String(255), nullable=True)

    # 展示快照
    listing_title = Column(String(500), nullable=True)
    listing_snapshot = Column(JSON, nullable=True)
    seller_snapshot = Column(JSON, nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间"
    )

    __table_args__ = (
        Index("ix_orders_status_created", "status", "created_at"),
    )

    def __repr__(self):
        return f"<OrderModel(id='{self.id}', status='{self.status}', amount={self.amount})>"


class OrderTimelineEventModel(Base):
    """订单时间线；(order_id, entry_id) 唯一保证重复追加无副作用"""
    __tablename__ = "order_timeline_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(64), nullable=False, index=True)
    entry_id = Column(String(255), nullable=False, comment="确定性ID：类型:关联ID")
    type = Column(String(64), nullable=False)
    label = Column(String(255), nullable=False)
    actor = Column(String(64), nullable=False, default="system")
    visibility = Column(String(32), nullable=False, default="buyer_seller")
    meta = Column(JSON, nullable=True)
    occurred_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("order_id", "entry_id", name="uq_order_timeline_entry"),
    )
