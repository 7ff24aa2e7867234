"""
订单领域实体 - 订单聚合根

状态（status）只能由 domain.order.state_machine 中的转换表推进；
admin_hold / chargeback_status 是叠加在状态之上的正交标记，不是独立状态。
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Optional

from domain.common.exceptions import DomainValidationException
from domain.common.timeutils import ensure_utc


CENTS = Decimal("0.01")


class OrderStatus(str, Enum):
    """订单状态枚举"""
    PENDING = "pending"
    AWAITING_BANK_TRANSFER = "awaiting_bank_transfer"
    AWAITING_WIRE = "awaiting_wire"
    PAID_HELD = "paid_held"    # 资金已确认，托管中
    PAID = "paid"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


FUNDS_CONFIRMED_STATUSES = frozenset({OrderStatus.PAID_HELD, OrderStatus.PAID, OrderStatus.COMPLETED})
TERMINAL_STATUSES = frozenset({OrderStatus.REFUNDED, OrderStatus.CANCELLED})
OPEN_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.AWAITING_BANK_TRANSFER, OrderStatus.AWAITING_WIRE})


class PaymentMethod(str, Enum):
    CARD = "card"
    ACH_DEBIT = "ach_debit"
    BANK_TRANSFER = "bank_transfer"
    WIRE = "wire"

    @property
    def awaiting_status(self) -> OrderStatus:
        """资金未确认时订单停留的状态"""
        if self is PaymentMethod.WIRE:
            return OrderStatus.AWAITING_WIRE
        if self in (PaymentMethod.ACH_DEBIT, PaymentMethod.BANK_TRANSFER):
            return OrderStatus.AWAITING_BANK_TRANSFER
        return OrderStatus.PENDING


class PayoutHoldReason(str, Enum):
    NONE = "none"
    PROTECTION_WINDOW = "protection_window"
    CHARGEBACK = "chargeback"


class ChargebackStatus(str, Enum):
    NONE = "none"
    OPEN = "open"
    WON = "won"
    LOST = "lost"


class TransferPermitStatus(str, Enum):
    NONE = "none"
    REQUESTED = "requested"
    UPLOADED = "uploaded"
    APPROVED = "approved"
    REJECTED = "rejected"


def cents_to_amount(cents: int) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(CENTS)


def amount_to_cents(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))


@dataclass
class Order:
    """
    订单聚合根

    业务规则：
    1. amount == platform_fee + seller_amount（创建时的快照，之后不再重算）
    2. 资金确认后的状态不可回退，拒付只叠加 admin_hold
    3. 订单不做物理删除，退款/取消是终态
    """

    id: str
    listing_id: str
    buyer_id: str
    seller_id: str
    status: OrderStatus
    payment_method: PaymentMethod

    # 金额快照
    amount: Decimal
    platform_fee: Decimal
    seller_amount: Decimal
    platform_fee_percent: Optional[Decimal] = None
    currency: str = "usd"
    quantity: int = 1

    # 外部关联
    checkout_session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    seller_stripe_account_id: Optional[str] = None
    offer_id: Optional[str] = None

    # 时间
    paid_at: Optional[datetime] = None
    dispute_deadline_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # 正交标记
    admin_hold: bool = False
    admin_hold_reason: Optional[str] = None
    payout_hold_reason: PayoutHoldReason = PayoutHoldReason.NONE
    chargeback_status: ChargebackStatus = ChargebackStatus.NONE

    # 合规
    compliance_violation: bool = False
    compliance_violation_reason: Optional[str] = None
    needs_manual_review: bool = False
    transfer_permit_required: bool = False
    transfer_permit_status: TransferPermitStatus = TransferPermitStatus.NONE
    refund_id: Optional[str] = None

    # 展示快照
    listing_title: Optional[str] = None
    listing_snapshot: dict = field(default_factory=dict)
    seller_snapshot: dict = field(default_factory=dict)

    def __post_init__(self):
        self.amount = Decimal(self.amount).quantize(CENTS)
        self.platform_fee = Decimal(self.platform_fee).quantize(CENTS)
        self.seller_amount = Decimal(self.seller_amount).quantize(CENTS)
        self._validate_amounts()
        self.paid_at = ensure_utc(self.paid_at)
        self.dispute_deadline_at = ensure_utc(self.dispute_deadline_at)
        self.cancelled_at = ensure_utc(self.cancelled_at)
        self.refunded_at = ensure_utc(self.refunded_at)
        self.created_at = ensure_utc(self.created_at)
        self.updated_at = ensure_utc(self.updated_at)
        if self.listing_snapshot is None:
            self.listing_snapshot = {}
        if self.seller_snapshot is None:
            self.seller_snapshot = {}

    def _validate_amounts(self) -> None:
        if self.amount < 0 or self.platform_fee < 0 or self.seller_amount < 0:
            raise DomainValidationException(f"订单金额不能为负: {self.amount}", field="amount")
        if self.platform_fee + self.seller_amount != self.amount:
            raise DomainValidationException(
                f"金额快照不一致: {self.platform_fee} + {self.seller_amount} != {self.amount}",
                field="amount",
            )

    @property
    def is_funds_confirmed(self) -> bool:
        return self.status in FUNDS_CONFIRMED_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    # --- 以下变更方法只由状态机调用，守卫在转换表中统一判断 ---

    def confirm_funds(self, now: datetime, dispute_window: timedelta) -> None:
        self.status = OrderStatus.PAID_HELD
        self.paid_at = now
        self.dispute_deadline_at = now + dispute_window
        self.updated_at = now

    def await_funds(self, status: OrderStatus, now: datetime) -> None:
        self.status = status
        self.updated_at = now

    def cancel(self, now: datetime) -> None:
        self.status = OrderStatus.CANCELLED
        self.cancelled_at = now
        self.updated_at = now

    def mark_refunded(self, *, refund_id: Optional[str], reason: str, now: datetime) -> None:
        self.status = OrderStatus.REFUNDED
        self.refund_id = refund_id
        self.refunded_at = now
        self.compliance_violation = True
        self.compliance_violation_reason = reason
        self.needs_manual_review = False
        self.updated_at = now

    def flag_for_manual_review(self, *, reason: str, now: datetime) -> None:
        self.status = OrderStatus.PENDING
        self.compliance_violation = True
        self.compliance_violation_reason = reason
        self.needs_manual_review = True
        self.admin_hold = True
        self.admin_hold_reason = "compliance refund failed"
        self.updated_at = now

    def hold_for_listing_conflict(self, *, reason: str, now: datetime) -> None:
        """资金到账时 listing 已售出或被其他订单预留：不成交，转人工处理"""
        self.status = OrderStatus.PENDING
        self.needs_manual_review = True
        self.admin_hold = True
        self.admin_hold_reason = reason
        self.updated_at = now

    def apply_chargeback(self, status: ChargebackStatus, *, reason: str, now: datetime, opened: bool) -> None:
        """拒付：不改变 status，只叠加冻结标记"""
        self.admin_hold = True
        self.payout_hold_reason = PayoutHoldReason.CHARGEBACK
        self.admin_hold_reason = reason
        if opened:
            # 已有裁决结果时不回退为 open（乱序到达的 created 事件）
            if self.chargeback_status is ChargebackStatus.NONE:
                self.chargeback_status = ChargebackStatus.OPEN
        else:
            self.chargeback_status = status
        self.updated_at = now

    def place_admin_hold(self, reason: str, now: datetime) -> None:
        self.admin_hold = True
        self.admin_hold_reason = reason
        self.updated_at = now

    def release_admin_hold(self, now: datetime) -> None:
        self.admin_hold = False
        self.admin_hold_reason = None
        self.payout_hold_reason = PayoutHoldReason.NONE
        self.needs_manual_review = False
        self.updated_at = now

    def snapshot(self) -> dict[str, Any]:
        """审计记录用的精简状态快照"""
        return {
            "status": self.status.value,
            "admin_hold": self.admin_hold,
            "payout_hold_reason": self.payout_hold_reason.value,
            "chargeback_status": self.chargeback_status.value,
            "needs_manual_review": self.needs_manual_review,
            "compliance_violation": self.compliance_violation,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }
