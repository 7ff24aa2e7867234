"""
Dispute (chargeback) 实体 - 以渠道 dispute ID 为键的次级状态机
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from domain.common.timeutils import ensure_utc
from shared.codes.payment_codes import DISPUTE_STATUS_TO_CHARGEBACK


class DisputeStatus(str, Enum):
    OPEN = "open"
    WON = "won"
    LOST = "lost"


def normalize_dispute_status(provider_status: Optional[str]) -> DisputeStatus:
    """渠道状态归一为 open|won|lost，未知状态视为 open"""
    mapped = DISPUTE_STATUS_TO_CHARGEBACK.get((provider_status or "").lower(), "open")
    return DisputeStatus(mapped)


@dataclass
class Dispute:
    id: str
    status: DisputeStatus
    amount: int  # 最小货币单位
    currency: str
    reason: Optional[str] = None
    provider_status: Optional[str] = None
    charge_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    order_id: Optional[str] = None
    funds_withdrawn_at: Optional[datetime] = None
    funds_reinstated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.funds_withdrawn_at = ensure_utc(self.funds_withdrawn_at)
        self.funds_reinstated_at = ensure_utc(self.funds_reinstated_at)
        self.created_at = ensure_utc(self.created_at)
        self.updated_at = ensure_utc(self.updated_at)

    def merge_missing(
        self,
        *,
        amount: Optional[int],
        currency: Optional[str],
        reason: Optional[str],
        charge_id: Optional[str],
        payment_intent_id: Optional[str],
        now: datetime,
    ) -> None:
        """created 事件晚到时只补齐缺失字段，不覆盖已有状态"""
        if not self.amount and amount:
            self.amount = amount
        self.currency = self.currency or (currency or "usd")
        self.reason = self.reason or reason
        self.charge_id = self.charge_id or charge_id
        self.payment_intent_id = self.payment_intent_id or payment_intent_id
        self.updated_at = now

    def apply_provider_status(self, provider_status: Optional[str], now: datetime) -> None:
        self.provider_status = provider_status
        self.status = normalize_dispute_status(provider_status)
        self.updated_at = now
