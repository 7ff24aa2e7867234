"""
幂等账本记录：每个渠道事件 ID 仅创建一次，从不删除；
处理失败时标记为 failed，渠道重投时原子地重新认领
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from domain.common.timeutils import ensure_utc


class LedgerStatus(str, Enum):
    RECORDED = "recorded"
    FAILED = "failed"


@dataclass(frozen=True)
class LedgerResult:
    is_new: bool
    # 通过事务失败后的复查得出结论时为 True
    rechecked: bool = False
    # 重新认领了一条处理失败的记录
    reclaimed: bool = False


@dataclass
class IdempotencyRecord:
    event_id: str
    event_type: str
    provider: str = "stripe"
    checkout_session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    dispute_id: Optional[str] = None
    charge_id: Optional[str] = None
    payload: dict = field(default_factory=dict)
    status: LedgerStatus = LedgerStatus.RECORDED
    attempts: int = 1
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.created_at = ensure_utc(self.created_at)
