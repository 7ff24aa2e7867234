"""
幂等账本仓储接口
"""
from abc import ABC, abstractmethod
from typing import Optional

from .entity import IdempotencyRecord


class IdempotencyRepository(ABC):

    @abstractmethod
    async def get(self, event_id: str) -> Optional[IdempotencyRecord]:
        pass

    @abstractmethod
    async def add(self, record: IdempotencyRecord) -> IdempotencyRecord:
        """写入记录；主键冲突时抛出 ConcurrencyConflictException"""
        pass

    @abstractmethod
    async def mark_failed(self, event_id: str, error: Optional[str]) -> bool:
        """把 recorded 记录标记为 failed，返回是否有记录被标记"""
        pass

    @abstractmethod
    async def reclaim(self, event_id: str) -> bool:
        """条件更新 failed -> recorded；并发重投中只有一个能认领成功"""
        pass
