"""
副作用相关仓储接口：outbox、时间线、审计日志、通知
"""
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from .entity import AuditRecord, Notification, OutboxItem, SideEffect, TimelineEntry


class OutboxRepository(ABC):
    """Outbox 仓储：与状态变更处于同一事务内写入"""

    @abstractmethod
    async def enqueue(self, effects: Iterable[SideEffect]) -> List[int]:
        """写入新的副作用，已存在的 dedupe_key 跳过；返回新写入的 ID"""
        pass

    @abstractmethod
    async def get_for_update(self, item_id: int) -> Optional[OutboxItem]:
        pass

    @abstractmethod
    async def list_pending(self, limit: int = 100) -> List[OutboxItem]:
        pass

    @abstractmethod
    async def list_dead(self, limit: int = 100) -> List[OutboxItem]:
        pass

    @abstractmethod
    async def save(self, item: OutboxItem) -> OutboxItem:
        pass


class TimelineRepository(ABC):

    @abstractmethod
    async def append(self, entry: TimelineEntry) -> bool:
        """追加时间线；(order_id, entry_id) 已存在时返回 False"""
        pass

    @abstractmethod
    async def list_for_order(self, order_id: str) -> List[TimelineEntry]:
        pass


class AuditLogRepository(ABC):

    @abstractmethod
    async def append(self, record: AuditRecord) -> None:
        pass

    @abstractmethod
    async def list_for_order(self, order_id: str) -> List[AuditRecord]:
        pass


class NotificationRepository(ABC):

    @abstractmethod
    async def add_if_absent(self, notification: Notification) -> bool:
        """按 dedupe_key 去重写入通知"""
        pass

    @abstractmethod
    async def list_for_user(self, user_id: str) -> List[Notification]:
        pass
