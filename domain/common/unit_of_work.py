"""Unit of Work 抽象定义"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable

from domain.dispute.repository import DisputeRepository
from domain.idempotency.repository import IdempotencyRepository
from domain.listing.repository import ListingRepository, OfferRepository
from domain.order.repository import OrderRepository
from domain.side_effects.repository import (
    AuditLogRepository,
    NotificationRepository,
    OutboxRepository,
    TimelineRepository,
)


class AbstractUnitOfWork(ABC):
    """应用层事务边界控制抽象"""

    order_repository: OrderRepository
    listing_repository: ListingRepository
    offer_repository: OfferRepository
    dispute_repository: DisputeRepository
    idempotency_repository: IdempotencyRepository
    outbox_repository: OutboxRepository
    timeline_repository: TimelineRepository
    audit_repository: AuditLogRepository
    notification_repository: NotificationRepository

    def __init__(self, *, readonly: bool = False) -> None:
        self._committed = False
        self._readonly = readonly

    async def __aenter__(self) -> "AbstractUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc:
            await self.rollback()
        else:
            # 只在非只读且未显式提交时自动提交
            if not self._readonly and not self._committed:
                await self.commit()

    @abstractmethod
    async def commit(self) -> None:
        """提交事务"""
        ...

    @abstractmethod
    async def rollback(self) -> None:
        """回滚事务"""


# 应用服务依赖的工厂签名：uow_factory(readonly=False) -> AbstractUnitOfWork
UnitOfWorkFactory = Callable[..., AbstractUnitOfWork]
