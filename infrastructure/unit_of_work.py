"""SQLAlchemy Unit of Work 实现"""
from __future__ import annotations

from typing import Optional, Callable
import inspect

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.common.exceptions import ConcurrencyConflictException, PersistenceException
from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.repositories.dispute_repository import SQLAlchemyDisputeRepository
from infrastructure.repositories.idempotency_repository import SQLAlchemyIdempotencyRepository
from infrastructure.repositories.listing_repository import (
    SQLAlchemyListingRepository,
    SQLAlchemyOfferRepository,
)
from infrastructure.repositories.order_repository import SQLAlchemyOrderRepository
from infrastructure.repositories.side_effect_repository import (
    SQLAlchemyAuditLogRepository,
    SQLAlchemyNotificationRepository,
    SQLAlchemyOutboxRepository,
    SQLAlchemyTimelineRepository,
)


logger = get_logger(__name__)

_REPOSITORIES = {
    "order_repository": SQLAlchemyOrderRepository,
    "listing_repository": SQLAlchemyListingRepository,
    "offer_repository": SQLAlchemyOfferRepository,
    "dispute_repository": SQLAlchemyDisputeRepository,
    "idempotency_repository": SQLAlchemyIdempotencyRepository,
    "outbox_repository": SQLAlchemyOutboxRepository,
    "timeline_repository": SQLAlchemyTimelineRepository,
    "audit_repository": SQLAlchemyAuditLogRepository,
    "notification_repository": SQLAlchemyNotificationRepository,
}


class SQLAlchemyUnitOfWork(AbstractUnitOfWork):
    """基于SQLAlchemy的Unit of Work

    会话工厂由调用方注入（应用启动时创建），不存在模块级默认连接。
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        session: Optional[AsyncSession] = None,
        *,
        readonly: bool = False,
    ) -> None:
        super().__init__(readonly=readonly)
        self._session_factory = session_factory
        self._external_session = session
        self.session: Optional[AsyncSession] = session
        self._transaction = None

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        if self.session is None:
            self.session = self._session_factory()
        for name, repository_cls in _REPOSITORIES.items():
            setattr(self, name, repository_cls(self.session))
        # 仅在非只读模式下显式开启事务
        if not self._readonly:
            self._transaction = await self.session.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        finally:
            tx = self._transaction
            if tx is not None and getattr(tx, "is_active", False):
                res = tx.close()
                if inspect.isawaitable(res):
                    await res
            self._transaction = None
            if self._external_session is None and self.session is not None:
                await self.session.close()
                self.session = None
            for name in _REPOSITORIES:
                setattr(self, name, None)

    async def commit(self) -> None:
        if self._readonly:
            # 只读情况下不提交
            self._committed = True
            return
        if self.session and self.session.in_transaction():
            try:
                await self.session.commit()
            except IntegrityError as exc:
                logger.warning("uow_commit_conflict", error=str(exc))
                raise ConcurrencyConflictException("transaction") from exc
            except SQLAlchemyError as exc:
                logger.error("uow_commit_failed", error=str(exc))
                raise PersistenceException("Transaction commit failed") from exc
        self._committed = True

    async def rollback(self) -> None:
        if self.session and self.session.in_transaction():
            await self.session.rollback()
        self._committed = False


def build_uow_factory(session_factory: Callable[[], AsyncSession]):
    """返回 uow_factory(readonly=False)，供应用服务注入"""

    def factory(*, readonly: bool = False) -> SQLAlchemyUnitOfWork:
        return SQLAlchemyUnitOfWork(session_factory, readonly=readonly)

    return factory
