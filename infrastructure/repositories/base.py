"""
仓储基类：统一把 SQLAlchemy 异常翻译为领域异常
"""
from __future__ import annotations

from typing import Any, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from domain.common.exceptions import ConcurrencyConflictException, PersistenceException
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyRepository:
    entity_name: str = "entity"

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _execute(self, statement: Any):
        try:
            return await self.session.execute(statement)
        except SQLAlchemyError as exc:
            logger.error("repository_query_failed", entity=self.entity_name, error=str(exc))
            raise PersistenceException(details={"entity": self.entity_name}) from exc

    async def _flush(self, key: Optional[str] = None) -> None:
        try:
            await self.session.flush()
        except IntegrityError as exc:
            logger.warning("repository_unique_conflict", entity=self.entity_name, key=key)
            raise ConcurrencyConflictException(self.entity_name, key) from exc
        except SQLAlchemyError as exc:
            logger.error("repository_flush_failed", entity=self.entity_name, key=key, error=str(exc))
            raise PersistenceException(details={"entity": self.entity_name, "key": key}) from exc
