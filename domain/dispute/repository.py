"""
Dispute 仓储接口
"""
from abc import ABC, abstractmethod
from typing import Optional

from .entity import Dispute


class DisputeRepository(ABC):

    @abstractmethod
    async def get(self, dispute_id: str, *, for_update: bool = False) -> Optional[Dispute]:
        pass

    @abstractmethod
    async def add(self, dispute: Dispute) -> Dispute:
        pass

    @abstractmethod
    async def update(self, dispute: Dispute) -> Dispute:
        pass
