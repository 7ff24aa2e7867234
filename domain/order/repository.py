"""
订单仓储接口
"""
from abc import ABC, abstractmethod
from typing import Optional

from .entity import Order


class OrderRepository(ABC):
    """订单仓储抽象接口

    所有 for_update=True 的读取在事务内加行锁，
    保证 webhook 处理的读-改-写是原子的。
    """

    @abstractmethod
    async def get(self, order_id: str, *, for_update: bool = False) -> Optional[Order]:
        pass

    @abstractmethod
    async def find_by_checkout_session(self, checkout_session_id: str, *, for_update: bool = False) -> Optional[Order]:
        pass

    @abstractmethod
    async def find_by_payment_intent(self, payment_intent_id: str, *, for_update: bool = False) -> Optional[Order]:
        pass

    @abstractmethod
    async def add(self, order: Order) -> Order:
        """新增订单；checkout_session_id 冲突时抛出 ConcurrencyConflictException"""
        pass

    @abstractmethod
    async def update(self, order: Order) -> Order:
        pass
