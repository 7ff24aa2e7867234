"""
Listing / Offer 仓储接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from .entity import Listing, Offer


class ListingRepository(ABC):

    @abstractmethod
    async def get(self, listing_id: str, *, for_update: bool = False) -> Optional[Listing]:
        pass

    @abstractmethod
    async def list_expired_reservations(self, now: datetime, limit: int = 100) -> List[Listing]:
        """purchase_reserved_until <= now 的 listing"""
        pass

    @abstractmethod
    async def add(self, listing: Listing) -> Listing:
        pass

    @abstractmethod
    async def update(self, listing: Listing) -> Listing:
        pass


class OfferRepository(ABC):

    @abstractmethod
    async def get(self, offer_id: str, *, for_update: bool = False) -> Optional[Offer]:
        pass

    @abstractmethod
    async def add(self, offer: Offer) -> Offer:
        pass

    @abstractmethod
    async def update(self, offer: Offer) -> Offer:
        pass
