"""
Listing 实体（仅包含订单生命周期会改动的字段与展示快照所需字段）
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from domain.common.timeutils import ensure_utc


class ListingStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    SOLD = "sold"
    REMOVED = "removed"


class ListingType(str, Enum):
    AUCTION = "auction"
    FIXED = "fixed"
    CLASSIFIED = "classified"


class SaleType(str, Enum):
    OFFER = "offer"
    AUCTION = "auction"
    BUY_NOW = "buy_now"
    CLASSIFIED = "classified"


class OfferStatus(str, Enum):
    OPEN = "open"
    ACCEPTED = "accepted"
    COMPLETED = "completed"
    DECLINED = "declined"
    EXPIRED = "expired"


def infer_sale_type(offer_id: Optional[str], listing_type: ListingType) -> SaleType:
    """来自已接受报价的订单记为 offer，否则按 listing 类型推断"""
    if offer_id:
        return SaleType.OFFER
    if listing_type is ListingType.AUCTION:
        return SaleType.AUCTION
    if listing_type is ListingType.FIXED:
        return SaleType.BUY_NOW
    return SaleType.CLASSIFIED


@dataclass
class Listing:
    id: str
    title: str
    type: ListingType
    category: str
    status: ListingStatus
    seller_id: str
    seller_display_name: Optional[str] = None
    cover_photo_url: Optional[str] = None
    location_label: Optional[str] = None

    purchase_reserved_by_order_id: Optional[str] = None
    purchase_reserved_at: Optional[datetime] = None
    purchase_reserved_until: Optional[datetime] = None
    offer_reserved_by_offer_id: Optional[str] = None
    offer_reserved_at: Optional[datetime] = None

    sold_at: Optional[datetime] = None
    sold_price_cents: Optional[int] = None
    sale_type: Optional[SaleType] = None
    ended_at: Optional[datetime] = None
    ended_reason: Optional[str] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.purchase_reserved_at = ensure_utc(self.purchase_reserved_at)
        self.purchase_reserved_until = ensure_utc(self.purchase_reserved_until)
        self.offer_reserved_at = ensure_utc(self.offer_reserved_at)
        self.sold_at = ensure_utc(self.sold_at)
        self.ended_at = ensure_utc(self.ended_at)
        self.updated_at = ensure_utc(self.updated_at)

    @property
    def is_available_for_purchase(self) -> bool:
        """active，或已结束但仍待成交的拍卖；已售出的不可再购买"""
        if self.status is ListingStatus.SOLD or self.sold_at is not None:
            return False
        if self.status is ListingStatus.ACTIVE:
            return True
        return self.status is ListingStatus.EXPIRED and self.type is ListingType.AUCTION

    def is_available_for(self, order_id: Optional[str], now: datetime) -> bool:
        """可购买，且没有被其他订单持有未过期的预留"""
        if not self.is_available_for_purchase:
            return False
        holder = self.purchase_reserved_by_order_id
        if holder is None or holder == order_id:
            return True
        return self.purchase_reserved_until is not None and self.purchase_reserved_until <= now

    def reserve(self, order_id: str, ttl: timedelta, now: datetime) -> bool:
        """预留给 order_id；已售出或被其他订单有效预留时拒绝，返回是否预留成功"""
        if not self.is_available_for(order_id, now):
            return False
        self.purchase_reserved_by_order_id = order_id
        self.purchase_reserved_at = now
        self.purchase_reserved_until = now + ttl
        self.updated_at = now
        return True

    def mark_sold(self, sale_type: SaleType, price_cents: int, now: datetime) -> None:
        self.status = ListingStatus.SOLD
        self.sold_at = now
        self.sold_price_cents = price_cents
        self.sale_type = sale_type
        self.ended_at = now
        self.ended_reason = "sold"
        self._clear_reservations()
        self.updated_at = now

    def release(self, expected_order_id: str, now: datetime) -> bool:
        """只有预留仍指向 expected_order_id 时才释放，返回是否实际释放"""
        if self.purchase_reserved_by_order_id != expected_order_id:
            return False
        self.purchase_reserved_by_order_id = None
        self.purchase_reserved_at = None
        self.purchase_reserved_until = None
        self.updated_at = now
        return True

    def _clear_reservations(self) -> None:
        self.purchase_reserved_by_order_id = None
        self.purchase_reserved_at = None
        self.purchase_reserved_until = None
        self.offer_reserved_by_offer_id = None
        self.offer_reserved_at = None

    def display_snapshot(self) -> dict:
        return {
            "title": self.title,
            "type": self.type.value,
            "category": self.category,
            "cover_photo_url": self.cover_photo_url,
            "location_label": self.location_label,
        }


@dataclass
class Offer:
    id: str
    listing_id: str
    status: OfferStatus
    order_id: Optional[str] = None
    checkout_session_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.completed_at = ensure_utc(self.completed_at)
        self.updated_at = ensure_utc(self.updated_at)

    def link(self, order_id: str, checkout_session_id: Optional[str], now: datetime, *, completed: bool) -> None:
        self.order_id = order_id
        if checkout_session_id:
            self.checkout_session_id = checkout_session_id
        if completed and self.status is not OfferStatus.COMPLETED:
            self.status = OfferStatus.COMPLETED
            self.completed_at = now
        self.updated_at = now
