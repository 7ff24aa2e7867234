"""
Listing / Offer 数据库模型
"""
from sqlalchemy import Column, DateTime, Integer, String, Index
from datetime import datetime, timezone

from .base import Base


class ListingModel(Base):
    __tablename__ = "listings"

    id = Column(String(64), primary_key=True)
    title = Column(String(500), nullable=False)
    type = Column(String(16), nullable=False, comment="auction/fixed/classified")
    category = Column(String(64), nullable=False, index=True)
    status = Column(String(16), nullable=False, index=True, comment="draft/pending/active/expired/sold/removed")
    seller_id = Column(String(64), nullable=False, index=True)
    seller_display_name = Column(String(255), nullable=True)
    cover_photo_url = Column(String(1024), nullable=True)
    location_label = Column(String(255), nullable=True)

    # 异步支付预留
    purchase_reserved_by_order_id = Column(String(64), nullable=True)
    purchase_reserved_at = Column(DateTime(timezone=True), nullable=True)
    purchase_reserved_until = Column(DateTime(timezone=True), nullable=True, comment="预留过期时间")
    offer_reserved_by_offer_id = Column(String(64), nullable=True)
    offer_reserved_at = Column(DateTime(timezone=True), nullable=True)

    # 成交
    sold_at = Column(DateTime(timezone=True), nullable=True)
    sold_price_cents = Column(Integer, nullable=True)
    sale_type = Column(String(16), nullable=True, comment="offer/auction/buy_now/classified")
    ended_at = Column(DateTime(timezone=True), nullable=True)
    ended_reason = Column(String(32), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_listings_reserved_until", "purchase_reserved_until"),
    )


class OfferModel(Base):
    __tablename__ = "offers"

    id = Column(String(64), primary_key=True)
    listing_id = Column(String(64), nullable=False, index=True)
    status = Column(String(16), nullable=False, default="open")
    order_id = Column(String(64), nullable=True)
    checkout_session_id = Column(String(255), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
