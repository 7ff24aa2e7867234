"""
Listing / Offer 仓储实现
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select

from domain.listing.entity import Listing, ListingStatus, ListingType, Offer, OfferStatus, SaleType
from domain.listing.repository import ListingRepository, OfferRepository
from infrastructure.models.listing import ListingModel, OfferModel
from infrastructure.repositories.base import SQLAlchemyRepository
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyListingRepository(SQLAlchemyRepository, ListingRepository):

    entity_name = "listing"

    def _to_entity(self, model: ListingModel) -> Listing:
        return Listing(
            id=model.id,
            title=model.title,
            type=ListingType(model.type),
            category=model.category,
            status=ListingStatus(model.status),
            seller_id=model.seller_id,
            seller_display_name=model.seller_display_name,
            cover_photo_url=model.cover_photo_url,
            location_label=model.location_label,
            purchase_reserved_by_order_id=model.purchase_reserved_by_order_id,
            purchase_reserved_at=model.purchase_reserved_at,
            purchase_reserved_until=model.purchase_reserved_until,
            offer_reserved_by_offer_id=model.offer_reserved_by_offer_id,
            offer_reserved_at=model.offer_reserved_at,
            sold_at=model.sold_at,
            sold_price_cents=model.sold_price_cents,
            sale_type=SaleType(model.sale_type) if model.sale_type else None,
            ended_at=model.ended_at,
            ended_reason=model.ended_reason,
            updated_at=model.updated_at,
        )

    @staticmethod
    def _copy_mutable(entity: Listing, model: ListingModel) -> None:
        model.status = entity.status.value
        model.purchase_reserved_by_order_id = entity.purchase_reserved_by_order_id
        model.purchase_reserved_at = entity.purchase_reserved_at
        model.purchase_reserved_until = entity.purchase_reserved_until
        model.offer_reserved_by_offer_id = entity.offer_reserved_by_offer_id
        model.offer_reserved_at = entity.offer_reserved_at
        model.sold_at = entity.sold_at
        model.sold_price_cents = entity.sold_price_cents
        model.sale_type = entity.sale_type.value if entity.sale_type else None
        model.ended_at = entity.ended_at
        model.ended_reason = entity.ended_reason
        if entity.updated_at is not None:
            model.updated_at = entity.updated_at

    async def get(self, listing_id: str, *, for_update: bool = False) -> Optional[Listing]:
        stmt = select(ListingModel).where(ListingModel.id == listing_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._execute(stmt)
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def list_expired_reservations(self, now: datetime, limit: int = 100) -> List[Listing]:
        result = await self._execute(
            select(ListingModel)
            .where(
                ListingModel.purchase_reserved_until.is_not(None),
                ListingModel.purchase_reserved_until <= now,
            )
            .order_by(ListingModel.purchase_reserved_until)
            .limit(limit)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def add(self, listing: Listing) -> Listing:
        model = ListingModel(
            id=listing.id,
            title=listing.title,
            type=listing.type.value,
            category=listing.category,
            seller_id=listing.seller_id,
            seller_display_name=listing.seller_display_name,
            cover_photo_url=listing.cover_photo_url,
            location_label=listing.location_label,
        )
        self._copy_mutable(listing, model)
        self.session.add(model)
        await self._flush(key=listing.id)
        return self._to_entity(model)

    async def update(self, listing: Listing) -> Listing:
        model = await self.session.get(ListingModel, listing.id)
        if model is None:
            raise ValueError(f"Listing with id {listing.id} not found")
        self._copy_mutable(listing, model)
        await self._flush(key=listing.id)
        logger.info(
            "listing_updated",
            listing_id=listing.id,
            status=model.status,
            reserved_by=model.purchase_reserved_by_order_id,
        )
        return self._to_entity(model)


class SQLAlchemyOfferRepository(SQLAlchemyRepository, OfferRepository):

    entity_name = "offer"

    def _to_entity(self, model: OfferModel) -> Offer:
        return Offer(
            id=model.id,
            listing_id=model.listing_id,
            status=OfferStatus(model.status),
            order_id=model.order_id,
            checkout_session_id=model.checkout_session_id,
            completed_at=model.completed_at,
            updated_at=model.updated_at,
        )

    async def get(self, offer_id: str, *, for_update: bool = False) -> Optional[Offer]:
        stmt = select(OfferModel).where(OfferModel.id == offer_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._execute(stmt)
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def add(self, offer: Offer) -> Offer:
        model = OfferModel(
            id=offer.id,
            listing_id=offer.listing_id,
            status=offer.status.value,
            order_id=offer.order_id,
            checkout_session_id=offer.checkout_session_id,
            completed_at=offer.completed_at,
        )
        self.session.add(model)
        await self._flush(key=offer.id)
        return self._to_entity(model)

    async def update(self, offer: Offer) -> Offer:
        model = await self.session.get(OfferModel, offer.id)
        if model is None:
            raise ValueError(f"Offer with id {offer.id} not found")
        model.status = offer.status.value
        model.order_id = offer.order_id
        model.checkout_session_id = offer.checkout_session_id
        model.completed_at = offer.completed_at
        await self._flush(key=offer.id)
        return self._to_entity(model)
