"""
Listing reservation / sale updater.

``reserve``, ``mark_sold`` and ``release`` run inside the caller's unit of
work so the listing mutation commits (or rolls back) with the order
transition that caused it. ``clear_expired_reservations`` is the periodic
sweep and owns its own transactions.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from core.logging_config import get_logger
from domain.common.timeutils import utcnow
from domain.common.unit_of_work import AbstractUnitOfWork, UnitOfWorkFactory
from domain.listing.entity import Listing, SaleType, infer_sale_type
from domain.order.entity import OrderStatus
from domain.order.state_machine import (
    ListingAction,
    ListingIntent,
    OrderEvent,
    TransitionContext,
    apply_transition,
    can_apply,
)


logger = get_logger(__name__)


class ListingUpdater:
    def __init__(
        self,
        uow_factory: Optional[UnitOfWorkFactory] = None,
        *,
        reservation_ttl: timedelta = timedelta(hours=48),
        dispute_window: timedelta = timedelta(hours=72),
        dispatcher=None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._reservation_ttl = reservation_ttl
        self._dispute_window = dispute_window
        self._dispatcher = dispatcher
        self._clock = clock

    async def _load(self, uow: AbstractUnitOfWork, listing_id: str) -> Optional[Listing]:
        listing = await uow.listing_repository.get(listing_id, for_update=True)
        if listing is None:
            logger.warning("listing_not_found", listing_id=listing_id)
        return listing

    async def reserve(
        self,
        uow: AbstractUnitOfWork,
        listing_id: str,
        order_id: str,
        ttl: Optional[timedelta] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[Listing]:
        listing = await self._load(uow, listing_id)
        if listing is None:
            return None
        if not listing.reserve(order_id, ttl or self._reservation_ttl, now or self._clock()):
            logger.warning(
                "listing_reserve_refused",
                listing_id=listing_id,
                order_id=order_id,
                listing_status=listing.status.value,
                reserved_by=listing.purchase_reserved_by_order_id,
            )
            return None
        logger.info("listing_reserved", listing_id=listing_id, order_id=order_id, until=listing.purchase_reserved_until)
        return await uow.listing_repository.update(listing)

    async def mark_sold(
        self,
        uow: AbstractUnitOfWork,
        listing_id: str,
        sale_type: Optional[SaleType],
        price_cents: int,
        *,
        offer_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Listing]:
        listing = await self._load(uow, listing_id)
        if listing is None:
            return None
        resolved = sale_type or infer_sale_type(offer_id, listing.type)
        listing.mark_sold(resolved, price_cents, now or self._clock())
        logger.info("listing_marked_sold", listing_id=listing_id, sale_type=resolved.value, price_cents=price_cents)
        return await uow.listing_repository.update(listing)

    async def release(
        self,
        uow: AbstractUnitOfWork,
        listing_id: str,
        expected_order_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        listing = await self._load(uow, listing_id)
        if listing is None:
            return False
        if not listing.release(expected_order_id, now or self._clock()):
            # Re-reserved by a newer order since this release was decided
            logger.info(
                "listing_release_skipped",
                listing_id=listing_id,
                expected_order_id=expected_order_id,
                reserved_by=listing.purchase_reserved_by_order_id,
            )
            return False
        await uow.listing_repository.update(listing)
        logger.info("listing_released", listing_id=listing_id, order_id=expected_order_id)
        return True

    async def apply(self, uow: AbstractUnitOfWork, intent: Optional[ListingIntent], *, now: datetime) -> None:
        """Apply the listing mutation a transition asked for."""
        if intent is None:
            return
        if intent.action is ListingAction.RESERVE:
            await self.reserve(uow, intent.listing_id, intent.order_id, now=now)
        elif intent.action is ListingAction.MARK_SOLD:
            await self.mark_sold(
                uow, intent.listing_id, None, intent.price_cents or 0, offer_id=intent.offer_id, now=now
            )
        elif intent.action is ListingAction.RELEASE:
            await self.release(uow, intent.listing_id, intent.order_id, now=now)

    async def clear_expired_reservations(self, now: Optional[datetime] = None, limit: int = 100) -> dict[str, int]:
        """Clear reservations past ``purchase_reserved_until``.

        The linked order is cancelled only while it is still ``pending`` and
        not waiting for manual review; orders awaiting a bank transfer or
        wire keep their status.
        """
        if self._uow_factory is None:
            raise RuntimeError("clear_expired_reservations needs a unit of work factory")
        now = now or self._clock()
        async with self._uow_factory(readonly=True) as uow:
            expired = await uow.listing_repository.list_expired_reservations(now, limit)

        cleared = cancelled = 0
        for candidate in expired:
            outbox_ids: list[int] = []
            async with self._uow_factory() as uow:
                listing = await uow.listing_repository.get(candidate.id, for_update=True)
                until = listing.purchase_reserved_until if listing else None
                if listing is None or until is None or until > now:
                    continue
                order_id = listing.purchase_reserved_by_order_id
                listing.release(order_id, now)
                await uow.listing_repository.update(listing)
                cleared += 1

                order = await uow.order_repository.get(order_id, for_update=True) if order_id else None
                if order is not None and order.status is OrderStatus.PENDING and not order.needs_manual_review \
                        and can_apply(OrderEvent.RESERVATION_EXPIRED, order):
                    ctx = TransitionContext(
                        now=now,
                        dispute_window=self._dispute_window,
                        reservation_ttl=self._reservation_ttl,
                        correlation=f"reservation:{listing.id}:{until.isoformat()}",
                        source="scheduler",
                        reason="reservation expired",
                    )
                    result = apply_transition(OrderEvent.RESERVATION_EXPIRED, order, ctx, created=False)
                    await uow.order_repository.update(order)
                    outbox_ids = await uow.outbox_repository.enqueue(result.effects)
                    cancelled += 1
            logger.info("listing_reservation_expired", listing_id=candidate.id, order_id=order_id, order_cancelled=bool(outbox_ids))
            if outbox_ids and self._dispatcher is not None:
                await self._dispatcher.dispatch(outbox_ids)

        summary = {"expired": len(expired), "cleared": cleared, "cancelled": cancelled}
        logger.info("reservation_sweep_finished", **summary)
        return summary
