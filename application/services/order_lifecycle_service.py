"""
Order lifecycle: applies provider payment events to orders.

Every handler follows the same shape:

1. read what is needed to decide (order, listing) without locks;
2. run the compliance gate, which may call the provider;
3. re-read the order with a row lock, re-check the transition guard and
   persist the transition, the listing mutation and the side-effect
   outbox rows in one transaction;
4. after commit, hand the new outbox rows to the dispatcher.

Provider IO (address lookup, refund) never runs inside a database
transaction. Unique-key conflicts on order insert are retried; on retry
the guard sees the order the concurrent delivery created.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from functools import partial
from typing import Callable, Optional
from uuid import uuid4

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from application.dtos.outcomes import HandlerOutcome
from application.dtos.webhook_events import (
    CheckoutAsyncPaymentFailed,
    CheckoutAsyncPaymentSucceeded,
    CheckoutCompleted,
    CheckoutExpired,
    CheckoutMetadata,
    CheckoutSession,
    PaymentIntentObject,
    WirePaymentCanceled,
    WirePaymentSucceeded,
)
from application.services.compliance_service import ComplianceService
from application.services.listing_updater import ListingUpdater
from application.services.side_effect_dispatcher import SideEffectDispatcher
from core.config import MarketplaceSettings
from core.logging_config import get_logger
from domain.common.exceptions import ConcurrencyConflictException, OrderNotFoundException
from domain.common.timeutils import utcnow
from domain.common.unit_of_work import AbstractUnitOfWork, UnitOfWorkFactory
from domain.compliance.gate import ComplianceDecision, normalize_category, requires_transfer_permit
from domain.listing.entity import Listing
from domain.order.entity import Order, OrderStatus, PaymentMethod, cents_to_amount
from domain.order.state_machine import (
    OrderEvent,
    TransitionContext,
    TransitionResult,
    apply_transition,
    can_apply,
)
from domain.side_effects.entity import TimelineEntry, audit_record, timeline_entry


logger = get_logger(__name__)

_PAYMENT_METHOD_ALIASES = {"ach": PaymentMethod.ACH_DEBIT}


def infer_payment_method(session: CheckoutSession) -> PaymentMethod:
    """Metadata wins; otherwise a us_bank_account session is ACH; otherwise card."""
    raw = (session.metadata.payment_method or "").strip().lower()
    if raw in _PAYMENT_METHOD_ALIASES:
        return _PAYMENT_METHOD_ALIASES[raw]
    try:
        return PaymentMethod(raw)
    except ValueError:
        pass
    if "us_bank_account" in session.payment_method_types:
        return PaymentMethod.ACH_DEBIT
    return PaymentMethod.CARD


def fee_snapshot(amount_cents: int, meta: CheckoutMetadata, default_percent: float) -> tuple[int, int, Decimal]:
    """Return (platform_fee_cents, seller_amount_cents, fee_percent) fixed at checkout."""
    percent = Decimal(str(meta.platform_fee_percent if meta.platform_fee_percent is not None else default_percent))
    if meta.platform_fee is not None:
        fee = int(meta.platform_fee)
    else:
        fee = int((Decimal(amount_cents) * percent).to_integral_value(rounding=ROUND_HALF_UP))
    seller = int(meta.seller_amount) if meta.seller_amount is not None else amount_cents - fee
    if fee + seller != amount_cents:
        logger.warning(
            "fee_snapshot_inconsistent",
            amount_cents=amount_cents,
            platform_fee_cents=fee,
            seller_amount_cents=seller,
        )
        seller = amount_cents - fee
    return fee, seller, percent


async def _find_for_session(uow: AbstractUnitOfWork, *, session: CheckoutSession, for_update: bool) -> Optional[Order]:
    order = None
    if session.metadata.order_id:
        order = await uow.order_repository.get(session.metadata.order_id, for_update=for_update)
    if order is None:
        order = await uow.order_repository.find_by_checkout_session(session.id, for_update=for_update)
    return order


async def _find_for_payment_intent(
    uow: AbstractUnitOfWork, *, payment_intent: PaymentIntentObject, for_update: bool
) -> Optional[Order]:
    order = None
    if payment_intent.metadata.order_id:
        order = await uow.order_repository.get(payment_intent.metadata.order_id, for_update=for_update)
    if order is None:
        order = await uow.order_repository.find_by_payment_intent(payment_intent.id, for_update=for_update)
    return order


class OrderLifecycleService:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        compliance: ComplianceService,
        listings: ListingUpdater,
        dispatcher: SideEffectDispatcher,
        *,
        config: Optional[MarketplaceSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        cfg = config or MarketplaceSettings()
        self._uow_factory = uow_factory
        self._compliance = compliance
        self._listings = listings
        self._dispatcher = dispatcher
        self._clock = clock
        self._dispute_window = timedelta(hours=cfg.dispute_window_hours)
        self._reservation_ttl = timedelta(hours=cfg.async_reservation_hours)
        self._fee_percent = cfg.platform_fee_percent
        self._conflict_attempts = max(1, cfg.conflict_retry_attempts)

    # ------------------------------------------------------------------
    # helpers

    def _context(self, correlation: str, now: datetime, **kwargs) -> TransitionContext:
        return TransitionContext(
            now=now,
            dispute_window=self._dispute_window,
            reservation_ttl=self._reservation_ttl,
            correlation=correlation,
            **kwargs,
        )

    async def _retry_on_conflict(self, fn):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._conflict_attempts),
            wait=wait_exponential(multiplier=0.05, max=0.5),
            retry=retry_if_exception_type(ConcurrencyConflictException),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info("order_write_retry", attempt=attempt.retry_state.attempt_number)
                return await fn()

    async def _persist(self, uow: AbstractUnitOfWork, result: TransitionResult, now: datetime) -> list[int]:
        if result.created:
            await uow.order_repository.add(result.order)
        else:
            await uow.order_repository.update(result.order)
        await self._listings.apply(uow, result.listing_intent, now=now)
        return await uow.outbox_repository.enqueue(result.effects)

    async def _run(self, write) -> HandlerOutcome:
        """Run a write phase with conflict retry, then drain its outbox rows."""
        outcome, outbox_ids = await self._retry_on_conflict(write)
        if outbox_ids:
            await self._dispatcher.dispatch(outbox_ids)
        return outcome

    @staticmethod
    def _skip(event: OrderEvent, order: Optional[Order], correlation: str) -> HandlerOutcome:
        logger.info(
            "order_transition_skipped",
            order_event=event.value,
            order_id=order.id if order else None,
            status=order.status.value if order else None,
            correlation=correlation,
        )
        return HandlerOutcome(
            "skipped",
            order_id=order.id if order else None,
            status=order.status.value if order else None,
            detail=event.value,
        )

    @staticmethod
    def _applied(result: TransitionResult, action: str = "applied") -> HandlerOutcome:
        order = result.order
        logger.info(
            "order_transition_applied",
            order_event=result.event.value,
            order_id=order.id,
            previous_status=result.previous_status.value if result.previous_status else None,
            status=order.status.value,
            created=result.created,
        )
        return HandlerOutcome(action, order_id=order.id, status=order.status.value, detail=result.event.value)

    def _draft_order(
        self,
        order_id: str,
        session: CheckoutSession,
        listing: Listing,
        method: PaymentMethod,
        now: datetime,
    ) -> Order:
        meta = session.metadata
        amount_cents = int(session.amount_total or 0)
        fee_cents, seller_cents, percent = fee_snapshot(amount_cents, meta, self._fee_percent)
        return Order(
            id=order_id,
            listing_id=listing.id,
            buyer_id=meta.buyer_id,
            seller_id=meta.seller_id,
            status=OrderStatus.PENDING,
            payment_method=method,
            amount=cents_to_amount(amount_cents),
            platform_fee=cents_to_amount(fee_cents),
            seller_amount=cents_to_amount(seller_cents),
            platform_fee_percent=percent,
            currency=(session.currency or "usd").lower(),
            quantity=max(1, meta.quantity or 1),
            checkout_session_id=session.id,
            payment_intent_id=session.payment_intent,
            seller_stripe_account_id=meta.seller_stripe_account_id,
            offer_id=meta.offer_id,
            transfer_permit_required=requires_transfer_permit(listing.category),
            listing_title=listing.title,
            listing_snapshot=listing.display_snapshot(),
            seller_snapshot={"display_name": listing.seller_display_name},
            created_at=now,
            updated_at=now,
        )

    # ------------------------------------------------------------------
    # checkout.session.*

    async def handle_checkout_completed(self, event: CheckoutCompleted) -> HandlerOutcome:
        return await self._checkout(event.event_id, event.session, funds_confirmed=event.session.is_paid)

    async def handle_async_payment_succeeded(self, event: CheckoutAsyncPaymentSucceeded) -> HandlerOutcome:
        session = event.session
        find = partial(_find_for_session, session=session)
        async with self._uow_factory(readonly=True) as uow:
            existing = await find(uow, for_update=False)
        if existing is None:
            # Arrived before checkout.session.completed: create the order from the session
            logger.info("async_payment_backfill", checkout_session_id=session.id, event_id=event.event_id)
            return await self._checkout(event.event_id, session, funds_confirmed=True)
        return await self._confirm_deferred_funds(
            event.event_id,
            OrderEvent.ASYNC_PAYMENT_SUCCEEDED,
            find=find,
            existing=existing,
            known_states=(session.billing_state, session.shipping_state),
            payment_intent_id=session.payment_intent or existing.payment_intent_id,
            reference=session.id,
        )

    async def handle_async_payment_failed(self, event: CheckoutAsyncPaymentFailed) -> HandlerOutcome:
        return await self._cancel(
            event.event_id,
            OrderEvent.ASYNC_PAYMENT_FAILED,
            partial(_find_for_session, session=event.session),
        )

    async def handle_checkout_expired(self, event: CheckoutExpired) -> HandlerOutcome:
        return await self._cancel(
            event.event_id,
            OrderEvent.CHECKOUT_EXPIRED,
            partial(_find_for_session, session=event.session),
        )

    # ------------------------------------------------------------------
    # payment_intent.* (wire only)

    async def handle_wire_succeeded(self, event: WirePaymentSucceeded) -> HandlerOutcome:
        pi = event.payment_intent
        find = partial(_find_for_payment_intent, payment_intent=pi)
        async with self._uow_factory(readonly=True) as uow:
            existing = await find(uow, for_update=False)
        if existing is None:
            logger.warning("wire_order_not_found", payment_intent_id=pi.id, order_id=pi.metadata.order_id)
            return HandlerOutcome("not_found", detail="order")
        return await self._confirm_deferred_funds(
            event.event_id,
            OrderEvent.WIRE_SUCCEEDED,
            find=find,
            existing=existing,
            known_states=(pi.shipping_state, pi.billing_state),
            payment_intent_id=pi.id,
            reference=existing.checkout_session_id or pi.id,
        )

    async def handle_wire_canceled(self, event: WirePaymentCanceled) -> HandlerOutcome:
        return await self._cancel(
            event.event_id,
            OrderEvent.WIRE_CANCELED,
            partial(_find_for_payment_intent, payment_intent=event.payment_intent),
        )

    # ------------------------------------------------------------------
    # flows

    async def _checkout(self, correlation: str, session: CheckoutSession, *, funds_confirmed: bool) -> HandlerOutcome:
        meta = session.metadata
        order_event = OrderEvent.CHECKOUT_CONFIRMED if funds_confirmed else OrderEvent.CHECKOUT_AWAITING
        find = partial(_find_for_session, session=session)

        async with self._uow_factory(readonly=True) as uow:
            existing = await find(uow, for_update=False)
            listing = await uow.listing_repository.get(meta.listing_id)
        if not can_apply(order_event, existing):
            return self._skip(order_event, existing, correlation)
        if listing is None:
            logger.warning("listing_not_found", listing_id=meta.listing_id, checkout_session_id=session.id)
            return HandlerOutcome("not_found", detail="listing")
        if not listing.is_available_for(existing.id if existing else meta.order_id, self._clock()):
            logger.warning(
                "listing_unavailable",
                listing_id=listing.id,
                listing_status=listing.status.value,
                checkout_session_id=session.id,
            )
            return HandlerOutcome("skipped", detail="listing_unavailable")
        category = normalize_category(listing.category)
        if category is None:
            logger.error("listing_category_invalid", listing_id=listing.id, category=listing.category)
            return HandlerOutcome("invalid", detail="listing_category")

        method = infer_payment_method(session)
        order_id = existing.id if existing else (meta.order_id or uuid4().hex)
        draft = partial(self._draft_order, order_id, session, listing, method)

        decision, state = await self._compliance.decide(
            category,
            session.billing_state,
            session.shipping_state,
            payment_intent_id=session.payment_intent,
            funds_confirmed=funds_confirmed,
        )
        if decision is ComplianceDecision.BLOCK:
            return await self._compliance_block(
                correlation,
                find=find,
                draft=draft,
                order_id=order_id,
                listing_id=listing.id,
                payment_intent_id=session.payment_intent,
                reference=session.id,
                buyer_state=state,
            )
        if decision is ComplianceDecision.DEFER:
            logger.info(
                "compliance_deferred",
                checkout_session_id=session.id,
                category=category.value,
                payment_method=method.value,
            )

        async def _write():
            now = self._clock()
            async with self._uow_factory() as uow:
                order = await find(uow, for_update=True)
                if not can_apply(order_event, order):
                    return self._skip(order_event, order, correlation), []
                locked_listing = await uow.listing_repository.get(listing.id, for_update=True)
                if locked_listing is None or not locked_listing.is_available_for(order.id if order else order_id, now):
                    logger.warning("listing_unavailable", listing_id=listing.id, checkout_session_id=session.id)
                    return HandlerOutcome("skipped", detail="listing_unavailable"), []
                created = order is None
                if created:
                    order = draft(now)
                elif session.payment_intent and not order.payment_intent_id:
                    order.payment_intent_id = session.payment_intent
                result = apply_transition(order_event, order, self._context(correlation, now), created=created)
                ids = await self._persist(uow, result, now)
            return self._applied(result), ids

        return await self._run(_write)

    async def _confirm_deferred_funds(
        self,
        correlation: str,
        order_event: OrderEvent,
        *,
        find,
        existing: Order,
        known_states: tuple[Optional[str], ...],
        payment_intent_id: Optional[str],
        reference: str,
    ) -> HandlerOutcome:
        """Funds for an order created earlier have arrived; run the deferred gate."""
        if not can_apply(order_event, existing):
            return self._skip(order_event, existing, correlation)

        async with self._uow_factory(readonly=True) as uow:
            listing = await uow.listing_repository.get(existing.listing_id)
        raw_category = listing.category if listing else existing.listing_snapshot.get("category")
        category = normalize_category(raw_category)
        if category is None:
            logger.error("listing_category_invalid", listing_id=existing.listing_id, category=raw_category)
            return HandlerOutcome("invalid", order_id=existing.id, detail="listing_category")

        decision, state = await self._compliance.decide(
            category, *known_states, payment_intent_id=payment_intent_id, funds_confirmed=True
        )
        if decision is ComplianceDecision.BLOCK:
            return await self._compliance_block(
                correlation,
                find=find,
                draft=None,
                order_id=existing.id,
                listing_id=existing.listing_id,
                payment_intent_id=payment_intent_id,
                reference=reference,
                buyer_state=state,
            )

        async def _write():
            now = self._clock()
            async with self._uow_factory() as uow:
                order = await find(uow, for_update=True)
                if order is None:
                    logger.warning("order_not_found", order_id=existing.id, correlation=correlation)
                    return HandlerOutcome("not_found", detail="order"), []
                if not can_apply(order_event, order):
                    return self._skip(order_event, order, correlation), []
                if payment_intent_id and not order.payment_intent_id:
                    order.payment_intent_id = payment_intent_id
                locked_listing = await uow.listing_repository.get(order.listing_id, for_update=True)
                if locked_listing is not None and not locked_listing.is_available_for(order.id, now):
                    # Sold or reserved by another order while the funds were in flight
                    logger.error(
                        "deferred_funds_listing_unavailable",
                        order_id=order.id,
                        listing_id=order.listing_id,
                        listing_status=locked_listing.status.value,
                        reserved_by=locked_listing.purchase_reserved_by_order_id,
                        order_event=order_event.value,
                    )
                    ctx = self._context(correlation, now, reason="listing no longer available")
                    result = apply_transition(OrderEvent.LISTING_UNAVAILABLE, order, ctx, created=False)
                    ids = await self._persist(uow, result, now)
                    return self._applied(result, "manual_review"), ids
                result = apply_transition(order_event, order, self._context(correlation, now), created=False)
                ids = await self._persist(uow, result, now)
            return self._applied(result), ids

        return await self._run(_write)

    async def _compliance_block(
        self,
        correlation: str,
        *,
        find,
        draft: Optional[Callable[[datetime], Order]],
        order_id: str,
        listing_id: str,
        payment_intent_id: Optional[str],
        reference: str,
        buyer_state: Optional[str],
    ) -> HandlerOutcome:
        """Refund a sale the gate blocked; fall back to manual review if the refund fails."""
        async with self._uow_factory(readonly=True) as uow:
            existing = await find(uow, for_update=False)
        if existing is not None and existing.status is OrderStatus.REFUNDED:
            logger.info("compliance_refund_already_applied", order_id=existing.id, refund_id=existing.refund_id)
            return HandlerOutcome("skipped", order_id=existing.id, status=existing.status.value, detail="already_refunded")

        reason = (
            f"Buyer state {buyer_state or 'unresolved'} is outside the permitted region "
            f"{self._compliance.allowed_state}"
        )
        logger.warning(
            "compliance_blocked",
            order_id=order_id,
            listing_id=listing_id,
            buyer_state=buyer_state,
            allowed_state=self._compliance.allowed_state,
        )
        refund = await self._compliance.refund(
            payment_intent_id=payment_intent_id,
            reference=reference,
            order_id=order_id,
            listing_id=listing_id,
            reason=reason,
        )
        order_event = OrderEvent.COMPLIANCE_REFUNDED if refund.ok else OrderEvent.COMPLIANCE_REVIEW

        async def _write():
            now = self._clock()
            async with self._uow_factory() as uow:
                order = await find(uow, for_update=True)
                if not can_apply(order_event, order):
                    return self._skip(order_event, order, correlation), []
                created = order is None
                if created:
                    if draft is None:
                        logger.warning("order_not_found", order_id=order_id, correlation=correlation)
                        return HandlerOutcome("not_found", detail="order"), []
                    order = draft(now)
                if payment_intent_id and not order.payment_intent_id:
                    order.payment_intent_id = payment_intent_id
                ctx = self._context(correlation, now, refund_id=refund.refund_id, reason=reason)
                result = apply_transition(order_event, order, ctx, created=created)
                ids = await self._persist(uow, result, now)
            if not refund.ok:
                logger.error("order_needs_manual_review", order_id=result.order.id, error=refund.error)
            return self._applied(result, "refunded" if refund.ok else "manual_review"), ids

        return await self._run(_write)

    async def _cancel(self, correlation: str, order_event: OrderEvent, find) -> HandlerOutcome:
        async def _write():
            now = self._clock()
            async with self._uow_factory() as uow:
                order = await find(uow, for_update=True)
                if order is None:
                    logger.info("order_not_found", order_event=order_event.value, correlation=correlation)
                    return HandlerOutcome("not_found", detail="order"), []
                if not can_apply(order_event, order):
                    return self._skip(order_event, order, correlation), []
                result = apply_transition(order_event, order, self._context(correlation, now), created=False)
                ids = await self._persist(uow, result, now)
            return self._applied(result), ids

        return await self._run(_write)

    # ------------------------------------------------------------------
    # operator actions

    async def set_admin_hold(self, order_id: str, *, hold: bool, reason: Optional[str], actor: str) -> Order:
        """Place or clear an operator hold. Clearing also resets the payout hold and manual review."""
        now = self._clock()
        async with self._uow_factory() as uow:
            order = await uow.order_repository.get(order_id, for_update=True)
            if order is None:
                raise OrderNotFoundException(order_id)
            before = order.snapshot()
            if hold:
                order.place_admin_hold(reason or "admin hold", now)
                action, entry_type, label = "admin_hold_placed", "ADMIN_HOLD_PLACED", "Order placed on hold"
            else:
                order.release_admin_hold(now)
                action, entry_type, label = "admin_hold_removed", "ADMIN_HOLD_REMOVED", "Order hold removed"
            order = await uow.order_repository.update(order)
            stamp = now.isoformat()
            ids = await uow.outbox_repository.enqueue([
                timeline_entry(order.id, f"{entry_type}:{stamp}", entry_type, label, actor=actor,
                               visibility="admin", meta={"reason": reason}),
                audit_record(
                    action,
                    correlation=stamp,
                    order_id=order.id,
                    listing_id=order.listing_id,
                    before=before,
                    after=order.snapshot(),
                    actor_uid=actor,
                    actor_role="admin",
                    source="admin",
                    metadata={"reason": reason},
                ),
            ])
        logger.info("admin_hold_changed", order_id=order_id, hold=hold, actor=actor)
        await self._dispatcher.dispatch(ids)
        return order

    async def get_order_with_timeline(self, order_id: str) -> tuple[Order, list[TimelineEntry]]:
        async with self._uow_factory(readonly=True) as uow:
            order = await uow.order_repository.get(order_id)
            if order is None:
                raise OrderNotFoundException(order_id)
            timeline = await uow.timeline_repository.list_for_order(order_id)
        return order, timeline
