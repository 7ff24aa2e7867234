import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from application.dtos.payments import PaymentIntentDetails
from application.dtos.webhook_events import parse_provider_event
from domain.common.exceptions import OrderNotFoundException
from domain.common.timeutils import utcnow
from domain.idempotency.entity import LedgerStatus
from domain.listing.entity import ListingStatus, SaleType
from domain.order.entity import OrderStatus, PaymentMethod
from infrastructure.external.payments.exceptions import PaymentProviderError
from infrastructure.repositories.order_repository import SQLAlchemyOrderRepository
from tests.helpers import (
    checkout_event,
    deliver,
    load_audit,
    load_listing,
    load_notifications,
    load_order,
    load_timeline,
    payment_intent_event,
    seed_listing,
    seed_offer,
)


@pytest.mark.asyncio
async def test_card_checkout_confirms_order_and_sells_listing(services, uow_factory):
    await seed_listing(uow_factory)

    ack = await deliver(services, checkout_event("evt_1", "cs_1"))
    assert not ack.duplicate

    order = await load_order(uow_factory, session_id="cs_1")
    assert order.status is OrderStatus.PAID_HELD
    assert order.payment_method is PaymentMethod.CARD
    assert order.amount == Decimal("100.00")
    assert order.platform_fee == Decimal("8.00")
    assert order.seller_amount == Decimal("92.00")
    assert order.payment_intent_id == "pi_cs_1"
    assert order.dispute_deadline_at - order.paid_at == timedelta(hours=72)
    assert order.listing_title == "Listing lst_1"

    listing = await load_listing(uow_factory, "lst_1")
    assert listing.status is ListingStatus.SOLD
    assert listing.sold_price_cents == 10000
    assert listing.sale_type is SaleType.BUY_NOW

    types = [entry.type for entry in await load_timeline(uow_factory, order.id)]
    assert types[:3] == ["CHECKOUT_SESSION_CREATED", "PAYMENT_AUTHORIZED", "FUNDS_HELD"]
    audit = await load_audit(uow_factory, order.id)
    assert [a.action_type for a in audit] == ["order_created"]


@pytest.mark.asyncio
async def test_redelivery_does_not_duplicate_anything(services, uow_factory):
    await seed_listing(uow_factory)
    event = checkout_event("evt_1", "cs_1")

    await deliver(services, event)
    ack = await deliver(services, event)
    assert ack.duplicate

    # Same session under a new event ID is refused by the transition guard
    outcome = await services.orders.handle_checkout_completed(parse_provider_event(checkout_event("evt_2", "cs_1")))
    assert outcome.action == "skipped"

    order = await load_order(uow_factory, session_id="cs_1")
    confirmed = [n for n in await load_notifications(uow_factory, "buyer_1") if n.event_type == "Order.Confirmed"]
    assert len(confirmed) == 1
    received = [n for n in await load_notifications(uow_factory, "seller_1") if n.event_type == "Order.Received"]
    assert len(received) == 1
    assert len(await load_audit(uow_factory, order.id)) == 1


@pytest.mark.asyncio
async def test_fee_snapshot_from_metadata_is_kept(services, uow_factory):
    await seed_listing(uow_factory)
    await deliver(services, checkout_event(
        "evt_1", "cs_1", payment_status="unpaid", payment_method_types=["us_bank_account"],
        platformFee=1500, sellerAmount=8500, platformFeePercent=0.15,
    ))
    await deliver(services, checkout_event(
        "evt_2", "cs_1", event_type="checkout.session.async_payment_succeeded",
        payment_method_types=["us_bank_account"],
    ))

    order = await load_order(uow_factory, session_id="cs_1")
    assert order.status is OrderStatus.PAID_HELD
    assert order.platform_fee == Decimal("15.00")
    assert order.seller_amount == Decimal("85.00")
    assert order.platform_fee_percent == Decimal("0.15")


@pytest.mark.asyncio
async def test_ach_checkout_waits_for_funds_then_confirms(services, uow_factory):
    await seed_listing(uow_factory)

    await deliver(services, checkout_event(
        "evt_1", "cs_ach", payment_status="unpaid", payment_method_types=["us_bank_account"],
    ))
    order = await load_order(uow_factory, session_id="cs_ach")
    assert order.status is OrderStatus.AWAITING_BANK_TRANSFER
    assert order.payment_method is PaymentMethod.ACH_DEBIT
    assert order.paid_at is None
    listing = await load_listing(uow_factory, "lst_1")
    assert listing.status is ListingStatus.ACTIVE
    assert listing.purchase_reserved_by_order_id == order.id
    assert listing.purchase_reserved_until - listing.purchase_reserved_at == timedelta(hours=48)

    await deliver(services, checkout_event(
        "evt_2", "cs_ach", event_type="checkout.session.async_payment_succeeded",
        payment_method_types=["us_bank_account"],
    ))
    order = await load_order(uow_factory, session_id="cs_ach")
    assert order.status is OrderStatus.PAID_HELD
    listing = await load_listing(uow_factory, "lst_1")
    assert listing.status is ListingStatus.SOLD
    assert listing.purchase_reserved_by_order_id is None


@pytest.mark.asyncio
async def test_async_success_before_completed_converges(services, uow_factory):
    await seed_listing(uow_factory)

    await deliver(services, checkout_event(
        "evt_2", "cs_ooo", event_type="checkout.session.async_payment_succeeded",
        payment_method_types=["us_bank_account"],
    ))
    await deliver(services, checkout_event(
        "evt_1", "cs_ooo", payment_status="unpaid", payment_method_types=["us_bank_account"],
    ))

    order = await load_order(uow_factory, session_id="cs_ooo")
    assert order.status is OrderStatus.PAID_HELD
    assert (await load_listing(uow_factory, "lst_1")).status is ListingStatus.SOLD


@pytest.mark.asyncio
async def test_async_failure_cancels_and_releases(services, uow_factory):
    await seed_listing(uow_factory)
    await deliver(services, checkout_event(
        "evt_1", "cs_f", payment_status="unpaid", payment_method_types=["us_bank_account"],
    ))
    await deliver(services, checkout_event("evt_2", "cs_f", event_type="checkout.session.async_payment_failed"))

    order = await load_order(uow_factory, session_id="cs_f")
    assert order.status is OrderStatus.CANCELLED
    assert order.cancelled_at is not None
    listing = await load_listing(uow_factory, "lst_1")
    assert listing.status is ListingStatus.ACTIVE
    assert listing.purchase_reserved_by_order_id is None


@pytest.mark.asyncio
async def test_expired_session_cancels_pending_order(services, uow_factory):
    await seed_listing(uow_factory)
    await deliver(services, checkout_event("evt_1", "cs_e", payment_status="unpaid"))
    assert (await load_order(uow_factory, session_id="cs_e")).status is OrderStatus.PENDING

    await deliver(services, checkout_event("evt_2", "cs_e", event_type="checkout.session.expired"))
    assert (await load_order(uow_factory, session_id="cs_e")).status is OrderStatus.CANCELLED


@pytest.mark.asyncio
async def test_expired_session_without_order_is_not_found(services):
    outcome = await services.orders.handle_checkout_expired(
        parse_provider_event(checkout_event("evt_1", "cs_none", event_type="checkout.session.expired"))
    )
    assert outcome.action == "not_found"


@pytest.mark.asyncio
async def test_sold_listing_rejects_a_second_checkout(services, uow_factory):
    await seed_listing(uow_factory)
    await deliver(services, checkout_event("evt_1", "cs_1"))

    outcome = await services.orders.handle_checkout_completed(parse_provider_event(checkout_event("evt_2", "cs_2")))

    assert outcome.action == "skipped"
    assert outcome.detail == "listing_unavailable"
    assert await load_order(uow_factory, session_id="cs_2") is None


@pytest.mark.asyncio
async def test_missing_listing_is_not_found(services, uow_factory):
    outcome = await services.orders.handle_checkout_completed(
        parse_provider_event(checkout_event("evt_1", "cs_1", listing_id="lst_missing"))
    )
    assert outcome.action == "not_found"
    assert await load_order(uow_factory, session_id="cs_1") is None


@pytest.mark.asyncio
async def test_offer_is_completed_with_the_order(services, uow_factory):
    await seed_listing(uow_factory)
    await seed_offer(uow_factory, "off_1", "lst_1")

    await deliver(services, checkout_event("evt_1", "cs_1", offerId="off_1"))

    order = await load_order(uow_factory, session_id="cs_1")
    assert (await load_listing(uow_factory, "lst_1")).sale_type is SaleType.OFFER
    async with uow_factory(readonly=True) as uow:
        offer = await uow.offer_repository.get("off_1")
    assert offer.order_id == order.id
    assert offer.checkout_session_id == "cs_1"
    assert offer.status.value == "completed"


@pytest.mark.asyncio
async def test_out_of_region_buyer_is_refunded(services, uow_factory, gateway):
    await seed_listing(uow_factory, category="cattle_livestock")

    await deliver(services, checkout_event("evt_1", "cs_x", billing_state="OK"))

    assert [r.idempotency_key for r in gateway.refunds] == ["refund:compliance:cs_x"]
    order = await load_order(uow_factory, session_id="cs_x")
    assert order.status is OrderStatus.REFUNDED
    assert order.compliance_violation
    assert "OK" in order.compliance_violation_reason
    assert order.refund_id == "re_1"
    listing = await load_listing(uow_factory, "lst_1")
    assert listing.status is ListingStatus.ACTIVE
    assert listing.sold_at is None
    types = [e.type for e in await load_timeline(uow_factory, order.id)]
    assert "ORDER_REFUNDED" in types

    # A redelivery under a new event ID does not refund twice
    outcome = await services.orders.handle_checkout_completed(
        parse_provider_event(checkout_event("evt_2", "cs_x", billing_state="OK"))
    )
    assert outcome.action == "skipped"
    assert len(gateway.refunds) == 1


@pytest.mark.asyncio
async def test_in_region_buyer_passes(services, uow_factory, gateway):
    await seed_listing(uow_factory, category="whitetail_breeder")

    await deliver(services, checkout_event("evt_1", "cs_tx", shipping_state="tx"))

    order = await load_order(uow_factory, session_id="cs_tx")
    assert order.status is OrderStatus.PAID_HELD
    assert order.transfer_permit_required
    assert gateway.refunds == []
    types = [e.type for e in await load_timeline(uow_factory, order.id)]
    assert "COMPLIANCE_REQUIRED" in types


@pytest.mark.asyncio
async def test_state_is_looked_up_on_the_payment_intent(services, uow_factory, gateway):
    await seed_listing(uow_factory, category="horse_equestrian")
    gateway.payment_intents["pi_cs_4"] = PaymentIntentDetails(id="pi_cs_4", shipping_state="TX")

    await deliver(services, checkout_event("evt_1", "cs_4"))

    assert gateway.lookups == ["pi_cs_4"]
    assert (await load_order(uow_factory, session_id="cs_4")).status is OrderStatus.PAID_HELD


@pytest.mark.asyncio
async def test_unresolved_state_blocks(services, uow_factory, gateway):
    await seed_listing(uow_factory, category="farm_animals")

    await deliver(services, checkout_event("evt_1", "cs_5"))

    order = await load_order(uow_factory, session_id="cs_5")
    assert order.status is OrderStatus.REFUNDED
    assert "unresolved" in order.compliance_violation_reason


@pytest.mark.asyncio
async def test_failed_refund_holds_order_for_review(services, uow_factory, gateway):
    await seed_listing(uow_factory, category="wildlife_exotics")
    gateway.refund_error = PaymentProviderError("charge_already_refunded", provider="stripe")

    outcome = await services.orders.handle_checkout_completed(
        parse_provider_event(checkout_event("evt_1", "cs_6", billing_state="CA"))
    )

    assert outcome.action == "manual_review"
    order = await load_order(uow_factory, session_id="cs_6")
    assert order.status is OrderStatus.PENDING
    assert order.needs_manual_review
    assert order.admin_hold
    assert order.compliance_violation
    assert (await load_listing(uow_factory, "lst_1")).status is ListingStatus.ACTIVE
    audit = await load_audit(uow_factory, order.id)
    assert audit[-1].action_type == "compliance_refund_failed"


@pytest.mark.asyncio
async def test_deferred_gate_blocks_when_funds_arrive(services, uow_factory, gateway):
    await seed_listing(uow_factory, category="farm_animals")

    await deliver(services, checkout_event(
        "evt_1", "cs_7", payment_status="unpaid", payment_method_types=["us_bank_account"],
    ))
    order = await load_order(uow_factory, session_id="cs_7")
    assert order.status is OrderStatus.AWAITING_BANK_TRANSFER
    assert gateway.lookups == []

    await deliver(services, checkout_event(
        "evt_2", "cs_7", event_type="checkout.session.async_payment_succeeded",
        payment_method_types=["us_bank_account"], billing_state="CA",
    ))

    order = await load_order(uow_factory, session_id="cs_7")
    assert order.status is OrderStatus.REFUNDED
    assert gateway.refunds[0].idempotency_key == "refund:compliance:cs_7"
    listing = await load_listing(uow_factory, "lst_1")
    assert listing.purchase_reserved_by_order_id is None
    assert listing.status is ListingStatus.ACTIVE


@pytest.mark.asyncio
async def test_wire_order_confirmed_by_payment_intent(services, uow_factory):
    await seed_listing(uow_factory)
    await deliver(services, checkout_event(
        "evt_1", "cs_w", payment_status="unpaid", paymentMethod="wire", orderId="ord_w",
    ))
    order = await load_order(uow_factory, order_id="ord_w")
    assert order.status is OrderStatus.AWAITING_WIRE

    await deliver(services, payment_intent_event("evt_2", "pi_cs_w", order_id="ord_w"))

    order = await load_order(uow_factory, order_id="ord_w")
    assert order.status is OrderStatus.PAID_HELD
    assert (await load_listing(uow_factory, "lst_1")).status is ListingStatus.SOLD


@pytest.mark.asyncio
async def test_wire_canceled_releases_listing(services, uow_factory):
    await seed_listing(uow_factory)
    await deliver(services, checkout_event(
        "evt_1", "cs_w", payment_status="unpaid", paymentMethod="wire",
    ))

    await deliver(services, payment_intent_event("evt_2", "pi_cs_w", event_type="payment_intent.canceled"))

    order = await load_order(uow_factory, session_id="cs_w")
    assert order.status is OrderStatus.CANCELLED
    assert (await load_listing(uow_factory, "lst_1")).purchase_reserved_by_order_id is None


@pytest.mark.asyncio
async def test_wire_success_without_order_is_not_found(services):
    outcome = await services.orders.handle_wire_succeeded(
        parse_provider_event(payment_intent_event("evt_1", "pi_unknown"))
    )
    assert outcome.action == "not_found"


@pytest.mark.asyncio
async def test_card_payment_intent_is_ignored(services, uow_factory):
    ack = await deliver(services, payment_intent_event("evt_1", "pi_card", payment_method="card"))
    assert not ack.duplicate
    assert await services.ledger.get("evt_1") is not None


@pytest.mark.asyncio
async def test_handler_failure_releases_the_event(services, uow_factory, monkeypatch):
    await seed_listing(uow_factory)
    original_add = SQLAlchemyOrderRepository.add

    async def broken_add(self, order):
        raise RuntimeError("database went away")

    monkeypatch.setattr(SQLAlchemyOrderRepository, "add", broken_add)
    with pytest.raises(RuntimeError):
        await deliver(services, checkout_event("evt_1", "cs_1"))
    record = await services.ledger.get("evt_1")
    assert record.status is LedgerStatus.FAILED
    assert "database went away" in record.last_error
    assert await load_order(uow_factory, session_id="cs_1") is None

    monkeypatch.setattr(SQLAlchemyOrderRepository, "add", original_add)
    ack = await deliver(services, checkout_event("evt_1", "cs_1"))
    assert not ack.duplicate
    assert (await load_order(uow_factory, session_id="cs_1")).status is OrderStatus.PAID_HELD
    record = await services.ledger.get("evt_1")
    assert record.status is LedgerStatus.RECORDED
    assert record.attempts == 2


@pytest.mark.asyncio
async def test_replay_reapplies_recorded_event(services, uow_factory):
    await seed_listing(uow_factory)
    await deliver(services, checkout_event("evt_1", "cs_1"))

    outcome = await services.webhooks.replay("evt_1")

    assert outcome.action == "skipped"
    assert (await load_order(uow_factory, session_id="cs_1")).status is OrderStatus.PAID_HELD


@pytest.mark.asyncio
async def test_admin_hold_round_trip(services, uow_factory):
    await seed_listing(uow_factory)
    await deliver(services, checkout_event("evt_1", "cs_1"))
    order = await load_order(uow_factory, session_id="cs_1")

    held = await services.orders.set_admin_hold(order.id, hold=True, reason="fraud check", actor="ops_1")
    assert held.admin_hold
    assert held.admin_hold_reason == "fraud check"
    assert held.status is OrderStatus.PAID_HELD

    cleared = await services.orders.set_admin_hold(order.id, hold=False, reason=None, actor="ops_1")
    assert not cleared.admin_hold

    _, timeline = await services.orders.get_order_with_timeline(order.id)
    admin_entries = [e for e in timeline if e.visibility == "admin"]
    assert [e.type for e in admin_entries] == ["ADMIN_HOLD_PLACED", "ADMIN_HOLD_REMOVED"]
    actions = [a.action_type for a in await load_audit(uow_factory, order.id)]
    assert actions[-2:] == ["admin_hold_placed", "admin_hold_removed"]


@pytest.mark.asyncio
async def test_unknown_order_raises(services):
    with pytest.raises(OrderNotFoundException):
        await services.orders.get_order_with_timeline("missing")
    with pytest.raises(OrderNotFoundException):
        await services.orders.set_admin_hold("missing", hold=True, reason=None, actor="ops_1")


@pytest.mark.asyncio
async def test_replay_retries_a_failed_compliance_refund(services, uow_factory, gateway):
    await seed_listing(uow_factory, category="sporting_working_dogs")
    gateway.refund_error = PaymentProviderError("api_error", provider="stripe")
    await deliver(services, checkout_event("evt_1", "cs_8", billing_state="NM"))
    assert (await load_order(uow_factory, session_id="cs_8")).needs_manual_review

    gateway.refund_error = None
    outcome = await services.webhooks.replay("evt_1")

    assert outcome.action == "refunded"
    assert {r.idempotency_key for r in gateway.refunds} == {"refund:compliance:cs_8"}
    order = await load_order(uow_factory, session_id="cs_8")
    assert order.status is OrderStatus.REFUNDED
    assert not order.needs_manual_review


@pytest.mark.asyncio
async def test_concurrent_copies_of_one_event_apply_once(services, uow_factory):
    await seed_listing(uow_factory)
    event = checkout_event("evt_1", "cs_1")

    acks = await asyncio.gather(deliver(services, event), deliver(services, event))

    assert sorted(ack.duplicate for ack in acks) == [False, True]
    order = await load_order(uow_factory, session_id="cs_1")
    assert order.status is OrderStatus.PAID_HELD
    confirmed = [n for n in await load_notifications(uow_factory, "buyer_1") if n.event_type == "Order.Confirmed"]
    assert len(confirmed) == 1


@pytest.mark.asyncio
async def test_concurrent_checkouts_for_one_session_create_one_order(services, uow_factory):
    await seed_listing(uow_factory)

    outcomes = await asyncio.gather(
        services.orders.handle_checkout_completed(parse_provider_event(checkout_event("evt_1", "cs_1"))),
        services.orders.handle_checkout_completed(parse_provider_event(checkout_event("evt_2", "cs_1"))),
    )

    assert sorted(o.action for o in outcomes) == ["applied", "skipped"]
    order = await load_order(uow_factory, session_id="cs_1")
    assert len(await load_audit(uow_factory, order.id)) == 1


@pytest.mark.asyncio
async def test_live_reservation_blocks_another_checkout(services, uow_factory):
    await seed_listing(uow_factory)
    await deliver(services, checkout_event(
        "evt_1", "cs_ach", payment_status="unpaid", payment_method_types=["us_bank_account"],
    ))

    outcome = await services.orders.handle_checkout_completed(
        parse_provider_event(checkout_event("evt_2", "cs_card", amount=12000))
    )

    assert outcome.action == "skipped"
    assert outcome.detail == "listing_unavailable"
    assert await load_order(uow_factory, session_id="cs_card") is None


@pytest.mark.asyncio
async def test_late_bank_funds_after_resale_are_held_for_review(services, uow_factory):
    await seed_listing(uow_factory)
    await deliver(services, checkout_event(
        "evt_1", "cs_ach", payment_status="unpaid", payment_method_types=["us_bank_account"],
    ))
    await services.listings.clear_expired_reservations(now=utcnow() + timedelta(hours=49))
    await deliver(services, checkout_event("evt_2", "cs_card", amount=12000))

    outcome = await services.orders.handle_async_payment_succeeded(parse_provider_event(checkout_event(
        "evt_3", "cs_ach", event_type="checkout.session.async_payment_succeeded",
        payment_method_types=["us_bank_account"],
    )))

    assert outcome.action == "manual_review"
    assert outcome.detail == "listing_unavailable"
    card_order = await load_order(uow_factory, session_id="cs_card")
    ach_order = await load_order(uow_factory, session_id="cs_ach")
    assert card_order.status is OrderStatus.PAID_HELD
    assert ach_order.status is OrderStatus.PENDING
    assert ach_order.needs_manual_review
    assert ach_order.admin_hold
    assert ach_order.paid_at is None

    listing = await load_listing(uow_factory, "lst_1")
    assert listing.status is ListingStatus.SOLD
    assert listing.sold_price_cents == 12000

    assert "LISTING_UNAVAILABLE" in [e.type for e in await load_timeline(uow_factory, ach_order.id)]
    audit = await load_audit(uow_factory, ach_order.id)
    assert audit[-1].action_type == "order_listing_unavailable"


@pytest.mark.asyncio
async def test_resent_unpaid_checkout_does_not_reapply(services, uow_factory):
    await seed_listing(uow_factory)
    await deliver(services, checkout_event(
        "evt_1", "cs_ach", payment_status="unpaid", payment_method_types=["us_bank_account"],
    ))

    outcome = await services.orders.handle_checkout_completed(parse_provider_event(checkout_event(
        "evt_2", "cs_ach", payment_status="unpaid", payment_method_types=["us_bank_account"],
    )))

    assert outcome.action == "skipped"
    order = await load_order(uow_factory, session_id="cs_ach")
    assert order.status is OrderStatus.AWAITING_BANK_TRANSFER
    assert [a.action_type for a in await load_audit(uow_factory, order.id)] == ["order_created"]
