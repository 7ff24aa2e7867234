import pytest

from application.dtos.webhook_events import (
    CheckoutCompleted,
    DisputeUpdated,
    EVENT_KINDS,
    IgnoredEvent,
    UnhandledEvent,
    WirePaymentSucceeded,
    parse_provider_event,
)
from domain.common.exceptions import MalformedEventError
from tests.helpers import checkout_event, dispute_event, payment_intent_event


def test_checkout_completed_is_parsed():
    event = parse_provider_event(checkout_event("evt_1", "cs_1", billing_state="TX", platformFee=800))

    assert isinstance(event, CheckoutCompleted)
    assert event.session.id == "cs_1"
    assert event.session.metadata.listing_id == "lst_1"
    assert event.session.metadata.platform_fee == 800
    assert event.session.billing_state == "TX"
    assert event.correlation_ids() == {"checkout_session_id": "cs_1", "payment_intent_id": "pi_cs_1"}


def test_expanded_payment_intent_collapses_to_id():
    raw = checkout_event("evt_1", "cs_1")
    raw["data"]["object"]["payment_intent"] = {"id": "pi_expanded", "object": "payment_intent"}
    assert parse_provider_event(raw).session.payment_intent == "pi_expanded"


def test_missing_listing_id_is_malformed():
    raw = checkout_event("evt_1", "cs_1")
    del raw["data"]["object"]["metadata"]["listingId"]

    with pytest.raises(MalformedEventError) as exc_info:
        parse_provider_event(raw)
    assert exc_info.value.details["event_id"] == "evt_1"


def test_expired_session_does_not_need_order_metadata():
    raw = checkout_event("evt_1", "cs_1", event_type="checkout.session.expired")
    raw["data"]["object"]["metadata"] = {}
    assert parse_provider_event(raw).kind == "checkout_expired"


def test_missing_data_object_is_malformed():
    with pytest.raises(MalformedEventError):
        parse_provider_event({"id": "evt_1", "type": "charge.dispute.created", "data": {}})


def test_missing_envelope_id_is_malformed():
    with pytest.raises(MalformedEventError):
        parse_provider_event({"type": "checkout.session.completed"})


def test_non_wire_payment_intent_is_ignored():
    event = parse_provider_event(payment_intent_event("evt_1", "pi_1", payment_method="card"))
    assert isinstance(event, IgnoredEvent)
    assert event.reason == "payment_intent_not_wire"


def test_wire_payment_intent_is_parsed():
    event = parse_provider_event(payment_intent_event("evt_1", "pi_1", order_id="ord_1", shipping_state="tx"))
    assert isinstance(event, WirePaymentSucceeded)
    assert event.payment_intent.metadata.order_id == "ord_1"
    assert event.payment_intent.shipping_state == "tx"


def test_dispute_event_is_parsed():
    event = parse_provider_event(dispute_event("evt_1", "dp_1", event_type="charge.dispute.updated", status="won"))
    assert isinstance(event, DisputeUpdated)
    assert event.dispute.status == "won"
    assert event.correlation_ids()["dispute_id"] == "dp_1"


def test_unknown_type_is_unhandled():
    event = parse_provider_event({"id": "evt_1", "type": "invoice.paid", "data": {"object": {}}})
    assert isinstance(event, UnhandledEvent)
    assert "unhandled" in EVENT_KINDS
