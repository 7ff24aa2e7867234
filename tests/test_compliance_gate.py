import asyncio

import pytest

from application.services.compliance_service import ComplianceService, compliance_refund_key
from application.dtos.payments import PaymentIntentDetails
from domain.compliance.gate import (
    ComplianceDecision,
    ListingCategory,
    evaluate,
    is_restricted,
    normalize_category,
    requires_transfer_permit,
    resolve_buyer_state,
)
from infrastructure.external.payments.exceptions import PaymentProviderError
from tests.helpers import FakeGateway


@pytest.mark.parametrize(
    "category, state, is_async, expected",
    [
        ("ranch_equipment", None, False, ComplianceDecision.PASS),
        ("ranch_vehicles", "CA", False, ComplianceDecision.PASS),
        ("cattle_livestock", "TX", False, ComplianceDecision.PASS),
        ("cattle_livestock", " tx ", False, ComplianceDecision.PASS),
        ("cattle_livestock", "OK", False, ComplianceDecision.BLOCK),
        ("whitetail_breeder", None, False, ComplianceDecision.BLOCK),
        ("horse_equestrian", "", False, ComplianceDecision.BLOCK),
        ("farm_animals", "CA", True, ComplianceDecision.DEFER),
        ("ranch_equipment", "CA", True, ComplianceDecision.PASS),
    ],
)
def test_evaluate(category, state, is_async, expected):
    assert evaluate(category, state, is_async) is expected


def test_unknown_category_fails_closed():
    assert normalize_category("spaceships") is None
    assert is_restricted("spaceships")
    assert evaluate("spaceships", "CA", False) is ComplianceDecision.BLOCK


def test_resolve_buyer_state_uses_first_usable_candidate():
    assert resolve_buyer_state(None, "  ", "ok", "TX") == "OK"
    assert resolve_buyer_state(None, None) is None


def test_transfer_permit_only_for_whitetail():
    assert requires_transfer_permit(ListingCategory.WHITETAIL_BREEDER)
    assert requires_transfer_permit("Whitetail_Breeder")
    assert not requires_transfer_permit("cattle_livestock")


@pytest.mark.asyncio
async def test_decide_looks_up_payment_intent_when_session_has_no_address():
    gateway = FakeGateway()
    gateway.payment_intents["pi_1"] = PaymentIntentDetails(id="pi_1", shipping_state=None, billing_state="tx")
    service = ComplianceService(gateway, allowed_state="TX")

    decision, state = await service.decide(
        ListingCategory.CATTLE_LIVESTOCK, None, None, payment_intent_id="pi_1", funds_confirmed=True
    )

    assert decision is ComplianceDecision.PASS
    assert state == "TX"
    assert gateway.lookups == ["pi_1"]


@pytest.mark.asyncio
async def test_decide_skips_lookup_for_unrestricted_and_deferred():
    gateway = FakeGateway()
    service = ComplianceService(gateway)

    assert (await service.decide(ListingCategory.RANCH_EQUIPMENT, payment_intent_id="pi_1", funds_confirmed=True))[0] \
        is ComplianceDecision.PASS
    assert (await service.decide(ListingCategory.FARM_ANIMALS, payment_intent_id="pi_1", funds_confirmed=False))[0] \
        is ComplianceDecision.DEFER
    assert gateway.lookups == []


@pytest.mark.asyncio
async def test_lookup_failure_leaves_state_unresolved():
    class FailingGateway(FakeGateway):
        async def retrieve_payment_intent(self, payment_intent_id):
            raise PaymentProviderError("boom", provider="stripe")

    service = ComplianceService(FailingGateway())
    decision, state = await service.decide(
        ListingCategory.WILDLIFE_EXOTICS, payment_intent_id="pi_1", funds_confirmed=True
    )
    assert decision is ComplianceDecision.BLOCK
    assert state is None


@pytest.mark.asyncio
async def test_refund_uses_deterministic_key_and_reports_failure():
    gateway = FakeGateway()
    service = ComplianceService(gateway)

    ok = await service.refund(
        payment_intent_id="pi_1", reference="cs_1", order_id="o1", listing_id="l1", reason="outside region"
    )
    assert ok.ok and ok.refund_id
    assert gateway.refunds[0].idempotency_key == compliance_refund_key("cs_1") == "refund:compliance:cs_1"

    gateway.refund_error = PaymentProviderError("card_declined", provider="stripe")
    failed = await service.refund(
        payment_intent_id="pi_1", reference="cs_1", order_id="o1", listing_id="l1", reason="outside region"
    )
    assert not failed.ok
    assert failed.error == "card_declined"

    missing = await service.refund(
        payment_intent_id=None, reference="cs_2", order_id="o2", listing_id="l1", reason="outside region"
    )
    assert not missing.ok


@pytest.mark.asyncio
async def test_slow_lookup_times_out_and_blocks():
    class SlowGateway(FakeGateway):
        async def retrieve_payment_intent(self, payment_intent_id):
            await asyncio.sleep(5)
            return PaymentIntentDetails(id=payment_intent_id, shipping_state="TX")

    service = ComplianceService(SlowGateway(), allowed_state="TX", lookup_timeout_seconds=0.05)

    decision, state = await service.decide(
        ListingCategory.WHITETAIL_BREEDER, None, None, payment_intent_id="pi_slow", funds_confirmed=True
    )

    assert state is None
    assert decision is ComplianceDecision.BLOCK
