import hashlib
import hmac
import json
import time

import pytest
import stripe

from application.dtos.payments import RefundRequest
from core.settings import PaymentRetry, PaymentSettings, StripeSettings
from infrastructure.external.payments import get_payment_gateway
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentRecoverableError,
    PaymentSignatureError,
    UnsupportedProviderError,
)
from infrastructure.external.payments.stripe_client import StripeClient


SECRET = "whsec_unit_secret"


def sign(payload: str, secret: str = SECRET, timestamp: int = None) -> str:
    ts = timestamp or int(time.time())
    digest = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.fixture
def client():
    return StripeClient(settings=PaymentSettings(
        stripe=StripeSettings(secret_key="sk_test_unit", webhook_secret=SECRET),
        retry=PaymentRetry(max=1, base_backoff=0.01),
    ))


def test_valid_signature_is_accepted(client):
    payload = json.dumps({"id": "evt_1", "type": "checkout.session.completed", "data": {"object": {}}})

    event = client.parse_webhook({"Stripe-Signature": sign(payload)}, payload.encode())

    assert event.id == "evt_1"
    assert event.type == "checkout.session.completed"
    assert event.provider == "stripe"


def test_wrong_secret_is_rejected(client):
    payload = json.dumps({"id": "evt_1", "type": "checkout.session.completed"})
    with pytest.raises(PaymentSignatureError):
        client.parse_webhook({"stripe-signature": sign(payload, secret="whsec_other")}, payload.encode())


def test_stale_signature_is_rejected(client):
    payload = json.dumps({"id": "evt_1", "type": "checkout.session.completed"})
    header = sign(payload, timestamp=int(time.time()) - 3600)
    with pytest.raises(PaymentSignatureError):
        client.parse_webhook({"Stripe-Signature": header}, payload.encode())


def test_missing_signature_is_rejected(client):
    with pytest.raises(PaymentSignatureError):
        client.parse_webhook({}, b"{}")


def test_unsupported_provider():
    with pytest.raises(UnsupportedProviderError):
        get_payment_gateway("paypal")


@pytest.mark.asyncio
async def test_refund_passes_idempotency_key(client, monkeypatch):
    calls = []

    def fake_create(**kwargs):
        calls.append(kwargs)
        return {"id": "re_123", "status": "succeeded"}

    monkeypatch.setattr(stripe.Refund, "create", fake_create)

    result = await client.refund(RefundRequest(
        payment_intent_id="pi_1",
        idempotency_key="refund:compliance:cs_1",
        metadata={"orderId": "ord_1"},
    ))

    assert result.refund_id == "re_123"
    assert calls[0]["idempotency_key"] == "refund:compliance:cs_1"
    assert calls[0]["payment_intent"] == "pi_1"


@pytest.mark.asyncio
async def test_connection_errors_are_retried_then_recoverable(client, monkeypatch):
    calls = []

    def flaky_create(**kwargs):
        calls.append(kwargs)
        raise stripe.APIConnectionError("connection reset")

    monkeypatch.setattr(stripe.Refund, "create", flaky_create)

    with pytest.raises(PaymentRecoverableError):
        await client.refund(RefundRequest(payment_intent_id="pi_1", idempotency_key="refund:compliance:cs_1"))
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_invalid_request_is_not_retried(client, monkeypatch):
    calls = []

    def rejected_create(**kwargs):
        calls.append(kwargs)
        raise stripe.InvalidRequestError("No such payment_intent", param="payment_intent")

    monkeypatch.setattr(stripe.Refund, "create", rejected_create)

    with pytest.raises(PaymentProviderError):
        await client.refund(RefundRequest(payment_intent_id="pi_1", idempotency_key="refund:compliance:cs_1"))
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_payment_intent_addresses_are_extracted(client, monkeypatch):
    def fake_retrieve(payment_intent_id, **kwargs):
        assert kwargs["expand"] == ["latest_charge"]
        return {
            "id": payment_intent_id,
            "status": "succeeded",
            "shipping": {"address": {"state": "TX"}},
            "latest_charge": {"billing_details": {"address": {"state": "OK"}}},
        }

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", fake_retrieve)

    details = await client.retrieve_payment_intent("pi_1")

    assert details.shipping_state == "TX"
    assert details.billing_state == "OK"
