"""End-to-end tests through the FastAPI app with the real Stripe signature check."""
import hashlib
import hmac
import json
import time
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from infrastructure.unit_of_work import build_uow_factory
from main import app
from tests.helpers import checkout_event, seed_listing


WEBHOOK_URL = "/api/v1/payments/webhooks/stripe"
ADMIN_HEADERS = {"X-Admin-Token": "admin-test-token"}


def signed(event: dict, secret: str = "whsec_test_secret") -> tuple[bytes, dict]:
    payload = json.dumps(event)
    ts = int(time.time())
    digest = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return payload.encode(), {"Stripe-Signature": f"t={ts},v1={digest}", "Content-Type": "application/json"}


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def paid_order(client):
    """Seed a listing and deliver a paid checkout for it; returns (event_id, session_id, listing_id)."""
    suffix = uuid4().hex[:8]
    listing_id, session_id, event_id = f"lst_{suffix}", f"cs_{suffix}", f"evt_{suffix}"
    uow_factory = build_uow_factory(app.state.session_factory)
    client.portal.call(seed_listing, uow_factory, listing_id)
    body, headers = signed(checkout_event(event_id, session_id, listing_id=listing_id))
    response = client.post(WEBHOOK_URL, content=body, headers=headers)
    assert response.status_code == 200
    return event_id, session_id, listing_id


def _order_id(client, session_id):
    uow_factory = build_uow_factory(app.state.session_factory)

    async def _find():
        async with uow_factory(readonly=True) as uow:
            order = await uow.order_repository.find_by_checkout_session(session_id)
            return order.id

    return client.portal.call(_find)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "healthy"


def test_webhook_is_acknowledged_once(client, paid_order):
    event_id, session_id, listing_id = paid_order
    body, headers = signed(checkout_event(event_id, session_id, listing_id=listing_id))

    response = client.post(WEBHOOK_URL, content=body, headers=headers)

    assert response.status_code == 200
    payload = response.json()
    assert payload["message"] == "Duplicate event ignored"
    assert payload["data"]["duplicate"] is True
    assert payload["data"]["event_id"] == event_id


def test_bad_signature_is_rejected(client):
    body, headers = signed(checkout_event(f"evt_{uuid4().hex[:8]}", "cs_bad"), secret="whsec_wrong")

    response = client.post(WEBHOOK_URL, content=body, headers=headers)

    assert response.status_code == 400
    assert response.json()["error"]["type"] == "PaymentSignatureError"


def test_malformed_event_is_rejected(client):
    event = checkout_event(f"evt_{uuid4().hex[:8]}", "cs_malformed")
    del event["data"]["object"]["metadata"]["listingId"]
    body, headers = signed(event)

    response = client.post(WEBHOOK_URL, content=body, headers=headers)

    assert response.status_code == 400


def test_unsupported_provider(client):
    response = client.post("/api/v1/payments/webhooks/paypal", content=b"{}")
    assert response.status_code == 404


def test_admin_requires_token(client):
    assert client.get("/api/v1/admin/side-effects/dead").status_code == 401
    response = client.get("/api/v1/admin/side-effects/dead", headers={"X-Admin-Token": "wrong"})
    assert response.status_code == 401


def test_admin_order_view_and_hold(client, paid_order):
    _, session_id, _ = paid_order
    order_id = _order_id(client, session_id)

    response = client.get(f"/api/v1/admin/orders/{order_id}", headers=ADMIN_HEADERS)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["order"]["status"] == "paid_held"
    assert data["order"]["platform_fee"] == "8.00"
    assert [e["type"] for e in data["timeline"]][:3] == ["CHECKOUT_SESSION_CREATED", "PAYMENT_AUTHORIZED", "FUNDS_HELD"]

    response = client.post(
        f"/api/v1/admin/orders/{order_id}/hold",
        json={"hold": True, "reason": "manual check", "actor": "ops_1"},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 200
    assert response.json()["data"]["admin_hold"] is True
    assert response.json()["message"] == "Hold placed"


def test_admin_unknown_order(client):
    response = client.get("/api/v1/admin/orders/does-not-exist", headers=ADMIN_HEADERS)
    assert response.status_code == 404


def test_admin_replay(client, paid_order):
    event_id, _, _ = paid_order

    response = client.post(f"/api/v1/admin/webhook-events/{event_id}/replay", headers=ADMIN_HEADERS)
    assert response.status_code == 200
    assert response.json()["data"]["action"] == "skipped"

    response = client.post("/api/v1/admin/webhook-events/evt_never_seen/replay", headers=ADMIN_HEADERS)
    assert response.status_code == 404


def test_admin_dead_letter_list(client):
    response = client.get("/api/v1/admin/side-effects/dead?limit=10", headers=ADMIN_HEADERS)
    assert response.status_code == 200
    assert isinstance(response.json()["data"], list)
