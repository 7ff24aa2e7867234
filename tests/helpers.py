"""Test doubles, seed helpers and Stripe event builders."""
from __future__ import annotations

import json
from typing import Any, Optional

from application.dtos.payments import PaymentIntentDetails, RefundRequest, RefundResult, WebhookEvent
from domain.common.exceptions import BusinessException
from domain.listing.entity import Listing, ListingStatus, ListingType, Offer, OfferStatus
from domain.order.entity import Order


class FakeGateway:
    """In-memory payment gateway: trusts the body, records refunds and lookups."""

    provider = "stripe"

    def __init__(self) -> None:
        self.refunds: list[RefundRequest] = []
        self.refund_error: Optional[BusinessException] = None
        self.payment_intents: dict[str, PaymentIntentDetails] = {}
        self.lookups: list[str] = []
        self._refund_ids: dict[str, str] = {}

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:
        event = json.loads(body)
        return WebhookEvent(id=event["id"], type=event["type"], provider=self.provider, payload=event)

    async def refund(self, req: RefundRequest) -> RefundResult:
        self.refunds.append(req)
        if self.refund_error is not None:
            raise self.refund_error
        # Same idempotency key -> same refund, like the real provider
        refund_id = self._refund_ids.setdefault(req.idempotency_key, f"re_{len(self._refund_ids) + 1}")
        return RefundResult(
            refund_id=refund_id,
            status="succeeded",
            provider=self.provider,
            payment_intent_id=req.payment_intent_id,
        )

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentDetails:
        self.lookups.append(payment_intent_id)
        return self.payment_intents.get(payment_intent_id) or PaymentIntentDetails(id=payment_intent_id)


async def seed_listing(
    uow_factory,
    listing_id: str = "lst_1",
    *,
    category: str = "ranch_equipment",
    listing_type: ListingType = ListingType.FIXED,
    status: ListingStatus = ListingStatus.ACTIVE,
    seller_id: str = "seller_1",
) -> Listing:
    listing = Listing(
        id=listing_id,
        title=f"Listing {listing_id}",
        type=listing_type,
        category=category,
        status=status,
        seller_id=seller_id,
        seller_display_name="Hill Country Ranch",
    )
    async with uow_factory() as uow:
        return await uow.listing_repository.add(listing)


async def seed_offer(uow_factory, offer_id: str, listing_id: str) -> Offer:
    async with uow_factory() as uow:
        return await uow.offer_repository.add(Offer(id=offer_id, listing_id=listing_id, status=OfferStatus.ACCEPTED))


async def load_order(uow_factory, *, order_id: Optional[str] = None, session_id: Optional[str] = None) -> Optional[Order]:
    async with uow_factory(readonly=True) as uow:
        if order_id:
            return await uow.order_repository.get(order_id)
        return await uow.order_repository.find_by_checkout_session(session_id)


async def load_listing(uow_factory, listing_id: str) -> Optional[Listing]:
    async with uow_factory(readonly=True) as uow:
        return await uow.listing_repository.get(listing_id)


def _address(state: Optional[str]) -> Optional[dict]:
    return {"address": {"state": state, "country": "US"}} if state else None


def checkout_event(
    event_id: str,
    session_id: str,
    *,
    event_type: str = "checkout.session.completed",
    listing_id: str = "lst_1",
    payment_status: str = "paid",
    amount: int = 10000,
    payment_intent: Optional[str] = None,
    payment_method_types: Optional[list[str]] = None,
    billing_state: Optional[str] = None,
    shipping_state: Optional[str] = None,
    **metadata: Any,
) -> dict:
    meta = {
        "listingId": listing_id,
        "buyerId": "buyer_1",
        "sellerId": "seller_1",
        **{k: v for k, v in metadata.items() if v is not None},
    }
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": 1760000000,
        "livemode": False,
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "payment_status": payment_status,
                "payment_intent": payment_intent or f"pi_{session_id}",
                "amount_total": amount,
                "currency": "usd",
                "payment_method_types": payment_method_types or ["card"],
                "metadata": meta,
                "customer_details": _address(billing_state),
                "shipping_details": _address(shipping_state),
            }
        },
    }


def payment_intent_event(
    event_id: str,
    payment_intent_id: str,
    *,
    event_type: str = "payment_intent.succeeded",
    payment_method: str = "wire",
    order_id: Optional[str] = None,
    shipping_state: Optional[str] = None,
) -> dict:
    metadata = {"paymentMethod": payment_method}
    if order_id:
        metadata["orderId"] = order_id
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {
            "object": {
                "id": payment_intent_id,
                "object": "payment_intent",
                "status": "succeeded",
                "metadata": metadata,
                "shipping": _address(shipping_state),
            }
        },
    }


def dispute_event(
    event_id: str,
    dispute_id: str,
    *,
    event_type: str = "charge.dispute.created",
    status: str = "needs_response",
    payment_intent: str = "pi_cs_1",
    amount: int = 10000,
    reason: Optional[str] = "fraudulent",
) -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {
            "object": {
                "id": dispute_id,
                "object": "dispute",
                "status": status,
                "amount": amount,
                "currency": "usd",
                "reason": reason,
                "charge": "ch_1",
                "payment_intent": payment_intent,
            }
        },
    }


async def deliver(services, event: dict):
    return await services.webhooks.handle({"Stripe-Signature": "t=0,v1=test"}, json.dumps(event).encode())


async def load_timeline(uow_factory, order_id: str):
    async with uow_factory(readonly=True) as uow:
        return await uow.timeline_repository.list_for_order(order_id)


async def load_audit(uow_factory, order_id: str):
    async with uow_factory(readonly=True) as uow:
        return await uow.audit_repository.list_for_order(order_id)


async def load_notifications(uow_factory, user_id: str):
    async with uow_factory(readonly=True) as uow:
        return await uow.notification_repository.list_for_user(user_id)
