"""
Typed provider events.

Every Stripe event type the core consumes is parsed into one member of the
``ProviderEvent`` tagged union (discriminated by ``kind``) before dispatch.
Missing correlating IDs fail here as ``MalformedEventError`` instead of
surfacing later as ``None`` deep inside a handler.
"""
from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from domain.common.exceptions import MalformedEventError


def _expandable_id(value: Any) -> Any:
    """Stripe fields such as ``payment_intent`` are an ID or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class _Address(BaseModel):
    model_config = ConfigDict(extra="ignore")
    state: Optional[str] = None


class _AddressHolder(BaseModel):
    model_config = ConfigDict(extra="ignore")
    address: Optional[_Address] = None

    @property
    def state(self) -> Optional[str]:
        return self.address.state if self.address else None


class CheckoutMetadata(BaseModel):
    """Metadata written onto the checkout session when it was created."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    order_id: Optional[str] = Field(default=None, alias="orderId")
    listing_id: Optional[str] = Field(default=None, alias="listingId")
    buyer_id: Optional[str] = Field(default=None, alias="buyerId")
    seller_id: Optional[str] = Field(default=None, alias="sellerId")
    offer_id: Optional[str] = Field(default=None, alias="offerId")
    seller_stripe_account_id: Optional[str] = Field(default=None, alias="sellerStripeAccountId")
    payment_method: Optional[str] = Field(default=None, alias="paymentMethod")
    # Fee snapshot in cents, computed at checkout
    platform_fee: Optional[int] = Field(default=None, alias="platformFee")
    seller_amount: Optional[int] = Field(default=None, alias="sellerAmount")
    platform_fee_percent: Optional[float] = Field(default=None, alias="platformFeePercent")
    quantity: Optional[int] = None

    @field_validator("*", mode="before")
    @classmethod
    def _blank(cls, v: Any) -> Any:
        return _blank_to_none(v)


class CheckoutSession(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    payment_status: Optional[str] = None
    payment_intent: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    payment_method_types: list[str] = Field(default_factory=list)
    metadata: CheckoutMetadata = Field(default_factory=CheckoutMetadata)
    customer_details: Optional[_AddressHolder] = None
    shipping_details: Optional[_AddressHolder] = None

    @field_validator("payment_intent", mode="before")
    @classmethod
    def _expand_pi(cls, v: Any) -> Any:
        return _expandable_id(v)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_default(cls, v: Any) -> Any:
        return v or {}

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"

    @property
    def billing_state(self) -> Optional[str]:
        return self.customer_details.state if self.customer_details else None

    @property
    def shipping_state(self) -> Optional[str]:
        return self.shipping_details.state if self.shipping_details else None


class _Charge(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: Optional[str] = None
    billing_details: Optional[_AddressHolder] = None


class PaymentIntentMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    order_id: Optional[str] = Field(default=None, alias="orderId")
    payment_method: Optional[str] = Field(default=None, alias="paymentMethod")
    checkout_session_id: Optional[str] = Field(default=None, alias="checkoutSessionId")

    @field_validator("*", mode="before")
    @classmethod
    def _blank(cls, v: Any) -> Any:
        return _blank_to_none(v)


class PaymentIntentObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    status: Optional[str] = None
    amount: Optional[int] = None
    metadata: PaymentIntentMetadata = Field(default_factory=PaymentIntentMetadata)
    shipping: Optional[_AddressHolder] = None
    latest_charge: Optional[Union[str, _Charge]] = None

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_default(cls, v: Any) -> Any:
        return v or {}

    @property
    def is_wire(self) -> bool:
        return self.metadata.payment_method == "wire"

    @property
    def shipping_state(self) -> Optional[str]:
        return self.shipping.state if self.shipping else None

    @property
    def billing_state(self) -> Optional[str]:
        if isinstance(self.latest_charge, _Charge) and self.latest_charge.billing_details:
            return self.latest_charge.billing_details.state
        return None


class DisputeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    status: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    reason: Optional[str] = None
    charge: Optional[str] = None
    payment_intent: Optional[str] = None

    @field_validator("charge", "payment_intent", mode="before")
    @classmethod
    def _expand(cls, v: Any) -> Any:
        return _expandable_id(v)


class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str = Field(min_length=1)
    event_type: str

    def correlation_ids(self) -> dict[str, Optional[str]]:
        return {}


class _CheckoutEventBase(_EventBase):
    session: CheckoutSession

    def correlation_ids(self) -> dict[str, Optional[str]]:
        return {
            "checkout_session_id": self.session.id,
            "payment_intent_id": self.session.payment_intent,
        }


class _OrderCreatingCheckoutEvent(_CheckoutEventBase):
    """Checkout events that may create the order need the parties and listing."""

    @model_validator(mode="after")
    def _require_order_metadata(self):
        meta = self.session.metadata
        missing = [
            name for name, value in (
                ("metadata.listingId", meta.listing_id),
                ("metadata.buyerId", meta.buyer_id),
                ("metadata.sellerId", meta.seller_id),
                ("amount_total", self.session.amount_total),
            ) if value is None or value == ""
        ]
        if missing:
            raise ValueError(f"checkout session missing {', '.join(missing)}")
        return self


class CheckoutCompleted(_OrderCreatingCheckoutEvent):
    kind: Literal["checkout_completed"] = "checkout_completed"


class CheckoutAsyncPaymentSucceeded(_OrderCreatingCheckoutEvent):
    kind: Literal["checkout_async_payment_succeeded"] = "checkout_async_payment_succeeded"


class CheckoutAsyncPaymentFailed(_CheckoutEventBase):
    kind: Literal["checkout_async_payment_failed"] = "checkout_async_payment_failed"


class CheckoutExpired(_CheckoutEventBase):
    kind: Literal["checkout_expired"] = "checkout_expired"


class _PaymentIntentEventBase(_EventBase):
    payment_intent: PaymentIntentObject

    def correlation_ids(self) -> dict[str, Optional[str]]:
        return {
            "payment_intent_id": self.payment_intent.id,
            "checkout_session_id": self.payment_intent.metadata.checkout_session_id,
        }


class WirePaymentSucceeded(_PaymentIntentEventBase):
    kind: Literal["wire_payment_succeeded"] = "wire_payment_succeeded"


class WirePaymentCanceled(_PaymentIntentEventBase):
    kind: Literal["wire_payment_canceled"] = "wire_payment_canceled"


class _DisputeEventBase(_EventBase):
    dispute: DisputeObject

    def correlation_ids(self) -> dict[str, Optional[str]]:
        return {
            "dispute_id": self.dispute.id,
            "charge_id": self.dispute.charge,
            "payment_intent_id": self.dispute.payment_intent,
        }


class DisputeCreated(_DisputeEventBase):
    kind: Literal["dispute_created"] = "dispute_created"


class DisputeUpdated(_DisputeEventBase):
    kind: Literal["dispute_updated"] = "dispute_updated"


class DisputeClosed(_DisputeEventBase):
    kind: Literal["dispute_closed"] = "dispute_closed"


class DisputeFundsWithdrawn(_DisputeEventBase):
    kind: Literal["dispute_funds_withdrawn"] = "dispute_funds_withdrawn"


class DisputeFundsReinstated(_DisputeEventBase):
    kind: Literal["dispute_funds_reinstated"] = "dispute_funds_reinstated"


class AccountUpdated(_EventBase):
    """Seller payout capability changes; owned by another service."""

    kind: Literal["account_updated"] = "account_updated"


class IgnoredEvent(_EventBase):
    """A consumed type whose payload is not ours to act on (e.g. a non-wire intent)."""

    kind: Literal["ignored"] = "ignored"
    reason: str


class UnhandledEvent(_EventBase):
    kind: Literal["unhandled"] = "unhandled"


EVENT_MODELS = (
    CheckoutCompleted,
    CheckoutAsyncPaymentSucceeded,
    CheckoutAsyncPaymentFailed,
    CheckoutExpired,
    WirePaymentSucceeded,
    WirePaymentCanceled,
    DisputeCreated,
    DisputeUpdated,
    DisputeClosed,
    DisputeFundsWithdrawn,
    DisputeFundsReinstated,
    AccountUpdated,
    IgnoredEvent,
    UnhandledEvent,
)

ProviderEvent = Annotated[Union[EVENT_MODELS], Field(discriminator="kind")]

_ADAPTER: TypeAdapter = TypeAdapter(ProviderEvent)

# Stripe event type -> (kind, field the data.object is parsed into)
STRIPE_EVENT_KINDS: dict[str, tuple[str, Optional[str]]] = {
    "checkout.session.completed": ("checkout_completed", "session"),
    "checkout.session.async_payment_succeeded": ("checkout_async_payment_succeeded", "session"),
    "checkout.session.async_payment_failed": ("checkout_async_payment_failed", "session"),
    "checkout.session.expired": ("checkout_expired", "session"),
    "payment_intent.succeeded": ("wire_payment_succeeded", "payment_intent"),
    "payment_intent.canceled": ("wire_payment_canceled", "payment_intent"),
    "charge.dispute.created": ("dispute_created", "dispute"),
    "charge.dispute.updated": ("dispute_updated", "dispute"),
    "charge.dispute.closed": ("dispute_closed", "dispute"),
    "charge.dispute.funds_withdrawn": ("dispute_funds_withdrawn", "dispute"),
    "charge.dispute.funds_reinstated": ("dispute_funds_reinstated", "dispute"),
    "account.updated": ("account_updated", None),
}

EVENT_KINDS: frozenset[str] = frozenset(model.model_fields["kind"].default for model in EVENT_MODELS)


def parse_provider_event(raw: dict[str, Any]) -> Any:
    """Parse a decoded Stripe event into a ``ProviderEvent``.

    Raises:
        MalformedEventError: the envelope or the object lacks a required ID,
            or a field has the wrong shape.
    """
    if not isinstance(raw, dict):
        raise MalformedEventError("Event body is not a JSON object")
    event_id = raw.get("id")
    event_type = raw.get("type")
    if not isinstance(event_id, str) or not event_id:
        raise MalformedEventError("Event id missing", event_type=str(event_type or ""))
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEventError("Event type missing", event_id=event_id)

    data: dict[str, Any] = {"event_id": event_id, "event_type": event_type}
    kind, field = STRIPE_EVENT_KINDS.get(event_type, ("unhandled", None))
    if field is not None:
        obj = (raw.get("data") or {}).get("object")
        if not isinstance(obj, dict):
            raise MalformedEventError("Event data.object missing", event_id=event_id, event_type=event_type)
        if field == "payment_intent" and (obj.get("metadata") or {}).get("paymentMethod") != "wire":
            kind, field = "ignored", None
            data["reason"] = "payment_intent_not_wire"
        else:
            data[field] = obj
    data["kind"] = kind

    try:
        return _ADAPTER.validate_python(data)
    except ValidationError as exc:
        errors = [
            {"loc": ".".join(str(p) for p in err.get("loc", ())), "msg": err.get("msg")}
            for err in exc.errors()
        ]
        raise MalformedEventError(
            f"Malformed {event_type} event",
            event_id=event_id,
            event_type=event_type,
            errors=errors,
        ) from exc
