"""
Order state machine.

Every order status change goes through ``TRANSITIONS``: one row per
``OrderEvent`` naming the statuses it may start from and the status it
produces. ``apply_transition`` mutates the order and returns the listing
mutation plus the side-effect intents (timeline, audit, notifications,
offer link) the transition implies.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import FrozenSet, List, Optional

from domain.common.exceptions import InvalidTransitionException
from domain.order.entity import (
    OPEN_STATUSES,
    Order,
    OrderStatus,
    amount_to_cents,
)
from domain.side_effects.entity import (
    SideEffect,
    audit_record,
    notification,
    offer_link,
    timeline_entry,
)


class OrderEvent(str, Enum):
    CHECKOUT_CONFIRMED = "checkout_confirmed"
    CHECKOUT_AWAITING = "checkout_awaiting"
    ASYNC_PAYMENT_SUCCEEDED = "async_payment_succeeded"
    ASYNC_PAYMENT_FAILED = "async_payment_failed"
    CHECKOUT_EXPIRED = "checkout_expired"
    WIRE_SUCCEEDED = "wire_succeeded"
    WIRE_CANCELED = "wire_canceled"
    COMPLIANCE_REFUNDED = "compliance_refunded"
    COMPLIANCE_REVIEW = "compliance_review"
    RESERVATION_EXPIRED = "reservation_expired"
    LISTING_UNAVAILABLE = "listing_unavailable"


# None 代表"订单尚不存在"
ABSENT = None


@dataclass(frozen=True)
class Transition:
    allowed_from: FrozenSet[Optional[OrderStatus]]
    # None: 目标状态由支付方式决定（见 PaymentMethod.awaiting_status）
    target: Optional[OrderStatus]


_CREATABLE = frozenset({ABSENT, *OPEN_STATUSES})
_OPEN = frozenset(OPEN_STATUSES)

TRANSITIONS: dict[OrderEvent, Transition] = {
    OrderEvent.CHECKOUT_CONFIRMED: Transition(_CREATABLE, OrderStatus.PAID_HELD),
    OrderEvent.CHECKOUT_AWAITING: Transition(_CREATABLE, None),
    OrderEvent.ASYNC_PAYMENT_SUCCEEDED: Transition(_OPEN, OrderStatus.PAID_HELD),
    OrderEvent.ASYNC_PAYMENT_FAILED: Transition(_OPEN, OrderStatus.CANCELLED),
    OrderEvent.CHECKOUT_EXPIRED: Transition(_OPEN, OrderStatus.CANCELLED),
    OrderEvent.WIRE_SUCCEEDED: Transition(_OPEN, OrderStatus.PAID_HELD),
    OrderEvent.WIRE_CANCELED: Transition(_OPEN, OrderStatus.CANCELLED),
    OrderEvent.COMPLIANCE_REFUNDED: Transition(_CREATABLE, OrderStatus.REFUNDED),
    OrderEvent.COMPLIANCE_REVIEW: Transition(_CREATABLE, OrderStatus.PENDING),
    OrderEvent.RESERVATION_EXPIRED: Transition(frozenset({OrderStatus.PENDING}), OrderStatus.CANCELLED),
    OrderEvent.LISTING_UNAVAILABLE: Transition(_OPEN, OrderStatus.PENDING),
}


def _check_exhaustive() -> None:
    missing = set(OrderEvent) - set(TRANSITIONS)
    if missing:
        raise RuntimeError(f"order events without a transition: {sorted(e.value for e in missing)}")


_check_exhaustive()


class ListingAction(str, Enum):
    RESERVE = "reserve"
    MARK_SOLD = "mark_sold"
    RELEASE = "release"


@dataclass(frozen=True)
class ListingIntent:
    action: ListingAction
    listing_id: str
    order_id: str
    offer_id: Optional[str] = None
    price_cents: Optional[int] = None


@dataclass
class TransitionContext:
    now: datetime
    dispute_window: timedelta
    reservation_ttl: timedelta
    # 关联 ID（事件 ID 等），用于审计去重
    correlation: str
    actor_uid: str = "system"
    actor_role: str = "system"
    source: str = "webhook"
    refund_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class TransitionResult:
    order: Order
    event: OrderEvent
    previous_status: Optional[OrderStatus]
    created: bool
    listing_intent: Optional[ListingIntent] = None
    effects: List[SideEffect] = field(default_factory=list)


def can_apply(event: OrderEvent, current: Optional[Order]) -> bool:
    status = current.status if current is not None else ABSENT
    if status not in TRANSITIONS[event].allowed_from:
        return False
    # 已在等待资金状态的订单再次收到 checkout_awaiting 不再生效
    if event is OrderEvent.CHECKOUT_AWAITING and current is not None:
        return status is not target_status(event, current)
    return True


def target_status(event: OrderEvent, order: Order) -> OrderStatus:
    target = TRANSITIONS[event].target
    return target if target is not None else order.payment_method.awaiting_status


def apply_transition(
    event: OrderEvent,
    order: Order,
    ctx: TransitionContext,
    *,
    created: bool,
) -> TransitionResult:
    """对订单应用一次转换。

    Args:
        event: 订单事件
        order: 已加锁读出的订单，或 created=True 时的新草稿
        ctx: 时间、窗口、关联 ID 等上下文
        created: 订单是否为本次新建
    """
    previous = None if created else order.status
    if previous not in TRANSITIONS[event].allowed_from:
        raise InvalidTransitionException(order.id, str(previous), event.value)

    before = None if created else order.snapshot()
    target = target_status(event, order)
    result = TransitionResult(order=order, event=event, previous_status=previous, created=created)

    if target is OrderStatus.PAID_HELD:
        order.confirm_funds(ctx.now, ctx.dispute_window)
        result.listing_intent = ListingIntent(
            ListingAction.MARK_SOLD,
            order.listing_id,
            order.id,
            offer_id=order.offer_id,
            price_cents=amount_to_cents(order.amount),
        )
        result.effects.extend(_funds_confirmed_effects(order, include_session=created))
    elif event is OrderEvent.CHECKOUT_AWAITING:
        order.await_funds(target, ctx.now)
        result.listing_intent = ListingIntent(ListingAction.RESERVE, order.listing_id, order.id)
        result.effects.extend(_session_created_effects(order))
    elif event is OrderEvent.COMPLIANCE_REFUNDED:
        order.mark_refunded(refund_id=ctx.refund_id, reason=ctx.reason or "compliance violation", now=ctx.now)
        result.listing_intent = ListingIntent(ListingAction.RELEASE, order.listing_id, order.id)
        result.effects.extend(_refunded_effects(order))
    elif event is OrderEvent.COMPLIANCE_REVIEW:
        order.flag_for_manual_review(reason=ctx.reason or "compliance violation", now=ctx.now)
        ref = order.checkout_session_id or order.payment_intent_id or order.id
        result.effects.append(timeline_entry(
            order.id, f"COMPLIANCE_REVIEW_REQUIRED:{ref}", "COMPLIANCE_REVIEW_REQUIRED",
            "Automatic compliance refund failed; order held for review", visibility="admin",
        ))
    elif event is OrderEvent.LISTING_UNAVAILABLE:
        order.hold_for_listing_conflict(reason=ctx.reason or "listing no longer available", now=ctx.now)
        ref = order.payment_intent_id or order.checkout_session_id or order.id
        result.effects.append(timeline_entry(
            order.id, f"LISTING_UNAVAILABLE:{ref}", "LISTING_UNAVAILABLE",
            "Funds arrived after the listing was sold or reserved elsewhere; order held for review",
            visibility="admin",
        ))
    elif target is OrderStatus.CANCELLED:
        order.cancel(ctx.now)
        result.listing_intent = ListingIntent(ListingAction.RELEASE, order.listing_id, order.id)
        result.effects.extend(_cancelled_effects(order, event))

    if order.offer_id and (event is OrderEvent.CHECKOUT_AWAITING or target is OrderStatus.PAID_HELD):
        result.effects.append(offer_link(
            order.offer_id,
            order_id=order.id,
            checkout_session_id=order.checkout_session_id,
            completed=target is OrderStatus.PAID_HELD,
        ))

    result.effects.append(audit_record(
        _audit_action(event, created),
        correlation=ctx.correlation,
        order_id=order.id,
        listing_id=order.listing_id,
        before=before,
        after=order.snapshot(),
        actor_uid=ctx.actor_uid,
        actor_role=ctx.actor_role,
        source=ctx.source,
        metadata={
            "event": event.value,
            "checkout_session_id": order.checkout_session_id,
            "payment_intent_id": order.payment_intent_id,
            "payment_method": order.payment_method.value,
            "reason": ctx.reason,
        },
    ))
    return result


_AUDIT_ACTIONS = {
    OrderEvent.COMPLIANCE_REFUNDED: "order_refunded_compliance_violation",
    OrderEvent.COMPLIANCE_REVIEW: "compliance_refund_failed",
    OrderEvent.RESERVATION_EXPIRED: "reservation_expired",
    OrderEvent.LISTING_UNAVAILABLE: "order_listing_unavailable",
    OrderEvent.ASYNC_PAYMENT_FAILED: "order_cancelled",
    OrderEvent.CHECKOUT_EXPIRED: "order_cancelled",
    OrderEvent.WIRE_CANCELED: "order_cancelled",
}


def _audit_action(event: OrderEvent, created: bool) -> str:
    if event in _AUDIT_ACTIONS:
        return _AUDIT_ACTIONS[event]
    if created:
        return "order_created"
    if event is OrderEvent.CHECKOUT_AWAITING:
        return "order_awaiting_funds"
    return "order_funds_confirmed"


def _session_created_effects(order: Order) -> List[SideEffect]:
    if not order.checkout_session_id:
        return []
    return [timeline_entry(
        order.id,
        f"CHECKOUT_SESSION_CREATED:{order.checkout_session_id}",
        "CHECKOUT_SESSION_CREATED",
        "Checkout started",
        meta={"checkout_session_id": order.checkout_session_id},
    )]


def _funds_confirmed_effects(order: Order, *, include_session: bool) -> List[SideEffect]:
    effects: List[SideEffect] = _session_created_effects(order) if include_session else []
    pi = order.payment_intent_id or order.id
    effects.append(timeline_entry(
        order.id, f"PAYMENT_AUTHORIZED:{pi}", "PAYMENT_AUTHORIZED", "Payment authorized",
        meta={"payment_intent_id": order.payment_intent_id, "payment_method": order.payment_method.value},
    ))
    effects.append(timeline_entry(
        order.id, f"FUNDS_HELD:{pi}", "FUNDS_HELD", "Funds held in escrow",
        meta={"dispute_deadline_at": order.dispute_deadline_at.isoformat() if order.dispute_deadline_at else None},
    ))
    if order.transfer_permit_required:
        effects.append(timeline_entry(
            order.id,
            f"COMPLIANCE_REQUIRED:TRANSFER_PERMIT:{order.id}",
            "COMPLIANCE_REQUIRED",
            "Transfer permit required before delivery",
        ))
    dedupe = f"checkout:{order.checkout_session_id}" if order.checkout_session_id else f"order:{order.id}"
    common = {"order_id": order.id, "listing_id": order.listing_id, "listing_title": order.listing_title,
              "amount": str(order.amount)}
    effects.append(notification("Order.Confirmed", order.buyer_id, entity_id=order.id, dedupe_hash=dedupe, payload=common))
    effects.append(notification(
        "Order.Received", order.seller_id, entity_id=order.id, dedupe_hash=dedupe,
        payload={**common, "seller_amount": str(order.seller_amount)},
    ))
    return effects


def _refunded_effects(order: Order) -> List[SideEffect]:
    ref = order.checkout_session_id or order.payment_intent_id or order.id
    return [
        timeline_entry(
            order.id, f"ORDER_REFUNDED:{ref}", "ORDER_REFUNDED",
            "Order refunded: buyer outside the permitted region",
            meta={"refund_id": order.refund_id},
        ),
        notification(
            "Order.Refunded", order.buyer_id, entity_id=order.id, dedupe_hash=f"refund:{ref}",
            payload={"order_id": order.id, "listing_id": order.listing_id, "amount": str(order.amount)},
        ),
    ]


def _cancelled_effects(order: Order, event: OrderEvent) -> List[SideEffect]:
    if event is OrderEvent.RESERVATION_EXPIRED:
        ref = f"reservation:{order.id}"
    else:
        ref = order.checkout_session_id or order.payment_intent_id or order.id
    return [
        timeline_entry(
            order.id, f"ORDER_CANCELLED:{ref}", "ORDER_CANCELLED", "Order cancelled",
            meta={"event": event.value},
        ),
        notification(
            "Order.Cancelled", order.buyer_id, entity_id=order.id, dedupe_hash=f"cancel:{ref}",
            payload={"order_id": order.id, "listing_id": order.listing_id},
        ),
    ]
