"""
Side-effect intents and outbox items.

A transition never talks to the timeline, audit or notification sinks
directly. It returns ``SideEffect`` intents which are written to the
outbox inside the same transaction and drained after commit. Every
intent carries a deterministic ``dedupe_key`` so re-enqueueing the same
logical effect is a no-op.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from domain.common.timeutils import ensure_utc


class SideEffectKind(str, Enum):
    TIMELINE = "timeline"
    AUDIT = "audit"
    NOTIFICATION = "notification"
    OFFER_LINK = "offer_link"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    DEAD = "dead"  # dead-letter: retries exhausted, needs an operator


@dataclass(frozen=True)
class SideEffect:
    kind: SideEffectKind
    dedupe_key: str
    payload: dict[str, Any]


@dataclass
class OutboxItem:
    id: Optional[int]
    kind: SideEffectKind
    dedupe_key: str
    payload: dict
    status: OutboxStatus = OutboxStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    def __post_init__(self):
        self.created_at = ensure_utc(self.created_at)
        self.processed_at = ensure_utc(self.processed_at)

    def mark_done(self, now: datetime) -> None:
        self.status = OutboxStatus.DONE
        self.processed_at = now
        self.last_error = None

    def record_failure(self, error: str, *, max_attempts: int, now: datetime) -> None:
        self.attempts += 1
        self.last_error = error[:2000]
        if self.attempts >= max_attempts:
            self.status = OutboxStatus.DEAD
            self.processed_at = now


@dataclass
class TimelineEntry:
    order_id: str
    entry_id: str
    type: str
    label: str
    actor: str = "system"
    visibility: str = "buyer_seller"
    meta: dict = field(default_factory=dict)
    occurred_at: Optional[datetime] = None

    def __post_init__(self):
        self.occurred_at = ensure_utc(self.occurred_at)


@dataclass
class AuditRecord:
    action_type: str
    actor_uid: str
    actor_role: str
    source: str
    order_id: Optional[str] = None
    listing_id: Optional[str] = None
    dispute_id: Optional[str] = None
    before_state: Optional[dict] = None
    after_state: Optional[dict] = None
    metadata: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass
class Notification:
    event_type: str
    target_user_id: str
    entity_id: str
    dedupe_key: str
    payload: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None


def timeline_entry(
    order_id: str,
    entry_id: str,
    type_: str,
    label: str,
    *,
    actor: str = "system",
    visibility: str = "buyer_seller",
    meta: Optional[dict] = None,
) -> SideEffect:
    return SideEffect(
        kind=SideEffectKind.TIMELINE,
        dedupe_key=f"timeline:{order_id}:{entry_id}",
        payload={
            "order_id": order_id,
            "entry_id": entry_id,
            "type": type_,
            "label": label,
            "actor": actor,
            "visibility": visibility,
            "meta": meta or {},
        },
    )


def audit_record(
    action_type: str,
    *,
    correlation: str,
    order_id: Optional[str] = None,
    listing_id: Optional[str] = None,
    dispute_id: Optional[str] = None,
    before: Optional[dict] = None,
    after: Optional[dict] = None,
    actor_uid: str = "system",
    actor_role: str = "system",
    source: str = "webhook",
    metadata: Optional[dict] = None,
) -> SideEffect:
    subject = order_id or dispute_id or listing_id or "-"
    return SideEffect(
        kind=SideEffectKind.AUDIT,
        dedupe_key=f"audit:{action_type}:{subject}:{correlation}",
        payload={
            "action_type": action_type,
            "order_id": order_id,
            "listing_id": listing_id,
            "dispute_id": dispute_id,
            "before_state": before,
            "after_state": after,
            "actor_uid": actor_uid,
            "actor_role": actor_role,
            "source": source,
            "metadata": metadata or {},
        },
    )


def notification(
    event_type: str,
    target_user_id: str,
    *,
    entity_id: str,
    dedupe_hash: str,
    payload: Optional[dict] = None,
) -> SideEffect:
    dedupe_key = f"notification:{event_type}:{target_user_id}:{dedupe_hash}"
    return SideEffect(
        kind=SideEffectKind.NOTIFICATION,
        dedupe_key=dedupe_key,
        payload={
            "event_type": event_type,
            "target_user_id": target_user_id,
            "entity_id": entity_id,
            "dedupe_key": dedupe_key,
            "payload": payload or {},
        },
    )


def offer_link(offer_id: str, *, order_id: str, checkout_session_id: Optional[str], completed: bool) -> SideEffect:
    stage = "completed" if completed else "linked"
    return SideEffect(
        kind=SideEffectKind.OFFER_LINK,
        dedupe_key=f"offer:{offer_id}:{order_id}:{stage}",
        payload={
            "offer_id": offer_id,
            "order_id": order_id,
            "checkout_session_id": checkout_session_id,
            "completed": completed,
        },
    )
