"""
Operator routes: admin hold, event replay, order inspection and the
side-effect dead-letter list. All require ``X-Admin-Token``.
"""
from __future__ import annotations

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from api.dependencies import get_admin_services, require_admin
from core.response import success_response
from domain.order.entity import Order
from infrastructure.container import MarketplaceServices


router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


class AdminHoldRequest(BaseModel):
    hold: bool
    reason: Optional[str] = Field(default=None, max_length=500)
    actor: str = Field(default="admin", min_length=1, max_length=128)


def _order_view(order: Order) -> dict:
    data = asdict(order)
    for key in ("amount", "platform_fee", "seller_amount", "platform_fee_percent"):
        if data[key] is not None:
            data[key] = str(data[key])
    for key, value in list(data.items()):
        if hasattr(value, "isoformat"):
            data[key] = value.isoformat()
        elif hasattr(value, "value"):
            data[key] = value.value
    return data


@router.get("/orders/{order_id}", summary="Order with timeline")
async def get_order(order_id: str, services: MarketplaceServices = Depends(get_admin_services)):
    order, timeline = await services.orders.get_order_with_timeline(order_id)
    entries = [
        {
            "entry_id": e.entry_id,
            "type": e.type,
            "label": e.label,
            "actor": e.actor,
            "visibility": e.visibility,
            "meta": e.meta,
            "occurred_at": e.occurred_at.isoformat() if e.occurred_at else None,
        }
        for e in timeline
    ]
    return success_response(data={"order": _order_view(order), "timeline": entries})


@router.post("/orders/{order_id}/hold", summary="Place or clear an admin hold")
async def set_hold(
    order_id: str,
    payload: AdminHoldRequest,
    services: MarketplaceServices = Depends(get_admin_services),
):
    order = await services.orders.set_admin_hold(
        order_id, hold=payload.hold, reason=payload.reason, actor=payload.actor
    )
    return success_response(data=_order_view(order), message="Hold placed" if payload.hold else "Hold removed")


@router.post("/webhook-events/{event_id}/replay", summary="Replay a recorded event")
async def replay_event(event_id: str, services: MarketplaceServices = Depends(get_admin_services)):
    outcome = await services.webhooks.replay(event_id)
    return success_response(data=asdict(outcome), message="Event replayed")


@router.get("/side-effects/dead", summary="Dead-lettered side effects")
async def list_dead_side_effects(
    limit: int = Query(default=100, ge=1, le=500),
    services: MarketplaceServices = Depends(get_admin_services),
):
    items = await services.dispatcher.list_dead(limit)
    data = [
        {
            "id": item.id,
            "kind": item.kind.value,
            "dedupe_key": item.dedupe_key,
            "attempts": item.attempts,
            "last_error": item.last_error,
            "payload": item.payload,
            "created_at": item.created_at.isoformat() if item.created_at else None,
            "processed_at": item.processed_at.isoformat() if item.processed_at else None,
        }
        for item in items
    ]
    return success_response(data=data)
