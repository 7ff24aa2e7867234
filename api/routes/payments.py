"""
Payments API routes.

Only the provider webhook lives here. The body is read raw because the
signature covers the exact bytes; everything past verification belongs
to ``WebhookService``.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.dependencies import get_webhook_services
from core.logging_config import get_logger
from core.response import success_response
from infrastructure.container import MarketplaceServices


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


@router.post("/webhooks/{provider}", summary="Provider webhook")
async def payments_webhook(
    provider: str,
    request: Request,
    services: MarketplaceServices = Depends(get_webhook_services),
):
    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}
    ack = await services.webhooks.handle(headers, raw_body)
    message = "Duplicate event ignored" if ack.duplicate else "Event received"
    return success_response(data=ack.model_dump(mode="json"), message=message)
