"""
服务装配：由 FastAPI 依赖与 Celery 任务共用

会话工厂由调用方传入；支付网关可替换（测试注入假实现）。
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from application.ports.payment_gateway import PaymentGateway
from application.services.compliance_service import ComplianceService
from application.services.dispute_service import DisputeService
from application.services.idempotency_ledger import IdempotencyLedger
from application.services.listing_updater import ListingUpdater
from application.services.order_lifecycle_service import OrderLifecycleService
from application.services.side_effect_dispatcher import SideEffectDispatcher
from application.services.webhook_service import WebhookService
from core.config import Settings, settings as default_settings
from infrastructure.unit_of_work import build_uow_factory


@dataclass
class MarketplaceServices:
    dispatcher: SideEffectDispatcher
    listings: ListingUpdater
    orders: OrderLifecycleService
    disputes: DisputeService
    ledger: IdempotencyLedger
    webhooks: WebhookService


def build_services(
    session_factory: Callable[[], AsyncSession],
    gateway: PaymentGateway,
    *,
    config: Optional[Settings] = None,
) -> MarketplaceServices:
    cfg = config or default_settings
    market = cfg.marketplace
    uow_factory = build_uow_factory(session_factory)

    dispatcher = SideEffectDispatcher(uow_factory, max_attempts=cfg.outbox.max_attempts)
    listings = ListingUpdater(
        uow_factory,
        reservation_ttl=timedelta(hours=market.async_reservation_hours),
        dispute_window=timedelta(hours=market.dispute_window_hours),
        dispatcher=dispatcher,
    )
    compliance = ComplianceService(
        gateway,
        allowed_state=market.allowed_region,
        lookup_timeout_seconds=market.compliance_lookup_timeout_seconds,
    )
    orders = OrderLifecycleService(uow_factory, compliance, listings, dispatcher, config=market)
    disputes = DisputeService(uow_factory, dispatcher)
    ledger = IdempotencyLedger(uow_factory)
    webhooks = WebhookService(gateway, ledger, orders, disputes)
    return MarketplaceServices(
        dispatcher=dispatcher,
        listings=listings,
        orders=orders,
        disputes=disputes,
        ledger=ledger,
        webhooks=webhooks,
    )
