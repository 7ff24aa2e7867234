"""
API依赖项 - 服务装配与运维鉴权
"""
import hmac
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import APIKeyHeader

from application.ports.payment_gateway import PaymentGateway
from core.config import settings
from core.exceptions import UnauthorizedException
from infrastructure.container import MarketplaceServices, build_services
from infrastructure.external.payments import get_payment_gateway


admin_token_header = APIKeyHeader(
    name="X-Admin-Token",
    scheme_name="AdminToken",
    description="运维接口令牌（ADMIN_API_TOKEN）",
    auto_error=False,
)


def get_gateway(provider: str = "stripe") -> PaymentGateway:
    """按路径中的 provider 选择网关；不支持的渠道抛出 UnsupportedProviderError"""
    return get_payment_gateway(provider)


def get_default_gateway() -> PaymentGateway:
    return get_payment_gateway()


def _services(request: Request, gateway: PaymentGateway) -> MarketplaceServices:
    return build_services(request.app.state.session_factory, gateway)


async def get_webhook_services(
    request: Request,
    gateway: PaymentGateway = Depends(get_gateway),
) -> MarketplaceServices:
    return _services(request, gateway)


async def get_admin_services(
    request: Request,
    gateway: PaymentGateway = Depends(get_default_gateway),
) -> MarketplaceServices:
    return _services(request, gateway)


async def require_admin(token: Optional[str] = Depends(admin_token_header)) -> str:
    """校验运维令牌；未配置 ADMIN_API_TOKEN 时一律拒绝"""
    expected = settings.ADMIN_API_TOKEN
    if not expected or not token or not hmac.compare_digest(token, expected):
        raise UnauthorizedException("Admin token required")
    return "admin"
