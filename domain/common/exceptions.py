"""领域层业务异常定义，供领域与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
"""
from __future__ import annotations

from typing import Optional
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
        message_key: Optional[str] = None,
        format_params: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        self.message_key = message_key
        self.format_params = format_params
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
        message_key: str | None = None,
        format_params: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
            message_key=message_key or "validation.domain",
            format_params=format_params,
        )


class OrderNotFoundException(BusinessException):
    def __init__(self, order_id: Optional[str] = None):
        details = {"order_id": order_id} if order_id else None
        super().__init__(
            code=BusinessCode.ORDER_NOT_FOUND,
            message="Order not found",
            error_type="OrderNotFound",
            details=details,
            message_key="order.not_found",
        )


class ResourceNotFoundException(BusinessException):
    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            code=BusinessCode.NOT_FOUND,
            message=f"{resource} not found",
            error_type="NotFound",
            details={"resource": resource, "id": resource_id},
            message_key="resource.not_found",
        )


class InvalidTransitionException(BusinessException):
    """订单状态机拒绝的转换（仅用于显式的运维操作，webhook 路径以跳过代替）"""

    def __init__(self, order_id: str, status: str, event: str):
        super().__init__(
            code=BusinessCode.INVALID_TRANSITION,
            message=f"Order {order_id} cannot apply {event} from status {status}",
            error_type="InvalidTransition",
            details={"order_id": order_id, "status": status, "event": event},
            message_key="order.transition.invalid",
        )


class ConcurrencyConflictException(BusinessException):
    """并发写入在唯一键上冲突（例如同一 checkout session 的重复投递）"""

    def __init__(self, entity: str, key: Optional[str] = None):
        super().__init__(
            code=BusinessCode.CONFLICT,
            message=f"Concurrent write conflict on {entity}",
            error_type="ConcurrencyConflict",
            details={"entity": entity, "key": key},
            message_key="persistence.conflict",
        )


class PersistenceException(BusinessException):
    """持久化层不可用或事务失败"""

    def __init__(self, message: str = "Persistence backend unavailable", *, details: Optional[dict] = None):
        super().__init__(
            code=BusinessCode.SERVICE_UNAVAILABLE,
            message=message,
            error_type="PersistenceError",
            details=details,
            message_key="persistence.unavailable",
        )


class TransientBackendError(BusinessException):
    """幂等状态无法确认，需要让支付渠道重试该事件"""

    def __init__(self, message: str, *, event_id: Optional[str] = None):
        super().__init__(
            code=BusinessCode.SERVICE_UNAVAILABLE,
            message=message,
            error_type="TransientBackendError",
            details={"event_id": event_id} if event_id else None,
            message_key="webhook.transient",
        )


class MalformedEventError(BusinessException):
    """入站事件缺少必需的关联 ID 或结构非法"""

    def __init__(self, message: str, *, event_id: Optional[str] = None, event_type: Optional[str] = None, errors: Optional[list] = None):
        details: dict = {"event_id": event_id, "event_type": event_type}
        if errors:
            details["errors"] = errors
        super().__init__(
            code=PaymentCode.MALFORMED_EVENT,
            message=message,
            error_type="MalformedEvent",
            details=details,
            message_key="webhook.malformed",
        )
