"""
订单仓储实现 - 使用SQLAlchemy实现数据访问
"""
from typing import Optional
from decimal import Decimal

from sqlalchemy import select

from domain.order.entity import (
    ChargebackStatus,
    Order,
    OrderStatus,
    PaymentMethod,
    PayoutHoldReason,
    TransferPermitStatus,
)
from domain.order.repository import OrderRepository
from infrastructure.models.order import OrderModel
from infrastructure.repositories.base import SQLAlchemyRepository
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyOrderRepository(SQLAlchemyRepository, OrderRepository):
    """订单仓储的SQLAlchemy实现"""

    entity_name = "order"

    def _to_entity(self, model: OrderModel) -> Order:
        """将数据库模型转换为领域实体"""
        return Order(
            id=model.id,
            listing_id=model.listing_id,
            buyer_id=model.buyer_id,
            seller_id=model.seller_id,
            status=OrderStatus(model.status),
            payment_method=PaymentMethod(model.payment_method),
            amount=Decimal(str(model.amount)),
            platform_fee=Decimal(str(model.platform_fee)),
            seller_amount=Decimal(str(model.seller_amount)),
            platform_fee_percent=(
                Decimal(str(model.platform_fee_percent)) if model.platform_fee_percent is not None else None
            ),
            currency=model.currency,
            quantity=model.quantity,
            checkout_session_id=model.checkout_session_id,
            payment_intent_id=model.payment_intent_id,
            seller_stripe_account_id=model.seller_stripe_account_id,
            offer_id=model.offer_id,
            paid_at=model.paid_at,
            dispute_deadline_at=model.dispute_deadline_at,
            cancelled_at=model.cancelled_at,
            refunded_at=model.refunded_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
            admin_hold=bool(model.admin_hold),
            admin_hold_reason=model.admin_hold_reason,
            payout_hold_reason=PayoutHoldReason(model.payout_hold_reason),
            chargeback_status=ChargebackStatus(model.chargeback_status),
            compliance_violation=bool(model.compliance_violation),
            compliance_violation_reason=model.compliance_violation_reason,
            needs_manual_review=bool(model.needs_manual_review),
            transfer_permit_required=bool(model.transfer_permit_required),
            transfer_permit_status=TransferPermitStatus(model.transfer_permit_status),
            refund_id=model.refund_id,
            listing_title=model.listing_title,
            listing_snapshot=model.listing_snapshot or {},
            seller_snapshot=model.seller_snapshot or {},
        )

    @staticmethod
    def _copy_mutable(entity: Order, model: OrderModel) -> None:
        """状态与标记字段；金额快照只在创建时写入"""
        model.status = entity.status.value
        model.payment_intent_id = entity.payment_intent_id
        model.paid_at = entity.paid_at
        model.dispute_deadline_at = entity.dispute_deadline_at
        model.cancelled_at = entity.cancelled_at
        model.refunded_at = entity.refunded_at
        model.admin_hold = entity.admin_hold
        model.admin_hold_reason = entity.admin_hold_reason
        model.payout_hold_reason = entity.payout_hold_reason.value
        model.chargeback_status = entity.chargeback_status.value
        model.compliance_violation = entity.compliance_violation
        model.compliance_violation_reason = entity.compliance_violation_reason
        model.needs_manual_review = entity.needs_manual_review
        model.transfer_permit_required = entity.transfer_permit_required
        model.transfer_permit_status = entity.transfer_permit_status.value
        model.refund_id = entity.refund_id
        if entity.updated_at is not None:
            model.updated_at = entity.updated_at

    def _to_model(self, entity: Order) -> OrderModel:
        """将领域实体转换为数据库模型"""
        model = OrderModel(
            id=entity.id,
            listing_id=entity.listing_id,
            buyer_id=entity.buyer_id,
            seller_id=entity.seller_id,
            offer_id=entity.offer_id,
            payment_method=entity.payment_method.value,
            amount=entity.amount,
            platform_fee=entity.platform_fee,
            seller_amount=entity.seller_amount,
            platform_fee_percent=entity.platform_fee_percent,
            currency=entity.currency,
            quantity=entity.quantity,
            checkout_session_id=entity.checkout_session_id,
            seller_stripe_account_id=entity.seller_stripe_account_id,
            listing_title=entity.listing_title,
            listing_snapshot=entity.listing_snapshot,
            seller_snapshot=entity.seller_snapshot,
        )
        if entity.created_at is not None:
            model.created_at = entity.created_at
        self._copy_mutable(entity, model)
        return model

    async def _first(self, *criteria, for_update: bool) -> Optional[Order]:
        stmt = select(OrderModel).where(*criteria)
        if for_update:
            # 行锁 + 覆盖会话中可能已缓存的旧值
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._execute(stmt.limit(1))
        db_order = result.scalars().first()
        return self._to_entity(db_order) if db_order else None

    async def get(self, order_id: str, *, for_update: bool = False) -> Optional[Order]:
        return await self._first(OrderModel.id == order_id, for_update=for_update)

    async def find_by_checkout_session(self, checkout_session_id: str, *, for_update: bool = False) -> Optional[Order]:
        return await self._first(OrderModel.checkout_session_id == checkout_session_id, for_update=for_update)

    async def find_by_payment_intent(self, payment_intent_id: str, *, for_update: bool = False) -> Optional[Order]:
        return await self._first(OrderModel.payment_intent_id == payment_intent_id, for_update=for_update)

    async def add(self, order: Order) -> Order:
        db_order = self._to_model(order)
        self.session.add(db_order)
        await self._flush(key=order.checkout_session_id or order.id)
        await self.session.refresh(db_order)
        logger.info(
            "order_created",
            order_id=db_order.id,
            status=db_order.status,
            checkout_session_id=db_order.checkout_session_id,
        )
        return self._to_entity(db_order)

    async def update(self, order: Order) -> Order:
        db_order = await self.session.get(OrderModel, order.id)
        if db_order is None:
            raise ValueError(f"Order with id {order.id} not found")
        self._copy_mutable(order, db_order)
        await self._flush(key=order.id)
        await self.session.refresh(db_order)
        logger.info("order_updated", order_id=db_order.id, status=db_order.status)
        return self._to_entity(db_order)
