"""
Dispute 仓储实现
"""
from typing import Optional

from sqlalchemy import select

from domain.dispute.entity import Dispute, DisputeStatus
from domain.dispute.repository import DisputeRepository
from infrastructure.models.dispute import DisputeModel
from infrastructure.repositories.base import SQLAlchemyRepository


class SQLAlchemyDisputeRepository(SQLAlchemyRepository, DisputeRepository):

    entity_name = "dispute"

    def _to_entity(self, model: DisputeModel) -> Dispute:
        return Dispute(
            id=model.id,
            status=DisputeStatus(model.status),
            provider_status=model.provider_status,
            amount=model.amount or 0,
            currency=model.currency,
            reason=model.reason,
            charge_id=model.charge_id,
            payment_intent_id=model.payment_intent_id,
            order_id=model.order_id,
            funds_withdrawn_at=model.funds_withdrawn_at,
            funds_reinstated_at=model.funds_reinstated_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @staticmethod
    def _copy(entity: Dispute, model: DisputeModel) -> None:
        model.status = entity.status.value
        model.provider_status = entity.provider_status
        model.amount = entity.amount
        model.currency = entity.currency
        model.reason = entity.reason
        model.charge_id = entity.charge_id
        model.payment_intent_id = entity.payment_intent_id
        model.order_id = entity.order_id
        model.funds_withdrawn_at = entity.funds_withdrawn_at
        model.funds_reinstated_at = entity.funds_reinstated_at
        if entity.updated_at is not None:
            model.updated_at = entity.updated_at

    async def get(self, dispute_id: str, *, for_update: bool = False) -> Optional[Dispute]:
        stmt = select(DisputeModel).where(DisputeModel.id == dispute_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._execute(stmt)
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def add(self, dispute: Dispute) -> Dispute:
        model = DisputeModel(id=dispute.id)
        self._copy(dispute, model)
        self.session.add(model)
        await self._flush(key=dispute.id)
        return self._to_entity(model)

    async def update(self, dispute: Dispute) -> Dispute:
        model = await self.session.get(DisputeModel, dispute.id)
        if model is None:
            raise ValueError(f"Dispute with id {dispute.id} not found")
        self._copy(dispute, model)
        await self._flush(key=dispute.id)
        return self._to_entity(model)
