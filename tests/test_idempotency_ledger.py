import pytest

from application.services.idempotency_ledger import IdempotencyLedger
from domain.common.exceptions import PersistenceException, TransientBackendError
from domain.idempotency.entity import LedgerStatus
from infrastructure.repositories.idempotency_repository import SQLAlchemyIdempotencyRepository


@pytest.mark.asyncio
async def test_first_delivery_is_new_and_redelivery_is_not(uow_factory):
    ledger = IdempotencyLedger(uow_factory)

    first = await ledger.record_if_new("evt_1", event_type="checkout.session.completed",
                                       correlation={"checkout_session_id": "cs_1"})
    second = await ledger.record_if_new("evt_1", event_type="checkout.session.completed")

    assert first.is_new
    assert not second.is_new
    record = await ledger.get("evt_1")
    assert record.checkout_session_id == "cs_1"


@pytest.mark.asyncio
async def test_failed_write_rechecks_and_finds_existing_record(uow_factory, monkeypatch):
    ledger = IdempotencyLedger(uow_factory)
    await ledger.record_if_new("evt_1", event_type="checkout.session.completed")

    calls = {"n": 0}
    original_get = SQLAlchemyIdempotencyRepository.get

    async def flaky_get(self, event_id):
        calls["n"] += 1
        if calls["n"] == 1:
            raise PersistenceException("connection reset")
        return await original_get(self, event_id)

    monkeypatch.setattr(SQLAlchemyIdempotencyRepository, "get", flaky_get)

    result = await ledger.record_if_new("evt_1", event_type="checkout.session.completed")
    assert not result.is_new
    assert result.rechecked


@pytest.mark.asyncio
async def test_failed_write_without_record_is_transient(uow_factory, monkeypatch):
    ledger = IdempotencyLedger(uow_factory)

    async def failing_add(self, record):
        raise PersistenceException("disk full")

    monkeypatch.setattr(SQLAlchemyIdempotencyRepository, "add", failing_add)

    with pytest.raises(TransientBackendError):
        await ledger.record_if_new("evt_2", event_type="checkout.session.completed")


@pytest.mark.asyncio
async def test_unreadable_backend_is_transient(uow_factory, monkeypatch):
    ledger = IdempotencyLedger(uow_factory)

    async def failing_get(self, event_id):
        raise PersistenceException("connection refused")

    monkeypatch.setattr(SQLAlchemyIdempotencyRepository, "get", failing_get)

    with pytest.raises(TransientBackendError):
        await ledger.record_if_new("evt_3", event_type="checkout.session.completed")


@pytest.mark.asyncio
async def test_release_keeps_the_record_and_lets_one_redelivery_reclaim_it(uow_factory):
    ledger = IdempotencyLedger(uow_factory)
    await ledger.record_if_new("evt_1", event_type="charge.dispute.created", payload={"id": "evt_1"})

    await ledger.release("evt_1", error="RuntimeError: boom")

    record = await ledger.get("evt_1")
    assert record.status is LedgerStatus.FAILED
    assert record.last_error == "RuntimeError: boom"
    assert record.payload == {"id": "evt_1"}

    reclaimed = await ledger.record_if_new("evt_1", event_type="charge.dispute.created")
    assert reclaimed.is_new
    assert reclaimed.reclaimed
    assert not (await ledger.record_if_new("evt_1", event_type="charge.dispute.created")).is_new

    record = await ledger.get("evt_1")
    assert record.status is LedgerStatus.RECORDED
    assert record.attempts == 2


@pytest.mark.asyncio
async def test_release_of_unknown_event_is_a_no_op(uow_factory):
    ledger = IdempotencyLedger(uow_factory)

    await ledger.release("evt_unknown")

    assert await ledger.get("evt_unknown") is None
