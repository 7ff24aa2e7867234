import pytest

from application.services.side_effect_dispatcher import SINKS, SideEffectDispatcher
from domain.order.entity import OrderStatus
from domain.side_effects.entity import OutboxStatus, SideEffectKind, notification, timeline_entry
from tests.helpers import checkout_event, deliver, load_notifications, load_order, load_timeline, seed_listing


async def _enqueue(uow_factory, *effects):
    async with uow_factory() as uow:
        return await uow.outbox_repository.enqueue(effects)


@pytest.mark.asyncio
async def test_enqueue_skips_known_dedupe_keys(uow_factory):
    effect = timeline_entry("ord_1", "FUNDS_HELD:pi_1", "FUNDS_HELD", "Funds held in escrow")

    first = await _enqueue(uow_factory, effect, effect)
    second = await _enqueue(uow_factory, effect)

    assert len(first) == 1
    assert second == []


@pytest.mark.asyncio
async def test_dispatch_applies_each_item_once(uow_factory):
    dispatcher = SideEffectDispatcher(uow_factory)
    ids = await _enqueue(
        uow_factory,
        timeline_entry("ord_1", "FUNDS_HELD:pi_1", "FUNDS_HELD", "Funds held in escrow"),
        notification("Order.Confirmed", "buyer_1", entity_id="ord_1", dedupe_hash="checkout:cs_1"),
    )

    assert await dispatcher.dispatch(ids) == 2
    assert await dispatcher.dispatch(ids) == 0
    assert len(await load_timeline(uow_factory, "ord_1")) == 1
    assert len(await load_notifications(uow_factory, "buyer_1")) == 1


@pytest.mark.asyncio
async def test_failing_sink_is_dead_lettered(uow_factory, monkeypatch):
    async def broken_sink(uow, item, now):
        raise RuntimeError("push gateway down")

    monkeypatch.setitem(SINKS, SideEffectKind.NOTIFICATION, broken_sink)
    dispatcher = SideEffectDispatcher(uow_factory, max_attempts=2)
    ids = await _enqueue(
        uow_factory,
        notification("Order.Confirmed", "buyer_1", entity_id="ord_1", dedupe_hash="checkout:cs_1"),
    )

    assert await dispatcher.dispatch(ids) == 0
    assert await dispatcher.list_dead() == []

    summary = await dispatcher.drain()
    assert summary == {"pending": 1, "done": 0, "failed": 1}

    dead = await dispatcher.list_dead()
    assert len(dead) == 1
    assert dead[0].status is OutboxStatus.DEAD
    assert dead[0].attempts == 2
    assert "push gateway down" in dead[0].last_error
    assert (await dispatcher.drain())["pending"] == 0


@pytest.mark.asyncio
async def test_side_effect_failure_does_not_fail_the_transition(services, uow_factory, monkeypatch):
    async def broken_sink(uow, item, now):
        raise RuntimeError("push gateway down")

    monkeypatch.setitem(SINKS, SideEffectKind.NOTIFICATION, broken_sink)
    await seed_listing(uow_factory)

    await deliver(services, checkout_event("evt_1", "cs_1"))

    assert (await load_order(uow_factory, session_id="cs_1")).status is OrderStatus.PAID_HELD
    assert await load_notifications(uow_factory, "buyer_1") == []

    monkeypatch.undo()
    await services.dispatcher.drain()
    assert [n.event_type for n in await load_notifications(uow_factory, "buyer_1")] == ["Order.Confirmed"]
