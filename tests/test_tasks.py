"""Celery jobs run eagerly in the test environment against the configured database."""
import asyncio

import pytest

from core.config import settings
from infrastructure.database import build_engine, create_tables
from infrastructure.tasks import celery_app
from infrastructure.tasks.tasks.marketplace import (
    clear_expired_reservations,
    drain_outbox,
    replay_webhook_event,
)


async def _prepare_database():
    engine = build_engine(settings.database.url)
    try:
        await create_tables(engine)
    finally:
        await engine.dispose()


@pytest.fixture(scope="module", autouse=True)
def database():
    asyncio.run(_prepare_database())


def test_tasks_are_registered():
    assert celery_app.conf.task_always_eager
    for name in ("outbox.drain", "listings.clear_expired_reservations", "webhooks.replay"):
        assert name in celery_app.tasks


def test_drain_task_reports_a_summary():
    summary = drain_outbox.apply(kwargs={"limit": 10}).get()
    assert set(summary) == {"pending", "done", "failed"}
    assert summary["failed"] == 0


def test_sweep_task_reports_a_summary():
    summary = clear_expired_reservations.apply().get()
    assert set(summary) == {"expired", "cleared", "cancelled"}


def test_replay_of_unknown_event_fails():
    result = replay_webhook_event.apply(args=["evt_never_recorded"])
    assert result.failed()
