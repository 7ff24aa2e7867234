"""Celery beat schedule.

Both jobs are safe to overlap with themselves: outbox rows are claimed with
``SKIP LOCKED`` and the sweep re-checks every reservation under a row lock.
"""
from __future__ import annotations

from core.config import settings

CELERY_BEAT_SCHEDULE = {
    "outbox-drain": {
        "task": "outbox.drain",
        "schedule": 60.0,
        "kwargs": {"limit": settings.outbox.batch_size},
    },
    "listings-clear-expired-reservations": {
        "task": "listings.clear_expired_reservations",
        "schedule": 300.0,
        "kwargs": {"limit": settings.marketplace.reservation_sweep_batch_size},
    },
}
