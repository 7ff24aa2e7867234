"""Pytest bootstrap configuration.

Environment variables are set before any application module is imported
so that ``core.config.settings`` and ``core.settings.payment_settings``
pick them up.
"""
import os
import tempfile

_TMP_DIR = tempfile.mkdtemp(prefix="marketplace-tests-")

os.environ.setdefault("DATABASE__URL", f"sqlite+aiosqlite:///{_TMP_DIR}/app.db")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("ADMIN_API_TOKEN", "admin-test-token")
os.environ.setdefault("STRIPE__WEBHOOK_SECRET", "whsec_test_secret")

import pytest

from infrastructure.container import build_services
from infrastructure.database import build_engine, build_session_factory, create_tables
from infrastructure.unit_of_work import build_uow_factory
from tests.helpers import FakeGateway


@pytest.fixture
async def engine(tmp_path):
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def uow_factory(session_factory):
    return build_uow_factory(session_factory)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def services(session_factory, gateway):
    return build_services(session_factory, gateway)
