"""
Shared fixtures for credit engine tests.
"""

import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from ai_credit_engine.config.loader import DatabaseConfig, EngineConfig, RetryConfig
from ai_credit_engine.core.actor import ActorContext, ActorRole
from ai_credit_engine.core.engine import CreditEngine
from ai_credit_engine.core.notifications import InMemoryNotificationSink
from ai_credit_engine.storage.repository import LedgerStore

ORG = "org-1"
OWNER = ActorContext(ORG, "owner-1", ActorRole.OWNER)
ADMIN = ActorContext(ORG, "admin-1", ActorRole.ADMIN)
MEMBER = ActorContext(ORG, "member-1", ActorRole.MEMBER)
SUPER_ADMIN = ActorContext(ORG, "root", ActorRole.SUPER_ADMIN)

FAST_RETRY = RetryConfig(max_attempts=20, min_wait_seconds=0.001, max_wait_seconds=0.05)


class FakeClock:
    """Settable clock for period and report-window tests."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def temp_dir():
    path = tempfile.mkdtemp()
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def db_path(temp_dir):
    return os.path.join(temp_dir, "credits.db")


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def config(db_path):
    return EngineConfig(database=DatabaseConfig(path=db_path), retry=FAST_RETRY)


@pytest.fixture
def store(config, clock):
    ledger = LedgerStore.from_config(config, clock=clock)
    ledger.initialize_schema()
    return ledger


@pytest.fixture
def sink():
    return InMemoryNotificationSink()


@pytest.fixture
def engine(store, config, sink):
    return CreditEngine(store, config=config, sink=sink)
