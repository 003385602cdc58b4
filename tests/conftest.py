"""
Shared test fixtures.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from usage_guard.core.quota import QuotaStore
from usage_guard.storage.cache import UsageCache
from usage_guard.storage.repository import SQLiteUsageRepository


class FakeClock:
    """Manually advanced clock returning aware UTC datetimes."""

    def __init__(self, start: datetime = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.current += timedelta(seconds=seconds, **kwargs)
        return self.current

    def set(self, moment: datetime) -> None:
        self.current = moment


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path():
    """Temporary SQLite database path."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield os.path.join(temp_dir, "usage.db")


@pytest.fixture
def repository(db_path):
    repo = SQLiteUsageRepository(db_path)
    repo.initialize_schema()
    return repo


@pytest.fixture
def unreachable_repository():
    """Repository pointing into a directory that doesn't exist."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield SQLiteUsageRepository(os.path.join(temp_dir, "missing", "usage.db"))


@pytest.fixture
def quota_store(repository, clock):
    store = QuotaStore(repository, free_daily_limit=3, cache=UsageCache(ttl_seconds=60, clock=clock), clock=clock)
    store.init()
    return store
