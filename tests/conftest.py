"""Shared test fixtures and configuration.

Sets up fake environment variables so solguard.config doesn't sys.exit(),
and provides common fixtures like a temp DB and a controllable clock.
"""

import os

# Patch env vars BEFORE any solguard imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("ALERT_PROVIDER", "telegram")
os.environ.setdefault("ALERT_CHAT_IDS", "-100200300")

from datetime import datetime, timedelta, timezone

import pytest


class FixedClock:
    """Clock whose time only moves when a test says so."""

    def __init__(self, now: datetime) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


# Monday 1 January 2024
MONDAY = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    """Clock fixed on Sunday evening, the day before MONDAY."""
    return FixedClock(MONDAY - timedelta(hours=3))


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path shared by all stores in a test."""
    return str(tmp_path / "test_solguard.db")


@pytest.fixture
def schedule_db(tmp_db_path, clock):
    """Return a ScheduleDB instance backed by a temp file."""
    from solguard.data.db import ScheduleDB
    return ScheduleDB(db_path=tmp_db_path, clock=clock)


@pytest.fixture
def contact_db(tmp_db_path, clock):
    """Return a ContactDB instance backed by a temp file."""
    from solguard.data.db import ContactDB
    return ContactDB(db_path=tmp_db_path, clock=clock)


@pytest.fixture
def ledger_db(tmp_db_path):
    """Return a CheckInLedgerDB instance backed by a temp file."""
    from solguard.data.db import CheckInLedgerDB
    return CheckInLedgerDB(db_path=tmp_db_path)


@pytest.fixture
def state_db(tmp_db_path):
    """Return a SchedulerStateDB instance backed by a temp file."""
    from solguard.data.db import SchedulerStateDB
    return SchedulerStateDB(db_path=tmp_db_path)


@pytest.fixture
def scheduler(schedule_db, state_db):
    """Return a MissDetectionScheduler over the temp stores, in UTC."""
    from solguard.core.miss_detector import MissDetectionScheduler
    return MissDetectionScheduler(schedule_db, state_db)
