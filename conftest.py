"""Shared pytest fixtures for the Reminder Scheduling Engine tests."""

import os
import tempfile

os.environ.setdefault("REMINDER_LOG_DIR", tempfile.mkdtemp(prefix="reminder-logs-"))
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timezone  # noqa: E402

import pytest  # noqa: E402

import database  # noqa: E402
from timezone_storage import LocalStorage  # noqa: E402

# Wednesday 2025-01-15 08:00 UTC
FIXED_NOW = datetime(2025, 1, 15, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock returning aware UTC datetimes."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test."""
    factory = database.create_session_factory("sqlite://")
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def storage():
    return LocalStorage()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def no_sleep():
    calls = []

    async def sleep(seconds):
        calls.append(seconds)

    sleep.calls = calls
    return sleep
