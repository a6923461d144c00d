"""Shared fixtures for the sync store tests."""

from datetime import datetime, timedelta, timezone

import pytest

from recipesync.store import Database


class FakeClock:
    """Controllable clock passed to components in place of ``utcnow``."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db():
    """Create an in-memory sync database."""
    database = Database(":memory:")
    database.connect()
    yield database
    database.close()
