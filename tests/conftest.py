"""Shared fixtures."""
import pytest
from datetime import datetime, timedelta, timezone


class FakeClock:
    """Manually advanced clock for stores, reconciler and dispatcher."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()
