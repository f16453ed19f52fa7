"""
Shared test fixtures.
"""
from datetime import datetime, timedelta

import pytest


class FakeClock:
    """Controllable replacement for datetime.now."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


@pytest.fixture
def clock():
    """Clock fixed at midday on a known date."""
    return FakeClock(datetime(2026, 3, 10, 12, 0, 0))
