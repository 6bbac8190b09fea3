"""
Shared fixtures for Rampart tests.
"""

from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from rampart.shared.clock import Clock
from rampart.shared.config import reset_settings
from rampart.shared.metrics_collector import get_metrics_collector
from rampart.shared.store import InMemoryStore


class FakeClock(Clock):
    """Manually advanced clock; ``sleep`` advances time instantly."""

    def __init__(self, start: datetime = None):
        self.current = start or datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0, **kwargs):
        self.current += timedelta(seconds=seconds, **kwargs)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


@pytest.fixture
def clock():
    """Deterministic clock starting at noon UTC."""
    return FakeClock()


@pytest.fixture
def store(clock):
    """In-memory store on the fake clock."""
    return InMemoryStore(clock)


@pytest.fixture(autouse=True)
def isolated_state():
    """Fresh metrics and settings for every test."""
    reset_settings()
    get_metrics_collector().reset()
    yield
    reset_settings()
    get_metrics_collector().reset()
