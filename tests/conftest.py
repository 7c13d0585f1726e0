"""Shared fixtures: fake clocks, entry factories and recording sleeps."""
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from schemas.memory import MemoryEntry, Provenance


class ManualClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def make_entry():
    """Factory for MemoryEntry; ``age_minutes`` sets the timestamp relative to BASE_TIME."""

    def _make(entry_id: str, content: str, score: float = 0.8, age_minutes=0, **kwargs) -> MemoryEntry:
        timestamp = None if age_minutes is None else BASE_TIME - timedelta(minutes=age_minutes)
        kwargs.setdefault("provenance", Provenance(collection="user:42"))
        return MemoryEntry(id=entry_id, content=content, score=score, timestamp=timestamp, **kwargs)

    return _make
