"""
Shared fixtures: a controllable clock and a recording sleep.
"""
import asyncio

import pytest

from courseloader.cache import CacheRegistry, TTLStore


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Records requested delays and yields once instead of sleeping."""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return TTLStore(max_size=3, default_ttl=60, clock=clock)


@pytest.fixture
def registry(clock):
    return CacheRegistry(TTLStore(max_size=100, default_ttl=300, clock=clock))


@pytest.fixture
def sleep():
    return RecordingSleep()
