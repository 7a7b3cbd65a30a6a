"""
Core cache data structures.
"""
from dataclasses import dataclass
from typing import Any
from enum import Enum


class CacheSource(Enum):
    """Where a loaded value came from."""
    CACHE = "cache"        # Served from a live cache entry
    UPSTREAM = "upstream"  # Fetched through the wrapped fetcher


@dataclass
class CacheEntry:
    """
    A stored payload together with the time it was stored and its TTL.

    Owned by the TTLStore that created it. Liveness is evaluated against a
    caller-supplied ``now`` so the store can use any monotonic clock.
    """
    data: Any
    stored_at: float
    ttl_seconds: float

    def age_seconds(self, now: float) -> float:
        """Seconds since the entry was stored."""
        return now - self.stored_at

    def is_live(self, now: float) -> bool:
        """A non-positive TTL is never live."""
        if self.ttl_seconds <= 0:
            return False
        return self.age_seconds(now) <= self.ttl_seconds

    def is_expired(self, now: float) -> bool:
        return not self.is_live(now)
