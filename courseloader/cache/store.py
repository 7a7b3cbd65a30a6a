"""
Bounded in-memory key/value store with per-entry TTL.

Entries expire lazily: a read of an expired entry behaves like a miss and
removes the entry. When the store is full, the oldest inserted entry is
evicted (insertion order, not access recency).
"""
import asyncio
import logging
import re
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from config.settings import settings

from .core import CacheEntry

logger = logging.getLogger("cache.store")

_MISSING = object()


class TTLStore:
    """
    Mapping of string keys to CacheEntry objects with a capacity bound.

    Overwriting an existing key never evicts anything and moves the key to
    the back of the eviction queue.

    Usage:
        store = TTLStore(max_size=100, default_ttl=300)
        store.set("course-42", course)
        course = store.get("course-42")
    """

    def __init__(
        self,
        max_size: int = 100,
        default_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the store.

        Args:
            max_size: Maximum number of entries held at once
            default_ttl: TTL in seconds used when ``set`` gets none
            clock: Monotonic time source, injectable for tests
        """
        if max_size < 1:
            raise ValueError(f"max_size must be at least 1, got {max_size}")
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._clock = clock
        # dicts preserve insertion order, which is the eviction order
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._stats = {"hits": 0, "misses": 0}

    def _live_entry(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for key, dropping it if expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            logger.debug(f"Expired: {key}")
            return None
        return entry

    def get(self, key: str, default: Any = None) -> Any:
        """Return the live payload for key, or default on miss/expiry."""
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                self._stats["misses"] += 1
                return default
            self._stats["hits"] += 1
            return entry.data

    def set(self, key: str, data: Any, ttl: Optional[float] = None) -> None:
        """
        Insert or overwrite key.

        Args:
            key: Cache key
            data: Payload, stored as-is
            ttl: Seconds the entry stays live; None uses the default TTL
        """
        if ttl is None:
            ttl = self.default_ttl
        with self._lock:
            if key in self._entries:
                # Overwrite resets insertion order, no net growth
                del self._entries[key]
            elif len(self._entries) >= self.max_size:
                self._evict_oldest()
            self._entries[key] = CacheEntry(
                data=data, stored_at=self._clock(), ttl_seconds=ttl
            )

    def _evict_oldest(self) -> None:
        oldest = next(iter(self._entries))
        del self._entries[oldest]
        logger.debug(f"Evicted oldest entry: {oldest}")

    def has(self, key: str) -> bool:
        """Liveness check without returning data. Drops expired entries."""
        with self._lock:
            return self._live_entry(key) is not None

    def remove(self, key: str) -> bool:
        """
        Remove a single entry.

        Returns:
            True if the key was present
        """
        with self._lock:
            return self._entries.pop(key, _MISSING) is not _MISSING

    def clear(self, key: Optional[str] = None) -> int:
        """
        Remove one key, or everything when no key is given.

        A full clear also resets the hit/miss counters.

        Returns:
            Number of entries removed
        """
        with self._lock:
            if key is not None:
                return 1 if self.remove(key) else 0
            count = len(self._entries)
            self._entries.clear()
            self._stats = {"hits": 0, "misses": 0}
            logger.info(f"Cleared {count} cache entries")
            return count

    def invalidate_pattern(self, pattern: str) -> int:
        """
        Remove every key matched by a regular expression.

        The pattern is searched (not anchored) in each key; callers escape
        metacharacters themselves for literal matches.

        Raises:
            re.error: If the pattern does not compile

        Returns:
            Number of entries removed
        """
        regex = re.compile(pattern)
        with self._lock:
            to_delete = [k for k in self._entries if regex.search(k)]
            for key in to_delete:
                del self._entries[key]
        if to_delete:
            logger.info(f"Invalidated {len(to_delete)} entries matching '{pattern}'")
        return len(to_delete)

    def cleanup(self) -> int:
        """
        Sweep all expired entries.

        Returns:
            Number of entries removed
        """
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"Cache cleanup removed {len(expired)} expired entries")
        return len(expired)

    def get_many(self, keys: Iterable[str], default: Any = None) -> Dict[str, Any]:
        """Look up several keys at once."""
        return {key: self.get(key, default) for key in keys}

    def set_many(self, entries: Iterable[Tuple]) -> None:
        """
        Store several entries.

        Args:
            entries: ``(key, data)`` or ``(key, data, ttl)`` tuples
        """
        for entry in entries:
            self.set(*entry)

    def keys(self) -> List[str]:
        """All stored keys in insertion order, expired or not."""
        with self._lock:
            return list(self._entries)

    @property
    def size(self) -> int:
        """
        Number of stored entries.

        Not liveness-filtered: expired entries count until a read or a
        cleanup removes them.
        """
        return len(self._entries)

    def __len__(self) -> int:
        return self.size

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    def get_stats(self) -> Dict[str, Any]:
        """Get store statistics."""
        with self._lock:
            total = self._stats["hits"] + self._stats["misses"]
            hit_rate = (self._stats["hits"] / total * 100) if total > 0 else 0
            return {
                "entries": len(self._entries),
                "max_size": self.max_size,
                "hits": self._stats["hits"],
                "misses": self._stats["misses"],
                "hit_rate_percent": round(hit_rate, 1),
            }


async def run_cleanup(
    store: TTLStore,
    interval: float,
    sleep: Callable[[float], Any] = asyncio.sleep,
) -> None:
    """Sweep expired entries every ``interval`` seconds until cancelled."""
    while True:
        await sleep(interval)
        store.cleanup()


def schedule_cleanup(
    store: TTLStore,
    interval: Optional[float] = None,
) -> "asyncio.Task[None]":
    """
    Start the periodic sweep on the running event loop.

    Cancel the returned task to stop it.

    Args:
        store: Store to sweep
        interval: Seconds between sweeps; None uses the configured interval
    """
    if interval is None:
        interval = settings.cache_cleanup_interval_seconds
    if interval <= 0:
        raise ValueError(f"cleanup interval must be positive, got {interval}")
    return asyncio.get_running_loop().create_task(
        run_cleanup(store, interval), name="cache-cleanup"
    )
