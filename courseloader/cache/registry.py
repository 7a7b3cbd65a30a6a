"""
Cache registry: the façade components use to reach the shared TTL store.

One registry owns exactly one TTLStore. ApiCache wraps a registry and
prefixes its keys with ``api_``, so both share the same store.
"""
import json
import logging
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, Sequence

from config.settings import settings

from ..utils.helpers import resolve
from .coalescer import RequestCoalescer
from .store import TTLStore

logger = logging.getLogger("cache.registry")

_MISSING = object()


def fingerprint(dependencies: Sequence[Any]) -> str:
    """Serialize a dependency sequence into a comparable snapshot."""
    return json.dumps(list(dependencies), sort_keys=True, default=str)


class CacheRegistry:
    """
    Publishes the operations of one owned TTLStore.

    Holds no state beyond the store; pass the registry (or None to disable
    caching) to whichever loader needs it.
    """

    def __init__(self, store: Optional[TTLStore] = None):
        """
        Initialize the registry.

        Args:
            store: Store to own; a new one is built from settings if omitted
        """
        if store is None:
            store = TTLStore(
                max_size=settings.cache_max_size,
                default_ttl=settings.cache_default_ttl_seconds,
            )
        self.store = store

    def get(self, key: str, default: Any = None) -> Any:
        return self.store.get(key, default)

    def set(self, key: str, data: Any, ttl: Optional[float] = None) -> None:
        self.store.set(key, data, ttl)

    def remove(self, key: str) -> bool:
        return self.store.remove(key)

    def clear(self, key: Optional[str] = None) -> int:
        return self.store.clear(key)

    def has(self, key: str) -> bool:
        return self.store.has(key)

    def invalidate(self, pattern: str) -> int:
        """Remove every key matched by the regular expression ``pattern``."""
        return self.store.invalidate_pattern(pattern)

    invalidate_pattern = invalidate

    @property
    def size(self) -> int:
        return self.store.size

    async def get_or_fetch(
        self,
        key: str,
        fetcher: Callable[[], Any],
        dependencies: Sequence[Any] = (),
        ttl: Optional[float] = None,
    ) -> Any:
        """
        Cached value for key, fetched on miss and guarded by a fingerprint.

        The fingerprint of ``dependencies`` is stored under ``<key>-deps``.
        If the stored fingerprint differs from the current one, both the
        value and the fingerprint are dropped before the lookup.

        Args:
            key: Cache key for the value
            fetcher: Callable returning the value or an awaitable of it
            dependencies: Inputs the cached value was derived from
            ttl: TTL for both entries; None uses the store default

        Returns:
            The cached or freshly fetched value
        """
        deps_key = f"{key}-deps"
        current = fingerprint(dependencies)
        cached_deps = self.get(deps_key)
        if cached_deps is not None and cached_deps != current:
            logger.info(f"Dependencies changed for {key}, dropping cached value")
            self.remove(key)
            self.remove(deps_key)

        value = self.get(key, _MISSING)
        if value is not _MISSING:
            logger.debug(f"CACHE HIT: {key}")
            return value

        logger.info(f"CACHE MISS: {key}")
        value = await resolve(fetcher())
        self.set(key, value, ttl)
        self.set(deps_key, current, ttl)
        return value

    def get_stats(self) -> dict:
        return self.store.get_stats()


class ApiCache:
    """
    Registry façade for remote API calls.

    Keys are ``api_<endpoint>`` in the wrapped registry's store. Concurrent
    calls for the same endpoint share one upstream request.
    """

    PREFIX = "api_"

    def __init__(
        self,
        registry: CacheRegistry,
        default_ttl: Optional[float] = None,
        coalesce_timeout: Optional[float] = None,
    ):
        self.registry = registry
        self.default_ttl = (
            default_ttl if default_ttl is not None else settings.api_cache_ttl_seconds
        )
        self._coalescer = RequestCoalescer(
            timeout=(
                coalesce_timeout
                if coalesce_timeout is not None
                else settings.coalesce_timeout_seconds
            )
        )

    def key_for(self, endpoint: str) -> str:
        return f"{self.PREFIX}{endpoint}"

    async def cache_api_call(
        self,
        endpoint: str,
        fetcher: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Any:
        """
        Cached result of an API call.

        Args:
            endpoint: Endpoint name, used as the key suffix
            fetcher: Coroutine function performing the call
            ttl: Custom TTL; None uses the façade default

        Returns:
            The cached or fetched data

        Raises:
            Exception: Any error from fetcher, uncached
        """
        cache_key = self.key_for(endpoint)
        cached = self.registry.get(cache_key, _MISSING)
        if cached is not _MISSING:
            logger.debug(f"Cache hit for {endpoint}")
            return cached

        logger.debug(f"Cache miss for {endpoint}, fetching...")

        async def fetch_and_store():
            data = await fetcher()
            self.registry.set(cache_key, data, ttl if ttl is not None else self.default_ttl)
            return data

        return await self._coalescer.get_or_fetch(cache_key, fetch_and_store)

    def invalidate_api_cache(self, pattern: str) -> int:
        """Invalidate ``api_`` keys whose suffix matches pattern."""
        return self.registry.invalidate(f"{self.PREFIX}{pattern}")

    @property
    def active_requests(self) -> int:
        return self._coalescer.active_requests


def cached(
    key_fn: Callable[..., str],
    ttl: Optional[float] = None,
    registry: Optional[CacheRegistry] = None,
):
    """
    Cache the results of an async function.

    Usage:
        @cached(lambda course_id: f"course-{course_id}", ttl=120)
        async def load_course(course_id): ...

    Args:
        key_fn: Builds the cache key from the call arguments
        ttl: TTL for stored results
        registry: Registry to use; the process-wide one if omitted
    """
    def decorator(fn):
        @wraps(fn)
        async def wrapper(*args, **kwargs):
            target = registry if registry is not None else get_cache_registry()
            cache_key = key_fn(*args, **kwargs)
            value = target.get(cache_key, _MISSING)
            if value is not _MISSING:
                return value
            value = await fn(*args, **kwargs)
            target.set(cache_key, value, ttl)
            return value
        return wrapper
    return decorator


# Process-wide registry instance
_cache_registry: Optional[CacheRegistry] = None


def get_cache_registry() -> CacheRegistry:
    """Get or create the process-wide cache registry."""
    global _cache_registry
    if _cache_registry is None:
        _cache_registry = CacheRegistry()
    return _cache_registry
