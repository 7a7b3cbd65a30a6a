"""
In-memory caching with per-entry TTL, FIFO eviction, and request coalescing.
"""
from .core import CacheEntry, CacheSource
from .store import TTLStore, run_cleanup, schedule_cleanup
from .coalescer import RequestCoalescer
from .ttl_policies import TTL_CONFIG, Tier, get_ttl_for_tier
from .registry import (
    ApiCache,
    CacheRegistry,
    cached,
    fingerprint,
    get_cache_registry,
)

__all__ = [
    # Core types
    "CacheEntry",
    "CacheSource",
    # Store
    "TTLStore",
    "run_cleanup",
    "schedule_cleanup",
    # Coalescing
    "RequestCoalescer",
    # TTL policies
    "TTL_CONFIG",
    "Tier",
    "get_ttl_for_tier",
    # Registry
    "ApiCache",
    "CacheRegistry",
    "cached",
    "fingerprint",
    "get_cache_registry",
]
