"""
Client-side caching and resilient progressive loading for the course portal.
"""
from .cache import ApiCache, CacheRegistry, TTLStore, get_cache_registry
from .errors import CoalescedRequestTimeout, LoaderError, LoadTimeoutError
from .loading import (
    HierarchicalLazyLoader,
    LoadOrchestrator,
    LoadState,
    ProgressiveListLoader,
)

__version__ = "0.1.0"

__all__ = [
    "ApiCache",
    "CacheRegistry",
    "TTLStore",
    "get_cache_registry",
    "CoalescedRequestTimeout",
    "LoaderError",
    "LoadTimeoutError",
    "HierarchicalLazyLoader",
    "LoadOrchestrator",
    "LoadState",
    "ProgressiveListLoader",
]
