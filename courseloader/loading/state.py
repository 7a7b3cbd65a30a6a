"""
Transient state held by loader instances.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, List, Optional, TypeVar

from ..cache.core import CacheSource

T = TypeVar("T")


@dataclass
class LoadState(Generic[T]):
    """
    State of one orchestrator activation chain.

    Reset whenever the orchestrator's dependencies change.
    """
    data: Optional[T] = None
    is_loading: bool = False
    error: Optional[Exception] = None
    retry_count: int = 0
    source: Optional[CacheSource] = None


@dataclass
class PaginationState(Generic[T]):
    """Accumulated pages of a progressive list."""
    items: List[T] = field(default_factory=list)
    page: int = 1
    has_next_page: bool = True
    is_loading_more: bool = False


class CollectionState(Enum):
    """
    Lifecycle of one lazily loaded child collection.

    A failed load goes back to UNLOADED so the next expand retries.
    """
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
