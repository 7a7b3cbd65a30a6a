"""
Progressive loading: cache-first orchestration, paginated lists, and
hierarchical lazy expansion.
"""
from .state import CollectionState, LoadState, PaginationState
from .orchestrator import LoadOrchestrator
from .progressive import ProgressiveListLoader
from .hierarchical import (
    HierarchicalLazyLoader,
    HierarchyView,
    default_child_id,
    default_merge,
)

__all__ = [
    # State
    "CollectionState",
    "LoadState",
    "PaginationState",
    # Loaders
    "LoadOrchestrator",
    "ProgressiveListLoader",
    "HierarchicalLazyLoader",
    "HierarchyView",
    "default_child_id",
    "default_merge",
]
