"""
Hierarchical lazy loading.

A parent record (e.g. a course) is rendered as soon as it is available.
Its child collection (e.g. modules) is fetched next, and each child's
detail (e.g. a module's lesson contents) only when the child is expanded.
Every tier is cached independently, so collapsing and re-expanding, or
reopening the same parent later, does not refetch live data.

Two different questions are tracked separately:
- "loaded this session": the detail was merged into the view. Kept in
  ``loaded_keys`` for the life of the loader; an expired cache entry does
  not unmerge it.
- "cache still live": answered by the registry's TTL store.
``refresh`` clears both.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Hashable,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    TypeVar,
)

from ..cache.registry import CacheRegistry
from ..cache.ttl_policies import Tier, get_ttl_for_tier
from ..utils.helpers import resolve
from .state import CollectionState

logger = logging.getLogger("loading.hierarchical")

P = TypeVar("P")
C = TypeVar("C")
D = TypeVar("D")

_MISSING = object()


def default_child_id(child: Any) -> Hashable:
    """``child["id"]`` for mappings, ``child.id`` otherwise."""
    if isinstance(child, Mapping):
        return child["id"]
    return child.id


def default_merge(child: Any, detail: Any) -> Any:
    """
    Fold a fetched detail into its child record.

    Mapping details are merged key by key; any other detail is attached
    under ``"detail"``. Non-mapping children are replaced by the detail.
    """
    if not isinstance(child, Mapping):
        return detail
    if isinstance(detail, Mapping):
        return {**child, **detail}
    return {**child, "detail": detail}


@dataclass
class HierarchyView(Generic[P, C]):
    """In-memory structure handed to the rendering layer."""
    parent: Optional[P] = None
    children: List[C] = field(default_factory=list)
    expanded: Set[Hashable] = field(default_factory=set)

    @property
    def has_parent(self) -> bool:
        return self.parent is not None


class HierarchicalLazyLoader(Generic[P, C, D]):
    """
    Parent-first loader with on-demand, idempotent child expansion.

    Child collections move unloaded -> loading -> loaded. A second expand
    while loading joins the in-flight fetch; expand on a loaded child
    returns without fetching. A failed fetch is logged, recorded in
    ``errors`` and puts the child back to unloaded and collapsed; it is
    not retried until the next expand.

    Usage:
        loader = HierarchicalLazyLoader(
            registry,
            parent_key=f"course-{course_id}",
            fetch_parent=lambda: api.get_course(course_id),
            fetch_children=lambda course: api.list_modules(course["id"]),
            fetch_detail=lambda module_id: api.list_lessons(module_id),
        )
        view = await loader.open()
        await loader.expand(module_id)
    """

    def __init__(
        self,
        registry: Optional[CacheRegistry],
        parent_key: str,
        fetch_parent: Callable[[], Awaitable[P]],
        fetch_children: Callable[[P], Awaitable[List[C]]],
        fetch_detail: Callable[[Hashable], Awaitable[D]],
        child_id: Callable[[C], Hashable] = default_child_id,
        merge: Callable[[C, D], C] = default_merge,
        collection_key: Optional[str] = None,
        detail_key: Optional[Callable[[Hashable], str]] = None,
        collection_fingerprint: Optional[Callable[[P], Sequence[Any]]] = None,
        ttls: Optional[Dict[Tier, float]] = None,
        on_update: Optional[Callable[[HierarchyView], Any]] = None,
    ):
        """
        Initialize the loader.

        Args:
            registry: Cache registry; None disables caching on every tier
            parent_key: Cache key of the parent record
            fetch_parent: Loads the parent record
            fetch_children: Loads the child list for a parent
            fetch_detail: Loads one child's detail by child id
            child_id: Extracts the id of a child record
            merge: Folds a detail into its child record
            collection_key: Cache key of the child list
            detail_key: Builds the cache key of a child's detail
            collection_fingerprint: Derives from the parent the inputs the
                child list depends on; a change drops the cached list
            ttls: Per-tier TTL overrides
            on_update: Called with the view after every change
        """
        self.registry = registry
        self.parent_key = parent_key
        self.fetch_parent = fetch_parent
        self.fetch_children = fetch_children
        self.fetch_detail = fetch_detail
        self.child_id = child_id
        self.merge = merge
        self.collection_key = collection_key or f"{parent_key}-children"
        self._detail_key = detail_key or (lambda cid: f"{self.parent_key}-child-{cid}")
        self.collection_fingerprint = collection_fingerprint
        self.ttls = ttls
        self.on_update = on_update

        self.view: HierarchyView[P, C] = HierarchyView()
        self.details: Dict[Hashable, D] = {}
        self.errors: Dict[Hashable, Exception] = {}
        # Session-level "merged into view" flags, keyed by detail cache key
        self.loaded_keys: Set[str] = set()
        self._states: Dict[Hashable, CollectionState] = {}
        self._pending: Dict[Hashable, "asyncio.Task[Optional[D]]"] = {}
        # Child records as fetched, before any detail was merged in
        self._collection: List[C] = []
        self._generation = 0

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def detail_key(self, child_id: Hashable) -> str:
        return self._detail_key(child_id)

    def state_of(self, child_id: Hashable) -> CollectionState:
        return self._states.get(child_id, CollectionState.UNLOADED)

    def is_loaded(self, child_id: Hashable) -> bool:
        """Detail merged into the view during this loader's lifetime."""
        return self.detail_key(child_id) in self.loaded_keys

    def is_fresh(self, child_id: Hashable) -> bool:
        """Detail still held live in the TTL cache."""
        return self.registry is not None and self.registry.has(self.detail_key(child_id))

    def is_expanded(self, child_id: Hashable) -> bool:
        return child_id in self.view.expanded

    # ------------------------------------------------------------------
    # Parent and collection tiers
    # ------------------------------------------------------------------

    async def open(self) -> HierarchyView[P, C]:
        """Load the parent (rendered immediately), then its child list."""
        await self.load_parent()
        await self.load_collection()
        return self.view

    async def load_parent(self) -> P:
        """
        Cache-first load of the parent record.

        Raises:
            Exception: Any error from fetch_parent, after logging it
        """
        generation = self._generation
        parent = self._cache_get(self.parent_key)
        if parent is _MISSING:
            try:
                parent = await resolve(self.fetch_parent())
            except Exception as e:
                logger.error(f"Failed to load {self.parent_key}: {e}")
                raise
            self._cache_set(self.parent_key, parent, Tier.PARENT)
        else:
            logger.debug(f"CACHE HIT: {self.parent_key}")

        if generation == self._generation:
            self.view.parent = parent
            self._notify()
        return parent

    async def load_collection(self) -> List[C]:
        """
        Cache-first load of the child list, after the parent.

        Raises:
            Exception: Any error from fetch_children, after logging it
        """
        if not self.view.has_parent:
            await self.load_parent()
        generation = self._generation
        parent = self.view.parent

        try:
            if self.registry is not None and self.collection_fingerprint is not None:
                children = await self.registry.get_or_fetch(
                    self.collection_key,
                    lambda: self.fetch_children(parent),
                    dependencies=self.collection_fingerprint(parent),
                    ttl=get_ttl_for_tier(Tier.COLLECTION, self.ttls),
                )
            else:
                children = self._cache_get(self.collection_key)
                if children is _MISSING:
                    children = await resolve(self.fetch_children(parent))
                    self._cache_set(self.collection_key, children, Tier.COLLECTION)
        except Exception as e:
            logger.error(f"Failed to load {self.collection_key}: {e}")
            raise

        children = list(children)
        if generation == self._generation:
            self._collection = children
            self.view.children = list(children)
            # Details loaded before the list arrived
            for cid, detail in self.details.items():
                self._merge_into_view(cid, detail)
            self._notify()
        return children

    # ------------------------------------------------------------------
    # Detail tier
    # ------------------------------------------------------------------

    async def expand(self, child_id: Hashable) -> Optional[D]:
        """
        Mark a child expanded and load its detail once.

        Returns:
            The detail, or None if the load failed or was cancelled
        """
        self.view.expanded.add(child_id)
        if self.state_of(child_id) is CollectionState.LOADED:
            return self.details.get(child_id)

        task = self._pending.get(child_id)
        if task is None:
            self._states[child_id] = CollectionState.LOADING
            task = asyncio.get_running_loop().create_task(
                self._load_detail(child_id, self._generation)
            )
            self._pending[child_id] = task
        else:
            logger.debug(f"Joining in-flight load of {self.detail_key(child_id)}")
        try:
            # shield: one waiter going away must not cancel the shared load
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return None
            raise

    def collapse(self, child_id: Hashable) -> None:
        """View-only: the loaded detail stays merged."""
        self.view.expanded.discard(child_id)
        self._notify()

    async def toggle(self, child_id: Hashable) -> Optional[D]:
        if self.is_expanded(child_id):
            self.collapse(child_id)
            return self.details.get(child_id)
        return await self.expand(child_id)

    async def _load_detail(self, child_id: Hashable, generation: int) -> Optional[D]:
        key = self.detail_key(child_id)
        try:
            detail = self._cache_get(key)
            if detail is _MISSING:
                detail = await resolve(self.fetch_detail(child_id))
                if generation == self._generation:
                    self._cache_set(key, detail, Tier.DETAIL)
            else:
                logger.debug(f"CACHE HIT: {key}")
        except Exception as e:
            if generation == self._generation:
                logger.warning(f"Failed to load {key}: {e}")
                self._states[child_id] = CollectionState.UNLOADED
                self.view.expanded.discard(child_id)
                self.errors[child_id] = e
                self._notify()
            return None
        finally:
            if self._pending.get(child_id) is asyncio.current_task():
                del self._pending[child_id]

        if generation != self._generation:
            return None

        self.details[child_id] = detail
        self.errors.pop(child_id, None)
        self.loaded_keys.add(key)
        self._states[child_id] = CollectionState.LOADED
        self._merge_into_view(child_id, detail)
        self._notify()
        return detail

    def _merge_into_view(self, child_id: Hashable, detail: D) -> None:
        for index, child in enumerate(self.view.children):
            if self.child_id(child) == child_id:
                self.view.children[index] = self.merge(child, detail)
                return

    def _unmerge_from_view(self, child_id: Hashable) -> None:
        for index, child in enumerate(self._collection):
            if self.child_id(child) == child_id and index < len(self.view.children):
                self.view.children[index] = child
                return

    # ------------------------------------------------------------------
    # Refresh and teardown
    # ------------------------------------------------------------------

    async def refresh(self, child_id: Optional[Hashable] = None) -> Any:
        """
        Drop cached data and session flags, then reload.

        With a child id only that child's detail is reloaded (if it is
        expanded); the child record shows without its old detail until the
        new one arrives. Without one, every tier is dropped and the parent and
        child list are reopened.
        """
        if child_id is not None:
            task = self._pending.pop(child_id, None)
            if task is not None:
                task.cancel()
            key = self.detail_key(child_id)
            self._cache_remove(key)
            self.loaded_keys.discard(key)
            self.details.pop(child_id, None)
            self.errors.pop(child_id, None)
            self._unmerge_from_view(child_id)
            self._states[child_id] = CollectionState.UNLOADED
            logger.info(f"Refreshing {key}")
            if self.is_expanded(child_id):
                return await self.expand(child_id)
            return None

        expanded = set(self.view.expanded)
        self.detach()
        self._cache_remove(self.parent_key)
        self._cache_remove(self.collection_key)
        self._cache_remove(f"{self.collection_key}-deps")
        for cid in list(self._states):
            self._cache_remove(self.detail_key(cid))
        self.loaded_keys.clear()
        self.details.clear()
        self.errors.clear()
        self._states.clear()
        self._collection = []
        self.view = HierarchyView(expanded=expanded)
        logger.info(f"Refreshing {self.parent_key}")
        view = await self.open()
        for cid in expanded:
            await self.expand(cid)
        return view

    def detach(self) -> None:
        """Cancel in-flight detail loads and ignore their outcome."""
        self._generation += 1
        for child_id, task in list(self._pending.items()):
            task.cancel()
            self._states[child_id] = CollectionState.UNLOADED
        self._pending.clear()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _cache_get(self, key: str) -> Any:
        if self.registry is None:
            return _MISSING
        return self.registry.get(key, _MISSING)

    def _cache_set(self, key: str, data: Any, tier: Tier) -> None:
        if self.registry is not None:
            self.registry.set(key, data, get_ttl_for_tier(tier, self.ttls))

    def _cache_remove(self, key: str) -> None:
        if self.registry is not None:
            self.registry.remove(key)

    def _notify(self) -> None:
        if self.on_update is not None:
            self.on_update(self.view)
