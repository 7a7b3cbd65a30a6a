"""
Paginated loading on top of LoadOrchestrator.

The orchestrator's data is page 1; ``load_more`` appends later pages.
"""
import logging
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from config.settings import settings

from ..cache.core import CacheSource
from ..utils.helpers import resolve
from .orchestrator import LoadOrchestrator
from .state import PaginationState

logger = logging.getLogger("loading.progressive")

T = TypeVar("T")


class ProgressiveListLoader(LoadOrchestrator[List[T]]):
    """
    Accumulates pages into one ordered list.

    Page 1 goes through the orchestrator (cache, retry, cancellation).
    Later pages come from ``load_next_page(page, page_size)`` and are not
    retried: a failure is logged and leaves ``has_next_page`` unchanged.
    """

    def __init__(
        self,
        fetcher: Callable[[], Awaitable[List[T]]],
        load_next_page: Optional[Callable[[int, int], Awaitable[List[T]]]] = None,
        page_size: Optional[int] = None,
        **kwargs: Any,
    ):
        """
        Initialize the loader.

        Args:
            fetcher: Loads the first page
            load_next_page: Loads page ``n`` of size ``page_size``
            page_size: Items per page
            **kwargs: Passed through to LoadOrchestrator
        """
        super().__init__(fetcher, **kwargs)
        self.load_next_page = load_next_page
        self.page_size = page_size if page_size is not None else settings.page_size
        self.pagination: PaginationState[T] = PaginationState()

    @property
    def items(self) -> List[T]:
        return self.pagination.items

    @property
    def page(self) -> int:
        return self.pagination.page

    @property
    def has_next_page(self) -> bool:
        return self.pagination.has_next_page

    @property
    def is_loading_more(self) -> bool:
        return self.pagination.is_loading_more

    def _reset_state(self) -> None:
        super()._reset_state()
        self.pagination = PaginationState()

    def _apply_result(self, data: List[T], source: CacheSource) -> None:
        # A reloaded first page replaces whatever was accumulated
        self.pagination = PaginationState(items=list(data or []))
        super()._apply_result(data, source)

    async def load_more(self) -> List[T]:
        """
        Fetch and append the next page.

        No-op until the first page has arrived, while any page is loading,
        when no next page is expected, or when no page loader was given.

        Returns:
            The items appended by this call
        """
        pagination = self.pagination
        if (
            self.load_next_page is None
            or self.state.data is None
            or self.is_loading
            or pagination.is_loading_more
            or not pagination.has_next_page
        ):
            return []

        generation = self._generation
        next_page = pagination.page + 1
        pagination.is_loading_more = True
        try:
            new_items = list(await resolve(self.load_next_page(next_page, self.page_size)))
        except Exception as e:
            logger.warning(f"Error loading page {next_page} for {self._label}: {e}")
            return []
        finally:
            pagination.is_loading_more = False

        if not self._is_current(generation) or pagination is not self.pagination:
            logger.debug(f"Discarding page {next_page} for superseded list {self._label}")
            return []

        if not new_items:
            pagination.has_next_page = False
            return []

        pagination.items.extend(new_items)
        pagination.page = next_page
        return new_items
