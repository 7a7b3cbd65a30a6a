"""
Load orchestration for one asynchronous fetch operation.

Wraps a fetcher with:
- Cache-first lookup through a CacheRegistry
- Optional initial delay
- Retry with exponential backoff (tenacity)
- Cancellation when dependencies change or the consumer detaches
- Success/error callbacks

Every activation takes a generation number. A continuation only touches
state or callbacks while its generation is still the newest one, so a
stale fetch that resolves late can never overwrite a newer result.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Generic, Optional, Sequence, Tuple, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from config.settings import settings

from ..cache.core import CacheSource
from ..cache.registry import CacheRegistry
from ..errors import LoadTimeoutError
from ..utils.helpers import describe, resolve
from .state import LoadState

logger = logging.getLogger("loading.orchestrator")

T = TypeVar("T")

_MISSING = object()


class _Superseded(Exception):
    """Raised inside a retry chain whose activation is no longer current."""


class LoadOrchestrator(Generic[T]):
    """
    Cache-first, retrying, cancellable loader for one value.

    Must be driven from a running event loop: activations are scheduled as
    tasks and return immediately.

    Usage:
        loader = LoadOrchestrator(
            fetch_course,
            cache_key="course-42",
            registry=registry,
            dependencies=(course_id,),
        )
        async with loader:
            state = await loader.wait()
    """

    def __init__(
        self,
        fetcher: Callable[[], Awaitable[T]],
        cache_key: Optional[str] = None,
        registry: Optional[CacheRegistry] = None,
        dependencies: Sequence[Any] = (),
        delay: float = 0.0,
        cache_ttl: Optional[float] = None,
        enable_cache: bool = True,
        retry_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        on_success: Optional[Callable[[T], Any]] = None,
        on_error: Optional[Callable[[Exception], Any]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize the orchestrator. Nothing runs until ``start``.

        Args:
            fetcher: Zero-argument callable returning the value (or an awaitable)
            cache_key: Key to cache under; None disables caching
            registry: Cache registry; None disables caching
            dependencies: Values whose change re-runs the load
            delay: Seconds to wait before fetching
            cache_ttl: TTL for stored results
            enable_cache: Master switch for caching
            retry_attempts: Retries after the first failure
            retry_delay: Backoff base in seconds (delay doubles per retry)
            timeout: Per-attempt fetch timeout in seconds; None waits forever
            on_success: Called with the data after every successful load
            on_error: Called with the error once retries are exhausted
            sleep: Coroutine used for delays, injectable for tests
        """
        self.fetcher = fetcher
        self.cache_key = cache_key
        self.registry = registry
        self.delay = delay
        self.cache_ttl = cache_ttl if cache_ttl is not None else settings.load_cache_ttl_seconds
        self.enable_cache = enable_cache
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None else settings.load_retry_attempts
        )
        self.retry_delay = (
            retry_delay if retry_delay is not None else settings.load_retry_delay_seconds
        )
        self.timeout = timeout if timeout is not None else settings.load_timeout_seconds
        self.on_success = on_success
        self.on_error = on_error
        self._sleep = sleep

        self.state: LoadState[T] = LoadState()
        self._dependencies: Tuple[Any, ...] = tuple(dependencies)
        self._generation = 0
        self._task: Optional["asyncio.Task[None]"] = None
        self._started = False

    # ------------------------------------------------------------------
    # State accessors
    # ------------------------------------------------------------------

    @property
    def data(self) -> Optional[T]:
        return self.state.data

    @property
    def is_loading(self) -> bool:
        return self.state.is_loading

    @property
    def error(self) -> Optional[Exception]:
        return self.state.error

    @property
    def retry_count(self) -> int:
        return self.state.retry_count

    @property
    def dependencies(self) -> Tuple[Any, ...]:
        return self._dependencies

    @property
    def caching_enabled(self) -> bool:
        return self.enable_cache and self.cache_key is not None and self.registry is not None

    @property
    def has_cached_data(self) -> bool:
        """True if the cache holds a live entry for cache_key."""
        return self.caching_enabled and self.registry.has(self.cache_key)

    @property
    def _label(self) -> str:
        return self.cache_key or describe(self.fetcher)

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    def start(self) -> "asyncio.Task[None]":
        """First activation. Calling it again returns the current task."""
        if self._started and self._task is not None:
            return self._task
        return self._launch(bypass_cache=False)

    def update_dependencies(
        self,
        dependencies: Sequence[Any],
        fetcher: Optional[Callable[[], Awaitable[T]]] = None,
        cache_key: Optional[str] = None,
    ) -> bool:
        """
        Re-activate if the dependency sequence changed.

        Sequences are compared element-wise with ``==`` (identity first),
        so a different length or any differing element counts as a change.
        A new fetcher or cache key, usually derived from the same values,
        replaces the current one before the re-activation.

        Args:
            dependencies: Current dependency values
            fetcher: Fetcher for the new dependencies; None keeps the current one
            cache_key: Cache key for the new dependencies; None keeps the current one

        Returns:
            True if a new activation was started
        """
        dependencies = tuple(dependencies)
        if fetcher is not None:
            self.fetcher = fetcher
        if cache_key is not None:
            self.cache_key = cache_key
        if self._started and dependencies == self._dependencies:
            return False
        self._dependencies = dependencies
        self._reset_state()
        self._launch(bypass_cache=False)
        return True

    def retry(self) -> "asyncio.Task[None]":
        """Fresh attempt that bypasses the cache, with the retry budget reset."""
        self.state.retry_count = 0
        return self._launch(bypass_cache=True)

    def refresh(self) -> "asyncio.Task[None]":
        """Drop the cached entry, then retry."""
        if self.caching_enabled:
            self.registry.remove(self.cache_key)
            logger.info(f"Refreshing {self.cache_key}")
        self.state.retry_count = 0
        return self._launch(bypass_cache=True)

    def detach(self) -> None:
        """Consumer went away: cancel in-flight work and ignore its outcome."""
        self._generation += 1
        self._cancel_in_flight()
        self.state.is_loading = False

    async def wait(self) -> LoadState[T]:
        """Wait until the newest activation (including retries) settles."""
        while self._task is not None and not self._task.done():
            await asyncio.wait({self._task})
        return self.state

    async def __aenter__(self) -> "LoadOrchestrator[T]":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.detach()

    def _reset_state(self) -> None:
        self.state = LoadState()

    def _cancel_in_flight(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def _launch(self, bypass_cache: bool) -> "asyncio.Task[None]":
        self._cancel_in_flight()
        self._generation += 1
        self._started = True
        generation = self._generation
        self._task = asyncio.get_running_loop().create_task(
            self._run(generation, bypass_cache)
        )
        return self._task

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run(self, generation: int, bypass_cache: bool) -> None:
        if not self._is_current(generation):
            return
        self.state.is_loading = True
        self.state.error = None
        try:
            if self.caching_enabled and not bypass_cache:
                cached = self.registry.get(self.cache_key, _MISSING)
                if cached is not _MISSING:
                    logger.debug(f"CACHE HIT: {self.cache_key}")
                    self._apply_result(cached, CacheSource.CACHE)
                    return

            if self.delay > 0:
                await self._sleep(self.delay)
                if not self._is_current(generation):
                    return

            try:
                result = await self._fetch_with_retry(generation)
            except Exception as e:
                if not self._is_current(generation):
                    logger.debug(f"Discarding error from superseded load of {self._label}: {e}")
                    return
                self._apply_error(e)
                return

            if not self._is_current(generation):
                logger.debug(f"Discarding result from superseded load of {self._label}")
                return

            if self.caching_enabled:
                self.registry.set(self.cache_key, result, self.cache_ttl)
            self._apply_result(result, CacheSource.UPSTREAM)
        except asyncio.CancelledError:
            if self._is_current(generation):
                raise
            logger.debug(f"Cancelled superseded load of {self._label}")
        finally:
            if self._is_current(generation):
                self.state.is_loading = False

    async def _fetch_with_retry(self, generation: int) -> T:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts + 1),
            wait=wait_exponential(multiplier=self.retry_delay),
            retry=retry_if_exception(
                lambda e: isinstance(e, Exception) and self._is_current(generation)
            ),
            before_sleep=lambda retry_state: self._before_retry(generation, retry_state),
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if not self._is_current(generation):
                    raise _Superseded()
                result = await self._fetch_once()
        return result

    async def _fetch_once(self) -> T:
        pending = resolve(self.fetcher())
        if self.timeout is None:
            return await pending
        try:
            return await asyncio.wait_for(pending, self.timeout)
        except asyncio.TimeoutError:
            raise LoadTimeoutError(self._label, self.timeout)

    def _before_retry(self, generation: int, retry_state: RetryCallState) -> None:
        if not self._is_current(generation):
            return
        self.state.retry_count = retry_state.attempt_number
        logger.warning(
            f"Fetch failed for {self._label} "
            f"(retry {retry_state.attempt_number}/{self.retry_attempts} "
            f"in {retry_state.next_action.sleep:.1f}s): "
            f"{retry_state.outcome.exception()}"
        )

    def _apply_result(self, data: T, source: CacheSource) -> None:
        self.state.data = data
        self.state.error = None
        self.state.is_loading = False
        self.state.retry_count = 0
        self.state.source = source
        if self.on_success is not None:
            self.on_success(data)

    def _apply_error(self, error: Exception) -> None:
        self.state.error = error
        self.state.is_loading = False
        logger.error(
            f"Load failed for {self._label} after {self.state.retry_count} retries: {error}"
        )
        if self.on_error is not None:
            self.on_error(error)
