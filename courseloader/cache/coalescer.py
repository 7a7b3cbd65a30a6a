"""
Request coalescing to prevent duplicate upstream calls.

When multiple concurrent tasks ask for the same key, only one upstream
call is made and all requesters share the result.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from ..errors import CoalescedRequestTimeout

logger = logging.getLogger("cache.coalescer")


@dataclass
class InFlightRequest:
    """Tracks an in-progress upstream request."""
    future: "asyncio.Future[Any]"
    started_at: float = field(default_factory=time.monotonic)
    waiter_count: int = 0


class RequestCoalescer:
    """
    Ensures concurrent requests for the same key share one upstream call.

    Pattern:
    - First request for a key initiates the fetch
    - Subsequent requests for the same key await the initiator's future
    - When the fetch completes, all waiters receive the same result or error
    - No lock needed: bookkeeping happens between await points

    Usage:
        coalescer = RequestCoalescer()
        result = await coalescer.get_or_fetch(
            key="api_courses",
            fetch_fn=lambda: client.list_courses(),
        )
    """

    def __init__(self, timeout: Optional[float] = 30.0):
        """
        Initialize the coalescer.

        Args:
            timeout: Max seconds a waiter waits for an in-flight request
        """
        self._in_flight: Dict[str, InFlightRequest] = {}
        self._timeout = timeout

    async def get_or_fetch(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Either join an existing in-flight request or initiate a new one.

        Args:
            key: Unique key for this request
            fetch_fn: Coroutine function to call if we need to fetch

        Returns:
            The fetched data (shared among all concurrent callers)

        Raises:
            CoalescedRequestTimeout: If waiting for an in-flight request times out
            Exception: Any error from fetch_fn is propagated to every caller
        """
        in_flight = self._in_flight.get(key)
        if in_flight is not None:
            in_flight.waiter_count += 1
            logger.debug(
                f"Coalescing request for {key} "
                f"(waiters: {in_flight.waiter_count})"
            )
            try:
                # shield: a waiter giving up must not cancel the initiator
                return await asyncio.wait_for(
                    asyncio.shield(in_flight.future), self._timeout
                )
            except asyncio.TimeoutError:
                logger.error(f"Timeout waiting for coalesced request: {key}")
                raise CoalescedRequestTimeout(
                    f"Request for {key} timed out after {self._timeout}s"
                )

        future = asyncio.get_running_loop().create_future()
        in_flight = InFlightRequest(future=future)
        self._in_flight[key] = in_flight
        logger.debug(f"Initiating fetch for {key}")
        try:
            result = await fetch_fn()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            logger.warning(f"Fetch failed for {key}: {e}")
            future.set_exception(e)
            # Mark retrieved so an unobserved failure is not reported
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            if self._in_flight.get(key) is in_flight:
                del self._in_flight[key]

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight requests."""
        return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        return {
            "active_requests": len(self._in_flight),
            "active_keys": list(self._in_flight.keys()),
        }
