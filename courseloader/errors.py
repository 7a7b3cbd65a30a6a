"""Exceptions raised by the cache and loader layers."""


class LoaderError(Exception):
    """Base class for errors raised by this package."""


class LoadTimeoutError(LoaderError, TimeoutError):
    """A single fetch attempt exceeded the configured timeout."""

    def __init__(self, key: str, timeout: float):
        self.key = key
        self.timeout = timeout
        super().__init__(f"Fetch for {key} timed out after {timeout}s")


class CoalescedRequestTimeout(LoaderError, TimeoutError):
    """A waiter gave up on an in-flight request it had joined."""
