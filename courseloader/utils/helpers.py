"""
Utility helpers for calling fetchers and callbacks.
"""
import inspect
from typing import Any, Callable


async def resolve(value: Any) -> Any:
    """
    Await value if it is awaitable, otherwise return it unchanged.

    Lets fetchers be plain callables as well as coroutine functions.

    Args:
        value: Result of calling a fetcher

    Returns:
        The resolved value
    """
    if inspect.isawaitable(value):
        return await value
    return value


def describe(fn: Callable[..., Any]) -> str:
    """Human-readable name of a callable, for log lines."""
    return getattr(fn, "__qualname__", None) or getattr(fn, "__name__", None) or repr(fn)
