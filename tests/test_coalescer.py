"""
Tests for request coalescing.
"""
import asyncio

import pytest

from courseloader.cache import RequestCoalescer
from courseloader.errors import CoalescedRequestTimeout


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_fetch():
    coalescer = RequestCoalescer()
    gate = asyncio.Event()
    calls = 0

    async def fetch():
        nonlocal calls
        calls += 1
        await gate.wait()
        return ["course-1", "course-2"]

    first = asyncio.create_task(coalescer.get_or_fetch("api_courses", fetch))
    second = asyncio.create_task(coalescer.get_or_fetch("api_courses", fetch))
    await asyncio.sleep(0)

    assert coalescer.active_requests == 1
    gate.set()

    assert await first == ["course-1", "course-2"]
    assert await second == ["course-1", "course-2"]
    assert calls == 1
    assert coalescer.active_requests == 0


@pytest.mark.asyncio
async def test_error_reaches_every_waiter():
    coalescer = RequestCoalescer()
    gate = asyncio.Event()

    async def fetch():
        await gate.wait()
        raise ConnectionError("remote unreachable")

    first = asyncio.create_task(coalescer.get_or_fetch("k", fetch))
    second = asyncio.create_task(coalescer.get_or_fetch("k", fetch))
    await asyncio.sleep(0)
    gate.set()

    with pytest.raises(ConnectionError):
        await first
    with pytest.raises(ConnectionError):
        await second
    assert coalescer.active_requests == 0


@pytest.mark.asyncio
async def test_waiter_timeout_leaves_initiator_running():
    coalescer = RequestCoalescer(timeout=0.01)
    gate = asyncio.Event()

    async def fetch():
        await gate.wait()
        return "done"

    initiator = asyncio.create_task(coalescer.get_or_fetch("k", fetch))
    await asyncio.sleep(0)

    with pytest.raises(CoalescedRequestTimeout):
        await coalescer.get_or_fetch("k", fetch)

    gate.set()
    assert await initiator == "done"


@pytest.mark.asyncio
async def test_sequential_requests_fetch_again():
    coalescer = RequestCoalescer()
    calls = 0

    async def fetch():
        nonlocal calls
        calls += 1
        return calls

    assert await coalescer.get_or_fetch("k", fetch) == 1
    assert await coalescer.get_or_fetch("k", fetch) == 2
    assert coalescer.get_stats() == {"active_requests": 0, "active_keys": []}
