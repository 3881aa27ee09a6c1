from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")


async def with_deadline(
    awaitable: Awaitable[T],
    seconds: float,
    on_timeout: Callable[[], BaseException],
) -> T:
    """Await `awaitable`, giving up after `seconds`.

    Used for both the per-request (response headers) and per-chunk (stall)
    timers. The loser is always released: on timeout the pending operation is
    cancelled by `asyncio.wait_for`, on success the timer is discarded.

    `seconds <= 0` disables the deadline.
    """
    if seconds <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise on_timeout() from e
