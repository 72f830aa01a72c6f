from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

Sleeper = Callable[[float], Awaitable[None]]


def compute_backoff(
    attempt: int, initial_delay_ms: float = 1000, multiplier: float = 2.0
) -> float:
    """Return the delay in milliseconds to wait before ``attempt`` (1-based).

    No delay precedes the first attempt; attempt ``k`` waits
    ``initial_delay_ms * multiplier ** (k - 2)``.
    """
    if attempt <= 1:
        return 0.0
    return initial_delay_ms * multiplier ** (attempt - 2)


async def schedule_retry(
    attempt: int,
    initial_delay_ms: float = 1000,
    multiplier: float = 2.0,
    sleep: Sleeper = asyncio.sleep,
) -> float:
    """Sleep for the computed backoff delay before retrying.

    Returns the delay in milliseconds.
    """
    delay_ms = compute_backoff(attempt, initial_delay_ms, multiplier)
    if delay_ms > 0:
        await sleep(delay_ms / 1000)
    return delay_ms
