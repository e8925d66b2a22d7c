"""Backoff utilities.

`exponential_backoff` yields `(attempt, delay)` for the caller to try an
operation, then sleeps before the next attempt. The first attempt is made
immediately; with `max_attempts=1` nothing is ever slept or retried.
"""
import asyncio
from typing import AsyncIterator, Tuple


async def exponential_backoff(
    initial_delay: float,
    max_delay: float,
    multiplier: float,
    max_attempts: int,
) -> AsyncIterator[Tuple[int, float]]:
    delay = 0.0
    for attempt in range(1, max_attempts + 1):
        yield attempt, delay
        if attempt < max_attempts:
            delay = initial_delay if attempt == 1 else min(delay * multiplier, max_delay)
            await asyncio.sleep(delay)
