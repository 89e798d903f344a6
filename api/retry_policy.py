"""
retry_policy.py — Bounded retry loop for rate-limited completion calls.

Only rate-limit signals are retried.  Any other failure means the request
itself is broken and is raised on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from errors import RateLimitedError

logger = logging.getLogger("azops.llm")

T = TypeVar("T")


async def execute_with_retry(
    call: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay_ms: int = 1000,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Optional[Callable[[int, float], None]] = None,
) -> T:
    """
    Await ``call()`` up to ``max_attempts`` times.

    A ``RateLimitedError`` waits for the server's Retry-After value when it
    has one, otherwise for the current backoff delay, which doubles after
    every rate-limited attempt.  The last error is raised once attempts run
    out.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    delay = initial_delay_ms / 1000.0

    for attempt in range(1, max_attempts + 1):
        try:
            return await call()
        except RateLimitedError as exc:
            if attempt == max_attempts:
                raise
            wait = exc.retry_after if exc.retry_after is not None else delay
            logger.warning(
                "Rate limited (attempt %d/%d), retrying after %.2fs",
                attempt, max_attempts, wait,
            )
            if on_retry is not None:
                on_retry(attempt, wait)
            await sleep(wait)
            delay *= 2
