"""Bounded retry helper for awaitable operations."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")


async def retry_with_delay(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int,
    delay: float,
    on_retry: Callable[[int, Exception], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` up to ``max_attempts`` times with a fixed delay between tries.

    Cancellation is never retried. The last failure is re-raised once the
    attempts are exhausted.

    Args:
        operation: Zero-argument coroutine factory
        max_attempts: Total number of attempts (at least one is always made)
        delay: Seconds to sleep between attempts
        on_retry: Called with the zero-based attempt index and its error
            before sleeping
        sleep: Coroutine function used to wait between attempts
    """
    attempts = max(1, max_attempts)
    for attempt in range(attempts):
        try:
            return await operation()
        except Exception as e:
            if attempt + 1 >= attempts:
                raise
            if on_retry is not None:
                on_retry(attempt, e)
            await sleep(delay)

    raise AssertionError("unreachable")  # pragma: no cover
