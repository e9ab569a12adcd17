"""Retry utilities for handling transient failures.

Key Exports:
    async_retry: Decorator adding bounded retries to async host calls.
    backoff_delays: Generator of capped exponential delays, shared with the
        recovery engine's RetryWithBackoff strategy.

Example:
    >>> from repo_autopilot.utils.retry import async_retry
    >>>
    >>> @async_retry(max_attempts=3, backoff_factor=2.0, exceptions=(httpx.TransportError,))
    ... async def fetch_issue(number: int) -> dict:
    ...     response = await client.get(f"/issues/{number}")
    ...     return response.json()

Backoff Formula:
    delay_n = min(base * 2 ** (n - 1), cap)
    For base=1, cap=10: 1s, 2s, 4s, 8s, 10s, 10s, ...
"""

import asyncio
import functools
from collections.abc import Callable, Iterator
from typing import Any, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")


def backoff_delays(base: float, cap: float) -> Iterator[float]:
    """Yield exponentially growing delays, doubling from ``base`` up to ``cap``."""
    delay = min(base, cap)
    while True:
        yield delay
        delay = min(delay * 2, cap)


def async_retry(
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    max_delay: float = 30.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator for async functions with exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of calls before giving up
        backoff_factor: Delay before retry N is ``backoff_factor ** N`` seconds
        max_delay: Ceiling applied to every delay
        exceptions: Exception types that trigger a retry. Anything else
            propagates immediately.

    Raises:
        The last caught exception once all attempts are exhausted.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        log.error(
                            "retry_exhausted",
                            function=func.__name__,
                            attempts=attempt,
                            error=str(e),
                        )
                        raise

                    delay = min(backoff_factor**attempt, max_delay)
                    log.warning(
                        "retry_attempt",
                        function=func.__name__,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

            raise RuntimeError("Retry logic error")

        return wrapper

    return decorator
