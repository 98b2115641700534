"""Retry policy shared by sitemap fetches and page navigations.

Only exceptions listed in ``retry_on`` are retried; anything else propagates
on the first occurrence.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from .errors import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Backoff = Callable[[int], float]


def linear_backoff(base_seconds: float) -> Backoff:
    """Delay after failed attempt ``n`` (1-based) is ``n * base_seconds``."""
    return lambda attempt: attempt * base_seconds


def exponential_backoff(base_seconds: float, multiplier: float = 2.0) -> Backoff:
    return lambda attempt: base_seconds * (multiplier ** (attempt - 1))


@dataclass
class RetryPolicy:
    """
    Args:
        max_attempts: Total attempts including the first one.
        backoff: Seconds to wait after failed attempt ``n``.
        retry_on: Exception types treated as transient.
        sleep: Awaitable sleep, swapped out in tests.
    """

    max_attempts: int
    backoff: Backoff = field(default_factory=lambda: linear_backoff(1.0))
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        describe: str = "operation",
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
    ) -> T:
        """
        Await ``fn()`` until it succeeds or attempts run out.

        Raises:
            RetryExhaustedError: every attempt failed with a retryable error.
        """
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await fn()
            except self.retry_on as exc:
                last_error = exc
                if attempt == self.max_attempts:
                    break
                delay = max(0.0, self.backoff(attempt))
                logger.warning(
                    "[RETRY] %s attempt %d/%d failed (%s: %s); retrying in %.1fs",
                    describe,
                    attempt,
                    self.max_attempts,
                    type(exc).__name__,
                    exc,
                    delay,
                )
                if on_retry is not None:
                    on_retry(attempt, exc)
                await self.sleep(delay)

        raise RetryExhaustedError(attempts=self.max_attempts, last_error=last_error)
