"""Retry engine: bounded exponential backoff around remote calls.

Only ``TransientError`` (which includes ``RateLimitedError``) is retried.
Anything else, and the last transient error once attempts run out,
propagates to the caller unchanged.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from dirsync.errors import RateLimitedError, TransientError
from dirsync.utils.log import get_logger

logger = get_logger("retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 1.0

    def delay_for(self, attempt: int, error: Exception | None = None) -> float:
        """Delay after failed ``attempt`` (0-based): ``initial_delay * 2**attempt``."""
        delay = self.initial_delay * (2 ** attempt)
        if isinstance(error, RateLimitedError):
            delay = max(delay, error.retry_after)
        return delay


async def with_retry(
    op: Callable[[], Awaitable[T]],
    policy: RetryPolicy = RetryPolicy(),
    *,
    description: str = "",
    retryable: tuple[type[BaseException], ...] = (TransientError,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``op`` up to ``policy.max_attempts`` times.

    Raises:
        The last retryable error once attempts are exhausted, or the first
        non-retryable error immediately.
    """
    attempts = max(1, policy.max_attempts)
    attempt = 0

    while True:
        try:
            return await op()
        except retryable as e:
            attempt += 1
            if attempt >= attempts:
                raise
            delay = policy.delay_for(attempt - 1, e)
            logger.warning(
                "Retrying %s after failure",
                description or "operation",
                extra={"context": {"attempt": attempt, "max_attempts": attempts, "delay": delay, "error": str(e)}},
            )
            await sleep(delay)
