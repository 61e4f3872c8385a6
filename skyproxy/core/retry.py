"""Retry policy with exponential backoff and jitter."""
import asyncio
import random
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

T = TypeVar("T")

RETRYABLE_STATUSES = {408, 429}

DEFAULT_BASE_MS = 1000
DEFAULT_MAX_MS = 10000
DEFAULT_JITTER_MS = 200


def is_retryable_status(status_code: Optional[int]) -> bool:
    """Check whether a failure should be retried.

    Network failures (no status) are retryable, as are 408, 429 and any 5xx.
    """
    if status_code is None:
        return True
    return status_code in RETRYABLE_STATUSES or 500 <= status_code < 600


def backoff_delay_ms(
    attempt: int,
    base_ms: int = DEFAULT_BASE_MS,
    max_ms: int = DEFAULT_MAX_MS,
) -> int:
    """Deterministic part of the retry delay.

    Args:
        attempt: Retry attempt number (1-based)
        base_ms: Delay before the first retry
        max_ms: Upper bound on the delay

    Returns:
        min(base_ms * 2^(attempt-1), max_ms)
    """
    if attempt < 1:
        return 0
    return min(base_ms * (2 ** (attempt - 1)), max_ms)


class RetryPolicy:
    """Bounded retry loop for upstream attempts."""

    def __init__(
        self,
        max_retries: int = 2,
        base_ms: int = DEFAULT_BASE_MS,
        max_ms: int = DEFAULT_MAX_MS,
        jitter_ms: int = DEFAULT_JITTER_MS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        retry_on: Tuple[Type[Exception], ...] = (Exception,),
    ):
        """
        Args:
            max_retries: Retries after the first attempt (0 disables retry)
            base_ms: Base backoff delay in milliseconds
            max_ms: Maximum backoff delay in milliseconds (before jitter)
            jitter_ms: Upper bound of the random jitter added to each delay
            sleep: Awaitable sleep function, injectable for tests
            retry_on: Exception types eligible for retry; others propagate at once
        """
        self.max_retries = max(0, max_retries)
        self.base_ms = base_ms
        self.max_ms = max_ms
        self.jitter_ms = jitter_ms
        self._sleep = sleep
        self.retry_on = retry_on

    def delay_ms(self, attempt: int) -> float:
        """Backoff for a retry attempt plus random jitter."""
        jitter = random.uniform(0, self.jitter_ms) if self.jitter_ms > 0 else 0.0
        return backoff_delay_ms(attempt, self.base_ms, self.max_ms) + jitter

    async def execute(
        self,
        func: Callable[[], Awaitable[T]],
        on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    ) -> T:
        """Run func, retrying retryable failures.

        The error's ``status_code`` attribute (if any) decides whether it is
        retryable. Non-retryable errors and the final failure propagate.

        Args:
            func: Async function performing a single attempt
            on_retry: Called as on_retry(attempt, error, delay_ms) before sleeping

        Returns:
            Result from func
        """
        attempt = 0
        while True:
            try:
                return await func()
            except self.retry_on as e:
                status_code = getattr(e, "status_code", None)
                if not is_retryable_status(status_code) or attempt >= self.max_retries:
                    raise

                attempt += 1
                delay = self.delay_ms(attempt)
                if on_retry:
                    on_retry(attempt, e, delay)
                await self._sleep(delay / 1000.0)

    def with_max_retries(self, max_retries: int) -> "RetryPolicy":
        """Copy of this policy with a different retry budget."""
        return RetryPolicy(
            max_retries=max_retries,
            base_ms=self.base_ms,
            max_ms=self.max_ms,
            jitter_ms=self.jitter_ms,
            sleep=self._sleep,
            retry_on=self.retry_on,
        )
