"""
Bounded exponential backoff with jitter, under an optional overall deadline.

Only transient log service errors (rate limiting, unavailability and, when
allowed, request timeouts) are retried; everything else propagates on the
first attempt.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from attestlog.models import LogServiceError, LogServiceTimeout, RateLimitError

logger = logging.getLogger("attestlog")

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0


class Deadline:
    """An absolute point in time derived from a relative budget in seconds."""

    def __init__(
        self,
        seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds

    def remaining(self) -> Optional[float]:
        """Seconds left, or None when unbounded."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0


class RetryExhausted(Exception):
    """Raised by Retrier when it gives up; callers translate it."""

    def __init__(self, last_error: Optional[BaseException], deadline_expired: bool = False):
        super().__init__(str(last_error) if last_error else "retries exhausted")
        self.last_error = last_error
        self.deadline_expired = deadline_expired


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    retry_after_ms: Optional[int] = None,
) -> float:
    """Delay before retry number attempt+1: capped exponential plus up to 30% jitter."""
    delay = min(base_delay * (2**attempt), max_delay)
    jitter = random.random() * 0.3 * delay
    delay += jitter
    if retry_after_ms:
        delay = max(delay, retry_after_ms / 1000)
    return delay


class Retrier:
    """
    Runs an operation with retries.

    Args:
        max_retries: Retries after the first attempt
        base_delay: Base delay in seconds for exponential backoff
        max_delay: Maximum delay in seconds
        retry_timeouts: Whether LogServiceTimeout counts as transient. Off for
                        submissions, whose timed-out outcome is unknown.
        sleep: Blocking sleep function (injectable for tests)
        async_sleep: Async sleep function (injectable for tests)
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        retry_timeouts: bool = True,
        sleep: Callable[[float], Any] = time.sleep,
        async_sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.retry_timeouts = retry_timeouts
        self._sleep = sleep
        self._async_sleep = async_sleep

    def _is_retryable(self, error: LogServiceError) -> bool:
        if isinstance(error, LogServiceTimeout):
            return self.retry_timeouts
        return error.transient

    def _next_delay(
        self, attempt: int, error: LogServiceError, deadline: Deadline, description: str
    ) -> float:
        """Delay before the next attempt, or raise if the deadline forbids one."""
        retry_after = error.retry_after_ms if isinstance(error, RateLimitError) else None
        delay = backoff_delay(attempt, self.base_delay, self.max_delay, retry_after)
        remaining = deadline.remaining()
        if remaining is not None and delay >= remaining:
            raise RetryExhausted(error, deadline_expired=True)
        logger.warning(
            f"[attestlog] {description} failed ({error}); "
            f"retry {attempt + 1}/{self.max_retries} in {delay:.2f}s"
        )
        return delay

    def call(
        self,
        operation: Callable[[Optional[float]], T],
        deadline: Optional[Deadline] = None,
        description: str = "request",
    ) -> T:
        """
        Run operation(timeout) until it succeeds or retries run out.

        The operation receives the seconds left before the deadline (or None)
        to use as its request timeout.

        Raises:
            RetryExhausted: After the last retryable failure or deadline expiry
            LogServiceError: Non-retryable service errors, unchanged
        """
        deadline = deadline or Deadline()
        last_error: Optional[LogServiceError] = None

        for attempt in range(self.max_retries + 1):
            if deadline.expired:
                raise RetryExhausted(last_error, deadline_expired=True)
            try:
                return operation(deadline.remaining())
            except LogServiceError as e:
                if not self._is_retryable(e):
                    raise
                last_error = e

            if attempt < self.max_retries:
                self._sleep(self._next_delay(attempt, last_error, deadline, description))

        raise RetryExhausted(last_error)

    async def call_async(
        self,
        operation: Callable[[Optional[float]], Awaitable[T]],
        deadline: Optional[Deadline] = None,
        description: str = "request",
    ) -> T:
        """Async twin of call(). The deadline also bounds each in-flight attempt."""
        deadline = deadline or Deadline()
        last_error: Optional[LogServiceError] = None

        for attempt in range(self.max_retries + 1):
            if deadline.expired:
                raise RetryExhausted(last_error, deadline_expired=True)
            remaining = deadline.remaining()
            try:
                return await asyncio.wait_for(operation(remaining), timeout=remaining)
            except asyncio.TimeoutError:
                last_error = LogServiceTimeout(f"{description} exceeded the deadline")
                if not self.retry_timeouts:
                    raise last_error from None
            except LogServiceError as e:
                if not self._is_retryable(e):
                    raise
                last_error = e

            if attempt < self.max_retries:
                await self._async_sleep(
                    self._next_delay(attempt, last_error, deadline, description)
                )

        raise RetryExhausted(last_error)
