"""Bounded retry policy with error classification.

Scheduler and in-instance endpoints are eventually consistent: a service
may not be inspectable right after creation, and an instance's web server
may answer its health probe late. Both cases poll with a fixed number of
attempts and a fixed (or multiplied) delay, and report one of three
outcomes instead of raising:

- SUCCEEDED: an attempt returned a value
- EXHAUSTED: every attempt hit a retryable error (non-fatal fallback)
- FAILED: an attempt hit a non-retryable error (hard failure)

Usage:
    from idehub.core.retry import RetryPolicy, run_with_policy

    policy = RetryPolicy(max_attempts=15, delay=1.0, initial_delay=2.0)
    result = await run_with_policy(policy, lambda: probe(url))
    if result.exhausted:
        logger.warning("probe never succeeded")
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

import httpx

from idehub.logging_schema import LogEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# httpx error classification
# =============================================================================

HTTPX_RETRYABLE = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.PoolTimeout,
    httpx.RemoteProtocolError,
)

HTTPX_NON_RETRYABLE = (
    httpx.InvalidURL,
    httpx.TooManyRedirects,
)


def is_httpx_retryable(exc: Exception) -> bool:
    """Check if httpx exception is retryable."""
    if isinstance(exc, HTTPX_RETRYABLE):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429:
            return True
        if 400 <= status < 500:
            return False
        if status >= 500:
            return True
    return False


def classify_error(exc: Exception) -> str:
    """Classify error as 'retryable', 'permanent', or 'unknown'."""
    if isinstance(exc, asyncio.TimeoutError):
        return "retryable"
    if isinstance(exc, httpx.HTTPStatusError):
        return "retryable" if is_httpx_retryable(exc) else "permanent"
    if isinstance(exc, HTTPX_RETRYABLE):
        return "retryable"
    if isinstance(exc, HTTPX_NON_RETRYABLE):
        return "permanent"
    return "unknown"


def is_retryable(exc: Exception) -> bool:
    """Default retry predicate: only transient errors are retried."""
    return classify_error(exc) == "retryable"


def retry_always(exc: Exception) -> bool:
    """Retry predicate for readiness probes: every failure means 'not yet'."""
    return True


# =============================================================================
# Policy and result types
# =============================================================================


class RetryOutcome(str, Enum):
    """Terminal outcome of a bounded retry run."""

    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy.

    Args:
        max_attempts: Total attempts (at least 1)
        delay: Delay between attempts in seconds
        initial_delay: Delay before the first attempt in seconds
        backoff: Multiplier applied to delay after each attempt (1.0 = fixed)
    """

    max_attempts: int = 3
    delay: float = 1.0
    initial_delay: float = 0.0
    backoff: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay < 0 or self.initial_delay < 0:
            raise ValueError("delays must be non-negative")

    def delay_after(self, attempt: int) -> float:
        """Delay after the given 1-based attempt."""
        return self.delay * (self.backoff ** (attempt - 1))


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    """Result of a bounded retry run."""

    outcome: RetryOutcome
    attempts: int
    value: T | None = None
    error: Exception | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == RetryOutcome.SUCCEEDED

    @property
    def exhausted(self) -> bool:
        return self.outcome == RetryOutcome.EXHAUSTED

    @property
    def failed(self) -> bool:
        return self.outcome == RetryOutcome.FAILED


async def run_with_policy(
    policy: RetryPolicy,
    attempt_factory: Callable[[], Awaitable[T]],
    *,
    retry_on: Callable[[Exception], bool] = is_retryable,
    operation: str = "operation",
) -> RetryResult[T]:
    """Run an async operation under a bounded retry policy.

    Never raises for errors raised by the operation; the outcome tells
    the caller whether it succeeded, ran out of attempts, or hit a
    non-retryable error. Cancellation propagates.

    Args:
        policy: Attempt count and delays
        attempt_factory: Factory creating a new coroutine per attempt
        retry_on: Predicate deciding whether an error is worth another attempt
        operation: Name used in log messages
    """
    if policy.initial_delay > 0:
        await asyncio.sleep(policy.initial_delay)

    last_exc: Exception | None = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            value = await attempt_factory()
            return RetryResult(RetryOutcome.SUCCEEDED, attempts=attempt, value=value)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            last_exc = exc
            if not retry_on(exc):
                return RetryResult(RetryOutcome.FAILED, attempts=attempt, error=exc)

            if attempt < policy.max_attempts:
                delay = policy.delay_after(attempt)
                logger.debug(
                    "%s not ready (attempt %d/%d, retry in %.1fs): %s",
                    operation,
                    attempt,
                    policy.max_attempts,
                    delay,
                    exc,
                    extra={"event": LogEvent.RETRY_ATTEMPT, "attempt": attempt},
                )
                await asyncio.sleep(delay)

    return RetryResult(
        RetryOutcome.EXHAUSTED, attempts=policy.max_attempts, error=last_exc
    )
