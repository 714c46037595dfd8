"""
Retry Controller

Single reusable backoff primitive wrapping every network-facing call in the
pipeline: signal fetch, quote fetch, submission, settlement wait and ledger
writes. Failures are classified on every attempt and only transient kinds
are retried.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

import structlog

from ...config import settings
from .errors import ClassifiedError, classify_error, sanitize_error_message

T = TypeVar("T")

_slog = structlog.stdlib.get_logger("dca_engine.retry")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters for one class of operation."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    jitter_factor: float = 0.2
    operation: str = "operation"

    def get_delay(self, attempt: int) -> float:
        """Delay after a failed attempt (1-based): min(base * 2^(attempt-1), max) +/- jitter."""
        delay = min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)
        if self.jitter_factor:
            jitter_range = delay * self.jitter_factor
            delay += random.uniform(-jitter_range, jitter_range)
        return max(delay, 0.0)

    def named(self, operation: str) -> "RetryPolicy":
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay_seconds=self.base_delay_seconds,
            max_delay_seconds=self.max_delay_seconds,
            jitter_factor=self.jitter_factor,
            operation=operation,
        )

    @classmethod
    def from_settings(cls, operation: str = "operation") -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
            operation=operation,
        )


# Ledger writes back off faster and cap lower than chain operations
LEDGER_RETRY_POLICY = RetryPolicy(
    max_attempts=3,
    base_delay_seconds=0.5,
    max_delay_seconds=5.0,
    operation="ledger",
)


@dataclass
class RetryOutcome(Generic[T]):
    """Result-or-error union returned by with_retry."""

    result: Optional[T] = None
    error: Optional[ClassifiedError] = None
    attempts: int = 0

    @property
    def success(self) -> bool:
        return self.error is None


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RetryOutcome[T]:
    """
    Run ``operation`` until it succeeds, fails non-retryably, or attempts run out.

    Never raises for failures of ``operation``; the final classified error is
    returned instead. There is no sleep after the final attempt.
    """
    policy = policy or RetryPolicy.from_settings()
    last_error: Optional[ClassifiedError] = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            result = await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = classify_error(e)
            _slog.warning(
                "retry_attempt_failed",
                operation=policy.operation,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                kind=last_error.kind.value,
                retryable=last_error.retryable,
                error=sanitize_error_message(last_error.message),
            )

            if not last_error.retryable:
                return RetryOutcome(error=last_error, attempts=attempt)

            if attempt < policy.max_attempts:
                delay = policy.get_delay(attempt)
                _slog.info("retry_scheduled", operation=policy.operation, delay_seconds=round(delay, 3))
                await sleep(delay)
            continue

        if attempt > 1:
            _slog.info("retry_succeeded", operation=policy.operation, attempt=attempt)
        return RetryOutcome(result=result, attempts=attempt)

    return RetryOutcome(error=last_error, attempts=policy.max_attempts)
