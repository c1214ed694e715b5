"""
Retry with bounded exponential backoff for pack fetches.

Only failures flagged ``retryable`` (unreachable backends, timeouts) are
retried. Not-found, unsupported schemes and verification failures fail
on the first attempt.

Usage:
    policy = RetryPolicy(max_attempts=3, backoff=ExponentialBackoff(base=0.5))
    result = await with_retry(lambda: resolver.fetch(address), policy, "fetch demo")
    if not result.success:
        raise result.final_error
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ExponentialBackoff:
    """
    delay = base * multiplier ** (attempt - 1), capped at max_delay.

    ``jitter`` is the +/- fraction applied to each delay; 0 disables it.
    Jitter spreads the retries of many tenants that share one
    unreachable backend.
    """

    base: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 5.0
    jitter: float = 0.25

    def delay(self, attempt: int) -> float:
        delay = min(self.base * self.multiplier ** (attempt - 1), self.max_delay)
        if self.jitter and delay:
            delay *= 1 + random.uniform(-self.jitter, self.jitter)
        return min(max(0.0, delay), self.max_delay)


# Retries back to back. Used by tests and for local fetches.
IMMEDIATE = ExponentialBackoff(base=0.0, jitter=0.0)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff: ExponentialBackoff = field(default_factory=ExponentialBackoff)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def should_retry(self, attempt: int, error: Exception) -> bool:
        return attempt < self.max_attempts and bool(getattr(error, "retryable", False))


@dataclass
class RetryResult:
    success: bool
    result: Any = None
    attempts: int = 0
    errors: list[Exception] = field(default_factory=list)

    @property
    def final_error(self) -> Exception | None:
        return self.errors[-1] if self.errors else None


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    operation_name: str = "operation",
) -> RetryResult:
    """
    Run ``operation`` under ``policy``.

    Operation failures are collected, never raised; check ``success``.
    Cancellation propagates untouched.
    """
    errors: list[Exception] = []
    for attempt in range(1, policy.max_attempts + 1):
        try:
            value = await operation()
        except Exception as e:
            errors.append(e)
            if not policy.should_retry(attempt, e):
                break
            delay = policy.backoff.delay(attempt)
            logger.warning(
                f"{operation_name}: attempt {attempt}/{policy.max_attempts} "
                f"failed ({type(e).__name__}: {e}), retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
        else:
            return RetryResult(success=True, result=value, attempts=attempt, errors=errors)

    if len(errors) > 1:
        logger.error(f"{operation_name}: gave up after {len(errors)} attempts: {errors[-1]}")
    return RetryResult(success=False, attempts=len(errors), errors=errors)
