"""
Health Monitor - Retry with bounded exponential backoff.

============================================================
PURPOSE
============================================================
One retry helper shared by the directory, the protocol adapter,
the RPC client and the notifier.

Errors are classified by type only:
- Instances of `retry_on` are retried up to `max_retries` times
- Anything else propagates immediately
- The last retryable error is re-raised once attempts run out

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .exceptions import TransientBackendError


logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================================
# RETRY POLICY
# ============================================================

@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff parameters."""

    max_retries: int = 3
    """Retries after the first attempt."""

    initial_delay_seconds: float = 1.0
    """Delay before the first retry."""

    max_delay_seconds: float = 30.0
    """Upper bound for any single delay."""

    backoff_multiplier: float = 2.0
    """Growth factor between retries."""

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry `retry_number` (0-based)."""
        delay = self.initial_delay_seconds * (self.backoff_multiplier ** retry_number)
        return min(delay, self.max_delay_seconds)


DEFAULT_POLICY = RetryPolicy()


# ============================================================
# RETRY HELPER
# ============================================================

async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_POLICY,
    retry_on: tuple[type[BaseException], ...] = (TransientBackendError,),
    description: str = "operation",
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """
    Run `operation`, retrying retryable failures with backoff.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt
        policy: Backoff parameters
        retry_on: Exception types considered transient
        description: Label used in log lines
        sleep: Replacement for asyncio.sleep (tests)

    Returns:
        The operation's result

    Raises:
        The last retryable error after exhausting retries, or any
        non-retryable error immediately.
    """
    sleeper = sleep or asyncio.sleep
    attempts = policy.max_retries + 1

    for attempt in range(attempts):
        try:
            return await operation()
        except retry_on as e:
            if attempt + 1 >= attempts:
                logger.warning(f"{description} failed after {attempts} attempts: {e}")
                raise
            wait_time = policy.delay_for(attempt)
            logger.warning(
                f"{description} failed, retry {attempt + 1}/{policy.max_retries} "
                f"in {wait_time:.1f}s: {e}"
            )
            await sleeper(wait_time)

    # range(attempts) always returns or raises
    raise AssertionError("unreachable")
