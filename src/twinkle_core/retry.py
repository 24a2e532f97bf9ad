"""
Bounded retry loop for waiting on asynchronous oracles.

The decryption oracle answers "not yet" by raising; the commitment layer
keeps asking at a fixed interval until it answers, the attempt budget runs
out, or the caller's wall-clock timeout cancels the loop. Exponential backoff
with jitter is available for other callers; ``fixed_interval`` builds the
constant-delay policy used for decrypt polling.

Usage:
    from twinkle_core.retry import fixed_interval, retry_async, RetryStats

    stats = RetryStats()
    payload = await retry_async(
        primitive.decrypt, tx_hash, config=fixed_interval(1.0, 15), stats=stats,
    )
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, ParamSpec, Type, TypeVar

from .constants import RetryConfig as RetryDefaults

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """How often, and how patiently, to call an operation again.

    Attributes:
        max_retries: Extra calls after the first one (0 disables retrying)
        base_delay: Wait before the first retry, in seconds
        max_delay: Upper bound for any single wait
        exponential_base: Growth factor per retry (1.0 gives a fixed interval)
        jitter: Fraction of the delay randomly added or removed
        retryable_exceptions: Errors that trigger another attempt
        non_retryable_exceptions: Errors re-raised at once, even if retryable
        on_retry: Called with (retry number, error, delay) before sleeping
    """

    max_retries: int = RetryDefaults.DEFAULT_MAX_RETRIES
    base_delay: float = RetryDefaults.DEFAULT_BASE_DELAY
    max_delay: float = RetryDefaults.DEFAULT_MAX_DELAY
    exponential_base: float = RetryDefaults.DEFAULT_EXPONENTIAL_BASE
    jitter: float = RetryDefaults.DEFAULT_JITTER
    retryable_exceptions: tuple[Type[Exception], ...] = (Exception,)
    non_retryable_exceptions: tuple[Type[Exception], ...] = ()
    on_retry: Optional[Callable[[int, Exception, float], None]] = None

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def calculate_delay(self, attempt: int) -> float:
        """Seconds to wait after the 0-based ``attempt`` failed."""
        delay = min(self.max_delay, self.base_delay * self.exponential_base ** attempt)
        if self.jitter:
            spread = delay * self.jitter
            delay += random.uniform(-spread, spread)
        return max(0.0, delay)

    def should_retry(self, error: Exception) -> bool:
        if isinstance(error, self.non_retryable_exceptions):
            return False
        return isinstance(error, self.retryable_exceptions)


def fixed_interval(interval: float, max_attempts: int) -> RetryConfig:
    """Constant ``interval`` between calls, ``max_attempts`` calls in total."""
    return RetryConfig(
        max_retries=max(0, max_attempts - 1),
        base_delay=interval,
        max_delay=interval,
        exponential_base=1.0,
        jitter=0.0,
    )


@dataclass
class RetryStats:
    """Progress of one retry loop, updated as it runs.

    Callers that wrap the loop in a timeout can still read how many attempts
    were made after cancelling it.
    """

    attempts: int = 0
    total_delay: float = 0.0
    success: bool = False
    last_exception: Optional[Exception] = None


class RetryExhausted(Exception):
    """Every allowed attempt failed."""

    def __init__(
        self,
        message: str,
        stats: RetryStats,
        original_exception: Optional[Exception],
    ) -> None:
        super().__init__(message)
        self.stats = stats
        self.original_exception = original_exception


async def retry_async(
    func: Callable[P, Awaitable[T]],
    *args: P.args,
    config: Optional[RetryConfig] = None,
    stats: Optional[RetryStats] = None,
    **kwargs: P.kwargs,
) -> T:
    """Await ``func(*args, **kwargs)`` until it returns or the budget is spent.

    Raises:
        RetryExhausted: after ``config.max_attempts`` failed calls
        Exception: a non-retryable error, unchanged, before the budget is spent
    """
    config = config or RetryConfig()
    stats = stats if stats is not None else RetryStats()
    name = getattr(func, "__name__", repr(func))

    while True:
        stats.attempts += 1
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            stats.last_exception = e
            retries_used = stats.attempts - 1
            if stats.attempts >= config.max_attempts:
                break
            if not config.should_retry(e):
                logger.debug("%s raised non-retryable %s", name, type(e).__name__)
                raise

            delay = config.calculate_delay(retries_used)
            stats.total_delay += delay
            logger.debug(
                "%s attempt %d/%d failed (%s); next try in %.2fs",
                name, stats.attempts, config.max_attempts, e, delay,
            )
            if config.on_retry is not None:
                config.on_retry(stats.attempts, e, delay)
            await asyncio.sleep(delay)
        else:
            stats.success = True
            return result

    raise RetryExhausted(
        f"{name} failed {stats.attempts} times",
        stats=stats,
        original_exception=stats.last_exception,
    ) from stats.last_exception


__all__ = [
    "RetryConfig",
    "RetryStats",
    "RetryExhausted",
    "retry_async",
    "fixed_interval",
]
