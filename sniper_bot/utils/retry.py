"""
Retry primitive for robust async operations.

Every bounded retry in the bot (transaction fetch, external safety checks,
sell attempts) runs through ``retry``. Delay strategies are plain callables
mapping the attempt number (1-based) to a sleep in seconds.
"""

import asyncio
import logging
import time
from enum import Enum
from functools import wraps
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')

DelayStrategy = Callable[[int], float]


def fixed_delay(seconds: float) -> DelayStrategy:
    """Same pause after every failed attempt."""
    return lambda attempt: seconds


def exponential_backoff(base: float = 0.5, factor: float = 2.0, max_delay: float = 10.0) -> DelayStrategy:
    """base, base*factor, base*factor^2 ... capped at max_delay."""
    return lambda attempt: min(base * (factor ** (attempt - 1)), max_delay)


def _always(exc: BaseException) -> bool:
    return True


async def retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    delay_strategy: DelayStrategy = fixed_delay(1.0),
    is_retryable: Callable[[BaseException], bool] = _always,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    name: Optional[str] = None,
) -> T:
    """
    Run ``operation`` until it returns, up to ``max_attempts`` times.

    Args:
        operation: Zero-argument coroutine factory
        max_attempts: Hard upper bound on calls (>= 1)
        delay_strategy: attempt number -> seconds to sleep before the next call
        is_retryable: Errors for which this returns False propagate immediately
        on_retry: Called with (attempt, error) before each sleep
        name: Label used in log lines

    Returns:
        The first successful result

    Raises:
        The last error once attempts are exhausted, or the first non-retryable one
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    label = name or getattr(operation, "__name__", "operation")

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e):
                raise

            if attempt == max_attempts:
                logger.warning(
                    "%s failed after %d attempts: %s",
                    label,
                    max_attempts,
                    e,
                    extra={
                        "function": label,
                        "attempts": max_attempts,
                        "error": str(e)
                    }
                )
                raise

            current_delay = delay_strategy(attempt)
            logger.debug(
                "%s failed (%d/%d), retrying in %.1fs: %s",
                label,
                attempt,
                max_attempts,
                current_delay,
                e,
                extra={
                    "function": label,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "delay": current_delay,
                    "error": str(e)
                }
            )
            if on_retry:
                on_retry(attempt, e)
            if current_delay > 0:
                await asyncio.sleep(current_delay)

    # Unreachable: the loop either returns or raises
    raise RuntimeError("retry loop exited without result")


def async_retry(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple = (Exception,)
):
    """Decorator form of ``retry`` with exponential backoff, for fixed call sites."""
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await retry(
                lambda: func(*args, **kwargs),
                max_attempts=max_attempts,
                delay_strategy=exponential_backoff(delay, backoff, max_delay=float("inf")),
                is_retryable=lambda e: isinstance(e, exceptions),
                name=func.__name__,
            )
        return wrapper
    return decorator


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """
    Per-endpoint breaker used by the relay pool.

    OPEN endpoints are skipped until ``recovery_timeout`` has passed since the
    last failure; the next call then runs as a HALF_OPEN trial. A failed trial
    reopens the breaker straight away, a successful one closes it.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        name: str = "default"
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name

        self.failures = 0
        self.opened_at = 0.0
        self.state = BreakerState.CLOSED

    def _open(self) -> None:
        self.state = BreakerState.OPEN
        self.opened_at = time.monotonic()
        logger.warning("Breaker %s open after %d failures", self.name, self.failures)

    def record_success(self) -> None:
        if self.state != BreakerState.CLOSED:
            logger.info("Breaker %s closed", self.name)
        self.failures = 0
        self.state = BreakerState.CLOSED

    def record_failure(self) -> None:
        self.failures += 1
        if self.state == BreakerState.HALF_OPEN or (
            self.state == BreakerState.CLOSED and self.failures >= self.failure_threshold
        ):
            self._open()
        elif self.state == BreakerState.OPEN:
            self.opened_at = time.monotonic()

    def can_execute(self) -> bool:
        if self.state == BreakerState.OPEN and time.monotonic() - self.opened_at >= self.recovery_timeout:
            self.state = BreakerState.HALF_OPEN
            logger.info("Breaker %s half-open, probing", self.name)
        return self.state != BreakerState.OPEN
