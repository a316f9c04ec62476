"""
Unit tests for the retry primitive and circuit breaker
"""

import asyncio
import os
import sys

import pytest

# Add repo root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from sniper_bot.exceptions import NetworkException, PoolMigratedException
from sniper_bot.utils.retry import CircuitBreaker, async_retry, exponential_backoff, fixed_delay, retry


class Flaky:
    """Fails ``failures`` times, then returns ``value``."""

    def __init__(self, failures: int, value="ok", error=NetworkException("down")):
        self.failures = failures
        self.value = value
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


class TestRetry:
    """Test retry()"""

    def test_returns_first_success(self):
        op = Flaky(2)
        assert asyncio.run(retry(op, max_attempts=5, delay_strategy=fixed_delay(0))) == "ok"
        assert op.calls == 3

    def test_exhaustion_raises_last_error(self):
        """Never more calls than max_attempts"""
        op = Flaky(10)
        with pytest.raises(NetworkException):
            asyncio.run(retry(op, max_attempts=4, delay_strategy=fixed_delay(0)))
        assert op.calls == 4

    def test_non_retryable_propagates_immediately(self):
        op = Flaky(3, error=PoolMigratedException("Pool is completed"))
        with pytest.raises(PoolMigratedException):
            asyncio.run(retry(
                op,
                max_attempts=5,
                delay_strategy=fixed_delay(0),
                is_retryable=lambda e: not isinstance(e, PoolMigratedException),
            ))
        assert op.calls == 1

    def test_on_retry_called_between_attempts(self):
        seen = []
        op = Flaky(2)
        asyncio.run(retry(op, max_attempts=3, delay_strategy=fixed_delay(0), on_retry=lambda n, e: seen.append(n)))
        assert seen == [1, 2]

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            asyncio.run(retry(Flaky(0), max_attempts=0))

    def test_decorator(self):
        op = Flaky(1)

        @async_retry(max_attempts=2, delay=0)
        async def wrapped():
            return await op()

        assert asyncio.run(wrapped()) == "ok"
        assert op.calls == 2


class TestDelayStrategies:
    """Test delay strategies"""

    def test_fixed(self):
        strategy = fixed_delay(2.0)
        assert [strategy(n) for n in (1, 2, 3)] == [2.0, 2.0, 2.0]

    def test_exponential_capped(self):
        strategy = exponential_backoff(0.5, 2.0, max_delay=3.0)
        assert [strategy(n) for n in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 3.0]


class TestCircuitBreaker:
    """Test CircuitBreaker states"""

    def test_opens_after_threshold(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60, name="t")
        breaker.record_failure()
        assert breaker.can_execute()
        breaker.record_failure()
        assert breaker.state == "OPEN"
        assert not breaker.can_execute()

    def test_half_open_after_timeout(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0, name="t")
        breaker.record_failure()
        assert breaker.can_execute()
        assert breaker.state == "HALF_OPEN"
        breaker.record_success()
        assert breaker.state == "CLOSED"
