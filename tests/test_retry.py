"""
Tests for retry utilities and logic.
"""

import pytest
from unittest.mock import AsyncMock

from meshharness.exceptions import (
    ClusterUnhealthyError,
    CommandFailedError,
    ConfigInvalidError,
    TestExecutionError
)
from meshharness.utils.retry import (
    RetryConfig,
    RetryExhaustedError,
    calculate_delay,
    retry_async,
    retry_async_operation,
    should_retry
)


NO_DELAY = RetryConfig(max_attempts=3, base_delay=0, max_delay=0, jitter=False)


@pytest.mark.unit
class TestRetryConfig:
    """Test RetryConfig dataclass."""

    def test_default_config(self):
        config = RetryConfig()

        assert config.max_attempts == 3
        assert config.base_delay == 1.0
        assert config.jitter is True
        assert ConnectionError in config.retryable_exceptions
        assert ValueError in config.non_retryable_exceptions

    def test_fixed_policy(self):
        config = RetryConfig.fixed(max_retries=2, delay=5)

        assert config.max_attempts == 3
        assert calculate_delay(0, config) == 5
        assert calculate_delay(4, config) == 5

    def test_exponential_delay_is_capped(self):
        config = RetryConfig(base_delay=1, max_delay=10, exponential_base=2, jitter=False)
        assert calculate_delay(0, config) == 1
        assert calculate_delay(2, config) == 4
        assert calculate_delay(10, config) == 10

    def test_jitter_stays_within_bounds(self):
        config = RetryConfig(base_delay=4, max_delay=4, exponential_base=1, jitter=True)
        for _ in range(20):
            assert 3 <= calculate_delay(0, config) <= 5


@pytest.mark.unit
class TestShouldRetry:
    """Test which failures count as transient."""

    def test_environment_failures_retry(self):
        config = RetryConfig()
        assert should_retry(ClusterUnhealthyError("a", "down"), config)
        assert should_retry(CommandFailedError("go test", 2, "signal: killed"), config)
        assert should_retry(ConnectionError(), config)

    def test_other_failures_do_not_retry(self):
        config = RetryConfig()
        assert not should_retry(ConfigInvalidError("bad"), config)
        assert not should_retry(TestExecutionError("go-1", "crashed"), config)
        assert not should_retry(ValueError("bad"), config)
        assert not should_retry(RuntimeError("unknown"), config)


@pytest.mark.unit
class TestRetryAsync:
    """Test asynchronous retry helpers."""

    async def test_succeeds_after_transient_failure(self):
        operation = AsyncMock(side_effect=[ConnectionError("reset"), "ok"])

        result = await retry_async_operation(operation, "list clusters", NO_DELAY)

        assert result == "ok"
        assert operation.await_count == 2

    async def test_non_retryable_raises_immediately(self):
        operation = AsyncMock(side_effect=ConfigInvalidError("bad"))

        with pytest.raises(ConfigInvalidError):
            await retry_async_operation(operation, "validate", NO_DELAY)

        assert operation.await_count == 1

    async def test_exhausted(self):
        operation = AsyncMock(side_effect=ClusterUnhealthyError("a", "down"))

        with pytest.raises(RetryExhaustedError) as exc_info:
            await retry_async_operation(operation, "status", NO_DELAY)

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_exception, ClusterUnhealthyError)
        assert operation.await_count == 3

    async def test_decorator_passes_arguments(self):
        calls = []

        @retry_async(NO_DELAY)
        async def fetch(name, suffix=""):
            calls.append(name)
            if len(calls) < 2:
                raise ConnectionError("reset")
            return name + suffix

        assert await fetch("primary", suffix="-config") == "primary-config"
        assert calls == ["primary", "primary"]
