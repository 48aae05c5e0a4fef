"""
Retry utilities for handling transient failures.

This module provides retry logic with configurable backoff and retry
conditions. Only environment failures are retried; a failing test outcome
is a result, not an exception, and never reaches this module.
"""

import asyncio
import logging
import random
import time
from functools import wraps
from typing import Any, Callable, Optional, Tuple, Type
from dataclasses import dataclass

from ..exceptions import ErrorCode, HarnessError, OperationTimeoutError


logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay: float = 1.0  # Base delay in seconds
    max_delay: float = 60.0  # Maximum delay in seconds
    exponential_base: float = 2.0  # Exponential backoff multiplier
    jitter: bool = True  # Add random jitter to delays
    timeout: Optional[float] = None  # Overall timeout in seconds

    # Exception types that should trigger retries
    retryable_exceptions: Tuple[Type[Exception], ...] = (
        ConnectionError,
        OSError,
    )

    # Exception types that should NOT trigger retries
    non_retryable_exceptions: Tuple[Type[Exception], ...] = (
        ValueError,
        TypeError,
        KeyError,
        AttributeError,
    )

    @classmethod
    def fixed(cls, max_retries: int, delay: float) -> "RetryConfig":
        """A policy that retries ``max_retries`` times with a constant delay."""
        return cls(
            max_attempts=max_retries + 1,
            base_delay=delay,
            max_delay=delay,
            exponential_base=1.0,
            jitter=False
        )


class RetryExhaustedError(HarnessError):
    """Raised when all retry attempts have been exhausted."""

    def __init__(self, operation: str, attempts: int, last_exception: Exception):
        super().__init__(
            message=f"Retry exhausted for operation '{operation}' after {attempts} attempts: {last_exception}",
            error_code=getattr(last_exception, "error_code", ErrorCode.INTERNAL_ERROR),
            details={
                "operation": operation,
                "attempts": attempts,
                "last_exception": str(last_exception),
                "last_exception_type": type(last_exception).__name__
            },
            cause=last_exception
        )
        self.attempts = attempts
        self.last_exception = last_exception


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate the delay for a given retry attempt.

    Args:
        attempt: The current attempt number (0-based)
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    delay = config.base_delay * (config.exponential_base ** attempt)
    delay = min(delay, config.max_delay)

    if config.jitter:
        # Up to 25% jitter
        jitter_amount = delay * 0.25
        delay += random.uniform(-jitter_amount, jitter_amount)
        delay = max(0, delay)

    return delay


def should_retry(exception: BaseException, config: RetryConfig) -> bool:
    """Determine if an exception is a transient failure worth retrying.

    Args:
        exception: The exception that occurred
        config: Retry configuration

    Returns:
        True if the exception should trigger a retry
    """
    if isinstance(exception, config.non_retryable_exceptions):
        return False

    # Harness errors classify themselves by error code
    if isinstance(exception, HarnessError):
        return exception.retryable

    return isinstance(exception, config.retryable_exceptions)


def retry_async(config: Optional[RetryConfig] = None):
    """Decorator for adding retry logic to asynchronous functions.

    Args:
        config: Retry configuration. If None, uses default config.

    Returns:
        Decorated async function with retry logic
    """
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            operation_name = f"{func.__module__}.{func.__name__}"
            return await retry_async_operation(func, operation_name, config, *args, **kwargs)

        return wrapper
    return decorator


async def retry_async_operation(
    operation: Callable,
    operation_name: str,
    config: Optional[RetryConfig] = None,
    *args,
    **kwargs
) -> Any:
    """Retry an async operation with the given configuration.

    Args:
        operation: The async function to retry
        operation_name: Name of the operation for logging
        config: Retry configuration
        *args: Arguments to pass to the operation
        **kwargs: Keyword arguments to pass to the operation

    Returns:
        Result of the operation

    Raises:
        RetryExhaustedError: If all retry attempts are exhausted
    """
    if config is None:
        config = RetryConfig()

    start_time = time.time()
    last_exception = None

    for attempt in range(config.max_attempts):
        if config.timeout and (time.time() - start_time) > config.timeout:
            raise OperationTimeoutError(
                operation=operation_name,
                timeout_seconds=config.timeout
            )

        try:
            return await operation(*args, **kwargs)

        except Exception as e:
            last_exception = e

            if not should_retry(e, config):
                logger.debug(f"Not retrying {operation_name} due to non-retryable exception: {e}")
                raise

            if attempt == config.max_attempts - 1:
                logger.warning(f"Retry exhausted for {operation_name} after {attempt + 1} attempts")
                break

            delay = calculate_delay(attempt, config)
            logger.info(f"Retrying {operation_name} in {delay:.2f}s (attempt {attempt + 1}/{config.max_attempts})")
            await asyncio.sleep(delay)

    raise RetryExhaustedError(operation_name, config.max_attempts, last_exception)


# Standard retries for cluster CLI calls that are safe to repeat
STANDARD_RETRY = RetryConfig(
    max_attempts=3,
    base_delay=1.0,
    max_delay=30.0,
    timeout=120.0
)
