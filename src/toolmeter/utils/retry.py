"""
Retry utilities with exponential backoff.

Used in-process for transient payment-provider failures and to schedule
background webhook retries.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: tuple[type[Exception], ...] = (
        ConnectionError,
        TimeoutError,
    )


def calculate_delay(
    attempt: int,
    config: RetryConfig,
    retry_after: float | None = None,
) -> float:
    """
    Calculate delay before next retry attempt.

    Args:
        attempt: Current attempt number (0-indexed)
        config: Retry configuration
        retry_after: Optional server-specified delay

    Returns:
        Delay in seconds
    """
    if retry_after:
        delay = retry_after
    else:
        delay = config.base_delay * (config.exponential_base ** attempt)

    delay = min(delay, config.max_delay)

    if config.jitter:
        delay = delay * (0.5 + random.random())

    return delay


def next_attempt_at(attempt: int, config: RetryConfig, now: datetime) -> datetime | None:
    """
    When a background retry should run, or None once the budget is spent.

    Args:
        attempt: Failures so far (1 after the first failure)
        config: Retry configuration
        now: Time of the failure
    """
    if attempt > config.max_retries:
        return None
    return now + timedelta(seconds=calculate_delay(attempt - 1, config))


def with_retry(
    config: RetryConfig | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Decorator for adding retry logic to async functions.

    Args:
        config: Retry configuration (uses defaults if not provided)

    Returns:
        Decorated function with retry logic
    """
    config = config or RetryConfig()

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            for attempt in range(config.max_retries + 1):
                try:
                    return await func(*args, **kwargs)

                except config.retryable_exceptions as e:
                    if attempt == config.max_retries:
                        logger.error(
                            "Max retries exceeded",
                            function=func.__name__,
                            attempts=attempt + 1,
                            error=str(e),
                        )
                        raise

                    delay = calculate_delay(attempt, config, getattr(e, "retry_after", None))

                    logger.warning(
                        "Retrying after error",
                        function=func.__name__,
                        attempt=attempt + 1,
                        max_retries=config.max_retries,
                        delay=delay,
                        error=str(e),
                    )

                    await asyncio.sleep(delay)

            raise RuntimeError("Unexpected retry loop exit")

        return wrapper

    return decorator


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: RetryConfig | None = None,
    **kwargs: Any,
) -> T:
    """
    Execute an async function with retry logic.

    Raises:
        Last exception if all retries fail
    """
    config = config or RetryConfig()
    decorated = with_retry(config)(func)
    return await decorated(*args, **kwargs)
