"""Utility modules for toolmeter."""

from toolmeter.utils.logging import RequestLogger, get_logger, setup_logging
from toolmeter.utils.retry import RetryConfig, calculate_delay, next_attempt_at, retry_async, with_retry

__all__ = [
    "setup_logging",
    "get_logger",
    "RequestLogger",
    "RetryConfig",
    "calculate_delay",
    "next_attempt_at",
    "retry_async",
    "with_retry",
]
