"""
Structured logging configuration for toolmeter.

Uses structlog for JSON-formatted, context-rich logging.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import Processor

from toolmeter.core.config import LoggingSettings, get_settings


def setup_logging(
    level: str | None = None,
    json_format: bool | None = None,
    settings: LoggingSettings | None = None,
) -> None:
    """
    Configure structured logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON output format
        settings: Logging section to read defaults from
    """
    settings = settings or get_settings().logging
    level = (level or settings.level).upper()
    json_format = json_format if json_format is not None else settings.format == "json"

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a bound structlog logger."""
    return structlog.get_logger(name)


class RequestLogger:
    """
    Context manager that logs the start, completion or failure of one
    operation with its bound context.
    """

    def __init__(
        self,
        logger: structlog.BoundLogger,
        operation: str,
        **context: Any,
    ):
        self.logger = logger.bind(operation=operation, **context)
        self.operation = operation

    def __enter__(self) -> "RequestLogger":
        self.logger.debug(f"Starting {self.operation}")
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if exc_type:
            self.logger.error(
                f"Failed {self.operation}",
                error=str(exc_val),
                error_type=exc_type.__name__,
            )
        else:
            self.logger.info(f"Completed {self.operation}")

    def log(self, message: str, **kwargs: Any) -> None:
        """Log a message with context."""
        self.logger.info(message, **kwargs)
