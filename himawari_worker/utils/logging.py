"""Structured Logging Configuration.

This module configures structlog to emit one JSON object per line on stdout,
which is what log aggregators in the farm ingest.

Configuration:
- JSON output format (timestamp, level, logger name, event, context)
- Context binding support (task ids are bound per pipeline)
- Log level from LOG_LEVEL: DEBUG, INFO, WARNING, ERROR, CRITICAL

Components never depend on logging being configured: each one accepts a
``logger`` argument and falls back to ``get_logger(__name__)``.
"""

import logging
import sys
from typing import Any

import structlog

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def resolve_level(level: str) -> int:
    """Translate a level name into a logging constant.

    Unknown names fall back to INFO.
    """
    return _LEVELS.get(level.strip().upper(), logging.INFO)


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog for JSON output. Call once at process startup.

    Args:
        level: Minimum level name to emit (e.g., "INFO", "DEBUG")
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(resolve_level(level)),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str, **initial_values: Any) -> Any:
    """Get a structured logger instance for the given module.

    Args:
        name: Module name (typically __name__)
        **initial_values: Context bound to every event from this logger

    Returns:
        structlog bound logger (lazy proxy until first use)
    """
    return structlog.get_logger(name, logger_name=name, **initial_values)
