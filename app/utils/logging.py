"""Structured Logging Configuration.

This module configures structlog for the whole service. Outputs JSON for
production log aggregation, or a human-readable console rendering when
LOG_FORMAT=console.

Configuration:
- JSON output format (default)
- Context binding support (task_id, project_id, user_id, etc.)
- Log level from LOG_LEVEL (default INFO)

Usage:
    from app.utils.logging import configure_logging, get_logger

    configure_logging()  # once, at startup
    log = get_logger(__name__)
    log.info("task_submitted", task_id=task_id, project_id=project_id)
"""

import logging
import os
import sys
from typing import Any

import structlog

_configured = False


def configure_logging(level: str | None = None, log_format: str | None = None) -> None:
    """Configure structlog and the stdlib root logger.

    Safe to call more than once; later calls reconfigure.

    Args:
        level: Log level name (default: LOG_LEVEL env var, then INFO).
        log_format: "json" or "console" (default: LOG_FORMAT env var, then json).
    """
    global _configured

    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    log_level = getattr(logging, level_name, logging.INFO)
    fmt = (log_format or os.getenv("LOG_FORMAT") or "json").lower()

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level, force=True)

    renderer: Any
    if fmt == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
    _configured = True


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance for the given module.

    Args:
        name: Module name (typically __name__)

    Returns:
        structlog logger bound with the module name.
    """
    if not _configured:
        configure_logging()
    return structlog.get_logger(name)
