"""
Structured logging configuration using structlog.

JSON lines in production so log aggregators can index the fields, and a
readable console renderer everywhere else.

Usage:
    import structlog

    logger = structlog.get_logger(__name__)
    logger.info("page view tracked", visit_id=42, session_id="9f2c...")

Output in production (JSON):
    {"event": "page view tracked", "visit_id": 42, "request_id": "req_...",
     "timestamp": "2024-01-01T12:00:00Z", "level": "info"}
"""

import logging
import sys
from typing import Any

import structlog

from app.core.config import settings

IS_PRODUCTION = settings.ENVIRONMENT.lower() == "production"
IS_TEST = "pytest" in sys.modules


def _resolve_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging() -> None:
    """Configure structlog and the stdlib root logger for the environment."""
    level = _resolve_level(settings.LOG_LEVEL)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    if IS_PRODUCTION:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=not IS_TEST),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Third-party libraries log through the stdlib
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    for noisy in ("apscheduler", "sqlalchemy.engine", "httpx", "httpcore", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


configure_logging()
