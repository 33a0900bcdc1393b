"""
Error taxonomy and error reporting.

Every failure the analytics service surfaces is an ``AnalyticsError``
subclass carrying a stable ``error_code`` and HTTP status, so the API layer
can render ``{"success": false, "error": ..., "message": ...}`` without
leaking internals.

Reporting goes through ``capture_exception`` / ``ErrorHandler``, which always
log with structlog and forward to Sentry once ``init_sentry`` has been called
with a DSN.

Usage:
    raise ValidationError("pageUrl is required")

    with ErrorHandler("persist_snapshot", context={"windows": 3}):
        repository.insert_snapshot(snapshot)
"""

from typing import Optional, Any, Dict
from datetime import datetime, timezone
from contextlib import contextmanager
from enum import Enum
import logging

import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from app.core.context import get_request_id, get_context_dict

logger = structlog.get_logger(__name__)

__all__ = [
    "AnalyticsError",
    "ValidationError",
    "StorageError",
    "StorageErrorKind",
    "AttributionError",
    "AggregationFlushError",
    "init_sentry",
    "capture_exception",
    "ErrorHandler",
    "error_boundary",
]

_sentry_initialized: bool = False


class AnalyticsError(Exception):
    """Base class for errors raised by the analytics service."""

    error_code = "analytics_error"
    status_code = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_response(self) -> Dict[str, Any]:
        return {"success": False, "error": self.error_code, "message": self.message}


class ValidationError(AnalyticsError):
    """Malformed input. Raised before any I/O and never retried."""

    error_code = "validation_error"
    status_code = 400


class StorageErrorKind(str, Enum):
    CONNECTION = "connection"
    QUERY = "query"
    TRANSACTION = "transaction"
    CONSTRAINT = "constraint"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in (StorageErrorKind.CONNECTION, StorageErrorKind.TIMEOUT)


class StorageError(AnalyticsError):
    """Record store failure, classified by ``kind``."""

    error_code = "storage_error"
    status_code = 503

    def __init__(
        self,
        message: str,
        kind: StorageErrorKind = StorageErrorKind.UNKNOWN,
        **details: Any,
    ):
        super().__init__(message, **details)
        self.kind = StorageErrorKind(kind)

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class AttributionError(AnalyticsError):
    """The conversion being attributed does not exist."""

    error_code = "attribution_error"
    status_code = 404


class AggregationFlushError(AnalyticsError):
    """A persist tick could not write its snapshot. Logged, never returned to callers."""

    error_code = "aggregation_flush_error"
    status_code = 500


def init_sentry(
    dsn: str,
    environment: str = "production",
    traces_sample_rate: float = 0.1,
    release: Optional[str] = None,
) -> bool:
    """
    Initialize Sentry SDK for error tracking.

    Returns:
        True if initialization successful, False otherwise
    """
    global _sentry_initialized

    if not dsn:
        logger.info("Sentry disabled (no DSN provided)")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            traces_sample_rate=traces_sample_rate,
            release=release,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            before_send=_before_send,
        )
    except Exception as e:
        logger.error("Failed to initialize Sentry", error=str(e))
        return False

    _sentry_initialized = True
    logger.info("Sentry initialized", environment=environment, release=release)
    return True


def _before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if "request" in event and "/health" in event["request"].get("url", ""):
        return None

    request_id = get_request_id()
    if request_id:
        event.setdefault("tags", {})["request_id"] = request_id
    return event

def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
    fingerprint: Optional[list[str]] = None,
) -> Optional[str]:
    """
    Log an exception with request context and forward it to Sentry.

    Args:
        exc: Exception to capture
        context: Additional context dict (e.g., {"conversion_id": 12})
        level: Severity level (debug, info, warning, error, fatal)
        fingerprint: Custom grouping fingerprint for Sentry

    Returns:
        Sentry event ID or None if not sent
    """
    enriched_context = {
        **get_context_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": type(exc).__name__,
        **(context or {}),
    }

    log_func = getattr(logger, level, logger.error)
    log_func("Exception captured", exc_info=exc, **enriched_context)

    if not _sentry_initialized:
        return None

    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in enriched_context.items():
                if value is not None:
                    scope.set_extra(key, value)
            if fingerprint:
                scope.fingerprint = fingerprint
            scope.level = level
            return sentry_sdk.capture_exception(exc)
    except Exception as e:
        logger.warning("Failed to send exception to Sentry", error=str(e))
        return None


class ErrorHandler:
    """
    Context manager that captures errors raised by an operation.

    Usage:
        # Capture and suppress
        with ErrorHandler("attribute_conversion", context={"conversion_id": 7}):
            attribution.attribute_conversion(7, "linear")

        # Capture and re-raise
        with ErrorHandler("persist_snapshot", reraise=True):
            repository.insert_snapshot(snapshot)
    """

    def __init__(
        self,
        operation: str,
        context: Optional[Dict[str, Any]] = None,
        capture: bool = True,
        reraise: bool = False,
        level: str = "error",
    ):
        self.operation = operation
        self.context = context or {}
        self.capture = capture
        self.reraise = reraise
        self.level = level
        self.error: Optional[BaseException] = None
        self.event_id: Optional[str] = None

    def __enter__(self) -> "ErrorHandler":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_val is None:
            return False

        self.error = exc_val
        if self.capture:
            self.event_id = capture_exception(
                exc_val,
                context={"operation": self.operation, **self.context},
                level=self.level,
                fingerprint=[self.operation, type(exc_val).__name__],
            )
        else:
            logger.warning(
                "Operation failed",
                operation=self.operation,
                error=str(exc_val),
                **self.context,
            )
        return not self.reraise


@contextmanager
def error_boundary(operation: str, **context):
    """
    Capture and suppress errors from a block, logging them with context.

    Usage:
        with error_boundary("auto_attribution", conversion_id=cid):
            attribute(...)
    """
    handler = ErrorHandler(operation, context=context)
    with handler:
        yield handler
