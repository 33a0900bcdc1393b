"""
Request context for log correlation.

Holds the request id assigned by the middleware and the tracking session id
of the visitor being processed, so error reports and log lines can be joined
back to a request.
"""

from contextvars import ContextVar
from typing import Optional
import uuid

__all__ = [
    "set_request_id",
    "get_request_id",
    "generate_request_id",
    "set_session_id",
    "get_session_id",
    "clear_context",
    "get_context_dict",
]

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_session_id: ContextVar[Optional[str]] = ContextVar("session_id", default=None)


def generate_request_id() -> str:
    """
    Generate a new request ID.

    Format: req_{16 hex chars}
    """
    return f"req_{uuid.uuid4().hex[:16]}"


def set_request_id(request_id: str) -> None:
    _request_id.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def set_session_id(session_id: Optional[str]) -> None:
    """Set the visitor tracking session for the current context."""
    _session_id.set(session_id)


def get_session_id() -> Optional[str]:
    return _session_id.get()


def clear_context() -> None:
    """Reset all context variables at the end of a request."""
    _request_id.set(None)
    _session_id.set(None)


def get_context_dict() -> dict:
    return {
        "request_id": get_request_id(),
        "session_id": get_session_id(),
    }
