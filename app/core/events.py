"""
In-process event bus for analytics domain events.

Events are small frozen dataclasses tagged with an ``EventKind``. Listeners
subscribe per kind and are called synchronously, in registration order, on
the thread that emits. A listener that raises is logged and skipped; the
remaining listeners still run and the emitter never propagates the error.

Usage:
    emitter = EventEmitter()
    unsubscribe = emitter.on(EventKind.FORM_SUBMITTED, aggregator.handle_event)
    emitter.emit(FormSubmitted(form_type="contact", session_id="abc"))
    unsubscribe()
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any, Callable, ClassVar, Optional

import structlog

from app.models.analytics import utcnow

logger = structlog.get_logger(__name__)

__all__ = [
    "EventKind",
    "DomainEvent",
    "PageViewTracked",
    "EngagementRecorded",
    "FormEvent",
    "FormSubmitted",
    "FormProcessed",
    "FormConverted",
    "FormError",
    "EventEmitter",
]


class EventKind(str, Enum):
    PAGEVIEW_TRACKED = "pageview.tracked"
    ENGAGEMENT_RECORDED = "engagement.recorded"
    FORM_SUBMITTED = "form.submitted"
    FORM_PROCESSED = "form.processed"
    FORM_CONVERTED = "form.converted"
    FORM_ERROR = "form.error"


@dataclass(frozen=True)
class DomainEvent:
    kind: ClassVar[EventKind]

    session_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class PageViewTracked(DomainEvent):
    kind: ClassVar[EventKind] = EventKind.PAGEVIEW_TRACKED

    visit_id: Optional[int] = None
    page_url: str = ""
    referrer: Optional[str] = None
    referral_source: str = "Direct"
    device_type: str = "unknown"
    country: Optional[str] = None
    is_landing_page: bool = False


@dataclass(frozen=True)
class EngagementRecorded(DomainEvent):
    kind: ClassVar[EventKind] = EventKind.ENGAGEMENT_RECORDED

    visit_id: Optional[int] = None
    time_on_page: float = 0.0
    scroll_depth: float = 0.0


@dataclass(frozen=True)
class FormEvent(DomainEvent):
    """Fields shared by every form lifecycle event."""

    form_type: str = "unknown"
    form_id: Optional[str] = None
    device_type: str = "unknown"
    country: Optional[str] = None
    referral_source: Optional[str] = None


@dataclass(frozen=True)
class FormSubmitted(FormEvent):
    kind: ClassVar[EventKind] = EventKind.FORM_SUBMITTED

    status: str = "submitted"


@dataclass(frozen=True)
class FormProcessed(FormEvent):
    kind: ClassVar[EventKind] = EventKind.FORM_PROCESSED

    status: str = "processed"
    processing_time: Optional[float] = None  # milliseconds


@dataclass(frozen=True)
class FormConverted(FormEvent):
    kind: ClassVar[EventKind] = EventKind.FORM_CONVERTED

    conversion_id: Optional[int] = None
    conversion_type: str = "form_submission"
    conversion_value: float = 0.0
    time_to_conversion: Optional[float] = None  # milliseconds


@dataclass(frozen=True)
class FormError(FormEvent):
    kind: ClassVar[EventKind] = EventKind.FORM_ERROR

    error_type: str = "unknown"


Listener = Callable[[Any], None]


@dataclass(eq=False)
class _Subscription:
    handler: Listener
    once: bool = False


class EventEmitter:
    """Thread-safe, synchronous publish/subscribe keyed by ``EventKind``."""

    def __init__(self):
        self._lock = Lock()
        self._listeners: dict[EventKind, list[_Subscription]] = {}

    def on(self, kind: EventKind, handler: Listener) -> Callable[[], None]:
        """Register ``handler`` for ``kind``. Returns a callable that unsubscribes it."""
        return self._add(kind, _Subscription(handler))

    def once(self, kind: EventKind, handler: Listener) -> Callable[[], None]:
        """Register ``handler`` to run for the next ``kind`` event only."""
        return self._add(kind, _Subscription(handler, once=True))

    def off(self, kind: EventKind, handler: Listener) -> bool:
        """Remove the first registration of ``handler``. Returns False if it was not registered."""
        kind = EventKind(kind)
        with self._lock:
            subscriptions = self._listeners.get(kind, [])
            for index, subscription in enumerate(subscriptions):
                if subscription.handler == handler:
                    del subscriptions[index]
                    return True
        return False

    def remove_all_listeners(self, kind: Optional[EventKind] = None) -> None:
        with self._lock:
            if kind is None:
                self._listeners.clear()
            else:
                self._listeners.pop(EventKind(kind), None)

    def listener_count(self, kind: EventKind) -> int:
        with self._lock:
            return len(self._listeners.get(EventKind(kind), []))

    def emit(self, event: DomainEvent) -> bool:
        """
        Deliver ``event`` to every listener of its kind.

        Returns True if at least one listener was registered.
        """
        with self._lock:
            subscriptions = list(self._listeners.get(event.kind, []))
            if not subscriptions:
                return False
            remaining = [s for s in self._listeners[event.kind] if not s.once]
            self._listeners[event.kind] = remaining

        for subscription in subscriptions:
            try:
                subscription.handler(event)
            except Exception as e:
                logger.error(
                    "Event listener failed",
                    kind=event.kind.value,
                    listener=getattr(subscription.handler, "__qualname__", repr(subscription.handler)),
                    error=str(e),
                    exc_info=e,
                )
        return True

    def _add(self, kind: EventKind, subscription: _Subscription) -> Callable[[], None]:
        kind = EventKind(kind)
        with self._lock:
            self._listeners.setdefault(kind, []).append(subscription)

        def unsubscribe() -> None:
            with self._lock:
                subscriptions = self._listeners.get(kind, [])
                if subscription in subscriptions:
                    subscriptions.remove(subscription)

        return unsubscribe
