"""
Real-time form and traffic counters with periodic persistence.

The aggregator subscribes to tracking events and keeps two sets of counters
under one lock:

- ``totals``: cumulative since start (or the last reset). This is what the
  dashboard polls through ``get_stats``.
- the current window: everything since the last successful persist tick.

``persist`` closes the current window and writes the merge of every pending
window as one ``realtime`` snapshot. A failed write keeps the windows for the
next tick; beyond ``max_pending_windows`` the oldest are dropped with a
warning, so memory stays bounded during a long outage.

These counters are process-local and reset on restart.
"""

from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any, Callable, Optional

import structlog

from app.core.config import settings
from app.core.errors import AggregationFlushError, AnalyticsError, capture_exception
from app.core.events import (
    EngagementRecorded,
    EventEmitter,
    EventKind,
    FormConverted,
    FormError,
    FormProcessed,
    FormSubmitted,
    PageViewTracked,
)
from app.models import MetricsSnapshot, utcnow
from app.services.analytics_repository import AnalyticsRepository
from app.services.math import safe_ratio

logger = structlog.get_logger(__name__)

__all__ = ["AggregatorState", "RunningStat", "CounterWindow", "RealTimeAggregator"]


class AggregatorState(str, Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FLUSHING = "flushing"


@dataclass
class RunningStat:
    """Count, total, min and max of a duration series (milliseconds)."""

    count: int = 0
    total: float = 0.0
    min: Optional[float] = None
    max: Optional[float] = None

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.min = value if self.min is None else min(self.min, value)
        self.max = value if self.max is None else max(self.max, value)

    def merge(self, other: "RunningStat") -> None:
        if not other.count:
            return
        self.count += other.count
        self.total += other.total
        self.min = other.min if self.min is None else min(self.min, other.min)  # type: ignore[type-var]
        self.max = other.max if self.max is None else max(self.max, other.max)  # type: ignore[type-var]

    @property
    def average(self) -> float:
        return safe_ratio(self.total, self.count)

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "average": round(self.average, 2),
            "min": self.min or 0,
            "max": self.max or 0,
        }


@dataclass
class CounterWindow:
    """Counters accumulated over one persist interval."""

    started_at: datetime = field(default_factory=utcnow)
    ended_at: Optional[datetime] = None

    page_views: int = 0
    landing_page_visits: int = 0
    referral_counts: Counter = field(default_factory=Counter)
    devices: Counter = field(default_factory=Counter)
    geography: Counter = field(default_factory=Counter)
    sessions: set = field(default_factory=set)
    # visit_id -> latest cumulative time on page (seconds)
    time_on_page: dict = field(default_factory=dict)

    form_submissions: int = 0
    form_processed: int = 0
    form_types: Counter = field(default_factory=Counter)
    form_status: Counter = field(default_factory=Counter)
    form_devices: Counter = field(default_factory=Counter)
    processing_time: RunningStat = field(default_factory=RunningStat)

    conversions: int = 0
    conversion_types: Counter = field(default_factory=Counter)
    time_to_conversion: RunningStat = field(default_factory=RunningStat)

    errors: int = 0
    error_types: Counter = field(default_factory=Counter)
    errors_by_form_type: Counter = field(default_factory=Counter)

    def is_empty(self) -> bool:
        return not (
            self.page_views
            or self.time_on_page
            or self.form_submissions
            or self.form_processed
            or self.conversions
            or self.errors
        )

    def merge(self, other: "CounterWindow") -> None:
        """Fold a later window into this one."""
        self.ended_at = other.ended_at or self.ended_at
        self.page_views += other.page_views
        self.landing_page_visits += other.landing_page_visits
        self.referral_counts.update(other.referral_counts)
        self.devices.update(other.devices)
        self.geography.update(other.geography)
        self.sessions |= other.sessions
        self.time_on_page.update(other.time_on_page)
        self.form_submissions += other.form_submissions
        self.form_processed += other.form_processed
        self.form_types.update(other.form_types)
        self.form_status.update(other.form_status)
        self.form_devices.update(other.form_devices)
        self.processing_time.merge(other.processing_time)
        self.conversions += other.conversions
        self.conversion_types.update(other.conversion_types)
        self.time_to_conversion.merge(other.time_to_conversion)
        self.errors += other.errors
        self.error_types.update(other.error_types)
        self.errors_by_form_type.update(other.errors_by_form_type)

    def average_time_per_user(self) -> float:
        return safe_ratio(sum(self.time_on_page.values()), len(self.sessions))

    def conversion_rate(self) -> float:
        return safe_ratio(self.conversions, self.form_submissions)

    def to_snapshot(self, report_type: str = "realtime") -> MetricsSnapshot:
        return MetricsSnapshot(
            report_type=report_type,
            window_start=self.started_at,
            landing_page_visits=self.landing_page_visits,
            page_views=self.page_views,
            conversions=self.conversions,
            form_submissions=self.form_submissions,
            form_errors=self.errors,
            referral_counts=dict(self.referral_counts),
            devices=dict(self.devices),
            geography=dict(self.geography),
            form_types=dict(self.form_types),
            average_time_per_user=self.average_time_per_user(),
            conversion_rate=self.conversion_rate(),
        )


def _on_page_view(window: CounterWindow, event: PageViewTracked) -> None:
    window.page_views += 1
    if event.is_landing_page:
        window.landing_page_visits += 1
        window.referral_counts[event.referral_source or "Direct"] += 1
    window.devices[event.device_type or "unknown"] += 1
    window.geography[event.country or "unknown"] += 1
    if event.session_id:
        window.sessions.add(event.session_id)


def _on_engagement(window: CounterWindow, event: EngagementRecorded) -> None:
    if event.visit_id is None:
        return
    window.time_on_page[event.visit_id] = max(0.0, event.time_on_page)
    if event.session_id:
        window.sessions.add(event.session_id)


def _on_submitted(window: CounterWindow, event: FormSubmitted) -> None:
    window.form_submissions += 1
    window.form_types[event.form_type] += 1
    window.form_status[event.status] += 1
    window.form_devices[event.device_type or "unknown"] += 1


def _on_processed(window: CounterWindow, event: FormProcessed) -> None:
    window.form_processed += 1
    window.form_status[event.status] += 1
    if event.processing_time is not None:
        window.processing_time.add(event.processing_time)


def _on_converted(window: CounterWindow, event: FormConverted) -> None:
    window.conversions += 1
    window.conversion_types[event.conversion_type] += 1
    if event.time_to_conversion is not None:
        window.time_to_conversion.add(event.time_to_conversion)


def _on_error(window: CounterWindow, event: FormError) -> None:
    window.errors += 1
    window.error_types[event.error_type] += 1
    window.errors_by_form_type[event.form_type] += 1


_HANDLERS: dict[EventKind, Callable[[CounterWindow, Any], None]] = {
    EventKind.PAGEVIEW_TRACKED: _on_page_view,
    EventKind.ENGAGEMENT_RECORDED: _on_engagement,
    EventKind.FORM_SUBMITTED: _on_submitted,
    EventKind.FORM_PROCESSED: _on_processed,
    EventKind.FORM_CONVERTED: _on_converted,
    EventKind.FORM_ERROR: _on_error,
}


class RealTimeAggregator:
    """Thread-safe real-time counters for the dashboard, flushed to snapshots."""

    def __init__(
        self,
        emitter: EventEmitter,
        repository: AnalyticsRepository,
        max_pending_windows: int = settings.REALTIME_MAX_PENDING_WINDOWS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.emitter = emitter
        self.repository = repository
        self.max_pending_windows = max(1, max_pending_windows)
        self._clock = clock
        self._lock = Lock()
        self._unsubscribers: list[Callable[[], None]] = []
        self._init_counters()

    def _init_counters(self) -> None:
        now = self._clock()
        self._totals = CounterWindow(started_at=now)
        self._current = CounterWindow(started_at=now)
        self._pending: deque[CounterWindow] = deque()
        self._state = AggregatorState.IDLE
        self._average_time_per_user = 0.0
        self._conversion_rate = 0.0
        self._last_updated = now
        self._last_persisted_at: Optional[datetime] = None
        self._consecutive_failures = 0
        self._dropped_windows = 0
        # Bumped on reset so an in-flight flush does not touch the new counters
        self._generation = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._unsubscribers:
            return
        for kind in _HANDLERS:
            self._unsubscribers.append(self.emitter.on(kind, self.handle_event))
        logger.info("Real-time aggregator subscribed", kinds=[k.value for k in _HANDLERS])

    def shutdown(self, flush: bool = True) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        if flush:
            self.persist()

    @property
    def state(self) -> AggregatorState:
        with self._lock:
            return self._state

    @property
    def pending_windows(self) -> int:
        with self._lock:
            return len(self._pending)

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    def handle_event(self, event: Any) -> None:
        handler = _HANDLERS.get(event.kind)
        if handler is None:
            return
        with self._lock:
            handler(self._totals, event)
            handler(self._current, event)
            if self._state == AggregatorState.IDLE:
                self._state = AggregatorState.ACCUMULATING
            self._last_updated = self._clock()

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def aggregate(self) -> dict:
        """Recompute derived metrics from the raw counters. No storage access."""
        with self._lock:
            self._average_time_per_user = self._totals.average_time_per_user()
            self._conversion_rate = self._totals.conversion_rate()
            return {
                "average_time_per_user": self._average_time_per_user,
                "conversion_rate": self._conversion_rate,
            }

    def persist(self) -> Optional[MetricsSnapshot]:
        """
        Write every pending window as one realtime snapshot.

        Returns the stored snapshot, or None when there was nothing to write
        or the write failed (the windows are then kept for the next tick).
        """
        with self._lock:
            if self._state == AggregatorState.FLUSHING:
                logger.debug("Persist skipped, flush already in progress")
                return None
            if not self._current.is_empty():
                now = self._clock()
                self._current.ended_at = now
                self._pending.append(self._current)
                self._current = CounterWindow(started_at=now)
            if not self._pending:
                return None
            self._trim_pending()
            windows = list(self._pending)
            generation = self._generation
            self._state = AggregatorState.FLUSHING

        merged = CounterWindow(started_at=windows[0].started_at)
        for window in windows:
            merged.merge(window)

        saved: Optional[MetricsSnapshot] = None
        try:
            saved = self.repository.insert_snapshot(merged.to_snapshot("realtime"))
        except AnalyticsError as e:
            error = AggregationFlushError(
                "Failed to persist real-time snapshot",
                windows=len(windows),
            )
            error.__cause__ = e
            capture_exception(
                error,
                context={"windows": len(windows), "cause": str(e)},
                level="warning",
                fingerprint=["realtime_persist"],
            )
        finally:
            with self._lock:
                if generation == self._generation:
                    if saved is not None:
                        for _ in windows:
                            self._pending.popleft()
                        self._consecutive_failures = 0
                        self._last_persisted_at = self._clock()
                    else:
                        self._consecutive_failures += 1
                        self._trim_pending()
                    self._state = (
                        AggregatorState.ACCUMULATING
                        if self._pending or not self._current.is_empty()
                        else AggregatorState.IDLE
                    )

        if saved is not None:
            logger.info(
                "Real-time snapshot persisted",
                snapshot_id=saved.id,
                windows=len(windows),
                page_views=merged.page_views,
                conversions=merged.conversions,
            )
        return saved

    def _trim_pending(self) -> None:
        # Caller holds the lock
        while len(self._pending) > self.max_pending_windows:
            dropped = self._pending.popleft()
            self._dropped_windows += 1
            logger.warning(
                "Dropping unpersisted real-time window",
                window_start=dropped.started_at.isoformat(),
                page_views=dropped.page_views,
                form_submissions=dropped.form_submissions,
                conversions=dropped.conversions,
                max_pending_windows=self.max_pending_windows,
            )

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    def reset_stats(self) -> None:
        """Clear all in-memory counters. Persisted snapshots are untouched."""
        with self._lock:
            generation = self._generation
            self._init_counters()
            self._generation = generation + 1
        logger.info("Real-time statistics reset")

    def get_stats(self) -> dict:
        """Get all counters as a JSON-ready dictionary."""
        with self._lock:
            totals = self._totals
            return {
                "form_submissions": {
                    "total": totals.form_submissions,
                    "by_type": dict(totals.form_types),
                    "by_status": dict(totals.form_status),
                    "by_device": dict(totals.form_devices),
                },
                "conversions": {
                    "total": totals.conversions,
                    "by_type": dict(totals.conversion_types),
                    "conversion_rate": round(self._conversion_rate, 4),
                },
                "errors": {
                    "total": totals.errors,
                    "by_type": dict(totals.error_types),
                    "by_form_type": dict(totals.errors_by_form_type),
                },
                "page_views": {
                    "total": totals.page_views,
                    "landing": totals.landing_page_visits,
                    "by_referral": dict(totals.referral_counts),
                    "by_device": dict(totals.devices),
                    "by_country": dict(totals.geography),
                },
                "processing_time": totals.processing_time.to_dict(),
                "time_to_conversion": totals.time_to_conversion.to_dict(),
                "average_time_per_user": round(self._average_time_per_user, 2),
                "state": self._state.value,
                "pending_windows": len(self._pending),
                "dropped_windows": self._dropped_windows,
                "consecutive_flush_failures": self._consecutive_failures,
                "started_at": totals.started_at.isoformat(),
                "last_updated": self._last_updated.isoformat(),
                "last_persisted_at": self._last_persisted_at.isoformat() if self._last_persisted_at else None,
            }
