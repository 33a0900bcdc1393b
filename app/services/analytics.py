"""
Analytics tracking and reporting.

``AnalyticsService`` is the write path for page views and custom events and
the read path for grouped reports. Inputs are validated before any I/O;
storage failures surface as ``StorageError`` from the repository. Every
successful write emits a domain event so the real-time aggregator and the
attribution subscriber can react in-process.
"""

import hashlib
import random
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional
from urllib.parse import parse_qs, urlparse

import structlog
from user_agents import parse as parse_ua

from app.core.config import settings
from app.core.errors import ValidationError
from app.core.events import (
    EngagementRecorded,
    EventEmitter,
    FormConverted,
    FormError,
    FormProcessed,
    FormSubmitted,
    PageViewTracked,
)
from app.core.query import DateRange
from app.models import AnalyticsEvent, Conversion, MetricsSnapshot, PageEngagement, PageVisit, utcnow
from app.services.analytics_repository import (
    CONVERSION_GROUPS,
    DIRECT,
    EVENT_GROUPS,
    PAGE_VIEW_GROUPS,
    USER_ACTIVITY_GROUPS,
    AnalyticsRepository,
)

logger = structlog.get_logger(__name__)

REPORT_GROUPS: dict[str, tuple[str, ...]] = {
    "user_activity": tuple(USER_ACTIVITY_GROUPS),
    "page_views": tuple(PAGE_VIEW_GROUPS),
    "events": tuple(EVENT_GROUPS),
    "conversion": tuple(CONVERSION_GROUPS),
}

MAX_REPORT_LIMIT = 1000
MAX_URL_LENGTH = 2048
MAX_EVENT_TYPE_LENGTH = 100


@dataclass
class PageViewData:
    page_url: str
    referrer: Optional[str] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    host: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    device_info: dict = field(default_factory=dict)


@dataclass
class EventData:
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class ReportParams:
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    group_by: Optional[str] = None
    limit: int = 100
    user_id: Optional[str] = None
    event_type: Optional[str] = None
    conversion_goal: Optional[str] = None


@dataclass(frozen=True)
class TrackResult:
    tracked: bool
    session_id: Optional[str] = None
    visit_id: Optional[int] = None
    event_id: Optional[int] = None
    conversion_id: Optional[int] = None


def generate_session_id() -> str:
    return secrets.token_hex(16)


def hash_ip(ip: Optional[str]) -> Optional[str]:
    """Hash IP address for privacy."""
    if not ip:
        return None
    return hashlib.sha256(ip.encode()).hexdigest()[:16]


def get_device_type(user_agent_string: Optional[str]) -> str:
    """Parse user agent to determine device type using user-agents library."""
    if not user_agent_string:
        return "unknown"
    ua = parse_ua(user_agent_string)
    if ua.is_tablet:
        return "tablet"
    if ua.is_mobile:
        return "mobile"
    if ua.is_pc:
        return "desktop"
    return "unknown"


def _host(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    parsed = urlparse(url if "//" in url else f"//{url}")
    host = (parsed.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    return host or None


def is_landing_page(referrer: Optional[str], current_host: Optional[str]) -> bool:
    """A visit lands when it has no referrer or the referrer is another site."""
    if not referrer or not referrer.strip():
        return True
    return _host(referrer) != _host(current_host)


def referral_source(utm_source: Optional[str], referrer: Optional[str], current_host: Optional[str]) -> str:
    if utm_source:
        return utm_source
    referrer_host = _host(referrer)
    if referrer_host and referrer_host != _host(current_host):
        return referrer_host
    return DIRECT


def _number(metadata: dict, key: str, default: float = 0.0) -> float:
    value = metadata.get(key)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{key} must be a number") from e


def _optional_number(metadata: dict, key: str) -> Optional[float]:
    return _number(metadata, key) if metadata.get(key) not in (None, "") else None


class AnalyticsService:
    def __init__(
        self,
        repository: AnalyticsRepository,
        emitter: EventEmitter,
        enable_tracking: bool = settings.ANALYTICS_ENABLE_TRACKING,
        sample_rate: float = settings.ANALYTICS_SAMPLE_RATE,
        retention_days: int = settings.ANALYTICS_RETENTION_DAYS,
        site_host: str = settings.SITE_HOST,
        sampler: Callable[[], float] = random.random,
    ):
        self.repository = repository
        self.emitter = emitter
        self.enable_tracking = enable_tracking
        self.sample_rate = sample_rate
        self.retention_days = retention_days
        self.site_host = site_host
        self._sampler = sampler

    def _should_track(self) -> bool:
        if not self.enable_tracking:
            return False
        if self.sample_rate >= 1:
            return True
        return self._sampler() < self.sample_rate

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def track_page_view(self, page_data: PageViewData) -> TrackResult:
        page_url = (page_data.page_url or "").strip()
        if not page_url:
            raise ValidationError("pageUrl is required")
        if len(page_url) > MAX_URL_LENGTH:
            raise ValidationError("pageUrl is too long")

        session_id = page_data.session_id or generate_session_id()
        if not self._should_track():
            return TrackResult(tracked=False, session_id=session_id)

        parsed_url = urlparse(page_url)
        # The configured site host outranks the host the request reached the API on
        current_host = _host(page_url) if parsed_url.netloc else (self.site_host or page_data.host or None)
        query = parse_qs(parsed_url.query)
        utm = {
            key: getattr(page_data, key) or (query.get(key) or [None])[0]
            for key in ("utm_source", "utm_medium", "utm_campaign")
        }
        device_info = page_data.device_info or {}
        device_type = device_info.get("type") or device_info.get("deviceType") or get_device_type(page_data.user_agent)
        country = device_info.get("country")
        landing = is_landing_page(page_data.referrer, current_host)

        visit = self.repository.insert_page_visit(
            PageVisit(
                page_url=page_url,
                referrer=page_data.referrer or None,
                utm_source=utm["utm_source"],
                utm_medium=utm["utm_medium"],
                utm_campaign=utm["utm_campaign"],
                user_agent=(page_data.user_agent or "")[:512] or None,
                ip_hash=hash_ip(page_data.ip_address),
                session_id=session_id,
                user_id=page_data.user_id,
                device_type=device_type,
                country=country,
                is_landing_page=landing,
            )
        )
        logger.debug(
            "Page view tracked",
            visit_id=visit.id,
            session_id=session_id,
            landing=landing,
        )

        self.emitter.emit(
            PageViewTracked(
                session_id=session_id,
                timestamp=visit.visit_time,
                visit_id=visit.id,
                page_url=page_url,
                referrer=visit.referrer,
                referral_source=referral_source(utm["utm_source"], page_data.referrer, current_host),
                device_type=device_type,
                country=country,
                is_landing_page=landing,
            )
        )
        return TrackResult(tracked=True, session_id=session_id, visit_id=visit.id)

    def track_event(self, event_type: str, event_data: Optional[EventData] = None) -> TrackResult:
        event_type = (event_type or "").strip()
        if not event_type:
            raise ValidationError("eventType is required")
        if len(event_type) > MAX_EVENT_TYPE_LENGTH:
            raise ValidationError("eventType is too long")

        data = event_data or EventData()
        metadata = dict(data.metadata or {})
        if not self._should_track():
            return TrackResult(tracked=False, session_id=data.session_id)

        handler = self._event_handlers.get(event_type)
        # Parse typed fields up front so a bad payload writes nothing
        prepared = handler[0](self, data, metadata) if handler else None

        stored = self.repository.insert_event(
            AnalyticsEvent(
                event_type=event_type,
                session_id=data.session_id,
                user_id=data.user_id,
                properties=metadata or None,
            )
        )
        result = TrackResult(tracked=True, session_id=data.session_id, event_id=stored.id)
        if handler:
            result = handler[1](self, data, metadata, prepared, result)
        return result

    def _form_fields(self, data: EventData, metadata: dict) -> dict[str, Any]:
        return {
            "session_id": data.session_id,
            "metadata": metadata,
            "form_type": str(metadata.get("formType") or "unknown"),
            "form_id": metadata.get("formId"),
            "device_type": metadata.get("deviceType") or get_device_type(data.user_agent),
            "country": metadata.get("country"),
            "referral_source": metadata.get("referralSource"),
        }

    def _prepare_form(self, data: EventData, metadata: dict) -> dict[str, Any]:
        fields = self._form_fields(data, metadata)
        fields["processing_time"] = _optional_number(metadata, "processingTime")
        fields["time_to_conversion"] = _optional_number(metadata, "timeToConversion")
        fields["conversion_value"] = _number(metadata, "conversionValue")
        return fields

    def _emit_submitted(self, data, metadata, fields, result: TrackResult) -> TrackResult:
        self.emitter.emit(
            FormSubmitted(
                status=str(metadata.get("status") or "submitted"),
                **_without(fields, "processing_time", "time_to_conversion", "conversion_value"),
            )
        )
        return result

    def _emit_processed(self, data, metadata, fields, result: TrackResult) -> TrackResult:
        self.emitter.emit(
            FormProcessed(
                status=str(metadata.get("status") or "processed"),
                **_without(fields, "time_to_conversion", "conversion_value"),
            )
        )
        return result

    def _emit_error(self, data, metadata, fields, result: TrackResult) -> TrackResult:
        self.emitter.emit(
            FormError(
                error_type=str(metadata.get("errorType") or "unknown"),
                **_without(fields, "processing_time", "time_to_conversion", "conversion_value"),
            )
        )
        return result

    def _record_conversion(self, data, metadata, fields, result: TrackResult) -> TrackResult:
        conversion_type = metadata.get("conversionType") or (
            "form_submission" if metadata.get("formType") else "event"
        )
        conversion_id = None
        visit = self.repository.latest_visit_for_session(data.session_id) if data.session_id else None
        if visit is None:
            logger.warning(
                "Conversion without a resolvable visit, not persisted",
                session_id=data.session_id,
                conversion_type=conversion_type,
            )
        else:
            conversion = self.repository.insert_conversion(
                Conversion(
                    visit_id=visit.id,
                    conversion_type=str(conversion_type),
                    conversion_value=fields["conversion_value"],
                    conversion_data=metadata or None,
                )
            )
            conversion_id = conversion.id
            logger.info(
                "Conversion tracked",
                conversion_id=conversion_id,
                visit_id=visit.id,
                conversion_type=conversion_type,
            )

        self.emitter.emit(
            FormConverted(
                conversion_id=conversion_id,
                conversion_type=str(conversion_type),
                **_without(fields, "processing_time"),
            )
        )
        return TrackResult(
            tracked=True,
            session_id=result.session_id,
            event_id=result.event_id,
            conversion_id=conversion_id,
        )

    def _prepare_engagement(self, data: EventData, metadata: dict) -> dict[str, Any]:
        visit_id = metadata.get("visitId")
        if visit_id is not None:
            try:
                visit_id = int(visit_id)
            except (TypeError, ValueError) as e:
                raise ValidationError("visitId must be an integer") from e
        return {
            "visit_id": visit_id,
            "time_on_page": max(0.0, _number(metadata, "timeOnPage")),
            "scroll_depth": min(100.0, max(0.0, _number(metadata, "scrollDepth"))),
            "click_count": max(0, int(_number(metadata, "clickCount"))),
            "form_interactions": max(0, int(_number(metadata, "formInteractions"))),
        }

    def _record_engagement(self, data, metadata, fields, result: TrackResult) -> TrackResult:
        visit = None
        if fields["visit_id"] is not None:
            visit = self.repository.get_visit(fields["visit_id"])
        elif data.session_id:
            visit = self.repository.latest_visit_for_session(data.session_id)
        if visit is None:
            logger.warning("Engagement sample without a known visit, skipped", session_id=data.session_id)
            return result

        self.repository.insert_engagement(
            PageEngagement(
                visit_id=visit.id,
                time_on_page=fields["time_on_page"],
                scroll_depth=fields["scroll_depth"],
                click_count=fields["click_count"],
                form_interactions=fields["form_interactions"],
            )
        )
        self.emitter.emit(
            EngagementRecorded(
                session_id=visit.session_id,
                visit_id=visit.id,
                time_on_page=fields["time_on_page"],
                scroll_depth=fields["scroll_depth"],
            )
        )
        return TrackResult(tracked=True, session_id=result.session_id, event_id=result.event_id, visit_id=visit.id)

    # event_type -> (prepare, record)
    _event_handlers: dict[str, tuple[Callable, Callable]] = {
        "conversion": (_prepare_form, _record_conversion),
        "engagement": (_prepare_engagement, _record_engagement),
        "form_submission": (_prepare_form, _emit_submitted),
        "form_processed": (_prepare_form, _emit_processed),
        "form_error": (_prepare_form, _emit_error),
    }

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def generate_report(self, report_type: str, params: Optional[ReportParams] = None) -> list[dict]:
        """
        Build a grouped report over ``[start_date, end_date]``.

        Raises:
            ValidationError: unknown report type, bad dates, group_by or limit
            StorageError: the underlying query failed
        """
        params = params or ReportParams()
        if report_type not in REPORT_GROUPS:
            raise ValidationError(
                f"Invalid report type. Must be one of: {', '.join(REPORT_GROUPS)}"
            )
        period = DateRange.parse(params.start_date, params.end_date)

        group_by = params.group_by or "day"
        if group_by not in REPORT_GROUPS[report_type]:
            raise ValidationError(
                f"Invalid groupBy for {report_type}. Must be one of: {', '.join(REPORT_GROUPS[report_type])}"
            )
        if not 1 <= params.limit <= MAX_REPORT_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_REPORT_LIMIT}")

        logger.info("Generating report", report_type=report_type, group_by=group_by)
        if report_type == "page_views":
            return self.repository.page_views_report(period, group_by, params.limit, params.user_id)
        if report_type == "events":
            return self.repository.events_report(
                period, group_by, params.limit, params.user_id, params.event_type
            )
        if report_type == "user_activity":
            return self.repository.user_activity_report(period, params.limit, params.user_id)
        return self.repository.conversion_report(period, group_by, params.limit, params.conversion_goal)

    def list_snapshots(self, report_type: Optional[str] = None, limit: int = 50) -> list[dict]:
        if not 1 <= limit <= MAX_REPORT_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_REPORT_LIMIT}")
        return [s.to_dict() for s in self.repository.list_snapshots(report_type, limit)]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup_old_data(self, retention_days: Optional[int] = None) -> dict[str, int]:
        days = self.retention_days if retention_days is None else retention_days
        if days < 1:
            raise ValidationError("retentionDays must be at least 1")
        cutoff = utcnow() - timedelta(days=days)
        deleted = self.repository.delete_older_than(cutoff)
        logger.info("Analytics retention cleanup", retention_days=days, cutoff=cutoff.isoformat(), **deleted)
        return deleted

    def rollup(self, report_type: str, now: Optional[datetime] = None) -> MetricsSnapshot:
        """Persist a daily/weekly/monthly snapshot for the last complete period."""
        period = previous_period(report_type, now or utcnow())
        counts = self.repository.rollup_counts(period)
        snapshot = self.repository.insert_snapshot(
            MetricsSnapshot(report_type=report_type, window_start=period.start, snapshot_time=period.end, **counts)
        )
        logger.info(
            "Rollup snapshot written",
            report_type=report_type,
            window_start=period.start.isoformat(),
            landing_page_visits=snapshot.landing_page_visits,
            conversions=snapshot.conversions,
        )
        return snapshot


def previous_period(report_type: str, now: datetime) -> DateRange:
    """The last complete UTC day, ISO week or calendar month before ``now``."""
    today = datetime(now.year, now.month, now.day)
    if report_type == "daily":
        return DateRange(start=today - timedelta(days=1), end=today)
    if report_type == "weekly":
        this_week = today - timedelta(days=today.weekday())
        return DateRange(start=this_week - timedelta(days=7), end=this_week)
    if report_type == "monthly":
        this_month = today.replace(day=1)
        last_month = (this_month - timedelta(days=1)).replace(day=1)
        return DateRange(start=last_month, end=this_month)
    raise ValidationError(f"Unsupported rollup type: {report_type}")


def _without(fields: dict, *keys: str) -> dict:
    return {k: v for k, v in fields.items() if k not in keys}
