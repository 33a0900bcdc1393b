"""
Persistence boundary for analytics data.

Every public method runs one unit of work in its own session through
``execute_with_retry``: the connection is returned to the pool on every exit
path and failures leave as a classified ``StorageError``. Report queries are
built from ``AnalyticsQuery`` filters and grouped with SQL aggregates; the
callers receive plain dicts and model instances detached from the session.
"""

from datetime import date, datetime
from typing import Any, Callable, Iterable, Optional, TypeVar

import structlog
from sqlalchemy import delete, desc, func, or_
from sqlmodel import Session, select

from app.core.config import settings
from app.core.db_utils import execute_with_retry
from app.core.query import AnalyticsQuery, DateRange
from app.models import (
    AnalyticsEvent,
    AttributionEvent,
    Conversion,
    MetricsSnapshot,
    PageEngagement,
    PageVisit,
)
from app.services.math import safe_ratio

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DIRECT = "Direct"

PAGE_VIEW_GROUPS: dict[str, Any] = {
    "day": func.date(PageVisit.visit_time),
    "page_url": PageVisit.page_url,
    "referrer": func.coalesce(PageVisit.referrer, DIRECT),
    "utm_source": func.coalesce(PageVisit.utm_source, DIRECT),
    "utm_medium": PageVisit.utm_medium,
    "utm_campaign": PageVisit.utm_campaign,
    "device_type": PageVisit.device_type,
    "country": PageVisit.country,
}

EVENT_GROUPS: dict[str, Any] = {
    "day": func.date(AnalyticsEvent.timestamp),
    "event_type": AnalyticsEvent.event_type,
}

USER_ACTIVITY_GROUPS = ("day",)

CONVERSION_GROUPS = ("day", "utm_source", "conversion_type")


def _key(value: Any) -> Any:
    """Normalize grouping keys (SQLite returns text dates, PostgreSQL date objects)."""
    if isinstance(value, (date, datetime)):
        return value.isoformat()[:10]
    return value


class AnalyticsRepository:
    def __init__(
        self,
        engine,
        max_retries: int = settings.DB_MAX_RETRIES,
        base_delay: float = settings.DB_RETRY_BASE_DELAY,
        max_delay: float = settings.DB_RETRY_MAX_DELAY,
    ):
        self.engine = engine
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def _run(self, operation_name: str, operation: Callable[[Session], T]) -> T:
        return execute_with_retry(
            self.engine,
            operation,
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            operation_name=operation_name,
        )

    def _insert(self, operation_name: str, record: T) -> T:
        def op(session: Session) -> T:
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

        return self._run(operation_name, op)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert_page_visit(self, visit: PageVisit) -> PageVisit:
        return self._insert("insert_page_visit", visit)

    def insert_engagement(self, sample: PageEngagement) -> PageEngagement:
        return self._insert("insert_engagement", sample)

    def insert_conversion(self, conversion: Conversion) -> Conversion:
        return self._insert("insert_conversion", conversion)

    def insert_event(self, event: AnalyticsEvent) -> AnalyticsEvent:
        return self._insert("insert_event", event)

    def insert_snapshot(self, snapshot: MetricsSnapshot) -> MetricsSnapshot:
        return self._insert("insert_snapshot", snapshot)

    def replace_attribution(
        self,
        conversion_id: int,
        model: str,
        records: list[AttributionEvent],
    ) -> list[AttributionEvent]:
        """Write the attribution set for (conversion, model), replacing any previous one."""

        def op(session: Session) -> list[AttributionEvent]:
            session.execute(
                delete(AttributionEvent).where(
                    AttributionEvent.conversion_id == conversion_id,
                    AttributionEvent.attribution_model == model,
                )
            )
            session.add_all(records)
            session.commit()
            for record in records:
                session.refresh(record)
            return records

        return self._run("replace_attribution", op)

    def delete_older_than(self, cutoff: datetime) -> dict[str, int]:
        """Delete visits (and everything hanging off them), events and snapshots before ``cutoff``."""

        def op(session: Session) -> dict[str, int]:
            old_visits = select(PageVisit.id).where(PageVisit.visit_time < cutoff)
            old_conversions = select(Conversion.id).where(
                or_(Conversion.visit_id.in_(old_visits), Conversion.conversion_time < cutoff)
            )
            deleted = {}
            deleted["attribution_event"] = session.execute(
                delete(AttributionEvent).where(
                    or_(
                        AttributionEvent.conversion_id.in_(old_conversions),
                        AttributionEvent.visit_id.in_(old_visits),
                    )
                )
            ).rowcount
            deleted["conversion"] = session.execute(
                delete(Conversion).where(
                    or_(Conversion.visit_id.in_(old_visits), Conversion.conversion_time < cutoff)
                )
            ).rowcount
            deleted["page_engagement"] = session.execute(
                delete(PageEngagement).where(
                    or_(PageEngagement.visit_id.in_(old_visits), PageEngagement.engagement_time < cutoff)
                )
            ).rowcount
            deleted["page_visit"] = session.execute(
                delete(PageVisit).where(PageVisit.visit_time < cutoff)
            ).rowcount
            deleted["analytics_event"] = session.execute(
                delete(AnalyticsEvent).where(AnalyticsEvent.timestamp < cutoff)
            ).rowcount
            deleted["analytics_snapshot"] = session.execute(
                delete(MetricsSnapshot).where(MetricsSnapshot.snapshot_time < cutoff)
            ).rowcount
            session.commit()
            return deleted

        return self._run("delete_older_than", op)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_visit(self, visit_id: int) -> Optional[PageVisit]:
        return self._run("get_visit", lambda session: session.get(PageVisit, visit_id))

    def get_conversion(self, conversion_id: int) -> Optional[Conversion]:
        return self._run("get_conversion", lambda session: session.get(Conversion, conversion_id))

    def latest_visit_for_session(self, session_id: str) -> Optional[PageVisit]:
        def op(session: Session) -> Optional[PageVisit]:
            statement = (
                select(PageVisit)
                .where(PageVisit.session_id == session_id)
                .order_by(desc(PageVisit.visit_time), desc(PageVisit.id))
                .limit(1)
            )
            return session.exec(statement).first()

        return self._run("latest_visit_for_session", op)

    def session_visits_until(self, session_id: str, until: datetime) -> list[PageVisit]:
        """Visits of a session at or before ``until``, oldest first (ties broken by id)."""

        def op(session: Session) -> list[PageVisit]:
            statement = (
                select(PageVisit)
                .where(PageVisit.session_id == session_id, PageVisit.visit_time <= until)
                .order_by(PageVisit.visit_time, PageVisit.id)
            )
            return list(session.exec(statement).all())

        return self._run("session_visits_until", op)

    def list_attribution(self, conversion_id: int, model: Optional[str] = None) -> list[AttributionEvent]:
        def op(session: Session) -> list[AttributionEvent]:
            statement = AnalyticsQuery().equals(AttributionEvent.attribution_model, model).apply(
                select(AttributionEvent).where(AttributionEvent.conversion_id == conversion_id)
            )
            return list(session.exec(statement.order_by(AttributionEvent.id)).all())

        return self._run("list_attribution", op)

    def list_snapshots(self, report_type: Optional[str] = None, limit: int = 50) -> list[MetricsSnapshot]:
        def op(session: Session) -> list[MetricsSnapshot]:
            statement = AnalyticsQuery().equals(MetricsSnapshot.report_type, report_type).apply(select(MetricsSnapshot))
            statement = statement.order_by(desc(MetricsSnapshot.snapshot_time), desc(MetricsSnapshot.id)).limit(limit)
            return list(session.exec(statement).all())

        return self._run("list_snapshots", op)

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def page_views_report(
        self,
        period: DateRange,
        group_by: str = "day",
        limit: int = 100,
        user_id: Optional[str] = None,
    ) -> list[dict]:
        column = PAGE_VIEW_GROUPS[group_by]

        def op(session: Session) -> list[dict]:
            statement = select(
                column.label("key"),
                func.count(PageVisit.id).label("views"),
                func.count(func.distinct(PageVisit.session_id)).label("unique_sessions"),
            )
            statement = (
                AnalyticsQuery()
                .during(PageVisit.visit_time, period)
                .equals(PageVisit.user_id, user_id)
                .apply(statement)
                .group_by(column)
            )
            if group_by == "day":
                statement = statement.order_by(desc(column))
            else:
                statement = statement.order_by(desc("views"), column)
            rows = session.exec(statement.limit(limit)).all()
            return [
                {"key": _key(key), "views": views, "unique_sessions": sessions}
                for key, views, sessions in rows
            ]

        return self._run("page_views_report", op)

    def events_report(
        self,
        period: DateRange,
        group_by: str = "day",
        limit: int = 100,
        user_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> list[dict]:
        column = EVENT_GROUPS[group_by]

        def op(session: Session) -> list[dict]:
            statement = select(column.label("key"), func.count(AnalyticsEvent.id).label("count"))
            statement = (
                AnalyticsQuery()
                .during(AnalyticsEvent.timestamp, period)
                .equals(AnalyticsEvent.user_id, user_id)
                .equals(AnalyticsEvent.event_type, event_type)
                .apply(statement)
                .group_by(column)
            )
            if group_by == "day":
                statement = statement.order_by(desc(column))
            else:
                statement = statement.order_by(desc("count"), column)
            rows = session.exec(statement.limit(limit)).all()
            return [{"key": _key(key), "count": count} for key, count in rows]

        return self._run("events_report", op)

    def user_activity_report(
        self,
        period: DateRange,
        limit: int = 100,
        user_id: Optional[str] = None,
    ) -> list[dict]:
        visit_day = func.date(PageVisit.visit_time)
        event_day = func.date(AnalyticsEvent.timestamp)

        def op(session: Session) -> list[dict]:
            views = session.exec(
                AnalyticsQuery()
                .during(PageVisit.visit_time, period)
                .equals(PageVisit.user_id, user_id)
                .apply(select(visit_day, func.count(PageVisit.id)))
                .group_by(visit_day)
            ).all()
            events = session.exec(
                AnalyticsQuery()
                .during(AnalyticsEvent.timestamp, period)
                .equals(AnalyticsEvent.user_id, user_id)
                .apply(select(event_day, AnalyticsEvent.event_type, func.count(AnalyticsEvent.id)))
                .group_by(event_day, AnalyticsEvent.event_type)
            ).all()

            days: dict[str, dict] = {}
            for day, count in views:
                row = days.setdefault(_key(day), {"day": _key(day), "total": 0, "page_views": 0, "events": {}})
                row["page_views"] += count
                row["total"] += count
            for day, event_type, count in events:
                row = days.setdefault(_key(day), {"day": _key(day), "total": 0, "page_views": 0, "events": {}})
                row["events"][event_type] = row["events"].get(event_type, 0) + count
                row["total"] += count
            return sorted(days.values(), key=lambda r: r["day"], reverse=True)[:limit]

        return self._run("user_activity_report", op)

    def conversion_report(
        self,
        period: DateRange,
        group_by: str = "day",
        limit: int = 100,
        conversion_goal: Optional[str] = None,
    ) -> list[dict]:
        """
        Conversion counts and session conversion rate per group.

        ``sessions`` counts distinct visiting sessions in the group;
        ``converted_sessions`` counts distinct sessions with a matching
        conversion. For ``conversion_type`` grouping every row shares the
        period's total session count.
        """
        visit_key, conversion_key = {
            "day": (func.date(PageVisit.visit_time), func.date(Conversion.conversion_time)),
            "utm_source": (func.coalesce(PageVisit.utm_source, DIRECT), func.coalesce(PageVisit.utm_source, DIRECT)),
            "conversion_type": (None, Conversion.conversion_type),
        }[group_by]

        def op(session: Session) -> list[dict]:
            visit_filter = AnalyticsQuery().during(PageVisit.visit_time, period)
            sessions_total = 0
            sessions_by_key: dict[Any, int] = {}
            if visit_key is None:
                sessions_total = session.exec(
                    visit_filter.apply(select(func.count(func.distinct(PageVisit.session_id))))
                ).one()
            else:
                for key, count in session.exec(
                    visit_filter.apply(select(visit_key, func.count(func.distinct(PageVisit.session_id)))).group_by(
                        visit_key
                    )
                ).all():
                    sessions_by_key[_key(key)] = count

            conversions = session.exec(
                AnalyticsQuery()
                .during(Conversion.conversion_time, period)
                .equals(Conversion.conversion_type, conversion_goal)
                .apply(
                    select(
                        conversion_key,
                        func.count(Conversion.id),
                        func.coalesce(func.sum(Conversion.conversion_value), 0),
                        func.count(func.distinct(PageVisit.session_id)),
                    ).join(PageVisit, Conversion.visit_id == PageVisit.id)
                )
                .group_by(conversion_key)
            ).all()

            rows: dict[Any, dict] = {}
            keys = set(sessions_by_key) if visit_key is not None else set()
            for key in keys:
                rows[key] = _conversion_row(key, sessions_by_key[key])
            for key, count, value, converted in conversions:
                key = _key(key)
                sessions = sessions_by_key.get(key, 0) if visit_key is not None else sessions_total
                row = rows.setdefault(key, _conversion_row(key, sessions))
                row["conversions"] = count
                row["conversion_value"] = float(value or 0)
                row["converted_sessions"] = converted
                row["conversion_rate"] = round(safe_ratio(converted, row["sessions"]), 4)

            if group_by == "day":
                ordered = sorted(rows.values(), key=lambda r: str(r["key"]), reverse=True)
            else:
                ordered = sorted(rows.values(), key=lambda r: (-r["conversions"], str(r["key"])))
            return ordered[:limit]

        return self._run("conversion_report", op)

    # ------------------------------------------------------------------
    # Attribution and insight queries
    # ------------------------------------------------------------------

    def attribution_analysis(self, model: str, period: Optional[DateRange] = None) -> list[dict]:
        source = func.coalesce(PageVisit.utm_source, DIRECT)

        def op(session: Session) -> list[dict]:
            value = func.sum(AttributionEvent.attribution_weight)
            statement = (
                select(
                    source,
                    PageVisit.utm_medium,
                    PageVisit.utm_campaign,
                    func.count(func.distinct(AttributionEvent.conversion_id)),
                    value.label("attribution_value"),
                )
                .join(PageVisit, AttributionEvent.visit_id == PageVisit.id)
                .join(Conversion, AttributionEvent.conversion_id == Conversion.id)
            )
            statement = (
                AnalyticsQuery()
                .equals(AttributionEvent.attribution_model, model)
                .during(Conversion.conversion_time, period)
                .apply(statement)
                .group_by(source, PageVisit.utm_medium, PageVisit.utm_campaign)
                .order_by(desc("attribution_value"))
            )
            return [
                {
                    "utm_source": utm_source,
                    "utm_medium": utm_medium,
                    "utm_campaign": utm_campaign,
                    "conversion_count": conversions,
                    "attribution_value": round(float(weight or 0), 6),
                }
                for utm_source, utm_medium, utm_campaign, conversions, weight in session.exec(statement).all()
            ]

        return self._run("attribution_analysis", op)

    def landing_page_rates(self, period: DateRange, pages: Optional[Iterable[str]] = None) -> list[dict]:
        """Landing-page visits and conversions per page."""

        def op(session: Session) -> list[dict]:
            statement = select(
                PageVisit.page_url,
                func.count(func.distinct(PageVisit.id)),
                func.count(Conversion.id),
            ).outerjoin(Conversion, Conversion.visit_id == PageVisit.id)
            statement = (
                AnalyticsQuery()
                .where(PageVisit.is_landing_page == True)  # noqa: E712
                .during(PageVisit.visit_time, period)
                .one_of(PageVisit.page_url, pages)
                .apply(statement)
                .group_by(PageVisit.page_url)
            )
            return [
                {"page_url": page_url, "visits": visits, "conversions": conversions}
                for page_url, visits, conversions in session.exec(statement).all()
            ]

        return self._run("landing_page_rates", op)

    def traffic_source_rows(self, period: DateRange, min_visits: int = 10) -> list[dict]:
        source = func.coalesce(PageVisit.utm_source, DIRECT)

        def op(session: Session) -> list[dict]:
            visits = func.count(func.distinct(PageVisit.id))
            statement = select(source, visits, func.count(Conversion.id)).outerjoin(
                Conversion, Conversion.visit_id == PageVisit.id
            )
            statement = (
                AnalyticsQuery()
                .where(PageVisit.is_landing_page == True)  # noqa: E712
                .during(PageVisit.visit_time, period)
                .apply(statement)
                .group_by(source)
                .having(visits >= min_visits)
            )
            return [
                {"utm_source": utm_source, "visit_count": visit_count, "conversion_count": conversion_count}
                for utm_source, visit_count, conversion_count in session.exec(statement).all()
            ]

        return self._run("traffic_source_rows", op)

    def top_traffic_sources(
        self,
        period: DateRange,
        pages: Optional[Iterable[str]] = None,
        limit: int = 10,
    ) -> list[dict]:
        """Landing visits and conversions per campaign, busiest first."""
        source = func.coalesce(PageVisit.utm_source, DIRECT)

        def op(session: Session) -> list[dict]:
            visits = func.count(func.distinct(PageVisit.id))
            statement = select(
                source,
                PageVisit.utm_medium,
                PageVisit.utm_campaign,
                visits,
                func.count(Conversion.id),
            ).outerjoin(Conversion, Conversion.visit_id == PageVisit.id)
            statement = (
                AnalyticsQuery()
                .where(PageVisit.is_landing_page == True)  # noqa: E712
                .during(PageVisit.visit_time, period)
                .one_of(PageVisit.page_url, pages)
                .apply(statement)
                .group_by(source, PageVisit.utm_medium, PageVisit.utm_campaign)
                .order_by(desc(visits), source)
                .limit(limit)
            )
            return [
                {
                    "utm_source": utm_source,
                    "utm_medium": utm_medium,
                    "utm_campaign": utm_campaign,
                    "visit_count": visit_count,
                    "conversion_count": conversion_count,
                    "conversion_rate": safe_ratio(conversion_count, visit_count),
                }
                for utm_source, utm_medium, utm_campaign, visit_count, conversion_count in session.exec(
                    statement
                ).all()
            ]

        return self._run("top_traffic_sources", op)

    def daily_landing_visits(self, period: DateRange, pages: Optional[Iterable[str]] = None) -> list[tuple[str, int]]:
        day = func.date(PageVisit.visit_time)

        def op(session: Session) -> list[tuple[str, int]]:
            statement = (
                AnalyticsQuery()
                .where(PageVisit.is_landing_page == True)  # noqa: E712
                .during(PageVisit.visit_time, period)
                .one_of(PageVisit.page_url, pages)
                .apply(select(day, func.count(PageVisit.id)))
                .group_by(day)
                .order_by(day)
            )
            return [(_key(d), count) for d, count in session.exec(statement).all()]

        return self._run("daily_landing_visits", op)

    def landing_engagement_rows(self, period: DateRange, pages: Optional[Iterable[str]] = None) -> list[dict]:
        """
        Landing visits with their best engagement sample and the number of
        pages their session viewed within the period.
        """

        def op(session: Session) -> list[dict]:
            engagement = (
                select(
                    PageEngagement.visit_id.label("visit_id"),
                    func.max(PageEngagement.time_on_page).label("time_on_page"),
                    func.max(PageEngagement.scroll_depth).label("scroll_depth"),
                )
                .group_by(PageEngagement.visit_id)
                .subquery()
            )
            statement = select(
                PageVisit.id,
                PageVisit.page_url,
                PageVisit.session_id,
                engagement.c.time_on_page,
                engagement.c.scroll_depth,
            ).outerjoin(engagement, engagement.c.visit_id == PageVisit.id)
            statement = (
                AnalyticsQuery()
                .where(PageVisit.is_landing_page == True)  # noqa: E712
                .during(PageVisit.visit_time, period)
                .one_of(PageVisit.page_url, pages)
                .apply(statement)
            )
            visits = session.exec(statement).all()

            session_ids = {row[2] for row in visits if row[2]}
            page_counts: dict[str, int] = {}
            if session_ids:
                counts = session.exec(
                    AnalyticsQuery()
                    .during(PageVisit.visit_time, period)
                    .one_of(PageVisit.session_id, session_ids)
                    .apply(select(PageVisit.session_id, func.count(PageVisit.id)))
                    .group_by(PageVisit.session_id)
                ).all()
                page_counts = {sid: count for sid, count in counts}

            return [
                {
                    "visit_id": visit_id,
                    "page_url": page_url,
                    "session_id": session_id,
                    "time_on_page": time_on_page,
                    "scroll_depth": scroll_depth,
                    "session_pages": page_counts.get(session_id, 1) if session_id else 1,
                }
                for visit_id, page_url, session_id, time_on_page, scroll_depth in visits
            ]

        return self._run("landing_engagement_rows", op)

    def rollup_counts(self, period: DateRange) -> dict[str, Any]:
        """Counters for a scheduled daily/weekly/monthly snapshot, computed from stored rows."""

        def op(session: Session) -> dict[str, Any]:
            in_period = AnalyticsQuery().during(PageVisit.visit_time, period)
            landing = AnalyticsQuery(list(in_period.conditions)).where(PageVisit.is_landing_page == True)  # noqa: E712

            page_views = session.exec(in_period.apply(select(func.count(PageVisit.id)))).one()
            landing_visits = session.exec(landing.apply(select(func.count(PageVisit.id)))).one()
            sessions = session.exec(in_period.apply(select(func.count(func.distinct(PageVisit.session_id))))).one()

            source = func.coalesce(PageVisit.utm_source, DIRECT)
            referrals = session.exec(
                landing.apply(select(source, func.count(PageVisit.id)))
                .group_by(source)
                .order_by(desc(func.count(PageVisit.id)))
                .limit(10)
            ).all()
            device = func.coalesce(PageVisit.device_type, "unknown")
            devices = session.exec(in_period.apply(select(device, func.count(PageVisit.id))).group_by(device)).all()
            country = func.coalesce(PageVisit.country, "unknown")
            geography = session.exec(in_period.apply(select(country, func.count(PageVisit.id))).group_by(country)).all()

            conversion_types = session.exec(
                AnalyticsQuery()
                .during(Conversion.conversion_time, period)
                .apply(select(Conversion.conversion_type, func.count(Conversion.id)))
                .group_by(Conversion.conversion_type)
            ).all()
            event_counts = dict(
                session.exec(
                    AnalyticsQuery()
                    .during(AnalyticsEvent.timestamp, period)
                    .one_of(AnalyticsEvent.event_type, ["form_submission", "form_error"])
                    .apply(select(AnalyticsEvent.event_type, func.count(AnalyticsEvent.id)))
                    .group_by(AnalyticsEvent.event_type)
                ).all()
            )

            per_visit_time = (
                select(func.max(PageEngagement.time_on_page).label("time_on_page"))
                .join(PageVisit, PageEngagement.visit_id == PageVisit.id)
                .where(*in_period.conditions)
                .group_by(PageEngagement.visit_id)
                .subquery()
            )
            total_time = session.exec(select(func.coalesce(func.sum(per_visit_time.c.time_on_page), 0))).one()

            conversions = sum(count for _, count in conversion_types)
            submissions = event_counts.get("form_submission", 0)
            return {
                "landing_page_visits": landing_visits,
                "page_views": page_views,
                "conversions": conversions,
                "form_submissions": submissions,
                "form_errors": event_counts.get("form_error", 0),
                "referral_counts": {key: count for key, count in referrals},
                "devices": {key: count for key, count in devices},
                "geography": {key: count for key, count in geography},
                "form_types": {key: count for key, count in conversion_types},
                "average_time_per_user": safe_ratio(float(total_time or 0), sessions),
                "conversion_rate": safe_ratio(conversions, submissions),
            }

        return self._run("rollup_counts", op)


def _conversion_row(key: Any, sessions: int) -> dict:
    return {
        "key": key,
        "sessions": sessions,
        "converted_sessions": 0,
        "conversions": 0,
        "conversion_value": 0.0,
        "conversion_rate": 0.0,
    }
