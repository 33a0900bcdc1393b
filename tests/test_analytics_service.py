"""
Tests for AnalyticsService: tracking, reports, rollups and retention cleanup.
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlmodel import select

from app.core.errors import StorageError, StorageErrorKind, ValidationError
from app.core.events import EventKind
from app.models import AnalyticsEvent, Conversion, MetricsSnapshot, PageEngagement, PageVisit, utcnow
from app.services.analytics import (
    AnalyticsService,
    EventData,
    PageViewData,
    ReportParams,
    get_device_type,
    hash_ip,
    is_landing_page,
    previous_period,
    referral_source,
)

IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 16_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/16.0 Mobile/15E148 Safari/604.1"
)
DESKTOP_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@pytest.fixture
def service(repository, emitter) -> AnalyticsService:
    return AnalyticsService(repository, emitter, enable_tracking=True, sample_rate=1.0, site_host="samehost.com")


def today_range() -> ReportParams:
    today = utcnow().date()
    return ReportParams(start_date=(today - timedelta(days=1)).isoformat(), end_date=today.isoformat())


class TestHelpers:
    """Tests for pure tracking helpers."""

    @pytest.mark.parametrize("referrer,host,expected", [
        (None, "samehost.com", True),
        ("", "samehost.com", True),
        ("   ", "samehost.com", True),
        ("https://external.com", "samehost.com", True),
        ("https://samehost.com/other", "samehost.com", False),
        ("https://www.samehost.com/other", "samehost.com", False),
        ("https://SameHost.com/other", "samehost.com", False),
    ])
    def test_is_landing_page(self, referrer, host, expected):
        assert is_landing_page(referrer, host) is expected

    def test_referral_source_precedence(self):
        assert referral_source("newsletter", "https://google.com", "samehost.com") == "newsletter"
        assert referral_source(None, "https://www.google.com/search", "samehost.com") == "google.com"
        assert referral_source(None, "https://samehost.com/a", "samehost.com") == "Direct"
        assert referral_source(None, None, "samehost.com") == "Direct"

    def test_hash_ip(self):
        assert hash_ip(None) is None
        hashed = hash_ip("203.0.113.7")
        assert len(hashed) == 16
        assert hashed == hash_ip("203.0.113.7")

    def test_device_type(self):
        assert get_device_type(IPHONE_UA) == "mobile"
        assert get_device_type(DESKTOP_UA) == "desktop"
        assert get_device_type(None) == "unknown"

    def test_previous_period(self):
        now = datetime(2024, 3, 13, 0, 5)  # Wednesday
        daily = previous_period("daily", now)
        assert (daily.start, daily.end) == (datetime(2024, 3, 12), datetime(2024, 3, 13))

        weekly = previous_period("weekly", now)
        assert (weekly.start, weekly.end) == (datetime(2024, 3, 4), datetime(2024, 3, 11))

        monthly = previous_period("monthly", datetime(2024, 3, 1, 0, 15))
        assert (monthly.start, monthly.end) == (datetime(2024, 2, 1), datetime(2024, 3, 1))

        with pytest.raises(ValidationError):
            previous_period("hourly", now)


class TestTrackPageView:
    """Tests for track_page_view."""

    def test_empty_referrer_is_landing(self, service, repository):
        result = service.track_page_view(PageViewData(page_url="/landing", referrer=""))

        assert result.tracked is True
        visit = repository.get_visit(result.visit_id)
        assert visit.is_landing_page is True
        assert visit.page_url == "/landing"

    def test_external_referrer_is_landing(self, service, repository):
        result = service.track_page_view(
            PageViewData(page_url="/landing", referrer="https://external.com", host="samehost.com")
        )
        assert repository.get_visit(result.visit_id).is_landing_page is True

    def test_same_host_referrer_is_not_landing(self, service, repository):
        result = service.track_page_view(
            PageViewData(page_url="/other", referrer="https://samehost.com/other", host="samehost.com")
        )
        assert repository.get_visit(result.visit_id).is_landing_page is False

    def test_absolute_url_host_wins(self, service, repository):
        result = service.track_page_view(
            PageViewData(page_url="https://samehost.com/pricing", referrer="https://samehost.com/")
        )
        assert repository.get_visit(result.visit_id).is_landing_page is False

    def test_url_in_query_string_is_not_the_page_host(self, service, repository):
        result = service.track_page_view(
            PageViewData(
                page_url="/landing?next=https://other.com/x",
                referrer="https://samehost.com/a",
                host="samehost.com",
            )
        )
        assert repository.get_visit(result.visit_id).is_landing_page is False

    def test_site_host_outranks_request_host(self, service, repository):
        result = service.track_page_view(
            PageViewData(page_url="/pricing", referrer="https://samehost.com/classes", host="api.samehost.io")
        )
        assert repository.get_visit(result.visit_id).is_landing_page is False

    def test_request_host_used_without_site_host(self, repository, emitter):
        service = AnalyticsService(repository, emitter, enable_tracking=True, sample_rate=1.0, site_host="")

        result = service.track_page_view(
            PageViewData(page_url="/pricing", referrer="https://studio.com/classes", host="studio.com")
        )

        assert repository.get_visit(result.visit_id).is_landing_page is False

    def test_generates_session_id(self, service):
        result = service.track_page_view(PageViewData(page_url="/landing"))
        assert result.session_id
        assert len(result.session_id) == 32

    def test_keeps_given_session_id(self, service):
        result = service.track_page_view(PageViewData(page_url="/landing", session_id="abc"))
        assert result.session_id == "abc"

    def test_utm_from_query_string(self, service, repository):
        result = service.track_page_view(
            PageViewData(page_url="/landing?utm_source=google&utm_medium=cpc&utm_campaign=spring")
        )
        visit = repository.get_visit(result.visit_id)
        assert (visit.utm_source, visit.utm_medium, visit.utm_campaign) == ("google", "cpc", "spring")

    def test_stores_hashed_ip_and_device(self, service, repository):
        result = service.track_page_view(
            PageViewData(page_url="/landing", ip_address="203.0.113.7", user_agent=IPHONE_UA)
        )
        visit = repository.get_visit(result.visit_id)
        assert visit.ip_hash == hash_ip("203.0.113.7")
        assert visit.device_type == "mobile"

    def test_device_info_overrides_user_agent(self, service, repository):
        result = service.track_page_view(
            PageViewData(
                page_url="/landing",
                user_agent=IPHONE_UA,
                device_info={"type": "tablet", "country": "NL"},
            )
        )
        visit = repository.get_visit(result.visit_id)
        assert visit.device_type == "tablet"
        assert visit.country == "NL"

    @pytest.mark.parametrize("page_url", ["", "   ", "/" + "a" * 2048])
    def test_rejects_invalid_url(self, service, emitter, page_url):
        seen = []
        emitter.on(EventKind.PAGEVIEW_TRACKED, seen.append)

        with pytest.raises(ValidationError):
            service.track_page_view(PageViewData(page_url=page_url))
        assert seen == []

    def test_emits_page_view_event(self, service, emitter):
        seen = []
        emitter.on(EventKind.PAGEVIEW_TRACKED, seen.append)

        result = service.track_page_view(
            PageViewData(page_url="/landing", referrer="https://www.google.com/", session_id="s1")
        )

        assert len(seen) == 1
        event = seen[0]
        assert event.visit_id == result.visit_id
        assert event.is_landing_page is True
        assert event.referral_source == "google.com"
        assert event.session_id == "s1"

    def test_tracking_disabled(self, repository, emitter, test_session):
        service = AnalyticsService(repository, emitter, enable_tracking=False)

        result = service.track_page_view(PageViewData(page_url="/landing"))

        assert result.tracked is False
        assert result.visit_id is None
        assert test_session.exec(select(PageVisit)).all() == []

    def test_sampling(self, repository, emitter):
        service = AnalyticsService(repository, emitter, sample_rate=0.5, sampler=lambda: 0.9)
        assert service.track_page_view(PageViewData(page_url="/landing")).tracked is False

        service = AnalyticsService(repository, emitter, sample_rate=0.5, sampler=lambda: 0.1)
        assert service.track_page_view(PageViewData(page_url="/landing")).tracked is True

    def test_storage_failure_surfaces(self, emitter):
        repository = MagicMock()
        repository.insert_page_visit.side_effect = StorageError("down", kind=StorageErrorKind.CONNECTION)
        service = AnalyticsService(repository, emitter)

        with pytest.raises(StorageError):
            service.track_page_view(PageViewData(page_url="/landing"))


class TestTrackEvent:
    """Tests for track_event."""

    def test_stores_custom_event(self, service, test_session):
        result = service.track_event("cta_click", EventData(session_id="s1", metadata={"button": "hero"}))

        assert result.tracked is True
        stored = test_session.get(AnalyticsEvent, result.event_id)
        assert stored.event_type == "cta_click"
        assert stored.properties == {"button": "hero"}

    @pytest.mark.parametrize("event_type", ["", "  ", "x" * 101])
    def test_rejects_invalid_event_type(self, service, event_type):
        with pytest.raises(ValidationError):
            service.track_event(event_type, EventData())

    def test_conversion_links_latest_visit(self, service, test_session):
        service.track_page_view(PageViewData(page_url="/landing", session_id="s1"))
        second = service.track_page_view(PageViewData(page_url="/contact", session_id="s1"))

        result = service.track_event(
            "conversion",
            EventData(session_id="s1", metadata={"formType": "contact", "conversionValue": "25"}),
        )

        conversion = test_session.get(Conversion, result.conversion_id)
        assert conversion.visit_id == second.visit_id
        assert conversion.conversion_type == "form_submission"
        assert conversion.conversion_value == 25.0

    def test_conversion_without_visit_is_not_persisted(self, service, emitter, test_session):
        seen = []
        emitter.on(EventKind.FORM_CONVERTED, seen.append)

        result = service.track_event("conversion", EventData(session_id="unknown"))

        assert result.tracked is True
        assert result.conversion_id is None
        assert test_session.exec(select(Conversion)).all() == []
        # Still counted in real time
        assert len(seen) == 1

    def test_bad_number_writes_nothing(self, service, test_session):
        service.track_page_view(PageViewData(page_url="/landing", session_id="s1"))

        with pytest.raises(ValidationError):
            service.track_event("conversion", EventData(session_id="s1", metadata={"conversionValue": "lots"}))

        assert test_session.exec(select(AnalyticsEvent)).all() == []

    def test_engagement_clamped(self, service, test_session):
        visit = service.track_page_view(PageViewData(page_url="/landing", session_id="s1"))

        result = service.track_event(
            "engagement",
            EventData(session_id="s1", metadata={"timeOnPage": -5, "scrollDepth": 140, "clickCount": 3}),
        )

        assert result.visit_id == visit.visit_id
        sample = test_session.exec(select(PageEngagement)).one()
        assert sample.time_on_page == 0
        assert sample.scroll_depth == 100
        assert sample.click_count == 3

    def test_engagement_for_explicit_visit(self, service, test_session):
        first = service.track_page_view(PageViewData(page_url="/landing", session_id="s1"))
        service.track_page_view(PageViewData(page_url="/classes", session_id="s1"))

        service.track_event("engagement", EventData(metadata={"visitId": first.visit_id, "timeOnPage": 42}))

        sample = test_session.exec(select(PageEngagement)).one()
        assert sample.visit_id == first.visit_id

    def test_form_events_emitted(self, service, emitter):
        seen = []
        for kind in (EventKind.FORM_SUBMITTED, EventKind.FORM_PROCESSED, EventKind.FORM_ERROR):
            emitter.on(kind, seen.append)

        service.track_event("form_submission", EventData(session_id="s1", metadata={"formType": "contact"}))
        service.track_event("form_processed", EventData(metadata={"formType": "contact", "processingTime": 120}))
        service.track_event("form_error", EventData(metadata={"formType": "contact", "errorType": "validation"}))

        assert [e.kind for e in seen] == [EventKind.FORM_SUBMITTED, EventKind.FORM_PROCESSED, EventKind.FORM_ERROR]
        assert seen[0].form_type == "contact"
        assert seen[1].processing_time == 120.0
        assert seen[2].error_type == "validation"


class TestGenerateReport:
    """Tests for generate_report."""

    @pytest.fixture
    def tracked(self, service):
        for page, source, session in [
            ("/landing", "google", "s1"),
            ("/landing", "google", "s2"),
            ("/classes", None, "s2"),
        ]:
            service.track_page_view(PageViewData(page_url=page, utm_source=source, session_id=session))
        service.track_event("form_submission", EventData(session_id="s2", metadata={"formType": "contact"}))
        service.track_event("conversion", EventData(session_id="s2", metadata={"conversionType": "contact_form"}))

    def test_page_views_by_day(self, service, tracked):
        rows = service.generate_report("page_views", today_range())

        assert len(rows) == 1
        assert rows[0]["key"] == utcnow().date().isoformat()
        assert rows[0]["views"] == 3
        assert rows[0]["unique_sessions"] == 2

    def test_page_views_by_source(self, service, tracked):
        params = today_range()
        params.group_by = "utm_source"
        rows = service.generate_report("page_views", params)

        assert rows[0] == {"key": "google", "views": 2, "unique_sessions": 2}
        assert rows[1]["key"] == "Direct"

    def test_events_by_type(self, service, tracked):
        params = today_range()
        params.group_by = "event_type"
        rows = service.generate_report("events", params)
        assert {r["key"]: r["count"] for r in rows} == {"form_submission": 1, "conversion": 1}

    def test_user_activity(self, service, tracked):
        rows = service.generate_report("user_activity", today_range())

        assert len(rows) == 1
        assert rows[0]["page_views"] == 3
        assert rows[0]["events"] == {"form_submission": 1, "conversion": 1}
        assert rows[0]["total"] == 5

    def test_conversion_by_day(self, service, tracked):
        rows = service.generate_report("conversion", today_range())

        assert len(rows) == 1
        row = rows[0]
        assert row["sessions"] == 2
        assert row["conversions"] == 1
        assert row["converted_sessions"] == 1
        assert row["conversion_rate"] == 0.5

    def test_conversion_goal_filter(self, service, tracked):
        params = today_range()
        params.group_by = "conversion_type"
        params.conversion_goal = "booking"
        assert service.generate_report("conversion", params) == []

    def test_empty_range_returns_empty_list(self, service, tracked):
        rows = service.generate_report(
            "page_views", ReportParams(start_date="2020-01-01", end_date="2020-01-31")
        )
        assert rows == []

    def test_limit(self, service, tracked):
        params = today_range()
        params.group_by = "page_url"
        params.limit = 1
        assert len(service.generate_report("page_views", params)) == 1

    @pytest.mark.parametrize("report_type,params", [
        ("funnels", ReportParams(start_date="2024-01-01", end_date="2024-01-31")),
        ("page_views", ReportParams(start_date=None, end_date="2024-01-31")),
        ("page_views", ReportParams(start_date="2024-02-01", end_date="2024-01-31")),
        ("page_views", ReportParams(start_date="2024-01-01", end_date="2024-01-31", group_by="event_type")),
        ("page_views", ReportParams(start_date="2024-01-01", end_date="2024-01-31", limit=0)),
        ("events", ReportParams(start_date="2024-01-01", end_date="2024-01-31", limit=5000)),
    ])
    def test_invalid_params(self, service, report_type, params):
        with pytest.raises(ValidationError):
            service.generate_report(report_type, params)


class TestMaintenance:
    """Tests for retention cleanup and rollups."""

    def test_cleanup_removes_old_rows(self, service, repository, test_session):
        old = repository.insert_page_visit(
            PageVisit(page_url="/old", session_id="old", visit_time=utcnow() - timedelta(days=120))
        )
        repository.insert_engagement(PageEngagement(visit_id=old.id, engagement_time=utcnow()))
        repository.insert_conversion(Conversion(visit_id=old.id, conversion_type="contact_form"))
        service.track_page_view(PageViewData(page_url="/new"))

        deleted = service.cleanup_old_data(90)

        assert deleted["page_visit"] == 1
        assert deleted["page_engagement"] == 1
        assert deleted["conversion"] == 1
        assert [v.page_url for v in test_session.exec(select(PageVisit)).all()] == ["/new"]

    def test_cleanup_removes_old_snapshots(self, service, repository, test_session):
        repository.insert_snapshot(MetricsSnapshot(report_type="daily", snapshot_time=utcnow() - timedelta(days=120)))
        repository.insert_snapshot(MetricsSnapshot(report_type="daily"))

        deleted = service.cleanup_old_data(90)

        assert MetricsSnapshot.__tablename__ == "analytics_snapshot"
        assert deleted["analytics_snapshot"] == 1
        assert len(test_session.exec(select(MetricsSnapshot)).all()) == 1

    def test_cleanup_rejects_bad_retention(self, service):
        with pytest.raises(ValidationError):
            service.cleanup_old_data(0)

    def test_rollup_writes_snapshot(self, service, repository, test_session):
        yesterday = utcnow() - timedelta(days=1)
        repository.insert_page_visit(
            PageVisit(page_url="/landing", session_id="s1", is_landing_page=True, utm_source="google", visit_time=yesterday)
        )
        repository.insert_page_visit(PageVisit(page_url="/classes", session_id="s1", visit_time=yesterday))

        snapshot = service.rollup("daily")

        assert snapshot.report_type == "daily"
        assert snapshot.page_views == 2
        assert snapshot.landing_page_visits == 1
        assert snapshot.referral_counts == {"google": 1}
        assert test_session.exec(select(MetricsSnapshot)).one().id == snapshot.id

    def test_list_snapshots(self, service):
        service.rollup("daily")
        service.rollup("weekly")

        assert [s["report_type"] for s in service.list_snapshots("weekly")] == ["weekly"]
        assert len(service.list_snapshots()) == 2
