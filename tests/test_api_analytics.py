"""
API tests for /api/analytics endpoints.

Uses TestClient against the application with the runtime dependency
overridden by a per-test runtime on in-memory SQLite.
"""

from datetime import timedelta
from unittest.mock import patch

from sqlmodel import select

from app.core.errors import StorageError, StorageErrorKind
from app.models import PageVisit, utcnow

BASE = "/api/analytics"


def today_params(**extra) -> dict:
    today = utcnow().date()
    return {"startDate": (today - timedelta(days=1)).isoformat(), "endDate": today.isoformat(), **extra}


def track(client, path="/landing", session_id="abc", **extra):
    return client.post(f"{BASE}/pageview", json={"path": path, "sessionId": session_id, **extra})


class TestTrackingEndpoints:
    """Tests for POST /pageview and POST /event."""

    def test_track_pageview(self, client, test_session):
        response = track(client, referrer="")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["tracked"] is True
        assert data["sessionId"] == "abc"
        visit = test_session.get(PageVisit, data["visitId"])
        assert visit.is_landing_page is True

    def test_pageview_accepts_utm_and_device_info(self, client, test_session):
        response = track(
            client,
            utmSource="google",
            utmCampaign="spring",
            deviceInfo={"type": "mobile", "country": "NL"},
        )

        visit = test_session.get(PageVisit, response.json()["visitId"])
        assert visit.utm_source == "google"
        assert visit.device_type == "mobile"
        assert visit.country == "NL"

    def test_internal_navigation_uses_site_host(self, client, runtime, test_session):
        runtime.analytics.site_host = "studio.com"

        response = track(client, path="/pricing", referrer="https://studio.com/classes")

        visit = test_session.get(PageVisit, response.json()["visitId"])
        assert visit.is_landing_page is False

    def test_external_referrer_with_site_host(self, client, runtime, test_session):
        runtime.analytics.site_host = "studio.com"

        response = track(client, path="/pricing", referrer="https://google.com/search")

        assert test_session.get(PageVisit, response.json()["visitId"]).is_landing_page is True

    def test_origin_header_without_site_host(self, client, test_session):
        response = client.post(
            f"{BASE}/pageview",
            json={"path": "/pricing", "referrer": "https://www.studio.com/classes"},
            headers={"Origin": "https://studio.com"},
        )

        assert test_session.get(PageVisit, response.json()["visitId"]).is_landing_page is False

    def test_session_id_from_header(self, client):
        response = client.post(f"{BASE}/pageview", json={"path": "/landing"}, headers={"X-Session-ID": "from-header"})
        assert response.json()["sessionId"] == "from-header"

    def test_session_id_generated(self, client):
        response = client.post(f"{BASE}/pageview", json={"path": "/landing"})
        assert len(response.json()["sessionId"]) == 32

    def test_missing_path_is_validation_error(self, client):
        response = client.post(f"{BASE}/pageview", json={"referrer": "https://google.com"})

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "validation_error"
        assert "path" in body["message"]

    def test_blank_path_rejected(self, client):
        response = client.post(f"{BASE}/pageview", json={"path": "  "})
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_track_conversion_event(self, client, runtime):
        track(client, session_id="conv")

        response = client.post(
            f"{BASE}/event",
            json={"eventType": "conversion", "sessionId": "conv", "metadata": {"formType": "contact"}},
        )

        assert response.status_code == 200
        conversion_id = response.json()["conversionId"]
        assert conversion_id is not None
        # Auto-attribution ran for the configured models
        assert runtime.repository.list_attribution(conversion_id, "last")

    def test_event_requires_type(self, client):
        response = client.post(f"{BASE}/event", json={"sessionId": "abc"})
        assert response.status_code == 400

    def test_storage_failure_is_503(self, client, runtime):
        with patch.object(
            runtime.repository,
            "insert_page_visit",
            side_effect=StorageError("insert_page_visit failed (connection)", kind=StorageErrorKind.CONNECTION),
        ):
            response = track(client)

        assert response.status_code == 503
        assert response.json() == {
            "success": False,
            "error": "storage_error",
            "message": "insert_page_visit failed (connection)",
        }

    def test_request_id_echoed(self, client):
        response = track(client, session_id="rid")
        assert response.headers["X-Request-ID"]

        response = client.post(
            f"{BASE}/pageview", json={"path": "/landing"}, headers={"X-Request-ID": "req-123"}
        )
        assert response.headers["X-Request-ID"] == "req-123"


class TestReportEndpoints:
    """Tests for GET /reports/{type} and GET /snapshots."""

    def test_page_views_report(self, client):
        track(client, session_id="a")
        track(client, session_id="b")

        response = client.get(f"{BASE}/reports/page_views", params=today_params())

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["reportType"] == "page_views"
        assert body["data"][0]["views"] == 2
        assert body["data"][0]["unique_sessions"] == 2

    def test_report_grouping(self, client):
        track(client, path="/landing")
        track(client, path="/classes")
        track(client, path="/classes")

        response = client.get(f"{BASE}/reports/page_views", params=today_params(groupBy="page_url"))

        assert [row["key"] for row in response.json()["data"]] == ["/classes", "/landing"]

    def test_empty_report(self, client):
        response = client.get(
            f"{BASE}/reports/events", params={"startDate": "2020-01-01", "endDate": "2020-01-02"}
        )
        assert response.status_code == 200
        assert response.json()["data"] == []

    def test_unknown_report_type(self, client):
        response = client.get(f"{BASE}/reports/funnels", params=today_params())

        assert response.status_code == 400
        assert "Invalid report type" in response.json()["message"]

    def test_missing_dates(self, client):
        response = client.get(f"{BASE}/reports/page_views")
        assert response.status_code == 400

    def test_report_timeout_is_503(self, client, runtime):
        with patch.object(
            runtime.analytics,
            "generate_report",
            side_effect=StorageError("report:page_views exceeded 15s", kind=StorageErrorKind.TIMEOUT),
        ):
            response = client.get(f"{BASE}/reports/page_views", params=today_params())

        assert response.status_code == 503
        assert response.json()["error"] == "storage_error"

    def test_snapshots(self, client, runtime):
        track(client)
        runtime.aggregator.persist()

        response = client.get(f"{BASE}/snapshots", params={"reportType": "realtime"})

        data = response.json()["data"]
        assert len(data) == 1
        assert data[0]["page_views"] == 1


class TestRealtimeEndpoints:
    """Tests for the real-time counters and admin maintenance endpoints."""

    def test_realtime_forms(self, client):
        track(client)
        client.post(f"{BASE}/event", json={"eventType": "form_submission", "metadata": {"formType": "contact"}})

        response = client.get(f"{BASE}/realtime/forms")

        assert response.status_code == 200
        stats = response.json()["data"]
        assert stats["form_submissions"]["total"] == 1
        assert stats["page_views"]["total"] == 1

    def test_reset_requires_admin_key(self, client):
        response = client.post(f"{BASE}/realtime/reset")

        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"

        response = client.post(f"{BASE}/realtime/reset", headers={"X-Admin-Key": "wrong"})
        assert response.status_code == 403

    def test_reset(self, client, admin_headers):
        track(client)

        response = client.post(f"{BASE}/realtime/reset", headers=admin_headers)

        assert response.status_code == 200
        stats = client.get(f"{BASE}/realtime/forms").json()["data"]
        assert stats["page_views"]["total"] == 0

    def test_cleanup(self, client, admin_headers, runtime, test_session):
        runtime.repository.insert_page_visit(
            PageVisit(page_url="/old", visit_time=utcnow() - timedelta(days=400))
        )
        track(client)

        response = client.delete(f"{BASE}/cleanup", params={"retentionDays": 90}, headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["deleted"]["page_visit"] == 1
        assert [v.page_url for v in test_session.exec(select(PageVisit)).all()] == ["/landing"]

    def test_cleanup_requires_admin_key(self, client):
        assert client.delete(f"{BASE}/cleanup").status_code == 403


class TestInsightEndpoints:
    """Tests for the insight endpoints."""

    def test_all_insight_routes_respond(self, client):
        for route in ("insights", "insights/suggestions", "insights/trends", "insights/sources",
                      "insights/anomalies", "insights/behavior", "landing-metrics", "top-sources"):
            response = client.get(f"{BASE}/{route}")
            assert response.status_code == 200, route
            assert response.json() == {"success": True, "data": []}

    def test_source_performance(self, client):
        for i in range(10):
            track(client, session_id=f"s{i}", utmSource="google")

        data = client.get(f"{BASE}/insights/sources").json()["data"]

        assert data[0]["utm_source"] == "google"
        assert data[0]["visit_count"] == 10

    def test_landing_metrics(self, client):
        track(client, path="/", session_id="home-1")
        track(client, path="/", session_id="home-2")
        track(client, path="/offer", session_id="offer-1")

        home = client.get(f"{BASE}/landing-metrics").json()["data"]
        offer = client.get(f"{BASE}/landing-metrics", params={"landingPages": "/offer,/missing"}).json()["data"]

        assert [(row["page_url"], row["visits"]) for row in home] == [("/", 2)]
        assert [(row["page_url"], row["bounce_rate"]) for row in offer] == [("/offer", 1.0)]

    def test_top_sources(self, client):
        track(client, session_id="t1", utmSource="google", utmCampaign="spring")
        track(client, session_id="t2")

        data = client.get(f"{BASE}/top-sources").json()["data"]

        assert {(row["utm_source"], row["utm_campaign"]) for row in data} == {("google", "spring"), ("Direct", None)}

    def test_bad_dates(self, client):
        response = client.get(f"{BASE}/insights", params={"startDate": "yesterday"})
        assert response.status_code == 400


class TestAttributionEndpoints:
    """Tests for the attribution endpoints."""

    def _converted_session(self, client):
        track(client, path="/landing", session_id="attr", utmSource="google")
        track(client, path="/contact", session_id="attr")
        response = client.post(
            f"{BASE}/event", json={"eventType": "conversion", "sessionId": "attr", "metadata": {"formType": "contact"}}
        )
        return response.json()["conversionId"]

    def test_attribute_conversion(self, client, admin_headers):
        conversion_id = self._converted_session(client)

        response = client.post(
            f"{BASE}/attribution/{conversion_id}", params={"model": "first"}, headers=admin_headers
        )

        assert response.status_code == 200
        records = response.json()["data"]
        assert len(records) == 1
        assert records[0]["attribution_model"] == "first"
        assert records[0]["attribution_weight"] == 1.0

    def test_attribute_unknown_conversion(self, client, admin_headers):
        response = client.post(f"{BASE}/attribution/999", headers=admin_headers)

        assert response.status_code == 404
        assert response.json()["error"] == "attribution_error"

    def test_attribute_requires_admin_key(self, client):
        assert client.post(f"{BASE}/attribution/1").status_code == 403

    def test_analysis(self, client):
        self._converted_session(client)

        response = client.get(f"{BASE}/attribution/analysis", params={"model": "first"})

        body = response.json()
        assert body["model"] == "first"
        assert body["data"][0]["utm_source"] == "google"

    def test_analysis_rejects_unknown_model(self, client):
        response = client.get(f"{BASE}/attribution/analysis", params={"model": "bogus"})
        assert response.status_code == 400

    def test_compare(self, client):
        self._converted_session(client)

        data = client.get(f"{BASE}/attribution/compare").json()["data"]

        assert set(data) == {"first", "last", "linear", "position"}
        assert data["last"][0]["utm_source"] == "Direct"


class TestHealth:
    def test_health(self, client):
        with patch("app.main.check_db_connection", return_value=True):
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_runtime_not_started(self):
        from fastapi.testclient import TestClient

        from app.main import app

        response = TestClient(app).get(f"{BASE}/realtime/forms")

        assert response.status_code == 503
        assert response.json()["success"] is False
