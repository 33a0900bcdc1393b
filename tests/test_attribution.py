"""
Tests for multi-touch attribution.

Tests cover:
- Weight distribution per model
- Attributing stored conversions (first/last/linear/position)
- Fallback for unknown models, missing conversions
- Analysis and model comparison
- Automatic attribution of tracked conversions
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from app.core.errors import AttributionError, ValidationError
from app.core.events import FormConverted
from app.models import Conversion, PageVisit
from app.services.analytics import EventData, PageViewData
from app.services.attribution import (
    ATTRIBUTION_MODELS,
    AttributionFilters,
    AttributionService,
    attribution_weights,
)


@pytest.fixture
def attribution(repository) -> AttributionService:
    return AttributionService(repository)


class TestAttributionWeights:
    """Tests for attribution_weights."""

    @pytest.mark.parametrize("model", ATTRIBUTION_MODELS)
    @pytest.mark.parametrize("touchpoints", [1, 2, 3, 7])
    def test_weights_sum_to_one(self, model, touchpoints):
        weights = attribution_weights(model, touchpoints)
        assert len(weights) == touchpoints
        assert sum(weights) == pytest.approx(1.0)

    def test_first_and_last(self):
        assert attribution_weights("first", 3) == [1.0, 0.0, 0.0]
        assert attribution_weights("last", 3) == [0.0, 0.0, 1.0]

    def test_linear(self):
        assert attribution_weights("linear", 4) == [0.25] * 4

    def test_position(self):
        assert attribution_weights("position", 1) == [1.0]
        assert attribution_weights("position", 2) == [0.5, 0.5]
        assert attribution_weights("position", 3) == pytest.approx([0.4, 0.2, 0.4])
        assert attribution_weights("position", 4) == pytest.approx([0.4, 0.1, 0.1, 0.4])

    def test_no_touchpoints(self):
        assert attribution_weights("linear", 0) == []

    def test_unknown_model(self):
        with pytest.raises(ValueError):
            attribution_weights("bogus", 2)


class TestAttributeConversion:
    """Tests for AttributionService.attribute_conversion."""

    def test_first_touch(self, attribution, session_visits, session_conversion):
        records = attribution.attribute_conversion(session_conversion.id, "first")

        assert len(records) == 1
        assert records[0].visit_id == session_visits[0].id
        assert records[0].attribution_weight == 1.0

    def test_last_touch(self, attribution, session_visits, session_conversion):
        records = attribution.attribute_conversion(session_conversion.id, "last")

        assert len(records) == 1
        assert records[0].visit_id == session_visits[2].id
        assert records[0].attribution_weight == 1.0

    def test_linear(self, attribution, session_visits, session_conversion):
        records = attribution.attribute_conversion(session_conversion.id, "linear")

        assert [r.visit_id for r in records] == [v.id for v in session_visits]
        assert [r.attribution_weight for r in records] == pytest.approx([1 / 3] * 3)

    def test_position(self, attribution, session_visits, session_conversion):
        records = attribution.attribute_conversion(session_conversion.id, "position")
        assert [r.attribution_weight for r in records] == pytest.approx([0.4, 0.2, 0.4])

    def test_unknown_model_falls_back_to_last(self, attribution, session_visits, session_conversion):
        records = attribution.attribute_conversion(session_conversion.id, "bogus")

        assert [(r.attribution_model, r.visit_id) for r in records] == [("last", session_visits[2].id)]

    def test_missing_conversion(self, attribution):
        with pytest.raises(AttributionError):
            attribution.attribute_conversion(9999, "last")

    def test_visits_after_conversion_ignored(self, attribution, repository, session_visits, session_conversion):
        repository.insert_page_visit(
            PageVisit(
                page_url="/thanks",
                session_id="session-abc",
                visit_time=session_conversion.conversion_time + timedelta(minutes=1),
            )
        )

        records = attribution.attribute_conversion(session_conversion.id, "linear")

        assert len(records) == 3

    def test_other_sessions_ignored(self, attribution, repository, session_visits, session_conversion):
        repository.insert_page_visit(
            PageVisit(
                page_url="/landing",
                session_id="someone-else",
                visit_time=session_visits[0].visit_time,
            )
        )
        assert len(attribution.attribute_conversion(session_conversion.id, "linear")) == 3

    def test_sessionless_visit_has_no_attribution(self, attribution, repository):
        visit = repository.insert_page_visit(PageVisit(page_url="/landing"))
        conversion = repository.insert_conversion(Conversion(visit_id=visit.id, conversion_type="contact_form"))

        assert attribution.attribute_conversion(conversion.id, "first") == []

    def test_reattribution_replaces_records(self, attribution, repository, session_conversion):
        attribution.attribute_conversion(session_conversion.id, "linear")
        attribution.attribute_conversion(session_conversion.id, "linear")
        attribution.attribute_conversion(session_conversion.id, "first")

        assert len(repository.list_attribution(session_conversion.id, "linear")) == 3
        assert len(repository.list_attribution(session_conversion.id)) == 4


class TestAnalysis:
    """Tests for attribution analysis and model comparison."""

    def test_analysis_groups_by_campaign(self, attribution, session_conversion):
        attribution.attribute_conversion(session_conversion.id, "linear")

        rows = attribution.get_attribution_analysis(AttributionFilters(model="linear"))

        assert len(rows) == 2
        # Two untagged visits outweigh the campaign visit
        assert rows[0]["utm_source"] == "Direct"
        assert rows[0]["attribution_value"] == pytest.approx(2 / 3, abs=1e-6)
        assert rows[1]["utm_source"] == "google"
        assert rows[1]["utm_medium"] == "cpc"
        assert rows[1]["utm_campaign"] == "spring"
        assert rows[1]["conversion_count"] == 1

    def test_analysis_filters_by_model(self, attribution, session_conversion):
        attribution.attribute_conversion(session_conversion.id, "first")

        assert attribution.get_attribution_analysis(AttributionFilters(model="last")) == []
        first = attribution.get_attribution_analysis(AttributionFilters(model="first"))
        assert first[0]["utm_source"] == "google"
        assert first[0]["attribution_value"] == 1.0

    def test_analysis_date_filter(self, attribution, session_conversion):
        attribution.attribute_conversion(session_conversion.id, "last")

        filters = AttributionFilters.from_params("2020-01-01", "2020-01-31", "last")
        assert attribution.get_attribution_analysis(filters) == []

    def test_compare_models(self, attribution, session_conversion):
        for model in ("first", "last"):
            attribution.attribute_conversion(session_conversion.id, model)

        comparison = attribution.compare_attribution_models()

        assert set(comparison) == set(ATTRIBUTION_MODELS)
        assert comparison["first"][0]["utm_source"] == "google"
        assert comparison["last"][0]["utm_source"] == "Direct"
        assert comparison["linear"] == []

    def test_filters_reject_unknown_model(self):
        with pytest.raises(ValidationError):
            AttributionFilters.from_params(model="bogus")

    def test_filters_default(self):
        filters = AttributionFilters.from_params()
        assert filters.model == "last"
        assert filters.period is None


class TestAutomaticAttribution:
    """Tests for attribution triggered by tracked conversions."""

    def test_subscribes_to_conversions(self, repository, emitter, session_visits, session_conversion):
        service = AttributionService(repository, emitter, auto_models=["first", "last"])
        service.start()

        emitter.emit(FormConverted(conversion_id=session_conversion.id, conversion_type="contact_form"))

        records = repository.list_attribution(session_conversion.id)
        assert {r.attribution_model for r in records} == {"first", "last"}

        service.shutdown()
        emitter.emit(FormConverted(conversion_id=session_conversion.id))

    def test_failure_is_contained(self, repository, emitter):
        service = AttributionService(repository, emitter, auto_models=["last"])
        service.start()

        with patch("app.core.errors.capture_exception") as mock_capture:
            # Unknown conversion: logged, not raised
            emitter.emit(FormConverted(conversion_id=12345))

        mock_capture.assert_called_once()

    def test_unpersisted_conversion_skipped(self, repository, emitter):
        service = AttributionService(repository, emitter)
        service.start()

        with patch.object(service, "attribute_conversion") as mock_attribute:
            emitter.emit(FormConverted(conversion_id=None))

        mock_attribute.assert_not_called()

    def test_end_to_end_through_tracking(self, runtime):
        analytics = runtime.analytics
        analytics.track_page_view(PageViewData(page_url="/landing?utm_source=google", session_id="e2e"))
        analytics.track_page_view(PageViewData(page_url="/contact", session_id="e2e"))

        result = analytics.track_event("conversion", EventData(session_id="e2e", metadata={"formType": "contact"}))

        records = runtime.repository.list_attribution(result.conversion_id)
        per_model = {}
        for record in records:
            per_model[record.attribution_model] = per_model.get(record.attribution_model, 0) + 1
        assert per_model == {"first": 1, "last": 1, "linear": 2, "position": 2}
