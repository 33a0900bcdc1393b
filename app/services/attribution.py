"""
Multi-touch attribution of conversions to the visits that preceded them.

Models:
    first     all credit to the earliest visit of the session
    last      all credit to the latest visit at or before the conversion
    linear    equal credit to every visit
    position  40% first, 40% last, 20% shared by the visits in between
              (50/50 for two visits, 100% for one)
"""

from dataclasses import dataclass
from typing import Callable, Iterable, Optional

import structlog

from app.core.config import settings
from app.core.errors import AttributionError, ValidationError, error_boundary
from app.core.events import EventEmitter, EventKind, FormConverted
from app.core.query import DateRange
from app.models import AttributionEvent
from app.services.analytics_repository import AnalyticsRepository

logger = structlog.get_logger(__name__)

ATTRIBUTION_MODELS = ("first", "last", "linear", "position")
DEFAULT_MODEL = "last"


def attribution_weights(model: str, touchpoints: int) -> list[float]:
    """Credit per touchpoint, oldest first. Sums to 1.0 for any ``touchpoints >= 1``."""
    if touchpoints <= 0:
        return []
    if model == "first":
        return [1.0] + [0.0] * (touchpoints - 1)
    if model == "last":
        return [0.0] * (touchpoints - 1) + [1.0]
    if model == "linear":
        return [1.0 / touchpoints] * touchpoints
    if model == "position":
        if touchpoints == 1:
            return [1.0]
        if touchpoints == 2:
            return [0.5, 0.5]
        middle = 0.2 / (touchpoints - 2)
        return [0.4] + [middle] * (touchpoints - 2) + [0.4]
    raise ValueError(f"Unknown attribution model: {model}")


@dataclass(frozen=True)
class AttributionFilters:
    period: Optional[DateRange] = None
    model: str = DEFAULT_MODEL

    @classmethod
    def from_params(
        cls,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        model: Optional[str] = None,
    ) -> "AttributionFilters":
        model = model or DEFAULT_MODEL
        if model not in ATTRIBUTION_MODELS:
            raise ValidationError(f"Invalid attribution model. Must be one of: {', '.join(ATTRIBUTION_MODELS)}")
        period = DateRange.parse(start_date, end_date, default_days=30) if (start_date or end_date) else None
        return cls(period=period, model=model)


class AttributionService:
    def __init__(
        self,
        repository: AnalyticsRepository,
        emitter: Optional[EventEmitter] = None,
        auto_models: Iterable[str] = settings.ATTRIBUTION_AUTO_MODELS,
    ):
        self.repository = repository
        self.emitter = emitter
        self.auto_models = [m for m in auto_models if m in ATTRIBUTION_MODELS]
        self._unsubscribe: Optional[Callable[[], None]] = None

    def start(self) -> None:
        """Attribute every tracked conversion under ``auto_models``."""
        if self.emitter is None or self._unsubscribe is not None or not self.auto_models:
            return
        self._unsubscribe = self.emitter.on(EventKind.FORM_CONVERTED, self.handle_conversion)

    def shutdown(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def handle_conversion(self, event: FormConverted) -> None:
        if event.conversion_id is None:
            return
        for model in self.auto_models:
            with error_boundary("auto_attribution", conversion_id=event.conversion_id, model=model):
                self.attribute_conversion(event.conversion_id, model)

    def attribute_conversion(self, conversion_id: int, attribution_model: str = DEFAULT_MODEL) -> list[AttributionEvent]:
        """
        Distribute credit for a conversion across its session's prior visits.

        Only credited visits get a record, so first/last produce exactly one.

        An unknown model falls back to ``last``. Returns the stored records,
        or an empty list when the conversion has no attributable visits.

        Raises:
            AttributionError: the conversion does not exist
        """
        model = attribution_model
        if model not in ATTRIBUTION_MODELS:
            logger.warning(
                "Unknown attribution model, falling back",
                requested=attribution_model,
                fallback=DEFAULT_MODEL,
                conversion_id=conversion_id,
            )
            model = DEFAULT_MODEL

        conversion = self.repository.get_conversion(conversion_id)
        if conversion is None:
            raise AttributionError(f"Conversion {conversion_id} not found", conversion_id=conversion_id)

        visit = self.repository.get_visit(conversion.visit_id)
        if visit is None or not visit.session_id:
            return []

        visits = self.repository.session_visits_until(visit.session_id, conversion.conversion_time)
        if not visits:
            return []

        weights = attribution_weights(model, len(visits))
        records = [
            AttributionEvent(
                conversion_id=conversion_id,
                visit_id=v.id,
                attribution_model=model,
                attribution_weight=weight,
            )
            for v, weight in zip(visits, weights)
            if weight > 0
        ]
        stored = self.repository.replace_attribution(conversion_id, model, records)
        logger.info(
            "Conversion attributed",
            conversion_id=conversion_id,
            model=model,
            touchpoints=len(stored),
        )
        return stored

    def get_attribution_analysis(self, filters: Optional[AttributionFilters] = None) -> list[dict]:
        """Conversions and credited value per (source, medium, campaign) for one model."""
        filters = filters or AttributionFilters()
        return self.repository.attribution_analysis(filters.model, filters.period)

    def compare_attribution_models(self, filters: Optional[AttributionFilters] = None) -> dict[str, list[dict]]:
        filters = filters or AttributionFilters()
        return {
            model: self.repository.attribution_analysis(model, filters.period)
            for model in ATTRIBUTION_MODELS
        }
