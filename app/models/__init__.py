from .analytics import (
    AnalyticsEvent,
    AttributionEvent,
    Conversion,
    PageEngagement,
    PageVisit,
    utcnow,
)
from .observability import MetricsSnapshot, REPORT_TYPES

__all__ = [
    "AnalyticsEvent",
    "AttributionEvent",
    "Conversion",
    "PageEngagement",
    "PageVisit",
    "MetricsSnapshot",
    "REPORT_TYPES",
    "utcnow",
]
