"""
Landing page insights and optimization suggestions.

All analyses look at landing-page visits only. Rates are fractions in
``[0, 1]`` and every division by an empty population yields 0.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

import structlog

from app.core.query import DateRange
from app.services.analytics_repository import AnalyticsRepository
from app.services.math import mean_and_stddev, safe_ratio

logger = structlog.get_logger(__name__)

DEFAULT_WINDOW_DAYS = 30
MIN_VISITS = 10
TOP_SOURCES_LIMIT = 10
DEFAULT_LANDING_PAGES = ("/",)

TREND_THRESHOLD = 0.05
HIGH_SOURCE_RATE = 0.10
LOW_SOURCE_RATE = 0.02
HIGH_VOLUME_VISITS = 100
BUDGET_SOURCE_RATE = 0.15
ANOMALY_SIGMAS = 2

INSIGHT_ORDER = {"negative": 0, "warning": 1, "opportunity": 2, "positive": 3}
PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}


@dataclass(frozen=True)
class InsightFilters:
    period: DateRange
    landing_pages: tuple[str, ...] = ()

    @classmethod
    def from_params(
        cls,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        landing_pages: Optional[Iterable[str]] = None,
    ) -> "InsightFilters":
        return cls(
            period=DateRange.parse(start_date, end_date, default_days=DEFAULT_WINDOW_DAYS),
            # Repeated params and comma-separated lists both work
            landing_pages=tuple(
                page.strip() for item in (landing_pages or []) for page in item.split(",") if page.strip()
            ),
        )

    @classmethod
    def default(cls) -> "InsightFilters":
        return cls(period=DateRange.last_days(DEFAULT_WINDOW_DAYS))


class InsightService:
    def __init__(self, repository: AnalyticsRepository):
        self.repository = repository

    def get_conversion_rate_trends(self, filters: Optional[InsightFilters] = None) -> list[dict]:
        """Compare each landing page's conversion rate between the two halves of the period."""
        filters = filters or InsightFilters.default()
        period = filters.period
        midpoint = period.midpoint
        first = self.repository.landing_page_rates(DateRange(period.start, midpoint), filters.landing_pages)
        second = self.repository.landing_page_rates(DateRange(midpoint, period.end), filters.landing_pages)

        second_by_page = {row["page_url"]: row for row in second}
        trends = []
        for row in first:
            later = second_by_page.get(row["page_url"])
            if later is None:
                continue
            first_rate = safe_ratio(row["conversions"], row["visits"])
            second_rate = safe_ratio(later["conversions"], later["visits"])
            trends.append(
                {
                    "page_url": row["page_url"],
                    "first_half_rate": first_rate,
                    "second_half_rate": second_rate,
                    "trend": second_rate - first_rate,
                }
            )
        return trends

    def get_traffic_source_performance(self, filters: Optional[InsightFilters] = None) -> list[dict]:
        filters = filters or InsightFilters.default()
        rows = [
            {**row, "conversion_rate": safe_ratio(row["conversion_count"], row["visit_count"])}
            for row in self.repository.traffic_source_rows(filters.period, MIN_VISITS)
        ]
        return sorted(rows, key=lambda r: r["conversion_rate"], reverse=True)

    def detect_traffic_anomalies(self, filters: Optional[InsightFilters] = None) -> list[dict]:
        """Days whose landing traffic is more than two standard deviations from the mean."""
        filters = filters or InsightFilters.default()
        daily = self.repository.daily_landing_visits(filters.period, filters.landing_pages)
        mean, stddev = mean_and_stddev([visits for _, visits in daily])

        anomalies = []
        for day, visits in daily:
            change = visits - mean
            if abs(change) > ANOMALY_SIGMAS * stddev:
                anomalies.append(
                    {
                        "date": day,
                        "visits": visits,
                        "avg_visits": mean,
                        "change": change,
                        "change_percent": safe_ratio(change * 100.0, mean),
                    }
                )
        return sorted(anomalies, key=lambda a: abs(a["change_percent"]), reverse=True)

    def _engagement_by_page(self, filters: InsightFilters) -> dict[str, dict]:
        """Per landing page: visit count, average time on page, scroll depth and bounce rate."""
        pages: dict[str, dict] = {}
        for row in self.repository.landing_engagement_rows(filters.period, filters.landing_pages):
            page = pages.setdefault(
                row["page_url"],
                {"visits": 0, "times": [], "scrolls": [], "sessions": {}},
            )
            page["visits"] += 1
            if row["time_on_page"] is not None:
                page["times"].append(row["time_on_page"])
            if row["scroll_depth"] is not None:
                page["scrolls"].append(row["scroll_depth"])
            # Sessionless visits are one-page sessions of their own
            session_key = row["session_id"] or f"visit:{row['visit_id']}"
            page["sessions"][session_key] = row["session_pages"]

        summary = {}
        for page_url, page in pages.items():
            sessions = page["sessions"]
            bounced = sum(1 for count in sessions.values() if count == 1)
            summary[page_url] = {
                "visits": page["visits"],
                "avg_time_on_page": safe_ratio(sum(page["times"]), len(page["times"])),
                "scroll_depth": safe_ratio(sum(page["scrolls"]), len(page["scrolls"])) / 100.0,
                "bounce_rate": safe_ratio(bounced, len(sessions)),
            }
        return summary

    def detect_behavioral_patterns(self, filters: Optional[InsightFilters] = None) -> list[dict]:
        """Average engagement and bounce rate per landing page with enough traffic."""
        filters = filters or InsightFilters.default()
        return [
            {
                "page_url": page_url,
                "avg_time_on_page": page["avg_time_on_page"],
                "scroll_depth": page["scroll_depth"],
                "bounce_rate": page["bounce_rate"],
                "visits": page["visits"],
            }
            for page_url, page in self._engagement_by_page(filters).items()
            if page["visits"] >= MIN_VISITS
        ]

    def get_landing_page_metrics(self, filters: Optional[InsightFilters] = None) -> list[dict]:
        """
        Headline numbers for the requested landing pages (the home page when
        none are given): visits, conversions and conversion rate, with the
        bounce rate and average session duration of the sessions they start.
        Pages without landing traffic in the period are left out.
        """
        filters = filters or InsightFilters.default()
        if not filters.landing_pages:
            filters = InsightFilters(period=filters.period, landing_pages=DEFAULT_LANDING_PAGES)

        engagement = self._engagement_by_page(filters)
        metrics = []
        for row in self.repository.landing_page_rates(filters.period, filters.landing_pages):
            page = engagement.get(row["page_url"], {})
            metrics.append(
                {
                    "page_url": row["page_url"],
                    "visits": row["visits"],
                    "conversions": row["conversions"],
                    "conversion_rate": safe_ratio(row["conversions"], row["visits"]),
                    "bounce_rate": page.get("bounce_rate", 0.0),
                    "avg_session_duration": page.get("avg_time_on_page", 0.0),
                }
            )
        return sorted(metrics, key=lambda m: m["visits"], reverse=True)

    def get_top_traffic_sources(self, filters: Optional[InsightFilters] = None) -> list[dict]:
        """The ten busiest source/medium/campaign combinations, without a volume threshold."""
        filters = filters or InsightFilters.default()
        return self.repository.top_traffic_sources(filters.period, filters.landing_pages, TOP_SOURCES_LIMIT)

    def generate_landing_page_insights(self, filters: Optional[InsightFilters] = None) -> list[dict]:
        filters = filters or InsightFilters.default()
        insights: list[dict] = []

        for trend in self.get_conversion_rate_trends(filters):
            if trend["trend"] > TREND_THRESHOLD:
                insights.append(
                    _insight(
                        "positive",
                        "conversion_rate",
                        trend["page_url"],
                        f"{trend['page_url']} conversion rate has increased by "
                        f"{trend['trend'] * 100:.1f}% over the period",
                        trend,
                    )
                )
            elif trend["trend"] < -TREND_THRESHOLD:
                insights.append(
                    _insight(
                        "negative",
                        "conversion_rate",
                        trend["page_url"],
                        f"{trend['page_url']} conversion rate has decreased by "
                        f"{abs(trend['trend']) * 100:.1f}% over the period",
                        trend,
                    )
                )

        for source in self.get_traffic_source_performance(filters):
            name = source["utm_source"] or "Direct"
            rate = source["conversion_rate"]
            if rate > HIGH_SOURCE_RATE:
                insights.append(
                    _insight(
                        "positive",
                        "source_performance",
                        name,
                        f"{name} traffic has a high conversion rate of {rate * 100:.1f}%",
                        source,
                    )
                )
            elif source["visit_count"] > HIGH_VOLUME_VISITS and rate < LOW_SOURCE_RATE:
                insights.append(
                    _insight(
                        "opportunity",
                        "source_performance",
                        name,
                        f"{name} traffic has high volume but low conversion rate ({rate * 100:.1f}%)",
                        source,
                    )
                )

        for anomaly in self.detect_traffic_anomalies(filters):
            rising = anomaly["change"] > 0
            insights.append(
                _insight(
                    "positive" if rising else "warning",
                    "traffic",
                    anomaly["date"],
                    f"{'Unusual increase' if rising else 'Unusual decrease'} in traffic detected on "
                    f"{anomaly['date']} ({abs(anomaly['change_percent']):.0f}% {'up' if rising else 'down'})",
                    anomaly,
                )
            )

        for pattern in self.detect_behavioral_patterns(filters):
            if pattern["avg_time_on_page"] < 10 and pattern["bounce_rate"] > 0.7:
                insights.append(
                    _insight(
                        "warning",
                        "engagement",
                        pattern["page_url"],
                        f"Users spend very little time ({pattern['avg_time_on_page']:.0f}s) on "
                        f"{pattern['page_url']} with high bounce rate ({pattern['bounce_rate'] * 100:.0f}%)",
                        pattern,
                    )
                )
            elif pattern["avg_time_on_page"] > 120 and pattern["scroll_depth"] > 0.8:
                insights.append(
                    _insight(
                        "positive",
                        "engagement",
                        pattern["page_url"],
                        f"High engagement detected on {pattern['page_url']} with "
                        f"{pattern['avg_time_on_page']:.0f}s time on page and "
                        f"{pattern['scroll_depth'] * 100:.0f}% scroll depth",
                        pattern,
                    )
                )

        # Stable sort keeps discovery order within a type
        insights.sort(key=lambda i: INSIGHT_ORDER[i["type"]])
        logger.info("Landing page insights generated", count=len(insights))
        return insights

    def get_optimization_suggestions(self, filters: Optional[InsightFilters] = None) -> list[dict]:
        suggestions = []
        for insight in self.generate_landing_page_insights(filters):
            suggestion = _suggest(insight)
            if suggestion is not None:
                suggestions.append(suggestion)
        suggestions.sort(key=lambda s: PRIORITY_ORDER[s["priority"]])
        return suggestions


def _insight(kind: str, metric: str, entity: str, message: str, data: dict) -> dict:
    return {"type": kind, "metric": metric, "entity": entity, "message": message, "data": data}


def _suggest(insight: dict) -> Optional[dict]:
    kind, metric, target, data = insight["type"], insight["metric"], insight["entity"], insight["data"]

    if kind in ("negative", "warning"):
        if metric == "conversion_rate":
            return _suggestion(
                "high",
                target,
                metric,
                f"Review the conversion flow on {target} to identify points of friction causing the "
                f"{abs(data['trend']) * 100:.1f}% decrease in conversion rate.",
            )
        if metric == "engagement":
            return _suggestion(
                "medium",
                target,
                metric,
                f"Improve content engagement on {target} to reduce bounce rate and increase time on page.",
            )
        if metric == "traffic":
            return _suggestion(
                "medium",
                target,
                metric,
                f"Investigate the traffic drop on {target}: check campaign schedules, "
                f"tracking coverage and search visibility.",
            )
    elif kind == "opportunity" and metric == "source_performance":
        return _suggestion(
            "high",
            target,
            metric,
            f"Optimize landing pages for {target} traffic to improve the low conversion rate "
            f"({data['conversion_rate'] * 100:.1f}%).",
        )
    elif kind == "positive":
        if metric == "source_performance" and data["conversion_rate"] > BUDGET_SOURCE_RATE:
            return _suggestion(
                "medium",
                target,
                metric,
                f"Consider increasing marketing budget for {target} channel given its high conversion rate "
                f"({data['conversion_rate'] * 100:.1f}%).",
            )
        if metric == "engagement":
            return _suggestion(
                "low",
                target,
                metric,
                f"Reuse the content structure of {target} on other landing pages; visitors read it closely.",
            )
        if metric == "conversion_rate":
            return _suggestion(
                "low",
                target,
                metric,
                f"Document what changed on {target} recently; its conversion rate is improving.",
            )
    return None


def _suggestion(priority: str, target: str, metric: str, text: str) -> dict:
    return {"priority": priority, "target": target, "metric": metric, "suggestion": text}
