"""
Analytics API endpoints: tracking, reports, real-time counters, insights and
attribution.
"""

from typing import List, Optional

import anyio
import structlog
from fastapi import APIRouter, Depends, Query, Request

from app.api import deps
from app.core.config import settings
from app.core.context import set_session_id
from app.core.db_utils import run_with_timeout
from app.schemas import EventRequest, PageViewRequest, TrackResponse
from app.services.analytics import AnalyticsService, EventData, PageViewData, ReportParams
from app.services.attribution import AttributionFilters, AttributionService
from app.services.insights import InsightFilters, InsightService
from app.services.runtime import AnalyticsRuntime

logger = structlog.get_logger(__name__)

router = APIRouter()


# ----------------------------------------------------------------------
# Tracking
# ----------------------------------------------------------------------


@router.post("/pageview", response_model=TrackResponse)
def track_pageview(
    data: PageViewRequest,
    request: Request,
    analytics: AnalyticsService = Depends(deps.get_analytics_service),
):
    """Track a page view."""
    session_id = data.session_id or request.headers.get("x-session-id")
    set_session_id(session_id)
    result = analytics.track_page_view(
        PageViewData(
            page_url=data.path,
            referrer=data.referrer,
            session_id=session_id,
            user_agent=request.headers.get("user-agent"),
            ip_address=deps.get_client_ip(request),
            host=deps.get_site_host(request),
            utm_source=data.utm_source,
            utm_medium=data.utm_medium,
            utm_campaign=data.utm_campaign,
            device_info=data.device_info,
        )
    )
    return TrackResponse(tracked=result.tracked, session_id=result.session_id, visit_id=result.visit_id)


@router.post("/event", response_model=TrackResponse)
def track_event(
    data: EventRequest,
    request: Request,
    analytics: AnalyticsService = Depends(deps.get_analytics_service),
):
    """Track a custom event (form lifecycle, conversion, engagement or anything else)."""
    session_id = data.session_id or request.headers.get("x-session-id")
    set_session_id(session_id)
    result = analytics.track_event(
        data.event_type,
        EventData(
            session_id=session_id,
            user_agent=request.headers.get("user-agent"),
            metadata=data.metadata,
        ),
    )
    return TrackResponse(
        tracked=result.tracked,
        session_id=result.session_id,
        visit_id=result.visit_id,
        conversion_id=result.conversion_id,
    )


# ----------------------------------------------------------------------
# Reports
# ----------------------------------------------------------------------


@router.get("/reports/{report_type}")
async def get_report(
    report_type: str,
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    user_id: Optional[str] = Query(default=None, alias="userId"),
    group_by: Optional[str] = Query(default=None, alias="groupBy"),
    limit: int = Query(default=100),
    conversion_goal: Optional[str] = Query(default=None, alias="conversionGoal"),
    event_type: Optional[str] = Query(default=None, alias="eventType"),
    analytics: AnalyticsService = Depends(deps.get_analytics_service),
):
    """Grouped report over a date range."""
    params = ReportParams(
        start_date=start_date,
        end_date=end_date,
        group_by=group_by,
        limit=limit,
        user_id=user_id,
        event_type=event_type,
        conversion_goal=conversion_goal,
    )
    rows = await run_with_timeout(
        analytics.generate_report,
        report_type,
        params,
        timeout=settings.REPORT_TIMEOUT_SECONDS,
        operation_name=f"report:{report_type}",
    )
    return {"success": True, "reportType": report_type, "data": rows}


@router.get("/snapshots")
async def list_snapshots(
    report_type: Optional[str] = Query(default=None, alias="reportType"),
    limit: int = Query(default=50),
    analytics: AnalyticsService = Depends(deps.get_analytics_service),
):
    """Persisted counter snapshots, newest first."""
    rows = await run_with_timeout(
        analytics.list_snapshots,
        report_type,
        limit,
        timeout=settings.REPORT_TIMEOUT_SECONDS,
        operation_name="list_snapshots",
    )
    return {"success": True, "data": rows}


# ----------------------------------------------------------------------
# Real-time counters
# ----------------------------------------------------------------------


@router.get("/realtime/forms")
def get_realtime_form_stats(runtime: AnalyticsRuntime = Depends(deps.get_runtime)):
    """Current in-memory counters for the dashboard."""
    return {"success": True, "data": runtime.aggregator.get_stats()}


@router.post("/realtime/reset", dependencies=[Depends(deps.require_admin)])
def reset_realtime_stats(runtime: AnalyticsRuntime = Depends(deps.get_runtime)):
    runtime.aggregator.reset_stats()
    return {"success": True, "message": "Real-time statistics reset"}


@router.delete("/cleanup", dependencies=[Depends(deps.require_admin)])
async def cleanup_old_data(
    retention_days: Optional[int] = Query(default=None, alias="retentionDays"),
    analytics: AnalyticsService = Depends(deps.get_analytics_service),
):
    """Delete analytics data older than the retention period."""
    deleted = await anyio.to_thread.run_sync(analytics.cleanup_old_data, retention_days)
    return {"success": True, "deleted": deleted}


# ----------------------------------------------------------------------
# Insights
# ----------------------------------------------------------------------


def get_insight_filters(
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    landing_pages: List[str] = Query(default=[], alias="landingPages"),
) -> InsightFilters:
    return InsightFilters.from_params(start_date, end_date, landing_pages)


async def _run_insight(operation, filters: InsightFilters):
    data = await run_with_timeout(
        operation,
        filters,
        timeout=settings.REPORT_TIMEOUT_SECONDS,
        operation_name=operation.__name__,
    )
    return {"success": True, "data": data}


@router.get("/insights")
async def get_insights(
    filters: InsightFilters = Depends(get_insight_filters),
    insights: InsightService = Depends(deps.get_insight_service),
):
    return await _run_insight(insights.generate_landing_page_insights, filters)


@router.get("/insights/suggestions")
async def get_suggestions(
    filters: InsightFilters = Depends(get_insight_filters),
    insights: InsightService = Depends(deps.get_insight_service),
):
    return await _run_insight(insights.get_optimization_suggestions, filters)


@router.get("/insights/trends")
async def get_conversion_trends(
    filters: InsightFilters = Depends(get_insight_filters),
    insights: InsightService = Depends(deps.get_insight_service),
):
    return await _run_insight(insights.get_conversion_rate_trends, filters)


@router.get("/insights/sources")
async def get_source_performance(
    filters: InsightFilters = Depends(get_insight_filters),
    insights: InsightService = Depends(deps.get_insight_service),
):
    return await _run_insight(insights.get_traffic_source_performance, filters)


@router.get("/insights/anomalies")
async def get_traffic_anomalies(
    filters: InsightFilters = Depends(get_insight_filters),
    insights: InsightService = Depends(deps.get_insight_service),
):
    return await _run_insight(insights.detect_traffic_anomalies, filters)


@router.get("/insights/behavior")
async def get_behavioral_patterns(
    filters: InsightFilters = Depends(get_insight_filters),
    insights: InsightService = Depends(deps.get_insight_service),
):
    return await _run_insight(insights.detect_behavioral_patterns, filters)


@router.get("/landing-metrics")
async def get_landing_page_metrics(
    filters: InsightFilters = Depends(get_insight_filters),
    insights: InsightService = Depends(deps.get_insight_service),
):
    """Visits, conversions, bounce rate and session duration per landing page (default ``/``)."""
    return await _run_insight(insights.get_landing_page_metrics, filters)


@router.get("/top-sources")
async def get_top_traffic_sources(
    filters: InsightFilters = Depends(get_insight_filters),
    insights: InsightService = Depends(deps.get_insight_service),
):
    return await _run_insight(insights.get_top_traffic_sources, filters)


# ----------------------------------------------------------------------
# Attribution
# ----------------------------------------------------------------------


@router.post("/attribution/{conversion_id}", dependencies=[Depends(deps.require_admin)])
def attribute_conversion(
    conversion_id: int,
    model: str = Query(default="last"),
    attribution: AttributionService = Depends(deps.get_attribution_service),
):
    """(Re)compute attribution for one conversion."""
    records = attribution.attribute_conversion(conversion_id, model)
    return {
        "success": True,
        "data": [
            {
                "visit_id": r.visit_id,
                "attribution_model": r.attribution_model,
                "attribution_weight": r.attribution_weight,
            }
            for r in records
        ],
    }


@router.get("/attribution/analysis")
async def get_attribution_analysis(
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    model: Optional[str] = Query(default=None),
    attribution: AttributionService = Depends(deps.get_attribution_service),
):
    filters = AttributionFilters.from_params(start_date, end_date, model)
    data = await run_with_timeout(
        attribution.get_attribution_analysis,
        filters,
        timeout=settings.REPORT_TIMEOUT_SECONDS,
        operation_name="attribution_analysis",
    )
    return {"success": True, "model": filters.model, "data": data}


@router.get("/attribution/compare")
async def compare_attribution_models(
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    attribution: AttributionService = Depends(deps.get_attribution_service),
):
    filters = AttributionFilters.from_params(start_date, end_date)
    data = await run_with_timeout(
        attribution.compare_attribution_models,
        filters,
        timeout=settings.REPORT_TIMEOUT_SECONDS,
        operation_name="compare_attribution_models",
    )
    return {"success": True, "data": data}
