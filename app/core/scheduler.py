import anyio
import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import settings
from app.core.errors import ErrorHandler
from app.services.runtime import AnalyticsRuntime

logger = structlog.get_logger(__name__)


async def job_aggregate(runtime: AnalyticsRuntime):
    """Recompute derived real-time metrics (in memory only)."""
    derived = runtime.aggregator.aggregate()
    logger.debug("Real-time metrics aggregated", **derived)


async def job_persist(runtime: AnalyticsRuntime):
    """Flush pending real-time windows to a snapshot. Failures are handled by the aggregator."""
    await anyio.to_thread.run_sync(runtime.aggregator.persist)


async def job_connection_watchdog(runtime: AnalyticsRuntime):
    reclaimed = runtime.watchdog.sweep()
    if reclaimed:
        logger.warning("Connection watchdog reclaimed connections", reclaimed=reclaimed)


async def job_rollup(runtime: AnalyticsRuntime, report_type: str):
    """Write the daily/weekly/monthly snapshot for the last complete period."""
    with ErrorHandler("rollup_snapshot", context={"report_type": report_type}):
        await anyio.to_thread.run_sync(runtime.analytics.rollup, report_type)


async def job_retention_cleanup(runtime: AnalyticsRuntime):
    with ErrorHandler("retention_cleanup", context={"retention_days": runtime.analytics.retention_days}):
        await anyio.to_thread.run_sync(runtime.analytics.cleanup_old_data)


def start_scheduler(runtime: AnalyticsRuntime) -> AsyncIOScheduler:
    # Job configuration for durability:
    # - max_instances=1: Prevent overlapping runs
    # - misfire_grace_time: Allow late execution if within grace period (then skip)
    # - coalesce=True: If multiple runs were missed, only run once when catching up
    scheduler = AsyncIOScheduler(timezone="UTC")

    scheduler.add_job(
        job_aggregate,
        IntervalTrigger(seconds=settings.REALTIME_AGGREGATION_INTERVAL_SECONDS),
        args=[runtime],
        id="job_realtime_aggregate",
        max_instances=1,
        misfire_grace_time=30,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        job_persist,
        IntervalTrigger(seconds=settings.REALTIME_PERSIST_INTERVAL_SECONDS),
        args=[runtime],
        id="job_realtime_persist",
        max_instances=1,
        misfire_grace_time=120,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        job_connection_watchdog,
        IntervalTrigger(seconds=settings.DB_WATCHDOG_INTERVAL_SECONDS),
        args=[runtime],
        id="job_connection_watchdog",
        max_instances=1,
        misfire_grace_time=30,
        coalesce=True,
        replace_existing=True,
    )

    # Rollups run shortly after the period closes (UTC)
    for report_type, trigger in (
        ("daily", CronTrigger(hour=0, minute=5, timezone="UTC")),
        ("weekly", CronTrigger(day_of_week="mon", hour=0, minute=10, timezone="UTC")),
        ("monthly", CronTrigger(day=1, hour=0, minute=15, timezone="UTC")),
    ):
        scheduler.add_job(
            job_rollup,
            trigger,
            args=[runtime, report_type],
            id=f"job_rollup_{report_type}",
            max_instances=1,
            misfire_grace_time=3600,  # 1 hour
            coalesce=True,
            replace_existing=True,
        )

    # Retention cleanup daily at 3 AM UTC (off-peak hours)
    scheduler.add_job(
        job_retention_cleanup,
        CronTrigger(hour=3, minute=0, timezone="UTC"),
        args=[runtime],
        id="job_retention_cleanup",
        max_instances=1,
        misfire_grace_time=7200,  # 2 hours
        coalesce=True,
        replace_existing=True,
    )

    scheduler.start()
    logger.info(
        "Scheduler started",
        jobs=[job.id for job in scheduler.get_jobs()],
        aggregation_interval=settings.REALTIME_AGGREGATION_INTERVAL_SECONDS,
        persist_interval=settings.REALTIME_PERSIST_INTERVAL_SECONDS,
    )
    return scheduler
