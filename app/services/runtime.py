"""
Wiring for the analytics components of one process.

Each process (and each test) builds its own ``AnalyticsRuntime``; nothing
here is a module-level singleton. The FastAPI lifespan stores the runtime on
``app.state`` and the scheduler receives it explicitly.
"""

from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy.engine import Engine

from app.core.config import settings
from app.core.db_utils import ConnectionWatchdog
from app.core.events import EventEmitter
from app.services.analytics import AnalyticsService
from app.services.analytics_repository import AnalyticsRepository
from app.services.attribution import AttributionService
from app.services.insights import InsightService
from app.services.realtime_aggregator import RealTimeAggregator

logger = structlog.get_logger(__name__)


@dataclass
class AnalyticsRuntime:
    engine: Engine
    emitter: EventEmitter
    repository: AnalyticsRepository
    analytics: AnalyticsService
    aggregator: RealTimeAggregator
    attribution: AttributionService
    insights: InsightService
    watchdog: ConnectionWatchdog

    def start(self) -> None:
        self.watchdog.attach()
        self.aggregator.start()
        self.attribution.start()
        logger.info("Analytics runtime started")

    def shutdown(self) -> None:
        self.attribution.shutdown()
        self.aggregator.shutdown(flush=True)
        self.watchdog.detach()
        logger.info("Analytics runtime stopped")


def build_runtime(
    engine: Engine,
    max_retries: Optional[int] = None,
    retry_base_delay: Optional[float] = None,
) -> AnalyticsRuntime:
    emitter = EventEmitter()
    repository = AnalyticsRepository(
        engine,
        max_retries=settings.DB_MAX_RETRIES if max_retries is None else max_retries,
        base_delay=settings.DB_RETRY_BASE_DELAY if retry_base_delay is None else retry_base_delay,
    )
    return AnalyticsRuntime(
        engine=engine,
        emitter=emitter,
        repository=repository,
        analytics=AnalyticsService(repository, emitter),
        aggregator=RealTimeAggregator(emitter, repository),
        attribution=AttributionService(repository, emitter),
        insights=InsightService(repository),
        watchdog=ConnectionWatchdog(engine, settings.DB_CONNECTION_WATCHDOG_SECONDS),
    )
