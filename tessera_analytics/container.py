"""
Service container.

Every stateful component (cache, metrics window, subscription registry,
insight store) is built here once and handed to its consumers explicitly.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

import httpx
import redis.asyncio as aioredis

from tessera_analytics.core.config import Settings
from tessera_analytics.core.scheduler import Scheduler
from tessera_analytics.features.cache.store import TTLCache, build_cache
from tessera_analytics.features.cache.views import (
    AnalyticsDataSource,
    DemoDataSource,
    MaterializedViewManager,
    UnavailableDataSource,
)
from tessera_analytics.features.insights.service import InsightEngine
from tessera_analytics.features.monitoring.service import MonitoringService
from tessera_analytics.features.resilience.circuit_breaker import CircuitBreaker
from tessera_analytics.realtime.demo import DemoUpdateGenerator
from tessera_analytics.realtime.hub import AnalyticsBroadcaster

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AnalyticsServices:
    settings: Settings
    monitoring: MonitoringService
    cache: TTLCache
    views: MaterializedViewManager
    insights: InsightEngine
    broadcaster: AnalyticsBroadcaster
    scheduler: Scheduler
    breakers: Dict[str, CircuitBreaker] = field(default_factory=dict)
    demo: Optional[DemoUpdateGenerator] = None

    async def aclose(self) -> None:
        await self.scheduler.stop()
        await self.monitoring.aclose()
        await self.cache.aclose()


def build_services(
    settings: Settings,
    *,
    data_source: Optional[AnalyticsDataSource] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    redis_client: Optional[aioredis.Redis] = None,
    time_fn: Callable[[], float] = time.monotonic,
    now_fn: Callable[[], datetime] = _utcnow,
) -> AnalyticsServices:
    def breaker(name: str) -> CircuitBreaker:
        return CircuitBreaker(
            name,
            max_failures=settings.CIRCUIT_MAX_FAILURES,
            reset_timeout=settings.CIRCUIT_RESET_TIMEOUT_SECONDS,
            time_fn=time_fn,
        )

    breakers = {name: breaker(name) for name in ("alert_webhook", "redis_cache", "analytics_source")}

    monitoring = MonitoringService(
        environment=settings.ENV,
        alert_webhook_url=settings.ALERT_WEBHOOK_URL,
        monitoring_endpoint=settings.MONITORING_ENDPOINT,
        buffer_size=settings.METRICS_BUFFER_SIZE,
        http_client=http_client,
        timeout_seconds=settings.ALERT_TIMEOUT_SECONDS,
        alert_breaker=breakers["alert_webhook"],
        now_fn=now_fn,
    )
    cache = build_cache(
        settings,
        monitoring,
        redis_client=redis_client,
        breaker=breakers["redis_cache"],
        time_fn=time_fn,
    )
    if data_source is None:
        data_source = DemoDataSource() if settings.DEMO_MODE else UnavailableDataSource()
    views = MaterializedViewManager(
        cache,
        data_source,
        breaker=breakers["analytics_source"],
        monitoring=monitoring,
        now_fn=now_fn,
    )
    insights = InsightEngine(monitoring=monitoring)
    broadcaster = AnalyticsBroadcaster(
        cache,
        time_fn=time_fn,
        now_fn=now_fn,
        stale_after=settings.REALTIME_STALE_AFTER_SECONDS,
        channel_size=settings.REALTIME_CHANNEL_SIZE,
    )
    demo = DemoUpdateGenerator(broadcaster, settings.DEMO_ORGANIZATION_ID, now_fn=now_fn) if settings.DEMO_MODE else None

    services = AnalyticsServices(
        settings=settings,
        monitoring=monitoring,
        cache=cache,
        views=views,
        insights=insights,
        broadcaster=broadcaster,
        scheduler=Scheduler(time_fn=time_fn),
        breakers=breakers,
        demo=demo,
    )
    register_jobs(services)
    return services


def register_jobs(services: AnalyticsServices) -> None:
    cfg = services.settings
    scheduler = services.scheduler
    scheduler.every("cache_sweep", cfg.CACHE_SWEEP_INTERVAL_SECONDS, services.cache.sweep)
    scheduler.every("subscription_sweep", cfg.REALTIME_SWEEP_INTERVAL_SECONDS, services.broadcaster.cleanup_subscriptions)
    scheduler.every("update_queue_drain", cfg.REALTIME_DRAIN_INTERVAL_SECONDS, services.broadcaster.process_update_queue)
    scheduler.every("insight_purge", cfg.INSIGHT_PURGE_INTERVAL_SECONDS, services.insights.clear_expired_insights)
    scheduler.every(
        "monitoring_rate_check",
        cfg.MONITORING_RATE_CHECK_INTERVAL_SECONDS,
        lambda: services.monitoring.check_rate_thresholds(services.cache.get_stats()),
    )
    if services.demo is not None:
        scheduler.every("demo_updates", cfg.DEMO_UPDATE_INTERVAL_SECONDS, services.demo.emit)
