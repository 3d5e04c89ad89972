"""
Monitoring API

Read-only operational views: Prometheus export, tracked-operation stats,
cache stats, scheduler jobs and circuit breaker states.
"""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Response

from tessera_analytics.api.deps import get_services
from tessera_analytics.container import AnalyticsServices
from tessera_analytics.core.metrics import METRICS

router = APIRouter(prefix="/api/monitoring", tags=["monitoring"])
prometheus_router = APIRouter(tags=["monitoring"])

Services = Annotated[AnalyticsServices, Depends(get_services)]


@prometheus_router.get("/metrics")
def prometheus_metrics():
    return Response(content=METRICS.export_prometheus(), media_type="text/plain; version=0.0.4")


@router.get("/performance")
def performance_stats(
    services: Services,
    operation: Optional[str] = Query(None, description="Restrict to one operation name"),
    window: Optional[float] = Query(None, gt=0, description="Also return metrics recorded in the last N seconds"),
):
    body = {"operation": operation, "stats": services.monitoring.get_performance_stats(operation)}
    if window is not None:
        body["recent"] = [
            m.to_dict() for m in services.monitoring.get_metrics(window)
            if operation is None or m.operation == operation
        ]
    return body


@router.get("/cache")
def cache_stats(services: Services):
    return services.cache.get_stats()


@router.get("/scheduler")
def scheduler_jobs(services: Services):
    return {"running": services.scheduler.running, "jobs": services.scheduler.inspect()}


@router.get("/circuits")
def circuit_states(services: Services):
    return {name: breaker.snapshot() for name, breaker in services.breakers.items()}
