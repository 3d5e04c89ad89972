"""
Liveness and readiness endpoints.

No secrets or connection strings are ever returned.
"""

import logging
from datetime import datetime, timezone
from typing import Annotated

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from tessera_analytics.api.deps import get_services
from tessera_analytics.container import AnalyticsServices
from tessera_analytics.core.logging import get_request_id

logger = logging.getLogger("tessera")

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz(services: Annotated[AnalyticsServices, Depends(get_services)]):
    """Readiness: scheduler running and no breaker open."""
    open_breakers = [name for name, b in services.breakers.items() if b.state.value == "open"]
    body = {
        "status": "ok" if not open_breakers else "degraded",
        "cache_backend": services.cache.backend,
        "scheduler_running": services.scheduler.running,
        "open_breakers": open_breakers,
        "computed_at": datetime.now(timezone.utc).isoformat(),
    }
    logger.info("health.ready", extra={"request_id": get_request_id(), "status": body["status"]})
    if open_breakers:
        return JSONResponse(status_code=503, content=body)
    return body
