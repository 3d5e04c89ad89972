"""
Materialized views API

Cached aggregates per organization. A failing data source surfaces as
DATABASE_ERROR (503); callers are expected to keep showing their last view.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from tessera_analytics.api.deps import get_services
from tessera_analytics.container import AnalyticsServices
from tessera_analytics.core.errors import ValidationError
from tessera_analytics.features.cache.views import TIME_WINDOWS

router = APIRouter(prefix="/api/views", tags=["views"])

Services = Annotated[AnalyticsServices, Depends(get_services)]


@router.get("/{organization_id}/patterns")
async def behavior_patterns(
    organization_id: str,
    services: Services,
    window: str = Query("week", description="week | month | quarter"),
):
    if window not in TIME_WINDOWS:
        raise ValidationError(f"window must be one of {', '.join(TIME_WINDOWS)}")
    return await services.views.get_behavior_patterns_aggregated(organization_id, window)


@router.get("/{organization_id}/department-health")
async def department_health(organization_id: str, services: Services):
    return await services.views.get_department_health_scores(organization_id)


@router.get("/{organization_id}/interventions")
async def intervention_effectiveness(organization_id: str, services: Services):
    return await services.views.get_intervention_effectiveness(organization_id)


@router.post("/{organization_id}/warm", status_code=202)
async def warm(organization_id: str, services: Services):
    warmed = await services.views.warm_cache(organization_id)
    return {"organization_id": organization_id, "warmed": warmed}
