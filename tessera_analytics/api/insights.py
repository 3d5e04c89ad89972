"""
Insights API

Generate and read predictive insights for an organization.

**Access:** `X-User-Role` must be `executive` or `hr`; anything else is
rejected with ACCESS_DENIED. Identity is trusted from upstream headers.
"""

from datetime import datetime, timezone
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, Query

from tessera_analytics.api.deps import get_services
from tessera_analytics.container import AnalyticsServices
from tessera_analytics.core.errors import ValidationError, handle_role_access_denied
from tessera_analytics.features.insights.models import (
    BehaviorPattern,
    GenerateInsightsRequest,
    InsightsResponse,
    TrendAnalysis,
)

router = APIRouter(prefix="/api/insights", tags=["insights"])

INSIGHT_ROLES = frozenset({"executive", "hr"})

Services = Annotated[AnalyticsServices, Depends(get_services)]


def require_insight_role(
    role: Annotated[Optional[str], Header(alias="X-User-Role")] = None,
    user_id: Annotated[Optional[str], Header(alias="X-User-Id")] = None,
) -> str:
    if role not in INSIGHT_ROLES:
        handle_role_access_denied(user_id, role or "anonymous", "insights")
    return role


def _parse_now(now: Optional[str]) -> datetime:
    if not now:
        return datetime.now(timezone.utc)
    try:
        parsed = datetime.fromisoformat(now)
    except ValueError:
        raise ValidationError("Invalid 'now' timestamp format. Use ISO 8601.")
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@router.post("/{organization_id}/generate", response_model=InsightsResponse)
async def generate_insights(
    organization_id: str,
    body: GenerateInsightsRequest,
    services: Services,
    _role: Annotated[str, Depends(require_insight_role)],
    now: Optional[str] = Query(None, description="Optional ISO timestamp for deterministic testing"),
) -> InsightsResponse:
    """Run every pass and replace the organization's stored insights."""
    now_dt = _parse_now(now)
    insights = await services.insights.generate_insights(
        organization_id, body.patterns, body.health, body.history, now=now_dt
    )
    return InsightsResponse(organization_id=organization_id, insights=insights, computed_at=now_dt)


@router.get("/{organization_id}", response_model=InsightsResponse)
def list_insights(
    organization_id: str,
    services: Services,
    _role: Annotated[str, Depends(require_insight_role)],
) -> InsightsResponse:
    return InsightsResponse(
        organization_id=organization_id,
        insights=services.insights.get_insights(organization_id),
        computed_at=datetime.now(timezone.utc),
    )


@router.post("/{organization_id}/trend", response_model=TrendAnalysis)
def analyze_trend(
    organization_id: str,
    pattern: BehaviorPattern,
    services: Services,
    _role: Annotated[str, Depends(require_insight_role)],
    now: Optional[str] = Query(None),
) -> TrendAnalysis:
    return services.insights.analyze_pattern(pattern, now=_parse_now(now))
