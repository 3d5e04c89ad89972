"""
Materialized views over the analytics cache.

Each view is a pure compute function over source records plus a fixed TTL.
Keys live in the `org:<id>:patterns:`, `org:<id>:health:` and
`org:<id>:interventions` namespaces so broadcaster invalidations reach them.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Sequence

from tessera_analytics.core.errors import PrivacyViolationError, handle_database_error
from tessera_analytics.features.cache.store import CacheKeyGenerator, TTLCache
from tessera_analytics.features.insights.models import (
    BehaviorPattern,
    DepartmentHealth,
    InterventionRecord,
    TrendPoint,
)
from tessera_analytics.features.insights.predictors import TrendPredictor
from tessera_analytics.features.monitoring.service import track_performance
from tessera_analytics.features.resilience.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

TIME_WINDOWS = ("week", "month", "quarter")

PATTERNS_TTL = 300  # 5 minutes
DEPARTMENT_HEALTH_TTL = 86400  # daily
INTERVENTION_EFFECTIVENESS_TTL = 604800  # weekly


class AnalyticsDataSource(Protocol):
    async def fetch_behavior_patterns(self, organization_id: str, time_window: str) -> list[BehaviorPattern]: ...

    async def fetch_department_health(self, organization_id: str) -> list[DepartmentHealth]: ...

    async def fetch_interventions(self, organization_id: str) -> list[InterventionRecord]: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---- pure compute functions ---------------------------------------------------


def compute_pattern_rollup(patterns: Sequence[BehaviorPattern], now: datetime) -> Dict[str, Any]:
    predictor = TrendPredictor()
    if patterns:
        avg_severity = sum(p.severity_avg for p in patterns) / len(patterns)
        avg_velocity = sum(predictor.analyze_trend(p).velocity for p in patterns) / len(patterns)
    else:
        avg_severity = 0.0
        avg_velocity = 0.0

    if avg_velocity > TrendPredictor.DIRECTION_THRESHOLD:
        direction = "declining"
    elif avg_velocity < -TrendPredictor.DIRECTION_THRESHOLD:
        direction = "improving"
    else:
        direction = "stable"

    counts: Dict[str, int] = {}
    for pattern in patterns:
        counts[pattern.category] = counts.get(pattern.category, 0) + 1
    top_categories = [c for c, _ in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[:3]]

    return {
        "total_patterns": len(patterns),
        "avg_severity": round(avg_severity, 2),
        "trend_direction": direction,
        "top_categories": top_categories,
        "computed_at": now.isoformat(),
    }


def _health_score(severity: float) -> float:
    # severity 1 (best) .. 5 (worst) -> health 10 .. 0
    return round(max(0.0, min(10.0, (5.0 - severity) / 4.0 * 10.0)), 1)


def _department_trend(dept: DepartmentHealth) -> str:
    if dept.previous_severity_score is None:
        return "stable"
    delta = dept.avg_severity_score - dept.previous_severity_score
    if delta > 0.1:
        return "declining"
    if delta < -0.1:
        return "improving"
    return "stable"


def compute_department_health(health: Sequence[DepartmentHealth], now: datetime) -> Dict[str, Any]:
    departments = [
        {
            "name": dept.department,
            "health_score": _health_score(dept.avg_severity_score),
            "trend": _department_trend(dept),
        }
        for dept in health
    ]
    average = sum(d["health_score"] for d in departments) / len(departments) if departments else 0.0
    return {
        "departments": departments,
        "organization_average": round(average, 1),
        "computed_at": now.isoformat(),
    }


def compute_intervention_effectiveness(records: Sequence[InterventionRecord], now: datetime) -> Dict[str, Any]:
    completed = [r for r in records if r.status == "completed"]
    scored = [r for r in completed if r.effectiveness_score is not None]
    top = sorted(scored, key=lambda r: (-r.effectiveness_score, r.title))[:3]
    return {
        "total_interventions": len(records),
        "completed_interventions": len(completed),
        "avg_effectiveness_score": (
            round(sum(r.effectiveness_score for r in scored) / len(scored), 2) if scored else 0.0
        ),
        "total_roi": round(sum(r.roi or 0.0 for r in completed), 2),
        "top_performing_interventions": [
            {"title": r.title, "effectiveness": r.effectiveness_score, "roi": r.roi or 0.0} for r in top
        ],
        "computed_at": now.isoformat(),
    }


# ---- manager ------------------------------------------------------------------


class MaterializedViewManager:
    def __init__(
        self,
        cache: TTLCache,
        source: AnalyticsDataSource,
        *,
        breaker: Optional[CircuitBreaker] = None,
        monitoring=None,
        now_fn: Callable[[], datetime] = _utcnow,
    ):
        self.cache = cache
        self.source = source
        self.breaker = breaker or CircuitBreaker("analytics_source")
        self.monitoring = monitoring
        self.now_fn = now_fn

    async def _fetch(self, context: str, fetch: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await self.breaker.execute(fetch)
        except PrivacyViolationError:
            raise
        except Exception as exc:
            handle_database_error(exc, context)

    async def get_behavior_patterns_aggregated(self, organization_id: str, time_window: str) -> Dict[str, Any]:
        key = CacheKeyGenerator.behavior_patterns(organization_id, time_window, "aggregated")

        async def compute():
            logger.info("views.compute", extra={"organization_id": organization_id, "operation": key})
            patterns = await self._fetch(
                "fetch_behavior_patterns",
                lambda: self.source.fetch_behavior_patterns(organization_id, time_window),
            )
            return compute_pattern_rollup(patterns, self.now_fn())

        return await self.cache.get_or_set(key, compute, PATTERNS_TTL)

    async def get_department_health_scores(self, organization_id: str) -> Dict[str, Any]:
        key = CacheKeyGenerator.organizational_health(organization_id, "departments:daily")

        async def compute():
            logger.info("views.compute", extra={"organization_id": organization_id, "operation": key})
            health = await self._fetch(
                "fetch_department_health",
                lambda: self.source.fetch_department_health(organization_id),
            )
            return compute_department_health(health, self.now_fn())

        return await self.cache.get_or_set(key, compute, DEPARTMENT_HEALTH_TTL)

    async def get_intervention_effectiveness(self, organization_id: str) -> Dict[str, Any]:
        key = CacheKeyGenerator.interventions(organization_id, "effectiveness:weekly")

        async def compute():
            logger.info("views.compute", extra={"organization_id": organization_id, "operation": key})
            records = await self._fetch(
                "fetch_interventions",
                lambda: self.source.fetch_interventions(organization_id),
            )
            return compute_intervention_effectiveness(records, self.now_fn())

        return await self.cache.get_or_set(key, compute, INTERVENTION_EFFECTIVENESS_TTL)

    @track_performance("materialized_views_warm")
    async def warm_cache(self, organization_id: str) -> list[str]:
        """Compute every view for the organization concurrently."""
        await asyncio.gather(
            *(self.get_behavior_patterns_aggregated(organization_id, window) for window in TIME_WINDOWS),
            self.get_department_health_scores(organization_id),
            self.get_intervention_effectiveness(organization_id),
        )
        warmed = [f"patterns:{w}" for w in TIME_WINDOWS] + ["department_health", "intervention_effectiveness"]
        logger.info("views.warmed", extra={"organization_id": organization_id, "status": len(warmed)})
        return warmed


# ---- sources ------------------------------------------------------------------


class UnavailableDataSource:
    """Placeholder when no upstream store is wired; every view degrades to DATABASE_ERROR."""

    async def _unavailable(self, *args, **kwargs):
        raise ConnectionError("no analytics data source configured")

    fetch_behavior_patterns = _unavailable
    fetch_department_health = _unavailable
    fetch_interventions = _unavailable



_DEMO_SERIES = {
    "conflict_avoidance": ("Communication", 3.8, 42, "Engineering", [2.9, 3.0, 3.2, 3.1, 3.3, 3.4, 3.5, 3.6, 3.6, 3.7, 3.8, 3.9]),
    "micromanagement": ("Leadership", 3.1, 18, "Executive", [3.6, 3.5, 3.5, 3.4, 3.3, 3.3, 3.2, 3.2, 3.1, 3.1, 3.0, 3.1]),
    "meeting_overload": ("Process", 2.7, 65, None, [2.6, 2.7, 2.6, 2.8, 2.7, 2.6, 2.7, 2.8, 2.7, 2.6, 2.7, 2.7]),
    "siloed_knowledge": ("Culture", 3.6, 37, "Marketing", [3.2, 3.3, 3.3, 3.4, 3.4, 3.5, 3.5, 3.5, 3.6, 3.6, 3.6, 3.7]),
    "late_feedback": ("Communication", 2.2, 29, "HR", [3.0, 2.9, 2.8, 2.7, 2.6, 2.5, 2.5, 2.4, 2.3, 2.3, 2.2, 2.2]),
}
_WINDOW_WEEKS = {"week": 4, "month": 8, "quarter": 12}


class DemoDataSource:
    """Deterministic sample organization used in demo mode."""

    async def fetch_behavior_patterns(self, organization_id: str, time_window: str) -> list[BehaviorPattern]:
        weeks = _WINDOW_WEEKS.get(time_window, 12)
        patterns = []
        for pattern_type, (category, severity, users, department, series) in _DEMO_SERIES.items():
            tail = series[-weeks:]
            patterns.append(BehaviorPattern(
                id=f"{organization_id[:8]}-{pattern_type}",
                pattern_type=pattern_type,
                category=category,
                severity_avg=severity,
                unique_users=users,
                department=department,
                trend_data=[TrendPoint(week=i, severity=s) for i, s in enumerate(tail)],
            ))
        return patterns

    async def fetch_department_health(self, organization_id: str) -> list[DepartmentHealth]:
        return [
            DepartmentHealth(department="Engineering", avg_severity_score=3.2, participation_rate=74.0, member_count=120, previous_severity_score=3.0),
            DepartmentHealth(department="Marketing", avg_severity_score=2.6, participation_rate=81.5, member_count=35, previous_severity_score=2.6),
            DepartmentHealth(department="HR", avg_severity_score=2.1, participation_rate=92.0, member_count=12, previous_severity_score=2.4),
            DepartmentHealth(department="Executive", avg_severity_score=3.4, participation_rate=66.0, member_count=9, previous_severity_score=3.1),
        ]

    async def fetch_interventions(self, organization_id: str) -> list[InterventionRecord]:
        return [
            InterventionRecord(id="int-1", title="Communication Workshop", intervention_type="workshop", category="Communication", status="completed", effectiveness_score=4.2, roi=18750, duration_days=35),
            InterventionRecord(id="int-2", title="Leadership Coaching", intervention_type="coaching", category="Leadership", status="completed", effectiveness_score=4.0, roi=15500, duration_days=70),
            InterventionRecord(id="int-3", title="Meeting Hygiene Training", intervention_type="training", category="Process", status="completed", effectiveness_score=3.1, roi=10750, duration_days=21),
            InterventionRecord(id="int-4", title="Cross-team Guilds", intervention_type="structural", category="Culture", status="active"),
        ]
