"""
Insight Engine - Analytical Models

Four small, independent models used by the InsightEngine passes. Each is a
pure function of its inputs (plus `now` for dating anomalies).
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from tessera_analytics.features.insights.models import (
    Anomaly,
    BehaviorPattern,
    CaseStudy,
    Complexity,
    DepartmentHealth,
    InterventionKind,
    InterventionRecommendation,
    InterventionRecord,
    RiskAssessment,
    TrendAnalysis,
    TrendDirection,
)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class TrendPredictor:
    """Ordinary least squares over the weekly severity series (x = 0..n-1)."""

    MIN_POINTS = 3
    DIRECTION_THRESHOLD = 0.1  # severity points per week
    SHORT_HORIZON_WEEKS = 4
    LONG_HORIZON_WEEKS = 12
    DEFAULT_CONFIDENCE = 0.3

    def analyze_trend(self, pattern: BehaviorPattern) -> TrendAnalysis:
        severities = [point.severity for point in pattern.trend_data]
        n = len(severities)
        if n < self.MIN_POINTS:
            return self._default_trend(pattern)

        sum_x = sum(range(n))
        sum_y = sum(severities)
        sum_xy = sum(i * y for i, y in enumerate(severities))
        sum_x2 = sum(i * i for i in range(n))

        slope = (n * sum_xy - sum_x * sum_y) / (n * sum_x2 - sum_x * sum_x)
        intercept = (sum_y - slope * sum_x) / n

        last_x = n - 1
        predicted_30 = intercept + slope * (last_x + self.SHORT_HORIZON_WEEKS)
        predicted_90 = intercept + slope * (last_x + self.LONG_HORIZON_WEEKS)

        if slope > self.DIRECTION_THRESHOLD:
            direction = TrendDirection.DECLINING
        elif slope < -self.DIRECTION_THRESHOLD:
            direction = TrendDirection.IMPROVING
        else:
            direction = TrendDirection.STABLE

        return TrendAnalysis(
            pattern_id=pattern.id,
            pattern_name=pattern.pattern_type,
            current_severity=pattern.severity_avg,
            trend_direction=direction,
            velocity=slope,
            predicted_severity_30_days=_clamp(predicted_30, 1.0, 5.0),
            predicted_severity_90_days=_clamp(predicted_90, 1.0, 5.0),
            confidence_level=min(0.9, 0.5 + 0.1 * n),
            contributing_factors=list(pattern.environmental_factors),
        )

    def _default_trend(self, pattern: BehaviorPattern) -> TrendAnalysis:
        return TrendAnalysis(
            pattern_id=pattern.id,
            pattern_name=pattern.pattern_type,
            current_severity=pattern.severity_avg,
            trend_direction=TrendDirection.STABLE,
            velocity=0.0,
            predicted_severity_30_days=pattern.severity_avg,
            predicted_severity_90_days=pattern.severity_avg,
            confidence_level=self.DEFAULT_CONFIDENCE,
        )


class AnomalyDetector:
    MIN_POINTS = 5
    Z_THRESHOLD = 2.0

    def detect_anomalies(self, pattern: BehaviorPattern, now: Optional[datetime] = None) -> list[Anomaly]:
        """
        Flag points more than Z_THRESHOLD population standard deviations from the mean.

        The series is taken as weekly and ending at `now`: point i of n is
        dated `now - (n - 1 - i)` weeks.
        """
        if now is None:
            now = datetime.now(timezone.utc)

        severities = [point.severity for point in pattern.trend_data]
        n = len(severities)
        if n < self.MIN_POINTS:
            return []

        mean = sum(severities) / n
        std_dev = math.sqrt(sum((s - mean) ** 2 for s in severities) / n)
        if std_dev == 0:
            return []

        anomalies = []
        for i, severity in enumerate(severities):
            z = abs(severity - mean) / std_dev
            if z > self.Z_THRESHOLD:
                anomalies.append(Anomaly(
                    date=now - timedelta(weeks=n - 1 - i),
                    severity=severity,
                    deviation_score=z,
                ))
        return anomalies


class RiskAssessor:
    HIGH_SEVERITY = 3.5
    CONCERNING_DEPARTMENT_SEVERITY = 3.0
    PATTERN_WEIGHT = 0.6
    DEPARTMENT_WEIGHT = 0.4
    RETENTION_FACTOR = 0.3
    # Fixed, not derived from the data.
    CONFIDENCE = 0.75

    def calculate_risk(self, patterns: Sequence[BehaviorPattern], health: Sequence[DepartmentHealth]) -> RiskAssessment:
        high_risk = [p for p in patterns if p.severity_avg > self.HIGH_SEVERITY]
        concerning = [d for d in health if d.avg_severity_score > self.CONCERNING_DEPARTMENT_SEVERITY]

        overall = min(
            1.0,
            self.PATTERN_WEIGHT * len(high_risk) / max(len(patterns), 1)
            + self.DEPARTMENT_WEIGHT * len(concerning) / max(len(health), 1),
        )
        return RiskAssessment(
            overall_risk=overall,
            high_risk_patterns=[p.pattern_type for p in high_risk],
            affected_departments=[d.department for d in concerning],
            retention_risk=overall * self.RETENTION_FACTOR,
            confidence=self.CONFIDENCE,
            total_affected_users=sum(p.unique_users for p in patterns),
        )


@dataclass(frozen=True)
class InterventionArchetype:
    kind: InterventionKind
    title: str
    effectiveness: float
    cost: float
    complexity: Complexity
    duration_days: int


ARCHETYPES = {
    "Communication": InterventionArchetype(
        InterventionKind.WORKSHOP, "Communication Excellence Workshop", 0.75, 5000, Complexity.MEDIUM, 30
    ),
    "Leadership": InterventionArchetype(
        InterventionKind.COACHING, "Leadership Development Program", 0.80, 15000, Complexity.HIGH, 60
    ),
    "Process": InterventionArchetype(
        InterventionKind.TRAINING, "Process Optimization Training", 0.70, 3000, Complexity.LOW, 21
    ),
    "Culture": InterventionArchetype(
        InterventionKind.STRUCTURAL, "Culture Transformation Initiative", 0.85, 25000, Complexity.HIGH, 90
    ),
}
FALLBACK_CATEGORY = "Process"


class InterventionOptimizer:
    """Static category -> archetype lookup; ROI is a placeholder heuristic."""

    ROI_BASELINE = 50000
    SUCCESS_METRICS = (
        "Severity reduction by 1.0+ points",
        "Increased confidence ratings",
        "Reduced environmental stress factors",
    )

    def recommend(self, pattern: BehaviorPattern, history: Sequence[InterventionRecord] = ()) -> InterventionRecommendation:
        archetype = ARCHETYPES.get(pattern.category, ARCHETYPES[FALLBACK_CATEGORY])
        return InterventionRecommendation(
            pattern_id=pattern.id,
            intervention_type=archetype.kind,
            title=archetype.title,
            description=f"Targeted {archetype.kind.value} intervention designed to address {pattern.pattern_type} patterns",
            estimated_effectiveness=archetype.effectiveness,
            estimated_cost=archetype.cost,
            estimated_roi=archetype.effectiveness * self.ROI_BASELINE / archetype.cost,
            implementation_complexity=archetype.complexity,
            time_to_impact_days=archetype.duration_days,
            target_departments=[pattern.department or "All"],
            success_metrics=list(self.SUCCESS_METRICS),
            similar_case_studies=self._case_studies(archetype, history),
        )

    def _case_studies(self, archetype: InterventionArchetype, history: Sequence[InterventionRecord]) -> list[CaseStudy]:
        completed = [
            record for record in history
            if record.status == "completed"
            and record.intervention_type == archetype.kind.value
            and record.effectiveness_score is not None
        ]
        if completed:
            return [
                CaseStudy(
                    organization_type="Internal history",
                    # effectiveness_score is recorded on a 0-5 scale
                    effectiveness_achieved=_clamp(record.effectiveness_score / 5.0, 0.0, 1.0),
                    duration_days=record.duration_days or archetype.duration_days,
                )
                for record in completed[:3]
            ]
        return [
            CaseStudy(
                organization_type="Technology Company",
                effectiveness_achieved=round(archetype.effectiveness - 0.1, 2),
                duration_days=archetype.duration_days + 10,
            )
        ]
