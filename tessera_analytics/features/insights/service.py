"""
Insight Engine - Computation Service

Runs the trend, anomaly, risk, intervention and opportunity passes over an
organization's data, sorts the result and replaces that organization's
cached insight list.
"""

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from tessera_analytics.core.metrics import insights_generated_total
from tessera_analytics.features.insights.models import (
    PRIORITY_WEIGHT,
    BehaviorPattern,
    BusinessImpact,
    DepartmentHealth,
    InsightKind,
    InsightPriority,
    InterventionRecord,
    PredictedImpact,
    PredictiveInsight,
    TrendAnalysis,
    TrendDirection,
)
from tessera_analytics.features.insights.predictors import (
    AnomalyDetector,
    InterventionOptimizer,
    RiskAssessor,
    TrendPredictor,
)

logger = logging.getLogger(__name__)


def _as_utc(now: Optional[datetime]) -> datetime:
    # Naive timestamps are taken as UTC
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def sort_insights(insights: Sequence[PredictiveInsight]) -> list[PredictiveInsight]:
    """Order by priority weight, then confidence, both descending."""
    return sorted(insights, key=lambda i: (-PRIORITY_WEIGHT[i.priority], -i.confidence))


def _pct(value: float, digits: int = 1) -> str:
    return f"{value * 100:.{digits}f}%"


class InsightEngine:
    """
    Generates predictive insights per organization.

    The per-organization cache is owned here; callers only see copies.
    """

    # Trend pass
    ESCALATION_VELOCITY = 0.2
    IMPROVEMENT_VELOCITY = -0.15
    CRITICAL_PREDICTED_SEVERITY = 4.0
    # Anomaly pass
    ANOMALY_RECENCY = timedelta(days=7)
    ANOMALY_CONFIDENCE = 0.85
    # Risk pass
    CRITICAL_RISK = 0.7
    # Intervention pass
    INTERVENTION_SEVERITY = 3.5
    # Opportunity pass
    STRONG_DEPARTMENT_SEVERITY = 2.5
    STRONG_DEPARTMENT_PARTICIPATION = 80.0
    OPPORTUNITY_CONFIDENCE = 0.8

    EXPIRY = {
        "trend_alert": timedelta(days=7),
        "trend_opportunity": timedelta(days=14),
        "anomaly": timedelta(days=3),
        "risk": timedelta(days=3),
        "intervention": timedelta(days=30),
        "opportunity": timedelta(days=60),
    }

    def __init__(
        self,
        monitoring=None,
        trend_predictor: Optional[TrendPredictor] = None,
        anomaly_detector: Optional[AnomalyDetector] = None,
        risk_assessor: Optional[RiskAssessor] = None,
        intervention_optimizer: Optional[InterventionOptimizer] = None,
    ):
        self.monitoring = monitoring
        self.trend_predictor = trend_predictor or TrendPredictor()
        self.anomaly_detector = anomaly_detector or AnomalyDetector()
        self.risk_assessor = risk_assessor or RiskAssessor()
        self.intervention_optimizer = intervention_optimizer or InterventionOptimizer()
        self._insights: dict[str, list[PredictiveInsight]] = {}

    async def generate_insights(
        self,
        organization_id: str,
        patterns: Sequence[BehaviorPattern],
        health: Sequence[DepartmentHealth],
        history: Sequence[InterventionRecord],
        now: Optional[datetime] = None,
    ) -> list[PredictiveInsight]:
        """
        Run all passes and replace the organization's cached list.

        Args:
            organization_id: Organization the data belongs to
            patterns: Behavior patterns with weekly trend data
            health: Per-department health records
            history: Past and current interventions
            now: Current time (for testing; defaults to utcnow)

        Returns:
            Insights sorted by (priority, confidence) descending
        """
        now = _as_utc(now)

        async def _run() -> list[PredictiveInsight]:
            insights: list[PredictiveInsight] = []
            insights.extend(self._trend_insights(patterns, now))
            insights.extend(self._anomaly_insights(patterns, now))
            insights.extend(self._risk_insights(patterns, health, now))
            insights.extend(self._intervention_insights(patterns, history, now))
            insights.extend(self._opportunity_insights(health, now))
            return sort_insights(insights)

        if self.monitoring is not None:
            ordered = await self.monitoring.track_operation(
                "ai_insights_generation", _run, {"organization_id": organization_id}
            )
        else:
            ordered = await _run()

        self._insights[organization_id] = ordered
        for insight in ordered:
            insights_generated_total.inc(labels={"type": insight.type.value})
        logger.info(
            "insights.generated",
            extra={"organization_id": organization_id, "status": len(ordered)},
        )
        return list(ordered)

    def get_insights(self, organization_id: str) -> list[PredictiveInsight]:
        return list(self._insights.get(organization_id, []))

    def clear_expired_insights(self, now: Optional[datetime] = None) -> int:
        now = _as_utc(now)
        removed = 0
        for organization_id, insights in list(self._insights.items()):
            active = [i for i in insights if not i.is_expired(now)]
            removed += len(insights) - len(active)
            self._insights[organization_id] = active
        if removed:
            logger.info("insights.purged", extra={"status": removed})
        return removed

    def analyze_pattern(self, pattern: BehaviorPattern, now: Optional[datetime] = None) -> TrendAnalysis:
        """Trend analysis for one pattern with its anomalies attached."""
        analysis = self.trend_predictor.analyze_trend(pattern)
        anomalies = self.anomaly_detector.detect_anomalies(pattern, now)
        return analysis.model_copy(update={"anomalies": anomalies})

    # ---- passes ---------------------------------------------------------------

    def _insight(self, *, id_prefix: str, subject: str, now: datetime, expiry: str, **fields) -> PredictiveInsight:
        return PredictiveInsight(
            id=f"{id_prefix}_{subject}_{int(now.timestamp() * 1000)}",
            created_at=now,
            expires_at=now + self.EXPIRY[expiry],
            **fields,
        )

    def _trend_insights(self, patterns: Sequence[BehaviorPattern], now: datetime) -> list[PredictiveInsight]:
        insights = []
        for pattern in patterns:
            trend = self.trend_predictor.analyze_trend(pattern)

            if trend.trend_direction == TrendDirection.DECLINING and trend.velocity > self.ESCALATION_VELOCITY:
                escalating = trend.predicted_severity_30_days > self.CRITICAL_PREDICTED_SEVERITY
                insights.append(self._insight(
                    id_prefix="trend",
                    subject=pattern.id,
                    now=now,
                    expiry="trend_alert",
                    type=InsightKind.ALERT,
                    priority=InsightPriority.CRITICAL if escalating else InsightPriority.HIGH,
                    title=f"Escalating Pattern: {pattern.pattern_type}",
                    description=(
                        f"{pattern.pattern_type} is worsening by {trend.velocity:.2f} severity points per week."
                    ),
                    evidence=[
                        f"Current severity: {pattern.severity_avg:.1f}/5.0",
                        f"Predicted severity in 30 days: {trend.predicted_severity_30_days:.1f}/5.0",
                        f"Trend velocity: +{trend.velocity:.2f} per week",
                        f"Confidence level: {_pct(trend.confidence_level, 0)}",
                    ],
                    suggested_actions=[
                        "Schedule immediate intervention planning session",
                        "Increase monitoring frequency for affected departments",
                        "Consider temporary policy adjustments",
                        "Engage external consultants if pattern persists",
                    ],
                    confidence=trend.confidence_level,
                    predicted_impact=PredictedImpact(
                        severity_change=trend.predicted_severity_30_days - pattern.severity_avg,
                        affected_users=math.ceil(pattern.unique_users * 1.3),
                        time_horizon_days=30,
                        business_impact=BusinessImpact.HIGH if escalating else BusinessImpact.MEDIUM,
                    ),
                ))

            if trend.trend_direction == TrendDirection.IMPROVING and trend.velocity < self.IMPROVEMENT_VELOCITY:
                insights.append(self._insight(
                    id_prefix="improvement",
                    subject=pattern.id,
                    now=now,
                    expiry="trend_opportunity",
                    type=InsightKind.OPPORTUNITY,
                    priority=InsightPriority.MEDIUM,
                    title=f"Positive Trend: {pattern.pattern_type}",
                    description=(
                        f"{pattern.pattern_type} is improving significantly. "
                        "This success could be replicated in other areas."
                    ),
                    evidence=[
                        f"Severity falling by {abs(trend.velocity):.2f} points per week",
                        "Predicted continued improvement over next 30 days",
                        f"Confidence in trend: {_pct(trend.confidence_level, 0)}",
                    ],
                    suggested_actions=[
                        "Document successful intervention strategies",
                        "Share best practices with other departments",
                        "Consider scaling successful approaches",
                        "Maintain current intervention momentum",
                    ],
                    confidence=trend.confidence_level,
                    predicted_impact=PredictedImpact(
                        severity_change=trend.predicted_severity_30_days - pattern.severity_avg,
                        affected_users=pattern.unique_users,
                        time_horizon_days=30,
                        business_impact=BusinessImpact.MEDIUM,
                    ),
                ))
        return insights

    def _anomaly_insights(self, patterns: Sequence[BehaviorPattern], now: datetime) -> list[PredictiveInsight]:
        insights = []
        cutoff = now - self.ANOMALY_RECENCY
        for pattern in patterns:
            recent = [a for a in self.anomaly_detector.detect_anomalies(pattern, now) if a.date > cutoff]
            if not recent:
                continue
            readings = ", ".join(f"{a.severity:.1f}" for a in recent)
            insights.append(self._insight(
                id_prefix="anomaly",
                subject=pattern.id,
                now=now,
                expiry="anomaly",
                type=InsightKind.ALERT,
                priority=InsightPriority.HIGH,
                title=f"Anomaly Detected: {pattern.pattern_type}",
                description=(
                    f"Unusual spike detected in {pattern.pattern_type}. "
                    "Pattern deviates significantly from normal behavior."
                ),
                evidence=[
                    f"{len(recent)} anomalous data points in past week",
                    f"Maximum deviation: {max(a.deviation_score for a in recent):.2f} standard deviations",
                    f"Recent readings: {readings}",
                ],
                suggested_actions=[
                    "Investigate root cause of sudden change",
                    "Interview affected team members",
                    "Review recent organizational changes",
                    "Consider immediate targeted intervention",
                ],
                confidence=self.ANOMALY_CONFIDENCE,
                predicted_impact=PredictedImpact(
                    severity_change=max(a.severity for a in recent) - pattern.severity_avg,
                    affected_users=math.ceil(pattern.unique_users * 1.5),
                    time_horizon_days=14,
                    business_impact=BusinessImpact.HIGH,
                ),
            ))
        return insights

    def _risk_insights(
        self,
        patterns: Sequence[BehaviorPattern],
        health: Sequence[DepartmentHealth],
        now: datetime,
    ) -> list[PredictiveInsight]:
        risk = self.risk_assessor.calculate_risk(patterns, health)
        if risk.overall_risk <= self.CRITICAL_RISK:
            return []
        return [self._insight(
            id_prefix="risk",
            subject="overall",
            now=now,
            expiry="risk",
            type=InsightKind.ALERT,
            priority=InsightPriority.CRITICAL,
            title="High Organizational Risk Detected",
            description=(
                "Organization-wide risk assessment indicates elevated concern levels "
                "across multiple behavioral patterns."
            ),
            evidence=[
                f"Overall risk score: {_pct(risk.overall_risk, 0)}",
                f"{len(risk.high_risk_patterns)} patterns flagged as high-risk",
                f"{len(risk.affected_departments)} departments showing concerning trends",
                f"Estimated impact on retention: {_pct(risk.retention_risk, 0)}",
            ],
            suggested_actions=[
                "Convene emergency leadership meeting",
                "Implement organization-wide culture assessment",
                "Fast-track highest-priority interventions",
                "Consider external organizational development support",
            ],
            confidence=risk.confidence,
            predicted_impact=PredictedImpact(
                severity_change=0.8,
                affected_users=risk.total_affected_users,
                time_horizon_days=60,
                business_impact=BusinessImpact.HIGH,
            ),
        )]

    def _intervention_insights(
        self,
        patterns: Sequence[BehaviorPattern],
        history: Sequence[InterventionRecord],
        now: datetime,
    ) -> list[PredictiveInsight]:
        insights = []
        for pattern in patterns:
            if pattern.severity_avg <= self.INTERVENTION_SEVERITY:
                continue
            rec = self.intervention_optimizer.recommend(pattern, history)
            insights.append(self._insight(
                id_prefix="intervention",
                subject=pattern.id,
                now=now,
                expiry="intervention",
                type=InsightKind.RECOMMENDATION,
                priority=InsightPriority.MEDIUM,
                title=f"Intervention Recommended: {rec.title}",
                description=(
                    f"Based on pattern analysis and historical data, {rec.intervention_type.value} "
                    f"intervention shows highest success probability for {pattern.pattern_type}."
                ),
                evidence=[
                    f"Estimated effectiveness: {_pct(rec.estimated_effectiveness, 0)}",
                    f"Projected ROI: {rec.estimated_roi:.1f}x",
                    f"Implementation complexity: {rec.implementation_complexity.value}",
                    f"Time to impact: {rec.time_to_impact_days} days",
                ],
                suggested_actions=[
                    "Schedule intervention planning workshop",
                    "Allocate budget for recommended approach",
                    "Identify internal champions and facilitators",
                    "Set up success metrics tracking",
                ],
                confidence=rec.estimated_effectiveness,
                predicted_impact=PredictedImpact(
                    severity_change=-1.2,
                    affected_users=pattern.unique_users,
                    time_horizon_days=rec.time_to_impact_days,
                    business_impact=BusinessImpact.MEDIUM,
                ),
            ))
        return insights

    def _opportunity_insights(self, health: Sequence[DepartmentHealth], now: datetime) -> list[PredictiveInsight]:
        insights = []
        for dept in health:
            if not (
                dept.avg_severity_score < self.STRONG_DEPARTMENT_SEVERITY
                and dept.participation_rate > self.STRONG_DEPARTMENT_PARTICIPATION
            ):
                continue
            insights.append(self._insight(
                id_prefix="opportunity",
                subject=dept.department,
                now=now,
                expiry="opportunity",
                type=InsightKind.OPPORTUNITY,
                priority=InsightPriority.LOW,
                title=f"Excellence Opportunity: {dept.department} Best Practices",
                description=(
                    f"{dept.department} demonstrates exceptional performance. "
                    "Consider leveraging their practices organization-wide."
                ),
                evidence=[
                    f"Low severity score: {dept.avg_severity_score:.1f}/5.0",
                    f"High participation: {dept.participation_rate:.1f}%",
                ],
                suggested_actions=[
                    "Document successful practices and policies",
                    "Conduct knowledge transfer sessions",
                    "Create mentorship programs with other departments",
                    "Develop case study for external sharing",
                ],
                confidence=self.OPPORTUNITY_CONFIDENCE,
                predicted_impact=PredictedImpact(
                    severity_change=-0.5,
                    affected_users=dept.member_count or 0,
                    time_horizon_days=90,
                    business_impact=BusinessImpact.MEDIUM,
                ),
            ))
        return insights
