"""
tessera_analytics/tests/test_insights.py

Predictors and the InsightEngine passes.
"""

from datetime import timedelta

import pytest

from tessera_analytics.features.insights.models import (
    BusinessImpact,
    Complexity,
    DepartmentHealth,
    InsightKind,
    InsightPriority,
    InterventionKind,
    InterventionRecord,
    PredictedImpact,
    PredictiveInsight,
    TrendDirection,
)
from tessera_analytics.features.insights.predictors import (
    AnomalyDetector,
    InterventionOptimizer,
    RiskAssessor,
    TrendPredictor,
)
from tessera_analytics.features.insights.service import InsightEngine, sort_insights
from tessera_analytics.features.monitoring.service import MonitoringService


class TestTrendPredictor:
    def test_linear_series(self, pattern_factory):
        trend = TrendPredictor().analyze_trend(pattern_factory(severities=(2.0, 2.2, 2.4, 2.6)))

        assert trend.velocity == pytest.approx(0.2)
        assert trend.trend_direction == TrendDirection.DECLINING
        assert trend.predicted_severity_30_days == pytest.approx(3.4)
        assert trend.predicted_severity_90_days == pytest.approx(5.0)
        assert trend.confidence_level == pytest.approx(0.9)

    def test_improving_series_clamps_to_scale(self, pattern_factory):
        trend = TrendPredictor().analyze_trend(pattern_factory(severities=(4.0, 3.0, 2.0)))

        assert trend.trend_direction == TrendDirection.IMPROVING
        assert trend.predicted_severity_90_days == 1.0
        assert trend.confidence_level == pytest.approx(0.8)

    def test_short_series_returns_default_trend(self, pattern_factory):
        pattern = pattern_factory(severities=(3.0, 3.4), severity_avg=3.2)

        trend = TrendPredictor().analyze_trend(pattern)

        assert trend.trend_direction == TrendDirection.STABLE
        assert trend.velocity == 0.0
        assert trend.predicted_severity_30_days == 3.2
        assert trend.confidence_level == 0.3


class TestAnomalyDetector:
    def test_flags_outlier_dated_by_week(self, pattern_factory, fixed_now):
        pattern = pattern_factory(severities=(2.0,) * 9 + (5.0,))

        [anomaly] = AnomalyDetector().detect_anomalies(pattern, fixed_now)

        assert anomaly.severity == 5.0
        assert anomaly.deviation_score == pytest.approx(3.0)
        assert anomaly.date == fixed_now

    def test_flat_or_short_series_has_no_anomalies(self, pattern_factory, fixed_now):
        detector = AnomalyDetector()
        assert detector.detect_anomalies(pattern_factory(severities=(3.0,) * 8), fixed_now) == []
        assert detector.detect_anomalies(pattern_factory(severities=(1.0, 5.0, 1.0, 5.0)), fixed_now) == []


class TestRiskAssessor:
    def test_weighted_risk(self, pattern_factory):
        patterns = [
            pattern_factory("p1", severity_avg=4.0, unique_users=10),
            pattern_factory("p2", severity_avg=3.8, unique_users=5),
            pattern_factory("p3", severity_avg=2.0, unique_users=7),
        ]
        health = [
            DepartmentHealth(department="Engineering", avg_severity_score=3.5, participation_rate=70.0),
            DepartmentHealth(department="Sales", avg_severity_score=3.1, participation_rate=60.0),
        ]

        risk = RiskAssessor().calculate_risk(patterns, health)

        assert risk.overall_risk == pytest.approx(0.8)
        assert risk.retention_risk == pytest.approx(0.24)
        assert risk.affected_departments == ["Engineering", "Sales"]
        assert risk.total_affected_users == 22
        assert risk.confidence == 0.75

    def test_empty_inputs_have_zero_risk(self):
        risk = RiskAssessor().calculate_risk([], [])
        assert risk.overall_risk == 0.0
        assert risk.high_risk_patterns == []


class TestInterventionOptimizer:
    def test_recommendation_uses_category_archetype(self, pattern_factory):
        rec = InterventionOptimizer().recommend(pattern_factory(category="Communication"))

        assert rec.intervention_type == InterventionKind.WORKSHOP
        assert rec.estimated_roi == pytest.approx(7.5)
        assert rec.implementation_complexity == Complexity.MEDIUM
        assert rec.target_departments == ["Engineering"]
        assert rec.similar_case_studies[0].organization_type == "Technology Company"

    def test_unknown_category_falls_back_to_process(self, pattern_factory):
        rec = InterventionOptimizer().recommend(pattern_factory(category="Facilities", department=None))

        assert rec.intervention_type == InterventionKind.TRAINING
        assert rec.target_departments == ["All"]

    def test_case_studies_come_from_completed_history(self, pattern_factory):
        history = [
            InterventionRecord(id="1", title="Workshop", intervention_type="workshop", status="completed", effectiveness_score=4.0, duration_days=28),
            InterventionRecord(id="2", title="Workshop 2", intervention_type="workshop", status="active", effectiveness_score=4.5),
            InterventionRecord(id="3", title="Coaching", intervention_type="coaching", status="completed", effectiveness_score=5.0),
        ]

        rec = InterventionOptimizer().recommend(pattern_factory(category="Communication"), history)

        [case] = rec.similar_case_studies
        assert case.effectiveness_achieved == pytest.approx(0.8)
        assert case.duration_days == 28


def _insight(priority, confidence, now):
    return PredictiveInsight(
        id=f"{priority.value}_{confidence}",
        type=InsightKind.ALERT,
        priority=priority,
        title="t",
        description="d",
        evidence=["e"],
        suggested_actions=["a"],
        confidence=confidence,
        predicted_impact=PredictedImpact(
            severity_change=0.0, affected_users=0, time_horizon_days=1, business_impact=BusinessImpact.LOW
        ),
        expires_at=now + timedelta(days=1),
        created_at=now,
    )


def test_sort_insights_by_priority_then_confidence(fixed_now):
    ordered = sort_insights([
        _insight(InsightPriority.MEDIUM, 0.9, fixed_now),
        _insight(InsightPriority.CRITICAL, 0.4, fixed_now),
        _insight(InsightPriority.HIGH, 0.95, fixed_now),
        _insight(InsightPriority.HIGH, 0.5, fixed_now),
    ])

    assert [(i.priority, i.confidence) for i in ordered] == [
        (InsightPriority.CRITICAL, 0.4),
        (InsightPriority.HIGH, 0.95),
        (InsightPriority.HIGH, 0.5),
        (InsightPriority.MEDIUM, 0.9),
    ]


class TestInsightEngine:
    @pytest.fixture
    def inputs(self, pattern_factory):
        patterns = [pattern_factory("p1", (2.0, 2.5, 3.0, 3.5, 4.0))]
        health = [DepartmentHealth(department="HR", avg_severity_score=2.0, participation_rate=90.0, member_count=12)]
        return patterns, health, []

    @pytest.mark.asyncio
    async def test_generate_runs_passes_and_sorts(self, inputs, fixed_now):
        engine = InsightEngine()

        insights = await engine.generate_insights("o1", *inputs, now=fixed_now)

        assert [i.id.split("_")[0] for i in insights] == ["trend", "intervention", "opportunity"]
        trend = insights[0]
        assert trend.priority == InsightPriority.CRITICAL
        assert trend.predicted_impact.affected_users == 13
        assert trend.predicted_impact.business_impact == BusinessImpact.HIGH
        assert trend.expires_at == fixed_now + timedelta(days=7)
        assert trend.id == f"trend_p1_{int(fixed_now.timestamp() * 1000)}"
        assert insights[2].predicted_impact.affected_users == 12
        assert all(i.evidence for i in insights)

    @pytest.mark.asyncio
    async def test_generate_replaces_cached_list(self, inputs, fixed_now):
        engine = InsightEngine()
        await engine.generate_insights("o1", *inputs, now=fixed_now)

        await engine.generate_insights("o1", [], [], [], now=fixed_now)

        assert engine.get_insights("o1") == []
        assert engine.get_insights("unknown") == []

    @pytest.mark.asyncio
    async def test_clear_expired_insights(self, inputs, fixed_now):
        engine = InsightEngine()
        await engine.generate_insights("o1", *inputs, now=fixed_now)

        removed = engine.clear_expired_insights(fixed_now + timedelta(days=8))

        assert removed == 1
        assert [i.id.split("_")[0] for i in engine.get_insights("o1")] == ["intervention", "opportunity"]

    @pytest.mark.asyncio
    async def test_naive_now_is_treated_as_utc(self, inputs, fixed_now):
        engine = InsightEngine()
        insights = await engine.generate_insights("o1", *inputs, now=fixed_now.replace(tzinfo=None))

        assert insights[0].expires_at == fixed_now + timedelta(days=7)
        assert engine.clear_expired_insights(fixed_now + timedelta(days=8)) == 1
        assert engine.clear_expired_insights((fixed_now + timedelta(days=61)).replace(tzinfo=None)) == 2

    @pytest.mark.asyncio
    async def test_high_risk_and_anomaly_insights(self, pattern_factory, fixed_now):
        patterns = [
            pattern_factory("spike", (2.0,) * 9 + (5.0,), severity_avg=4.2, unique_users=20),
        ]
        health = [DepartmentHealth(department="Sales", avg_severity_score=3.6, participation_rate=40.0)]

        insights = await InsightEngine().generate_insights("o1", patterns, health, [], now=fixed_now)
        by_prefix = {i.id.split("_")[0]: i for i in insights}

        assert insights[0].id.startswith("risk_overall_")
        assert by_prefix["risk"].confidence == 0.75
        assert by_prefix["risk"].expires_at == fixed_now + timedelta(days=3)
        assert by_prefix["anomaly"].priority == InsightPriority.HIGH
        assert by_prefix["anomaly"].predicted_impact.affected_users == 30

    @pytest.mark.asyncio
    async def test_generation_is_tracked_by_monitoring(self, inputs, fixed_now):
        monitoring = MonitoringService(now_fn=lambda: fixed_now)
        engine = InsightEngine(monitoring=monitoring)

        await engine.generate_insights("o1", *inputs, now=fixed_now)

        [metric] = monitoring.get_metrics()
        assert metric.operation == "ai_insights_generation"
        assert metric.metadata == {"organization_id": "o1"}

    def test_analyze_pattern_attaches_anomalies(self, pattern_factory, fixed_now):
        analysis = InsightEngine().analyze_pattern(pattern_factory(severities=(2.0,) * 9 + (5.0,)), now=fixed_now)

        assert len(analysis.anomalies) == 1
        assert analysis.pattern_id == "p1"
