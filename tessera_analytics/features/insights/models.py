"""
Insight Engine - Data Models

Pydantic models for the engine's inputs (behavior patterns, department
health, intervention history) and outputs (trend analyses, predictive
insights, intervention recommendations). Outputs are frozen.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class InsightKind(str, Enum):
    """Kinds of predictive insight."""
    ALERT = "alert"
    OPPORTUNITY = "opportunity"
    RECOMMENDATION = "recommendation"
    FORECAST = "forecast"


class InsightPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


PRIORITY_WEIGHT = {
    InsightPriority.CRITICAL: 4,
    InsightPriority.HIGH: 3,
    InsightPriority.MEDIUM: 2,
    InsightPriority.LOW: 1,
}


class BusinessImpact(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TrendDirection(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class InterventionKind(str, Enum):
    WORKSHOP = "workshop"
    COACHING = "coaching"
    TRAINING = "training"
    STRUCTURAL = "structural"
    POLICY_CHANGE = "policy_change"


class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ---- inputs -----------------------------------------------------------------


class TrendPoint(BaseModel):
    """One weekly observation; higher severity is worse (scale 1-5)."""
    week: int
    severity: float


class BehaviorPattern(BaseModel):
    id: str
    pattern_type: str
    category: str = "Process"
    severity_avg: float = Field(..., ge=0.0, le=5.0)
    unique_users: int = Field(0, ge=0)
    department: Optional[str] = None
    trend_data: list[TrendPoint] = Field(default_factory=list)
    environmental_factors: list[str] = Field(default_factory=list)


class DepartmentHealth(BaseModel):
    department: str
    avg_severity_score: float
    participation_rate: float = Field(..., description="Percentage, 0-100")
    member_count: Optional[int] = None
    previous_severity_score: Optional[float] = None


class InterventionRecord(BaseModel):
    id: str
    title: str
    intervention_type: str
    category: Optional[str] = None
    status: str = "planned"
    effectiveness_score: Optional[float] = None
    roi: Optional[float] = None
    duration_days: Optional[int] = None


# ---- outputs ----------------------------------------------------------------


class Anomaly(BaseModel):
    date: datetime
    severity: float
    deviation_score: float

    model_config = ConfigDict(frozen=True)


class TrendAnalysis(BaseModel):
    pattern_id: str
    pattern_name: str
    current_severity: float
    trend_direction: TrendDirection
    velocity: float = Field(..., description="Regression slope, severity points per week")
    predicted_severity_30_days: float
    predicted_severity_90_days: float
    confidence_level: float = Field(..., ge=0.0, le=1.0)
    contributing_factors: list[str] = Field(default_factory=list)
    seasonality_detected: bool = False
    anomalies: list[Anomaly] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class PredictedImpact(BaseModel):
    severity_change: float
    affected_users: int
    time_horizon_days: int
    business_impact: BusinessImpact

    model_config = ConfigDict(frozen=True)


class PredictiveInsight(BaseModel):
    """
    One prioritized, expiring insight for an organization.

    Always carries `evidence` so the reasoning is inspectable.
    """
    id: str
    type: InsightKind
    priority: InsightPriority
    title: str
    description: str
    evidence: list[str]
    suggested_actions: list[str]
    confidence: float = Field(..., ge=0.0, le=1.0)
    predicted_impact: PredictedImpact
    expires_at: datetime
    created_at: datetime

    model_config = ConfigDict(frozen=True)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class CaseStudy(BaseModel):
    organization_type: str
    effectiveness_achieved: float
    duration_days: int

    model_config = ConfigDict(frozen=True)


class InterventionRecommendation(BaseModel):
    pattern_id: str
    intervention_type: InterventionKind
    title: str
    description: str
    estimated_effectiveness: float = Field(..., ge=0.0, le=1.0)
    estimated_cost: float
    estimated_roi: float
    implementation_complexity: Complexity
    time_to_impact_days: int
    target_departments: list[str]
    success_metrics: list[str]
    similar_case_studies: list[CaseStudy]

    model_config = ConfigDict(frozen=True)


class RiskAssessment(BaseModel):
    overall_risk: float = Field(..., ge=0.0, le=1.0)
    high_risk_patterns: list[str]
    affected_departments: list[str]
    retention_risk: float
    confidence: float
    total_affected_users: int

    model_config = ConfigDict(frozen=True)


class GenerateInsightsRequest(BaseModel):
    patterns: list[BehaviorPattern] = Field(default_factory=list)
    health: list[DepartmentHealth] = Field(default_factory=list)
    history: list[InterventionRecord] = Field(default_factory=list)


class InsightsResponse(BaseModel):
    organization_id: str
    insights: list[PredictiveInsight]
    computed_at: datetime

    model_config = ConfigDict(frozen=True)
