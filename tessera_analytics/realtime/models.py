"""
Realtime analytics update models.

`AnalyticsUpdate.data` is a closed union keyed by `kind`; each update type
accepts its own variant plus `initial_snapshot`. On the wire every field is
camelCase and absent optionals are omitted.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class UpdateType(str, Enum):
    BEHAVIOR_PATTERN_CHANGE = "behavior_pattern_change"
    INTERVENTION_UPDATE = "intervention_update"
    NEW_INTERACTION = "new_interaction"
    HEALTH_SCORE_CHANGE = "health_score_change"


class Role(str, Enum):
    EXECUTIVE = "executive"
    HR = "hr"
    MANAGER = "manager"
    MEMBER = "member"


ROLE_PERMISSIONS: dict[Role, frozenset[UpdateType]] = {
    Role.EXECUTIVE: frozenset(UpdateType),
    Role.HR: frozenset({
        UpdateType.BEHAVIOR_PATTERN_CHANGE,
        UpdateType.INTERVENTION_UPDATE,
        UpdateType.HEALTH_SCORE_CHANGE,
    }),
    Role.MANAGER: frozenset({
        UpdateType.BEHAVIOR_PATTERN_CHANGE,
        UpdateType.HEALTH_SCORE_CHANGE,
    }),
    # Members only see interaction events
    Role.MEMBER: frozenset({UpdateType.NEW_INTERACTION}),
}

# Roles that receive affectedUsers and metadata
FULL_VIEW_ROLES = frozenset({Role.EXECUTIVE, Role.HR})


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class PatternChangeData(_WireModel):
    kind: Literal["pattern_change"] = "pattern_change"
    pattern: str
    old_severity: float
    new_severity: float
    affected_departments: list[str] = Field(default_factory=list)


class InterventionProgressData(_WireModel):
    kind: Literal["intervention_progress"] = "intervention_progress"
    intervention_id: str
    title: str
    status: str
    progress: int = Field(..., ge=0, le=100)
    effectiveness_score: Optional[float] = None


class InteractionData(_WireModel):
    kind: Literal["interaction"] = "interaction"
    interaction_type: str
    pattern: str
    severity: int = Field(..., ge=1, le=5)
    department: Optional[str] = None


class HealthScoreData(_WireModel):
    kind: Literal["health_score"] = "health_score"
    department: str
    old_score: float
    new_score: float
    trend: str = "stable"


class InitialSnapshotData(_WireModel):
    kind: Literal["initial_snapshot"] = "initial_snapshot"
    message: str = "Connected to real-time analytics"
    timestamp: datetime


UpdateData = Annotated[
    Union[PatternChangeData, InterventionProgressData, InteractionData, HealthScoreData, InitialSnapshotData],
    Field(discriminator="kind"),
]

DATA_KIND_FOR_TYPE = {
    UpdateType.BEHAVIOR_PATTERN_CHANGE: "pattern_change",
    UpdateType.INTERVENTION_UPDATE: "intervention_progress",
    UpdateType.NEW_INTERACTION: "interaction",
    UpdateType.HEALTH_SCORE_CHANGE: "health_score",
}


class UpdateMetadata(_WireModel):
    source: str
    department: Optional[str] = None
    correlation_id: Optional[str] = None


class AnalyticsUpdate(_WireModel):
    type: UpdateType
    organization_id: str = Field(..., min_length=1)
    data: UpdateData
    timestamp: datetime
    affected_users: Optional[list[str]] = None
    metadata: Optional[UpdateMetadata] = None

    @model_validator(mode="after")
    def _data_matches_type(self):
        allowed = {DATA_KIND_FOR_TYPE[self.type], "initial_snapshot"}
        if self.data.kind not in allowed:
            raise ValueError(f"data kind {self.data.kind!r} is not valid for update type {self.type.value}")
        return self

    def redacted(self) -> "AnalyticsUpdate":
        return self.model_copy(update={"affected_users": None, "metadata": None})

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def analytics_message(update: AnalyticsUpdate) -> dict:
    """Envelope pushed to clients."""
    return {"type": "analytics_update", "data": update.to_wire()}
