import random
from datetime import datetime, timezone
from typing import Callable, Optional

from tessera_analytics.realtime.models import (
    AnalyticsUpdate,
    HealthScoreData,
    InteractionData,
    InterventionProgressData,
    PatternChangeData,
    UpdateMetadata,
    UpdateType,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DemoUpdateGenerator:
    """Publishes one random update per call for the demo organization."""

    SOURCE = "demo_generator"

    def __init__(
        self,
        broadcaster,
        organization_id: str,
        rng: Optional[random.Random] = None,
        now_fn: Callable[[], datetime] = _utcnow,
    ):
        self.broadcaster = broadcaster
        self.organization_id = organization_id
        self.rng = rng or random.Random()
        self.now_fn = now_fn

    def build(self, update_type: Optional[UpdateType] = None) -> AnalyticsUpdate:
        update_type = update_type or self.rng.choice(list(UpdateType))
        if update_type == UpdateType.BEHAVIOR_PATTERN_CHANGE:
            data = PatternChangeData(
                pattern="Communication Breakdowns",
                old_severity=3.2,
                new_severity=3.4,
                affected_departments=["Engineering", "Marketing"],
            )
        elif update_type == UpdateType.INTERVENTION_UPDATE:
            data = InterventionProgressData(
                intervention_id="int-123",
                title="Communication Workshop Series",
                status="in_progress",
                progress=self.rng.randint(0, 99),
                effectiveness_score=round(3 + self.rng.random() * 2, 1),
            )
        elif update_type == UpdateType.NEW_INTERACTION:
            data = InteractionData(
                interaction_type="vote",
                pattern="Meeting Overload",
                severity=self.rng.randint(1, 5),
                department="Engineering",
            )
        else:
            data = HealthScoreData(department="Marketing", old_score=7.8, new_score=8.1, trend="improving")

        return AnalyticsUpdate(
            type=update_type,
            organization_id=self.organization_id,
            data=data,
            timestamp=self.now_fn(),
            metadata=UpdateMetadata(source=self.SOURCE),
        )

    async def emit(self, update_type: Optional[UpdateType] = None) -> AnalyticsUpdate:
        update = self.build(update_type)
        await self.broadcaster.broadcast_update(update)
        return update
