# tessera_analytics/conftest.py
from datetime import datetime, timezone

import pytest

from tessera_analytics.core.config import Settings
from tessera_analytics.features.insights.models import BehaviorPattern, TrendPoint


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fixed_now():
    """Fixed timestamp for deterministic testing."""
    return datetime(2025, 12, 21, 15, 30, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings():
    return Settings(
        ENV="test",
        DEMO_MODE=False,
        REDIS_URL=None,
        MONITORING_ENDPOINT=None,
        ALERT_WEBHOOK_URL=None,
        WS_ALLOWED_ORIGINS="*",
    )


def make_pattern(pattern_id="p1", severities=(2.0, 2.2, 2.4, 2.6), **overrides) -> BehaviorPattern:
    fields = dict(
        id=pattern_id,
        pattern_type="conflict_avoidance",
        category="Communication",
        severity_avg=severities[-1] if severities else 3.0,
        unique_users=10,
        department="Engineering",
        trend_data=[TrendPoint(week=i, severity=s) for i, s in enumerate(severities)],
    )
    fields.update(overrides)
    return BehaviorPattern(**fields)


@pytest.fixture
def pattern_factory():
    return make_pattern
