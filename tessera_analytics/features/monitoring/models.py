from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class AlertThreshold:
    metric: str
    threshold: float
    severity: AlertSeverity


DEFAULT_THRESHOLDS = (
    AlertThreshold("query_duration", 5000, AlertSeverity.HIGH),
    AlertThreshold("api_response_time", 3000, AlertSeverity.MEDIUM),
    AlertThreshold("cache_miss_rate", 0.8, AlertSeverity.MEDIUM),
    AlertThreshold("error_rate", 0.05, AlertSeverity.CRITICAL),
)


@dataclass
class PerformanceMetric:
    operation: str
    duration_ms: float
    timestamp: datetime
    success: bool
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "duration_ms": round(self.duration_ms, 3),
            "timestamp": self.timestamp.isoformat(),
            "success": self.success,
            "error": self.error,
            "metadata": self.metadata,
        }
