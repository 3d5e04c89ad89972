"""
Operation tracking, threshold alerts and the in-memory metrics window.

Alert and metric delivery is fire-and-forget: payloads are handed to
background tasks, and failures there are logged without reaching the
caller of `track_operation`. `flush()` waits for whatever is in flight.
"""

import asyncio
import functools
import logging
import time
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set, TypeVar

import httpx

from tessera_analytics.core.logging import audit_log, log_event
from tessera_analytics.core.metrics import alerts_total, operations_total
from tessera_analytics.features.monitoring.models import (
    DEFAULT_THRESHOLDS,
    AlertThreshold,
    PerformanceMetric,
)
from tessera_analytics.features.resilience.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

T = TypeVar("T")

SERVICE_NAME = "tessera-analytics"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MonitoringService:
    def __init__(
        self,
        *,
        environment: str = "development",
        alert_webhook_url: Optional[str] = None,
        monitoring_endpoint: Optional[str] = None,
        buffer_size: int = 1000,
        thresholds: Iterable[AlertThreshold] = DEFAULT_THRESHOLDS,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 5.0,
        alert_breaker: Optional[CircuitBreaker] = None,
        now_fn: Callable[[], datetime] = _utcnow,
        perf_fn: Callable[[], float] = time.perf_counter,
    ):
        self.environment = environment
        self.alert_webhook_url = alert_webhook_url
        self.monitoring_endpoint = monitoring_endpoint
        self.thresholds: Dict[str, AlertThreshold] = {t.metric: t for t in thresholds}
        self.alert_breaker = alert_breaker or CircuitBreaker("alert_webhook")
        self._metrics: Deque[PerformanceMetric] = deque(maxlen=buffer_size)
        self._client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout_seconds
        self._pending: Set[asyncio.Task] = set()
        self.now_fn = now_fn
        self.perf_fn = perf_fn

    # ---- tracking ------------------------------------------------------------

    async def track_operation(
        self,
        name: str,
        operation: Callable[[], Awaitable[T]],
        metadata: Optional[Dict[str, Any]] = None,
        threshold_metric: str = "query_duration",
    ) -> T:
        metadata = dict(metadata or {})
        timestamp = self.now_fn()
        started = self.perf_fn()
        try:
            result = await operation()
        except Exception as exc:
            duration_ms = (self.perf_fn() - started) * 1000
            self._record(PerformanceMetric(name, duration_ms, timestamp, False, str(exc) or type(exc).__name__, metadata))
            await self.send_alert("error_occurred", {
                "operation": name,
                "error": str(exc) or type(exc).__name__,
                "duration_ms": round(duration_ms, 3),
                "metadata": metadata,
            })
            logger.error("operation.failed", extra={"operation": name, "duration_ms": round(duration_ms, 3)})
            raise

        duration_ms = (self.perf_fn() - started) * 1000
        self._record(PerformanceMetric(name, duration_ms, timestamp, True, None, metadata))
        threshold = self.thresholds.get(threshold_metric)
        if threshold and duration_ms > threshold.threshold:
            await self.send_alert("slow_query", {
                "operation": name,
                "duration_ms": round(duration_ms, 3),
                "threshold": threshold.threshold,
                "severity": threshold.severity.value,
            })
        logger.debug("operation.completed", extra={"operation": name, "duration_ms": round(duration_ms, 3)})
        return result

    async def check_response_time(self, route: str, duration_ms: float) -> bool:
        """Fire `slow_response` when an HTTP request exceeds `api_response_time`."""
        threshold = self.thresholds.get("api_response_time")
        if threshold is None or duration_ms <= threshold.threshold:
            return False
        await self.send_alert("slow_response", {
            "route": route,
            "duration_ms": round(duration_ms, 3),
            "threshold": threshold.threshold,
            "severity": threshold.severity.value,
        })
        return True

    def _record(self, metric: PerformanceMetric) -> None:
        self._metrics.append(metric)
        operations_total.inc(labels={"success": str(metric.success).lower()})
        if self.monitoring_endpoint:
            self._spawn(self._forward_metric(metric))

    # ---- alerting ------------------------------------------------------------

    async def send_alert(self, alert_type: str, details: Dict[str, Any]) -> Dict[str, Any]:
        alert = {
            "type": alert_type,
            "timestamp": self.now_fn().isoformat(),
            "details": details,
            "environment": self.environment,
        }
        log_event("warning", "alert.raised", event_type=alert_type, extra={"details": details})
        self._spawn(self._deliver_alert(alert))
        return alert

    async def _deliver_alert(self, alert: Dict[str, Any]) -> None:
        try:
            audit_log("alert", alert)
        except Exception:
            logger.exception("alert.audit_failed", extra={"event_type": alert["type"]})

        if not self.alert_webhook_url:
            alerts_total.inc(labels={"type": alert["type"], "outcome": "logged"})
            return

        async def _post():
            response = await self._http().post(self.alert_webhook_url, json=alert)
            response.raise_for_status()
            return response

        try:
            await self.alert_breaker.execute(_post)
        except Exception as exc:
            alerts_total.inc(labels={"type": alert["type"], "outcome": "failed"})
            logger.error(
                "alert.delivery_failed",
                extra={"event_type": alert["type"], "error_code": type(exc).__name__},
            )
            return
        alerts_total.inc(labels={"type": alert["type"], "outcome": "sent"})

    async def _forward_metric(self, metric: PerformanceMetric) -> None:
        payload = {
            "service": SERVICE_NAME,
            "metric": metric.operation,
            "value": metric.duration_ms,
            "timestamp": metric.timestamp.isoformat(),
            "success": metric.success,
            "tags": {"environment": self.environment, **{k: str(v) for k, v in metric.metadata.items()}},
        }
        try:
            response = await self._http().post(self.monitoring_endpoint, json=payload)
            response.raise_for_status()
        except Exception as exc:
            logger.warning("metrics.forward_failed", extra={"operation": metric.operation, "error_code": type(exc).__name__})

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def flush(self) -> None:
        """Wait for in-flight alert and metric deliveries."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.flush()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ---- reading -------------------------------------------------------------

    def get_metrics(self, time_window: float = 3600) -> List[PerformanceMetric]:
        cutoff = self.now_fn() - timedelta(seconds=time_window)
        return [m for m in self._metrics if m.timestamp > cutoff]

    def get_performance_stats(self, operation: Optional[str] = None) -> Dict[str, float]:
        metrics = [m for m in self._metrics if operation is None or m.operation == operation]
        if not metrics:
            return {"count": 0, "avg_duration_ms": 0.0, "success_rate": 0.0, "p95_duration_ms": 0.0, "error_count": 0}

        durations = sorted(m.duration_ms for m in metrics)
        success_count = sum(1 for m in metrics if m.success)
        p95_index = min(int(len(durations) * 0.95), len(durations) - 1)
        return {
            "count": len(metrics),
            "avg_duration_ms": sum(durations) / len(durations),
            "success_rate": success_count / len(metrics),
            "p95_duration_ms": durations[p95_index],
            "error_count": len(metrics) - success_count,
        }

    async def check_rate_thresholds(self, cache_stats: Optional[Dict[str, Any]] = None, time_window: float = 3600) -> List[str]:
        """Compare windowed error rate and cache miss rate against the table."""
        fired = []
        recent = self.get_metrics(time_window)
        error_threshold = self.thresholds.get("error_rate")
        if recent and error_threshold:
            error_rate = sum(1 for m in recent if not m.success) / len(recent)
            if error_rate > error_threshold.threshold:
                await self.send_alert("high_error_rate", {
                    "error_rate": round(error_rate, 4),
                    "threshold": error_threshold.threshold,
                    "severity": error_threshold.severity.value,
                    "window_seconds": time_window,
                })
                fired.append("high_error_rate")

        miss_threshold = self.thresholds.get("cache_miss_rate")
        if cache_stats and miss_threshold:
            lookups = cache_stats.get("hits", 0) + cache_stats.get("misses", 0)
            if lookups:
                miss_rate = cache_stats.get("misses", 0) / lookups
                if miss_rate > miss_threshold.threshold:
                    await self.send_alert("high_cache_miss_rate", {
                        "miss_rate": round(miss_rate, 4),
                        "threshold": miss_threshold.threshold,
                        "severity": miss_threshold.severity.value,
                    })
                    fired.append("high_cache_miss_rate")
        return fired


def track_performance(name: Optional[str] = None):
    """Wrap a coroutine method in its owner's `monitoring.track_operation`."""

    def decorator(func):
        operation_name = name or func.__qualname__

        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            monitoring = getattr(self, "monitoring", None)
            if monitoring is None:
                return await func(self, *args, **kwargs)
            return await monitoring.track_operation(operation_name, lambda: func(self, *args, **kwargs))

        return wrapper

    return decorator
