"""
tessera_analytics/tests/test_core.py

Scheduler, configuration validation, error taxonomy, metrics and logging.
"""

import json
import logging

import pytest

from tessera_analytics.core.config import Settings, validate_config
from tessera_analytics.core.errors import (
    AccessDeniedError,
    DatabaseError,
    PrivacyViolationError,
    handle_database_error,
    handle_privacy_violation,
    handle_role_access_denied,
)
from tessera_analytics.core.logging import JsonFormatter, latency_bucket_ms
from tessera_analytics.core.metrics import MetricsRegistry, normalize_path
from tessera_analytics.core.scheduler import Scheduler


class TestScheduler:
    @pytest.mark.asyncio
    async def test_jobs_run_when_interval_elapses(self, clock):
        scheduler = Scheduler(time_fn=clock)
        runs = []
        scheduler.every("sweep", 10, lambda: runs.append("sweep"))

        assert await scheduler.run_due() == []
        clock.advance(10)
        assert await scheduler.run_due() == ["sweep"]
        assert await scheduler.run_due() == []
        assert runs == ["sweep"]

    @pytest.mark.asyncio
    async def test_async_jobs_and_failures_are_recorded(self, clock):
        scheduler = Scheduler(time_fn=clock)
        calls = []

        async def drain():
            calls.append("drain")

        def broken():
            raise RuntimeError("boom")

        scheduler.every("drain", 1, drain)
        scheduler.every("broken", 1, broken)
        clock.advance(1)

        assert await scheduler.run_due() == ["drain", "broken"]
        jobs = scheduler.inspect()
        assert calls == ["drain"]
        assert jobs["broken"]["error_count"] == 1
        assert jobs["broken"]["last_error"] == "RuntimeError: boom"
        assert jobs["drain"]["run_count"] == 1

    @pytest.mark.asyncio
    async def test_pause_resume_and_step(self, clock):
        scheduler = Scheduler(time_fn=clock)
        runs = []
        scheduler.every("purge", 5, lambda: runs.append(1))

        scheduler.pause("purge")
        clock.advance(5)
        assert await scheduler.run_due() == []

        await scheduler.step("purge")
        assert runs == [1]

        scheduler.resume()
        clock.advance(5)
        assert await scheduler.run_due() == ["purge"]

        with pytest.raises(KeyError):
            await scheduler.step("missing")

    def test_registration_is_validated(self, clock):
        scheduler = Scheduler(time_fn=clock)
        scheduler.every("a", 1, lambda: None)

        with pytest.raises(ValueError):
            scheduler.every("a", 1, lambda: None)
        with pytest.raises(ValueError):
            scheduler.every("b", 0, lambda: None)


class TestConfig:
    def test_defaults_are_valid(self, settings):
        assert validate_config(strict=True, settings_obj=settings) is True

    def test_invalid_url_raises_in_strict_mode(self):
        cfg = Settings(ALERT_WEBHOOK_URL="not-a-url")

        with pytest.raises(RuntimeError, match="ALERT_WEBHOOK_URL"):
            validate_config(strict=True, settings_obj=cfg)

    def test_production_problems_only_warn_when_not_strict(self, caplog):
        cfg = Settings(ENV="production", DEMO_MODE=True)
        logger = logging.getLogger("tessera.config-test")

        with caplog.at_level(logging.WARNING, logger="tessera.config-test"):
            assert validate_config(strict=False, settings_obj=cfg, logger=logger) is True

        assert "DEMO_MODE is enabled in production" in caplog.text


class TestErrors:
    def test_database_error_wraps_original(self):
        original = ConnectionError("refused")

        with pytest.raises(DatabaseError) as exc_info:
            handle_database_error(original, "fetch_patterns")

        error = exc_info.value
        assert error.original_error is original
        assert error.to_dict()["code"] == "DATABASE_ERROR"
        assert error.metadata["severity"] == "high"
        assert error.metadata["context"] == "fetch_patterns"

    def test_privacy_violation_is_critical(self):
        with pytest.raises(PrivacyViolationError) as exc_info:
            handle_privacy_violation("raw rows", "export")

        assert exc_info.value.severity == "critical"
        assert exc_info.value.status_code == 500

    def test_access_denied(self):
        with pytest.raises(AccessDeniedError) as exc_info:
            handle_role_access_denied("u1", "member", "insights")

        assert exc_info.value.status_code == 403
        assert exc_info.value.metadata["resource"] == "insights"


class TestMetrics:
    def test_prometheus_export(self):
        registry = MetricsRegistry()
        lookups = registry.counter("lookups_total", label_names=["result"])
        lookups.inc(labels={"result": "hit"})
        lookups.inc(labels={"result": "hit"})

        text = registry.export_prometheus()

        assert "# TYPE lookups_total counter" in text
        assert 'lookups_total{result="hit"} 2.0' in text

    def test_normalize_path_collapses_ids(self):
        assert normalize_path("/api/views/3f2a1c9e-1111-2222-3333-444455556666/patterns") == "/api/views/:id/patterns"


class TestLogging:
    def test_json_formatter_includes_context(self):
        record = logging.LogRecord("tessera", logging.INFO, __file__, 1, "cache.hit", None, None)
        record.request_id = "rid-1"
        record.organization_id = "o1"

        payload = json.loads(JsonFormatter().format(record))

        assert payload["message"] == "cache.hit"
        assert payload["request_id"] == "rid-1"
        assert payload["organization_id"] == "o1"

    def test_latency_buckets(self):
        assert latency_bucket_ms(None) == "unknown"
        assert latency_bucket_ms(5) != latency_bucket_ms(5000)
