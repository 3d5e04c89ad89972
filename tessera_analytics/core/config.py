import logging
from typing import Optional
from urllib.parse import urlparse

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # External collaborators (all optional)
    REDIS_URL: Optional[str] = None  # absent = pure in-memory cache
    MONITORING_ENDPOINT: Optional[str] = None
    ALERT_WEBHOOK_URL: Optional[str] = None
    ALERT_TIMEOUT_SECONDS: float = 5.0

    # Demo mode: synthetic updates + startup cache warming
    DEMO_MODE: bool = False
    DEMO_ORGANIZATION_ID: str = "11111111-1111-1111-1111-111111111111"
    DEMO_UPDATE_INTERVAL_SECONDS: float = 30.0

    # Cache
    CACHE_MAX_SIZE: int = 1000
    CACHE_DEFAULT_TTL_SECONDS: float = 300.0
    CACHE_SWEEP_INTERVAL_SECONDS: float = 60.0

    # Monitoring / resilience
    METRICS_BUFFER_SIZE: int = 1000
    MONITORING_RATE_CHECK_INTERVAL_SECONDS: float = 60.0
    CIRCUIT_MAX_FAILURES: int = 5
    CIRCUIT_RESET_TIMEOUT_SECONDS: float = 60.0

    # Realtime
    REALTIME_DRAIN_INTERVAL_SECONDS: float = 2.0
    REALTIME_SWEEP_INTERVAL_SECONDS: float = 30.0
    REALTIME_STALE_AFTER_SECONDS: float = 300.0
    REALTIME_CHANNEL_SIZE: int = 100
    WS_ALLOWED_ORIGINS: str = "*"  # comma-separated

    # Insights
    INSIGHT_PURGE_INTERVAL_SECONDS: float = 3600.0

    # Scheduler loop granularity
    SCHEDULER_TICK_SECONDS: float = 1.0

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


def _is_valid_url(url: str) -> bool:
    parsed = urlparse(url)
    return bool(parsed.scheme and parsed.netloc)


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate optional endpoints and production requirements.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Only key names are logged, never values.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("tessera")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    problems = []
    for key in ("REDIS_URL", "MONITORING_ENDPOINT", "ALERT_WEBHOOK_URL"):
        value = getattr(cfg, key, None)
        if value and not _is_valid_url(value):
            problems.append(f"{key} is not a valid URL")

    if str(getattr(cfg, "ENV", "development")).lower() == "production":
        if not getattr(cfg, "ALERT_WEBHOOK_URL", None):
            problems.append("ALERT_WEBHOOK_URL is not set; alerts will only be logged")
        if getattr(cfg, "DEMO_MODE", False):
            problems.append("DEMO_MODE is enabled in production")

    if problems:
        message = "Configuration problems: " + "; ".join(problems)
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
