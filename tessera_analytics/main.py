import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from tessera_analytics import __version__
from tessera_analytics.api import health, insights, monitoring, realtime, views
from tessera_analytics.container import AnalyticsServices, build_services
from tessera_analytics.core.config import Settings, settings as default_settings, validate_config
from tessera_analytics.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from tessera_analytics.core.logging import configure_logging
from tessera_analytics.core.middleware.request_context import RequestContextMiddleware


def create_app(settings: Optional[Settings] = None, services: Optional[AnalyticsServices] = None) -> FastAPI:
    """Build the ASGI app. Tests pass their own `services` to control clocks and sources."""
    cfg = settings or (services.settings if services is not None else default_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger("tessera")
        configure_logging(cfg.ENV)
        validate_config(strict=cfg.CONFIG_STRICT, settings_obj=cfg)
        logger.info("Starting Tessera analytics...")
        app.state.services.scheduler.start(cfg.SCHEDULER_TICK_SECONDS)
        if cfg.DEMO_MODE:
            try:
                await app.state.services.views.warm_cache(cfg.DEMO_ORGANIZATION_ID)
            except AppError as exc:
                logger.warning("views.warm_failed", extra={"error_code": exc.code})
        try:
            yield
        finally:
            logger.info("Stopping Tessera analytics...")
            await app.state.services.aclose()

    app = FastAPI(title="Tessera Analytics", version=__version__, lifespan=lifespan)
    app.state.services = services or build_services(cfg)

    app.add_middleware(RequestContextMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in cfg.WS_ALLOWED_ORIGINS.split(",") if o.strip()] or ["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(monitoring.prometheus_router)
    app.include_router(monitoring.router)
    app.include_router(views.router)
    app.include_router(insights.router)
    app.include_router(realtime.router)
    return app


app = create_app()
