"""FastAPI application entrypoint.

Application startup order:
1. Load settings (from environment)
2. Configure structured logging
3. Build the hub and register every configured provider
4. Start the hub's health / metrics monitor

Shutdown order:
1. Stop the monitor and shut every provider down
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from model_hub.api import router as hub_router
from model_hub.config import Settings, get_settings
from model_hub.exceptions import (
    AllFallbacksExhausted,
    BudgetExceeded,
    ModelHubError,
    ModelNotFound,
    NoEligibleModels,
    ProviderNotFound,
    ProviderUnavailable,
    UpstreamCallFailed,
)
from model_hub.hub import ModelHub
from model_hub.telemetry.logging import configure_logging
from model_hub.telemetry.prometheus import PrometheusMiddleware, get_metrics

log = structlog.get_logger(__name__)

# Most specific first; the first isinstance match wins
_ERROR_STATUS: list[tuple[type[ModelHubError], int]] = [
    (ProviderNotFound, status.HTTP_404_NOT_FOUND),
    (ModelNotFound, status.HTTP_404_NOT_FOUND),
    (BudgetExceeded, status.HTTP_402_PAYMENT_REQUIRED),
    (ProviderUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (AllFallbacksExhausted, status.HTTP_503_SERVICE_UNAVAILABLE),
    (NoEligibleModels, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (UpstreamCallFailed, status.HTTP_502_BAD_GATEWAY),
]


def status_for(exc: ModelHubError) -> int:
    for exc_type, code in _ERROR_STATUS:
        if isinstance(exc, exc_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings

    configure_logging(
        json_logs=settings.use_json_logs,
        log_level="DEBUG" if settings.debug else settings.log_level,
    )
    log.info("app.starting", environment=settings.environment.value)

    if getattr(app.state, "hub", None) is None:
        app.state.hub = await ModelHub.from_settings(settings)
    hub: ModelHub = app.state.hub
    await hub.start()

    log.info("app.ready", providers=[p.id for p in hub.list_providers()])
    yield

    await hub.shutdown()
    log.info("app.shutdown")


def create_app(settings: Settings | None = None, hub: ModelHub | None = None) -> FastAPI:
    """Application factory.

    Args:
        settings: Settings to use instead of the environment
        hub: Pre-built hub; when omitted one is built from settings at startup
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Model Routing Hub",
        description="Routes chat requests across AI model providers by cost, latency and quality.",
        version="0.1.0",
        docs_url=None if settings.is_prod else "/docs",
        redoc_url=None if settings.is_prod else "/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.hub = hub

    app.add_middleware(PrometheusMiddleware)
    app.include_router(hub_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Any:
        """Prometheus metrics endpoint."""
        return get_metrics()

    # ------------------------------------------------------------------ #
    # Exception handlers
    # ------------------------------------------------------------------ #

    @app.exception_handler(ModelHubError)
    async def hub_error_handler(request: Request, exc: ModelHubError) -> JSONResponse:
        code = status_for(exc)
        log.warning(
            "app.hub_error",
            path=request.url.path,
            error_type=type(exc).__name__,
            error=str(exc),
            status_code=code,
        )
        return JSONResponse(
            status_code=code,
            content={"detail": str(exc), "error_type": type(exc).__name__},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "app.unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    return app
