"""FastAPI application entrypoint.

Application startup order:
1. Load settings (from environment)
2. Configure structured logging
3. Validate the rate limit policy table and tier/model table (fatal)
4. Build the bucket store, limiter, admission controller and model router
5. Register middleware and include all routers

Shutdown order:
1. Close the bucket store (Redis connection pool)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from traffic_shaper.api.router import api_v1_router, public_router
from traffic_shaper.config import Settings, get_settings
from traffic_shaper.core.policies import RATE_LIMIT_POLICIES, validate_policy_table
from traffic_shaper.core.rate_limit import AdmissionController, TokenBucketLimiter
from traffic_shaper.core.tiers import InvalidCallerIdError
from traffic_shaper.infra.bucket_store import build_bucket_store
from traffic_shaper.middleware.prometheus import PrometheusMiddleware, get_metrics
from traffic_shaper.model_router.catalog import DEFAULT_MODELS, TIER_MODELS, validate_tier_table
from traffic_shaper.model_router.router import HybridRouter
from traffic_shaper.telemetry.logging import RequestIdMiddleware, configure_logging

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings

    # Configure structured logging first (before any log calls)
    configure_logging(
        json_logs=settings.is_prod,
        log_level="DEBUG" if settings.debug else "INFO",
    )

    log.info(
        "app.starting",
        environment=settings.environment.value,
        rate_limit_backend=settings.rate_limit_backend.value,
    )

    # Broken static tables must stop the process here, never at request time
    validate_policy_table(RATE_LIMIT_POLICIES)
    validate_tier_table(DEFAULT_MODELS, TIER_MODELS)

    store = await build_bucket_store(settings)
    limiter = TokenBucketLimiter(
        store,
        key_ttl_seconds=settings.rate_limit_key_ttl_seconds,
        max_cas_retries=settings.rate_limit_max_cas_retries,
    )

    app.state.bucket_store = store
    app.state.admission_controller = AdmissionController(limiter, RATE_LIMIT_POLICIES)
    app.state.model_router = HybridRouter.from_settings(settings)

    log.info("app.ready", bucket_store=store.name)
    yield

    await store.close()
    log.info("app.shutdown")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Application factory."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Traffic Shaper",
        description=(
            "Per-caller admission control and hybrid model routing for "
            "paid model invocations."
        ),
        version="0.1.0",
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
        openapi_url="/openapi.json" if settings.is_dev else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.dependency_overrides[get_settings] = lambda: settings

    # ------------------------------------------------------------------ #
    # Middleware (added in reverse order - last added = first executed)
    # ------------------------------------------------------------------ #

    # Prometheus metrics
    app.add_middleware(PrometheusMiddleware)

    # Request ID for log correlation
    app.add_middleware(RequestIdMiddleware)

    # ------------------------------------------------------------------ #
    # Routers
    # ------------------------------------------------------------------ #
    app.include_router(public_router)
    app.include_router(api_v1_router)

    # Prometheus metrics endpoint
    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Any:
        """Prometheus metrics endpoint."""
        return get_metrics()

    # ------------------------------------------------------------------ #
    # Global exception handlers
    # ------------------------------------------------------------------ #

    @app.exception_handler(InvalidCallerIdError)
    async def invalid_caller_handler(request: Request, exc: InvalidCallerIdError) -> JSONResponse:
        log.info("app.invalid_caller", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=400,
            content={"detail": {"code": "INVALID_CALLER", "message": str(exc)}},
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


# Module-level app instance for uvicorn
app = create_app()
