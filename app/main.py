"""
Standalone FastAPI app wiring for CosmicQuirks.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from core.config import Settings, load_settings_from_env, logger
from core.db import close_db, init_db
from core.errors import PredictionRejected
from core.services.generation import CharacterGenerator, ImageGenerator
from core.services.identity import IdentityResolver
from core.services.maintenance import run_maintenance_tick
from core.services.prediction import PredictionService
from app.middleware import configure_middleware
from app.routes.health import router as health_router
from app.routes.prediction import router as prediction_router
from app.routes.root import router as root_router
from rate_limiter import (
    InMemoryRateLimiter,
    RateLimitConfig,
    build_rate_limiter_from_env,
    load_rate_limit_config_from_env,
    sweep_loop,
)


async def _maintenance_loop(settings: Settings) -> None:
    if settings.maintenance_interval_seconds <= 0:
        return
    while True:
        await asyncio.sleep(settings.maintenance_interval_seconds)
        try:
            await asyncio.to_thread(run_maintenance_tick, settings)
        except Exception as exc:
            logger.warning(f"Maintenance task error: {exc}")


async def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize on startup, cleanup on shutdown."""
    settings: Settings = app.state.settings
    settings.validate()
    app.state.rate_limit_config.validate()
    init_db(settings)

    sweep_task = asyncio.create_task(sweep_loop(app.state.rate_limiter, app.state.rate_limit_config))
    maintenance_task = None
    if settings.maintenance_interval_seconds > 0:
        maintenance_task = asyncio.create_task(_maintenance_loop(settings))
    try:
        yield
    finally:
        await _cancel(maintenance_task)
        await _cancel(sweep_task)
        service: PredictionService = app.state.prediction_service
        await service.character_generator.aclose()
        await service.image_generator.aclose()
        await app.state.identity_resolver.aclose()
        await app.state.rate_limiter.close()
        close_db()


def _install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(PredictionRejected)
    async def _prediction_rejected(request: Request, exc: PredictionRejected):
        return JSONResponse(exc.to_payload(), status_code=exc.status_code, headers=exc.headers or None)

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(part) for part in error.get("loc", ())[1:]) or "body",
                "type": error.get("type", "invalid"),
                "message": error.get("msg", ""),
            }
            for error in exc.errors()
        ]
        return JSONResponse(
            {
                "error": "Invalid cosmic coordinates",
                "message": "Please provide valid name, birth details, and question.",
                "code": "INVALID_REQUEST",
                "details": details,
            },
            status_code=400,
        )

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}: {exc}")
        return JSONResponse(
            {
                "error": "Unexpected cosmic disturbance",
                "message": "An unexpected cosmic disturbance occurred. Please try again later.",
                "code": "INTERNAL_ERROR",
            },
            status_code=500,
        )


def create_app(
    settings: Optional[Settings] = None,
    rate_limit_config: Optional[RateLimitConfig] = None,
    limiter: Optional[InMemoryRateLimiter] = None,
    character_generator=None,
    image_generator=None,
    identity_resolver=None,
    rng=None,
) -> FastAPI:
    settings = settings or load_settings_from_env()
    rate_limit_config = rate_limit_config or load_rate_limit_config_from_env()
    limiter = limiter or build_rate_limiter_from_env(rate_limit_config)

    app = FastAPI(title="CosmicQuirks", redirect_slashes=False, lifespan=lifespan)
    app.state.settings = settings
    app.state.rate_limit_config = rate_limit_config
    app.state.rate_limiter = limiter
    app.state.identity_resolver = identity_resolver or IdentityResolver(settings)
    app.state.prediction_service = PredictionService(
        settings,
        character_generator or CharacterGenerator(settings),
        image_generator or ImageGenerator(settings),
        rng=rng,
    )

    configure_middleware(app, limiter, rate_limit_config)
    _install_exception_handlers(app)

    app.include_router(prediction_router)
    app.include_router(health_router)
    app.include_router(root_router)
    return app


# =============================================================================
# ASGI Application (module-level for production deployment)
# =============================================================================

app = create_app()
