"""Sync API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configured origins)
- Lifespan handler that builds the sync runtime (database pool, store,
  broadcaster, background runner, ``SyncService``, scheduler) and tears it
  down on shutdown
- Health endpoint at GET /api/health
- The ``/api/sync`` router
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from eventsync.api.middleware import register_error_handlers
from eventsync.api.models import HealthResponse
from eventsync.api.routers.sync import router as sync_router
from eventsync.config import AppConfig
from eventsync.core.logging import configure_logging
from eventsync.core.metrics import init_metrics
from eventsync.core.telemetry import init_telemetry
from eventsync.runtime import SyncRuntime, build_runtime

logger = logging.getLogger(__name__)

SERVICE_NAME = "eventsync"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime from ``app.state.config`` unless one was injected."""
    owned = app.state.runtime is None
    if owned:
        config: AppConfig = app.state.config
        configure_logging(config.logging.level, config.logging.format, config.logging.log_root)
        init_telemetry(SERVICE_NAME)
        init_metrics(SERVICE_NAME)
        app.state.runtime = await build_runtime(config)
        app.state.runtime.scheduler.start()

    yield

    if owned:
        runtime: SyncRuntime = app.state.runtime
        await runtime.aclose()
        app.state.runtime = None
        logger.info("Sync runtime shut down")


def create_app(
    config: AppConfig | None = None,
    *,
    runtime: SyncRuntime | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Loaded configuration; defaults are used when omitted.
    runtime:
        A pre-built runtime.  When given, the lifespan neither builds nor
        closes anything and the scheduler is left to the caller.
    """
    config = config or AppConfig()

    app = FastAPI(
        title="eventsync",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.config = config
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.server.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(sync_router)

    @app.get("/api/health", response_model=HealthResponse)
    async def health(request: Request) -> HealthResponse:
        current: SyncRuntime | None = request.app.state.runtime
        providers = current.service.registry.available_types if current is not None else []
        return HealthResponse(providers=list(providers))

    return app
