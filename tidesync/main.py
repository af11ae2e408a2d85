"""tidesync API — FastAPI application entry point.

Run locally:
    uvicorn tidesync.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from tidesync.config import Settings, get_settings
from tidesync.glucose.context import SyncContext
from tidesync.routers import health, sync

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("tidesync")


# ---------- App factory ----------

def create_app(
    settings: Settings | None = None, context: SyncContext | None = None
) -> FastAPI:
    """Build the app.

    Args:
        settings: Settings to use (defaults to the environment).
        context:  Pre-built SyncContext; when given, the lifespan neither
                  builds nor shuts it down.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Startup / shutdown hooks."""
        logger.info(
            "Starting tidesync API v%s [%s]",
            settings.app_version,
            settings.environment,
        )
        owned = context is None
        app.state.sync = context or SyncContext.from_settings(settings)
        if owned:
            await app.state.sync.start(scheduler=settings.scheduler_enabled)
        yield
        if owned:
            await app.state.sync.shutdown()
        logger.info("tidesync API shut down")

    app = FastAPI(
        title="tidesync API",
        description=(
            "Glucose sync engine: Tidepool downloads into the local health "
            "store and queued uploads of local readings."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    if context is not None:
        app.state.sync = context

    # ---------- Health check (outside the v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(sync.router, prefix=v1_prefix)

    return app


app = create_app()
