"""Health check endpoint, always at /health."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from tidesync.config import get_settings
from tidesync.glucose.errors import TideSyncError

router = APIRouter(tags=["system"])
logger = logging.getLogger("tidesync.health")


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also reads the pending-upload count as a lightweight database check.
    """
    settings = get_settings()
    context = getattr(request.app.state, "sync", None)
    db_ok = False
    if context is not None:
        try:
            context.queue.count()
            db_ok = True
        except TideSyncError as exc:
            logger.warning("Health check DB probe failed: %s", exc)

    return {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if db_ok else "unreachable",
        "remote": "available" if context and context.remote.is_available() else "unavailable",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
