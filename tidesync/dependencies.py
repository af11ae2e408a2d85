"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from tidesync.config import Settings, get_settings
from tidesync.glucose.context import SyncContext


async def get_sync_context(request: Request) -> SyncContext:
    """Return the SyncContext the lifespan placed on ``app.state``."""
    context: SyncContext | None = getattr(request.app.state, "sync", None)
    if context is None:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return context


# Annotated shortcuts for route signatures
Sync = Annotated[SyncContext, Depends(get_sync_context)]
AppSettings = Annotated[Settings, Depends(get_settings)]
