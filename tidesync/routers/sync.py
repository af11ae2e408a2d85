"""Sync control endpoints: status, download, backfill, abort, upload toggles, drain and import."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, File, Form, HTTPException, UploadFile

from tidesync.dependencies import AppSettings, Sync
from tidesync.glucose.adapters import SQLiteHealthStore, import_export
from tidesync.glucose.errors import TideSyncError
from tidesync.models.sync import (
    AbortRead,
    BackfillRead,
    BackfillRequest,
    DownloadRequest,
    DownloadResultRead,
    DownloadToggleRead,
    DrainResultRead,
    ImportRead,
    PathStatusRead,
    SyncStatusRead,
    UploadToggleRead,
)

router = APIRouter(prefix="/sync", tags=["sync"])
logger = logging.getLogger("tidesync.routers.sync")


# ---------- Status ----------

@router.get("/status", response_model=SyncStatusRead)
async def sync_status(sync: Sync) -> Any:
    status = sync.status()
    return SyncStatusRead(
        scope=sync.scope,
        download=PathStatusRead.model_validate(status.download),
        upload=PathStatusRead.model_validate(status.upload),
        download_cursor=status.download_cursor,
        pending_uploads=status.pending_uploads,
        download_in_progress=status.download_in_progress,
        download_enabled=sync.downloader.enabled,
        upload_enabled=sync.uploader.enabled,
        upload_state=status.upload_state,
    )


# ---------- Download ----------

@router.post("/download", response_model=DownloadResultRead)
async def download(sync: Sync, body: DownloadRequest | None = None) -> Any:
    """Run one download attempt.

    Without bounds the rolling recent window is synced; with both bounds
    exactly that window.  The attempt's outcome (including rejection or
    failure) is returned in the body, not as an HTTP error.
    """
    body = body or DownloadRequest()
    if (body.from_time is None) != (body.to_time is None):
        raise HTTPException(status_code=400, detail="Give both from_time and to_time, or neither")
    if body.from_time is not None and body.to_time is not None:
        if body.from_time >= body.to_time:
            raise HTTPException(status_code=400, detail="from_time must be before to_time")
        result = await sync.downloader.sync_tidepool_data(
            body.from_time, body.to_time, verify_only=body.verify_only
        )
    else:
        result = await sync.downloader.sync_recent(verify_only=body.verify_only)
    return DownloadResultRead.model_validate(result)


@router.post("/download/enable", response_model=DownloadToggleRead)
async def enable_download(sync: Sync) -> Any:
    try:
        await sync.downloader.enable()
    except TideSyncError as exc:
        logger.warning("Download enable failed: %s", exc)
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    return DownloadToggleRead(enabled=sync.downloader.enabled)


@router.post("/download/disable", response_model=DownloadToggleRead)
async def disable_download(sync: Sync) -> Any:
    sync.downloader.disable()
    return DownloadToggleRead(enabled=False)


@router.post("/backfill", response_model=BackfillRead)
async def backfill(
    sync: Sync, background_tasks: BackgroundTasks, body: BackfillRequest | None = None
) -> Any:
    """Walk history backward in day-sized blocks.

    With ``background`` the walk runs after the response is sent and the
    response only describes the walk that was started.
    """
    body = body or BackfillRequest()
    if not sync.downloader.enabled:
        raise HTTPException(status_code=409, detail="Download sync is not enabled")

    if body.background:
        walk = sync.block_download(days=body.days, verify_only=body.verify_only, resume=body.resume)

        async def _run() -> None:
            async for _ in walk.run():
                pass

        background_tasks.add_task(_run)
        return BackfillRead(
            started=True,
            blocks_completed=walk.state.blocks_completed,
            total_blocks=walk.total_blocks,
            items_found=walk.items_found,
            is_complete=walk.download_completed,
        )

    progress = await sync.backfill(days=body.days, verify_only=body.verify_only, resume=body.resume)
    if not progress:
        return BackfillRead(started=False, is_complete=True)
    last = progress[-1]
    return BackfillRead(
        started=True,
        blocks_completed=last.blocks_completed,
        total_blocks=last.total_blocks,
        items_found=last.items_found,
        is_complete=last.is_complete,
        errors=[p.result.error or p.result.status for p in progress if not p.result.ok],
    )


@router.post("/abort", response_model=AbortRead)
async def abort(sync: Sync) -> Any:
    sync.downloader.abort_sync_in_progress()
    return AbortRead(generation=sync.generation.current)


# ---------- Upload ----------

@router.post("/upload/enable", response_model=UploadToggleRead)
async def enable_upload(sync: Sync) -> Any:
    try:
        drain = await sync.uploader.enable()
    except TideSyncError as exc:
        logger.warning("Upload enable failed: %s", exc)
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    return UploadToggleRead(
        enabled=sync.uploader.enabled,
        pending_uploads=sync.queue.count(),
        drain=DrainResultRead.model_validate(drain) if drain is not None else None,
    )


@router.post("/upload/disable", response_model=UploadToggleRead)
async def disable_upload(sync: Sync) -> Any:
    await sync.uploader.disable()
    return UploadToggleRead(enabled=False, pending_uploads=sync.queue.count())


@router.post("/upload/drain", response_model=DrainResultRead)
async def drain(sync: Sync) -> Any:
    result = await sync.uploader.drain_once()
    return DrainResultRead.model_validate(result)


# ---------- Import ----------

@router.post("/import/apple-health", response_model=ImportRead, status_code=201)
async def import_apple_health(
    sync: Sync,
    settings: AppSettings,
    file: UploadFile = File(...),
    default_bundle_id: str = Form(default=""),
) -> Any:
    """Load the glucose records of an Apple Health export.xml into the local store.

    Imported samples are observed like any other write, so readings from an
    accepted source are queued for upload when uploads are enabled.
    """
    if not isinstance(sync.local_store, SQLiteHealthStore):
        raise HTTPException(status_code=409, detail="Local store does not accept imports")

    data = await file.read()
    if len(data) > settings.max_import_size_bytes:
        raise HTTPException(
            status_code=400,
            detail=f"File too large. Max: {settings.max_import_size_bytes // (1024 * 1024)} MB",
        )
    filename = file.filename or "export.xml"

    try:
        imported = await import_export(
            sync.local_store, data, default_bundle_id=default_bundle_id
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except TideSyncError as exc:
        logger.warning("Apple Health import of %s failed: %s", filename, exc)
        raise HTTPException(status_code=403, detail=str(exc)) from exc

    logger.info("Imported %d sample(s) from %s", imported, filename)
    return ImportRead(
        filename=filename, imported=imported, pending_uploads=sync.queue.count()
    )
