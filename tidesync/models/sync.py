"""Pydantic models for the sync control API: status, download, backfill, upload."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from tidesync.glucose.errors import ErrorKind
from tidesync.models.base import TideSyncBase


# ---------- Status ----------

class PathStatusRead(TideSyncBase):
    last_sync_time: datetime | None = None
    last_batch_size: int = 0
    total_count: int = 0
    last_sample_time: datetime | None = None
    total_duplicates: int = 0
    total_without_duplicates: int = 0


class SyncStatusRead(TideSyncBase):
    scope: str
    download: PathStatusRead
    upload: PathStatusRead
    download_cursor: datetime | None = None
    pending_uploads: int = 0
    download_in_progress: bool = False
    download_enabled: bool = False
    upload_enabled: bool = False
    upload_state: str


# ---------- Download ----------

class DownloadRequest(TideSyncBase):
    """Explicit window; omit both bounds for the rolling recent window."""

    from_time: datetime | None = None
    to_time: datetime | None = None
    verify_only: bool = False


class DownloadResultRead(TideSyncBase):
    item_count: int
    status: str
    verify_only: bool = False
    error_kind: ErrorKind | None = None
    error: str | None = None
    skipped: int = 0


class DownloadToggleRead(TideSyncBase):
    enabled: bool


# ---------- Backfill ----------

class BackfillRequest(TideSyncBase):
    days: int | None = Field(default=None, ge=1)
    verify_only: bool = False
    resume: bool = True
    background: bool = False


class BackfillRead(TideSyncBase):
    started: bool = True
    blocks_completed: int = 0
    total_blocks: int = 0
    items_found: int = 0
    is_complete: bool = False
    errors: list[str] = Field(default_factory=list)


# ---------- Abort ----------

class AbortRead(TideSyncBase):
    generation: int


# ---------- Upload ----------

class DrainResultRead(TideSyncBase):
    uploaded: int = 0
    batches: int = 0
    duplicates: int = 0
    status: str
    error_kind: ErrorKind | None = None
    error: str | None = None
    remaining: int = 0


class UploadToggleRead(TideSyncBase):
    enabled: bool
    pending_uploads: int
    drain: DrainResultRead | None = None


# ---------- Import ----------

class ImportRead(TideSyncBase):
    filename: str
    imported: int
    pending_uploads: int
