"""Persisted sync bookkeeping: cursor, anchors, counters.

Everything here is small key → JSON rows in the ``sync_state`` table,
partitioned by scope.  Each write replaces one row in its own transaction,
so a crash never leaves a value half written.

Keys:
    version            — state schema version; a mismatch resets the scope
    download_cursor    — last instant fully synced by the download path
    upload_anchor:<t>  — local store anchor per observed sample type
    last_drain_at      — when the uploader last attempted a drain
    download_status    — PathStatus of the download path
    upload_status      — PathStatus of the upload path
    block_walk         — BlockWalkState of the current/last block walk
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from tidesync.glucose.base import Anchor, parse_timestamp
from tidesync.glucose.errors import StateStorageError
from tidesync.services.database import Database

logger = logging.getLogger("tidesync.glucose.sync.state")

#: Bump when the meaning of persisted keys changes.
STATE_VERSION = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_state (
    scope TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (scope, key)
);
"""


@dataclass
class PathStatus:
    """Display counters for one sync direction.

    Attributes:
        last_sync_time:     When the last successful attempt finished.
        last_batch_size:    Samples moved by that attempt.
        total_count:        Samples moved over the lifetime of the scope.
        last_sample_time:   Newest sample timestamp moved (upload path).
        total_duplicates:   Samples the remote reported as duplicates (upload path).
    """

    last_sync_time: datetime | None = None
    last_batch_size: int = 0
    total_count: int = 0
    last_sample_time: datetime | None = None
    total_duplicates: int = 0

    @property
    def total_without_duplicates(self) -> int:
        return self.total_count - self.total_duplicates

    def to_json(self) -> dict:
        return {
            "last_sync_time": self.last_sync_time.isoformat() if self.last_sync_time else None,
            "last_batch_size": self.last_batch_size,
            "total_count": self.total_count,
            "last_sample_time": (
                self.last_sample_time.isoformat() if self.last_sample_time else None
            ),
            "total_duplicates": self.total_duplicates,
        }

    @classmethod
    def from_json(cls, data: dict) -> "PathStatus":
        return cls(
            last_sync_time=parse_timestamp(data.get("last_sync_time")),
            last_batch_size=int(data.get("last_batch_size", 0)),
            total_count=int(data.get("total_count", 0)),
            last_sample_time=parse_timestamp(data.get("last_sample_time")),
            total_duplicates=int(data.get("total_duplicates", 0)),
        )


@dataclass
class SyncStatus:
    """Read-only status snapshot for schedulers and UI."""

    download: PathStatus
    upload: PathStatus
    download_cursor: datetime | None
    pending_uploads: int
    download_in_progress: bool
    upload_state: str

    def to_json(self) -> dict:
        return {
            "download": self.download.to_json(),
            "upload": self.upload.to_json(),
            "download_cursor": (
                self.download_cursor.isoformat() if self.download_cursor else None
            ),
            "pending_uploads": self.pending_uploads,
            "download_in_progress": self.download_in_progress,
            "upload_state": self.upload_state,
        }


class StateStore:
    """Key/value sync state for one scope."""

    def __init__(self, database: Database, scope: str) -> None:
        self._db = database
        self._scope = scope
        try:
            self._db.execute_script(_SCHEMA)
        except sqlite3.Error as exc:
            raise StateStorageError(f"Could not create sync_state table: {exc}") from exc
        self._migrate()

    @property
    def scope(self) -> str:
        return self._scope

    # ------------------------------------------------------------------
    # Raw access
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        try:
            with self._db.read() as conn:
                row = conn.execute(
                    "SELECT value FROM sync_state WHERE scope = ? AND key = ?",
                    (self._scope, key),
                ).fetchone()
        except sqlite3.Error as exc:
            raise StateStorageError(f"State read failed for {key}: {exc}") from exc
        if row is None:
            return default
        return json.loads(row["value"])

    def set(self, key: str, value: Any) -> None:
        try:
            with self._db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO sync_state (scope, key, value) VALUES (?, ?, ?)
                    ON CONFLICT (scope, key) DO UPDATE SET value = excluded.value
                    """,
                    (self._scope, key, json.dumps(value, default=str)),
                )
        except sqlite3.Error as exc:
            raise StateStorageError(f"State write failed for {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            with self._db.transaction() as conn:
                conn.execute(
                    "DELETE FROM sync_state WHERE scope = ? AND key = ?",
                    (self._scope, key),
                )
        except sqlite3.Error as exc:
            raise StateStorageError(f"State delete failed for {key}: {exc}") from exc

    def clear(self) -> None:
        """Forget every key of this scope, then restamp the schema version."""
        try:
            with self._db.transaction() as conn:
                conn.execute("DELETE FROM sync_state WHERE scope = ?", (self._scope,))
        except sqlite3.Error as exc:
            raise StateStorageError(f"State clear failed: {exc}") from exc
        self.set("version", STATE_VERSION)
        logger.info("Sync state cleared for scope %s", self._scope)

    def _migrate(self) -> None:
        stored = self.get("version")
        if stored == STATE_VERSION:
            return
        if stored is not None:
            logger.info(
                "Migrating sync state for %s from v%s to v%d",
                self._scope, stored, STATE_VERSION,
            )
            self.clear()
        else:
            self.set("version", STATE_VERSION)

    # ------------------------------------------------------------------
    # Typed accessors
    # ------------------------------------------------------------------

    @property
    def download_cursor(self) -> datetime | None:
        return parse_timestamp(self.get("download_cursor"))

    def advance_download_cursor(self, value: datetime) -> datetime:
        """Move the cursor forward to ``value``; never moves it backward."""
        current = self.download_cursor
        if current is not None and current >= value:
            return current
        self.set("download_cursor", value.isoformat())
        return value

    def upload_anchor(self, sample_type: str) -> Anchor | None:
        return self.get(f"upload_anchor:{sample_type}")

    def set_upload_anchor(self, sample_type: str, anchor: Anchor) -> None:
        self.set(f"upload_anchor:{sample_type}", anchor)

    @property
    def last_drain_at(self) -> datetime | None:
        return parse_timestamp(self.get("last_drain_at"))

    def set_last_drain_at(self, value: datetime | None) -> None:
        if value is None:
            self.delete("last_drain_at")
        else:
            self.set("last_drain_at", value.isoformat())

    def path_status(self, path: str) -> PathStatus:
        return PathStatus.from_json(self.get(f"{path}_status") or {})

    def record_download(self, finished_at: datetime, item_count: int) -> PathStatus:
        status = self.path_status("download")
        status.last_sync_time = finished_at
        status.last_batch_size = item_count
        status.total_count += item_count
        self.set("download_status", status.to_json())
        return status

    def record_upload(
        self,
        finished_at: datetime,
        item_count: int,
        duplicates: int = 0,
        last_sample_time: datetime | None = None,
    ) -> PathStatus:
        status = self.path_status("upload")
        status.last_sync_time = finished_at
        status.last_batch_size = item_count
        status.total_count += item_count
        status.total_duplicates += duplicates
        if last_sample_time is not None and (
            status.last_sample_time is None or last_sample_time > status.last_sample_time
        ):
            status.last_sample_time = last_sample_time
        self.set("upload_status", status.to_json())
        return status
