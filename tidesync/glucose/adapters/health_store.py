"""SQLite-backed local health store.

Stands in for the device health database on a server or desktop: samples
carry per-sample UUIDs, provenance and free-form metadata, and every write
or delete is appended to a ``changes`` log whose sequence number serves as
the observer anchor.  Deleted samples leave a tombstone in that log so
observers learn about the deletion.

Observers run in-process.  A registration keeps its own anchor, which only
advances when its handler returns True; a rejected delivery is offered again
on the next change.  While the store is backgrounded, only types with
background delivery enabled are delivered; the rest catch up when the store
returns to the foreground.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from tidesync.glucose.base import (
    Anchor,
    ChangeHandler,
    LocalStoreAdapter,
    Sample,
    format_zulu,
    parse_timestamp,
    utc_now,
)
from tidesync.glucose.errors import LocalStoreAuthorizationError, LocalStoreError
from tidesync.services.database import Database

logger = logging.getLogger("tidesync.glucose.health_store")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS samples (
    id TEXT PRIMARY KEY,
    sample_type TEXT NOT NULL,
    value REAL NOT NULL,
    timestamp TEXT NOT NULL,
    source_name TEXT NOT NULL DEFAULT '',
    source_bundle_id TEXT NOT NULL DEFAULT '',
    source_version TEXT NOT NULL DEFAULT '',
    metadata TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_samples_type_time ON samples (sample_type, timestamp);
CREATE TABLE IF NOT EXISTS changes (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    sample_type TEXT NOT NULL,
    sample_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    recorded_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_changes_type_seq ON changes (sample_type, seq);
"""


@dataclass
class _Observer:
    handler: ChangeHandler
    anchor: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def _anchor_to_seq(anchor: Anchor | None) -> int:
    if not anchor:
        return 0
    try:
        return int(anchor)
    except ValueError:
        logger.warning("Ignoring unrecognised anchor %r, starting from the beginning", anchor)
        return 0


class SQLiteHealthStore(LocalStoreAdapter):
    """LocalStoreAdapter over a SQLite file.

    Args:
        database:          Database holding the store tables (its own file,
                           separate from the sync state).
        grant_permissions: Whether authorize() succeeds.
    """

    DISPLAY_NAME = "SQLite health store"

    def __init__(self, database: Database, grant_permissions: bool = True) -> None:
        self._db = database
        self._grant = grant_permissions
        self._can_read = False
        self._can_write = False
        self._observers: dict[str, _Observer] = {}
        self._background_types: set[str] = set()
        self._backgrounded = False
        try:
            self._db.execute_script(_SCHEMA)
        except sqlite3.Error as exc:
            raise LocalStoreError(f"Could not create health store tables: {exc}") from exc

    @classmethod
    def open(cls, path: Path | str, grant_permissions: bool = True) -> "SQLiteHealthStore":
        return cls(Database(path), grant_permissions=grant_permissions)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    @property
    def grant_permissions(self) -> bool:
        return self._grant

    @grant_permissions.setter
    def grant_permissions(self, value: bool) -> None:
        self._grant = value
        if not value:
            self._can_read = self._can_write = False

    async def authorize(self, reads: bool, writes: bool) -> None:
        if not self._grant:
            raise LocalStoreAuthorizationError("Health store access was denied")
        self._can_read = self._can_read or reads
        self._can_write = self._can_write or writes
        logger.debug("Health store authorized (read=%s, write=%s)", self._can_read, self._can_write)

    # ------------------------------------------------------------------
    # Queries and writes
    # ------------------------------------------------------------------

    async def query_range(
        self, from_time: datetime, to_time: datetime, sample_type: str
    ) -> list[Sample]:
        if not self._can_read:
            raise LocalStoreAuthorizationError("Health store read access not authorized")
        return await asyncio.to_thread(self._query_range, from_time, to_time, sample_type)

    def _query_range(
        self, from_time: datetime, to_time: datetime, sample_type: str
    ) -> list[Sample]:
        try:
            with self._db.read() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM samples
                    WHERE sample_type = ? AND timestamp >= ? AND timestamp <= ?
                    ORDER BY timestamp ASC
                    """,
                    (sample_type, format_zulu(from_time), format_zulu(to_time)),
                ).fetchall()
        except sqlite3.Error as exc:
            raise LocalStoreError(f"Health store query failed: {exc}") from exc
        return [self._row_to_sample(row) for row in rows]

    async def save_samples(self, samples: list[Sample]) -> None:
        if not self._can_write:
            raise LocalStoreAuthorizationError("Health store write access not authorized")
        if not samples:
            return
        types = await asyncio.to_thread(self._save_samples, samples)
        logger.info("Health store saved %d sample(s)", len(samples))
        for sample_type in types:
            await self._notify(sample_type)

    def _save_samples(self, samples: list[Sample]) -> set[str]:
        now = format_zulu(utc_now())
        try:
            with self._db.transaction() as conn:
                for sample in samples:
                    conn.execute(
                        """
                        INSERT INTO samples (id, sample_type, value, timestamp, source_name,
                                             source_bundle_id, source_version, metadata)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            sample.id,
                            sample.sample_type,
                            sample.value,
                            format_zulu(sample.timestamp),
                            sample.source_name,
                            sample.source_bundle_id,
                            sample.source_version,
                            json.dumps(sample.store_metadata(), default=str),
                        ),
                    )
                    conn.execute(
                        "INSERT INTO changes (sample_type, sample_id, kind, recorded_at) "
                        "VALUES (?, ?, 'added', ?)",
                        (sample.sample_type, sample.id, now),
                    )
        except sqlite3.Error as exc:
            raise LocalStoreError(f"Health store save failed: {exc}") from exc
        return {sample.sample_type for sample in samples}

    async def delete_samples(self, sample_ids: list[str]) -> int:
        """Delete samples by id, leaving tombstones for observers.

        Returns:
            Number of samples deleted.
        """
        if not self._can_write:
            raise LocalStoreAuthorizationError("Health store write access not authorized")
        deleted, types = await asyncio.to_thread(self._delete_samples, sample_ids)
        logger.info("Health store deleted %d sample(s)", deleted)
        for sample_type in types:
            await self._notify(sample_type)
        return deleted

    def _delete_samples(self, sample_ids: list[str]) -> tuple[int, set[str]]:
        now = format_zulu(utc_now())
        deleted = 0
        types: set[str] = set()
        try:
            with self._db.transaction() as conn:
                for sample_id in sample_ids:
                    row = conn.execute(
                        "SELECT sample_type FROM samples WHERE id = ?", (sample_id,)
                    ).fetchone()
                    if row is None:
                        continue
                    conn.execute("DELETE FROM samples WHERE id = ?", (sample_id,))
                    conn.execute(
                        "INSERT INTO changes (sample_type, sample_id, kind, recorded_at) "
                        "VALUES (?, ?, 'deleted', ?)",
                        (row["sample_type"], sample_id, now),
                    )
                    types.add(row["sample_type"])
                    deleted += 1
        except sqlite3.Error as exc:
            raise LocalStoreError(f"Health store delete failed: {exc}") from exc
        return deleted, types

    def count(self, sample_type: str | None = None) -> int:
        try:
            with self._db.read() as conn:
                if sample_type is None:
                    row = conn.execute("SELECT COUNT(*) AS n FROM samples").fetchone()
                else:
                    row = conn.execute(
                        "SELECT COUNT(*) AS n FROM samples WHERE sample_type = ?",
                        (sample_type,),
                    ).fetchone()
        except sqlite3.Error as exc:
            raise LocalStoreError(f"Health store count failed: {exc}") from exc
        return int(row["n"])

    def existing_ids(self, sample_ids: list[str]) -> set[str]:
        """Return the subset of ``sample_ids`` already stored."""
        found: set[str] = set()
        try:
            with self._db.read() as conn:
                for start in range(0, len(sample_ids), 500):
                    chunk = sample_ids[start:start + 500]
                    placeholders = ",".join("?" * len(chunk))
                    rows = conn.execute(
                        f"SELECT id FROM samples WHERE id IN ({placeholders})", chunk
                    ).fetchall()
                    found.update(row["id"] for row in rows)
        except sqlite3.Error as exc:
            raise LocalStoreError(f"Health store lookup failed: {exc}") from exc
        return found

    @staticmethod
    def _row_to_sample(row: sqlite3.Row) -> Sample:
        return Sample.from_store_metadata(
            json.loads(row["metadata"] or "{}"),
            value=float(row["value"]),
            timestamp=parse_timestamp(row["timestamp"]),
            id=row["id"],
            sample_type=row["sample_type"],
            source_name=row["source_name"],
            source_bundle_id=row["source_bundle_id"],
            source_version=row["source_version"],
        )

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    async def observe_changes(
        self, sample_type: str, anchor: Anchor | None, handler: ChangeHandler
    ) -> None:
        self._observers[sample_type] = _Observer(handler=handler, anchor=_anchor_to_seq(anchor))
        logger.info("Observer registered for %s from anchor %s", sample_type, anchor)
        await self._notify(sample_type)

    async def stop_observing(self, sample_type: str) -> None:
        if self._observers.pop(sample_type, None) is not None:
            logger.info("Observer for %s removed", sample_type)

    async def enable_background_delivery(self, sample_type: str) -> None:
        self._background_types.add(sample_type)

    async def disable_background_delivery(self, sample_type: str) -> None:
        self._background_types.discard(sample_type)

    def background_delivery_enabled(self, sample_type: str) -> bool:
        return sample_type in self._background_types

    @property
    def backgrounded(self) -> bool:
        return self._backgrounded

    async def set_backgrounded(self, value: bool) -> None:
        """Enter or leave the background; leaving it delivers held-back changes."""
        self._backgrounded = value
        if not value:
            for sample_type in list(self._observers):
                await self._notify(sample_type)

    async def _notify(self, sample_type: str) -> None:
        observer = self._observers.get(sample_type)
        if observer is None:
            return
        if self._backgrounded and sample_type not in self._background_types:
            logger.debug("Holding %s changes while backgrounded", sample_type)
            return
        async with observer.lock:
            if self._observers.get(sample_type) is not observer:
                return
            added, deleted, last_seq = await asyncio.to_thread(
                self._changes_since, sample_type, observer.anchor
            )
            if last_seq <= observer.anchor:
                return
            accepted = await observer.handler(added, deleted, str(last_seq))
            if accepted:
                observer.anchor = last_seq
            else:
                logger.info(
                    "Observer for %s rejected delivery; anchor stays at %d",
                    sample_type, observer.anchor,
                )

    def _changes_since(
        self, sample_type: str, after_seq: int
    ) -> tuple[list[Sample], list[str], int]:
        try:
            with self._db.read() as conn:
                rows = conn.execute(
                    """
                    SELECT seq, sample_id, kind FROM changes
                    WHERE sample_type = ? AND seq > ? ORDER BY seq ASC
                    """,
                    (sample_type, after_seq),
                ).fetchall()
                added_ids: list[str] = []
                deleted_ids: list[str] = []
                for row in rows:
                    if row["kind"] == "added":
                        added_ids.append(row["sample_id"])
                    elif row["sample_id"] in added_ids:
                        added_ids.remove(row["sample_id"])
                    else:
                        deleted_ids.append(row["sample_id"])
                samples = []
                for sample_id in added_ids:
                    sample_row = conn.execute(
                        "SELECT * FROM samples WHERE id = ?", (sample_id,)
                    ).fetchone()
                    if sample_row is not None:
                        samples.append(self._row_to_sample(sample_row))
        except sqlite3.Error as exc:
            raise LocalStoreError(f"Health store change query failed: {exc}") from exc
        last_seq = rows[-1]["seq"] if rows else after_seq
        return samples, deleted_ids, last_seq

    def close(self) -> None:
        self._observers.clear()
        self._db.close()
