"""Durable FIFO of local-store changes awaiting upload.

Rows live in the ``pending_samples`` table of the shared SQLite database,
one row per sample id and scope (UNIQUE constraint).  Redelivered changes
are therefore absorbed here:

    same id, same action       → ignored
    same id, different action  → old row dropped, new row appended

The ``uploaded_samples`` table remembers which sample ids the remote holds,
so deletions are forwarded only for samples this installation uploaded.

All methods are synchronous and thread-safe; the uploader calls them through
``asyncio.to_thread`` so observer deliveries never block the event loop.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone

from tidesync.glucose.base import PendingSampleQueueEntry, QueueAction
from tidesync.glucose.errors import QueueStorageError
from tidesync.services.database import Database

logger = logging.getLogger("tidesync.glucose.sync.pending_queue")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS pending_samples (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    scope TEXT NOT NULL,
    sample_id TEXT NOT NULL,
    action TEXT NOT NULL,
    payload TEXT NOT NULL,
    enqueued_at TEXT NOT NULL,
    UNIQUE (scope, sample_id)
);
CREATE INDEX IF NOT EXISTS idx_pending_samples_scope_seq
    ON pending_samples (scope, seq);
CREATE TABLE IF NOT EXISTS uploaded_samples (
    scope TEXT NOT NULL,
    sample_id TEXT NOT NULL,
    PRIMARY KEY (scope, sample_id)
);
"""


class PendingSampleQueue:
    """Ordered, crash-safe queue of PendingSampleQueueEntry rows for one scope.

    Usage::

        queue = PendingSampleQueue(db, scope="local:abc123")
        queue.append([PendingSampleQueueEntry.added(sample)])
        batch = queue.peek_batch(100)
        ...upload...
        queue.remove(batch)
    """

    def __init__(self, database: Database, scope: str) -> None:
        self._db = database
        self._scope = scope
        try:
            self._db.execute_script(_SCHEMA)
        except sqlite3.Error as exc:
            raise QueueStorageError(f"Could not create pending_samples table: {exc}") from exc

    @property
    def scope(self) -> str:
        return self._scope

    def append(self, entries: list[PendingSampleQueueEntry]) -> int:
        """Persist entries in order, all or nothing.

        Args:
            entries: Entries to enqueue.

        Returns:
            Number of rows actually written (duplicates excluded).

        Raises:
            QueueStorageError: If the write failed; nothing was recorded.
        """
        if not entries:
            return 0
        now = datetime.now(timezone.utc).isoformat()
        assigned: list[tuple[PendingSampleQueueEntry, int]] = []
        try:
            with self._db.transaction() as conn:
                for entry in entries:
                    row = conn.execute(
                        "SELECT action FROM pending_samples WHERE scope = ? AND sample_id = ?",
                        (self._scope, entry.sample_id),
                    ).fetchone()
                    if row is not None:
                        if row["action"] == entry.action.value:
                            logger.debug(
                                "Queue: %s already pending as %s, skipping",
                                entry.sample_id, entry.action.value,
                            )
                            continue
                        conn.execute(
                            "DELETE FROM pending_samples WHERE scope = ? AND sample_id = ?",
                            (self._scope, entry.sample_id),
                        )
                        logger.debug(
                            "Queue: %s replaced pending %s with %s",
                            entry.sample_id, row["action"], entry.action.value,
                        )
                    cursor = conn.execute(
                        """
                        INSERT INTO pending_samples (scope, sample_id, action, payload, enqueued_at)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (
                            self._scope,
                            entry.sample_id,
                            entry.action.value,
                            json.dumps(entry.to_json(), default=str),
                            now,
                        ),
                    )
                    assigned.append((entry, cursor.lastrowid))
        except sqlite3.Error as exc:
            raise QueueStorageError(f"Queue append failed: {exc}") from exc

        for entry, seq in assigned:
            entry.seq = seq
        logger.debug("Queue: appended %d of %d entries", len(assigned), len(entries))
        return len(assigned)

    def peek_batch(self, max_count: int) -> list[PendingSampleQueueEntry]:
        """Return up to ``max_count`` oldest entries without removing them."""
        if max_count <= 0:
            return []
        try:
            with self._db.read() as conn:
                rows = conn.execute(
                    """
                    SELECT seq, sample_id, action, payload FROM pending_samples
                    WHERE scope = ? ORDER BY seq ASC LIMIT ?
                    """,
                    (self._scope, max_count),
                ).fetchall()
        except sqlite3.Error as exc:
            raise QueueStorageError(f"Queue read failed: {exc}") from exc
        return [
            PendingSampleQueueEntry.from_json(
                row["action"], row["sample_id"], json.loads(row["payload"]), seq=row["seq"]
            )
            for row in rows
        ]

    def remove(self, entries: list[PendingSampleQueueEntry]) -> int:
        """Atomically delete exactly the given entries.

        Entries are matched on sample id and, when known, queue position, so
        a change re-queued for the same sample after the batch was read is
        kept.  Absent entries are ignored.

        Returns:
            Number of rows deleted.
        """
        if not entries:
            return 0
        removed = 0
        try:
            with self._db.transaction() as conn:
                for entry in entries:
                    if entry.seq is None:
                        cursor = conn.execute(
                            "DELETE FROM pending_samples WHERE scope = ? AND sample_id = ?",
                            (self._scope, entry.sample_id),
                        )
                    else:
                        cursor = conn.execute(
                            """
                            DELETE FROM pending_samples
                            WHERE scope = ? AND sample_id = ? AND seq = ?
                            """,
                            (self._scope, entry.sample_id, entry.seq),
                        )
                    removed += cursor.rowcount
        except sqlite3.Error as exc:
            raise QueueStorageError(f"Queue remove failed: {exc}") from exc
        logger.debug("Queue: removed %d of %d entries", removed, len(entries))
        return removed

    def count(self) -> int:
        try:
            with self._db.read() as conn:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM pending_samples WHERE scope = ?",
                    (self._scope,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise QueueStorageError(f"Queue count failed: {exc}") from exc
        return int(row["n"])

    def mark_uploaded(self, entries: list[PendingSampleQueueEntry]) -> None:
        """Record a confirmed batch: added ids are remembered, deleted ids forgotten."""
        if not entries:
            return
        try:
            with self._db.transaction() as conn:
                for entry in entries:
                    if entry.action is QueueAction.ADDED:
                        conn.execute(
                            "INSERT OR IGNORE INTO uploaded_samples (scope, sample_id) "
                            "VALUES (?, ?)",
                            (self._scope, entry.sample_id),
                        )
                    else:
                        conn.execute(
                            "DELETE FROM uploaded_samples WHERE scope = ? AND sample_id = ?",
                            (self._scope, entry.sample_id),
                        )
        except sqlite3.Error as exc:
            raise QueueStorageError(f"Queue upload bookkeeping failed: {exc}") from exc

    def known_ids(self, sample_ids: list[str]) -> set[str]:
        """Return the ids that were uploaded or are queued as additions."""
        known: set[str] = set()
        try:
            with self._db.read() as conn:
                for sample_id in sample_ids:
                    row = conn.execute(
                        """
                        SELECT 1 FROM uploaded_samples WHERE scope = ? AND sample_id = ?
                        UNION ALL
                        SELECT 1 FROM pending_samples
                        WHERE scope = ? AND sample_id = ? AND action = ?
                        LIMIT 1
                        """,
                        (
                            self._scope, sample_id,
                            self._scope, sample_id, QueueAction.ADDED.value,
                        ),
                    ).fetchone()
                    if row is not None:
                        known.add(sample_id)
        except sqlite3.Error as exc:
            raise QueueStorageError(f"Queue lookup failed: {exc}") from exc
        return known

    def clear(self) -> int:
        """Drop every pending entry and the upload record of this scope."""
        try:
            with self._db.transaction() as conn:
                cursor = conn.execute(
                    "DELETE FROM pending_samples WHERE scope = ?", (self._scope,)
                )
                conn.execute("DELETE FROM uploaded_samples WHERE scope = ?", (self._scope,))
        except sqlite3.Error as exc:
            raise QueueStorageError(f"Queue clear failed: {exc}") from exc
        logger.info("Queue: cleared %d entries for scope %s", cursor.rowcount, self._scope)
        return cursor.rowcount

    def __len__(self) -> int:
        return self.count()
