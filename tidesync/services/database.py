"""SQLite connection shared by the durable sync state.

The pending-sample queue and the sync state store live in one SQLite file
per installation; rows are partitioned by a scope string so several
local-store/remote-user pairings can coexist.  One connection is opened and
guarded by a re-entrant lock, so observer deliveries running on worker
threads can append while a drain on the event loop reads or removes.

Usage::

    db = Database(settings.database_path)
    with db.transaction() as conn:
        conn.execute("INSERT INTO sync_state ...")
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

logger = logging.getLogger("tidesync.db")

_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA foreign_keys=ON",
)


class Database:
    """A single lock-guarded SQLite connection.

    ``path`` may be ``":memory:"`` for throwaway databases in tests.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = str(path)
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = sqlite3.connect(
            self._path, check_same_thread=False, isolation_level="DEFERRED"
        )
        self._conn.row_factory = sqlite3.Row
        for pragma in _PRAGMAS:
            self._conn.execute(pragma)
        logger.info("Database opened at %s", self._path)

    @property
    def path(self) -> str:
        return self._path

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError("Database is closed")
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically: commit on success, roll back on any error."""
        with self._lock:
            conn = self._connection()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        """Hold the connection for a read-only block."""
        with self._lock:
            yield self._connection()

    def execute_script(self, script: str) -> None:
        with self._lock:
            self._connection().executescript(script)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info("Database closed")
