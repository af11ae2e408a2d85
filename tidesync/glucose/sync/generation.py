"""Cooperative cancellation for in-flight sync attempts.

Every download attempt and upload drain captures a ``CancellationToken``
when it starts and checks it after each await.  Aborting a sync (logout,
feature disabled, explicit cancel) advances the shared ``SyncGeneration``,
which turns every previously issued token stale.  Nothing is preempted: a
stale attempt simply stops applying results and reports itself aborted.
"""

from __future__ import annotations

import logging
import threading

logger = logging.getLogger("tidesync.glucose.sync.generation")


class SyncGeneration:
    """Monotonic counter shared by the download and upload paths."""

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    @property
    def current(self) -> int:
        return self._value

    def advance(self) -> int:
        """Invalidate every outstanding token and return the new generation."""
        with self._lock:
            self._value += 1
            value = self._value
        logger.debug("Sync generation advanced to %d", value)
        return value

    def token(self) -> "CancellationToken":
        """Issue a token bound to the current generation."""
        return CancellationToken(self, self._value)


class CancellationToken:
    """Snapshot of the generation at the start of one attempt."""

    __slots__ = ("_source", "_generation")

    def __init__(self, source: SyncGeneration, generation: int) -> None:
        self._source = source
        self._generation = generation

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def cancelled(self) -> bool:
        return self._source.current != self._generation

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "live"
        return f"CancellationToken(generation={self._generation}, {state})"
