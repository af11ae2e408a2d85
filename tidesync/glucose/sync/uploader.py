"""Local store → Tidepool upload path.

Changes reach the uploader through the local store's observer callback
(``on_store_change``), are durably queued in the ``PendingSampleQueue``, and
leave the queue only after the remote confirmed the batch carrying them.

State machine::

    IDLE ──drain_once()──▶ BATCH_IN_FLIGHT ──success / failure──▶ IDLE

The anchor handed to the observer is persisted only after the queue append
succeeded, so a failed append makes the store redeliver the same changes.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable

from tidesync.glucose.base import (
    GLUCOSE_TYPE,
    Anchor,
    LocalStoreAdapter,
    PendingSampleQueueEntry,
    QueueAction,
    RemoteDataSource,
    Sample,
    utc_now,
)
from tidesync.glucose.config_loader import SyncConfig
from tidesync.glucose.errors import (
    ErrorKind,
    InvariantViolationError,
    QueueStorageError,
    StorageError,
    TideSyncError,
)
from tidesync.glucose.sync.downloader import (
    STATUS_ABORTED,
    STATUS_ERROR,
    STATUS_REJECTED,
    STATUS_SUCCESS,
)
from tidesync.glucose.sync.generation import SyncGeneration
from tidesync.glucose.sync.pending_queue import PendingSampleQueue
from tidesync.glucose.sync.state import StateStore
from tidesync.glucose.sync.upload_payload import UploadSession

logger = logging.getLogger("tidesync.glucose.sync.uploader")


class UploaderState(str, Enum):
    IDLE = "idle"
    BATCH_IN_FLIGHT = "batch_in_flight"


@dataclass
class DrainResult:
    """Outcome of one drain session.

    Attributes:
        uploaded:   Queue entries confirmed by the remote.
        batches:    Batches submitted successfully.
        duplicates: Records the remote reported as already present.
        status:     'success', 'aborted', 'rejected' or 'error'.
        error_kind: Category of the failure, if any.
        error:      Human-readable failure message.
        remaining:  Entries still queued when the session ended.
    """

    uploaded: int = 0
    batches: int = 0
    duplicates: int = 0
    status: str = STATUS_SUCCESS
    error_kind: ErrorKind | None = None
    error: str | None = None
    remaining: int = 0

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS


class Uploader:
    """Queue local-store changes and push them to the remote in batches.

    Args:
        remote:        Remote data source receiving the uploads.
        local_store:   Store whose changes are observed.
        queue:         Durable pending-sample queue for this scope.
        state:         Sync state (anchors, drain time, counters).
        generation:    Generation shared with the downloader.
        config:        Sync configuration.
        install_id:    Stable id of this installation (part of the device id).
        user_id:       Remote user the uploads belong to.
        version:       Uploader version string reported in the manifest.
        timezone_name: IANA zone reported in the manifest.
        clock:         Returns the current UTC time.
    """

    def __init__(
        self,
        remote: RemoteDataSource,
        local_store: LocalStoreAdapter,
        queue: PendingSampleQueue,
        state: StateStore,
        generation: SyncGeneration,
        config: SyncConfig,
        install_id: str,
        user_id: str,
        version: str,
        timezone_name: str = "UTC",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._remote = remote
        self._local = local_store
        self._queue = queue
        self._state = state
        self._generation = generation
        self._config = config
        self._install_id = install_id
        self._user_id = user_id
        self._version = version
        self._timezone_name = timezone_name
        self._clock = clock
        self._enabled = False
        self._uploader_state = UploaderState.IDLE
        self._observed: list[str] = []

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def state(self) -> UploaderState:
        return self._uploader_state

    @property
    def pending_count(self) -> int:
        return self._queue.count()

    # ------------------------------------------------------------------
    # Enablement
    # ------------------------------------------------------------------

    async def enable(self) -> DrainResult | None:
        """Start observing the local store and drain if a drain is due.

        Observers resume from the persisted anchor of each tracked type.
        A drain runs right away when no previous drain is remembered, or
        when the minimum drain interval has passed since the last one.

        Returns:
            DrainResult of the drain triggered by enabling, or None.

        Raises:
            LocalStoreAuthorizationError: If read access was denied.
        """
        if self._enabled:
            logger.debug("Uploader already enabled")
            return None
        await self._local.authorize(reads=True, writes=False)
        self._enabled = True

        for sample_type in self._config.tracked_types:
            anchor = self._state.upload_anchor(sample_type)
            handler = functools.partial(self.on_store_change, sample_type=sample_type)
            await self._local.observe_changes(sample_type, anchor, handler)
            await self._local.enable_background_delivery(sample_type)
            self._observed.append(sample_type)
            logger.info("Observing %s changes from anchor %s", sample_type, anchor)

        last_drain = self._state.last_drain_at
        now = self._clock()
        if last_drain is None or now - last_drain >= self._config.scheduler.min_drain_interval:
            return await self.drain_once()
        logger.info("Uploader enabled; last drain at %s, not draining yet", last_drain)
        return None

    async def disable(self) -> None:
        """Stop observing and abort work in flight; the queue is kept."""
        for sample_type in self._observed:
            await self._local.stop_observing(sample_type)
            await self._local.disable_background_delivery(sample_type)
        self._observed = []
        self._enabled = False
        generation = self._generation.advance()
        self._state.set_last_drain_at(None)
        logger.info(
            "Uploader disabled (generation now %d, %d entries kept queued)",
            generation, self._queue.count(),
        )

    # ------------------------------------------------------------------
    # Observer delivery
    # ------------------------------------------------------------------

    def accepts(self, sample: Sample) -> bool:
        """Return True if a new sample should be uploaded.

        Samples written by the download path (they carry a remote origin id,
        or the download source bundle) are never sent back.
        """
        if sample.sample_type not in self._config.tracked_types:
            return False
        if sample.external_id is not None:
            return False
        if sample.source_bundle_id == self._config.download.source_bundle_id:
            return False
        return self._config.upload.accepts_source(sample.source_name)

    async def on_store_change(
        self,
        new_samples: list[Sample],
        deleted_ids: list[str],
        new_anchor: Anchor,
        sample_type: str = GLUCOSE_TYPE,
    ) -> bool:
        """Queue a change delivery from the local store.

        Args:
            new_samples: Samples added since the last anchor.
            deleted_ids: Ids of samples deleted since the last anchor.
            new_anchor:  Anchor to resume from once this delivery is queued.
            sample_type: Type the observer was registered for.

        Returns:
            True if the delivery was queued and the anchor persisted.
        """
        if not self._enabled:
            logger.debug("Ignoring %s delivery: uploader disabled", sample_type)
            return False

        entries: list[PendingSampleQueueEntry] = []
        for sample in new_samples:
            if self.accepts(sample):
                entries.append(PendingSampleQueueEntry.added(sample))
            else:
                logger.info(
                    "Not uploading sample %s from source %r",
                    sample.id, sample.source_name,
                )

        try:
            if deleted_ids:
                known = await asyncio.to_thread(self._queue.known_ids, deleted_ids)
                for sid in deleted_ids:
                    if sid in known:
                        entries.append(PendingSampleQueueEntry.deleted(sid))
                    else:
                        logger.debug("Not forwarding deletion of %s: never uploaded", sid)
            written = await asyncio.to_thread(self._queue.append, entries)
        except QueueStorageError as exc:
            logger.error("Could not queue %d change(s): %s", len(entries), exc)
            return False

        try:
            self._state.set_upload_anchor(sample_type, new_anchor)
        except StorageError as exc:
            logger.error("Queued %s changes but could not persist anchor: %s", sample_type, exc)
            return False
        logger.debug(
            "Queued %d change(s) for %s (%d new, %d deleted); anchor %s",
            written, sample_type, len(new_samples), len(deleted_ids), new_anchor,
        )
        return True

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    async def drain_once(self) -> DrainResult:
        """Upload queued entries in batches until the queue is empty.

        One upload destination and one upload id are used for every batch
        of the session.  Entries are removed only after their batch was
        confirmed; an entry superseded while its batch was in flight stays
        queued.  A failed submission ends the session with the queue left as
        it was.
        """
        if self._uploader_state is UploaderState.BATCH_IN_FLIGHT:
            logger.info("Drain rejected: a batch is already in flight")
            return DrainResult(status=STATUS_REJECTED, error="drain already in progress")

        try:
            pending = await asyncio.to_thread(self._queue.count)
        except QueueStorageError as exc:
            return self._failed(exc, 0, 0, 0, -1)
        if pending == 0:
            logger.debug("Drain: queue empty")
            return DrainResult()
        if not self._remote.is_available():
            logger.info("Drain rejected: %s unavailable", self._remote.DISPLAY_NAME)
            return DrainResult(
                status=STATUS_REJECTED,
                error_kind=ErrorKind.TRANSIENT,
                error="remote service unavailable",
                remaining=pending,
            )

        self._uploader_state = UploaderState.BATCH_IN_FLIGHT
        token = self._generation.token()
        uploaded = batches = duplicates = 0
        try:
            destination = await self._remote.create_or_fetch_upload_destination(self._user_id)
            if token.cancelled:
                logger.info("Drain aborted before the first batch")
                return DrainResult(status=STATUS_ABORTED, remaining=pending)
            session: UploadSession | None = None
            batch_size = self._config.upload.batch_size
            submitted: set[int] = set()

            while True:
                batch = await asyncio.to_thread(self._queue.peek_batch, batch_size)
                if not batch:
                    break
                if any(entry.seq in submitted for entry in batch):
                    raise InvariantViolationError(
                        "queue returned entries already confirmed in this drain"
                    )
                if session is None:
                    session = UploadSession.start(
                        batch[0],
                        install_id=self._install_id,
                        user_id=self._user_id,
                        version=self._version,
                        timezone_name=self._timezone_name,
                        now=self._clock(),
                        low_mgdl=self._config.upload.low_mgdl,
                        high_mgdl=self._config.upload.high_mgdl,
                    )
                receipt = await self._remote.submit_batch(
                    destination, session.manifest, session.build_records(batch)
                )

                submitted.update(entry.seq for entry in batch if entry.seq is not None)
                uploaded += len(batch)
                batches += 1
                duplicates += receipt.duplicates

                removed = await asyncio.to_thread(self._queue.remove, batch)
                if removed < len(batch):
                    # A newer change for the same sample replaced the entry; it stays queued.
                    logger.info(
                        "Confirmed batch of %d: %d entr(ies) already gone or superseded",
                        len(batch), len(batch) - removed,
                    )
                await asyncio.to_thread(self._queue.mark_uploaded, batch)
                self._state.record_upload(
                    self._clock(),
                    len(batch),
                    duplicates=receipt.duplicates,
                    last_sample_time=_newest_timestamp(batch),
                )
                logger.info(
                    "Uploaded batch %d of %d record(s) (%d duplicate) to %s",
                    batches, len(batch), receipt.duplicates, destination,
                )

                if token.cancelled:
                    remaining = await asyncio.to_thread(self._queue.count)
                    logger.info("Drain aborted after %d batch(es)", batches)
                    return DrainResult(
                        uploaded=uploaded,
                        batches=batches,
                        duplicates=duplicates,
                        status=STATUS_ABORTED,
                        remaining=remaining,
                    )
        except TideSyncError as exc:
            return self._failed(exc, uploaded, batches, duplicates, self._safe_count())
        finally:
            self._uploader_state = UploaderState.IDLE
            if not token.cancelled:
                self._mark_drained()

        logger.info(
            "Drain complete: %d entr(ies) in %d batch(es), %d duplicate",
            uploaded, batches, duplicates,
        )
        return DrainResult(uploaded=uploaded, batches=batches, duplicates=duplicates)

    def _mark_drained(self) -> None:
        try:
            self._state.set_last_drain_at(self._clock())
        except TideSyncError as exc:
            logger.warning("Could not record drain time: %s", exc)

    def _safe_count(self) -> int:
        try:
            return self._queue.count()
        except QueueStorageError:
            return -1

    @staticmethod
    def _failed(
        exc: TideSyncError, uploaded: int, batches: int, duplicates: int, remaining: int
    ) -> DrainResult:
        logger.warning("Drain failed after %d batch(es): %s", batches, exc)
        return DrainResult(
            uploaded=uploaded,
            batches=batches,
            duplicates=duplicates,
            status=STATUS_ERROR,
            error_kind=exc.kind,
            error=str(exc),
            remaining=remaining,
        )


def _newest_timestamp(batch: list[PendingSampleQueueEntry]) -> datetime | None:
    stamps = [
        entry.timestamp
        for entry in batch
        if entry.action is QueueAction.ADDED and entry.timestamp is not None
    ]
    return max(stamps) if stamps else None
