"""Tidepool → local store download path.

One attempt (``sync_tidepool_data``) runs as:

1. reject if disabled, already running, or the remote is unavailable
2. fetch remote records for the window
3. convert them to Samples, skipping malformed records
4. query the local store for the same window
5. verify mode: count local samples the remote lacks; otherwise
   dedup and save the rest

A ``CancellationToken`` is captured at the start and checked after every
await; ``abort_sync_in_progress()`` makes it stale so the attempt finishes
with 0 and leaves the store and the cursor alone.  Errors are returned in
the ``DownloadResult``, never raised to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from tidesync.glucose.base import (
    GLUCOSE_TYPE,
    LocalStoreAdapter,
    RemoteDataSource,
    Sample,
    parse_timestamp,
    utc_now,
)
from tidesync.glucose.config_loader import SyncConfig
from tidesync.glucose.errors import (
    ErrorKind,
    RecordValidationError,
    StorageError,
    TideSyncError,
)
from tidesync.glucose.sync.dedup import DedupIndex
from tidesync.glucose.sync.generation import CancellationToken, SyncGeneration
from tidesync.glucose.sync.state import StateStore

logger = logging.getLogger("tidesync.glucose.sync.downloader")

STATUS_SUCCESS = "success"
STATUS_ABORTED = "aborted"
STATUS_REJECTED = "rejected"
STATUS_ERROR = "error"

_REQUIRED_FIELDS = ("id", "type", "time", "value")


@dataclass
class DownloadResult:
    """Outcome of one download attempt.

    Attributes:
        item_count:  Samples saved (or, in verify mode, local samples missing
                     from the remote).  0 when aborted, disabled or busy, -1 on error.
        status:      'success', 'aborted', 'rejected' or 'error'.
        verify_only: True if this was an audit run.
        error_kind:  Category of the failure, if any.
        error:       Human-readable failure message.
        skipped:     Remote records dropped as malformed.
    """

    item_count: int
    status: str = STATUS_SUCCESS
    verify_only: bool = False
    error_kind: ErrorKind | None = None
    error: str | None = None
    skipped: int = 0

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS


# ---------------------------------------------------------------------------
# Remote record conversion
# ---------------------------------------------------------------------------


def convert_remote_record(
    record: dict,
    mmol_to_mgdl: float,
    source_name: str = "",
    source_bundle_id: str = "",
) -> Sample:
    """Convert one Tidepool JSON record to a Sample.

    Tidepool reports glucose in mmol/L; the value is converted to mg/dL and
    rounded to a whole number.

    Raises:
        RecordValidationError: If a required field is missing or malformed.
    """
    missing = [key for key in _REQUIRED_FIELDS if record.get(key) in (None, "")]
    if missing:
        raise RecordValidationError(
            f"record {record.get('id', '<no id>')} missing {', '.join(missing)}"
        )
    timestamp = parse_timestamp(str(record["time"]))
    if timestamp is None:
        raise RecordValidationError(f"record {record['id']} has bad time {record['time']!r}")
    try:
        mmol = float(record["value"])
    except (TypeError, ValueError):
        raise RecordValidationError(
            f"record {record['id']} has bad value {record['value']!r}"
        ) from None

    return Sample(
        value=float(round(mmol * mmol_to_mgdl)),
        timestamp=timestamp,
        external_id=str(record["id"]),
        sample_type=str(record["type"]),
        source_name=source_name,
        source_bundle_id=source_bundle_id,
        device_id=record.get("deviceId"),
        user_entered=record.get("subType") == "manual",
        metadata={"type": str(record["type"])},
    )


def convert_remote_records(
    records: list[dict], config: SyncConfig
) -> tuple[list[Sample], int]:
    """Convert a list of remote records, skipping the malformed ones.

    Returns:
        (samples, skipped_count)
    """
    samples: list[Sample] = []
    skipped = 0
    for record in records:
        try:
            samples.append(
                convert_remote_record(
                    record,
                    config.download.mmol_to_mgdl,
                    source_name=config.download.source_name,
                    source_bundle_id=config.download.source_bundle_id,
                )
            )
        except RecordValidationError as exc:
            skipped += 1
            logger.warning("Skipping remote record: %s", exc)
    return samples, skipped


# ---------------------------------------------------------------------------
# Downloader
# ---------------------------------------------------------------------------


class Downloader:
    """Pull glucose samples from the remote into the local store.

    At most one attempt is active at a time.  The active attempt is tracked
    by its token, so a stale attempt finishing after an abort (and possibly a
    restart) never clears the flag of the newer one.
    """

    def __init__(
        self,
        remote: RemoteDataSource,
        local_store: LocalStoreAdapter,
        state: StateStore,
        generation: SyncGeneration,
        config: SyncConfig,
        dedup: DedupIndex | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._remote = remote
        self._local = local_store
        self._state = state
        self._generation = generation
        self._config = config
        self._dedup = dedup or DedupIndex()
        self._clock = clock
        self._enabled = False
        self._active: CancellationToken | None = None

    # ------------------------------------------------------------------
    # Enablement
    # ------------------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def in_progress(self) -> bool:
        return self._active is not None

    async def enable(self) -> None:
        """Request read and write access to the local store and turn syncing on.

        Raises:
            LocalStoreAuthorizationError: If the store refused access.
        """
        await self._local.authorize(reads=True, writes=True)
        self._enabled = True
        logger.info("Downloader enabled")

    def disable(self) -> None:
        """Turn syncing off, aborting any attempt in flight."""
        if self.in_progress:
            self.abort_sync_in_progress()
        self._enabled = False
        logger.info("Downloader disabled")

    def abort_sync_in_progress(self) -> None:
        """Cancel the current attempt; its eventual result reports 0."""
        generation = self._generation.advance()
        self._active = None
        logger.info("Download sync aborted (generation now %d)", generation)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync_tidepool_data(
        self, from_time: datetime, to_time: datetime, verify_only: bool = False
    ) -> DownloadResult:
        """Run one download attempt over ``[from_time, to_time]``.

        Args:
            from_time:   Window start (UTC).
            to_time:     Window end (UTC).
            verify_only: Audit mode: count local samples the remote lacks,
                         never write.

        Returns:
            DownloadResult; ``item_count`` is the saved (or missing) count.
        """
        if not self._enabled:
            logger.info("Download sync skipped: feature not enabled")
            return DownloadResult(0, status=STATUS_REJECTED, verify_only=verify_only)
        if self._active is not None:
            logger.info("Download sync rejected: another sync is in progress")
            return DownloadResult(
                0,
                status=STATUS_REJECTED,
                verify_only=verify_only,
                error="sync already in progress",
            )
        if not self._remote.is_available():
            logger.info("Download sync rejected: %s unavailable", self._remote.DISPLAY_NAME)
            return DownloadResult(
                -1,
                status=STATUS_REJECTED,
                verify_only=verify_only,
                error_kind=ErrorKind.TRANSIENT,
                error="remote service unavailable",
            )

        token = self._generation.token()
        self._active = token
        logger.info(
            "Download sync started: %s → %s (verify_only=%s, generation=%d)",
            from_time.isoformat(), to_time.isoformat(), verify_only, token.generation,
        )
        try:
            result = await self._run_attempt(token, from_time, to_time, verify_only)
        except StorageError as exc:
            result = self._failed(exc, "state update", verify_only)
        finally:
            self._finish(token)

        logger.info(
            "Download sync finished: status=%s items=%d skipped=%d",
            result.status, result.item_count, result.skipped,
        )
        return result

    async def sync_recent(
        self, now: datetime | None = None, verify_only: bool = False
    ) -> DownloadResult:
        """Sync the rolling window ending now.

        The window normally spans ``download.window_days``.  If the cursor
        shows the last successful sync is older than that, the window is
        widened back to the cursor, capped at ``download.catch_up_days``.
        """
        now = now or self._clock()
        start = now - self._config.download.window
        cursor = self._state.download_cursor
        if cursor is not None and cursor < start:
            start = max(cursor, now - self._config.download.catch_up)
            logger.info("Download cursor %s is stale, widening window to %s", cursor, start)
        return await self.sync_tidepool_data(start, now, verify_only=verify_only)

    def _finish(self, token: CancellationToken) -> None:
        if self._active is token:
            self._active = None

    async def _run_attempt(
        self,
        token: CancellationToken,
        from_time: datetime,
        to_time: datetime,
        verify_only: bool,
    ) -> DownloadResult:
        types = self._config.tracked_types

        try:
            records = await self._remote.fetch_samples(from_time, to_time, types)
        except TideSyncError as exc:
            return self._failed(exc, "fetch", verify_only)
        if token.cancelled:
            return self._aborted("fetch", verify_only)

        remote_samples, skipped = convert_remote_records(records, self._config)
        logger.debug(
            "Fetched %d remote record(s), %d usable", len(records), len(remote_samples)
        )

        if not remote_samples and not verify_only:
            self._record_success(to_time, 0)
            return DownloadResult(0, skipped=skipped)

        local_samples: list[Sample] = []
        try:
            for sample_type in types or [GLUCOSE_TYPE]:
                local_samples.extend(
                    await self._local.query_range(from_time, to_time, sample_type)
                )
        except TideSyncError as exc:
            return self._failed(exc, "local query", verify_only, skipped)
        if token.cancelled:
            return self._aborted("local query", verify_only)

        if verify_only:
            missing = self._dedup.count_missing_remote(local_samples, remote_samples)
            logger.info(
                "Verify: %d of %d local sample(s) missing from remote",
                missing, len(local_samples),
            )
            return DownloadResult(missing, verify_only=True, skipped=skipped)

        new_samples = self._dedup.filter_new(remote_samples, local_samples)
        if new_samples:
            try:
                await self._local.save_samples(new_samples)
            except TideSyncError as exc:
                return self._failed(exc, "save", verify_only, skipped)
            if token.cancelled:
                return self._aborted("save", verify_only)

        self._record_success(to_time, len(new_samples))
        return DownloadResult(len(new_samples), skipped=skipped)

    def _record_success(self, to_time: datetime, item_count: int) -> None:
        self._state.advance_download_cursor(to_time)
        self._state.record_download(self._clock(), item_count)

    @staticmethod
    def _aborted(stage: str, verify_only: bool) -> DownloadResult:
        logger.info("Download sync aborted after %s; results discarded", stage)
        return DownloadResult(0, status=STATUS_ABORTED, verify_only=verify_only)

    @staticmethod
    def _failed(
        exc: TideSyncError, stage: str, verify_only: bool, skipped: int = 0
    ) -> DownloadResult:
        logger.warning("Download sync failed during %s: %s", stage, exc)
        return DownloadResult(
            -1,
            status=STATUS_ERROR,
            verify_only=verify_only,
            error_kind=exc.kind,
            error=str(exc),
            skipped=skipped,
        )
