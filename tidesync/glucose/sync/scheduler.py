"""Background sync scheduler for the glucose sync engine.

Drives both sync paths on a fixed tick:
1. Decide whether the download path is due
2. Run the rolling-window download (``Downloader.sync_recent``)
3. Drain the pending upload queue if the uploader is enabled
4. Record failures so the next download waits out the back-off

Intervals (from sync_config.yaml, ``scheduler`` section):
    download:  every 4 hours after a success
    failure:   retried after 15 minutes
    drain:     every tick while enabled (the uploader itself rate-limits
               drains triggered by ``enable()``)

Neither sync path retries on its own; this loop is the retry.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from tidesync.glucose.base import utc_now
from tidesync.glucose.config_loader import SchedulerConfig
from tidesync.glucose.sync.downloader import Downloader, DownloadResult
from tidesync.glucose.sync.state import StateStore
from tidesync.glucose.sync.uploader import DrainResult, Uploader

logger = logging.getLogger("tidesync.glucose.sync.scheduler")


@dataclass
class SyncResult:
    """Result of one scheduler tick.

    Attributes:
        download:  Result of the download attempt, or None if not due.
        drain:     Result of the upload drain, or None if not run.
        status:    'success', 'partial', 'error' or 'idle'.
        error:     Error messages of the failed paths, if any.
        synced_at: UTC timestamp of the tick.
    """

    download: DownloadResult | None = None
    drain: DrainResult | None = None
    status: str = "idle"
    error: str | None = None
    synced_at: datetime = field(default_factory=utc_now)


class SyncScheduler:
    """Periodically run the download and upload paths.

    Usage::

        scheduler = SyncScheduler(context.downloader, context.uploader, context.state,
                                  config.scheduler)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        downloader: Downloader,
        uploader: Uploader,
        state: StateStore,
        config: SchedulerConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._downloader = downloader
        self._uploader = uploader
        self._state = state
        self._config = config
        self._clock = clock
        self._last_failure_at: datetime | None = None
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def should_download(self, now: datetime) -> bool:
        """Return True if the download path is due at ``now``.

        A failed attempt is retried once the failure back-off has passed;
        otherwise a download runs when the minimum interval has elapsed
        since the last successful one (or there never was one).
        """
        if not self._downloader.enabled or self._downloader.in_progress:
            return False
        if self._last_failure_at is not None:
            return now - self._last_failure_at >= self._config.failure_backoff
        last_sync = self._state.path_status("download").last_sync_time
        if last_sync is None:
            return True
        return now - last_sync >= self._config.min_download_interval

    async def run_once(self, now: datetime | None = None) -> SyncResult:
        """Run one tick: a due download, then a drain if uploads are enabled."""
        now = now or self._clock()
        result = SyncResult(synced_at=now)
        errors: list[str] = []

        if self.should_download(now):
            result.download = await self._downloader.sync_recent(now)
            if result.download.ok:
                self._last_failure_at = None
            elif result.download.error_kind is not None:
                self._last_failure_at = now
                errors.append(f"download: {result.download.error}")

        if self._uploader.enabled:
            result.drain = await self._uploader.drain_once()
            if result.drain.status == "error":
                errors.append(f"upload: {result.drain.error}")

        ran = [r for r in (result.download, result.drain) if r is not None]
        if not ran:
            result.status = "idle"
        elif errors and len(errors) == len(ran):
            result.status = "error"
        elif errors:
            result.status = "partial"
        else:
            result.status = "success"
        if errors:
            result.error = "; ".join(errors)

        logger.info(
            "Sync tick: download=%s drain=%s status=%s",
            result.download.status if result.download else "-",
            result.drain.status if result.drain else "-",
            result.status,
        )
        return result

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> None:
        """Tick every ``tick_seconds`` until ``stop_event`` is set."""
        stop_event = stop_event or self._stop_event
        logger.info("SyncScheduler started (tick=%ds)", self._config.tick_seconds)
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Sync tick failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._config.tick_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("SyncScheduler stopped")

    def start(self) -> None:
        """Run the loop as a background task on the current event loop."""
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self.run_forever(self._stop_event))

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
