"""Wiring for one local-store / remote-user pairing.

A ``SyncContext`` owns every piece of the sync engine for one scope
(``"<store id>:<remote user id>"``): the shared ``SyncGeneration``, the state
store, the pending queue, the downloader, the uploader and the scheduler.
The FastAPI app keeps one on ``app.state.sync``; tests build their own with
fake adapters.

Usage::

    context = SyncContext.from_settings()
    await context.start()
    ...
    await context.shutdown()
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Callable

from tidesync.config import Settings, get_settings
from tidesync.glucose.adapters import SQLiteHealthStore, TidepoolClient
from tidesync.glucose.base import LocalStoreAdapter, RemoteDataSource, utc_now
from tidesync.glucose.config_loader import SyncConfig, get_sync_config, load_sync_config
from tidesync.glucose.errors import TideSyncError
from tidesync.glucose.sync.backfill import BlockDownload, BlockProgress
from tidesync.glucose.sync.downloader import Downloader
from tidesync.glucose.sync.generation import SyncGeneration
from tidesync.glucose.sync.pending_queue import PendingSampleQueue
from tidesync.glucose.sync.scheduler import SyncScheduler
from tidesync.glucose.sync.state import StateStore, SyncStatus
from tidesync.glucose.sync.uploader import Uploader
from tidesync.services.database import Database

logger = logging.getLogger("tidesync.glucose.context")

#: Scope for values shared by every pairing on this installation.
GLOBAL_SCOPE = "__global__"


def make_scope(store_id: str, user_id: str) -> str:
    return f"{store_id}:{user_id}"


def get_install_id(database: Database) -> str:
    """Return the installation id, generating and persisting it on first use."""
    store = StateStore(database, GLOBAL_SCOPE)
    install_id = store.get("install_id")
    if not install_id:
        install_id = str(uuid.uuid4()).upper()
        store.set("install_id", install_id)
        logger.info("Generated installation id %s", install_id)
    return install_id


class SyncContext:
    """Sync engine for one scope.

    Args:
        remote:        Remote data source.
        local_store:   Local health store.
        database:      Database for queue and sync state.
        config:        Sync configuration.
        user_id:       Remote user id (part of the scope).
        store_id:      Local store identity (part of the scope).
        version:       Uploader version string ('<bundle>:<version>').
        timezone_name: IANA zone reported in upload manifests.
        clock:         Returns the current UTC time.
    """

    def __init__(
        self,
        remote: RemoteDataSource,
        local_store: LocalStoreAdapter,
        database: Database,
        config: SyncConfig,
        user_id: str,
        store_id: str = "local",
        version: str = "",
        timezone_name: str = "UTC",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.remote = remote
        self.local_store = local_store
        self.database = database
        self.config = config
        self.store_id = store_id
        self.version = version
        self.timezone_name = timezone_name
        self.generation = SyncGeneration()
        self.install_id = get_install_id(database)
        self._clock = clock
        self._bind(user_id)

    def _bind(self, user_id: str) -> None:
        self.user_id = user_id
        self.scope = make_scope(self.store_id, user_id)
        self.state = StateStore(self.database, self.scope)
        self.queue = PendingSampleQueue(self.database, self.scope)
        self.downloader = Downloader(
            self.remote,
            self.local_store,
            self.state,
            self.generation,
            self.config,
            clock=self._clock,
        )
        self.uploader = Uploader(
            self.remote,
            self.local_store,
            self.queue,
            self.state,
            self.generation,
            self.config,
            install_id=self.install_id,
            user_id=user_id,
            version=self.version,
            timezone_name=self.timezone_name,
            clock=self._clock,
        )
        self.scheduler = SyncScheduler(
            self.downloader, self.uploader, self.state, self.config.scheduler, clock=self._clock
        )
        logger.info("Sync context bound to scope %s", self.scope)

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        config: SyncConfig | None = None,
        remote: RemoteDataSource | None = None,
        local_store: LocalStoreAdapter | None = None,
    ) -> "SyncContext":
        """Build a context from application settings.

        Missing collaborators default to a ``TidepoolClient`` and a
        ``SQLiteHealthStore`` at the configured paths.
        """
        settings = settings or get_settings()
        if config is None:
            config = (
                load_sync_config(settings.sync_config_path)
                if settings.sync_config_path
                else get_sync_config()
            )
        if remote is None:
            remote = TidepoolClient.from_settings(settings)
        if local_store is None:
            local_store = SQLiteHealthStore.open(settings.health_store_path)

        user_id = settings.tidepool_user_id or getattr(remote, "user_id", None) or "anonymous"
        return cls(
            remote=remote,
            local_store=local_store,
            database=Database(settings.database_path),
            config=config,
            user_id=user_id,
            store_id=settings.store_id,
            version=f"{settings.app_bundle_id}:{settings.app_version}",
            timezone_name=settings.timezone,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(
        self, download: bool = True, upload: bool = True, scheduler: bool = False
    ) -> None:
        """Enable the requested sync paths and optionally the scheduler.

        A path whose local-store authorization is refused stays disabled;
        the failure is logged, not raised.
        """
        if download:
            try:
                await self.downloader.enable()
            except TideSyncError as exc:
                logger.warning("Download path not enabled: %s", exc)
        if upload:
            try:
                await self.uploader.enable()
            except TideSyncError as exc:
                logger.warning("Upload path not enabled: %s", exc)
        if scheduler:
            self.scheduler.start()

    async def shutdown(self) -> None:
        """Stop the scheduler and abort any download in flight."""
        await self.scheduler.stop()
        if self.downloader.in_progress:
            self.downloader.abort_sync_in_progress()
        self.database.close()
        logger.info("Sync context for %s shut down", self.scope)

    async def reset_for_new_user(self, user_id: str | None = None) -> None:
        """Forget everything about the current pairing, then rebind.

        Aborts work in flight, disables both paths, clears the scope's queue
        and state.  With ``user_id`` the context is rebound to the new
        pairing; both paths start disabled.
        """
        await self.scheduler.stop()
        self.downloader.disable()
        await self.uploader.disable()
        dropped = self.queue.clear()
        self.state.clear()
        logger.info("Reset scope %s (%d queued entries dropped)", self.scope, dropped)
        if user_id is not None and user_id != self.user_id:
            self._bind(user_id)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def status(self) -> SyncStatus:
        return SyncStatus(
            download=self.state.path_status("download"),
            upload=self.state.path_status("upload"),
            download_cursor=self.state.download_cursor,
            pending_uploads=self.queue.count(),
            download_in_progress=self.downloader.in_progress,
            upload_state=self.uploader.state.value,
        )

    def block_download(
        self,
        days: int | None = None,
        now: datetime | None = None,
        verify_only: bool = False,
        resume: bool = True,
    ) -> BlockDownload:
        return BlockDownload.for_days(
            self.downloader,
            self.state,
            self.config,
            days=days,
            now=now or self._clock(),
            verify_only=verify_only,
            resume=resume,
        )

    async def backfill(
        self,
        days: int | None = None,
        now: datetime | None = None,
        verify_only: bool = False,
        resume: bool = True,
    ) -> list[BlockProgress]:
        """Walk the last ``days`` days block by block.

        Returns:
            One BlockProgress per block attempted; the last one tells whether
            the walk completed.
        """
        walk = self.block_download(days=days, now=now, verify_only=verify_only, resume=resume)
        logger.info(
            "Backfill starting: %d block(s), verify_only=%s", walk.total_blocks, verify_only
        )
        return [progress async for progress in walk.run()]
