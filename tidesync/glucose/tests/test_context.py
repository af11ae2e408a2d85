"""Tests for SyncContext wiring and lifecycle."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from tidesync.glucose.adapters.health_store import SQLiteHealthStore
from tidesync.glucose.config_loader import SyncConfig
from tidesync.glucose.context import SyncContext, get_install_id, make_scope
from tidesync.glucose.errors import LocalStoreAuthorizationError
from tidesync.glucose.tests.conftest import (
    TEST_NOW,
    TEST_SCOPE,
    FakeTidepool,
    dexcom_sample,
    remote_record,
)
from tidesync.services.database import Database


class TestInstallId:
    def test_generated_once_and_persisted(self, database: Database) -> None:
        install_id = get_install_id(database)
        assert install_id == install_id.upper()
        assert get_install_id(database) == install_id

    def test_shared_across_scopes(self, context: SyncContext, database: Database) -> None:
        assert context.install_id == get_install_id(database)


class TestScope:
    def test_make_scope(self) -> None:
        assert make_scope("local", "abc") == "local:abc"

    def test_context_scope(self, context: SyncContext) -> None:
        assert context.scope == TEST_SCOPE
        assert context.state.scope == TEST_SCOPE

    def test_paths_share_one_generation(self, context: SyncContext) -> None:
        before = context.generation.current
        context.downloader.abort_sync_in_progress()
        assert context.generation.current == before + 1


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_enables_both_paths(self, context: SyncContext) -> None:
        await context.start()
        assert context.downloader.enabled
        assert context.uploader.enabled
        assert not context.scheduler.running

    @pytest.mark.asyncio
    async def test_start_survives_refused_authorization(
        self, context: SyncContext, health_store: SQLiteHealthStore
    ) -> None:
        health_store.grant_permissions = False
        await context.start()
        assert not context.downloader.enabled
        assert not context.uploader.enabled

    @pytest.mark.asyncio
    async def test_refused_upload_leaves_download_enabled(self, context: SyncContext) -> None:
        refused = AsyncMock(side_effect=LocalStoreAuthorizationError("write denied"))
        with patch.object(context.uploader, "enable", refused):
            await context.start()
        refused.assert_awaited_once()
        assert context.downloader.enabled
        assert not context.uploader.enabled

    @pytest.mark.asyncio
    async def test_start_and_shutdown_scheduler(self, context: SyncContext) -> None:
        await context.start(scheduler=True)
        assert context.scheduler.running
        await context.shutdown()
        assert not context.scheduler.running

    @pytest.mark.asyncio
    async def test_status(
        self, context: SyncContext, health_store: SQLiteHealthStore, fake_remote: FakeTidepool
    ) -> None:
        fake_remote.available = False
        await context.start()
        await health_store.save_samples([dexcom_sample(5), dexcom_sample(10)])

        status = context.status()
        assert status.pending_uploads == 2
        assert not status.download_in_progress
        assert status.upload_state == "idle"
        assert status.download.last_sync_time is None
        assert status.to_json()["pending_uploads"] == 2


class TestResetForNewUser:
    @pytest.mark.asyncio
    async def test_reset_clears_scope_and_rebinds(
        self, context: SyncContext, health_store: SQLiteHealthStore, fake_remote: FakeTidepool
    ) -> None:
        fake_remote.available = False
        await context.start()
        await health_store.save_samples([dexcom_sample(5)])
        context.state.advance_download_cursor(TEST_NOW)
        old_queue = context.queue
        install_id = context.install_id

        await context.reset_for_new_user("f00dfeed")

        assert old_queue.count() == 0
        assert context.scope == "local:f00dfeed"
        assert context.state.download_cursor is None
        assert not context.downloader.enabled
        assert not context.uploader.enabled
        assert context.install_id == install_id

    @pytest.mark.asyncio
    async def test_reset_without_user_keeps_scope(self, context: SyncContext) -> None:
        await context.start()
        context.state.advance_download_cursor(TEST_NOW)
        await context.reset_for_new_user()
        assert context.scope == TEST_SCOPE
        assert context.state.download_cursor is None


class TestBackfill:
    @pytest.mark.asyncio
    async def test_backfill_reports_progress(
        self, context: SyncContext, sync_config: SyncConfig, fake_remote: FakeTidepool
    ) -> None:
        sync_config.backfill.block_delay_ms = 0
        fake_remote.records = [remote_record("r1", 30), remote_record("r2", 30 * 60)]
        await context.downloader.enable()

        progress = await context.backfill(days=2, now=TEST_NOW)
        assert [p.blocks_completed for p in progress] == [1, 2]
        assert progress[-1].is_complete
        assert progress[-1].items_found == 2
        assert progress[-1].pct_complete == 100.0

    @pytest.mark.asyncio
    async def test_backfill_while_disabled_finds_nothing(
        self, context: SyncContext, sync_config: SyncConfig
    ) -> None:
        sync_config.backfill.block_delay_ms = 0
        progress = await context.backfill(days=2, now=TEST_NOW)
        assert len(progress) == 1
        assert progress[0].blocks_completed == 0
        assert not progress[0].is_complete
