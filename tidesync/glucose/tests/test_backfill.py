"""Tests for the backward block walk over historical data."""

from __future__ import annotations

from datetime import timedelta

import pytest

from tidesync.glucose.adapters.health_store import SQLiteHealthStore
from tidesync.glucose.config_loader import SyncConfig
from tidesync.glucose.errors import RemoteUnavailableError
from tidesync.glucose.sync.backfill import BlockDownload, BlockWalkState, load_walk_state
from tidesync.glucose.sync.downloader import Downloader
from tidesync.glucose.sync.state import StateStore
from tidesync.glucose.tests.conftest import TEST_NOW, FakeTidepool, remote_record

DAY = timedelta(days=1)
MINUTES_PER_DAY = 24 * 60


@pytest.fixture
def no_delay(sync_config: SyncConfig) -> SyncConfig:
    sync_config.backfill.block_delay_ms = 0
    return sync_config


@pytest.fixture
def history(fake_remote: FakeTidepool) -> FakeTidepool:
    """One reading an hour into each of the last three days."""
    fake_remote.records = [
        remote_record(f"d{day}", day * MINUTES_PER_DAY + 60) for day in range(3)
    ]
    return fake_remote


def _walk(downloader: Downloader, days: float, **kwargs) -> BlockDownload:
    return BlockDownload(
        downloader, target_start=TEST_NOW - timedelta(days=days), now=TEST_NOW, **kwargs
    )


class TestBlockLayout:
    def test_total_blocks_rounds_up(self, downloader: Downloader) -> None:
        assert _walk(downloader, 3).total_blocks == 3
        assert _walk(downloader, 2.5).total_blocks == 3

    def test_first_block_ends_now(self, downloader: Downloader) -> None:
        assert _walk(downloader, 3).next_block() == (TEST_NOW - DAY, TEST_NOW)

    def test_last_block_clamped_to_target(self, downloader: Downloader) -> None:
        walk = _walk(downloader, 0.5)
        assert walk.next_block() == (TEST_NOW - timedelta(hours=12), TEST_NOW)

    def test_rejects_non_positive_block_size(self, downloader: Downloader) -> None:
        with pytest.raises(ValueError):
            _walk(downloader, 3, block_size=timedelta(0))


class TestRun:
    @pytest.mark.asyncio
    async def test_walk_covers_range_without_gaps(
        self, downloader: Downloader, history: FakeTidepool
    ) -> None:
        await downloader.enable()
        walk = _walk(downloader, 3)
        progress = [p async for p in walk.run()]

        assert len(progress) == 3
        assert progress[-1].is_complete
        assert walk.download_completed
        windows = [(start, end) for start, end, _ in history.fetch_calls]
        assert windows[0][1] == TEST_NOW
        for newer, older in zip(windows, windows[1:]):
            assert older[1] == newer[0]
        assert windows[-1][0] == TEST_NOW - 3 * DAY

    @pytest.mark.asyncio
    async def test_items_accumulate_across_blocks(
        self,
        downloader: Downloader,
        history: FakeTidepool,
        health_store: SQLiteHealthStore,
    ) -> None:
        await downloader.enable()
        progress = [p async for p in _walk(downloader, 3).run()]
        assert [p.items_found for p in progress] == [1, 2, 3]
        assert [p.blocks_completed for p in progress] == [1, 2, 3]
        assert progress[-1].pct_complete == 100.0
        assert health_store.count() == 3

    @pytest.mark.asyncio
    async def test_failed_block_stops_walk_in_place(
        self, downloader: Downloader, history: FakeTidepool
    ) -> None:
        await downloader.enable()

        def fail_second_block() -> None:
            if len(history.fetch_calls) == 2:
                history.fetch_error = RemoteUnavailableError("502", status_code=502)

        history.on_fetch = fail_second_block
        walk = _walk(downloader, 3)
        progress = [p async for p in walk.run()]

        assert len(progress) == 2
        assert not progress[-1].result.ok
        assert not walk.download_completed
        assert walk.state.next_block_end == TEST_NOW - DAY
        assert walk.state.blocks_completed == 1
        assert "502" in walk.state.errors[-1]

    @pytest.mark.asyncio
    async def test_disabled_downloader_stops_walk(
        self, downloader: Downloader, history: FakeTidepool
    ) -> None:
        progress = [p async for p in _walk(downloader, 3).run()]
        assert len(progress) == 1
        assert progress[0].blocks_completed == 0

    @pytest.mark.asyncio
    async def test_next_block_none_after_completion(
        self, downloader: Downloader, history: FakeTidepool
    ) -> None:
        await downloader.enable()
        walk = _walk(downloader, 1)
        assert (await walk.download_next_block()).is_complete
        assert walk.next_block() is None
        assert await walk.download_next_block() is None

    @pytest.mark.asyncio
    async def test_verify_mode_counts_without_saving(
        self,
        downloader: Downloader,
        history: FakeTidepool,
        health_store: SQLiteHealthStore,
    ) -> None:
        await downloader.enable()
        progress = [p async for p in _walk(downloader, 3, verify_only=True).run()]
        assert progress[-1].is_complete
        assert all(p.result.verify_only for p in progress)
        assert health_store.count() == 0


class TestResume:
    @pytest.mark.asyncio
    async def test_interrupted_walk_resumes_from_saved_position(
        self,
        downloader: Downloader,
        history: FakeTidepool,
        state: StateStore,
        no_delay: SyncConfig,
    ) -> None:
        await downloader.enable()

        def fail_second_block() -> None:
            if len(history.fetch_calls) == 2:
                history.fetch_error = RemoteUnavailableError("down", status_code=503)

        history.on_fetch = fail_second_block
        first = BlockDownload.for_days(downloader, state, no_delay, days=3, now=TEST_NOW)
        [p async for p in first.run()]
        assert not first.download_completed

        history.on_fetch = None
        history.fetch_error = None
        history.fetch_calls.clear()
        later = TEST_NOW + timedelta(hours=6)
        second = BlockDownload.for_days(downloader, state, no_delay, days=3, now=later)
        progress = [p async for p in second.run()]

        assert history.fetch_calls[0][1] == TEST_NOW - DAY
        assert second.download_completed
        assert progress[-1].blocks_completed == 3
        assert progress[-1].items_found == 3
        assert load_walk_state(state) is None

    @pytest.mark.asyncio
    async def test_resume_false_starts_over(
        self,
        downloader: Downloader,
        history: FakeTidepool,
        state: StateStore,
        no_delay: SyncConfig,
    ) -> None:
        await downloader.enable()
        history.fetch_error = RemoteUnavailableError("down", status_code=503)
        walk = BlockDownload.for_days(downloader, state, no_delay, days=3, now=TEST_NOW)
        [p async for p in walk.run()]
        assert load_walk_state(state) is not None

        fresh = BlockDownload.for_days(
            downloader, state, no_delay, days=3, now=TEST_NOW, resume=False
        )
        assert fresh.state.blocks_completed == 0
        assert fresh.state.next_block_end == TEST_NOW

    def test_mode_mismatch_ignores_saved_walk(
        self, downloader: Downloader, state: StateStore, no_delay: SyncConfig
    ) -> None:
        saved = BlockWalkState(
            target_start=TEST_NOW - 3 * DAY,
            walk_end=TEST_NOW,
            next_block_end=TEST_NOW - DAY,
            blocks_completed=1,
            verify_only=True,
        )
        state.set("block_walk", saved.to_json())
        walk = BlockDownload.for_days(downloader, state, no_delay, days=3, now=TEST_NOW)
        assert walk.state.blocks_completed == 0
        assert not walk.state.verify_only

    def test_finished_walk_is_not_resumed(self, state: StateStore) -> None:
        done = BlockWalkState(
            target_start=TEST_NOW - DAY, walk_end=TEST_NOW, next_block_end=TEST_NOW - DAY
        )
        state.set("block_walk", done.to_json())
        assert load_walk_state(state) is None


class TestForDays:
    @pytest.mark.parametrize("days, expected", [(0, 1), (90, 90), (100_000, 1825)])
    def test_days_clamped_to_configured_range(
        self, downloader: Downloader, no_delay: SyncConfig, days: int, expected: int
    ) -> None:
        walk = BlockDownload.for_days(
            downloader, None, no_delay, days=days, now=TEST_NOW
        )
        assert walk.state.target_start == TEST_NOW - timedelta(days=expected)

    def test_default_days_from_config(
        self, downloader: Downloader, no_delay: SyncConfig
    ) -> None:
        walk = BlockDownload.for_days(downloader, None, no_delay, now=TEST_NOW)
        assert walk.total_blocks == no_delay.backfill.default_days
