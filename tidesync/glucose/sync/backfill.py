"""Historical block-walk download for tidesync.

A multi-year download is never issued as one request.  ``BlockDownload``
walks backward from "now" toward a target start date in fixed-size blocks
(one day by default), running one ``Downloader.sync_tidepool_data`` attempt
per block:

- each block ends where the previous one started
- the earliest block's start is clamped to the target date
- the walk is complete once a block's end is not after the target

Blocks run strictly one after another.  The walk position is persisted after
every block, so an interrupted walk resumes instead of starting over.

Usage::

    walk = BlockDownload.for_days(context.downloader, context.state, config, days=90)
    async for progress in walk.run():
        logger.info("Backfill %.1f%% (%d items)", progress.pct_complete, progress.items_found)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import AsyncIterator

from tidesync.glucose.base import parse_timestamp, utc_now
from tidesync.glucose.config_loader import SyncConfig
from tidesync.glucose.sync.downloader import Downloader, DownloadResult
from tidesync.glucose.sync.state import StateStore

logger = logging.getLogger("tidesync.glucose.sync.backfill")

_STATE_KEY = "block_walk"


@dataclass
class BlockProgress:
    """Progress update emitted after each block.

    Attributes:
        block_start:      Start of the block just processed.
        block_end:        End of the block just processed.
        result:           Downloader result for that block.
        items_found:      Items accumulated across all blocks so far.
        blocks_completed: Blocks finished so far.
        total_blocks:     Blocks the whole walk needs.
        is_complete:      True once the walk reached the target start.
    """

    block_start: datetime
    block_end: datetime
    result: DownloadResult
    items_found: int
    blocks_completed: int
    total_blocks: int
    is_complete: bool = False

    @property
    def pct_complete(self) -> float:
        if self.total_blocks == 0:
            return 100.0
        return round(self.blocks_completed / self.total_blocks * 100, 1)


@dataclass
class BlockWalkState:
    """Persistent state for resumable block walks.

    Attributes:
        target_start:     Earliest instant the walk must reach.
        walk_end:         Instant the walk started from ("now" at creation).
        next_block_end:   End of the next block to download.
        items_found:      Running item count.
        blocks_completed: Running block count.
        verify_only:      Whether blocks run in audit mode.
        errors:           Recent error messages.
    """

    target_start: datetime
    walk_end: datetime
    next_block_end: datetime
    items_found: int = 0
    blocks_completed: int = 0
    verify_only: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.next_block_end <= self.target_start

    def to_json(self) -> dict:
        return {
            "target_start": self.target_start.isoformat(),
            "walk_end": self.walk_end.isoformat(),
            "next_block_end": self.next_block_end.isoformat(),
            "items_found": self.items_found,
            "blocks_completed": self.blocks_completed,
            "verify_only": self.verify_only,
            "errors": self.errors[-20:],
        }

    @classmethod
    def from_json(cls, data: dict) -> "BlockWalkState | None":
        target_start = parse_timestamp(data.get("target_start"))
        walk_end = parse_timestamp(data.get("walk_end"))
        next_block_end = parse_timestamp(data.get("next_block_end"))
        if target_start is None or walk_end is None or next_block_end is None:
            return None
        return cls(
            target_start=target_start,
            walk_end=walk_end,
            next_block_end=next_block_end,
            items_found=int(data.get("items_found", 0)),
            blocks_completed=int(data.get("blocks_completed", 0)),
            verify_only=bool(data.get("verify_only", False)),
            errors=list(data.get("errors", [])),
        )


def load_walk_state(state_store: StateStore | None) -> BlockWalkState | None:
    """Return the saved, unfinished block walk of a scope, if any."""
    if state_store is None:
        return None
    data = state_store.get(_STATE_KEY)
    if not data:
        return None
    saved = BlockWalkState.from_json(data)
    if saved is None or saved.completed:
        return None
    return saved


class BlockDownload:
    """Walk ``[target_start, now]`` backward in fixed-size blocks."""

    def __init__(
        self,
        downloader: Downloader,
        target_start: datetime,
        now: datetime | None = None,
        block_size: timedelta = timedelta(days=1),
        verify_only: bool = False,
        state_store: StateStore | None = None,
        block_delay: float = 0.0,
        resume_from: BlockWalkState | None = None,
    ) -> None:
        if block_size <= timedelta(0):
            raise ValueError("block_size must be positive")
        self._downloader = downloader
        self._block_size = block_size
        self._block_delay = block_delay
        self._state_store = state_store
        self._last_block_failed = False

        walk_end = now or utc_now()
        resumed = resume_from
        if resumed is not None:
            logger.info(
                "Block walk resuming at %s (%d blocks done, %d items)",
                resumed.next_block_end.isoformat(),
                resumed.blocks_completed,
                resumed.items_found,
            )
            self._walk = resumed
        else:
            self._walk = BlockWalkState(
                target_start=target_start,
                walk_end=walk_end,
                next_block_end=walk_end,
                verify_only=verify_only,
            )
            self._save()

    @classmethod
    def for_days(
        cls,
        downloader: Downloader,
        state_store: StateStore | None,
        config: SyncConfig,
        days: int | None = None,
        now: datetime | None = None,
        verify_only: bool = False,
        resume: bool = True,
    ) -> "BlockDownload":
        """Build a walk covering the last ``days`` days, clamped to the configured range.

        An unfinished walk saved in ``state_store`` with the same mode is
        picked up where it stopped instead, unless ``resume`` is False.
        """
        cfg = config.backfill
        span = cfg.clamp_days(days if days is not None else cfg.default_days)
        now = now or utc_now()
        saved = load_walk_state(state_store) if resume else None
        if saved is not None and saved.verify_only != verify_only:
            saved = None
        return cls(
            downloader,
            target_start=now - timedelta(days=span),
            now=now,
            block_size=cfg.block_size,
            verify_only=verify_only,
            state_store=state_store,
            block_delay=cfg.block_delay_ms / 1000.0,
            resume_from=saved,
        )

    # ------------------------------------------------------------------
    # Walk state
    # ------------------------------------------------------------------

    @property
    def download_completed(self) -> bool:
        return self._walk.completed

    @property
    def items_found(self) -> int:
        return self._walk.items_found

    @property
    def state(self) -> BlockWalkState:
        return self._walk

    @property
    def total_blocks(self) -> int:
        span = self._walk.walk_end - self._walk.target_start
        if span <= timedelta(0):
            return 0
        full, rest = divmod(span, self._block_size)
        return int(full) + (1 if rest else 0)

    def next_block(self) -> tuple[datetime, datetime] | None:
        """Return the ``(start, end)`` of the next block, or None when complete."""
        if self.download_completed:
            return None
        end = self._walk.next_block_end
        start = max(end - self._block_size, self._walk.target_start)
        return start, end

    # ------------------------------------------------------------------
    # Walking
    # ------------------------------------------------------------------

    async def download_next_block(self) -> BlockProgress | None:
        """Download the next block and advance the walk on success.

        A failed, rejected or aborted block leaves the position unchanged so
        the same block is retried by the next call (or the next run).

        Returns:
            BlockProgress, or None if the walk was already complete.
        """
        block = self.next_block()
        if block is None:
            return None
        start, end = block

        result = await self._downloader.sync_tidepool_data(
            start, end, verify_only=self._walk.verify_only
        )
        self._last_block_failed = not result.ok
        if result.ok:
            self._walk.items_found += max(result.item_count, 0)
            self._walk.blocks_completed += 1
            self._walk.next_block_end = start
        else:
            message = f"Block {start.isoformat()} → {end.isoformat()}: {result.status}"
            if result.error:
                message += f" ({result.error})"
            self._walk.errors.append(message)
            logger.warning("Block walk stopped: %s", message)
        self._save()

        if self.download_completed:
            logger.info(
                "Block walk complete: %d blocks, %d items",
                self._walk.blocks_completed,
                self._walk.items_found,
            )

        return BlockProgress(
            block_start=start,
            block_end=end,
            result=result,
            items_found=self._walk.items_found,
            blocks_completed=self._walk.blocks_completed,
            total_blocks=self.total_blocks,
            is_complete=self.download_completed,
        )

    async def run(self) -> AsyncIterator[BlockProgress]:
        """Walk every remaining block, yielding progress after each.

        This is an async generator.  It stops early when a block does not
        succeed; the walk can be resumed later from the persisted position.
        """
        while not self.download_completed:
            progress = await self.download_next_block()
            if progress is None:
                return
            yield progress
            if self._last_block_failed:
                return
            if self._block_delay:
                await asyncio.sleep(self._block_delay)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _save(self) -> None:
        if self._state_store is not None:
            self._state_store.set(_STATE_KEY, self._walk.to_json())
