"""Shared fixtures and a fake Tidepool service for glucose sync tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator

import pytest

from tidesync.glucose.adapters.health_store import SQLiteHealthStore
from tidesync.glucose.base import (
    GLUCOSE_TYPE,
    Manifest,
    RemoteDataSource,
    Sample,
    UploadReceipt,
    UploadRecord,
    format_zulu,
    parse_timestamp,
)
from tidesync.glucose.config_loader import SyncConfig, load_sync_config
from tidesync.glucose.context import SyncContext
from tidesync.glucose.errors import RemoteUnavailableError
from tidesync.glucose.sync.downloader import Downloader
from tidesync.glucose.sync.generation import SyncGeneration
from tidesync.glucose.sync.pending_queue import PendingSampleQueue
from tidesync.glucose.sync.state import StateStore
from tidesync.glucose.sync.uploader import Uploader
from tidesync.services.database import Database

# Canonical test identities
TEST_USER_ID = "0d4c8e1f9a"
TEST_SCOPE = f"local:{TEST_USER_ID}"
TEST_NOW = datetime(2026, 2, 23, 12, 0, tzinfo=timezone.utc)
TEST_VERSION = "org.tidepool.tidesync:0.1.0"

DEXCOM_SOURCE = "Dexcom G6"
DEXCOM_BUNDLE = "com.dexcom.cgm"


def fixed_clock() -> datetime:
    return TEST_NOW


# ---------------------------------------------------------------------------
# Sample builders
# ---------------------------------------------------------------------------


def remote_record(record_id: str, minutes_ago: int, mmol: float = 5.5) -> dict:
    """A Tidepool cbg record ``minutes_ago`` before TEST_NOW."""
    return {
        "id": record_id,
        "type": GLUCOSE_TYPE,
        "time": format_zulu(TEST_NOW - timedelta(minutes=minutes_ago)),
        "value": mmol,
        "units": "mmol/L",
        "deviceId": "DexG6_ABC123",
    }


def dexcom_sample(minutes_ago: int, value: float = 110.0, **fields) -> Sample:
    """A locally recorded Dexcom reading ``minutes_ago`` before TEST_NOW."""
    fields.setdefault("source_name", DEXCOM_SOURCE)
    fields.setdefault("source_bundle_id", DEXCOM_BUNDLE)
    fields.setdefault("source_version", "1.4.2")
    return Sample(
        value=value,
        timestamp=TEST_NOW - timedelta(minutes=minutes_ago),
        **fields,
    )


# ---------------------------------------------------------------------------
# Fake remote
# ---------------------------------------------------------------------------


class FakeTidepool(RemoteDataSource):
    """In-memory RemoteDataSource.

    ``gate`` holds fetches until set; ``on_fetch`` runs when a fetch starts;
    ``fail_submit_on`` makes the n-th submit attempt (1-based) fail.
    """

    DISPLAY_NAME = "Fake Tidepool"

    def __init__(self, records: list[dict] | None = None) -> None:
        self.records = list(records or [])
        self.available = True
        self.fetch_calls: list[tuple[datetime, datetime, list[str]]] = []
        self.fetch_error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.on_fetch: Callable[[], None] | None = None
        self.destination_calls = 0
        self.destination_error: Exception | None = None
        self.submit_attempts = 0
        self.fail_submit_on: int | None = None
        self.submitted: list[tuple[str, Manifest, list[UploadRecord]]] = []
        self.duplicates_per_batch = 0

    def is_available(self) -> bool:
        return self.available

    async def fetch_samples(
        self, from_time: datetime, to_time: datetime, types: list[str]
    ) -> list[dict]:
        self.fetch_calls.append((from_time, to_time, list(types)))
        if self.on_fetch is not None:
            self.on_fetch()
        if self.gate is not None:
            await self.gate.wait()
        if self.fetch_error is not None:
            raise self.fetch_error
        result = []
        for record in self.records:
            ts = parse_timestamp(record.get("time"))
            if ts is None or from_time <= ts <= to_time:
                result.append(record)
        return result

    async def create_or_fetch_upload_destination(self, user_id: str) -> str:
        self.destination_calls += 1
        if self.destination_error is not None:
            raise self.destination_error
        return "dataset-1"

    async def submit_batch(
        self, destination_id: str, manifest: Manifest, records: list[UploadRecord]
    ) -> UploadReceipt:
        self.submit_attempts += 1
        if self.fail_submit_on == self.submit_attempts:
            raise RemoteUnavailableError("503 from fake", status_code=503)
        self.submitted.append((destination_id, manifest, records))
        return UploadReceipt(accepted=len(records), duplicates=self.duplicates_per_batch)

    @property
    def uploaded_ids(self) -> list[str]:
        return [
            record["origin"]["id"]
            for _, _, records in self.submitted
            for record in records
        ]


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the bundled sync config for tests."""
    return load_sync_config()


@pytest.fixture
def database(tmp_path) -> Iterator[Database]:
    db = Database(tmp_path / "tidesync.sqlite3")
    yield db
    db.close()


@pytest.fixture
def health_store(tmp_path) -> Iterator[SQLiteHealthStore]:
    store = SQLiteHealthStore.open(tmp_path / "health_store.sqlite3")
    yield store
    store.close()


@pytest.fixture
def fake_remote() -> FakeTidepool:
    return FakeTidepool()


@pytest.fixture
def generation() -> SyncGeneration:
    return SyncGeneration()


@pytest.fixture
def state(database: Database) -> StateStore:
    return StateStore(database, TEST_SCOPE)


@pytest.fixture
def queue(database: Database) -> PendingSampleQueue:
    return PendingSampleQueue(database, TEST_SCOPE)


@pytest.fixture
def downloader(
    fake_remote: FakeTidepool,
    health_store: SQLiteHealthStore,
    state: StateStore,
    generation: SyncGeneration,
    sync_config: SyncConfig,
) -> Downloader:
    return Downloader(
        fake_remote, health_store, state, generation, sync_config, clock=fixed_clock
    )


@pytest.fixture
def uploader(
    fake_remote: FakeTidepool,
    health_store: SQLiteHealthStore,
    queue: PendingSampleQueue,
    state: StateStore,
    generation: SyncGeneration,
    sync_config: SyncConfig,
) -> Uploader:
    return Uploader(
        fake_remote,
        health_store,
        queue,
        state,
        generation,
        sync_config,
        install_id="INSTALL-0001",
        user_id=TEST_USER_ID,
        version=TEST_VERSION,
        clock=fixed_clock,
    )


@pytest.fixture
def context(
    fake_remote: FakeTidepool,
    health_store: SQLiteHealthStore,
    database: Database,
    sync_config: SyncConfig,
) -> SyncContext:
    return SyncContext(
        remote=fake_remote,
        local_store=health_store,
        database=database,
        config=sync_config,
        user_id=TEST_USER_ID,
        version=TEST_VERSION,
        clock=fixed_clock,
    )
