"""tidesync glucose sync engine.

This package keeps continuous glucose readings in step between the Tidepool
platform and a local health store: downloads remote readings into the store
without duplicates, and uploads locally recorded Dexcom readings through a
durable queue.

Subpackages:
    adapters/ — Tidepool API client, SQLite health store, Apple Health import
    sync/     — Downloader, uploader, queue, dedup, block walk, scheduler

Core modules:
    base          — Sample model, queue entries, manifest, adapter interfaces
    errors        — Exception hierarchy with error kinds
    config_loader — Load/validate/hot-reload sync_config.yaml
    context       — SyncContext wiring one store/user pairing
"""

from tidesync.glucose.base import (
    LocalStoreAdapter,
    Manifest,
    PendingSampleQueueEntry,
    QueueAction,
    RemoteDataSource,
    Sample,
    UploadReceipt,
)
from tidesync.glucose.config_loader import SyncConfig, get_sync_config

__all__ = [
    "LocalStoreAdapter",
    "RemoteDataSource",
    "Sample",
    "PendingSampleQueueEntry",
    "QueueAction",
    "Manifest",
    "UploadReceipt",
    "SyncConfig",
    "get_sync_config",
]
