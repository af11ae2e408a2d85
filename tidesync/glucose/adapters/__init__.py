"""Remote and local-store adapters for tidesync.

Each adapter implements one of the interfaces in ``tidesync.glucose.base``:

Available adapters:
    TidepoolClient     — Tidepool platform API (RemoteDataSource)
    SQLiteHealthStore  — SQLite local health store (LocalStoreAdapter)

Helpers:
    parse_blood_glucose_export — read glucose records from an Apple Health export
"""

from tidesync.glucose.adapters.tidepool import TidepoolClient
from tidesync.glucose.adapters.health_store import SQLiteHealthStore
from tidesync.glucose.adapters.apple_health import (
    import_export,
    parse_blood_glucose_export,
)

__all__ = [
    "TidepoolClient",
    "SQLiteHealthStore",
    "import_export",
    "parse_blood_glucose_export",
]
