"""Load, validate, and hot-reload the tidesync sync configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk; no restart required.

Usage::

    from tidesync.glucose.config_loader import get_sync_config

    config = get_sync_config()
    config.upload.batch_size           # 100
    config.download.window             # timedelta(days=10)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

import yaml

logger = logging.getLogger("tidesync.glucose.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class DownloadConfig:
    """Tidepool → local store settings."""

    mmol_to_mgdl: float
    window_days: int
    catch_up_days: int
    source_name: str
    source_bundle_id: str

    @property
    def window(self) -> timedelta:
        return timedelta(days=self.window_days)

    @property
    def catch_up(self) -> timedelta:
        return timedelta(days=self.catch_up_days)


@dataclass
class BackfillConfig:
    """Block-walk settings for long historical downloads."""

    block_size_hours: int
    default_days: int
    min_days: int
    max_days: int
    block_delay_ms: int

    @property
    def block_size(self) -> timedelta:
        return timedelta(hours=self.block_size_hours)

    def clamp_days(self, days: int) -> int:
        return max(self.min_days, min(self.max_days, days))


@dataclass
class UploadConfig:
    """Local store → Tidepool settings."""

    batch_size: int
    accepted_sources: list[str]
    treat_all_sources_as_dexcom: bool
    low_mgdl: float
    high_mgdl: float

    def accepts_source(self, source_name: str) -> bool:
        """Return True if samples from ``source_name`` should be uploaded."""
        if self.treat_all_sources_as_dexcom:
            return True
        name = source_name.lower()
        return any(s.lower() in name for s in self.accepted_sources)


@dataclass
class SchedulerConfig:
    """Intervals used by the built-in scheduler."""

    min_download_interval_minutes: int
    min_drain_interval_minutes: int
    failure_backoff_minutes: int
    tick_seconds: int

    @property
    def min_download_interval(self) -> timedelta:
        return timedelta(minutes=self.min_download_interval_minutes)

    @property
    def min_drain_interval(self) -> timedelta:
        return timedelta(minutes=self.min_drain_interval_minutes)

    @property
    def failure_backoff(self) -> timedelta:
        return timedelta(minutes=self.failure_backoff_minutes)


@dataclass
class SyncConfig:
    """Complete, validated sync configuration.

    Attributes:
        version:       Config schema version string.
        tracked_types: Remote data types synced in both directions.
        download:      Download path settings.
        backfill:      Block-walk settings.
        upload:        Upload path settings.
        scheduler:     Built-in scheduler intervals.
    """

    version: str
    tracked_types: list[str]
    download: DownloadConfig
    backfill: BackfillConfig
    upload: UploadConfig
    scheduler: SchedulerConfig
    _raw: dict = field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Missing optional keys fall back to defaults; every problem found is
    reported together in one ConfigValidationError.
    """
    errors: list[str] = []

    def _number(section: dict, key: str, default: float, path: str, cast=int):
        value = section.get(key, default)
        try:
            result = cast(value)
        except (TypeError, ValueError):
            errors.append(f"{path}.{key} must be a number, got {value!r}")
            return cast(default)
        if result < 0:
            errors.append(f"{path}.{key} must not be negative, got {result}")
        return result

    version = str(raw.get("version", "1.0"))

    tracked_types = raw.get("tracked_types", ["cbg"])
    if not isinstance(tracked_types, list) or not tracked_types:
        errors.append("'tracked_types' must be a non-empty list")
        tracked_types = ["cbg"]

    # ── Download ──
    dl_raw = raw.get("download") or {}
    download = DownloadConfig(
        mmol_to_mgdl=_number(dl_raw, "mmol_to_mgdl", 18.0, "download", float),
        window_days=_number(dl_raw, "window_days", 10, "download"),
        catch_up_days=_number(dl_raw, "catch_up_days", 30, "download"),
        source_name=str(dl_raw.get("source_name", "Tidepool")),
        source_bundle_id=str(dl_raw.get("source_bundle_id", "org.tidepool.tidesync")),
    )
    if download.mmol_to_mgdl == 0:
        errors.append("download.mmol_to_mgdl must be positive")

    # ── Backfill ──
    bf_raw = raw.get("backfill") or {}
    backfill = BackfillConfig(
        block_size_hours=_number(bf_raw, "block_size_hours", 24, "backfill"),
        default_days=_number(bf_raw, "default_days", 3 * 365, "backfill"),
        min_days=_number(bf_raw, "min_days", 1, "backfill"),
        max_days=_number(bf_raw, "max_days", 5 * 365, "backfill"),
        block_delay_ms=_number(bf_raw, "block_delay_ms", 100, "backfill"),
    )
    if backfill.block_size_hours == 0:
        errors.append("backfill.block_size_hours must be positive")
    if backfill.min_days > backfill.max_days:
        errors.append(
            f"backfill.min_days ({backfill.min_days}) exceeds "
            f"backfill.max_days ({backfill.max_days})"
        )

    # ── Upload ──
    up_raw = raw.get("upload") or {}
    oor_raw = up_raw.get("out_of_range") or {}
    accepted = up_raw.get("accepted_sources", ["dexcom"])
    if not isinstance(accepted, list):
        errors.append("upload.accepted_sources must be a list")
        accepted = ["dexcom"]
    upload = UploadConfig(
        batch_size=_number(up_raw, "batch_size", 100, "upload"),
        accepted_sources=[str(s) for s in accepted],
        treat_all_sources_as_dexcom=bool(up_raw.get("treat_all_sources_as_dexcom", False)),
        low_mgdl=_number(oor_raw, "low_mgdl", 40, "upload.out_of_range", float),
        high_mgdl=_number(oor_raw, "high_mgdl", 400, "upload.out_of_range", float),
    )
    if upload.batch_size == 0:
        errors.append("upload.batch_size must be positive")
    if upload.low_mgdl >= upload.high_mgdl:
        errors.append("upload.out_of_range.low_mgdl must be below high_mgdl")

    # ── Scheduler ──
    sc_raw = raw.get("scheduler") or {}
    scheduler = SchedulerConfig(
        min_download_interval_minutes=_number(
            sc_raw, "min_download_interval_minutes", 240, "scheduler"
        ),
        min_drain_interval_minutes=_number(
            sc_raw, "min_drain_interval_minutes", 5, "scheduler"
        ),
        failure_backoff_minutes=_number(sc_raw, "failure_backoff_minutes", 15, "scheduler"),
        tick_seconds=_number(sc_raw, "tick_seconds", 60, "scheduler"),
    )

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        tracked_types=[str(t) for t in tracked_types],
        download=download,
        backfill=backfill,
        upload=upload,
        scheduler=scheduler,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.

    Returns:
        Validated SyncConfig instance.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_sync_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
