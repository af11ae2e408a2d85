"""Base classes and canonical data models for the tidesync glucose sync engine.

Both sync paths speak in terms of the ``Sample`` model below.  The remote
service and the local health store are reached only through the
``RemoteDataSource`` and ``LocalStoreAdapter`` interfaces, so the downloader
and uploader never see HTTP payloads or SQL rows directly.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

logger = logging.getLogger("tidesync.glucose")

#: Tidepool data type for continuous glucose readings.
GLUCOSE_TYPE = "cbg"

#: Store metadata key carrying the remote origin id of a downloaded sample.
METADATA_EXTERNAL_ID_KEY = "tidepoolId"
METADATA_DEVICE_ID_KEY = "deviceId"
METADATA_TYPE_KEY = "type"

#: Store metadata key HealthKit uses for manually entered readings.
METADATA_USER_ENTERED_KEY = "HKWasUserEntered"

#: Opaque incremental-query token handed out by the local store.
Anchor = str

#: Observer callback: (new samples, deleted sample ids, new anchor) → accepted?
ChangeHandler = Callable[[list["Sample"], list[str], Anchor], Awaitable[bool]]

#: One JSON-ready record of an upload request.
UploadRecord = dict[str, Any]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 string to an aware UTC datetime.

    Naive values are assumed to be UTC.  Returns None if the value is None
    or unparseable.
    """
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        logger.warning("Could not parse datetime string: %r", value)
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_zulu(value: datetime) -> str:
    """Format an instant as ``YYYY-MM-DDTHH:MM:SS.mmmZ`` in UTC."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


# ---------------------------------------------------------------------------
# Samples
# ---------------------------------------------------------------------------


@dataclass
class Sample:
    """A single glucose reading.

    Attributes:
        value:            Glucose value in mg/dL.
        timestamp:        UTC instant of the reading.
        external_id:      Remote origin id; the only reliable dedup key.
                          None for samples that never came from the remote.
        id:               Local store identifier (UUID string).
        sample_type:      Tidepool data type, normally "cbg".
        source_name:      Provenance: name of the app/device that wrote it.
        source_bundle_id: Provenance: bundle identifier of that source.
        source_version:   Provenance: version string of that source.
        device_id:        Remote device id, when known.
        user_entered:     True for manual (fingerstick) entries.
        metadata:         Free-form metadata carried by the store.
    """

    value: float
    timestamp: datetime
    external_id: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()).upper())
    sample_type: str = GLUCOSE_TYPE
    source_name: str = ""
    source_bundle_id: str = ""
    source_version: str = ""
    device_id: str | None = None
    user_entered: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def store_metadata(self) -> dict[str, Any]:
        """Metadata as written to the local store, including the typed fields."""
        meta = dict(self.metadata)
        if self.external_id:
            meta[METADATA_EXTERNAL_ID_KEY] = self.external_id
        if self.device_id:
            meta[METADATA_DEVICE_ID_KEY] = self.device_id
        if self.user_entered:
            meta[METADATA_USER_ENTERED_KEY] = True
        return meta

    @classmethod
    def from_store_metadata(
        cls, metadata: dict[str, Any] | None, **fields: Any
    ) -> "Sample":
        """Build a Sample from store fields, lifting typed keys out of metadata."""
        meta = dict(metadata or {})
        external_id = meta.pop(METADATA_EXTERNAL_ID_KEY, None)
        device_id = meta.pop(METADATA_DEVICE_ID_KEY, None)
        user_entered = bool(meta.pop(METADATA_USER_ENTERED_KEY, False))
        return cls(
            external_id=str(external_id) if external_id else None,
            device_id=device_id,
            user_entered=fields.pop("user_entered", user_entered),
            metadata=meta,
            **fields,
        )


# ---------------------------------------------------------------------------
# Pending upload queue entries
# ---------------------------------------------------------------------------


class QueueAction(str, Enum):
    ADDED = "added"
    DELETED = "deleted"


@dataclass
class PendingSampleQueueEntry:
    """A durably queued local-store change awaiting upload.

    Never mutated once created; removed after the remote confirms the batch
    that carried it.

    Attributes:
        action:           ADDED or DELETED.
        sample_id:        Local store id of the sample.
        value:            mg/dL value (None for deletions).
        timestamp:        Sample instant (None for deletions).
        source_*:         Provenance fields used to build the upload manifest.
        metadata:         Store metadata forwarded as the upload payload.
        seq:              Queue position, assigned on append.
    """

    action: QueueAction
    sample_id: str
    value: float | None = None
    timestamp: datetime | None = None
    source_name: str = ""
    source_bundle_id: str = ""
    source_version: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    seq: int | None = None

    @classmethod
    def added(cls, sample: Sample) -> "PendingSampleQueueEntry":
        return cls(
            action=QueueAction.ADDED,
            sample_id=sample.id,
            value=sample.value,
            timestamp=sample.timestamp,
            source_name=sample.source_name,
            source_bundle_id=sample.source_bundle_id,
            source_version=sample.source_version,
            metadata=sample.store_metadata(),
        )

    @classmethod
    def deleted(cls, sample_id: str) -> "PendingSampleQueueEntry":
        return cls(action=QueueAction.DELETED, sample_id=sample_id)

    def to_json(self) -> dict:
        return {
            "value": self.value,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "source_name": self.source_name,
            "source_bundle_id": self.source_bundle_id,
            "source_version": self.source_version,
            "metadata": self.metadata,
        }

    @classmethod
    def from_json(
        cls, action: str, sample_id: str, data: dict, seq: int | None = None
    ) -> "PendingSampleQueueEntry":
        return cls(
            action=QueueAction(action),
            sample_id=sample_id,
            value=data.get("value"),
            timestamp=parse_timestamp(data.get("timestamp")),
            source_name=data.get("source_name", ""),
            source_bundle_id=data.get("source_bundle_id", ""),
            source_version=data.get("source_version", ""),
            metadata=data.get("metadata") or {},
            seq=seq,
        )


# ---------------------------------------------------------------------------
# Upload manifest / receipt
# ---------------------------------------------------------------------------


@dataclass
class Manifest:
    """Header record describing the uploading device, sent ahead of samples.

    One manifest (and one upload_id) is shared by every batch of a drain
    session so the remote can correlate them.
    """

    upload_id: str
    device_id: str
    device_model: str
    computer_time: str
    time: str
    timezone_offset: int
    timezone: str
    version: str
    guid: str
    by_user: str
    device_tags: list[str] = field(default_factory=lambda: ["cgm"])
    device_manufacturers: list[str] = field(default_factory=lambda: ["Dexcom"])
    device_serial_number: str = ""
    time_processing: str = "none"

    def to_json(self) -> dict:
        return {
            "type": "upload",
            "uploadId": self.upload_id,
            "computerTime": self.computer_time,
            "time": self.time,
            "timezoneOffset": self.timezone_offset,
            "timezone": self.timezone,
            "timeProcessing": self.time_processing,
            "version": self.version,
            "guid": self.guid,
            "byUser": self.by_user,
            "deviceTags": list(self.device_tags),
            "deviceManufacturers": list(self.device_manufacturers),
            "deviceSerialNumber": self.device_serial_number,
            "deviceModel": self.device_model,
            "deviceId": self.device_id,
        }


@dataclass
class UploadReceipt:
    """Remote confirmation for one submitted batch."""

    accepted: int
    deleted: int = 0
    duplicates: int = 0


# ---------------------------------------------------------------------------
# Abstract collaborators
# ---------------------------------------------------------------------------


class RemoteDataSource(ABC):
    """Interface to the cloud diabetes-data service.

    Implementations report failures by raising ``RemoteError`` subclasses and
    never retry on their own; retry is the scheduler's business.
    """

    #: Human-readable name for logging.
    DISPLAY_NAME: str = "Remote"

    @abstractmethod
    def is_available(self) -> bool:
        """Return True if the service can be called (session present)."""

    @abstractmethod
    async def fetch_samples(
        self, from_time: datetime, to_time: datetime, types: list[str]
    ) -> list[dict]:
        """Fetch raw records of the given types in ``[from_time, to_time]``.

        Args:
            from_time: Window start (UTC).
            to_time:   Window end (UTC).
            types:     Remote data types, e.g. ["cbg"].

        Returns:
            Raw JSON records as returned by the service.
        """

    @abstractmethod
    async def create_or_fetch_upload_destination(self, user_id: str) -> str:
        """Return the id of the dataset uploads go to, creating one if needed.

        Args:
            user_id: Remote user id.

        Returns:
            Upload destination (dataset) id.
        """

    @abstractmethod
    async def submit_batch(
        self,
        destination_id: str,
        manifest: Manifest,
        records: list[UploadRecord],
    ) -> UploadReceipt:
        """Submit one batch: the manifest followed by its sample records.

        Args:
            destination_id: Id from create_or_fetch_upload_destination().
            manifest:       Session manifest.
            records:        Sample and deletion records.

        Returns:
            UploadReceipt once the remote confirmed the batch.
        """


class LocalStoreAdapter(ABC):
    """Interface to the device-local health data store."""

    DISPLAY_NAME: str = "Local store"

    @abstractmethod
    async def authorize(self, reads: bool, writes: bool) -> None:
        """Request read and/or write access.

        Raises:
            LocalStoreAuthorizationError: If access is denied.
        """

    @abstractmethod
    async def query_range(
        self, from_time: datetime, to_time: datetime, sample_type: str
    ) -> list[Sample]:
        """Return stored samples of a type with timestamps in ``[from_time, to_time]``."""

    @abstractmethod
    async def save_samples(self, samples: list[Sample]) -> None:
        """Persist new samples."""

    @abstractmethod
    async def observe_changes(
        self, sample_type: str, anchor: Anchor | None, handler: ChangeHandler
    ) -> None:
        """Register ``handler`` for changes of ``sample_type`` after ``anchor``.

        Changes already past the anchor are delivered right away.  The
        store only advances its own anchor when the handler returns True,
        so a rejected delivery is repeated on the next change.
        """

    @abstractmethod
    async def stop_observing(self, sample_type: str) -> None:
        """Drop the observer registration for ``sample_type``."""

    @abstractmethod
    async def enable_background_delivery(self, sample_type: str) -> None:
        """Keep delivering changes while the host is backgrounded."""

    @abstractmethod
    async def disable_background_delivery(self, sample_type: str) -> None:
        """Stop background delivery for ``sample_type``."""
