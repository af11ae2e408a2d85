"""Build Tidepool upload payloads from queued samples.

A drain session gets one ``UploadSession``: one manifest and one upload id
shared by every batch it submits.  Each queued entry becomes one record:

- ADDED   → a ``cbg`` record in mg/dL, annotated when out of meter range
- DELETED → an origin-id selector flagged ``"deleted": True``
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from tidesync.glucose.base import (
    GLUCOSE_TYPE,
    Manifest,
    PendingSampleQueueEntry,
    QueueAction,
    UploadRecord,
    format_zulu,
)

logger = logging.getLogger("tidesync.glucose.sync.upload_payload")

#: Metadata key the Dexcom apps use for the receiver's local clock.
RECEIVER_DISPLAY_TIME_KEY = "Receiver Display Time"

_OUT_OF_RANGE_CODE = "bg/out-of-range"


def device_model_for_bundle(bundle_id: str) -> str:
    """Map a source bundle identifier to the Tidepool device model string.

    Args:
        bundle_id: e.g. 'com.dexcom.cgm'.

    Returns:
        'HealthKit_DexG5', 'HealthKit_DexG4' or 'HealthKit_DexUnknown: <bundle>'.
    """
    bundle = bundle_id.lower()
    if "com.dexcom.cgm" in bundle:
        model = "DexG5"
    elif "com.dexcom.share2" in bundle:
        model = "DexG4"
    else:
        logger.warning("Unknown Dexcom source bundle identifier: %r", bundle_id)
        model = f"DexUnknown: {bundle_id}"
    return f"HealthKit_{model}"


def out_of_range_annotation(value: float, low: float, high: float) -> dict | None:
    """Return the out-of-range annotation for a mg/dL value, if any."""
    if value < low:
        return {"code": _OUT_OF_RANGE_CODE, "value": "low", "threshold": int(low)}
    if value > high:
        return {"code": _OUT_OF_RANGE_CODE, "value": "high", "threshold": int(high)}
    return None


@dataclass
class UploadSession:
    """Manifest and record builder for one drain session.

    Attributes:
        manifest:  Header shared by every batch of the session.
        low_mgdl:  Out-of-range low threshold.
        high_mgdl: Out-of-range high threshold.
    """

    manifest: Manifest
    low_mgdl: float = 40
    high_mgdl: float = 400

    @property
    def upload_id(self) -> str:
        return self.manifest.upload_id

    @classmethod
    def start(
        cls,
        first_entry: PendingSampleQueueEntry,
        install_id: str,
        user_id: str,
        version: str,
        timezone_name: str = "UTC",
        now: datetime | None = None,
        low_mgdl: float = 40,
        high_mgdl: float = 400,
    ) -> "UploadSession":
        """Open a session, deriving the device model from the first queued sample.

        Args:
            first_entry:   Oldest entry of the first batch.
            install_id:    Stable id of this installation.
            user_id:       Remote user the data belongs to.
            version:       Uploader version string ('<bundle>:<version>').
            timezone_name: IANA zone reported in the manifest.
            now:           Session start (UTC).
        """
        now = now or datetime.now(timezone.utc)
        try:
            zone = ZoneInfo(timezone_name)
        except ZoneInfoNotFoundError:
            logger.warning("Unknown timezone %r, reporting UTC", timezone_name)
            zone = ZoneInfo("UTC")
            timezone_name = "UTC"
        local_now = now.astimezone(zone)
        offset = local_now.utcoffset()
        offset_minutes = int(offset.total_seconds() // 60) if offset else 0

        device_model = device_model_for_bundle(first_entry.source_bundle_id)
        device_id = f"{device_model}_{install_id}"
        time = local_now.isoformat(timespec="milliseconds")
        guid = str(uuid.uuid4()).upper()
        digest = hashlib.md5(f"{device_id}_{time}_{guid}".encode()).hexdigest()

        manifest = Manifest(
            upload_id=f"upid_{digest}",
            device_id=device_id,
            device_model=device_model,
            computer_time=now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S"),
            time=time,
            timezone_offset=offset_minutes,
            timezone=timezone_name,
            version=version,
            guid=guid,
            by_user=user_id,
        )
        logger.info(
            "Upload session %s started (device %s)", manifest.upload_id, device_model
        )
        return cls(manifest=manifest, low_mgdl=low_mgdl, high_mgdl=high_mgdl)

    def build_record(self, entry: PendingSampleQueueEntry) -> UploadRecord:
        """Turn one queue entry into an upload record."""
        if entry.action is QueueAction.DELETED:
            return {
                "deleted": True,
                "uploadId": self.upload_id,
                "origin": {"id": entry.sample_id},
            }

        record: UploadRecord = {
            "uploadId": self.upload_id,
            "type": GLUCOSE_TYPE,
            "deviceId": self.manifest.device_id,
            "guid": entry.sample_id,
            "origin": {"id": entry.sample_id},
            "time": format_zulu(entry.timestamp) if entry.timestamp else None,
            "units": "mg/dL",
            "value": entry.value,
        }
        if entry.value is not None:
            annotation = out_of_range_annotation(entry.value, self.low_mgdl, self.high_mgdl)
            if annotation:
                record["annotations"] = [annotation]

        if entry.metadata:
            payload = dict(entry.metadata)
            device_time = payload.pop(RECEIVER_DISPLAY_TIME_KEY, None)
            if device_time is not None:
                record["deviceTime"] = device_time
            record["payload"] = payload
        return record

    def build_records(self, entries: list[PendingSampleQueueEntry]) -> list[UploadRecord]:
        return [self.build_record(entry) for entry in entries]
