"""Apple Health export import for the local health store.

Apple does not provide a server-side API; glucose history recorded on an
iPhone reaches this service as the ``export.xml`` file from the Health app.
This module reads the blood glucose records of such an export into
``Sample`` objects so they can seed a ``SQLiteHealthStore``.  Samples saved
that way are observed like any other write, so Dexcom readings imported here
flow into the upload queue.

Relevant XML shape::

    <Record type="HKQuantityTypeIdentifierBloodGlucose" sourceName="Dexcom G6"
            sourceVersion="1.2" unit="mg/dL" value="104"
            startDate="2024-03-01 08:05:00 -0800" endDate="...">
      <MetadataEntry key="HKWasUserEntered" value="0"/>
      <MetadataEntry key="Receiver Display Time" value="2024-03-01T08:04:12"/>
    </Record>
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from xml.etree import ElementTree as ET

from tidesync.glucose.base import (
    GLUCOSE_TYPE,
    METADATA_USER_ENTERED_KEY,
    Sample,
)
from tidesync.glucose.adapters.health_store import SQLiteHealthStore

logger = logging.getLogger("tidesync.glucose.apple_health")

_HK_BLOOD_GLUCOSE = "HKQuantityTypeIdentifierBloodGlucose"

# Export dates look like "2024-03-01 08:05:00 -0800"
_EXPORT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S %z"

_DEFAULT_MMOL_TO_MGDL = 18.0

# Export records carry no id; sample ids are uuid5 values under this namespace
_EXPORT_ID_NAMESPACE = uuid.UUID("9b0c6a52-3f1e-5d7a-8c44-2e61f0b7d915")


def _parse_export_date(value: str) -> datetime | None:
    try:
        return datetime.strptime(value, _EXPORT_DATE_FORMAT).astimezone(timezone.utc)
    except ValueError:
        return None


def _flag(raw: str) -> bool:
    return raw == "1" or raw.lower() == "true"


def _record_id(source_name: str, start_date: str, value: str, unit: str) -> str:
    key = "|".join((source_name, start_date, value, unit))
    return str(uuid.uuid5(_EXPORT_ID_NAMESPACE, key)).upper()


def parse_blood_glucose_export(
    xml_bytes: bytes,
    source_bundle_ids: dict[str, str] | None = None,
    mmol_to_mgdl: float = _DEFAULT_MMOL_TO_MGDL,
    default_bundle_id: str = "",
) -> list[Sample]:
    """Parse the blood glucose records of an Apple Health export.xml.

    Args:
        xml_bytes:         Contents of export.xml.
        source_bundle_ids: Source name → bundle identifier.  The export only
                           carries source names, so provenance bundle ids
                           come from this mapping.
        mmol_to_mgdl:      Conversion factor for mmol/L records.
        default_bundle_id: Bundle id for sources missing from the mapping.

    Returns:
        Samples in document order; malformed records are skipped.  Sample ids
        derive from the record (source, start date, value, unit), so parsing
        the same export twice yields the same ids.

    Raises:
        ValueError: If the document is not valid XML.
    """
    try:
        root = ET.fromstring(xml_bytes)
    except ET.ParseError as exc:
        logger.error("Apple Health XML parse error: %s", exc)
        raise ValueError(f"Invalid Apple Health XML: {exc}") from exc

    bundle_ids = source_bundle_ids or {}
    samples: list[Sample] = []
    seen: set[str] = set()
    skipped = 0

    for record in root.iter("Record"):
        if record.get("type") != _HK_BLOOD_GLUCOSE:
            continue

        timestamp = _parse_export_date(record.get("startDate", ""))
        try:
            value = float(record.get("value", ""))
        except ValueError:
            value = None
        if timestamp is None or value is None:
            skipped += 1
            continue

        unit = record.get("unit", "mg/dL")
        if unit.lower().startswith("mmol"):
            value = float(round(value * mmol_to_mgdl))

        metadata: dict[str, str] = {}
        for entry in record.findall("MetadataEntry"):
            key = entry.get("key")
            if key:
                metadata[key] = entry.get("value", "")

        source_name = record.get("sourceName", "")
        sample_id = _record_id(
            source_name, record.get("startDate", ""), record.get("value", ""), unit
        )
        if sample_id in seen:
            continue
        seen.add(sample_id)
        samples.append(
            Sample(
                id=sample_id,
                value=value,
                timestamp=timestamp,
                sample_type=GLUCOSE_TYPE,
                source_name=source_name,
                source_bundle_id=bundle_ids.get(source_name, default_bundle_id),
                source_version=record.get("sourceVersion", ""),
                user_entered=_flag(metadata.pop(METADATA_USER_ENTERED_KEY, "0")),
                metadata=metadata,
            )
        )

    if skipped:
        logger.warning("Apple Health import: skipped %d malformed glucose record(s)", skipped)
    logger.info("Apple Health import: parsed %d glucose sample(s)", len(samples))
    return samples


async def import_export(
    store: SQLiteHealthStore,
    xml_bytes: bytes,
    source_bundle_ids: dict[str, str] | None = None,
    default_bundle_id: str = "",
) -> int:
    """Parse an export and save its glucose samples into ``store``.

    Records already present in the store (same derived id) are skipped.

    Returns:
        Number of samples saved.

    Raises:
        ValueError: If the document is not valid XML.
    """
    samples = parse_blood_glucose_export(
        xml_bytes, source_bundle_ids=source_bundle_ids, default_bundle_id=default_bundle_id
    )
    if not samples:
        return 0
    await store.authorize(reads=False, writes=True)
    existing = store.existing_ids([s.id for s in samples])
    new_samples = [s for s in samples if s.id not in existing]
    if existing:
        logger.info("Apple Health import: %d sample(s) already in the store", len(existing))
    await store.save_samples(new_samples)
    return len(new_samples)
