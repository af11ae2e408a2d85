"""Tests for the Apple Health export.xml importer."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from tidesync.glucose.adapters.apple_health import import_export, parse_blood_glucose_export
from tidesync.glucose.adapters.health_store import SQLiteHealthStore
from tidesync.glucose.base import GLUCOSE_TYPE

EXPORT_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<HealthData locale="en_US">
 <ExportDate value="2024-03-02 09:00:00 -0800"/>
 <Record type="HKQuantityTypeIdentifierBloodGlucose" sourceName="Dexcom G6" sourceVersion="1.4.2"
         unit="mg/dL" value="104" startDate="2024-03-01 08:05:00 -0800" endDate="2024-03-01 08:05:00 -0800">
  <MetadataEntry key="HKWasUserEntered" value="0"/>
  <MetadataEntry key="Receiver Display Time" value="2024-03-01T08:04:12"/>
 </Record>
 <Record type="HKQuantityTypeIdentifierBloodGlucose" sourceName="Contour" sourceVersion="2.0"
         unit="mmol&lt;180.1558800000541&gt;/L" value="6.1" startDate="2024-03-01 12:00:00 -0800"
         endDate="2024-03-01 12:00:00 -0800">
  <MetadataEntry key="HKWasUserEntered" value="1"/>
 </Record>
 <Record type="HKQuantityTypeIdentifierStepCount" sourceName="iPhone" unit="count" value="1200"
         startDate="2024-03-01 08:00:00 -0800" endDate="2024-03-01 09:00:00 -0800"/>
 <Record type="HKQuantityTypeIdentifierBloodGlucose" sourceName="Dexcom G6" unit="mg/dL"
         value="" startDate="2024-03-01 08:10:00 -0800" endDate="2024-03-01 08:10:00 -0800"/>
 <Record type="HKQuantityTypeIdentifierBloodGlucose" sourceName="Dexcom G6" unit="mg/dL"
         value="99" startDate="not a date" endDate="not a date"/>
</HealthData>
"""


class TestParseExport:
    def test_only_valid_glucose_records_parsed(self) -> None:
        samples = parse_blood_glucose_export(EXPORT_XML)
        assert len(samples) == 2
        assert {s.sample_type for s in samples} == {GLUCOSE_TYPE}

    def test_dexcom_record_fields(self) -> None:
        dexcom = parse_blood_glucose_export(
            EXPORT_XML, source_bundle_ids={"Dexcom G6": "com.dexcom.cgm"}
        )[0]
        assert dexcom.value == 104.0
        assert dexcom.timestamp == datetime(2024, 3, 1, 16, 5, tzinfo=timezone.utc)
        assert dexcom.source_name == "Dexcom G6"
        assert dexcom.source_bundle_id == "com.dexcom.cgm"
        assert dexcom.source_version == "1.4.2"
        assert not dexcom.user_entered
        assert dexcom.metadata == {"Receiver Display Time": "2024-03-01T08:04:12"}

    def test_mmol_converted_and_user_entered_flag(self) -> None:
        meter = parse_blood_glucose_export(EXPORT_XML)[1]
        assert meter.value == 110.0
        assert meter.user_entered
        assert meter.metadata == {}

    def test_default_bundle_id_for_unmapped_sources(self) -> None:
        samples = parse_blood_glucose_export(
            EXPORT_XML,
            source_bundle_ids={"Dexcom G6": "com.dexcom.cgm"},
            default_bundle_id="com.unknown",
        )
        assert [s.source_bundle_id for s in samples] == ["com.dexcom.cgm", "com.unknown"]

    def test_invalid_xml_raises_value_error(self) -> None:
        with pytest.raises(ValueError, match="Invalid Apple Health XML"):
            parse_blood_glucose_export(b"<HealthData><Record")

    def test_ids_stable_across_parses(self) -> None:
        first = [s.id for s in parse_blood_glucose_export(EXPORT_XML)]
        second = [s.id for s in parse_blood_glucose_export(EXPORT_XML)]
        assert first == second
        assert len(set(first)) == 2

    def test_repeated_record_parsed_once(self) -> None:
        doubled = EXPORT_XML.replace(
            b"</HealthData>",
            b' <Record type="HKQuantityTypeIdentifierBloodGlucose" sourceName="Dexcom G6"'
            b' unit="mg/dL" value="104" startDate="2024-03-01 08:05:00 -0800"'
            b' endDate="2024-03-01 08:05:00 -0800"/>\n</HealthData>',
        )
        assert len(parse_blood_glucose_export(doubled)) == 2


class TestImportExport:
    @pytest.mark.asyncio
    async def test_import_saves_samples(self, health_store: SQLiteHealthStore) -> None:
        assert await import_export(health_store, EXPORT_XML) == 2
        assert health_store.count(GLUCOSE_TYPE) == 2

        await health_store.authorize(reads=True, writes=False)
        start = datetime(2024, 3, 1, tzinfo=timezone.utc)
        found = await health_store.query_range(start, start + timedelta(days=1), GLUCOSE_TYPE)
        assert [s.value for s in found] == [104.0, 110.0]

    @pytest.mark.asyncio
    async def test_empty_export_saves_nothing(self, health_store: SQLiteHealthStore) -> None:
        assert await import_export(health_store, b"<HealthData/>") == 0
        assert health_store.count() == 0

    @pytest.mark.asyncio
    async def test_reimport_adds_nothing(self, health_store: SQLiteHealthStore) -> None:
        assert await import_export(health_store, EXPORT_XML) == 2
        assert await import_export(health_store, EXPORT_XML) == 0
        assert health_store.count(GLUCOSE_TYPE) == 2

    @pytest.mark.asyncio
    async def test_overlapping_export_adds_only_new_records(
        self, health_store: SQLiteHealthStore
    ) -> None:
        await import_export(health_store, EXPORT_XML)
        later = EXPORT_XML.replace(
            b"</HealthData>",
            b' <Record type="HKQuantityTypeIdentifierBloodGlucose" sourceName="Dexcom G6"'
            b' unit="mg/dL" value="120" startDate="2024-03-01 13:00:00 -0800"'
            b' endDate="2024-03-01 13:00:00 -0800"/>\n</HealthData>',
        )
        assert await import_export(health_store, later) == 1
        assert health_store.count(GLUCOSE_TYPE) == 3
