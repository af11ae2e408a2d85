"""Tests for the sync control API."""

from __future__ import annotations

from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from tidesync.config import Settings, get_settings
from tidesync.glucose.adapters.health_store import SQLiteHealthStore
from tidesync.glucose.base import GLUCOSE_TYPE
from tidesync.glucose.config_loader import SyncConfig
from tidesync.glucose.context import SyncContext
from tidesync.glucose.errors import RemoteUnavailableError
from tidesync.glucose.tests.conftest import (
    TEST_SCOPE,
    FakeTidepool,
    remote_record,
)
from tidesync.main import create_app

IMPORT_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<HealthData locale="en_US">
 <Record type="HKQuantityTypeIdentifierBloodGlucose" sourceName="Dexcom G6" unit="mg/dL"
         value="118" startDate="2026-02-23 03:50:00 -0800" endDate="2026-02-23 03:50:00 -0800"/>
 <Record type="HKQuantityTypeIdentifierBloodGlucose" sourceName="Contour" unit="mg/dL"
         value="131" startDate="2026-02-23 03:40:00 -0800" endDate="2026-02-23 03:40:00 -0800"/>
</HealthData>
"""


@pytest.fixture
def client(context: SyncContext, sync_config: SyncConfig) -> Iterator[TestClient]:
    sync_config.backfill.block_delay_ms = 0
    app = create_app(context=context)
    with TestClient(app) as test_client:
        yield test_client


class TestHealth:
    def test_health_check(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["remote"] == "available"

    def test_remote_unavailable_reported(
        self, client: TestClient, fake_remote: FakeTidepool
    ) -> None:
        fake_remote.available = False
        assert client.get("/health").json()["remote"] == "unavailable"


class TestStatus:
    def test_initial_status(self, client: TestClient) -> None:
        response = client.get("/api/v1/sync/status")
        assert response.status_code == 200
        body = response.json()
        assert body["scope"] == TEST_SCOPE
        assert body["pending_uploads"] == 0
        assert body["download_enabled"] is False
        assert body["upload_enabled"] is False
        assert body["upload_state"] == "idle"
        assert body["download"]["total_count"] == 0

    def test_injected_context_not_started(
        self, client: TestClient, context: SyncContext
    ) -> None:
        assert not context.downloader.enabled
        assert not context.scheduler.running


class TestDownload:
    def test_disabled_download_reports_rejection(self, client: TestClient) -> None:
        response = client.post("/api/v1/sync/download")
        assert response.status_code == 200
        assert response.json()["status"] == "rejected"
        assert response.json()["item_count"] == 0

    def test_recent_window_download(
        self, client: TestClient, fake_remote: FakeTidepool
    ) -> None:
        fake_remote.records = [remote_record("r1", 30), remote_record("r2", 25)]
        assert client.post("/api/v1/sync/download/enable").json() == {"enabled": True}

        body = client.post("/api/v1/sync/download").json()
        assert body["status"] == "success"
        assert body["item_count"] == 2

        status = client.get("/api/v1/sync/status").json()
        assert status["download"]["total_count"] == 2
        assert status["download_cursor"] is not None

    def test_explicit_window(self, client: TestClient, fake_remote: FakeTidepool) -> None:
        fake_remote.records = [remote_record("r1", 30)]
        client.post("/api/v1/sync/download/enable")
        body = client.post(
            "/api/v1/sync/download",
            json={
                "from_time": "2026-02-23T11:00:00Z",
                "to_time": "2026-02-23T12:00:00Z",
                "verify_only": True,
            },
        ).json()
        assert body["verify_only"] is True
        assert body["item_count"] == 0

    def test_single_bound_rejected(self, client: TestClient) -> None:
        response = client.post(
            "/api/v1/sync/download", json={"from_time": "2026-02-23T11:00:00Z"}
        )
        assert response.status_code == 400

    def test_inverted_window_rejected(self, client: TestClient) -> None:
        response = client.post(
            "/api/v1/sync/download",
            json={"from_time": "2026-02-23T12:00:00Z", "to_time": "2026-02-23T11:00:00Z"},
        )
        assert response.status_code == 400

    def test_enable_refused(self, client: TestClient, health_store: SQLiteHealthStore) -> None:
        health_store.grant_permissions = False
        assert client.post("/api/v1/sync/download/enable").status_code == 403

    def test_disable(self, client: TestClient, context: SyncContext) -> None:
        client.post("/api/v1/sync/download/enable")
        assert client.post("/api/v1/sync/download/disable").json() == {"enabled": False}
        assert not context.downloader.enabled

    def test_abort_advances_generation(self, client: TestClient, context: SyncContext) -> None:
        before = context.generation.current
        body = client.post("/api/v1/sync/abort").json()
        assert body["generation"] == before + 1


class TestBackfill:
    def test_requires_enabled_download(self, client: TestClient) -> None:
        assert client.post("/api/v1/sync/backfill", json={"days": 2}).status_code == 409

    def test_foreground_walk(self, client: TestClient, fake_remote: FakeTidepool) -> None:
        fake_remote.records = [remote_record("r1", 30), remote_record("r2", 30 * 60)]
        client.post("/api/v1/sync/download/enable")
        body = client.post("/api/v1/sync/backfill", json={"days": 2}).json()
        assert body["started"] is True
        assert body["total_blocks"] == 2
        assert body["blocks_completed"] == 2
        assert body["items_found"] == 2
        assert body["is_complete"] is True
        assert body["errors"] == []

    def test_failed_block_reported(self, client: TestClient, fake_remote: FakeTidepool) -> None:
        client.post("/api/v1/sync/download/enable")
        fake_remote.fetch_error = RemoteUnavailableError("down", status_code=503)
        body = client.post("/api/v1/sync/backfill", json={"days": 2}).json()
        assert body["is_complete"] is False
        assert body["errors"] == ["down"]

    def test_background_walk_started(self, client: TestClient) -> None:
        client.post("/api/v1/sync/download/enable")
        body = client.post(
            "/api/v1/sync/backfill", json={"days": 2, "background": True}
        ).json()
        assert body["started"] is True
        assert body["total_blocks"] == 2

    def test_days_must_be_positive(self, client: TestClient) -> None:
        client.post("/api/v1/sync/download/enable")
        assert client.post("/api/v1/sync/backfill", json={"days": 0}).status_code == 422


class TestUpload:
    def test_enable_and_drain(self, client: TestClient, fake_remote: FakeTidepool) -> None:
        body = client.post("/api/v1/sync/upload/enable").json()
        assert body["enabled"] is True
        assert body["drain"]["status"] == "success"

        client.post(
            "/api/v1/sync/import/apple-health",
            files={"file": ("export.xml", IMPORT_XML, "text/xml")},
        )
        assert client.get("/api/v1/sync/status").json()["pending_uploads"] == 1

        drained = client.post("/api/v1/sync/upload/drain").json()
        assert drained["uploaded"] == 1
        assert drained["batches"] == 1
        assert drained["remaining"] == 0
        assert len(fake_remote.uploaded_ids) == 1

    def test_enable_refused(self, client: TestClient, health_store: SQLiteHealthStore) -> None:
        health_store.grant_permissions = False
        assert client.post("/api/v1/sync/upload/enable").status_code == 403

    def test_disable(self, client: TestClient, context: SyncContext) -> None:
        client.post("/api/v1/sync/upload/enable")
        body = client.post("/api/v1/sync/upload/disable").json()
        assert body == {"enabled": False, "pending_uploads": 0, "drain": None}
        assert not context.uploader.enabled

    def test_drain_empty_queue(self, client: TestClient) -> None:
        body = client.post("/api/v1/sync/upload/drain").json()
        assert body["status"] == "success"
        assert body["uploaded"] == 0


class TestImport:
    def _import(self, client: TestClient, data: bytes = IMPORT_XML, **form):
        return client.post(
            "/api/v1/sync/import/apple-health",
            files={"file": ("export.xml", data, "text/xml")},
            data=form,
        )

    def test_import_saves_samples(
        self, client: TestClient, health_store: SQLiteHealthStore
    ) -> None:
        response = self._import(client)
        assert response.status_code == 201
        assert response.json() == {
            "filename": "export.xml",
            "imported": 2,
            "pending_uploads": 0,
        }
        assert health_store.count(GLUCOSE_TYPE) == 2

    def test_imported_dexcom_readings_queued(
        self, client: TestClient, fake_remote: FakeTidepool
    ) -> None:
        client.post("/api/v1/sync/upload/enable")
        body = self._import(client, default_bundle_id="com.dexcom.cgm").json()
        assert body["imported"] == 2
        assert body["pending_uploads"] == 1

    def test_reimport_queues_nothing_new(self, client: TestClient) -> None:
        client.post("/api/v1/sync/upload/enable")
        self._import(client, default_bundle_id="com.dexcom.cgm")
        body = self._import(client, default_bundle_id="com.dexcom.cgm").json()
        assert body["imported"] == 0
        assert body["pending_uploads"] == 1

    def test_invalid_xml_rejected(self, client: TestClient) -> None:
        response = self._import(client, b"<HealthData><Record")
        assert response.status_code == 400

    def test_oversized_file_rejected(self, client: TestClient) -> None:
        client.app.dependency_overrides[get_settings] = lambda: Settings(max_import_size_bytes=16)
        try:
            response = self._import(client)
        finally:
            client.app.dependency_overrides.clear()
        assert response.status_code == 400
        assert "too large" in response.json()["detail"]
