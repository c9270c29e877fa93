# tests/test_api.py
"""Tests for the read-only reports API."""

import pytest
from fastapi.testclient import TestClient

from legacy_migrate.api.main import app
from legacy_migrate.models.migration import MigrationRun, MigrationStatus, utc_now
from legacy_migrate.models.record import QuarantinedRecord, ValidationIssue
from legacy_migrate.models.report import CheckStatus, IntegrityCheck, IntegrityReport
from legacy_migrate.services.report_store import ReportStore


@pytest.fixture
def store(tmp_path, monkeypatch):
    monkeypatch.setenv("MIGRATION_OUTPUT_DIR", str(tmp_path / "reports"))
    return ReportStore(str(tmp_path / "reports"))


@pytest.fixture
def client(store):
    return TestClient(app)


@pytest.fixture
def stored_run(store):
    run = MigrationRun(name="nightly")
    run.started_at = utc_now()
    run.completed_at = utc_now()
    run.status = MigrationStatus.PARTIAL
    record = run.add_record("reference", "order_types")
    record.status = MigrationStatus.PARTIAL
    record.records_processed = 10
    record.records_succeeded = 9
    record.records_rejected = 1
    run.update_totals()
    run.source_counts = {"order_types": 10}
    run.quarantined = [
        QuarantinedRecord(
            entity_type="order_types",
            legacy_id="7",
            stage="validate",
            data={"id": 7, "name": None},
            issues=[ValidationIssue(record_legacy_id="7", field_path="name", message="Input should be a valid string")],
        ),
        QuarantinedRecord(entity_type="profiles", legacy_id="3", stage="validate", data={"id": 3}),
    ]

    report = IntegrityReport(run_id=run.id)
    report.add(IntegrityCheck(
        name="count_parity:order_types", category="count_parity", status=CheckStatus.WARNING,
        message="1 rows missing", expected=10, actual=9,
    ))
    run.integrity_report = report

    store.save_run(run)
    store.save_integrity(report)
    store.save_rejected(run)
    return run


class TestHealth:

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestRuns:

    def test_empty_list(self, client):
        response = client.get("/api/runs")
        assert response.status_code == 200
        assert response.json() == {"runs": [], "total": 0}

    def test_list_and_filter(self, client, stored_run):
        data = client.get("/api/runs").json()
        assert data["total"] == 1
        assert data["runs"][0]["id"] == stored_run.id
        assert data["runs"][0]["total_records_rejected"] == 1

        assert client.get("/api/runs", params={"status": "completed"}).json()["total"] == 0

    def test_get_run(self, client, stored_run):
        data = client.get(f"/api/runs/{stored_run.id}").json()

        assert data["status"] == "partial"
        assert data["records"][0]["entity_type"] == "order_types"
        assert data["source_counts"] == {"order_types": 10}
        assert data["quarantined_count"] == 2

    def test_unknown_run(self, client, store):
        response = client.get("/api/runs/does-not-exist")
        assert response.status_code == 404
        assert response.json()["detail"] == "Run not found"


class TestReports:

    def test_integrity(self, client, stored_run):
        data = client.get(f"/api/runs/{stored_run.id}/integrity").json()

        assert data["overall_status"] == "WARNING"
        assert data["items"][0]["name"] == "count_parity:order_types"
        assert data["counts"] == {"PASS": 0, "WARNING": 1, "FAIL": 0}

    def test_missing_integrity(self, client, store):
        response = client.get("/api/runs/does-not-exist/integrity")
        assert response.status_code == 404

    def test_rejections(self, client, stored_run):
        data = client.get(f"/api/runs/{stored_run.id}/rejections").json()
        assert data["total"] == 2

        filtered = client.get(
            f"/api/runs/{stored_run.id}/rejections", params={"entity_type": "order_types"}
        ).json()
        assert filtered["total"] == 1
        assert filtered["rejections"][0]["issues"][0]["field_path"] == "name"

    def test_missing_rejections(self, client, store):
        response = client.get("/api/runs/does-not-exist/rejections")
        assert response.status_code == 404
        assert response.json()["detail"] == "Rejections not found"
