"""
tests/test_api.py
-----------------
HTTP-level tests for services/api, driven through FastAPI's TestClient
with an in-memory service.
Run with: python -m pytest tests/
"""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from core.service import MigrationService
from services.api.main import create_app


@pytest.fixture
def client(service: MigrationService):
    with TestClient(create_app(service)) as test_client:
        yield test_client


def _start(client: TestClient, **overrides):
    body = {
        "source_table": "orders",
        "operation_id": "op-1",
        "wait_for_partner": False,
        "retention": 0.1,
        "batch_size": 25,
    }
    body.update(overrides)
    return client.post("/operations", json=body)


# ---------------------------------------------------------------------------
# Root and health
# ---------------------------------------------------------------------------

class TestRoot:
    def test_root(self, client: TestClient) -> None:
        data = client.get("/").json()
        assert data["site"] == "site_a"
        assert data["status"] == "operational"

    def test_health(self, client: TestClient) -> None:
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["data_db"] is True
        assert data["forwarding_failures"] == 0

    def test_health_reports_lost_connection(self, db, client: TestClient) -> None:
        db.close()
        assert client.get("/health").json()["status"] == "unhealthy"


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

class TestOperations:
    def test_start_and_status(self, client: TestClient) -> None:
        resp = _start(client)
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "COMPLETED"
        assert data["archived_rows"] == 90
        assert data["migrated_rows"] == 10

        status = client.get("/operations/op-1").json()
        assert [s["site_name"] for s in status["sites"]] == ["site_a"]
        assert len(status["jobs"]) == 2

    def test_status_filtered_by_partner_site(self, client: TestClient) -> None:
        _start(client)
        assert client.get("/operations/op-1", params={"site": "site_b"}).status_code == 404

    def test_unknown_operation_is_404(self, client: TestClient) -> None:
        assert client.get("/operations/nope").status_code == 404

    def test_dry_run_plan(self, client: TestClient) -> None:
        data = _start(client, dry_run=True).json()
        assert data["success"] is True
        assert data["plan"]["rows_to_archive"] == 90
        assert data["plan"]["cutoff_column"] == "created_at"

    def test_invalid_retention(self, client: TestClient) -> None:
        assert _start(client, retention=1.5).status_code == 422

    def test_failed_run_reports_error(self, client: TestClient) -> None:
        data = _start(client, source_table="ghost", operation_id="op-x").json()
        assert data["success"] is False
        assert data["status"] == "FAILED"
        assert "does not exist" in data["error"]

    def test_partner_ready(self, client: TestClient) -> None:
        assert client.post("/operations/op-1/partner-ready").status_code == 404
        _start(client)
        resp = client.post("/operations/op-1/partner-ready", params={"site": "site_a"})
        assert resp.status_code == 200
        assert resp.json()["partner_ready"] is True

    def test_partner_script(self, client: TestClient) -> None:
        resp = client.post("/operations/op-1/partner-script", json={"source_table": "orders"})
        assert resp.status_code == 200
        assert "--operation-id op-1" in resp.json()["content"]


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

class TestJobs:
    def test_list_and_progress(self, client: TestClient) -> None:
        _start(client)
        jobs = client.get("/jobs", params={"operation_id": "op-1"}).json()
        assert {j["operation"] for j in jobs} == {"ARCHIVE", "MIGRATE"}
        progress = client.get(f"/jobs/{jobs[0]['job_id']}/progress").json()
        assert progress["status"] == "COMPLETED"
        assert progress["percentage"] == 100.0

    def test_unknown_job(self, client: TestClient) -> None:
        assert client.get("/jobs/missing/progress").status_code == 404
        assert client.post("/jobs/missing/pause").status_code == 409
        assert client.post("/jobs/missing/resume").status_code == 409


# ---------------------------------------------------------------------------
# Replication
# ---------------------------------------------------------------------------

class TestReplication:
    def test_status(self, client: TestClient) -> None:
        data = client.get("/replication/status").json()
        assert data["site_role"] == "PRIMARY"

    def test_readiness(self, client: TestClient) -> None:
        data = client.get("/replication/readiness").json()
        assert data["ready"] is True
        assert len(data["checks"]) == 4

    def test_pause_and_resume_table(self, client: TestClient, repo) -> None:
        resp = client.post("/replication/tables/orders/pause", json={"reason": "reindex"})
        assert resp.json() == {"table_name": "orders", "replication_enabled": False}
        assert repo.get_control("orders").replication_enabled is False
        client.post("/replication/tables/orders/resume")
        assert repo.get_control("orders").replication_enabled is True

    def test_pause_on_standby_is_400(self, db, client: TestClient) -> None:
        db.standby = True
        resp = client.post("/replication/tables/orders/pause", json={})
        assert resp.status_code == 400

    def test_forwarding_failures(self, client: TestClient) -> None:
        assert client.get("/replication/forwarding-failures").json()["total"] == 0


# ---------------------------------------------------------------------------
# Cutover and maintenance
# ---------------------------------------------------------------------------

class TestCutover:
    def test_switch_and_rollback(self, db, client: TestClient) -> None:
        _start(client)
        check = client.get("/cutover/validate", params={"old_table": "orders", "new_table": "orders_new"})
        assert check.json()["ready"] is True

        switched = client.post("/cutover/switch", json={"old_table": "orders", "new_table": "orders_new"}).json()
        assert switched["success"] is True
        assert switched["rollback"] == "NOT_NEEDED"
        backup = switched["backup_name"]

        restored = client.post(
            "/cutover/rollback", json={"current_table": "orders", "backup_table": backup}
        ).json()
        assert restored["success"] is True
        assert restored["restored_rows"] == 100

    def test_failed_switch_is_still_200(self, client: TestClient) -> None:
        resp = client.post("/cutover/switch", json={"old_table": "orders", "new_table": "ghost"})
        assert resp.status_code == 200
        assert resp.json()["success"] is False

    def test_consistency(self, client: TestClient) -> None:
        _start(client)
        data = client.post("/cutover/consistency", json={"source_table": "orders"}).json()
        assert data["consistent"] is True
        assert client.post("/cutover/consistency", json={"source_table": "ghost"}).status_code == 404


class TestMaintenance:
    def test_cleanup_backups_dry_run(self, db, client: TestClient) -> None:
        db.create_table("orders_backup_20200101_000000", ["id"])
        data = client.post("/maintenance/cleanup-backups", json={"pattern": "orders"}).json()
        assert data["dry_run"] is True
        assert [c["name"] for c in data["candidates"]] == ["orders_backup_20200101_000000"]
        assert db.table_exists("orders_backup_20200101_000000")

    def test_cleanup_logs(self, client: TestClient) -> None:
        data = client.post("/maintenance/cleanup-logs", params={"days_to_keep": 30}).json()
        assert data["days_to_keep"] == 30

    def test_scripts(self, client: TestClient) -> None:
        failover = client.get("/maintenance/scripts/failover", params={"tables": ["orders", "items"]})
        assert "Recovery for table: items" in failover.json()["content"]
        compare = client.get("/maintenance/scripts/comparison/orders")
        assert 'FROM "orders"' in compare.json()["content"]
