"""
tests/test_service.py
---------------------
Unit tests for core/service.py, the facade shared by the CLI and the API.
Run with: python -m pytest tests/
"""
from __future__ import annotations

from pathlib import Path

import pytest

from core.batch_engine import BatchEngine
from core.coordinator import CoordinationError
from core.service import MigrationService
from models.records import OperationStatus


def _run(service: MigrationService, **kw):
    values = dict(
        site_name=None, source_table="orders", operation_id="op-1",
        wait_for_partner=False, retention=0.1, batch_size=25,
    )
    values.update(kw)
    return service.start_coordinated_migration(**values)


class TestCoordinatedMigration:
    def test_completed_run(self, service: MigrationService) -> None:
        result = _run(service)
        assert result.success
        assert result.site_name == "site_a"
        assert (result.archived_rows, result.migrated_rows) == (90, 10)

    def test_dry_run(self, db, service: MigrationService) -> None:
        result = _run(service, dry_run=True)
        assert result.plan.rows_to_archive == 90
        assert not db.table_exists("orders_archive")

    def test_failure_comes_back_as_error(self, service: MigrationService) -> None:
        result = _run(
            service, operation_id="op-t", is_coordinator=True, wait_for_partner=True,
            poll_interval=1, poll_attempts=3,
        )
        assert not result.success
        assert result.status is OperationStatus.FAILED
        assert "Timeout waiting for partner" in result.error
        assert result.operation_id == "op-t"

    def test_paused_operation_can_be_rerun(self, db, repo, service: MigrationService) -> None:
        service.engine = BatchEngine(
            db, repo, batch_sleep_ms=0, max_batches=3, provenance="site_a", sleep=lambda s: None,
        )
        result = _run(service)
        assert not result.success
        assert result.status is OperationStatus.EXECUTING
        assert "re-invoke" in result.error

        result = _run(service)
        assert result.success
        assert (result.archived_rows, result.migrated_rows) == (90, 10)

    def test_missing_table_error(self, service: MigrationService) -> None:
        result = _run(service, source_table="ghost", operation_id=None)
        assert result.status is OperationStatus.FAILED
        assert "does not exist" in result.error

    def test_mapping_file_is_used(self, db, service, tmp_path: Path, monkeypatch) -> None:
        path = tmp_path / "table_mappings.json"
        path.write_text(
            '{"orders": {"target_table": "orders_v2", "target_key_column": "original_id",'
            ' "column_mappings": {"customer": "customer", "amount": "amount", "created_at": "created_at"},'
            ' "batch_tag": {"is_migrated": true}, "provenance_column": "replication_source"}}'
        )
        monkeypatch.chdir(tmp_path)
        result = _run(service)
        assert result.success
        assert db.count_rows("orders_v2", {"is_migrated": True}) == 10


class TestStatusAndJobs:
    def test_check_status(self, service: MigrationService) -> None:
        _run(service)
        report = service.check_status("op-1")
        assert report.found
        assert [s["status"] for s in report.sites] == ["COMPLETED"]
        assert sorted(j["operation"] for j in report.jobs) == ["ARCHIVE", "MIGRATE"]

    def test_unknown_operation(self, service: MigrationService) -> None:
        assert not service.check_status("nope").found

    def test_mark_partner_ready_defaults_to_own_site(self, service: MigrationService) -> None:
        _run(service, dry_run=False)
        assert service.mark_partner_ready("op-1").site_name == "site_a"
        with pytest.raises(CoordinationError):
            service.mark_partner_ready("nope")

    def test_job_progress(self, service: MigrationService) -> None:
        _run(service)
        archive = next(j for j in service.list_jobs("op-1") if j.operation.value == "ARCHIVE")
        progress = service.job_progress(archive.job_id)
        assert progress.percentage == 100.0
        assert progress.current_batch == 4
        assert service.job_progress("missing") is None

    def test_pause_unknown_job(self, service: MigrationService) -> None:
        assert not service.pause_job("missing")
        assert not service.resume_job("missing")


class TestMaintenance:
    def test_validate_consistency(self, service: MigrationService) -> None:
        _run(service)
        assert service.validate_consistency("orders").consistent

    def test_validate_unknown_table(self, service: MigrationService) -> None:
        with pytest.raises(CoordinationError):
            service.validate_consistency("ghost")

    def test_cleanup_batch_logs(self, service: MigrationService) -> None:
        _run(service)
        result = service.cleanup_batch_logs(days_to_keep=0)
        assert result.batch_records_deleted == 5
        assert result.operations_deleted == 1
        assert not service.check_status("op-1").found

    def test_cleanup_keeps_recent(self, service: MigrationService) -> None:
        _run(service)
        result = service.cleanup_batch_logs()
        assert (result.batch_records_deleted, result.operations_deleted) == (0, 0)

    def test_forwarding_failures(self, service: MigrationService) -> None:
        assert service.forwarding_failures().total == 0

    def test_scripts(self, service: MigrationService, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.chdir(tmp_path)
        printed = service.generate_partner_script("op-1", "orders")
        assert printed.path is None
        assert "--operation-id op-1" in printed.content

        saved = service.generate_comparison_script("orders", save=True)
        assert Path(saved.path).read_text() == saved.content
        assert Path(saved.path).name == "compare_orders.sql"

    def test_metadata_healthy_without_store(self, service: MigrationService) -> None:
        assert service.metadata_healthy()
        service.initialize_metadata()
