"""
tests/test_repository.py
------------------------
Unit tests for core/metadata/memory.py and the row handling of
core/metadata/repository.py (PostgreSQL side mocked).
Run with: python -m pytest tests/
"""
from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from core.metadata.memory import InMemoryMetadataRepository
from core.metadata.repository import PostgresMetadataRepository, RecordExistsError
from models.records import (
    AuditStatus,
    BatchExecutionRecord,
    BatchOutcome,
    CoordinationOperation,
    JobOperation,
    JobStatus,
    MigrationJob,
    OperationStatus,
    ReplicationControlEntry,
    ReplicationStateSnapshot,
    utcnow,
)


def _job(name: str = "archive_orders", **kw) -> MigrationJob:
    return MigrationJob(name, "orders", "orders_archive", JobOperation.ARCHIVE, 100, **kw)


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class TestJobs:
    def test_create_and_get(self, repo: InMemoryMetadataRepository) -> None:
        job = repo.create_job(_job())
        assert repo.get_job(job.job_id).job_name == "archive_orders"
        assert repo.find_job_by_name("archive_orders").job_id == job.job_id

    def test_duplicate_name_rejected(self, repo: InMemoryMetadataRepository) -> None:
        repo.create_job(_job())
        with pytest.raises(RecordExistsError):
            repo.create_job(_job())

    def test_returned_copies_are_detached(self, repo: InMemoryMetadataRepository) -> None:
        job = repo.create_job(_job())
        job.processed_rows = 50
        assert repo.get_job(job.job_id).processed_rows == 0
        repo.save_job(job)
        assert repo.get_job(job.job_id).processed_rows == 50

    def test_find_active_job(self, repo: InMemoryMetadataRepository) -> None:
        done = repo.create_job(_job("a", status=JobStatus.COMPLETED))
        paused = repo.create_job(_job("b", status=JobStatus.PAUSED))
        assert repo.find_active_job("orders").job_id == paused.job_id
        assert repo.find_active_job("orders", exclude_job_id=paused.job_id) is None
        assert repo.find_active_job("customers") is None
        assert done.job_id != paused.job_id

    def test_list_by_operation(self, repo: InMemoryMetadataRepository) -> None:
        repo.create_job(_job("a", operation_id="op-1"))
        repo.create_job(_job("b", operation_id="op-2"))
        assert [j.job_name for j in repo.list_jobs("op-1")] == ["a"]
        assert len(repo.list_jobs()) == 2


class TestBatchLog:
    def test_append_and_purge(self, repo: InMemoryMetadataRepository) -> None:
        old = utcnow() - timedelta(days=40)
        repo.append_batch_record(BatchExecutionRecord("j1", 1, None, 10, 10, 0.1, BatchOutcome.COMPLETED, recorded_at=old))
        repo.append_batch_record(BatchExecutionRecord("j1", 2, 10, 20, 10, 0.1, BatchOutcome.COMPLETED))
        assert repo.last_batch_record("j1").batch_number == 2
        assert repo.purge_batch_records(utcnow() - timedelta(days=30)) == 1
        assert [r.batch_number for r in repo.list_batch_records("j1")] == [2]
        assert repo.last_batch_record("j2") is None


class TestOperations:
    def test_one_row_per_site(self, repo: InMemoryMetadataRepository) -> None:
        repo.create_operation(CoordinationOperation("op-1", "site_a", "orders", True))
        repo.create_operation(CoordinationOperation("op-1", "site_b", "orders", False))
        with pytest.raises(RecordExistsError):
            repo.create_operation(CoordinationOperation("op-1", "site_a", "orders", True))
        assert [o.site_name for o in repo.list_operations("op-1")] == ["site_a", "site_b"]

    def test_purge_only_finished(self, repo: InMemoryMetadataRepository) -> None:
        old = utcnow() - timedelta(days=10)
        repo.create_operation(CoordinationOperation(
            "op-1", "site_a", "orders", True, status=OperationStatus.COMPLETED, initiated_at=old,
        ))
        repo.create_operation(CoordinationOperation(
            "op-2", "site_a", "orders", True, status=OperationStatus.EXECUTING, initiated_at=old,
        ))
        assert repo.purge_operations(utcnow()) == 1
        assert [o.operation_id for o in repo.list_operations()] == ["op-2"]


class TestControlAndAudit:
    def test_control_entries(self, repo: InMemoryMetadataRepository) -> None:
        assert repo.get_control("orders") is None
        repo.save_control(ReplicationControlEntry("orders", replication_enabled=False))
        repo.save_control(ReplicationControlEntry("customers"))
        assert repo.get_control("orders").replication_enabled is False
        assert [e.table_name for e in repo.list_controls()] == ["customers", "orders"]

    def test_audit_lifecycle(self, repo: InMemoryMetadataRepository) -> None:
        audit_id = repo.start_audit("orders", "ATOMIC_SWITCH", operation_id="op-1")
        (entry,) = repo.list_audit("orders")
        assert entry.status is AuditStatus.STARTED
        repo.finish_audit(audit_id, AuditStatus.COMPLETED, rows_affected=3)
        (entry,) = repo.list_audit("orders")
        assert entry.status is AuditStatus.COMPLETED
        assert entry.rows_affected == 3
        assert entry.end_time is not None

    def test_record_audit_newest_first(self, repo: InMemoryMetadataRepository) -> None:
        repo.record_audit("orders", "PAUSE_REPLICATION", AuditStatus.COMPLETED)
        repo.record_audit("orders", "RESUME_REPLICATION", AuditStatus.FAILED, error_message="boom")
        entries = repo.list_audit(limit=1)
        assert [e.operation for e in entries] == ["RESUME_REPLICATION"]
        assert entries[0].error_message == "boom"

    def test_snapshots_by_operation(self, repo: InMemoryMetadataRepository) -> None:
        repo.save_replication_state([
            ReplicationStateSnapshot("op-1", "slot", "slot_to_b", "0/10"),
            ReplicationStateSnapshot("op-2", "slot", "slot_to_b", "0/20"),
        ])
        assert [s.position for s in repo.list_replication_state("op-1")] == ["0/10"]


# ---------------------------------------------------------------------------
# PostgreSQL store
# ---------------------------------------------------------------------------

def _pg(rows=None, rowcount: int = 0):
    cur = MagicMock()
    cur.description = None if rows is None else [("col",)]
    cur.fetchall.return_value = rows or []
    cur.rowcount = rowcount
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cur
    db = MagicMock()
    db.connection.return_value.__enter__.return_value = conn
    return PostgresMetadataRepository(db), cur


class TestPostgresRepository:
    def test_create_job_conflict(self) -> None:
        repo, cur = _pg(rows=[])
        with pytest.raises(RecordExistsError):
            repo.create_job(_job())
        query, params = cur.execute.call_args.args
        assert "ON CONFLICT (job_name) DO NOTHING" in query
        assert params[1] == "archive_orders"

    def test_get_operation_converts_row(self) -> None:
        row = {
            "operation_id": "op-1", "site_name": "site_a", "table_name": "orders",
            "status": "EXECUTING", "phase": 3, "is_coordinator": True,
            "partner_ready": False, "initiated_at": utcnow(), "completed_at": None, "notes": None,
        }
        repo, _ = _pg(rows=[row])
        op = repo.get_operation("op-1", "site_a")
        assert op.status is OperationStatus.EXECUTING
        assert op.phase == 3

    def test_missing_job(self) -> None:
        repo, _ = _pg(rows=[])
        assert repo.get_job("nope") is None

    def test_purge_returns_rowcount(self) -> None:
        repo, cur = _pg(rowcount=4)
        assert repo.purge_batch_records(utcnow()) == 4
        assert cur.execute.call_args.args[0].startswith("DELETE FROM batch_execution_log")
