"""
core/metadata/repository.py
---------------------------
Persistence for the orchestrator's durable records: migration jobs, the
batch execution log, coordination operations, replication control entries,
the audit log and replication position snapshots.

``MetadataRepository`` is the interface the engines depend on;
``PostgresMetadataRepository`` is the production implementation over the
tables in ``schema.sql`` and ``InMemoryMetadataRepository``
(core/metadata/memory.py) backs dry runs and tests.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from psycopg2.extras import Json

from core.metadata.db import MetadataDB
from logger import get_logger
from models.records import (
    AuditEntry,
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

log = get_logger(__name__)


class RecordExistsError(Exception):
    """Raised when creating a record whose identity is already taken."""


class MetadataRepository(ABC):
    """Storage interface for the five record kinds plus position snapshots."""

    # ===== JOBS =====

    @abstractmethod
    def create_job(self, job: MigrationJob) -> MigrationJob: ...

    @abstractmethod
    def save_job(self, job: MigrationJob) -> None: ...

    @abstractmethod
    def get_job(self, job_id: str) -> MigrationJob | None: ...

    @abstractmethod
    def find_job_by_name(self, job_name: str) -> MigrationJob | None: ...

    @abstractmethod
    def find_active_job(
        self, source_table: str, exclude_job_id: str | None = None
    ) -> MigrationJob | None:
        """A PENDING, RUNNING or PAUSED job reading *source_table*, if any."""

    @abstractmethod
    def list_jobs(self, operation_id: str | None = None) -> list[MigrationJob]: ...

    # ===== BATCH LOG =====

    @abstractmethod
    def append_batch_record(self, record: BatchExecutionRecord) -> None: ...

    @abstractmethod
    def list_batch_records(self, job_id: str) -> list[BatchExecutionRecord]: ...

    @abstractmethod
    def last_batch_record(self, job_id: str) -> BatchExecutionRecord | None: ...

    @abstractmethod
    def purge_batch_records(self, older_than: datetime) -> int: ...

    # ===== COORDINATION =====

    @abstractmethod
    def create_operation(self, op: CoordinationOperation) -> CoordinationOperation: ...

    @abstractmethod
    def save_operation(self, op: CoordinationOperation) -> None: ...

    @abstractmethod
    def get_operation(self, operation_id: str, site_name: str) -> CoordinationOperation | None: ...

    @abstractmethod
    def list_operations(self, operation_id: str | None = None) -> list[CoordinationOperation]: ...

    @abstractmethod
    def purge_operations(self, older_than: datetime) -> int:
        """Delete finished (COMPLETED, FAILED, ROLLED_BACK) operations."""

    # ===== REPLICATION CONTROL =====

    @abstractmethod
    def get_control(self, table_name: str) -> ReplicationControlEntry | None: ...

    @abstractmethod
    def save_control(self, entry: ReplicationControlEntry) -> None: ...

    @abstractmethod
    def list_controls(self) -> list[ReplicationControlEntry]: ...

    # ===== AUDIT =====

    @abstractmethod
    def start_audit(
        self,
        table_name: str,
        operation: str,
        operation_id: str | None = None,
        notes: str | None = None,
    ) -> int: ...

    @abstractmethod
    def finish_audit(
        self,
        audit_id: int,
        status: AuditStatus,
        rows_affected: int | None = None,
        error_message: str | None = None,
        notes: str | None = None,
    ) -> None: ...

    @abstractmethod
    def list_audit(self, table_name: str | None = None, limit: int = 100) -> list[AuditEntry]: ...

    # ===== REPLICATION STATE SNAPSHOTS =====

    @abstractmethod
    def save_replication_state(self, snapshots: list[ReplicationStateSnapshot]) -> None: ...

    @abstractmethod
    def list_replication_state(self, operation_id: str) -> list[ReplicationStateSnapshot]: ...

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------

    def record_audit(
        self,
        table_name: str,
        operation: str,
        status: AuditStatus,
        operation_id: str | None = None,
        rows_affected: int | None = None,
        error_message: str | None = None,
        notes: str | None = None,
    ) -> int:
        """Write a single already-finished audit entry."""
        audit_id = self.start_audit(table_name, operation, operation_id=operation_id, notes=notes)
        self.finish_audit(
            audit_id, status, rows_affected=rows_affected, error_message=error_message
        )
        return audit_id


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------

_JOB_COLUMNS = (
    "job_id", "job_name", "operation_id", "mapping", "cutoff_column", "cutoff_value",
    "cutoff_direction", "operation", "source_table", "target_table",
    "batch_size", "total_rows", "processed_rows", "current_batch",
    "last_processed_cursor", "max_cursor", "status", "start_time", "end_time",
    "error_detail", "created_at", "updated_at",
)

_FINISHED_STATUSES = (
    OperationStatus.COMPLETED.value,
    OperationStatus.FAILED.value,
    OperationStatus.ROLLED_BACK.value,
)


def _job_params(job: MigrationJob, columns: tuple[str, ...] | list[str]) -> list[Any]:
    data = job.to_dict()
    data["mapping"] = Json(job.mapping)
    if job.cutoff_value is not None:
        data["cutoff_value"] = str(job.cutoff_value)
    return [data[c] for c in columns]


def _job_from_row(row: dict[str, Any]) -> MigrationJob:
    data = dict(row)
    data["job_id"] = str(data["job_id"])
    data["status"] = JobStatus(data["status"])
    data["operation"] = JobOperation(data["operation"])
    return MigrationJob(**data)


def _batch_from_row(row: dict[str, Any]) -> BatchExecutionRecord:
    return BatchExecutionRecord(
        job_id=str(row["job_id"]),
        batch_number=row["batch_number"],
        cursor_start=row["cursor_start"],
        cursor_end=row["cursor_end"],
        rows_affected=row["rows_affected"],
        duration_seconds=row["duration_seconds"],
        outcome=BatchOutcome(row["outcome"]),
        error_text=row["error_text"],
        recorded_at=row["recorded_at"],
    )


def _operation_from_row(row: dict[str, Any]) -> CoordinationOperation:
    data = dict(row)
    data["status"] = OperationStatus(data["status"])
    return CoordinationOperation(**data)


class PostgresMetadataRepository(MetadataRepository):
    """Repository over the metadata tables defined in ``schema.sql``."""

    def __init__(self, db: MetadataDB) -> None:
        self.db = db

    def _execute(self, query: str, params: tuple | list = ()) -> list[dict[str, Any]]:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                if cur.description is None:
                    return []
                return [dict(r) for r in cur.fetchall()]

    def _rowcount(self, query: str, params: tuple | list = ()) -> int:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                return cur.rowcount

    # ===== JOBS =====

    def create_job(self, job: MigrationJob) -> MigrationJob:
        placeholders = ", ".join(["%s"] * len(_JOB_COLUMNS))
        rows = self._execute(
            f"INSERT INTO migration_jobs ({', '.join(_JOB_COLUMNS)}) VALUES ({placeholders}) "
            "ON CONFLICT (job_name) DO NOTHING RETURNING job_id",
            _job_params(job, _JOB_COLUMNS),
        )
        if not rows:
            raise RecordExistsError(f"Job named {job.job_name!r} already exists")
        log.info("Created migration job %s (%s)", job.job_name, job.job_id)
        return job

    def save_job(self, job: MigrationJob) -> None:
        job.updated_at = utcnow()
        columns = [c for c in _JOB_COLUMNS if c not in ("job_id", "created_at")]
        assignments = ", ".join(f"{c} = %s" for c in columns)
        self._execute(
            f"UPDATE migration_jobs SET {assignments} WHERE job_id = %s",
            [*_job_params(job, columns), job.job_id],
        )

    def get_job(self, job_id: str) -> MigrationJob | None:
        rows = self._execute("SELECT * FROM migration_jobs WHERE job_id = %s", (job_id,))
        return _job_from_row(rows[0]) if rows else None

    def find_job_by_name(self, job_name: str) -> MigrationJob | None:
        rows = self._execute("SELECT * FROM migration_jobs WHERE job_name = %s", (job_name,))
        return _job_from_row(rows[0]) if rows else None

    def find_active_job(
        self, source_table: str, exclude_job_id: str | None = None
    ) -> MigrationJob | None:
        rows = self._execute(
            "SELECT * FROM migration_jobs WHERE source_table = %s "
            "AND status IN ('PENDING', 'RUNNING', 'PAUSED') "
            "AND (%s::uuid IS NULL OR job_id <> %s::uuid) "
            "ORDER BY created_at LIMIT 1",
            (source_table, exclude_job_id, exclude_job_id),
        )
        return _job_from_row(rows[0]) if rows else None

    def list_jobs(self, operation_id: str | None = None) -> list[MigrationJob]:
        if operation_id is None:
            rows = self._execute("SELECT * FROM migration_jobs ORDER BY created_at")
        else:
            rows = self._execute(
                "SELECT * FROM migration_jobs WHERE operation_id = %s ORDER BY created_at",
                (operation_id,),
            )
        return [_job_from_row(r) for r in rows]

    # ===== BATCH LOG =====

    def append_batch_record(self, record: BatchExecutionRecord) -> None:
        self._execute(
            "INSERT INTO batch_execution_log (job_id, batch_number, cursor_start, cursor_end, "
            "rows_affected, duration_seconds, outcome, error_text, recorded_at) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)",
            (
                record.job_id, record.batch_number, record.cursor_start, record.cursor_end,
                record.rows_affected, record.duration_seconds, record.outcome.value,
                record.error_text, record.recorded_at,
            ),
        )

    def list_batch_records(self, job_id: str) -> list[BatchExecutionRecord]:
        rows = self._execute(
            "SELECT * FROM batch_execution_log WHERE job_id = %s ORDER BY log_id", (job_id,)
        )
        return [_batch_from_row(r) for r in rows]

    def last_batch_record(self, job_id: str) -> BatchExecutionRecord | None:
        rows = self._execute(
            "SELECT * FROM batch_execution_log WHERE job_id = %s ORDER BY log_id DESC LIMIT 1",
            (job_id,),
        )
        return _batch_from_row(rows[0]) if rows else None

    def purge_batch_records(self, older_than: datetime) -> int:
        return self._rowcount(
            "DELETE FROM batch_execution_log WHERE recorded_at < %s", (older_than,)
        )

    # ===== COORDINATION =====

    def create_operation(self, op: CoordinationOperation) -> CoordinationOperation:
        rows = self._execute(
            "INSERT INTO coordination_operations (operation_id, site_name, table_name, status, "
            "phase, is_coordinator, partner_ready, initiated_at, completed_at, notes) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s) "
            "ON CONFLICT (operation_id, site_name) DO NOTHING RETURNING operation_id",
            (
                op.operation_id, op.site_name, op.table_name, op.status.value, op.phase,
                op.is_coordinator, op.partner_ready, op.initiated_at, op.completed_at, op.notes,
            ),
        )
        if not rows:
            raise RecordExistsError(
                f"Operation {op.operation_id} already exists for site {op.site_name}"
            )
        return op

    def save_operation(self, op: CoordinationOperation) -> None:
        self._execute(
            "UPDATE coordination_operations SET table_name = %s, status = %s, phase = %s, "
            "is_coordinator = %s, partner_ready = %s, completed_at = %s, notes = %s "
            "WHERE operation_id = %s AND site_name = %s",
            (
                op.table_name, op.status.value, op.phase, op.is_coordinator, op.partner_ready,
                op.completed_at, op.notes, op.operation_id, op.site_name,
            ),
        )

    def get_operation(self, operation_id: str, site_name: str) -> CoordinationOperation | None:
        rows = self._execute(
            "SELECT * FROM coordination_operations WHERE operation_id = %s AND site_name = %s",
            (operation_id, site_name),
        )
        return _operation_from_row(rows[0]) if rows else None

    def list_operations(self, operation_id: str | None = None) -> list[CoordinationOperation]:
        if operation_id is None:
            rows = self._execute(
                "SELECT * FROM coordination_operations ORDER BY initiated_at DESC"
            )
        else:
            rows = self._execute(
                "SELECT * FROM coordination_operations WHERE operation_id = %s "
                "ORDER BY site_name",
                (operation_id,),
            )
        return [_operation_from_row(r) for r in rows]

    def purge_operations(self, older_than: datetime) -> int:
        return self._rowcount(
            "DELETE FROM coordination_operations WHERE status = ANY(%s) AND initiated_at < %s",
            (list(_FINISHED_STATUSES), older_than),
        )

    # ===== REPLICATION CONTROL =====

    def get_control(self, table_name: str) -> ReplicationControlEntry | None:
        rows = self._execute(
            "SELECT * FROM replication_control WHERE table_name = %s", (table_name,)
        )
        return ReplicationControlEntry(**rows[0]) if rows else None

    def save_control(self, entry: ReplicationControlEntry) -> None:
        entry.updated_at = utcnow()
        self._execute(
            "INSERT INTO replication_control (table_name, replication_enabled, last_sync_time, "
            "maintenance_window_start, maintenance_window_end, notes, updated_at) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s) "
            "ON CONFLICT (table_name) DO UPDATE SET "
            "replication_enabled = EXCLUDED.replication_enabled, "
            "last_sync_time = EXCLUDED.last_sync_time, "
            "maintenance_window_start = EXCLUDED.maintenance_window_start, "
            "maintenance_window_end = EXCLUDED.maintenance_window_end, "
            "notes = EXCLUDED.notes, updated_at = EXCLUDED.updated_at",
            (
                entry.table_name, entry.replication_enabled, entry.last_sync_time,
                entry.maintenance_window_start, entry.maintenance_window_end,
                entry.notes, entry.updated_at,
            ),
        )

    def list_controls(self) -> list[ReplicationControlEntry]:
        rows = self._execute("SELECT * FROM replication_control ORDER BY table_name")
        return [ReplicationControlEntry(**r) for r in rows]

    # ===== AUDIT =====

    def start_audit(
        self,
        table_name: str,
        operation: str,
        operation_id: str | None = None,
        notes: str | None = None,
    ) -> int:
        rows = self._execute(
            "INSERT INTO migration_audit (operation_id, table_name, operation, status, notes) "
            "VALUES (%s, %s, %s, %s, %s) RETURNING audit_id",
            (operation_id, table_name, operation, AuditStatus.STARTED.value, notes),
        )
        return int(rows[0]["audit_id"])

    def finish_audit(
        self,
        audit_id: int,
        status: AuditStatus,
        rows_affected: int | None = None,
        error_message: str | None = None,
        notes: str | None = None,
    ) -> None:
        self._execute(
            "UPDATE migration_audit SET status = %s, end_time = now(), "
            "rows_affected = COALESCE(%s, rows_affected), "
            "error_message = COALESCE(%s, error_message), "
            "notes = COALESCE(%s, notes) WHERE audit_id = %s",
            (status.value, rows_affected, error_message, notes, audit_id),
        )

    def list_audit(self, table_name: str | None = None, limit: int = 100) -> list[AuditEntry]:
        rows = self._execute(
            "SELECT * FROM migration_audit WHERE (%s::text IS NULL OR table_name = %s) "
            "ORDER BY audit_id DESC LIMIT %s",
            (table_name, table_name, limit),
        )
        entries = []
        for r in rows:
            r["status"] = AuditStatus(r["status"])
            entries.append(AuditEntry(**r))
        return entries

    # ===== REPLICATION STATE SNAPSHOTS =====

    def save_replication_state(self, snapshots: list[ReplicationStateSnapshot]) -> None:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                for s in snapshots:
                    cur.execute(
                        "INSERT INTO replication_state_backup "
                        "(operation_id, kind, name, position, enabled, captured_at) "
                        "VALUES (%s, %s, %s, %s, %s, %s)",
                        (s.operation_id, s.kind, s.name, s.position, s.enabled, s.captured_at),
                    )

    def list_replication_state(self, operation_id: str) -> list[ReplicationStateSnapshot]:
        rows = self._execute(
            "SELECT operation_id, kind, name, position, enabled, captured_at "
            "FROM replication_state_backup WHERE operation_id = %s ORDER BY snapshot_id",
            (operation_id,),
        )
        return [ReplicationStateSnapshot(**r) for r in rows]
