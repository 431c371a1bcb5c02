"""
core/metadata/memory.py
-----------------------
In-process implementation of ``MetadataRepository``.

Records are copied on the way in and on the way out, so callers observe the
same "only what was saved" semantics as with the PostgreSQL store. Used for
dry runs, single-process tooling and the test suite.
"""
from __future__ import annotations

import copy
import threading
from datetime import datetime
from itertools import count

from core.metadata.repository import MetadataRepository, RecordExistsError
from models.records import (
    AuditEntry,
    AuditStatus,
    BatchExecutionRecord,
    CoordinationOperation,
    MigrationJob,
    OperationStatus,
    ReplicationControlEntry,
    ReplicationStateSnapshot,
    utcnow,
)

_FINISHED = (OperationStatus.COMPLETED, OperationStatus.FAILED, OperationStatus.ROLLED_BACK)


class InMemoryMetadataRepository(MetadataRepository):

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._jobs: dict[str, MigrationJob] = {}
        self._batches: list[BatchExecutionRecord] = []
        self._operations: dict[tuple[str, str], CoordinationOperation] = {}
        self._controls: dict[str, ReplicationControlEntry] = {}
        self._audit: dict[int, AuditEntry] = {}
        self._snapshots: list[ReplicationStateSnapshot] = []
        self._audit_ids = count(1)

    # ===== JOBS =====

    def create_job(self, job: MigrationJob) -> MigrationJob:
        with self._lock:
            if any(j.job_name == job.job_name for j in self._jobs.values()):
                raise RecordExistsError(f"Job named {job.job_name!r} already exists")
            self._jobs[job.job_id] = copy.deepcopy(job)
            return job

    def save_job(self, job: MigrationJob) -> None:
        with self._lock:
            job.updated_at = utcnow()
            self._jobs[job.job_id] = copy.deepcopy(job)

    def get_job(self, job_id: str) -> MigrationJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def find_job_by_name(self, job_name: str) -> MigrationJob | None:
        with self._lock:
            for job in self._jobs.values():
                if job.job_name == job_name:
                    return copy.deepcopy(job)
            return None

    def find_active_job(
        self, source_table: str, exclude_job_id: str | None = None
    ) -> MigrationJob | None:
        with self._lock:
            for job in sorted(self._jobs.values(), key=lambda j: j.created_at):
                if (
                    job.source_table == source_table
                    and job.status.is_active
                    and job.job_id != exclude_job_id
                ):
                    return copy.deepcopy(job)
            return None

    def list_jobs(self, operation_id: str | None = None) -> list[MigrationJob]:
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda j: j.created_at)
            return [
                copy.deepcopy(j) for j in jobs
                if operation_id is None or j.operation_id == operation_id
            ]

    # ===== BATCH LOG =====

    def append_batch_record(self, record: BatchExecutionRecord) -> None:
        with self._lock:
            self._batches.append(record)

    def list_batch_records(self, job_id: str) -> list[BatchExecutionRecord]:
        with self._lock:
            return [r for r in self._batches if r.job_id == job_id]

    def last_batch_record(self, job_id: str) -> BatchExecutionRecord | None:
        records = self.list_batch_records(job_id)
        return records[-1] if records else None

    def purge_batch_records(self, older_than: datetime) -> int:
        with self._lock:
            before = len(self._batches)
            self._batches = [r for r in self._batches if r.recorded_at >= older_than]
            return before - len(self._batches)

    # ===== COORDINATION =====

    def create_operation(self, op: CoordinationOperation) -> CoordinationOperation:
        key = (op.operation_id, op.site_name)
        with self._lock:
            if key in self._operations:
                raise RecordExistsError(
                    f"Operation {op.operation_id} already exists for site {op.site_name}"
                )
            self._operations[key] = copy.deepcopy(op)
            return op

    def save_operation(self, op: CoordinationOperation) -> None:
        with self._lock:
            self._operations[(op.operation_id, op.site_name)] = copy.deepcopy(op)

    def get_operation(self, operation_id: str, site_name: str) -> CoordinationOperation | None:
        with self._lock:
            op = self._operations.get((operation_id, site_name))
            return copy.deepcopy(op) if op else None

    def list_operations(self, operation_id: str | None = None) -> list[CoordinationOperation]:
        with self._lock:
            ops = [
                copy.deepcopy(op) for op in self._operations.values()
                if operation_id is None or op.operation_id == operation_id
            ]
        if operation_id is None:
            return sorted(ops, key=lambda o: o.initiated_at, reverse=True)
        return sorted(ops, key=lambda o: o.site_name)

    def purge_operations(self, older_than: datetime) -> int:
        with self._lock:
            doomed = [
                key for key, op in self._operations.items()
                if op.status in _FINISHED and op.initiated_at < older_than
            ]
            for key in doomed:
                del self._operations[key]
            return len(doomed)

    # ===== REPLICATION CONTROL =====

    def get_control(self, table_name: str) -> ReplicationControlEntry | None:
        with self._lock:
            entry = self._controls.get(table_name)
            return copy.deepcopy(entry) if entry else None

    def save_control(self, entry: ReplicationControlEntry) -> None:
        with self._lock:
            entry.updated_at = utcnow()
            self._controls[entry.table_name] = copy.deepcopy(entry)

    def list_controls(self) -> list[ReplicationControlEntry]:
        with self._lock:
            return [copy.deepcopy(e) for _, e in sorted(self._controls.items())]

    # ===== AUDIT =====

    def start_audit(
        self,
        table_name: str,
        operation: str,
        operation_id: str | None = None,
        notes: str | None = None,
    ) -> int:
        with self._lock:
            audit_id = next(self._audit_ids)
            self._audit[audit_id] = AuditEntry(
                table_name=table_name,
                operation=operation,
                audit_id=audit_id,
                operation_id=operation_id,
                notes=notes,
            )
            return audit_id

    def finish_audit(
        self,
        audit_id: int,
        status: AuditStatus,
        rows_affected: int | None = None,
        error_message: str | None = None,
        notes: str | None = None,
    ) -> None:
        with self._lock:
            entry = self._audit[audit_id]
            entry.status = status
            entry.end_time = utcnow()
            if rows_affected is not None:
                entry.rows_affected = rows_affected
            if error_message is not None:
                entry.error_message = error_message
            if notes is not None:
                entry.notes = notes

    def list_audit(self, table_name: str | None = None, limit: int = 100) -> list[AuditEntry]:
        with self._lock:
            entries = [
                copy.deepcopy(e) for _, e in sorted(self._audit.items(), reverse=True)
                if table_name is None or e.table_name == table_name
            ]
        return entries[:limit]

    # ===== REPLICATION STATE SNAPSHOTS =====

    def save_replication_state(self, snapshots: list[ReplicationStateSnapshot]) -> None:
        with self._lock:
            self._snapshots.extend(snapshots)

    def list_replication_state(self, operation_id: str) -> list[ReplicationStateSnapshot]:
        with self._lock:
            return [s for s in self._snapshots if s.operation_id == operation_id]
