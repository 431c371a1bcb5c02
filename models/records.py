"""
models/records.py
-----------------
Durable record kinds kept in the metadata store.

Design Decision:
    Plain dataclasses with str-Enum statuses, so the same objects flow through
    the engines, the in-memory repository, the PostgreSQL repository and the
    HTTP layer (which converts them to pydantic models). Records reference
    each other only through job / operation ids.
"""
from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from models.mapping import PredicateDirection, RowPredicate, TableMapping


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Migration jobs
# ---------------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_active(self) -> bool:
        """A job in one of these states owns its source relation."""
        return self in (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED)


class JobOperation(str, Enum):
    ARCHIVE = "ARCHIVE"   # rows older than the cutoff
    MIGRATE = "MIGRATE"   # rows on or after the cutoff


@dataclass
class MigrationJob:
    """
    One bulk-copy task.

    ``last_processed_cursor`` is the exclusive lower bound of the next batch
    and ``max_cursor`` the inclusive upper bound snapshotted at creation.
    The serialised ``TableMapping`` and the cutoff travel with the job so a
    restarted driver resumes with exactly the same row selection.
    """
    job_name: str
    source_table: str
    target_table: str
    operation: JobOperation
    batch_size: int
    job_id: str = field(default_factory=new_id)
    operation_id: str | None = None
    mapping: dict[str, Any] = field(default_factory=dict)
    cutoff_column: str | None = None
    cutoff_value: Any = None
    cutoff_direction: str | None = None
    total_rows: int = 0
    processed_rows: int = 0
    current_batch: int = 0
    last_processed_cursor: int | None = None
    max_cursor: int | None = None
    status: JobStatus = JobStatus.PENDING
    start_time: datetime | None = None
    end_time: datetime | None = None
    error_detail: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def predicate(self) -> RowPredicate | None:
        if self.cutoff_column is None or self.cutoff_direction is None:
            return None
        return RowPredicate(
            self.cutoff_column, self.cutoff_value, PredicateDirection(self.cutoff_direction)
        )

    @predicate.setter
    def predicate(self, value: RowPredicate | None) -> None:
        if value is None:
            self.cutoff_column = self.cutoff_value = self.cutoff_direction = None
        else:
            self.cutoff_column = value.column
            self.cutoff_value = value.boundary
            self.cutoff_direction = value.direction.value

    def table_mapping(self) -> TableMapping:
        return TableMapping.from_dict(self.source_table, self.mapping)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["operation"] = self.operation.value
        return data


class BatchOutcome(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class BatchExecutionRecord:
    """Append-only log row describing one executed batch."""
    job_id: str
    batch_number: int
    cursor_start: int | None
    cursor_end: int | None
    rows_affected: int
    duration_seconds: float
    outcome: BatchOutcome
    error_text: str | None = None
    recorded_at: datetime = field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Coordination
# ---------------------------------------------------------------------------

class OperationStatus(str, Enum):
    """
    Coordinated migration states.

        INITIATED -> PREPARING -> PREPARED -> SYNC_STOPPING -> SYNC_STOPPED
            -> EXECUTING -> MIGRATION_COMPLETED -> SYNC_RESUMED -> COMPLETED

    FAILED is reachable from every non-terminal state; ROLLED_BACK only
    from FAILED.
    """
    INITIATED = "INITIATED"
    PREPARING = "PREPARING"
    PREPARED = "PREPARED"
    SYNC_STOPPING = "SYNC_STOPPING"
    SYNC_STOPPED = "SYNC_STOPPED"
    EXECUTING = "EXECUTING"
    MIGRATION_COMPLETED = "MIGRATION_COMPLETED"
    SYNC_RESUMED = "SYNC_RESUMED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.COMPLETED, OperationStatus.ROLLED_BACK)

    @property
    def phase(self) -> int:
        """Phase number reported alongside the status (0 for FAILED/ROLLED_BACK)."""
        return _PHASES.get(self, 0)

    def can_transition_to(self, target: "OperationStatus") -> bool:
        if self.is_terminal:
            return False
        if self is OperationStatus.FAILED:
            return target is OperationStatus.ROLLED_BACK
        if target is OperationStatus.FAILED:
            return True
        order = _FORWARD_ORDER
        return target in order and order.index(target) == order.index(self) + 1


_FORWARD_ORDER = [
    OperationStatus.INITIATED,
    OperationStatus.PREPARING,
    OperationStatus.PREPARED,
    OperationStatus.SYNC_STOPPING,
    OperationStatus.SYNC_STOPPED,
    OperationStatus.EXECUTING,
    OperationStatus.MIGRATION_COMPLETED,
    OperationStatus.SYNC_RESUMED,
    OperationStatus.COMPLETED,
]

_PHASES = {
    OperationStatus.INITIATED: 1,
    OperationStatus.PREPARING: 1,
    OperationStatus.PREPARED: 1,
    OperationStatus.SYNC_STOPPING: 2,
    OperationStatus.SYNC_STOPPED: 2,
    OperationStatus.EXECUTING: 3,
    OperationStatus.MIGRATION_COMPLETED: 3,
    OperationStatus.SYNC_RESUMED: 4,
    OperationStatus.COMPLETED: 5,
}


def forward_index(status: OperationStatus) -> int:
    """Position in the forward chain, -1 for FAILED / ROLLED_BACK."""
    try:
        return _FORWARD_ORDER.index(status)
    except ValueError:
        return -1


@dataclass
class CoordinationOperation:
    """
    This site's view of one cross-site migration attempt.

    Each site holds its own row for the shared ``operation_id``.
    """
    operation_id: str
    site_name: str
    table_name: str
    is_coordinator: bool
    status: OperationStatus = OperationStatus.INITIATED
    phase: int = 1
    partner_ready: bool = False
    initiated_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    notes: str | None = None

    def add_note(self, text: str) -> None:
        self.notes = f"{self.notes}; {text}" if self.notes else text

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


# ---------------------------------------------------------------------------
# Replication control
# ---------------------------------------------------------------------------

@dataclass
class ReplicationControlEntry:
    """Per-table forwarding switch. A missing entry means enabled."""
    table_name: str
    replication_enabled: bool = True
    last_sync_time: datetime | None = None
    maintenance_window_start: datetime | None = None
    maintenance_window_end: datetime | None = None
    notes: str | None = None
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ReplicationStateSnapshot:
    """One slot or subscription position captured before sync is paused."""
    operation_id: str
    kind: str            # "slot" | "subscription"
    name: str
    position: str | None
    enabled: bool | None = None
    captured_at: datetime = field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditStatus(str, Enum):
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class AuditEntry:
    table_name: str
    operation: str
    status: AuditStatus = AuditStatus.STARTED
    audit_id: int | None = None
    operation_id: str | None = None
    rows_affected: int | None = None
    start_time: datetime = field(default_factory=utcnow)
    end_time: datetime | None = None
    error_message: str | None = None
    notes: str | None = None
