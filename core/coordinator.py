"""
core/coordinator.py
-------------------
Phased cross-site handshake that drives one coordinated migration on this
site:

    INITIATED → PREPARING → PREPARED          create new/archive tables,
                                               compute cutoff, snapshot
                                               replication positions
    (coordinator) wait for partner readiness  bounded poll, before any
                                               existing relation is altered
    SYNC_STOPPING → SYNC_STOPPED              disable subscriptions, emit
                                               pause marker, compare positions
    EXECUTING → MIGRATION_COMPLETED           archive job, capture rules,
                                               migrate job, optional switch
    SYNC_RESUMED → COMPLETED                  re-enable subscriptions, emit
                                               resume marker

Design Decisions:
    * Each site runs its own ``CoordinationProtocol`` against its own
      ``CoordinationOperation`` row. Agreement with the partner comes from a
      pluggable readiness signal, never from shared locks.
    * Every transition is validated against ``OperationStatus`` and
      persisted before the next phase starts, so re-invoking with the same
      operation id continues from the last completed phase. Jobs are reused
      by name, so a resumed EXECUTING phase continues from the checkpoints.
    * Whatever fails, the failure path first tries to re-enable the
      subscriptions this operation disabled, isolated from the original
      error, then re-raises that original error.
      Unfinished jobs of a failed operation are marked FAILED so a new
      operation can claim the relation.
    * A job that stops PAUSED (operator pause or the max-batch safety valve)
      pauses the operation instead: sync is re-enabled, the operation stays
      EXECUTING, and re-invoking it stops sync again and continues from the
      job checkpoints.
    * Waiting is done with injected ``sleep`` so the poll is testable.
"""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Protocol

import requests

from config import CONFIG
from core.batch_engine import BatchEngine, BatchRunResult
from core.change_capture import ChangeCaptureLayer, ChangeCaptureRule, ForwardingMode
from core.cutoff import CutoffResult, CutoffStrategy, calculate_cutoff
from core.cutover import CutoverEngine
from core.database import DatabaseManager
from core.metadata.repository import MetadataRepository
from core.replication import ReplicationTransport
from core.validation import validate_consistency
from logger import get_logger, log_event
from models.mapping import PredicateDirection, RowPredicate, TableMapping
from models.records import (
    CoordinationOperation,
    JobOperation,
    JobStatus,
    MigrationJob,
    OperationStatus,
    forward_index,
    utcnow,
)

log = get_logger(__name__)

NEW_TABLE_COLUMNS = {
    "original_id": "BIGINT UNIQUE",
    "replication_source": "TEXT",
    "is_migrated": "BOOLEAN DEFAULT FALSE",
}
ARCHIVE_TABLE_COLUMNS = {
    "archived_at": "TIMESTAMPTZ DEFAULT now()",
    "archive_reason": "TEXT",
}
ARCHIVE_REASON = "COORDINATED_ARCHIVE"


class CoordinationError(Exception):
    """Raised when a coordinated migration cannot proceed."""


class PartnerTimeoutError(CoordinationError):
    """Raised when the partner never signals readiness within the allowed poll attempts."""


class JobPausedError(CoordinationError):
    """A job of the EXECUTING phase stopped PAUSED; the operation can be continued."""

    def __init__(self, job_name: str, reason: str) -> None:
        if reason == "max_batches":
            action = "re-invoke the operation to continue"
        else:
            action = "resume the job, then re-invoke the operation"
        super().__init__(f"Job {job_name} stopped PAUSED ({reason}); {action}")
        self.job_name = job_name
        self.reason = reason


class CutoverStrategy(str, Enum):
    CAPTURE_THEN_SWITCH = "CAPTURE_THEN_SWITCH"    # forward legacy → new; operator switches later
    SWITCH_THEN_CAPTURE = "SWITCH_THEN_CAPTURE"    # switch while paused; forward new → backup


# ---------------------------------------------------------------------------
# Request / result types
# ---------------------------------------------------------------------------

@dataclass
class CoordinatedMigrationRequest:
    site_name: str
    source_table: str
    target_table: str | None = None
    archive_table: str | None = None
    is_coordinator: bool = False
    wait_for_partner: bool = True
    operation_id: str | None = None
    order_column: str = "created_at"
    key_column: str = "id"
    retention: float | None = None
    batch_size: int | None = None
    mapping: TableMapping | None = None
    strategy: CutoverStrategy = CutoverStrategy.CAPTURE_THEN_SWITCH
    forwarding_mode: ForwardingMode = ForwardingMode.STANDARD
    dry_run: bool = False

    def __post_init__(self) -> None:
        self.target_table = self.target_table or f"{self.source_table}_new"
        self.archive_table = self.archive_table or f"{self.source_table}_archive"
        if self.retention is None:
            self.retention = CONFIG.migration.retention


@dataclass
class MigrationPlan:
    """What a dry run would do."""
    source_table: str
    target_table: str
    archive_table: str
    total_rows: int
    rows_to_archive: int
    rows_to_migrate: int
    cutoff: CutoffResult
    target_exists: bool
    archive_exists: bool
    strategy: CutoverStrategy


@dataclass
class CoordinationResult:
    operation_id: str
    site_name: str
    status: OperationStatus
    phase: int
    is_coordinator: bool
    archived_rows: int = 0
    migrated_rows: int = 0
    backup_table: str | None = None
    consistent: bool | None = None
    notes: str | None = None
    error: str | None = None
    initiated_at: datetime | None = None
    completed_at: datetime | None = None
    plan: MigrationPlan | None = None

    @property
    def success(self) -> bool:
        return self.status is OperationStatus.COMPLETED or (
            self.plan is not None and self.error is None
        )

    def __str__(self) -> str:
        text = f"[{self.status.value}] operation {self.operation_id} on {self.site_name}"
        if self.error:
            text += f": {self.error}"
        return text


# ---------------------------------------------------------------------------
# Partner readiness
# ---------------------------------------------------------------------------

class PartnerReadinessSignal(Protocol):
    def is_ready(self, op: CoordinationOperation) -> bool: ...


_READY_FROM = forward_index(OperationStatus.PREPARED)


class MetadataReadinessSignal:
    """
    Partner is ready when this site's row has ``partner_ready`` set (by an
    operator or the API) or the partner's own row has reached PREPARED.
    """

    def __init__(self, repo: MetadataRepository, partner_site: str | None = None) -> None:
        self._repo = repo
        self._partner_site = partner_site or CONFIG.coordination.partner_site_name

    def is_ready(self, op: CoordinationOperation) -> bool:
        own = self._repo.get_operation(op.operation_id, op.site_name)
        if own is not None and own.partner_ready:
            return True
        partner = self._repo.get_operation(op.operation_id, self._partner_site)
        return partner is not None and forward_index(partner.status) >= _READY_FROM


class HttpReadinessSignal:
    """Asks the partner site's API for its view of the operation."""

    def __init__(
        self,
        base_url: str,
        partner_site: str | None = None,
        timeout: float = 5.0,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._partner_site = partner_site or CONFIG.coordination.partner_site_name
        self._timeout = timeout
        self._session = session or requests.Session()

    def is_ready(self, op: CoordinationOperation) -> bool:
        try:
            resp = self._session.get(
                f"{self._base_url}/operations/{op.operation_id}",
                params={"site": self._partner_site},
                timeout=self._timeout,
            )
            if resp.status_code == 404:
                return False
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            log.warning("Partner readiness check failed: %s", exc)
            return False
        for entry in data.get("sites", [data]):
            if entry.get("site_name") != self._partner_site:
                continue
            try:
                status = OperationStatus(entry.get("status"))
            except ValueError:
                return False
            return bool(entry.get("partner_ready")) or forward_index(status) >= _READY_FROM
        return False


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class CoordinationProtocol:
    """
    Drives one site through a coordinated migration.

    Args:
        db:         Data-side connection.
        repo:       Metadata repository.
        engine:     Batch engine (defaults to one on *db*/*repo*).
        cutover:    Cutover engine.
        capture:    Change-capture layer rules are installed into.
        transport:  Replication control surface.
        readiness:  Partner readiness signal used by the coordinator.
    """

    def __init__(
        self,
        db: DatabaseManager,
        repo: MetadataRepository,
        capture: ChangeCaptureLayer,
        engine: BatchEngine | None = None,
        cutover: CutoverEngine | None = None,
        transport: ReplicationTransport | None = None,
        readiness: PartnerReadinessSignal | None = None,
        cutoff_strategy: CutoffStrategy | None = None,
        poll_interval: float | None = None,
        poll_attempts: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        cfg = CONFIG.coordination
        self._db = db
        self._repo = repo
        self._capture = capture
        self._engine = engine or BatchEngine(db, repo)
        self._cutover = cutover or CutoverEngine(db, repo)
        self._transport = transport or ReplicationTransport(db, repo)
        self._readiness = readiness or MetadataReadinessSignal(repo)
        self._cutoff_strategy = cutoff_strategy
        self._poll_interval = cfg.poll_interval_seconds if poll_interval is None else poll_interval
        self._poll_attempts = cfg.poll_attempts if poll_attempts is None else poll_attempts
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(self, request: CoordinatedMigrationRequest) -> CoordinationResult:
        """
        Start, or resume, the operation described by *request*.

        Raises:
            PartnerTimeoutError: Partner never became ready (op FAILED).
            CoordinationError:   Other protocol failures.
            Exception:           Any error from the engines, re-raised after
                                 the recovery attempt.
        """
        if request.dry_run:
            return self.plan(request)

        op = self._load_or_create(request)
        result = CoordinationResult(
            operation_id=op.operation_id,
            site_name=op.site_name,
            status=op.status,
            phase=op.phase,
            is_coordinator=op.is_coordinator,
            initiated_at=op.initiated_at,
        )
        if op.status is OperationStatus.COMPLETED:
            log.info("Operation %s already completed on %s", op.operation_id, op.site_name)
            return self._finish_result(result, op, request)
        if op.status in (OperationStatus.FAILED, OperationStatus.ROLLED_BACK):
            raise CoordinationError(
                f"Operation {op.operation_id} ended {op.status.value}; start a new operation"
            )

        try:
            self._drive(op, request, result)
        except JobPausedError as exc:
            try:
                self._pause(op, request, exc)
            except Exception as pause_exc:
                self._recover(op, pause_exc)
                raise
            result.error = str(exc)
        except Exception as exc:
            self._recover(op, exc)
            raise
        return self._finish_result(result, op, request)

    def plan(self, request: CoordinatedMigrationRequest) -> CoordinationResult:
        """Dry run: compute the cutoff and row split without changing anything."""
        if not self._db.table_exists(request.source_table):
            raise CoordinationError(f"Table {request.source_table!r} does not exist")
        cutoff = calculate_cutoff(
            self._db, request.source_table, request.order_column,
            request.retention, self._cutoff_strategy,
        )
        predicate = cutoff.archive_predicate()
        to_archive = (
            cutoff.total_rows if predicate is None
            else self._db.count_range(request.source_table, request.key_column, predicate)
        )
        plan = MigrationPlan(
            source_table=request.source_table,
            target_table=request.target_table,
            archive_table=request.archive_table,
            total_rows=cutoff.total_rows,
            rows_to_archive=to_archive,
            rows_to_migrate=cutoff.total_rows - to_archive,
            cutoff=cutoff,
            target_exists=self._db.table_exists(request.target_table),
            archive_exists=self._db.table_exists(request.archive_table),
            strategy=request.strategy,
        )
        log.info(
            "Dry run for %s: archive %d, migrate %d of %d rows",
            request.source_table, plan.rows_to_archive, plan.rows_to_migrate, plan.total_rows,
        )
        return CoordinationResult(
            operation_id=request.operation_id or "dry-run",
            site_name=request.site_name,
            status=OperationStatus.INITIATED,
            phase=0,
            is_coordinator=request.is_coordinator,
            plan=plan,
        )

    def check_status(self, operation_id: str) -> list[CoordinationOperation]:
        return self._repo.list_operations(operation_id)

    def mark_partner_ready(self, operation_id: str, site_name: str) -> CoordinationOperation:
        op = self._repo.get_operation(operation_id, site_name)
        if op is None:
            raise CoordinationError(f"Operation {operation_id} not found for site {site_name}")
        op.partner_ready = True
        op.add_note("partner marked ready")
        self._repo.save_operation(op)
        log.info("Partner marked ready for operation %s on %s", operation_id, site_name)
        return op

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _drive(
        self,
        op: CoordinationOperation,
        request: CoordinatedMigrationRequest,
        result: CoordinationResult,
    ) -> None:
        if self._before(op, OperationStatus.PREPARED):
            if op.status is OperationStatus.INITIATED:
                self._advance(op, OperationStatus.PREPARING)
            self._prepare(op, request)
            self._advance(op, OperationStatus.PREPARED)

        if self._before(op, OperationStatus.SYNC_STOPPED):
            if op.is_coordinator and request.wait_for_partner and not op.partner_ready:
                self._wait_for_partner(op)
            if op.status is OperationStatus.PREPARED:
                self._advance(op, OperationStatus.SYNC_STOPPING)
            self._stop_sync(op, request)
            self._advance(op, OperationStatus.SYNC_STOPPED)

        if self._before(op, OperationStatus.MIGRATION_COMPLETED):
            if op.status is OperationStatus.SYNC_STOPPED:
                self._advance(op, OperationStatus.EXECUTING)
            else:
                self._restop_sync(op, request)
            self._execute(op, request, result)
            self._advance(op, OperationStatus.MIGRATION_COMPLETED)

        if self._before(op, OperationStatus.SYNC_RESUMED):
            self._resume_sync(op, request)
            self._advance(op, OperationStatus.SYNC_RESUMED)

        if self._before(op, OperationStatus.COMPLETED):
            op.completed_at = utcnow()
            self._advance(op, OperationStatus.COMPLETED)

    def _prepare(self, op: CoordinationOperation, request: CoordinatedMigrationRequest) -> None:
        source = request.source_table
        if not self._db.table_exists(source):
            raise CoordinationError(f"Table {source!r} does not exist")
        migrate = self._migrate_mapping(request)
        with self._db.transaction():
            if not self._db.table_exists(migrate.target_table):
                self._db.create_table_like(migrate.target_table, source, NEW_TABLE_COLUMNS)
            self._db.ensure_unique(migrate.target_table, migrate.target_key_column)
            self._db.create_table_like(request.archive_table, source, ARCHIVE_TABLE_COLUMNS)

        cutoff = calculate_cutoff(
            self._db, source, request.order_column, request.retention, self._cutoff_strategy
        )
        archive = self._archive_mapping(request)
        predicate = cutoff.archive_predicate()
        max_cursor = None
        if predicate is None:
            max_cursor = self._db.max_key(source, archive.key_column)
        if predicate is not None or max_cursor is not None:
            self._engine.create_job(
                self._job_name(op, "archive"), archive, JobOperation.ARCHIVE,
                batch_size=request.batch_size, predicate=predicate,
                max_cursor=max_cursor, operation_id=op.operation_id,
            )
        else:
            op.add_note(f"{source} is empty; nothing to archive")

        self._transport.snapshot_positions(op.operation_id)
        op.add_note(
            f"cutoff {cutoff.column}={cutoff.boundary!r}: keep {cutoff.target_rows} "
            f"of {cutoff.total_rows} rows"
        )
        self._repo.save_operation(op)

    def _wait_for_partner(self, op: CoordinationOperation) -> None:
        """Poll the readiness signal; at most ``attempts × interval`` seconds."""
        log.info(
            "Waiting for partner on %s (%d × %.1fs)",
            op.operation_id, self._poll_attempts, self._poll_interval,
        )
        for attempt in range(1, self._poll_attempts + 1):
            if self._readiness.is_ready(op):
                op.partner_ready = True
                op.add_note(f"partner ready after {attempt} check(s)")
                self._repo.save_operation(op)
                log.info("Partner ready for %s", op.operation_id)
                return
            log.debug("Partner not ready (attempt %d/%d)", attempt, self._poll_attempts)
            self._sleep(self._poll_interval)
        waited = self._poll_attempts * self._poll_interval
        raise PartnerTimeoutError(
            f"Timeout waiting for partner site to be ready after {waited:.0f}s "
            f"({self._poll_attempts} attempts)"
        )

    def _stop_sync(self, op: CoordinationOperation, request: CoordinatedMigrationRequest) -> None:
        disabled = self._transport.disable_subscriptions()
        self._transport.emit_marker(op.operation_id, OperationStatus.SYNC_STOPPED.value, request.source_table)
        comparison = self._transport.compare_positions(op.operation_id)
        if not comparison.ok:
            raise CoordinationError(
                f"Replication positions inconsistent after pause ({comparison.describe()})"
            )
        rows = self._db.count_rows(request.source_table)
        op.add_note(
            f"sync stopped ({len(disabled)} subscription(s) disabled); "
            f"{request.source_table} had {rows} rows"
        )
        self._repo.save_operation(op)

    def _execute(
        self,
        op: CoordinationOperation,
        request: CoordinatedMigrationRequest,
        result: CoordinationResult,
    ) -> None:
        archive_job = self._repo.find_job_by_name(self._job_name(op, "archive"))
        if archive_job is not None:
            self._engine.continue_after_safety_stop(archive_job.job_id)
            self._require_completed(self._engine.run_batch_job(archive_job))
            result.archived_rows = self._job_rows(archive_job)

        migrate = self._migrate_mapping(request)
        migrate_predicate = _migrate_predicate(archive_job)
        if migrate_predicate is not None:
            # Install before copying so writes after the snapshot are forwarded.
            self._capture.register(ChangeCaptureRule(
                migrate, op.site_name, mode=request.forwarding_mode, row_filter=migrate_predicate,
            ))
            job = self._engine.create_job(
                self._job_name(op, "migrate"), migrate, JobOperation.MIGRATE,
                batch_size=request.batch_size, predicate=migrate_predicate,
                operation_id=op.operation_id,
            )
            self._engine.continue_after_safety_stop(job.job_id)
            self._require_completed(self._engine.run_batch_job(job))
            result.migrated_rows = self._job_rows(job)

        report = validate_consistency(
            self._db, request.source_table, self._archive_mapping(request), migrate
        )
        result.consistent = report.consistent
        op.add_note(
            "consistency "
            + ", ".join(f"{c.name}={c.status}" for c in report.checks)
        )

        if request.strategy is CutoverStrategy.SWITCH_THEN_CAPTURE:
            switch = self._cutover.atomic_switch(request.source_table, migrate.target_table)
            switch.raise_for_status()
            result.backup_table = switch.backup_name
            self._capture.unregister(request.source_table, migrate.target_table)
            self._capture.register(ChangeCaptureRule(
                migrate.reversed(request.source_table, switch.backup_name),
                op.site_name,
                mode=request.forwarding_mode,
            ))
            op.add_note(f"switched; legacy data kept in {switch.backup_name}")
        self._repo.save_operation(op)

    def _resume_sync(self, op: CoordinationOperation, request: CoordinatedMigrationRequest) -> None:
        enabled = self._transport.enable_subscriptions(self._paused_subscriptions(op))
        self._transport.emit_marker(op.operation_id, OperationStatus.SYNC_RESUMED.value, request.source_table)
        op.add_note(f"sync resumed ({len(enabled)} subscription(s) enabled)")
        self._repo.save_operation(op)

    def _restop_sync(self, op: CoordinationOperation, request: CoordinatedMigrationRequest) -> None:
        """Continuing an EXECUTING operation: stop whatever a pause re-enabled."""
        disabled = self._transport.disable_subscriptions()
        if not disabled:
            return
        self._transport.emit_marker(op.operation_id, OperationStatus.SYNC_STOPPED.value, request.source_table)
        comparison = self._transport.compare_positions(op.operation_id)
        if not comparison.ok:
            raise CoordinationError(
                f"Replication positions inconsistent after pause ({comparison.describe()})"
            )
        op.add_note(f"sync stopped again ({len(disabled)} subscription(s) disabled)")
        self._repo.save_operation(op)

    def _pause(
        self,
        op: CoordinationOperation,
        request: CoordinatedMigrationRequest,
        exc: JobPausedError,
    ) -> None:
        enabled = self._transport.enable_subscriptions(self._paused_subscriptions(op))
        self._transport.emit_marker(op.operation_id, "PAUSED", request.source_table)
        op.add_note(f"paused: {exc}; sync resumed ({len(enabled)} subscription(s) enabled)")
        self._repo.save_operation(op)
        log_event(log, logging.WARNING, "operation_paused",
                  operation_id=op.operation_id, site=op.site_name,
                  job=exc.job_name, reason=exc.reason)

    # ------------------------------------------------------------------
    # Failure path
    # ------------------------------------------------------------------

    def _recover(self, op: CoordinationOperation, exc: BaseException) -> None:
        sync_touched = forward_index(op.status) >= forward_index(OperationStatus.SYNC_STOPPING)
        if op.status is not OperationStatus.FAILED:
            op.status = OperationStatus.FAILED
            op.phase = OperationStatus.FAILED.phase
        op.add_note(f"failed: {exc}")
        log_event(log, logging.ERROR, "operation_failed",
                  operation_id=op.operation_id, site=op.site_name, error=str(exc))
        self._save_quietly(op)
        try:
            self._engine.abandon_jobs(op.operation_id, f"operation {op.operation_id} failed: {exc}")
        except Exception as job_exc:
            log.error("Could not release jobs of operation %s: %s", op.operation_id, job_exc)

        if not sync_touched:
            return
        try:
            enabled = self._transport.enable_subscriptions(self._paused_subscriptions(op))
            self._transport.emit_marker(op.operation_id, "RESUMED_AFTER_FAILURE", op.table_name)
        except Exception as cleanup_exc:
            log.critical(
                "REPLICATION MAY STILL BE DISABLED for operation %s: %s",
                op.operation_id, cleanup_exc,
            )
            op.add_note(f"re-enable failed: {cleanup_exc}; replication may still be disabled")
            self._save_quietly(op)
            return
        op.add_note(f"replication re-enabled after failure ({len(enabled)} subscription(s))")
        op.status = OperationStatus.ROLLED_BACK
        op.completed_at = utcnow()
        log_event(log, logging.WARNING, "phase_transition",
                  operation_id=op.operation_id, site=op.site_name, status=op.status.value)
        self._save_quietly(op)

    def _save_quietly(self, op: CoordinationOperation) -> None:
        try:
            self._repo.save_operation(op)
        except Exception as exc:
            log.error("Could not persist state of operation %s: %s", op.operation_id, exc)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_or_create(self, request: CoordinatedMigrationRequest) -> CoordinationOperation:
        op_id = request.operation_id or str(uuid.uuid4())
        op = self._repo.get_operation(op_id, request.site_name)
        if op is not None:
            if op.table_name != request.source_table:
                raise CoordinationError(
                    f"Operation {op_id} belongs to table {op.table_name!r}"
                )
            log.info("Resuming operation %s at %s", op_id, op.status.value)
            return op
        op = CoordinationOperation(
            operation_id=op_id,
            site_name=request.site_name,
            table_name=request.source_table,
            is_coordinator=request.is_coordinator,
        )
        self._repo.create_operation(op)
        log_event(log, logging.INFO, "operation_initiated",
                  operation_id=op_id, site=op.site_name, table=op.table_name,
                  coordinator=op.is_coordinator)
        return op

    def _advance(self, op: CoordinationOperation, status: OperationStatus) -> None:
        if not op.status.can_transition_to(status):
            raise CoordinationError(
                f"Illegal transition {op.status.value} → {status.value} for {op.operation_id}"
            )
        op.status = status
        op.phase = status.phase
        self._repo.save_operation(op)
        log_event(log, logging.INFO, "phase_transition",
                  operation_id=op.operation_id, site=op.site_name,
                  status=status.value, phase=op.phase)

    @staticmethod
    def _before(op: CoordinationOperation, status: OperationStatus) -> bool:
        return forward_index(op.status) < forward_index(status)

    def _paused_subscriptions(self, op: CoordinationOperation) -> list[str]:
        return [
            s.name for s in self._repo.list_replication_state(op.operation_id)
            if s.kind == "subscription" and s.enabled
        ]

    def _migrate_mapping(self, request: CoordinatedMigrationRequest) -> TableMapping:
        if request.mapping is not None:
            return request.mapping
        return default_migrate_mapping(
            request.source_table, request.target_table,
            self._db.list_columns(request.source_table), request.key_column,
        )

    def _archive_mapping(self, request: CoordinatedMigrationRequest) -> TableMapping:
        return archive_mapping(
            request.source_table, request.archive_table,
            self._db.list_columns(request.source_table), request.key_column,
        )

    @staticmethod
    def _job_name(op: CoordinationOperation, kind: str) -> str:
        return f"{kind}_{op.table_name}_{op.site_name}_{op.operation_id}"

    def _job_rows(self, job: MigrationJob) -> int:
        stored = self._repo.get_job(job.job_id)
        return stored.processed_rows if stored else job.processed_rows

    @staticmethod
    def _require_completed(run: BatchRunResult) -> None:
        if run.status is JobStatus.PAUSED:
            raise JobPausedError(run.job_name, run.stopped_reason)
        if run.status is not JobStatus.COMPLETED:
            raise CoordinationError(
                f"Job {run.job_name} stopped before completion ({run.stopped_reason})"
            )

    def _finish_result(
        self,
        result: CoordinationResult,
        op: CoordinationOperation,
        request: CoordinatedMigrationRequest,
    ) -> CoordinationResult:
        result.status = op.status
        result.phase = op.phase
        result.notes = op.notes
        result.completed_at = op.completed_at
        if not result.archived_rows and not result.migrated_rows:
            for job in self._repo.list_jobs(op.operation_id):
                if job.operation is JobOperation.ARCHIVE:
                    result.archived_rows = job.processed_rows
                elif job.operation is JobOperation.MIGRATE:
                    result.migrated_rows = job.processed_rows
        return result


def _migrate_predicate(archive_job: MigrationJob | None) -> RowPredicate | None:
    """The complement of the archive job's cutoff, so both use one boundary."""
    if archive_job is None or archive_job.predicate is None:
        return None
    archived = archive_job.predicate
    return RowPredicate(archived.column, archived.boundary, PredicateDirection.ON_OR_AFTER)


def operation_summary(ops: list[CoordinationOperation], jobs: list[MigrationJob]) -> dict[str, Any]:
    """Status view combining each site's row and the jobs of the operation."""
    return {
        "sites": [op.to_dict() for op in ops],
        "jobs": [
            {
                "job_id": j.job_id,
                "job_name": j.job_name,
                "operation": j.operation.value,
                "status": j.status.value,
                "processed_rows": j.processed_rows,
                "total_rows": j.total_rows,
                "last_processed_cursor": j.last_processed_cursor,
            }
            for j in jobs
        ],
    }


def default_migrate_mapping(
    source_table: str, target_table: str, columns: list[str], key_column: str = "id"
) -> TableMapping:
    """
    Same-named columns, the source key stored in ``original_id``, batch rows
    tagged ``is_migrated`` and the origin site in ``replication_source``.

    The new table is created ``LIKE`` the source, so it inherits the key
    column with its primary key and default. The key is written through
    unchanged: a key without a default would otherwise be NULL, a serial one
    would draw from the live table's sequence, and referencing foreign keys
    stay valid after the switch.
    """
    return TableMapping(
        source_table=source_table,
        target_table=target_table,
        key_column=key_column,
        target_key_column="original_id",
        column_mappings={c: c for c in columns},
        batch_tag={"is_migrated": True},
        provenance_column="replication_source",
    )


def archive_mapping(
    source_table: str, archive_table: str, columns: list[str], key_column: str = "id"
) -> TableMapping:
    return TableMapping.identity(
        source_table, archive_table, columns,
        key_column=key_column,
        batch_tag={"archive_reason": ARCHIVE_REASON},
    )
