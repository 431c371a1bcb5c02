"""
core/service.py
---------------
Operator-facing facade over the engines. The CLI and the HTTP API both call
this class; each method returns a structured result instead of printing.

Design Decisions:
    * One ``MigrationService`` per site process holds the data connection,
      the metadata repository and a single ``ChangeCaptureLayer``, so rules
      installed by a migration stay active for the writers of this process.
    * Engine exceptions from a coordinated migration are converted into a
      ``CoordinationResult`` with ``error`` set; validation errors from the
      other entry points propagate so the caller can map them (the API
      turns them into 400 responses).
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable

from config import CONFIG
from core.batch_engine import BatchEngine, JobProgress
from core.change_capture import (
    CapturingWriter,
    ChangeCaptureLayer,
    FailureStats,
    ForwardingErrorChannel,
)
from core.coordinator import (
    CoordinatedMigrationRequest,
    CoordinationError,
    CoordinationProtocol,
    CoordinationResult,
    CutoverStrategy,
    HttpReadinessSignal,
    MetadataReadinessSignal,
    PartnerReadinessSignal,
    archive_mapping,
    default_migrate_mapping,
    operation_summary,
)
from core.cutoff import SampledCutoffStrategy
from core.cutover import CleanupResult, CutoverEngine, RollbackResult, SwitchReadiness, SwitchResult
from core.database import DatabaseManager
from core.metadata.db import MetadataDB
from core.metadata.repository import MetadataRepository, PostgresMetadataRepository
from core.replication import ReadinessReport, ReplicationStatus, ReplicationTransport
from core.script_generator import (
    generate_comparison_script,
    generate_failover_script,
    generate_partner_script,
    write_script,
)
from core.validation import ConsistencyReport, validate_consistency
from logger import get_logger, set_site
from models.mapping import load_mappings_from_file
from models.records import CoordinationOperation, MigrationJob, OperationStatus, utcnow

log = get_logger(__name__)


@dataclass
class StatusReport:
    operation_id: str
    found: bool
    sites: list[dict[str, Any]] = field(default_factory=list)
    jobs: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class ScriptResult:
    content: str
    path: str | None = None


@dataclass
class LogCleanupResult:
    days_to_keep: int
    batch_records_deleted: int
    operations_deleted: int


class MigrationService:
    """
    Entry points for one site.

    Example::

        service = MigrationService.from_config()
        result = service.start_coordinated_migration(
            "site_a", "orders", is_coordinator=True, wait_for_partner=True
        )
        print(result)
        service.close()
    """

    def __init__(
        self,
        db: DatabaseManager,
        repo: MetadataRepository,
        site_name: str | None = None,
        readiness: PartnerReadinessSignal | None = None,
        sleep: Callable[[float], None] = time.sleep,
        metadata_db: MetadataDB | None = None,
    ) -> None:
        cfg = CONFIG.coordination
        self.db = db
        self.repo = repo
        self.site_name = site_name or cfg.site_name
        set_site(self.site_name)
        self._metadata_db = metadata_db
        self._sleep = sleep
        if readiness is None:
            readiness = (
                HttpReadinessSignal(cfg.partner_api_url) if cfg.partner_api_url
                else MetadataReadinessSignal(repo)
            )
        self.readiness = readiness
        self.errors = ForwardingErrorChannel(repo)
        self.transport = ReplicationTransport(db, repo)
        self.capture = ChangeCaptureLayer(db, self.transport.control, self.errors)
        self.engine = BatchEngine(db, repo, provenance=self.site_name, sleep=sleep)
        self.cutover = CutoverEngine(db, repo)

    @classmethod
    def from_config(cls) -> "MigrationService":
        """Connect both databases using ``CONFIG``."""
        db = DatabaseManager.from_config(CONFIG.db)
        db.connect()
        metadata_db = MetadataDB(CONFIG.metadata)
        metadata_db.connect()
        return cls(db, PostgresMetadataRepository(metadata_db), metadata_db=metadata_db)

    def close(self) -> None:
        self.db.close()
        if self._metadata_db is not None:
            self._metadata_db.close()

    def initialize_metadata(self) -> None:
        """Create the metadata tables (idempotent)."""
        if self._metadata_db is not None:
            self._metadata_db.initialize_schema()

    def metadata_healthy(self) -> bool:
        """Pool health for the PostgreSQL store; an in-process store is always up."""
        return self._metadata_db.health_check() if self._metadata_db is not None else True

    def writer(self) -> CapturingWriter:
        """Write path for application code that must trigger forwarding."""
        return CapturingWriter(self.db, self.capture, self.site_name)

    def protocol(
        self,
        poll_interval: float | None = None,
        poll_attempts: int | None = None,
        sampled_cutoff: bool = False,
    ) -> CoordinationProtocol:
        return CoordinationProtocol(
            self.db,
            self.repo,
            self.capture,
            engine=self.engine,
            cutover=self.cutover,
            transport=self.transport,
            readiness=self.readiness,
            cutoff_strategy=SampledCutoffStrategy() if sampled_cutoff else None,
            poll_interval=poll_interval,
            poll_attempts=poll_attempts,
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------
    # Coordinated migration
    # ------------------------------------------------------------------

    def start_coordinated_migration(
        self,
        site_name: str | None,
        source_table: str,
        target_table: str | None = None,
        archive_table: str | None = None,
        is_coordinator: bool = False,
        wait_for_partner: bool = True,
        operation_id: str | None = None,
        order_column: str = "created_at",
        retention: float | None = None,
        batch_size: int | None = None,
        strategy: CutoverStrategy = CutoverStrategy.CAPTURE_THEN_SWITCH,
        dry_run: bool = False,
        poll_interval: float | None = None,
        poll_attempts: int | None = None,
        sampled_cutoff: bool = False,
    ) -> CoordinationResult:
        """Start or resume an operation; failures come back as ``error``."""
        mapping = load_mappings_from_file(CONFIG.migration.mapping_file).get(source_table)
        if mapping is not None and target_table and mapping.target_table != target_table:
            mapping = None
        request = CoordinatedMigrationRequest(
            site_name=site_name or self.site_name,
            source_table=source_table,
            target_table=target_table or (mapping.target_table if mapping else None),
            archive_table=archive_table,
            is_coordinator=is_coordinator,
            wait_for_partner=wait_for_partner,
            operation_id=operation_id,
            order_column=order_column,
            retention=retention,
            batch_size=batch_size,
            mapping=mapping,
            strategy=strategy,
            dry_run=dry_run,
        )
        protocol = self.protocol(poll_interval, poll_attempts, sampled_cutoff)
        try:
            return protocol.run(request)
        except Exception as exc:
            log.error("Coordinated migration of %s failed: %s", source_table, exc)
            op = None
            if request.operation_id:
                op = self.repo.get_operation(request.operation_id, request.site_name)
            if op is None:
                op = self._latest_operation(request.site_name, source_table)
            return CoordinationResult(
                operation_id=op.operation_id if op else (request.operation_id or ""),
                site_name=request.site_name,
                status=op.status if op else OperationStatus.FAILED,
                phase=op.phase if op else 0,
                is_coordinator=is_coordinator,
                notes=op.notes if op else None,
                error=str(exc),
                initiated_at=op.initiated_at if op else None,
                completed_at=op.completed_at if op else None,
            )

    def check_status(self, operation_id: str) -> StatusReport:
        ops = self.repo.list_operations(operation_id)
        summary = operation_summary(ops, self.repo.list_jobs(operation_id))
        return StatusReport(
            operation_id=operation_id,
            found=bool(ops),
            sites=summary["sites"],
            jobs=summary["jobs"],
        )

    def mark_partner_ready(self, operation_id: str, site_name: str | None = None) -> CoordinationOperation:
        return self.protocol().mark_partner_ready(operation_id, site_name or self.site_name)

    def validate_readiness(self) -> ReadinessReport:
        return self.transport.validate_migration_readiness()

    def replication_status(self) -> ReplicationStatus:
        return self.transport.status()

    def pause_table_replication(self, table_name: str, reason: str = "Table migration in progress") -> bool:
        return self.transport.pause_table_replication(table_name, reason)

    def resume_table_replication(self, table_name: str) -> bool:
        return self.transport.resume_table_replication(table_name)

    # ------------------------------------------------------------------
    # Cutover
    # ------------------------------------------------------------------

    def validate_switch(self, old_table: str, new_table: str, force: bool = False) -> SwitchReadiness:
        return self.cutover.validate_switch(old_table, new_table, force)

    def atomic_switch(
        self, old_table: str, new_table: str, backup_suffix: str | None = None, force: bool = False
    ) -> SwitchResult:
        return self.cutover.atomic_switch(old_table, new_table, backup_suffix, force)

    def rollback(
        self,
        current_table: str,
        backup_table: str,
        force_on_standby: bool = False,
        drop_replaced: bool = True,
    ) -> RollbackResult:
        return self.cutover.rollback_switch(
            current_table, backup_table, force_on_standby, drop_replaced
        )

    def cleanup_old_backups(
        self, pattern: str, older_than_days: int | None = None, dry_run: bool = True
    ) -> CleanupResult:
        days = CONFIG.coordination.backup_retention_days if older_than_days is None else older_than_days
        return self.cutover.cleanup_old_backups(pattern, days, dry_run)

    def validate_consistency(
        self,
        source_table: str,
        target_table: str | None = None,
        archive_table: str | None = None,
        key_column: str = "id",
    ) -> ConsistencyReport:
        columns = self.db.list_columns(source_table)
        if not columns:
            raise CoordinationError(f"Table {source_table!r} does not exist")
        mapping = load_mappings_from_file(CONFIG.migration.mapping_file).get(source_table)
        migrate = mapping or default_migrate_mapping(
            source_table, target_table or f"{source_table}_new", columns, key_column
        )
        archive = archive_mapping(
            source_table, archive_table or f"{source_table}_archive", columns, key_column
        )
        return validate_consistency(self.db, source_table, archive, migrate)

    # ------------------------------------------------------------------
    # Jobs and maintenance
    # ------------------------------------------------------------------

    def list_jobs(self, operation_id: str | None = None) -> list[MigrationJob]:
        return self.repo.list_jobs(operation_id)

    def job_progress(self, job_id: str) -> JobProgress | None:
        return self.engine.get_progress(job_id)

    def pause_job(self, job_id: str) -> bool:
        return self.engine.pause_job(job_id)

    def resume_job(self, job_id: str) -> bool:
        return self.engine.resume_job(job_id)

    def cleanup_batch_logs(self, days_to_keep: int | None = None) -> LogCleanupResult:
        days = CONFIG.coordination.batch_log_retention_days if days_to_keep is None else days_to_keep
        cutoff = utcnow() - timedelta(days=days)
        result = LogCleanupResult(
            days_to_keep=days,
            batch_records_deleted=self.repo.purge_batch_records(cutoff),
            operations_deleted=self.repo.purge_operations(cutoff),
        )
        log.info(
            "Removed %d batch records and %d finished operations older than %d days",
            result.batch_records_deleted, result.operations_deleted, days,
        )
        return result

    def forwarding_failures(self) -> FailureStats:
        return self.errors.stats()

    # ------------------------------------------------------------------
    # Scripts
    # ------------------------------------------------------------------

    def generate_partner_script(
        self,
        operation_id: str,
        source_table: str,
        target_table: str | None = None,
        archive_table: str | None = None,
        save: bool = False,
    ) -> ScriptResult:
        content = generate_partner_script(
            operation_id, source_table, target_table, archive_table,
            coordinator_site=self.site_name,
        )
        return self._script(content, f"partner_{source_table}_{operation_id}.sh", save)

    def generate_failover_script(self, tables: list[str], save: bool = False) -> ScriptResult:
        content = generate_failover_script(tables, self.site_name)
        return self._script(content, f"failover_{self.site_name}.sql", save)

    def generate_comparison_script(self, table: str, save: bool = False) -> ScriptResult:
        return self._script(generate_comparison_script(table), f"compare_{table}.sql", save)

    # ------------------------------------------------------------------

    def _script(self, content: str, filename: str, save: bool) -> ScriptResult:
        if not save:
            return ScriptResult(content=content)
        return ScriptResult(content=content, path=str(write_script(content, filename)))

    def _latest_operation(self, site_name: str, table_name: str) -> CoordinationOperation | None:
        for op in self.repo.list_operations():
            if op.site_name == site_name and op.table_name == table_name:
                return op
        return None
