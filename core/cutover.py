"""
core/cutover.py
---------------
Rename-based swap of a legacy table and its replacement, with foreign-key
rewiring, rollback and backup housekeeping.

Switch sequence (one transaction):
    1. rename <old> → <old>_backup_<timestamp>
    2. rename <new> → <old>
    3. re-point every foreign key that referenced <old> (and now follows the
       backup) at the table that holds the original name again

Design Decisions:
    * PostgreSQL DDL is transactional, so a failure in any step normally
      leaves the catalog untouched. The engine still inspects the catalog
      afterwards and, if renames were left behind, unwinds them by hand.
      Every unwind step checks existence first, so "already renamed" and
      "missing" never compound the failure, and nothing is ever dropped.
    * The ``SwitchOperation`` step counter is the only state needed to know
      how far the manual unwind must go.
    * Outcomes are structured: the result says whether rollback succeeded,
      partially succeeded or could not be verified; the last two set
      ``manual_intervention_required``.
"""
from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from core.database import DatabaseManager, ForeignKeyRef
from core.metadata.repository import MetadataRepository
from logger import get_logger
from models.records import AuditStatus
from shared.utils import backup_timestamp

log = get_logger(__name__)

MAX_IDENTIFIER_LENGTH = 63
BACKUP_NAME_RE = re.compile(r"^(?P<base>.+)_backup_(?P<stamp>\d{8}_\d{6})$")


class CutoverError(Exception):
    """Raised by ``SwitchResult.raise_for_status`` for a failed switch."""

    def __init__(self, result: "SwitchResult") -> None:
        super().__init__(result.error or f"Switch of {result.old_table} failed")
        self.result = result


class SwitchStatus(str, Enum):
    SUCCESS = "SUCCESS"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    FAILED = "FAILED"


class RollbackOutcome(str, Enum):
    NOT_NEEDED = "NOT_NEEDED"
    NOT_ATTEMPTED = "NOT_ATTEMPTED"
    SUCCEEDED = "SUCCEEDED"
    PARTIAL = "PARTIAL"
    UNVERIFIED = "UNVERIFIED"


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass
class SwitchOperation:
    """Working state of one ``atomic_switch`` call."""
    old_name: str
    new_name: str
    backup_name: str
    temp_name: str
    step: int = 0
    dependent_fks: list[ForeignKeyRef] = field(default_factory=list)
    repointed_fks: list[ForeignKeyRef] = field(default_factory=list)

    STEP_NAMES = {
        1: "rename old table to backup",
        2: "rename new table to original name",
        3: "re-point dependent foreign keys",
    }


@dataclass
class SwitchReadiness:
    old_table: str
    new_table: str
    old_exists: bool = False
    new_exists: bool = False
    old_rows: int | None = None
    new_rows: int | None = None
    dependent_fks: list[ForeignKeyRef] = field(default_factory=list)
    is_primary_site: bool | None = None
    forced: bool = False
    problems: list[str] = field(default_factory=list)

    @property
    def ready(self) -> bool:
        return not self.problems


@dataclass
class SwitchResult:
    status: SwitchStatus
    old_table: str
    new_table: str
    backup_name: str | None = None
    old_rows: int | None = None
    new_rows: int | None = None
    steps_completed: int = 0
    fks_repointed: int = 0
    rollback: RollbackOutcome = RollbackOutcome.NOT_NEEDED
    error: str | None = None
    elapsed_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status is SwitchStatus.SUCCESS

    @property
    def manual_intervention_required(self) -> bool:
        return self.rollback in (RollbackOutcome.PARTIAL, RollbackOutcome.UNVERIFIED)

    def raise_for_status(self) -> "SwitchResult":
        if not self.success:
            raise CutoverError(self)
        return self

    def __str__(self) -> str:
        text = f"[{self.status.value}] {self.new_table} → {self.old_table}"
        if self.backup_name:
            text += f" (backup {self.backup_name})"
        if self.error:
            text += f": {self.error}; rollback {self.rollback.value}"
        return text


@dataclass
class RollbackResult:
    success: bool
    current_table: str
    backup_table: str
    replaced_table: str | None = None
    replaced_dropped: bool = False
    restored_rows: int | None = None
    error: str | None = None


@dataclass
class BackupTable:
    name: str
    base_table: str
    created_at: datetime
    age_days: float
    dropped: bool = False
    error: str | None = None


@dataclass
class CleanupResult:
    pattern: str
    older_than_days: int
    dry_run: bool
    candidates: list[BackupTable] = field(default_factory=list)

    @property
    def dropped_count(self) -> int:
        return sum(1 for b in self.candidates if b.dropped)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class CutoverEngine:
    """
    Performs and reverts table swaps on one site.

    Args:
        db:    Connected data-side :class:`DatabaseManager`.
        repo:  Optional metadata repository; when given, every switch,
               rollback and backup drop is written to the audit log.
    """

    def __init__(
        self,
        db: DatabaseManager,
        repo: MetadataRepository | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._db = db
        self._repo = repo
        self._clock = clock
        self._now = now

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_switch(self, old_table: str, new_table: str, force: bool = False) -> SwitchReadiness:
        """Check preconditions without changing anything."""
        report = SwitchReadiness(old_table=old_table, new_table=new_table, forced=force)
        report.old_exists = self._db.table_exists(old_table)
        report.new_exists = self._db.table_exists(new_table)
        if not report.old_exists:
            report.problems.append(f"Table {old_table!r} does not exist")
        if not report.new_exists:
            report.problems.append(f"Table {new_table!r} does not exist")
        if report.old_exists:
            report.old_rows = self._db.count_rows(old_table)
            report.dependent_fks = [
                fk for fk in self._db.foreign_keys_referencing(old_table)
                if fk.table_name not in (old_table, new_table)
            ]
        if report.new_exists:
            report.new_rows = self._db.count_rows(new_table)

        report.is_primary_site = not self._db.is_in_recovery()
        if not report.is_primary_site:
            if force:
                log.warning("Switching %s on a standby site (forced)", old_table)
            else:
                report.problems.append(
                    "Site is a standby; switch only on the primary or pass force=True"
                )
        return report

    # ------------------------------------------------------------------
    # Switch
    # ------------------------------------------------------------------

    def atomic_switch(
        self,
        old_table: str,
        new_table: str,
        backup_suffix: str | None = None,
        force: bool = False,
    ) -> SwitchResult:
        """
        Swap *new_table* into *old_table*'s name, keeping the original data
        under a backup name.

        Args:
            old_table:      Table currently queried by the application.
            new_table:      Fully populated replacement.
            backup_suffix:  Suffix for the backup name; defaults to
                            ``_backup_<YYYYMMDD_HHMMSS>``.
            force:          Allow the switch on a standby site.
        """
        started = self._clock()
        stamp = backup_timestamp(self._now())
        backup = f"{old_table}{backup_suffix or f'_backup_{stamp}'}"
        temp = f"{old_table}_temp_{stamp}"
        result = SwitchResult(
            status=SwitchStatus.VALIDATION_FAILED,
            old_table=old_table,
            new_table=new_table,
            rollback=RollbackOutcome.NOT_ATTEMPTED,
        )

        readiness = self.validate_switch(old_table, new_table, force=force)
        problems = list(readiness.problems)
        for name in (backup, temp):
            if len(name) > MAX_IDENTIFIER_LENGTH:
                problems.append(f"Generated name {name!r} exceeds {MAX_IDENTIFIER_LENGTH} characters")
        if not problems and self._db.table_exists(backup):
            problems.append(f"Backup table {backup!r} already exists")
        result.old_rows, result.new_rows = readiness.old_rows, readiness.new_rows
        if problems:
            result.error = "; ".join(problems)
            log.error("Switch of %s rejected: %s", old_table, result.error)
            self._audit(old_table, "ATOMIC_SWITCH", AuditStatus.FAILED, error=result.error)
            return result

        op = SwitchOperation(
            old_name=old_table,
            new_name=new_table,
            backup_name=backup,
            temp_name=temp,
            dependent_fks=readiness.dependent_fks,
        )
        result.backup_name = backup
        log.info(
            "Switching %s ⇄ %s (backup %s, %d dependent foreign keys)",
            old_table, new_table, backup, len(op.dependent_fks),
        )

        try:
            with self._db.transaction():
                self._db.rename_table(op.old_name, op.backup_name)
                op.step = 1
                self._db.rename_table(op.new_name, op.old_name)
                op.step = 2
                for fk in op.dependent_fks:
                    self._db.drop_constraint(fk.table_name, fk.constraint_name)
                    # Tracked once dropped: the unwind must re-create it even if the add failed.
                    op.repointed_fks.append(fk)
                    self._db.add_foreign_key(fk, op.old_name)
                op.step = 3
        except Exception as exc:
            failed_step = op.step + 1
            result.status = SwitchStatus.FAILED
            result.steps_completed = op.step
            result.error = f"Step {failed_step} ({op.STEP_NAMES.get(failed_step, '?')}) failed: {exc}"
            log.error("Switch of %s failed: %s", old_table, result.error)
            result.rollback = self._unwind(op)
            result.elapsed_seconds = self._clock() - started
            if result.manual_intervention_required:
                log.critical(
                    "Switch of %s left the catalog in an unexpected state (%s); "
                    "manual intervention required",
                    old_table, result.rollback.value,
                )
            self._audit(
                old_table, "ATOMIC_SWITCH", AuditStatus.FAILED, error=result.error,
                notes=f"rollback={result.rollback.value}; step={op.step}",
            )
            return result

        result.status = SwitchStatus.SUCCESS
        result.steps_completed = op.step
        result.fks_repointed = len(op.repointed_fks)
        result.rollback = RollbackOutcome.NOT_NEEDED
        result.elapsed_seconds = self._clock() - started
        log.info("Switch of %s completed in %.3fs", old_table, result.elapsed_seconds)
        self._audit(
            old_table, "ATOMIC_SWITCH", AuditStatus.COMPLETED, rows=result.new_rows,
            notes=f"backup={backup}; fks={result.fks_repointed}",
        )
        return result

    def _restored(self, op: SwitchOperation) -> bool:
        return (
            self._db.table_exists(op.old_name)
            and self._db.table_exists(op.new_name)
            and not self._db.table_exists(op.backup_name)
        )

    def _unwind(self, op: SwitchOperation) -> RollbackOutcome:
        """Return the catalog to its pre-switch names after a failure."""
        try:
            if self._restored(op):
                log.info("Transaction rollback restored %s and %s", op.old_name, op.new_name)
                return RollbackOutcome.SUCCEEDED
        except Exception as exc:
            log.error("Cannot inspect catalog after failed switch: %s", exc)
            return RollbackOutcome.UNVERIFIED

        log.warning("Renames survived the failed switch; unwinding manually (step %d)", op.step)
        acted = False

        for fk in reversed(op.repointed_fks):
            try:
                self._db.drop_constraint(fk.table_name, fk.constraint_name)
                self._db.add_foreign_key(fk, op.backup_name)
                self._db.commit()
                acted = True
            except Exception as exc:
                log.error("Could not restore foreign key %s: %s", fk.constraint_name, exc)
                self._db.rollback()

        try:
            if self._db.table_exists(op.old_name) and self._db.table_exists(op.backup_name):
                # The original name currently holds the new table.
                target = op.temp_name if self._db.table_exists(op.new_name) else op.new_name
                self._db.rename_table(op.old_name, target)
                self._db.commit()
                acted = True
            if self._db.table_exists(op.backup_name) and not self._db.table_exists(op.old_name):
                self._db.rename_table(op.backup_name, op.old_name)
                self._db.commit()
                acted = True
        except Exception as exc:
            log.error("Manual unwind step failed: %s", exc)
            self._db.rollback()

        try:
            if self._restored(op):
                log.info("Manual unwind restored %s and %s", op.old_name, op.new_name)
                return RollbackOutcome.SUCCEEDED
        except Exception as exc:
            log.error("Cannot verify catalog after manual unwind: %s", exc)
            return RollbackOutcome.UNVERIFIED
        return RollbackOutcome.PARTIAL if acted else RollbackOutcome.UNVERIFIED

    # ------------------------------------------------------------------
    # Rollback of a completed switch
    # ------------------------------------------------------------------

    def rollback_switch(
        self,
        current_table: str,
        backup_table: str,
        force_on_standby: bool = False,
        drop_replaced: bool = True,
    ) -> RollbackResult:
        """
        Put *backup_table* back under *current_table*'s name.

        The table currently holding the name is moved to a temporary name and
        dropped (or kept under that name when *drop_replaced* is False).
        """
        result = RollbackResult(success=False, current_table=current_table, backup_table=backup_table)
        problems = []
        if not self._db.table_exists(current_table):
            problems.append(f"Table {current_table!r} does not exist")
        if not self._db.table_exists(backup_table):
            problems.append(f"Backup table {backup_table!r} does not exist")
        if self._db.is_in_recovery() and not force_on_standby:
            problems.append("Site is a standby; pass force_on_standby=True to override")
        if problems:
            result.error = "; ".join(problems)
            self._audit(current_table, "ROLLBACK_SWITCH", AuditStatus.FAILED, error=result.error)
            return result

        temp = f"{current_table}_temp_{backup_timestamp(self._now())}"[:MAX_IDENTIFIER_LENGTH]
        dependents = [
            fk for fk in self._db.foreign_keys_referencing(current_table)
            if fk.table_name not in (current_table, backup_table)
        ]
        try:
            with self._db.transaction():
                self._db.rename_table(current_table, temp)
                self._db.rename_table(backup_table, current_table)
                for fk in dependents:
                    self._db.drop_constraint(fk.table_name, fk.constraint_name)
                    self._db.add_foreign_key(fk, current_table)
                if drop_replaced:
                    self._db.drop_table(temp)
        except Exception as exc:
            result.error = f"Rollback of {current_table} failed: {exc}"
            log.error(result.error)
            self._audit(current_table, "ROLLBACK_SWITCH", AuditStatus.FAILED, error=result.error)
            return result

        result.success = True
        result.replaced_table = temp
        result.replaced_dropped = drop_replaced
        result.restored_rows = self._db.count_rows(current_table)
        log.info("Restored %s from %s (%s rows)", current_table, backup_table, result.restored_rows)
        self._audit(
            current_table, "ROLLBACK_SWITCH", AuditStatus.COMPLETED, rows=result.restored_rows,
            notes=f"from={backup_table}; replaced={temp}; dropped={drop_replaced}",
        )
        return result

    # ------------------------------------------------------------------
    # Backup housekeeping
    # ------------------------------------------------------------------

    def cleanup_old_backups(
        self,
        pattern: str,
        older_than_days: int = 7,
        dry_run: bool = True,
    ) -> CleanupResult:
        """
        Drop ``<table>_backup_YYYYMMDD_HHMMSS`` tables older than the
        threshold whose name contains *pattern*. With *dry_run* only lists
        what would be dropped.
        """
        result = CleanupResult(pattern=pattern, older_than_days=older_than_days, dry_run=dry_run)
        now = self._now()
        for name in self._db.list_tables_like(f"%{pattern}%_backup_%"):
            match = BACKUP_NAME_RE.match(name)
            if not match or pattern not in name:
                continue
            try:
                created = datetime.strptime(match["stamp"], "%Y%m%d_%H%M%S").replace(
                    tzinfo=timezone.utc
                )
            except ValueError:
                log.warning("Ignoring %s: unparsable backup timestamp", name)
                continue
            age = (now - created).total_seconds() / 86400
            if age <= older_than_days:
                continue
            entry = BackupTable(
                name=name, base_table=match["base"], created_at=created, age_days=round(age, 2)
            )
            result.candidates.append(entry)
            if dry_run:
                log.info("Would drop %s (%.1f days old)", name, age)
                continue
            try:
                with self._db.transaction():
                    self._db.drop_table(name)
                entry.dropped = True
                self._audit(entry.base_table, "DROP_BACKUP", AuditStatus.COMPLETED, notes=name)
            except Exception as exc:
                entry.error = str(exc)
                log.error("Could not drop %s: %s", name, exc)
                self._audit(entry.base_table, "DROP_BACKUP", AuditStatus.FAILED, error=str(exc))
        return result

    # ------------------------------------------------------------------

    def _audit(
        self,
        table: str,
        operation: str,
        status: AuditStatus,
        rows: int | None = None,
        error: str | None = None,
        notes: str | None = None,
    ) -> None:
        if self._repo is None:
            return
        try:
            self._repo.record_audit(
                table, operation, status, rows_affected=rows, error_message=error, notes=notes
            )
        except Exception as exc:
            log.warning("Could not write audit entry for %s %s: %s", operation, table, exc)
