"""
core/validation.py
------------------
Post-migration consistency check between the original relation and the
archive/new pair that replaced it.

Two checks, both computed by the server:
    * Row conservation: rows in the archive plus batch-tagged rows in the
      new relation equal the rows in the original.
    * Key checksum: the MD5 over the sorted union of archive keys and the
      original keys stored in the new relation equals the MD5 over the
      original's keys. Equal counts with different checksums point at a
      row copied twice or a row missing on one side.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from core.database import DatabaseManager
from logger import get_logger
from models.mapping import TableMapping

log = get_logger(__name__)


@dataclass
class ConsistencyCheck:
    name: str
    passed: bool
    expected: Any
    actual: Any
    details: str = ""

    @property
    def status(self) -> str:
        return "PASS" if self.passed else "FAIL"


@dataclass
class ConsistencyReport:
    original_table: str
    archive_table: str
    new_table: str
    original_rows: int = 0
    archive_rows: int = 0
    migrated_rows: int = 0
    checks: list[ConsistencyCheck] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return bool(self.checks) and all(c.passed for c in self.checks)

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_table": self.original_table,
            "archive_table": self.archive_table,
            "new_table": self.new_table,
            "original_rows": self.original_rows,
            "archive_rows": self.archive_rows,
            "migrated_rows": self.migrated_rows,
            "consistent": self.consistent,
            "checks": [
                {
                    "name": c.name,
                    "status": c.status,
                    "expected": c.expected,
                    "actual": c.actual,
                    "details": c.details,
                }
                for c in self.checks
            ],
        }

    def __str__(self) -> str:
        lines = [
            f"Consistency of {self.original_table} → "
            f"{self.archive_table} + {self.new_table}: "
            f"{'OK' if self.consistent else 'MISMATCH'}"
        ]
        lines.extend(f"  [{c.status}] {c.name}: {c.details}" for c in self.checks)
        return "\n".join(lines)


def validate_consistency(
    db: DatabaseManager,
    original_table: str,
    archive: TableMapping,
    migrate: TableMapping,
) -> ConsistencyReport:
    """
    Compare *original_table* with the targets of the *archive* and
    *migrate* mappings.

    Only rows carrying the migrate mapping's batch tag are counted in the
    new relation, so rows written there by change capture are left out.
    """
    report = ConsistencyReport(
        original_table=original_table,
        archive_table=archive.target_table,
        new_table=migrate.target_table,
    )
    tag = migrate.batch_tag or None
    report.original_rows = db.count_rows(original_table)
    report.archive_rows = db.count_rows(archive.target_table, archive.batch_tag or None)
    report.migrated_rows = db.count_rows(migrate.target_table, tag)

    combined = report.archive_rows + report.migrated_rows
    report.checks.append(ConsistencyCheck(
        name="row_conservation",
        passed=combined == report.original_rows,
        expected=report.original_rows,
        actual=combined,
        details=(
            f"archive {report.archive_rows} + migrated {report.migrated_rows} = {combined}, "
            f"original {report.original_rows}"
        ),
    ))

    _, original_sum = db.key_checksum([(original_table, archive.key_column, None)])
    _, split_sum = db.key_checksum([
        (archive.target_table, archive.target_key_column, archive.batch_tag or None),
        (migrate.target_table, migrate.target_key_column, tag),
    ])
    report.checks.append(ConsistencyCheck(
        name="key_checksum",
        passed=original_sum == split_sum,
        expected=original_sum,
        actual=split_sum,
        details="key sets match" if original_sum == split_sum else "key sets differ",
    ))

    if report.consistent:
        log.info("Consistency check passed for %s (%d rows)", original_table, report.original_rows)
    else:
        log.warning("Consistency check failed for %s:\n%s", original_table, report)
    return report
