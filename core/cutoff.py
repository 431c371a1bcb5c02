"""
core/cutoff.py
--------------
Retention cutoff selection: which rows stay "recent" (migrated to the new
table) and which are archived.

Given a retention fraction ``r`` the target number of retained rows is
``floor(N * r)``; the boundary is the ordering-column value of the
``target``-th newest row, so that ``col >= boundary`` admits exactly
``target`` rows when values are distinct. Rows sharing the boundary value
all fall on the retained side, so the split is best-effort at ties.

Design Decisions:
    * Strategies are plain objects with a ``compute`` method. The exact
      strategy issues a count and one ``ORDER BY ... OFFSET`` query; the
      sampled strategy reads a TABLESAMPLE and takes a quantile, trading
      exactness for speed on very large tables.
    * ``target == 0`` yields no boundary: nothing is retained and the caller
      archives the whole (snapshotted) key range.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Protocol

from core.database import DatabaseManager
from logger import get_logger
from models.mapping import PredicateDirection, RowPredicate

log = get_logger(__name__)


class CutoffError(Exception):
    """Raised when a cutoff cannot be computed for the given inputs."""


@dataclass(frozen=True)
class CutoffResult:
    """
    Attributes:
        table_name:     Relation the cutoff was computed on.
        column:         Ordering column.
        retention:      Requested retained fraction.
        total_rows:     N (exact or estimated).
        target_rows:    floor(N * retention).
        boundary:       Ordering value of the oldest retained row, or None
                        when nothing is retained.
        exact:          False for sampled estimates.
        strategy:       Name of the strategy that produced the result.
    """
    table_name: str
    column: str
    retention: float
    total_rows: int
    target_rows: int
    boundary: Any
    exact: bool
    strategy: str

    @property
    def retains_nothing(self) -> bool:
        return self.boundary is None

    def archive_predicate(self) -> RowPredicate | None:
        """Predicate selecting rows to archive; None means "every row"."""
        if self.boundary is None:
            return None
        return RowPredicate(self.column, self.boundary, PredicateDirection.BEFORE)

    def migrate_predicate(self) -> RowPredicate | None:
        """Predicate selecting rows to migrate; None means "no row"."""
        if self.boundary is None:
            return None
        return RowPredicate(self.column, self.boundary, PredicateDirection.ON_OR_AFTER)


class CutoffStrategy(Protocol):
    name: str

    def compute(
        self, db: DatabaseManager, table_name: str, column: str, retention: float
    ) -> CutoffResult: ...


def target_count(total_rows: int, retention: float) -> int:
    """floor(N * r), guarded against float noise (0.1 * 1000 → 100)."""
    return min(total_rows, int(math.floor(total_rows * retention + 1e-9)))


class ExactCutoffStrategy:
    """Count, then read the boundary row with ORDER BY DESC OFFSET."""

    name = "exact"

    def compute(
        self, db: DatabaseManager, table_name: str, column: str, retention: float
    ) -> CutoffResult:
        total = db.count_rows(table_name)
        target = target_count(total, retention)
        boundary = db.boundary_value(table_name, column, target - 1) if target > 0 else None
        return CutoffResult(
            table_name=table_name,
            column=column,
            retention=retention,
            total_rows=total,
            target_rows=target,
            boundary=boundary,
            exact=True,
            strategy=self.name,
        )


class SampledCutoffStrategy:
    """
    Estimate N from planner statistics and the boundary from a block sample.

    Falls back to the exact strategy when the sample comes back empty
    (tiny or freshly loaded tables).
    """

    name = "sampled"

    def __init__(self, sample_percent: float = 1.0) -> None:
        if not 0 < sample_percent <= 100:
            raise CutoffError("sample_percent must be in (0, 100]")
        self.sample_percent = sample_percent

    def compute(
        self, db: DatabaseManager, table_name: str, column: str, retention: float
    ) -> CutoffResult:
        total = db.estimated_row_count(table_name)
        sample = sorted(db.sample_values(table_name, column, self.sample_percent))
        if total <= 0 or not sample:
            log.info("Sample of %s is empty; using exact cutoff", table_name)
            return ExactCutoffStrategy().compute(db, table_name, column, retention)

        target = target_count(total, retention)
        boundary = None
        if target > 0:
            # Index of the oldest retained value within the ascending sample.
            kept = max(1, round(len(sample) * target / total))
            boundary = sample[max(0, len(sample) - kept)]
        return CutoffResult(
            table_name=table_name,
            column=column,
            retention=retention,
            total_rows=total,
            target_rows=target,
            boundary=boundary,
            exact=False,
            strategy=self.name,
        )


def calculate_cutoff(
    db: DatabaseManager,
    table_name: str,
    column: str,
    retention: float,
    strategy: CutoffStrategy | None = None,
) -> CutoffResult:
    """
    Compute the archive / migrate boundary for *table_name*.

    Raises:
        CutoffError: If *retention* is outside [0, 1] or the table or
                     column does not exist.
    """
    if not 0.0 <= retention <= 1.0:
        raise CutoffError(f"Retention fraction must be between 0 and 1, got {retention}")
    if not db.table_exists(table_name):
        raise CutoffError(f"Table {table_name!r} does not exist")
    if column not in db.list_columns(table_name):
        raise CutoffError(f"Column {column!r} does not exist on {table_name!r}")

    strategy = strategy or ExactCutoffStrategy()
    result = strategy.compute(db, table_name, column, retention)
    log.info(
        "Cutoff for %s.%s: %d of %d rows retained, boundary=%r (%s)",
        table_name, column, result.target_rows, result.total_rows,
        result.boundary, result.strategy,
    )
    return result
