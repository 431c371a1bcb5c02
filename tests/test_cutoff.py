"""
tests/test_cutoff.py
--------------------
Unit tests for core/cutoff.py.
Run with: python -m pytest tests/
"""
from __future__ import annotations

from datetime import timedelta

import pytest

from core.cutoff import (
    CutoffError,
    ExactCutoffStrategy,
    SampledCutoffStrategy,
    calculate_cutoff,
    target_count,
)
from fakes import BASE_TIME, ORDER_COLUMNS, FakeDatabase, make_orders
from models.mapping import PredicateDirection


# ---------------------------------------------------------------------------
# target_count
# ---------------------------------------------------------------------------

class TestTargetCount:
    def test_floor_of_fraction(self) -> None:
        assert target_count(1000, 0.1) == 100
        assert target_count(15, 0.1) == 1
        assert target_count(9, 0.1) == 0

    def test_full_retention_keeps_everything(self) -> None:
        assert target_count(42, 1.0) == 42

    def test_zero_rows(self) -> None:
        assert target_count(0, 0.5) == 0


# ---------------------------------------------------------------------------
# Exact strategy
# ---------------------------------------------------------------------------

class TestExactCutoff:
    def test_boundary_admits_exactly_target_rows(self, db: FakeDatabase) -> None:
        result = calculate_cutoff(db, "orders", "created_at", 0.1)
        assert result.total_rows == 100
        assert result.target_rows == 10
        assert result.exact is True
        retained = [r for r in db.rows("orders") if r["created_at"] >= result.boundary]
        assert len(retained) == 10
        # Newest ten rows are ids 91..100.
        assert result.boundary == BASE_TIME + timedelta(days=91)

    def test_predicates_partition_the_table(self, db: FakeDatabase) -> None:
        result = calculate_cutoff(db, "orders", "created_at", 0.25)
        archive = result.archive_predicate()
        migrate = result.migrate_predicate()
        assert archive.direction is PredicateDirection.BEFORE
        assert migrate.direction is PredicateDirection.ON_OR_AFTER
        rows = db.rows("orders")
        assert sum(archive.matches(r) for r in rows) == 75
        assert sum(migrate.matches(r) for r in rows) == 25
        assert all(archive.matches(r) != migrate.matches(r) for r in rows)

    def test_zero_retention_retains_nothing(self, db: FakeDatabase) -> None:
        result = calculate_cutoff(db, "orders", "created_at", 0.0)
        assert result.retains_nothing
        assert result.archive_predicate() is None
        assert result.migrate_predicate() is None

    def test_full_retention_boundary_is_oldest_value(self, db: FakeDatabase) -> None:
        result = calculate_cutoff(db, "orders", "created_at", 1.0)
        assert result.boundary == BASE_TIME + timedelta(days=1)

    def test_ties_fall_on_retained_side(self) -> None:
        db = FakeDatabase()
        rows = make_orders(10)
        for row in rows[-4:]:
            row["created_at"] = BASE_TIME
        for i, row in enumerate(rows[:-4]):
            row["created_at"] = BASE_TIME - timedelta(days=10 - i)
        db.create_table("orders", ORDER_COLUMNS, rows)
        result = calculate_cutoff(db, "orders", "created_at", 0.2)
        assert result.target_rows == 2
        retained = [r for r in db.rows("orders") if result.migrate_predicate().matches(r)]
        assert len(retained) == 4

    def test_null_ordering_values_count_as_older(self) -> None:
        db = FakeDatabase()
        rows = make_orders(10)
        rows[0]["created_at"] = None
        db.create_table("orders", ORDER_COLUMNS, rows)
        result = calculate_cutoff(db, "orders", "created_at", 0.5)
        null_row = db.rows("orders")[0]
        assert result.archive_predicate().matches(null_row)
        assert not result.migrate_predicate().matches(null_row)

    def test_empty_table(self) -> None:
        db = FakeDatabase()
        db.create_table("orders", ORDER_COLUMNS)
        result = ExactCutoffStrategy().compute(db, "orders", "created_at", 0.5)
        assert result.total_rows == 0
        assert result.boundary is None


# ---------------------------------------------------------------------------
# Sampled strategy
# ---------------------------------------------------------------------------

class TestSampledCutoff:
    def test_estimate_from_full_sample_matches_exact(self, db: FakeDatabase) -> None:
        result = calculate_cutoff(db, "orders", "created_at", 0.1, SampledCutoffStrategy(5.0))
        assert result.exact is False
        assert result.strategy == "sampled"
        assert result.boundary == BASE_TIME + timedelta(days=91)

    def test_empty_sample_falls_back_to_exact(
        self, db: FakeDatabase, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(db, "sample_values", lambda table, column, percent: [])
        result = calculate_cutoff(db, "orders", "created_at", 0.1, SampledCutoffStrategy())
        assert result.exact is True
        assert result.strategy == "exact"

    def test_invalid_sample_percent(self) -> None:
        with pytest.raises(CutoffError):
            SampledCutoffStrategy(0)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestCutoffValidation:
    @pytest.mark.parametrize("retention", [-0.1, 1.5])
    def test_retention_out_of_range(self, db: FakeDatabase, retention: float) -> None:
        with pytest.raises(CutoffError, match="between 0 and 1"):
            calculate_cutoff(db, "orders", "created_at", retention)

    def test_missing_table(self, db: FakeDatabase) -> None:
        with pytest.raises(CutoffError, match="does not exist"):
            calculate_cutoff(db, "ghost", "created_at", 0.1)

    def test_missing_column(self, db: FakeDatabase) -> None:
        with pytest.raises(CutoffError, match="Column"):
            calculate_cutoff(db, "orders", "updated_at", 0.1)
