"""
models/mapping.py
-----------------
Typed source → target table mappings consumed by the batch copier and the
change-capture rules.

Design Decision:
    A mapping is an explicit description of which source column lands in
    which target column, where the source's stable key is stored, which
    constant tag marks rows written by the batch copier, and which column
    carries the provenance (origin site) marker. Nothing is derived from
    naming conventions, and no SQL text is built per table: the storage
    layer composes statements from these fields with quoted identifiers.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class PredicateDirection(str, Enum):
    BEFORE = "before"            # older than the boundary (NULLs included)
    ON_OR_AFTER = "on_or_after"  # at or newer than the boundary


@dataclass(frozen=True)
class RowPredicate:
    """
    Filter on the ordering column that splits archive rows from migrate rows.

    Rows whose ordering value is NULL count as older than any boundary, so
    the two directions of one boundary always partition the table.
    """
    column: str
    boundary: Any
    direction: PredicateDirection

    def matches(self, row: dict[str, Any]) -> bool:
        value = row.get(self.column)
        if self.direction is PredicateDirection.BEFORE:
            return value is None or value < self.boundary
        return value is not None and value >= self.boundary

    def describe(self) -> str:
        op = "<" if self.direction is PredicateDirection.BEFORE else ">="
        return f"{self.column} {op} {self.boundary!r}"


class MappingType(str, Enum):
    """What a mapping is used for."""
    MIGRATE = "migrate"      # legacy schema → new schema
    ARCHIVE = "archive"      # legacy schema → same-shaped archive table
    REVERSE = "reverse"      # new schema → legacy backup (post-cutover)


@dataclass
class TableMapping:
    """
    Maps one source table onto one target table.

    Attributes:
        source_table:       Relation rows are read from.
        target_table:       Relation rows are written to.
        key_column:         Monotonically increasing stable key in the source.
        target_key_column:  Column in the target holding the source key; the
                            target must have a unique constraint on it.
        column_mappings:    source_column → target_column for every copied
                            non-key column.
        batch_tag:          Constant column values written only by the batch
                            copier (e.g. ``{"is_migrated": True}``).
        provenance_column:  Target column that receives the origin site id.
    """
    source_table: str
    target_table: str
    key_column: str = "id"
    target_key_column: str | None = None
    column_mappings: dict[str, str] = field(default_factory=dict)
    batch_tag: dict[str, Any] = field(default_factory=dict)
    provenance_column: str | None = None
    mapping_type: MappingType = MappingType.MIGRATE

    def __post_init__(self) -> None:
        if self.target_key_column is None:
            self.target_key_column = self.key_column

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    @property
    def source_columns(self) -> list[str]:
        """Key column first, then mapped columns in declaration order."""
        return [self.key_column, *self.column_mappings.keys()]

    @property
    def target_columns(self) -> list[str]:
        return [self.target_key_column, *self.column_mappings.values()]

    def project(
        self,
        row: dict[str, Any],
        provenance: str | None = None,
        include_batch_tag: bool = False,
    ) -> dict[str, Any]:
        """
        Translate a source row dict into the target row dict.

        Source columns missing from *row* are written as None.
        """
        out: dict[str, Any] = {self.target_key_column: row.get(self.key_column)}
        for src, dst in self.column_mappings.items():
            out[dst] = row.get(src)
        if include_batch_tag:
            out.update(self.batch_tag)
        if self.provenance_column and provenance is not None:
            out[self.provenance_column] = provenance
        return out

    def reversed(self, source_table: str, target_table: str) -> "TableMapping":
        """
        Mapping in the opposite direction, used after a cutover to forward
        writes on the new relation back into the legacy backup.
        """
        return TableMapping(
            source_table=source_table,
            target_table=target_table,
            key_column=self.target_key_column,
            target_key_column=self.key_column,
            column_mappings={
                dst: src for src, dst in self.column_mappings.items()
                if src != self.key_column
            },
            provenance_column=None,
            mapping_type=MappingType.REVERSE,
        )

    @staticmethod
    def identity(
        source_table: str,
        target_table: str,
        columns: list[str],
        key_column: str = "id",
        batch_tag: dict[str, Any] | None = None,
    ) -> "TableMapping":
        """Column-for-column mapping, as used for archive copies."""
        return TableMapping(
            source_table=source_table,
            target_table=target_table,
            key_column=key_column,
            column_mappings={c: c for c in columns if c != key_column},
            batch_tag=dict(batch_tag or {}),
            mapping_type=MappingType.ARCHIVE,
        )

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.mapping_type.value,
            "target_table": self.target_table,
            "key_column": self.key_column,
            "target_key_column": self.target_key_column,
            "column_mappings": self.column_mappings,
            "batch_tag": self.batch_tag,
            "provenance_column": self.provenance_column,
        }

    @staticmethod
    def from_dict(source_table: str, data: dict[str, Any]) -> "TableMapping":
        return TableMapping(
            source_table=source_table,
            target_table=data.get("target_table", f"{source_table}_new"),
            key_column=data.get("key_column", "id"),
            target_key_column=data.get("target_key_column"),
            column_mappings=data.get("column_mappings", {}),
            batch_tag=data.get("batch_tag", {}),
            provenance_column=data.get("provenance_column"),
            mapping_type=MappingType(data.get("type", MappingType.MIGRATE.value)),
        )


def load_mappings_from_file(path: Path | str) -> dict[str, TableMapping]:
    """
    Load mappings keyed by source table from a JSON file.

    Returns an empty dict if the file is missing.

    Raises:
        ValueError: If the file is not a JSON object.
    """
    p = Path(path)
    if not p.exists():
        return {}
    with p.open("r", encoding="utf-8") as fh:
        raw = json.load(fh)
    if not isinstance(raw, dict):
        raise ValueError(f"Mapping file {p} must contain a JSON object")
    return {key: TableMapping.from_dict(key, value) for key, value in raw.items()}


def save_mappings_to_file(mappings: dict[str, TableMapping], path: Path | str) -> None:
    """Persist mappings to a JSON file (pretty-printed, sorted by key)."""
    p = Path(path)
    data = {key: m.to_dict() for key, m in sorted(mappings.items())}
    with p.open("w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=4, default=str)
