"""
core/change_capture.py
----------------------
Forwards row-level changes on a legacy table into its replacement while
both are live.

Every application write goes through a :class:`CapturingWriter`, which
performs the write and then hands a :class:`RowChange` to each rule
registered for the table in the same transaction.

Design Decisions:
    * Loop prevention: a rule forwards only changes whose origin is its own
      site. A change that arrived through the replication transport carries
      the partner's site id and is ignored, so a forwarded row is never sent
      back.
    * Idempotency: inserts and updates are upserts keyed by the original
      row's stable key in the target, so duplicate delivery is a no-op.
    * Isolation (STANDARD): each rule runs in its own savepoint; a failure
      is rolled back to the savepoint, recorded on the
      :class:`ForwardingErrorChannel` and never reaches the caller.
    * MINIMAL mode skips the control lookup and the savepoint. It is the
      high-throughput variant and the price is that a forwarding error
      aborts the originating write.
    * DEFERRED mode only emits a ``pg_notify`` event; a
      :class:`DeferredChangeWorker` forwards later. Forwarding then lags
      the write and a lost notification is only repaired by the next
      change to the same key.
"""
from __future__ import annotations

import json
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable

from core.database import DatabaseManager
from core.metadata.repository import MetadataRepository
from logger import get_logger
from models.mapping import RowPredicate, TableMapping
from models.records import AuditStatus, ReplicationControlEntry, utcnow

log = get_logger(__name__)

NOTIFY_CHANNEL_PREFIX = "table_sync_"


class ForwardingMode(str, Enum):
    STANDARD = "STANDARD"
    MINIMAL = "MINIMAL"
    DEFERRED = "DEFERRED"


class DeleteStrategy(str, Enum):
    HARD = "HARD"   # delete the target row
    SOFT = "SOFT"   # keep the row, mark provenance DELETED_FROM_<site>


class ChangeOperation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class RowChange:
    """
    One row-level change on a source table.

    ``row`` is the new row for INSERT/UPDATE and the old row (or ``None``)
    for DELETE. ``origin_site`` is the site that originally accepted the
    write.
    """
    operation: ChangeOperation
    table: str
    key: Any
    row: dict[str, Any] | None
    origin_site: str

    def to_payload(self) -> str:
        return json.dumps({
            "table": self.table,
            "operation": self.operation.value,
            "id": self.key,
            "origin": self.origin_site,
            "timestamp": time.time(),
        }, default=str)


# ---------------------------------------------------------------------------
# Control store
# ---------------------------------------------------------------------------

class ReplicationControlStore:
    """
    Per-table replication switch backed by the metadata repository.

    Reads default open: a missing entry, or a lookup that fails, means
    forwarding stays enabled.
    """

    def __init__(self, repo: MetadataRepository) -> None:
        self._repo = repo

    def is_enabled(self, table_name: str) -> bool:
        try:
            entry = self._repo.get_control(table_name)
        except Exception as exc:
            log.warning("Control lookup for %s failed, forwarding stays on: %s", table_name, exc)
            return True
        return True if entry is None else entry.replication_enabled

    def set_enabled(self, table_name: str, enabled: bool, notes: str | None = None) -> ReplicationControlEntry:
        entry = self._repo.get_control(table_name) or ReplicationControlEntry(table_name=table_name)
        now = utcnow()
        entry.replication_enabled = enabled
        entry.notes = notes
        if enabled:
            entry.maintenance_window_end = now
            entry.last_sync_time = now
        else:
            entry.maintenance_window_start = now
            entry.maintenance_window_end = None
        self._repo.save_control(entry)
        log.info("Replication for %s %s", table_name, "enabled" if enabled else "disabled")
        return entry


# ---------------------------------------------------------------------------
# Error channel
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FailedForward:
    table: str
    target_table: str
    operation: ChangeOperation
    key: Any
    error: str
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass
class FailureStats:
    total: int = 0
    by_table: dict[str, int] = field(default_factory=dict)
    by_operation: dict[str, int] = field(default_factory=dict)
    last_error: str | None = None
    last_failure_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "by_table": dict(self.by_table),
            "by_operation": dict(self.by_operation),
            "last_error": self.last_error,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
        }


class ForwardingErrorChannel:
    """
    Inspectable sink for forwarding failures.

    Keeps the most recent failures in memory and, when a repository is
    given, writes each one to the audit log. Writing to the audit log is
    itself isolated; a failure there is logged, not raised.
    """

    def __init__(self, repo: MetadataRepository | None = None, capacity: int = 1000) -> None:
        self._repo = repo
        self._recent: deque[FailedForward] = deque(maxlen=capacity)
        self._stats = FailureStats()
        self._lock = threading.Lock()

    def record(self, change: RowChange, target_table: str, exc: BaseException) -> FailedForward:
        failure = FailedForward(
            table=change.table,
            target_table=target_table,
            operation=change.operation,
            key=change.key,
            error=str(exc),
        )
        with self._lock:
            self._recent.append(failure)
            self._stats.total += 1
            self._stats.by_table[change.table] = self._stats.by_table.get(change.table, 0) + 1
            op = change.operation.value
            self._stats.by_operation[op] = self._stats.by_operation.get(op, 0) + 1
            self._stats.last_error = failure.error
            self._stats.last_failure_at = failure.occurred_at
        log.error(
            "Forwarding %s %s[%s] → %s failed: %s",
            change.operation.value, change.table, change.key, target_table, exc,
        )
        if self._repo is not None:
            try:
                self._repo.record_audit(
                    change.table, f"FORWARD_{change.operation.value}", AuditStatus.FAILED,
                    error_message=failure.error, notes=f"target={target_table}; key={change.key}",
                )
            except Exception as audit_exc:
                log.warning("Could not audit forwarding failure: %s", audit_exc)
        return failure

    def failures(self, table: str | None = None) -> list[FailedForward]:
        with self._lock:
            return [f for f in self._recent if table is None or f.table == table]

    def stats(self) -> FailureStats:
        with self._lock:
            return FailureStats(
                total=self._stats.total,
                by_table=dict(self._stats.by_table),
                by_operation=dict(self._stats.by_operation),
                last_error=self._stats.last_error,
                last_failure_at=self._stats.last_failure_at,
            )

    def clear(self) -> None:
        with self._lock:
            self._recent.clear()
            self._stats = FailureStats()


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

class ChangeCaptureRule:
    """
    Forwards changes on ``mapping.source_table`` into ``mapping.target_table``.

    Args:
        mapping:          Explicit source → target mapping.
        site_id:          This site; changes from elsewhere are not forwarded
                          and forwarded rows carry it as provenance.
        mode:             STANDARD, MINIMAL or DEFERRED.
        delete_strategy:  HARD deletes the target row; SOFT rewrites its
                          provenance column to ``DELETED_FROM_<site>``.
        row_filter:       Only inserts and updates of rows matching this
                          predicate are forwarded (e.g. rows newer than the
                          cutoff). Deletes are always forwarded.
    """

    def __init__(
        self,
        mapping: TableMapping,
        site_id: str,
        mode: ForwardingMode = ForwardingMode.STANDARD,
        delete_strategy: DeleteStrategy = DeleteStrategy.HARD,
        row_filter: RowPredicate | None = None,
    ) -> None:
        if delete_strategy is DeleteStrategy.SOFT and not mapping.provenance_column:
            raise ValueError(
                f"Soft deletes into {mapping.target_table} need a provenance column"
            )
        self.mapping = mapping
        self.site_id = site_id
        self.mode = mode
        self.delete_strategy = delete_strategy
        self.row_filter = row_filter

    @property
    def name(self) -> str:
        return f"sync_{self.mapping.source_table}_to_{self.mapping.target_table}_{self.site_id}"

    def should_forward(self, change: RowChange) -> bool:
        if change.table != self.mapping.source_table or change.origin_site != self.site_id:
            return False
        if self.row_filter is None or change.operation is ChangeOperation.DELETE:
            return True
        return change.row is not None and self.row_filter.matches(change.row)

    def apply(self, db: DatabaseManager, change: RowChange) -> int:
        """Write *change* into the target. Returns rows affected."""
        m = self.mapping
        if change.operation is ChangeOperation.DELETE:
            if self.delete_strategy is DeleteStrategy.SOFT:
                return db.update_columns(
                    m.target_table, m.target_key_column, change.key,
                    {m.provenance_column: f"DELETED_FROM_{self.site_id}"},
                )
            return db.delete_row(m.target_table, m.target_key_column, change.key)

        row = dict(change.row or {})
        row.setdefault(m.key_column, change.key)
        return db.upsert_row(
            m.target_table, m.target_key_column, m.project(row, provenance=self.site_id)
        )

    def __repr__(self) -> str:
        return f"<ChangeCaptureRule {self.name} {self.mode.value}/{self.delete_strategy.value}>"


class ChangeCaptureLayer:
    """
    Registry of rules per source table and the dispatcher invoked for every
    write on those tables.
    """

    def __init__(
        self,
        db: DatabaseManager,
        control: ReplicationControlStore,
        errors: ForwardingErrorChannel | None = None,
    ) -> None:
        self._db = db
        self._control = control
        self.errors = errors or ForwardingErrorChannel()
        self._rules: dict[str, list[ChangeCaptureRule]] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, rule: ChangeCaptureRule) -> ChangeCaptureRule:
        with self._lock:
            rules = self._rules.setdefault(rule.mapping.source_table, [])
            for existing in rules:
                if existing.mapping.target_table == rule.mapping.target_table:
                    rules.remove(existing)
                    break
            rules.append(rule)
        log.info("Installed %r", rule)
        return rule

    def unregister(self, source_table: str, target_table: str | None = None) -> int:
        with self._lock:
            rules = self._rules.get(source_table, [])
            keep = [r for r in rules if target_table is not None and r.mapping.target_table != target_table]
            removed = len(rules) - len(keep)
            if keep:
                self._rules[source_table] = keep
            else:
                self._rules.pop(source_table, None)
        if removed:
            log.info("Removed %d capture rule(s) on %s", removed, source_table)
        return removed

    def rules_for(self, source_table: str) -> list[ChangeCaptureRule]:
        with self._lock:
            return list(self._rules.get(source_table, []))

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def on_change(self, change: RowChange) -> int:
        """
        Run every matching rule for *change*. Returns the number of rules
        that forwarded (or, for DEFERRED rules, queued) the change.

        Must be called inside the transaction of the originating write.
        """
        forwarded = 0
        for rule in self.rules_for(change.table):
            if not rule.should_forward(change):
                log.debug(
                    "Not forwarding %s %s[%s] from %s via %s",
                    change.operation.value, change.table, change.key, change.origin_site, rule.name,
                )
                continue
            if rule.mode is ForwardingMode.MINIMAL:
                rule.apply(self._db, change)
                forwarded += 1
                continue
            if not self._control.is_enabled(change.table):
                continue
            if rule.mode is ForwardingMode.DEFERRED:
                if self._notify(rule, change):
                    forwarded += 1
                continue
            if self._forward_isolated(rule, change):
                forwarded += 1
        return forwarded

    def _forward_isolated(self, rule: ChangeCaptureRule, change: RowChange) -> bool:
        try:
            with self._db.savepoint("capture_forward"):
                rule.apply(self._db, change)
            return True
        except Exception as exc:
            self.errors.record(change, rule.mapping.target_table, exc)
            return False

    def _notify(self, rule: ChangeCaptureRule, change: RowChange) -> bool:
        try:
            with self._db.savepoint("capture_notify"):
                self._db.notify(NOTIFY_CHANNEL_PREFIX + change.table, change.to_payload())
            return True
        except Exception as exc:
            self.errors.record(change, rule.mapping.target_table, exc)
            return False


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------

class CapturingWriter:
    """
    Application-side write path for a table under migration.

    Performs the write and the forwarding in one transaction. ``origin_site``
    defaults to this site; the replication apply path passes the partner's
    site id so that those rows are not forwarded again.
    """

    def __init__(self, db: DatabaseManager, layer: ChangeCaptureLayer, site_id: str) -> None:
        self._db = db
        self._layer = layer
        self._site_id = site_id

    def insert(self, table: str, row: dict[str, Any], key_column: str = "id",
               origin_site: str | None = None) -> Any:
        key = row[key_column]
        with self._db.transaction():
            self._db.upsert_row(table, key_column, row)
            self._layer.on_change(RowChange(
                ChangeOperation.INSERT, table, key, dict(row), origin_site or self._site_id
            ))
        return key

    def update(self, table: str, key: Any, values: dict[str, Any], key_column: str = "id",
               origin_site: str | None = None) -> int:
        with self._db.transaction():
            affected = self._db.update_columns(table, key_column, key, values)
            if affected:
                row = self._db.fetch_row(table, key_column, key)
                self._layer.on_change(RowChange(
                    ChangeOperation.UPDATE, table, key, row, origin_site or self._site_id
                ))
        return affected

    def delete(self, table: str, key: Any, key_column: str = "id",
               origin_site: str | None = None) -> int:
        with self._db.transaction():
            old = self._db.fetch_row(table, key_column, key)
            affected = self._db.delete_row(table, key_column, key)
            if affected:
                self._layer.on_change(RowChange(
                    ChangeOperation.DELETE, table, key, old, origin_site or self._site_id
                ))
        return affected


# ---------------------------------------------------------------------------
# Deferred worker
# ---------------------------------------------------------------------------

class DeferredChangeWorker:
    """
    Out-of-band consumer for DEFERRED rules.

    Listens on ``table_sync_<table>``, re-reads the current source row for
    each event and forwards it with the rule's mapping, isolated per event.
    A row that no longer exists is forwarded as a delete.
    """

    def __init__(
        self,
        db: DatabaseManager,
        rules: Iterable[ChangeCaptureRule],
        errors: ForwardingErrorChannel | None = None,
    ) -> None:
        self._db = db
        self._rules = {r.mapping.source_table: r for r in rules}
        self.errors = errors or ForwardingErrorChannel()
        self.processed = 0

    @property
    def channels(self) -> list[str]:
        return [NOTIFY_CHANNEL_PREFIX + t for t in sorted(self._rules)]

    def start(self) -> None:
        for channel in self.channels:
            self._db.listen(channel)
        log.info("Deferred worker listening on %s", ", ".join(self.channels))

    def handle_payload(self, payload: str) -> bool:
        try:
            event = json.loads(payload)
            rule = self._rules[event["table"]]
            operation = ChangeOperation(event["operation"])
        except (ValueError, KeyError) as exc:
            log.warning("Ignoring malformed sync event %r: %s", payload, exc)
            return False
        if event.get("origin") not in (None, rule.site_id):
            return False

        key = event["id"]
        m = rule.mapping
        change = RowChange(operation, m.source_table, key, None, rule.site_id)
        try:
            with self._db.transaction():
                row = self._db.fetch_row(m.source_table, m.key_column, key)
                if row is None:
                    change = RowChange(ChangeOperation.DELETE, m.source_table, key, None, rule.site_id)
                else:
                    change = RowChange(operation, m.source_table, key, row, rule.site_id)
                    if operation is ChangeOperation.DELETE:
                        # Re-inserted since the event was emitted.
                        change = RowChange(ChangeOperation.UPDATE, m.source_table, key, row, rule.site_id)
                rule.apply(self._db, change)
        except Exception as exc:
            self.errors.record(change, m.target_table, exc)
            return False
        self.processed += 1
        return True

    def drain(self, timeout: float = 1.0) -> int:
        """Process whatever arrives within *timeout* seconds."""
        handled = 0
        for payload in self._db.poll_notifications(timeout):
            if self.handle_payload(payload):
                handled += 1
        return handled

    def run_forever(self, poll_timeout: float = 5.0, should_stop: Callable[[], bool] = lambda: False) -> None:
        self.start()
        while not should_stop():
            self.drain(poll_timeout)
