"""
core/replication.py
-------------------
Control surface over the database's own logical replication: subscription
enable/disable, coordination markers, lag and position readings, the
per-table replication switch, and the pre-migration readiness checks.

Nothing here implements replication; every call is a catalog read or one
of the two transport primitives (emit a marker, toggle a subscription).

Design Decisions:
    * ``disable_subscriptions`` returns the names it actually disabled, and
      ``enable_subscriptions`` re-enables exactly those. A subscription an
      operator had disabled on purpose is never switched on by a resume.
    * Position snapshots are persisted so a resumed process can still
      compare "before pause" with "after pause".
    * Markers are advisory: delivery is at-least-once and nothing waits on
      them.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from config import CONFIG
from core.change_capture import ReplicationControlStore
from core.database import DatabaseManager
from core.metadata.repository import MetadataRepository
from logger import get_logger
from models.records import AuditStatus, ReplicationStateSnapshot
from shared.utils import parse_lsn

log = get_logger(__name__)


class ReplicationControlError(Exception):
    """Raised when replication control is attempted from the wrong site."""


@dataclass
class PositionComparison:
    """Result of comparing two position snapshots of the same slots."""
    ok: bool
    advanced: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    regressed: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)

    def describe(self) -> str:
        parts = []
        if self.regressed:
            parts.append(f"regressed: {', '.join(self.regressed)}")
        if self.missing:
            parts.append(f"missing: {', '.join(self.missing)}")
        return "; ".join(parts) or "positions consistent"


@dataclass
class ReplicationStatus:
    site_role: str                 # PRIMARY | STANDBY
    is_active_site: bool
    replication_state: str         # SENDING | RECEIVING | ISOLATED
    lag_bytes: int
    lag_seconds: float
    subscriptions: list[dict[str, Any]]
    slots: list[dict[str, Any]]
    recommendation: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "site_role": self.site_role,
            "is_active_site": self.is_active_site,
            "replication_state": self.replication_state,
            "lag_bytes": self.lag_bytes,
            "lag_seconds": self.lag_seconds,
            "subscriptions": self.subscriptions,
            "slots": self.slots,
            "recommendation": self.recommendation,
        }


@dataclass
class ReadinessCheck:
    name: str
    status: str                    # PASS | WARNING | FAIL | INFO
    details: str
    action: str


@dataclass
class ReadinessReport:
    checks: list[ReadinessCheck] = field(default_factory=list)

    @property
    def ready(self) -> bool:
        return all(c.status != "FAIL" for c in self.checks)

    @property
    def warnings(self) -> list[ReadinessCheck]:
        return [c for c in self.checks if c.status == "WARNING"]


class ReplicationTransport:
    """
    Thin layer over one site's replication views and controls.

    Args:
        db:      Data-side connection (subscriptions live in that database).
        repo:    Metadata repository for snapshots, control entries and
                 audit rows.
        prefix:  Logical message prefix used for coordination markers.
    """

    def __init__(
        self,
        db: DatabaseManager,
        repo: MetadataRepository,
        prefix: str | None = None,
    ) -> None:
        self._db = db
        self._repo = repo
        self._prefix = prefix or CONFIG.coordination.marker_prefix
        self.control = ReplicationControlStore(repo)

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def snapshot_positions(self, operation_id: str) -> list[ReplicationStateSnapshot]:
        """Capture and persist slot and subscription positions."""
        snapshots = [
            ReplicationStateSnapshot(
                operation_id=operation_id, kind="slot", name=s["name"],
                position=s["position"], enabled=s.get("active"),
            )
            for s in self._db.replication_slots()
        ]
        enabled = {s["name"]: s["enabled"] for s in self._db.list_subscriptions()}
        snapshots.extend(
            ReplicationStateSnapshot(
                operation_id=operation_id, kind="subscription", name=s["name"],
                position=s["position"], enabled=enabled.get(s["name"]),
            )
            for s in self._db.subscription_positions()
        )
        self._repo.save_replication_state(snapshots)
        log.info("Snapshotted %d replication positions for %s", len(snapshots), operation_id)
        return snapshots

    def compare_positions(self, operation_id: str) -> PositionComparison:
        """
        Compare current slot positions with the persisted snapshot.

        A slot that moved backwards or disappeared means writes may have
        been lost across the pause.
        """
        before = {
            s.name: parse_lsn(s.position)
            for s in self._repo.list_replication_state(operation_id)
            if s.kind == "slot"
        }
        now = {s["name"]: parse_lsn(s["position"]) for s in self._db.replication_slots()}
        result = PositionComparison(ok=True)
        for name, old in sorted(before.items()):
            if name not in now:
                result.missing.append(name)
            elif old is None or now[name] is None or now[name] == old:
                result.unchanged.append(name)
            elif now[name] > old:
                result.advanced.append(name)
            else:
                result.regressed.append(name)
        result.ok = not (result.regressed or result.missing)
        if not result.ok:
            log.error("Replication positions for %s: %s", operation_id, result.describe())
        return result

    # ------------------------------------------------------------------
    # Subscriptions and markers
    # ------------------------------------------------------------------

    def disable_subscriptions(self) -> list[str]:
        """Disable every enabled subscription; returns their names."""
        disabled = []
        for sub in self._db.list_subscriptions():
            if sub["enabled"]:
                self._db.set_subscription_enabled(sub["name"], False)
                disabled.append(sub["name"])
        self._db.commit()
        return disabled

    def enable_subscriptions(self, names: list[str] | None = None) -> list[str]:
        """Enable *names* (default: every disabled subscription)."""
        current = {s["name"]: s["enabled"] for s in self._db.list_subscriptions()}
        targets = [n for n in (names if names is not None else current) if n in current]
        enabled = []
        for name in targets:
            if not current[name]:
                self._db.set_subscription_enabled(name, True)
                enabled.append(name)
        self._db.commit()
        return enabled

    def emit_marker(self, operation_id: str, phase: str, table_name: str) -> str:
        content = f"operation_id:{operation_id},phase:{phase},table:{table_name}"
        position = self._db.emit_message(self._prefix, content)
        self._db.commit()
        log.info("Emitted %s marker for %s at %s", phase, operation_id, position)
        return position

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def lag(self) -> tuple[int, float]:
        return self._db.replication_lag()

    def status(self) -> ReplicationStatus:
        standby = self._db.is_in_recovery()
        subscriptions = self._db.list_subscriptions()
        slots = self._db.replication_slots()
        lag_bytes, lag_seconds = self._db.replication_lag()
        if standby:
            state = "RECEIVING"
        elif slots or any(s["enabled"] for s in subscriptions):
            state = "SENDING"
        else:
            state = "ISOLATED"

        if standby:
            advice = "This is a standby site - execute migrations on primary only"
        elif state == "ISOLATED":
            advice = "WARNING: No replication detected - verify setup"
        elif lag_bytes > CONFIG.coordination.max_replication_lag_bytes:
            advice = "WARNING: High replication lag detected"
        else:
            advice = "Replication appears healthy for migration"

        return ReplicationStatus(
            site_role="STANDBY" if standby else "PRIMARY",
            is_active_site=not standby,
            replication_state=state,
            lag_bytes=lag_bytes,
            lag_seconds=lag_seconds,
            subscriptions=subscriptions,
            slots=slots,
            recommendation=advice,
        )

    def validate_migration_readiness(self) -> ReadinessReport:
        cfg = CONFIG.coordination
        report = ReadinessReport()
        standby = self._db.is_in_recovery()
        report.checks.append(ReadinessCheck(
            "Site Role Check",
            "FAIL" if standby else "PASS",
            "This is a standby site" if standby else "This is the primary site",
            "Execute migration on primary site only" if standby else "Proceed with migration",
        ))

        lag_bytes, lag_seconds = self._db.replication_lag()
        lag_ok = lag_bytes < cfg.max_replication_lag_bytes
        report.checks.append(ReadinessCheck(
            "Replication Lag Check",
            "PASS" if lag_ok else "WARNING",
            f"Current lag: {lag_bytes} bytes ({lag_seconds:.1f}s)",
            "Lag is acceptable" if lag_ok else "Wait for replication to catch up before migration",
        ))

        active = self._db.active_connections()
        report.checks.append(ReadinessCheck(
            "Active Connections Check",
            "PASS" if active < cfg.max_active_connections else "WARNING",
            f"Active connections: {active}",
            "Consider scheduling migration during low activity period",
        ))

        report.checks.append(ReadinessCheck(
            "Disk Space Check",
            "INFO",
            f"Database size: {self._db.database_size()}",
            "Ensure 3x largest table size is available",
        ))
        return report

    # ------------------------------------------------------------------
    # Per-table switch
    # ------------------------------------------------------------------

    def pause_table_replication(
        self, table_name: str, reason: str = "Table migration in progress"
    ) -> bool:
        """Turn off forwarding for *table_name* (primary site only)."""
        return self._toggle(table_name, False, reason, "PAUSE_REPLICATION")

    def resume_table_replication(
        self, table_name: str, notes: str = "Replication resumed after migration"
    ) -> bool:
        return self._toggle(table_name, True, notes, "RESUME_REPLICATION")

    def _toggle(self, table_name: str, enabled: bool, notes: str, operation: str) -> bool:
        if self._db.is_in_recovery():
            raise ReplicationControlError(
                "Replication control can only be managed from primary site"
            )
        audit_id = self._repo.start_audit(table_name, operation)
        try:
            self.control.set_enabled(table_name, enabled, notes)
        except Exception as exc:
            self._repo.finish_audit(audit_id, AuditStatus.FAILED, error_message=str(exc))
            raise
        self._repo.finish_audit(
            audit_id, AuditStatus.COMPLETED, rows_affected=0,
            notes=f"Replication {'resumed' if enabled else 'paused'} for table {table_name}",
        )
        return True
