"""
tests/test_replication.py
-------------------------
Unit tests for core/replication.py.
Run with: python -m pytest tests/
"""
from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from core.replication import ReplicationControlError, ReplicationTransport
from fakes import FakeDatabase
from models.records import AuditStatus


@pytest.fixture
def db(db: FakeDatabase) -> FakeDatabase:
    db.subscriptions = {"sub_from_b": True, "sub_reporting": False}
    db.subscription_lsns = {"sub_from_b": "0/500", "sub_reporting": "0/10"}
    db.slots = {"slot_to_b": "0/1000", "slot_archive": "0/2000"}
    return db


@pytest.fixture
def transport(db: FakeDatabase, repo) -> ReplicationTransport:
    return ReplicationTransport(db, repo, prefix="table_rename_coordination")


# ---------------------------------------------------------------------------
# Subscriptions and markers
# ---------------------------------------------------------------------------

class TestSubscriptions:
    def test_disable_returns_only_what_it_disabled(self, db, transport) -> None:
        assert transport.disable_subscriptions() == ["sub_from_b"]
        assert db.subscriptions == {"sub_from_b": False, "sub_reporting": False}

    def test_enable_named_leaves_others_alone(self, db, transport) -> None:
        transport.disable_subscriptions()
        assert transport.enable_subscriptions(["sub_from_b", "sub_gone"]) == ["sub_from_b"]
        assert db.subscriptions["sub_reporting"] is False

    def test_enable_all_disabled(self, db, transport) -> None:
        assert transport.enable_subscriptions() == ["sub_reporting"]
        assert all(db.subscriptions.values())

    def test_enable_is_idempotent(self, db, transport) -> None:
        assert transport.enable_subscriptions(["sub_from_b"]) == []
        assert db.called("set_subscription_enabled") == []

    def test_emit_marker(self, db, transport) -> None:
        position = transport.emit_marker("op-1", "SYNC_STOPPED", "orders")
        assert position == "0/1"
        assert db.markers == [(
            "table_rename_coordination",
            "operation_id:op-1,phase:SYNC_STOPPED,table:orders",
        )]


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------

class TestPositions:
    def test_snapshot_is_persisted(self, repo, transport) -> None:
        transport.snapshot_positions("op-1")
        stored = repo.list_replication_state("op-1")
        slots = {s.name: s.position for s in stored if s.kind == "slot"}
        subs = {s.name: s.enabled for s in stored if s.kind == "subscription"}
        assert slots == {"slot_to_b": "0/1000", "slot_archive": "0/2000"}
        assert subs == {"sub_from_b": True, "sub_reporting": False}

    def test_advanced_and_unchanged_are_ok(self, db, transport) -> None:
        transport.snapshot_positions("op-1")
        db.slots["slot_to_b"] = "0/1800"
        result = transport.compare_positions("op-1")
        assert result.ok
        assert result.advanced == ["slot_to_b"]
        assert result.unchanged == ["slot_archive"]
        assert result.describe() == "positions consistent"

    def test_regressed_slot_fails(self, db, transport) -> None:
        transport.snapshot_positions("op-1")
        db.slots["slot_archive"] = "0/1FFF"
        result = transport.compare_positions("op-1")
        assert not result.ok
        assert result.regressed == ["slot_archive"]

    def test_missing_slot_fails(self, db, transport) -> None:
        transport.snapshot_positions("op-1")
        del db.slots["slot_to_b"]
        result = transport.compare_positions("op-1")
        assert not result.ok
        assert "missing: slot_to_b" in result.describe()


# ---------------------------------------------------------------------------
# Status and readiness
# ---------------------------------------------------------------------------

class TestStatus:
    def test_primary_sending(self, transport) -> None:
        status = transport.status()
        assert status.site_role == "PRIMARY"
        assert status.replication_state == "SENDING"
        assert status.recommendation.startswith("Replication appears healthy")

    def test_standby_receiving(self, db, transport) -> None:
        db.standby = True
        status = transport.status()
        assert status.site_role == "STANDBY"
        assert status.replication_state == "RECEIVING"
        assert not status.is_active_site

    def test_isolated(self, db, transport) -> None:
        db.slots = {}
        db.subscriptions = {"sub_from_b": False}
        assert transport.status().replication_state == "ISOLATED"

    def test_high_lag_warning(self, db, transport) -> None:
        db.lag = (50 * 1024 * 1024, 30.0)
        assert "High replication lag" in transport.status().recommendation
        assert transport.status().to_dict()["lag_bytes"] == 50 * 1024 * 1024


class TestReadiness:
    def test_primary_is_ready(self, transport) -> None:
        report = transport.validate_migration_readiness()
        assert report.ready
        assert [c.name for c in report.checks] == [
            "Site Role Check",
            "Replication Lag Check",
            "Active Connections Check",
            "Disk Space Check",
        ]

    def test_standby_is_not_ready(self, db, transport) -> None:
        db.standby = True
        report = transport.validate_migration_readiness()
        assert not report.ready
        assert report.checks[0].status == "FAIL"

    def test_busy_site_warns_but_stays_ready(self, db, transport) -> None:
        db.connections = 500
        db.lag = (50 * 1024 * 1024, 30.0)
        report = transport.validate_migration_readiness()
        assert report.ready
        assert len(report.warnings) == 2


# ---------------------------------------------------------------------------
# Per-table switch
# ---------------------------------------------------------------------------

class TestTableSwitch:
    def test_pause_and_resume(self, repo, transport) -> None:
        assert transport.pause_table_replication("orders", "reindex")
        entry = repo.get_control("orders")
        assert entry.replication_enabled is False
        assert entry.notes == "reindex"
        assert entry.maintenance_window_start is not None

        transport.resume_table_replication("orders")
        entry = repo.get_control("orders")
        assert entry.replication_enabled is True
        assert entry.last_sync_time is not None
        audits = repo.list_audit("orders")
        assert [a.operation for a in audits] == ["RESUME_REPLICATION", "PAUSE_REPLICATION"]
        assert all(a.status is AuditStatus.COMPLETED for a in audits)

    def test_standby_cannot_toggle(self, db, repo, transport) -> None:
        db.standby = True
        with pytest.raises(ReplicationControlError, match="primary"):
            transport.pause_table_replication("orders")
        assert repo.get_control("orders") is None

    def test_failed_toggle_is_audited(self, repo, transport, monkeypatch) -> None:
        monkeypatch.setattr(repo, "save_control", MagicMock(side_effect=RuntimeError("disk full")))
        with pytest.raises(RuntimeError):
            transport.pause_table_replication("orders")
        (audit,) = repo.list_audit("orders")
        assert audit.status is AuditStatus.FAILED
        assert audit.error_message == "disk full"
