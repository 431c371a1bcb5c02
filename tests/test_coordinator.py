"""
tests/test_coordinator.py
-------------------------
Unit tests for core/coordinator.py: the phased handshake, partner waiting,
failure recovery and resuming an interrupted operation.
Run with: python -m pytest tests/
"""
from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from core.batch_engine import BatchEngine, BatchJobError, BatchValidationError
from core.database import DatabaseError
from core.coordinator import (
    CoordinatedMigrationRequest,
    CoordinationError,
    CoordinationProtocol,
    CutoverStrategy,
    HttpReadinessSignal,
    JobPausedError,
    MetadataReadinessSignal,
    PartnerTimeoutError,
)
from core.metadata.memory import InMemoryMetadataRepository
from core.service import MigrationService
from fakes import ORDER_COLUMNS, FakeDatabase, make_orders
from models.records import CoordinationOperation, JobOperation, JobStatus, OperationStatus


class Crash(BaseException):
    """Stands in for the process dying mid-operation."""


@pytest.fixture
def db(db: FakeDatabase) -> FakeDatabase:
    db.subscriptions = {"sub_from_b": True, "sub_reporting": False}
    db.slots = {"slot_to_b": "0/100"}
    return db


@pytest.fixture
def slept() -> list[float]:
    return []


@pytest.fixture
def service(db: FakeDatabase, repo: InMemoryMetadataRepository, slept: list[float]) -> MigrationService:
    return MigrationService(
        db, repo, site_name="site_a",
        readiness=MetadataReadinessSignal(repo, partner_site="site_b"),
        sleep=slept.append,
    )


@pytest.fixture
def protocol(service: MigrationService) -> CoordinationProtocol:
    return service.protocol(poll_interval=5, poll_attempts=10)


def _request(**overrides) -> CoordinatedMigrationRequest:
    values = dict(
        site_name="site_a", source_table="orders", operation_id="op-1",
        retention=0.1, batch_size=25, wait_for_partner=False,
    )
    values.update(overrides)
    return CoordinatedMigrationRequest(**values)


def _statuses(db: FakeDatabase) -> dict[str, bool]:
    return dict(db.subscriptions)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestCoordinatedRun:
    def test_full_run(self, db, repo, service, protocol) -> None:
        result = protocol.run(_request())

        assert result.status is OperationStatus.COMPLETED
        assert result.phase == 5
        assert result.success
        assert result.archived_rows == 90
        assert result.migrated_rows == 10
        assert result.consistent is True
        assert result.completed_at is not None

        assert db.keys("orders_archive") == list(range(1, 91))
        assert db.count_rows("orders_new", {"is_migrated": True}) == 10
        assert db.count_rows("orders") == 100
        assert [content.split(",")[1] for _, content in db.markers] == [
            "phase:SYNC_STOPPED", "phase:SYNC_RESUMED",
        ]
        assert _statuses(db) == {"sub_from_b": True, "sub_reporting": False}
        assert [r.name for r in service.capture.rules_for("orders")] == [
            "sync_orders_to_orders_new_site_a"
        ]

    def test_phases_are_persisted_in_order(self, repo, protocol) -> None:
        seen = []
        original = repo.save_operation

        def record(op: CoordinationOperation) -> None:
            if not seen or seen[-1] is not op.status:
                seen.append(op.status)
            original(op)

        repo.save_operation = record
        protocol.run(_request())
        assert seen == [
            OperationStatus.PREPARING,
            OperationStatus.PREPARED,
            OperationStatus.SYNC_STOPPING,
            OperationStatus.SYNC_STOPPED,
            OperationStatus.EXECUTING,
            OperationStatus.MIGRATION_COMPLETED,
            OperationStatus.SYNC_RESUMED,
            OperationStatus.COMPLETED,
        ]

    def test_writes_during_migration_are_forwarded_untagged(self, db, service, protocol) -> None:
        writer = service.writer()
        fired = []

        def live_write(mapping, *args) -> None:
            if mapping.target_table == "orders_new" and not fired:
                fired.append(True)
                writer.insert("orders", make_orders(1, start=101)[0])

        db.on_call("copy_batch", live_write)
        protocol.run(_request())

        row = db.fetch_row("orders_new", "original_id", 101)
        assert row["is_migrated"] is False
        assert row["replication_source"] == "site_a"
        # Conservation holds for the rows present when sync was paused.
        archived = db.count_rows("orders_archive")
        migrated = db.count_rows("orders_new", {"is_migrated": True})
        assert archived + migrated == 100

    def test_row_forwarded_before_its_batch_is_tagged(self, db, service, protocol) -> None:
        writer = service.writer()
        fired = []

        def live_update(mapping, after_key, *rest) -> None:
            if mapping.target_table == "orders_new" and not fired:
                fired.append(True)
                writer.update("orders", 100, {"amount": 1})

        db.on_call("copy_batch", live_update)
        result = protocol.run(_request())

        assert fired
        assert result.consistent is True
        row = db.fetch_row("orders_new", "original_id", 100)
        assert row["amount"] == 1
        assert row["is_migrated"] is True
        assert db.count_rows("orders_new") == 10
        assert db.count_rows("orders_new", {"is_migrated": True}) == 10
        assert db.count_rows("orders_archive") + 10 == 100

    def test_source_key_without_default(self, db, repo, protocol) -> None:
        db.create_table("invoices", ORDER_COLUMNS, make_orders(20), serial=None)
        result = protocol.run(_request(source_table="invoices", operation_id="op-inv"))

        assert result.status is OperationStatus.COMPLETED
        assert result.consistent is True
        rows = db.rows("invoices_new")
        assert len(rows) == result.migrated_rows > 0
        assert all(r["id"] == r["original_id"] for r in rows)

    def test_new_table_keeps_source_keys(self, db, protocol) -> None:
        protocol.run(_request())
        rows = sorted(db.rows("orders_new"), key=lambda r: r["original_id"])
        assert [r["id"] for r in rows] == list(range(91, 101))

    def test_switch_then_capture(self, db, service, protocol) -> None:
        result = protocol.run(_request(strategy=CutoverStrategy.SWITCH_THEN_CAPTURE))

        assert result.status is OperationStatus.COMPLETED
        assert result.backup_table.startswith("orders_backup_")
        assert "original_id" in db.list_columns("orders")
        (rule,) = service.capture.rules_for("orders")
        assert rule.mapping.target_table == result.backup_table

        service.writer().insert("orders", {
            "id": 500, "original_id": 500, "customer": "n", "amount": 1, "created_at": None,
        })
        assert db.fetch_row(result.backup_table, "id", 500) is not None

    def test_empty_source(self, db, repo, protocol) -> None:
        db.create_table("events", ORDER_COLUMNS)
        result = protocol.run(_request(source_table="events", operation_id="op-empty"))
        assert result.status is OperationStatus.COMPLETED
        assert "nothing to archive" in result.notes
        assert repo.list_jobs("op-empty") == []

    def test_zero_retention_archives_everything(self, db, repo, service, protocol) -> None:
        result = protocol.run(_request(retention=0.0))
        assert result.archived_rows == 100
        assert result.migrated_rows == 0
        assert [j.operation for j in repo.list_jobs("op-1")] == [JobOperation.ARCHIVE]
        assert service.capture.rules_for("orders") == []

    def test_dry_run_changes_nothing(self, db, protocol) -> None:
        result = protocol.run(_request(dry_run=True))
        assert result.success
        assert result.plan.rows_to_archive == 90
        assert result.plan.rows_to_migrate == 10
        assert not result.plan.target_exists
        assert not db.table_exists("orders_new")
        assert db.markers == []

    def test_missing_source(self, protocol) -> None:
        with pytest.raises(CoordinationError, match="does not exist"):
            protocol.run(_request(source_table="ghost"))


# ---------------------------------------------------------------------------
# Partner readiness
# ---------------------------------------------------------------------------

class TestPartnerWait:
    def test_timeout_after_all_poll_attempts(self, db, repo, protocol, slept) -> None:
        with pytest.raises(PartnerTimeoutError, match="50s"):
            protocol.run(_request(is_coordinator=True, wait_for_partner=True))

        assert slept == [5] * 10
        op = repo.get_operation("op-1", "site_a")
        assert op.status is OperationStatus.FAILED
        # Nothing existing was altered before the partner answered.
        assert db.count_rows("orders") == 100
        assert db.called("rename_table") == []
        assert _statuses(db)["sub_from_b"] is True
        assert db.markers == []

    def test_partner_row_reaching_prepared(self, repo, protocol, slept) -> None:
        repo.create_operation(CoordinationOperation(
            "op-1", "site_b", "orders", is_coordinator=False, status=OperationStatus.PREPARED,
        ))
        result = protocol.run(_request(is_coordinator=True, wait_for_partner=True))
        assert result.status is OperationStatus.COMPLETED
        assert "partner ready after 1 check(s)" in result.notes

    def test_readiness_after_a_few_polls(self, db, repo, service, slept) -> None:
        readiness = MagicMock()
        readiness.is_ready.side_effect = [False, False, True]
        protocol = CoordinationProtocol(
            db, repo, service.capture, engine=service.engine, readiness=readiness,
            poll_interval=2, poll_attempts=5, sleep=slept.append,
        )
        result = protocol.run(_request(is_coordinator=True, wait_for_partner=True))
        assert result.status is OperationStatus.COMPLETED
        assert slept[:2] == [2, 2]

    def test_partner_does_not_wait(self, service) -> None:
        service.readiness = MagicMock()
        protocol = service.protocol(poll_interval=5, poll_attempts=10)
        result = protocol.run(_request(is_coordinator=False, wait_for_partner=True))
        assert result.status is OperationStatus.COMPLETED
        service.readiness.is_ready.assert_not_called()

    def test_mark_partner_ready(self, repo, protocol) -> None:
        with pytest.raises(CoordinationError):
            protocol.mark_partner_ready("op-1", "site_a")
        repo.create_operation(CoordinationOperation("op-1", "site_a", "orders", is_coordinator=True))
        op = protocol.mark_partner_ready("op-1", "site_a")
        assert op.partner_ready
        assert repo.get_operation("op-1", "site_a").partner_ready


class TestHttpReadinessSignal:
    def _op(self) -> CoordinationOperation:
        return CoordinationOperation("op-1", "site_a", "orders", is_coordinator=True)

    def _signal(self, response=None, error=None) -> HttpReadinessSignal:
        session = MagicMock()
        if error is not None:
            session.get.side_effect = error
        else:
            session.get.return_value = response
        return HttpReadinessSignal("http://site-b:8000/", partner_site="site_b", session=session)

    def _response(self, status_code=200, body=None):
        resp = MagicMock(status_code=status_code)
        resp.json.return_value = body or {}
        return resp

    def test_partner_prepared(self) -> None:
        body = {"sites": [{"site_name": "site_b", "status": "PREPARED", "partner_ready": False}]}
        signal = self._signal(self._response(body=body))
        assert signal.is_ready(self._op())
        signal._session.get.assert_called_once_with(
            "http://site-b:8000/operations/op-1", params={"site": "site_b"}, timeout=5.0
        )

    def test_partner_still_preparing(self) -> None:
        body = {"sites": [{"site_name": "site_b", "status": "PREPARING"}]}
        assert not self._signal(self._response(body=body)).is_ready(self._op())

    def test_unknown_operation(self) -> None:
        assert not self._signal(self._response(status_code=404)).is_ready(self._op())

    def test_network_error(self) -> None:
        signal = self._signal(error=requests.ConnectionError("refused"))
        assert not signal.is_ready(self._op())


# ---------------------------------------------------------------------------
# Failure recovery
# ---------------------------------------------------------------------------

class TestFailureRecovery:
    def test_failure_after_pause_reenables_and_rolls_back(self, db, repo, protocol) -> None:
        db.fail("copy_batch")
        with pytest.raises(BatchJobError):
            protocol.run(_request())

        op = repo.get_operation("op-1", "site_a")
        assert op.status is OperationStatus.ROLLED_BACK
        assert "replication re-enabled after failure" in op.notes
        assert _statuses(db) == {"sub_from_b": True, "sub_reporting": False}
        assert db.markers[-1][1].startswith("operation_id:op-1,phase:RESUMED_AFTER_FAILURE")

    def test_failed_reenable_keeps_failed_and_original_error(self, db, repo, protocol) -> None:
        db.fail("copy_batch")
        db.fail("set_subscription_enabled", when=lambda name, enabled: enabled)
        with pytest.raises(BatchJobError):
            protocol.run(_request())

        op = repo.get_operation("op-1", "site_a")
        assert op.status is OperationStatus.FAILED
        assert "replication may still be disabled" in op.notes
        assert _statuses(db)["sub_from_b"] is False

    def test_regressed_slot_fails_operation(self, db, repo, protocol) -> None:
        db.on_call("emit_message", lambda prefix, content: db.slots.update(slot_to_b="0/50"))
        with pytest.raises(CoordinationError, match="inconsistent"):
            protocol.run(_request())
        assert repo.get_operation("op-1", "site_a").status is OperationStatus.ROLLED_BACK
        assert db.keys("orders_archive") == []
        (archive_job,) = repo.list_jobs("op-1")
        assert archive_job.status is JobStatus.FAILED
        assert repo.find_active_job("orders") is None

    def test_timed_out_operation_releases_table(self, db, repo, protocol) -> None:
        with pytest.raises(PartnerTimeoutError):
            protocol.run(_request(is_coordinator=True, wait_for_partner=True))

        (archive_job,) = repo.list_jobs("op-1")
        assert archive_job.status is JobStatus.FAILED
        assert "op-1 failed" in archive_job.error_detail

        result = protocol.run(_request(operation_id="op-2"))
        assert result.status is OperationStatus.COMPLETED
        assert result.archived_rows == 90
        assert result.migrated_rows == 10
        assert result.consistent is True

    def test_failure_before_pause_leaves_sync_alone(self, db, repo, protocol) -> None:
        db.fail("create_table_like")
        with pytest.raises(DatabaseError):
            protocol.run(_request())
        assert repo.get_operation("op-1", "site_a").status is OperationStatus.FAILED
        assert db.called("set_subscription_enabled") == []

    def test_failed_operation_cannot_restart(self, db, protocol) -> None:
        db.fail("copy_batch")
        with pytest.raises(BatchJobError):
            protocol.run(_request())
        with pytest.raises(CoordinationError, match="start a new operation"):
            protocol.run(_request())

    def test_operation_id_bound_to_table(self, db, protocol) -> None:
        protocol.run(_request())
        db.create_table("customers", ORDER_COLUMNS)
        with pytest.raises(CoordinationError, match="belongs to table"):
            protocol.run(_request(source_table="customers"))


# ---------------------------------------------------------------------------
# Resume
# ---------------------------------------------------------------------------

class TestResume:
    def test_resume_continues_from_checkpoint(self, db, repo, protocol) -> None:
        db.fail(
            "copy_batch", exc=Crash(),
            when=lambda mapping, after_key, *rest: mapping.target_table == "orders_archive" and after_key == 25,
        )
        with pytest.raises(Crash):
            protocol.run(_request())
        assert repo.get_operation("op-1", "site_a").status is OperationStatus.EXECUTING

        copies_before = len(db.called("copy_batch"))
        result = protocol.run(_request())

        assert result.status is OperationStatus.COMPLETED
        assert db.keys("orders_archive") == list(range(1, 91))
        resumed = db.called("copy_batch")[copies_before]
        assert resumed[1] == 25
        # Subscriptions were disabled once and re-enabled once.
        assert db.called("set_subscription_enabled") == [("sub_from_b", False), ("sub_from_b", True)]

    def test_completed_operation_is_not_redone(self, db, protocol) -> None:
        protocol.run(_request())
        copies = len(db.called("copy_batch"))
        result = protocol.run(_request())
        assert result.status is OperationStatus.COMPLETED
        assert result.archived_rows == 90
        assert len(db.called("copy_batch")) == copies


# ---------------------------------------------------------------------------
# Paused jobs
# ---------------------------------------------------------------------------

class TestPausedJobs:
    def test_safety_limit_pauses_and_continues(self, db, repo, service) -> None:
        service.engine = BatchEngine(
            db, repo, batch_sleep_ms=0, max_batches=2, provenance="site_a", sleep=lambda s: None,
        )
        protocol = service.protocol(poll_interval=5, poll_attempts=10)

        result = protocol.run(_request())
        assert result.status is OperationStatus.EXECUTING
        assert not result.success
        assert "max_batches" in result.error
        assert "re-invoke" in result.error
        assert db.keys("orders_archive") == list(range(1, 51))
        # Replication is not held off while nobody drives the operation.
        assert _statuses(db) == {"sub_from_b": True, "sub_reporting": False}
        assert db.markers[-1][1].startswith("operation_id:op-1,phase:PAUSED")
        op = repo.get_operation("op-1", "site_a")
        assert op.status is OperationStatus.EXECUTING
        assert "paused:" in op.notes

        runs = 1
        while result.status is not OperationStatus.COMPLETED and runs < 5:
            result = protocol.run(_request())
            runs += 1

        assert result.status is OperationStatus.COMPLETED
        assert runs == 3
        assert result.consistent is True
        assert db.keys("orders_archive") == list(range(1, 91))
        assert db.count_rows("orders_new", {"is_migrated": True}) == 10
        assert [content.split(",")[1] for _, content in db.markers] == [
            "phase:SYNC_STOPPED", "phase:PAUSED",
            "phase:SYNC_STOPPED", "phase:PAUSED",
            "phase:SYNC_STOPPED", "phase:SYNC_RESUMED",
        ]
        assert db.called("set_subscription_enabled") == [
            ("sub_from_b", False), ("sub_from_b", True),
        ] * 3
        assert _statuses(db)["sub_from_b"] is True

    def test_operator_pause_holds_until_resumed(self, db, repo, service, protocol) -> None:
        paused = []

        def operator_pause(mapping, after_key, *rest) -> None:
            if mapping.target_table == "orders_archive" and after_key == 25 and not paused:
                job = repo.find_job_by_name("archive_orders_site_a_op-1")
                paused.append(service.pause_job(job.job_id))

        db.on_call("copy_batch", operator_pause)
        result = protocol.run(_request())

        assert paused == [True]
        assert result.status is OperationStatus.EXECUTING
        assert "resume the job" in result.error
        assert db.keys("orders_archive") == list(range(1, 51))
        assert _statuses(db)["sub_from_b"] is True

        copies = len(db.called("copy_batch"))
        result = protocol.run(_request())
        assert result.status is OperationStatus.EXECUTING
        assert len(db.called("copy_batch")) == copies
        (job,) = repo.list_jobs("op-1")
        assert job.status is JobStatus.PAUSED

        assert service.resume_job(job.job_id)
        result = protocol.run(_request())
        assert result.status is OperationStatus.COMPLETED
        assert db.keys("orders_archive") == list(range(1, 91))
        assert _statuses(db)["sub_from_b"] is True

    def test_paused_operation_keeps_table_claimed(self, db, repo, service, protocol) -> None:
        def operator_pause(mapping, after_key, *rest) -> None:
            if mapping.target_table == "orders_archive" and after_key is None:
                job = repo.find_job_by_name("archive_orders_site_a_op-1")
                service.pause_job(job.job_id)

        db.on_call("copy_batch", operator_pause)
        protocol.run(_request())

        with pytest.raises(BatchValidationError, match="active job"):
            protocol.run(_request(operation_id="op-2"))
        assert repo.get_operation("op-1", "site_a").status is OperationStatus.EXECUTING
        assert repo.list_jobs("op-1")[0].status is JobStatus.PAUSED

    def test_paused_error_names_the_action(self) -> None:
        assert "re-invoke" in str(JobPausedError("archive_orders", "max_batches"))
        assert "resume the job" in str(JobPausedError("archive_orders", "paused"))
