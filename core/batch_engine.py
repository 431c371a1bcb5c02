"""
core/batch_engine.py
--------------------
Resumable, checkpointed bulk copy of a bounded row range.

Design Decisions:
    * Keyset pagination: each batch selects rows with key > checkpoint (and
      ≤ the job's snapshotted upper key) in key order. Unlike LIMIT/OFFSET
      this stays correct and cheap while the source keeps receiving writes.
    * Each batch is an upsert on the target key inside its own transaction
      (existing rows only receive the batch tag), and the checkpoint is
      persisted only after that commit. A crash between the two re-attempts
      the batch, which changes nothing.
    * Every batch appends a ``BatchExecutionRecord``; a failing batch is
      recorded as FAILED, the job is marked FAILED and the error re-raised.
    * Pause is cooperative: ``pause_job`` flips the persisted status and the
      driver loop stops before its next batch. There is no mid-batch abort.
    * The inter-batch delay and the clock are injected so tests never sleep.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from config import CONFIG
from core.database import DatabaseManager
from core.metadata.repository import MetadataRepository
from logger import get_logger
from models.mapping import RowPredicate, TableMapping
from models.records import (
    BatchExecutionRecord,
    BatchOutcome,
    JobOperation,
    JobStatus,
    MigrationJob,
    utcnow,
)
from shared.utils import (
    calculate_progress_percentage,
    calculate_throughput,
    estimate_completion_time,
    format_duration,
)

log = get_logger(__name__)

ProgressCallback = Callable[[str, int, int], None]  # message, current, total

SAFETY_STOP = "max_batches safety limit"


class BatchValidationError(Exception):
    """Raised before any row is touched when a job cannot run as requested."""


class BatchJobError(Exception):
    """Raised when a batch fails; the job has been marked FAILED."""

    def __init__(self, job: MigrationJob, batch_number: int, cause: BaseException) -> None:
        super().__init__(
            f"Job {job.job_name} failed in batch {batch_number}: {cause}"
        )
        self.job = job
        self.batch_number = batch_number
        self.cause = cause


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class BatchRunResult:
    """Outcome of one ``run_batch_job`` invocation."""
    job_id: str
    job_name: str
    status: JobStatus
    rows_processed: int = 0
    total_processed: int = 0
    batches_run: int = 0
    stopped_reason: str = ""
    elapsed_seconds: float = 0.0

    def __str__(self) -> str:
        return (
            f"[{self.status.value}] {self.job_name}: {self.rows_processed} rows in "
            f"{self.batches_run} batches ({self.stopped_reason}, "
            f"{format_duration(self.elapsed_seconds)})"
        )


@dataclass
class JobProgress:
    job_id: str
    job_name: str
    status: JobStatus
    processed_rows: int
    total_rows: int
    percentage: float
    current_batch: int
    rows_per_second: float
    avg_batch_seconds: float
    last_batch_seconds: float | None
    estimated_completion: datetime | None
    elapsed: str


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class BatchEngine:
    """
    Creates and drives migration jobs.

    Args:
        db:             Connected data-side :class:`DatabaseManager`.
        repo:           Metadata repository holding jobs and the batch log.
        batch_sleep_ms: Pause between batches.
        max_batches:    Safety valve per invocation.
        provenance:     Site id written into the mapping's provenance column.
        progress_cb:    Optional ``(message, current, total)`` callback.
        sleep, clock:   Injectable time functions.

    Example::

        engine = BatchEngine(db, repo, provenance="site_a")
        job = engine.create_job("archive_orders", mapping, JobOperation.ARCHIVE,
                                predicate=cutoff.archive_predicate())
        result = engine.run_batch_job(job)
    """

    def __init__(
        self,
        db: DatabaseManager,
        repo: MetadataRepository,
        batch_sleep_ms: int | None = None,
        max_batches: int | None = None,
        provenance: str | None = None,
        progress_cb: ProgressCallback | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._db = db
        self._repo = repo
        self._batch_sleep = (
            CONFIG.migration.batch_sleep_ms if batch_sleep_ms is None else batch_sleep_ms
        ) / 1000.0
        self._max_batches = max_batches or CONFIG.migration.max_batches
        self._provenance = provenance
        self._progress_cb = progress_cb or self._default_progress
        self._sleep = sleep
        self._clock = clock

    @staticmethod
    def _default_progress(msg: str, current: int, total: int) -> None:
        log.info("%s (%d/%s)", msg, current, total if total else "?")

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def create_job(
        self,
        job_name: str,
        mapping: TableMapping,
        operation: JobOperation,
        batch_size: int | None = None,
        predicate: RowPredicate | None = None,
        max_cursor: int | None = None,
        operation_id: str | None = None,
    ) -> MigrationJob:
        """
        Register a job, or return the existing job of the same name so a
        restarted driver resumes from its checkpoint.

        Without a *predicate* the caller must pass *max_cursor* as the
        explicit terminal key; with one, the current maximum matching key is
        snapshotted.

        Raises:
            BatchValidationError: On a non-positive batch size, a missing
                relation, an unbounded job, or another active job on the
                same source relation.
        """
        existing = self._repo.find_job_by_name(job_name)
        if existing is not None:
            if (existing.source_table, existing.target_table) != (
                mapping.source_table, mapping.target_table
            ):
                raise BatchValidationError(
                    f"Job {job_name!r} already exists for "
                    f"{existing.source_table} → {existing.target_table}"
                )
            log.info(
                "Reusing job %s (status=%s, cursor=%s)",
                job_name, existing.status.value, existing.last_processed_cursor,
            )
            return existing

        size = CONFIG.migration.batch_size if batch_size is None else batch_size
        if size <= 0:
            raise BatchValidationError(f"Batch size must be positive, got {size}")
        for table in (mapping.source_table, mapping.target_table):
            if not self._db.table_exists(table):
                raise BatchValidationError(f"Table {table!r} does not exist")
        if predicate is None and max_cursor is None:
            raise BatchValidationError(
                f"Job {job_name!r} has no cutoff; an explicit terminal key is required"
            )

        active = self._repo.find_active_job(mapping.source_table)
        if active is not None:
            raise BatchValidationError(
                f"Table {mapping.source_table!r} already has an active job "
                f"{active.job_name!r} ({active.status.value})"
            )

        if max_cursor is None:
            max_cursor = self._db.max_key(mapping.source_table, mapping.key_column, predicate)
        total = (
            0 if max_cursor is None
            else self._db.count_range(
                mapping.source_table, mapping.key_column, predicate, max_cursor
            )
        )

        job = MigrationJob(
            job_name=job_name,
            source_table=mapping.source_table,
            target_table=mapping.target_table,
            operation=operation,
            batch_size=size,
            operation_id=operation_id,
            mapping=mapping.to_dict(),
            total_rows=total,
            max_cursor=max_cursor,
        )
        job.predicate = predicate
        self._repo.create_job(job)
        log.info(
            "Created %s job %s: %s → %s, %d rows up to key %s%s",
            operation.value, job_name, job.source_table, job.target_table, total,
            max_cursor, f" where {predicate.describe()}" if predicate else "",
        )
        return job

    def run_batch_job(
        self,
        job: MigrationJob,
        cutoff: RowPredicate | None = None,
        batch_size: int | None = None,
    ) -> BatchRunResult:
        """
        Copy batches until the range is exhausted, the job is paused or the
        max-batch safety valve trips.

        Args:
            job:        Job to drive (re-read from the repository first).
            cutoff:     Predicate to apply; must match the job's stored one
                        once the job has made progress.
            batch_size: Override for the stored batch size.

        Raises:
            BatchValidationError: On invalid arguments (nothing touched).
            BatchJobError:        When a batch fails (job marked FAILED).
        """
        job = self._repo.get_job(job.job_id) or job
        size = job.batch_size if batch_size is None else batch_size
        if size <= 0:
            raise BatchValidationError(f"Batch size must be positive, got {size}")
        if cutoff is not None and cutoff != job.predicate:
            if job.last_processed_cursor is not None:
                raise BatchValidationError(
                    f"Job {job.job_name!r} already progressed under "
                    f"{job.predicate.describe() if job.predicate else 'no cutoff'}"
                )
            job.predicate = cutoff
        if job.predicate is None and job.max_cursor is None and job.status is not JobStatus.COMPLETED:
            raise BatchValidationError(f"Job {job.job_name!r} is unbounded")

        result = BatchRunResult(
            job_id=job.job_id,
            job_name=job.job_name,
            status=job.status,
            total_processed=job.processed_rows,
        )
        if job.status is JobStatus.COMPLETED:
            result.stopped_reason = "already completed"
            return result
        if job.status is JobStatus.PAUSED:
            log.info("Job %s is paused; not running", job.job_name)
            result.stopped_reason = "paused"
            return result

        mapping = job.table_mapping()
        job.batch_size = size
        job.status = JobStatus.RUNNING
        job.start_time = job.start_time or utcnow()
        job.error_detail = None
        self._repo.save_job(job)

        started = self._clock()
        reason = "exhausted"
        while True:
            if result.batches_run >= self._max_batches:
                reason = "max_batches"
                job.status = JobStatus.PAUSED
                job.error_detail = (
                    f"Stopped after {result.batches_run} batches ({SAFETY_STOP})"
                )
                self._repo.save_job(job)
                log.warning("Job %s hit the max batch limit (%d)", job.job_name, self._max_batches)
                break
            if self._pause_requested(job):
                reason = "paused"
                log.info("Job %s paused before batch %d", job.job_name, job.current_batch + 1)
                break

            batch_number = job.current_batch + 1
            cursor_start = job.last_processed_cursor
            batch_started = self._clock()
            try:
                with self._db.transaction():
                    copied = self._db.copy_batch(
                        mapping,
                        after_key=cursor_start,
                        limit=size,
                        predicate=job.predicate,
                        upper_key=job.max_cursor,
                        provenance=self._provenance,
                    )
            except Exception as exc:
                self._record_failure(job, batch_number, cursor_start, batch_started, exc)
                raise BatchJobError(job, batch_number, exc) from exc

            if copied.rows_seen == 0:
                break

            if copied.last_key is not None and (
                job.last_processed_cursor is None or copied.last_key > job.last_processed_cursor
            ):
                job.last_processed_cursor = copied.last_key
            job.processed_rows += copied.rows_seen
            job.current_batch = batch_number
            self._checkpoint(job)

            duration = self._clock() - batch_started
            self._repo.append_batch_record(BatchExecutionRecord(
                job_id=job.job_id,
                batch_number=batch_number,
                cursor_start=cursor_start,
                cursor_end=copied.last_key,
                rows_affected=copied.rows_written,
                duration_seconds=round(duration, 4),
                outcome=BatchOutcome.COMPLETED,
            ))
            result.batches_run += 1
            result.rows_processed += copied.rows_seen
            log.debug(
                "Job %s batch %d: %d read, %d written, cursor %s → %s",
                job.job_name, batch_number, copied.rows_seen, copied.rows_written,
                cursor_start, copied.last_key,
            )
            self._progress_cb(
                f"{job.operation.value} {job.source_table} → {job.target_table}",
                job.processed_rows,
                job.total_rows,
            )

            if job.status is JobStatus.PAUSED:
                reason = "paused"
                log.info("Job %s paused after batch %d", job.job_name, batch_number)
                break
            if self._batch_sleep > 0:
                self._sleep(self._batch_sleep)

        if reason == "exhausted":
            job.status = JobStatus.COMPLETED
            job.end_time = utcnow()
            self._repo.save_job(job)
            log.info(
                "Job %s completed: %d rows in %d batches",
                job.job_name, job.processed_rows, job.current_batch,
            )

        result.status = job.status
        result.total_processed = job.processed_rows
        result.stopped_reason = reason
        result.elapsed_seconds = self._clock() - started
        return result

    def pause_job(self, job_id: str) -> bool:
        """Ask a job to stop before its next batch. False if not pausable."""
        job = self._repo.get_job(job_id)
        if job is None or job.status not in (JobStatus.PENDING, JobStatus.RUNNING):
            return False
        job.status = JobStatus.PAUSED
        self._repo.save_job(job)
        log.info("Job %s paused", job.job_name)
        return True

    def resume_job(self, job_id: str) -> bool:
        """
        Mark a paused job RUNNING again. The driver must re-invoke
        ``run_batch_job``; it continues from the persisted checkpoint.
        """
        job = self._repo.get_job(job_id)
        if job is None or job.status is not JobStatus.PAUSED:
            return False
        job.status = JobStatus.RUNNING
        job.error_detail = None
        self._repo.save_job(job)
        log.info("Job %s resumed at cursor %s", job.job_name, job.last_processed_cursor)
        return True

    def continue_after_safety_stop(self, job_id: str) -> bool:
        """
        Resume a job the max-batch safety valve paused. A job paused through
        ``pause_job`` stays paused until ``resume_job``.
        """
        job = self._repo.get_job(job_id)
        if job is None or job.status is not JobStatus.PAUSED:
            return False
        if SAFETY_STOP not in (job.error_detail or ""):
            return False
        return self.resume_job(job_id)

    def abandon_jobs(self, operation_id: str, reason: str) -> list[MigrationJob]:
        """Mark the operation's unfinished jobs FAILED, releasing their relations."""
        abandoned = []
        for job in self._repo.list_jobs(operation_id):
            if not job.status.is_active:
                continue
            job.status = JobStatus.FAILED
            job.error_detail = reason
            job.end_time = utcnow()
            self._repo.save_job(job)
            abandoned.append(job)
            log.warning("Job %s abandoned: %s", job.job_name, reason)
        return abandoned

    def get_progress(self, job_id: str) -> JobProgress | None:
        """Percentage, throughput and ETA derived from the batch log."""
        job = self._repo.get_job(job_id)
        if job is None:
            return None
        records = [
            r for r in self._repo.list_batch_records(job_id)
            if r.outcome is BatchOutcome.COMPLETED
        ]
        total_seconds = sum(r.duration_seconds for r in records)
        avg = total_seconds / len(records) if records else 0.0
        last = records[-1].duration_seconds if records else None
        if job.start_time is not None:
            end = job.end_time or utcnow()
            elapsed = format_duration((end - job.start_time).total_seconds())
        else:
            elapsed = format_duration(0)
        eta = None
        if job.status in (JobStatus.RUNNING, JobStatus.PAUSED):
            eta = estimate_completion_time(
                job.total_rows, job.processed_rows, job.batch_size, avg
            )
        return JobProgress(
            job_id=job.job_id,
            job_name=job.job_name,
            status=job.status,
            processed_rows=job.processed_rows,
            total_rows=job.total_rows,
            percentage=(
                100.0 if job.status is JobStatus.COMPLETED
                else calculate_progress_percentage(job.processed_rows, job.total_rows)
            ),
            current_batch=job.current_batch,
            rows_per_second=calculate_throughput(job.processed_rows, total_seconds),
            avg_batch_seconds=round(avg, 4),
            last_batch_seconds=last,
            estimated_completion=eta,
            elapsed=elapsed,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _pause_requested(self, job: MigrationJob) -> bool:
        stored = self._repo.get_job(job.job_id)
        if stored is not None and stored.status is JobStatus.PAUSED:
            job.status = JobStatus.PAUSED
            return True
        return job.status is JobStatus.PAUSED

    def _checkpoint(self, job: MigrationJob) -> None:
        """Persist progress without overwriting a pause requested meanwhile."""
        self._pause_requested(job)
        self._repo.save_job(job)

    def _record_failure(
        self,
        job: MigrationJob,
        batch_number: int,
        cursor_start: int | None,
        batch_started: float,
        exc: BaseException,
    ) -> None:
        log.error("Job %s batch %d failed: %s", job.job_name, batch_number, exc)
        self._repo.append_batch_record(BatchExecutionRecord(
            job_id=job.job_id,
            batch_number=batch_number,
            cursor_start=cursor_start,
            cursor_end=None,
            rows_affected=0,
            duration_seconds=round(self._clock() - batch_started, 4),
            outcome=BatchOutcome.FAILED,
            error_text=str(exc),
        ))
        job.status = JobStatus.FAILED
        job.error_detail = f"Batch {batch_number}: {exc}"
        job.end_time = utcnow()
        self._repo.save_job(job)
