"""
cli.py
------
Command-line entry point (``tablemigrate``) for one site of the pair.

Every command opens a ``MigrationService`` from ``CONFIG``, calls one
operation and prints its structured result. Exit status is 0 on success
and 1 when the operation reports failure.

Examples::

    tablemigrate readiness
    tablemigrate start orders --coordinator --operation-id op-42
    tablemigrate status op-42
    tablemigrate switch orders orders_new
"""
from __future__ import annotations

import json
import sys
from contextlib import contextmanager
from typing import Iterator

import click

from config import CONFIG
from core.coordinator import CoordinationError, CutoverStrategy
from core.replication import ReplicationControlError
from core.service import MigrationService


@contextmanager
def _service(ctx: click.Context) -> Iterator[MigrationService]:
    """Service for one command; ``ctx.obj["service_factory"]`` overrides the default."""
    factory = (ctx.obj or {}).get("service_factory", MigrationService.from_config)
    service = factory()
    try:
        yield service
    finally:
        service.close()


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _fail(message: str) -> None:
    click.echo(f"ERROR: {message}", err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=CONFIG.app_version, prog_name="tablemigrate")
def main():
    """
    tablemigrate - coordinated archive / migrate / cutover of tables across
    a replicated site pair.
    """


# ---------------------------------------------------------------------------
# Setup and status
# ---------------------------------------------------------------------------

@main.command("init-db")
@click.pass_context
def init_db(ctx):
    """Create the metadata tables."""
    with _service(ctx) as service:
        service.initialize_metadata()
    click.echo("Metadata schema initialized")


@main.command()
@click.pass_context
def readiness(ctx):
    """Run the pre-migration checks on this site."""
    with _service(ctx) as service:
        report = service.validate_readiness()
    for check in report.checks:
        click.echo(f"[{check.status:<7}] {check.name}: {check.details}")
        click.echo(f"          → {check.action}")
    if not report.ready:
        sys.exit(1)


@main.command("replication-status")
@click.pass_context
def replication_status(ctx):
    """Site role, lag and replication objects."""
    with _service(ctx) as service:
        _echo_json(service.replication_status().to_dict())


@main.command()
@click.argument("operation_id")
@click.pass_context
def status(ctx, operation_id):
    """Every site's view of OPERATION_ID plus its jobs."""
    with _service(ctx) as service:
        report = service.check_status(operation_id)
    if not report.found:
        _fail(f"Operation {operation_id} not found")
    _echo_json({"operation_id": operation_id, "sites": report.sites, "jobs": report.jobs})


# ---------------------------------------------------------------------------
# Coordinated migration
# ---------------------------------------------------------------------------

@main.command()
@click.argument("source_table")
@click.option("--site", help="This site's name (default: SITE_NAME)")
@click.option("--coordinator/--partner", default=False, help="Role in the operation")
@click.option("--wait/--no-wait", "wait_for_partner", default=True,
              help="Coordinator waits for partner readiness before pausing sync")
@click.option("--operation-id", help="Join or resume this operation")
@click.option("--target", "target_table", help="New table (default: <source>_new)")
@click.option("--archive", "archive_table", help="Archive table (default: <source>_archive)")
@click.option("--order-column", default="created_at", show_default=True)
@click.option("--retention", type=click.FloatRange(0.0, 1.0),
              help="Fraction of newest rows to keep (default: MIGRATION_RETENTION)")
@click.option("--batch-size", type=click.IntRange(min=1))
@click.option("--strategy", type=click.Choice([s.value for s in CutoverStrategy]),
              default=CutoverStrategy.CAPTURE_THEN_SWITCH.value, show_default=True)
@click.option("--sampled", is_flag=True, help="Estimate the cutoff from a table sample")
@click.option("--poll-interval", type=float, help="Seconds between partner checks")
@click.option("--poll-attempts", type=int, help="Partner checks before timing out")
@click.option("--dry-run", is_flag=True, help="Compute the plan without changing anything")
@click.pass_context
def start(ctx, source_table, site, coordinator, wait_for_partner, operation_id, target_table,
          archive_table, order_column, retention, batch_size, strategy, sampled,
          poll_interval, poll_attempts, dry_run):
    """
    Start (or resume) the coordinated migration of SOURCE_TABLE.

    Examples:

      # Coordinator
      tablemigrate start orders --coordinator --operation-id op-42

      # Partner, same operation id
      tablemigrate start orders --site site_b --partner --operation-id op-42
    """
    with _service(ctx) as service:
        result = service.start_coordinated_migration(
            site_name=site,
            source_table=source_table,
            target_table=target_table,
            archive_table=archive_table,
            is_coordinator=coordinator,
            wait_for_partner=wait_for_partner,
            operation_id=operation_id,
            order_column=order_column,
            retention=retention,
            batch_size=batch_size,
            strategy=CutoverStrategy(strategy),
            dry_run=dry_run,
            poll_interval=poll_interval,
            poll_attempts=poll_attempts,
            sampled_cutoff=sampled,
        )
    click.echo(str(result))
    if result.plan is not None:
        plan = result.plan
        click.echo(
            f"  cutoff {plan.cutoff.column} = {plan.cutoff.boundary!r} "
            f"({'exact' if plan.cutoff.exact else 'sampled'})"
        )
        click.echo(f"  archive {plan.rows_to_archive} → {plan.archive_table}")
        click.echo(f"  migrate {plan.rows_to_migrate} → {plan.target_table}")
    else:
        click.echo(f"  archived {result.archived_rows}, migrated {result.migrated_rows}")
        if result.backup_table:
            click.echo(f"  legacy data kept in {result.backup_table}")
        if result.notes:
            click.echo(f"  notes: {result.notes}")
    if not result.success:
        sys.exit(1)


@main.command("partner-ready")
@click.argument("operation_id")
@click.option("--site", help="Site whose row is marked (default: SITE_NAME)")
@click.pass_context
def partner_ready(ctx, operation_id, site):
    """Tell a waiting coordinator that the partner is ready."""
    with _service(ctx) as service:
        try:
            op = service.mark_partner_ready(operation_id, site)
        except CoordinationError as e:
            _fail(str(e))
    click.echo(f"Partner marked ready for {op.operation_id} on {op.site_name}")


@main.command()
@click.argument("source_table")
@click.option("--target", "target_table")
@click.option("--archive", "archive_table")
@click.option("--key-column", default="id", show_default=True)
@click.pass_context
def validate(ctx, source_table, target_table, archive_table, key_column):
    """Check that archive + new table account for every original row."""
    with _service(ctx) as service:
        try:
            report = service.validate_consistency(source_table, target_table, archive_table, key_column)
        except CoordinationError as e:
            _fail(str(e))
    click.echo(str(report))
    if not report.consistent:
        sys.exit(1)


# ---------------------------------------------------------------------------
# Cutover
# ---------------------------------------------------------------------------

@main.command()
@click.argument("old_table")
@click.argument("new_table")
@click.option("--backup-suffix", help="Default: _backup_<YYYYMMDD_HHMMSS>")
@click.option("--force", is_flag=True, help="Allow the switch on a standby site")
@click.option("--check", is_flag=True, help="Only validate, do not switch")
@click.pass_context
def switch(ctx, old_table, new_table, backup_suffix, force, check):
    """Swap NEW_TABLE into OLD_TABLE's name, keeping a backup."""
    with _service(ctx) as service:
        if check:
            readiness_report = service.validate_switch(old_table, new_table, force)
            for problem in readiness_report.problems:
                click.echo(f"  ✗ {problem}")
            click.echo("Ready to switch" if readiness_report.ready else "Not ready")
            if not readiness_report.ready:
                sys.exit(1)
            return
        result = service.atomic_switch(old_table, new_table, backup_suffix, force)
    click.echo(str(result))
    if result.manual_intervention_required:
        click.echo("MANUAL INTERVENTION REQUIRED: inspect table names before retrying", err=True)
    if not result.success:
        sys.exit(1)


@main.command()
@click.argument("current_table")
@click.argument("backup_table")
@click.option("--force-on-standby", is_flag=True)
@click.option("--keep-replaced", is_flag=True, help="Keep the replaced table under a temp name")
@click.pass_context
def rollback(ctx, current_table, backup_table, force_on_standby, keep_replaced):
    """Put BACKUP_TABLE back under CURRENT_TABLE's name."""
    with _service(ctx) as service:
        result = service.rollback(current_table, backup_table, force_on_standby, not keep_replaced)
    if not result.success:
        _fail(result.error or "rollback failed")
    click.echo(f"Restored {current_table} from {backup_table} ({result.restored_rows} rows)")
    if not result.replaced_dropped:
        click.echo(f"  replaced table kept as {result.replaced_table}")


# ---------------------------------------------------------------------------
# Replication control
# ---------------------------------------------------------------------------

@main.command("pause-replication")
@click.argument("table_name")
@click.option("--reason", default="Table migration in progress", show_default=True)
@click.pass_context
def pause_replication(ctx, table_name, reason):
    """Turn off change forwarding for TABLE_NAME."""
    with _service(ctx) as service:
        try:
            service.pause_table_replication(table_name, reason)
        except ReplicationControlError as e:
            _fail(str(e))
    click.echo(f"Replication paused for {table_name}")


@main.command("resume-replication")
@click.argument("table_name")
@click.pass_context
def resume_replication(ctx, table_name):
    """Turn change forwarding for TABLE_NAME back on."""
    with _service(ctx) as service:
        try:
            service.resume_table_replication(table_name)
        except ReplicationControlError as e:
            _fail(str(e))
    click.echo(f"Replication resumed for {table_name}")


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

@main.command("job-progress")
@click.argument("job_id")
@click.pass_context
def job_progress(ctx, job_id):
    with _service(ctx) as service:
        progress = service.job_progress(job_id)
    if progress is None:
        _fail(f"Job {job_id} not found")
    click.echo(
        f"{progress.job_name} [{progress.status.value}] "
        f"{progress.processed_rows}/{progress.total_rows} ({progress.percentage}%) "
        f"batch {progress.current_batch}, {progress.rows_per_second} rows/s, "
        f"elapsed {progress.elapsed}"
    )
    if progress.estimated_completion:
        click.echo(f"  ETA {progress.estimated_completion.isoformat()}")


@main.command("pause-job")
@click.argument("job_id")
@click.pass_context
def pause_job(ctx, job_id):
    with _service(ctx) as service:
        if not service.pause_job(job_id):
            _fail(f"Job {job_id} not found or not pausable")
    click.echo(f"Job {job_id} paused")


@main.command("resume-job")
@click.argument("job_id")
@click.pass_context
def resume_job(ctx, job_id):
    with _service(ctx) as service:
        if not service.resume_job(job_id):
            _fail(f"Job {job_id} not found or not paused")
    click.echo(f"Job {job_id} resumed; re-run `start` with its operation id to continue")


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

@main.command("cleanup-backups")
@click.argument("pattern")
@click.option("--older-than", "older_than_days", type=click.IntRange(min=0),
              help="Days (default: BACKUP_RETENTION_DAYS)")
@click.option("--execute", is_flag=True, help="Drop the tables (default is a dry run)")
@click.pass_context
def cleanup_backups(ctx, pattern, older_than_days, execute):
    """Drop backup tables matching PATTERN past the retention period."""
    with _service(ctx) as service:
        result = service.cleanup_old_backups(pattern, older_than_days, dry_run=not execute)
    for backup in result.candidates:
        state = "dropped" if backup.dropped else ("error: " + backup.error if backup.error else "would drop")
        click.echo(f"  {backup.name} ({backup.age_days} days) {state}")
    click.echo(f"{len(result.candidates)} candidate(s), {result.dropped_count} dropped")


@main.command("cleanup-logs")
@click.option("--days", "days_to_keep", type=click.IntRange(min=0),
              help="Days to keep (default: BATCH_LOG_RETENTION_DAYS)")
@click.pass_context
def cleanup_logs(ctx, days_to_keep):
    """Purge old batch records and finished operations."""
    with _service(ctx) as service:
        result = service.cleanup_batch_logs(days_to_keep)
    click.echo(
        f"Removed {result.batch_records_deleted} batch record(s) and "
        f"{result.operations_deleted} operation(s) older than {result.days_to_keep} days"
    )


@main.command("partner-script")
@click.argument("operation_id")
@click.argument("source_table")
@click.option("--target", "target_table")
@click.option("--archive", "archive_table")
@click.option("--save", is_flag=True, help="Write to SCRIPTS_DIR instead of stdout")
@click.pass_context
def partner_script(ctx, operation_id, source_table, target_table, archive_table, save):
    """Runbook for the partner site."""
    with _service(ctx) as service:
        script = service.generate_partner_script(
            operation_id, source_table, target_table, archive_table, save=save
        )
    click.echo(f"Saved {script.path}" if script.path else script.content)


@main.command("failover-script")
@click.argument("tables", nargs=-1, required=True)
@click.option("--save", is_flag=True)
@click.pass_context
def failover_script(ctx, tables, save):
    """Recovery SQL for a site taking over mid-migration."""
    with _service(ctx) as service:
        script = service.generate_failover_script(list(tables), save=save)
    click.echo(f"Saved {script.path}" if script.path else script.content)


@main.command("compare-script")
@click.argument("table_name")
@click.option("--save", is_flag=True)
@click.pass_context
def compare_script(ctx, table_name, save):
    """SQL to run on both sites to compare TABLE_NAME."""
    with _service(ctx) as service:
        script = service.generate_comparison_script(table_name, save=save)
    click.echo(f"Saved {script.path}" if script.path else script.content)


# ---------------------------------------------------------------------------
# API server
# ---------------------------------------------------------------------------

@main.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
def serve(host, port):
    """Run the HTTP API for this site."""
    import uvicorn

    uvicorn.run("services.api.main:app", host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
