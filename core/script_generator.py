"""
core/script_generator.py
------------------------
Generates operator runbooks for the steps that happen on another site or
outside this tool.

Design Decisions:
    * Output is plain text (shell + SQL) an operator can read top to bottom
      and run by hand on the partner site; nothing in it requires this
      process to be reachable.
    * Every runbook starts with a site-role check and ends with a
      verification query, so a step run on the wrong site stops early.
    * Scripts are returned as strings; ``write_script`` saves them under
      ``SCRIPTS_DIR`` when a file is wanted.
"""
from __future__ import annotations

import datetime
from pathlib import Path

from config import CONFIG
from logger import get_logger

log = get_logger(__name__)

_PARTNER_TEMPLATE = """\
# =====================================================================
# PARTNER SITE RUNBOOK
# Operation    : {operation_id}
# Table        : {source_table} → {target_table} (archive {archive_table})
# Coordinator  : {coordinator_site}
# Partner      : {partner_site}
# Generated    : {timestamp}
# =====================================================================
# Run on the PARTNER site after the coordinator has started the
# operation. The coordinator waits for this site to reach PREPARED.

# 1. Confirm this site accepts writes
tablemigrate readiness

# 2. Check replication before pausing it
tablemigrate replication-status

# 3. Join the operation as partner (same operation id)
tablemigrate start {source_table} \\
    --site {partner_site} \\
    --partner \\
    --operation-id {operation_id} \\
    --target {target_table} \\
    --archive {archive_table} \\
    --order-column {order_column} \\
    --retention {retention}

# 4. If this site cannot run step 3 but is ready, tell the coordinator
#    directly (on the coordinator site):
#    tablemigrate partner-ready {operation_id} --site {coordinator_site}

# 5. Follow progress on both sites
tablemigrate status {operation_id}

# 6. Verify the row split once MIGRATION_COMPLETED is reached
tablemigrate validate {source_table} --target {target_table} --archive {archive_table}
"""

_FAILOVER_TEMPLATE = """\
-- =====================================================================
-- EMERGENCY FAILOVER RECOVERY SCRIPT
-- Site       : {site_name}
-- Generated  : {timestamp}
-- =====================================================================
{table_sections}
-- General recovery steps
-- 1. Verify this site is now primary
SELECT pg_is_in_recovery() AS is_standby;

-- 2. Operations touched in the last 24 hours
SELECT operation_id, site_name, table_name, status, phase, notes
FROM coordination_operations
WHERE initiated_at > now() - INTERVAL '24 hours'
ORDER BY initiated_at DESC;

-- 3. Re-enable every paused table
UPDATE replication_control
SET replication_enabled = TRUE,
    notes = 'Enabled after failover',
    updated_at = now()
WHERE replication_enabled = FALSE;

-- 4. Re-enable subscriptions left disabled by an interrupted operation
SELECT 'ALTER SUBSCRIPTION ' || quote_ident(subname) || ' ENABLE;'
FROM pg_subscription WHERE NOT subenabled;
"""

_FAILOVER_TABLE_SECTION = """
-- Recovery for table: {table}
-- 1. Recent audit entries
SELECT operation, status, start_time, error_message, notes
FROM migration_audit
WHERE table_name = '{table}'
ORDER BY start_time DESC LIMIT 5;

-- 2. Replication control state
SELECT * FROM replication_control WHERE table_name = '{table}';

-- 3. Resume forwarding if still paused (shell)
--    tablemigrate resume-replication {table}

-- 4. Backups available for rollback
SELECT table_name FROM information_schema.tables
WHERE table_name LIKE '{table}\\_backup\\_%' ORDER BY table_name DESC;
"""

_COMPARISON_TEMPLATE = """\
-- =====================================================================
-- CROSS-SITE COMPARISON: {table}
-- Generated : {timestamp}
-- Run on BOTH sites and compare the output.
-- =====================================================================

-- Row count
SELECT '{table}' AS table_name, COUNT(*) AS row_count,
       CASE WHEN pg_is_in_recovery() THEN 'STANDBY' ELSE 'PRIMARY' END AS site_role
FROM "{table}";

-- Key checksum over the full key ordering
SELECT '{table}' AS table_name,
       md5(COALESCE(string_agg("{key_column}"::text, ',' ORDER BY "{key_column}"), '')) AS key_checksum
FROM "{table}";

-- Rows per hour over the last 24 hours
SELECT date_trunc('hour', "{order_column}") AS hour_bucket, COUNT(*) AS rows_per_hour
FROM "{table}"
WHERE "{order_column}" > now() - INTERVAL '24 hours'
GROUP BY 1
ORDER BY 1 DESC;
"""


def _timestamp() -> str:
    return datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def generate_partner_script(
    operation_id: str,
    source_table: str,
    target_table: str | None = None,
    archive_table: str | None = None,
    coordinator_site: str | None = None,
    partner_site: str | None = None,
    order_column: str = "created_at",
    retention: float | None = None,
) -> str:
    """Runbook for joining *operation_id* from the partner site."""
    cfg = CONFIG.coordination
    return _PARTNER_TEMPLATE.format(
        operation_id=operation_id,
        source_table=source_table,
        target_table=target_table or f"{source_table}_new",
        archive_table=archive_table or f"{source_table}_archive",
        coordinator_site=coordinator_site or cfg.site_name,
        partner_site=partner_site or cfg.partner_site_name,
        order_column=order_column,
        retention=CONFIG.migration.retention if retention is None else retention,
        timestamp=_timestamp(),
    )


def generate_failover_script(tables: list[str], site_name: str | None = None) -> str:
    """Recovery SQL for a site taking over in the middle of a migration."""
    sections = "".join(_FAILOVER_TABLE_SECTION.format(table=t) for t in tables)
    return _FAILOVER_TEMPLATE.format(
        site_name=site_name or CONFIG.coordination.site_name,
        timestamp=_timestamp(),
        table_sections=sections,
    )


def generate_comparison_script(
    table: str, key_column: str = "id", order_column: str = "created_at"
) -> str:
    """SQL to run on both sites to confirm they hold the same rows."""
    return _COMPARISON_TEMPLATE.format(
        table=table, key_column=key_column, order_column=order_column, timestamp=_timestamp()
    )


def write_script(content: str, filename: str, output_dir: Path | str | None = None) -> Path:
    """Save a generated script; returns its path."""
    out_dir = Path(output_dir or CONFIG.migration.scripts_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / filename
    out_path.write_text(content, encoding="utf-8")
    log.info("Generated script: %s", out_path)
    return out_path
