"""
config.py
---------
Centralised configuration management for the table migration orchestrator.

Loads settings from environment variables (with .env file support via
python-dotenv). Provides typed settings as frozen dataclasses so
configuration is immutable at runtime.

Design Decision:
    Using a dataclass with class-level defaults means the orchestrator works
    "out of the box" against a local PostgreSQL without any .env file, while
    still allowing environment-based overrides for each site of the pair.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

_env_path = Path(__file__).parent / ".env"
if _env_path.exists():
    load_dotenv(dotenv_path=_env_path)


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings for the database holding the migrated tables."""
    host: str = field(default_factory=lambda: os.getenv("DB_HOST", "localhost"))
    port: int = field(default_factory=lambda: int(os.getenv("DB_PORT", "5432")))
    database: str = field(default_factory=lambda: os.getenv("DB_NAME", "postgres"))
    user: str = field(default_factory=lambda: os.getenv("DB_USER", "postgres"))
    password: str = field(default_factory=lambda: os.getenv("DB_PASSWORD", ""))
    connect_timeout: int = field(
        default_factory=lambda: int(os.getenv("DB_CONNECT_TIMEOUT", "10"))
    )


@dataclass(frozen=True)
class MetadataConfig:
    """
    Connection settings for the metadata store (jobs, batch log, operations,
    replication control, audit log).

    Defaults to the data database; a separate connection is always opened so
    metadata commits never share a transaction with copied rows.
    """
    host: str = field(
        default_factory=lambda: os.getenv("METADATA_DB_HOST", os.getenv("DB_HOST", "localhost"))
    )
    port: int = field(
        default_factory=lambda: int(os.getenv("METADATA_DB_PORT", os.getenv("DB_PORT", "5432")))
    )
    database: str = field(
        default_factory=lambda: os.getenv("METADATA_DB_NAME", os.getenv("DB_NAME", "postgres"))
    )
    user: str = field(
        default_factory=lambda: os.getenv("METADATA_DB_USER", os.getenv("DB_USER", "postgres"))
    )
    password: str = field(
        default_factory=lambda: os.getenv("METADATA_DB_PASSWORD", os.getenv("DB_PASSWORD", ""))
    )
    schema_file: Path = field(
        default_factory=lambda: Path(
            os.getenv("METADATA_SCHEMA_FILE", str(Path(__file__).parent / "schema.sql"))
        )
    )


@dataclass(frozen=True)
class MigrationConfig:
    """Batch engine settings."""
    batch_size: int = field(
        default_factory=lambda: int(os.getenv("MIGRATION_BATCH_SIZE", "10000"))
    )
    batch_sleep_ms: int = field(
        default_factory=lambda: int(os.getenv("MIGRATION_BATCH_SLEEP_MS", "100"))
    )
    max_batches: int = field(
        default_factory=lambda: int(os.getenv("MIGRATION_MAX_BATCHES", "1000"))
    )
    retention: float = field(
        default_factory=lambda: float(os.getenv("MIGRATION_RETENTION", "0.1"))
    )
    mapping_file: Path = field(
        default_factory=lambda: Path(os.getenv("MAPPING_FILE", "table_mappings.json"))
    )
    log_level: str = field(
        default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper()
    )
    log_file: str | None = field(
        default_factory=lambda: os.getenv("LOG_FILE")  # None → log to stderr only
    )
    scripts_dir: Path = field(
        default_factory=lambda: Path(os.getenv("SCRIPTS_DIR", "."))
    )


@dataclass(frozen=True)
class CoordinationConfig:
    """Cross-site handshake and replication safety thresholds."""
    site_name: str = field(default_factory=lambda: os.getenv("SITE_NAME", "site_a"))
    partner_site_name: str = field(
        default_factory=lambda: os.getenv("PARTNER_SITE_NAME", "site_b")
    )
    partner_api_url: str | None = field(
        default_factory=lambda: os.getenv("PARTNER_API_URL")
    )
    poll_interval_seconds: float = field(
        default_factory=lambda: float(os.getenv("PARTNER_POLL_INTERVAL", "5"))
    )
    poll_attempts: int = field(
        default_factory=lambda: int(os.getenv("PARTNER_POLL_ATTEMPTS", "120"))
    )
    marker_prefix: str = field(
        default_factory=lambda: os.getenv("MARKER_PREFIX", "table_rename_coordination")
    )
    max_replication_lag_bytes: int = field(
        default_factory=lambda: int(os.getenv("MAX_REPLICATION_LAG_BYTES", str(1024 * 1024)))
    )
    max_active_connections: int = field(
        default_factory=lambda: int(os.getenv("MAX_ACTIVE_CONNECTIONS", "10"))
    )
    backup_retention_days: int = field(
        default_factory=lambda: int(os.getenv("BACKUP_RETENTION_DAYS", "7"))
    )
    batch_log_retention_days: int = field(
        default_factory=lambda: int(os.getenv("BATCH_LOG_RETENTION_DAYS", "30"))
    )


@dataclass(frozen=True)
class AppConfig:
    """Root application configuration."""
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    metadata: MetadataConfig = field(default_factory=MetadataConfig)
    migration: MigrationConfig = field(default_factory=MigrationConfig)
    coordination: CoordinationConfig = field(default_factory=CoordinationConfig)
    app_name: str = "Table Migration Orchestrator"
    app_version: str = "1.0.0"


def load_config() -> AppConfig:
    """
    Build and return the application configuration.

    Returns:
        AppConfig: Fully populated (and frozen) configuration object.

    Example::

        cfg = load_config()
        print(cfg.db.host)                  # "localhost"
        print(cfg.migration.batch_size)     # 10000
        print(cfg.coordination.site_name)   # "site_a"
    """
    return AppConfig()


# Module-level singleton used throughout the application
CONFIG: AppConfig = load_config()


def get_log_level() -> int:
    """Convert string log level from config to logging module constant."""
    level = getattr(logging, CONFIG.migration.log_level, None)
    if not isinstance(level, int):
        return logging.INFO
    return level
