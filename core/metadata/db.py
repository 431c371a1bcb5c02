"""
core/metadata/db.py
-------------------
Connection pool for the PostgreSQL metadata store.

Design Decisions:
    * A small ``SimpleConnectionPool`` with ``RealDictCursor`` so repository
      code reads rows by column name.
    * ``connection()`` hands out a pooled connection for one unit of work:
      commit on success, rollback on error, always returned to the pool.
    * The orchestrator's driver loop is single-threaded per operation; the
      pool exists for the HTTP layer, which may serve status reads while a
      migration runs.
"""
from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Generator

import psycopg2
from psycopg2.extensions import connection as PgConnection
from psycopg2.extras import RealDictCursor
from psycopg2.pool import SimpleConnectionPool

from config import CONFIG, MetadataConfig
from logger import get_logger

log = get_logger(__name__)


class MetadataDB:
    """Manages pooled connections to the metadata database."""

    def __init__(
        self,
        cfg: MetadataConfig | None = None,
        min_conn: int = 1,
        max_conn: int = 5,
    ) -> None:
        self.cfg = cfg or CONFIG.metadata
        self.pool: SimpleConnectionPool | None = None
        self.min_conn = min_conn
        self.max_conn = max_conn

    def connect(self) -> None:
        """Initialize the connection pool."""
        try:
            self.pool = SimpleConnectionPool(
                self.min_conn,
                self.max_conn,
                host=self.cfg.host,
                port=self.cfg.port,
                database=self.cfg.database,
                user=self.cfg.user,
                password=self.cfg.password,
                cursor_factory=RealDictCursor,
            )
            log.info(
                "Connected to metadata DB: %s@%s:%s/%s",
                self.cfg.user, self.cfg.host, self.cfg.port, self.cfg.database,
            )
        except psycopg2.Error as exc:
            log.error("Failed to connect to metadata DB: %s", exc)
            raise

    @contextmanager
    def connection(self) -> Generator[PgConnection, None, None]:
        if not self.pool:
            raise RuntimeError("Metadata pool not initialized. Call connect() first.")
        conn = self.pool.getconn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self.pool.putconn(conn)

    def close(self) -> None:
        """Close all connections in the pool."""
        if self.pool:
            self.pool.closeall()
            self.pool = None
            log.info("Metadata DB connection pool closed")

    def initialize_schema(self, schema_file: Path | str | None = None) -> None:
        """
        Create the metadata tables from *schema_file* (statements are
        idempotent, so this runs on every start).
        """
        path = Path(schema_file or self.cfg.schema_file)
        if not path.exists():
            log.warning("Schema file not found: %s", path)
            return
        with self.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(path.read_text(encoding="utf-8"))
        log.info("Metadata schema initialized from %s", path)

    def health_check(self) -> bool:
        try:
            with self.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    return cur.fetchone() is not None
        except (psycopg2.Error, RuntimeError) as exc:
            log.error("Metadata health check failed: %s", exc)
            return False
