"""
core/database.py
----------------
PostgreSQL connection management, catalog queries and the statements the
engines issue against the storage and replication boundary.

Design Decisions:
    * ``DatabaseManager`` is a context manager so callers can use it with
      ``with`` statements and be guaranteed the connection is closed on exit.
    * Table and column names are never interpolated as text: every
      identifier is composed with ``psycopg2.sql.Identifier``. Parameterised
      execution (``%s``) is used for all data values.
    * Data movement is driven by a typed ``TableMapping``; one generic
      statement shape serves every table.
    * Retry logic is implemented for connection errors using linear back-off
      (configurable via ``max_retries`` / ``retry_delay``).
    * Catalog helpers propagate ``DatabaseError`` instead of answering
      "missing": the cutover engine must be able to tell "gone" from
      "could not check".
"""
from __future__ import annotations

import select
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Generator, Iterable

import psycopg2
from psycopg2 import sql
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from config import CONFIG, DatabaseConfig, MetadataConfig
from logger import get_logger
from models.mapping import PredicateDirection, RowPredicate, TableMapping

log = get_logger(__name__)

_FK_ACTIONS = {
    "a": "NO ACTION",
    "r": "RESTRICT",
    "c": "CASCADE",
    "n": "SET NULL",
    "d": "SET DEFAULT",
}


class DatabaseError(Exception):
    """Raised for database-level failures reported by this module."""


class ConnectionLostError(DatabaseError):
    """Raised when the connection to PostgreSQL is detected as lost."""


@dataclass(frozen=True)
class ForeignKeyRef:
    """A foreign-key constraint as found in the catalog."""
    constraint_name: str
    table_name: str
    columns: tuple[str, ...]
    referenced_table: str
    referenced_columns: tuple[str, ...]
    on_delete: str = "NO ACTION"
    on_update: str = "NO ACTION"


@dataclass(frozen=True)
class BatchCopy:
    """What one ``copy_batch`` call read and wrote."""
    rows_seen: int
    rows_written: int
    first_key: int | None
    last_key: int | None


class DatabaseManager:
    """
    psycopg2 connection wrapper used for both the data database and the
    metadata store.

    Example::

        with DatabaseManager.from_config() as db:
            if db.table_exists("orders"):
                print(db.count_rows("orders"))

            with db.transaction():
                db.rename_table("orders", "orders_backup_20240101_000000")
    """

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        connect_timeout: int = 10,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        application_name: str = "tablemigrate",
    ) -> None:
        self._host = host
        self._port = port
        self._database = database
        self._user = user
        self._password = password
        self._connect_timeout = connect_timeout
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._application_name = application_name

        self._conn: PgConnection | None = None
        self._cursor: PgCursor | None = None

    # ------------------------------------------------------------------
    # Factory helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_config(
        cls, cfg: DatabaseConfig | MetadataConfig | None = None
    ) -> "DatabaseManager":
        """Build a manager from the data (default) or metadata settings."""
        cfg = cfg or CONFIG.db
        return cls(
            host=cfg.host,
            port=cfg.port,
            database=cfg.database,
            user=cfg.user,
            password=cfg.password,
            connect_timeout=getattr(cfg, "connect_timeout", 10),
        )

    @property
    def dsn_label(self) -> str:
        return f"{self._user}@{self._host}:{self._port}/{self._database}"

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self) -> "DatabaseManager":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is not None:
            log.warning("Unhandled exception in DatabaseManager context: %s", exc_val)
            self._safe_rollback()
        self.close()
        return False

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """
        Open (or re-open) the connection, retrying with back-off.

        Raises:
            DatabaseError: If connection fails after all retries.
        """
        for attempt in range(1, self._max_retries + 1):
            try:
                log.info(
                    "Connecting to %s (attempt %d/%d)",
                    self.dsn_label, attempt, self._max_retries,
                )
                self._conn = psycopg2.connect(
                    host=self._host,
                    port=self._port,
                    dbname=self._database,
                    user=self._user,
                    password=self._password,
                    connect_timeout=self._connect_timeout,
                    application_name=self._application_name,
                )
                self._cursor = self._conn.cursor()
                log.info("Connected to %s", self.dsn_label)
                return
            except psycopg2.Error as exc:
                log.warning("Connection attempt %d failed: %s", attempt, exc)
                if attempt < self._max_retries:
                    time.sleep(self._retry_delay * attempt)
        raise DatabaseError(
            f"Could not connect to {self.dsn_label} after {self._max_retries} attempts."
        )

    def close(self) -> None:
        """Close cursor and connection, logging any cleanup errors."""
        try:
            if self._cursor is not None:
                self._cursor.close()
        except psycopg2.Error as exc:
            log.debug("Cursor close failed: %s", exc)
        try:
            if self._conn is not None and not self._conn.closed:
                self._conn.close()
                log.info("Database connection closed.")
        except psycopg2.Error as exc:
            log.debug("Connection close failed: %s", exc)
        self._cursor = None
        self._conn = None

    @property
    def is_connected(self) -> bool:
        return bool(self._conn is not None and self._conn.closed == 0)

    def _ensure_connected(self) -> None:
        if not self.is_connected:
            raise ConnectionLostError(
                "Database connection is not open. Call connect() first."
            )

    def _safe_rollback(self) -> None:
        try:
            if self.is_connected:
                self._conn.rollback()
                log.debug("Transaction rolled back.")
        except psycopg2.Error as exc:
            log.warning("Rollback failed: %s", exc)

    # ------------------------------------------------------------------
    # Public query helpers
    # ------------------------------------------------------------------

    def execute(self, query: str | sql.Composable, params: Iterable[Any] | None = None) -> PgCursor:
        """
        Execute a statement and return the cursor.

        Raises:
            ConnectionLostError: If not connected.
            DatabaseError: On PostgreSQL execution errors.
        """
        self._ensure_connected()
        assert self._cursor is not None
        try:
            self._cursor.execute(query, tuple(params) if params is not None else None)
            return self._cursor
        except psycopg2.Error as exc:
            text = query if isinstance(query, str) else query.as_string(self._conn)
            log.error("SQL execution error: %s | SQL: %.500s", exc, text)
            raise DatabaseError(str(exc).strip()) from exc

    def fetchall(self) -> list[tuple]:
        assert self._cursor is not None
        return self._cursor.fetchall() or []

    def fetchone(self) -> tuple | None:
        assert self._cursor is not None
        return self._cursor.fetchone()

    def fetch_dicts(self) -> list[dict[str, Any]]:
        """Fetch remaining rows of the last statement as column → value dicts."""
        assert self._cursor is not None
        names = [d[0] for d in self._cursor.description or []]
        return [dict(zip(names, row)) for row in self.fetchall()]

    def scalar(self, query: str | sql.Composable, params: Iterable[Any] | None = None) -> Any:
        self.execute(query, params)
        row = self.fetchone()
        return row[0] if row else None

    def commit(self) -> None:
        assert self._conn is not None
        self._conn.commit()

    def rollback(self) -> None:
        self._safe_rollback()

    @property
    def rowcount(self) -> int:
        assert self._cursor is not None
        return self._cursor.rowcount

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """
        Commit on clean exit, roll back on any exception.

        PostgreSQL DDL is transactional, so renames issued inside one
        ``transaction()`` block become visible together or not at all.
        """
        try:
            yield
            self.commit()
            log.debug("Transaction committed.")
        except Exception:
            self._safe_rollback()
            raise

    @contextmanager
    def savepoint(self, name: str) -> Generator[None, None, None]:
        """
        Nested unit inside the current transaction: a failure rolls back to
        the savepoint and leaves the enclosing transaction usable.
        """
        ident = sql.Identifier(name)
        self.execute(sql.SQL("SAVEPOINT {}").format(ident))
        try:
            yield
        except Exception:
            self.execute(sql.SQL("ROLLBACK TO SAVEPOINT {}").format(ident))
            self.execute(sql.SQL("RELEASE SAVEPOINT {}").format(ident))
            raise
        self.execute(sql.SQL("RELEASE SAVEPOINT {}").format(ident))

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def table_exists(self, table_name: str) -> bool:
        return bool(self.scalar(
            "SELECT EXISTS (SELECT 1 FROM information_schema.tables "
            "WHERE table_schema = current_schema() AND table_name = %s)",
            (table_name,),
        ))

    def list_tables_like(self, pattern: str) -> list[str]:
        """Tables in the current schema whose name matches a LIKE pattern."""
        self.execute(
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = current_schema() AND table_type = 'BASE TABLE' "
            "AND table_name LIKE %s ORDER BY table_name",
            (pattern,),
        )
        return [row[0] for row in self.fetchall()]

    def list_columns(self, table_name: str) -> list[str]:
        self.execute(
            "SELECT column_name FROM information_schema.columns "
            "WHERE table_schema = current_schema() AND table_name = %s "
            "ORDER BY ordinal_position",
            (table_name,),
        )
        return [row[0] for row in self.fetchall()]

    def count_rows(self, table_name: str, where: dict[str, Any] | None = None) -> int:
        """Exact row count, optionally restricted to ``column = value`` pairs."""
        query = sql.SQL("SELECT COUNT(*) FROM {}").format(sql.Identifier(table_name))
        params: list[Any] = []
        if where:
            conds = [sql.SQL("{} = %s").format(sql.Identifier(c)) for c in where]
            query = query + sql.SQL(" WHERE ") + sql.SQL(" AND ").join(conds)
            params = list(where.values())
        return int(self.scalar(query, params) or 0)

    def estimated_row_count(self, table_name: str) -> int:
        """Planner estimate from pg_class; cheap but only as fresh as ANALYZE."""
        value = self.scalar(
            "SELECT reltuples::bigint FROM pg_class WHERE oid = to_regclass(quote_ident(%s))",
            (table_name,),
        )
        return max(int(value or 0), 0)

    def max_key(
        self,
        table_name: str,
        key_column: str,
        predicate: RowPredicate | None = None,
    ) -> int | None:
        query = sql.SQL("SELECT MAX({}) FROM {}").format(
            sql.Identifier(key_column), sql.Identifier(table_name)
        )
        params: list[Any] = []
        if predicate is not None:
            cond, params = _predicate_sql(predicate)
            query = query + sql.SQL(" WHERE ") + cond
        return self.scalar(query, params)

    def count_range(
        self,
        table_name: str,
        key_column: str,
        predicate: RowPredicate | None = None,
        upper_key: int | None = None,
    ) -> int:
        """Rows matching *predicate* with key ≤ *upper_key* (progress estimate)."""
        conds: list[sql.Composable] = []
        params: list[Any] = []
        if predicate is not None:
            cond, params = _predicate_sql(predicate)
            conds.append(cond)
        if upper_key is not None:
            conds.append(sql.SQL("{} <= %s").format(sql.Identifier(key_column)))
            params.append(upper_key)
        query = sql.SQL("SELECT COUNT(*) FROM {} WHERE {}").format(
            sql.Identifier(table_name),
            sql.SQL(" AND ").join(conds) if conds else sql.SQL("TRUE"),
        )
        return int(self.scalar(query, params) or 0)

    def foreign_keys_referencing(self, table_name: str) -> list[ForeignKeyRef]:
        """Every foreign key in the current schema whose parent is *table_name*."""
        self.execute(
            """
            SELECT con.conname,
                   src.relname,
                   ARRAY(SELECT a.attname
                         FROM unnest(con.conkey) WITH ORDINALITY AS k(num, ord)
                         JOIN pg_attribute a ON a.attrelid = con.conrelid AND a.attnum = k.num
                         ORDER BY k.ord),
                   ARRAY(SELECT a.attname
                         FROM unnest(con.confkey) WITH ORDINALITY AS k(num, ord)
                         JOIN pg_attribute a ON a.attrelid = con.confrelid AND a.attnum = k.num
                         ORDER BY k.ord),
                   con.confdeltype,
                   con.confupdtype
            FROM pg_constraint con
            JOIN pg_class src ON src.oid = con.conrelid
            JOIN pg_class ref ON ref.oid = con.confrelid
            JOIN pg_namespace ns ON ns.oid = ref.relnamespace
            WHERE con.contype = 'f'
              AND ref.relname = %s
              AND ns.nspname = current_schema()
            ORDER BY con.conname
            """,
            (table_name,),
        )
        return [
            ForeignKeyRef(
                constraint_name=name,
                table_name=child,
                columns=tuple(cols),
                referenced_table=table_name,
                referenced_columns=tuple(ref_cols),
                on_delete=_FK_ACTIONS.get(deltype, "NO ACTION"),
                on_update=_FK_ACTIONS.get(updtype, "NO ACTION"),
            )
            for name, child, cols, ref_cols, deltype, updtype in self.fetchall()
        ]

    # ------------------------------------------------------------------
    # DDL
    # ------------------------------------------------------------------

    def rename_table(self, old_name: str, new_name: str) -> None:
        self.execute(sql.SQL("ALTER TABLE {} RENAME TO {}").format(
            sql.Identifier(old_name), sql.Identifier(new_name)
        ))
        log.info("Renamed table %s → %s", old_name, new_name)

    def drop_table(self, table_name: str) -> None:
        self.execute(sql.SQL("DROP TABLE IF EXISTS {}").format(sql.Identifier(table_name)))
        log.info("Dropped table %s", table_name)

    def drop_constraint(self, table_name: str, constraint_name: str) -> None:
        self.execute(sql.SQL("ALTER TABLE {} DROP CONSTRAINT IF EXISTS {}").format(
            sql.Identifier(table_name), sql.Identifier(constraint_name)
        ))

    def add_foreign_key(self, fk: ForeignKeyRef, referenced_table: str) -> None:
        """Re-create *fk* so that it references *referenced_table*."""
        on_delete = fk.on_delete if fk.on_delete in _FK_ACTIONS.values() else "NO ACTION"
        on_update = fk.on_update if fk.on_update in _FK_ACTIONS.values() else "NO ACTION"
        self.execute(sql.SQL(
            "ALTER TABLE {} ADD CONSTRAINT {} FOREIGN KEY ({}) REFERENCES {} ({}) "
            "ON DELETE {} ON UPDATE {}"
        ).format(
            sql.Identifier(fk.table_name),
            sql.Identifier(fk.constraint_name),
            sql.SQL(", ").join(map(sql.Identifier, fk.columns)),
            sql.Identifier(referenced_table),
            sql.SQL(", ").join(map(sql.Identifier, fk.referenced_columns)),
            sql.SQL(on_delete),
            sql.SQL(on_update),
        ))

    def create_table_like(
        self,
        table_name: str,
        template: str,
        extra_columns: dict[str, str] | None = None,
    ) -> None:
        """
        ``CREATE TABLE IF NOT EXISTS <table> (LIKE <template> INCLUDING ALL, ...)``.

        *extra_columns* maps column name → type/default clause; the clauses
        come from code, never from user input.
        """
        parts = [sql.SQL("LIKE {} INCLUDING ALL").format(sql.Identifier(template))]
        for column, definition in (extra_columns or {}).items():
            parts.append(sql.SQL("{} {}").format(sql.Identifier(column), sql.SQL(definition)))
        self.execute(sql.SQL("CREATE TABLE IF NOT EXISTS {} ({})").format(
            sql.Identifier(table_name), sql.SQL(", ").join(parts)
        ))
        log.info("Created table %s from %s", table_name, template)

    def ensure_unique(self, table_name: str, column: str) -> None:
        """Unique index on *column*, required for conflict-tolerant upserts."""
        self.execute(sql.SQL("CREATE UNIQUE INDEX IF NOT EXISTS {} ON {} ({})").format(
            sql.Identifier(f"{table_name}_{column}_key"[:63]),
            sql.Identifier(table_name),
            sql.Identifier(column),
        ))

    # ------------------------------------------------------------------
    # Data movement
    # ------------------------------------------------------------------

    def copy_batch(
        self,
        mapping: TableMapping,
        after_key: int | None,
        limit: int,
        predicate: RowPredicate | None = None,
        upper_key: int | None = None,
        provenance: str | None = None,
    ) -> BatchCopy:
        """
        Copy the next keyset page of *mapping.source_table* into the target.

        Selects up to *limit* rows with key > *after_key* (and ≤ *upper_key*)
        matching *predicate*, in key order, and inserts them keyed on the
        target key. A row already present (an earlier attempt of this batch,
        or a change forwarded by capture) keeps its data; only the mapping's
        batch tag columns are set on it, so every row in range ends up tagged.
        Without a batch tag the conflict is ``DO NOTHING``.
        """
        key = sql.Identifier(mapping.key_column)
        conds: list[sql.Composable] = []
        params: list[Any] = []
        if after_key is not None:
            conds.append(sql.SQL("{} > %s").format(key))
            params.append(after_key)
        if upper_key is not None:
            conds.append(sql.SQL("{} <= %s").format(key))
            params.append(upper_key)
        if predicate is not None:
            cond, pred_params = _predicate_sql(predicate)
            conds.append(cond)
            params.extend(pred_params)
        where = sql.SQL(" AND ").join(conds) if conds else sql.SQL("TRUE")
        params.append(limit)

        target_cols = list(mapping.target_columns)
        select_items: list[sql.Composable] = [sql.Identifier(c) for c in mapping.source_columns]
        for column, value in mapping.batch_tag.items():
            target_cols.append(column)
            select_items.append(sql.Placeholder())
            params.append(value)
        if mapping.provenance_column and provenance is not None:
            target_cols.append(mapping.provenance_column)
            select_items.append(sql.Placeholder())
            params.append(provenance)

        if mapping.batch_tag:
            tag_cols = [sql.Identifier(c) for c in mapping.batch_tag]
            on_conflict = sql.SQL(
                "DO UPDATE SET {sets} WHERE ({current}) IS DISTINCT FROM ({incoming})"
            ).format(
                sets=sql.SQL(", ").join(sql.SQL("{0} = EXCLUDED.{0}").format(c) for c in tag_cols),
                current=sql.SQL(", ").join(
                    sql.SQL("{}.{}").format(sql.Identifier(mapping.target_table), c)
                    for c in tag_cols
                ),
                incoming=sql.SQL(", ").join(sql.SQL("EXCLUDED.{}").format(c) for c in tag_cols),
            )
        else:
            on_conflict = sql.SQL("DO NOTHING")

        query = sql.SQL(
            "WITH batch AS ("
            " SELECT {src_cols} FROM {src} WHERE {where} ORDER BY {key} LIMIT %s"
            "), written AS ("
            " INSERT INTO {tgt} ({tgt_cols}) SELECT {items} FROM batch"
            " ON CONFLICT ({tkey}) {on_conflict} RETURNING 1"
            ") SELECT (SELECT COUNT(*) FROM batch), (SELECT COUNT(*) FROM written),"
            " (SELECT MIN({key}) FROM batch), (SELECT MAX({key}) FROM batch)"
        ).format(
            # The key may also appear among the mapped columns; select it once.
            src_cols=sql.SQL(", ").join(
                map(sql.Identifier, dict.fromkeys(mapping.source_columns))
            ),
            src=sql.Identifier(mapping.source_table),
            where=where,
            key=key,
            tgt=sql.Identifier(mapping.target_table),
            tgt_cols=sql.SQL(", ").join(map(sql.Identifier, target_cols)),
            items=sql.SQL(", ").join(select_items),
            tkey=sql.Identifier(mapping.target_key_column),
            on_conflict=on_conflict,
        )
        self.execute(query, params)
        seen, written, first, last = self.fetchone()
        return BatchCopy(int(seen), int(written), first, last)

    def fetch_row(self, table_name: str, key_column: str, key: Any) -> dict[str, Any] | None:
        self.execute(
            sql.SQL("SELECT * FROM {} WHERE {} = %s").format(
                sql.Identifier(table_name), sql.Identifier(key_column)
            ),
            (key,),
        )
        rows = self.fetch_dicts()
        return rows[0] if rows else None

    def upsert_row(self, table_name: str, key_column: str, row: dict[str, Any]) -> int:
        """
        ``INSERT ... ON CONFLICT (key) DO UPDATE`` for every non-key column of
        *row*; columns absent from *row* are left untouched.
        """
        columns = list(row)
        updates = [c for c in columns if c != key_column]
        if updates:
            action = sql.SQL("DO UPDATE SET {}").format(sql.SQL(", ").join(
                sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(c)) for c in updates
            ))
        else:
            action = sql.SQL("DO NOTHING")
        self.execute(
            sql.SQL("INSERT INTO {} ({}) VALUES ({}) ON CONFLICT ({}) {}").format(
                sql.Identifier(table_name),
                sql.SQL(", ").join(map(sql.Identifier, columns)),
                sql.SQL(", ").join(sql.Placeholder() * len(columns)),
                sql.Identifier(key_column),
                action,
            ),
            [row[c] for c in columns],
        )
        return self.rowcount

    def update_columns(
        self, table_name: str, key_column: str, key: Any, values: dict[str, Any]
    ) -> int:
        self.execute(
            sql.SQL("UPDATE {} SET {} WHERE {} = %s").format(
                sql.Identifier(table_name),
                sql.SQL(", ").join(
                    sql.SQL("{} = %s").format(sql.Identifier(c)) for c in values
                ),
                sql.Identifier(key_column),
            ),
            [*values.values(), key],
        )
        return self.rowcount

    def delete_row(self, table_name: str, key_column: str, key: Any) -> int:
        self.execute(
            sql.SQL("DELETE FROM {} WHERE {} = %s").format(
                sql.Identifier(table_name), sql.Identifier(key_column)
            ),
            (key,),
        )
        return self.rowcount

    def boundary_value(self, table_name: str, column: str, offset: int) -> Any:
        """Value of *column* at position *offset* (0-based) in descending order."""
        return self.scalar(
            sql.SQL(
                "SELECT {col} FROM {tbl} WHERE {col} IS NOT NULL "
                "ORDER BY {col} DESC LIMIT 1 OFFSET %s"
            ).format(col=sql.Identifier(column), tbl=sql.Identifier(table_name)),
            (offset,),
        )

    def sample_values(self, table_name: str, column: str, percent: float) -> list[Any]:
        """Non-null values of *column* from a block-level TABLESAMPLE."""
        self.execute(
            sql.SQL(
                "SELECT {col} FROM {tbl} TABLESAMPLE SYSTEM (%s) WHERE {col} IS NOT NULL"
            ).format(col=sql.Identifier(column), tbl=sql.Identifier(table_name)),
            (percent,),
        )
        return [row[0] for row in self.fetchall()]

    def key_checksum(
        self, sources: list[tuple[str, str, dict[str, Any] | None]]
    ) -> tuple[int, str]:
        """
        Row count and MD5 over the sorted union of key values.

        *sources* is a list of ``(table, key column, equality filter)``.
        """
        selects = []
        params: list[Any] = []
        for table, column, where in sources:
            part = sql.SQL("SELECT {}::text AS k, {} AS o FROM {}").format(
                sql.Identifier(column), sql.Identifier(column), sql.Identifier(table)
            )
            if where:
                part = part + sql.SQL(" WHERE ") + sql.SQL(" AND ").join(
                    sql.SQL("{} = %s").format(sql.Identifier(c)) for c in where
                )
                params.extend(where.values())
            selects.append(part)
        query = sql.SQL(
            "SELECT COUNT(*), md5(COALESCE(string_agg(k, ',' ORDER BY o), '')) FROM ({}) s"
        ).format(sql.SQL(" UNION ALL ").join(selects))
        self.execute(query, params)
        count, digest = self.fetchone()
        return int(count), digest

    # ------------------------------------------------------------------
    # Replication and site status
    # ------------------------------------------------------------------

    def is_in_recovery(self) -> bool:
        """True on a standby (read-only) site."""
        return bool(self.scalar("SELECT pg_is_in_recovery()"))

    def list_subscriptions(self) -> list[dict[str, Any]]:
        self.execute(
            "SELECT subname AS name, subenabled AS enabled FROM pg_subscription "
            "WHERE subdbid = (SELECT oid FROM pg_database WHERE datname = current_database()) "
            "ORDER BY subname"
        )
        return self.fetch_dicts()

    def set_subscription_enabled(self, name: str, enabled: bool) -> None:
        verb = sql.SQL("ENABLE" if enabled else "DISABLE")
        self.execute(sql.SQL("ALTER SUBSCRIPTION {} {}").format(sql.Identifier(name), verb))
        log.info("Subscription %s %s", name, "enabled" if enabled else "disabled")

    def subscription_positions(self) -> list[dict[str, Any]]:
        self.execute(
            "SELECT subname AS name, latest_end_lsn::text AS position "
            "FROM pg_stat_subscription WHERE relid IS NULL ORDER BY subname"
        )
        return self.fetch_dicts()

    def replication_slots(self) -> list[dict[str, Any]]:
        self.execute(
            "SELECT slot_name AS name, confirmed_flush_lsn::text AS position, active "
            "FROM pg_replication_slots WHERE slot_type = 'logical' ORDER BY slot_name"
        )
        return self.fetch_dicts()

    def replication_lag(self) -> tuple[int, float]:
        """
        ``(bytes, seconds)`` behind. On a standby this is receive vs replay;
        on a primary the worst of streaming replicas and logical slots.
        """
        if self.is_in_recovery():
            self.execute(
                "SELECT COALESCE(pg_wal_lsn_diff(pg_last_wal_receive_lsn(), "
                "pg_last_wal_replay_lsn()), 0)::bigint, "
                "COALESCE(EXTRACT(EPOCH FROM now() - pg_last_xact_replay_timestamp()), 0)"
            )
        else:
            self.execute(
                "SELECT GREATEST("
                " COALESCE((SELECT MAX(pg_wal_lsn_diff(pg_current_wal_lsn(), replay_lsn))"
                "           FROM pg_stat_replication), 0),"
                " COALESCE((SELECT MAX(pg_wal_lsn_diff(pg_current_wal_lsn(), confirmed_flush_lsn))"
                "           FROM pg_replication_slots WHERE slot_type = 'logical'), 0)"
                ")::bigint, "
                "COALESCE((SELECT MAX(EXTRACT(EPOCH FROM replay_lag)) FROM pg_stat_replication), 0)"
            )
        lag_bytes, lag_seconds = self.fetchone()
        return int(lag_bytes or 0), float(lag_seconds or 0.0)

    def emit_message(self, prefix: str, content: str, transactional: bool = False) -> str:
        """Write a logical decoding message; returns its log position."""
        return self.scalar(
            "SELECT pg_logical_emit_message(%s, %s, %s)::text",
            (transactional, prefix, content),
        )

    def active_connections(self) -> int:
        return int(self.scalar(
            "SELECT COUNT(*) FROM pg_stat_activity "
            "WHERE state = 'active' AND datname = current_database()"
        ) or 0)

    def database_size(self) -> str:
        return self.scalar("SELECT pg_size_pretty(pg_database_size(current_database()))")

    # ------------------------------------------------------------------
    # Notifications (deferred forwarding)
    # ------------------------------------------------------------------

    def notify(self, channel: str, payload: str) -> None:
        self.execute("SELECT pg_notify(%s, %s)", (channel, payload))

    def listen(self, channel: str) -> None:
        self.execute(sql.SQL("LISTEN {}").format(sql.Identifier(channel)))
        self.commit()

    def poll_notifications(self, timeout: float) -> list[str]:
        """Wait up to *timeout* seconds and return the payloads received."""
        self._ensure_connected()
        if select.select([self._conn], [], [], timeout) == ([], [], []):
            return []
        self._conn.poll()
        payloads = [n.payload for n in self._conn.notifies]
        self._conn.notifies.clear()
        return payloads


def _predicate_sql(predicate: RowPredicate) -> tuple[sql.Composable, list[Any]]:
    col = sql.Identifier(predicate.column)
    if predicate.direction is PredicateDirection.BEFORE:
        return sql.SQL("({0} < %s OR {0} IS NULL)").format(col), [predicate.boundary]
    return sql.SQL("{} >= %s").format(col), [predicate.boundary]
