from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Mapping

import duckdb

from featureindex.errors import QueryError, StorageError
from store.features import FeatureTable
from store.sql import (
    CREATE_GEOMETRY_COLUMNS_SQL,
    DELETE_GEOMETRY_COLUMNS_SQL,
    INSERT_GEOMETRY_COLUMNS_SQL,
    LIST_GEOMETRY_COLUMNS_SQL,
    SELECT_GEOMETRY_COLUMNS_SQL,
    TABLE_COLUMNS_SQL,
    TABLE_EXISTS_SQL,
    check_ident,
    check_type,
    quote_ident,
    sequence_name,
)

logger = logging.getLogger(__name__)


def duckdb_threads() -> int:
    raw = (os.getenv("FIDX_THREADS") or "").strip()
    if raw:
        try:
            return max(1, int(raw))
        except ValueError:
            pass
    return max(1, int(os.cpu_count() or 1))


def connect(path: str, *, threads: int) -> duckdb.DuckDBPyConnection:
    if path != ":memory:":
        p = Path(path)
        if p.parent and str(p.parent) not in {".", ""}:
            p.parent.mkdir(parents=True, exist_ok=True)
        path = str(p)
    try:
        return duckdb.connect(
            database=path, read_only=False, config={"threads": int(threads)}
        )
    except duckdb.Error as e:
        raise StorageError("Failed to open container", {"path": path}) from e


class GeoContainer:
    """
    Handle on one DuckDB database holding feature tables and their index.

    Every thread gets its own cursor (a duplicate connection on the same
    database); DuckDB connections must not be shared across threads.
    Transactions are per cursor, so `transaction()` only covers statements
    issued by the calling thread through `connection()`.
    """

    def __init__(self, path: str = ":memory:", *, threads: int | None = None):
        self.path = str(path)
        self.threads = int(threads or duckdb_threads())
        self._conn = connect(self.path, threads=self.threads)
        self._lock = threading.RLock()
        self._local = threading.local()
        self._cursors: dict[threading.Thread, duckdb.DuckDBPyConnection] = {}
        self._table_locks: dict[str, threading.RLock] = {}
        self._closed = False
        self.execute(CREATE_GEOMETRY_COLUMNS_SQL)

    @classmethod
    def open(cls, path: str, *, threads: int | None = None) -> "GeoContainer":
        return cls(path, threads=threads)

    def __enter__(self) -> "GeoContainer":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def connection(self) -> duckdb.DuckDBPyConnection:
        c = getattr(self._local, "conn", None)
        if c is None:
            c = self.new_cursor()
            with self._lock:
                self._prune_cursors()
                self._cursors[threading.current_thread()] = c
            self._local.conn = c
        return c

    def _prune_cursors(self) -> None:
        # Caller holds the lock. Cursors of finished threads are closed here.
        for thread in [t for t in self._cursors if not t.is_alive()]:
            c = self._cursors.pop(thread)
            try:
                c.close()
            except duckdb.Error:
                pass

    def new_cursor(self) -> duckdb.DuckDBPyConnection:
        """
        A fresh cursor the caller owns (and must close).
        """
        with self._lock:
            if self._closed:
                raise StorageError("Container is closed", {"path": self.path})
            try:
                return self._conn.cursor()
            except duckdb.Error as e:
                raise StorageError("Failed to open cursor", {"error": str(e)}) from e

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """
        Run the block in one transaction on this thread's cursor.

        Nested use joins the outer transaction. DuckDB errors roll back and
        surface as StorageError; any other exception rolls back and propagates.
        """
        conn = self.connection()
        depth = int(getattr(self._local, "tx_depth", 0))
        if depth > 0:
            self._local.tx_depth = depth + 1
            try:
                yield conn
            finally:
                self._local.tx_depth = depth
            return

        try:
            conn.execute("BEGIN TRANSACTION")
        except duckdb.Error as e:
            raise StorageError("Failed to begin transaction", {"error": str(e)}) from e
        self._local.tx_depth = 1
        try:
            yield conn
        except duckdb.Error as e:
            self._rollback(conn)
            raise StorageError("Transaction failed", {"error": str(e)}) from e
        except BaseException:
            self._rollback(conn)
            raise
        else:
            try:
                conn.execute("COMMIT")
            except duckdb.Error as e:
                self._rollback(conn)
                raise StorageError("Commit failed", {"error": str(e)}) from e
        finally:
            self._local.tx_depth = 0

    def _rollback(self, conn: duckdb.DuckDBPyConnection) -> None:
        try:
            conn.execute("ROLLBACK")
        except duckdb.Error:
            # Already aborted by DuckDB; nothing left to undo.
            pass

    def execute(self, sql: str, params: list | tuple | None = None) -> list[tuple]:
        conn = self.connection()
        try:
            if params:
                return conn.execute(sql, list(params)).fetchall()
            return conn.execute(sql).fetchall()
        except duckdb.Error as e:
            raise StorageError("Statement failed", {"error": str(e)}) from e

    def table_lock(self, name: str) -> threading.RLock:
        """
        Lock serializing index maintenance of one table within this container.
        """
        with self._lock:
            lock = self._table_locks.get(name)
            if lock is None:
                lock = threading.RLock()
                self._table_locks[name] = lock
            return lock

    def table_exists(self, name: str) -> bool:
        rows = self.execute(TABLE_EXISTS_SQL, [name])
        return bool(rows and int(rows[0][0] or 0) > 0)

    def table_columns(self, name: str) -> list[str]:
        return [str(r[0]) for r in self.execute(TABLE_COLUMNS_SQL, [name])]

    def create_feature_table(
        self,
        name: str,
        *,
        geometry_column: str = "geom",
        id_column: str = "id",
        crs: str = "EPSG:4326",
        columns: Mapping[str, str] | None = None,
    ) -> FeatureTable:
        """
        Create a feature table and register its geometry column.

        `columns` maps extra attribute column names to DuckDB types. The id
        column is an auto-incrementing BIGINT primary key; the geometry column
        holds WKB.
        """
        table = check_ident(name)
        id_col = check_ident(id_column)
        geom_col = check_ident(geometry_column)
        extra = dict(columns or {})
        col_defs = [
            f"{quote_ident(id_col)} BIGINT PRIMARY KEY DEFAULT nextval('{sequence_name(table)}')",
            f"{quote_ident(geom_col)} BLOB",
        ]
        for col, col_type in extra.items():
            if col in {id_col, geom_col}:
                raise QueryError("Column name clashes with id/geometry column", {"column": col})
            col_defs.append(f"{quote_ident(col)} {check_type(col_type)}")

        with self.transaction() as conn:
            if self.table_exists(table):
                raise QueryError("Table already exists", {"table": table})
            conn.execute(f"CREATE SEQUENCE IF NOT EXISTS {quote_ident(sequence_name(table))}")
            conn.execute(f"CREATE TABLE {quote_ident(table)} ({', '.join(col_defs)})")
            conn.execute(INSERT_GEOMETRY_COLUMNS_SQL, [table, geom_col, id_col, str(crs)])
        logger.info("created feature table %s (crs=%s)", table, crs)
        return self.feature_table(table)

    def feature_table(self, name: str) -> FeatureTable:
        rows = self.execute(SELECT_GEOMETRY_COLUMNS_SQL, [name])
        if not rows:
            raise QueryError("Unknown feature table", {"table": name})
        table_name, geom_col, id_col, crs = rows[0]
        return FeatureTable(
            container=self,
            name=str(table_name),
            id_column=str(id_col),
            geometry_column=str(geom_col),
            crs=str(crs),
            columns=tuple(self.table_columns(str(table_name))),
        )

    def feature_tables(self) -> list[str]:
        return [str(r[0]) for r in self.execute(LIST_GEOMETRY_COLUMNS_SQL)]

    def drop_feature_table(self, name: str) -> None:
        """
        Drop a feature table, its registration and any index rows for it.
        """
        # Lazily import to keep the store independent of the index package.
        from featureindex.store import IndexStore

        table = check_ident(name)
        with self.transaction() as conn:
            IndexStore(self).delete_table(table)
            conn.execute(f"DROP TABLE IF EXISTS {quote_ident(table)}")
            conn.execute(f"DROP SEQUENCE IF EXISTS {quote_ident(sequence_name(table))}")
            conn.execute(DELETE_GEOMETRY_COLUMNS_SQL, [table])
        logger.info("dropped feature table %s", table)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            for c in self._cursors.values():
                try:
                    c.close()
                except duckdb.Error:
                    pass
            self._cursors.clear()
            self._conn.close()
