"""
Persistence of the two index entities and translation of spatial filters into
relational predicates over them.

TableIndex (one row per table) is the authoritative "indexed" flag: a table is
indexed when its row exists *and* carries a last-indexed timestamp. A row with
a NULL timestamp is a build that has started but never completed.
GeometryIndex holds one rectangle per feature row with a geometry.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterable, Iterator

import duckdb

from featureindex.errors import StorageError
from featureindex.sql import (
    CREATE_GEOMETRY_INDEX_SQL,
    CREATE_TABLE_INDEX_SQL,
    DELETE_GEOMETRY_INDEX_SQL,
    DELETE_TABLE_GEOMETRIES_SQL,
    DELETE_TABLE_INDEX_SQL,
    EXTENT_SQL,
    GEOMETRY_INDEX_COLUMNS,
    INSERT_TABLE_INDEX_SQL,
    RANGE_M_SQL,
    RANGE_XY_SQL,
    RANGE_Z_SQL,
    SELECT_TABLE_INDEX_SQL,
    UPDATE_LAST_INDEXED_SQL,
    UPSERT_GEOMETRY_INDEX_SQL,
)
from geo.bbox import GeometryEnvelope
from store.rows import IdSet

if TYPE_CHECKING:
    from store.container import GeoContainer


@dataclass(frozen=True)
class TableIndex:
    table_name: str
    geometry_column: str
    last_indexed: datetime | None

    @property
    def complete(self) -> bool:
        return self.last_indexed is not None


@dataclass(frozen=True)
class GeometryIndex:
    table_name: str
    geom_id: int
    envelope: GeometryEnvelope


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_db_ts(ts: datetime) -> datetime:
    # Stored as naive UTC (plain TIMESTAMP).
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def _from_db_ts(ts: datetime | None) -> datetime | None:
    if ts is None:
        return None
    return ts.replace(tzinfo=timezone.utc)


def range_predicate(envelope: GeometryEnvelope) -> tuple[str, list[float]]:
    sql = RANGE_XY_SQL
    params: list[float] = [envelope.max_x, envelope.min_x, envelope.max_y, envelope.min_y]
    if envelope.has_z:
        sql += " AND " + RANGE_Z_SQL
        params.extend([envelope.max_z, envelope.min_z])  # type: ignore[list-item]
    if envelope.has_m:
        sql += " AND " + RANGE_M_SQL
        params.extend([envelope.max_m, envelope.min_m])  # type: ignore[list-item]
    return sql, params


def _deleted(rows: list[tuple]) -> int:
    # A plain DELETE yields one row holding the number of deleted rows.
    return int(rows[0][0] or 0) if rows else 0


def _envelope_row(row: tuple) -> GeometryIndex:
    table_name, geom_id, min_x, max_x, min_y, max_y, min_z, max_z, min_m, max_m = row
    return GeometryIndex(
        table_name=str(table_name),
        geom_id=int(geom_id),
        envelope=GeometryEnvelope(
            min_x=float(min_x),
            min_y=float(min_y),
            max_x=float(max_x),
            max_y=float(max_y),
            min_z=None if min_z is None else float(min_z),
            max_z=None if max_z is None else float(max_z),
            min_m=None if min_m is None else float(min_m),
            max_m=None if max_m is None else float(max_m),
        ),
    )


class IndexStore:
    """
    Reads and writes `table_index` / `geometry_index`.

    Only IndexingEngine calls the mutating methods. All statements run on the
    calling thread's cursor, so they join that thread's open transaction.
    """

    def __init__(self, container: "GeoContainer"):
        self.container = container
        self.ensure_schema()

    def ensure_schema(self) -> None:
        self.container.execute(CREATE_TABLE_INDEX_SQL)
        self.container.execute(CREATE_GEOMETRY_INDEX_SQL)

    # TableIndex

    def table_index(self, table: str) -> TableIndex | None:
        rows = self.container.execute(SELECT_TABLE_INDEX_SQL, [table])
        if not rows:
            return None
        name, geom_col, last = rows[0]
        return TableIndex(
            table_name=str(name),
            geometry_column=str(geom_col),
            last_indexed=_from_db_ts(last),
        )

    def ensure_table_index(self, table: str, geometry_column: str) -> TableIndex:
        self.container.execute(INSERT_TABLE_INDEX_SQL, [table, geometry_column])
        ti = self.table_index(table)
        if ti is None:
            raise StorageError("TableIndex row missing after insert", {"table": table})
        return ti

    def set_last_indexed(self, table: str, ts: datetime | None = None) -> datetime:
        when = ts or utc_now()
        self.container.execute(UPDATE_LAST_INDEXED_SQL, [_to_db_ts(when), table])
        return when

    def clear_last_indexed(self, table: str) -> None:
        self.container.execute(UPDATE_LAST_INDEXED_SQL, [None, table])

    # GeometryIndex

    def upsert(self, table: str, geom_id: int, envelope: GeometryEnvelope) -> None:
        self.upsert_many(table, [(geom_id, envelope)])

    def upsert_many(
        self, table: str, entries: Iterable[tuple[int, GeometryEnvelope]]
    ) -> int:
        rows = [
            (
                table,
                int(geom_id),
                env.min_x,
                env.max_x,
                env.min_y,
                env.max_y,
                env.min_z,
                env.max_z,
                env.min_m,
                env.max_m,
            )
            for geom_id, env in entries
        ]
        if not rows:
            return 0
        conn = self.container.connection()
        try:
            conn.executemany(UPSERT_GEOMETRY_INDEX_SQL, rows)
        except duckdb.Error as e:
            raise StorageError(
                "Failed to write geometry index", {"table": table, "error": str(e)}
            ) from e
        return len(rows)

    def delete_geometry(self, table: str, geom_id: int) -> int:
        return _deleted(self.container.execute(DELETE_GEOMETRY_INDEX_SQL, [table, int(geom_id)]))

    def delete_geometries(self, table: str) -> int:
        return _deleted(self.container.execute(DELETE_TABLE_GEOMETRIES_SQL, [table]))

    def delete_table(self, table: str) -> int:
        """
        Remove every index row for `table`. Works for tables that no longer exist.
        """
        with self.container.transaction():
            deleted = self.delete_geometries(table)
            self.container.execute(DELETE_TABLE_INDEX_SQL, [table])
        return deleted

    # Queries

    def ids(self, table: str, envelope: GeometryEnvelope | None = None) -> IdSet:
        """
        Subquery selecting feature ids whose stored rectangle intersects
        `envelope` (every indexed id when None).
        """
        sql = "SELECT geom_id FROM geometry_index WHERE table_name = ?"
        params: list[Any] = [table]
        if envelope is not None:
            pred, pred_params = range_predicate(envelope)
            sql += " AND " + pred
            params.extend(pred_params)
        return IdSet.from_sql(sql, params)

    def count(self, table: str, envelope: GeometryEnvelope | None = None) -> int:
        ids = self.ids(table, envelope)
        rows = self.container.execute(
            f"SELECT COUNT(*) FROM ({ids.subquery})", list(ids.params)
        )
        return int(rows[0][0] or 0) if rows else 0

    def query(
        self,
        table: str,
        envelope: GeometryEnvelope | None = None,
        *,
        batch_size: int = 1000,
    ) -> Iterator[GeometryIndex]:
        """
        Iterate GeometryIndex rows in geom_id order, on a dedicated cursor.
        """
        sql = f"SELECT {GEOMETRY_INDEX_COLUMNS} FROM geometry_index WHERE table_name = ?"
        params: list[Any] = [table]
        if envelope is not None:
            pred, pred_params = range_predicate(envelope)
            sql += " AND " + pred
            params.extend(pred_params)
        sql += " ORDER BY geom_id"

        conn = self.container.new_cursor()
        try:
            try:
                conn.execute(sql, params)
            except duckdb.Error as e:
                raise StorageError(
                    "Geometry index query failed", {"table": table, "error": str(e)}
                ) from e
            while True:
                batch = conn.fetchmany(max(1, int(batch_size)))
                if not batch:
                    break
                for row in batch:
                    yield _envelope_row(row)
        finally:
            conn.close()

    def get(self, table: str, geom_id: int) -> GeometryIndex | None:
        rows = self.container.execute(
            f"SELECT {GEOMETRY_INDEX_COLUMNS} FROM geometry_index "
            "WHERE table_name = ? AND geom_id = ?",
            [table, int(geom_id)],
        )
        return _envelope_row(rows[0]) if rows else None

    def extent(self, table: str) -> GeometryEnvelope | None:
        rows = self.container.execute(EXTENT_SQL, [table])
        if not rows or rows[0][0] is None:
            return None
        min_x, min_y, max_x, max_y = rows[0]
        return GeometryEnvelope(
            min_x=float(min_x), min_y=float(min_y), max_x=float(max_x), max_y=float(max_y)
        )
