from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, Sequence

import duckdb

from featureindex.errors import StorageError
from geo.bbox import GeometryEnvelope
from geo.geometry import geometry_envelope, load_geometry

_UNSET = object()


@dataclass
class FeatureRow:
    """
    One feature table row.

    `id` is None only for DISTINCT queries that did not select the id column.
    """

    id: int | None
    values: dict[str, Any]
    geometry_column: str | None = None
    _envelope: Any = field(default=_UNSET, repr=False, compare=False)

    def __getitem__(self, column: str) -> Any:
        return self.values[column]

    def get(self, column: str, default: Any = None) -> Any:
        return self.values.get(column, default)

    @property
    def geometry_wkb(self) -> bytes | None:
        if not self.geometry_column:
            return None
        raw = self.values.get(self.geometry_column)
        return bytes(raw) if raw is not None else None

    def geometry(self) -> Any | None:
        return load_geometry(self.geometry_wkb)

    def geometry_envelope(self) -> GeometryEnvelope | None:
        # Cached: manual scans and indexing both ask for it.
        if self._envelope is _UNSET:
            self._envelope = geometry_envelope(self.geometry_wkb)
        return self._envelope


@dataclass(frozen=True)
class IdSet:
    """
    A set of feature ids, either as a SQL subquery or as explicit values.
    """

    subquery: str | None = None
    params: tuple[Any, ...] = ()
    ids: tuple[int, ...] | None = None

    @classmethod
    def of(cls, ids: Sequence[int]) -> "IdSet":
        return cls(ids=tuple(int(i) for i in ids))

    @classmethod
    def from_sql(cls, sql: str, params: Sequence[Any] = ()) -> "IdSet":
        return cls(subquery=sql, params=tuple(params))

    def to_sql(self, id_expr: str) -> tuple[str, list[Any]]:
        if self.subquery is not None:
            return f"{id_expr} IN ({self.subquery})", list(self.params)
        if not self.ids:
            return "FALSE", []
        return f"list_contains(?, {id_expr})", [list(self.ids)]


class FeatureCursor:
    """
    Streams rows of a query in batches, on its own DuckDB cursor.

    Each FeatureCursor owns a duplicate connection so several cursors can be
    iterated side by side (and from different threads) without invalidating
    each other's pending results.
    """

    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        *,
        sql: str,
        params: list[Any],
        id_column: str,
        geometry_column: str,
        batch_size: int = 1000,
    ):
        self._conn = conn
        self._batch_size = max(1, int(batch_size))
        self.id_column = id_column
        self.geometry_column = geometry_column
        self._closed = False
        try:
            self._conn.execute(sql, params)
        except duckdb.Error as e:
            self.close()
            raise StorageError("Feature query failed", {"error": str(e)}) from e
        self.columns = [str(d[0]) for d in (self._conn.description or [])]

    def __iter__(self) -> Iterator[FeatureRow]:
        try:
            while not self._closed:
                try:
                    batch = self._conn.fetchmany(self._batch_size)
                except duckdb.Error as e:
                    raise StorageError("Feature fetch failed", {"error": str(e)}) from e
                if not batch:
                    break
                for values in batch:
                    yield self._row(values)
        finally:
            self.close()

    def __enter__(self) -> "FeatureCursor":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def fetchall(self) -> list[FeatureRow]:
        return list(self)

    def ids(self) -> list[int | None]:
        return [r.id for r in self]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._conn.close()
        except duckdb.Error:
            pass

    def _row(self, values: tuple) -> FeatureRow:
        data = dict(zip(self.columns, values))
        rid = data.get(self.id_column)
        geom_col = self.geometry_column if self.geometry_column in data else None
        return FeatureRow(
            id=int(rid) if rid is not None else None,
            values=data,
            geometry_column=geom_col,
        )


def rows_from(
    columns: Sequence[str],
    records: Sequence[tuple],
    *,
    id_column: str,
    geometry_column: str,
) -> list[FeatureRow]:
    out: list[FeatureRow] = []
    for values in records:
        data = dict(zip(columns, values))
        rid = data.get(id_column)
        out.append(
            FeatureRow(
                id=int(rid) if rid is not None else None,
                values=data,
                geometry_column=geometry_column if geometry_column in data else None,
            )
        )
    return out
