from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Mapping, Sequence

import duckdb

from featureindex.errors import QueryError, StorageError
from geo.geometry import to_wkb
from store.predicate import Predicate, RawWhere, compile_order_by, compile_where
from store.rows import FeatureCursor, FeatureRow, IdSet, rows_from
from store.sql import quote_ident

if TYPE_CHECKING:
    from store.container import GeoContainer

Predicates = Sequence[Predicate | RawWhere] | None


@dataclass(frozen=True)
class FeatureTable:
    """
    Generic row access for one feature table.

    This is the only place that writes SQL against user feature tables. The
    index engines go through it for chunked reads and id-set fetches.
    """

    container: "GeoContainer"
    name: str
    id_column: str
    geometry_column: str
    crs: str
    columns: tuple[str, ...]

    def id_and_geometry_columns(self) -> tuple[str, str]:
        return self.id_column, self.geometry_column

    def primary_key_column(self) -> str:
        return self.id_column

    # Reads

    def chunked_scan(
        self,
        columns: Sequence[str] | None = None,
        *,
        where: Predicates = None,
        order_by: str | Sequence[str] | None = None,
        limit: int,
        offset: int = 0,
        after_id: int | None = None,
    ) -> list[FeatureRow]:
        """
        One bounded read. With `after_id` the chunk starts after that id
        (keyset pagination, ascending id order).
        """
        extra: list[tuple[str, list[Any]]] = []
        if after_id is not None:
            extra.append((f"{quote_ident(self.id_column)} > ?", [int(after_id)]))
        sql, params = self._select_sql(
            columns=columns,
            distinct=False,
            id_set=None,
            where=where,
            extra=extra,
            order_by=order_by,
            limit=int(limit),
            offset=int(offset) if offset else None,
        )
        conn = self.container.connection()
        try:
            result = conn.execute(sql, params)
            names = [str(d[0]) for d in (result.description or [])]
            records = result.fetchall()
        except duckdb.Error as e:
            raise StorageError(
                "Chunk read failed", {"table": self.name, "error": str(e)}
            ) from e
        return rows_from(
            names,
            records,
            id_column=self.id_column,
            geometry_column=self.geometry_column,
        )

    def fetch_by_id(self, fid: int) -> FeatureRow | None:
        rows = self.chunked_scan(
            where=[Predicate(column=self.id_column, op="=", value=int(fid))],
            limit=1,
        )
        return rows[0] if rows else None

    def fetch_by_ids(
        self,
        id_set: IdSet | None,
        *,
        where: Predicates = None,
        distinct: bool = False,
        columns: Sequence[str] | None = None,
        order_by: str | Sequence[str] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        batch_size: int = 1000,
    ) -> FeatureCursor:
        """
        Stream rows whose id is in `id_set` (all rows when None), ANDed with
        `where`.
        """
        sql, params = self._select_sql(
            columns=columns,
            distinct=distinct,
            id_set=id_set,
            where=where,
            extra=[],
            order_by=order_by,
            limit=limit,
            offset=offset,
        )
        return FeatureCursor(
            self.container.new_cursor(),
            sql=sql,
            params=params,
            id_column=self.id_column,
            geometry_column=self.geometry_column,
            batch_size=batch_size,
        )

    def query(self, **kwargs: Any) -> FeatureCursor:
        return self.fetch_by_ids(None, **kwargs)

    def count_by_ids(
        self,
        id_set: IdSet | None,
        *,
        where: Predicates = None,
        column: str | None = None,
        distinct: bool = False,
    ) -> int:
        if column is not None:
            self._check_columns([column])
            target = quote_ident(column)
            expr = f"COUNT(DISTINCT {target})" if distinct else f"COUNT({target})"
        else:
            if distinct:
                raise QueryError("DISTINCT count needs a column", {"table": self.name})
            expr = "COUNT(*)"

        conds, params = self._conditions(id_set=id_set, where=where, extra=[])
        sql = f"SELECT {expr} FROM {quote_ident(self.name)}"
        if conds:
            sql += " WHERE " + " AND ".join(conds)
        rows = self.container.execute(sql, params)
        return int(rows[0][0] or 0) if rows else 0

    def count(self, **kwargs: Any) -> int:
        return self.count_by_ids(None, **kwargs)

    # Writes

    def insert(self, values: Mapping[str, Any]) -> int:
        data = self._db_values(values)
        if data:
            cols = ", ".join(quote_ident(c) for c in data)
            marks = ", ".join("?" for _ in data)
            sql = (
                f"INSERT INTO {quote_ident(self.name)} ({cols}) VALUES ({marks}) "
                f"RETURNING {quote_ident(self.id_column)}"
            )
        else:
            sql = (
                f"INSERT INTO {quote_ident(self.name)} DEFAULT VALUES "
                f"RETURNING {quote_ident(self.id_column)}"
            )
        rows = self.container.execute(sql, list(data.values()))
        return int(rows[0][0])

    def update(self, fid: int, values: Mapping[str, Any]) -> int:
        data = self._db_values(values)
        data.pop(self.id_column, None)
        if not data:
            return 0
        sets = ", ".join(f"{quote_ident(c)} = ?" for c in data)
        rows = self.container.execute(
            f"UPDATE {quote_ident(self.name)} SET {sets} "
            f"WHERE {quote_ident(self.id_column)} = ? RETURNING {quote_ident(self.id_column)}",
            [*data.values(), int(fid)],
        )
        return len(rows)

    def delete(self, fid: int) -> int:
        rows = self.container.execute(
            f"DELETE FROM {quote_ident(self.name)} "
            f"WHERE {quote_ident(self.id_column)} = ? RETURNING {quote_ident(self.id_column)}",
            [int(fid)],
        )
        return len(rows)

    # SQL building

    def _db_values(self, values: Mapping[str, Any]) -> dict[str, Any]:
        self._check_columns(list(values.keys()))
        out: dict[str, Any] = {}
        for col, v in values.items():
            if col == self.geometry_column and v is not None and not isinstance(
                v, (bytes, bytearray, memoryview)
            ):
                v = to_wkb(v)
            out[col] = v
        return out

    def _check_columns(self, columns: Sequence[str]) -> None:
        for c in columns:
            if c not in self.columns:
                raise QueryError("Unknown column", {"table": self.name, "column": c})

    def _select_columns(self, columns: Sequence[str] | None, distinct: bool) -> list[str]:
        if not columns:
            return list(self.columns)
        cols = list(dict.fromkeys(columns))
        self._check_columns(cols)
        # Rows need their id unless the caller asked for distinct values.
        if not distinct and self.id_column not in cols:
            cols.insert(0, self.id_column)
        return cols

    def _conditions(
        self,
        *,
        id_set: IdSet | None,
        where: Predicates,
        extra: list[tuple[str, list[Any]]],
    ) -> tuple[list[str], list[Any]]:
        conds: list[str] = []
        params: list[Any] = []
        if id_set is not None:
            s, p = id_set.to_sql(quote_ident(self.id_column))
            conds.append(s)
            params.extend(p)
        where_sql, where_params = compile_where(where, self.columns)
        if where_sql:
            conds.append(where_sql)
            params.extend(where_params)
        for s, p in extra:
            conds.append(s)
            params.extend(p)
        return conds, params

    def _select_sql(
        self,
        *,
        columns: Sequence[str] | None,
        distinct: bool,
        id_set: IdSet | None,
        where: Predicates,
        extra: list[tuple[str, list[Any]]],
        order_by: str | Sequence[str] | None,
        limit: int | None,
        offset: int | None,
    ) -> tuple[str, list[Any]]:
        cols = self._select_columns(columns, distinct)
        select = "SELECT DISTINCT " if distinct else "SELECT "
        sql = select + ", ".join(quote_ident(c) for c in cols)
        sql += f" FROM {quote_ident(self.name)}"

        conds, params = self._conditions(id_set=id_set, where=where, extra=extra)
        if conds:
            sql += " WHERE " + " AND ".join(conds)

        # DISTINCT can only order by selected columns.
        order_sql = compile_order_by(order_by, cols if distinct else self.columns)
        if not order_sql and self.id_column in cols:
            order_sql = f"{quote_ident(self.id_column)} ASC"
        if order_sql:
            sql += f" ORDER BY {order_sql}"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"
        if offset:
            sql += f" OFFSET {int(offset)}"
        return sql, params
