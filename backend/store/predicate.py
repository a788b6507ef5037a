"""
Typed row predicates.

Caller values never end up in SQL text: every value is bound through a `?`
placeholder. Raw `where` fragments are still accepted for callers that need
expressions we don't model, but only with separately bound arguments.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence, Union

from featureindex.errors import QueryError
from store.sql import quote_ident

_BINARY_OPS = {"=", "!=", "<>", "<", "<=", ">", ">=", "LIKE", "ILIKE"}
_UNARY_OPS = {"IS NULL", "IS NOT NULL"}
_LIST_OPS = {"IN", "NOT IN"}


@dataclass(frozen=True)
class Predicate:
    column: str
    op: str = "="
    value: Any = None

    def to_sql(self, columns: Iterable[str]) -> tuple[str, list[Any]]:
        col = _known_column(self.column, columns)
        op = " ".join(str(self.op).upper().split())
        if op in _UNARY_OPS:
            return f"{col} {op}", []
        if op in _BINARY_OPS:
            if self.value is None:
                # `col = NULL` is never true; spell out what the caller meant.
                if op == "=":
                    return f"{col} IS NULL", []
                if op in {"!=", "<>"}:
                    return f"{col} IS NOT NULL", []
                raise QueryError("NULL value needs = or !=", {"column": self.column, "op": op})
            return f"{col} {op} ?", [self.value]
        if op in _LIST_OPS:
            values = list(self.value or [])
            if not values:
                return ("FALSE" if op == "IN" else "TRUE"), []
            if op == "IN":
                return f"list_contains(?, {col})", [values]
            return f"NOT list_contains(?, {col})", [values]
        raise QueryError("Unsupported operator", {"column": self.column, "op": self.op})


@dataclass(frozen=True)
class RawWhere:
    """
    A caller-written WHERE fragment with `?` placeholders.
    """

    sql: str
    args: tuple[Any, ...] = ()

    def to_sql(self, columns: Iterable[str]) -> tuple[str, list[Any]]:
        text = (self.sql or "").strip()
        if not text:
            return "", []
        if ";" in text or "--" in text or "/*" in text:
            raise QueryError("Statement separators and comments are not allowed", {"where": text})
        if text.count("?") != len(self.args):
            raise QueryError(
                "Placeholder count does not match arguments",
                {"where": text, "args": len(self.args)},
            )
        return f"({text})", list(self.args)


Where = Union[Predicate, RawWhere, Sequence[Union[Predicate, RawWhere]], None]


def field_predicates(field_values: Mapping[str, Any] | None) -> list[Predicate]:
    if not field_values:
        return []
    return [Predicate(column=k, op="=", value=v) for k, v in field_values.items()]


def build_where(
    where: Where | str = None,
    where_args: Sequence[Any] | None = None,
    field_values: Mapping[str, Any] | None = None,
) -> list[Predicate | RawWhere]:
    """
    Normalize the accepted predicate shapes into one list (ANDed together).
    """
    out: list[Predicate | RawWhere] = []
    if isinstance(where, str):
        if where.strip():
            out.append(RawWhere(sql=where, args=tuple(where_args or ())))
    elif isinstance(where, (Predicate, RawWhere)):
        out.append(where)
    elif where is not None:
        out.extend(where)
    if where_args and not isinstance(where, str):
        raise QueryError("where_args are only valid with a raw where string")
    out.extend(field_predicates(field_values))
    return out


def compile_where(
    predicates: Sequence[Predicate | RawWhere] | None, columns: Iterable[str]
) -> tuple[str, list[Any]]:
    if not predicates:
        return "", []
    cols = list(columns)
    parts: list[str] = []
    params: list[Any] = []
    for p in predicates:
        sql, args = p.to_sql(cols)
        if sql:
            parts.append(sql)
            params.extend(args)
    return " AND ".join(parts), params


def compile_order_by(order_by: str | Sequence[str] | None, columns: Iterable[str]) -> str:
    """
    `"name"`, `"name DESC"` or a list of those. Columns must exist.
    """
    if not order_by:
        return ""
    items = [order_by] if isinstance(order_by, str) else list(order_by)
    cols = list(columns)
    parts: list[str] = []
    for item in items:
        for piece in str(item).split(","):
            tokens = piece.split()
            if not tokens:
                continue
            if len(tokens) > 2:
                raise QueryError("Invalid order by", {"order_by": piece})
            direction = tokens[1].upper() if len(tokens) == 2 else "ASC"
            if direction not in {"ASC", "DESC"}:
                raise QueryError("Invalid order by direction", {"order_by": piece})
            parts.append(f"{_known_column(tokens[0], cols)} {direction}")
    return ", ".join(parts)


def _known_column(name: str, columns: Iterable[str]) -> str:
    cols = list(columns)
    if name not in cols:
        raise QueryError("Unknown column", {"column": name, "columns": ",".join(cols)})
    return quote_ident(name)
