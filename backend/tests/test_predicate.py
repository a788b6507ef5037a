from __future__ import annotations

import pytest

from featureindex.errors import QueryError
from store.predicate import (
    Predicate,
    RawWhere,
    build_where,
    compile_order_by,
    compile_where,
)

COLUMNS = ["id", "geom", "name", "pop"]


def test_predicates_bind_values():
    sql, params = compile_where(
        [Predicate("name", "=", "x"), Predicate("pop", ">=", 10)], COLUMNS
    )
    assert sql == '"name" = ? AND "pop" >= ?'
    assert params == ["x", 10]


def test_none_value_becomes_is_null():
    sql, params = compile_where(build_where(field_values={"name": None}), COLUMNS)
    assert sql == '"name" IS NULL'
    assert params == []


def test_in_operator_uses_list_parameter():
    sql, params = Predicate("pop", "in", [1, 2]).to_sql(COLUMNS)
    assert sql == 'list_contains(?, "pop")'
    assert params == [[1, 2]]


def test_unknown_column_is_rejected():
    with pytest.raises(QueryError):
        compile_where([Predicate("nope", "=", 1)], COLUMNS)


def test_bad_operator_is_rejected():
    with pytest.raises(QueryError):
        Predicate("pop", "; DROP", 1).to_sql(COLUMNS)


def test_raw_where_needs_matching_args():
    with pytest.raises(QueryError):
        RawWhere("pop > ? AND pop < ?", (1,)).to_sql(COLUMNS)
    sql, params = RawWhere("pop > ?", (1,)).to_sql(COLUMNS)
    assert sql == "(pop > ?)"
    assert params == [1]


@pytest.mark.parametrize("text", ["1=1; DROP TABLE x", "pop > 1 -- x", "pop /* c */ > 1"])
def test_raw_where_rejects_separators_and_comments(text):
    with pytest.raises(QueryError):
        RawWhere(text).to_sql(COLUMNS)


def test_where_args_without_raw_string_is_an_error():
    with pytest.raises(QueryError):
        build_where(Predicate("pop", "=", 1), where_args=[1])


def test_build_where_combines_raw_and_field_values():
    preds = build_where("pop > ?", [5], {"name": "a"})
    sql, params = compile_where(preds, COLUMNS)
    assert sql == '(pop > ?) AND "name" = ?'
    assert params == [5, "a"]


def test_order_by_validates_columns_and_direction():
    assert compile_order_by("name desc, pop", COLUMNS) == '"name" DESC, "pop" ASC'
    with pytest.raises(QueryError):
        compile_order_by("name sideways", COLUMNS)
    with pytest.raises(QueryError):
        compile_order_by(["missing"], COLUMNS)
