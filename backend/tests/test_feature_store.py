from __future__ import annotations

import threading

import pytest
from shapely.geometry import Point

from featureindex.errors import QueryError, StorageError
from store.container import GeoContainer
from store.predicate import Predicate
from store.rows import IdSet


def test_create_table_registers_geometry_column(container):
    table = container.create_feature_table("roads", crs="EPSG:3857", columns={"kind": "TEXT"})
    assert table.id_and_geometry_columns() == ("id", "geom")
    assert table.crs == "EPSG:3857"
    assert table.columns == ("id", "geom", "kind")
    assert container.feature_tables() == ["roads"]


def test_create_table_twice_fails(container):
    container.create_feature_table("roads")
    with pytest.raises(QueryError):
        container.create_feature_table("roads")


def test_invalid_identifiers_are_rejected(container):
    with pytest.raises(QueryError):
        container.create_feature_table("bad name")
    with pytest.raises(QueryError):
        container.create_feature_table("ok", columns={"x": "TEXT; DROP"})


def test_unknown_table_raises(container):
    with pytest.raises(QueryError):
        container.feature_table("missing")


def test_insert_update_delete_round(container):
    table = container.create_feature_table("pts", columns={"name": "TEXT"})
    fid = table.insert({"geom": Point(1, 2), "name": "a"})
    row = table.fetch_by_id(fid)
    assert row is not None
    assert row["name"] == "a"
    assert row.geometry().equals(Point(1, 2))

    assert table.update(fid, {"geom": None}) == 1
    assert table.fetch_by_id(fid).geometry_envelope() is None

    assert table.delete(fid) == 1
    assert table.fetch_by_id(fid) is None
    assert table.delete(fid) == 0


def test_chunked_scan_pages_by_id(make_table):
    table = make_table("pts", [Point(i, i) for i in range(5)])
    first = table.chunked_scan(["id"], limit=2)
    assert [r.id for r in first] == [1, 2]
    rest = table.chunked_scan(["id"], limit=10, after_id=first[-1].id)
    assert [r.id for r in rest] == [3, 4, 5]


def test_fetch_by_ids_filters_orders_and_pages(make_table):
    table = make_table("pts", [Point(i, 0) for i in range(6)])
    ids = IdSet.of([2, 3, 4, 5])
    with table.fetch_by_ids(ids, order_by="id DESC", limit=2, offset=1) as cur:
        assert cur.ids() == [4, 3]
    rows = table.fetch_by_ids(ids, where=[Predicate("name", "!=", "f3")]).fetchall()
    assert [r.id for r in rows] == [2, 4, 5]


def test_empty_id_set_matches_nothing(make_table):
    table = make_table("pts", [Point(0, 0)])
    assert table.fetch_by_ids(IdSet.of([])).fetchall() == []
    assert table.count_by_ids(IdSet.of([])) == 0


def test_distinct_count_needs_column(make_table):
    table = make_table("pts", [Point(0, 0), Point(1, 1)])
    assert table.count() == 2
    assert table.count_by_ids(None, column="name", distinct=True) == 2
    with pytest.raises(QueryError):
        table.count_by_ids(None, distinct=True)


def test_distinct_query_without_id(container):
    table = container.create_feature_table("pts", columns={"kind": "TEXT"})
    for kind in ["a", "b", "a"]:
        table.insert({"kind": kind})
    rows = table.query(columns=["kind"], distinct=True, order_by="kind").fetchall()
    assert [r["kind"] for r in rows] == ["a", "b"]
    assert all(r.id is None for r in rows)


def test_concurrent_cursors_do_not_clash(make_table):
    table = make_table("pts", [Point(i, i) for i in range(10)])
    a = iter(table.fetch_by_ids(None, batch_size=2))
    b = iter(table.fetch_by_ids(None, batch_size=2))
    assert next(a).id == 1
    assert next(b).id == 1
    assert next(a).id == 2
    assert [r.id for r in b] == list(range(2, 11))


def test_transaction_rolls_back_on_error(container):
    table = container.create_feature_table("pts")
    with pytest.raises(RuntimeError):
        with container.transaction():
            table.insert({"geom": Point(0, 0)})
            raise RuntimeError("boom")
    assert table.count() == 0


def test_drop_table_removes_registration(container):
    container.create_feature_table("pts")
    container.drop_feature_table("pts")
    assert container.feature_tables() == []
    assert not container.table_exists("pts")


def test_closed_container_refuses_new_cursors(tmp_path):
    c = GeoContainer.open(str(tmp_path / "db" / "fx.duckdb"), threads=1)
    assert (tmp_path / "db").is_dir()
    c.close()
    with pytest.raises(StorageError):
        c.new_cursor()


def test_cursors_of_finished_threads_are_released(container):
    def run():
        container.execute("SELECT 1")

    done = [threading.Thread(target=run) for _ in range(3)]
    for t in done:
        t.start()
        t.join(5)

    last = threading.Thread(target=run)
    last.start()
    last.join(5)

    assert set(container._cursors) <= {threading.current_thread(), last}
    # The caller's own cursor keeps working.
    assert container.execute("SELECT 1") == [(1,)]
