from __future__ import annotations

from datetime import datetime, timezone

from featureindex.store import IndexStore, range_predicate
from geo.bbox import GeometryEnvelope


def _env(min_x, min_y, max_x, max_y, **kw):
    return GeometryEnvelope(min_x=min_x, min_y=min_y, max_x=max_x, max_y=max_y, **kw)


def test_range_predicate_adds_z_only_when_query_has_it():
    sql, params = range_predicate(_env(0, 1, 2, 3))
    assert "min_z" not in sql
    assert params == [2, 0, 3, 1]
    sql, params = range_predicate(_env(0, 1, 2, 3, min_z=4, max_z=5))
    assert "min_z IS NULL" in sql
    assert params[-2:] == [5, 4]


def test_table_index_lifecycle(container):
    store = IndexStore(container)
    assert store.table_index("pts") is None

    ti = store.ensure_table_index("pts", "geom")
    assert ti.last_indexed is None
    assert not ti.complete

    when = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
    store.set_last_indexed("pts", when)
    ti = store.table_index("pts")
    assert ti.complete
    assert ti.last_indexed == when
    assert ti.last_indexed.tzinfo is not None

    # Ensuring again keeps the existing row.
    assert store.ensure_table_index("pts", "geom").last_indexed == when


def test_upsert_replaces_and_queries_by_range(container):
    store = IndexStore(container)
    store.upsert_many("pts", [(1, _env(0, 0, 1, 1)), (2, _env(5, 5, 6, 6))])
    store.upsert("pts", 1, _env(10, 10, 11, 11))

    hits = [g.geom_id for g in store.query("pts", _env(9, 9, 10, 10))]
    assert hits == [1]
    assert store.count("pts") == 2
    assert store.count("pts", _env(0, 0, 1, 1)) == 0
    assert store.get("pts", 2).envelope == _env(5, 5, 6, 6)


def test_rows_without_z_match_z_queries(container):
    store = IndexStore(container)
    store.upsert_many(
        "pts",
        [(1, _env(0, 0, 1, 1)), (2, _env(0, 0, 1, 1, min_z=100, max_z=200))],
    )
    hits = [g.geom_id for g in store.query("pts", _env(0, 0, 1, 1, min_z=0, max_z=10))]
    assert hits == [1]


def test_delete_and_extent(container):
    store = IndexStore(container)
    store.ensure_table_index("pts", "geom")
    store.upsert_many("pts", [(1, _env(0, 0, 1, 1)), (2, _env(-3, 2, -2, 4))])
    store.upsert_many("other", [(1, _env(50, 50, 51, 51))])

    assert store.extent("pts").bounding_box().as_tuple() == (-3, 0, 1, 4)
    assert store.delete_geometry("pts", 2) == 1
    assert store.delete_geometry("pts", 2) == 0
    assert store.delete_table("pts") == 1
    assert store.table_index("pts") is None
    assert store.extent("pts") is None
    # Other tables are untouched.
    assert store.count("other") == 1


def test_deletes_report_counts(container):
    store = IndexStore(container)
    store.upsert_many("pts", [(i, _env(i, i, i + 1, i + 1)) for i in range(1, 51)])
    store.upsert_many("other", [(1, _env(0, 0, 1, 1))])

    assert store.delete_geometry("pts", 50) == 1
    assert store.delete_geometries("pts") == 49
    assert store.delete_geometries("pts") == 0
    assert store.count("other") == 1
