from __future__ import annotations

import logging

import pytest
from shapely.geometry import Point, box

from featureindex.config import IndexSettings
from featureindex.errors import QueryError
from featureindex.manual import ManualScanEngine
from featureindex.types import query_options
from geo.bbox import BoundingBox, GeometryEnvelope


def _engine(table, **settings) -> ManualScanEngine:
    return ManualScanEngine(table, settings=IndexSettings(**settings))


def test_touching_box_matches(make_table):
    table = make_table("pts", [box(0, 0, 1, 1)])
    eng = _engine(table)
    opts = query_options(spatial=BoundingBox(1, 1, 2, 2))
    assert eng.count(opts) == 1


def test_tolerance_absorbs_rounding_but_not_real_gaps(make_table):
    table = make_table("pts", [Point(1.0 + 1e-15, 0.0), Point(1.5, 0.0)])
    q = query_options(spatial=BoundingBox(0, -1, 1, 1))
    assert _engine(table).matching_ids(q.envelope()) == [1]
    assert _engine(table, tolerance=0.0).matching_ids(q.envelope()) == []
    assert _engine(table, tolerance=0.6).matching_ids(q.envelope()) == [1, 2]


def test_null_and_bad_geometries_never_match(make_table, caplog):
    table = make_table("pts", [None, Point(0, 0)])
    table.insert({"geom": b"\x00\x01junk"})
    eng = _engine(table)
    world = query_options(spatial=BoundingBox(-180, -90, 180, 90))
    with caplog.at_level(logging.ERROR, logger="featureindex.manual"):
        assert [r.id for r in eng.query(world)] == [2]
    assert caplog.records


def test_scan_reads_in_chunks(make_table):
    table = make_table("pts", [Point(i, 0) for i in range(7)])
    eng = _engine(table, chunk_size=3)
    env = GeometryEnvelope(min_x=-1, min_y=-1, max_x=10, max_y=1)
    assert eng.matching_ids(env) == [1, 2, 3, 4, 5, 6, 7]


def test_limit_and_offset_applied_while_scanning(make_table):
    table = make_table("pts", [Point(i, 0) for i in range(10)])
    eng = _engine(table, chunk_size=4)
    env = GeometryEnvelope(min_x=2, min_y=-1, max_x=8, max_y=1)
    assert eng.matching_ids(env, limit=3, offset=2) == [5, 6, 7]
    assert eng.matching_ids(env, limit=0) == []


def test_query_chunk_pages_through_matches(make_table):
    table = make_table("pts", [Point(i, 0) for i in range(10)])
    eng = _engine(table, chunk_size=4)
    opts = query_options(spatial=BoundingBox(-1, -1, 100, 1))
    pages = [
        [r.id for r in eng.query_chunk(opts, limit=4, offset=offset)]
        for offset in (0, 4, 8)
    ]
    assert pages == [[1, 2, 3, 4], [5, 6, 7, 8], [9, 10]]
    with pytest.raises(QueryError):
        eng.query_chunk(opts, limit=-1)


def test_row_predicates_combine_with_spatial_filter(make_table):
    table = make_table("pts", [Point(i, 0) for i in range(5)])
    eng = _engine(table)
    opts = query_options(spatial=BoundingBox(-1, -1, 10, 1), field_values={"name": "f2"})
    assert [r.id for r in eng.query(opts)] == [2]
    opts = query_options(spatial=BoundingBox(-1, -1, 10, 1), where="name <> ?", where_args=["f2"])
    assert eng.count(opts) == 4


def test_ordered_and_distinct_queries(make_table):
    table = make_table("pts", [Point(i, 0) for i in range(5)])
    eng = _engine(table)
    opts = query_options(spatial=BoundingBox(0.5, -1, 3.5, 1), order_by="name DESC", limit=2)
    assert [r["name"] for r in eng.query(opts)] == ["f4", "f3"]
    assert eng.count(query_options(spatial=BoundingBox(0.5, -1, 3.5, 1)), column="name", distinct=True) == 3


def test_no_spatial_filter_returns_every_row(make_table):
    table = make_table("pts", [None, Point(0, 0)])
    eng = _engine(table)
    assert eng.count(query_options()) == 2


def test_bounding_box_is_union_of_row_envelopes(make_table):
    table = make_table("pts", [Point(-5, 2), None, box(1, 1, 3, 7)])
    env = _engine(table, chunk_size=1).bounding_box()
    assert env.bounding_box().as_tuple() == (-5, 1, 3, 7)
    assert _engine(make_table("empty")).bounding_box() is None
