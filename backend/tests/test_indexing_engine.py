from __future__ import annotations

import logging

import pytest
from shapely.geometry import Point

from featureindex.config import IndexSettings
from featureindex.errors import NotIndexedError, QueryError, StorageError
from featureindex.manager import FeatureIndexManager
from featureindex.progress import Progress
from featureindex.store import IndexStore
from geo.bbox import BoundingBox
from store.features import FeatureTable


class CancelAfter:
    """Progress token that goes inactive once `n` rows were reported."""

    def __init__(self, n: int):
        self.n = n
        self.seen = 0

    def is_active(self) -> bool:
        return self.seen < self.n

    def add_progress(self, n: int) -> None:
        self.seen += n


def _grid(n: int) -> list[Point]:
    return [Point(i % 100, i // 100) for i in range(n)]


def test_three_points_counted_by_box(container, make_table):
    make_table("pts", [Point(0, 0), Point(5, 5), Point(10, 10)])
    m = FeatureIndexManager(container, "pts")

    assert not m.is_indexed()
    assert m.index() == 3
    assert m.is_indexed()
    assert m.index_location == "indexed"
    assert m.count(spatial=BoundingBox(-1, -1, 1, 1)) == 1
    assert m.count(spatial=BoundingBox(0, 0, 10, 10)) == 3


def test_nulling_a_geometry_and_reindexing_the_row(container, make_table):
    table = make_table("pts", [Point(0, 0), Point(5, 5), Point(10, 10)])
    m = FeatureIndexManager(container, "pts")
    m.index()
    before = m.last_indexed()
    assert m.count(spatial=BoundingBox(4, 4, 6, 6)) == 1

    table.update(2, {"geom": None})
    assert m.index_row(2) is False

    assert m.count(spatial=BoundingBox(4, 4, 6, 6)) == 0
    assert m.is_indexed()
    assert m.last_indexed() >= before


def test_index_row_picks_up_moved_geometry(container, make_table):
    table = make_table("pts", [Point(0, 0), Point(5, 5)])
    m = FeatureIndexManager(container, "pts")
    m.index()

    table.update(1, {"geom": Point(50, 50)})
    assert m.index_row(table.fetch_by_id(1)) is True
    assert m.count(spatial=BoundingBox(49, 49, 51, 51)) == 1
    assert m.count(spatial=BoundingBox(-1, -1, 1, 1)) == 0

    fid = table.insert({"geom": Point(-7, -7)})
    m.index_row(fid)
    assert [r.id for r in m.query(spatial=BoundingBox(-8, -8, -6, -6))] == [fid]


def test_2500_rows_are_read_in_three_chunks(container, make_table, monkeypatch):
    make_table("pts", _grid(2500))
    m = FeatureIndexManager(container, "pts", settings=IndexSettings(chunk_size=1000))

    reads = []
    original = FeatureTable.chunked_scan

    def counting(self, *args, **kwargs):
        rows = original(self, *args, **kwargs)
        reads.append(len(rows))
        return rows

    monkeypatch.setattr(FeatureTable, "chunked_scan", counting)

    assert m.index() == 2500
    assert reads == [1000, 1000, 500]
    assert m.count(spatial=BoundingBox(-1, -1, 100, 100)) == 2500


def test_cancel_after_first_chunk(container, make_table):
    make_table("pts", _grid(2500))
    m = FeatureIndexManager(container, "pts", settings=IndexSettings(chunk_size=1000))

    assert m.index(progress=CancelAfter(1000)) == 1000
    assert not m.is_indexed()
    assert m.last_indexed() is None
    assert m.index_store.count("pts") == 1000
    # Unindexed tables still answer queries, through the manual scan.
    assert m.index_location == "manual"
    assert m.count(spatial=BoundingBox(-1, -1, 100, 100)) == 2500

    # A plain index() now does a full build.
    assert m.index() == 2500
    assert m.is_indexed()


def test_partial_index_hits_are_not_served(container, make_table):
    make_table("pts", _grid(25))
    m = FeatureIndexManager(container, "pts", settings=IndexSettings(chunk_size=10))

    assert m.index(progress=CancelAfter(10)) == 10
    assert m.index_store.count("pts") == 10
    with pytest.raises(NotIndexedError):
        list(m.geometry_indices())
    with pytest.raises(NotIndexedError):
        list(m.geometry_indices(BoundingBox(-1, -1, 100, 100)))

    m.index()
    assert len(list(m.geometry_indices())) == 25


def test_cancel_mid_chunk_commits_processed_rows(container, make_table):
    make_table("pts", _grid(25))
    m = FeatureIndexManager(container, "pts", settings=IndexSettings(chunk_size=10))

    assert m.index(progress=CancelAfter(15)) == 15
    assert m.index_store.count("pts") == 15
    assert not m.is_indexed()


def test_cancelled_progress_never_reads(container, make_table, monkeypatch):
    make_table("pts", _grid(5))
    m = FeatureIndexManager(container, "pts")
    progress = Progress(max=5)
    progress.cancel()

    def fail(*args, **kwargs):
        raise AssertionError("no chunk should be read")

    monkeypatch.setattr(FeatureTable, "chunked_scan", fail)
    assert m.index(progress=progress) == 0
    assert not m.is_indexed()


def test_progress_counts_every_row(container, make_table):
    make_table("pts", [Point(0, 0), None, Point(1, 1)])
    m = FeatureIndexManager(container, "pts")
    progress = Progress(max=3)
    assert m.index(progress=progress) == 2
    assert progress.progress == 3


def test_index_is_idempotent_and_force_rebuilds_same_content(container, make_table):
    make_table("pts", _grid(30))
    m = FeatureIndexManager(container, "pts", settings=IndexSettings(chunk_size=7))

    assert m.index() == 30
    first = list(m.geometry_indices())
    assert m.index() == 0
    assert m.index(force=True) == 30
    assert list(m.geometry_indices()) == first


def test_bad_and_null_geometries_are_skipped(container, make_table, caplog):
    table = make_table("pts", [Point(0, 0), None])
    table.insert({"geom": b"definitely not wkb"})
    table.insert({"geom": Point(3, 3)})
    m = FeatureIndexManager(container, "pts")

    with caplog.at_level(logging.ERROR, logger="featureindex.engine"):
        assert m.index() == 2
    assert m.is_indexed()
    assert any("id=3" in r.getMessage() for r in caplog.records)


def test_storage_failure_rolls_back_the_chunk(container, make_table, monkeypatch):
    make_table("pts", _grid(5))
    m = FeatureIndexManager(container, "pts", settings=IndexSettings(chunk_size=2))

    calls = {"n": 0}
    original = IndexStore.upsert_many

    def flaky(self, table, entries):
        calls["n"] += 1
        if calls["n"] == 2:
            raise StorageError("disk full")
        return original(self, table, entries)

    monkeypatch.setattr(IndexStore, "upsert_many", flaky)

    with pytest.raises(StorageError):
        m.index()
    assert m.index_store.count("pts") == 2
    assert not m.is_indexed()


def test_index_row_requires_table_index(container, make_table):
    make_table("pts", [Point(0, 0)])
    m = FeatureIndexManager(container, "pts")
    with pytest.raises(NotIndexedError):
        m.index_row(1)


def test_index_row_on_partial_build_stays_partial(container, make_table):
    make_table("pts", _grid(5))
    m = FeatureIndexManager(container, "pts", settings=IndexSettings(chunk_size=2))
    m.index(progress=CancelAfter(2))

    assert m.index_row(5) is True
    assert not m.is_indexed()
    assert m.last_indexed() is None


def test_index_row_needs_geometry_column(container, make_table):
    table = make_table("pts", [Point(0, 0)])
    m = FeatureIndexManager(container, "pts")
    m.index()
    row = table.chunked_scan(["name"], limit=1)[0]
    with pytest.raises(QueryError):
        m.index_row(row)


def test_delete_index(container, make_table):
    make_table("pts", [Point(0, 0), Point(1, 1)])
    m = FeatureIndexManager(container, "pts")
    m.index()

    assert m.delete_index_row(1) == 1
    assert m.is_indexed()
    assert m.delete_index() == 1
    assert not m.is_indexed()
    assert m.last_indexed() is None
    with pytest.raises(NotIndexedError):
        list(m.geometry_indices())


def test_dropping_the_table_drops_its_index(container, make_table):
    make_table("pts", [Point(0, 0)])
    FeatureIndexManager(container, "pts").index()
    container.drop_feature_table("pts")
    store = IndexStore(container)
    assert store.table_index("pts") is None
    assert store.count("pts") == 0
