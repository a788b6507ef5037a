import sys
from pathlib import Path

import pytest


# Ensure `backend/` is on sys.path so tests can import local modules
# like `featureindex.*`, `store.*` and `geo.*`.
BACKEND_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_ROOT))

from geo.geometry import to_wkb  # noqa: E402
from store.container import GeoContainer  # noqa: E402


@pytest.fixture
def container():
    c = GeoContainer(":memory:", threads=2)
    try:
        yield c
    finally:
        c.close()


@pytest.fixture
def make_table(container):
    """
    Create a feature table with a `name TEXT` column and bulk-load geometries
    (shapely geometries or None), ids 1..n in list order.
    """

    def _make(name="pts", geometries=(), *, crs="EPSG:4326"):
        table = container.create_feature_table(name, crs=crs, columns={"name": "TEXT"})
        rows = [(to_wkb(g), f"f{i + 1}") for i, g in enumerate(geometries)]
        if rows:
            with container.transaction() as conn:
                conn.executemany(
                    f'INSERT INTO "{table.name}" (geom, name) VALUES (?, ?)', rows
                )
        return table

    return _make
