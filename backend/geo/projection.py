from __future__ import annotations

import logging
from functools import lru_cache

from pyproj import CRS, Geod, Transformer
from pyproj.exceptions import CRSError, ProjError

from featureindex.errors import ProjectionError
from geo.bbox import BoundingBox, GeometryEnvelope

logger = logging.getLogger(__name__)

WGS84 = "EPSG:4326"

# Points added along each bbox edge when transforming bounds.
_DENSIFY_PTS = 21


@lru_cache(maxsize=64)
def crs_for(code: str) -> CRS:
    try:
        return CRS.from_user_input(code)
    except CRSError as e:
        raise ProjectionError("Unknown CRS", {"crs": code}) from e


@lru_cache(maxsize=64)
def transformer(source: str, target: str) -> Transformer:
    try:
        return Transformer.from_crs(crs_for(source), crs_for(target), always_xy=True)
    except (CRSError, ProjError) as e:
        raise ProjectionError(
            "Failed to create transform", {"source": source, "target": target}
        ) from e


@lru_cache(maxsize=1)
def wgs84_geod() -> Geod:
    return Geod(ellps="WGS84")


def same_crs(a: str, b: str) -> bool:
    if a == b:
        return True
    return crs_for(a) == crs_for(b)


def transform_bbox(bbox: BoundingBox, source: str, target: str) -> BoundingBox:
    """
    Reproject a bbox, densifying its edges so curved edges are bounded.

    A result whose left edge lies east of its right edge crossed the
    antimeridian; we widen it to the full x extent of the target CRS so no
    feature on either side gets clipped.
    """
    if same_crs(source, target):
        return bbox.normalized()
    b = bbox.normalized()
    try:
        left, bottom, right, top = transformer(source, target).transform_bounds(
            b.min_x, b.min_y, b.max_x, b.max_y, densify_pts=_DENSIFY_PTS
        )
    except ProjError as e:
        raise ProjectionError(
            "Failed to transform bounding box",
            {"source": source, "target": target, "bbox": b.as_tuple()},
        ) from e

    vals = (left, bottom, right, top)
    if any(v != v or v in (float("inf"), float("-inf")) for v in vals):
        raise ProjectionError(
            "Bounding box is outside the target projection",
            {"source": source, "target": target, "bbox": b.as_tuple()},
        )

    if left > right:
        min_x, max_x = _world_x_range(target)
        logger.debug(
            "bbox crosses the antimeridian in %s; widening x to (%s, %s)",
            target,
            min_x,
            max_x,
        )
        left, right = min_x, max_x
    return BoundingBox(
        min_x=float(left), min_y=float(bottom), max_x=float(right), max_y=float(top)
    )


def _world_x_range(code: str) -> tuple[float, float]:
    crs = crs_for(code)
    if crs.is_geographic:
        return -180.0, 180.0
    area = crs.area_of_use
    west, south, east, north = (
        area.bounds if area is not None else (-180.0, -85.06, 180.0, 85.06)
    )
    # Whole-world band at the area's latitudes; always west < east here.
    world = BoundingBox(min_x=-180.0, min_y=south, max_x=180.0, max_y=north)
    left, _bottom, right, _top = transformer(WGS84, code).transform_bounds(
        world.min_x, world.min_y, world.max_x, world.max_y, densify_pts=_DENSIFY_PTS
    )
    return float(min(left, right)), float(max(left, right))


def geodesic_bbox(bbox: BoundingBox, crs: str) -> BoundingBox:
    """
    Expand the vertical bounds of `bbox` so its top and bottom edges are
    bounded as geodesics rather than as lines of constant latitude.

    A geodesic between two points on the same parallel bows towards the pole,
    so the top edge can only raise `max_y` and the bottom edge can only lower
    `min_y`. Edges spanning 180 degrees or more of longitude pass over the
    pole itself. Non-geographic CRSs go through EPSG:4326 and back.
    """
    geographic = crs_for(crs).is_geographic
    b = bbox.normalized() if geographic else transform_bbox(bbox, crs, WGS84)

    min_y = b.min_y
    max_y = b.max_y
    span = b.max_x - b.min_x
    geod = wgs84_geod()

    if span >= 180.0:
        if max_y > 0.0:
            max_y = 90.0
        if min_y < 0.0:
            min_y = -90.0
    elif span > 0.0:
        if max_y > 0.0:
            max_y = max(max_y, _midpoint_lat(geod, b.min_x, b.max_y, b.max_x))
        if min_y < 0.0:
            min_y = min(min_y, _midpoint_lat(geod, b.min_x, b.min_y, b.max_x))

    out = BoundingBox(min_x=b.min_x, min_y=min_y, max_x=b.max_x, max_y=max_y)
    if geographic:
        return out
    return transform_bbox(out, WGS84, crs)


def _midpoint_lat(geod: Geod, lon1: float, lat: float, lon2: float) -> float:
    # Same-latitude endpoints: the geodesic is symmetric, so its extreme
    # latitude is at the midpoint.
    lonlats = geod.npts(lon1, lat, lon2, lat, 1)
    return float(lonlats[0][1])


class ProjectionBridge:
    """
    Moves caller boxes into a feature table's native CRS.

    `geodesic` is a per-table setting fixed when the index is built: it
    changes the envelopes stored in the index, so the manual path uses it too.
    """

    def __init__(self, native_crs: str, *, geodesic: bool = False):
        crs_for(native_crs)
        self.native_crs = native_crs
        self.geodesic = bool(geodesic)

    def to_native(
        self,
        spatial: BoundingBox | GeometryEnvelope,
        source_crs: str | None = None,
    ) -> GeometryEnvelope:
        if isinstance(spatial, BoundingBox):
            env = spatial.build_envelope()
        else:
            env = spatial
        if not source_crs or same_crs(source_crs, self.native_crs):
            return env
        projected = transform_bbox(env.bounding_box(), source_crs, self.native_crs)
        return env.with_xy(projected)

    def from_native(self, bbox: BoundingBox, target_crs: str | None) -> BoundingBox:
        if not target_crs:
            return bbox
        return transform_bbox(bbox, self.native_crs, target_crs)

    def envelope(self, env: GeometryEnvelope | None) -> GeometryEnvelope | None:
        """
        Envelope to store (and to test in manual scans) for a row.
        """
        if env is None or not self.geodesic:
            return env
        return env.with_xy(geodesic_bbox(env.bounding_box(), self.native_crs))
