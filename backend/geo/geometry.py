from __future__ import annotations

import math
from typing import Any

import shapely
from shapely.errors import ShapelyError

from featureindex.errors import GeometryParseError
from geo.bbox import GeometryEnvelope


def load_geometry(wkb: bytes | bytearray | memoryview | None) -> Any | None:
    if wkb is None:
        return None
    try:
        return shapely.from_wkb(bytes(wkb))
    except (ShapelyError, TypeError, ValueError) as e:
        raise GeometryParseError(
            "Failed to decode WKB geometry", {"bytes": len(bytes(wkb))}
        ) from e


def geometry_envelope(wkb: bytes | bytearray | memoryview | None) -> GeometryEnvelope | None:
    """
    Envelope of a WKB geometry blob.

    Returns None for a null or empty geometry (neither can match a query).
    Z and M ranges are only filled in when the geometry carries them.
    """
    geom = load_geometry(wkb)
    if geom is None:
        return None
    return envelope_of(geom)


def envelope_of(geom: Any) -> GeometryEnvelope | None:
    if geom is None or shapely.is_empty(geom):
        return None

    min_x, min_y, max_x, max_y = (float(v) for v in shapely.bounds(geom))
    if any(math.isnan(v) for v in (min_x, min_y, max_x, max_y)):
        return None

    min_z = max_z = min_m = max_m = None
    if shapely.has_z(geom):
        zs = shapely.get_coordinates(geom, include_z=True)[:, 2]
        min_z, max_z = _finite_range(zs)
    if shapely.has_m(geom):
        ms = shapely.get_coordinates(geom, include_m=True)[:, 2]
        min_m, max_m = _finite_range(ms)

    return GeometryEnvelope(
        min_x=min_x,
        min_y=min_y,
        max_x=max_x,
        max_y=max_y,
        min_z=min_z,
        max_z=max_z,
        min_m=min_m,
        max_m=max_m,
    )


def to_wkb(geom: Any | None) -> bytes | None:
    if geom is None:
        return None
    return bytes(shapely.to_wkb(geom))


def _finite_range(values) -> tuple[float | None, float | None]:
    vals = [float(v) for v in values if not math.isnan(float(v))]
    if not vals:
        return None, None
    return min(vals), max(vals)
