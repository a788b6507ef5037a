from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True)
class BoundingBox:
    """
    Axis-aligned rectangle in some CRS (units are whatever the CRS uses).

    Convention used throughout this repo:
    - min_x, min_y, max_x, max_y
    """

    min_x: float
    min_y: float
    max_x: float
    max_y: float

    def normalized(self) -> "BoundingBox":
        min_x = min(self.min_x, self.max_x)
        max_x = max(self.min_x, self.max_x)
        min_y = min(self.min_y, self.max_y)
        max_y = max(self.min_y, self.max_y)
        return BoundingBox(min_x=min_x, min_y=min_y, max_x=max_x, max_y=max_y)

    def build_envelope(self) -> "GeometryEnvelope":
        b = self.normalized()
        return GeometryEnvelope(
            min_x=b.min_x, min_y=b.min_y, max_x=b.max_x, max_y=b.max_y
        )

    def union(self, other: "BoundingBox") -> "BoundingBox":
        return BoundingBox(
            min_x=min(self.min_x, other.min_x),
            min_y=min(self.min_y, other.min_y),
            max_x=max(self.max_x, other.max_x),
            max_y=max(self.max_y, other.max_y),
        )

    def intersects(self, other: "BoundingBox") -> bool:
        return self.build_envelope().intersects(other.build_envelope())

    def expand(self, amount: float) -> "BoundingBox":
        a = float(amount)
        return BoundingBox(
            min_x=self.min_x - a,
            min_y=self.min_y - a,
            max_x=self.max_x + a,
            max_y=self.max_y + a,
        )

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.min_x, self.min_y, self.max_x, self.max_y)

    @classmethod
    def from_envelope(cls, envelope: "GeometryEnvelope") -> "BoundingBox":
        return cls(
            min_x=envelope.min_x,
            min_y=envelope.min_y,
            max_x=envelope.max_x,
            max_y=envelope.max_y,
        )


@dataclass(frozen=True)
class GeometryEnvelope:
    """
    Minimum bounding rectangle of a geometry, with optional Z and M ranges.

    A missing Z (or M) range means the geometry has no such dimension; that is
    not the same thing as a range of (0, 0).
    """

    min_x: float
    min_y: float
    max_x: float
    max_y: float
    min_z: float | None = None
    max_z: float | None = None
    min_m: float | None = None
    max_m: float | None = None

    def __post_init__(self) -> None:
        if self.min_x > self.max_x or self.min_y > self.max_y:
            raise ValueError(
                f"Envelope min exceeds max: x=({self.min_x}, {self.max_x}) "
                f"y=({self.min_y}, {self.max_y})"
            )
        for dim, lo, hi in (
            ("z", self.min_z, self.max_z),
            ("m", self.min_m, self.max_m),
        ):
            if (lo is None) != (hi is None):
                raise ValueError(f"Envelope {dim} range must have both bounds or none")
            if lo is not None and hi is not None and lo > hi:
                raise ValueError(f"Envelope {dim} min exceeds max: ({lo}, {hi})")

    @property
    def has_z(self) -> bool:
        return self.min_z is not None

    @property
    def has_m(self) -> bool:
        return self.min_m is not None

    def bounding_box(self) -> BoundingBox:
        return BoundingBox.from_envelope(self)

    def union(self, other: "GeometryEnvelope") -> "GeometryEnvelope":
        # A dimension survives the union only if both sides carry it.
        min_z = max_z = min_m = max_m = None
        if self.has_z and other.has_z:
            min_z = min(self.min_z, other.min_z)  # type: ignore[type-var]
            max_z = max(self.max_z, other.max_z)  # type: ignore[type-var]
        if self.has_m and other.has_m:
            min_m = min(self.min_m, other.min_m)  # type: ignore[type-var]
            max_m = max(self.max_m, other.max_m)  # type: ignore[type-var]
        return GeometryEnvelope(
            min_x=min(self.min_x, other.min_x),
            min_y=min(self.min_y, other.min_y),
            max_x=max(self.max_x, other.max_x),
            max_y=max(self.max_y, other.max_y),
            min_z=min_z,
            max_z=max_z,
            min_m=min_m,
            max_m=max_m,
        )

    def expand(self, tolerance: float) -> "GeometryEnvelope":
        """
        Pad x/y by `tolerance` on every side. Z/M ranges are left untouched.
        """
        t = float(tolerance)
        return GeometryEnvelope(
            min_x=self.min_x - t,
            min_y=self.min_y - t,
            max_x=self.max_x + t,
            max_y=self.max_y + t,
            min_z=self.min_z,
            max_z=self.max_z,
            min_m=self.min_m,
            max_m=self.max_m,
        )

    def intersects(self, other: "GeometryEnvelope", *, tolerance: float = 0.0) -> bool:
        """
        Inclusive rectangle intersection: touching edges count as overlap.

        `tolerance` pads `self` on every x/y bound before testing. Z and M
        ranges only take part when both envelopes carry them, which matches the
        relational predicate used by the indexed path.
        """
        q = self.expand(tolerance) if tolerance else self
        if q.min_x > other.max_x or q.max_x < other.min_x:
            return False
        if q.min_y > other.max_y or q.max_y < other.min_y:
            return False
        if q.has_z and other.has_z:
            if q.min_z > other.max_z or q.max_z < other.min_z:  # type: ignore[operator]
                return False
        if q.has_m and other.has_m:
            if q.min_m > other.max_m or q.max_m < other.min_m:  # type: ignore[operator]
                return False
        return True

    def with_xy(self, bbox: BoundingBox) -> "GeometryEnvelope":
        b = bbox.normalized()
        return GeometryEnvelope(
            min_x=b.min_x,
            min_y=b.min_y,
            max_x=b.max_x,
            max_y=b.max_y,
            min_z=self.min_z,
            max_z=self.max_z,
            min_m=self.min_m,
            max_m=self.max_m,
        )


def union_all(envelopes: Iterable[GeometryEnvelope | None]) -> GeometryEnvelope | None:
    out: GeometryEnvelope | None = None
    for env in envelopes:
        if env is None:
            continue
        out = env if out is None else out.union(env)
    return out
