from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Mapping, Sequence, Union

from geo.bbox import BoundingBox, GeometryEnvelope
from store.predicate import Predicate, RawWhere, Where, build_where

SpatialFilter = Union[BoundingBox, GeometryEnvelope, None]


@dataclass(frozen=True)
class QueryOptions:
    """
    One query shape for both the indexed and the manual path.

    - `spatial`: None (no spatial constraint), a BoundingBox or a GeometryEnvelope.
    - `crs`: CRS of `spatial` when it differs from the table's native CRS.
    - `where` / `where_args` / `field_values`: row predicates, ANDed together.
    - `limit` / `offset`: applied after spatial + row filtering.
    """

    distinct: bool = False
    columns: tuple[str, ...] | None = None
    spatial: SpatialFilter = None
    crs: str | None = None
    where: Where | str = None
    where_args: tuple[Any, ...] | None = None
    field_values: Mapping[str, Any] | None = None
    order_by: str | Sequence[str] | None = None
    limit: int | None = None
    offset: int | None = None

    def predicates(self) -> list[Predicate | RawWhere]:
        return build_where(self.where, self.where_args, self.field_values)

    def with_envelope(self, envelope: GeometryEnvelope | None) -> "QueryOptions":
        # Spatial filter already in the native CRS.
        return replace(self, spatial=envelope, crs=None)

    def envelope(self) -> GeometryEnvelope | None:
        if self.spatial is None:
            return None
        if isinstance(self.spatial, BoundingBox):
            return self.spatial.build_envelope()
        return self.spatial


def query_options(**kwargs: Any) -> QueryOptions:
    cols = kwargs.get("columns")
    if cols is not None:
        kwargs["columns"] = (cols,) if isinstance(cols, str) else tuple(cols)
    args = kwargs.get("where_args")
    if args is not None:
        kwargs["where_args"] = tuple(args)
    return QueryOptions(**kwargs)
