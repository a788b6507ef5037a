from __future__ import annotations

from typing import Iterator

from featureindex.errors import NotIndexedError
from featureindex.store import GeometryIndex, IndexStore
from featureindex.types import QueryOptions
from geo.bbox import GeometryEnvelope
from store.features import FeatureTable
from store.rows import FeatureCursor, IdSet


class SpatialQueryEngine:
    """
    Answers spatial queries from the GeometryIndex rows of an indexed table.

    The spatial part becomes an id subquery over `geometry_index`; the row
    store then fetches (or counts) rows whose id is in it, ANDed with the
    caller's predicates.
    """

    def __init__(self, table: FeatureTable, index_store: IndexStore):
        self.table = table
        self.store = index_store

    def id_set(self, envelope: GeometryEnvelope | None) -> IdSet | None:
        # No spatial constraint means every row, not every indexed row.
        if envelope is None:
            return None
        return self.store.ids(self.table.name, envelope)

    def query(self, options: QueryOptions) -> FeatureCursor:
        return self.table.fetch_by_ids(
            self.id_set(options.envelope()),
            where=options.predicates(),
            distinct=options.distinct,
            columns=options.columns,
            order_by=options.order_by,
            limit=options.limit,
            offset=options.offset,
        )

    def count(
        self,
        options: QueryOptions,
        *,
        column: str | None = None,
        distinct: bool = False,
    ) -> int:
        return self.table.count_by_ids(
            self.id_set(options.envelope()),
            where=options.predicates(),
            column=column,
            distinct=distinct,
        )

    def geometry_indices(self, envelope: GeometryEnvelope | None = None) -> Iterator[GeometryIndex]:
        """
        Raw index hits for `envelope` (all entries when None), in id order.
        """
        ti = self.store.table_index(self.table.name)
        if ti is None or not ti.complete:
            raise NotIndexedError(self.table.name)
        return self.store.query(self.table.name, envelope)

    def bounding_box(self) -> GeometryEnvelope | None:
        return self.store.extent(self.table.name)
