from __future__ import annotations

import logging
from dataclasses import replace
from typing import Iterator

from featureindex.config import IndexSettings
from featureindex.errors import GeometryParseError, QueryError
from featureindex.types import QueryOptions
from geo.bbox import GeometryEnvelope, union_all
from geo.projection import ProjectionBridge
from store.features import FeatureTable, Predicates
from store.rows import FeatureCursor, FeatureRow, IdSet

logger = logging.getLogger(__name__)


class ManualScanEngine:
    """
    Answers spatial queries on an unindexed table by scanning it.

    Rows are read in ascending id order, `chunk_size` at a time, and each
    row's envelope is tested against the query envelope padded by
    `tolerance`. Matching ids are then fetched through the row store like the
    indexed path does, so both paths return the same rows in the same order.
    """

    def __init__(
        self,
        table: FeatureTable,
        *,
        settings: IndexSettings | None = None,
        bridge: ProjectionBridge | None = None,
    ):
        self.table = table
        self.settings = settings or IndexSettings()
        self.bridge = bridge or ProjectionBridge(table.crs, geodesic=self.settings.geodesic)

    @property
    def tolerance(self) -> float:
        return float(self.settings.tolerance)

    def _scan(self, where: Predicates = None) -> Iterator[tuple[FeatureRow, GeometryEnvelope]]:
        # (row, envelope) for every row with a usable geometry, in id order.
        id_col, geom_col = self.table.id_and_geometry_columns()
        chunk_size = int(self.settings.chunk_size)
        after_id: int | None = None
        while True:
            rows = self.table.chunked_scan(
                [id_col, geom_col], where=where, limit=chunk_size, after_id=after_id
            )
            for row in rows:
                try:
                    env = row.geometry_envelope()
                except GeometryParseError:
                    logger.exception(
                        "failed to read feature geometry: table=%s id=%s", self.table.name, row.id
                    )
                    continue
                env = self.bridge.envelope(env)
                if env is not None:
                    yield row, env
            if len(rows) < chunk_size:
                return
            after_id = rows[-1].id

    def matching_ids(
        self,
        envelope: GeometryEnvelope,
        *,
        where: Predicates = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[int]:
        """
        Ids of rows whose envelope intersects `envelope` within tolerance.

        `offset` matches are skipped first, and scanning stops once `limit`
        ids have been collected.
        """
        skip = max(0, int(offset or 0))
        out: list[int] = []
        if limit is not None and limit <= 0:
            return out
        for row, env in self._scan(where):
            if not envelope.intersects(env, tolerance=self.tolerance):
                continue
            if skip:
                skip -= 1
                continue
            out.append(int(row.id))  # type: ignore[arg-type]
            if limit is not None and len(out) >= limit:
                break
        return out

    def query(self, options: QueryOptions) -> FeatureCursor:
        where = options.predicates()
        envelope = options.envelope()
        if envelope is None:
            return self.table.fetch_by_ids(
                None,
                where=where,
                distinct=options.distinct,
                columns=options.columns,
                order_by=options.order_by,
                limit=options.limit,
                offset=options.offset,
            )

        if options.order_by is None and not options.distinct:
            # Id order: limit/offset can be applied while scanning.
            ids = self.matching_ids(
                envelope, where=where, limit=options.limit, offset=options.offset or 0
            )
            return self.table.fetch_by_ids(IdSet.of(ids), columns=options.columns)

        ids = self.matching_ids(envelope, where=where)
        return self.table.fetch_by_ids(
            IdSet.of(ids),
            distinct=options.distinct,
            columns=options.columns,
            order_by=options.order_by,
            limit=options.limit,
            offset=options.offset,
        )

    def query_chunk(self, options: QueryOptions, *, limit: int, offset: int = 0) -> FeatureCursor:
        """
        One page of results.

        Every call rescans the table from its first row to find the `offset`
        matches to skip, so paging through a table this way is O(n) per call.
        Build the index when paging through large tables.
        """
        if limit is None or int(limit) < 0:
            raise QueryError("Chunk queries need a non-negative limit", {"limit": limit})
        return self.query(replace(options, limit=int(limit), offset=int(offset or 0)))

    def count(
        self,
        options: QueryOptions,
        *,
        column: str | None = None,
        distinct: bool = False,
    ) -> int:
        where = options.predicates()
        envelope = options.envelope()
        if envelope is None:
            return self.table.count_by_ids(None, where=where, column=column, distinct=distinct)
        ids = self.matching_ids(envelope, where=where)
        if column is None and not distinct:
            return len(ids)
        return self.table.count_by_ids(IdSet.of(ids), column=column, distinct=distinct)

    def bounding_box(self) -> GeometryEnvelope | None:
        """
        Union of every row envelope, or None when no row has a geometry.
        """
        return union_all(env for _row, env in self._scan())
