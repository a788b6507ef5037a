from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterator, Mapping, Sequence

from featureindex.config import IndexSettings
from featureindex.engine import IndexingEngine
from featureindex.manual import ManualScanEngine
from featureindex.progress import ProgressToken
from featureindex.query import SpatialQueryEngine
from featureindex.rowsync import RowCache
from featureindex.store import GeometryIndex, IndexStore
from featureindex.types import QueryOptions, SpatialFilter, query_options
from geo.bbox import BoundingBox
from geo.projection import ProjectionBridge
from store.features import FeatureTable
from store.predicate import Where
from store.rows import FeatureCursor, FeatureRow

if TYPE_CHECKING:
    from store.container import GeoContainer

logger = logging.getLogger(__name__)

INDEXED = "indexed"
MANUAL = "manual"


class FeatureIndexManager:
    """
    Entry point for spatial queries against one feature table.

    Queries go through the GeometryIndex when the table is indexed and fall
    back to a chunked manual scan otherwise; both paths return the same rows.
    With `auto_index` the index is built on the first query instead.

    Spatial filters may be given in another CRS (`crs=`); they are moved into
    the table's native CRS before either path runs.
    """

    def __init__(
        self,
        container: "GeoContainer",
        table: str | FeatureTable,
        *,
        settings: IndexSettings | None = None,
    ):
        self.container = container
        self.table = table if isinstance(table, FeatureTable) else container.feature_table(table)
        self.settings = settings or IndexSettings()
        self.bridge = ProjectionBridge(self.table.crs, geodesic=self.settings.geodesic)
        self.index_store = IndexStore(container)
        self.indexer = IndexingEngine(
            self.table, settings=self.settings, index_store=self.index_store, bridge=self.bridge
        )
        self.indexed_engine = SpatialQueryEngine(self.table, self.index_store)
        self.manual_engine = ManualScanEngine(self.table, settings=self.settings, bridge=self.bridge)
        self.row_cache = RowCache()

    @property
    def table_name(self) -> str:
        return self.table.name

    # Index lifecycle

    def is_indexed(self) -> bool:
        return self.indexer.is_indexed()

    def last_indexed(self) -> datetime | None:
        return self.indexer.last_indexed()

    def index(self, *, force: bool = False, progress: ProgressToken | None = None) -> int:
        return self.indexer.index(force=force, progress=progress)

    def index_row(self, row: FeatureRow | int) -> bool:
        return self.indexer.index_row(row)

    def delete_index(self) -> int:
        return self.indexer.delete_index()

    def delete_index_row(self, geom_id: int) -> int:
        return self.indexer.delete_index(geom_id)

    @property
    def index_location(self) -> str:
        return INDEXED if self.is_indexed() else MANUAL

    def _use_index(self) -> bool:
        if self.is_indexed():
            return True
        if not self.settings.auto_index:
            return False
        logger.info("auto-indexing %s before first query", self.table_name)
        self.index()
        return self.is_indexed()

    # Queries

    def _options(self, crs: str | None = None, **kwargs: Any) -> QueryOptions:
        options = query_options(crs=crs, **kwargs)
        if options.spatial is None:
            return options.with_envelope(None)
        return options.with_envelope(self.bridge.to_native(options.spatial, crs))

    def query(
        self,
        *,
        distinct: bool = False,
        columns: Sequence[str] | None = None,
        spatial: SpatialFilter = None,
        crs: str | None = None,
        where: Where | str = None,
        where_args: Sequence[Any] | None = None,
        field_values: Mapping[str, Any] | None = None,
        order_by: str | Sequence[str] | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> FeatureCursor:
        """
        Rows matching the spatial filter and row predicates, in id order
        unless `order_by` is given. Close the cursor (or iterate it to the
        end) when done.
        """
        options = self._options(
            crs,
            distinct=distinct,
            columns=columns,
            spatial=spatial,
            where=where,
            where_args=where_args,
            field_values=field_values,
            order_by=order_by,
            limit=limit,
            offset=offset,
        )
        if self._use_index():
            return self.indexed_engine.query(options)
        return self.manual_engine.query(options)

    def query_chunk(
        self,
        *,
        limit: int,
        offset: int = 0,
        distinct: bool = False,
        columns: Sequence[str] | None = None,
        spatial: SpatialFilter = None,
        crs: str | None = None,
        where: Where | str = None,
        where_args: Sequence[Any] | None = None,
        field_values: Mapping[str, Any] | None = None,
        order_by: str | Sequence[str] | None = None,
    ) -> FeatureCursor:
        """
        One page of results.

        On an unindexed table every call scans from the first row to skip
        `offset` matches: O(n) per call, so paging a large table this way is
        quadratic overall.
        """
        options = self._options(
            crs,
            distinct=distinct,
            columns=columns,
            spatial=spatial,
            where=where,
            where_args=where_args,
            field_values=field_values,
            order_by=order_by,
            limit=limit,
            offset=offset,
        )
        if self._use_index():
            return self.indexed_engine.query(options)
        return self.manual_engine.query_chunk(options, limit=limit, offset=offset)

    def count(
        self,
        *,
        column: str | None = None,
        distinct: bool = False,
        spatial: SpatialFilter = None,
        crs: str | None = None,
        where: Where | str = None,
        where_args: Sequence[Any] | None = None,
        field_values: Mapping[str, Any] | None = None,
    ) -> int:
        options = self._options(
            crs,
            spatial=spatial,
            where=where,
            where_args=where_args,
            field_values=field_values,
        )
        if self._use_index():
            return self.indexed_engine.count(options, column=column, distinct=distinct)
        return self.manual_engine.count(options, column=column, distinct=distinct)

    def geometry_indices(
        self, spatial: SpatialFilter = None, *, crs: str | None = None
    ) -> Iterator[GeometryIndex]:
        """
        Raw GeometryIndex hits. Raises NotIndexedError on an unindexed table.
        """
        options = self._options(crs, spatial=spatial)
        return self.indexed_engine.geometry_indices(options.envelope())

    def feature_row(self, geometry_index: GeometryIndex | int) -> FeatureRow | None:
        """
        The feature row behind an index hit.

        Concurrent callers asking for the same id share a single fetch.
        """
        geom_id = (
            geometry_index.geom_id if isinstance(geometry_index, GeometryIndex) else int(geometry_index)
        )
        return self.row_cache.get_or_fetch(geom_id, self.table.fetch_by_id)

    def bounding_box(self, crs: str | None = None) -> BoundingBox | None:
        """
        Extent of all geometries, in `crs` (native CRS when omitted).
        """
        if self.is_indexed():
            env = self.indexed_engine.bounding_box()
        else:
            env = self.manual_engine.bounding_box()
        if env is None:
            return None
        return self.bridge.from_native(env.bounding_box(), crs)
