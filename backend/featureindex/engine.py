from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from featureindex.config import IndexSettings
from featureindex.errors import GeometryParseError, NotIndexedError, QueryError
from featureindex.progress import ProgressToken
from featureindex.store import IndexStore
from geo.bbox import GeometryEnvelope
from geo.projection import ProjectionBridge
from store.features import FeatureTable
from store.rows import FeatureRow

logger = logging.getLogger(__name__)


def _active(progress: ProgressToken | None) -> bool:
    return progress is None or bool(progress.is_active())


@dataclass(frozen=True)
class _Chunk:
    read: int
    indexed: int
    last_id: int | None
    interrupted: bool


class IndexingEngine:
    """
    Builds and maintains the GeometryIndex rows of one feature table.

    A build reads `(id, geometry)` pairs in ascending id order, one chunk per
    transaction, so memory stays bounded by the chunk size whatever the table
    size. The table counts as indexed only once the final (short) chunk has
    been fully committed.
    """

    def __init__(
        self,
        table: FeatureTable,
        *,
        settings: IndexSettings | None = None,
        index_store: IndexStore | None = None,
        bridge: ProjectionBridge | None = None,
    ):
        self.table = table
        self.container = table.container
        self.settings = settings or IndexSettings()
        self.store = index_store or IndexStore(table.container)
        self.bridge = bridge or ProjectionBridge(table.crs, geodesic=self.settings.geodesic)
        self._lock = self.container.table_lock(table.name)

    @property
    def table_name(self) -> str:
        return self.table.name

    def is_indexed(self) -> bool:
        ti = self.store.table_index(self.table_name)
        return ti is not None and ti.complete

    def last_indexed(self) -> datetime | None:
        ti = self.store.table_index(self.table_name)
        return ti.last_indexed if ti is not None else None

    def index(self, *, force: bool = False, progress: ProgressToken | None = None) -> int:
        """
        Build the index unless the table is already indexed (or `force`).

        Returns the number of rows written to the index. A cancelled build
        keeps the chunks it committed but leaves the table unindexed.
        """
        with self._lock:
            if not force and self.is_indexed():
                return 0
            return self._build(progress)

    def _build(self, progress: ProgressToken | None) -> int:
        name = self.table_name
        _id_col, geom_col = self.table.id_and_geometry_columns()
        chunk_size = int(self.settings.chunk_size)
        logger.info("indexing %s (chunk_size=%s)", name, chunk_size)

        with self.container.transaction():
            cleared = self.store.delete_geometries(name)
            self.store.ensure_table_index(name, geom_col)
            self.store.clear_last_indexed(name)
        if cleared:
            logger.debug("cleared %s stale index rows for %s", cleared, name)

        total = 0
        chunks = 0
        after_id: int | None = None
        complete = False
        while _active(progress):
            chunk = self._index_chunk(after_id, chunk_size, progress)
            chunks += 1
            total += chunk.indexed
            logger.debug(
                "%s chunk %s: read=%s indexed=%s", name, chunks, chunk.read, chunk.indexed
            )
            if chunk.interrupted:
                break
            if chunk.read < chunk_size:
                complete = True
                break
            after_id = chunk.last_id

        if not complete:
            logger.warning(
                "indexing %s cancelled after %s chunks (%s rows indexed)", name, chunks, total
            )
            return total

        self.store.set_last_indexed(name)
        logger.info("indexed %s: %s rows in %s chunks", name, total, chunks)
        return total

    def _index_chunk(
        self, after_id: int | None, chunk_size: int, progress: ProgressToken | None
    ) -> _Chunk:
        id_col, geom_col = self.table.id_and_geometry_columns()
        entries: list[tuple[int, GeometryEnvelope]] = []
        interrupted = False
        with self.container.transaction():
            rows = self.table.chunked_scan([id_col, geom_col], limit=chunk_size, after_id=after_id)
            for row in rows:
                if not _active(progress):
                    interrupted = True
                    break
                env = self._row_envelope(row)
                if env is not None and row.id is not None:
                    entries.append((row.id, env))
                if progress is not None:
                    progress.add_progress(1)
            self.store.upsert_many(self.table_name, entries)
        return _Chunk(
            read=len(rows),
            indexed=len(entries),
            last_id=rows[-1].id if rows else after_id,
            interrupted=interrupted,
        )

    def _row_envelope(self, row: FeatureRow) -> GeometryEnvelope | None:
        try:
            env = row.geometry_envelope()
        except GeometryParseError:
            logger.exception("failed to index feature: table=%s id=%s", self.table_name, row.id)
            return None
        return self.bridge.envelope(env)

    def index_row(self, row: FeatureRow | int) -> bool:
        """
        Bring one row's index entry in line with its current geometry.

        Accepts a FeatureRow (with its geometry column loaded) or an id; an id
        whose row no longer exists drops its entry. Returns True when an
        entry was written, False when one was removed.
        """
        name = self.table_name
        with self._lock:
            ti = self.store.table_index(name)
            if ti is None:
                raise NotIndexedError(name)

            if isinstance(row, FeatureRow):
                current: FeatureRow | None = row
                fid = row.id
            else:
                fid = int(row)
                current = self.table.fetch_by_id(fid)
            if fid is None:
                raise QueryError("Row has no id", {"table": name})
            if current is not None and current.geometry_column is None:
                raise QueryError(
                    "Row was read without its geometry column",
                    {"table": name, "id": fid},
                )

            env = self.bridge.envelope(current.geometry_envelope()) if current else None
            with self.container.transaction():
                if env is None:
                    self.store.delete_geometry(name, fid)
                else:
                    self.store.upsert(name, fid, env)
                if ti.complete:
                    self.store.set_last_indexed(name)
            return env is not None

    def delete_index(self, geom_id: int | None = None) -> int:
        """
        Drop the whole index of the table, or only the entry of `geom_id`.
        """
        name = self.table_name
        with self._lock:
            if geom_id is not None:
                return self.store.delete_geometry(name, geom_id)
            deleted = self.store.delete_table(name)
        logger.info("dropped index of %s (%s rows)", name, deleted)
        return deleted
