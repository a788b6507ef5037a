from __future__ import annotations

import threading
from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from featureindex.config import IndexSettings
from featureindex.errors import (
    FeatureIndexError,
    NotIndexedError,
    ProjectionError,
    QueryError,
)
from featureindex.manager import FeatureIndexManager
from geo.bbox import BoundingBox
from store.container import GeoContainer
from store.rows import FeatureRow

MAX_PAGE = 10_000


class ApiBBox(BaseModel):
    minX: float
    minY: float
    maxX: float
    maxY: float

    @classmethod
    def of(cls, b: BoundingBox) -> "ApiBBox":
        return cls(minX=b.min_x, minY=b.min_y, maxX=b.max_x, maxY=b.max_y)


class ApiIndexStatus(BaseModel):
    table: str
    indexed: bool
    lastIndexed: datetime | None = None
    location: str


class ApiIndexResult(BaseModel):
    table: str
    indexed: bool
    count: int


class ApiDeleteResult(BaseModel):
    table: str
    deleted: int


class ApiCount(BaseModel):
    count: int


class ApiExtent(BaseModel):
    table: str
    bbox: ApiBBox | None = None


class ApiFeature(BaseModel):
    id: int
    bbox: ApiBBox | None = None
    properties: dict[str, Any]


def parse_bbox(raw: str | None) -> BoundingBox | None:
    """
    `minx,miny,maxx,maxy` -> BoundingBox (None when not given).
    """
    if raw is None or not raw.strip():
        return None
    parts = [p.strip() for p in raw.split(",")]
    if len(parts) != 4:
        raise HTTPException(status_code=400, detail="bbox must be minx,miny,maxx,maxy")
    try:
        min_x, min_y, max_x, max_y = (float(p) for p in parts)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid bbox: {raw}") from e
    return BoundingBox(min_x=min_x, min_y=min_y, max_x=max_x, max_y=max_y).normalized()


def _error(status: int, exc: FeatureIndexError) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={"detail": exc.message, "context": {k: str(v) for k, v in exc.details.items()}},
    )


def create_app(container: GeoContainer, settings: IndexSettings | None = None) -> FastAPI:
    """
    HTTP surface over the feature index of every table in `container`.
    """
    settings = settings or IndexSettings()
    app = FastAPI(title="feature-index")
    app.state.container = container
    app.state.settings = settings

    managers: dict[str, FeatureIndexManager] = {}
    lock = threading.Lock()

    def manager_for(table: str) -> FeatureIndexManager:
        # One manager per table so concurrent requests share its row cache.
        with lock:
            m = managers.get(table)
            if m is not None:
                return m
            if table not in container.feature_tables():
                raise HTTPException(status_code=404, detail=f"Unknown table: {table}")
            m = FeatureIndexManager(container, table, settings=settings)
            managers[table] = m
            return m

    def feature_out(m: FeatureIndexManager, row: FeatureRow, crs: str | None) -> ApiFeature:
        env = row.geometry_envelope()
        bbox = m.bridge.from_native(env.bounding_box(), crs) if env is not None else None
        props = {k: v for k, v in row.values.items() if k not in m.table.id_and_geometry_columns()}
        return ApiFeature(
            id=int(row.id),  # type: ignore[arg-type]
            bbox=ApiBBox.of(bbox) if bbox is not None else None,
            properties=props,
        )

    @app.exception_handler(NotIndexedError)
    async def _not_indexed(_request: Request, exc: NotIndexedError):
        return _error(409, exc)

    @app.exception_handler(ProjectionError)
    async def _projection(_request: Request, exc: ProjectionError):
        return _error(400, exc)

    @app.exception_handler(QueryError)
    async def _query(_request: Request, exc: QueryError):
        return _error(400, exc)

    @app.exception_handler(FeatureIndexError)
    async def _storage(_request: Request, exc: FeatureIndexError):
        return _error(500, exc)

    @app.get("/tables", response_model=list[str])
    def list_tables():
        return container.feature_tables()

    @app.get("/tables/{table}/index", response_model=ApiIndexStatus)
    def index_status(table: str):
        m = manager_for(table)
        return ApiIndexStatus(
            table=table,
            indexed=m.is_indexed(),
            lastIndexed=m.last_indexed(),
            location=m.index_location,
        )

    @app.post("/tables/{table}/index", response_model=ApiIndexResult)
    def build_index(table: str, force: bool = False):
        m = manager_for(table)
        count = m.index(force=force)
        return ApiIndexResult(table=table, indexed=m.is_indexed(), count=count)

    @app.delete("/tables/{table}/index", response_model=ApiDeleteResult)
    def drop_index(table: str):
        m = manager_for(table)
        return ApiDeleteResult(table=table, deleted=m.delete_index())

    @app.get("/tables/{table}/count", response_model=ApiCount)
    def count_features(table: str, bbox: str | None = None, crs: str | None = None):
        m = manager_for(table)
        return ApiCount(count=m.count(spatial=parse_bbox(bbox), crs=crs))

    @app.get("/tables/{table}/extent", response_model=ApiExtent)
    def table_extent(table: str, crs: str | None = None):
        m = manager_for(table)
        b = m.bounding_box(crs)
        return ApiExtent(table=table, bbox=ApiBBox.of(b) if b is not None else None)

    @app.get("/tables/{table}/features", response_model=list[ApiFeature])
    def list_features(
        table: str,
        bbox: str | None = None,
        crs: str | None = None,
        limit: int = Query(default=100, ge=0, le=MAX_PAGE),
        offset: int = Query(default=0, ge=0),
    ):
        m = manager_for(table)
        with m.query_chunk(spatial=parse_bbox(bbox), crs=crs, limit=limit, offset=offset) as cur:
            return [feature_out(m, row, crs) for row in cur]

    return app
