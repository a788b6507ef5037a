from __future__ import annotations

import logging
import os

from api.app import create_app
from featureindex.config import load_settings
from store.container import GeoContainer

logging.basicConfig(level=(os.getenv("FIDX_LOG_LEVEL") or "INFO").upper())

settings = load_settings()
container = GeoContainer.open(settings.db_path, threads=settings.threads)
app = create_app(container, settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=int(os.getenv("FIDX_PORT") or "8000"))
