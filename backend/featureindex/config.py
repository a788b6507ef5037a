from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_TOLERANCE = 1e-14

_ENV_KEYS = {
    "FIDX_CHUNK_SIZE": "chunk_size",
    "FIDX_TOLERANCE": "tolerance",
    "FIDX_GEODESIC": "geodesic",
    "FIDX_AUTO_INDEX": "auto_index",
    "FIDX_DB_PATH": "db_path",
    "FIDX_THREADS": "threads",
}
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


class IndexSettings(BaseModel):
    """
    Tunables for indexing and querying.

    `geodesic` changes what gets stored in the index, so it has to match
    between the build and every later query of the same table.
    """

    chunk_size: int = Field(default=DEFAULT_CHUNK_SIZE, gt=0)
    # Symmetric padding applied to query boxes by the manual (unindexed) scan.
    tolerance: float = Field(default=DEFAULT_TOLERANCE, ge=0.0)
    geodesic: bool = False
    # Build the index on first query instead of falling back to a manual scan.
    auto_index: bool = False
    db_path: str = "data/featureindex.duckdb"
    threads: int = Field(default_factory=lambda: max(1, int(os.cpu_count() or 1)), gt=0)


def _load_yaml(path: Path) -> dict:
    raw = path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid settings yaml root: {path}")
    return data


def _env_value(key: str, raw: str) -> Any:
    v = raw.strip()
    if key in {"geodesic", "auto_index"}:
        low = v.lower()
        if low in _TRUE:
            return True
        if low in _FALSE:
            return False
        raise ValueError(f"Invalid boolean for {key}: {raw!r}")
    return v


def load_settings(path: str | Path | None = None) -> IndexSettings:
    """
    Settings from an optional YAML file, overridden by FIDX_* env vars.

    The file comes from `path` or, when omitted, from FIDX_CONFIG. Invalid
    values raise (pydantic ValidationError is a ValueError).
    """
    data: dict[str, Any] = {}
    cfg_path = path or (os.getenv("FIDX_CONFIG") or "").strip() or None
    if cfg_path:
        data.update(_load_yaml(Path(cfg_path)))
    for env_key, field_name in _ENV_KEYS.items():
        raw = os.getenv(env_key)
        if raw is not None and raw.strip():
            data[field_name] = _env_value(field_name, raw)
    return IndexSettings.model_validate(data)
