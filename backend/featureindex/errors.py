"""
Exceptions raised by the feature index.

Everything derives from `FeatureIndexError` so callers can catch broadly when
they don't care which stage failed.
"""
from __future__ import annotations


class FeatureIndexError(Exception):
    """
    Base exception for feature index failures.

    Attributes:
        message: Human-readable error description
        details: Additional context about the failure
    """

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


class NotIndexedError(FeatureIndexError):
    """
    An index-only operation was called on a table without a TableIndex row.

    Not retried; call `index()` first.
    """

    def __init__(self, table_name: str):
        super().__init__("Feature table is not indexed", {"table": table_name})
        self.table_name = table_name


class GeometryParseError(FeatureIndexError):
    """A stored geometry blob could not be decoded."""


class StorageError(FeatureIndexError):
    """
    The underlying store failed (chunk read, transaction, DDL).

    Fatal to the current operation. The failing chunk transaction has been
    rolled back; an interrupted build can be re-run from scratch.
    """


class ProjectionError(FeatureIndexError):
    """A coordinate transform could not be constructed or applied."""


class QueryError(FeatureIndexError):
    """Invalid query input: unknown table or column, bad operator, bad predicate."""
