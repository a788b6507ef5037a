from __future__ import annotations

import re

from featureindex.errors import QueryError

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_TYPE_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*(\(\s*\d+(\s*,\s*\d+)?\s*\))?(\[\])?$")

CREATE_GEOMETRY_COLUMNS_SQL = """
CREATE TABLE IF NOT EXISTS geometry_columns (
  table_name TEXT PRIMARY KEY,
  column_name TEXT NOT NULL,
  id_column TEXT NOT NULL,
  crs TEXT NOT NULL
);
"""

INSERT_GEOMETRY_COLUMNS_SQL = """
INSERT INTO geometry_columns (table_name, column_name, id_column, crs)
VALUES (?, ?, ?, ?)
"""

SELECT_GEOMETRY_COLUMNS_SQL = """
SELECT table_name, column_name, id_column, crs
  FROM geometry_columns
 WHERE table_name = ?
"""

LIST_GEOMETRY_COLUMNS_SQL = """
SELECT table_name
  FROM geometry_columns
 ORDER BY table_name
"""

DELETE_GEOMETRY_COLUMNS_SQL = "DELETE FROM geometry_columns WHERE table_name = ?"

TABLE_COLUMNS_SQL = """
SELECT column_name
  FROM information_schema.columns
 WHERE table_name = ?
 ORDER BY ordinal_position
"""

TABLE_EXISTS_SQL = """
SELECT COUNT(*)
  FROM information_schema.tables
 WHERE table_name = ?
"""


def check_ident(name: str) -> str:
    n = str(name or "").strip()
    if not _IDENT_RE.match(n):
        raise QueryError("Invalid identifier", {"name": name})
    return n


def quote_ident(name: str) -> str:
    return '"' + check_ident(name) + '"'


def check_type(sql_type: str) -> str:
    t = str(sql_type or "").strip()
    if not _TYPE_RE.match(t):
        raise QueryError("Invalid column type", {"type": sql_type})
    return t


def sequence_name(table: str) -> str:
    return f"{check_ident(table)}_id_seq"
