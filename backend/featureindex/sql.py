from __future__ import annotations

CREATE_TABLE_INDEX_SQL = """
CREATE TABLE IF NOT EXISTS table_index (
  table_name TEXT PRIMARY KEY,
  geometry_column TEXT NOT NULL,
  last_indexed TIMESTAMP
);
"""

CREATE_GEOMETRY_INDEX_SQL = """
CREATE TABLE IF NOT EXISTS geometry_index (
  table_name TEXT NOT NULL,
  geom_id BIGINT NOT NULL,
  min_x DOUBLE NOT NULL,
  max_x DOUBLE NOT NULL,
  min_y DOUBLE NOT NULL,
  max_y DOUBLE NOT NULL,
  min_z DOUBLE,
  max_z DOUBLE,
  min_m DOUBLE,
  max_m DOUBLE,
  PRIMARY KEY (table_name, geom_id)
);
"""

SELECT_TABLE_INDEX_SQL = """
SELECT table_name, geometry_column, last_indexed
  FROM table_index
 WHERE table_name = ?
"""

INSERT_TABLE_INDEX_SQL = """
INSERT INTO table_index (table_name, geometry_column, last_indexed)
VALUES (?, ?, NULL)
ON CONFLICT DO NOTHING
"""

UPDATE_LAST_INDEXED_SQL = """
UPDATE table_index
   SET last_indexed = ?
 WHERE table_name = ?
"""

DELETE_TABLE_INDEX_SQL = "DELETE FROM table_index WHERE table_name = ?"

UPSERT_GEOMETRY_INDEX_SQL = """
INSERT OR REPLACE INTO geometry_index
  (table_name, geom_id, min_x, max_x, min_y, max_y, min_z, max_z, min_m, max_m)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

DELETE_GEOMETRY_INDEX_SQL = """
DELETE FROM geometry_index
 WHERE table_name = ? AND geom_id = ?
"""

DELETE_TABLE_GEOMETRIES_SQL = """
DELETE FROM geometry_index
 WHERE table_name = ?
"""

GEOMETRY_INDEX_COLUMNS = (
    "table_name, geom_id, min_x, max_x, min_y, max_y, min_z, max_z, min_m, max_m"
)

# Intersection of stored rectangles with a query rectangle (inclusive).
RANGE_XY_SQL = "min_x <= ? AND max_x >= ? AND min_y <= ? AND max_y >= ?"
# Z/M only constrain rows that carry the dimension.
RANGE_Z_SQL = "(min_z IS NULL OR (min_z <= ? AND max_z >= ?))"
RANGE_M_SQL = "(min_m IS NULL OR (min_m <= ? AND max_m >= ?))"

EXTENT_SQL = """
SELECT MIN(min_x), MIN(min_y), MAX(max_x), MAX(max_y)
  FROM geometry_index
 WHERE table_name = ?
"""
