"""
Generic row store for feature tables, backed by DuckDB.

A `GeoContainer` is one database file; each feature table has an integer id
column and a WKB geometry column registered in `geometry_columns`.
"""
