"""
Spatial index for feature tables.

One bounding rectangle per feature row, stored in plain relational tables and
queried with range predicates. `FeatureIndexManager` is the entry point: it
answers queries from the index when a table is indexed and falls back to a
chunked manual scan when it is not.
"""
