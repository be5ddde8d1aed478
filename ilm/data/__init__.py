"""Storage layer: DuckDB connection, schema and object catalog."""
