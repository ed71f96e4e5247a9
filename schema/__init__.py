"""Table names, table definitions and the schema catalog cache."""
