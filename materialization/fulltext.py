"""Full-text index removal and re-creation.

SQL Server rejects full-text DDL inside a user transaction, so these run on
an autocommit connection, never on the materialization session's own.
"""

from __future__ import annotations

import logging

import pyodbc

import config
import connections
from materialization.script_builder import MaterializationScriptBuilder, execute_script
from schema.catalog import SchemaCatalog, resolve_catalog
from schema.table_definition import FullTextIndexDefinition, TableSchemaDetailLevel
from schema.table_name import TableNameTerm

logger = logging.getLogger(__name__)


def remove_fulltext_index(
    conn: pyodbc.Connection,
    table_name: str | TableNameTerm,
    catalog: SchemaCatalog | None = None,
    cfg: config.BulkHelpersConfig | None = None,
) -> FullTextIndexDefinition | None:
    """Drop the table's full-text index and return its definition.

    Returns:
        The removed definition, or None when the table had no full-text index.
    """
    cfg = cfg or config.default_config()
    catalog = resolve_catalog(catalog, connections.identity_of(conn) if catalog is None else None)
    table_def = catalog.require_table_definition(
        table_name, TableSchemaDetailLevel.EXTENDED, conn, force_reload=True,
        query_timeout_seconds=cfg.schema_query_timeout_seconds,
    )
    if table_def.full_text_index is None:
        return None

    builder = MaterializationScriptBuilder().drop_fulltext_index(table_def.table_name_term)
    execute_script(conn, builder, cfg.materialize_ddl_timeout_seconds, "Drop full-text index script")
    catalog.invalidate(table_def.table_name_term)
    logger.info("Removed full-text index from %s", table_def.fully_qualified_name)
    return table_def.full_text_index


def add_fulltext_index(
    conn: pyodbc.Connection,
    table_name: str | TableNameTerm,
    definition: FullTextIndexDefinition,
    catalog: SchemaCatalog | None = None,
    cfg: config.BulkHelpersConfig | None = None,
) -> None:
    cfg = cfg or config.default_config()
    term = TableNameTerm.parse(table_name)
    builder = MaterializationScriptBuilder().add_fulltext_index(term, definition)
    execute_script(conn, builder, cfg.materialize_ddl_timeout_seconds, "Add full-text index script")
    if catalog is not None:
        catalog.invalidate(term)
    logger.info("Added full-text index on %s (catalog %s)", term, definition.catalog_name)
