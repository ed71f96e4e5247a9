"""Identity column utilities: read the current seed, reseed, reseed to MAX()."""

from __future__ import annotations

import logging

import pyodbc

import connections
from connections import quote_identifier, quote_literal
from errors import SchemaResolutionError, ScriptExecutionError
from schema.catalog import SchemaCatalog, resolve_catalog
from schema.table_definition import TableDefinition, TableSchemaDetailLevel
from schema.table_name import TableNameTerm

logger = logging.getLogger(__name__)


def _identity_table(
    conn: pyodbc.Connection,
    table_name: str | TableNameTerm,
    catalog: SchemaCatalog | None,
) -> TableDefinition:
    catalog = resolve_catalog(catalog, connections.identity_of(conn) if catalog is None else None)
    table_def = catalog.require_table_definition(table_name, TableSchemaDetailLevel.BASIC, conn)
    if table_def.identity_column is None:
        raise SchemaResolutionError(
            table_def.table_name_term.unquoted_name,
            f"Table {table_def.fully_qualified_name} has no identity column",
        )
    return table_def


def get_current_identity_value(
    conn: pyodbc.Connection,
    table_name: str | TableNameTerm,
    catalog: SchemaCatalog | None = None,
) -> int:
    """Return IDENT_CURRENT() for the table.

    Raises:
        SchemaResolutionError: If the table is missing or has no identity column.
    """
    table_def = _identity_table(conn, table_name, catalog)
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT CAST(IDENT_CURRENT(?) AS BIGINT)", table_def.fully_qualified_name)
        row = cursor.fetchone()
    except pyodbc.Error as exc:
        raise ScriptExecutionError.from_driver_error(f"IDENT_CURRENT on {table_def.fully_qualified_name}", exc) from exc
    finally:
        cursor.close()

    if row is None or row[0] is None:
        raise SchemaResolutionError(
            table_def.table_name_term.unquoted_name,
            f"IDENT_CURRENT returned no value for {table_def.fully_qualified_name}",
        )
    return int(row[0])


def reseed_identity(
    conn: pyodbc.Connection,
    table_name: str | TableNameTerm,
    new_seed_value: int,
    catalog: SchemaCatalog | None = None,
) -> None:
    """DBCC CHECKIDENT(..., RESEED, new_seed_value). The next insert gets seed + increment."""
    table_def = _identity_table(conn, table_name, catalog)
    sql = (
        f"DBCC CHECKIDENT({quote_literal(table_def.fully_qualified_name)}, "
        f"RESEED, {int(new_seed_value)}) WITH NO_INFOMSGS;"
    )
    cursor = conn.cursor()
    try:
        cursor.execute(sql)
    except pyodbc.Error as exc:
        raise ScriptExecutionError.from_driver_error(f"Reseed of {table_def.fully_qualified_name}", exc) from exc
    finally:
        cursor.close()
    logger.info("Reseeded %s identity to %d", table_def.fully_qualified_name, new_seed_value)


def reseed_identity_to_max(
    conn: pyodbc.Connection,
    table_name: str | TableNameTerm,
    catalog: SchemaCatalog | None = None,
) -> int:
    """Reseed to MAX(identity column), or 0 for an empty table.

    Returns:
        The identity value after reseeding (IDENT_CURRENT).
    """
    table_def = _identity_table(conn, table_name, catalog)
    target = table_def.fully_qualified_name
    identity_col = quote_identifier(table_def.identity_column.column_name)
    sql = (
        "SET NOCOUNT ON;\n"
        f"DECLARE @MaxId BIGINT = (SELECT ISNULL(MAX({identity_col}), 0) FROM {target});\n"
        f"DBCC CHECKIDENT({quote_literal(target)}, RESEED, @MaxId) WITH NO_INFOMSGS;\n"
        f"SELECT CAST(IDENT_CURRENT({quote_literal(target)}) AS BIGINT);"
    )
    cursor = conn.cursor()
    try:
        cursor.execute(sql)
        row = cursor.fetchone()
    except pyodbc.Error as exc:
        raise ScriptExecutionError.from_driver_error(f"Reseed to max of {target}", exc) from exc
    finally:
        cursor.close()

    new_value = int(row[0]) if row is not None and row[0] is not None else 0
    logger.info("Reseeded %s identity to current max %d", target, new_value)
    return new_value
