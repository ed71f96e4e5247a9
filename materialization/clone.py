"""Table clone, drop and clear operations.

Every operation builds one script with MaterializationScriptBuilder and runs
it on the caller's connection, so it joins whatever transaction the caller
has open.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

import pyodbc

import config
import connections
from errors import ConfigurationError
from materialization.script_builder import IfExists, MaterializationScriptBuilder, execute_script
from schema.catalog import SchemaCatalog, resolve_catalog
from schema.table_definition import TableSchemaDetailLevel
from schema.table_name import TableNameTerm

logger = logging.getLogger(__name__)

COPY_TABLE_MARKER = "_Copy"


@dataclass(frozen=True)
class CloneTableInfo:
    """Source and target of one clone."""

    source_table: TableNameTerm
    target_table: TableNameTerm

    @classmethod
    def from_names(
        cls,
        source: str | TableNameTerm,
        target: str | TableNameTerm | None = None,
    ) -> CloneTableInfo:
        """Build clone info; a missing target becomes ``<table>_Copy_<id>``."""
        source_term = TableNameTerm.parse(source)
        if target is None:
            target_term = source_term.with_prefix_suffix(suffix=COPY_TABLE_MARKER).make_unique()
        else:
            target_term = TableNameTerm.parse(target)
        return cls(source_term, target_term)


def distinct_table_names(table_names: Iterable[str | TableNameTerm]) -> list[TableNameTerm]:
    terms: list[TableNameTerm] = []
    seen: set[str] = set()
    for name in table_names:
        term = TableNameTerm.parse(name)
        if term.cache_key not in seen:
            seen.add(term.cache_key)
            terms.append(term)
    return terms


def _resolve(conn: pyodbc.Connection, catalog: SchemaCatalog | None) -> SchemaCatalog:
    return resolve_catalog(catalog, connections.identity_of(conn) if catalog is None else None)


def clone_tables(
    conn: pyodbc.Connection,
    tables_to_clone: Iterable[CloneTableInfo],
    recreate_if_exists: bool = False,
    copy_data: bool = False,
    include_foreign_keys: bool = False,
    catalog: SchemaCatalog | None = None,
    cfg: config.BulkHelpersConfig | None = None,
) -> list[CloneTableInfo]:
    """Clone each source table's structure (and optionally data) into its target.

    All clones run as one script. With ``recreate_if_exists=False`` an existing
    target stops the script before anything is created for it.

    Raises:
        ValueError: If no tables are given or a source equals its target.
        SchemaResolutionError: If a source table does not exist.
        ScriptExecutionError: If the clone script reports failure.
    """
    cfg = cfg or config.default_config()
    clone_list = list(tables_to_clone)
    if not clone_list:
        raise ValueError("At least one source and target table pair must be specified")

    catalog = _resolve(conn, catalog)
    builder = MaterializationScriptBuilder()
    if_exists = IfExists.RECREATE if recreate_if_exists else IfExists.STOP_WITH_EXCEPTION

    for info in clone_list:
        if info.target_table.equals(info.source_table):
            raise ValueError(
                f"The source table {info.source_table} and target table "
                f"{info.target_table} must be different"
            )
        source_def = catalog.require_table_definition(
            info.source_table, TableSchemaDetailLevel.EXTENDED, conn,
            query_timeout_seconds=cfg.schema_query_timeout_seconds,
        )
        builder.clone_table_with_all_elements(
            source_def,
            info.target_table,
            if_exists=if_exists,
            copy_data=copy_data,
            include_foreign_keys=include_foreign_keys,
            clone_identity_seed=cfg.clone_identity_seed_enabled,
        )

    execute_script(conn, builder, cfg.materialize_ddl_timeout_seconds, "Clone tables script")
    for info in clone_list:
        catalog.invalidate(info.target_table)
        logger.info("Cloned %s -> %s", info.source_table, info.target_table)
    return clone_list


def clone_table(
    conn: pyodbc.Connection,
    source_table: str | TableNameTerm,
    target_table: str | TableNameTerm | None = None,
    recreate_if_exists: bool = False,
    copy_data: bool = False,
    **kwargs,
) -> CloneTableInfo:
    """Single-table form of clone_tables()."""
    info = CloneTableInfo.from_names(source_table, target_table)
    return clone_tables(
        conn, [info], recreate_if_exists=recreate_if_exists, copy_data=copy_data, **kwargs,
    )[0]


def drop_tables(
    conn: pyodbc.Connection,
    table_names: Iterable[str | TableNameTerm],
    catalog: SchemaCatalog | None = None,
    cfg: config.BulkHelpersConfig | None = None,
) -> list[TableNameTerm]:
    """Drop every named table that exists, in one script."""
    cfg = cfg or config.default_config()
    terms = distinct_table_names(table_names)
    if not terms:
        return []

    builder = MaterializationScriptBuilder()
    for term in terms:
        builder.drop_table(term)
    execute_script(conn, builder, cfg.materialize_ddl_timeout_seconds, "Drop tables script")

    catalog = _resolve(conn, catalog)
    for term in terms:
        catalog.invalidate(term)
    logger.info("Dropped %d table(s): %s", len(terms), ", ".join(str(t) for t in terms))
    return terms


def clear_tables(
    conn: pyodbc.Connection,
    table_names: Iterable[str | TableNameTerm],
    force_override_of_constraints: bool = False,
    catalog: SchemaCatalog | None = None,
    cfg: config.BulkHelpersConfig | None = None,
) -> list[TableNameTerm]:
    """Remove all rows from the named tables.

    Tables without foreign-key relationships are truncated. Tables with keys
    in either direction cannot be truncated; with
    ``force_override_of_constraints`` they are cleared by materializing an
    empty clone in their place on the same connection.

    Raises:
        ConfigurationError: If a table has foreign-key relationships and the
            override was not requested. Raised before any DDL runs.
    """
    cfg = cfg or config.default_config()
    terms = distinct_table_names(table_names)
    if not terms:
        return []

    catalog = _resolve(conn, catalog)
    to_truncate: list[TableNameTerm] = []
    to_materialize: list[TableNameTerm] = []
    for term in terms:
        table_def = catalog.require_table_definition(
            term, TableSchemaDetailLevel.EXTENDED, conn,
            query_timeout_seconds=cfg.schema_query_timeout_seconds,
        )
        if table_def.has_foreign_key_relationships:
            to_materialize.append(table_def.table_name_term)
        else:
            to_truncate.append(table_def.table_name_term)

    if to_materialize and not force_override_of_constraints:
        raise ConfigurationError(
            "Tables with foreign key relationships cannot be truncated: "
            + ", ".join(str(t) for t in to_materialize)
            + ". Pass force_override_of_constraints=True to clear them by "
            "switching in empty copies."
        )

    if to_materialize:
        # Deferred import: the orchestrator itself depends on this module.
        from materialization import orchestrator

        context = orchestrator.start_materialization(conn, to_materialize, cfg=cfg, catalog=catalog)
        orchestrator.finish(context)

    if to_truncate:
        builder = MaterializationScriptBuilder()
        for term in to_truncate:
            builder.truncate_table(term)
        execute_script(conn, builder, cfg.materialize_ddl_timeout_seconds, "Truncate tables script")

    logger.info(
        "Cleared %d table(s) (%d truncated, %d switched with empty copies)",
        len(terms), len(to_truncate), len(to_materialize),
    )
    return terms
