"""Bulk load + MERGE executor: stage records, merge, read back, reconcile.

Protocol per call (strictly ordered):
  1. Resolve the table definition and the match qualifier. An invalid
     qualifier fails here, before any I/O.
  2. Create #staging and #output on the caller's connection.
  3. Stream records into #staging with pyodbc fast_executemany, batch by
     batch. Each row is tagged with its 1-based row number as it is enumerated.
  4. Run the MERGE (single statement, inside the caller's transaction).
  5. Read #output ordered by row number, identity.
  6. Drop both temp tables, on success and on failure.

The connection is the transaction: open it with autocommit=False and commit
or roll back afterwards. Nothing here commits.

Usage::

    conn = connections.get_connection("Sales", autocommit=False)
    try:
        bulk_insert_or_update(conn, orders, table_name="dbo.Orders")
        conn.commit()
    except Exception:
        conn.rollback()
        raise
"""

from __future__ import annotations

import itertools
import logging
import time
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Callable

import polars as pl
import pyodbc

import config
import connections
from data_load.match_qualifiers import MatchQualifierExpression, resolve_match_qualifiers
from data_load.merge_action import MergeAction
from data_load.merge_scripts import ROW_NUMBER_COLUMN, MergeScripts, build_merge_scripts
from data_load.reconciler import (
    NO_IDENTITY,
    MergeResult,
    reconcile_dataframe,
    reconcile_records,
)
from data_load.record_mapping import ResolvedRecordMapping, get_value, resolve_record_mapping
from errors import ScriptExecutionError, SchemaResolutionError
from schema.catalog import SchemaCatalog, resolve_catalog
from schema.table_definition import TableDefinition, TableSchemaDetailLevel
from schema.table_name import TableNameTerm

logger = logging.getLogger(__name__)


@dataclass
class MergeSummary:
    """Counts from one merge execution."""

    table_name: str
    merge_action: MergeAction
    rows_staged: int = 0
    result_rows: int = 0
    matched_row_numbers: int = 0
    elapsed_seconds: float = 0.0

    @property
    def has_non_unique_matches(self) -> bool:
        return self.result_rows > self.matched_row_numbers


def _batched(rows: Iterable[tuple], size: int) -> Iterator[list[tuple]]:
    iterator = iter(rows)
    while True:
        batch = list(itertools.islice(iterator, size))
        if not batch:
            return
        yield batch


# ---------------------------------------------------------------------------
# Record -> staging row conversion
# ---------------------------------------------------------------------------

def _supplied_columns(
    records,
    table_def: TableDefinition,
    record_mapping: ResolvedRecordMapping | None,
) -> list[str]:
    """Non-identity table columns the batch actually provides values for."""
    candidates = table_def.column_names(include_identity=False)
    if isinstance(records, pl.DataFrame):
        present = {c.lower() for c in records.columns}
        return [c for c in candidates if c.lower() in present]
    return [c for c in candidates if record_mapping.attribute_for_column(c) is not None]


def _dataframe_rows(df: pl.DataFrame, scripts: MergeScripts, table_def: TableDefinition) -> Iterator[tuple]:
    by_lower = {c.lower(): c for c in df.columns}
    identity = table_def.identity_column
    exprs = []
    for column in scripts.staging_columns:
        if column == ROW_NUMBER_COLUMN:
            exprs.append(pl.col(ROW_NUMBER_COLUMN))
            continue
        source = by_lower.get(column.lower())
        is_identity = identity is not None and column == identity.column_name
        if source is None:
            exprs.append(pl.lit(NO_IDENTITY if is_identity else None).alias(column))
        elif is_identity:
            exprs.append(pl.col(source).fill_null(NO_IDENTITY).alias(column))
        else:
            exprs.append(pl.col(source).alias(column))
    numbered = df.with_row_index(ROW_NUMBER_COLUMN, offset=1)
    return numbered.select(exprs).iter_rows()


def _object_rows(
    records: list,
    scripts: MergeScripts,
    table_def: TableDefinition,
    record_mapping: ResolvedRecordMapping,
) -> Iterator[tuple]:
    identity = table_def.identity_column
    attributes: list[str | None] = []
    for column in scripts.staging_columns:
        if column == ROW_NUMBER_COLUMN:
            attributes.append(None)
        elif identity is not None and column == identity.column_name and record_mapping.mapping \
                and record_mapping.mapping.identity_attribute:
            attributes.append(record_mapping.mapping.identity_attribute)
        else:
            attributes.append(record_mapping.attribute_for_column(column))

    identity_index = (
        scripts.staging_columns.index(identity.column_name) if identity is not None else -1
    )
    for row_number, record in enumerate(records, start=1):
        values = []
        for idx, attribute in enumerate(attributes):
            if attribute is None:
                value = row_number if scripts.staging_columns[idx] == ROW_NUMBER_COLUMN else None
            else:
                value = get_value(record, attribute)
            if idx == identity_index and value is None:
                value = NO_IDENTITY
            values.append(value)
        yield tuple(values)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

def execute_merge(
    conn: pyodbc.Connection,
    records,
    table_def: TableDefinition,
    qualifier: MatchQualifierExpression,
    merge_action: MergeAction,
    enable_identity_insert: bool = False,
    record_mapping: ResolvedRecordMapping | None = None,
    cfg: config.BulkHelpersConfig | None = None,
) -> tuple[list[MergeResult], MergeScripts, MergeSummary]:
    """Run steps 2-6 of the protocol and return the ordered merge results.

    Args:
        conn: Open pyodbc connection (the caller's transaction).
        records: list of records or a polars DataFrame (already materialized).
        table_def: Target table definition.
        qualifier: Resolved match qualifier.
        merge_action: INSERT, UPDATE or INSERT_OR_UPDATE.
        enable_identity_insert: Insert caller-supplied identity values.
        record_mapping: Required for non-DataFrame records.
        cfg: Batch size, per-batch timeout and table lock settings.

    Raises:
        ScriptExecutionError: If any SQL step fails. Temp tables are still dropped.
    """
    cfg = cfg or config.default_config()
    start = time.monotonic()
    is_frame = isinstance(records, pl.DataFrame)

    scripts = build_merge_scripts(
        table_def,
        qualifier,
        merge_action,
        enable_identity_insert=enable_identity_insert,
        column_names=_supplied_columns(records, table_def, record_mapping),
    )
    summary = MergeSummary(table_def.table_name_term.unquoted_name, merge_action)

    cursor = conn.cursor()
    try:
        try:
            cursor.execute(scripts.create_temp_tables_sql)
        except pyodbc.Error as exc:
            raise ScriptExecutionError.from_driver_error(
                f"Creating staging tables for {table_def.fully_qualified_name}", exc,
            ) from exc

        rows = (
            _dataframe_rows(records, scripts, table_def) if is_frame
            else _object_rows(records, scripts, table_def, record_mapping)
        )
        insert_sql = scripts.staging_insert_sql(cfg.table_lock_enabled)
        cursor.fast_executemany = True
        for batch in _batched(rows, cfg.batch_size):
            try:
                with connections.command_timeout(conn, cfg.per_batch_timeout_seconds):
                    cursor.executemany(insert_sql, batch)
            except pyodbc.Error as exc:
                raise ScriptExecutionError.from_driver_error(
                    f"Staging batch at row {summary.rows_staged + 1} for "
                    f"{table_def.fully_qualified_name}", exc,
                ) from exc
            summary.rows_staged += len(batch)
            logger.debug("Staged %d row(s) into %s", summary.rows_staged, scripts.staging_table)
        cursor.fast_executemany = False

        try:
            cursor.execute(scripts.merge_sql)
            cursor.execute(scripts.read_results_sql)
            output_rows = cursor.fetchall()
        except pyodbc.Error as exc:
            raise ScriptExecutionError.from_driver_error(f"MERGE into {table_def.fully_qualified_name}", exc) from exc

        if scripts.retrieves_identity:
            results = [MergeResult(int(r[0]), int(r[1])) for r in output_rows]
        else:
            results = [MergeResult(int(r[0])) for r in output_rows]
    finally:
        # IF EXISTS drops: also covers a create script that failed halfway.
        try:
            cursor.execute(scripts.drop_temp_tables_sql)
        except pyodbc.Error:
            logger.warning(
                "Could not drop temp tables %s / %s",
                scripts.staging_table, scripts.output_table, exc_info=True,
            )
        cursor.close()

    summary.result_rows = len(results)
    summary.matched_row_numbers = len({r.row_number for r in results})
    summary.elapsed_seconds = time.monotonic() - start
    logger.info(
        "Merged %d row(s) into %s (%s): %d output row(s) in %.2fs",
        summary.rows_staged, summary.table_name, merge_action.name,
        summary.result_rows, summary.elapsed_seconds,
    )
    return results, scripts, summary


def _resolve_table_name(
    table_name: str | TableNameTerm | None,
    record_mapping: ResolvedRecordMapping | None,
) -> str | TableNameTerm:
    if table_name:
        return table_name
    if record_mapping is not None and record_mapping.table_name:
        return record_mapping.table_name
    if record_mapping is not None and not issubclass(record_mapping.record_type, Mapping):
        return record_mapping.record_type.__name__
    raise SchemaResolutionError(
        "<unspecified>",
        "A table name is required for DataFrame and mapping records",
    )


def bulk_merge(
    conn: pyodbc.Connection,
    records,
    merge_action: MergeAction | str,
    table_name: str | TableNameTerm | None = None,
    match_qualifier: MatchQualifierExpression | Iterable[str] | None = None,
    enable_identity_insert: bool = False,
    catalog: SchemaCatalog | None = None,
    cfg: config.BulkHelpersConfig | None = None,
    on_summary: Callable[[MergeSummary], None] | None = None,
):
    """Merge ``records`` into a table and write identities back.

    Args:
        conn: Open pyodbc connection (the caller's transaction).
        records: Iterable of records (dataclasses, plain objects or dicts) or a
            polars DataFrame.
        merge_action: INSERT, UPDATE or INSERT_OR_UPDATE (or its name).
        table_name: Target table; defaults to the record mapping / class name.
        match_qualifier: Columns correlating input rows to target rows.
        enable_identity_insert: Insert caller-supplied identity values.
        catalog: Schema catalog; defaults to the registry entry for ``conn``.
        cfg: Bulk settings; defaults to config.default_config().
        on_summary: Receives the MergeSummary after a successful merge.

    Returns:
        The same list of records with identities set, or a new DataFrame.

    Raises:
        SchemaResolutionError: Target table not found.
        InvalidMatchQualifierError: No usable match columns (before any I/O).
        NonUniqueMatchError: A row matched several targets and rejection is on.
        ScriptExecutionError: Any SQL failure while staging or merging.
    """
    merge_action = MergeAction.parse(merge_action)
    cfg = cfg or config.default_config()
    is_frame = isinstance(records, pl.DataFrame)
    if not is_frame:
        # Enumerate once; row numbers are assigned against this list.
        records = list(records)
    if (is_frame and records.height == 0) or (not is_frame and not records):
        return records

    record_mapping = None
    if not is_frame:
        record_mapping = resolve_record_mapping(type(records[0]), records[0])

    resolved_name = _resolve_table_name(table_name, record_mapping)
    catalog = resolve_catalog(catalog, connections.identity_of(conn) if catalog is None else None)
    table_def = catalog.require_table_definition(
        resolved_name, TableSchemaDetailLevel.BASIC, conn,
        query_timeout_seconds=cfg.schema_query_timeout_seconds,
    )
    qualifier = resolve_match_qualifiers(table_def, match_qualifier, record_mapping)

    results, scripts, summary = execute_merge(
        conn,
        records,
        table_def,
        qualifier,
        merge_action,
        enable_identity_insert=enable_identity_insert,
        record_mapping=record_mapping,
        cfg=cfg,
    )

    if is_frame:
        reconciled = reconcile_dataframe(
            records, results, table_def, qualifier, scripts.retrieves_identity,
        )
    else:
        reconciled = reconcile_records(
            records, results, table_def, qualifier, record_mapping, scripts.retrieves_identity,
        )
    if on_summary is not None:
        on_summary(summary)
    return reconciled


def bulk_insert(conn: pyodbc.Connection, records, **kwargs):
    """Insert only: rows that match the qualifier are left untouched."""
    return bulk_merge(conn, records, MergeAction.INSERT, **kwargs)


def bulk_update(conn: pyodbc.Connection, records, **kwargs):
    """Update only: rows with no match are ignored."""
    return bulk_merge(conn, records, MergeAction.UPDATE, **kwargs)


def bulk_insert_or_update(conn: pyodbc.Connection, records, **kwargs):
    return bulk_merge(conn, records, MergeAction.INSERT_OR_UPDATE, **kwargs)
