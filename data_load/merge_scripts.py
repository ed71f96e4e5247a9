"""SQL generation for the staged MERGE protocol.

Produces, for one target table:
  (a) DDL for two session-scoped temp tables: #staging (target columns plus a
      synthetic row number) and #output (row number plus identity value);
  (b) the MERGE statement, which reads #staging ordered by row number and
      OUTPUTs (row number, inserted identity) into #output;
  (c) the read-back query, ordered by row number then identity.

Neither the staging insert nor MERGE ... OUTPUT preserves input order, so the
client assigns each staged row a row number and every correlation goes through
it. Sorting the read-back by row number is what makes row N of the input map
to the identity value the server generated for it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from connections import quote_identifier
from data_load.match_qualifiers import MatchQualifierExpression
from data_load.merge_action import MergeAction
from schema.table_definition import TableDefinition
from schema.table_name import generate_id

logger = logging.getLogger(__name__)

ROW_NUMBER_COLUMN = "_bulk_row_number"
IDENTITY_OUTPUT_COLUMN = "_identity_id"

# Temp table names are limited to 116 characters by SQL Server.
_MAX_TEMP_NAME_BASE = 80


@dataclass(frozen=True)
class MergeScripts:
    """Generated SQL for one merge execution."""

    staging_table: str
    output_table: str
    staging_columns: tuple[str, ...]
    create_temp_tables_sql: str
    merge_sql: str
    read_results_sql: str
    drop_temp_tables_sql: str
    qualifier: MatchQualifierExpression
    retrieves_identity: bool

    def staging_insert_sql(self, table_lock: bool = True) -> str:
        """Parameterized INSERT used by the bulk channel (one ? per staging column)."""
        hint = " WITH (TABLOCK)" if table_lock else ""
        columns = ", ".join(quote_identifier(c) for c in self.staging_columns)
        params = ", ".join("?" for _ in self.staging_columns)
        return (
            f"INSERT INTO {quote_identifier(self.staging_table)}{hint} "
            f"({columns}) VALUES ({params})"
        )


def _temp_table_name(prefix: str, table_def: TableDefinition) -> str:
    base = table_def.table_name_term.sanitized_table_name[:_MAX_TEMP_NAME_BASE]
    return f"#{prefix}_{base}_{generate_id(8)}"


def build_qualifier_sql(qualifier: MatchQualifierExpression) -> str:
    return " AND ".join(
        f"target.{quote_identifier(f)} = source.{quote_identifier(f)}"
        for f in qualifier.fields
    )


def build_merge_scripts(
    table_def: TableDefinition,
    qualifier: MatchQualifierExpression,
    merge_action: MergeAction,
    enable_identity_insert: bool = False,
    column_names: list[str] | None = None,
) -> MergeScripts:
    """Build the staging, MERGE and read-back scripts.

    Args:
        table_def: Target table definition.
        qualifier: Already-resolved match qualifier (column names).
        merge_action: INSERT, UPDATE or INSERT_OR_UPDATE.
        enable_identity_insert: Insert caller-supplied identity values. The MERGE
            is bracketed with SET IDENTITY_INSERT ON/OFF and identity values
            are not read back.
        column_names: Non-identity columns the caller supplies. Defaults to all
            non-identity columns of the table.

    Returns:
        MergeScripts for one execution (temp table names are unique per call).

    Raises:
        ValueError: If the merge would have neither an INSERT nor an UPDATE clause.
    """
    identity = table_def.identity_column
    has_identity = identity is not None
    retrieves_identity = has_identity and not enable_identity_insert

    if column_names is None:
        data_columns = table_def.column_names(include_identity=False)
    else:
        data_columns = [
            c for c in table_def.column_names(include_identity=False)
            if c.lower() in {n.lower() for n in column_names}
        ]
    if not data_columns and not (enable_identity_insert and has_identity):
        raise ValueError(
            f"No insertable columns resolved for {table_def.fully_qualified_name}"
        )

    staging_table = _temp_table_name("bulk_staging", table_def)
    output_table = _temp_table_name("bulk_output", table_def)
    q_staging = quote_identifier(staging_table)
    q_output = quote_identifier(output_table)
    q_rownum = quote_identifier(ROW_NUMBER_COLUMN)
    q_identity_out = quote_identifier(IDENTITY_OUTPUT_COLUMN)
    target = table_def.fully_qualified_name

    staging_columns: list[str] = []
    select_terms: list[str] = []
    if has_identity:
        # CONVERT() strips the IDENTITY property that SELECT INTO would copy.
        staging_columns.append(identity.column_name)
        select_terms.append(
            f"{quote_identifier(identity.column_name)} = CONVERT({identity.full_type}, -1)"
        )
    staging_columns.extend(data_columns)
    select_terms.extend(quote_identifier(c) for c in data_columns)
    staging_columns.append(ROW_NUMBER_COLUMN)
    select_terms.append(f"{q_rownum} = CONVERT(INT, -1)")

    output_columns = [f"{q_rownum} INT NOT NULL"]
    if retrieves_identity:
        output_columns.append(f"{q_identity_out} {identity.full_type} NULL")

    create_temp_tables_sql = (
        "SET NOCOUNT ON;\n"
        f"SELECT TOP(0)\n    " + ",\n    ".join(select_terms) + "\n"
        f"INTO {q_staging}\nFROM {target};\n"
        f"CREATE TABLE {q_output} ({', '.join(output_columns)});"
    )

    insert_columns = list(data_columns)
    if enable_identity_insert and has_identity:
        insert_columns.insert(0, identity.column_name)

    clauses: list[str] = []
    if merge_action.has_update and data_columns:
        set_list = ", ".join(
            f"target.{quote_identifier(c)} = source.{quote_identifier(c)}" for c in data_columns
        )
        clauses.append(f"WHEN MATCHED THEN\n    UPDATE SET {set_list}")
    if merge_action.has_insert:
        cols = ", ".join(quote_identifier(c) for c in insert_columns)
        vals = ", ".join(f"source.{quote_identifier(c)}" for c in insert_columns)
        clauses.append(
            f"WHEN NOT MATCHED BY TARGET THEN\n    INSERT ({cols})\n    VALUES ({vals})"
        )
    if not clauses:
        raise ValueError(
            f"Merge action {merge_action!r} produces no MERGE clause for "
            f"{table_def.fully_qualified_name}"
        )

    output_select = f"source.{q_rownum}"
    output_into = q_rownum
    if retrieves_identity:
        output_select += f", INSERTED.{quote_identifier(identity.column_name)}"
        output_into += f", {q_identity_out}"

    merge_parts = ["SET NOCOUNT ON;"]
    if enable_identity_insert and has_identity:
        merge_parts.append(f"SET IDENTITY_INSERT {target} ON;")
    merge_parts.append(
        f"MERGE {target} AS target\n"
        f"USING (\n"
        f"    SELECT TOP 100 PERCENT * FROM {q_staging}\n"
        f"    ORDER BY {q_rownum} ASC\n"
        f") AS source\n"
        f"ON {build_qualifier_sql(qualifier)}\n"
        + "\n".join(clauses) + "\n"
        f"OUTPUT {output_select}\n"
        f"INTO {q_output} ({output_into});"
    )
    if enable_identity_insert and has_identity:
        merge_parts.append(f"SET IDENTITY_INSERT {target} OFF;")
    merge_sql = "\n".join(merge_parts)

    if retrieves_identity:
        read_results_sql = (
            f"SELECT {q_rownum}, {q_identity_out} FROM {q_output} "
            f"ORDER BY {q_rownum} ASC, {q_identity_out} ASC"
        )
    else:
        read_results_sql = f"SELECT {q_rownum} FROM {q_output} ORDER BY {q_rownum} ASC"

    drop_temp_tables_sql = (
        f"DROP TABLE IF EXISTS {q_staging};\n"
        f"DROP TABLE IF EXISTS {q_output};"
    )

    logger.debug("Merge script for %s:\n%s", target, merge_sql)

    return MergeScripts(
        staging_table=staging_table,
        output_table=output_table,
        staging_columns=tuple(staging_columns),
        create_temp_tables_sql=create_temp_tables_sql,
        merge_sql=merge_sql,
        read_results_sql=read_results_sql,
        drop_temp_tables_sql=drop_temp_tables_sql,
        qualifier=qualifier,
        retrieves_identity=retrieves_identity,
    )
