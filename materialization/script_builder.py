"""DDL script builder for table cloning, constraint choreography and switching.

Statements accumulate in order; build() wraps them in TRY/CATCH so every
script ends by returning exactly one status row::

    IsSuccessful | ErrorMessage | ErrorLine | ErrorNumber

execute_script() reads that row and raises ScriptExecutionError on failure,
so callers do not depend on the driver surfacing errors from inside a
multi-statement batch. Variables (identity seeds captured from the source
tables) are declared at the top, before any table is touched.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable

import pyodbc

import connections
from connections import quote_identifier, quote_literal
from errors import ScriptExecutionError
from schema.table_definition import (
    ColumnCheckConstraint,
    ColumnDefaultConstraint,
    ForeignKeyConstraint,
    FullTextIndexDefinition,
    PrimaryKeyConstraint,
    TableDefinition,
    TableIndex,
    map_name_to_target,
)
from schema.table_name import TableNameTerm

logger = logging.getLogger(__name__)

STATUS_COLUMN = "IsSuccessful"


class IfExists(Enum):
    """What cloning does when the target table already exists."""

    RECREATE = "recreate"
    STOP_WITH_EXCEPTION = "stop_with_exception"
    CONTINUE_PROCESSING = "continue_processing"


def _csv(names: Iterable[str]) -> str:
    return ", ".join(quote_identifier(n) for n in names)


def _object_exists(term: TableNameTerm) -> str:
    return f"OBJECT_ID({quote_literal(term.fully_qualified_name)}) IS NOT NULL"


def _object_missing(term: TableNameTerm) -> str:
    return f"OBJECT_ID({quote_literal(term.fully_qualified_name)}) IS NULL"


class MaterializationScriptBuilder:
    """Accumulates DDL statements and renders one self-reporting script."""

    def __init__(self) -> None:
        self._statements: list[str] = []
        self._variables: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._statements)

    def append(self, sql: str) -> MaterializationScriptBuilder:
        self._statements.append(sql.strip())
        return self

    # -- schema / table lifecycle ---------------------------------------------

    def create_schema(self, schema_name: str) -> MaterializationScriptBuilder:
        # CREATE SCHEMA must be alone in its batch, hence EXEC.
        create_sql = f"CREATE SCHEMA {quote_identifier(schema_name)}"
        return self.append(
            f"IF SCHEMA_ID({quote_literal(schema_name)}) IS NULL "
            f"EXEC({quote_literal(create_sql)});"
        )

    def drop_table(self, term: TableNameTerm) -> MaterializationScriptBuilder:
        return self.append(f"IF {_object_exists(term)} DROP TABLE {term.fully_qualified_name};")

    def truncate_table(self, term: TableNameTerm) -> MaterializationScriptBuilder:
        return self.append(f"TRUNCATE TABLE {term.fully_qualified_name};")

    def clone_table_with_columns_only(
        self,
        source: TableNameTerm,
        target: TableNameTerm,
        if_exists: IfExists = IfExists.RECREATE,
    ) -> MaterializationScriptBuilder:
        """Zero-row structural copy via SELECT TOP (0) * INTO."""
        if if_exists is IfExists.RECREATE:
            self.drop_table(target)
        elif if_exists is IfExists.STOP_WITH_EXCEPTION:
            message = f"The target table {target.fully_qualified_name} already exists."
            self.append(
                f"IF {_object_exists(target)} "
                f"RAISERROR({quote_literal(message)}, 16, 1);"
            )
        select_into = (
            f"SELECT TOP (0) * INTO {target.fully_qualified_name} "
            f"FROM {source.fully_qualified_name}"
        )
        return self.append(
            f"IF {_object_missing(target)} EXEC({quote_literal(select_into)});"
        )

    def sync_identity_seed(self, source: TableNameTerm, target: TableNameTerm) -> MaterializationScriptBuilder:
        """Reseed ``target`` to the source's IDENT_CURRENT captured at script start."""
        variable = f"@CurrentIdentity_{source.sanitized_table_name}_{len(self._variables) + 1}"
        self._variables[variable] = (
            f"DECLARE {variable} BIGINT = "
            f"IDENT_CURRENT({quote_literal(source.fully_qualified_name)});"
        )
        return self.append(
            f"IF {variable} IS NOT NULL "
            f"DBCC CHECKIDENT({quote_literal(target.fully_qualified_name)}, RESEED, {variable}) "
            "WITH NO_INFOMSGS;"
        )

    def copy_table_data(
        self,
        source_def: TableDefinition,
        target: TableNameTerm,
    ) -> MaterializationScriptBuilder:
        columns = _csv(source_def.column_names())
        has_identity = source_def.identity_column is not None
        if has_identity:
            self.append(f"SET IDENTITY_INSERT {target.fully_qualified_name} ON;")
        self.append(
            f"INSERT INTO {target.fully_qualified_name} WITH (TABLOCK) ({columns}) "
            f"SELECT {columns} FROM {source_def.fully_qualified_name};"
        )
        if has_identity:
            self.append(f"SET IDENTITY_INSERT {target.fully_qualified_name} OFF;")
        return self

    def switch_table(self, source: TableNameTerm, target: TableNameTerm) -> MaterializationScriptBuilder:
        """Move all rows of ``source`` into the empty ``target`` (metadata-only)."""
        return self.append(
            f"ALTER TABLE {source.fully_qualified_name} SWITCH TO {target.fully_qualified_name};"
        )

    # -- keys, constraints, indexes -------------------------------------------

    def add_primary_key(
        self,
        target: TableNameTerm,
        primary_key: PrimaryKeyConstraint | None,
        source: TableNameTerm,
    ) -> MaterializationScriptBuilder:
        if primary_key is None:
            return self
        name = map_name_to_target(primary_key.constraint_name, source, target)
        return self.append(
            f"ALTER TABLE {target.fully_qualified_name} ADD CONSTRAINT {quote_identifier(name)} "
            f"PRIMARY KEY CLUSTERED ({_csv(primary_key.column_names)});"
        )

    def add_foreign_keys(
        self,
        target: TableNameTerm,
        foreign_keys: Iterable[ForeignKeyConstraint],
        source: TableNameTerm,
        validate: bool = True,
    ) -> MaterializationScriptBuilder:
        check = "WITH CHECK" if validate else "WITH NOCHECK"
        for fk in foreign_keys:
            name = map_name_to_target(fk.constraint_name, source, target)
            self.append(
                f"ALTER TABLE {target.fully_qualified_name} {check} "
                f"ADD CONSTRAINT {quote_identifier(name)} "
                f"FOREIGN KEY ({_csv(fk.column_names)}) "
                f"REFERENCES {fk.reference_table.fully_qualified_name} ({_csv(fk.reference_column_names)}) "
                f"ON UPDATE {fk.update_rule} ON DELETE {fk.delete_rule};"
            )
        return self

    def drop_foreign_keys(
        self,
        target: TableNameTerm,
        foreign_keys: Iterable[ForeignKeyConstraint],
        source: TableNameTerm,
    ) -> MaterializationScriptBuilder:
        for fk in foreign_keys:
            name = map_name_to_target(fk.constraint_name, source, target)
            self.append(
                f"ALTER TABLE {target.fully_qualified_name} DROP CONSTRAINT {quote_identifier(name)};"
            )
        return self

    def disable_all_constraint_checks(self, term: TableNameTerm) -> MaterializationScriptBuilder:
        return self.append(f"ALTER TABLE {term.fully_qualified_name} NOCHECK CONSTRAINT ALL;")

    def enable_all_constraint_checks(
        self, term: TableNameTerm, validate: bool = True,
    ) -> MaterializationScriptBuilder:
        check = "WITH CHECK" if validate else "WITH NOCHECK"
        return self.append(
            f"ALTER TABLE {term.fully_qualified_name} {check} CHECK CONSTRAINT ALL;"
        )

    def disable_foreign_key_checks(
        self, foreign_keys: Iterable[ForeignKeyConstraint],
    ) -> MaterializationScriptBuilder:
        """NOCHECK each key on the table that declares it."""
        for fk in foreign_keys:
            self.append(
                f"ALTER TABLE {fk.source_table.fully_qualified_name} "
                f"NOCHECK CONSTRAINT {quote_identifier(fk.constraint_name)};"
            )
        return self

    def enable_foreign_key_checks(
        self, foreign_keys: Iterable[ForeignKeyConstraint], validate: bool = True,
    ) -> MaterializationScriptBuilder:
        check = "WITH CHECK" if validate else "WITH NOCHECK"
        for fk in foreign_keys:
            self.append(
                f"ALTER TABLE {fk.source_table.fully_qualified_name} {check} "
                f"CHECK CONSTRAINT {quote_identifier(fk.constraint_name)};"
            )
        return self

    def add_indexes(
        self,
        target: TableNameTerm,
        indexes: Iterable[TableIndex],
        source: TableNameTerm,
    ) -> MaterializationScriptBuilder:
        for index in indexes:
            name = quote_identifier(map_name_to_target(index.index_name, source, target))
            if index.is_unique_constraint:
                self.append(
                    f"ALTER TABLE {target.fully_qualified_name} ADD CONSTRAINT {name} "
                    f"UNIQUE ({_csv(index.column_names)});"
                )
                continue
            unique = "UNIQUE " if index.is_unique else ""
            sql = (
                f"CREATE {unique}NONCLUSTERED INDEX {name} "
                f"ON {target.fully_qualified_name} ({_csv(index.column_names)})"
            )
            if index.include_columns:
                sql += f" INCLUDE ({_csv(index.include_column_names)})"
            if index.filter_definition:
                sql += f" WHERE {index.filter_definition}"
            self.append(sql + ";")
        return self

    def add_check_constraints(
        self,
        target: TableNameTerm,
        checks: Iterable[ColumnCheckConstraint],
        source: TableNameTerm,
    ) -> MaterializationScriptBuilder:
        for check in checks:
            name = quote_identifier(map_name_to_target(check.constraint_name, source, target))
            self.append(
                f"ALTER TABLE {target.fully_qualified_name} WITH CHECK "
                f"ADD CONSTRAINT {name} CHECK {check.check_clause};"
            )
        return self

    def add_default_constraints(
        self,
        target: TableNameTerm,
        defaults: Iterable[ColumnDefaultConstraint],
        source: TableNameTerm,
    ) -> MaterializationScriptBuilder:
        for default in defaults:
            name = quote_identifier(map_name_to_target(default.constraint_name, source, target))
            self.append(
                f"ALTER TABLE {target.fully_qualified_name} ADD CONSTRAINT {name} "
                f"DEFAULT {default.definition} FOR {quote_identifier(default.column_name)};"
            )
        return self

    # -- full-text ------------------------------------------------------------

    def drop_fulltext_index(self, term: TableNameTerm) -> MaterializationScriptBuilder:
        return self.append(
            "IF EXISTS (SELECT 1 FROM sys.fulltext_indexes "
            f"WHERE object_id = OBJECT_ID({quote_literal(term.fully_qualified_name)})) "
            f"DROP FULLTEXT INDEX ON {term.fully_qualified_name};"
        )

    def add_fulltext_index(
        self, term: TableNameTerm, index: FullTextIndexDefinition,
    ) -> MaterializationScriptBuilder:
        columns = ", ".join(
            quote_identifier(c.column_name)
            + (f" LANGUAGE {int(c.language_id)}" if c.language_id is not None else "")
            for c in index.columns
        )
        return self.append(
            f"CREATE FULLTEXT INDEX ON {term.fully_qualified_name} ({columns}) "
            f"KEY INDEX {quote_identifier(index.unique_index_name)} "
            f"ON {quote_identifier(index.catalog_name)} "
            f"WITH CHANGE_TRACKING = {index.change_tracking};"
        )

    # -- composite ------------------------------------------------------------

    def clone_table_with_all_elements(
        self,
        source_def: TableDefinition,
        target: TableNameTerm,
        if_exists: IfExists = IfExists.RECREATE,
        copy_data: bool = False,
        include_foreign_keys: bool = False,
        clone_identity_seed: bool = True,
    ) -> MaterializationScriptBuilder:
        """Schema, columns, PK, FKs (optional), defaults, checks, indexes, data, seed.

        With CONTINUE_PROCESSING an existing target is left completely alone:
        every element statement is guarded by the same existence check.
        """
        source = source_def.table_name_term
        self.create_schema(target.schema_name)

        body = MaterializationScriptBuilder()
        body.clone_table_with_columns_only(source, target, IfExists.CONTINUE_PROCESSING)
        body.add_primary_key(target, source_def.primary_key, source)
        if include_foreign_keys:
            body.add_foreign_keys(target, source_def.foreign_keys, source, validate=not copy_data)
        body.add_default_constraints(target, source_def.default_constraints, source)
        body.add_check_constraints(target, source_def.check_constraints, source)
        body.add_indexes(target, source_def.indexes, source)
        if copy_data:
            body.copy_table_data(source_def, target)

        if if_exists is IfExists.CONTINUE_PROCESSING:
            self.append(
                f"IF {_object_missing(target)}\nBEGIN\n"
                + "\n".join(body._statements)
                + "\nEND"
            )
        else:
            if if_exists is IfExists.RECREATE:
                self.drop_table(target)
            else:
                message = f"The target table {target.fully_qualified_name} already exists."
                self.append(
                    f"IF {_object_exists(target)} "
                    f"RAISERROR({quote_literal(message)}, 16, 1);"
                )
            self._statements.extend(body._statements)

        if clone_identity_seed and source_def.identity_column is not None and not copy_data:
            self.sync_identity_seed(source, target)
        return self

    # -- rendering ------------------------------------------------------------

    def build(self) -> str:
        """Render the full script with variables and the status result row."""
        parts = ["SET NOCOUNT ON;"]
        parts.extend(self._variables.values())
        parts.append("BEGIN TRY")
        parts.extend(self._statements)
        parts.append(
            f"SELECT {STATUS_COLUMN} = CAST(1 AS BIT), ErrorMessage = CAST(NULL AS NVARCHAR(4000)), "
            "ErrorLine = CAST(NULL AS INT), ErrorNumber = CAST(NULL AS INT);"
        )
        parts.append("END TRY")
        parts.append("BEGIN CATCH")
        parts.append(
            f"SELECT {STATUS_COLUMN} = CAST(0 AS BIT), ErrorMessage = ERROR_MESSAGE(), "
            "ErrorLine = ERROR_LINE(), ErrorNumber = ERROR_NUMBER();"
        )
        parts.append("END CATCH")
        return "\n".join(parts)

    def __str__(self) -> str:
        return self.build()


def execute_script(
    conn: pyodbc.Connection,
    script: MaterializationScriptBuilder | str,
    timeout_seconds: int | None = None,
    description: str = "Materialization script",
) -> None:
    """Run a built script and check its status row.

    Raises:
        ScriptExecutionError: If the script reports failure, returns no status
            row, or the driver raises.
    """
    sql = script.build() if isinstance(script, MaterializationScriptBuilder) else script
    logger.debug("%s:\n%s", description, sql)

    cursor = conn.cursor()
    try:
        with connections.command_timeout(conn, timeout_seconds):
            cursor.execute(sql)
            status = None
            while True:
                if cursor.description and cursor.description[0][0] == STATUS_COLUMN:
                    status = cursor.fetchone()
                    break
                if not cursor.nextset():
                    break
    except pyodbc.Error as exc:
        raise ScriptExecutionError.from_driver_error(description, exc) from exc
    finally:
        cursor.close()

    if status is None:
        raise ScriptExecutionError(f"{description} returned no status row")
    if not status[0]:
        raise ScriptExecutionError(
            f"{description} failed: {status[1]}",
            error_number=status[3],
            error_line=status[2],
        )
