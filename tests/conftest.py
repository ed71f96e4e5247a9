"""
Shared fixtures:
- table definitions for a Parent/Child pair plus an outside Audit table
  that references Parent
- a pre-seeded SchemaCatalog (no database queries)
- MagicMock pyodbc connections whose cursor reports script success
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from data_load.record_mapping import clear_record_mappings
from schema.catalog import SchemaCatalog
from schema.table_definition import (
    ColumnCheckConstraint,
    ColumnDefaultConstraint,
    ColumnDefinition,
    ForeignKeyConstraint,
    KeyColumn,
    PrimaryKeyConstraint,
    TableDefinition,
    TableIndex,
    TableSchemaDetailLevel,
)
from schema.table_name import TableNameTerm

PARENT = TableNameTerm("dbo", "Parent")
CHILD = TableNameTerm("dbo", "Child")
AUDIT = TableNameTerm("dbo", "Audit")
PLAIN = TableNameTerm("dbo", "Plain")

FK_CHILD_PARENT = ForeignKeyConstraint(
    constraint_name="FK_Child_Parent",
    source_table=CHILD,
    key_columns=(KeyColumn("ParentId", 1),),
    reference_table=PARENT,
    reference_columns=(KeyColumn("Id", 1),),
)
FK_AUDIT_PARENT = ForeignKeyConstraint(
    constraint_name="FK_Audit_Parent",
    source_table=AUDIT,
    key_columns=(KeyColumn("ParentId", 1),),
    reference_table=PARENT,
    reference_columns=(KeyColumn("Id", 1),),
)


def make_parent_def() -> TableDefinition:
    return TableDefinition(
        table_name_term=PARENT,
        columns=(
            ColumnDefinition("Id", 1, "int", is_nullable=False, is_identity=True),
            ColumnDefinition("Name", 2, "nvarchar", character_maximum_length=100),
            ColumnDefinition("Code", 3, "varchar", character_maximum_length=20, is_nullable=False),
        ),
        primary_key=PrimaryKeyConstraint("PK_Parent", (KeyColumn("Id", 1),)),
        referencing_foreign_keys=(FK_CHILD_PARENT, FK_AUDIT_PARENT),
        default_constraints=(ColumnDefaultConstraint("DF_Parent_Name", "Name", "('')"),),
        check_constraints=(ColumnCheckConstraint("CK_Parent_Code", "([Code]<>'')"),),
        indexes=(TableIndex("IX_Parent_Code", (KeyColumn("Code", 1),), is_unique=True),),
        detail_level=TableSchemaDetailLevel.EXTENDED,
    )


def make_child_def() -> TableDefinition:
    return TableDefinition(
        table_name_term=CHILD,
        columns=(
            ColumnDefinition("Id", 1, "bigint", is_nullable=False, is_identity=True),
            ColumnDefinition("ParentId", 2, "int", is_nullable=False),
            ColumnDefinition("Amount", 3, "decimal", numeric_precision=18, numeric_scale=2),
        ),
        primary_key=PrimaryKeyConstraint("PK_Child", (KeyColumn("Id", 1),)),
        foreign_keys=(FK_CHILD_PARENT,),
        detail_level=TableSchemaDetailLevel.EXTENDED,
    )


def make_plain_def() -> TableDefinition:
    """No identity, no primary key, no relationships."""
    return TableDefinition(
        table_name_term=PLAIN,
        columns=(
            ColumnDefinition("Code", 1, "varchar", character_maximum_length=20),
            ColumnDefinition("Label", 2, "nvarchar", character_maximum_length=50),
        ),
        detail_level=TableSchemaDetailLevel.EXTENDED,
    )


def seed_catalog(*definitions: TableDefinition) -> SchemaCatalog:
    """SchemaCatalog pre-populated with EXTENDED entries."""
    catalog = SchemaCatalog("testserver,1433/testdb")
    for definition in definitions:
        key = SchemaCatalog._cache_key(definition.table_name_term, TableSchemaDetailLevel.EXTENDED)
        catalog._definitions[key] = definition
    return catalog


def make_connection(status_row=(True, None, None, None)) -> MagicMock:
    """pyodbc connection stand-in; every cursor returns ``status_row`` first."""
    conn = MagicMock(name="conn")
    cursor = conn.cursor.return_value
    cursor.description = [("IsSuccessful", bool, None, 1, 1, 0, False)]
    cursor.fetchone.return_value = status_row
    cursor.nextset.return_value = False
    conn.timeout = 0
    conn.autocommit = True
    return conn


def executed_sql(conn: MagicMock) -> list[str]:
    """SQL text of every cursor.execute() call, in order."""
    return [c.args[0] for c in conn.cursor.return_value.execute.call_args_list]


@pytest.fixture
def parent_def() -> TableDefinition:
    return make_parent_def()


@pytest.fixture
def child_def() -> TableDefinition:
    return make_child_def()


@pytest.fixture
def plain_def() -> TableDefinition:
    return make_plain_def()


@pytest.fixture
def catalog(parent_def, child_def, plain_def) -> SchemaCatalog:
    return seed_catalog(parent_def, child_def, plain_def)


@pytest.fixture
def conn() -> MagicMock:
    return make_connection()


@pytest.fixture(autouse=True)
def _reset_record_mappings():
    clear_record_mappings()
    yield
    clear_record_mappings()
