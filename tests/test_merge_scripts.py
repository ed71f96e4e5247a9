"""
Merge script generation: staging shape, MERGE clauses, ordered read-back.
"""

import pytest

from data_load.match_qualifiers import MatchQualifierExpression
from data_load.merge_action import MergeAction
from data_load.merge_scripts import ROW_NUMBER_COLUMN, build_merge_scripts


def test_staging_has_identity_data_and_row_number(parent_def):
    scripts = build_merge_scripts(parent_def, MatchQualifierExpression.of("Code"), MergeAction.INSERT_OR_UPDATE)
    assert scripts.staging_columns == ("Id", "Name", "Code", ROW_NUMBER_COLUMN)
    assert scripts.staging_table.startswith("#bulk_staging_Parent_")
    assert "CONVERT(INT, -1)" in scripts.create_temp_tables_sql
    assert "FROM [dbo].[Parent]" in scripts.create_temp_tables_sql


def test_upsert_updates_data_columns_but_never_identity(parent_def):
    scripts = build_merge_scripts(parent_def, MatchQualifierExpression.of("Code"), MergeAction.INSERT_OR_UPDATE)
    sql = scripts.merge_sql
    assert "UPDATE SET target.[Name] = source.[Name], target.[Code] = source.[Code]" in sql
    assert "target.[Id] = source.[Id]" not in sql
    assert "INSERT ([Name], [Code])" in sql
    assert "ON target.[Code] = source.[Code]" in sql


def test_insert_only_has_no_update_clause(parent_def):
    scripts = build_merge_scripts(parent_def, MatchQualifierExpression.of("Code"), MergeAction.INSERT)
    assert "WHEN MATCHED" not in scripts.merge_sql
    assert "WHEN NOT MATCHED BY TARGET" in scripts.merge_sql


def test_update_only_has_no_insert_clause(parent_def):
    scripts = build_merge_scripts(parent_def, MatchQualifierExpression.of("Code"), MergeAction.UPDATE)
    assert "WHEN NOT MATCHED" not in scripts.merge_sql
    assert "UPDATE SET target.[Name] = source.[Name], target.[Code] = source.[Code]" in scripts.merge_sql


def test_read_back_orders_by_row_number_then_identity(parent_def):
    scripts = build_merge_scripts(parent_def, MatchQualifierExpression.of("Id"), MergeAction.INSERT)
    assert scripts.retrieves_identity
    assert scripts.read_results_sql.endswith("ORDER BY [_bulk_row_number] ASC, [_identity_id] ASC")
    assert "INSERTED.[Id]" in scripts.merge_sql


def test_no_identity_table_omits_identity_projection(plain_def):
    scripts = build_merge_scripts(plain_def, MatchQualifierExpression.of("Code"), MergeAction.INSERT)
    assert not scripts.retrieves_identity
    assert "_identity_id" not in scripts.read_results_sql
    assert "INSERTED." not in scripts.merge_sql
    assert scripts.staging_columns == ("Code", "Label", ROW_NUMBER_COLUMN)


def test_identity_insert_brackets_the_merge(parent_def):
    scripts = build_merge_scripts(
        parent_def, MatchQualifierExpression.of("Id"), MergeAction.INSERT, enable_identity_insert=True,
    )
    sql = scripts.merge_sql
    on = sql.index("SET IDENTITY_INSERT [dbo].[Parent] ON;")
    merge = sql.index("MERGE [dbo].[Parent]")
    off = sql.index("SET IDENTITY_INSERT [dbo].[Parent] OFF;")
    assert on < merge < off
    assert "INSERT ([Id], [Name], [Code])" in sql
    assert not scripts.retrieves_identity


def test_column_names_limit_the_merge_columns(parent_def):
    scripts = build_merge_scripts(
        parent_def, MatchQualifierExpression.of("Code"), MergeAction.INSERT_OR_UPDATE,
        column_names=["code"],
    )
    assert scripts.staging_columns == ("Id", "Code", ROW_NUMBER_COLUMN)
    assert "[Name]" not in scripts.merge_sql


def test_no_columns_is_rejected(parent_def):
    with pytest.raises(ValueError):
        build_merge_scripts(
            parent_def, MatchQualifierExpression.of("Code"), MergeAction.INSERT, column_names=[],
        )


def test_staging_insert_and_drop_sql(parent_def):
    scripts = build_merge_scripts(parent_def, MatchQualifierExpression.of("Code"), MergeAction.INSERT)
    insert_sql = scripts.staging_insert_sql(table_lock=True)
    assert "WITH (TABLOCK)" in insert_sql
    assert insert_sql.endswith("VALUES (?, ?, ?, ?)")
    assert "WITH (TABLOCK)" not in scripts.staging_insert_sql(table_lock=False)
    assert f"DROP TABLE IF EXISTS [{scripts.staging_table}]" in scripts.drop_temp_tables_sql
    assert f"DROP TABLE IF EXISTS [{scripts.output_table}]" in scripts.drop_temp_tables_sql


def test_temp_table_names_are_unique_per_call(parent_def):
    first = build_merge_scripts(parent_def, MatchQualifierExpression.of("Code"), MergeAction.INSERT)
    second = build_merge_scripts(parent_def, MatchQualifierExpression.of("Code"), MergeAction.INSERT)
    assert first.staging_table != second.staging_table
