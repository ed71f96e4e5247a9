"""
Bulk merge executor against a MagicMock pyodbc connection: staging rows,
statement order, temp-table cleanup, identity write-back.
"""

from dataclasses import dataclass
from unittest.mock import patch

import polars as pl
import pyodbc
import pytest

from config import BulkHelpersConfig
from data_load.bulk_merge import bulk_insert, bulk_insert_or_update, bulk_update
from errors import InvalidMatchQualifierError, ScriptExecutionError
from schema.catalog import SchemaCatalog

from conftest import executed_sql, make_parent_def


@dataclass
class ParentRecord:
    Id: int | None = None
    Name: str = ""
    Code: str = ""


@pytest.fixture
def records():
    return [ParentRecord(Name="n0", Code="c0"), ParentRecord(Name="n1", Code="c1")]


def test_insert_assigns_identities_in_input_order(conn, catalog, records):
    conn.cursor.return_value.fetchall.return_value = [(1, 100), (2, 101)]
    result = bulk_insert(conn, records, table_name="dbo.Parent", catalog=catalog)
    assert result is records
    assert [r.Id for r in records] == [100, 101]


def test_statement_order_and_cleanup(conn, catalog, records):
    conn.cursor.return_value.fetchall.return_value = [(1, 100), (2, 101)]
    bulk_insert(conn, records, table_name="dbo.Parent", catalog=catalog)
    sql = executed_sql(conn)
    assert "INTO [#bulk_staging_Parent_" in sql[0]
    assert "MERGE [dbo].[Parent]" in sql[1]
    assert sql[2].startswith("SELECT [_bulk_row_number], [_identity_id]")
    assert sql[3].startswith("DROP TABLE IF EXISTS")


def test_rows_are_staged_in_batches_with_row_numbers(conn, catalog, records):
    cursor = conn.cursor.return_value
    cursor.fetchall.return_value = [(1, 100), (2, 101)]
    bulk_insert(conn, records, table_name="dbo.Parent", catalog=catalog, cfg=BulkHelpersConfig(batch_size=1))
    batches = [c.args[1] for c in cursor.executemany.call_args_list]
    assert batches == [[(-1, "n0", "c0", 1)], [(-1, "n1", "c1", 2)]]
    assert cursor.fast_executemany is False
    assert conn.timeout == 0


def test_temp_tables_dropped_when_merge_fails(conn, catalog, records):
    def fail_on_merge(sql, *params):
        if "MERGE " in sql:
            raise pyodbc.Error("42000", "merge exploded")

    conn.cursor.return_value.execute.side_effect = fail_on_merge
    with pytest.raises(ScriptExecutionError, match="merge exploded"):
        bulk_insert_or_update(conn, records, table_name="dbo.Parent", catalog=catalog)
    assert executed_sql(conn)[-1].startswith("DROP TABLE IF EXISTS")
    assert [r.Id for r in records] == [None, None]


def test_invalid_qualifier_fails_before_any_io(conn, catalog, records):
    with pytest.raises(InvalidMatchQualifierError):
        bulk_update(conn, records, table_name="dbo.Parent", match_qualifier=["Nope"], catalog=catalog)
    conn.cursor.assert_not_called()


def test_empty_batch_is_a_no_op(conn, catalog):
    assert bulk_insert(conn, [], table_name="dbo.Parent", catalog=catalog) == []
    conn.cursor.assert_not_called()


def test_summary_callback(conn, catalog, records):
    conn.cursor.return_value.fetchall.return_value = [(1, 100), (2, 101)]
    summaries = []
    bulk_insert(conn, records, table_name="dbo.Parent", catalog=catalog, on_summary=summaries.append)
    assert len(summaries) == 1
    summary = summaries[0]
    assert summary.table_name == "dbo.Parent"
    assert summary.rows_staged == 2
    assert summary.result_rows == 2
    assert not summary.has_non_unique_matches


def test_dataframe_batch_returns_new_frame(conn, catalog):
    cursor = conn.cursor.return_value
    cursor.fetchall.return_value = [(2, 201), (1, 200)]
    df = pl.DataFrame({"name": ["a", "b"], "code": ["x", "y"]})
    out = bulk_insert(conn, df, table_name="dbo.Parent", catalog=catalog)
    assert "Id" not in df.columns
    assert out["Id"].to_list() == [200, 201]
    staged = cursor.executemany.call_args_list[0].args[1]
    assert staged == [(-1, "a", "x", 1), (-1, "b", "y", 2)]


def test_schema_lookup_uses_configured_timeout(conn, records):
    conn.cursor.return_value.fetchall.return_value = [(1, 100), (2, 101)]
    seen = []
    with patch(
        "schema.catalog.load_table_definition",
        side_effect=lambda c, *a: seen.append(c.timeout) or make_parent_def(),
    ):
        bulk_insert(
            conn, records, table_name="dbo.Parent",
            catalog=SchemaCatalog("testserver,1433/testdb"),
            cfg=BulkHelpersConfig(schema_query_timeout_seconds=5),
        )
    assert seen == [5]
    assert conn.timeout == 0
