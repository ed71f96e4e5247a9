"""
Identity seed utilities.
"""

import pyodbc
import pytest

from data_load.identity import get_current_identity_value, reseed_identity, reseed_identity_to_max
from errors import SchemaResolutionError, ScriptExecutionError

from conftest import executed_sql


def test_current_identity_value(conn, catalog):
    conn.cursor.return_value.fetchone.return_value = (42,)
    assert get_current_identity_value(conn, "dbo.Parent", catalog) == 42
    call = conn.cursor.return_value.execute.call_args
    assert call.args == ("SELECT CAST(IDENT_CURRENT(?) AS BIGINT)", "[dbo].[Parent]")


def test_current_identity_null_is_an_error(conn, catalog):
    conn.cursor.return_value.fetchone.return_value = (None,)
    with pytest.raises(SchemaResolutionError, match="IDENT_CURRENT returned no value"):
        get_current_identity_value(conn, "dbo.Parent", catalog)


def test_table_without_identity_rejected(conn, catalog):
    with pytest.raises(SchemaResolutionError, match="no identity column"):
        reseed_identity(conn, "dbo.Plain", 10, catalog)
    conn.cursor.assert_not_called()


def test_reseed(conn, catalog):
    reseed_identity(conn, "dbo.Child", 100, catalog)
    assert executed_sql(conn) == ["DBCC CHECKIDENT(N'[dbo].[Child]', RESEED, 100) WITH NO_INFOMSGS;"]


def test_reseed_driver_error_wrapped(conn, catalog):
    conn.cursor.return_value.execute.side_effect = pyodbc.Error("42000", "permission denied")
    with pytest.raises(ScriptExecutionError, match="permission denied"):
        reseed_identity(conn, "dbo.Child", 100, catalog)
    conn.cursor.return_value.close.assert_called_once()


def test_reseed_to_max(conn, catalog):
    conn.cursor.return_value.fetchone.return_value = (7,)
    assert reseed_identity_to_max(conn, "dbo.Parent", catalog) == 7
    sql = executed_sql(conn)[0]
    assert "SELECT ISNULL(MAX([Id]), 0) FROM [dbo].[Parent]" in sql
    assert "DBCC CHECKIDENT(N'[dbo].[Parent]', RESEED, @MaxId)" in sql
