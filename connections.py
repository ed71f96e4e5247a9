"""SQL Server connections and SQL text escaping helpers.

Provides pyodbc connections (autocommit for catalog reads, transactional for
merge and materialization sessions), the connection identity used as the
cache key for schema catalogs, and identifier/literal quoting for safe dynamic
SQL construction.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager

import pyodbc

import config

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# SQL identifier / literal escaping
# ---------------------------------------------------------------------------

_MAX_IDENTIFIER_LENGTH = 128  # SQL Server sysname limit (matches QUOTENAME())


def quote_identifier(name: str) -> str:
    """Bracket-escape a SQL Server identifier (column, index, constraint name).

    Equivalent to T-SQL QUOTENAME(): wraps in brackets and doubles any embedded
    closing brackets.

    Args:
        name: Raw identifier (e.g. column name, index name).

    Returns:
        Bracket-escaped identifier (e.g. ``[my_column]``, ``[tricky]]name]``).

    Raises:
        ValueError: If name exceeds 128 characters or is empty.
    """
    if not name:
        raise ValueError("Identifier cannot be empty")
    if len(name) > _MAX_IDENTIFIER_LENGTH:
        raise ValueError(
            f"Identifier exceeds {_MAX_IDENTIFIER_LENGTH} characters "
            f"(len={len(name)}): {name[:50]}..."
        )
    return f"[{name.replace(']', ']]')}]"


def quote_literal(value: str) -> str:
    """Quote a value as an N'' string literal, doubling embedded quotes."""
    return "N'" + value.replace("'", "''") + "'"


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------

def _pyodbc_connection_string(database: str) -> str:
    return (
        f"DRIVER={{{config.ODBC_DRIVER}}};"
        f"SERVER={config.SQL_SERVER_HOST},{config.SQL_SERVER_PORT};"
        f"DATABASE={database};"
        f"UID={config.SQL_SERVER_USER};"
        f"PWD={config.SQL_SERVER_PASSWORD};"
        "TrustServerCertificate=yes;"
    )


def connection_identity(database: str | None = None) -> str:
    """Stable cache key for a server/database pair.

    Schema catalogs are cached per identity, so two connections to the same
    database share table definitions while different databases never do.
    Credentials are deliberately excluded.
    """
    database = database or config.TARGET_DB
    return f"{config.SQL_SERVER_HOST},{config.SQL_SERVER_PORT}/{database}".lower()


def identity_of(conn: pyodbc.Connection) -> str:
    """Connection identity of an already-open connection (server/database)."""
    server = conn.getinfo(pyodbc.SQL_SERVER_NAME)
    database = conn.getinfo(pyodbc.SQL_DATABASE_NAME)
    return f"{server}/{database}".lower()


def get_connection(database: str | None = None, autocommit: bool = True) -> pyodbc.Connection:
    """Create a fresh pyodbc connection.

    Pass ``autocommit=False`` for a transactional session: the connection then
    behaves as the caller's transaction and must be committed or rolled back.
    A zero-argument wrapper around this function is the usual
    ``BulkHelpersConfig.concurrent_connection_factory``.
    """
    database = database or config.TARGET_DB
    conn = pyodbc.connect(_pyodbc_connection_string(database), autocommit=autocommit)
    logger.debug("Opened connection to %s (autocommit=%s)", database, autocommit)
    return conn


@contextmanager
def command_timeout(conn: pyodbc.Connection, seconds: int | None):
    """Temporarily set the query timeout for every statement on ``conn``.

    pyodbc applies ``Connection.timeout`` to statements executed afterwards;
    the previous value is restored on exit. ``None`` leaves it unchanged.
    """
    if seconds is None:
        yield conn
        return
    previous = conn.timeout
    conn.timeout = seconds
    try:
        yield conn
    finally:
        conn.timeout = previous
