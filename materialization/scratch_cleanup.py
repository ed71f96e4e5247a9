"""Orphaned scratch table cleanup.

Materialization creates Loading and Discarding tables with a random
``_<ID>`` suffix in the configured scratch schemas. If the process dies
before the session finishes or cleans up (possible when the clones were
committed outside the session transaction) those tables persist.

Run at process start. Tables younger than ``min_age_minutes`` are skipped so
a session running in another process is left alone.
"""

from __future__ import annotations

import logging
import re

import pyodbc

import config
from materialization.script_builder import MaterializationScriptBuilder, execute_script
from schema.table_name import TableNameTerm

logger = logging.getLogger(__name__)

# Suffix appended by TableNameTerm.make_unique()
_UNIQUE_SUFFIX = re.compile(r"_[A-Z0-9]{10}$")

_SCRATCH_TABLES_SQL = (
    "SELECT s.name, t.name "
    "FROM sys.tables t "
    "JOIN sys.schemas s ON s.schema_id = t.schema_id "
    "WHERE s.name IN (?, ?) "
    "AND t.create_date < DATEADD(MINUTE, -?, GETDATE())"
)


def find_orphaned_scratch_tables(
    conn: pyodbc.Connection,
    cfg: config.BulkHelpersConfig,
    min_age_minutes: int = 60,
) -> list[TableNameTerm]:
    cursor = conn.cursor()
    try:
        cursor.execute(
            _SCRATCH_TABLES_SQL, cfg.loading_schema, cfg.discarding_schema, int(min_age_minutes),
        )
        rows = cursor.fetchall()
    finally:
        cursor.close()
    return [
        TableNameTerm(schema_name, table_name)
        for schema_name, table_name in rows
        if _UNIQUE_SUFFIX.search(table_name)
    ]


def cleanup_orphaned_scratch_tables(
    conn: pyodbc.Connection,
    cfg: config.BulkHelpersConfig | None = None,
    min_age_minutes: int = 60,
) -> int:
    """Drop orphaned Loading/Discarding tables in the scratch schemas.

    Each table is dropped by its own script so one failure does not stop the
    rest. The connection should be in autocommit mode.

    Returns:
        Number of scratch tables dropped.
    """
    cfg = cfg or config.default_config()
    dropped = 0

    for term in find_orphaned_scratch_tables(conn, cfg, min_age_minutes):
        try:
            execute_script(
                conn,
                MaterializationScriptBuilder().drop_table(term),
                cfg.materialize_ddl_timeout_seconds,
                f"Drop orphaned scratch table {term}",
            )
        except Exception:
            logger.warning("Failed to drop orphaned scratch table: %s", term, exc_info=True)
            continue
        logger.info("Dropped orphaned scratch table: %s", term)
        dropped += 1

    if dropped > 0:
        logger.info("Cleaned up %d orphaned scratch table(s)", dropped)
    else:
        logger.debug("No orphaned scratch tables found")
    return dropped
