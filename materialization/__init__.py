"""Table materialization: clone, populate, and atomically switch tables.

Usage:
    from materialization import execute_materialization
    from data_load import bulk_insert

    def populate(ctx):
        bulk_insert(ctx.conn, orders, table_name=ctx.loading_table("dbo.Orders"))

    execute_materialization(conn, ["dbo.Orders"], populate)
"""

# --- Clone / drop / clear ---
from materialization.clone import (
    CloneTableInfo,
    clear_tables,
    clone_table,
    clone_tables,
    drop_tables,
)

# --- Session state ---
from materialization.context import (
    MaterializationState,
    MaterializationTableInfo,
    MaterializeDataContext,
)

# --- Full-text indexes ---
from materialization.fulltext import add_fulltext_index, remove_fulltext_index

# --- Orchestration ---
from materialization.orchestrator import (
    cancel,
    execute_materialization,
    finish,
    start_materialization,
)

# --- Scratch cleanup ---
from materialization.scratch_cleanup import cleanup_orphaned_scratch_tables

__all__ = [
    # Clone
    "CloneTableInfo",
    "clone_table",
    "clone_tables",
    "drop_tables",
    "clear_tables",
    # Context
    "MaterializationState",
    "MaterializationTableInfo",
    "MaterializeDataContext",
    # Full-text
    "remove_fulltext_index",
    "add_fulltext_index",
    # Orchestration
    "start_materialization",
    "finish",
    "cancel",
    "execute_materialization",
    # Cleanup
    "cleanup_orphaned_scratch_tables",
]
