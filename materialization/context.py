"""Materialization session state.

A session moves through::

    CREATED -> POPULATING -> FINISHING -> FINISHED
                          \\-> CANCELLED

FAILED marks a session whose finish script raised; like FINISHED and
CANCELLED it is terminal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

import pyodbc

from config import BulkHelpersConfig
from errors import MaterializationStateError
from schema.catalog import SchemaCatalog
from schema.table_definition import FullTextIndexDefinition, TableDefinition
from schema.table_name import TableNameTerm

logger = logging.getLogger(__name__)


class MaterializationState(Enum):
    CREATED = "created"
    POPULATING = "populating"
    FINISHING = "finishing"
    FINISHED = "finished"
    CANCELLED = "cancelled"
    FAILED = "failed"


_TERMINAL_STATES = frozenset({
    MaterializationState.FINISHED,
    MaterializationState.CANCELLED,
    MaterializationState.FAILED,
})


@dataclass(frozen=True)
class MaterializationTableInfo:
    """Live table, its two scratch clones, and the live schema snapshot."""

    live_table: TableNameTerm
    loading_table: TableNameTerm
    discarding_table: TableNameTerm
    original_definition: TableDefinition


@dataclass
class MaterializeDataContext:
    """One blue/green session over a set of tables.

    Callers populate ``loading_table(name)`` for each table, then the
    orchestrator finishes (switches) or the caller cancels. The context is
    finalized exactly once.
    """

    conn: pyodbc.Connection
    tables: list[MaterializationTableInfo]
    cfg: BulkHelpersConfig
    catalog: SchemaCatalog
    post_switch_constraint_validation_enabled: bool = True
    state: MaterializationState = MaterializationState.CREATED
    removed_fulltext_indexes: dict[str, FullTextIndexDefinition] = field(default_factory=dict)

    @property
    def is_cancelled(self) -> bool:
        return self.state is MaterializationState.CANCELLED

    @property
    def is_finalized(self) -> bool:
        return self.state in _TERMINAL_STATES

    @property
    def live_tables(self) -> list[TableNameTerm]:
        return [info.live_table for info in self.tables]

    def table(self, table_name: str | TableNameTerm) -> MaterializationTableInfo:
        """Look up a session table by its live name (case-insensitive).

        Raises:
            KeyError: If the table is not part of this session.
        """
        term = TableNameTerm.parse(table_name)
        for info in self.tables:
            if info.live_table.equals(term):
                return info
        raise KeyError(f"Table {term} is not part of this materialization session")

    def loading_table(self, table_name: str | TableNameTerm) -> TableNameTerm:
        """Name to bulk load into for ``table_name`` during population.

        Raises:
            MaterializationStateError: If the session is already finalized.
        """
        if self.is_finalized or self.state is MaterializationState.FINISHING:
            raise MaterializationStateError(
                f"Cannot populate {table_name}: the materialization session is {self.state.value}"
            )
        return self.table(table_name).loading_table

    def __getitem__(self, table_name: str | TableNameTerm) -> MaterializationTableInfo:
        return self.table(table_name)

    def disable_post_switch_constraint_validation(self) -> None:
        """Re-enable constraints after the switch WITH NOCHECK (left untrusted)."""
        self.post_switch_constraint_validation_enabled = False

    def enable_post_switch_constraint_validation(self) -> None:
        self.post_switch_constraint_validation_enabled = True

    # -- transitions ----------------------------------------------------------

    def _transition(self, allowed: tuple[MaterializationState, ...], target: MaterializationState) -> None:
        if self.state not in allowed:
            raise MaterializationStateError(
                f"Cannot move materialization session from {self.state.value} to {target.value}"
            )
        logger.debug("Materialization session %s -> %s", self.state.value, target.value)
        self.state = target

    def begin_populating(self) -> None:
        self._transition((MaterializationState.CREATED,), MaterializationState.POPULATING)

    def begin_finishing(self) -> None:
        self._transition(
            (MaterializationState.CREATED, MaterializationState.POPULATING),
            MaterializationState.FINISHING,
        )

    def mark_finished(self) -> None:
        self._transition((MaterializationState.FINISHING,), MaterializationState.FINISHED)

    def mark_failed(self) -> None:
        self._transition((MaterializationState.FINISHING,), MaterializationState.FAILED)

    def cancel(self) -> None:
        """Passive cancellation: finish becomes a no-op. Idempotent."""
        if self.state is MaterializationState.CANCELLED:
            return
        self._transition(
            (MaterializationState.CREATED, MaterializationState.POPULATING),
            MaterializationState.CANCELLED,
        )
        logger.info(
            "Materialization cancelled for %s; no switch will be performed",
            ", ".join(str(t) for t in self.live_tables),
        )
