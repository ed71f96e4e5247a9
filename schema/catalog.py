"""Table schema catalog: loads TableDefinitions from SQL Server and caches them.

One SchemaCatalog exists per connection identity (server + database). Entries
are populated lazily, exactly once per key, under a per-key lock. A failed
population is never cached: the caller sees CacheTransientError and the next
call queries the database again.

Usage::

    catalog = default_registry().catalog_for(connections.connection_identity("Sales"))
    table_def = catalog.get_table_definition("dbo.Orders", TableSchemaDetailLevel.BASIC, conn)
"""

from __future__ import annotations

import logging
import threading

import pyodbc

import connections
from errors import CacheTransientError, SchemaResolutionError
from schema.table_definition import (
    ColumnCheckConstraint,
    ColumnDefaultConstraint,
    ColumnDefinition,
    ForeignKeyConstraint,
    FullTextColumn,
    FullTextIndexDefinition,
    KeyColumn,
    PrimaryKeyConstraint,
    TableDefinition,
    TableIndex,
    TableSchemaDetailLevel,
)
from schema.table_name import TableNameTerm

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Catalog queries
# ---------------------------------------------------------------------------
# {db} is "" for regular tables and "tempdb." for #temp tables.

_COLUMNS_SQL = (
    "SELECT c.name, c.column_id, t.name, "
    "       CASE WHEN t.name IN ('nvarchar', 'nchar') AND c.max_length > 0 "
    "            THEN c.max_length / 2 ELSE c.max_length END, "
    "       c.precision, c.scale, c.is_nullable, c.is_identity "
    "FROM {db}sys.columns c "
    "JOIN {db}sys.types t ON t.user_type_id = c.user_type_id "
    "WHERE c.object_id = ? "
    "ORDER BY c.column_id"
)

_PRIMARY_KEY_SQL = (
    "SELECT kc.name, ic.key_ordinal, col.name "
    "FROM {db}sys.key_constraints kc "
    "JOIN {db}sys.index_columns ic "
    "  ON ic.object_id = kc.parent_object_id AND ic.index_id = kc.unique_index_id "
    "JOIN {db}sys.columns col "
    "  ON col.object_id = ic.object_id AND col.column_id = ic.column_id "
    "WHERE kc.parent_object_id = ? AND kc.type = 'PK' "
    "ORDER BY ic.key_ordinal"
)

# Shared projection for keys declared on the table and keys referencing it.
_FOREIGN_KEY_SELECT = (
    "SELECT fk.name, fkc.constraint_column_id, "
    "       OBJECT_SCHEMA_NAME(fk.parent_object_id), OBJECT_NAME(fk.parent_object_id), pc.name, "
    "       OBJECT_SCHEMA_NAME(fk.referenced_object_id), OBJECT_NAME(fk.referenced_object_id), rc.name, "
    "       fk.update_referential_action_desc, fk.delete_referential_action_desc "
    "FROM sys.foreign_keys fk "
    "JOIN sys.foreign_key_columns fkc ON fkc.constraint_object_id = fk.object_id "
    "JOIN sys.columns pc "
    "  ON pc.object_id = fkc.parent_object_id AND pc.column_id = fkc.parent_column_id "
    "JOIN sys.columns rc "
    "  ON rc.object_id = fkc.referenced_object_id AND rc.column_id = fkc.referenced_column_id "
)

_FOREIGN_KEYS_SQL = (
    _FOREIGN_KEY_SELECT
    + "WHERE fk.parent_object_id = ? ORDER BY fk.name, fkc.constraint_column_id"
)

_REFERENCING_FOREIGN_KEYS_SQL = (
    _FOREIGN_KEY_SELECT
    + "WHERE fk.referenced_object_id = ? AND fk.parent_object_id <> fk.referenced_object_id "
    "ORDER BY fk.name, fkc.constraint_column_id"
)

_DEFAULT_CONSTRAINTS_SQL = (
    "SELECT dc.name, col.name, dc.definition "
    "FROM sys.default_constraints dc "
    "JOIN sys.columns col "
    "  ON col.object_id = dc.parent_object_id AND col.column_id = dc.parent_column_id "
    "WHERE dc.parent_object_id = ? "
    "ORDER BY dc.name"
)

_CHECK_CONSTRAINTS_SQL = (
    "SELECT cc.name, cc.definition "
    "FROM sys.check_constraints cc "
    "WHERE cc.parent_object_id = ? "
    "ORDER BY cc.name"
)

_INDEXES_SQL = (
    "SELECT i.name, i.is_unique, i.is_unique_constraint, i.filter_definition, "
    "       ic.is_included_column, ic.key_ordinal, ic.index_column_id, col.name "
    "FROM sys.indexes i "
    "JOIN sys.index_columns ic ON ic.object_id = i.object_id AND ic.index_id = i.index_id "
    "JOIN sys.columns col ON col.object_id = ic.object_id AND col.column_id = ic.column_id "
    "WHERE i.object_id = ? AND i.is_primary_key = 0 AND i.type = 2 "
    "ORDER BY i.name, ic.is_included_column, ic.key_ordinal, ic.index_column_id"
)

_FULLTEXT_INDEX_SQL = (
    "SELECT cat.name, i.name, fi.change_tracking_state_desc, col.name, fic.language_id "
    "FROM sys.fulltext_indexes fi "
    "JOIN sys.fulltext_catalogs cat ON cat.fulltext_catalog_id = fi.fulltext_catalog_id "
    "JOIN sys.indexes i ON i.object_id = fi.object_id AND i.index_id = fi.unique_index_id "
    "JOIN sys.fulltext_index_columns fic ON fic.object_id = fi.object_id "
    "JOIN sys.columns col ON col.object_id = fic.object_id AND col.column_id = fic.column_id "
    "WHERE fi.object_id = ? "
    "ORDER BY fic.column_id"
)

_CHANGE_TRACKING_MAP = {"AUTO": "AUTO", "MANUAL": "MANUAL", "OFF": "OFF"}


def _rule(desc: str | None) -> str:
    # sys.foreign_keys reports NO_ACTION / SET_NULL; DDL wants NO ACTION / SET NULL.
    return (desc or "NO_ACTION").replace("_", " ")


def _object_id_name(term: TableNameTerm) -> str:
    if term.is_temp_table:
        return f"tempdb..{term.table_name}"
    return term.fully_qualified_name


def _fetchall(cursor: pyodbc.Cursor, sql: str, *params) -> list:
    logger.debug("Catalog query: %s %s", sql, params)
    cursor.execute(sql, *params)
    return cursor.fetchall()


def _group_foreign_keys(rows: list) -> tuple[ForeignKeyConstraint, ...]:
    grouped: dict[str, list] = {}
    for row in rows:
        grouped.setdefault(row[0], []).append(row)
    result = []
    for name, key_rows in grouped.items():
        first = key_rows[0]
        result.append(ForeignKeyConstraint(
            constraint_name=name,
            source_table=TableNameTerm(first[2], first[3]),
            key_columns=tuple(KeyColumn(r[4], r[1]) for r in key_rows),
            reference_table=TableNameTerm(first[5], first[6]),
            reference_columns=tuple(KeyColumn(r[7], r[1]) for r in key_rows),
            update_rule=_rule(first[8]),
            delete_rule=_rule(first[9]),
        ))
    return tuple(result)


def _group_indexes(rows: list) -> tuple[TableIndex, ...]:
    grouped: dict[str, list] = {}
    for row in rows:
        grouped.setdefault(row[0], []).append(row)
    result = []
    for name, index_rows in grouped.items():
        first = index_rows[0]
        keys = tuple(KeyColumn(r[7], r[5]) for r in index_rows if not r[4])
        includes = tuple(KeyColumn(r[7], r[6]) for r in index_rows if r[4])
        result.append(TableIndex(
            index_name=name,
            key_columns=keys,
            is_unique=bool(first[1]),
            is_unique_constraint=bool(first[2]),
            include_columns=includes,
            filter_definition=first[3],
        ))
    return tuple(result)


def load_table_definition(
    conn: pyodbc.Connection,
    table_name: str | TableNameTerm,
    detail_level: TableSchemaDetailLevel = TableSchemaDetailLevel.BASIC,
) -> TableDefinition | None:
    """Query the catalog views for one table.

    Returns:
        The TableDefinition, or None if the table does not exist.
    """
    term = TableNameTerm.parse(table_name)
    db = "tempdb." if term.is_temp_table else ""

    cursor = conn.cursor()
    try:
        cursor.execute("SELECT OBJECT_ID(?)", _object_id_name(term))
        row = cursor.fetchone()
        object_id = row[0] if row is not None else None
        if object_id is None:
            return None

        if not term.is_temp_table:
            # Adopt the stored casing so generated DDL matches the catalog.
            cursor.execute(
                "SELECT s.name, o.name FROM sys.objects o "
                "JOIN sys.schemas s ON s.schema_id = o.schema_id "
                "WHERE o.object_id = ?",
                object_id,
            )
            name_row = cursor.fetchone()
            if name_row is not None:
                term = TableNameTerm(name_row[0], name_row[1])

        columns = tuple(
            ColumnDefinition(
                column_name=r[0],
                ordinal_position=r[1],
                data_type=r[2],
                character_maximum_length=r[3],
                numeric_precision=r[4],
                numeric_scale=r[5],
                is_nullable=bool(r[6]),
                is_identity=bool(r[7]),
            )
            for r in _fetchall(cursor, _COLUMNS_SQL.format(db=db), object_id)
        )
        if not columns:
            return None

        pk_rows = _fetchall(cursor, _PRIMARY_KEY_SQL.format(db=db), object_id)
        primary_key = None
        if pk_rows:
            primary_key = PrimaryKeyConstraint(
                constraint_name=pk_rows[0][0],
                key_columns=tuple(KeyColumn(r[2], r[1]) for r in pk_rows),
            )

        if detail_level is TableSchemaDetailLevel.BASIC or term.is_temp_table:
            return TableDefinition(
                table_name_term=term,
                columns=columns,
                primary_key=primary_key,
                detail_level=detail_level,
            )

        foreign_keys = _group_foreign_keys(_fetchall(cursor, _FOREIGN_KEYS_SQL, object_id))
        referencing = _group_foreign_keys(
            _fetchall(cursor, _REFERENCING_FOREIGN_KEYS_SQL, object_id)
        )
        defaults = tuple(
            ColumnDefaultConstraint(r[0], r[1], r[2])
            for r in _fetchall(cursor, _DEFAULT_CONSTRAINTS_SQL, object_id)
        )
        checks = tuple(
            ColumnCheckConstraint(r[0], r[1])
            for r in _fetchall(cursor, _CHECK_CONSTRAINTS_SQL, object_id)
        )
        indexes = _group_indexes(_fetchall(cursor, _INDEXES_SQL, object_id))

        full_text_index = None
        ft_rows = _fetchall(cursor, _FULLTEXT_INDEX_SQL, object_id)
        if ft_rows:
            full_text_index = FullTextIndexDefinition(
                catalog_name=ft_rows[0][0],
                unique_index_name=ft_rows[0][1],
                change_tracking=_CHANGE_TRACKING_MAP.get(
                    (ft_rows[0][2] or "AUTO").upper(), "AUTO",
                ),
                columns=tuple(FullTextColumn(r[3], r[4]) for r in ft_rows),
            )

        return TableDefinition(
            table_name_term=term,
            columns=columns,
            primary_key=primary_key,
            foreign_keys=foreign_keys,
            referencing_foreign_keys=referencing,
            default_constraints=defaults,
            check_constraints=checks,
            indexes=indexes,
            full_text_index=full_text_index,
            detail_level=detail_level,
        )
    finally:
        cursor.close()


# ---------------------------------------------------------------------------
# Cache service
# ---------------------------------------------------------------------------

class SchemaCatalog:
    """Lazy, per-key locked cache of TableDefinitions for one connection identity."""

    def __init__(self, connection_identity: str, query_timeout_seconds: int | None = None) -> None:
        self.connection_identity = connection_identity
        self.query_timeout_seconds = query_timeout_seconds
        self._definitions: dict[str, TableDefinition] = {}
        self._key_locks: dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _cache_key(term: TableNameTerm, detail_level: TableSchemaDetailLevel) -> str:
        return f"{term.cache_key}::{detail_level.value}"

    def _lock_for(self, key: str) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def get_table_definition(
        self,
        table_name: str | TableNameTerm,
        detail_level: TableSchemaDetailLevel,
        conn: pyodbc.Connection,
        force_reload: bool = False,
        query_timeout_seconds: int | None = None,
    ) -> TableDefinition | None:
        """Return the cached definition, loading it on first use.

        An EXTENDED entry also satisfies a BASIC request. Missing tables are
        not cached so a table created later is found on the next call.

        Args:
            query_timeout_seconds: Timeout for the catalog queries of this call;
                defaults to the catalog's own timeout.

        Raises:
            CacheTransientError: If the catalog query failed. Nothing is cached.
        """
        term = TableNameTerm.parse(table_name)
        if force_reload:
            self.invalidate(term)

        key = self._cache_key(term, detail_level)
        extended_key = self._cache_key(term, TableSchemaDetailLevel.EXTENDED)

        with self._lock_for(key):
            cached = self._definitions.get(key) or self._definitions.get(extended_key)
            if cached is not None:
                logger.debug("Schema cache hit: %s", key)
                return cached

            logger.debug("Schema cache miss: %s (%s)", key, self.connection_identity)
            timeout = self.query_timeout_seconds if query_timeout_seconds is None else query_timeout_seconds
            try:
                with connections.command_timeout(conn, timeout):
                    definition = load_table_definition(conn, term, detail_level)
            except pyodbc.Error as exc:
                logger.error(
                    "Schema load failed for %s on %s",
                    term.unquoted_name, self.connection_identity, exc_info=True,
                )
                raise CacheTransientError(key) from exc

            if definition is not None:
                self._definitions[key] = definition
            return definition

    def require_table_definition(
        self,
        table_name: str | TableNameTerm,
        detail_level: TableSchemaDetailLevel,
        conn: pyodbc.Connection,
        force_reload: bool = False,
        query_timeout_seconds: int | None = None,
    ) -> TableDefinition:
        """Like get_table_definition() but a missing table is an error.

        Raises:
            SchemaResolutionError: If the table does not exist.
        """
        definition = self.get_table_definition(
            table_name, detail_level, conn, force_reload, query_timeout_seconds,
        )
        if definition is None:
            raise SchemaResolutionError(TableNameTerm.parse(table_name).unquoted_name)
        return definition

    def is_cached(self, table_name: str | TableNameTerm, detail_level: TableSchemaDetailLevel) -> bool:
        """True when a lookup at ``detail_level`` would not query the database."""
        term = TableNameTerm.parse(table_name)
        with self._lock:
            return (
                self._cache_key(term, detail_level) in self._definitions
                or self._cache_key(term, TableSchemaDetailLevel.EXTENDED) in self._definitions
            )

    def invalidate(self, table_name: str | TableNameTerm) -> None:
        """Drop every cached detail level for one table."""
        term = TableNameTerm.parse(table_name)
        with self._lock:
            for level in TableSchemaDetailLevel:
                self._definitions.pop(self._cache_key(term, level), None)

    def clear(self) -> None:
        with self._lock:
            self._definitions.clear()

    def __len__(self) -> int:
        return len(self._definitions)


class SchemaCatalogRegistry:
    """Owns one SchemaCatalog per connection identity."""

    def __init__(self, query_timeout_seconds: int | None = None) -> None:
        self.query_timeout_seconds = query_timeout_seconds
        self._catalogs: dict[str, SchemaCatalog] = {}
        self._lock = threading.Lock()

    def catalog_for(self, connection_identity: str) -> SchemaCatalog:
        key = connection_identity.lower()
        with self._lock:
            catalog = self._catalogs.get(key)
            if catalog is None:
                catalog = SchemaCatalog(key, self.query_timeout_seconds)
                self._catalogs[key] = catalog
            return catalog

    def clear(self) -> None:
        with self._lock:
            self._catalogs.clear()


_default_registry: SchemaCatalogRegistry | None = None


def default_registry() -> SchemaCatalogRegistry:
    """Process-level registry used when callers do not pass their own catalog."""
    global _default_registry
    if _default_registry is None:
        import config
        _default_registry = SchemaCatalogRegistry(config.default_config().schema_query_timeout_seconds)
    return _default_registry


def resolve_catalog(
    catalog: SchemaCatalog | None,
    connection_identity: str | None = None,
) -> SchemaCatalog:
    """Return ``catalog`` or the default registry's catalog for the identity."""
    if catalog is not None:
        return catalog
    return default_registry().catalog_for(connection_identity or connections.connection_identity())
