"""Blue/green materialization of one or more tables.

start_materialization() clones every live table into a Loading and a
Discarding scratch table (structure only, no foreign keys). The caller bulk
loads the Loading tables, then finish() runs a single script that:

1. disables foreign keys referencing the set and adds the live tables' own
   foreign keys (unvalidated) to the scratch tables, then disables every
   constraint on the scratch tables;
2. switches each Live table out to its Discarding table;
3. switches each Loading table in as the Live table;
4. re-enables all constraints on the Live tables (validated unless opted out);
5. re-enables referencing keys that live on tables outside the set;
6. drops the scratch tables.

Statement order is the whole contract: the script runs once inside the
caller's transaction, so the database provides atomicity for the switch.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Iterable

import pyodbc

import config
import connections
from errors import BulkHelpersError
from materialization.clone import CloneTableInfo, clone_tables, distinct_table_names
from materialization.context import MaterializationTableInfo, MaterializeDataContext
from materialization.fulltext import add_fulltext_index, remove_fulltext_index
from materialization.script_builder import MaterializationScriptBuilder, execute_script
from schema.catalog import SchemaCatalog, resolve_catalog
from schema.table_definition import ForeignKeyConstraint, TableDefinition, TableSchemaDetailLevel
from schema.table_name import TableNameTerm

logger = logging.getLogger(__name__)


def _scratch_table_names(
    live: TableNameTerm, cfg: config.BulkHelpersConfig,
) -> tuple[TableNameTerm, TableNameTerm]:
    """Loading and Discarding names for one live table.

    When the two schemas differ both scratch tables share one (possibly
    uniquified) table name, which keeps them easy to pair up when debugging.
    """
    loading = (
        live.switch_schema(cfg.loading_schema)
        .with_prefix_suffix(cfg.table_name_prefix, cfg.table_name_suffix)
    )
    if cfg.unique_table_names:
        loading = loading.make_unique()

    if cfg.loading_schema.lower() != cfg.discarding_schema.lower():
        discarding = loading.switch_schema(cfg.discarding_schema)
    else:
        discarding = (
            live.switch_schema(cfg.discarding_schema)
            .with_prefix_suffix(cfg.table_name_prefix, cfg.table_name_suffix)
            .make_unique()
        )
    return loading, discarding


def _fk_key(fk: ForeignKeyConstraint) -> tuple[str, str]:
    return fk.source_table.cache_key, fk.constraint_name.lower()


def _referencing_keys(
    tables: list[MaterializationTableInfo],
) -> tuple[list[ForeignKeyConstraint], list[ForeignKeyConstraint]]:
    """Split keys referencing the set into (declared outside, declared inside)."""
    in_set = {info.live_table.cache_key for info in tables}
    outside: dict[tuple[str, str], ForeignKeyConstraint] = {}
    inside: dict[tuple[str, str], ForeignKeyConstraint] = {}
    for info in tables:
        for fk in info.original_definition.referencing_foreign_keys:
            bucket = inside if fk.source_table.cache_key in in_set else outside
            bucket.setdefault(_fk_key(fk), fk)
    return list(outside.values()), list(inside.values())


def build_switch_script(
    tables: list[MaterializationTableInfo],
    validate_constraints: bool = True,
    sync_identity_seed: bool = True,
) -> MaterializationScriptBuilder:
    """Render the finish script for the whole table set."""
    builder = MaterializationScriptBuilder()
    outside_refs, inside_refs = _referencing_keys(tables)

    # Keys declared on tables in the set are re-enabled by CHECK CONSTRAINT ALL
    # on the new live tables; only outside keys need their own re-enable.
    builder.disable_foreign_key_checks(outside_refs + inside_refs)
    for info in tables:
        live_def = info.original_definition
        for scratch in (info.loading_table, info.discarding_table):
            builder.add_foreign_keys(scratch, live_def.foreign_keys, info.live_table, validate=False)
            builder.disable_all_constraint_checks(scratch)

    for info in tables:
        builder.switch_table(info.live_table, info.discarding_table)
    for info in tables:
        builder.switch_table(info.loading_table, info.live_table)
        if sync_identity_seed and info.original_definition.identity_column is not None:
            builder.sync_identity_seed(info.loading_table, info.live_table)

    for info in tables:
        builder.enable_all_constraint_checks(info.live_table, validate=validate_constraints)
    builder.enable_foreign_key_checks(outside_refs, validate=validate_constraints)

    for info in tables:
        builder.drop_table(info.loading_table)
        builder.drop_table(info.discarding_table)
    return builder


def precache_table_definitions(
    terms: list[TableNameTerm],
    catalog: SchemaCatalog,
    cfg: config.BulkHelpersConfig,
) -> int:
    """Load uncached EXTENDED definitions in parallel on concurrent connections.

    Each worker opens its own connection from the configured factory, so the
    catalog queries stay out of the caller's transaction. Does nothing when no
    factory is configured; the definitions are then loaded one at a time on
    the session connection.

    Returns:
        The number of definitions loaded.
    """
    if not cfg.is_concurrent_connection_enabled:
        return 0
    uncached = [t for t in terms if not catalog.is_cached(t, TableSchemaDetailLevel.EXTENDED)]
    if not uncached:
        return 0

    def _load(term: TableNameTerm) -> None:
        worker_conn = cfg.concurrent_connection_factory()
        try:
            catalog.require_table_definition(
                term, TableSchemaDetailLevel.EXTENDED, worker_conn,
                query_timeout_seconds=cfg.schema_query_timeout_seconds,
            )
        finally:
            worker_conn.close()

    started = time.monotonic()
    with ThreadPoolExecutor(max_workers=min(cfg.max_concurrent_connections, len(uncached))) as executor:
        futures = [executor.submit(_load, term) for term in uncached]
        for future in as_completed(futures):
            future.result()
    logger.debug(
        "Pre-cached %d table definition(s) in %.2fs", len(uncached), time.monotonic() - started,
    )
    return len(uncached)


def start_materialization(
    conn: pyodbc.Connection,
    table_names: Iterable[str | TableNameTerm],
    cfg: config.BulkHelpersConfig | None = None,
    catalog: SchemaCatalog | None = None,
    schema_conn: pyodbc.Connection | None = None,
) -> MaterializeDataContext:
    """Clone each live table into its scratch pair and open a session.

    Table definitions not yet cached are loaded first, in parallel, when a
    concurrent connection factory is configured.

    Args:
        conn: The session connection; population and finish run on it.
        table_names: Live tables to materialize together.
        cfg: Settings; defaults to ``config.default_config()``.
        catalog: Schema catalog; defaults to the registry's for ``conn``.
        schema_conn: When given, the clone script runs on this connection
            instead, so the caller can commit it separately and release the
            schema locks before population starts.

    Returns:
        A context in the POPULATING state.

    Raises:
        ValueError: If no table names are given.
        SchemaResolutionError: If a live table does not exist.
        ScriptExecutionError: If the clone script fails.
    """
    cfg = cfg or config.default_config()
    terms = distinct_table_names(table_names)
    if not terms:
        raise ValueError("No valid table names were specified for materialization")

    catalog = resolve_catalog(catalog, connections.identity_of(conn) if catalog is None else None)
    precache_table_definitions(terms, catalog, cfg)
    clone_conn = schema_conn if schema_conn is not None else conn

    tables: list[MaterializationTableInfo] = []
    clones: list[CloneTableInfo] = []
    for term in terms:
        live_def: TableDefinition = catalog.require_table_definition(
            term, TableSchemaDetailLevel.EXTENDED, clone_conn,
            query_timeout_seconds=cfg.schema_query_timeout_seconds,
        )
        live = live_def.table_name_term
        loading, discarding = _scratch_table_names(live, cfg)
        tables.append(MaterializationTableInfo(live, loading, discarding, live_def))
        clones.append(CloneTableInfo(live, loading))
        clones.append(CloneTableInfo(live, discarding))

    context = MaterializeDataContext(
        conn=conn,
        tables=tables,
        cfg=cfg,
        catalog=catalog,
        post_switch_constraint_validation_enabled=cfg.post_switch_constraint_validation_enabled,
    )

    # No foreign keys yet: a key on a scratch table would lock the live
    # table it references for the whole population phase.
    clone_tables(
        clone_conn, clones,
        recreate_if_exists=True, copy_data=False, include_foreign_keys=False,
        catalog=catalog, cfg=cfg,
    )
    context.begin_populating()
    for info in tables:
        logger.info(
            "Materializing %s via loading table %s (discarding %s)",
            info.live_table, info.loading_table, info.discarding_table,
        )
    return context


def finish(context: MaterializeDataContext) -> bool:
    """Switch every loading table live in one script.

    Returns:
        False if the session was cancelled (nothing ran), True after the switch.

    Raises:
        MaterializationStateError: If the session was already finished or failed.
        ScriptExecutionError: If the switch script fails; the caller's
            transaction must then be rolled back.
    """
    if context.is_cancelled:
        logger.info("Materialization was cancelled; skipping switch")
        return False

    context.begin_finishing()
    builder = build_switch_script(
        context.tables,
        validate_constraints=context.post_switch_constraint_validation_enabled,
        sync_identity_seed=context.cfg.clone_identity_seed_enabled,
    )
    start = time.monotonic()
    try:
        execute_script(
            context.conn, builder,
            context.cfg.materialize_ddl_timeout_seconds, "Materialization switch script",
        )
    except BulkHelpersError:
        context.mark_failed()
        logger.error(
            "Materialization switch failed for %s",
            ", ".join(str(t) for t in context.live_tables), exc_info=True,
        )
        raise

    for info in context.tables:
        for term in (info.live_table, info.loading_table, info.discarding_table):
            context.catalog.invalidate(term)
    context.mark_finished()
    logger.info(
        "Materialization finished for %d table(s) in %.2fs (constraint validation %s)",
        len(context.tables), time.monotonic() - start,
        "on" if context.post_switch_constraint_validation_enabled else "off",
    )
    return True


def cancel(context: MaterializeDataContext) -> None:
    """Mark the session cancelled; finish() will then do nothing."""
    context.cancel()


def cleanup_materialization(context: MaterializeDataContext, conn: pyodbc.Connection) -> None:
    """Drop any scratch tables the session left behind and commit.

    Used when the clones were committed outside the session transaction, so a
    rollback of that transaction does not remove them.
    """
    builder = MaterializationScriptBuilder()
    for info in context.tables:
        builder.drop_table(info.loading_table)
        builder.drop_table(info.discarding_table)
    execute_script(
        conn, builder, context.cfg.materialize_ddl_timeout_seconds, "Materialization cleanup script",
    )
    conn.commit()


def _remove_fulltext_indexes(context: MaterializeDataContext) -> None:
    if not context.cfg.fulltext_index_handling_enabled:
        return
    targets = [info for info in context.tables if info.original_definition.full_text_index is not None]
    if not targets:
        return
    ft_conn = context.cfg.concurrent_connection_factory()
    try:
        ft_conn.autocommit = True
        for info in targets:
            removed = remove_fulltext_index(ft_conn, info.live_table, context.catalog, context.cfg)
            if removed is not None:
                context.removed_fulltext_indexes[info.live_table.cache_key] = removed
    finally:
        ft_conn.close()


def _restore_fulltext_indexes(context: MaterializeDataContext, raise_errors: bool = True) -> None:
    if not context.removed_fulltext_indexes:
        return
    ft_conn = context.cfg.concurrent_connection_factory()
    try:
        ft_conn.autocommit = True
        for info in context.tables:
            definition = context.removed_fulltext_indexes.get(info.live_table.cache_key)
            if definition is None:
                continue
            try:
                add_fulltext_index(ft_conn, info.live_table, definition, context.catalog, context.cfg)
            except BulkHelpersError:
                if raise_errors:
                    raise
                logger.error(
                    "Failed to restore full-text index on %s", info.live_table, exc_info=True,
                )
                continue
            del context.removed_fulltext_indexes[info.live_table.cache_key]
    finally:
        ft_conn.close()


def execute_materialization(
    conn: pyodbc.Connection,
    table_names: Iterable[str | TableNameTerm],
    populate_callback: Callable[[MaterializeDataContext], None],
    cfg: config.BulkHelpersConfig | None = None,
    catalog: SchemaCatalog | None = None,
) -> MaterializeDataContext:
    """Run a whole materialization, owning the transaction on ``conn``.

    The callback receives the context and loads data into
    ``context.loading_table(name)`` using ``context.conn``. It may call
    ``context.cancel()`` to roll everything back without switching.

    Full-text indexes (when handling is enabled) are removed on a concurrent
    connection before the switch and re-created once the transaction
    has committed or rolled back.
    """
    cfg = cfg or config.default_config()
    table_list = list(table_names)
    outside = cfg.copies_schema_outside_transaction
    previous_autocommit = conn.autocommit
    conn.autocommit = False
    context: MaterializeDataContext | None = None

    try:
        if outside:
            schema_conn = cfg.concurrent_connection_factory()
            try:
                schema_conn.autocommit = False
                context = start_materialization(conn, table_list, cfg, catalog, schema_conn=schema_conn)
                schema_conn.commit()
            except Exception:
                schema_conn.rollback()
                raise
            finally:
                schema_conn.close()

        try:
            if context is None:
                context = start_materialization(conn, table_list, cfg, catalog)
            populate_callback(context)

            if context.is_cancelled:
                conn.rollback()
                return context

            _remove_fulltext_indexes(context)
            finish(context)
            conn.commit()
        except Exception:
            conn.rollback()
            # Full-text DDL blocks on the switch script's schema locks until they are released.
            if context is not None:
                _restore_fulltext_indexes(context, raise_errors=False)
            raise
        _restore_fulltext_indexes(context)
        return context
    finally:
        if outside and context is not None:
            try:
                cleanup_materialization(context, conn)
            except (BulkHelpersError, pyodbc.Error):
                logger.warning("Scratch table cleanup failed", exc_info=True)
        conn.autocommit = previous_autocommit
