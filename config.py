"""Environment variables, bulk/merge tuning constants, and materialization settings.

Module-level constants are read once from the environment (after load_dotenv).
BulkHelpersConfig bundles them per call site so a caller can override any of
them without touching the process environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Callable

from dotenv import load_dotenv

from errors import ConfigurationError

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() == "true"


# --- Database Connection Vars ---
SQL_SERVER_HOST = os.getenv("SQL_SERVER_HOST", "")
SQL_SERVER_PORT = int(os.getenv("SQL_SERVER_PORT", "1433"))
SQL_SERVER_USER = os.getenv("SQL_SERVER_USER", "")
SQL_SERVER_PASSWORD = os.getenv("SQL_SERVER_PASSWORD", "")

# Database used when a caller asks connections.get_connection() without one.
TARGET_DB = os.getenv("TARGET_DB", "master")

# --- ODBC Driver ---
ODBC_DRIVER = os.getenv("ODBC_DRIVER", "ODBC Driver 18 for SQL Server")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# ---------------------------------------------------------------------------
# Bulk staging channel (pyodbc fast_executemany into session temp tables)
# ---------------------------------------------------------------------------
# Rows are sent to the #staging table in batches of this size. Each batch is
# one executemany() round trip; pyodbc builds the parameter array in memory,
# so very large batches trade memory for fewer round trips.
BULK_BATCH_SIZE = int(os.getenv("BULK_BATCH_SIZE", "2000"))
#
# Query timeout (seconds) applied to every staging batch. 0 = no timeout.
BULK_PER_BATCH_TIMEOUT_SECONDS = int(os.getenv("BULK_PER_BATCH_TIMEOUT_SECONDS", "60"))
#
# TABLOCK on the staging insert. The #staging table is private to the session,
# so the table lock never blocks anyone else and allows minimal logging.
BULK_TABLE_LOCK_ENABLED = _env_bool("BULK_TABLE_LOCK_ENABLED", "true")

# ---------------------------------------------------------------------------
# Timeouts per phase
# ---------------------------------------------------------------------------
# Catalog queries that build a TableDefinition.
SCHEMA_QUERY_TIMEOUT_SECONDS = int(os.getenv("SCHEMA_QUERY_TIMEOUT_SECONDS", "30"))
#
# Clone / switch / drop DDL scripts. These hold schema locks, keep them short.
MATERIALIZE_DDL_TIMEOUT_SECONDS = int(os.getenv("MATERIALIZE_DDL_TIMEOUT_SECONDS", "30"))

# ---------------------------------------------------------------------------
# Materialization scratch area
# ---------------------------------------------------------------------------
# Loading tables receive the new data; discarding tables receive the old live
# tables during the switch and are dropped at the end of the session.
MATERIALIZE_LOADING_SCHEMA = os.getenv("MATERIALIZE_LOADING_SCHEMA", "dbo_materializing")
MATERIALIZE_DISCARDING_SCHEMA = os.getenv("MATERIALIZE_DISCARDING_SCHEMA", "dbo_materializing_temp")
MATERIALIZE_TABLE_NAME_PREFIX = os.getenv("MATERIALIZE_TABLE_NAME_PREFIX", "")
MATERIALIZE_TABLE_NAME_SUFFIX = os.getenv("MATERIALIZE_TABLE_NAME_SUFFIX", "")
#
# Append a random suffix to scratch table names so two sessions on the same
# live table never collide in the scratch schemas.
MATERIALIZE_UNIQUE_TABLE_NAMES = _env_bool("MATERIALIZE_UNIQUE_TABLE_NAMES", "true")
#
# Carry IDENT_CURRENT of the live table into each clone so new rows keep
# counting up from where production left off.
CLONE_IDENTITY_SEED_ENABLED = _env_bool("CLONE_IDENTITY_SEED_ENABLED", "true")
#
# inside_transaction: clone scratch tables in the caller's transaction.
# outside_transaction: clone on a separate, immediately committed connection so
#   schema-modification locks are not held for the whole population phase.
SCHEMA_COPY_MODE = os.getenv("SCHEMA_COPY_MODE", "inside_transaction")
#
# SQL Server forbids full-text index DDL inside a user transaction. When
# enabled, full-text indexes are removed/re-added on a concurrent connection
# around the switch (requires a concurrent connection factory).
FULLTEXT_INDEX_HANDLING_ENABLED = _env_bool("FULLTEXT_INDEX_HANDLING_ENABLED", "false")
#
# Re-validate all constraints (WITH CHECK CHECK) after the switch. Disabling
# leaves foreign keys untrusted but makes the switch much faster on big tables.
POST_SWITCH_CONSTRAINT_VALIDATION_ENABLED = _env_bool(
    "POST_SWITCH_CONSTRAINT_VALIDATION_ENABLED", "true",
)

SCHEMA_COPY_INSIDE_TRANSACTION = "inside_transaction"
SCHEMA_COPY_OUTSIDE_TRANSACTION = "outside_transaction"
_SCHEMA_COPY_MODES = (SCHEMA_COPY_INSIDE_TRANSACTION, SCHEMA_COPY_OUTSIDE_TRANSACTION)


@dataclass(frozen=True)
class BulkHelpersConfig:
    """Per-operation settings; defaults come from the environment constants above.

    Validated eagerly so a bad combination fails when the config is built,
    not halfway through a materialization.
    """

    batch_size: int = BULK_BATCH_SIZE
    per_batch_timeout_seconds: int = BULK_PER_BATCH_TIMEOUT_SECONDS
    table_lock_enabled: bool = BULK_TABLE_LOCK_ENABLED
    schema_query_timeout_seconds: int = SCHEMA_QUERY_TIMEOUT_SECONDS
    materialize_ddl_timeout_seconds: int = MATERIALIZE_DDL_TIMEOUT_SECONDS
    loading_schema: str = MATERIALIZE_LOADING_SCHEMA
    discarding_schema: str = MATERIALIZE_DISCARDING_SCHEMA
    table_name_prefix: str = MATERIALIZE_TABLE_NAME_PREFIX
    table_name_suffix: str = MATERIALIZE_TABLE_NAME_SUFFIX
    unique_table_names: bool = MATERIALIZE_UNIQUE_TABLE_NAMES
    clone_identity_seed_enabled: bool = CLONE_IDENTITY_SEED_ENABLED
    schema_copy_mode: str = SCHEMA_COPY_MODE
    fulltext_index_handling_enabled: bool = FULLTEXT_INDEX_HANDLING_ENABLED
    post_switch_constraint_validation_enabled: bool = POST_SWITCH_CONSTRAINT_VALIDATION_ENABLED
    concurrent_connection_factory: Callable | None = field(default=None, compare=False)
    max_concurrent_connections: int = 5

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ConfigurationError(f"batch_size must be >= 1, got {self.batch_size}")
        for name in (
            "per_batch_timeout_seconds",
            "schema_query_timeout_seconds",
            "materialize_ddl_timeout_seconds",
        ):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} cannot be negative")
        if self.max_concurrent_connections < 1:
            raise ConfigurationError("max_concurrent_connections must be >= 1")
        if self.schema_copy_mode not in _SCHEMA_COPY_MODES:
            raise ConfigurationError(
                f"Unknown schema_copy_mode '{self.schema_copy_mode}', "
                f"expected one of {_SCHEMA_COPY_MODES}"
            )
        if not self.loading_schema or not self.discarding_schema:
            raise ConfigurationError("Loading and discarding schema names are required")
        if (
            self.loading_schema.lower() == self.discarding_schema.lower()
            and not self.unique_table_names
        ):
            raise ConfigurationError(
                "Loading and discarding schemas are the same "
                f"('{self.loading_schema}') but unique table names are disabled; "
                "scratch tables would collide"
            )
        if self.fulltext_index_handling_enabled and not self.is_concurrent_connection_enabled:
            raise ConfigurationError(
                "Full-text index handling requires a concurrent connection factory, "
                "because full-text DDL cannot run inside the materialization "
                "transaction. Use with_concurrent_connections() to supply one."
            )
        if (
            self.schema_copy_mode == SCHEMA_COPY_OUTSIDE_TRANSACTION
            and not self.is_concurrent_connection_enabled
        ):
            raise ConfigurationError(
                "schema_copy_mode 'outside_transaction' requires a concurrent "
                "connection factory"
            )

    @property
    def is_concurrent_connection_enabled(self) -> bool:
        return self.concurrent_connection_factory is not None

    @property
    def copies_schema_outside_transaction(self) -> bool:
        return self.schema_copy_mode == SCHEMA_COPY_OUTSIDE_TRANSACTION

    def with_concurrent_connections(
        self,
        factory: Callable,
        max_connections: int | None = None,
    ) -> BulkHelpersConfig:
        """Return a copy with a concurrent connection factory configured."""
        return replace(
            self,
            concurrent_connection_factory=factory,
            max_concurrent_connections=max_connections or self.max_concurrent_connections,
        )


_default_config: BulkHelpersConfig | None = None


def default_config() -> BulkHelpersConfig:
    """Process-wide default config, built lazily from the environment."""
    global _default_config
    if _default_config is None:
        _default_config = BulkHelpersConfig()
    return _default_config


def configure_defaults(**overrides) -> BulkHelpersConfig:
    """Replace the process-wide default config; validation runs immediately."""
    global _default_config
    _default_config = replace(default_config(), **overrides)
    return _default_config


def reset_defaults() -> None:
    global _default_config
    _default_config = None
