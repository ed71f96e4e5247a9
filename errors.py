"""Exception taxonomy for bulk merge and materialization operations."""

from __future__ import annotations


class BulkHelpersError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(BulkHelpersError):
    """Raised when a BulkHelpersConfig combination is invalid.

    Detected when the config is constructed, never mid-operation.
    """


class SchemaResolutionError(BulkHelpersError):
    """Raised when a table name cannot be resolved to a TableDefinition."""

    def __init__(self, table_name: str, message: str | None = None) -> None:
        self.table_name = table_name
        super().__init__(
            message
            or f"Table {table_name} could not be found or its schema could not be resolved"
        )


class InvalidMatchQualifierError(BulkHelpersError):
    """Raised when no usable match-qualifier columns remain for a merge.

    Always raised before any staging table is created.
    """

    def __init__(self, table_name: str, requested_fields: list[str] | None = None) -> None:
        self.table_name = table_name
        self.requested_fields = list(requested_fields or [])
        if requested_fields is None:
            detail = "no fields were requested and the table has no primary key to fall back on"
        elif not self.requested_fields:
            detail = "the requested field list is empty"
        else:
            detail = (
                "none of the requested fields ("
                + ", ".join(repr(f) for f in self.requested_fields)
                + ") match a column of the table"
            )
        super().__init__(
            f"No valid match qualifiers could be resolved for {table_name}: {detail}. "
            "Rows cannot be correlated without one."
        )


class NonUniqueMatchError(BulkHelpersError):
    """Raised when one staged row matched more than one target row."""

    def __init__(self, qualifier_expression: str, row_number: int) -> None:
        self.qualifier_expression = qualifier_expression
        self.row_number = row_number
        super().__init__(
            f"The match qualifier [{qualifier_expression}] matched more than one "
            f"target row for input row {row_number}. The merge is ambiguous; use a "
            "unique match qualifier or disable non-unique match rejection."
        )


class ScriptExecutionError(BulkHelpersError):
    """Raised when a generated SQL script reports failure or the driver errors.

    Never retried: a partially applied multi-statement DDL script is not safe
    to run again.
    """

    def __init__(
        self,
        message: str,
        error_number: int | None = None,
        error_line: int | None = None,
    ) -> None:
        self.error_number = error_number
        self.error_line = error_line
        detail = ""
        if error_number is not None:
            detail = f" (error {error_number}, line {error_line})"
        super().__init__(f"{message}{detail}")

    @classmethod
    def from_driver_error(cls, phase: str, exc: Exception) -> ScriptExecutionError:
        """Wrap a pyodbc error; callers raise the result `from` the original."""
        detail = exc.args[1] if len(exc.args) > 1 else str(exc)
        return cls(f"{phase} failed: {detail}")


class CacheTransientError(BulkHelpersError):
    """Raised when populating a cache entry fails; the entry is not kept."""

    def __init__(self, cache_key: str) -> None:
        self.cache_key = cache_key
        super().__init__(f"Failed to populate cache entry '{cache_key}'; next call will retry")


class MaterializationStateError(BulkHelpersError):
    """Raised on an illegal materialization session transition."""
