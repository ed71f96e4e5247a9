"""Match-qualifier resolution: which columns correlate staged rows to target rows.

Resolution order for the requested fields:
  1. The explicit expression passed by the caller.
  2. The default declared on the record type's RecordMapping.
  3. The table's primary key (always unique, so non-unique rejection is on).

Requested fields are sanitized (brackets stripped) and kept only when they
resolve to a real column, directly or through the record mapping. Fields that
resolve to nothing are dropped with a warning. An empty result is an
InvalidMatchQualifierError, raised before any I/O.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from data_load.record_mapping import ResolvedRecordMapping
from errors import InvalidMatchQualifierError
from schema.table_definition import TableDefinition

logger = logging.getLogger(__name__)


def sanitize_field_name(name: str) -> str:
    return name.strip().replace("[", "").replace("]", "")


@dataclass(frozen=True)
class MatchQualifierExpression:
    """Ordered match columns plus the non-unique rejection flag.

    Raises:
        ValueError: If no fields are given.
    """

    fields: tuple[str, ...]
    reject_non_unique_matches: bool = True

    def __post_init__(self) -> None:
        sanitized = tuple(sanitize_field_name(f) for f in self.fields if f and f.strip())
        if not sanitized:
            raise ValueError("A match qualifier expression requires at least one field")
        object.__setattr__(self, "fields", sanitized)

    @classmethod
    def of(cls, *fields: str, reject_non_unique_matches: bool = True) -> MatchQualifierExpression:
        return cls(tuple(fields), reject_non_unique_matches)

    def __str__(self) -> str:
        return " AND ".join(f"[{f}]" for f in self.fields)


def resolve_match_qualifiers(
    table_def: TableDefinition,
    requested: MatchQualifierExpression | Iterable[str] | None = None,
    record_mapping: ResolvedRecordMapping | None = None,
) -> MatchQualifierExpression:
    """Validate the requested qualifier against ``table_def``.

    Args:
        table_def: Target table.
        requested: Caller expression, a plain list of field names, or None.
        record_mapping: Mapping of the record type being merged, if any.

    Returns:
        A MatchQualifierExpression whose fields are real column names.

    Raises:
        InvalidMatchQualifierError: If no usable fields remain.
    """
    if requested is not None and not isinstance(requested, MatchQualifierExpression):
        original = list(requested)
        names = [n for n in original if n and n.strip()]
        if not names:
            # An explicit but empty request never falls back to the primary key.
            raise InvalidMatchQualifierError(table_def.table_name_term.unquoted_name, original)
        requested = MatchQualifierExpression(tuple(names))

    if requested is None and record_mapping is not None and record_mapping.mapping is not None:
        default_fields = record_mapping.mapping.match_qualifier_fields
        if default_fields:
            requested = MatchQualifierExpression(
                tuple(default_fields),
                record_mapping.mapping.reject_non_unique_matches,
            )

    if requested is None:
        if table_def.primary_key is None:
            raise InvalidMatchQualifierError(table_def.table_name_term.unquoted_name)
        return MatchQualifierExpression(tuple(table_def.primary_key.column_names), True)

    resolved: list[str] = []
    for name in requested.fields:
        column = table_def.find_column(name)
        if column is None and record_mapping is not None and record_mapping.is_mapping_lookup_enabled:
            mapped = record_mapping.column_for_attribute(name)
            if mapped is not None:
                column = table_def.find_column(mapped)
        if column is None:
            logger.warning(
                "Match qualifier field [%s] is not a column of %s; ignoring it",
                name, table_def.fully_qualified_name,
            )
            continue
        if column.column_name not in resolved:
            resolved.append(column.column_name)

    if not resolved:
        raise InvalidMatchQualifierError(
            table_def.table_name_term.unquoted_name, list(requested.fields),
        )
    return MatchQualifierExpression(tuple(resolved), requested.reject_non_unique_matches)
