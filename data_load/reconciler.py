"""Map MERGE output rows back onto the caller's records.

Each MergeResult carries the 1-based row number the record was staged with and
the identity value the server produced for it. Row N of the results belongs to
records[N - 1] regardless of the order the server processed rows in.

How the identity value is written is decided once per batch, not per row:
  CAPABILITY          record type defines set_identity_id(value)
  INTEGER_ATTRIBUTE   attribute declared int (or undeclared); range-checked
                      against the SQL integer type of the identity column
  CONVERTED_ATTRIBUTE attribute declared with another type (Decimal, float, str);
                      the value is passed through that type
  MAPPING_ITEM        dict-like records; the value is stored under the key

Relaxed mode (reject_non_unique_matches=False) accepts repeated row numbers and
keeps the last value applied. Results are sorted by identity ascending within a
row number, so the highest identity wins. That mode is ambiguous by nature:
other target rows were updated too, but only one identity can be reported.
"""

from __future__ import annotations

import decimal
import logging
import typing
from collections.abc import MutableMapping
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol, runtime_checkable

import polars as pl

from data_load.match_qualifiers import MatchQualifierExpression
from data_load.record_mapping import ResolvedRecordMapping
from errors import NonUniqueMatchError, ScriptExecutionError
from schema.table_definition import INTEGER_TYPE_RANGES, ColumnDefinition, TableDefinition

logger = logging.getLogger(__name__)

NO_IDENTITY = -1

_POLARS_IDENTITY_DTYPES = {
    "tinyint": pl.UInt8,
    "smallint": pl.Int16,
    "int": pl.Int32,
    "bigint": pl.Int64,
}

_TYPE_NAMES: dict[str, type] = {
    "int": int,
    "float": float,
    "str": str,
    "Decimal": decimal.Decimal,
    "decimal.Decimal": decimal.Decimal,
}


@dataclass(frozen=True)
class MergeResult:
    """One OUTPUT row: staged row number (1-based) and identity (or -1)."""

    row_number: int
    identity_value: int = NO_IDENTITY


@runtime_checkable
class SupportsIdentitySetter(Protocol):
    def set_identity_id(self, value: int) -> None: ...


class IdentitySetterKind(Enum):
    CAPABILITY = "capability"
    INTEGER_ATTRIBUTE = "integer_attribute"
    CONVERTED_ATTRIBUTE = "converted_attribute"
    MAPPING_ITEM = "mapping_item"


@dataclass(frozen=True)
class IdentitySetter:
    kind: IdentitySetterKind
    attribute: str | None = None
    converter: Callable | None = None
    value_range: tuple[int, int] | None = None

    def apply(self, record: object, value: int) -> None:
        if self.kind is IdentitySetterKind.CAPABILITY:
            record.set_identity_id(value)
        elif self.kind is IdentitySetterKind.MAPPING_ITEM:
            record[self.attribute] = value
        elif self.kind is IdentitySetterKind.INTEGER_ATTRIBUTE:
            value = int(value)
            if self.value_range is not None:
                low, high = self.value_range
                if not low <= value <= high:
                    raise OverflowError(
                        f"Identity value {value} does not fit attribute "
                        f"'{self.attribute}' range [{low}, {high}]"
                    )
            setattr(record, self.attribute, value)
        else:
            setattr(record, self.attribute, self.converter(value))


def _declared_type(annotation: object) -> type | None:
    if annotation is None:
        return None
    if isinstance(annotation, str):
        cleaned = annotation.replace(" ", "")
        for part in cleaned.split("|"):
            if part in _TYPE_NAMES:
                return _TYPE_NAMES[part]
        return None
    args = [a for a in typing.get_args(annotation) if a is not type(None)]
    if args:
        return _declared_type(args[0])
    return annotation if isinstance(annotation, type) else None


def resolve_identity_setter(
    sample: object,
    identity_column: ColumnDefinition,
    record_mapping: ResolvedRecordMapping | None = None,
) -> IdentitySetter | None:
    """Pick the write strategy for a batch from one sample record.

    Returns None when the record has nowhere to put the identity value.
    """
    if isinstance(sample, SupportsIdentitySetter):
        return IdentitySetter(IdentitySetterKind.CAPABILITY)

    attribute = None
    if record_mapping is not None:
        if record_mapping.mapping is not None and record_mapping.mapping.identity_attribute:
            attribute = record_mapping.mapping.identity_attribute
        else:
            attribute = record_mapping.attribute_for_column(identity_column.column_name)

    if isinstance(sample, MutableMapping):
        if attribute is None:
            lowered = identity_column.column_name.lower()
            attribute = next((k for k in sample if str(k).lower() == lowered), identity_column.column_name)
        return IdentitySetter(IdentitySetterKind.MAPPING_ITEM, attribute=attribute)

    if attribute is None:
        return None

    declared = None
    if record_mapping is not None:
        declared = _declared_type(record_mapping.attribute_types.get(attribute))

    if declared is None or declared is int or declared is bool:
        return IdentitySetter(
            IdentitySetterKind.INTEGER_ATTRIBUTE,
            attribute=attribute,
            value_range=INTEGER_TYPE_RANGES.get(identity_column.data_type.lower()),
        )
    return IdentitySetter(
        IdentitySetterKind.CONVERTED_ATTRIBUTE, attribute=attribute, converter=declared,
    )


def validate_merge_results(
    results: list[MergeResult],
    batch_size: int,
    qualifier: MatchQualifierExpression,
) -> None:
    """Check row numbers before any record is touched.

    Raises:
        NonUniqueMatchError: If a row number repeats and rejection is enabled.
        ScriptExecutionError: If a row number lies outside the batch.
    """
    seen: set[int] = set()
    for result in results:
        if not 1 <= result.row_number <= batch_size:
            raise ScriptExecutionError(
                f"Merge returned row number {result.row_number} outside the "
                f"staged batch of {batch_size} rows"
            )
        if result.row_number in seen and qualifier.reject_non_unique_matches:
            raise NonUniqueMatchError(str(qualifier), result.row_number)
        seen.add(result.row_number)


def reconcile_records(
    records: list,
    results: list[MergeResult],
    table_def: TableDefinition,
    qualifier: MatchQualifierExpression,
    record_mapping: ResolvedRecordMapping | None = None,
    identity_retrieved: bool = True,
) -> list:
    """Write identity values from ``results`` onto ``records`` in place.

    Validation covers the whole batch first, so a NonUniqueMatchError leaves
    every record untouched.

    Returns:
        The same list, for chaining.
    """
    validate_merge_results(results, len(records), qualifier)

    identity = table_def.identity_column
    if identity is None or not identity_retrieved or not records or not results:
        return records

    setter = resolve_identity_setter(records[0], identity, record_mapping)
    if setter is None:
        logger.debug(
            "Records of type %s expose no identity attribute for %s; skipping write-back",
            type(records[0]).__name__, identity.column_name,
        )
        return records

    for result in results:
        setter.apply(records[result.row_number - 1], result.identity_value)
    return records


def reconcile_dataframe(
    df: pl.DataFrame,
    results: list[MergeResult],
    table_def: TableDefinition,
    qualifier: MatchQualifierExpression,
    identity_retrieved: bool = True,
) -> pl.DataFrame:
    """DataFrame variant: returns a new frame with the identity column filled."""
    validate_merge_results(results, df.height, qualifier)

    identity = table_def.identity_column
    if identity is None or not identity_retrieved or not results:
        return df

    column = next(
        (c for c in df.columns if c.lower() == identity.column_name.lower()),
        identity.column_name,
    )
    values = df[column].to_list() if column in df.columns else [None] * df.height
    for result in results:
        values[result.row_number - 1] = result.identity_value

    dtype = _POLARS_IDENTITY_DTYPES.get(identity.data_type.lower(), pl.Int64)
    return df.with_columns(pl.Series(column, values, dtype=dtype))
