"""Record type -> table column mapping.

Columns are matched to record attributes case-insensitively. A RecordMapping
registered for a type overrides attribute->column names, supplies the table
name, and can declare default match-qualifier fields. Resolution runs once per
record type and is cached by the type itself.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import typing
from collections.abc import Mapping
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordMapping:
    """Explicit mapping configuration for one record type.

    Args:
        table_name: Target table when the caller does not pass one.
        columns: attribute name -> column name overrides.
        match_qualifier_fields: Default match-qualifier columns for merges.
        reject_non_unique_matches: Flag carried by the default qualifier.
        identity_attribute: Attribute receiving identity values, when its name
            differs from the identity column.
    """

    table_name: str | None = None
    columns: dict[str, str] = field(default_factory=dict)
    match_qualifier_fields: tuple[str, ...] = ()
    reject_non_unique_matches: bool = True
    identity_attribute: str | None = None


@dataclass(frozen=True)
class ResolvedRecordMapping:
    record_type: type
    attribute_names: tuple[str, ...]
    attribute_types: dict[str, object]
    mapping: RecordMapping | None = None

    @property
    def is_mapping_lookup_enabled(self) -> bool:
        return self.mapping is not None

    @property
    def table_name(self) -> str | None:
        return self.mapping.table_name if self.mapping else None

    def column_for_attribute(self, attribute: str) -> str | None:
        """Mapped column name for an attribute (case-insensitive), if any."""
        if self.mapping is not None:
            for attr, column in self.mapping.columns.items():
                if attr.lower() == attribute.lower():
                    return column
        for attr in self.attribute_names:
            if attr.lower() == attribute.lower():
                return attr
        return None

    def attribute_for_column(self, column_name: str) -> str | None:
        """Attribute that supplies ``column_name``: overrides first, then same name."""
        lowered = column_name.lower()
        if self.mapping is not None:
            for attr, column in self.mapping.columns.items():
                if column.lower() == lowered:
                    return attr
        for attr in self.attribute_names:
            if attr.lower() == lowered:
                return attr
        return None


_registered: dict[type, RecordMapping] = {}
_resolved: dict[type, ResolvedRecordMapping] = {}
_lock = threading.Lock()


def register_record_mapping(record_type: type, mapping: RecordMapping) -> None:
    """Register (or replace) the mapping for a record type."""
    with _lock:
        _registered[record_type] = mapping
        _resolved.pop(record_type, None)


def clear_record_mappings() -> None:
    with _lock:
        _registered.clear()
        _resolved.clear()


def _type_hints(record_type: type) -> dict[str, object]:
    try:
        return typing.get_type_hints(record_type)
    except (NameError, TypeError):
        # Unresolvable forward references: fall back to the raw annotation strings.
        hints: dict[str, object] = {}
        for klass in reversed(record_type.__mro__):
            hints.update(getattr(klass, "__annotations__", {}))
        return hints


def _declared_attributes(record_type: type) -> tuple[tuple[str, ...], dict[str, object]]:
    hints = _type_hints(record_type)
    if dataclasses.is_dataclass(record_type):
        names = tuple(f.name for f in dataclasses.fields(record_type))
    else:
        names = tuple(n for n in hints if not n.startswith("_"))
    return names, {n: hints.get(n) for n in names}


def resolve_record_mapping(record_type: type, sample: object | None = None) -> ResolvedRecordMapping:
    """Resolve (and cache) the attribute set for a record type.

    Types that declare no attributes (plain classes, dicts) are resolved from
    ``sample`` instead and not cached, because their attributes are per
    instance.
    """
    with _lock:
        cached = _resolved.get(record_type)
        if cached is not None:
            return cached
        mapping = _registered.get(record_type)

    names, types = _declared_attributes(record_type)
    if names:
        resolved = ResolvedRecordMapping(record_type, names, types, mapping)
        with _lock:
            _resolved[record_type] = resolved
        logger.debug("Resolved record mapping for %s: %s", record_type.__name__, names)
        return resolved

    if isinstance(sample, Mapping):
        sample_names = tuple(str(k) for k in sample.keys())
    elif sample is not None:
        sample_names = tuple(n for n in vars(sample) if not n.startswith("_"))
    else:
        sample_names = ()
    return ResolvedRecordMapping(record_type, sample_names, {}, mapping)


def get_value(record: object, attribute: str):
    if isinstance(record, Mapping):
        return record.get(attribute)
    return getattr(record, attribute, None)
