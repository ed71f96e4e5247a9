"""Schema-qualified table names.

Accepts ``table``, ``schema.table`` and ``[schema].[table]`` forms. The
default schema is ``dbo``. Temp tables (``#name``) are recognised so the
catalog can query tempdb for them.
"""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass

from connections import quote_identifier

DEFAULT_SCHEMA = "dbo"

_ID_ALPHABET = string.ascii_uppercase + string.digits


def generate_id(length: int = 10) -> str:
    """Random upper-case alphanumeric id used to make scratch names unique."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def _strip_brackets(term: str) -> str:
    term = term.strip()
    if term.startswith("[") and term.endswith("]"):
        term = term[1:-1].replace("]]", "]")
    return term


def _split_name(name: str) -> list[str]:
    """Split on '.' outside of brackets so ``[a.b].[c]`` stays two parts."""
    parts: list[str] = []
    current: list[str] = []
    in_brackets = False
    i = 0
    while i < len(name):
        ch = name[i]
        if ch == "[" and not in_brackets:
            in_brackets = True
        elif ch == "]" and in_brackets:
            if i + 1 < len(name) and name[i + 1] == "]":
                current.append("]")
                i += 1
            else:
                in_brackets = False
        if ch == "." and not in_brackets:
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
        i += 1
    parts.append("".join(current))
    return parts


@dataclass(frozen=True)
class TableNameTerm:
    """Schema + table name pair with SQL rendering helpers."""

    schema_name: str
    table_name: str

    def __post_init__(self) -> None:
        if not self.table_name or not self.table_name.strip():
            raise ValueError("Table name cannot be empty")
        if not self.schema_name or not self.schema_name.strip():
            raise ValueError("Schema name cannot be empty")

    @classmethod
    def parse(cls, name: str | TableNameTerm, default_schema: str = DEFAULT_SCHEMA) -> TableNameTerm:
        """Parse ``table``, ``schema.table`` or ``[schema].[table]``.

        Raises:
            ValueError: If the name is empty or has more than two parts.
        """
        if isinstance(name, TableNameTerm):
            return name
        if not name or not name.strip():
            raise ValueError("Table name cannot be empty")
        parts = [_strip_brackets(p) for p in _split_name(name.strip())]
        if len(parts) == 1:
            return cls(default_schema, parts[0])
        if len(parts) == 2:
            return cls(parts[0] or default_schema, parts[1])
        raise ValueError(
            f"Expected 'table' or 'schema.table', got {len(parts)} parts: {name}"
        )

    @property
    def fully_qualified_name(self) -> str:
        """e.g. ``[dbo].[Orders]``"""
        if self.is_temp_table:
            return quote_identifier(self.table_name)
        return f"{quote_identifier(self.schema_name)}.{quote_identifier(self.table_name)}"

    @property
    def unquoted_name(self) -> str:
        """e.g. ``dbo.Orders`` (for OBJECT_ID() literals and log messages)."""
        if self.is_temp_table:
            return self.table_name
        return f"{self.schema_name}.{self.table_name}"

    @property
    def cache_key(self) -> str:
        return self.unquoted_name.lower()

    @property
    def is_temp_table(self) -> bool:
        return self.table_name.startswith("#")

    @property
    def sanitized_table_name(self) -> str:
        """Table name reduced to [A-Za-z0-9_] for embedding in other names."""
        return "".join(c if c.isalnum() or c == "_" else "_" for c in self.table_name)

    def switch_schema(self, schema_name: str) -> TableNameTerm:
        return TableNameTerm(schema_name, self.table_name)

    def with_prefix_suffix(self, prefix: str = "", suffix: str = "") -> TableNameTerm:
        return TableNameTerm(self.schema_name, f"{prefix}{self.table_name}{suffix}")

    def make_unique(self, length: int = 10) -> TableNameTerm:
        return TableNameTerm(self.schema_name, f"{self.table_name}_{generate_id(length)}")

    def equals(self, other: str | TableNameTerm) -> bool:
        """Case-insensitive comparison, as SQL Server's default collation does."""
        return self.cache_key == TableNameTerm.parse(other).cache_key

    def __str__(self) -> str:
        return self.fully_qualified_name
