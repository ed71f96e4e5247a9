"""Immutable table schema model: columns, identity, keys, constraints, indexes.

Built by schema.catalog from the SQL Server catalog views and consumed by the
merge script generator and the clone script builder. Instances never change
after loading; a reload produces a new instance.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from schema.table_name import TableNameTerm

_MAX_NAME_LENGTH = 128


class TableSchemaDetailLevel(Enum):
    """BASIC covers columns, identity and primary key (enough for a merge).

    EXTENDED adds foreign keys in both directions, default/check constraints,
    indexes and the full-text index (needed to clone a table).
    """

    BASIC = "basic"
    EXTENDED = "extended"


# SQL Server integer identity types and the range they can hold.
INTEGER_TYPE_RANGES: dict[str, tuple[int, int]] = {
    "tinyint": (0, 255),
    "smallint": (-(2 ** 15), 2 ** 15 - 1),
    "int": (-(2 ** 31), 2 ** 31 - 1),
    "bigint": (-(2 ** 63), 2 ** 63 - 1),
}


def map_name_to_target(name: str, source: TableNameTerm, target: TableNameTerm) -> str:
    """Derive a constraint/index name for ``target`` from one defined on ``source``.

    The source table name segment is replaced by the target table name. Names
    that do not embed the table name get the target name appended so the
    clone never collides with the original inside one schema.
    """
    source_table = source.table_name
    lowered = name.lower()
    idx = lowered.find(source_table.lower())
    if idx >= 0:
        mapped = name[:idx] + target.table_name + name[idx + len(source_table):]
    else:
        mapped = f"{name}_{target.sanitized_table_name}"
    return mapped[:_MAX_NAME_LENGTH]


@dataclass(frozen=True)
class ColumnDefinition:
    """Column metadata from INFORMATION_SCHEMA.COLUMNS plus identity flag."""

    column_name: str
    ordinal_position: int
    data_type: str
    character_maximum_length: int | None = None
    numeric_precision: int | None = None
    numeric_scale: int | None = None
    is_nullable: bool = True
    is_identity: bool = False

    @property
    def full_type(self) -> str:
        """Return the full SQL Server type string (e.g. NVARCHAR(255), BIGINT)."""
        upper = self.data_type.upper()
        if upper in ("NVARCHAR", "VARCHAR", "NCHAR", "CHAR", "VARBINARY", "BINARY"):
            if self.character_maximum_length == -1 or self.character_maximum_length is None:
                return f"{upper}(MAX)"
            return f"{upper}({self.character_maximum_length})"
        if upper in ("DECIMAL", "NUMERIC"):
            p = self.numeric_precision or 18
            s = self.numeric_scale or 0
            return f"{upper}({p},{s})"
        return upper

    @property
    def is_integer_type(self) -> bool:
        return self.data_type.lower() in INTEGER_TYPE_RANGES


@dataclass(frozen=True)
class KeyColumn:
    column_name: str
    ordinal_position: int


def _ordered_names(columns: tuple[KeyColumn, ...]) -> list[str]:
    return [c.column_name for c in sorted(columns, key=lambda c: c.ordinal_position)]


@dataclass(frozen=True)
class PrimaryKeyConstraint:
    constraint_name: str
    key_columns: tuple[KeyColumn, ...]

    @property
    def column_names(self) -> list[str]:
        return _ordered_names(self.key_columns)


@dataclass(frozen=True)
class ForeignKeyConstraint:
    """A foreign key from ``source_table`` to ``reference_table``.

    Used both for keys declared on a table and for keys on other tables that
    reference it (``TableDefinition.referencing_foreign_keys``).
    """

    constraint_name: str
    source_table: TableNameTerm
    key_columns: tuple[KeyColumn, ...]
    reference_table: TableNameTerm
    reference_columns: tuple[KeyColumn, ...]
    update_rule: str = "NO ACTION"
    delete_rule: str = "NO ACTION"

    def __post_init__(self) -> None:
        if len(self.key_columns) != len(self.reference_columns):
            raise ValueError(
                f"Foreign key {self.constraint_name} has {len(self.key_columns)} key "
                f"column(s) but {len(self.reference_columns)} reference column(s)"
            )

    @property
    def column_names(self) -> list[str]:
        return _ordered_names(self.key_columns)

    @property
    def reference_column_names(self) -> list[str]:
        return _ordered_names(self.reference_columns)


@dataclass(frozen=True)
class ColumnDefaultConstraint:
    constraint_name: str
    column_name: str
    definition: str


@dataclass(frozen=True)
class ColumnCheckConstraint:
    constraint_name: str
    check_clause: str


@dataclass(frozen=True)
class TableIndex:
    """Non-clustered index or unique constraint (primary key excluded)."""

    index_name: str
    key_columns: tuple[KeyColumn, ...]
    is_unique: bool = False
    is_unique_constraint: bool = False
    include_columns: tuple[KeyColumn, ...] = ()
    filter_definition: str | None = None

    @property
    def column_names(self) -> list[str]:
        return _ordered_names(self.key_columns)

    @property
    def include_column_names(self) -> list[str]:
        return _ordered_names(self.include_columns)


@dataclass(frozen=True)
class FullTextColumn:
    column_name: str
    language_id: int | None = None


@dataclass(frozen=True)
class FullTextIndexDefinition:
    catalog_name: str
    unique_index_name: str
    columns: tuple[FullTextColumn, ...]
    change_tracking: str = "AUTO"


@dataclass(frozen=True)
class TableDefinition:
    """Immutable description of one table.

    At most one column may be an identity column.
    """

    table_name_term: TableNameTerm
    columns: tuple[ColumnDefinition, ...]
    primary_key: PrimaryKeyConstraint | None = None
    foreign_keys: tuple[ForeignKeyConstraint, ...] = ()
    referencing_foreign_keys: tuple[ForeignKeyConstraint, ...] = ()
    default_constraints: tuple[ColumnDefaultConstraint, ...] = ()
    check_constraints: tuple[ColumnCheckConstraint, ...] = ()
    indexes: tuple[TableIndex, ...] = ()
    full_text_index: FullTextIndexDefinition | None = None
    detail_level: TableSchemaDetailLevel = TableSchemaDetailLevel.BASIC
    _columns_by_name: dict[str, ColumnDefinition] = field(
        default=None, init=False, repr=False, compare=False,
    )

    def __post_init__(self) -> None:
        identities = [c for c in self.columns if c.is_identity]
        if len(identities) > 1:
            raise ValueError(
                f"Table {self.fully_qualified_name} reports {len(identities)} identity "
                "columns; at most one is allowed"
            )
        object.__setattr__(
            self, "_columns_by_name", {c.column_name.lower(): c for c in self.columns},
        )

    @property
    def schema_name(self) -> str:
        return self.table_name_term.schema_name

    @property
    def table_name(self) -> str:
        return self.table_name_term.table_name

    @property
    def fully_qualified_name(self) -> str:
        return self.table_name_term.fully_qualified_name

    @property
    def identity_column(self) -> ColumnDefinition | None:
        for column in self.columns:
            if column.is_identity:
                return column
        return None

    def column_names(self, include_identity: bool = True) -> list[str]:
        ordered = sorted(self.columns, key=lambda c: c.ordinal_position)
        return [
            c.column_name for c in ordered
            if include_identity or not c.is_identity
        ]

    def find_column(self, name: str) -> ColumnDefinition | None:
        """Case-insensitive column lookup."""
        return self._columns_by_name.get(name.lower())

    @property
    def has_foreign_key_relationships(self) -> bool:
        return bool(self.foreign_keys or self.referencing_foreign_keys)
