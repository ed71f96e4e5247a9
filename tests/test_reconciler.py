"""
Result reconciliation: row-number correlation, uniqueness enforcement,
identity write strategies.
"""

from dataclasses import dataclass
from decimal import Decimal

import polars as pl
import pytest

from data_load.match_qualifiers import MatchQualifierExpression
from data_load.reconciler import (
    IdentitySetterKind,
    MergeResult,
    reconcile_dataframe,
    reconcile_records,
    resolve_identity_setter,
)
from data_load.record_mapping import RecordMapping, register_record_mapping, resolve_record_mapping
from errors import NonUniqueMatchError, ScriptExecutionError
from schema.table_definition import ColumnDefinition, TableDefinition
from schema.table_name import TableNameTerm

STRICT = MatchQualifierExpression.of("Code")
RELAXED = MatchQualifierExpression.of("Code", reject_non_unique_matches=False)


@dataclass
class ParentRecord:
    Id: int | None = None
    Name: str = ""
    Code: str = ""


@dataclass
class DecimalKeyed:
    Id: Decimal | None = None
    Code: str = ""


@dataclass
class AliasedRecord:
    key: int | None = None
    Code: str = ""


class SelfSetting:
    def __init__(self, code):
        self.code = code
        self.assigned = None

    def set_identity_id(self, value):
        self.assigned = value


def _records(count):
    return [ParentRecord(Code=f"C{i}") for i in range(count)]


def _reconcile(records, results, table_def, qualifier=STRICT):
    mapping = resolve_record_mapping(type(records[0]), records[0])
    return reconcile_records(records, results, table_def, qualifier, mapping)


def test_results_map_by_row_number_not_result_order(parent_def):
    records = _records(3)
    results = [MergeResult(2, 11), MergeResult(3, 12), MergeResult(1, 10)]
    returned = _reconcile(records, results, parent_def)
    assert returned is records
    assert [r.Id for r in records] == [10, 11, 12]
    assert [r.Code for r in records] == ["C0", "C1", "C2"]


def test_duplicate_row_number_rejected_without_partial_assignment(parent_def):
    records = _records(2)
    results = [MergeResult(1, 10), MergeResult(1, 11), MergeResult(2, 12)]
    with pytest.raises(NonUniqueMatchError, match=r"\[Code\]") as exc_info:
        _reconcile(records, results, parent_def)
    assert exc_info.value.row_number == 1
    assert [r.Id for r in records] == [None, None]


def test_relaxed_mode_keeps_last_identity(parent_def):
    records = _records(2)
    results = [MergeResult(1, 10), MergeResult(1, 11), MergeResult(2, 12)]
    _reconcile(records, results, parent_def, RELAXED)
    assert [r.Id for r in records] == [11, 12]


def test_row_number_outside_batch_is_an_error(parent_def):
    with pytest.raises(ScriptExecutionError):
        _reconcile(_records(1), [MergeResult(2, 10)], parent_def)


def test_capability_setter_is_preferred(parent_def):
    records = [SelfSetting("a"), SelfSetting("b")]
    reconcile_records(records, [MergeResult(1, 5), MergeResult(2, 6)], parent_def, STRICT)
    assert [r.assigned for r in records] == [5, 6]


def test_integer_attribute_is_range_checked():
    tiny = TableDefinition(
        TableNameTerm("dbo", "Tiny"),
        columns=(
            ColumnDefinition("Id", 1, "tinyint", is_identity=True),
            ColumnDefinition("Code", 2, "varchar", character_maximum_length=5),
        ),
    )
    records = _records(1)
    mapping = resolve_record_mapping(ParentRecord)
    setter = resolve_identity_setter(records[0], tiny.identity_column, mapping)
    assert setter.kind is IdentitySetterKind.INTEGER_ATTRIBUTE
    with pytest.raises(OverflowError):
        setter.apply(records[0], 300)


def test_non_integer_attribute_uses_declared_type(parent_def):
    records = [DecimalKeyed(Code="a")]
    _reconcile(records, [MergeResult(1, 42)], parent_def)
    assert records[0].Id == Decimal(42)
    assert isinstance(records[0].Id, Decimal)


def test_identity_attribute_from_mapping(parent_def):
    register_record_mapping(AliasedRecord, RecordMapping(identity_attribute="key"))
    records = [AliasedRecord(Code="a")]
    _reconcile(records, [MergeResult(1, 9)], parent_def)
    assert records[0].key == 9


def test_mapping_records_get_identity_item(parent_def):
    records = [{"id": None, "Code": "a"}, {"id": None, "Code": "b"}]
    _reconcile(records, [MergeResult(1, 3), MergeResult(2, 4)], parent_def)
    assert [r["id"] for r in records] == [3, 4]


def test_nothing_written_when_identity_not_retrieved(parent_def):
    records = _records(1)
    mapping = resolve_record_mapping(ParentRecord)
    reconcile_records(records, [MergeResult(1, 10)], parent_def, STRICT, mapping, identity_retrieved=False)
    assert records[0].Id is None


def test_dataframe_gets_new_identity_column(parent_def):
    df = pl.DataFrame({"Code": ["a", "b", "c"]})
    results = [MergeResult(3, 30), MergeResult(1, 10), MergeResult(2, 20)]
    out = reconcile_dataframe(df, results, parent_def, STRICT)
    assert out is not df
    assert "Id" not in df.columns
    assert out["Id"].to_list() == [10, 20, 30]
    assert out["Id"].dtype == pl.Int32
