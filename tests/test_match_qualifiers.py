"""
Match-qualifier resolution: explicit fields, mapping defaults, primary key fallback.
"""

from dataclasses import dataclass

import pytest

from data_load.match_qualifiers import MatchQualifierExpression, resolve_match_qualifiers
from data_load.record_mapping import RecordMapping, register_record_mapping, resolve_record_mapping
from errors import InvalidMatchQualifierError


@dataclass
class ParentRecord:
    Id: int | None = None
    Name: str = ""
    Code: str = ""


@dataclass
class RenamedParent:
    parent_id: int | None = None
    display_name: str = ""
    short_code: str = ""


def test_expression_requires_fields():
    with pytest.raises(ValueError):
        MatchQualifierExpression(())


def test_expression_strips_brackets_and_renders():
    expr = MatchQualifierExpression.of("[Code]", "Name")
    assert expr.fields == ("Code", "Name")
    assert str(expr) == "[Code] AND [Name]"


def test_explicit_fields_resolved_case_insensitively(parent_def):
    result = resolve_match_qualifiers(parent_def, ["code"])
    assert result.fields == ("Code",)
    assert result.reject_non_unique_matches is True


def test_explicit_expression_keeps_its_flag(parent_def):
    requested = MatchQualifierExpression.of("Name", reject_non_unique_matches=False)
    result = resolve_match_qualifiers(parent_def, requested)
    assert result.fields == ("Name",)
    assert result.reject_non_unique_matches is False


def test_unknown_fields_are_dropped(parent_def):
    result = resolve_match_qualifiers(parent_def, ["Nope", "Code"])
    assert result.fields == ("Code",)


def test_all_unknown_fields_raise(parent_def):
    with pytest.raises(InvalidMatchQualifierError) as exc_info:
        resolve_match_qualifiers(parent_def, ["Nope", "Missing"])
    assert exc_info.value.requested_fields == ["Nope", "Missing"]
    assert "primary key" not in str(exc_info.value)


def test_blank_field_list_raises_instead_of_falling_back(parent_def):
    with pytest.raises(InvalidMatchQualifierError, match="none of the requested fields") as exc_info:
        resolve_match_qualifiers(parent_def, ["", " "])
    assert exc_info.value.requested_fields == ["", " "]


def test_empty_field_list_raises(parent_def):
    with pytest.raises(InvalidMatchQualifierError, match="requested field list is empty"):
        resolve_match_qualifiers(parent_def, [])


def test_falls_back_to_primary_key(parent_def):
    result = resolve_match_qualifiers(parent_def)
    assert result.fields == ("Id",)
    assert result.reject_non_unique_matches is True


def test_no_primary_key_and_no_request_raises(plain_def):
    with pytest.raises(InvalidMatchQualifierError, match="no primary key to fall back on"):
        resolve_match_qualifiers(plain_def)


def test_mapping_default_qualifier_is_used(parent_def):
    register_record_mapping(
        ParentRecord,
        RecordMapping(match_qualifier_fields=("Code",), reject_non_unique_matches=False),
    )
    mapping = resolve_record_mapping(ParentRecord)
    result = resolve_match_qualifiers(parent_def, None, mapping)
    assert result.fields == ("Code",)
    assert result.reject_non_unique_matches is False


def test_attribute_names_resolve_through_mapping(parent_def):
    register_record_mapping(
        RenamedParent,
        RecordMapping(columns={"parent_id": "Id", "display_name": "Name", "short_code": "Code"}),
    )
    mapping = resolve_record_mapping(RenamedParent)
    result = resolve_match_qualifiers(parent_def, ["short_code"], mapping)
    assert result.fields == ("Code",)
