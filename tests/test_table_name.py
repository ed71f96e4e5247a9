"""
TableNameTerm: parsing, quoting, schema switching and unique suffixes.
"""

import re

import pytest

from schema.table_name import TableNameTerm, generate_id


def test_parse_plain_name_uses_default_schema():
    term = TableNameTerm.parse("Orders")
    assert term.schema_name == "dbo"
    assert term.table_name == "Orders"
    assert term.fully_qualified_name == "[dbo].[Orders]"


def test_parse_bracketed_name_with_dot_inside_brackets():
    term = TableNameTerm.parse("[sales.eu].[Order]]s]")
    assert term.schema_name == "sales.eu"
    assert term.table_name == "Order]s"
    assert term.fully_qualified_name == "[sales.eu].[Order]]s]"


def test_parse_rejects_three_part_names():
    with pytest.raises(ValueError):
        TableNameTerm.parse("db.dbo.Orders")


def test_parse_rejects_empty_name():
    with pytest.raises(ValueError):
        TableNameTerm.parse("   ")


def test_temp_table_is_quoted_without_schema():
    term = TableNameTerm.parse("#staging")
    assert term.is_temp_table
    assert term.fully_qualified_name == "[#staging]"
    assert term.unquoted_name == "#staging"


def test_equals_is_case_insensitive():
    assert TableNameTerm.parse("DBO.orders").equals("[dbo].[Orders]")
    assert not TableNameTerm.parse("dbo.Orders").equals("sales.Orders")


def test_switch_schema_and_prefix_suffix():
    term = TableNameTerm.parse("dbo.Orders").switch_schema("stage").with_prefix_suffix("tmp_", "_v2")
    assert term.fully_qualified_name == "[stage].[tmp_Orders_v2]"


def test_make_unique_appends_ten_character_id():
    term = TableNameTerm.parse("dbo.Orders").make_unique()
    assert re.fullmatch(r"Orders_[A-Z0-9]{10}", term.table_name)
    assert term.schema_name == "dbo"


def test_generate_id_length_and_alphabet():
    value = generate_id(8)
    assert len(value) == 8
    assert re.fullmatch(r"[A-Z0-9]+", value)


def test_sanitized_table_name_replaces_specials():
    assert TableNameTerm("dbo", "Order Lines-2024").sanitized_table_name == "Order_Lines_2024"
