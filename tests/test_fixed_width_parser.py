"""Tests for the fixed-column parser."""

import pytest

from financial_parser.config_models import FieldType, ParserConfig
from financial_parser.models import RecordKind
from financial_parser.parsers.fixed_width_parser import (
    auto_detect_fields,
    classify_line,
    parse_fixed_width,
)


@pytest.fixture
def layout_config(sample_field_definitions):
    return ParserConfig(format_type="fixed_column", field_definitions=sample_field_definitions)


def test_fixed_width_basic(sample_fixed_width, layout_config):
    dataset = parse_fixed_width(sample_fixed_width, layout_config)

    assert dataset.headers == ["ID", "Name", "Amount", "Flag"]
    assert dataset.metadata.total_records == 3

    first = dataset.records[0]
    assert first.get("ID").value == "TXN001"
    assert first.get("Name").value == "John Smith"
    assert first.get("Amount").value == 150.25
    assert first.get("Amount").type == "number"
    assert first.get("Flag").value is True
    assert first.get("Name").position.start == 6
    assert first.get("Name").position.end == 20
    assert first.get("Name").original_value == "John Smith    "

    assert dataset.records[1].get("Flag").value is False


def test_required_field_missing(sample_fixed_width, layout_config):
    dataset = parse_fixed_width(sample_fixed_width, layout_config)
    record = dataset.records[2]

    assert record.is_valid is False
    assert any("ID" in error for error in record.errors)
    assert record.get("ID").value is None
    assert dataset.metadata.invalid_records == 1
    assert dataset.metadata.valid_records == 2


def test_number_coercion_strips_thousands_separators():
    config = ParserConfig(field_definitions=[
        {"name": "Amount", "start": 0, "length": 10, "type": "number"},
    ])
    dataset = parse_fixed_width("  1,234.50\n     abcde\n      1000\n", config)
    values = [r.get("Amount").value for r in dataset.records]
    assert values == [1234.5, None, 1000]


@pytest.mark.parametrize("token,expected", [("Y", True), ("1", True), ("true", True), ("N", False), ("0", False)])
def test_boolean_tokens(token, expected):
    config = ParserConfig(field_definitions=[
        {"name": "Code", "start": 0, "length": 4},
        {"name": "Flag", "start": 4, "length": 4, "type": "boolean"},
    ])
    dataset = parse_fixed_width(f"ABCD{token:<4}\n", config)
    assert dataset.records[0].get("Flag").value is expected


def test_date_fields_pass_through():
    config = ParserConfig(field_definitions=[
        {"name": "Booked", "start": 0, "length": 8, "type": "date", "format": "YYYYMMDD"},
    ])
    dataset = parse_fixed_width("20240115\n", config)
    field = dataset.records[0].get("Booked")
    assert field.value == "20240115"
    assert field.type == "date"


def test_record_kind_patterns_override_position():
    lines = [
        "TXN first line of the file",
        "HDR header in the middle",
        "plain data row here",
        "TRL trailer record",
        "DTL last line of the file",
    ]
    kinds = [classify_line(line, i, len(lines)) for i, line in enumerate(lines)]
    assert kinds == [
        RecordKind.TRANSACTION,
        RecordKind.HEADER,
        RecordKind.DATA,
        RecordKind.FOOTER,
        RecordKind.TRANSACTION,
    ]


def test_positional_kinds():
    assert classify_line("first", 0, 3) is RecordKind.HEADER
    assert classify_line("middle", 1, 3) is RecordKind.DATA
    assert classify_line("last", 2, 3) is RecordKind.FOOTER
    assert classify_line("trailer", 1, 3) is RecordKind.FOOTER  # "TRAILER" prefix, any case


def test_auto_detect_fields():
    lines = [
        "ACCT0001  JOHN      000150",
        "ACCT0002  JANE      000275",
        "ACCT0003  BOBBY     000099",
    ]
    fields = auto_detect_fields(lines)
    assert [(f.name, f.start, f.length) for f in fields] == [
        ("Field 1", 0, 10),
        ("Field 2", 10, 10),
        ("Field 3", 20, 6),
    ]
    assert all(f.type is FieldType.STRING for f in fields)


def test_auto_detect_returns_updated_config():
    text = "ACCT0001  JOHN      000150\nACCT0002  JANE      000275\nACCT0003  BOBBY     000099\n"
    config = ParserConfig(format_type="fixed_column")
    dataset = parse_fixed_width(text, config)

    assert config.field_definitions == []
    assert len(dataset.config.field_definitions) == 3
    assert dataset.headers == ["Field 1", "Field 2", "Field 3"]
    assert dataset.records[1].get("Field 2").value == "JANE"
    assert dataset.records[1].get("Field 3").value == "000275"


def test_gap_threshold_is_configurable():
    lines = [
        "AAAA BBBB  CC",
        "AAAA BBBB  CC",
        "AAAAXBBBB  CC",
    ]
    # Column 4 holds a space in two of three lines
    default = auto_detect_fields(lines)
    assert [(f.start, f.length) for f in default] == [(0, 11), (11, 2)]

    relaxed = auto_detect_fields(lines, gap_threshold=0.6)
    assert [(f.start, f.length) for f in relaxed] == [(0, 5), (5, 6), (11, 2)]


def test_auto_detect_empty():
    assert auto_detect_fields([]) == []


def test_blank_lines_ignored(layout_config):
    text = "TXN001John Smith    0000150.25Y\n\n   \nTXN002Jane Doe      0000275.50N\n"
    dataset = parse_fixed_width(text, layout_config)
    assert dataset.metadata.total_records == 2
