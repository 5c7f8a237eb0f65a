"""Tests for pydantic configuration models."""

import json

import pytest
from pydantic import ValidationError

from financial_parser.config_models import (
    DetectionThresholds,
    FieldDefinition,
    FieldType,
    FormatType,
    ParseOptions,
    ParserConfig,
    ServiceSettings,
)


def test_parser_config_defaults():
    """Defaults match a plain comma-separated file with a header row."""
    config = ParserConfig()
    assert config.format_type is None
    assert config.delimiter == ","
    assert config.quote_char == '"'
    assert config.escape_char is None
    assert config.has_header is True
    assert config.field_definitions == []
    assert config.gap_threshold == 0.7
    assert config.chunk_size == 64 * 1024


def test_format_type_accepts_alias_key():
    config = ParserConfig.from_dict({"type": "fin", "message_type": "103"})
    assert config.format_type is FormatType.FIN
    assert config.message_type == "103"


@pytest.mark.parametrize("raw,expected", [
    ("csv", FormatType.DELIMITED),
    ("CSV", FormatType.DELIMITED),
    ("fixed-width", FormatType.FIXED_COLUMN),
    ("fixed_width", FormatType.FIXED_COLUMN),
    ("iso20022", FormatType.ISO20022),
    ("swift", FormatType.FIN),
])
def test_format_type_legacy_names(raw, expected):
    assert FormatType(raw) is expected


def test_unknown_format_type_rejected():
    with pytest.raises(ValidationError):
        ParserConfig(format_type="spreadsheet")


def test_delimiter_must_be_single_character():
    with pytest.raises(ValidationError) as exc_info:
        ParserConfig(delimiter=";;")
    assert "single character" in str(exc_info.value)


def test_quote_and_delimiter_must_differ():
    with pytest.raises(ValidationError):
        ParserConfig(delimiter="'", quote_char="'")


def test_chunk_size_must_be_positive():
    with pytest.raises(ValidationError):
        ParserConfig(chunk_size=0)


@pytest.mark.parametrize("threshold", [0, 1.5])
def test_gap_threshold_bounds(threshold):
    with pytest.raises(ValidationError):
        ParserConfig(gap_threshold=threshold)


def test_duplicate_field_names_rejected():
    with pytest.raises(ValidationError) as exc_info:
        ParserConfig(field_definitions=[
            {"name": "ID", "start": 0, "length": 4},
            {"name": "ID", "start": 4, "length": 4},
        ])
    assert "Duplicate field names" in str(exc_info.value)


def test_field_definition_end_and_type():
    definition = FieldDefinition(name="Amount", start=10, length=8, type="number")
    assert definition.end == 18
    assert definition.type is FieldType.NUMBER
    assert definition.required is False


def test_field_definition_requires_positive_length():
    with pytest.raises(ValidationError):
        FieldDefinition(name="Empty", start=0, length=0)


def test_config_is_frozen():
    config = ParserConfig()
    with pytest.raises(ValidationError):
        config.delimiter = ";"


def test_with_updates_returns_validated_copy():
    config = ParserConfig(format_type="delimited")
    updated = config.with_updates(delimiter="|", encoding="utf-8")

    assert updated.delimiter == "|"
    assert updated.encoding == "utf-8"
    assert updated.format_type is FormatType.DELIMITED
    # Original untouched
    assert config.delimiter == ","
    assert config.encoding is None

    with pytest.raises(ValidationError):
        config.with_updates(delimiter="||")


def test_from_json_file(tmp_path):
    config_file = tmp_path / "layout.json"
    config_file.write_text(json.dumps({
        "format_type": "fixed_column",
        "name": "Bank layout",
        "field_definitions": [
            {"name": "Account", "start": 0, "length": 10, "required": True},
            {"name": "Amount", "start": 10, "length": 12, "type": "number"},
        ],
    }))

    config = ParserConfig.from_json_file(str(config_file))
    assert config.format_type is FormatType.FIXED_COLUMN
    assert config.name == "Bank layout"
    assert [f.name for f in config.field_definitions] == ["Account", "Amount"]
    assert config.field_definitions[0].required is True


def test_from_json_file_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        ParserConfig.from_json_file(str(tmp_path / "missing.json"))


def test_json_round_trip_keeps_format():
    config = ParserConfig(format_type="iso20022", name="Statements")
    restored = ParserConfig.model_validate(config.model_dump(mode="json"))
    assert restored == config


def test_detection_thresholds_defaults():
    thresholds = DetectionThresholds()
    assert thresholds.length_tolerance == 5
    assert thresholds.min_mean_length == 20
    assert thresholds.min_lines == 3
    assert thresholds.sample_lines == 10


def test_parse_options_defaults():
    options = ParseOptions()
    assert options.use_offload and options.use_accelerated and options.streaming


def test_service_settings():
    settings = ServiceSettings.from_dict({"handshake_timeout": 1.5, "streaming_threshold": 2048})
    assert settings.handshake_timeout == 1.5
    assert settings.streaming_threshold == 2048
    assert settings.poll_interval == 0.2

    with pytest.raises(ValidationError):
        ServiceSettings(handshake_timeout=0)
