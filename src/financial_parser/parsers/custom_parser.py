"""
Custom format parser module.

Resolution order: a registered parse routine (``parse_routine``), then a regular
expression (``custom_pattern``), then a structural fallback that recognizes
JSON lines, key/value lines or plain lines.
"""

import json
import logging
import re
from typing import List, Optional, Tuple

from pydantic import ValidationError

from financial_parser.cancellation import CancellationToken, ParseCancelledError
from financial_parser.config_models import ParserConfig
from financial_parser.models import ParsedDataSet, ParsedField, RecordKind, ValueType
from financial_parser.parsers.base_parser import (
    DatasetBuilder,
    error_dataset,
    make_field,
    text_field,
)
from financial_parser.routines import RoutineRegistry, default_registry

logger = logging.getLogger(__name__)

SAMPLE_LINES = 10

KEY_VALUE_SHAPES = (
    (re.compile(r"^[\w\s]+:\s*.+$"), ":"),
    (re.compile(r"^[\w\s]+=.+$"), "="),
)

# JavaScript/PCRE style named groups, excluding lookbehind (?<= and (?<!
_NAMED_GROUP = re.compile(r"\(\?<(?![=!])")


def compile_pattern(pattern: str) -> "re.Pattern":
    """Compile a multi-line pattern, accepting ``(?<name>...)`` named groups."""
    return re.compile(_NAMED_GROUP.sub("(?P<", pattern), re.MULTILINE)


def parse_with_routine(text: str, config: ParserConfig, registry: RoutineRegistry,
                       builder: DatasetBuilder) -> ParsedDataSet:
    try:
        routine = registry.get(config.parse_routine)
        result = routine(text, config)
        if isinstance(result, ParsedDataSet):
            dataset = result
        elif isinstance(result, dict):
            dataset = ParsedDataSet.model_validate({"config": config, **result})
        else:
            raise TypeError(f"routine returned {type(result).__name__}, expected a dataset")
    except ParseCancelledError:
        raise
    except ValidationError as e:
        return error_dataset(config, f"Custom parser error: invalid dataset returned ({e.error_count()} errors)",
                             source=text, parse_time=builder.elapsed_ms())
    except Exception as e:
        return error_dataset(config, f"Custom parser error: {e}", source=text,
                             parse_time=builder.elapsed_ms())

    metadata = dataset.metadata.model_copy(update={"parse_time": builder.elapsed_ms()})
    return dataset.model_copy(update={"metadata": metadata})


def parse_with_pattern(text: str, config: ParserConfig, builder: DatasetBuilder) -> ParsedDataSet:
    try:
        pattern = compile_pattern(config.custom_pattern)
    except re.error as e:
        return error_dataset(config, f"Pattern error: {e}", source=text,
                             parse_time=builder.elapsed_ms())

    for match in pattern.finditer(text):
        if not match.group(0):
            continue
        if pattern.groupindex:
            fields = [make_field(name, value) for name, value in match.groupdict().items()]
        else:
            fields = [make_field(f"Group {i + 1}", value) for i, value in enumerate(match.groups())]
        builder.add_record(fields, raw=match.group(0), kind=RecordKind.DATA, track_headers=True)

    return builder.build(source=text)


def detect_structure(lines: List[str]) -> Tuple[str, Optional[str]]:
    """Classify sampled lines as ('json-lines', None), ('key-value', sep) or ('plain', None)."""
    sample = [line for line in lines if line.strip()][:SAMPLE_LINES]
    if not sample:
        return "plain", None

    if all(_json_object(line) is not None for line in sample):
        return "json-lines", None

    for shape, separator in KEY_VALUE_SHAPES:
        if sum(1 for line in sample if shape.match(line)) > len(sample) * 0.5:
            return "key-value", separator

    return "plain", None


def _json_object(line: str) -> Optional[dict]:
    try:
        value = json.loads(line)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def key_value_pairs(line: str, separator: str) -> List[Tuple[str, str]]:
    """Split a line into key/value pairs.

    A key is an identifier (letters, digits, ``_`` or ``-``, not starting with a
    digit) directly followed by the separator, at the start of the line or after
    whitespace. Text before the first key is part of that key, so multi-word keys
    are only recognized in first position. Each value runs up to the next key.
    Lines without any key token are split once at the first separator.
    """
    key_token = re.compile(rf"(?:^|(?<=\s))([A-Za-z_][\w-]*)\s*{re.escape(separator)}")
    matches = list(key_token.finditer(line))
    if not matches:
        key, sep, value = line.partition(separator)
        return [(key.strip(), value.strip())] if sep and key.strip() else []

    pairs = []
    for i, match in enumerate(matches):
        key = match.group(1)
        if i == 0:
            key = (line[:match.start(1)] + key).strip()
        end = matches[i + 1].start() if i + 1 < len(matches) else len(line)
        pairs.append((key, line[match.end():end].strip()))
    return pairs


def classify_line(line: str, index: int, total: int) -> RecordKind:
    lowered = line.lower()
    if index == 0 or "header" in lowered or lowered.startswith("#"):
        return RecordKind.HEADER
    if index == total - 1 or "footer" in lowered or "trailer" in lowered:
        return RecordKind.FOOTER
    if "transaction" in lowered or "txn" in lowered:
        return RecordKind.TRANSACTION
    return RecordKind.DATA


def json_fields(obj: dict) -> List[ParsedField]:
    fields = []
    for key, value in obj.items():
        if isinstance(value, (dict, list)):
            serialized = json.dumps(value)
            fields.append(ParsedField(name=key, value=serialized, type=ValueType.STRING.value,
                                      original_value=serialized))
        else:
            field = make_field(key, value)
            original = value if isinstance(value, str) else json.dumps(value)
            fields.append(field.model_copy(update={"original_value": original}))
    return fields


def parse_generic(text: str, config: ParserConfig, builder: DatasetBuilder) -> ParsedDataSet:
    lines = re.split(r"\r?\n", text)
    structure, separator = detect_structure(lines)
    logger.debug(f"Custom input structure: {structure}")

    numbered = [(n, line) for n, line in enumerate(lines) if line.strip()]
    for position, (line_number, line) in enumerate(numbered):
        fields: List[ParsedField] = []
        if structure == "json-lines":
            obj = _json_object(line)
            fields = json_fields(obj) if obj is not None else []
        elif structure == "key-value":
            fields = [make_field(key, value) for key, value in key_value_pairs(line, separator)]
        else:
            fields = [text_field(f"Line {line_number + 1}", line)]

        if not fields:
            fields = [text_field("Raw", line)]

        builder.add_record(fields, raw=line, kind=classify_line(line, position, len(numbered)),
                           track_headers=True)

    return builder.build(source=text)


def parse_custom(text: str, config: ParserConfig,
                 token: Optional[CancellationToken] = None,
                 registry: Optional[RoutineRegistry] = None) -> ParsedDataSet:
    """Parse input of a custom or unrecognized format.

    Args:
        text: Decoded input text
        config: Parser configuration
        token: Optional cancellation token polled at record boundaries
        registry: Routine registry (default registry when None)

    Returns:
        ParsedDataSet; routine and pattern failures yield the error dataset
    """
    builder = DatasetBuilder(config, token)
    if config.parse_routine:
        return parse_with_routine(text, config, registry or default_registry, builder)

    try:
        if config.custom_pattern:
            return parse_with_pattern(text, config, builder)
        return parse_generic(text, config, builder)
    except ParseCancelledError:
        raise
    except Exception as e:
        return error_dataset(config, f"Custom parser error: {e}", source=text,
                             parse_time=builder.elapsed_ms())
