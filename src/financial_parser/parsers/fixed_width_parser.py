"""
Fixed-column parser module.
"""

import logging
import re
from typing import List, Optional

from financial_parser.cancellation import CancellationToken, ParseCancelledError
from financial_parser.casting import coerce_fixed_value
from financial_parser.config_models import FieldDefinition, FieldType, ParserConfig
from financial_parser.models import FieldPosition, ParsedDataSet, ParsedField, RecordKind
from financial_parser.parsers.base_parser import DatasetBuilder, error_dataset

logger = logging.getLogger(__name__)

AUTO_DETECT_SAMPLE_LINES = 10

HEADER_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (r"^HDR", r"^HEADER", r"^H ")]
FOOTER_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (r"^TRL", r"^TRAILER", r"^T ", r"^EOF")]
TRANSACTION_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (r"^TXN", r"^DTL", r"^D ")]


def classify_line(line: str, index: int, total: int) -> RecordKind:
    """Record kind of a line: prefix patterns first, then first/last position."""
    if any(p.match(line) for p in HEADER_PATTERNS):
        return RecordKind.HEADER
    if any(p.match(line) for p in FOOTER_PATTERNS):
        return RecordKind.FOOTER
    if any(p.match(line) for p in TRANSACTION_PATTERNS):
        return RecordKind.TRANSACTION
    if index == 0:
        return RecordKind.HEADER
    if index == total - 1:
        return RecordKind.FOOTER
    return RecordKind.DATA


def auto_detect_fields(lines: List[str], gap_threshold: float = 0.7) -> List[FieldDefinition]:
    """Infer field boundaries from columns where most sampled lines hold a space.

    A column is in a gap once the share of sampled lines with a space there
    reaches ``gap_threshold``; the first column after a gap starts a new field.

    Args:
        lines: Non-blank input lines
        gap_threshold: Share of sampled lines that must have a space at a column

    Returns:
        String-typed field definitions named "Field N"
    """
    if not lines:
        return []

    sample = lines[:AUTO_DETECT_SAMPLE_LINES]
    max_length = max(len(line) for line in sample)
    space_counts = [0] * max_length
    for line in sample:
        for i, char in enumerate(line):
            if char == " ":
                space_counts[i] += 1

    threshold = len(sample) * gap_threshold
    boundaries = [0]
    in_gap = False
    for i, count in enumerate(space_counts):
        if count >= threshold and not in_gap:
            in_gap = True
        elif count < threshold and in_gap:
            boundaries.append(i)
            in_gap = False
    boundaries.append(max_length)

    fields = [
        FieldDefinition(name=f"Field {n + 1}", start=start, length=end - start, type=FieldType.STRING)
        for n, (start, end) in enumerate(zip(boundaries, boundaries[1:]))
        if end > start
    ]
    logger.debug(f"Auto-detected {len(fields)} fixed-column fields")
    return fields


def extract_fields(line: str, definitions: List[FieldDefinition]):
    """Slice, trim and coerce each defined field of a line.

    Returns:
        Tuple of (fields, errors)
    """
    fields: List[ParsedField] = []
    errors: List[str] = []
    for definition in definitions:
        raw = line[definition.start:definition.end]
        trimmed = raw.strip()
        if trimmed:
            value, _ = coerce_fixed_value(trimmed, definition.type)
        else:
            value = None
            if definition.required:
                errors.append(f'Required field "{definition.name}" is empty')
        fields.append(ParsedField(
            name=definition.name,
            value=value,
            type=definition.type.value,
            original_value=raw,
            position=FieldPosition(start=definition.start, end=definition.end),
        ))
    return fields, errors


def parse_fixed_width(text: str, config: ParserConfig,
                      token: Optional[CancellationToken] = None) -> ParsedDataSet:
    """Parse fixed-column text.

    Without field definitions in ``config`` the layout is auto-detected and the
    returned dataset carries an updated copy of the config holding it.

    Args:
        text: Decoded input text
        config: Parser configuration
        token: Optional cancellation token polled at record boundaries

    Returns:
        ParsedDataSet with one record per non-blank line
    """
    lines = [line for line in re.split(r"\r?\n", text) if line.strip()]
    definitions = list(config.field_definitions)
    if not definitions:
        definitions = auto_detect_fields(lines, config.gap_threshold)
        config = config.with_updates(field_definitions=definitions)

    builder = DatasetBuilder(config, token)
    builder.add_headers(d.name for d in definitions)
    try:
        for index, line in enumerate(lines):
            fields, errors = extract_fields(line, definitions)
            builder.add_record(fields, raw=line, kind=classify_line(line, index, len(lines)), errors=errors)
    except ParseCancelledError:
        raise
    except Exception as e:
        return error_dataset(config, f"Fixed-column parse error: {e}", source=text,
                             parse_time=builder.elapsed_ms())

    return builder.build(source=text)
