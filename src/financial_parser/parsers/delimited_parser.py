"""
Delimited (CSV-family) parser module.
"""

import csv
import io
import logging
from typing import Iterator, List, NamedTuple, Optional

from financial_parser.cancellation import CancellationToken, ParseCancelledError
from financial_parser.config_models import ParserConfig
from financial_parser.models import ParsedDataSet, ParsedField
from financial_parser.parsers.base_parser import DatasetBuilder, byte_size, error_dataset, make_field

logger = logging.getLogger(__name__)


class RawRow(NamedTuple):
    """One row read from delimited text.

    ``cells`` is None when the row could not be tokenized; ``error`` then holds
    the reason. ``consumed`` is the cumulative byte count read so far, in
    ``config.encoding`` (UTF-8 for text input).
    """
    cells: Optional[List[str]]
    error: Optional[str]
    raw: str
    line_number: int
    consumed: int


def reader_options(config: ParserConfig) -> dict:
    """csv.reader keyword arguments for a configuration."""
    options = {
        "delimiter": config.delimiter,
        "quotechar": config.quote_char,
        "doublequote": True,
        "strict": True,
    }
    if config.escape_char is not None and config.escape_char != config.quote_char:
        options["escapechar"] = config.escape_char
        options["doublequote"] = False
    return options


def iter_rows(text: str, config: ParserConfig) -> Iterator[RawRow]:
    """Yield every non-blank row of ``text`` with its raw source and byte offset.

    Tokenizing errors (e.g. malformed quoting) are yielded as rows with
    ``cells=None`` instead of being raised, so one bad row never aborts the batch.
    """
    lines = io.StringIO(text, newline="").readlines()
    offsets = [0]
    for line in lines:
        offsets.append(offsets[-1] + byte_size(line, config.encoding))

    reader = csv.reader(iter(lines), **reader_options(config))
    previous = 0
    while True:
        try:
            cells = next(reader)
            error = None
        except StopIteration:
            break
        except csv.Error as e:
            cells, error = None, str(e)

        current = reader.line_num
        raw = "".join(lines[previous:current]).rstrip("\r\n")
        first_line = previous + 1
        previous = current

        if error is None and all(not cell.strip() for cell in cells):
            logger.debug(f"Skipping blank row at line {first_line}")
            continue

        yield RawRow(cells, error, raw, first_line, offsets[current])

        if error is not None and current >= len(lines):
            break


def unique_names(names: List[str]) -> List[str]:
    """Suffix repeated names (``a``, ``a_1``, ``a_2``) so every column keeps its own field."""
    used = set()
    result = []
    for name in names:
        candidate, suffix = name, 0
        while candidate in used:
            suffix += 1
            candidate = f"{name}_{suffix}"
        used.add(candidate)
        result.append(candidate)
    return result


def header_names(cells: List[str], config: ParserConfig) -> List[str]:
    """Header names from a header row, or synthetic 'Column N' names."""
    if config.has_header:
        return unique_names([cell.strip() for cell in cells])
    return [f"Column {i + 1}" for i in range(len(cells))]


def row_fields(cells: Optional[List[str]], headers: List[str]) -> List[ParsedField]:
    """One inferred field per header; missing cells become null."""
    cells = cells or []
    return [
        make_field(name, cells[i] if i < len(cells) else None)
        for i, name in enumerate(headers)
    ]


def row_errors(row: RawRow, headers: List[str]) -> List[str]:
    if row.error is not None:
        return [f"Line {row.line_number}: {row.error}"]
    expected, parsed = len(headers), len(row.cells)
    if parsed < expected:
        return [f"Too few fields: expected {expected} fields but parsed {parsed}"]
    if parsed > expected:
        return [f"Too many fields: expected {expected} fields but parsed {parsed}"]
    return []


def parse_delimited(text: str, config: ParserConfig,
                    token: Optional[CancellationToken] = None) -> ParsedDataSet:
    """Parse fully materialized delimited text.

    When ``has_header`` is set the first non-blank row supplies the header names
    and is not emitted as a record. Row-level errors attach to their record.

    Args:
        text: Decoded input text
        config: Parser configuration
        token: Optional cancellation token polled at record boundaries

    Returns:
        ParsedDataSet with one data record per row
    """
    builder = DatasetBuilder(config, token)
    try:
        headers: Optional[List[str]] = None
        for row in iter_rows(text, config):
            if headers is None:
                headers = header_names(row.cells or [], config)
                builder.add_headers(headers)
                if config.has_header:
                    continue

            builder.add_record(
                row_fields(row.cells, headers),
                raw=row.raw,
                errors=row_errors(row, headers),
            )
    except ParseCancelledError:
        raise
    except Exception as e:
        return error_dataset(config, f"Delimited parse error: {e}", source=text,
                             parse_time=builder.elapsed_ms())

    dataset = builder.build(source=text)
    logger.debug(
        f"Parsed {dataset.metadata.total_records} delimited records "
        f"({dataset.metadata.invalid_records} invalid)"
    )
    return dataset
