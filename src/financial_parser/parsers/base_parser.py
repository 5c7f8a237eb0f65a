"""
Shared building blocks for the parsing engines.

Every engine accumulates records through a ``DatasetBuilder``, which assigns
sequential indices, tracks the header universe in insertion order, derives the
metadata counts and polls the cancellation token at record boundaries.
"""

import logging
import time
from typing import Iterable, List, Optional

from financial_parser.cancellation import CancellationToken
from financial_parser.casting import infer_value
from financial_parser.config_models import ParserConfig
from financial_parser.models import (
    FieldPosition,
    ParsedDataSet,
    ParsedField,
    ParsedRecord,
    ParseMetadata,
    ParserEngine,
    RecordKind,
    ValueType,
)

logger = logging.getLogger(__name__)

ERROR_FIELD = "Error"

# Records between cancellation checks in the non-streaming engines
CHECKPOINT_INTERVAL = 1000


def make_field(name: str, raw, position: Optional[FieldPosition] = None) -> ParsedField:
    """Build a field whose value and type tag come from the shared inference rules."""
    value, value_type = infer_value(raw)
    original = "" if raw is None else str(raw)
    return ParsedField(
        name=name,
        value=value,
        type=value_type,
        original_value=original,
        position=position,
    )


def text_field(name: str, text: Optional[str]) -> ParsedField:
    """Build a field that keeps its text verbatim (no inference)."""
    if text is None:
        return ParsedField(name=name, value=None, type=ValueType.NULL.value)
    return ParsedField(name=name, value=text, type=ValueType.STRING.value, original_value=text)


# Codecs that would prepend a byte order mark to every encoded piece
_BOMLESS_CODECS = {"utf-16": "utf-16-le", "utf-8-sig": "utf-8"}


def byte_size(text: str, encoding: Optional[str] = None) -> int:
    """Length of ``text`` in bytes of ``encoding`` (UTF-8 when None or unknown).

    No byte order mark is counted, so the sizes of consecutive pieces add up.
    """
    codec = _BOMLESS_CODECS.get(encoding, encoding) or "utf-8"
    try:
        return len(text.encode(codec, errors="replace"))
    except LookupError:
        return len(text.encode("utf-8"))


class DatasetBuilder:
    """Accumulates records and headers for one parse.

    Args:
        config: Configuration the dataset is produced with
        token: Optional cancellation token polled every CHECKPOINT_INTERVAL records
    """

    def __init__(self, config: ParserConfig, token: Optional[CancellationToken] = None):
        self.config = config
        self.token = token
        self.records: List[ParsedRecord] = []
        self._headers = {}
        self._started = time.perf_counter()

    @property
    def headers(self) -> List[str]:
        return list(self._headers)

    def add_header(self, name: str) -> None:
        self._headers.setdefault(name, None)

    def add_headers(self, names: Iterable[str]) -> None:
        for name in names:
            self.add_header(name)

    def add_record(self, fields: List[ParsedField], raw: str = "",
                   kind: RecordKind = RecordKind.DATA,
                   errors: Optional[List[str]] = None,
                   track_headers: bool = False) -> ParsedRecord:
        """Append a record with the next sequential index.

        Args:
            fields: Ordered fields of the record
            raw: Source line or block
            kind: Record role
            errors: Validation errors (a non-empty list marks the record invalid)
            track_headers: Add the field names to the header universe

        Returns:
            The appended record
        """
        if self.token is not None and len(self.records) % CHECKPOINT_INTERVAL == 0:
            self.token.checkpoint()

        record = ParsedRecord(
            index=len(self.records),
            fields=fields,
            raw=raw,
            kind=kind,
            is_valid=not errors,
            errors=errors or None,
        )
        self.records.append(record)
        if track_headers:
            self.add_headers(f.name for f in fields)
        return record

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self._started) * 1000

    def build(self, source: Optional[str] = None, config: Optional[ParserConfig] = None,
              engine: Optional[ParserEngine] = None) -> ParsedDataSet:
        """Finish the dataset, deriving metadata counts from record validity."""
        valid = sum(1 for r in self.records if r.is_valid)
        metadata = ParseMetadata(
            total_records=len(self.records),
            valid_records=valid,
            invalid_records=len(self.records) - valid,
            parse_time=self.elapsed_ms(),
            file_size=byte_size(source) if source is not None else None,
            encoding=(config or self.config).encoding,
            parser_engine=engine,
        )
        return ParsedDataSet(
            config=config or self.config,
            records=self.records,
            headers=self.headers,
            metadata=metadata,
        )


def error_dataset(config: ParserConfig, message: str, source: Optional[str] = None,
                  engine: Optional[ParserEngine] = None,
                  parse_time: float = 0.0) -> ParsedDataSet:
    """Single invalid record carrying an engine-fatal error message.

    Callers detect total failure by ``total_records == invalid_records == 1`` with
    headers ``["Error"]``.
    """
    logger.error(message)
    record = ParsedRecord(
        index=0,
        fields=[text_field(ERROR_FIELD, message)],
        raw="",
        kind=RecordKind.DATA,
        is_valid=False,
        errors=[message],
    )
    metadata = ParseMetadata(
        total_records=1,
        valid_records=0,
        invalid_records=1,
        parse_time=parse_time,
        file_size=byte_size(source) if source is not None else None,
        encoding=config.encoding,
        parser_engine=engine,
    )
    return ParsedDataSet(config=config, records=[record], headers=[ERROR_FIELD], metadata=metadata)
