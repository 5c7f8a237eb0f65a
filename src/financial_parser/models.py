"""
Data models for parse results, progress events and encoding detection.

All models are immutable value objects that serialize to plain JSON-compatible
structures with ``model_dump(mode="json")``.
"""

import time
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from financial_parser.config_models import ParserConfig

FieldValue = Union[bool, int, float, str, None]


class RecordKind(str, Enum):
    """Role of a record within the parsed file."""
    HEADER = "header"
    TRANSACTION = "transaction"
    FOOTER = "footer"
    DATA = "data"


class ValueType(str, Enum):
    """Inferred type tag of a field value."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    NULL = "null"


class ProgressPhase(str, Enum):
    """Lifecycle phase of a parse request."""
    INITIALIZING = "initializing"
    DETECTING = "detecting"
    PARSING = "parsing"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


class ParserEngine(str, Enum):
    """Execution path that produced a dataset (observability only)."""
    SYNC = "sync"
    OFFLOAD = "offload"
    ACCELERATED = "accelerated"
    STREAMING = "streaming"


class EncodingType(str, Enum):
    """Text encodings recognised by the encoding detector."""
    UTF8 = "utf-8"
    UTF16 = "utf-16"
    UTF16LE = "utf-16le"
    UTF16BE = "utf-16be"
    ISO_8859_1 = "iso-8859-1"
    WINDOWS_1252 = "windows-1252"
    ASCII = "ascii"


class FieldPosition(BaseModel):
    """Character span of a fixed-column field."""
    model_config = ConfigDict(frozen=True)

    start: int
    end: int


class ParsedField(BaseModel):
    """A single named, typed value extracted from a record."""
    model_config = ConfigDict(frozen=True)

    name: str
    value: FieldValue = None
    type: str = ValueType.STRING.value
    original_value: str = ""
    position: Optional[FieldPosition] = None


class ParsedRecord(BaseModel):
    """An ordered group of fields parsed from one line, row or block."""
    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=0)
    fields: List[ParsedField] = Field(default_factory=list)
    raw: str = ""
    kind: RecordKind = RecordKind.DATA
    is_valid: bool = True
    errors: Optional[List[str]] = None

    @model_validator(mode="before")
    @classmethod
    def normalize_errors(cls, data):
        if isinstance(data, dict) and not data.get("errors"):
            data = {**data, "errors": None}
        return data

    @model_validator(mode="after")
    def validate_validity(self):
        if self.is_valid != (self.errors is None):
            raise ValueError("is_valid must be True exactly when the record has no errors")
        return self

    def get(self, name: str) -> Optional[ParsedField]:
        """Return the first field with the given name, if any."""
        for fld in self.fields:
            if fld.name == name:
                return fld
        return None


class ParseMetadata(BaseModel):
    """Aggregate counts and timings of one parse."""
    model_config = ConfigDict(frozen=True)

    total_records: int = Field(0, ge=0)
    valid_records: int = Field(0, ge=0)
    invalid_records: int = Field(0, ge=0)
    parse_time: float = Field(0.0, ge=0, description="Elapsed milliseconds")
    file_size: Optional[int] = None
    file_name: Optional[str] = None
    encoding: Optional[str] = None
    parser_engine: Optional[ParserEngine] = None

    @model_validator(mode="after")
    def validate_counts(self):
        if self.valid_records + self.invalid_records != self.total_records:
            raise ValueError("valid_records + invalid_records must equal total_records")
        return self


class ParsedDataSet(BaseModel):
    """The structured result of parsing one input."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"parsed-{int(time.time() * 1000)}")
    config: ParserConfig
    records: List[ParsedRecord] = Field(default_factory=list)
    headers: List[str] = Field(default_factory=list)
    metadata: ParseMetadata = Field(default_factory=ParseMetadata)

    @model_validator(mode="after")
    def validate_totals(self):
        if self.metadata.total_records != len(self.records):
            raise ValueError(
                f"metadata.total_records ({self.metadata.total_records}) "
                f"does not match record count ({len(self.records)})"
            )
        return self

    @property
    def is_failure(self) -> bool:
        """True for the single-record result produced by an engine-fatal error."""
        return (
            self.metadata.total_records == 1
            and self.metadata.invalid_records == 1
            and self.headers == ["Error"]
        )

    def to_dict(self) -> dict:
        """Plain JSON-compatible representation."""
        return self.model_dump(mode="json")


class ParseProgress(BaseModel):
    """Progress event of one parse request."""
    model_config = ConfigDict(frozen=True)

    phase: ProgressPhase
    bytes_processed: int = Field(0, ge=0)
    total_bytes: int = Field(0, ge=0)
    records_processed: int = Field(0, ge=0)
    percentage: int = Field(0, ge=0, le=100)
    eta_seconds: Optional[float] = None
    message: Optional[str] = None

    @classmethod
    def create(cls, phase: ProgressPhase, bytes_processed: int, total_bytes: int,
               records_processed: int = 0, message: Optional[str] = None,
               eta_seconds: Optional[float] = None,
               percentage: Optional[int] = None) -> "ParseProgress":
        """Build a progress event, deriving the percentage from the byte counts unless given."""
        if percentage is None:
            percentage = round(bytes_processed / total_bytes * 100) if total_bytes > 0 else 0
        return cls(
            phase=phase,
            bytes_processed=bytes_processed,
            total_bytes=total_bytes,
            records_processed=records_processed,
            percentage=max(0, min(100, percentage)),
            eta_seconds=eta_seconds,
            message=message,
        )


class EncodingInfo(BaseModel):
    """Result of encoding detection."""
    model_config = ConfigDict(frozen=True)

    encoding: EncodingType
    confidence: float = Field(..., ge=0, le=1)
    has_bom: bool = False
