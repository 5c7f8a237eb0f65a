"""
Pydantic models for strongly-typed parser configuration.

ParserConfig instances are frozen: engines never mutate the caller's config and
return an updated copy (``model_copy``) when they derive something from the input.
"""

import json
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class FormatType(str, Enum):
    """Supported input format types."""
    DELIMITED = "delimited"
    FIXED_COLUMN = "fixed_column"
    FIN = "fin"
    ISO20022 = "iso20022"
    CUSTOM = "custom"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            key = value.strip().lower()
            key = _FORMAT_ALIASES.get(key, key)
            for member in cls:
                if member.value == key:
                    return member
        return None


_FORMAT_ALIASES = {
    "csv": "delimited",
    "tsv": "delimited",
    "fixed-width": "fixed_column",
    "fixed_width": "fixed_column",
    "fixed-column": "fixed_column",
    "swift": "fin",
    "mt": "fin",
    "xml": "iso20022",
}


class FieldType(str, Enum):
    """Semantic types of fixed-column field definitions."""
    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"


class FieldDefinition(BaseModel):
    """Fixed-column field definition."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Field name in output")
    start: int = Field(..., ge=0, description="Start offset (0-indexed)")
    length: int = Field(..., gt=0, description="Field width in characters")
    type: FieldType = Field(FieldType.STRING, description="Semantic field type")
    required: bool = Field(False, description="Record is invalid when the value is blank")
    format: Optional[str] = Field(None, description="Display format hint (e.g. YYYYMMDD)")
    description: Optional[str] = None

    @property
    def end(self) -> int:
        return self.start + self.length


class DetectionThresholds(BaseModel):
    """Tunable constants of the fixed-column format heuristic."""
    model_config = ConfigDict(frozen=True)

    length_tolerance: float = Field(5, gt=0, description="Max distance of a line length from the mean")
    min_mean_length: float = Field(20, ge=0, description="Mean line length must exceed this")
    min_lines: int = Field(3, ge=1, description="Minimum number of non-empty lines")
    sample_lines: int = Field(10, ge=1, description="Number of leading lines sampled")


class ParserConfig(BaseModel):
    """Per-parse configuration. Passed by value into every engine."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    format_type: Optional[FormatType] = Field(
        None,
        alias="type",
        description="Input format (None = auto-detect)"
    )
    name: str = Field("Untitled", description="Display name of the configuration")
    description: Optional[str] = None

    # Delimited options
    delimiter: str = Field(",", description="Field delimiter character")
    quote_char: str = Field('"', description="Quote character")
    escape_char: Optional[str] = Field(None, description="Escape character (disables doubled quotes)")
    has_header: bool = Field(True, description="First row holds header names")

    # Fixed-column options
    field_definitions: List[FieldDefinition] = Field(
        default_factory=list,
        description="Field layout; empty list triggers auto-detection"
    )
    gap_threshold: float = Field(
        0.7,
        gt=0,
        le=1,
        description="Share of sampled lines with a space for a column to count as a gap"
    )

    # FIN options
    message_type: Optional[str] = Field(None, description="Expected MT message type, e.g. '103'")

    # Custom options
    custom_pattern: Optional[str] = Field(None, description="Regular expression, one match per record")
    parse_routine: Optional[str] = Field(None, description="Name of a registered parse routine")

    # Streaming / decoding
    chunk_size: int = Field(64 * 1024, gt=0, description="Streaming chunk size in bytes")
    encoding: Optional[str] = Field(None, description="Encoding hint or detected encoding")

    @field_validator("delimiter", "quote_char")
    @classmethod
    def validate_single_char(cls, value: str) -> str:
        if len(value) != 1:
            raise ValueError(f"must be a single character, got {value!r}")
        return value

    @field_validator("escape_char")
    @classmethod
    def validate_escape_char(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and len(value) != 1:
            raise ValueError(f"must be a single character, got {value!r}")
        return value

    @field_validator("field_definitions")
    @classmethod
    def validate_unique_field_names(cls, fields):
        """Ensure field names are unique within the layout."""
        names = [f.name for f in fields]
        duplicates = [name for name in set(names) if names.count(name) > 1]
        if duplicates:
            raise ValueError(f"Duplicate field names: {', '.join(sorted(duplicates))}")
        return fields

    @model_validator(mode="after")
    def validate_quote_differs(self):
        if self.quote_char == self.delimiter:
            raise ValueError("quote_char and delimiter must differ")
        return self

    def with_updates(self, **changes: Any) -> "ParserConfig":
        """Return a validated copy with the given fields replaced.

        Fields never set explicitly stay unset in the copy, so defaults that are
        auto-detected (such as the delimiter) remain detectable.
        """
        data = self.model_dump(exclude_unset=True)
        data.update(changes)
        return type(self).model_validate(data)

    @classmethod
    def from_dict(cls, config_dict: dict) -> "ParserConfig":
        """
        Create ParserConfig from a dictionary with validation.

        Raises:
            ValidationError: If configuration is invalid
        """
        return cls.model_validate(config_dict)

    @classmethod
    def from_json_file(cls, config_path: str) -> "ParserConfig":
        """
        Load and validate configuration from a JSON file.

        Raises:
            ValidationError: If configuration is invalid
            FileNotFoundError: If file doesn't exist
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(path, encoding="utf-8") as f:
            config_dict = json.load(f)

        return cls.from_dict(config_dict)


class ParseOptions(BaseModel):
    """Per-request execution switches."""
    model_config = ConfigDict(frozen=True)

    use_offload: bool = Field(True, description="Delegate to the offload unit when it is ready")
    use_accelerated: bool = Field(True, description="Prefer the accelerated engine inside the offload unit")
    streaming: bool = Field(True, description="Allow the streaming engine for large delimited input")


class ServiceSettings(BaseModel):
    """Execution service settings."""
    model_config = ConfigDict(frozen=True)

    handshake_timeout: float = Field(5.0, gt=0, description="Seconds to wait for the worker 'ready' reply")
    streaming_threshold: int = Field(1024 * 1024, ge=0, description="Input size in bytes above which streaming is used")
    poll_interval: float = Field(0.2, gt=0, description="Seconds between worker liveness checks")
    shutdown_timeout: float = Field(2.0, gt=0, description="Seconds to wait for the worker to exit")

    @classmethod
    def from_dict(cls, settings: Dict[str, Any]) -> "ServiceSettings":
        return cls.model_validate(settings)
