"""
Financial Parser package.

Parses delimited, fixed-column, SWIFT FIN, ISO 20022 and custom financial file
formats into a uniform record/field dataset.
"""

__version__ = "1.0.0"

from financial_parser.async_orchestrator import OffloadContext, ParseController, ParserService
from financial_parser.cancellation import CancellationToken, ParseCancelledError
from financial_parser.config_models import (
    DetectionThresholds,
    FieldDefinition,
    FieldType,
    FormatType,
    ParseOptions,
    ParserConfig,
    ServiceSettings,
)
from financial_parser.detection import detect_format, suggest_delimiter
from financial_parser.encoding import decode, detect_encoding, encoding_display_name
from financial_parser.exceptions import ParserError, RoutineError
from financial_parser.models import (
    EncodingInfo,
    EncodingType,
    ParsedDataSet,
    ParsedField,
    ParsedRecord,
    ParseMetadata,
    ParseProgress,
    ParserEngine,
    ProgressPhase,
    RecordKind,
)
from financial_parser.orchestrator import parse_input, parse_path
from financial_parser.parsers import parse
from financial_parser.routines import RoutineRegistry, register_routine

__all__ = [
    "ParserConfig",
    "FieldDefinition",
    "FieldType",
    "FormatType",
    "DetectionThresholds",
    "ParseOptions",
    "ServiceSettings",
    "ParsedDataSet",
    "ParsedRecord",
    "ParsedField",
    "ParseMetadata",
    "ParseProgress",
    "ProgressPhase",
    "RecordKind",
    "ParserEngine",
    "EncodingInfo",
    "EncodingType",
    "CancellationToken",
    "ParseCancelledError",
    "ParserError",
    "RoutineError",
    "RoutineRegistry",
    "register_routine",
    "parse",
    "parse_input",
    "parse_path",
    "detect_format",
    "suggest_delimiter",
    "detect_encoding",
    "decode",
    "encoding_display_name",
    "OffloadContext",
    "ParseController",
    "ParserService",
]
