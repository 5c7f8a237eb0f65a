"""
Parser modules for the supported input formats.
"""

import logging
from typing import Optional

from financial_parser.cancellation import CancellationToken
from financial_parser.config_models import FormatType, ParserConfig
from financial_parser.detection import detect_format
from financial_parser.models import ParsedDataSet
from financial_parser.parsers.custom_parser import parse_custom
from financial_parser.parsers.delimited_parser import parse_delimited
from financial_parser.parsers.fin_parser import parse_fin
from financial_parser.parsers.fixed_width_parser import parse_fixed_width
from financial_parser.parsers.iso20022_parser import HAS_LXML, parse_iso20022
from financial_parser.routines import RoutineRegistry

logger = logging.getLogger(__name__)

ENGINES = {
    FormatType.DELIMITED: parse_delimited,
    FormatType.FIXED_COLUMN: parse_fixed_width,
    FormatType.FIN: parse_fin,
    FormatType.ISO20022: parse_iso20022,
    FormatType.CUSTOM: parse_custom,
}

# Formats with an lxml-backed engine
ACCELERATED_FORMATS = frozenset({FormatType.ISO20022})

_missing = set(FormatType) - set(ENGINES)
if _missing:
    raise RuntimeError(f"No parsing engine registered for: {', '.join(sorted(m.value for m in _missing))}")


def accelerated_available() -> bool:
    return HAS_LXML


def parse(text: str, config: ParserConfig, token: Optional[CancellationToken] = None,
          accelerated: bool = False, routines: Optional[RoutineRegistry] = None) -> ParsedDataSet:
    """Run the engine for ``config.format_type`` (detected when unset).

    Args:
        text: Decoded input text
        config: Parser configuration
        token: Optional cancellation token
        accelerated: Use the accelerated engine where the format has one
        routines: Routine registry for the custom engine

    Returns:
        ParsedDataSet produced by the engine
    """
    format_type = config.format_type
    if format_type is None:
        format_type = detect_format(text)
        config = config.with_updates(format_type=format_type)
        logger.debug(f"Detected format: {format_type.value}")

    engine = ENGINES[format_type]
    if format_type is FormatType.ISO20022:
        return engine(text, config, token, accelerated=accelerated)
    if format_type is FormatType.CUSTOM:
        return engine(text, config, token, registry=routines)
    return engine(text, config, token)


__all__ = [
    "ENGINES",
    "ACCELERATED_FORMATS",
    "accelerated_available",
    "parse",
    "parse_custom",
    "parse_delimited",
    "parse_fin",
    "parse_fixed_width",
    "parse_iso20022",
]
