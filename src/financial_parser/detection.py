"""
Format detection for decoded input text.

``detect_format`` is total: ambiguous input falls through to FormatType.CUSTOM.
"""

import logging
import re
from typing import Optional

from financial_parser.config_models import DetectionThresholds, FormatType

logger = logging.getLogger(__name__)

XML_PREFIXES = ("<?xml", "<Document", "<pain", "<camt", "<pacs")

FIN_BASIC_HEADER = "{1:"
FIN_TEXT_BLOCK_PATTERN = re.compile(r"\{4:\s*\n?:20:")

DELIMITER_CANDIDATES = (",", ";", "\t", "|")


def _lines(text: str):
    return [line.rstrip("\r") for line in text.split("\n")]


def detect_format(text: str, thresholds: Optional[DetectionThresholds] = None) -> FormatType:
    """Classify decoded text into one of the supported formats.

    Checks run in order and the first match wins: XML prolog or payment root
    element, SWIFT basic header or block 4 with field 20, delimiter characters on
    the first line, uniform line lengths, then the custom fallback.

    Args:
        text: Decoded input text
        thresholds: Fixed-column heuristic constants (defaults apply when None)

    Returns:
        Detected FormatType
    """
    thresholds = thresholds or DetectionThresholds()
    trimmed = text.strip()

    if trimmed.startswith(XML_PREFIXES):
        return FormatType.ISO20022

    if trimmed.startswith(FIN_BASIC_HEADER) or FIN_TEXT_BLOCK_PATTERN.search(trimmed):
        return FormatType.FIN

    lines = _lines(trimmed)
    first_line = lines[0]
    if any(first_line.count(d) >= 2 for d in DELIMITER_CANDIDATES):
        return FormatType.DELIMITED

    if looks_fixed_column(lines, thresholds):
        return FormatType.FIXED_COLUMN

    return FormatType.CUSTOM


def looks_fixed_column(lines, thresholds: DetectionThresholds) -> bool:
    """True when the leading non-empty lines cluster around one length above the minimum mean."""
    non_empty = [line for line in lines if line]
    if len(non_empty) < thresholds.min_lines:
        return False
    lengths = [len(line) for line in non_empty[:thresholds.sample_lines]]
    mean = sum(lengths) / len(lengths)
    uniform = all(abs(length - mean) < thresholds.length_tolerance for length in lengths)
    return uniform and mean > thresholds.min_mean_length


def suggest_delimiter(text: str) -> str:
    """Pick the most frequent delimiter over the first 5 lines.

    Ties keep the earlier candidate (comma, semicolon, tab, pipe); comma is the
    default when none occurs.
    """
    sample = "\n".join(text.split("\n")[:5])
    best, best_count = ",", 0
    for candidate in DELIMITER_CANDIDATES:
        count = sample.count(candidate)
        if count > best_count:
            best, best_count = candidate, count
    return best
