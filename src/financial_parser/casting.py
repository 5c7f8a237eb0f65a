"""
Type inference and coercion shared by every parsing engine.

``infer_value`` implements the uniform inference rules used by the delimited,
streaming, ISO 20022 and custom engines. ``coerce_fixed_value`` implements the
declared-type coercion of fixed-column field definitions.
"""

import logging
import re
from typing import Any, Optional, Tuple

from financial_parser.config_models import FieldType
from financial_parser.models import FieldValue, ValueType

logger = logging.getLogger(__name__)

BOOLEAN_TOKENS = {"true": True, "false": False}

FIXED_TRUE_TOKENS = frozenset({"true", "1", "y"})

NUMBER_PATTERN = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")

DATE_PATTERNS = (
    re.compile(r"^\d{4}-\d{2}-\d{2}$"),   # YYYY-MM-DD
    re.compile(r"^\d{2}/\d{2}/\d{4}$"),   # MM/DD/YYYY
    re.compile(r"^\d{2}-\d{2}-\d{4}$"),   # MM-DD-YYYY
)


def parse_number(text: str) -> Optional[float]:
    """Parse a strictly numeric token.

    Returns an int when the token has no fraction or exponent, a float otherwise,
    and None when the token is not numeric.
    """
    s = text.strip()
    if not NUMBER_PATTERN.match(s):
        return None
    if "." in s or "e" in s or "E" in s:
        return float(s)
    return int(s)


def is_date(text: str) -> bool:
    return any(p.match(text) for p in DATE_PATTERNS)


def infer_value(raw: Any) -> Tuple[FieldValue, str]:
    """Infer the typed value of a raw token.

    Args:
        raw: Raw token (usually a string; None means missing)

    Returns:
        Tuple of (typed value, type tag)
    """
    if raw is None:
        return None, ValueType.NULL.value
    if isinstance(raw, bool):
        return raw, ValueType.BOOLEAN.value
    if isinstance(raw, (int, float)):
        return raw, ValueType.NUMBER.value

    s = str(raw).strip()
    if not s:
        return None, ValueType.NULL.value

    lowered = s.lower()
    if lowered in BOOLEAN_TOKENS:
        return BOOLEAN_TOKENS[lowered], ValueType.BOOLEAN.value

    number = parse_number(s)
    if number is not None:
        return number, ValueType.NUMBER.value

    if is_date(s):
        return s, ValueType.DATE.value

    return s, ValueType.STRING.value


def coerce_fixed_value(text: str, field_type: FieldType) -> Tuple[FieldValue, str]:
    """Coerce a trimmed fixed-column substring to its declared type.

    - number: thousands separators stripped; unparseable values become None
    - boolean: "true", "1" or "y" (case-insensitive) are True, anything else False
    - date/string: passed through unchanged
    """
    if field_type == FieldType.NUMBER:
        cleaned = text.replace(",", "").strip()
        try:
            value = float(cleaned)
        except ValueError:
            if cleaned:
                logger.debug(f"Could not parse '{text}' as number")
            return None, ValueType.NUMBER.value
        if value.is_integer() and NUMBER_PATTERN.match(cleaned) and "." not in cleaned:
            return int(value), ValueType.NUMBER.value
        return value, ValueType.NUMBER.value

    if field_type == FieldType.BOOLEAN:
        return text.strip().lower() in FIXED_TRUE_TOKENS, ValueType.BOOLEAN.value

    if field_type == FieldType.DATE:
        return text, ValueType.DATE.value

    return text, ValueType.STRING.value
