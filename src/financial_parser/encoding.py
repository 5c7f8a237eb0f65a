"""
Character encoding detection for raw input bytes.

Detection never fails: it returns a best-guess encoding with a confidence score,
falling back to ISO-8859-1 when nothing better fits.
"""

import logging
from typing import Union

from financial_parser.models import EncodingInfo, EncodingType

logger = logging.getLogger(__name__)

SAMPLE_SIZE = 64 * 1024
NULL_BYTE_RATIO = 0.1

BOM_PATTERNS = (
    (b"\xef\xbb\xbf", EncodingType.UTF8),
    (b"\xff\xfe", EncodingType.UTF16LE),
    (b"\xfe\xff", EncodingType.UTF16BE),
)

# Printable Windows-1252 code points in 0x80-0x9F (0x81, 0x8D, 0x8F, 0x90, 0x9D are undefined)
WINDOWS_1252_BYTES = frozenset(
    [0x80, *range(0x82, 0x8D), 0x8E, *range(0x91, 0x9D), 0x9E, 0x9F]
)

DISPLAY_NAMES = {
    EncodingType.UTF8: "UTF-8",
    EncodingType.UTF16: "UTF-16",
    EncodingType.UTF16BE: "UTF-16 (Big Endian)",
    EncodingType.UTF16LE: "UTF-16 (Little Endian)",
    EncodingType.ISO_8859_1: "ISO-8859-1 (Latin-1)",
    EncodingType.WINDOWS_1252: "Windows-1252",
    EncodingType.ASCII: "ASCII",
}


def detect_encoding(data: bytes) -> EncodingInfo:
    """Classify raw bytes into a text encoding.

    Checks, in order: byte order mark, UTF-16 null-byte pattern, UTF-8 validity,
    then a Windows-1252 versus ISO-8859-1 byte-range comparison.

    Args:
        data: Raw input bytes

    Returns:
        EncodingInfo with the detected encoding, confidence and BOM flag
    """
    for bom, encoding in BOM_PATTERNS:
        if data.startswith(bom):
            return EncodingInfo(encoding=encoding, confidence=1.0, has_bom=True)

    sample = data[:SAMPLE_SIZE]
    even_nulls = odd_nulls = high_bytes = win1252_hits = latin1_hits = 0
    for i, byte in enumerate(sample):
        if byte == 0:
            if i % 2 == 0:
                even_nulls += 1
            else:
                odd_nulls += 1
        elif byte > 0x7F:
            high_bytes += 1
            if byte in WINDOWS_1252_BYTES:
                win1252_hits += 1
            elif byte >= 0xA0:
                latin1_hits += 1

    if sample and even_nulls + odd_nulls > len(sample) * NULL_BYTE_RATIO:
        encoding = EncodingType.UTF16LE if odd_nulls > even_nulls else EncodingType.UTF16BE
        return EncodingInfo(encoding=encoding, confidence=0.8, has_bom=False)

    if is_valid_utf8(sample):
        if high_bytes == 0:
            return EncodingInfo(encoding=EncodingType.ASCII, confidence=1.0, has_bom=False)
        return EncodingInfo(encoding=EncodingType.UTF8, confidence=0.95, has_bom=False)

    if win1252_hits > latin1_hits:
        return EncodingInfo(encoding=EncodingType.WINDOWS_1252, confidence=0.7, has_bom=False)

    return EncodingInfo(encoding=EncodingType.ISO_8859_1, confidence=0.6, has_bom=False)


def is_valid_utf8(sample: bytes) -> bool:
    """Walk UTF-8 multi-byte sequences; a sequence cut off by the sample end counts as valid."""
    size = len(sample)
    i = 0
    while i < size:
        byte = sample[i]
        if byte <= 0x7F:
            i += 1
            continue
        if byte & 0xE0 == 0xC0:
            width = 2
        elif byte & 0xF0 == 0xE0:
            width = 3
        elif byte & 0xF8 == 0xF0:
            width = 4
        else:
            return False
        if i + width - 1 >= size:
            return True
        if any(sample[j] & 0xC0 != 0x80 for j in range(i + 1, i + width)):
            return False
        i += width
    return True


def decode(data: bytes, encoding: Union[EncodingType, str]) -> str:
    """Decode bytes, stripping a BOM that matches the chosen encoding.

    Undecodable bytes are replaced rather than raising.
    """
    encoding = EncodingType(encoding)
    for bom, bom_encoding in BOM_PATTERNS:
        if bom_encoding == encoding and data.startswith(bom):
            data = data[len(bom):]
            break
    return data.decode(encoding.value, errors="replace")


def detect_and_decode(data: bytes) -> tuple:
    """Detect the encoding of ``data`` and decode it.

    Returns:
        Tuple of (decoded text, EncodingInfo)
    """
    info = detect_encoding(data)
    logger.debug(f"Detected encoding {info.encoding.value} (confidence {info.confidence})")
    return decode(data, info.encoding), info


def encoding_display_name(encoding: Union[EncodingType, str]) -> str:
    """Human-readable encoding name, e.g. 'UTF-16 (Little Endian)'."""
    try:
        return DISPLAY_NAMES[EncodingType(encoding)]
    except ValueError:
        return str(encoding)
