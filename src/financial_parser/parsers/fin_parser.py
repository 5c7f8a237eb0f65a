"""
SWIFT FIN (MT) message parser module.

A FIN message is a sequence of brace-delimited blocks ``{n:content}``. Blocks 1
and 2 have fixed-offset layouts, blocks 3 and 5 hold nested ``{tag:value}``
sub-blocks, and block 4 holds the ``:TAG:value`` message body.
"""

import logging
import re
from typing import List, NamedTuple, Optional

from financial_parser.cancellation import CancellationToken, ParseCancelledError
from financial_parser.config_models import ParserConfig
from financial_parser.models import ParsedDataSet, RecordKind
from financial_parser.parsers.base_parser import DatasetBuilder, error_dataset, text_field

logger = logging.getLogger(__name__)

# Balances one level of nested braces inside a block (block 3 extensions)
BLOCK_PATTERN = re.compile(r"\{(\d):([^{}]*(?:\{[^{}]*\}[^{}]*)*)\}")
NESTED_TAG_PATTERN = re.compile(r"\{([A-Za-z0-9]+):([^{}]*)\}")
BODY_TAG_PATTERN = re.compile(r"^:(\d{2}[A-Z]?):(.*?)(?=^:\d{2}[A-Z]?:|\Z)", re.MULTILINE | re.DOTALL)
SUBFIELD_PATTERN = re.compile(r"/([A-Z0-9]+)/([^/\n]*)")

BLOCK_NAMES = {
    "1": "Basic Header",
    "2": "Application Header",
    "3": "User Header",
    "4": "Text Block (Message)",
    "5": "Trailer",
}

BLOCK_KINDS = {
    "1": RecordKind.HEADER,
    "2": RecordKind.HEADER,
    "3": RecordKind.HEADER,
    "4": RecordKind.TRANSACTION,
    "5": RecordKind.FOOTER,
}

FIELD_NAMES = {
    "20": "Transaction Reference",
    "21": "Related Reference",
    "23B": "Bank Operation Code",
    "23E": "Instruction Code",
    "25": "Account Identification",
    "25A": "Account Identification",
    "26T": "Transaction Type Code",
    "28C": "Statement Number",
    "28D": "Statement Number",
    "32A": "Value Date/Currency/Amount",
    "32B": "Currency/Amount",
    "33B": "Currency/Original Amount",
    "36": "Exchange Rate",
    "50A": "Ordering Customer (BIC)",
    "50F": "Ordering Customer (Party)",
    "50K": "Ordering Customer (Name/Address)",
    "51A": "Sending Institution",
    "52A": "Ordering Institution (BIC)",
    "52D": "Ordering Institution (Name/Address)",
    "53A": "Sender Correspondent (BIC)",
    "53B": "Sender Correspondent (Location)",
    "54A": "Receiver Correspondent (BIC)",
    "56A": "Intermediary Institution (BIC)",
    "56D": "Intermediary Institution (Name/Address)",
    "57A": "Account With Institution (BIC)",
    "57D": "Account With Institution (Name/Address)",
    "59": "Beneficiary Customer",
    "59A": "Beneficiary Customer (BIC)",
    "59F": "Beneficiary Customer (Party)",
    "60F": "Opening Balance",
    "60M": "Opening Balance",
    "61": "Statement Line",
    "62F": "Closing Balance",
    "62M": "Closing Balance",
    "64": "Closing Available Balance",
    "65": "Forward Available Balance",
    "70": "Remittance Information",
    "71A": "Details of Charges",
    "71F": "Sender Charges",
    "71G": "Receiver Charges",
    "72": "Sender to Receiver Information",
    "77B": "Regulatory Reporting",
    "77T": "Envelope Contents",
    "79": "Narrative",
    "86": "Information to Account Owner",
}

# User header (block 3) and trailer (block 5) sub-block tags
HEADER_TAG_NAMES = {
    "103": "Service Identifier",
    "108": "Message User Reference",
    "111": "Service Type Identifier",
    "113": "Banking Priority",
    "115": "Addressee Information",
    "119": "Validation Flag",
    "121": "Unique End-to-End Transaction Reference",
    "165": "Payment Release Information",
    "433": "Sanctions Screening Information",
    "434": "Payment Controls Information",
    "CHK": "Checksum",
    "MAC": "Message Authentication Code",
    "PDE": "Possible Duplicate Emission",
    "PDM": "Possible Duplicate Message",
    "DLM": "Delayed Message",
    "MRF": "Message Reference",
    "SYS": "System Originated Message",
    "TNG": "Training",
}


class FinField(NamedTuple):
    tag: str
    name: str
    value: str


class FinSubfield(NamedTuple):
    code: str
    value: str


class FinBlock(NamedTuple):
    number: str
    content: str

    @property
    def name(self) -> str:
        return BLOCK_NAMES.get(self.number, f"Block {self.number}")


def field_name(tag: str) -> str:
    """Display name of a block 4 tag; unknown tags fall back to 'Field <tag>'."""
    return FIELD_NAMES.get(tag, f"Field {tag}")


def split_blocks(text: str) -> List[FinBlock]:
    return [FinBlock(m.group(1), m.group(2)) for m in BLOCK_PATTERN.finditer(text)]


def block_fields(block: FinBlock) -> List[FinField]:
    """Fields of a block-level record."""
    content = block.content
    if block.number == "1":
        # e.g. F01BANKBEBBAXXX0000000000
        if len(content) < 25:
            return []
        return [
            FinField("AppID", "Application ID", content[0:1]),
            FinField("ServiceID", "Service ID", content[1:3]),
            FinField("LT", "Logical Terminal", content[3:15]),
            FinField("Session", "Session Number", content[15:19]),
            FinField("Sequence", "Sequence Number", content[19:25]),
        ]
    if block.number == "2":
        if content.startswith("I"):
            return [
                FinField("IO", "Input/Output", "Input"),
                FinField("MT", "Message Type", content[1:4]),
                FinField("Receiver", "Receiver BIC", content[4:16]),
            ]
        if content.startswith("O"):
            return [
                FinField("IO", "Input/Output", "Output"),
                FinField("MT", "Message Type", content[1:4]),
                FinField("InputTime", "Input Time", content[4:8]),
            ]
        return []
    if block.number in ("3", "5"):
        return [
            FinField(tag, HEADER_TAG_NAMES.get(tag, f"Tag {tag}"), value.strip())
            for tag, value in NESTED_TAG_PATTERN.findall(content)
        ]
    return []


def body_fields(content: str) -> List[FinField]:
    """Parse the ``:TAG:value`` segments of a block 4 body."""
    body = content.rstrip()
    if body.endswith("-"):
        body = body[:-1]
    return [
        FinField(tag, field_name(tag), value.strip())
        for tag, value in BODY_TAG_PATTERN.findall(body)
    ]


def parse_subfields(value: str) -> List[FinSubfield]:
    return [FinSubfield(code, text.strip()) for code, text in SUBFIELD_PATTERN.findall(value)]


def normalize_message_type(message_type: str) -> str:
    value = message_type.strip().upper()
    return value[2:] if value.startswith("MT") else value


def message_type_errors(fields: List[FinField], expected: Optional[str]) -> List[str]:
    if not expected:
        return []
    for f in fields:
        if f.tag == "MT" and f.value != normalize_message_type(expected):
            logger.warning(f"FIN message type {f.value} does not match expected {expected}")
            return [f"Message type {f.value} does not match expected MT{normalize_message_type(expected)}"]
    return []


def parse_fin(text: str, config: ParserConfig,
              token: Optional[CancellationToken] = None) -> ParsedDataSet:
    """Parse a SWIFT FIN message.

    Every block becomes one record (header for blocks 1-3, transaction for
    block 4, footer for block 5). Each block 4 tag then becomes a transaction
    record followed by one data record per ``/CODE/text`` subfield. The header
    list is the set of tags seen, in order of appearance.

    Args:
        text: Decoded input text
        config: Parser configuration (``message_type`` is checked against block 2)
        token: Optional cancellation token polled at record boundaries

    Returns:
        ParsedDataSet (empty input yields zero records)
    """
    builder = DatasetBuilder(config, token)
    try:
        blocks = split_blocks(text)
        for block in blocks:
            fields = block_fields(block)
            errors = message_type_errors(fields, config.message_type) if block.number == "2" else []
            builder.add_headers(f.tag for f in fields)
            builder.add_record(
                [text_field(f.name, f.value) for f in fields],
                raw=block.content,
                kind=BLOCK_KINDS.get(block.number, RecordKind.DATA),
                errors=errors,
            )

        body = next((b for b in blocks if b.number == "4"), None)
        if body is not None:
            for f in body_fields(body.content):
                builder.add_header(f.tag)
                builder.add_record(
                    [text_field(f"{f.tag} - {f.name}", f.value)],
                    raw=f":{f.tag}:{f.value}",
                    kind=RecordKind.TRANSACTION,
                )
                for sub in parse_subfields(f.value):
                    builder.add_record(
                        [text_field(f"{f.tag}/{sub.code}", sub.value)],
                        raw=f"/{sub.code}/{sub.value}",
                        kind=RecordKind.DATA,
                    )
    except ParseCancelledError:
        raise
    except Exception as e:
        return error_dataset(config, f"FIN parse error: {e}", source=text,
                             parse_time=builder.elapsed_ms())

    logger.debug(f"Parsed FIN message with {len(builder.records)} records")
    return builder.build(source=text)
