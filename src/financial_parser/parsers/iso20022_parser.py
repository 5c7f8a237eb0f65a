"""
ISO 20022 (XML) parser module.

The document is read into a generic attribute/text/element tree (xmltodict shape:
``@attr`` keys, ``#text`` for text beside attributes or children, lists for
repeated elements) and flattened pre-order into records. Two tree backends
produce the same shape: xmltodict (plain) and lxml (accelerated).
"""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import xmltodict

try:
    from lxml import etree
    HAS_LXML = True
except ImportError:
    HAS_LXML = False

from financial_parser.cancellation import CancellationToken, ParseCancelledError
from financial_parser.config_models import ParserConfig
from financial_parser.models import ParsedDataSet, ParsedField, ParserEngine, RecordKind
from financial_parser.parsers.base_parser import (
    DatasetBuilder,
    error_dataset,
    make_field,
    text_field,
)

logger = logging.getLogger(__name__)

# Elements always read as lists, even with a single occurrence
REPEATING_ELEMENTS = frozenset({
    "NtryDtls", "TxDtls", "Ntry", "Stmts", "Stmt", "Bal", "CdtTrfTxInf", "PmtInf",
})

MESSAGE_TYPES = {
    "pain.001": "Customer Credit Transfer Initiation",
    "pain.002": "Customer Payment Status Report",
    "pain.008": "Customer Direct Debit Initiation",
    "camt.052": "Bank to Customer Account Report",
    "camt.053": "Bank to Customer Statement",
    "camt.054": "Bank to Customer Debit Credit Notification",
    "pacs.002": "FI to FI Payment Status Report",
    "pacs.003": "FI to FI Customer Direct Debit",
    "pacs.004": "Payment Return",
    "pacs.008": "FI to FI Customer Credit Transfer",
    "pacs.009": "FI Credit Transfer",
}

# Top-level Document children identifying the message when the namespace does not
MESSAGE_ROOT_CHILDREN = {
    "CstmrCdtTrfInitn": "pain.001",
    "CstmrPmtStsRpt": "pain.002",
    "CstmrDrctDbtInitn": "pain.008",
    "BkToCstmrAcctRpt": "camt.052",
    "BkToCstmrStmt": "camt.053",
    "BkToCstmrDbtCdtNtfctn": "camt.054",
    "FIToFIPmtStsRpt": "pacs.002",
    "FIToFICstmrCdtTrf": "pacs.008",
}

HEADER_PATHS = ("GrpHdr", "MsgId", "CreDtTm", "NbOfTxs", "CtrlSum")
TRANSACTION_PATHS = ("CdtTrfTxInf", "DrctDbtTxInf", "TxDtls", "Ntry", "NtryDtls")

FIELD_NAMES = {
    "MsgId": "Message ID",
    "CreDtTm": "Creation Date/Time",
    "NbOfTxs": "Number of Transactions",
    "CtrlSum": "Control Sum",
    "InitgPty": "Initiating Party",
    "Nm": "Name",
    "PmtInfId": "Payment Information ID",
    "PmtMtd": "Payment Method",
    "BtchBookg": "Batch Booking",
    "ReqdExctnDt": "Requested Execution Date",
    "Dbtr": "Debtor",
    "DbtrAcct": "Debtor Account",
    "DbtrAgt": "Debtor Agent",
    "CdtTrfTxInf": "Credit Transfer Transaction",
    "PmtId": "Payment ID",
    "EndToEndId": "End-to-End ID",
    "InstrId": "Instruction ID",
    "Amt": "Amount",
    "InstdAmt": "Instructed Amount",
    "Ccy": "Currency",
    "CdtrAgt": "Creditor Agent",
    "Cdtr": "Creditor",
    "CdtrAcct": "Creditor Account",
    "RmtInf": "Remittance Information",
    "Ustrd": "Unstructured",
    "Strd": "Structured",
    "IBAN": "IBAN",
    "BIC": "BIC",
    "BICFI": "BIC/FI",
    "Id": "ID",
    "Othr": "Other",
    "FinInstnId": "Financial Institution ID",
    "Bal": "Balance",
    "Tp": "Type",
    "CdOrPrtry": "Code or Proprietary",
    "Cd": "Code",
    "Prtry": "Proprietary",
    "Dt": "Date",
    "DtTm": "Date/Time",
    "Ntry": "Entry",
    "NtryDtls": "Entry Details",
    "TxDtls": "Transaction Details",
    "Refs": "References",
    "AcctSvcrRef": "Account Servicer Reference",
    "InstrRef": "Instruction Reference",
    "BookgDt": "Booking Date",
    "ValDt": "Value Date",
    "Sts": "Status",
    "CdtDbtInd": "Credit/Debit Indicator",
    "BkTxCd": "Bank Transaction Code",
    "Domn": "Domain",
    "Fmly": "Family",
    "SubFmlyCd": "Sub-Family Code",
    "AddtlNtryInf": "Additional Entry Info",
    "AddtlTxInf": "Additional Transaction Info",
}

_CAMEL_BOUNDARY = re.compile(r"([A-Z])")


def local_name(key: str) -> str:
    return key.split(":")[-1]


def humanize(key: str) -> str:
    """Display name of an element; unknown names are split at capitals."""
    name = local_name(key)
    return FIELD_NAMES.get(name) or _CAMEL_BOUNDARY.sub(r" \1", name).strip()


def _force_list(path, key, value) -> bool:
    return local_name(key) in REPEATING_ELEMENTS


def read_tree_plain(text: str) -> Dict[str, Any]:
    """Parse XML into the generic tree with xmltodict."""
    return xmltodict.parse(text, attr_prefix="@", cdata_key="#text", force_list=_force_list)


def _qualified(name: str, nsmap: Dict[Optional[str], str]) -> str:
    qname = etree.QName(name)
    if qname.namespace is None:
        return qname.localname
    for prefix, uri in nsmap.items():
        if prefix is not None and uri == qname.namespace:
            return f"{prefix}:{qname.localname}"
    return qname.localname


def _element_node(element, parent_nsmap: Dict[Optional[str], str]) -> Any:
    node: Dict[str, Any] = {}
    for prefix, uri in element.nsmap.items():
        if parent_nsmap.get(prefix) != uri:
            node["@xmlns" if prefix is None else f"@xmlns:{prefix}"] = uri
    for name, value in element.attrib.items():
        node[f"@{_qualified(name, element.nsmap)}"] = value

    pieces = [element.text or ""]
    for child in element:
        pieces.append(child.tail or "")
        if not isinstance(child.tag, str):
            # Comments and processing instructions
            continue
        key = f"{child.prefix}:{etree.QName(child).localname}" if child.prefix else etree.QName(child).localname
        value = _element_node(child, element.nsmap)
        if key in node:
            existing = node[key]
            if isinstance(existing, list):
                existing.append(value)
            else:
                node[key] = [existing, value]
        elif local_name(key) in REPEATING_ELEMENTS:
            node[key] = [value]
        else:
            node[key] = value

    text = "".join(pieces).strip() or None
    if not node:
        return text
    if text is not None:
        node["#text"] = text
    return node


def read_tree_accelerated(text: str) -> Dict[str, Any]:
    """Parse XML into the generic tree with lxml."""
    if not HAS_LXML:
        raise ImportError("lxml is required for accelerated XML parsing. Install: pip install lxml")
    parser = etree.XMLParser(resolve_entities=False, no_network=True, encoding="utf-8")
    root = etree.fromstring(text.encode("utf-8"), parser)
    key = f"{root.prefix}:{etree.QName(root).localname}" if root.prefix else etree.QName(root).localname
    node = _element_node(root, {})
    return {key: [node] if local_name(key) in REPEATING_ELEMENTS else node}


def detect_message_type(root_key: str, root: Any) -> str:
    """Resolve the message type from the root namespace, then from known child elements."""
    if isinstance(root, dict):
        namespace = root.get("@xmlns")
        if isinstance(namespace, str):
            for code, name in MESSAGE_TYPES.items():
                if code in namespace:
                    return f"{code} - {name}"

    if local_name(root_key) != "Document":
        return "ISO 20022 Message"

    if isinstance(root, dict):
        for child in root:
            code = MESSAGE_ROOT_CHILDREN.get(local_name(child))
            if code:
                return f"{code} - {MESSAGE_TYPES[code]}"
    return "ISO 20022 Document"


def classify_path(path: str, depth: int) -> RecordKind:
    if any(p in path for p in HEADER_PATHS):
        return RecordKind.HEADER
    if any(p in path for p in TRANSACTION_PATHS):
        return RecordKind.TRANSACTION
    if depth <= 1:
        return RecordKind.HEADER
    return RecordKind.DATA


def flatten(node: Any, path: str = "", depth: int = 0,
            out: Optional[List[Tuple[List[ParsedField], str, RecordKind]]] = None):
    """Flatten a tree node pre-order into (fields, raw path, kind) triples.

    Attributes, text and primitive children become fields of the record for
    ``path``; the record is only emitted when it has at least one field. Element
    children are recursed after it, list items with an ``[i]`` path suffix.
    """
    if out is None:
        out = []
    if not isinstance(node, dict):
        return out

    fields: List[ParsedField] = []
    nested: List[Tuple[Any, str]] = []
    for key, value in node.items():
        child_path = f"{path}.{key}" if path else key
        if key.startswith("@"):
            fields.append(make_field(f"{path}[{key[1:]}]", value))
        elif key == "#text":
            fields.append(make_field(path or "Text", value))
        elif isinstance(value, list):
            for i, item in enumerate(value):
                if isinstance(item, dict):
                    nested.append((item, f"{child_path}[{i}]"))
                else:
                    fields.append(make_field(f"{humanize(key)} [{i}]", item))
        elif isinstance(value, dict):
            nested.append((value, child_path))
        else:
            fields.append(make_field(humanize(key), value))

    if fields:
        out.append((fields, path or "Root", classify_path(path, depth)))
    for child, child_path in nested:
        flatten(child, child_path, depth + 1, out)
    return out


def parse_iso20022(text: str, config: ParserConfig,
                   token: Optional[CancellationToken] = None,
                   accelerated: bool = False) -> ParsedDataSet:
    """Parse an ISO 20022 XML document.

    Record 0 is a document header holding the message type and root element;
    the flattened tree follows. Malformed XML yields the single-record error
    dataset.

    Args:
        text: Decoded input text
        config: Parser configuration
        token: Optional cancellation token polled at record boundaries
        accelerated: Read the tree with lxml instead of xmltodict

    Returns:
        ParsedDataSet
    """
    builder = DatasetBuilder(config, token)
    use_lxml = accelerated and HAS_LXML
    engine = ParserEngine.ACCELERATED if use_lxml else None
    try:
        tree = read_tree_accelerated(text) if use_lxml else read_tree_plain(text)
    except Exception as e:
        return error_dataset(config, f"XML Parse Error: {e}", source=text, engine=engine,
                             parse_time=builder.elapsed_ms())

    if not tree:
        return error_dataset(config, "No root element found", source=text, engine=engine,
                             parse_time=builder.elapsed_ms())

    try:
        root_key, root = next(iter(tree.items()))
        if isinstance(root, list):
            root = root[0] if root else None
        message_type = detect_message_type(root_key, root)
        logger.debug(f"ISO 20022 message type: {message_type}")

        builder.add_record(
            [text_field("Message Type", message_type), text_field("Root Element", root_key)],
            raw=root_key,
            kind=RecordKind.HEADER,
            track_headers=True,
        )
        for fields, raw, kind in flatten(root):
            builder.add_record(fields, raw=raw, kind=kind, track_headers=True)
    except ParseCancelledError:
        raise
    except Exception as e:
        return error_dataset(config, f"ISO 20022 parse error: {e}", source=text, engine=engine,
                             parse_time=builder.elapsed_ms())

    return builder.build(source=text, engine=engine)
