"""Pytest configuration and shared fixtures."""

import queue
import threading

import pytest

from financial_parser.async_orchestrator import OffloadContext
from financial_parser.routines import RoutineRegistry
from financial_parser.worker import ParseWorker


@pytest.fixture
def sample_csv() -> str:
    """Small comma-delimited bank export with a header row."""
    return (
        "date,description,amount,currency\n"
        "2024-01-15,Coffee,4.50,EUR\n"
        "2024-01-16,Rent,1200,EUR\n"
        "2024-01-17,Refund,-35.20,EUR\n"
    )


@pytest.fixture
def large_csv() -> str:
    """A few thousand rows, enough for many streaming chunks."""
    rows = ["id,account,amount,booked"]
    for i in range(3000):
        rows.append(f"{i},ACC{i % 17:04d},{i * 1.25:.2f},2024-01-{(i % 28) + 1:02d}")
    return "\n".join(rows) + "\n"


@pytest.fixture
def sample_fixed_width() -> str:
    """Fixed-column lines: ID(0-6) Name(6-20) Amount(20-30) Flag(30-31)."""
    return (
        "TXN001John Smith    0000150.25Y\n"
        "TXN002Jane Doe      0000275.50N\n"
        "      Bob Jones     0000099.99Y\n"
    )


@pytest.fixture
def sample_field_definitions():
    return [
        {"name": "ID", "start": 0, "length": 6, "required": True},
        {"name": "Name", "start": 6, "length": 14},
        {"name": "Amount", "start": 20, "length": 10, "type": "number"},
        {"name": "Flag", "start": 30, "length": 1, "type": "boolean"},
    ]


@pytest.fixture
def sample_mt103() -> str:
    """Customer credit transfer with user header and trailer."""
    return (
        "{1:F01BANKBEBBAXXX0000000000}{2:I103BANKDEFFXXXXN}"
        "{3:{108:MUR12345}{121:eb6305c9-1f7f-49de-aed0-16487c27b42d}}{4:\n"
        ":20:REF123456\n"
        ":23B:CRED\n"
        ":32A:240115EUR1000,00\n"
        ":50K:/12345678\n"
        "JOHN DOE\n"
        ":59:/DE89370400440532013000\n"
        "JANE SMITH\n"
        ":70:/INV/12345\n"
        ":71A:SHA\n"
        "-}{5:{CHK:123456789ABC}}"
    )


@pytest.fixture
def sample_mt940() -> str:
    """Customer statement (output message)."""
    return (
        "{1:F01BANKBEBBAXXX0000000000}{2:O9401200240115BANKDEFFXXXX12345678902401151200N}{4:\n"
        ":20:STMT20240115\n"
        ":25:DE89370400440532013000\n"
        ":28C:00001/001\n"
        ":60F:C240114EUR10000,00\n"
        ":61:2401150115D500,00NTRFREF001//BANKREF\n"
        ":86:/EREF/E2E-001/REMI/Invoice 42\n"
        ":62F:C240115EUR9500,00\n"
        "-}"
    )


@pytest.fixture
def sample_pain001() -> str:
    """Credit transfer initiation with two transactions."""
    return """<?xml version="1.0" encoding="UTF-8"?>
<Document xmlns="urn:iso:std:iso:20022:tech:xsd:pain.001.001.03">
  <CstmrCdtTrfInitn>
    <GrpHdr>
      <MsgId>MSG-0001</MsgId>
      <CreDtTm>2024-01-15T10:30:00</CreDtTm>
      <NbOfTxs>2</NbOfTxs>
      <CtrlSum>1500.50</CtrlSum>
      <InitgPty><Nm>ACME Corp</Nm></InitgPty>
    </GrpHdr>
    <PmtInf>
      <PmtInfId>PMT-001</PmtInfId>
      <PmtMtd>TRF</PmtMtd>
      <CdtTrfTxInf>
        <PmtId><EndToEndId>E2E-001</EndToEndId></PmtId>
        <Amt><InstdAmt Ccy="EUR">1000.00</InstdAmt></Amt>
        <RmtInf><Ustrd>Invoice 1</Ustrd><Ustrd>Invoice 2</Ustrd></RmtInf>
      </CdtTrfTxInf>
      <CdtTrfTxInf>
        <PmtId><EndToEndId>E2E-002</EndToEndId></PmtId>
        <Amt><InstdAmt Ccy="EUR">500.50</InstdAmt></Amt>
      </CdtTrfTxInf>
    </PmtInf>
  </CstmrCdtTrfInitn>
</Document>
"""


@pytest.fixture
def sample_camt053() -> str:
    """Bank to customer statement with one balance and one entry."""
    return """<?xml version="1.0" encoding="UTF-8"?>
<Document xmlns="urn:iso:std:iso:20022:tech:xsd:camt.053.001.02">
  <BkToCstmrStmt>
    <GrpHdr><MsgId>STMT-2024-001</MsgId><CreDtTm>2024-01-15T18:00:00</CreDtTm></GrpHdr>
    <Stmt>
      <Id>STMT-001</Id>
      <Acct><Id><IBAN>DE89370400440532013000</IBAN></Id></Acct>
      <Bal>
        <Tp><CdOrPrtry><Cd>OPBD</Cd></CdOrPrtry></Tp>
        <Amt Ccy="EUR">10000.00</Amt>
        <CdtDbtInd>CRDT</CdtDbtInd>
      </Bal>
      <Ntry>
        <Amt Ccy="EUR">500.00</Amt>
        <CdtDbtInd>DBIT</CdtDbtInd>
        <BookgDt><Dt>2024-01-15</Dt></BookgDt>
      </Ntry>
    </Stmt>
  </BkToCstmrStmt>
</Document>
"""


@pytest.fixture
def sample_key_value() -> str:
    return (
        "name: Alice amount: 100.50 status: active\n"
        "name: Bob amount: 75 status: pending\n"
        "name: Carol amount: 12.25 status: active\n"
    )


@pytest.fixture
def sample_json_lines() -> str:
    return (
        '{"id": 1, "type": "credit", "amount": 250.0, "tags": ["a", "b"]}\n'
        '{"id": 2, "type": "debit", "amount": 75.5, "meta": {"source": "atm"}}\n'
        '{"id": 3, "type": "credit", "amount": 10, "active": true}\n'
    )


@pytest.fixture
def routine_registry() -> RoutineRegistry:
    """Empty registry, isolated from the default one."""
    return RoutineRegistry()


class ListOutbox:
    """Collects worker messages in memory."""

    def __init__(self):
        self.messages = []

    def put(self, message):
        self.messages.append(message)

    def for_request(self, request_id):
        return [m for m in self.messages if m["id"] == request_id]


@pytest.fixture
def list_outbox() -> ListOutbox:
    return ListOutbox()


class InProcessContext(OffloadContext):
    """Offload context running a ParseWorker on threads of this process.

    Speaks the same protocol as the spawned worker and shares the reader and
    routing of OffloadContext, which keeps the service tests fast and deterministic.
    """

    def __init__(self, respond: bool = True):
        super().__init__(shutdown_timeout=2.0, poll_interval=0.05)
        self.respond = respond
        self.worker = None
        self.sent = []
        self.acquired = 0
        self.released = 0
        self.dead = threading.Event()

    @property
    def alive(self) -> bool:
        return self.worker is not None and not self.dead.is_set()

    def acquire(self):
        self.acquired += 1
        super().acquire()

    def release(self):
        self.released += 1
        super().release()

    def _launch(self):
        self.dead.clear()
        self.outbox = queue.Queue()
        self.worker = ParseWorker(self.outbox)
        self.worker.start()

    def _halt_worker(self):
        self.worker.stop(timeout=2.0)

    def _close_channels(self):
        self.worker = None
        self.outbox = None

    def send(self, message):
        self.sent.append(message)
        if self.respond and self.alive:
            self.worker.handle(message.to_wire())


@pytest.fixture
def in_process_context() -> InProcessContext:
    return InProcessContext()


@pytest.fixture
def silent_context() -> InProcessContext:
    """Context whose worker never answers the handshake."""
    return InProcessContext(respond=False)
