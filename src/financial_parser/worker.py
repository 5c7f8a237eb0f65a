"""
Offload worker: the message loop running inside the offload process.

The process main thread reads inbound messages and handles control messages
(cancel, pause, resume) immediately; parse requests are queued and executed one
at a time on a single job thread, so a cancel can reach a running parse.
"""

import logging
import queue
import threading
from typing import Any, Dict, Optional

from pydantic import ValidationError

from financial_parser.cancellation import CancellationToken, ParseCancelledError
from financial_parser.config_models import FormatType, ParseOptions, ParserConfig
from financial_parser.models import ParseProgress, ParserEngine, ProgressPhase
from financial_parser.orchestrator import decode_input, parse_input, resolve_config
from financial_parser.parsers import ACCELERATED_FORMATS, accelerated_available
from financial_parser.protocol import (
    MessageType,
    WorkerMessage,
    error_message,
    progress_message,
    ready_message,
    result_message,
)
from financial_parser.routines import RoutineRegistry

logger = logging.getLogger(__name__)

DEFAULT_STREAMING_THRESHOLD = 1024 * 1024


def input_size(data) -> int:
    return len(data) if isinstance(data, (bytes, bytearray)) else len(data.encode("utf-8"))


def choose_engine(config: ParserConfig, size: int, options: ParseOptions,
                  accelerated: bool, streaming_threshold: int) -> ParserEngine:
    """Streaming for large delimited input, then accelerated, then the plain engine."""
    if options.streaming and config.format_type is FormatType.DELIMITED and size > streaming_threshold:
        return ParserEngine.STREAMING
    if options.use_accelerated and accelerated and config.format_type in ACCELERATED_FORMATS:
        return ParserEngine.ACCELERATED
    return ParserEngine.OFFLOAD


class ParseWorker:
    """Handles protocol messages and runs parse jobs.

    Args:
        outbox: Anything with ``put(dict)``; a multiprocessing queue in the
            offload process
        streaming_threshold: Input size in bytes above which delimited input streams,
            unless a parse request carries its own threshold
    """

    def __init__(self, outbox, streaming_threshold: int = DEFAULT_STREAMING_THRESHOLD):
        self.outbox = outbox
        self.streaming_threshold = streaming_threshold
        self.routines = RoutineRegistry()
        self.accelerated = accelerated_available()
        self._tokens: Dict[str, CancellationToken] = {}
        self._lock = threading.Lock()
        self._jobs: "queue.Queue[Optional[WorkerMessage]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run_jobs, name="parse-worker-jobs", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            for token in self._tokens.values():
                token.cancel()
        self._jobs.put(None)
        if self._thread is not None:
            self._thread.join(timeout)

    def handle(self, raw: Dict[str, Any]) -> None:
        """Dispatch one inbound message."""
        try:
            message = WorkerMessage.from_wire(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed message: {e.error_count()} validation errors")
            return

        if message.type is MessageType.INIT:
            self._init(message)
        elif message.type is MessageType.PARSE:
            with self._lock:
                self._tokens[message.id] = CancellationToken()
            self._jobs.put(message)
        elif message.type in (MessageType.CANCEL, MessageType.PAUSE, MessageType.RESUME):
            self._control(message)
        else:
            logger.warning(f"Ignoring unexpected message type '{message.type.value}'")

    def _init(self, message: WorkerMessage) -> None:
        # Services sharing the worker each register their routines
        self.routines.load_exported(message.payload.get("routines", {}))
        logger.info(f"Worker initialized (accelerated={self.accelerated}, routines={self.routines.names()})")
        self._send(ready_message(self.accelerated))

    def _control(self, message: WorkerMessage) -> None:
        with self._lock:
            token = self._tokens.get(message.id)
        if token is None:
            logger.debug(f"No active request {message.id} for {message.type.value}")
            return
        if message.type is MessageType.CANCEL:
            token.cancel()
        elif message.type is MessageType.PAUSE:
            token.pause()
        else:
            token.resume()

    def _send(self, message: WorkerMessage) -> None:
        self.outbox.put(message.to_wire())

    def _emit(self, request_id: str, token: CancellationToken, message: WorkerMessage) -> None:
        # Nothing more is sent for a request once it was cancelled
        if not token.cancelled:
            self._send(message)

    def _run_jobs(self) -> None:
        while True:
            message = self._jobs.get()
            if message is None:
                break
            try:
                self.process(message)
            finally:
                with self._lock:
                    self._tokens.pop(message.id, None)

    def process(self, message: WorkerMessage) -> None:
        """Run one parse request and send its progress and terminal message."""
        request_id = message.id
        with self._lock:
            token = self._tokens.setdefault(request_id, CancellationToken())
        if token.cancelled:
            logger.debug(f"Request {request_id} cancelled before start")
            return

        payload = message.payload
        data = payload.get("data", "")
        total = input_size(data)

        def progress(phase: ProgressPhase, bytes_processed: int = 0, records: int = 0,
                     text: Optional[str] = None) -> None:
            event = ParseProgress.create(phase, bytes_processed, total, records_processed=records, message=text)
            self._emit(request_id, token, progress_message(request_id, event.model_dump(mode="json")))

        try:
            progress(ProgressPhase.INITIALIZING, text="Preparing parser")
            config = ParserConfig.model_validate(payload.get("config") or {})
            options = ParseOptions.model_validate(payload.get("options") or {})

            progress(ProgressPhase.DETECTING, text="Detecting format")
            text, encoding = decode_input(data, config)
            if encoding != config.encoding:
                config = config.with_updates(encoding=encoding)
            config = resolve_config(text, config)
            threshold = payload.get("streaming_threshold", self.streaming_threshold)
            engine = choose_engine(config, total, options, self.accelerated, threshold)
            logger.info(f"Request {request_id}: {config.format_type.value} via {engine.value} engine")

            progress(ProgressPhase.PARSING, text="Parsing")
            dataset = parse_input(
                text,
                config,
                token=token,
                accelerated=engine is ParserEngine.ACCELERATED,
                streaming=engine is ParserEngine.STREAMING,
                on_progress=lambda p: self._emit(
                    request_id, token, progress_message(request_id, p.model_dump(mode="json"))
                ),
                routines=self.routines,
                file_name=payload.get("file_name"),
                engine=engine,
                total_bytes=total,
            )
            metadata = dataset.metadata.model_copy(update={"file_size": total})
            dataset = dataset.model_copy(update={"metadata": metadata})

            records = metadata.total_records
            if engine is not ParserEngine.STREAMING:
                progress(ProgressPhase.FINALIZING, records=records, text="Finalizing")
            token.raise_if_cancelled()
            if dataset.is_failure:
                progress(ProgressPhase.ERROR, total, records, text=dataset.records[0].errors[0])
            else:
                progress(ProgressPhase.COMPLETE, total, records, text="Parsing complete")
            self._emit(request_id, token, result_message(request_id, dataset.model_dump(mode="json")))
        except ParseCancelledError:
            logger.info(f"Request {request_id} cancelled")
        except Exception as e:
            logger.error(f"Request {request_id} failed: {e}")
            self._emit(request_id, token, error_message(request_id, str(e)))


def run_worker(inbox, outbox, log_level: Optional[int] = None) -> None:
    """Entry point of the offload process.

    Reads messages from ``inbox`` until a ``None`` sentinel arrives.
    """
    if log_level is not None:
        logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s [worker] %(message)s")

    worker = ParseWorker(outbox)
    worker.start()
    logger.info("Parse worker started")
    try:
        while True:
            raw = inbox.get()
            if raw is None:
                break
            worker.handle(raw)
    except KeyboardInterrupt:
        logger.info("Parse worker interrupted")
    finally:
        worker.stop(timeout=1.0)
        logger.info("Parse worker stopped")
