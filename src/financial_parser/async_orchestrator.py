"""
Async execution service for parse requests.

``ParserService`` dispatches each request to the offload process when it is
available (streaming, accelerated or plain engine, chosen inside the worker) and
otherwise runs the plain engine in the default executor. Every request gets a
``ParseController`` for cancel/pause/resume and an entry in the pending-request
map that is removed exactly once: on result, error or cancel.

Several services may share one ``OffloadContext``. Its reader thread is the only
consumer of the worker outbox and routes each reply to the service that
subscribed the request id.

The offload process is started with the ``spawn`` start method, so scripts using
the service must guard their entry point with ``if __name__ == "__main__":``.
"""

import asyncio
import itertools
import logging
import os
import queue
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import multiprocessing as mp
from pydantic import BaseModel, ConfigDict, ValidationError

from financial_parser.cancellation import CancellationToken, ParseCancelledError, ProgressCallback
from financial_parser.config_models import ParseOptions, ParserConfig, ServiceSettings
from financial_parser.models import ParsedDataSet, ParseProgress, ParserEngine, ProgressPhase
from financial_parser.observability import EventType, LoggingHook, ObservabilityManager
from financial_parser.orchestrator import parse_input
from financial_parser.parsers.base_parser import error_dataset
from financial_parser.protocol import (
    MessageType,
    WorkerMessage,
    control_message,
    init_message,
    parse_message,
)
from financial_parser.routines import RoutineRegistry, default_registry
from financial_parser.worker import input_size, run_worker

logger = logging.getLogger(__name__)

_request_ids = itertools.count(1)


def next_request_id() -> str:
    """Process-unique request identifier."""
    return f"parse-{os.getpid()}-{next(_request_ids)}"


class OffloadContext:
    """The offload process, its two queues and the reader that routes worker replies.

    A context can be shared by several services. The process starts on the first
    ``acquire()`` and shuts down when the last holder calls ``release()``. One
    reader thread owns the outbox: the ``ready`` reply is cached for the current
    process start, and request messages go to the handler subscribed for their id.
    Exit listeners are called from the reader thread when the process dies.

    Args:
        log_level: Logging level configured inside the worker process (None = silent)
        shutdown_timeout: Seconds to wait for the worker to exit before terminating it
        poll_interval: Seconds between liveness checks of the reader
    """

    def __init__(self, log_level: Optional[int] = None, shutdown_timeout: float = 2.0,
                 poll_interval: float = 0.2):
        self.log_level = log_level
        self.shutdown_timeout = shutdown_timeout
        self.poll_interval = poll_interval
        self._ctx = mp.get_context("spawn")
        self._lock = threading.RLock()
        self._refs = 0
        self._handlers: Dict[str, Callable[[WorkerMessage], None]] = {}
        self._routes_lock = threading.Lock()
        self._exit_listeners: List[Callable[[], None]] = []
        self._ready = threading.Event()
        self._ready_payload: Dict[str, Any] = {}
        self._stopping = threading.Event()
        self._reader: Optional[threading.Thread] = None
        self.process = None
        self.inbox = None
        self.outbox = None

    @property
    def refs(self) -> int:
        return self._refs

    @property
    def alive(self) -> bool:
        return self.process is not None and self.process.is_alive()

    @property
    def started(self) -> bool:
        return self._reader is not None

    def acquire(self) -> None:
        """Take a reference, starting the worker process if it is not running."""
        with self._lock:
            if not self.alive:
                if self.started:
                    # Clean up after a worker that exited on its own
                    self._stop()
                self._start()
            self._refs += 1

    def release(self) -> None:
        """Drop a reference, stopping the worker when none remain."""
        with self._lock:
            if self._refs == 0:
                return
            self._refs -= 1
            if self._refs == 0 and self.started:
                self._stop()

    def _start(self) -> None:
        self._ready.clear()
        self._ready_payload = {}
        self._stopping.clear()
        self._launch()
        self._reader = threading.Thread(target=self._read_loop, name="financial-parser-reader", daemon=True)
        self._reader.start()

    def _stop(self) -> None:
        self._stopping.set()
        self._halt_worker()
        self._wake_reader()
        if self._reader is not threading.current_thread():
            self._reader.join(self.shutdown_timeout)
        self._reader = None
        self._close_channels()
        self._ready.clear()
        with self._routes_lock:
            self._handlers.clear()

    # Worker process

    def _launch(self) -> None:
        self.inbox = self._ctx.Queue()
        self.outbox = self._ctx.Queue()
        self.process = self._ctx.Process(
            target=run_worker,
            kwargs={"inbox": self.inbox, "outbox": self.outbox, "log_level": self.log_level},
            name="financial-parser-worker",
            daemon=True,
        )
        self.process.start()
        logger.info(f"Started parse worker process (pid {self.process.pid})")

    def _halt_worker(self) -> None:
        if self.process.is_alive():
            self.inbox.put(None)
            self.process.join(self.shutdown_timeout)
        if self.process.is_alive():
            logger.warning("Parse worker did not exit in time, terminating")
            self.process.terminate()
            self.process.join(self.shutdown_timeout)
        logger.info(f"Parse worker stopped (exit code {self.process.exitcode})")

    def _wake_reader(self) -> None:
        self.outbox.put(None)

    def _close_channels(self) -> None:
        for q in (self.inbox, self.outbox):
            q.cancel_join_thread()
            q.close()
        self.process = self.inbox = self.outbox = None

    def send(self, message: WorkerMessage) -> None:
        self.inbox.put(message.to_wire())

    def receive(self, timeout: float):
        """Next worker message dict; raises queue.Empty after ``timeout`` seconds."""
        return self.outbox.get(timeout=timeout)

    # Routing

    def handshake(self, routines: Dict[str, str], timeout: float) -> Optional[Dict[str, Any]]:
        """Register routines with the worker and wait for its ``ready`` reply.

        The reply is cached per process start, so later callers only register
        their routines. Blocks the calling thread.

        Returns:
            The ready payload, or None on timeout or when the worker exits
        """
        cached = self._ready.is_set()
        self.send(init_message(routines))
        if cached:
            return dict(self._ready_payload)
        deadline = time.monotonic() + timeout
        while not self._ready.wait(max(0.0, min(self.poll_interval, deadline - time.monotonic()))):
            if time.monotonic() >= deadline or not self.alive:
                return None
        return dict(self._ready_payload)

    def subscribe(self, request_id: str, handler: Callable[[WorkerMessage], None]) -> None:
        """Route messages for ``request_id`` to ``handler`` until its terminal message."""
        with self._routes_lock:
            self._handlers[request_id] = handler

    def unsubscribe(self, request_id: str) -> None:
        with self._routes_lock:
            self._handlers.pop(request_id, None)

    def add_exit_listener(self, listener: Callable[[], None]) -> None:
        with self._routes_lock:
            if listener not in self._exit_listeners:
                self._exit_listeners.append(listener)

    def remove_exit_listener(self, listener: Callable[[], None]) -> None:
        with self._routes_lock:
            if listener in self._exit_listeners:
                self._exit_listeners.remove(listener)

    def _read_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                raw = self.receive(self.poll_interval)
            except queue.Empty:
                if not self.alive and not self._stopping.is_set():
                    self._worker_exited()
                    return
                continue
            except (EOFError, OSError, ValueError) as e:
                if not self._stopping.is_set():
                    logger.warning(f"Parse worker connection lost: {e}")
                    self._worker_exited()
                return
            if raw is None:
                continue
            try:
                message = WorkerMessage.from_wire(raw)
            except ValidationError as e:
                logger.warning(f"Dropping malformed worker message: {e.error_count()} validation errors")
                continue
            self._route(message)

    def _route(self, message: WorkerMessage) -> None:
        if message.type is MessageType.READY:
            self._ready_payload = dict(message.payload)
            self._ready.set()
            return

        with self._routes_lock:
            handler = self._handlers.get(message.id)
            if handler is not None and message.is_terminal:
                del self._handlers[message.id]
        if handler is None:
            # Cancelled or unknown request
            logger.debug(f"Dropping '{message.type.value}' for inactive request {message.id}")
            return
        try:
            handler(message)
        except Exception as e:
            logger.error(f"Worker message handler failed for {message.id}: {e}")

    def _worker_exited(self) -> None:
        logger.warning("Parse worker exited unexpectedly")
        self._ready.clear()
        with self._routes_lock:
            listeners = list(self._exit_listeners)
        for listener in listeners:
            try:
                listener()
            except Exception as e:
                logger.error(f"Worker exit listener failed: {e}")


class ParseController:
    """Live handle of one parse request.

    Cancel, pause and resume become no-ops once the request has terminated.
    Methods must be called from the event loop thread.
    """

    def __init__(self, request_id: str, service: "ParserService", future: "asyncio.Future"):
        self.request_id = request_id
        self._service = service
        self._future = future
        self._cancelled = False
        self._paused = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def done(self) -> bool:
        return self._future.done()

    def cancel(self) -> None:
        if self.done:
            return
        self._cancelled = True
        self._paused = False
        self._service._cancel(self.request_id)

    def pause(self) -> None:
        if self.done or self._paused:
            return
        self._paused = True
        self._service._control(self.request_id, MessageType.PAUSE)

    def resume(self) -> None:
        if self.done or not self._paused:
            return
        self._paused = False
        self._service._control(self.request_id, MessageType.RESUME)

    async def result(self) -> ParsedDataSet:
        """Wait for the dataset.

        Raises:
            ParseCancelledError: If the request was cancelled
        """
        return await asyncio.shield(self._future)


class ServiceStatus(BaseModel):
    """Snapshot of the service state."""
    model_config = ConfigDict(frozen=True)

    offload_ready: bool
    accelerated_available: bool
    pending_count: int
    pending_ids: List[str]


@dataclass
class PendingRequest:
    """Bookkeeping of one in-flight request."""
    future: "asyncio.Future"
    controller: ParseController
    config: ParserConfig
    total_bytes: int
    engine: ParserEngine
    on_progress: Optional[ProgressCallback] = None
    token: Optional[CancellationToken] = None
    last_bytes: int = 0
    last_records: int = 0

    def notify(self, progress: ParseProgress) -> None:
        self.last_bytes = max(self.last_bytes, progress.bytes_processed)
        self.last_records = max(self.last_records, progress.records_processed)
        if self.on_progress is None:
            return
        try:
            self.on_progress(progress)
        except Exception as e:
            logger.error(f"Progress callback failed for {self.controller.request_id}: {e}")


def _retrieve_exception(future: "asyncio.Future") -> None:
    # Cancelled requests nobody awaits must not log "exception was never retrieved"
    if not future.cancelled():
        future.exception()


class ParserService:
    """Dispatches parse requests to the offload process or the synchronous engine.

    Args:
        settings: Service settings (timeouts, streaming threshold)
        context: Offload context to share; a private one is created when None
        observability: Observability manager (logging hook only when None)
        routines: Routine registry; importable routines are exported to the worker
        worker_log_level: Logging level inside a privately created worker process
    """

    def __init__(
        self,
        settings: Optional[ServiceSettings] = None,
        context: Optional[OffloadContext] = None,
        observability: Optional[ObservabilityManager] = None,
        routines: Optional[RoutineRegistry] = None,
        worker_log_level: Optional[int] = None,
    ):
        self.settings = settings or ServiceSettings()
        self.context = context or OffloadContext(log_level=worker_log_level,
                                                 shutdown_timeout=self.settings.shutdown_timeout,
                                                 poll_interval=self.settings.poll_interval)
        self.observability = observability or ObservabilityManager([LoggingHook()])
        self.routines = routines or default_registry
        self._pending: Dict[str, PendingRequest] = {}
        self._offload_ready = False
        self._accelerated_available = False
        self._acquired = False
        self._exported: Dict[str, str] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # Lifecycle

    async def initialize(self) -> Dict[str, bool]:
        """Start (or join) the offload process and wait for its ``ready`` reply.

        On handshake timeout or startup failure the service degrades to the
        synchronous engine.

        Returns:
            ``{"offload_ready": bool, "accelerated_available": bool}``
        """
        if self._offload_ready:
            return self._readiness()

        loop = asyncio.get_running_loop()
        self._loop = loop
        # A reference left over from a failed start is dropped before taking a new one
        await self._release(loop)
        try:
            await loop.run_in_executor(None, self.context.acquire)
            self._acquired = True
        except (OSError, RuntimeError) as e:
            logger.warning(f"Could not start parse worker, using synchronous parsing: {e}")
            self.observability.emit_event(EventType.WORKER_FAILED, details={"reason": str(e)})
            return self._readiness()

        self.context.add_exit_listener(self._on_worker_exit)
        self._exported = self.routines.export()
        ready = await loop.run_in_executor(
            None, self.context.handshake, self._exported, self.settings.handshake_timeout
        )
        if ready is None:
            logger.warning(
                f"Parse worker handshake timed out after {self.settings.handshake_timeout}s, "
                f"using synchronous parsing"
            )
            self.observability.emit_event(EventType.WORKER_FAILED, details={"reason": "handshake timeout"})
            self.context.remove_exit_listener(self._on_worker_exit)
            await self._release(loop)
            return self._readiness()

        self._offload_ready = True
        self._accelerated_available = bool(ready.get("accelerated_available"))
        self.observability.emit_event(
            EventType.WORKER_READY, details={"accelerated": self._accelerated_available}
        )
        logger.info(f"Parse worker ready (accelerated={self._accelerated_available})")
        return self._readiness()

    async def terminate(self) -> None:
        """Cancel pending requests and release the offload process."""
        for request_id in list(self._pending):
            self._cancel(request_id)

        self._offload_ready = False
        self.context.remove_exit_listener(self._on_worker_exit)
        await self._release(asyncio.get_running_loop())

    async def _release(self, loop) -> None:
        if self._acquired:
            self._acquired = False
            await loop.run_in_executor(None, self.context.release)

    async def __aenter__(self) -> "ParserService":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.terminate()

    def _readiness(self) -> Dict[str, bool]:
        return {"offload_ready": self._offload_ready, "accelerated_available": self._accelerated_available}

    def status(self) -> ServiceStatus:
        return ServiceStatus(
            offload_ready=self._offload_ready,
            accelerated_available=self._accelerated_available,
            pending_count=len(self._pending),
            pending_ids=list(self._pending),
        )

    # Requests

    async def submit(
        self,
        data: Union[str, bytes],
        config: Optional[ParserConfig] = None,
        *,
        on_progress: Optional[ProgressCallback] = None,
        options: Optional[ParseOptions] = None,
        file_name: Optional[str] = None,
    ) -> ParseController:
        """Start a parse request and return its controller without waiting.

        Args:
            data: Input text or bytes
            config: Parser configuration (format auto-detected when unset)
            on_progress: Progress callback, called on the event loop thread
            options: Per-request execution switches
            file_name: Source file name recorded in the metadata

        Returns:
            ParseController; ``await controller.result()`` yields the dataset
        """
        loop = asyncio.get_running_loop()
        config = config or ParserConfig()
        options = options or ParseOptions()
        request_id = next_request_id()
        future = loop.create_future()
        future.add_done_callback(_retrieve_exception)
        controller = ParseController(request_id, self, future)

        offload = options.use_offload and self._offload_ready and self._routine_offloadable(config)
        pending = PendingRequest(
            future=future,
            controller=controller,
            config=config,
            total_bytes=input_size(data),
            engine=ParserEngine.OFFLOAD if offload else ParserEngine.SYNC,
            on_progress=on_progress,
        )
        self._pending[request_id] = pending
        self.observability.start_timer("parse_duration", request_id)
        self.observability.histogram(
            "input_bytes", pending.total_bytes, tags={"engine": pending.engine.value}
        )
        self.observability.emit_event(
            EventType.PARSE_START,
            request_id=request_id,
            details={"engine": pending.engine.value, "bytes": pending.total_bytes},
        )

        if offload:
            self.context.subscribe(request_id, self._on_worker_message)
            self.context.send(parse_message(
                request_id,
                data,
                config.model_dump(mode="json", exclude_unset=True),
                options.model_dump(mode="json"),
                file_name,
                streaming_threshold=self.settings.streaming_threshold,
            ))
        else:
            pending.token = CancellationToken()
            pending.notify(ParseProgress.create(ProgressPhase.PARSING, 0, pending.total_bytes, message="Parsing"))
            task = loop.run_in_executor(None, self._run_sync, data, config, pending.token, file_name)
            task.add_done_callback(lambda f: self._sync_done(request_id, f))
        return controller

    async def parse(
        self,
        data: Union[str, bytes],
        config: Optional[ParserConfig] = None,
        *,
        on_progress: Optional[ProgressCallback] = None,
        options: Optional[ParseOptions] = None,
        file_name: Optional[str] = None,
    ) -> Tuple[ParsedDataSet, ParseController]:
        """Parse and wait for the dataset.

        Returns:
            Tuple of (dataset, controller)

        Raises:
            ParseCancelledError: If the request was cancelled
        """
        controller = await self.submit(data, config, on_progress=on_progress, options=options,
                                       file_name=file_name)
        dataset = await controller.result()
        return dataset, controller

    async def parse_file(
        self,
        path: Union[str, Path],
        config: Optional[ParserConfig] = None,
        *,
        on_progress: Optional[ProgressCallback] = None,
        options: Optional[ParseOptions] = None,
    ) -> Tuple[ParsedDataSet, ParseController]:
        """Read a file and parse it; files above the streaming threshold always stream."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Input file not found: {path}")
        data = await asyncio.get_running_loop().run_in_executor(None, path.read_bytes)
        options = options or ParseOptions()
        if len(data) > self.settings.streaming_threshold and not options.streaming:
            options = options.model_copy(update={"streaming": True})
        return await self.parse(data, config, on_progress=on_progress, options=options, file_name=path.name)

    def _routine_offloadable(self, config: ParserConfig) -> bool:
        if not config.parse_routine:
            return True
        if config.parse_routine in self._exported:
            return True
        logger.debug(f"Routine '{config.parse_routine}' is not exported, parsing synchronously")
        return False

    # Synchronous path

    def _run_sync(self, data, config: ParserConfig, token: CancellationToken,
                  file_name: Optional[str]) -> ParsedDataSet:
        try:
            return parse_input(data, config, token=token, routines=self.routines,
                               file_name=file_name, engine=ParserEngine.SYNC)
        except ParseCancelledError:
            raise
        except Exception as e:
            logger.exception("Synchronous parse failed")
            return error_dataset(config, f"Parse failed: {e}", engine=ParserEngine.SYNC)

    def _sync_done(self, request_id: str, task: "asyncio.Future") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if request_id not in self._pending or isinstance(error, ParseCancelledError):
            return
        pending = self._pending[request_id]
        if error is not None:
            dataset = error_dataset(pending.config, f"Parse failed: {error}", engine=ParserEngine.SYNC)
        else:
            dataset = task.result()
        phase = ProgressPhase.ERROR if dataset.is_failure else ProgressPhase.COMPLETE
        pending.notify(ParseProgress.create(
            phase, pending.total_bytes, pending.total_bytes,
            records_processed=dataset.metadata.total_records,
            message=dataset.records[0].errors[0] if dataset.is_failure else "Parsing complete",
        ))
        self._finish(request_id, dataset)

    # Offload path

    def _post(self, callback, *args) -> None:
        """Schedule ``callback`` on the service loop from the context reader thread."""
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            logger.debug("Event loop closed, dropping worker notification")

    def _on_worker_message(self, message: WorkerMessage) -> None:
        self._post(self._dispatch, message)

    def _on_worker_exit(self) -> None:
        self._post(self._worker_died)

    def _dispatch(self, message: WorkerMessage) -> None:
        pending = self._pending.get(message.id)
        if pending is None:
            # Cancelled or unknown request
            logger.debug(f"Dropping '{message.type.value}' for inactive request {message.id}")
            return

        if message.type is MessageType.PROGRESS:
            pending.notify(ParseProgress.model_validate(message.payload))
        elif message.type is MessageType.RESULT:
            try:
                dataset = ParsedDataSet.model_validate(message.payload)
            except ValidationError as e:
                self._fail(message.id, f"Invalid result from parse worker: {e.error_count()} validation errors")
                return
            self._finish(message.id, dataset)
        elif message.type is MessageType.ERROR:
            self._fail(message.id, message.payload.get("message") or "Unknown parse worker error")
        else:
            logger.warning(f"Unexpected '{message.type.value}' message from parse worker")

    def _fail(self, request_id: str, text: str) -> None:
        pending = self._pending[request_id]
        pending.notify(ParseProgress.create(
            ProgressPhase.ERROR, pending.last_bytes, pending.total_bytes,
            records_processed=pending.last_records, message=text,
        ))
        self._finish(request_id, error_dataset(pending.config, text, engine=pending.engine))

    def _worker_died(self) -> None:
        self.context.remove_exit_listener(self._on_worker_exit)
        if not self._acquired:
            # Terminated, or the handshake already gave up on this worker
            return
        logger.warning("Parse worker exited unexpectedly, falling back to synchronous parsing")
        self._offload_ready = False
        self.observability.emit_event(EventType.WORKER_FAILED, details={"reason": "worker exited"})
        for request_id, pending in list(self._pending.items()):
            if pending.token is None:
                self._fail(request_id, "Parse worker terminated unexpectedly")
        # The dead process is cleaned up once its last holder lets go
        self._acquired = False
        self.context.release()

    # Terminal transitions

    def _finish(self, request_id: str, dataset: ParsedDataSet) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        self.context.unsubscribe(request_id)
        metadata = dataset.metadata
        tags = {"engine": (metadata.parser_engine or pending.engine).value}
        self.observability.end_timer("parse_duration", request_id, tags=tags)
        if dataset.is_failure:
            self.observability.emit_event(
                EventType.PARSE_ERROR, request_id=request_id,
                details={"error": dataset.records[0].errors[0]},
            )
        else:
            self.observability.counter("records_parsed", metadata.total_records, tags=tags)
            self.observability.emit_event(
                EventType.PARSE_COMPLETE, request_id=request_id,
                details={"records": metadata.total_records, "invalid": metadata.invalid_records},
            )
        if not pending.future.done():
            pending.future.set_result(dataset)

    def _cancel(self, request_id: str) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        self.context.unsubscribe(request_id)
        if pending.token is not None:
            pending.token.cancel()
        elif self._offload_ready:
            self.context.send(control_message(MessageType.CANCEL, request_id))

        pending.notify(ParseProgress.create(
            ProgressPhase.CANCELLED, pending.last_bytes, pending.total_bytes,
            records_processed=pending.last_records, message="Parse cancelled",
        ))
        self.observability.cancel_timer("parse_duration", request_id)
        self.observability.emit_event(EventType.PARSE_CANCELLED, request_id=request_id)
        if not pending.future.done():
            pending.future.set_exception(ParseCancelledError(f"Request {request_id} was cancelled"))

    def _control(self, request_id: str, message_type: MessageType) -> None:
        pending = self._pending.get(request_id)
        if pending is None:
            return
        if pending.token is not None:
            if message_type is MessageType.PAUSE:
                pending.token.pause()
            else:
                pending.token.resume()
        elif self._offload_ready:
            self.context.send(control_message(message_type, request_id))
