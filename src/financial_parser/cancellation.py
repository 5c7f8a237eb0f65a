"""Cooperative cancellation and pause primitives shared by the engines and the worker."""

import threading
from typing import Callable, Optional

from financial_parser.models import ParseProgress

ProgressCallback = Callable[[ParseProgress], None]


class ParseCancelledError(Exception):
    """Raised when a parse request is cancelled. Never reported as a parse error."""


class CancellationToken:
    """Cancel/pause flags read by an engine at chunk or record boundaries.

    Pausing blocks the engine on an Event until resumed or cancelled.
    """

    def __init__(self):
        self._cancelled = threading.Event()
        self._running = threading.Event()
        self._running.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def paused(self) -> bool:
        return not self._running.is_set()

    def cancel(self) -> None:
        self._cancelled.set()
        # Wake a paused engine so it can observe the cancellation
        self._running.set()

    def pause(self) -> None:
        if not self.cancelled:
            self._running.clear()

    def resume(self) -> None:
        self._running.set()

    def raise_if_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise ParseCancelledError("Parse cancelled")

    def checkpoint(self, timeout: Optional[float] = None) -> None:
        """Block while paused, then raise ParseCancelledError if cancelled."""
        self.raise_if_cancelled()
        self._running.wait(timeout)
        self.raise_if_cancelled()
