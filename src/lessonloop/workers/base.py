"""Worker contract shared by content, judge and detector workers."""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from typing import Any, ClassVar

from lessonloop.errors import UnsupportedPayloadError
from lessonloop.types import Envelope, EnvelopeKind, WorkerName, WorkerStatus, WorkResult


class Worker(ABC):
    """A named, independently replaceable unit behind the dispatcher.

    Subclasses implement `handle` for request envelopes. Exceptions raised
    from `handle` are left to the dispatcher, which turns them into a
    `worker_fault` result.
    """

    default_name: ClassVar[WorkerName] = ""

    def __init__(self, name: WorkerName | None = None) -> None:
        self.name: WorkerName = name or self.default_name or type(self).__name__
        self._lock = threading.Lock()
        self._in_flight = 0

    def status(self) -> WorkerStatus:
        """Busy while any envelope is in flight; queue depth counts the ones waiting behind it."""
        with self._lock:
            in_flight = self._in_flight
        return WorkerStatus(name=self.name, busy=in_flight > 0, queue_depth=max(0, in_flight - 1))

    async def receive(self, envelope: Envelope) -> WorkResult:
        with self._lock:
            self._in_flight += 1
        start = time.monotonic()
        try:
            if envelope.kind is EnvelopeKind.NOTIFICATION:
                data = await self.on_notification(envelope)
            else:
                data = await self.handle(envelope)
        finally:
            with self._lock:
                self._in_flight -= 1
        elapsed_ms = (time.monotonic() - start) * 1000
        return WorkResult.success(data, worker=self.name, elapsed_ms=elapsed_ms)

    @abstractmethod
    async def handle(self, envelope: Envelope) -> Any:
        """Handle one request envelope and return its data."""

    async def on_notification(self, envelope: Envelope) -> Any:
        _ = envelope
        return {"acknowledged": True}

    def unsupported(self, envelope: Envelope) -> UnsupportedPayloadError:
        return UnsupportedPayloadError(f"{self.name} cannot handle payload {type(envelope.payload).__name__}")
