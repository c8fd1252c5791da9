"""In-process dispatcher that routes envelopes to registered workers."""

from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from typing import Any

from loguru import logger

from lessonloop.registry import WorkerRegistry
from lessonloop.types import Envelope, EnvelopeKind, ErrorKind, Priority, WorkerName, WorkResult

DEFAULT_HISTORY_CAP = 1000


class Dispatcher:
    """Deliver envelopes by worker name and keep a bounded history of them."""

    def __init__(
        self,
        registry: WorkerRegistry,
        *,
        history_cap: int = DEFAULT_HISTORY_CAP,
        default_timeout_seconds: float | None = None,
    ) -> None:
        if history_cap < 1:
            raise ValueError("history_cap must be at least 1")
        self._registry = registry
        self._history: deque[Envelope] = deque(maxlen=history_cap)
        self._history_lock = threading.Lock()
        self._default_timeout_seconds = default_timeout_seconds

    @property
    def registry(self) -> WorkerRegistry:
        return self._registry

    async def send(
        self,
        sender: WorkerName,
        recipient: WorkerName,
        payload: Any,
        *,
        kind: EnvelopeKind = EnvelopeKind.REQUEST,
        priority: Priority = Priority.MEDIUM,
        timeout_seconds: float | None = None,
    ) -> WorkResult:
        worker = self._registry.lookup(recipient)
        if worker is None:
            logger.warning("dispatch.recipient_not_found sender={} recipient={}", sender, recipient)
            return WorkResult.failure(
                ErrorKind.RECIPIENT_NOT_FOUND,
                f"recipient '{recipient}' not found",
                worker=recipient,
            )

        envelope = Envelope(sender=sender, recipient=recipient, kind=kind, payload=payload, priority=priority)
        with self._history_lock:
            self._history.append(envelope)

        timeout = timeout_seconds if timeout_seconds is not None else self._default_timeout_seconds
        logger.debug("dispatch.send sender={} recipient={} kind={}", sender, recipient, kind)
        start = time.monotonic()
        try:
            async with asyncio.timeout(timeout):
                result = await worker.receive(envelope)
        except TimeoutError:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.warning("dispatch.timeout recipient={} timeout={}s", recipient, timeout)
            return WorkResult.failure(
                ErrorKind.TIMEOUT,
                f"no result from '{recipient}' within {timeout}s",
                worker=recipient,
                elapsed_ms=elapsed_ms,
            )
        except Exception as exc:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.opt(exception=True).warning("dispatch.worker_fault recipient={}", recipient)
            return WorkResult.failure(
                ErrorKind.WORKER_FAULT,
                f"{type(exc).__name__}: {exc}",
                worker=recipient,
                elapsed_ms=elapsed_ms,
            )

        if not isinstance(result, WorkResult):
            elapsed_ms = (time.monotonic() - start) * 1000
            return WorkResult.success(result, worker=recipient, elapsed_ms=elapsed_ms)
        return result

    async def broadcast(
        self,
        sender: WorkerName,
        payload: Any,
        *,
        kind: EnvelopeKind = EnvelopeKind.NOTIFICATION,
        priority: Priority = Priority.MEDIUM,
    ) -> dict[WorkerName, WorkResult]:
        """Send one payload to every worker but the sender; deliveries are independent."""

        recipients = [name for name in self._registry.names() if name != sender]
        results = await asyncio.gather(
            *(self.send(sender, name, payload, kind=kind, priority=priority) for name in recipients)
        )
        return dict(zip(recipients, results, strict=True))

    def history(self, limit: int = 100) -> list[Envelope]:
        with self._history_lock:
            entries = list(self._history)
        if limit <= 0:
            return []
        return entries[-limit:]

    def clear_history(self) -> None:
        with self._history_lock:
            self._history.clear()
