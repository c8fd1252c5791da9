"""Worker registry."""

from __future__ import annotations

import threading
from types import MappingProxyType
from typing import TYPE_CHECKING

from loguru import logger

from lessonloop.types import WorkerName, WorkerStatus

if TYPE_CHECKING:
    from lessonloop.workers.base import Worker


class WorkerRegistry:
    """Name to worker mapping that tolerates lookups during registration.

    Writers copy the mapping under a lock and swap the reference, so readers
    always see one complete version of it.
    """

    def __init__(self) -> None:
        self._write_lock = threading.Lock()
        self._workers: MappingProxyType[WorkerName, Worker] = MappingProxyType({})

    def register(self, worker: Worker, name: WorkerName | None = None) -> None:
        key = name or worker.name
        with self._write_lock:
            updated = dict(self._workers)
            if key in updated:
                logger.warning("registry.overwrite name={} previous={}", key, type(updated[key]).__name__)
            updated[key] = worker
            self._workers = MappingProxyType(updated)
        logger.info("registry.register name={} worker={}", key, type(worker).__name__)

    def unregister(self, name: WorkerName) -> bool:
        with self._write_lock:
            if name not in self._workers:
                return False
            updated = dict(self._workers)
            del updated[name]
            self._workers = MappingProxyType(updated)
        logger.info("registry.unregister name={}", name)
        return True

    def lookup(self, name: WorkerName) -> Worker | None:
        return self._workers.get(name)

    def has(self, name: WorkerName) -> bool:
        return name in self._workers

    def names(self) -> list[WorkerName]:
        return sorted(self._workers)

    def items(self) -> list[tuple[WorkerName, Worker]]:
        return sorted(self._workers.items(), key=lambda item: item[0])

    def statuses(self) -> list[WorkerStatus]:
        statuses: list[WorkerStatus] = []
        for name, worker in self.items():
            status = worker.status()
            statuses.append(WorkerStatus(name=name, busy=status.busy, queue_depth=status.queue_depth))
        return statuses

    def __len__(self) -> int:
        return len(self._workers)
