"""Named workers sharing one store, with disjoint task-type assignments.

    group = WorkerGroup(
        store,
        handlers,
        workers=[
            WorkerInstanceConfig(name="billing", task_types=["billing:process"], concurrency=2),
            WorkerInstanceConfig(name="general"),  # everything billing does not claim
        ],
    )
    await group.start()
"""

from __future__ import annotations

import asyncio
import socket
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from workqueue.core.config import Settings, WorkerInstanceSettings, get_settings
from workqueue.core.logging import get_logger
from workqueue.queue.handlers import HandlerRegistry, TaskHandlerRegistration
from workqueue.queue.worker import Worker, WorkerConfig, WorkerStats
from workqueue.repositories.task_store import TaskStore
from workqueue.services.event_bus import EventBus

logger = get_logger("queue.worker_group")


@dataclass(slots=True)
class WorkerInstanceConfig:
    name: str
    task_types: list[str] | None = None
    omit_task_types: list[str] | None = None
    concurrency: int | None = None
    task_timeout: float | None = None
    handler_types: list[str] | None = None

    @classmethod
    def from_settings(cls, item: WorkerInstanceSettings) -> "WorkerInstanceConfig":
        return cls(
            name=item.name,
            task_types=list(item.task_types) or None,
            omit_task_types=list(item.omit_task_types) if item.omit_task_types is not None else None,
            concurrency=item.concurrency,
            task_timeout=item.task_timeout_seconds,
            handler_types=list(item.handler_types) if item.handler_types else None,
        )


class WorkerGroup:
    def __init__(
        self,
        store: TaskStore,
        handlers: HandlerRegistry | Iterable[TaskHandlerRegistration],
        workers: Sequence[WorkerInstanceConfig] | None = None,
        *,
        event_bus: EventBus | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.handlers = handlers if isinstance(handlers, HandlerRegistry) else HandlerRegistry(handlers)
        self.event_bus = event_bus
        self._settings = settings or get_settings()
        self._configs = list(workers) if workers else [WorkerInstanceConfig(name="default")]
        names = [item.name for item in self._configs]
        if len(set(names)) != len(names):
            raise ValueError(f"Worker names must be unique: {names}")
        self._workers: dict[str, Worker] = {}

    @property
    def workers(self) -> list[Worker]:
        return list(self._workers.values())

    def get_worker(self, name: str) -> Worker | None:
        return self._workers.get(name)

    def _claimed_types(self, exclude: WorkerInstanceConfig) -> list[str]:
        claimed: list[str] = []
        for item in self._configs:
            if item is exclude:
                continue
            for task_type in item.task_types or ():
                if task_type not in claimed:
                    claimed.append(task_type)
        return claimed

    def _build_config(self, item: WorkerInstanceConfig) -> WorkerConfig:
        omit = item.omit_task_types
        if not item.task_types and omit is None:
            omit = self._claimed_types(item)
        hostname = socket.gethostname() or "local"
        return WorkerConfig.from_settings(
            self._settings,
            worker_id=f"worker-{hostname}-{item.name}-{int(time.time() * 1000)}",
            concurrency=item.concurrency,
            task_timeout=item.task_timeout,
            task_types=list(item.task_types or []),
            omit_task_types=list(omit or []),
        )

    def _handlers_for(self, item: WorkerInstanceConfig) -> HandlerRegistry:
        if item.handler_types:
            return self.handlers.filter(item.handler_types)
        if item.task_types:
            return self.handlers.filter(item.task_types)
        return HandlerRegistry(self.handlers)

    def build_workers(self) -> list[Worker]:
        self._workers = {}
        for item in self._configs:
            worker = Worker(
                self.store,
                self._build_config(item),
                event_bus=self.event_bus,
                handlers=self._handlers_for(item),
            )
            self._workers[item.name] = worker
        return self.workers

    async def start(self) -> None:
        if not self._workers:
            self.build_workers()
        await asyncio.gather(*(worker.start() for worker in self._workers.values()))
        logger.info(
            "worker_group_started",
            workers=[worker.worker_id for worker in self._workers.values()],
        )

    async def stop(self) -> None:
        logger.info("worker_group_stopping", workers=len(self._workers))
        await asyncio.gather(*(worker.stop() for worker in self._workers.values()), return_exceptions=True)
        if self.event_bus is not None:
            await self.event_bus.drain()
        logger.info("worker_group_stopped")

    def get_stats(self) -> dict[str, WorkerStats]:
        return {name: worker.get_stats() for name, worker in self._workers.items()}
