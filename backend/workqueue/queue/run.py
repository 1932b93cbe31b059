"""
Worker process entry point.

Usage:
    python -m workqueue.queue.run
    python -m workqueue.queue.run --concurrency 2 --task-types email:send,data:sync
    python -m workqueue.queue.run --omit-task-types report:generate

Named workers can also be configured with ``WORKQUEUE_WORKER_INSTANCES``::

    WORKQUEUE_WORKER_INSTANCES='[{"name": "billing", "task_types": ["billing:process"], "concurrency": 2},
                                 {"name": "general"}]'
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import signal
from collections.abc import Sequence

from workqueue.core.config import Settings, get_settings
from workqueue.core.database import build_engine, build_session_factory
from workqueue.core.logging import get_logger, setup_logging
from workqueue.queue.handlers import HandlerRegistry
from workqueue.queue.maintenance import start_maintenance_scheduler, stop_maintenance_scheduler
from workqueue.queue.worker_group import WorkerGroup, WorkerInstanceConfig
from workqueue.repositories.task_store import TaskStore
from workqueue.services.event_bus import EventBus
from workqueue.services.task_event_listeners import register_task_event_listeners
from workqueue.services.task_queue_service import TaskQueueService

logger = get_logger("queue.run")


def _split(value: str | None) -> list[str] | None:
    if value is None:
        return None
    items = [item.strip() for item in value.split(",") if item.strip()]
    return items


def load_handlers(modules: Sequence[str]) -> HandlerRegistry:
    """Merge the ``handlers`` registry exported by each handler module."""
    registry = HandlerRegistry()
    for module_name in modules:
        module = importlib.import_module(module_name)
        exported = getattr(module, "handlers", None)
        if exported is None:
            raise RuntimeError(f"Handler module {module_name} does not export 'handlers'")
        for registration in exported:
            registry.add(registration)
        logger.info("handler_module_loaded", module=module_name, handlers=len(exported))
    return registry


def build_worker_configs(args: argparse.Namespace, settings: Settings) -> list[WorkerInstanceConfig]:
    cli_override = any(
        value is not None for value in (args.concurrency, args.task_types, args.omit_task_types)
    )
    if settings.worker_instances and not cli_override:
        return [WorkerInstanceConfig.from_settings(item) for item in settings.worker_instances]
    return [
        WorkerInstanceConfig(
            name=args.name,
            task_types=_split(args.task_types) or None,
            omit_task_types=_split(args.omit_task_types),
            concurrency=args.concurrency,
        )
    ]


async def run(args: argparse.Namespace) -> None:
    settings = get_settings()
    setup_logging(debug=settings.app_debug)

    engine = build_engine(settings.database_url)
    store = TaskStore(build_session_factory(engine))
    bus = register_task_event_listeners(EventBus())
    service = TaskQueueService(store, bus, settings=settings)

    group = WorkerGroup(
        store,
        load_handlers(settings.handler_modules),
        build_worker_configs(args, settings),
        event_bus=bus,
        settings=settings,
    )

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            logger.warning("signal_handler_unavailable", signal=sig.name)

    try:
        await group.start()
        if not args.no_maintenance:
            start_maintenance_scheduler(service, settings)
        for worker in group.workers:
            logger.info("worker_running", worker_id=worker.worker_id, env=settings.app_env)
        await stop_requested.wait()
        logger.info("worker_shutdown_requested")
    finally:
        stop_maintenance_scheduler()
        await group.stop()
        await engine.dispose()
        logger.info("worker_process_exited")


def main(argv: Sequence[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run background task workers.")
    parser.add_argument("--name", default="default", help="Worker name used in the worker id")
    parser.add_argument("--concurrency", type=int, default=None)
    parser.add_argument("--task-types", default=None, help="Comma separated task types to process")
    parser.add_argument("--omit-task-types", default=None, help="Comma separated task types to skip")
    parser.add_argument("--no-maintenance", action="store_true", help="Do not schedule retention cleanup")
    args = parser.parse_args(argv)
    if args.concurrency is not None and args.concurrency < 1:
        parser.error("--concurrency must be >= 1")
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
