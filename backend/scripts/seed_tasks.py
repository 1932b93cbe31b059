"""
Enqueue sample tasks for the example handlers.

Usage:
    python backend/scripts/seed_tasks.py --count 10
    python backend/scripts/seed_tasks.py --count 3 --type report:generate
"""

import argparse
import asyncio
import itertools

from workqueue.core.config import get_settings
from workqueue.core.context import system_context
from workqueue.core.database import build_engine, build_session_factory, init_db
from workqueue.core.logging import setup_logging
from workqueue.models.task import TaskPriority
from workqueue.repositories.task_store import TaskStore
from workqueue.services.task_queue_service import TaskQueueService

SAMPLE_PAYLOADS = {
    "email:send": {"to": "user@example.com", "subject": "Welcome!", "template": "welcome"},
    "report:generate": {"report_type": "daily", "params": {"range": "24h"}},
    "data:sync": {"source": "crm", "target": "warehouse"},
}


async def run(count: int = 10, task_type: str | None = None) -> None:
    settings = get_settings()
    setup_logging(debug=settings.app_debug)
    engine = build_engine(settings.database_url)
    await init_db(engine)
    service = TaskQueueService(TaskStore(build_session_factory(engine)), settings=settings)
    ctx = system_context("seed")

    types = [task_type] if task_type else list(SAMPLE_PAYLOADS)
    priorities = itertools.cycle([TaskPriority.LOW, TaskPriority.NORMAL, TaskPriority.HIGH])
    try:
        for idx, current in zip(range(count), itertools.cycle(types)):
            outcome = await service.enqueue(
                {
                    "type": current,
                    "payload": SAMPLE_PAYLOADS.get(current, {}),
                    "priority": int(next(priorities)),
                },
                ctx,
            )
            print(f"Enqueued #{idx + 1} id={outcome.task.id} type={current}")
    finally:
        await engine.dispose()
    print(f"Done. Enqueued {count} tasks.")


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--count", type=int, default=10)
    parser.add_argument("--type", dest="task_type", default=None)
    args = parser.parse_args()
    asyncio.run(run(count=max(1, args.count), task_type=args.task_type))


if __name__ == "__main__":
    main()
