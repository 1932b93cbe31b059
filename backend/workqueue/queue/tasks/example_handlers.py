"""Example task handlers executed in workers.

Enqueue one of these with::

    await service.enqueue(
        {"type": "email:send", "payload": {"to": "user@example.com", "subject": "Welcome!", "template": "welcome"}},
        system_context(),
    )
"""

from __future__ import annotations

import asyncio

from workqueue.core.logging import get_logger
from workqueue.models.task import utcnow
from workqueue.queue.handlers import HandlerRegistry, TaskHandlerContext, TaskHandlerResult

logger = get_logger("queue.example_handlers")
SHUTDOWN_MESSAGE = "Worker shutting down, task will be retried"
SIMULATED_STEP_SEC = 0.1

handlers = HandlerRegistry()


@handlers.handler("email:send", timeout=30.0, max_attempts=3)
async def send_email(context: TaskHandlerContext) -> TaskHandlerResult:
    payload = context.payload
    recipient = payload.get("to")
    logger.info("email_send_started", to=recipient, subject=payload.get("subject"), template=payload.get("template"))

    if context.is_shutting_down():
        return TaskHandlerResult.fail(SHUTDOWN_MESSAGE)

    # TODO: hand off to the mail provider client once one is configured.
    await asyncio.sleep(SIMULATED_STEP_SEC)

    logger.info("email_send_completed", to=recipient)
    return TaskHandlerResult.ok({"sent_at": utcnow().isoformat(), "recipient": recipient})


@handlers.handler("report:generate", timeout=300.0, max_attempts=2)
async def generate_report(context: TaskHandlerContext) -> TaskHandlerResult:
    report_type = context.payload.get("report_type") or "summary"
    logger.info("report_generate_started", report_type=report_type, params=context.payload.get("params") or {})

    for _ in range(5):
        if context.is_shutting_down():
            return TaskHandlerResult.fail(SHUTDOWN_MESSAGE)
        await asyncio.sleep(SIMULATED_STEP_SEC)

    logger.info("report_generate_completed", report_type=report_type)
    return TaskHandlerResult.ok(
        {
            "generated_at": utcnow().isoformat(),
            "report_type": report_type,
            "file_url": f"/reports/{report_type}-{context.task.id}.pdf",
        }
    )


@handlers.handler("data:sync", timeout=60.0, max_attempts=5)
async def sync_data(context: TaskHandlerContext) -> TaskHandlerResult:
    source = context.payload.get("source")
    target = context.payload.get("target")
    logger.info("data_sync_started", source=source, target=target)

    await asyncio.sleep(SIMULATED_STEP_SEC)

    return TaskHandlerResult.ok(
        {
            "synced_at": utcnow().isoformat(),
            "source": source,
            "target": target,
            "records_processed": 100,
        }
    )
