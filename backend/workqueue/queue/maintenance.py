"""Scheduled queue maintenance (retention cleanup of finished tasks)."""

from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from workqueue.core.config import Settings, get_settings
from workqueue.core.context import system_context
from workqueue.core.logging import get_logger
from workqueue.services.task_queue_service import TaskQueueService

logger = get_logger("queue.maintenance")

CLEANUP_JOB_ID = "worker_tasks_retention_cleanup"

_scheduler: AsyncIOScheduler | None = None


async def run_retention_cleanup(service: TaskQueueService, retention_days: int) -> int:
    try:
        deleted = await service.cleanup(retention_days, system_context("maintenance"))
    except Exception as exc:  # noqa: BLE001
        logger.error("retention_cleanup_failed", retention_days=retention_days, error=str(exc))
        return 0
    logger.info("retention_cleanup_finished", retention_days=retention_days, deleted=deleted)
    return deleted


def start_maintenance_scheduler(
    service: TaskQueueService,
    settings: Settings | None = None,
) -> AsyncIOScheduler | None:
    global _scheduler
    settings = settings or get_settings()
    if _scheduler is not None:
        return _scheduler
    if not settings.cleanup_enabled:
        logger.info("maintenance_scheduler_disabled")
        return None

    _scheduler = AsyncIOScheduler(timezone=settings.cleanup_timezone)
    _scheduler.add_job(
        run_retention_cleanup,
        trigger=CronTrigger(
            hour=settings.cleanup_hour,
            minute=settings.cleanup_minute,
            timezone=settings.cleanup_timezone,
        ),
        args=[service, settings.cleanup_retention_days],
        id=CLEANUP_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    _scheduler.start()
    logger.info(
        "maintenance_scheduler_started",
        timezone=settings.cleanup_timezone,
        daily=f"{settings.cleanup_hour:02d}:{settings.cleanup_minute:02d}",
        retention_days=settings.cleanup_retention_days,
    )
    return _scheduler


def stop_maintenance_scheduler() -> None:
    global _scheduler
    if _scheduler is None:
        return
    _scheduler.shutdown(wait=False)
    _scheduler = None
    logger.info("maintenance_scheduler_stopped")
