"""Services package."""
from workqueue.services.event_bus import DomainEvent, EventBus
from workqueue.services.task_queue_service import TaskQueueService

__all__ = ["DomainEvent", "EventBus", "TaskQueueService"]
