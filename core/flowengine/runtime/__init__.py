"""Runtime services around the executor: event sink and trigger adapters."""

from flowengine.runtime.event_bus import EventBus, EventType, WorkflowEvent
from flowengine.runtime.scheduler import ScheduleAdapter, next_fire_time
from flowengine.runtime.webhook_server import WebhookServer, WebhookServerConfig
from flowengine.runtime.webhooks import WebhookAdapter

__all__ = [
    "EventBus",
    "EventType",
    "WorkflowEvent",
    "ScheduleAdapter",
    "next_fire_time",
    "WebhookAdapter",
    "WebhookServer",
    "WebhookServerConfig",
]
