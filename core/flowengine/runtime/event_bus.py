"""
Event Bus - Pub/sub sink for real-time execution events.

The executor publishes node and execution lifecycle events here; UI
gateways, loggers and tests subscribe. Delivery is fire-and-forget and
at-most-once: a failing handler is logged and never affects the run.
"""

import asyncio
import itertools
import logging
from collections import Counter, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Kinds of execution events."""

    EXECUTION_STARTED = "execution_started"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_CANCELLED = "execution_cancelled"

    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_ERROR = "node_error"
    LOOP_ITERATION = "loop_iteration"

    WEBHOOK_RECEIVED = "webhook_received"
    SCHEDULE_FIRED = "schedule_fired"

    CUSTOM = "custom"


@dataclass
class WorkflowEvent:
    """One execution event. node_id is set for node-level events."""

    type: EventType
    execution_id: str | None = None
    workflow_id: str | None = None
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[WorkflowEvent], Awaitable[None]]


@dataclass
class Subscription:
    id: str
    event_types: frozenset[EventType]
    handler: EventHandler
    execution_id: str | None = None
    workflow_id: str | None = None
    node_id: str | None = None

    def matches(self, event: WorkflowEvent) -> bool:
        if event.type not in self.event_types:
            return False
        scoped = (
            (self.execution_id, event.execution_id),
            (self.workflow_id, event.workflow_id),
            (self.node_id, event.node_id),
        )
        return all(wanted is None or wanted == actual for wanted, actual in scoped)


class EventBus:
    """
    In-process pub/sub for execution events.

    Subscriptions select event types and may be scoped to one execution,
    workflow or node. The most recent events are kept for inspection.

    Example:
        bus = EventBus()

        async def on_failure(event: WorkflowEvent):
            alert(event.execution_id, event.data["error"])

        bus.subscribe([EventType.EXECUTION_FAILED], on_failure)
        executor = WorkflowExecutor(store, event_bus=bus)
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
        handler_timeout: float | None = 30.0,
    ):
        self._subscriptions: dict[str, Subscription] = {}
        self._history: deque[WorkflowEvent] = deque(maxlen=max_history)
        self._handler_slots = asyncio.Semaphore(max_concurrent_handlers)
        self._handler_timeout = handler_timeout
        self._pending: set[asyncio.Task] = set()
        self._ids = itertools.count(1)

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_execution: str | None = None,
        filter_workflow: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """Register a handler. Returns the subscription id for unsubscribe()."""
        sub_id = f"sub_{next(self._ids)}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=frozenset(event_types),
            handler=handler,
            execution_id=filter_execution,
            workflow_id=filter_workflow,
            node_id=filter_node,
        )
        logger.debug(f"{sub_id} subscribed to {', '.join(t.value for t in event_types)}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._subscriptions.pop(subscription_id, None) is not None

    async def publish(self, event: WorkflowEvent) -> None:
        """
        Record the event and hand it to matching handlers.

        Returns without waiting for the handlers: each runs in its own task,
        so a slow or stuck subscriber never holds up the publisher.
        """
        self._history.append(event)
        for subscription in list(self._subscriptions.values()):
            if subscription.matches(event):
                task = asyncio.create_task(self._deliver(event, subscription.handler))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: WorkflowEvent, handler: EventHandler) -> None:
        async with self._handler_slots:
            try:
                async with asyncio.timeout(self._handler_timeout):
                    await handler(event)
            except TimeoutError:
                logger.warning(
                    f"Event handler timed out on {event.type.value} after {self._handler_timeout}s"
                )
            except Exception as e:
                logger.error(f"Event handler failed on {event.type.value}: {e}")

    async def drain(self) -> None:
        """Wait until every handler dispatched so far has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def emit(
        self,
        execution_id: str | None,
        event_type: EventType,
        payload: dict[str, Any] | None = None,
        workflow_id: str | None = None,
        node_id: str | None = None,
    ) -> None:
        """Sink contract used by the executor and the trigger adapters."""
        await self.publish(
            WorkflowEvent(
                type=event_type,
                execution_id=execution_id,
                workflow_id=workflow_id,
                node_id=node_id,
                data=payload or {},
            )
        )

    async def emit_webhook_received(
        self,
        workflow_id: str,
        webhook_url: str,
        headers: dict[str, str],
        payload: Any,
        execution_id: str | None = None,
    ) -> None:
        await self.emit(
            execution_id,
            EventType.WEBHOOK_RECEIVED,
            {"webhookUrl": webhook_url, "headers": headers, "payload": payload},
            workflow_id=workflow_id,
        )

    # === INSPECTION ===

    def get_history(
        self,
        event_type: EventType | None = None,
        execution_id: str | None = None,
        workflow_id: str | None = None,
        limit: int = 100,
    ) -> list[WorkflowEvent]:
        """Recorded events matching the filters, most recent first."""
        matched = [
            e
            for e in reversed(self._history)
            if (event_type is None or e.type == event_type)
            and (execution_id is None or e.execution_id == execution_id)
            and (workflow_id is None or e.workflow_id == workflow_id)
        ]
        return matched[:limit]

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_events": len(self._history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": dict(Counter(e.type.value for e in self._history)),
        }

    async def wait_for(
        self,
        event_type: EventType,
        execution_id: str | None = None,
        node_id: str | None = None,
        timeout: float | None = None,
    ) -> WorkflowEvent | None:
        """Wait for the next matching event. Returns None on timeout."""
        arrived: asyncio.Future[WorkflowEvent] = asyncio.get_running_loop().create_future()

        async def capture(event: WorkflowEvent) -> None:
            if not arrived.done():
                arrived.set_result(event)

        sub_id = self.subscribe(
            [event_type], capture, filter_execution=execution_id, filter_node=node_id
        )
        try:
            return await asyncio.wait_for(arrived, timeout=timeout)
        except TimeoutError:
            return None
        finally:
            self.unsubscribe(sub_id)
