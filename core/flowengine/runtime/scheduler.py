"""
Schedule Adapter - Starts workflows on a cron schedule.

On start, every active schedule-triggered workflow is loaded and gets one
timer task. Each tick calls WorkflowExecutor.execute_workflow() with
{scheduledAt, cronExpression} as trigger data. The timer never waits on
the run it started.

Cron expressions use the five-field syntax
(minute hour day-of-month month day-of-week) and are evaluated in the
workflow's trigger_config.timezone (UTC when unset).
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, tzinfo
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from flowengine.graph.validator import validate_cron
from flowengine.runtime.event_bus import EventBus, EventType
from flowengine.schemas.workflow import TriggerType, Workflow, WorkflowStatus
from flowengine.storage.backend import WorkflowStore

if TYPE_CHECKING:
    from flowengine.graph.executor import WorkflowExecutor

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


async def _sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


def resolve_timezone(name: str | None) -> tzinfo:
    """Return the named zone, falling back to UTC for unknown or empty names."""
    if not name:
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{name}', using UTC")
        return UTC


def next_fire_time(
    cron_expression: str,
    timezone: str | None = None,
    after: datetime | None = None,
) -> datetime:
    """Next time the expression fires strictly after `after` (default: now)."""
    tz = resolve_timezone(timezone)
    base = (after or _now()).astimezone(tz)
    return croniter(cron_expression, base).get_next(datetime)


@dataclass
class ScheduledJob:
    workflow_id: str
    organization_id: str
    cron_expression: str
    timezone: str | None
    task: asyncio.Task

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflowId": self.workflow_id,
            "cronExpression": self.cron_expression,
            "timezone": self.timezone or "UTC",
        }


class ScheduleAdapter:
    """
    Cron-driven trigger adapter.

    Lifecycle:
        adapter = ScheduleAdapter(executor, store)
        await adapter.start()
        # ... workflows fire on their schedules ...
        await adapter.shutdown()
    """

    def __init__(
        self,
        executor: "WorkflowExecutor",
        store: WorkflowStore,
        event_bus: EventBus | None = None,
    ):
        self._executor = executor
        self._store = store
        self._event_bus = event_bus
        self._jobs: dict[str, ScheduledJob] = {}

    async def start(self) -> None:
        logger.info("Initializing workflow scheduler...")
        await self.load_scheduled_workflows()

    async def load_scheduled_workflows(self) -> int:
        """Register a timer for every active schedule-triggered workflow."""
        try:
            workflows = await self._store.list_workflows(
                status=WorkflowStatus.ACTIVE,
                trigger_type=TriggerType.SCHEDULE,
            )
        except Exception as e:
            logger.error(f"Failed to load scheduled workflows: {e}")
            return 0

        logger.info(f"Found {len(workflows)} scheduled workflow(s)")
        scheduled = 0
        for workflow in workflows:
            if self.schedule_workflow(workflow):
                scheduled += 1
        return scheduled

    def schedule_workflow(self, workflow: Workflow) -> bool:
        """
        (Re)schedule one workflow. Returns False when it has no valid cron
        expression; any previous timer for it is stopped either way.
        """
        cron_expression = workflow.trigger_config.cron
        if not cron_expression:
            logger.warning(f"Workflow {workflow.id} has no cron expression")
            return False
        if not validate_cron(cron_expression):
            logger.error(f"Invalid cron expression for workflow {workflow.id}: {cron_expression}")
            return False

        self.stop_schedule(workflow.id)
        timezone = workflow.trigger_config.timezone
        task = asyncio.create_task(
            self._run_timer(workflow, cron_expression, timezone),
            name=f"schedule-{workflow.id}",
        )
        self._jobs[workflow.id] = ScheduledJob(
            workflow_id=workflow.id,
            organization_id=workflow.organization_id,
            cron_expression=cron_expression,
            timezone=timezone,
            task=task,
        )
        logger.info(
            f"Scheduled workflow {workflow.name or workflow.id} ({workflow.id}) "
            f"with cron: {cron_expression}"
        )
        return True

    def stop_schedule(self, workflow_id: str) -> bool:
        job = self._jobs.pop(workflow_id, None)
        if job is None:
            return False
        job.task.cancel()
        logger.info(f"Stopped schedule for workflow {workflow_id}")
        return True

    def stop_all_schedules(self) -> None:
        for workflow_id in list(self._jobs):
            self.stop_schedule(workflow_id)

    async def reload_schedules(self) -> int:
        logger.info("Reloading all workflow schedules...")
        self.stop_all_schedules()
        return await self.load_scheduled_workflows()

    def get_active_schedules(self) -> list[dict[str, Any]]:
        return [job.to_dict() for job in self._jobs.values()]

    def next_fire_time(self, workflow_id: str) -> datetime | None:
        job = self._jobs.get(workflow_id)
        if job is None:
            return None
        return next_fire_time(job.cron_expression, job.timezone)

    async def trigger_now(self, workflow_id: str) -> Any:
        """Fire a scheduled workflow immediately, outside its timer."""
        job = self._jobs.get(workflow_id)
        if job is None:
            raise KeyError(f"Workflow {workflow_id} is not scheduled")
        return await self._fire(job.workflow_id, job.organization_id, job.cron_expression)

    async def shutdown(self) -> None:
        logger.info("Stopping all scheduled workflows...")
        tasks = [job.task for job in self._jobs.values()]
        self.stop_all_schedules()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run_timer(
        self, workflow: Workflow, cron_expression: str, timezone: str | None
    ) -> None:
        """
        Fire once per tick. Ticks come from one croniter advanced from the
        previous tick, so an early wake-up can never repeat a tick.
        """
        tz = resolve_timezone(timezone)
        ticks = croniter(cron_expression, _now().astimezone(tz))
        while True:
            fire_at = ticks.get_next(datetime)
            now = _now()
            if fire_at < now:
                # Ticks missed while the loop was blocked or the host suspended
                logger.warning(f"Skipping missed ticks of workflow {workflow.id} before {now}")
                ticks = croniter(cron_expression, now.astimezone(tz))
                fire_at = ticks.get_next(datetime)

            await self._wait_until(fire_at)
            logger.info(f"Executing scheduled workflow: {workflow.name or workflow.id}")
            try:
                await self._fire(workflow.id, workflow.organization_id, cron_expression)
            except Exception as e:
                logger.error(f"Failed to execute scheduled workflow {workflow.id}: {e}")

    @staticmethod
    async def _wait_until(fire_at: datetime) -> None:
        """Sleep until the wall clock reaches fire_at; sleeps may end early."""
        while True:
            remaining = (fire_at - _now()).total_seconds()
            if remaining <= 0:
                return
            await _sleep(remaining)

    async def _fire(self, workflow_id: str, organization_id: str, cron_expression: str) -> Any:
        trigger_data = {
            "scheduledAt": _now().isoformat(),
            "cronExpression": cron_expression,
        }
        execution = await self._executor.execute_workflow(
            workflow_id, organization_id, trigger_data=trigger_data
        )
        if self._event_bus is not None:
            try:
                await self._event_bus.emit(
                    execution.id,
                    EventType.SCHEDULE_FIRED,
                    trigger_data,
                    workflow_id=workflow_id,
                )
            except Exception as e:
                logger.warning(f"Event emission failed ({EventType.SCHEDULE_FIRED}): {e}")
        return execution
