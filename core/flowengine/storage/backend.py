"""
Storage backend for workflows, executions and steps.

WorkflowStore is the narrow persistence contract the engine depends on.
The executor writes Execution/Step records through it; the trigger
adapters read workflows and webhook registrations from it.

InMemoryWorkflowStore is the default backend (tests, CLI one-shot runs).
FileWorkflowStore in file_store.py persists the same records as JSON.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from flowengine.schemas.execution import Execution, Step
from flowengine.schemas.workflow import (
    TriggerType,
    WebhookRegistration,
    Workflow,
    WorkflowStatus,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class WorkflowStore(Protocol):
    """Persistence contract used by the executor and trigger adapters."""

    # Executions
    async def create_execution(self, execution: Execution) -> Execution: ...

    async def update_execution(self, execution_id: str, **fields: Any) -> Execution: ...

    async def get_execution(self, execution_id: str) -> Execution | None: ...

    async def list_executions(
        self, workflow_id: str, limit: int = 50, offset: int = 0
    ) -> list[Execution]: ...

    # Steps
    async def create_step(self, step: Step) -> Step: ...

    async def update_step(self, step_id: str, **fields: Any) -> Step: ...

    async def list_steps(self, execution_id: str) -> list[Step]: ...

    # Workflows
    async def save_workflow(self, workflow: Workflow) -> Workflow: ...

    async def find_workflow(
        self, workflow_id: str, organization_id: str | None = None
    ) -> Workflow | None: ...

    async def list_workflows(
        self,
        status: WorkflowStatus | None = None,
        trigger_type: TriggerType | None = None,
    ) -> list[Workflow]: ...

    # Webhooks
    async def save_webhook(self, webhook: WebhookRegistration) -> WebhookRegistration: ...

    async def find_webhook_by_token(self, webhook_url: str) -> WebhookRegistration | None: ...

    async def get_webhook_for_workflow(self, workflow_id: str) -> WebhookRegistration | None: ...

    async def update_webhook(self, workflow_id: str, **fields: Any) -> WebhookRegistration: ...

    async def record_webhook_trigger(
        self, workflow_id: str, triggered_at: datetime
    ) -> WebhookRegistration | None:
        """Bump trigger_count and set last_triggered_at, leaving other fields as stored."""
        ...

    async def delete_webhook(self, workflow_id: str) -> bool: ...


def sort_executions(executions: list[Execution], limit: int, offset: int) -> list[Execution]:
    """Most recent first, then paginate."""
    ordered = sorted(executions, key=lambda e: e.start_time, reverse=True)
    return ordered[offset : offset + limit]


def filter_workflows(
    workflows: list[Workflow],
    status: WorkflowStatus | None,
    trigger_type: TriggerType | None,
) -> list[Workflow]:
    if status is not None:
        workflows = [w for w in workflows if w.status == status]
    if trigger_type is not None:
        workflows = [w for w in workflows if w.trigger_type == trigger_type]
    return workflows


class InMemoryWorkflowStore:
    """
    Process-local store. Records are copied on the way in and out, so
    callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._executions: dict[str, Execution] = {}
        self._steps: dict[str, Step] = {}
        self._steps_by_execution: dict[str, list[str]] = {}
        self._workflows: dict[str, Workflow] = {}
        self._webhooks: dict[str, WebhookRegistration] = {}  # workflow_id -> registration
        self._lock = asyncio.Lock()

    # === EXECUTIONS ===

    async def create_execution(self, execution: Execution) -> Execution:
        async with self._lock:
            self._executions[execution.id] = execution.model_copy(deep=True)
        return execution

    async def update_execution(self, execution_id: str, **fields: Any) -> Execution:
        async with self._lock:
            current = self._executions.get(execution_id)
            if current is None:
                raise KeyError(f"Execution not found: {execution_id}")
            updated = current.model_copy(update=fields, deep=True)
            self._executions[execution_id] = updated
        return updated.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> Execution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_executions(
        self, workflow_id: str, limit: int = 50, offset: int = 0
    ) -> list[Execution]:
        matching = [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if e.workflow_id == workflow_id
        ]
        return sort_executions(matching, limit, offset)

    # === STEPS ===

    async def create_step(self, step: Step) -> Step:
        async with self._lock:
            self._steps[step.id] = step.model_copy(deep=True)
            self._steps_by_execution.setdefault(step.execution_id, []).append(step.id)
        return step

    async def update_step(self, step_id: str, **fields: Any) -> Step:
        async with self._lock:
            current = self._steps.get(step_id)
            if current is None:
                raise KeyError(f"Step not found: {step_id}")
            updated = current.model_copy(update=fields, deep=True)
            self._steps[step_id] = updated
        return updated.model_copy(deep=True)

    async def list_steps(self, execution_id: str) -> list[Step]:
        return [
            self._steps[step_id].model_copy(deep=True)
            for step_id in self._steps_by_execution.get(execution_id, [])
        ]

    # === WORKFLOWS ===

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        async with self._lock:
            self._workflows[workflow.id] = workflow.model_copy(deep=True)
        return workflow

    async def find_workflow(
        self, workflow_id: str, organization_id: str | None = None
    ) -> Workflow | None:
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            return None
        if organization_id is not None and workflow.organization_id != organization_id:
            return None
        return workflow.model_copy(deep=True)

    async def list_workflows(
        self,
        status: WorkflowStatus | None = None,
        trigger_type: TriggerType | None = None,
    ) -> list[Workflow]:
        workflows = [w.model_copy(deep=True) for w in self._workflows.values()]
        return filter_workflows(workflows, status, trigger_type)

    # === WEBHOOKS ===

    async def save_webhook(self, webhook: WebhookRegistration) -> WebhookRegistration:
        async with self._lock:
            self._webhooks[webhook.workflow_id] = webhook.model_copy(deep=True)
        return webhook

    async def find_webhook_by_token(self, webhook_url: str) -> WebhookRegistration | None:
        for webhook in self._webhooks.values():
            if webhook.webhook_url == webhook_url:
                return webhook.model_copy(deep=True)
        return None

    async def get_webhook_for_workflow(self, workflow_id: str) -> WebhookRegistration | None:
        webhook = self._webhooks.get(workflow_id)
        return webhook.model_copy(deep=True) if webhook else None

    async def update_webhook(self, workflow_id: str, **fields: Any) -> WebhookRegistration:
        async with self._lock:
            current = self._webhooks.get(workflow_id)
            if current is None:
                raise KeyError(f"Webhook not found for workflow: {workflow_id}")
            updated = current.model_copy(update=fields, deep=True)
            self._webhooks[workflow_id] = updated
        return updated.model_copy(deep=True)

    async def record_webhook_trigger(
        self, workflow_id: str, triggered_at: datetime
    ) -> WebhookRegistration | None:
        async with self._lock:
            current = self._webhooks.get(workflow_id)
            if current is None:
                return None
            updated = current.model_copy(
                update={
                    "trigger_count": current.trigger_count + 1,
                    "last_triggered_at": triggered_at,
                },
                deep=True,
            )
            self._webhooks[workflow_id] = updated
        return updated.model_copy(deep=True)

    async def delete_webhook(self, workflow_id: str) -> bool:
        async with self._lock:
            return self._webhooks.pop(workflow_id, None) is not None
