"""Schemas for persisted workflow, execution and step records."""

from flowengine.schemas.execution import (
    Execution,
    ExecutionStatus,
    NodeError,
    Step,
    StepStatus,
)
from flowengine.schemas.workflow import (
    TriggerConfig,
    TriggerType,
    WebhookRegistration,
    Workflow,
    WorkflowStatus,
)

__all__ = [
    "Execution",
    "ExecutionStatus",
    "NodeError",
    "Step",
    "StepStatus",
    "TriggerConfig",
    "TriggerType",
    "WebhookRegistration",
    "Workflow",
    "WorkflowStatus",
]
