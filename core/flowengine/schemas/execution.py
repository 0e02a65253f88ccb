"""
Execution Schema - One run of a workflow graph and its per-node Steps.

The WorkflowExecutor exclusively owns the lifecycle of these records:
an Execution is created as running, moves to exactly one terminal state
and is never reopened. A Step is created as running when a node starts
and updated once to a terminal state when it finishes.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, computed_field


def utc_now() -> datetime:
    return datetime.now(UTC)


class ExecutionStatus(StrEnum):
    """Status of an execution."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )


class StepStatus(StrEnum):
    """Status of a single node execution."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class NodeError(BaseModel):
    """A hard failure raised by one node during a run."""

    node_id: str
    step_id: str | None = None
    message: str
    started_at: datetime


class Step(BaseModel):
    """Record of one node's execution within a run."""

    id: str
    execution_id: str
    node_id: str
    node_type: str
    node_name: str = ""
    status: StepStatus = StepStatus.RUNNING
    input_data: dict[str, Any] = Field(default_factory=dict)
    output_data: Any = None
    error: str | None = None
    start_time: datetime = Field(default_factory=utc_now)
    end_time: datetime | None = None
    duration_ms: int | None = None
    retry_count: int = 0

    # Loop body steps point at the loop's Step and carry their iteration index
    parent_step_id: str | None = None
    iteration: int | None = None

    model_config = {"extra": "allow"}


class Execution(BaseModel):
    """
    One run of a workflow graph.

    steps is populated when the execution is read back through
    WorkflowExecutor.get_execution(); the store keeps Steps separately.
    """

    id: str
    workflow_id: str
    organization_id: str | None = None
    graph_version: int = 1
    status: ExecutionStatus = ExecutionStatus.RUNNING
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    start_time: datetime = Field(default_factory=utc_now)
    end_time: datetime | None = None
    duration_ms: int | None = None
    error: str | None = None
    errors: list[NodeError] = Field(default_factory=list)
    context_snapshot: dict[str, Any] = Field(default_factory=dict)
    steps: list[Step] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    @computed_field
    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal
