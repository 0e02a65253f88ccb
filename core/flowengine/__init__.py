"""
flowengine - Workflow execution engine.

Interprets workflow graphs (triggers, agent/tool/http/email actions,
conditions, delays, loops, merges), runs independent branches
concurrently and records one Step per node execution.
"""

from flowengine.config import EngineConfig
from flowengine.errors import (
    ConfigurationError,
    ExecutorFailure,
    GraphValidationError,
    OrchestrationError,
    WorkflowError,
)
from flowengine.graph import (
    EdgeSpec,
    GraphSpec,
    GraphValidator,
    NodeResult,
    NodeSpec,
    ValidationResult,
    WorkflowExecutor,
)
from flowengine.runtime import EventBus, EventType, ScheduleAdapter, WebhookAdapter
from flowengine.schemas import Execution, ExecutionStatus, Step, StepStatus, Workflow
from flowengine.storage import FileWorkflowStore, InMemoryWorkflowStore

__version__ = "0.1.0"

__all__ = [
    "EngineConfig",
    "WorkflowError",
    "GraphValidationError",
    "ConfigurationError",
    "ExecutorFailure",
    "OrchestrationError",
    "NodeSpec",
    "EdgeSpec",
    "GraphSpec",
    "NodeResult",
    "GraphValidator",
    "ValidationResult",
    "WorkflowExecutor",
    "EventBus",
    "EventType",
    "ScheduleAdapter",
    "WebhookAdapter",
    "Execution",
    "ExecutionStatus",
    "Step",
    "StepStatus",
    "Workflow",
    "InMemoryWorkflowStore",
    "FileWorkflowStore",
]
