"""
Error taxonomy for the workflow engine.

Two tiers matter at run time:
- Soft failures (ConfigurationError, ExecutorFailure) stop only the branch
  that produced them and are recorded on the Step.
- Hard failures (OrchestrationError and anything unexpected) abort the
  whole Execution.

GraphValidationError is raised before a graph is activated, never during a run.
"""

from typing import Any


class WorkflowError(Exception):
    """Base class for all engine errors."""


class GraphValidationError(WorkflowError):
    """Raised when a graph fails static validation."""

    def __init__(self, result: Any):
        self.result = result
        errors = getattr(result, "errors", None) or []
        super().__init__(f"Invalid workflow graph: {'; '.join(errors)}")


class ConfigurationError(WorkflowError):
    """A node is missing required config at execution time."""


class ExecutorFailure(WorkflowError):
    """An external call made by a node executor failed."""

    def __init__(self, message: str, data: Any = None):
        super().__init__(message)
        self.data = data


class OrchestrationError(WorkflowError):
    """Unexpected failure inside the walk itself. Aborts the Execution."""


class MissingTenantError(OrchestrationError):
    """A node needs the organization id but the run context has none."""


class NoTriggerNodeError(OrchestrationError):
    """The graph has no node that can serve as the entry point."""


class WorkflowNotFoundError(OrchestrationError):
    """Workflow lookup failed for the given id and organization."""


class InvalidExecutionStateError(OrchestrationError):
    """An operation was requested on an Execution in the wrong state."""


class ExecutionNotFoundError(OrchestrationError):
    """No Execution exists with the given id."""


class WebhookNotFoundError(WorkflowError):
    """No active webhook is registered for the given token."""


class InvalidSignatureError(WorkflowError):
    """The webhook payload signature did not verify."""
