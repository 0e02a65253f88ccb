"""Graph structures: Nodes, Edges, the execution context, validation and the executor."""

from flowengine.graph.context import CancellationToken, ExecutionContext
from flowengine.graph.edge import EdgeKind, EdgeSpec, GraphSpec
from flowengine.graph.executor import WorkflowExecutor
from flowengine.graph.node import (
    LoopIteration,
    NodeContext,
    NodeProtocol,
    NodeResult,
    NodeSpec,
)
from flowengine.graph.safe_eval import (
    ExpressionError,
    ExpressionEvaluationError,
    ExpressionSecurityError,
    ExpressionSyntaxError,
    safe_eval,
)
from flowengine.graph.validator import GraphValidator, ValidationResult, validate_cron

__all__ = [
    # Node
    "NodeSpec",
    "NodeContext",
    "NodeResult",
    "NodeProtocol",
    "LoopIteration",
    # Edge
    "EdgeKind",
    "EdgeSpec",
    "GraphSpec",
    # Context
    "ExecutionContext",
    "CancellationToken",
    # Expressions
    "safe_eval",
    "ExpressionError",
    "ExpressionSyntaxError",
    "ExpressionSecurityError",
    "ExpressionEvaluationError",
    # Validation
    "GraphValidator",
    "ValidationResult",
    "validate_cron",
    # Executor
    "WorkflowExecutor",
]
