"""
Base class for node executors.

Subclasses implement run(). execute() is the template method the
WorkflowExecutor calls: ConfigurationError and ExecutorFailure raised by
run() become soft failures (NodeResult(success=False)); anything else
propagates and aborts the Execution.
"""

import logging
from datetime import UTC, datetime

from flowengine.errors import ConfigurationError, ExecutorFailure, MissingTenantError
from flowengine.graph.node import NodeContext, NodeResult


def iso_now() -> str:
    return datetime.now(UTC).isoformat()


class NodeExecutor:
    """Shared behaviour for every node executor."""

    kind: str = ""
    failure_label: str = "Node execution"

    # Loop nodes walk their own body and must not hold a concurrency slot
    manages_subgraph: bool = False

    def __init__(self) -> None:
        self.logger = logging.getLogger(f"flowengine.nodes.{self.kind or 'base'}")

    async def execute(self, ctx: NodeContext) -> NodeResult:
        try:
            return await self.run(ctx)
        except ConfigurationError as e:
            self.logger.warning(f"{ctx.node.id}: configuration error: {e}")
            return NodeResult(success=False, error=f"{self.failure_label} failed: {e}")
        except ExecutorFailure as e:
            self.logger.warning(f"{ctx.node.id}: {e}")
            return NodeResult(success=False, error=str(e), data=e.data)

    async def run(self, ctx: NodeContext) -> NodeResult:
        raise NotImplementedError

    @staticmethod
    def require_tenant(ctx: NodeContext) -> str:
        if not ctx.organization_id:
            raise MissingTenantError(
                f"Node {ctx.node.id} ({ctx.node.kind}) requires an organization id"
            )
        return ctx.organization_id
