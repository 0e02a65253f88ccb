"""Condition node: evaluates an expression and picks the "true" or "false" branch."""

from flowengine.errors import ConfigurationError
from flowengine.graph.node import NodeContext, NodeResult
from flowengine.graph.safe_eval import ExpressionError
from flowengine.nodes.base import NodeExecutor


class ConditionNodeExecutor(NodeExecutor):
    kind = "condition"
    failure_label = "Condition evaluation"

    async def run(self, ctx: NodeContext) -> NodeResult:
        condition = ctx.node.config.get("condition")
        if not condition:
            raise ConfigurationError("Condition expression is required")

        try:
            value = ctx.context.evaluate(str(condition))
        except ExpressionError as e:
            self.logger.warning(f"{ctx.node.id}: condition {condition!r} failed: {e}")
            return NodeResult(
                success=False,
                error=f"Condition evaluation failed: {e}",
                data={"condition": condition, "result": False, "branch": "false"},
            )

        result = bool(value)
        branch = "true" if result else "false"
        self.logger.debug(f"{ctx.node.id}: {condition!r} -> {branch}")
        return NodeResult(
            success=True,
            data={
                "condition": condition,
                "result": result,
                "branch": branch,
                "evaluatedValue": value,
            },
            branch_selector=branch,
        )
