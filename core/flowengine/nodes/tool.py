"""Tool node: resolves structured or templated input and calls the tool service."""

from typing import Any

from flowengine.errors import ConfigurationError, ExecutorFailure
from flowengine.graph.node import NodeContext, NodeResult
from flowengine.nodes.base import NodeExecutor
from flowengine.services.protocols import ToolExecutionResult, ToolService


class ToolNodeExecutor(NodeExecutor):
    kind = "tool"
    failure_label = "Tool execution"

    def __init__(self, tools: ToolService | None = None):
        super().__init__()
        self._tools = tools

    def _resolve_input(self, ctx: NodeContext) -> Any:
        raw = ctx.node.config.get("input")
        if raw is None:
            return ctx.context.get_input_value("input") or {}
        return ctx.context.interpolate_value(raw)

    async def run(self, ctx: NodeContext) -> NodeResult:
        org_id = self.require_tenant(ctx)
        config = ctx.node.config

        tool_id = config.get("toolId")
        tool_name = config.get("toolName")
        if not tool_id and not tool_name:
            raise ConfigurationError("Tool ID or name is required")
        if self._tools is None:
            raise ConfigurationError("No tool service configured")

        tool_input = self._resolve_input(ctx)
        if not isinstance(tool_input, dict):
            tool_input = {"input": tool_input}

        try:
            result: ToolExecutionResult = await ctx.cancel_token.run(
                self._tools.execute_tool(str(tool_id or tool_name), tool_input, org_id)
            )
        except ExecutorFailure:
            raise
        except Exception as e:
            raise ExecutorFailure(f"Tool execution failed: {e}") from e

        data = {
            "toolId": tool_id,
            "toolName": tool_name or "Tool",
            "input": tool_input,
            "output": result.result,
            "executionTime": result.execution_time,
        }
        if not result.success:
            raise ExecutorFailure(f"Tool execution failed: {result.error}", data=data)
        return NodeResult(success=True, data=data)
