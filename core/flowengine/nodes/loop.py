"""
Loop node: runs its body region once per item.

Items may be a literal list, a name looked up in the context, a
placeholder, or a JSON string. Non-list values become a single-item list.
Iteration count is capped by maxIterations; the remainder is reported as
skipped.

Each iteration's body walk is delegated to the executor through
NodeContext.run_body with the loop variables (loopItem, loopIndex,
loopTotal, loopFirst, loopLast).
"""

import json
from typing import Any

from flowengine.errors import ConfigurationError
from flowengine.graph.node import NodeContext, NodeResult
from flowengine.nodes.base import NodeExecutor


def _coerce_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, tuple):
        return list(value)
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return [value]
        return parsed if isinstance(parsed, list) else [parsed]
    return [value]


class LoopNodeExecutor(NodeExecutor):
    kind = "loop"
    failure_label = "Loop node execution"
    manages_subgraph = True

    def _resolve_items(self, ctx: NodeContext) -> list[Any]:
        items = ctx.node.config.get("items")
        if items is None:
            raise ConfigurationError("Items array is required for loop node")

        if isinstance(items, str):
            if "{{" in items:
                return _coerce_list(ctx.context.interpolate_value(items))
            found = ctx.context.get_input_value(items)
            if found is None:
                try:
                    parsed = json.loads(items)
                except ValueError:
                    return []
                return parsed if isinstance(parsed, list) else [parsed]
            return _coerce_list(found)

        return _coerce_list(items)

    async def run(self, ctx: NodeContext) -> NodeResult:
        items = self._resolve_items(ctx)
        max_iterations = int(
            ctx.node.config.get("maxIterations") or ctx.config.loop_max_iterations
        )
        total = len(items)
        iterations = min(total, max_iterations)
        self.logger.info(f"{ctx.node.id}: looping over {iterations}/{total} item(s)")

        results: list[dict[str, Any]] = []
        completed = True
        for index in range(iterations):
            if ctx.cancel_token.is_cancelled:
                completed = False
                break

            item = items[index]
            if ctx.run_body is None:
                results.append({"index": index, "item": item, "processed": True})
                continue

            loop_vars = {
                "loopItem": item,
                "loopIndex": index,
                "loopTotal": total,
                "loopFirst": index == 0,
                "loopLast": index == total - 1,
            }
            iteration = await ctx.run_body(loop_vars, index)
            if not iteration.ran:
                completed = False
                break

            entry: dict[str, Any] = {
                "index": index,
                "item": item,
                "outputs": iteration.outputs,
                "success": iteration.success,
            }
            if iteration.errors:
                entry["errors"] = iteration.errors
            results.append(entry)
            if iteration.stopped:
                # The run aborted or was cancelled mid-body
                completed = False
                break

        return NodeResult(
            success=True,
            data={
                "totalItems": total,
                "processedItems": len(results),
                "skippedItems": total - len(results),
                "results": results,
                "completed": completed,
            },
        )
