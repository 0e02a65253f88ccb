"""Merge node: combines upstream branch outputs with a selectable strategy."""

from collections.abc import Mapping
from typing import Any

from flowengine.graph.node import NodeContext, NodeResult
from flowengine.nodes.base import NodeExecutor, iso_now


class MergeNodeExecutor(NodeExecutor):
    """
    Strategies:
    - waitAll: {branches: [...], branchCount}
    - firstComplete: {result: first, branchCount}
    - combine: shallow merge of all map outputs (scalars under "value")
    - array: {items: [...], count}

    Inputs are the outputs of the upstream nodes whose edges fired into
    this node, in completion order. A merge node with no incoming edges
    sees every step output.
    """

    kind = "merge"
    failure_label = "Merge node execution"

    def _collect_inputs(self, ctx: NodeContext) -> list[Any]:
        outputs = ctx.context.step_outputs
        if not ctx.upstream_ids:
            return list(outputs.values())
        return [outputs[node_id] for node_id in ctx.upstream_ids if node_id in outputs]

    async def run(self, ctx: NodeContext) -> NodeResult:
        config = ctx.node.config
        strategy = config.get("mergeStrategy") or config.get("strategy") or "waitAll"
        inputs = self._collect_inputs(ctx)
        self.logger.info(f"{ctx.node.id}: merging {len(inputs)} branch output(s) ({strategy})")

        if strategy == "firstComplete":
            merged: dict[str, Any] = {"result": inputs[0] if inputs else None}
            merged["branchCount"] = len(inputs)
        elif strategy == "combine":
            merged = {}
            for value in inputs:
                merged.update(value if isinstance(value, Mapping) else {"value": value})
            merged["branchCount"] = len(inputs)
        elif strategy == "array":
            merged = {"items": inputs, "count": len(inputs)}
        else:
            merged = {"branches": inputs, "branchCount": len(inputs)}

        merged.update({"strategy": strategy, "merged": True, "timestamp": iso_now()})
        return NodeResult(success=True, data=merged)
