"""Trigger node: passes the trigger payload through as the first step output."""

from flowengine.graph.node import NodeContext, NodeResult
from flowengine.nodes.base import NodeExecutor, iso_now


class TriggerNodeExecutor(NodeExecutor):
    kind = "trigger"
    failure_label = "Trigger"

    async def run(self, ctx: NodeContext) -> NodeResult:
        node = ctx.node
        trigger_type = node.config.get("triggerType")
        if not trigger_type:
            _, _, suffix = node.type.partition("-")
            trigger_type = suffix or "manual"

        return NodeResult(
            success=True,
            data={
                **ctx.context.trigger_data,
                "triggered": True,
                "triggerType": trigger_type,
                "timestamp": iso_now(),
            },
        )
