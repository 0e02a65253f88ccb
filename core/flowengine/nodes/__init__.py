"""
Node executors - one strategy per node kind.

build_node_registry() wires the executors to their external collaborators
and returns the kind -> executor map the WorkflowExecutor dispatches on.
"""

import httpx

from flowengine.config import EngineConfig
from flowengine.graph.node import NodeProtocol
from flowengine.nodes.agent import AgentNodeExecutor
from flowengine.nodes.base import NodeExecutor
from flowengine.nodes.condition import ConditionNodeExecutor
from flowengine.nodes.delay import DelayNodeExecutor
from flowengine.nodes.email import EmailNodeExecutor
from flowengine.nodes.http import HttpNodeExecutor
from flowengine.nodes.loop import LoopNodeExecutor
from flowengine.nodes.merge import MergeNodeExecutor
from flowengine.nodes.tool import ToolNodeExecutor
from flowengine.nodes.trigger import TriggerNodeExecutor
from flowengine.services.protocols import (
    AgentDirectory,
    CompletionProvider,
    NotificationService,
    ToolService,
)


def build_node_registry(
    agents: AgentDirectory | None = None,
    completions: CompletionProvider | None = None,
    tools: ToolService | None = None,
    notifications: NotificationService | None = None,
    http_client: httpx.AsyncClient | None = None,
    config: EngineConfig | None = None,
) -> dict[str, NodeProtocol]:
    """
    Build the default executor registry.

    Example:
        registry = build_node_registry(completions=my_llm, tools=my_tools)
        executor = WorkflowExecutor(store, node_registry=registry)
    """
    config = config or EngineConfig()
    return {
        "trigger": TriggerNodeExecutor(),
        "condition": ConditionNodeExecutor(),
        "delay": DelayNodeExecutor(),
        "loop": LoopNodeExecutor(),
        "merge": MergeNodeExecutor(),
        "http": HttpNodeExecutor(client=http_client, timeout=config.http_timeout_seconds),
        "agent": AgentNodeExecutor(
            completions=completions,
            agents=agents,
            default_model=config.default_model,
        ),
        "tool": ToolNodeExecutor(tools=tools),
        "email": EmailNodeExecutor(notifications=notifications),
    }


__all__ = [
    "AgentNodeExecutor",
    "ConditionNodeExecutor",
    "DelayNodeExecutor",
    "EmailNodeExecutor",
    "HttpNodeExecutor",
    "LoopNodeExecutor",
    "MergeNodeExecutor",
    "NodeExecutor",
    "ToolNodeExecutor",
    "TriggerNodeExecutor",
    "build_node_registry",
]
