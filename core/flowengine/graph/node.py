"""
Node Protocol - The typed steps of a workflow graph.

A node is one step in a graph: a trigger, an action (agent, tool, http,
email), or a control step (condition, delay, loop, merge). The node's
config is an opaque map that only its executor interprets.

Node type strings come in two spellings and both are accepted:
- bare categories: "trigger", "action", "condition", "delay", "loop", "merge"
- editor names: "trigger-webhook", "action-http", "control-condition", ...

Executors never touch persistence. They receive a NodeContext and return
a NodeResult; the WorkflowExecutor records it.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import AliasChoices, BaseModel, Field

if TYPE_CHECKING:
    from flowengine.config import EngineConfig
    from flowengine.graph.context import CancellationToken, ExecutionContext

ACTION_KINDS = frozenset({"agent", "tool", "http", "email"})
CONTROL_KINDS = frozenset({"condition", "delay", "loop", "merge"})
NODE_KINDS = ACTION_KINDS | CONTROL_KINDS | {"trigger"}


class NodeSpec(BaseModel):
    """
    Specification for a node in a workflow graph.

    Examples:
        NodeSpec(id="start", type="trigger-webhook")

        NodeSpec(
            id="fetch",
            type="action-http",
            config={"url": "https://api.example.com/items/{{itemId}}", "method": "GET"},
        )

        NodeSpec(id="check", type="condition", config={"condition": "fetch.statusCode == 200"})
    """

    id: str
    type: str
    subtype: str | None = Field(
        default=None,
        description="Action sub-kind for bare 'action' nodes (agent, tool, http, email)",
    )
    name: str = ""
    config: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("config", "data"),
        description="Executor-specific settings",
    )

    model_config = {"extra": "allow", "populate_by_name": True}

    @property
    def is_trigger(self) -> bool:
        return self.type.strip().lower().startswith("trigger")

    @property
    def kind(self) -> str:
        """Executor key for this node: trigger, agent, tool, http, email, condition, ..."""
        node_type = self.type.strip().lower()
        if node_type.startswith("trigger"):
            return "trigger"

        head, _, tail = node_type.partition("-")
        if head in ("action", "control") and tail:
            return tail
        if head == "action":
            sub = self.subtype or self.config.get("actionType")
            return str(sub).strip().lower() if sub else "action"
        return node_type

    @property
    def display_name(self) -> str:
        return self.name or self.config.get("label") or self.config.get("name") or self.id


@dataclass
class NodeResult:
    """
    Result of executing one node.

    success=False is a soft failure: the branch stops but the run goes on.
    branch_selector filters outgoing edges (condition nodes).
    next_node_id restricts successors to the edge(s) targeting that node.
    """

    success: bool
    data: Any = None
    error: str | None = None
    next_node_id: str | None = None
    branch_selector: str | None = None


@dataclass
class LoopIteration:
    """
    Outcome of walking a loop body once.

    ran is False when the run was already stopping and the body never
    started; stopped is True when the run stopped during this iteration.
    The loop ends at either.
    """

    index: int
    outputs: dict[str, Any] = field(default_factory=dict)
    success: bool = True
    errors: list[str] = field(default_factory=list)
    ran: bool = True
    stopped: bool = False


BodyRunner = Callable[[dict[str, Any], int], Awaitable[LoopIteration]]


@dataclass
class NodeContext:
    """Everything a node executor may look at while it runs."""

    node: NodeSpec
    context: "ExecutionContext"
    execution_id: str
    workflow_id: str
    cancel_token: "CancellationToken"
    config: "EngineConfig"
    organization_id: str | None = None
    upstream_ids: list[str] = field(default_factory=list)
    run_body: BodyRunner | None = None


class NodeProtocol(Protocol):
    """Interface every node executor implements."""

    async def execute(self, ctx: NodeContext) -> NodeResult: ...
