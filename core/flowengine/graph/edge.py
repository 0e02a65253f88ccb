"""
Edge Protocol - How nodes connect in a workflow graph.

Edges define:
1. Source and target nodes
2. An optional branch selector ("true"/"false") matched against the
   branch chosen by a condition node
3. A kind, used to delimit loop bodies

Edge kinds:
- default: ordinary control flow
- loop_body: leaves a loop node into the body run once per item
- loop_back: closes a loop iteration; never followed, ignored by cycle checks
- loop_exit: leaves a loop node once all iterations are done
"""

from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator

from flowengine.graph.node import NodeSpec


class EdgeKind(StrEnum):
    """Role of an edge in the graph."""

    DEFAULT = "default"
    LOOP_BODY = "loop_body"
    LOOP_BACK = "loop_back"
    LOOP_EXIT = "loop_exit"


# Edge kinds that are walked as ordinary control flow
FLOW_EDGE_KINDS = frozenset({EdgeKind.DEFAULT, EdgeKind.LOOP_EXIT})


class EdgeSpec(BaseModel):
    """
    Specification for an edge between nodes.

    Examples:
        # Plain sequencing
        EdgeSpec(id="e1", source="start", target="fetch")

        # Only fires when the condition picked the "true" branch
        EdgeSpec(id="e2", source="check", target="notify", branch_selector="true")

        # Enter the body of a loop
        EdgeSpec(id="e3", source="each", target="process", kind=EdgeKind.LOOP_BODY)
    """

    id: str
    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID")
    branch_selector: str | None = Field(
        default=None,
        validation_alias=AliasChoices("branch_selector", "branchSelector", "sourceHandle"),
        description="Branch label this edge fires on, e.g. 'true' or 'false'",
    )
    kind: EdgeKind = Field(
        default=EdgeKind.DEFAULT,
        validation_alias=AliasChoices("kind", "type"),
    )

    model_config = {"extra": "allow", "populate_by_name": True}

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, value: Any) -> Any:
        # The editor stores presentation types (e.g. "deletable") in the same slot
        if value is None:
            return EdgeKind.DEFAULT
        normalized = str(value).strip().lower().replace("-", "_")
        normalized = {"loopbody": "loop_body", "loopback": "loop_back", "loopexit": "loop_exit"}.get(
            normalized, normalized
        )
        if normalized in EdgeKind._value2member_map_:
            return normalized
        return EdgeKind.DEFAULT

    @field_validator("branch_selector", mode="before")
    @classmethod
    def _normalize_selector(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def matches_branch(self, selector: str | None) -> bool:
        """True if this edge fires for the given branch selector."""
        if selector is None:
            return True
        return self.branch_selector == selector


class GraphSpec(BaseModel):
    """
    Complete workflow graph specification (immutable per version).

    Example:
        GraphSpec(
            id="order-sync",
            nodes=[
                NodeSpec(id="start", type="trigger-manual"),
                NodeSpec(id="fetch", type="action-http", config={"url": "...", "method": "GET"}),
            ],
            edges=[EdgeSpec(id="e1", source="start", target="fetch")],
        )
    """

    id: str = ""
    version: int = 1
    nodes: list[NodeSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)
    description: str = ""

    model_config = {"extra": "allow"}

    def get_node(self, node_id: str) -> NodeSpec | None:
        """Get a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_outgoing_edges(self, node_id: str) -> list[EdgeSpec]:
        """Get all edges leaving a node, in definition order."""
        return [e for e in self.edges if e.source == node_id]

    def get_incoming_edges(self, node_id: str) -> list[EdgeSpec]:
        """Get all edges entering a node."""
        return [e for e in self.edges if e.target == node_id]

    def trigger_nodes(self) -> list[NodeSpec]:
        return [n for n in self.nodes if n.is_trigger]

    def find_entry_node(self, trigger_type: str | None = None) -> NodeSpec | None:
        """
        Locate the entry node: the first node whose type begins with
        "trigger" or equals the workflow's declared trigger kind.
        """
        for node in self.nodes:
            if node.is_trigger or (trigger_type and node.type == trigger_type):
                return node
        return None

    def loop_body_entries(self, loop_node_id: str) -> list[str]:
        return [
            e.target
            for e in self.get_outgoing_edges(loop_node_id)
            if e.kind == EdgeKind.LOOP_BODY
        ]
