"""Static validation for workflow graphs.

Run before a graph is activated. Pure: no I/O, no executor lookups.
Errors make a graph unusable; warnings are surfaced to the author but do
not block activation.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from croniter import croniter
from pydantic import ValidationError

from flowengine.graph.edge import EdgeKind, GraphSpec
from flowengine.graph.node import NODE_KINDS, NodeSpec
from flowengine.graph.safe_eval import validate_expression

logger = logging.getLogger(__name__)

MERGE_STRATEGIES = frozenset({"waitAll", "firstComplete", "combine", "array"})


@dataclass
class ValidationResult:
    """Result of validating a graph."""

    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(self.errors) if self.errors else ""

    def to_dict(self) -> dict[str, Any]:
        return {"isValid": self.is_valid, "errors": self.errors, "warnings": self.warnings}


def validate_cron(expression: str | None) -> bool:
    """True if the expression is a valid 5-field cron expression."""
    if not expression or not isinstance(expression, str):
        return False
    if len(expression.split()) != 5:
        return False
    return croniter.is_valid(expression)


class GraphValidator:
    """
    Checks a graph definition for structural problems.

    Example:
        result = GraphValidator().validate(graph)
        if not result.is_valid:
            raise GraphValidationError(result)
    """

    def validate(self, definition: GraphSpec | dict[str, Any] | None) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []

        if definition is None:
            return ValidationResult(False, ["Workflow definition is required"], warnings)

        if isinstance(definition, dict):
            try:
                definition = GraphSpec.model_validate(definition)
            except ValidationError as e:
                for err in e.errors():
                    loc = ".".join(str(p) for p in err["loc"])
                    errors.append(f"Invalid definition at {loc}: {err['msg']}")
                return ValidationResult(False, errors, warnings)

        graph = definition

        if not graph.nodes:
            errors.append("Workflow must have at least one node")
            return ValidationResult(False, errors, warnings)

        triggers = graph.trigger_nodes()
        if not triggers:
            errors.append("Workflow must have at least one trigger node")
        elif len(triggers) > 1:
            errors.append(
                f"Workflow must have exactly one trigger node, found {len(triggers)}: "
                f"{', '.join(n.id for n in triggers)}"
            )

        seen: set[str] = set()
        for node in graph.nodes:
            if node.id in seen:
                errors.append(f"Duplicate node id: {node.id}")
            seen.add(node.id)
            node_errors, node_warnings = self._validate_node(node)
            errors.extend(node_errors)
            warnings.extend(node_warnings)

        for edge_errors in (self._validate_edge(graph, i) for i in range(len(graph.edges))):
            errors.extend(edge_errors)

        orphans = self._find_orphans(graph)
        if orphans:
            warnings.append(
                f"Found {len(orphans)} orphaned node(s) with no connections: {', '.join(orphans)}"
            )

        if self._has_cycle(graph):
            errors.append("Workflow contains circular dependencies")

        if errors:
            logger.debug(f"Graph {graph.id or '<unsaved>'} failed validation: {errors}")

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def _validate_node(self, node: NodeSpec) -> tuple[list[str], list[str]]:
        errors: list[str] = []
        warnings: list[str] = []
        config = node.config
        kind = node.kind

        if not node.id:
            errors.append("Node must have an id")
        if not node.type:
            errors.append(f"Node {node.id} must have a type")
            return errors, warnings

        if kind not in NODE_KINDS:
            errors.append(f"Node {node.id} has unknown type: {node.type}")
            return errors, warnings

        if kind == "trigger":
            if node.type.strip().lower() == "trigger-schedule":
                cron = config.get("cron")
                if not cron:
                    errors.append(f"Schedule trigger node {node.id} must have a cron expression")
                elif not validate_cron(cron):
                    errors.append(f"Schedule trigger node {node.id} has invalid cron: {cron}")

        elif kind == "agent":
            if not (config.get("agentId") or config.get("agentName")):
                errors.append(f"Agent action node {node.id} must have an agentId")

        elif kind == "tool":
            if not (config.get("toolId") or config.get("toolName")):
                errors.append(f"Tool action node {node.id} must have a toolId")

        elif kind == "http":
            if not config.get("url"):
                errors.append(f"HTTP action node {node.id} must have a URL")
            if not config.get("method"):
                errors.append(f"HTTP action node {node.id} must have a method")

        elif kind == "email":
            for name in ("to", "subject", "body"):
                if not config.get(name):
                    errors.append(f"Email action node {node.id} must have a {name}")

        elif kind == "condition":
            condition = config.get("condition")
            if not condition:
                errors.append(f"Condition node {node.id} must have a condition")
            else:
                for problem in validate_expression(str(condition)):
                    errors.append(f"Condition node {node.id}: {problem}")

        elif kind == "loop":
            if config.get("items") is None:
                errors.append(f"Loop node {node.id} must have items")

        elif kind == "merge":
            strategy = config.get("mergeStrategy") or config.get("strategy")
            if strategy and strategy not in MERGE_STRATEGIES:
                warnings.append(
                    f"Merge node {node.id} uses unknown strategy '{strategy}', "
                    "falling back to waitAll"
                )

        return errors, warnings

    def _validate_edge(self, graph: GraphSpec, index: int) -> list[str]:
        errors: list[str] = []
        edge = graph.edges[index]
        label = edge.id or f"#{index}"

        if not edge.id:
            errors.append("Edge must have an id")
        if not edge.source:
            errors.append(f"Edge {label} must have a source")
        if not edge.target:
            errors.append(f"Edge {label} must have a target")

        source = graph.get_node(edge.source)
        target = graph.get_node(edge.target)
        if source is None:
            errors.append(f"Edge {label} references non-existent source node: {edge.source}")
        if target is None:
            errors.append(f"Edge {label} references non-existent target node: {edge.target}")

        if edge.source == edge.target:
            errors.append(f"Edge {label} creates a self-loop")

        if edge.kind == EdgeKind.LOOP_BODY and source is not None and source.kind != "loop":
            errors.append(f"Edge {label} is a loop_body edge but {edge.source} is not a loop")
        if edge.kind == EdgeKind.LOOP_BACK and target is not None and target.kind != "loop":
            errors.append(f"Edge {label} is a loop_back edge but {edge.target} is not a loop")

        return errors

    def _find_orphans(self, graph: GraphSpec) -> list[str]:
        if not graph.edges:
            return []
        connected = {e.source for e in graph.edges} | {e.target for e in graph.edges}
        return [n.id for n in graph.nodes if n.id not in connected and not n.is_trigger]

    def _has_cycle(self, graph: GraphSpec) -> bool:
        """DFS with a recursion stack. loop_back edges close loop iterations and are skipped."""
        adjacency: dict[str, list[str]] = {n.id: [] for n in graph.nodes}
        for edge in graph.edges:
            if edge.kind == EdgeKind.LOOP_BACK:
                continue
            adjacency.setdefault(edge.source, []).append(edge.target)

        visited: set[str] = set()
        on_stack: set[str] = set()

        for root in adjacency:
            if root in visited:
                continue
            stack: list[tuple[str, int]] = [(root, 0)]
            visited.add(root)
            on_stack.add(root)
            while stack:
                node_id, idx = stack[-1]
                neighbours = adjacency.get(node_id, [])
                if idx < len(neighbours):
                    stack[-1] = (node_id, idx + 1)
                    neighbour = neighbours[idx]
                    if neighbour in on_stack:
                        return True
                    if neighbour not in visited:
                        visited.add(neighbour)
                        on_stack.add(neighbour)
                        stack.append((neighbour, 0))
                else:
                    stack.pop()
                    on_stack.discard(node_id)

        return False
