"""
Execution Context - The per-run key/value state shared by every node.

One ExecutionContext exists per Execution. It holds:
- variables: caller-supplied context plus injected identifiers
- trigger_data: the payload that started the run (read-only after seeding)
- step_outputs: node id -> output, appended as nodes complete

Concurrent branches read the context freely; writes go through
set_step_output(), which serialises them with an asyncio.Lock.

Loop bodies run against a child context: variables are copied and
extended with the loop variables, and step outputs are layered so that
body nodes see upstream outputs while their own writes stay local to
the iteration.
"""

import asyncio
import json
import re
from collections import ChainMap
from collections.abc import Awaitable, Mapping
from types import MappingProxyType
from typing import Any, TypeVar

from flowengine.errors import ExecutorFailure
from flowengine.graph.safe_eval import safe_eval

T = TypeVar("T")

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

# Prefixes that pin a lookup to one of the three maps
_PINNED_ROOTS = {
    "trigger": "trigger_data",
    "triggerData": "trigger_data",
    "variables": "variables",
    "steps": "step_outputs",
    "stepOutputs": "step_outputs",
}

_MISSING = object()


class CancellationToken:
    """
    Cooperative cancellation for one Execution.

    The executor checks the token before starting each node; executors that
    wait (delay, HTTP, agent calls) use sleep() or run() so a cancel request
    interrupts them instead of waiting out the call.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for the given time. Returns True if woken by cancellation."""
        if seconds <= 0:
            return self.is_cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await the given work unless the token fires first.

        Raises ExecutorFailure if cancelled; the in-flight task is cancelled.
        """
        if self.is_cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise ExecutorFailure("Execution cancelled")

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        if work.done():
            return work.result()

        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        raise ExecutorFailure("Execution cancelled")


def _step_into(value: Any, part: str) -> Any:
    if isinstance(value, Mapping):
        return value.get(part, _MISSING)
    if isinstance(value, (list, tuple)) and part.lstrip("-").isdigit():
        index = int(part)
        if -len(value) <= index < len(value):
            return value[index]
        return _MISSING
    if part == "length" and isinstance(value, (list, tuple, str)):
        return len(value)
    return _MISSING


def render_value(value: Any) -> str:
    """Render a context value for insertion into a string template."""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


class ExecutionContext:
    """
    Mutable per-run state: variables, step outputs and trigger data.

    Example:
        ctx = ExecutionContext(
            variables={"organizationId": "org_1"},
            trigger_data={"orderId": 42},
        )
        await ctx.set_step_output("fetch", {"statusCode": 200})
        ctx.interpolate("order {{orderId}} -> {{fetch.statusCode}}")  # "order 42 -> 200"
        ctx.evaluate("fetch.statusCode == 200 && orderId > 0")  # True
    """

    def __init__(
        self,
        variables: dict[str, Any] | None = None,
        trigger_data: Mapping[str, Any] | None = None,
        parent: "ExecutionContext | None" = None,
    ):
        self.variables: dict[str, Any] = dict(variables or {})
        self._trigger_data = MappingProxyType(dict(trigger_data or {}))
        self._local_outputs: dict[str, Any] = {}
        if parent is not None:
            self.step_outputs: ChainMap[str, Any] = parent.step_outputs.new_child(
                self._local_outputs
            )
        else:
            self.step_outputs = ChainMap(self._local_outputs)
        self.parent = parent
        self._lock = asyncio.Lock()

    @property
    def trigger_data(self) -> Mapping[str, Any]:
        return self._trigger_data

    # === WRITES (executor only) ===

    async def set_step_output(self, node_id: str, value: Any) -> None:
        async with self._lock:
            self._local_outputs[node_id] = value

    def local_outputs(self) -> dict[str, Any]:
        """Outputs written in this context (not inherited from a parent)."""
        return dict(self._local_outputs)

    def child(self, loop_vars: dict[str, Any]) -> "ExecutionContext":
        """Create an iteration-scoped context for a loop body."""
        return ExecutionContext(
            variables={**self.variables, **loop_vars},
            trigger_data=self._trigger_data,
            parent=self,
        )

    # === READS ===

    def get_step_output(self, node_id: str, default: Any = None) -> Any:
        return self.step_outputs.get(node_id, default)

    def get_input_value(self, key: str, default: Any = None) -> Any:
        """Look a key up in step outputs, then variables, then trigger data."""
        value = self.lookup(key)
        return default if value is _MISSING else value

    def lookup(self, path: str) -> Any:
        """
        Resolve a (possibly dotted) path. Returns a sentinel when unresolved;
        use get_input_value() for a defaulted lookup.
        """
        path = path.strip()
        sources: tuple[Mapping[str, Any], ...] = (
            self.step_outputs,
            self.variables,
            self._trigger_data,
        )
        for source in sources:
            if path in source:
                return source[path]

        head, *rest = path.split(".")
        value = _MISSING
        for source in sources:
            if head in source:
                value = source[head]
                break
        else:
            if head in _PINNED_ROOTS and rest:
                pinned = getattr(self, _PINNED_ROOTS[head])
                value = pinned.get(rest[0], _MISSING)
                rest = rest[1:]

        for part in rest:
            if value is _MISSING:
                break
            value = _step_into(value, part)
        return value

    def interpolate(self, template: str) -> str:
        """Replace {{key}} placeholders; unresolved placeholders are kept verbatim."""
        if not isinstance(template, str) or "{{" not in template:
            return template

        def replace(match: re.Match) -> str:
            value = self.lookup(match.group(1))
            if value is _MISSING:
                return match.group(0)
            return render_value(value)

        return PLACEHOLDER_PATTERN.sub(replace, template)

    def interpolate_value(self, value: Any) -> Any:
        """
        Recursively interpolate strings inside maps and lists.

        A string that is exactly one placeholder yields the raw value,
        so "{{fetch.data}}" stays a dict rather than becoming JSON text.
        """
        if isinstance(value, str):
            match = PLACEHOLDER_PATTERN.fullmatch(value.strip())
            if match:
                resolved = self.lookup(match.group(1))
                return value if resolved is _MISSING else resolved
            return self.interpolate(value)
        if isinstance(value, Mapping):
            return {k: self.interpolate_value(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.interpolate_value(v) for v in value]
        return value

    def evaluation_scope(self) -> dict[str, Any]:
        """Combined read-only view used by condition expressions."""
        scope: dict[str, Any] = {
            "trigger": dict(self._trigger_data),
            "variables": dict(self.variables),
            "steps": dict(self.step_outputs),
        }
        scope.update(self._trigger_data)
        scope.update(self.variables)
        scope.update(self.step_outputs)
        return scope

    def evaluate(self, expression: str) -> Any:
        return safe_eval(expression, self.evaluation_scope())

    def snapshot(self) -> dict[str, Any]:
        """Plain-dict copy suitable for persisting on an Execution or Step."""
        return {
            "variables": dict(self.variables),
            "stepOutputs": dict(self.step_outputs),
            "triggerData": dict(self._trigger_data),
        }
