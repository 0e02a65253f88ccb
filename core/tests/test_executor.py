"""
Tests for WorkflowExecutor: graph walking, branching, fan-out/fan-in,
failure tiers, loops, cancellation and bounded concurrency.
"""

import asyncio
import time

import pytest

from flowengine.config import EngineConfig
from flowengine.errors import (
    ExecutionNotFoundError,
    InvalidExecutionStateError,
    WorkflowNotFoundError,
)
from flowengine.graph.edge import EdgeSpec, GraphSpec
from flowengine.graph.executor import WorkflowExecutor
from flowengine.graph.node import NodeResult, NodeSpec
from flowengine.nodes import build_node_registry
from flowengine.runtime.event_bus import EventBus, EventType
from flowengine.schemas.execution import ExecutionStatus, StepStatus
from flowengine.schemas.workflow import Workflow
from flowengine.services.protocols import ChatResponse
from flowengine.storage.backend import InMemoryWorkflowStore


# ---- Fake node executors ----
class ValueNode:
    """Sleeps config.sleep seconds, then returns config.value."""

    async def execute(self, ctx):
        await asyncio.sleep(ctx.node.config.get("sleep", 0))
        return NodeResult(success=True, data=ctx.node.config.get("value", {"node": ctx.node.id}))


class LoopItemNode:
    async def execute(self, ctx):
        return NodeResult(success=True, data=ctx.context.get_input_value("loopItem") * 2)


class RaisingNode:
    async def execute(self, ctx):
        await asyncio.sleep(ctx.node.config.get("sleep", 0))
        raise RuntimeError(ctx.node.config.get("message", "kaboom"))


class SoftFailNode:
    async def execute(self, ctx):
        return NodeResult(success=False, error="nope")


class ConcurrencyGauge:
    def __init__(self):
        self.active = 0
        self.max_active = 0

    async def execute(self, ctx):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        await asyncio.sleep(0.05)
        self.active -= 1
        return NodeResult(success=True, data={})


class FakeCompletions:
    async def chat(self, model, messages, temperature=None):
        return ChatResponse(text="ok")


class BrokenEventSink:
    async def emit(self, *args, **kwargs):
        raise ConnectionError("sink offline")


class StuckEventSink:
    async def emit(self, *args, **kwargs):
        await asyncio.Event().wait()


class SlowReadStore(InMemoryWorkflowStore):
    """Execution reads yield for a while, like a store backed by a thread pool."""

    async def get_execution(self, execution_id):
        await asyncio.sleep(0.2)
        return await super().get_execution(execution_id)


# ---- Helpers ----
def _registry(**extra):
    registry = build_node_registry(completions=FakeCompletions())
    registry.update(
        {
            "value": ValueNode(),
            "loopitem": LoopItemNode(),
            "raise": RaisingNode(),
            "soft": SoftFailNode(),
        }
    )
    registry.update(extra)
    return registry


def _executor(config=None, event_bus=None, **extra) -> WorkflowExecutor:
    return WorkflowExecutor(
        store=InMemoryWorkflowStore(),
        node_registry=_registry(**extra),
        event_bus=event_bus,
        config=config or EngineConfig(max_concurrency=10, loop_max_iterations=1000),
    )


def _trigger(node_id="start"):
    return NodeSpec(id=node_id, type="trigger-manual")


def _node(node_id, kind, **config):
    return NodeSpec(id=node_id, type=f"action-{kind}", config=config)


def _edge(source, target, **kwargs):
    return EdgeSpec(id=f"{source}->{target}", source=source, target=target, **kwargs)


def _graph(nodes, edges):
    return GraphSpec(id="g", nodes=nodes, edges=edges)


async def _run(executor, graph, trigger_data=None, org="org_1", timeout=5):
    execution = await executor.run(
        graph, trigger_data=trigger_data, runtime_context={"organizationId": org} if org else {}
    )
    return await executor.wait_for_completion(execution.id, timeout=timeout)


def _steps_by_node(execution):
    return {s.node_id: s for s in execution.steps}


# ---- Linear and branching ----
@pytest.mark.asyncio
async def test_run_returns_running_execution_immediately():
    executor = _executor()
    graph = _graph([_trigger(), _node("slow", "value", sleep=0.05)], [_edge("start", "slow")])

    execution = await executor.run(graph, runtime_context={"organizationId": "org_1"})
    assert execution.status == ExecutionStatus.RUNNING

    finished = await executor.wait_for_completion(execution.id, timeout=5)
    assert finished.status == ExecutionStatus.COMPLETED
    assert finished.duration_ms is not None
    assert finished.end_time is not None


@pytest.mark.asyncio
async def test_linear_graph_threads_outputs():
    executor = _executor()
    graph = _graph(
        [_trigger(), _node("a", "value", value={"x": 1}), _node("b", "value", value={"y": 2})],
        [_edge("start", "a"), _edge("a", "b")],
    )
    execution = await _run(executor, graph, trigger_data={"orderId": 42})

    assert execution.status == ExecutionStatus.COMPLETED
    assert [s.node_id for s in execution.steps] == ["start", "a", "b"]
    assert all(s.status == StepStatus.COMPLETED for s in execution.steps)

    snapshot = execution.context_snapshot
    assert snapshot["stepOutputs"]["a"] == {"x": 1}
    assert snapshot["stepOutputs"]["start"]["orderId"] == 42
    assert snapshot["variables"]["organizationId"] == "org_1"
    assert snapshot["variables"]["executionId"] == execution.id

    # Each step's input is the context as it stood when the node started
    step_b = _steps_by_node(execution)["b"]
    assert step_b.input_data["stepOutputs"]["a"] == {"x": 1}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("expression", "taken", "not_taken"),
    [("1 > 0", "yes", "no"), ("1 > 2", "no", "yes")],
)
async def test_condition_selects_branch(expression, taken, not_taken):
    executor = _executor()
    graph = _graph(
        [
            _trigger(),
            NodeSpec(id="check", type="control-condition", config={"condition": expression}),
            _node("yes", "value"),
            _node("no", "value"),
        ],
        [
            _edge("start", "check"),
            _edge("check", "yes", branch_selector="true"),
            _edge("check", "no", branch_selector="false"),
        ],
    )
    execution = await _run(executor, graph)

    steps = _steps_by_node(execution)
    assert execution.status == ExecutionStatus.COMPLETED
    assert taken in steps
    assert not_taken not in steps


@pytest.mark.asyncio
async def test_condition_reads_trigger_data():
    executor = _executor()
    graph = _graph(
        [
            _trigger(),
            NodeSpec(id="check", type="condition", config={"condition": "amount >= 100"}),
            _node("big", "value"),
            _node("small", "value"),
        ],
        [
            _edge("start", "check"),
            _edge("check", "big", sourceHandle="true"),
            _edge("check", "small", sourceHandle="false"),
        ],
    )
    execution = await _run(executor, graph, trigger_data={"amount": 250})
    assert set(_steps_by_node(execution)) == {"start", "check", "big"}


# ---- Concurrency ----
@pytest.mark.asyncio
async def test_fan_out_runs_branches_in_parallel():
    executor = _executor()
    graph = _graph(
        [_trigger()] + [_node(f"n{i}", "value", sleep=0.1) for i in range(3)],
        [_edge("start", f"n{i}") for i in range(3)],
    )

    started = time.monotonic()
    execution = await _run(executor, graph)
    elapsed = time.monotonic() - started

    assert execution.status == ExecutionStatus.COMPLETED
    assert len(execution.steps) == 4
    assert elapsed < 0.25


@pytest.mark.asyncio
async def test_fan_out_is_bounded_by_max_concurrency():
    gauge = ConcurrencyGauge()
    executor = _executor(
        config=EngineConfig(max_concurrency=2, loop_max_iterations=1000), gauge=gauge
    )
    graph = _graph(
        [_trigger()] + [_node(f"p{i}", "gauge") for i in range(5)],
        [_edge("start", f"p{i}") for i in range(5)],
    )
    execution = await _run(executor, graph)

    assert execution.status == ExecutionStatus.COMPLETED
    assert len(execution.steps) == 6
    assert gauge.max_active == 2


# ---- Failure tiers ----
@pytest.mark.asyncio
async def test_hard_failure_fails_execution_but_records_siblings():
    executor = _executor()
    graph = _graph(
        [
            _trigger(),
            _node("boom", "raise", message="kaboom"),
            _node("slow", "value", sleep=0.1),
            _node("after", "value"),
        ],
        [_edge("start", "boom"), _edge("start", "slow"), _edge("slow", "after")],
    )
    execution = await _run(executor, graph)

    steps = _steps_by_node(execution)
    assert execution.status == ExecutionStatus.FAILED
    assert execution.error == "kaboom"
    assert steps["boom"].status == StepStatus.FAILED
    assert steps["boom"].error == "kaboom"
    # The in-flight sibling finishes and is recorded; nothing new starts
    assert steps["slow"].status == StepStatus.COMPLETED
    assert "after" not in steps
    assert len(execution.errors) == 1
    assert execution.errors[0].node_id == "boom"


@pytest.mark.asyncio
async def test_earliest_started_failure_wins():
    executor = _executor()
    graph = _graph(
        [
            _trigger(),
            _node("first", "raise", sleep=0.05, message="first failed"),
            _node("gate", "value", sleep=0.01),
            _node("second", "raise", message="second failed"),
        ],
        [_edge("start", "first"), _edge("start", "gate"), _edge("gate", "second")],
    )
    execution = await _run(executor, graph)

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error == "first failed"
    assert [e.message for e in execution.errors] == ["first failed", "second failed"]


@pytest.mark.asyncio
async def test_soft_failure_stops_only_its_branch():
    executor = _executor()
    graph = _graph(
        [_trigger(), _node("bad", "soft"), _node("next", "value"), _node("other", "value")],
        [_edge("start", "bad"), _edge("bad", "next"), _edge("start", "other")],
    )
    execution = await _run(executor, graph)

    steps = _steps_by_node(execution)
    assert execution.status == ExecutionStatus.COMPLETED
    assert steps["bad"].status == StepStatus.FAILED
    assert steps["bad"].error == "nope"
    assert "next" not in steps
    assert steps["other"].status == StepStatus.COMPLETED


@pytest.mark.asyncio
async def test_unknown_node_kind_is_soft_failure():
    executor = _executor()
    graph = _graph([_trigger(), _node("mystery", "teleport")], [_edge("start", "mystery")])
    execution = await _run(executor, graph)

    assert execution.status == ExecutionStatus.COMPLETED
    assert "No executor registered" in _steps_by_node(execution)["mystery"].error


@pytest.mark.asyncio
async def test_missing_trigger_fails_without_steps():
    executor = _executor()
    execution = await _run(executor, _graph([_node("a", "value")], []))

    assert execution.status == ExecutionStatus.FAILED
    assert "No trigger node" in execution.error
    assert execution.steps == []


@pytest.mark.asyncio
async def test_agent_without_tenant_is_hard_failure():
    executor = _executor()
    graph = _graph(
        [_trigger(), NodeSpec(id="ask", type="action-agent", config={"agentId": "a1"})],
        [_edge("start", "ask")],
    )
    execution = await _run(executor, graph, org=None)

    assert execution.status == ExecutionStatus.FAILED
    assert "organization id" in execution.error


@pytest.mark.asyncio
async def test_event_sink_failures_do_not_affect_run():
    executor = _executor(event_bus=BrokenEventSink())
    graph = _graph([_trigger(), _node("a", "value")], [_edge("start", "a")])
    execution = await _run(executor, graph)
    assert execution.status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_slow_subscriber_does_not_delay_run():
    bus = EventBus()

    async def slow(event):
        await asyncio.sleep(0.5)

    bus.subscribe([EventType.NODE_STARTED], slow)
    executor = _executor(event_bus=bus)
    graph = _graph([_trigger(), _node("a", "value")], [_edge("start", "a")])

    started = time.monotonic()
    execution = await _run(executor, graph)
    elapsed = time.monotonic() - started

    assert execution.status == ExecutionStatus.COMPLETED
    assert elapsed < 0.3
    await bus.drain()


@pytest.mark.asyncio
async def test_hung_subscriber_does_not_block_run():
    bus = EventBus(handler_timeout=0.1)

    async def hung(event):
        await asyncio.Event().wait()

    bus.subscribe([EventType.EXECUTION_STARTED], hung)
    executor = _executor(event_bus=bus)
    graph = _graph([_trigger(), _node("a", "value")], [_edge("start", "a")])
    execution = await _run(executor, graph, timeout=1)

    assert execution.status == ExecutionStatus.COMPLETED
    assert len(execution.steps) == 2
    await bus.drain()


@pytest.mark.asyncio
async def test_stuck_event_sink_is_bounded():
    config = EngineConfig(
        max_concurrency=10, loop_max_iterations=1000, event_emit_timeout_seconds=0.01
    )
    executor = _executor(config=config, event_bus=StuckEventSink())
    graph = _graph([_trigger(), _node("a", "value")], [_edge("start", "a")])
    execution = await _run(executor, graph, timeout=2)

    assert execution.status == ExecutionStatus.COMPLETED


# ---- Fan-in ----
@pytest.mark.asyncio
async def test_merge_waits_for_all_branches():
    executor = _executor()
    graph = _graph(
        [
            _trigger(),
            _node("a", "value", value={"a": 1}),
            _node("b", "value", value={"b": 2}, sleep=0.03),
            _node("c", "value", value={"c": 3}, sleep=0.06),
            NodeSpec(id="merge", type="control-merge", config={"mergeStrategy": "array"}),
        ],
        [
            _edge("start", "a"),
            _edge("start", "b"),
            _edge("start", "c"),
            _edge("a", "merge"),
            _edge("b", "merge"),
            _edge("c", "merge"),
        ],
    )
    execution = await _run(executor, graph)

    merge_steps = [s for s in execution.steps if s.node_id == "merge"]
    assert len(merge_steps) == 1
    output = merge_steps[0].output_data
    assert output["items"] == [{"a": 1}, {"b": 2}, {"c": 3}]
    assert output["count"] == 3


@pytest.mark.asyncio
async def test_join_after_untaken_branch_runs_once():
    executor = _executor()
    graph = _graph(
        [
            _trigger(),
            NodeSpec(id="check", type="condition", config={"condition": "false"}),
            _node("x", "value"),
            _node("y", "value", value={"from": "y"}),
            NodeSpec(id="join", type="merge"),
        ],
        [
            _edge("start", "check"),
            _edge("check", "x", branch_selector="true"),
            _edge("check", "y", branch_selector="false"),
            _edge("x", "join"),
            _edge("y", "join"),
        ],
    )
    execution = await _run(executor, graph)

    steps = _steps_by_node(execution)
    assert "x" not in steps
    assert steps["join"].output_data["branches"] == [{"from": "y"}]
    assert steps["join"].output_data["branchCount"] == 1


@pytest.mark.asyncio
async def test_node_after_dead_branch_never_runs():
    executor = _executor()
    graph = _graph(
        [_trigger(), _node("bad", "soft"), _node("mid", "value"), _node("end", "value")],
        [_edge("start", "bad"), _edge("bad", "mid"), _edge("mid", "end")],
    )
    execution = await _run(executor, graph)
    assert set(_steps_by_node(execution)) == {"start", "bad"}


# ---- Loops ----
@pytest.mark.asyncio
async def test_loop_runs_body_per_item_then_exits():
    executor = _executor()
    graph = _graph(
        [
            _trigger(),
            NodeSpec(id="each", type="control-loop", config={"items": "{{numbers}}"}),
            _node("double", "loopitem"),
            _node("done", "value", value={"done": True}),
        ],
        [
            _edge("start", "each"),
            _edge("each", "double", kind="loop_body"),
            _edge("double", "each", kind="loop_back"),
            _edge("double", "done", kind="loop_exit"),
        ],
    )
    execution = await _run(executor, graph, trigger_data={"numbers": [1, 2, 3]})

    assert execution.status == ExecutionStatus.COMPLETED
    loop_step = _steps_by_node(execution)["each"]
    body_steps = [s for s in execution.steps if s.node_id == "double"]

    assert [s.iteration for s in body_steps] == [0, 1, 2]
    assert all(s.parent_step_id == loop_step.id for s in body_steps)
    assert [r["outputs"]["double"] for r in loop_step.output_data["results"]] == [2, 4, 6]
    assert loop_step.output_data["processedItems"] == 3

    done_steps = [s for s in execution.steps if s.node_id == "done"]
    assert len(done_steps) == 1
    assert done_steps[0].start_time >= body_steps[-1].start_time


@pytest.mark.asyncio
async def test_loop_body_soft_failure_is_reported_per_iteration():
    executor = _executor()
    graph = _graph(
        [
            _trigger(),
            NodeSpec(id="each", type="loop", config={"items": [1, 2]}),
            _node("bad", "soft"),
        ],
        [_edge("start", "each"), _edge("each", "bad", kind="loop_body")],
    )
    execution = await _run(executor, graph)

    results = _steps_by_node(execution)["each"].output_data["results"]
    assert execution.status == ExecutionStatus.COMPLETED
    assert [r["success"] for r in results] == [False, False]


@pytest.mark.asyncio
async def test_loop_stops_after_hard_failure_in_body():
    executor = _executor()
    graph = _graph(
        [
            _trigger(),
            NodeSpec(id="each", type="loop", config={"items": [1, 2, 3]}),
            _node("bad", "raise", message="body exploded"),
        ],
        [_edge("start", "each"), _edge("each", "bad", kind="loop_body")],
    )
    execution = await _run(executor, graph)

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error == "body exploded"
    assert len([s for s in execution.steps if s.node_id == "bad"]) == 1

    output = _steps_by_node(execution)["each"].output_data
    assert [(r["index"], r["success"]) for r in output["results"]] == [(0, False)]
    assert output["processedItems"] == 1
    assert output["skippedItems"] == 2
    assert output["completed"] is False


# ---- Cancellation ----
@pytest.mark.asyncio
async def test_cancel_stops_new_nodes():
    executor = _executor()
    graph = _graph(
        [
            _trigger(),
            NodeSpec(id="wait", type="control-delay", config={"duration": 5, "unit": "s"}),
            _node("after", "value"),
        ],
        [_edge("start", "wait"), _edge("wait", "after")],
    )
    execution = await executor.run(graph, runtime_context={"organizationId": "org_1"})
    await asyncio.sleep(0.05)

    cancelled = await executor.cancel(execution.id)
    assert cancelled.status == ExecutionStatus.CANCELLED

    finished = await executor.wait_for_completion(execution.id, timeout=2)
    steps = _steps_by_node(finished)
    assert finished.status == ExecutionStatus.CANCELLED
    assert steps["wait"].status == StepStatus.FAILED
    assert "after" not in steps


@pytest.mark.asyncio
async def test_cancel_rejects_finished_and_unknown_executions():
    executor = _executor()
    execution = await _run(executor, _graph([_trigger()], []))

    with pytest.raises(InvalidExecutionStateError):
        await executor.cancel(execution.id)
    with pytest.raises(ExecutionNotFoundError):
        await executor.cancel("does-not-exist")


@pytest.mark.asyncio
async def test_cancel_racing_completion_keeps_single_terminal_status():
    executor = WorkflowExecutor(
        store=SlowReadStore(),
        node_registry=_registry(),
        config=EngineConfig(max_concurrency=10, loop_max_iterations=1000),
    )
    graph = _graph([_trigger(), _node("a", "value", sleep=0.05)], [_edge("start", "a")])
    execution = await executor.run(graph, runtime_context={"organizationId": "org_1"})
    await asyncio.sleep(0.01)

    # The run finishes while cancel() is still reading the record
    with pytest.raises(InvalidExecutionStateError):
        await executor.cancel(execution.id)

    finished = await executor.wait_for_completion(execution.id, timeout=5)
    assert finished.status == ExecutionStatus.COMPLETED


# ---- Entry points and events ----
@pytest.mark.asyncio
async def test_execute_workflow_loads_stored_graph():
    executor = _executor()
    workflow = Workflow(
        id="wf_1",
        organization_id="org_1",
        version=3,
        graph=_graph([_trigger(), _node("a", "value")], [_edge("start", "a")]),
    )
    await executor.store.save_workflow(workflow)

    execution = await executor.execute_workflow("wf_1", "org_1", trigger_data={"k": "v"})
    finished = await executor.wait_for_completion(execution.id, timeout=5)

    assert finished.status == ExecutionStatus.COMPLETED
    assert finished.workflow_id == "wf_1"
    assert finished.graph_version == 3
    assert finished.organization_id == "org_1"
    assert [e.id for e in await executor.list_executions("wf_1")] == [execution.id]

    with pytest.raises(WorkflowNotFoundError):
        await executor.execute_workflow("wf_1", "org_other")


@pytest.mark.asyncio
async def test_lifecycle_events_are_emitted():
    bus = EventBus()
    executor = _executor(event_bus=bus)
    graph = _graph([_trigger(), _node("a", "value")], [_edge("start", "a")])
    execution = await _run(executor, graph)

    types = [e.type for e in reversed(bus.get_history(execution_id=execution.id))]
    assert types[0] == EventType.EXECUTION_STARTED
    assert types[-1] == EventType.EXECUTION_COMPLETED
    assert types.count(EventType.NODE_STARTED) == 2
    assert types.count(EventType.NODE_COMPLETED) == 2


@pytest.mark.asyncio
async def test_run_accepts_plain_dict_graph():
    executor = _executor()
    execution = await _run(
        executor,
        {
            "id": "adhoc",
            "nodes": [
                {"id": "start", "type": "trigger"},
                {"id": "a", "type": "action-value", "data": {"value": 5}},
            ],
            "edges": [{"id": "e1", "source": "start", "target": "a"}],
        },
    )
    assert execution.status == ExecutionStatus.COMPLETED
    assert _steps_by_node(execution)["a"].output_data == 5


@pytest.mark.asyncio
async def test_shutdown_waits_for_in_flight_runs():
    executor = _executor()
    graph = _graph([_trigger(), _node("slow", "value", sleep=0.05)], [_edge("start", "slow")])
    execution = await executor.run(graph, runtime_context={"organizationId": "org_1"})

    await executor.shutdown()
    assert executor.active_executions == []
    finished = await executor.get_execution(execution.id)
    assert finished.status == ExecutionStatus.COMPLETED
