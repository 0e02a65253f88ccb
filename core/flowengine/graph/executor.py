"""
Workflow Executor - Runs workflow graphs.

The executor:
1. Creates the Execution record (running) and returns it immediately
2. Walks the graph from the trigger node in a background task
3. Invokes the node executor for each node, recording one Step per node
4. Threads outputs into the ExecutionContext and resolves successors
5. Drives the Execution to exactly one terminal status

Successors of a node start concurrently. A node with several incoming
edges (fan-in) runs once, after every incoming edge has settled: an edge
either fires (its source completed and selected it) or is dead (branch
not taken, source failed, run aborted). A node whose incoming edges are
all dead never runs and passes its deadness downstream.

Failure tiers:
- soft: the executor returned success=False; only that branch stops
- hard: the executor raised; no new nodes start, in-flight siblings
  finish and are recorded, and the Execution ends failed
"""

import asyncio
import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any

from flowengine.config import EngineConfig
from flowengine.errors import (
    ExecutionNotFoundError,
    InvalidExecutionStateError,
    NoTriggerNodeError,
    WorkflowNotFoundError,
)
from flowengine.graph.context import CancellationToken, ExecutionContext
from flowengine.graph.edge import EdgeKind, EdgeSpec, GraphSpec
from flowengine.graph.node import (
    LoopIteration,
    NodeContext,
    NodeProtocol,
    NodeResult,
    NodeSpec,
)
from flowengine.observability import set_trace_context
from flowengine.runtime.event_bus import EventBus, EventType
from flowengine.schemas.execution import (
    Execution,
    ExecutionStatus,
    NodeError,
    Step,
    StepStatus,
    utc_now,
)
from flowengine.schemas.workflow import Workflow
from flowengine.storage.backend import InMemoryWorkflowStore, WorkflowStore


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)


@dataclass
class Region:
    """
    The part of a graph walked as one unit: the main flow, or a loop body.

    out holds the edges a node's completion settles; expected counts how
    many of those edges point at each node inside the region.
    """

    starts: list[str]
    nodes: set[str]
    out: dict[str, list[EdgeSpec]]
    expected: Counter


@dataclass
class RegionWalk:
    """Join bookkeeping for one walk of a region."""

    region: Region
    context: ExecutionContext
    parent_step_id: str | None = None
    iteration: int | None = None
    settled: Counter = field(default_factory=Counter)
    fired_from: dict[str, list[str]] = field(default_factory=dict)
    started: set[str] = field(default_factory=set)
    failed: bool = False
    errors: list[str] = field(default_factory=list)


@dataclass
class RunState:
    """Everything the executor tracks for one in-flight Execution."""

    execution: Execution
    graph: GraphSpec
    trigger_type: str | None
    context: ExecutionContext
    token: CancellationToken
    semaphore: asyncio.Semaphore
    organization_id: str | None
    failures: list[NodeError] = field(default_factory=list)
    regions: dict[str, Region] = field(default_factory=dict)
    steps_run: int = 0
    aborted: bool = False
    cancel_recorded: bool = False
    finalizing: bool = False


class WorkflowExecutor:
    """
    Executes workflow graphs.

    Example:
        executor = WorkflowExecutor(
            store=InMemoryWorkflowStore(),
            node_registry=build_node_registry(completions=llm, tools=tools),
            event_bus=EventBus(),
        )

        execution = await executor.run(graph, trigger_data={"orderId": 42},
                                       runtime_context={"organizationId": "org_1"})
        finished = await executor.wait_for_completion(execution.id)
    """

    def __init__(
        self,
        store: WorkflowStore | None = None,
        node_registry: dict[str, NodeProtocol] | None = None,
        event_bus: EventBus | None = None,
        config: EngineConfig | None = None,
    ):
        self.store = store or InMemoryWorkflowStore()
        self.config = config or EngineConfig()
        if node_registry is None:
            from flowengine.nodes import build_node_registry

            node_registry = build_node_registry(config=self.config)
        self.node_registry = node_registry
        self.event_bus = event_bus
        self.logger = logging.getLogger(__name__)

        self._runs: dict[str, RunState] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        # Serialises terminal status writes between cancel() and _finalize()
        self._transition_lock = asyncio.Lock()

    # === ENTRY POINTS ===

    async def execute_workflow(
        self,
        workflow_id: str,
        organization_id: str,
        trigger_data: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
    ) -> Execution:
        """Look up a stored workflow and start a run of its current graph."""
        workflow = await self.store.find_workflow(workflow_id, organization_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow with ID {workflow_id} not found")

        runtime_context = {**(context or {}), "organizationId": organization_id}
        return await self.run(workflow, trigger_data, runtime_context)

    async def run(
        self,
        target: Workflow | GraphSpec | dict[str, Any],
        trigger_data: dict[str, Any] | None = None,
        runtime_context: dict[str, Any] | None = None,
    ) -> Execution:
        """
        Create a running Execution and walk the graph in the background.

        Returns as soon as the Execution is persisted. Use
        wait_for_completion() to await the terminal status.
        """
        if isinstance(target, dict):
            target = GraphSpec.model_validate(target)

        runtime_context = dict(runtime_context or {})
        org_id = runtime_context.get("organizationId") or runtime_context.get("organization_id")

        if isinstance(target, Workflow):
            graph = target.graph
            workflow_id = target.id
            trigger_type: str | None = target.trigger_type.value
            version = target.version
            org_id = org_id or target.organization_id
        else:
            graph = target
            workflow_id = graph.id or "adhoc"
            trigger_type = None
            version = graph.version

        trigger_data = dict(trigger_data or {})
        execution = Execution(
            id=str(uuid.uuid4()),
            workflow_id=workflow_id,
            organization_id=org_id,
            graph_version=version,
            status=ExecutionStatus.RUNNING,
            trigger_data=trigger_data,
        )
        await self.store.create_execution(execution)

        variables = {
            **runtime_context,
            "organizationId": org_id,
            "executionId": execution.id,
            "workflowId": workflow_id,
        }
        state = RunState(
            execution=execution,
            graph=graph,
            trigger_type=trigger_type,
            context=ExecutionContext(variables=variables, trigger_data=trigger_data),
            token=CancellationToken(),
            semaphore=asyncio.Semaphore(max(1, self.config.max_concurrency)),
            organization_id=org_id,
        )
        self._runs[execution.id] = state

        task = asyncio.create_task(self._walk(state), name=f"execution-{execution.id}")
        self._tasks[execution.id] = task
        task.add_done_callback(lambda _t, eid=execution.id: self._tasks.pop(eid, None))

        self.logger.info(f"🚀 Started execution {execution.id} of workflow {workflow_id}")
        return execution

    # === QUERIES AND CONTROL ===

    async def wait_for_completion(
        self, execution_id: str, timeout: float | None = None
    ) -> Execution | None:
        """Wait for a run to reach a terminal status and return it with its Steps."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return await self.get_execution(execution_id)

    async def get_execution(self, execution_id: str) -> Execution | None:
        execution = await self.store.get_execution(execution_id)
        if execution is None:
            return None
        steps = await self.store.list_steps(execution_id)
        return execution.model_copy(update={"steps": steps})

    async def list_executions(
        self, workflow_id: str, limit: int = 20, offset: int = 0
    ) -> list[Execution]:
        return await self.store.list_executions(workflow_id, limit=limit, offset=offset)

    async def cancel(self, execution_id: str) -> Execution:
        """
        Cancel a running Execution.

        New nodes stop starting immediately; executors that wait on the
        cancellation token (delay, HTTP, agent, tool) are interrupted.
        """
        async with self._transition_lock:
            execution = await self.store.get_execution(execution_id)
            if execution is None:
                raise ExecutionNotFoundError(f"Execution with ID {execution_id} not found")

            state = self._runs.get(execution_id)
            if execution.status != ExecutionStatus.RUNNING or (state and state.finalizing):
                raise InvalidExecutionStateError("Only running executions can be cancelled")

            if state is not None:
                state.token.cancel("cancelled by request")
                state.cancel_recorded = True

            end = utc_now()
            updated = await self.store.update_execution(
                execution_id,
                status=ExecutionStatus.CANCELLED,
                end_time=end,
                duration_ms=_elapsed_ms(execution.start_time, end),
            )
        self.logger.info(f"⏹ Execution {execution_id} cancelled")
        if state is not None:
            await self._emit(state, EventType.EXECUTION_CANCELLED, {})
        return updated

    async def shutdown(self, cancel_running: bool = False) -> None:
        """Wait for in-flight runs to finish (optionally cancelling them first)."""
        if cancel_running:
            for state in list(self._runs.values()):
                state.token.cancel("executor shutdown")
        tasks = list(self._tasks.values())
        if tasks:
            self.logger.info(f"Waiting for {len(tasks)} in-flight execution(s)")
            await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def active_executions(self) -> list[str]:
        return list(self._tasks)

    # === WALK ===

    async def _walk(self, state: RunState) -> None:
        execution = state.execution
        set_trace_context(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            organization_id=state.organization_id,
        )
        await self._emit(
            state,
            EventType.EXECUTION_STARTED,
            {"triggerData": execution.trigger_data, "graphVersion": execution.graph_version},
        )

        try:
            entry = state.graph.find_entry_node(state.trigger_type)
            if entry is None:
                raise NoTriggerNodeError("No trigger node found in workflow")

            self.logger.info(f"   Entry node: {entry.id}")
            region = self._build_region(state.graph, [entry.id], exclude=None)
            state.regions[""] = region
            await self._walk_region(state, RegionWalk(region=region, context=state.context))
        except asyncio.CancelledError:
            state.token.cancel("executor task cancelled")
            await self._finalize(state)
            raise
        except Exception as e:
            self._record_orchestration_error(state, e)

        await self._finalize(state)

    async def _walk_region(self, state: RunState, walk: RegionWalk) -> None:
        await self._visit_all(state, walk, walk.region.starts)

    async def _visit_all(self, state: RunState, walk: RegionWalk, node_ids: list[str]) -> None:
        if not node_ids:
            return
        if len(node_ids) > 1:
            self.logger.info(f"   ⑂ Fan-out: starting {len(node_ids)} branches in parallel")

        results = await asyncio.gather(
            *(self._visit(state, walk, node_id) for node_id in node_ids),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                walk.failed = True
                walk.errors.append(str(result))
                self._record_orchestration_error(state, result)

    async def _visit(self, state: RunState, walk: RegionWalk, node_id: str) -> None:
        if node_id in walk.started:
            return
        walk.started.add(node_id)

        node = state.graph.get_node(node_id)
        if node is None:
            return
        if state.token.is_cancelled or state.aborted:
            self.logger.debug(f"   ⊘ Not starting {node_id}: run is stopping")
            return

        set_trace_context(node_id=node.id, node_type=node.kind)
        upstream = walk.fired_from.get(node_id, [])
        if len(upstream) > 1:
            self.logger.info(f"   ⑃ Fan-in: {len(upstream)} branches converge at {node_id}")

        result = await self._execute_node(state, walk, node, upstream)
        selected = self._select_edges(walk.region, node_id, result)
        runnable = self._settle(walk, node_id, selected)
        await self._visit_all(state, walk, runnable)

    def _select_edges(
        self, region: Region, node_id: str, result: NodeResult | None
    ) -> list[EdgeSpec]:
        if result is None or not result.success:
            return []
        edges = region.out.get(node_id, [])
        if result.branch_selector is not None:
            edges = [e for e in edges if e.matches_branch(result.branch_selector)]
        if result.next_node_id:
            edges = [e for e in edges if e.target == result.next_node_id]
        return edges

    def _settle(self, walk: RegionWalk, node_id: str, selected: list[EdgeSpec]) -> list[str]:
        """
        Settle every outgoing edge of a finished node.

        Returns the nodes that became runnable. Nodes whose incoming edges
        all turned out dead are skipped and their own edges settled dead.
        """
        runnable: list[str] = []
        pending: list[tuple[str, list[EdgeSpec]]] = [(node_id, selected)]
        region = walk.region

        while pending:
            source, fired_edges = pending.pop()
            for edge in region.out.get(source, []):
                target = edge.target
                if target not in region.nodes:
                    continue
                walk.settled[target] += 1
                if any(edge is e for e in fired_edges):
                    walk.fired_from.setdefault(target, []).append(source)
                if walk.settled[target] < region.expected[target]:
                    continue
                if walk.fired_from.get(target):
                    runnable.append(target)
                else:
                    self.logger.debug(f"   ⊘ Skipping {target}: no incoming branch fired")
                    pending.append((target, []))

        return runnable

    # === NODE EXECUTION ===

    async def _execute_node(
        self,
        state: RunState,
        walk: RegionWalk,
        node: NodeSpec,
        upstream: list[str],
    ) -> NodeResult | None:
        """Run one node and record its Step. Returns None on hard failure."""
        execution_id = state.execution.id
        step = Step(
            id=str(uuid.uuid4()),
            execution_id=execution_id,
            node_id=node.id,
            node_type=node.type,
            node_name=node.display_name,
            status=StepStatus.RUNNING,
            input_data=walk.context.snapshot(),
            parent_step_id=walk.parent_step_id,
            iteration=walk.iteration,
        )
        await self.store.create_step(step)
        state.steps_run += 1

        label = node.display_name
        if walk.iteration is not None:
            label = f"{label} [iteration {walk.iteration}]"
        self.logger.info(f"▶ {label} ({node.kind})")
        await self._emit(
            state,
            EventType.NODE_STARTED,
            {"stepId": step.id, "nodeType": node.type, "iteration": walk.iteration},
            node_id=node.id,
        )

        executor = self.node_registry.get(node.kind)
        try:
            if executor is None:
                result = NodeResult(
                    success=False, error=f"No executor registered for node type: {node.type}"
                )
            else:
                ctx = NodeContext(
                    node=node,
                    context=walk.context,
                    execution_id=execution_id,
                    workflow_id=state.execution.workflow_id,
                    cancel_token=state.token,
                    config=self.config,
                    organization_id=state.organization_id,
                    upstream_ids=list(upstream),
                )
                if getattr(executor, "manages_subgraph", False):
                    ctx.run_body = partial(self._run_loop_body, state, walk, node, step.id)
                    result = await executor.execute(ctx)
                else:
                    async with state.semaphore:
                        result = await executor.execute(ctx)
        except Exception as e:
            await self._record_hard_failure(state, walk, node, step, e)
            return None

        end = utc_now()
        duration = _elapsed_ms(step.start_time, end)
        if result.success or result.data is not None:
            await walk.context.set_step_output(node.id, result.data)

        if result.success:
            await self.store.update_step(
                step.id,
                status=StepStatus.COMPLETED,
                output_data=result.data,
                end_time=end,
                duration_ms=duration,
            )
            self.logger.info(f"   ✓ {label} completed in {duration}ms")
            await self._emit(
                state,
                EventType.NODE_COMPLETED,
                {"stepId": step.id, "output": result.data, "durationMs": duration},
                node_id=node.id,
            )
        else:
            walk.failed = True
            walk.errors.append(f"{node.id}: {result.error}")
            await self.store.update_step(
                step.id,
                status=StepStatus.FAILED,
                output_data=result.data,
                error=result.error,
                end_time=end,
                duration_ms=duration,
            )
            self.logger.warning(f"   ✗ {label} failed: {result.error}")
            await self._emit(
                state,
                EventType.NODE_ERROR,
                {"stepId": step.id, "error": result.error, "durationMs": duration, "soft": True},
                node_id=node.id,
            )

        return result

    async def _record_hard_failure(
        self,
        state: RunState,
        walk: RegionWalk,
        node: NodeSpec,
        step: Step,
        error: Exception,
    ) -> None:
        message = str(error) or type(error).__name__
        end = utc_now()
        duration = _elapsed_ms(step.start_time, end)

        state.aborted = True
        state.failures.append(
            NodeError(node_id=node.id, step_id=step.id, message=message, started_at=step.start_time)
        )
        walk.failed = True
        walk.errors.append(f"{node.id}: {message}")

        self.logger.error(f"   ✗ {node.display_name} raised: {message}")
        try:
            await self.store.update_step(
                step.id,
                status=StepStatus.FAILED,
                error=message,
                end_time=end,
                duration_ms=duration,
            )
        except Exception as e:
            self.logger.error(f"Failed to record failed step {step.id}: {e}")
        await self._emit(
            state,
            EventType.NODE_ERROR,
            {"stepId": step.id, "error": message, "durationMs": duration, "soft": False},
            node_id=node.id,
        )

    # === LOOPS ===

    async def _run_loop_body(
        self,
        state: RunState,
        walk: RegionWalk,
        loop_node: NodeSpec,
        loop_step_id: str,
        loop_vars: dict[str, Any],
        index: int,
    ) -> LoopIteration:
        """Walk a loop's body once with an iteration-scoped child context."""
        if state.token.is_cancelled or state.aborted:
            return LoopIteration(index=index, success=False, ran=False, stopped=True)

        region = state.regions.get(loop_node.id)
        if region is None:
            entries = state.graph.loop_body_entries(loop_node.id)
            region = self._build_region(state.graph, entries, exclude=loop_node.id)
            state.regions[loop_node.id] = region

        child = walk.context.child(loop_vars)
        body_walk = RegionWalk(
            region=region,
            context=child,
            parent_step_id=loop_step_id,
            iteration=index,
        )
        await self._emit(
            state,
            EventType.LOOP_ITERATION,
            {"iteration": index, "loopItem": loop_vars.get("loopItem")},
            node_id=loop_node.id,
        )
        await self._walk_region(state, body_walk)

        return LoopIteration(
            index=index,
            outputs=child.local_outputs(),
            success=not body_walk.failed,
            errors=list(body_walk.errors),
            stopped=state.token.is_cancelled or state.aborted,
        )

    # === REGIONS ===

    def _flow_edges(self, graph: GraphSpec, node: NodeSpec, exclude: str | None) -> list[EdgeSpec]:
        """
        Edges whose settlement follows a node's completion.

        default edges always; loop_exit edges only when leaving a loop node.
        A loop node also owns the loop_exit edges leaving its body, since
        those fire once the whole loop has finished.
        """
        edges = [
            e
            for e in graph.get_outgoing_edges(node.id)
            if e.target != exclude
            and (e.kind == EdgeKind.DEFAULT or (e.kind == EdgeKind.LOOP_EXIT and node.kind == "loop"))
        ]
        if node.kind == "loop":
            edges.extend(self._body_exit_edges(graph, node.id))
        return edges

    def _body_exit_edges(self, graph: GraphSpec, loop_id: str) -> list[EdgeSpec]:
        seen: set[str] = set()
        queue = list(graph.loop_body_entries(loop_id))
        exits: list[EdgeSpec] = []
        while queue:
            node_id = queue.pop()
            if node_id in seen or node_id == loop_id:
                continue
            seen.add(node_id)
            for edge in graph.get_outgoing_edges(node_id):
                if edge.kind == EdgeKind.LOOP_EXIT:
                    exits.append(edge)
                elif edge.kind == EdgeKind.DEFAULT:
                    queue.append(edge.target)
        return exits

    def _build_region(self, graph: GraphSpec, starts: list[str], exclude: str | None) -> Region:
        nodes: set[str] = set()
        out: dict[str, list[EdgeSpec]] = {}
        queue = list(starts)

        while queue:
            node_id = queue.pop()
            if node_id in nodes or node_id == exclude:
                continue
            node = graph.get_node(node_id)
            if node is None:
                continue
            nodes.add(node_id)
            edges = self._flow_edges(graph, node, exclude)
            out[node_id] = edges
            queue.extend(e.target for e in edges)

        expected: Counter = Counter(
            e.target for edges in out.values() for e in edges if e.target in nodes
        )
        return Region(
            starts=[s for s in starts if s in nodes],
            nodes=nodes,
            out=out,
            expected=expected,
        )

    # === COMPLETION ===

    def _record_orchestration_error(self, state: RunState, error: BaseException) -> None:
        state.aborted = True
        state.failures.append(
            NodeError(node_id="", message=str(error) or type(error).__name__, started_at=utc_now())
        )
        self.logger.error(f"✗ Orchestration error: {error}", exc_info=error)

    async def _finalize(self, state: RunState) -> None:
        if state.finalizing:
            return
        state.finalizing = True

        async with self._transition_lock:
            event_type, payload = await self._record_outcome(state)
        if event_type is not None:
            await self._emit(state, event_type, payload)

        self._runs.pop(state.execution.id, None)

    async def _record_outcome(self, state: RunState) -> tuple[EventType | None, dict[str, Any]]:
        """Write the terminal status; a cancel() already recorded is kept."""
        execution = state.execution
        end = utc_now()
        duration = _elapsed_ms(execution.start_time, end)
        failures = sorted(state.failures, key=lambda f: f.started_at)
        fields: dict[str, Any] = {
            "context_snapshot": state.context.snapshot(),
            "errors": failures,
        }

        event_type: EventType | None
        if state.token.is_cancelled:
            event_type = None
            if not state.cancel_recorded:
                fields.update(status=ExecutionStatus.CANCELLED, end_time=end, duration_ms=duration)
                event_type = EventType.EXECUTION_CANCELLED
            self.logger.info(f"⏹ Execution {execution.id} stopped after cancellation")
        elif failures:
            first = failures[0]
            fields.update(
                status=ExecutionStatus.FAILED,
                error=first.message,
                end_time=end,
                duration_ms=duration,
            )
            event_type = EventType.EXECUTION_FAILED
            self.logger.error(f"✗ Execution {execution.id} failed: {first.message}")
        else:
            fields.update(status=ExecutionStatus.COMPLETED, end_time=end, duration_ms=duration)
            event_type = EventType.EXECUTION_COMPLETED
            self.logger.info("✓ Execution complete!")
            self.logger.info(f"   Steps: {state.steps_run}")
            self.logger.info(f"   Duration: {duration}ms")

        try:
            await self.store.update_execution(execution.id, **fields)
        except Exception as e:
            self.logger.error(f"Failed to record final status of {execution.id}: {e}")

        payload: dict[str, Any] = {"durationMs": duration}
        if failures:
            payload["error"] = failures[0].message
        return event_type, payload

    async def _emit(
        self,
        state: RunState,
        event_type: EventType,
        payload: dict[str, Any],
        node_id: str | None = None,
    ) -> None:
        """
        Publish to the event sink. Sink failures never affect the run.

        EventBus returns without waiting for its subscribers; any other sink
        gets event_emit_timeout_seconds before the event is dropped.
        """
        if self.event_bus is None:
            return
        try:
            async with asyncio.timeout(self.config.event_emit_timeout_seconds):
                await self.event_bus.emit(
                    state.execution.id,
                    event_type,
                    payload,
                    workflow_id=state.execution.workflow_id,
                    node_id=node_id,
                )
        except TimeoutError:
            self.logger.warning(f"Event sink timed out, dropped {event_type}")
        except Exception as e:
            self.logger.warning(f"Event emission failed ({event_type}): {e}")
