"""
Command-line interface for the workflow engine.

Usage:
    flowengine validate workflows/order-sync.json
    flowengine run workflows/order-sync.json --trigger-data '{"orderId": 42}' --org org_1
    flowengine serve --storage ~/.flowengine/data --port 8080
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from flowengine.config import EngineConfig
from flowengine.errors import InvalidExecutionStateError
from flowengine.graph.edge import GraphSpec
from flowengine.graph.executor import WorkflowExecutor
from flowengine.graph.validator import GraphValidator
from flowengine.observability import configure_logging
from flowengine.runtime.event_bus import EventBus
from flowengine.runtime.scheduler import ScheduleAdapter
from flowengine.runtime.webhook_server import WebhookServer, WebhookServerConfig
from flowengine.runtime.webhooks import WebhookAdapter
from flowengine.schemas.execution import Execution
from flowengine.schemas.workflow import Workflow
from flowengine.storage.backend import InMemoryWorkflowStore, WorkflowStore
from flowengine.storage.file_store import FileWorkflowStore

logger = logging.getLogger(__name__)


def load_definition(path: str) -> Workflow | GraphSpec:
    """Load a workflow (has a "graph" key) or a bare graph from a JSON file."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict) and "graph" in data:
        return Workflow.model_validate(data)
    return GraphSpec.model_validate(data)


def _parse_json_arg(value: str | None, name: str) -> dict[str, Any]:
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise SystemExit(f"--{name} is not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise SystemExit(f"--{name} must be a JSON object")
    return parsed


def _build_store(config: EngineConfig, storage: str | None) -> WorkflowStore:
    path = storage or config.storage_path
    if path:
        return FileWorkflowStore(Path(path).expanduser())
    return InMemoryWorkflowStore()


# === COMMANDS ===


def cmd_validate(args: argparse.Namespace) -> int:
    try:
        with open(args.path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        print(f"Could not read {args.path}: {e}", file=sys.stderr)
        return 1

    definition = data.get("graph", data) if isinstance(data, dict) else data
    result = GraphValidator().validate(definition)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        for error in result.errors:
            print(f"✗ {error}")
        for warning in result.warnings:
            print(f"⚠ {warning}")
        if result.is_valid:
            print("✓ Graph is valid")
    return 0 if result.is_valid else 1


async def _await_or_cancel(
    executor: WorkflowExecutor, execution_id: str, timeout: float | None
) -> Execution | None:
    """Wait for the run; past the timeout cancel it and wait for it to stop."""
    try:
        return await executor.wait_for_completion(execution_id, timeout=timeout)
    except TimeoutError:
        pass
    try:
        await executor.cancel(execution_id)
    except InvalidExecutionStateError:
        logger.info(f"Execution {execution_id} finished before it could be cancelled")
    return await executor.wait_for_completion(execution_id)


async def _run_once(args: argparse.Namespace) -> int:
    config = EngineConfig()
    target = load_definition(args.path)

    graph = target.graph if isinstance(target, Workflow) else target
    validation = GraphValidator().validate(graph)
    if not validation.is_valid:
        for error in validation.errors:
            print(f"✗ {error}", file=sys.stderr)
        return 1

    runtime_context = _parse_json_arg(args.context, "context")
    if args.org:
        runtime_context["organizationId"] = args.org

    executor = WorkflowExecutor(store=InMemoryWorkflowStore(), config=config)
    execution = await executor.run(
        target,
        trigger_data=_parse_json_arg(args.trigger_data, "trigger-data"),
        runtime_context=runtime_context,
    )
    finished = await _await_or_cancel(executor, execution.id, args.timeout)

    print(json.dumps(finished.model_dump(mode="json"), indent=2))
    return 0 if finished.status == "completed" else 1


def cmd_run(args: argparse.Namespace) -> int:
    return asyncio.run(_run_once(args))


async def _serve(args: argparse.Namespace) -> None:
    config = EngineConfig()
    store = _build_store(config, args.storage)
    event_bus = EventBus()
    executor = WorkflowExecutor(store=store, event_bus=event_bus, config=config)

    scheduler = ScheduleAdapter(executor, store, event_bus=event_bus)
    adapter = WebhookAdapter(executor, store, config=config, event_bus=event_bus)
    server = WebhookServer(
        adapter,
        executor,
        WebhookServerConfig(
            host=args.host or config.webhook_host,
            port=args.port if args.port is not None else config.webhook_port,
        ),
    )

    await scheduler.start()
    await server.start()
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()
        await scheduler.shutdown()
        await executor.shutdown(cancel_running=True)


def cmd_serve(args: argparse.Namespace) -> int:
    try:
        asyncio.run(_serve(args))
    except KeyboardInterrupt:
        logger.info("Shutting down")
    return 0


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    validate_parser = subparsers.add_parser("validate", help="Statically check a workflow graph")
    validate_parser.add_argument("path", help="Workflow or graph JSON file")
    validate_parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    validate_parser.set_defaults(func=cmd_validate)

    run_parser = subparsers.add_parser("run", help="Run a workflow once and print the execution")
    run_parser.add_argument("path", help="Workflow or graph JSON file")
    run_parser.add_argument("--trigger-data", help="Trigger payload as a JSON object")
    run_parser.add_argument("--context", help="Runtime context as a JSON object")
    run_parser.add_argument("--org", help="Organization id for tenant-scoped nodes")
    run_parser.add_argument("--timeout", type=float, default=None, help="Seconds before cancelling")
    run_parser.set_defaults(func=cmd_run)

    serve_parser = subparsers.add_parser(
        "serve", help="Run the scheduler and webhook server until interrupted"
    )
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--storage", default=None, help="Directory for the file store")
    serve_parser.set_defaults(func=cmd_serve)


def main():
    parser = argparse.ArgumentParser(
        prog="flowengine",
        description="Run and validate workflow graphs",
    )
    parser.add_argument("--log-level", default="INFO", help="DEBUG, INFO, WARNING, ERROR")
    parser.add_argument("--log-format", default="auto", choices=["auto", "json", "human"])

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args()
    configure_logging(level=args.log_level, format=args.log_format)

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
