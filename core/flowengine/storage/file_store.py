"""
File Store - JSON document storage for workflows, executions and steps.

Directory layout:
  {base_path}/
    workflows/{workflow_id}.json
    webhooks/{workflow_id}.json
    executions/{execution_id}.json
    steps/{execution_id}/{step_id}.json

Each document is written atomically (temp file + rename) and all file I/O
runs off the event loop via asyncio.to_thread.
"""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel

from flowengine.schemas.execution import Execution, Step
from flowengine.schemas.workflow import (
    TriggerType,
    WebhookRegistration,
    Workflow,
    WorkflowStatus,
)
from flowengine.storage.backend import filter_workflows, sort_executions
from flowengine.utils.io import atomic_write

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

# Derived on read, never persisted
COMPUTED_FIELDS = {"is_terminal"}


class FileWorkflowStore:
    """
    File-backed WorkflowStore.

    Example:
        store = FileWorkflowStore("~/.flowengine/data")
        executor = WorkflowExecutor(store)
    """

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path).expanduser()
        self._lock = asyncio.Lock()

    def _validate_key(self, key: str) -> None:
        """
        Validate key to prevent path traversal attacks.

        Raises:
            ValueError: If key contains path traversal or dangerous patterns
        """
        if not key or key.strip() == "":
            raise ValueError("Key cannot be empty")
        if "/" in key or "\\" in key:
            raise ValueError(f"Invalid key format: path separators not allowed in '{key}'")
        if ".." in key or key.startswith("."):
            raise ValueError(f"Invalid key format: path traversal detected in '{key}'")
        if "\x00" in key:
            raise ValueError("Invalid key format: null bytes not allowed")

    def _path(self, *parts: str) -> Path:
        for part in parts:
            self._validate_key(part)
        *dirs, name = parts
        return self.base_path.joinpath(*dirs, f"{name}.json")

    async def _write(self, path: Path, record: BaseModel) -> None:
        def _do_write() -> None:
            with atomic_write(path) as f:
                f.write(record.model_dump_json(indent=2, exclude=COMPUTED_FIELDS))

        await asyncio.to_thread(_do_write)

    async def _read(self, path: Path, model: type[M]) -> M | None:
        def _do_read() -> M | None:
            if not path.exists():
                return None
            return model.model_validate_json(path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_do_read)

    async def _read_dir(self, directory: Path, model: type[M]) -> list[M]:
        def _scan() -> list[M]:
            records: list[M] = []
            if not directory.exists():
                return records
            for path in sorted(directory.glob("*.json")):
                try:
                    records.append(model.model_validate_json(path.read_text(encoding="utf-8")))
                except ValueError as e:
                    logger.warning(f"Failed to load {path}: {e}")
            return records

        return await asyncio.to_thread(_scan)

    async def _update(self, path: Path, model: type[M], fields: dict[str, Any]) -> M:
        async with self._lock:
            current = await self._read(path, model)
            if current is None:
                raise KeyError(f"Record not found: {path.stem}")
            updated = current.model_copy(update=fields)
            await self._write(path, updated)
        return updated

    # === EXECUTIONS ===

    async def create_execution(self, execution: Execution) -> Execution:
        await self._write(self._path("executions", execution.id), execution)
        return execution

    async def update_execution(self, execution_id: str, **fields: Any) -> Execution:
        return await self._update(self._path("executions", execution_id), Execution, fields)

    async def get_execution(self, execution_id: str) -> Execution | None:
        return await self._read(self._path("executions", execution_id), Execution)

    async def list_executions(
        self, workflow_id: str, limit: int = 50, offset: int = 0
    ) -> list[Execution]:
        executions = await self._read_dir(self.base_path / "executions", Execution)
        return sort_executions(
            [e for e in executions if e.workflow_id == workflow_id], limit, offset
        )

    # === STEPS ===

    async def create_step(self, step: Step) -> Step:
        await self._write(self._path("steps", step.execution_id, step.id), step)
        return step

    async def update_step(self, step_id: str, **fields: Any) -> Step:
        path = await self._find_step_path(step_id)
        if path is None:
            raise KeyError(f"Step not found: {step_id}")
        return await self._update(path, Step, fields)

    async def _find_step_path(self, step_id: str) -> Path | None:
        self._validate_key(step_id)

        def _find() -> Path | None:
            steps_dir = self.base_path / "steps"
            if not steps_dir.exists():
                return None
            for path in steps_dir.glob(f"*/{step_id}.json"):
                return path
            return None

        return await asyncio.to_thread(_find)

    async def list_steps(self, execution_id: str) -> list[Step]:
        self._validate_key(execution_id)
        steps = await self._read_dir(self.base_path / "steps" / execution_id, Step)
        steps.sort(key=lambda s: s.start_time)
        return steps

    # === WORKFLOWS ===

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        await self._write(self._path("workflows", workflow.id), workflow)
        return workflow

    async def find_workflow(
        self, workflow_id: str, organization_id: str | None = None
    ) -> Workflow | None:
        workflow = await self._read(self._path("workflows", workflow_id), Workflow)
        if workflow is None:
            return None
        if organization_id is not None and workflow.organization_id != organization_id:
            return None
        return workflow

    async def list_workflows(
        self,
        status: WorkflowStatus | None = None,
        trigger_type: TriggerType | None = None,
    ) -> list[Workflow]:
        workflows = await self._read_dir(self.base_path / "workflows", Workflow)
        return filter_workflows(workflows, status, trigger_type)

    # === WEBHOOKS ===

    async def save_webhook(self, webhook: WebhookRegistration) -> WebhookRegistration:
        await self._write(self._path("webhooks", webhook.workflow_id), webhook)
        return webhook

    async def find_webhook_by_token(self, webhook_url: str) -> WebhookRegistration | None:
        webhooks = await self._read_dir(self.base_path / "webhooks", WebhookRegistration)
        for webhook in webhooks:
            if webhook.webhook_url == webhook_url:
                return webhook
        return None

    async def get_webhook_for_workflow(self, workflow_id: str) -> WebhookRegistration | None:
        return await self._read(self._path("webhooks", workflow_id), WebhookRegistration)

    async def update_webhook(self, workflow_id: str, **fields: Any) -> WebhookRegistration:
        return await self._update(self._path("webhooks", workflow_id), WebhookRegistration, fields)

    async def record_webhook_trigger(
        self, workflow_id: str, triggered_at: datetime
    ) -> WebhookRegistration | None:
        path = self._path("webhooks", workflow_id)
        async with self._lock:
            current = await self._read(path, WebhookRegistration)
            if current is None:
                return None
            updated = current.model_copy(
                update={
                    "trigger_count": current.trigger_count + 1,
                    "last_triggered_at": triggered_at,
                }
            )
            await self._write(path, updated)
        return updated

    async def delete_webhook(self, workflow_id: str) -> bool:
        path = self._path("webhooks", workflow_id)

        def _delete() -> bool:
            if not path.exists():
                return False
            path.unlink()
            return True

        return await asyncio.to_thread(_delete)
