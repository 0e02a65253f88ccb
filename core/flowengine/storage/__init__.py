"""Persistence backends for workflow, execution and step records."""

from flowengine.storage.backend import InMemoryWorkflowStore, WorkflowStore
from flowengine.storage.file_store import FileWorkflowStore

__all__ = ["FileWorkflowStore", "InMemoryWorkflowStore", "WorkflowStore"]
