"""Interfaces for services the engine calls out to."""

from flowengine.services.protocols import (
    AgentConfig,
    AgentDirectory,
    ChatResponse,
    CompletionProvider,
    NotificationService,
    TokenUsage,
    ToolExecutionResult,
    ToolService,
)

__all__ = [
    "AgentConfig",
    "AgentDirectory",
    "ChatResponse",
    "CompletionProvider",
    "NotificationService",
    "TokenUsage",
    "ToolExecutionResult",
    "ToolService",
]
