"""
External collaborators consumed by node executors.

These are typed interfaces, not wire formats: host applications implement
them over whatever transport they use. Executors depend only on these
protocols, so tests substitute small fake classes.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass
class AgentConfig:
    """Agent definition as returned by the agent directory."""

    id: str
    name: str = ""
    model: str | None = None
    system_prompt: str | None = None
    temperature: float = 0.7
    max_tokens: int | None = None


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
        }


@dataclass
class ChatResponse:
    """Result of one chat completion."""

    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: str | None = None
    model: str | None = None


@dataclass
class ToolExecutionResult:
    success: bool
    result: Any = None
    error: str | None = None
    execution_time: float | None = None  # milliseconds


@runtime_checkable
class AgentDirectory(Protocol):
    """Looks up agent definitions scoped to an organization."""

    async def get_agent(self, agent_id: str, organization_id: str) -> AgentConfig | None: ...


@runtime_checkable
class CompletionProvider(Protocol):
    """Chat completion service."""

    async def chat(
        self,
        model: str,
        messages: list[dict[str, str]],
        temperature: float | None = None,
    ) -> ChatResponse: ...


@runtime_checkable
class ToolService(Protocol):
    """Executes a registered tool on behalf of an organization."""

    async def execute_tool(
        self, tool_id: str, input: dict[str, Any], organization_id: str
    ) -> ToolExecutionResult: ...


@runtime_checkable
class NotificationService(Protocol):
    """Delivers notifications. May raise on delivery failure."""

    async def send_notification(
        self,
        to: list[str],
        subject: str,
        body: str,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...
