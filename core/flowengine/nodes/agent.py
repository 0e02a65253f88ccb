"""Agent node: resolves a prompt, looks up the agent, and issues a chat completion."""

from collections.abc import Mapping
from typing import Any

from flowengine.errors import ConfigurationError, ExecutorFailure
from flowengine.graph.node import NodeContext, NodeResult
from flowengine.nodes.base import NodeExecutor, iso_now
from flowengine.services.protocols import (
    AgentConfig,
    AgentDirectory,
    ChatResponse,
    CompletionProvider,
)

DEFAULT_PROMPT = "Execute agent task"


class AgentNodeExecutor(NodeExecutor):
    """
    Executes action-agent nodes.

    Prompt resolution order:
    1. config.prompt (interpolated)
    2. a "message" or "prompt" field in the first upstream node's output
    3. a "prompt" value anywhere in the context
    4. DEFAULT_PROMPT
    """

    kind = "agent"
    failure_label = "Agent execution"

    def __init__(
        self,
        completions: CompletionProvider | None = None,
        agents: AgentDirectory | None = None,
        default_model: str = "gpt-4o-mini",
    ):
        super().__init__()
        self._completions = completions
        self._agents = agents
        self._default_model = default_model

    def _resolve_prompt(self, ctx: NodeContext) -> str:
        prompt = ctx.node.config.get("prompt")
        if prompt:
            return ctx.context.interpolate(str(prompt))

        if ctx.upstream_ids:
            upstream = ctx.context.get_step_output(ctx.upstream_ids[0])
            if isinstance(upstream, Mapping):
                for key in ("message", "prompt"):
                    if upstream.get(key):
                        return str(upstream[key])

        found = ctx.context.get_input_value("prompt")
        return str(found) if found else DEFAULT_PROMPT

    async def _load_agent(self, agent_id: str, agent_name: str | None, org_id: str) -> AgentConfig:
        if self._agents is None:
            return AgentConfig(id=agent_id, name=agent_name or "AI Agent")
        agent = await self._agents.get_agent(agent_id, org_id)
        if agent is None:
            raise ConfigurationError(f"Agent not found: {agent_id}")
        return agent

    async def run(self, ctx: NodeContext) -> NodeResult:
        org_id = self.require_tenant(ctx)
        config = ctx.node.config

        agent_id = config.get("agentId")
        agent_name = config.get("agentName")
        if not agent_id and not agent_name:
            raise ConfigurationError("Agent ID or name is required")
        if self._completions is None:
            raise ConfigurationError("No completion provider configured")

        agent = await self._load_agent(str(agent_id or agent_name), agent_name, org_id)
        prompt = self._resolve_prompt(ctx)
        model = config.get("model") or agent.model or self._default_model
        temperature = config.get("temperature", agent.temperature)
        system_prompt = config.get("systemPrompt") or agent.system_prompt

        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": ctx.context.interpolate(system_prompt)})
        messages.append({"role": "user", "content": prompt})

        self.logger.info(f"{ctx.node.id}: calling agent {agent.name or agent.id} ({model})")
        try:
            response: ChatResponse = await ctx.cancel_token.run(
                self._completions.chat(model=model, messages=messages, temperature=temperature)
            )
        except ExecutorFailure:
            raise
        except Exception as e:
            raise ExecutorFailure(f"Agent execution failed: {e}") from e

        data: dict[str, Any] = {
            "agentId": agent.id,
            "agentName": agent_name or agent.name or "AI Agent",
            "model": response.model or model,
            "prompt": prompt,
            "response": response.text,
            "usage": response.usage.to_dict(),
            "finishReason": response.finish_reason,
            "timestamp": iso_now(),
        }
        return NodeResult(success=True, data=data)
