"""
Tests for the WebhookAdapter (tokens, signatures, triggering) and the
aiohttp WebhookServer in front of it.
"""

import asyncio
import hashlib
import hmac
import json
from types import SimpleNamespace

import aiohttp
import pytest

from flowengine.config import EngineConfig
from flowengine.errors import InvalidSignatureError, WebhookNotFoundError, WorkflowNotFoundError
from flowengine.graph.edge import EdgeSpec, GraphSpec
from flowengine.graph.executor import WorkflowExecutor
from flowengine.graph.node import NodeSpec
from flowengine.runtime.event_bus import EventBus, EventType
from flowengine.runtime.webhook_server import WebhookServer, WebhookServerConfig
from flowengine.runtime.webhooks import WebhookAdapter, parse_payload
from flowengine.schemas.execution import ExecutionStatus
from flowengine.schemas.workflow import TriggerType, Workflow
from flowengine.storage.backend import InMemoryWorkflowStore

SIGNATURE_HEADER = "X-Webhook-Signature"


def _workflow() -> Workflow:
    return Workflow(
        id="wf_hook",
        organization_id="org_1",
        trigger_type=TriggerType.WEBHOOK,
        graph=GraphSpec(
            nodes=[
                NodeSpec(id="start", type="trigger-webhook"),
                NodeSpec(id="check", type="condition", config={"condition": "payload.amount > 10"}),
            ],
            edges=[EdgeSpec(id="e1", source="start", target="check")],
        ),
    )


async def _setup(require_signature: bool = False, event_bus: EventBus | None = None):
    store = InMemoryWorkflowStore()
    await store.save_workflow(_workflow())
    executor = WorkflowExecutor(store=store, event_bus=event_bus)
    config = EngineConfig(
        webhook_signature_header=SIGNATURE_HEADER,
        require_webhook_signature=require_signature,
    )
    adapter = WebhookAdapter(executor, store, config=config, event_bus=event_bus)
    webhook = await adapter.create_webhook("wf_hook", "org_1")
    return adapter, executor, store, webhook


class SlowStartExecutor:
    """Stands in for the executor; runs `during_start` while the run is being created."""

    def __init__(self, during_start=None):
        self.during_start = during_start
        self.started = 0

    async def execute_workflow(self, workflow_id, organization_id, trigger_data=None, context=None):
        self.started += 1
        await asyncio.sleep(0.01)
        if self.during_start is not None:
            await self.during_start()
        return SimpleNamespace(id=f"exec_{self.started}")


def _sign(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TestWebhookManagement:
    @pytest.mark.asyncio
    async def test_create_webhook_issues_token_and_secret(self):
        adapter, _, store, webhook = await _setup()

        assert webhook.webhook_url.startswith("wh_")
        assert len(webhook.secret) == 64
        assert webhook.is_active
        assert (await store.find_webhook_by_token(webhook.webhook_url)).id == webhook.id
        assert (await adapter.get_webhook("wf_hook")).webhook_url == webhook.webhook_url

    @pytest.mark.asyncio
    async def test_create_webhook_requires_owned_workflow(self):
        adapter, _, _, _ = await _setup()
        with pytest.raises(WorkflowNotFoundError):
            await adapter.create_webhook("wf_hook", "org_other")

    @pytest.mark.asyncio
    async def test_toggle_and_delete(self):
        adapter, _, _, webhook = await _setup()

        assert (await adapter.toggle_webhook("wf_hook")).is_active is False
        with pytest.raises(WebhookNotFoundError):
            await adapter.handle_webhook(webhook.webhook_url, b"{}")

        assert (await adapter.toggle_webhook("wf_hook")).is_active is True
        assert await adapter.delete_webhook("wf_hook") is True
        with pytest.raises(WebhookNotFoundError):
            await adapter.toggle_webhook("wf_hook")


class TestSignatures:
    def test_generate_signature_matches_hmac_sha256(self):
        body = b'{"amount": 5}'
        assert WebhookAdapter.generate_signature(body, "s3cret") == _sign(body, "s3cret")

    def test_dict_payload_is_signed_as_compact_json(self):
        payload = {"a": 1, "b": [1, 2]}
        expected = _sign(json.dumps(payload, separators=(",", ":")).encode(), "k")
        assert WebhookAdapter.generate_signature(payload, "k") == expected

    @pytest.mark.asyncio
    async def test_verify_accepts_prefixed_signature(self):
        adapter, _, _, _ = await _setup()
        body = b"payload"
        assert adapter.verify_signature(body, "sha256=" + _sign(body, "k"), "k")
        assert not adapter.verify_signature(body, _sign(b"other", "k"), "k")


class TestHandleWebhook:
    @pytest.mark.asyncio
    async def test_signed_request_starts_workflow(self):
        bus = EventBus()
        adapter, executor, store, webhook = await _setup(event_bus=bus)
        body = json.dumps({"amount": 25}).encode()

        result = await adapter.handle_webhook(
            webhook.webhook_url,
            body,
            {"x-webhook-signature": _sign(body, webhook.secret)},
        )

        assert result["success"] is True
        execution = await executor.wait_for_completion(result["executionId"], timeout=5)
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.trigger_data["payload"] == {"amount": 25}
        assert execution.trigger_data["webhookUrl"] == webhook.webhook_url

        check = next(s for s in execution.steps if s.node_id == "check")
        assert check.output_data["result"] is True

        updated = await store.get_webhook_for_workflow("wf_hook")
        assert updated.trigger_count == 1
        assert updated.last_triggered_at is not None
        assert bus.get_history(event_type=EventType.WEBHOOK_RECEIVED)

    @pytest.mark.asyncio
    async def test_wrong_signature_is_rejected(self):
        adapter, executor, _, webhook = await _setup()
        with pytest.raises(InvalidSignatureError):
            await adapter.handle_webhook(
                webhook.webhook_url, b'{"amount": 1}', {SIGNATURE_HEADER: "deadbeef"}
            )
        assert await executor.list_executions("wf_hook") == []

    @pytest.mark.asyncio
    async def test_unsigned_request_accepted_unless_required(self):
        adapter, executor, _, webhook = await _setup()
        result = await adapter.handle_webhook(webhook.webhook_url, b'{"amount": 1}')
        await executor.wait_for_completion(result["executionId"], timeout=5)

        strict, _, _, strict_hook = await _setup(require_signature=True)
        with pytest.raises(InvalidSignatureError):
            await strict.handle_webhook(strict_hook.webhook_url, b'{"amount": 1}')

    @pytest.mark.asyncio
    async def test_disable_during_delivery_is_not_reverted(self):
        _, _, store, webhook = await _setup()

        async def disable():
            await adapter.toggle_webhook("wf_hook")

        adapter = WebhookAdapter(SlowStartExecutor(during_start=disable), store)
        await adapter.handle_webhook(webhook.webhook_url, b'{"amount": 1}')

        stored = await store.get_webhook_for_workflow("wf_hook")
        assert stored.is_active is False
        assert stored.trigger_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_are_all_counted(self):
        _, _, store, webhook = await _setup()
        executor = SlowStartExecutor()
        adapter = WebhookAdapter(executor, store)

        await asyncio.gather(
            *(adapter.handle_webhook(webhook.webhook_url, b"{}") for _ in range(5))
        )

        assert executor.started == 5
        assert (await store.get_webhook_for_workflow("wf_hook")).trigger_count == 5

    @pytest.mark.asyncio
    async def test_unknown_token(self):
        adapter, _, _, _ = await _setup()
        with pytest.raises(WebhookNotFoundError):
            await adapter.handle_webhook("wh_unknown", b"{}")

    def test_parse_payload(self):
        assert parse_payload(b'{"a": 1}') == {"a": 1}
        assert parse_payload(b"hello") == {"raw_body": "hello"}
        assert parse_payload(b"") == {}


class TestWebhookServer:
    async def _start(self, adapter, executor) -> WebhookServer:
        server = WebhookServer(adapter, executor, WebhookServerConfig(host="127.0.0.1", port=0))
        await server.start()
        return server

    @pytest.mark.asyncio
    async def test_start_stop(self):
        adapter, executor, _, _ = await _setup()
        server = await self._start(adapter, executor)

        assert server.is_running
        assert server.port is not None

        await server.stop()
        assert not server.is_running
        assert server.port is None

    @pytest.mark.asyncio
    async def test_post_and_query_execution(self):
        adapter, executor, _, webhook = await _setup()
        server = await self._start(adapter, executor)
        base = f"http://127.0.0.1:{server.port}"
        body = json.dumps({"amount": 3}).encode()

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{base}/webhooks/{webhook.webhook_url}",
                    data=body,
                    headers={
                        "Content-Type": "application/json",
                        SIGNATURE_HEADER: _sign(body, webhook.secret),
                    },
                ) as resp:
                    assert resp.status == 202
                    accepted = await resp.json()
                    assert accepted["success"] is True

                execution_id = accepted["executionId"]
                await executor.wait_for_completion(execution_id, timeout=5)

                async with session.get(f"{base}/executions/{execution_id}") as resp:
                    assert resp.status == 200
                    execution = await resp.json()
                    assert execution["status"] == "completed"
                    assert [s["node_id"] for s in execution["steps"]] == ["start", "check"]

                async with session.get(f"{base}/workflows/wf_hook/executions") as resp:
                    listing = await resp.json()
                    assert listing["count"] == 1
                    assert listing["executions"][0]["id"] == execution_id
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_error_statuses(self):
        adapter, executor, _, webhook = await _setup()
        server = await self._start(adapter, executor)
        base = f"http://127.0.0.1:{server.port}"

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(f"{base}/webhooks/wh_missing", json={}) as resp:
                    assert resp.status == 404

                async with session.post(
                    f"{base}/webhooks/{webhook.webhook_url}",
                    json={"amount": 1},
                    headers={SIGNATURE_HEADER: "sha256=0000"},
                ) as resp:
                    assert resp.status == 401

                async with session.get(f"{base}/executions/missing") as resp:
                    assert resp.status == 404

                async with session.get(
                    f"{base}/workflows/wf_hook/executions", params={"limit": "x"}
                ) as resp:
                    assert resp.status == 400
        finally:
            await server.stop()
