"""Tests for the HTTP node, using httpx.MockTransport instead of a live server."""

import json

import httpx
import pytest

from flowengine.config import EngineConfig
from flowengine.graph.context import CancellationToken, ExecutionContext
from flowengine.graph.node import NodeContext, NodeSpec
from flowengine.nodes.http import HttpNodeExecutor


def _ctx(config: dict, context: ExecutionContext | None = None) -> NodeContext:
    return NodeContext(
        node=NodeSpec(id="call", type="action-http", config=config),
        context=context or ExecutionContext(),
        execution_id="exec_1",
        workflow_id="wf_1",
        cancel_token=CancellationToken(),
        config=EngineConfig(),
    )


def _executor(handler) -> HttpNodeExecutor:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpNodeExecutor(client=client)


@pytest.mark.asyncio
async def test_get_with_interpolated_url_and_headers():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"id": 7})

    context = ExecutionContext(
        variables={"token": "s3cret"}, trigger_data={"itemId": 7}
    )
    result = await _executor(handler).execute(
        _ctx(
            {
                "url": "https://api.example.com/items/{{itemId}}",
                "method": "GET",
                "headers": {"Authorization": "Bearer {{token}}"},
                "query": {"expand": "all"},
            },
            context,
        )
    )

    assert result.success
    assert seen["url"] == "https://api.example.com/items/7?expand=all"
    assert seen["auth"] == "Bearer s3cret"
    assert result.data["statusCode"] == 200
    assert result.data["data"] == {"id": 7}


@pytest.mark.asyncio
async def test_post_string_body_is_decoded_as_json():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"created": True})

    context = ExecutionContext(trigger_data={"name": "Ada"})
    result = await _executor(handler).execute(
        _ctx(
            {
                "url": "https://api.example.com/users",
                "method": "post",
                "body": '{"name": "{{name}}"}',
            },
            context,
        )
    )

    assert result.success
    assert seen["body"] == {"name": "Ada"}


@pytest.mark.asyncio
async def test_post_map_body_keeps_types():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, text="ok")

    context = ExecutionContext()
    await context.set_step_output("fetch", {"ids": [1, 2]})
    result = await _executor(handler).execute(
        _ctx(
            {
                "url": "https://api.example.com/batch",
                "method": "PUT",
                "body": {"ids": "{{fetch.ids}}", "note": "batch of {{fetch.ids.length}}"},
            },
            context,
        )
    )

    assert result.success
    assert seen["body"] == {"ids": [1, 2], "note": "batch of 2"}
    assert result.data["data"] == "ok"


@pytest.mark.asyncio
async def test_non_2xx_is_soft_failure_with_diagnostics():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": "missing"})

    result = await _executor(handler).execute(
        _ctx({"url": "https://api.example.com/x", "method": "GET"})
    )

    assert result.success is False
    assert "404" in result.error
    assert result.data["statusCode"] == 404
    assert result.data["data"] == {"error": "missing"}


@pytest.mark.asyncio
async def test_network_error_is_soft_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    result = await _executor(handler).execute(
        _ctx({"url": "https://api.example.com/x", "method": "GET"})
    )

    assert result.success is False
    assert "HTTP request failed" in result.error


@pytest.mark.asyncio
async def test_missing_url_is_configuration_error():
    result = await _executor(lambda r: httpx.Response(200)).execute(_ctx({"method": "GET"}))
    assert result.success is False
    assert "URL is required" in result.error
