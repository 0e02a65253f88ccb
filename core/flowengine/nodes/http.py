"""
HTTP node: issues one outbound request with interpolated URL, headers and body.

Non-2xx responses and network errors are soft failures with the status and
body captured for diagnostics. No retries.
"""

import json
from typing import Any

import httpx

from flowengine.errors import ConfigurationError, ExecutorFailure
from flowengine.graph.node import NodeContext, NodeResult
from flowengine.nodes.base import NodeExecutor

BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class HttpNodeExecutor(NodeExecutor):
    """
    Executes action-http nodes with httpx.

    A shared AsyncClient may be injected (tests pass one built on
    httpx.MockTransport); otherwise a client is opened per request.
    """

    kind = "http"
    failure_label = "HTTP node execution"

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 30.0):
        super().__init__()
        self._client = client
        self._timeout = timeout

    def _build_request(self, ctx: NodeContext) -> dict[str, Any]:
        config = ctx.node.config
        url = config.get("url")
        if not url:
            raise ConfigurationError("URL is required for HTTP node")

        method = str(config.get("method") or "GET").upper()
        request: dict[str, Any] = {
            "method": method,
            "url": ctx.context.interpolate(str(url)),
            "headers": {
                str(k): ctx.context.interpolate(str(v))
                for k, v in (config.get("headers") or {}).items()
            },
        }

        query = config.get("query") or config.get("params")
        if query:
            request["params"] = ctx.context.interpolate_value(query)

        body = config.get("body")
        if method in BODY_METHODS and body not in (None, ""):
            if isinstance(body, str):
                rendered = ctx.context.interpolate(body)
                try:
                    request["json"] = json.loads(rendered)
                except ValueError:
                    request["content"] = rendered
            else:
                request["json"] = ctx.context.interpolate_value(body)

        return request

    async def run(self, ctx: NodeContext) -> NodeResult:
        request = self._build_request(ctx)
        timeout = float(ctx.node.config.get("timeout") or self._timeout)
        self.logger.info(f"{ctx.node.id}: {request['method']} {request['url']}")

        try:
            if self._client is not None:
                response = await ctx.cancel_token.run(
                    self._client.request(**request, timeout=timeout)
                )
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await ctx.cancel_token.run(client.request(**request))
        except httpx.TimeoutException as e:
            raise ExecutorFailure(f"HTTP request failed: timed out after {timeout}s") from e
        except httpx.RequestError as e:
            raise ExecutorFailure(
                f"HTTP request failed: {e}",
                data={"statusCode": None, "statusText": None, "data": None},
            ) from e

        data = {
            "statusCode": response.status_code,
            "statusText": response.reason_phrase,
            "headers": dict(response.headers),
            "data": _response_body(response),
        }
        if not response.is_success:
            raise ExecutorFailure(
                f"HTTP request failed with status code {response.status_code}", data=data
            )
        return NodeResult(success=True, data=data)
