"""
Webhook HTTP Server - Receives webhook requests and starts workflow runs.

Uses aiohttp for a lightweight embedded HTTP server that runs within the
existing asyncio loop. Also exposes read-only execution queries so callers
can follow the run a webhook started.

Routes:
    POST /webhooks/{token}               -> 202 {success, executionId, message}
    GET  /executions/{execution_id}      -> Execution with its Steps
    GET  /workflows/{workflow_id}/executions?limit=&offset=
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from aiohttp import web

from flowengine.errors import InvalidSignatureError, WebhookNotFoundError, WorkflowNotFoundError
from flowengine.runtime.webhooks import WebhookAdapter

if TYPE_CHECKING:
    from flowengine.graph.executor import WorkflowExecutor

logger = logging.getLogger(__name__)


@dataclass
class WebhookServerConfig:
    """Configuration for the webhook HTTP server."""

    host: str = "127.0.0.1"
    port: int = 8080


class WebhookServer:
    """
    Embedded HTTP server in front of a WebhookAdapter.

    Lifecycle:
        server = WebhookServer(adapter, executor, config)
        await server.start()
        # ... server running ...
        await server.stop()
    """

    def __init__(
        self,
        adapter: WebhookAdapter,
        executor: "WorkflowExecutor",
        config: WebhookServerConfig | None = None,
    ):
        self._adapter = adapter
        self._executor = executor
        self._config = config or WebhookServerConfig()
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/webhooks/{token}", self._handle_webhook)
        app.router.add_get("/executions/{execution_id}", self._get_execution)
        app.router.add_get("/workflows/{workflow_id}/executions", self._list_executions)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(
            self._runner,
            self._config.host,
            self._config.port,
        )
        await self._site.start()
        logger.info(f"Webhook server started on {self._config.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            self._site = None
            logger.info("Webhook server stopped")

    async def _handle_webhook(self, request: web.Request) -> web.Response:
        token = request.match_info["token"]

        try:
            body = await request.read()
        except Exception:
            return web.json_response({"error": "Failed to read request body"}, status=400)

        try:
            result = await self._adapter.handle_webhook(token, body, dict(request.headers))
        except WebhookNotFoundError as e:
            return web.json_response({"error": str(e)}, status=404)
        except InvalidSignatureError as e:
            return web.json_response({"error": str(e)}, status=401)
        except WorkflowNotFoundError as e:
            return web.json_response({"error": str(e)}, status=404)

        return web.json_response(result, status=202)

    async def _get_execution(self, request: web.Request) -> web.Response:
        execution = await self._executor.get_execution(request.match_info["execution_id"])
        if execution is None:
            return web.json_response({"error": "Not found"}, status=404)
        return web.json_response(execution.model_dump(mode="json"))

    async def _list_executions(self, request: web.Request) -> web.Response:
        try:
            limit = int(request.query.get("limit", "20"))
            offset = int(request.query.get("offset", "0"))
        except ValueError:
            return web.json_response({"error": "limit and offset must be integers"}, status=400)

        executions = await self._executor.list_executions(
            request.match_info["workflow_id"], limit=limit, offset=offset
        )
        return web.json_response(
            {
                "executions": [e.model_dump(mode="json") for e in executions],
                "count": len(executions),
            }
        )

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._site is not None

    @property
    def port(self) -> int | None:
        """Return the actual listening port (useful when configured with port=0)."""
        if self._site and self._site._server and self._site._server.sockets:
            return self._site._server.sockets[0].getsockname()[1]
        return None
