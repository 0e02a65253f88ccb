"""
Webhook Adapter - Starts workflows from inbound HTTP requests.

Each webhook maps an opaque random token (the last path segment of its
URL) to one workflow, with a per-webhook signing secret. A request is
accepted when the token is known and active and, if a signature header
is present (or required by configuration), the HMAC-SHA256 of the raw
body under the secret matches it.
"""

import hashlib
import hmac
import json
import logging
import secrets
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from flowengine.config import EngineConfig
from flowengine.errors import InvalidSignatureError, WebhookNotFoundError, WorkflowNotFoundError
from flowengine.runtime.event_bus import EventBus
from flowengine.schemas.workflow import WebhookRegistration
from flowengine.storage.backend import WorkflowStore

if TYPE_CHECKING:
    from flowengine.graph.executor import WorkflowExecutor

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "wh_"


def generate_webhook_token() -> str:
    return f"{TOKEN_PREFIX}{secrets.token_hex(16)}"


def generate_secret() -> str:
    return secrets.token_hex(32)


def _as_bytes(payload: Any) -> bytes:
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def parse_payload(body: bytes) -> Any:
    """JSON body when it parses, else the raw text under raw_body."""
    if not body:
        return {}
    try:
        return json.loads(body)
    except (json.JSONDecodeError, ValueError):
        return {"raw_body": body.decode("utf-8", errors="replace")}


class WebhookAdapter:
    """
    HTTP-driven trigger adapter.

    Example:
        adapter = WebhookAdapter(executor, store)
        webhook = await adapter.create_webhook("wf_1", "org_1")

        body = b'{"orderId": 7}'
        signature = adapter.generate_signature(body, webhook.secret)
        result = await adapter.handle_webhook(
            webhook.webhook_url, body, {"X-Webhook-Signature": signature}
        )
    """

    def __init__(
        self,
        executor: "WorkflowExecutor",
        store: WorkflowStore,
        config: EngineConfig | None = None,
        event_bus: EventBus | None = None,
    ):
        self._executor = executor
        self._store = store
        self._config = config or EngineConfig()
        self._event_bus = event_bus

    # === MANAGEMENT ===

    async def create_webhook(self, workflow_id: str, organization_id: str) -> WebhookRegistration:
        """Register a new token for a workflow, replacing any previous one."""
        workflow = await self._store.find_workflow(workflow_id, organization_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")

        webhook = WebhookRegistration(
            id=str(uuid.uuid4()),
            workflow_id=workflow_id,
            organization_id=organization_id,
            webhook_url=generate_webhook_token(),
            secret=generate_secret(),
        )
        await self._store.save_webhook(webhook)
        logger.info(f"Created webhook {webhook.webhook_url} for workflow {workflow_id}")
        return webhook

    async def get_webhook(self, workflow_id: str) -> WebhookRegistration | None:
        return await self._store.get_webhook_for_workflow(workflow_id)

    async def delete_webhook(self, workflow_id: str) -> bool:
        deleted = await self._store.delete_webhook(workflow_id)
        if deleted:
            logger.info(f"Deleted webhook for workflow {workflow_id}")
        return deleted

    async def toggle_webhook(self, workflow_id: str) -> WebhookRegistration:
        webhook = await self._store.get_webhook_for_workflow(workflow_id)
        if webhook is None:
            raise WebhookNotFoundError(f"No webhook registered for workflow {workflow_id}")
        updated = await self._store.update_webhook(workflow_id, is_active=not webhook.is_active)
        state = "enabled" if updated.is_active else "disabled"
        logger.info(f"Webhook {webhook.webhook_url} {state}")
        return updated

    # === SIGNATURES ===

    @staticmethod
    def generate_signature(payload: Any, secret: str) -> str:
        """Hex HMAC-SHA256 of the payload (raw bytes, text, or JSON-serialized)."""
        return hmac.new(secret.encode("utf-8"), _as_bytes(payload), hashlib.sha256).hexdigest()

    def verify_signature(self, body: bytes, signature: str, secret: str) -> bool:
        if signature.startswith("sha256="):
            signature = signature[len("sha256=") :]
        expected = self.generate_signature(body, secret)
        return hmac.compare_digest(signature.strip().lower(), expected)

    def _signature_from(self, headers: Mapping[str, str]) -> str | None:
        wanted = self._config.webhook_signature_header.lower()
        for name, value in headers.items():
            if name.lower() == wanted:
                return value
        return None

    # === INBOUND ===

    async def handle_webhook(
        self,
        token: str,
        body: bytes,
        headers: Mapping[str, str] | None = None,
    ) -> dict[str, Any]:
        """
        Verify an inbound request and start its workflow.

        Raises:
            WebhookNotFoundError: token unknown or webhook disabled
            InvalidSignatureError: signature missing (when required) or wrong
        """
        headers = dict(headers or {})
        logger.info(f"Webhook received: {token}")

        webhook = await self._store.find_webhook_by_token(token)
        if webhook is None or not webhook.is_active:
            raise WebhookNotFoundError(f"Webhook not found: {token}")

        signature = self._signature_from(headers)
        if webhook.secret and (signature or self._config.require_webhook_signature):
            if not signature or not self.verify_signature(body, signature, webhook.secret):
                logger.warning(f"Invalid webhook signature for {token}")
                raise InvalidSignatureError("Invalid webhook signature")

        payload = parse_payload(body)
        received_at = datetime.now(UTC)
        trigger_data = {
            "webhookUrl": token,
            "payload": payload,
            "headers": headers,
            "receivedAt": received_at.isoformat(),
        }

        execution = await self._executor.execute_workflow(
            webhook.workflow_id,
            webhook.organization_id,
            trigger_data=trigger_data,
        )
        await self._store.record_webhook_trigger(webhook.workflow_id, received_at)

        if self._event_bus is not None:
            try:
                await self._event_bus.emit_webhook_received(
                    workflow_id=webhook.workflow_id,
                    webhook_url=token,
                    headers=headers,
                    payload=payload,
                    execution_id=execution.id,
                )
            except Exception as e:
                logger.warning(f"Event emission failed (webhook_received): {e}")

        return {
            "success": True,
            "executionId": execution.id,
            "message": "Workflow triggered successfully",
        }
