"""Email node: interpolates recipients, subject and body and hands off to the notifier."""

from typing import Any

from flowengine.errors import ConfigurationError, ExecutorFailure
from flowengine.graph.node import NodeContext, NodeResult
from flowengine.nodes.base import NodeExecutor, iso_now
from flowengine.services.protocols import NotificationService


def split_recipients(value: Any) -> list[str]:
    """Accept a comma-separated string or a list of addresses."""
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(v).strip() for v in value if str(v).strip()]


class EmailNodeExecutor(NodeExecutor):
    """
    Executes action-email nodes.

    Delivery failures are soft so a workflow can continue past a failed
    notification.
    """

    kind = "email"
    failure_label = "Email node execution"

    def __init__(self, notifications: NotificationService | None = None):
        super().__init__()
        self._notifications = notifications

    def _recipients(self, ctx: NodeContext, value: Any) -> list[str]:
        return split_recipients(ctx.context.interpolate_value(value))

    async def run(self, ctx: NodeContext) -> NodeResult:
        config = ctx.node.config
        if not config.get("to"):
            raise ConfigurationError("Recipient email address (to) is required")
        if not config.get("subject"):
            raise ConfigurationError("Email subject is required")
        if not config.get("body"):
            raise ConfigurationError("Email body is required")
        if self._notifications is None:
            raise ConfigurationError("No notification service configured")

        to = self._recipients(ctx, config["to"])
        cc = self._recipients(ctx, config.get("cc"))
        bcc = self._recipients(ctx, config.get("bcc"))
        subject = ctx.context.interpolate(str(config["subject"]))
        body = ctx.context.interpolate(str(config["body"]))

        self.logger.info(f"{ctx.node.id}: sending email to {', '.join(to)}")
        try:
            await self._notifications.send_notification(
                to=to,
                subject=subject,
                body=body,
                metadata={
                    "cc": cc,
                    "bcc": bcc,
                    "executionId": ctx.execution_id,
                    "workflowId": ctx.workflow_id,
                    "nodeId": ctx.node.id,
                },
            )
        except Exception as e:
            raise ExecutorFailure(
                f"Email delivery failed: {e}",
                data={"to": to, "subject": subject, "sent": False},
            ) from e

        return NodeResult(
            success=True,
            data={
                "to": to,
                "subject": subject,
                "body": body,
                "cc": cc,
                "bcc": bcc,
                "sent": True,
                "sentAt": iso_now(),
            },
        )
