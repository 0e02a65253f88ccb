"""
Workflow Schema - The persisted workflow and its inbound webhook registration.
"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from flowengine.graph.edge import GraphSpec
from flowengine.schemas.execution import utc_now


class WorkflowStatus(StrEnum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class TriggerType(StrEnum):
    """How a workflow is started."""

    MANUAL = "manual"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    EVENT = "event"


class TriggerConfig(BaseModel):
    cron: str | None = None
    timezone: str | None = None
    webhook_url: str | None = None
    event_type: str | None = None

    model_config = {"extra": "allow"}


class Workflow(BaseModel):
    """
    A workflow owned by an organization.

    graph holds the current version's definition; version increments each
    time the definition changes.
    """

    id: str
    organization_id: str
    name: str = ""
    description: str = ""
    status: WorkflowStatus = WorkflowStatus.DRAFT
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_config: TriggerConfig = Field(default_factory=TriggerConfig)
    version: int = 1
    graph: GraphSpec = Field(default_factory=GraphSpec)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    model_config = {"extra": "allow"}

    @property
    def is_scheduled(self) -> bool:
        return self.status == WorkflowStatus.ACTIVE and self.trigger_type == TriggerType.SCHEDULE


class WebhookRegistration(BaseModel):
    """Maps an opaque URL token to a workflow, with an optional signing secret."""

    id: str
    workflow_id: str
    organization_id: str
    webhook_url: str
    secret: str | None = None
    is_active: bool = True
    trigger_count: int = 0
    last_triggered_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)

    model_config = {"extra": "allow"}
