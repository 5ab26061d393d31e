"""Core contracts for propflow workflows, audit events and notifications."""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ServiceError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat_utc(value: datetime) -> str:
    """Fixed-width UTC timestamp that sorts correctly as text."""
    return as_utc(value).isoformat(timespec="microseconds")


class ActorRole(str, Enum):
    """Who is acting: owning principal, delegated staff, end customer or system."""

    OWNER = "owner"
    STAFF = "staff"
    TENANT = "tenant"
    SYSTEM = "system"


class EntityType(str, Enum):
    """Entities an audit event or cascade effect can refer to.

    ``WORKFLOW`` is only used for events about a workflow run itself and is
    never a cascade target.
    """

    TENANT = "tenant"
    PROPERTY = "property"
    ROOM = "room"
    BILL = "bill"
    PAYMENT = "payment"
    EXPENSE = "expense"
    COMPLAINT = "complaint"
    NOTICE = "notice"
    VISITOR = "visitor"
    STAFF = "staff"
    EXIT_CLEARANCE = "exit_clearance"
    APPROVAL = "approval"
    METER_READING = "meter_reading"
    CHARGE = "charge"
    ROLE = "role"
    WORKSPACE = "workspace"
    WORKFLOW = "workflow"

    @classmethod
    def business_types(cls) -> list["EntityType"]:
        return [member for member in cls if member is not cls.WORKFLOW]


class AuditAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    STATUS_CHANGE = "status_change"
    APPROVE = "approve"
    REJECT = "reject"
    ASSIGN = "assign"
    COMPLETE = "complete"
    CANCEL = "cancel"
    VIEW = "view"
    EXPORT = "export"
    BULK_UPDATE = "bulk_update"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class NotificationChannel(str, Enum):
    EMAIL = "email"
    WHATSAPP = "whatsapp"
    IN_APP = "in_app"
    PUSH = "push"


class NotificationType(str, Enum):
    BILL_GENERATED = "bill_generated"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_REMINDER = "payment_reminder"
    COMPLAINT_UPDATE = "complaint_update"
    APPROVAL_REQUIRED = "approval_required"
    APPROVAL_DECISION = "approval_decision"
    EXIT_CLEARANCE_INITIATED = "exit_clearance_initiated"
    EXIT_CLEARANCE_COMPLETED = "exit_clearance_completed"
    WELCOME = "welcome"
    INVITATION = "invitation"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


# ----------------------------------------------------------------------
# Workflow runtime state


class WorkflowStep(BaseModel):
    """Execution record of one step, owned by its WorkflowContext."""

    id: str
    name: str
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Any = None
    error: Optional[ServiceError] = None


def new_workflow_id() -> str:
    return f"wf_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class WorkflowContext(BaseModel):
    """Per-invocation state. Never persisted; only its effects are durable."""

    workflow_id: str = Field(default_factory=new_workflow_id)
    workflow_type: str
    actor_id: str
    actor_role: ActorRole
    workspace_id: str
    started_at: datetime = Field(default_factory=utcnow)
    steps: List[WorkflowStep] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def completed_steps(self) -> list[WorkflowStep]:
        return [s for s in self.steps if s.status == StepStatus.COMPLETED]


# ----------------------------------------------------------------------
# Audit


class AuditChanges(BaseModel):
    model_config = ConfigDict(frozen=True)

    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None
    fields_changed: Optional[list[str]] = None


class AuditEvent(BaseModel):
    """Immutable record of what changed on one entity, by whom."""

    model_config = ConfigDict(frozen=True)

    entity_type: EntityType
    entity_id: str
    action: AuditAction
    actor_id: str
    actor_role: ActorRole
    workspace_id: str
    changes: Optional[AuditChanges] = None
    metadata: Optional[dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class StoredAuditEvent(AuditEvent):
    """An audit event as read back from the recorder."""

    id: str
    created_at: datetime


# ----------------------------------------------------------------------
# Notifications and cascades


class NotificationPayload(BaseModel):
    type: NotificationType
    recipient_id: str
    recipient_role: ActorRole
    channels: List[NotificationChannel]
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: NotificationPriority = NotificationPriority.NORMAL
    scheduled_at: Optional[datetime] = None


class CascadeEffect(BaseModel):
    """Side effect on an entity other than the workflow's primary subject."""

    entity_type: EntityType
    entity_id: str
    action: AuditAction
    data: Optional[dict[str, Any]] = None

    @field_validator("entity_type")
    @classmethod
    def _ensure_business_entity(cls, v: EntityType) -> EntityType:
        if v is EntityType.WORKFLOW:
            raise ValueError("workflow runs cannot be the target of a cascade")
        return v


# ----------------------------------------------------------------------
# Results


class WorkflowResult(BaseModel):
    """Outcome of one workflow invocation as seen by the caller."""

    success: bool
    data: Any = None
    workflow_id: str
    steps_completed: int
    steps_total: int
    errors: Optional[List[ServiceError]] = None
    audit_events: Optional[List[str]] = None
    notifications_sent: Optional[List[str]] = None
    failed_optional_steps: Optional[List[str]] = None

    def to_cache(self) -> dict[str, Any]:
        """JSON-compatible form stored alongside an idempotency key."""
        return self.model_dump(mode="json")


class NotificationTemplate(BaseModel):
    """Rendered text of a notification. ``subject`` is only used by email."""

    subject: Optional[str] = None
    title: str
    body: str
    action_url: Optional[str] = None
    action_label: Optional[str] = None
