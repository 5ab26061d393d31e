"""propflow: workflow orchestration with rollback, idempotency and audit."""

from .contracts import (
    ActorRole,
    AuditAction,
    CascadeEffect,
    EntityType,
    NotificationPayload,
    WorkflowContext,
    WorkflowResult,
)
from .definition import StepDefinition, WorkflowDefinition
from .engine import OperationOptions, WorkflowEngine, execute_workflow, get_engine
from .errors import ErrorCode, ServiceError, ServiceException, ServiceResult
from .execute import create_workflow_context, execute_step

__version__ = "0.1.0"
__all__ = [
    "ActorRole",
    "AuditAction",
    "CascadeEffect",
    "EntityType",
    "ErrorCode",
    "NotificationPayload",
    "OperationOptions",
    "ServiceError",
    "ServiceException",
    "ServiceResult",
    "StepDefinition",
    "WorkflowContext",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowResult",
    "create_workflow_context",
    "execute_step",
    "execute_workflow",
    "get_engine",
]
