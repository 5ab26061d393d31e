"""Service result and error contracts shared by every propflow component."""

from __future__ import annotations

from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class ErrorCode(str, Enum):
    """Fixed set of error codes used by the engine and its callers."""

    # General
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"

    # Tenant
    TENANT_HAS_DUES = "TENANT_HAS_DUES"
    TENANT_ALREADY_EXITED = "TENANT_ALREADY_EXITED"
    ROOM_AT_CAPACITY = "ROOM_AT_CAPACITY"
    TENANT_STATUS_INVALID = "TENANT_STATUS_INVALID"
    ROOM_TRANSFER_INVALID = "ROOM_TRANSFER_INVALID"

    # Payment & billing
    PAYMENT_EXCEEDS_DUE = "PAYMENT_EXCEEDS_DUE"
    INVALID_PAYMENT_METHOD = "INVALID_PAYMENT_METHOD"
    BILL_ALREADY_PAID = "BILL_ALREADY_PAID"
    BILL_AMOUNT_MISMATCH = "BILL_AMOUNT_MISMATCH"
    ADVANCE_BALANCE_INSUFFICIENT = "ADVANCE_BALANCE_INSUFFICIENT"

    # Refunds
    REFUND_EXCEEDS_BALANCE = "REFUND_EXCEEDS_BALANCE"
    REFUND_ALREADY_PROCESSED = "REFUND_ALREADY_PROCESSED"
    SECURITY_DEPOSIT_INVALID = "SECURITY_DEPOSIT_INVALID"

    # Exit clearance
    EXIT_ALREADY_INITIATED = "EXIT_ALREADY_INITIATED"
    EXIT_INCOMPLETE = "EXIT_INCOMPLETE"
    PENDING_DUES = "PENDING_DUES"
    CLEARANCE_CHECKLIST_INCOMPLETE = "CLEARANCE_CHECKLIST_INCOMPLETE"

    # Workflow
    WORKFLOW_STEP_FAILED = "WORKFLOW_STEP_FAILED"
    WORKFLOW_CANCELLED = "WORKFLOW_CANCELLED"
    WORKFLOW_TIMEOUT = "WORKFLOW_TIMEOUT"

    # Approval
    APPROVAL_EXPIRED = "APPROVAL_EXPIRED"
    APPROVAL_ALREADY_PROCESSED = "APPROVAL_ALREADY_PROCESSED"
    APPROVAL_INVALID_STATE = "APPROVAL_INVALID_STATE"

    # Concurrency
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"


class ServiceError(BaseModel):
    """Normalized error carried by failed results."""

    code: ErrorCode
    message: str
    details: Optional[dict[str, Any]] = None
    original_error: Any = Field(default=None, exclude=True, repr=False)


class ServiceResult(BaseModel, Generic[T]):
    """Success flag plus either ``data`` or ``error``."""

    success: bool
    data: Optional[T] = None
    error: Optional[ServiceError] = None


class ServiceException(Exception):
    """Raised by service code that prefers exceptions over error results.

    The step executor unwraps it into its ``error`` instead of the generic
    ``WORKFLOW_STEP_FAILED`` wrapper.
    """

    def __init__(self, error: ServiceError) -> None:
        super().__init__(error.message)
        self.error = error


class WorkflowDefinitionError(ValueError):
    """A workflow definition is malformed."""


def service_error(
    code: ErrorCode,
    message: str,
    details: Optional[dict[str, Any]] = None,
    original_error: Any = None,
) -> ServiceError:
    return ServiceError(
        code=code, message=message, details=details, original_error=original_error
    )


def success_result(data: T) -> ServiceResult[T]:
    return ServiceResult(success=True, data=data)


def error_result(error: ServiceError) -> ServiceResult[Any]:
    return ServiceResult(success=False, error=error)
