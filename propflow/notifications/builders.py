"""Deterministic notification payload builders used by workflow definitions."""

from __future__ import annotations

from typing import Literal, Optional

from ..contracts import (
    ActorRole,
    NotificationChannel,
    NotificationPayload,
    NotificationPriority,
    NotificationType,
)

EMAIL_AND_IN_APP = [NotificationChannel.EMAIL, NotificationChannel.IN_APP]
ALL_MESSAGING = [
    NotificationChannel.EMAIL,
    NotificationChannel.WHATSAPP,
    NotificationChannel.IN_APP,
]


def build_bill_notification(
    tenant_id: str, *, bill_id: str, bill_number: str, amount: str, month: str
) -> NotificationPayload:
    return NotificationPayload(
        type=NotificationType.BILL_GENERATED,
        recipient_id=tenant_id,
        recipient_role=ActorRole.TENANT,
        channels=list(EMAIL_AND_IN_APP),
        data={"bill_id": bill_id, "bill_number": bill_number, "amount": amount, "month": month},
    )


def build_payment_notification(
    tenant_id: str, *, payment_id: str, amount: str, bill_number: str
) -> NotificationPayload:
    return NotificationPayload(
        type=NotificationType.PAYMENT_RECEIVED,
        recipient_id=tenant_id,
        recipient_role=ActorRole.TENANT,
        channels=list(ALL_MESSAGING),
        data={"payment_id": payment_id, "amount": amount, "bill_number": bill_number},
    )


def build_payment_reminder_notification(
    tenant_id: str, *, bill_id: str, bill_number: str, amount: str, due_date: str
) -> NotificationPayload:
    return NotificationPayload(
        type=NotificationType.PAYMENT_REMINDER,
        recipient_id=tenant_id,
        recipient_role=ActorRole.TENANT,
        channels=list(ALL_MESSAGING),
        data={
            "bill_id": bill_id,
            "bill_number": bill_number,
            "amount": amount,
            "due_date": due_date,
        },
    )


def build_complaint_update_notification(
    tenant_id: str, *, complaint_id: str, complaint_title: str, new_status: str
) -> NotificationPayload:
    return NotificationPayload(
        type=NotificationType.COMPLAINT_UPDATE,
        recipient_id=tenant_id,
        recipient_role=ActorRole.TENANT,
        channels=list(EMAIL_AND_IN_APP),
        data={
            "complaint_id": complaint_id,
            "complaint_title": complaint_title,
            "new_status": new_status,
        },
    )


def build_approval_request_notification(
    owner_id: str, *, approval_id: str, tenant_name: str, request_type: str
) -> NotificationPayload:
    return NotificationPayload(
        type=NotificationType.APPROVAL_REQUIRED,
        recipient_id=owner_id,
        recipient_role=ActorRole.OWNER,
        channels=list(EMAIL_AND_IN_APP),
        data={
            "approval_id": approval_id,
            "tenant_name": tenant_name,
            "request_type": request_type,
        },
        priority=NotificationPriority.HIGH,
    )


def build_approval_decision_notification(
    tenant_id: str,
    *,
    approval_id: str,
    request_type: str,
    decision: Literal["Approved", "Rejected"],
    notes: Optional[str] = None,
) -> NotificationPayload:
    data = {"approval_id": approval_id, "request_type": request_type, "decision": decision}
    if notes:
        data["notes"] = notes
    return NotificationPayload(
        type=NotificationType.APPROVAL_DECISION,
        recipient_id=tenant_id,
        recipient_role=ActorRole.TENANT,
        channels=list(EMAIL_AND_IN_APP),
        data=data,
        priority=NotificationPriority.HIGH,
    )


def build_exit_clearance_notification(
    recipient_id: str,
    recipient_role: Literal[ActorRole.OWNER, ActorRole.TENANT],
    stage: Literal["initiated", "completed"],
    *,
    clearance_id: str,
    tenant_name: str,
    exit_date: Optional[str] = None,
    settlement_amount: Optional[str] = None,
) -> NotificationPayload:
    data = {"clearance_id": clearance_id, "tenant_name": tenant_name}
    if exit_date is not None:
        data["exit_date"] = exit_date
    if settlement_amount is not None:
        data["settlement_amount"] = settlement_amount
    return NotificationPayload(
        type=(
            NotificationType.EXIT_CLEARANCE_INITIATED
            if stage == "initiated"
            else NotificationType.EXIT_CLEARANCE_COMPLETED
        ),
        recipient_id=recipient_id,
        recipient_role=recipient_role,
        channels=list(EMAIL_AND_IN_APP),
        data=data,
        priority=NotificationPriority.HIGH,
    )


def build_welcome_notification(
    tenant_id: str, *, property_name: str, tenant_name: str
) -> NotificationPayload:
    return NotificationPayload(
        type=NotificationType.WELCOME,
        recipient_id=tenant_id,
        recipient_role=ActorRole.TENANT,
        channels=list(EMAIL_AND_IN_APP),
        data={"property_name": property_name, "tenant_name": tenant_name},
    )


def build_invitation_notification(
    recipient_id: str,
    recipient_role: ActorRole,
    *,
    workspace_name: str,
    inviter_name: str,
    token: str,
) -> NotificationPayload:
    """Invitations go by email only; the invitee has no inbox yet."""
    return NotificationPayload(
        type=NotificationType.INVITATION,
        recipient_id=recipient_id,
        recipient_role=recipient_role,
        channels=[NotificationChannel.EMAIL],
        data={
            "workspace_name": workspace_name,
            "inviter_name": inviter_name,
            "role": recipient_role.value,
            "token": token,
        },
    )
