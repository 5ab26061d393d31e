"""Text templates for each notification type."""

from __future__ import annotations

from typing import Any, Mapping

from ..contracts import NotificationTemplate, NotificationType


class _Blank(dict):
    """Format mapping that renders missing fields as empty strings."""

    def __missing__(self, key: str) -> str:
        return ""


NOTIFICATION_TEMPLATES: Mapping[NotificationType, NotificationTemplate] = {
    NotificationType.BILL_GENERATED: NotificationTemplate(
        subject="New Bill Generated - {bill_number}",
        title="New Bill Generated",
        body="Your bill #{bill_number} for {month} has been generated. Amount: {amount}",
        action_url="/tenant/bills/{bill_id}",
        action_label="View Bill",
    ),
    NotificationType.PAYMENT_RECEIVED: NotificationTemplate(
        subject="Payment Received - {amount}",
        title="Payment Confirmed",
        body="We received your payment of {amount} for bill #{bill_number}. Thank you!",
        action_url="/tenant/payments/{payment_id}",
        action_label="View Receipt",
    ),
    NotificationType.PAYMENT_REMINDER: NotificationTemplate(
        subject="Payment Reminder - {amount} due",
        title="Payment Reminder",
        body=(
            "Your payment of {amount} for bill #{bill_number} is due on {due_date}. "
            "Please pay to avoid late fees."
        ),
        action_url="/tenant/bills/{bill_id}",
        action_label="Pay Now",
    ),
    NotificationType.COMPLAINT_UPDATE: NotificationTemplate(
        subject="Complaint Update - {complaint_title}",
        title="Complaint Status Updated",
        body='Your complaint "{complaint_title}" status has been updated to: {new_status}',
        action_url="/tenant/complaints/{complaint_id}",
        action_label="View Details",
    ),
    NotificationType.APPROVAL_REQUIRED: NotificationTemplate(
        subject="Approval Required - {request_type}",
        title="New Approval Request",
        body="{tenant_name} has requested a {request_type}. Please review and approve/reject.",
        action_url="/approvals/{approval_id}",
        action_label="Review Request",
    ),
    NotificationType.APPROVAL_DECISION: NotificationTemplate(
        subject="Request {decision} - {request_type}",
        title="Request {decision}",
        body="Your {request_type} request has been {decision_lower}. {notes}",
        action_url="/tenant/approvals/{approval_id}",
        action_label="View Details",
    ),
    NotificationType.EXIT_CLEARANCE_INITIATED: NotificationTemplate(
        subject="Exit Clearance Initiated - {tenant_name}",
        title="Exit Clearance Started",
        body="Exit clearance has been initiated for {tenant_name}. Expected exit: {exit_date}",
        action_url="/exit-clearance/{clearance_id}",
        action_label="View Clearance",
    ),
    NotificationType.EXIT_CLEARANCE_COMPLETED: NotificationTemplate(
        subject="Exit Clearance Completed - {tenant_name}",
        title="Exit Clearance Complete",
        body=(
            "Exit clearance for {tenant_name} has been completed. "
            "Final settlement: {settlement_amount}"
        ),
        action_url="/exit-clearance/{clearance_id}",
        action_label="View Summary",
    ),
    NotificationType.WELCOME: NotificationTemplate(
        subject="Welcome to {property_name}!",
        title="Welcome!",
        body=(
            "Welcome to {property_name}! Your tenant portal is now active. "
            "You can view bills, raise complaints, and more."
        ),
        action_url="/tenant/dashboard",
        action_label="Get Started",
    ),
    NotificationType.INVITATION: NotificationTemplate(
        subject="You're invited to join {workspace_name}",
        title="Invitation",
        body=(
            "{inviter_name} has invited you to join {workspace_name} as a {role}. "
            "Click below to accept."
        ),
        action_url="/accept-invite?token={token}",
        action_label="Accept Invitation",
    ),
}

_missing = set(NotificationType) - set(NOTIFICATION_TEMPLATES)
if _missing:
    raise RuntimeError(
        f"Notification types without a template: {sorted(t.value for t in _missing)}"
    )


def render_template(
    notification_type: NotificationType, data: Mapping[str, Any]
) -> NotificationTemplate:
    """Fill the template for ``notification_type`` with ``data``."""

    values = _Blank(data)
    if "decision" in data:
        values["decision_lower"] = str(data["decision"]).lower()

    template = NOTIFICATION_TEMPLATES[notification_type]
    rendered = {
        field: text.format_map(values) if text is not None else None
        for field, text in template.model_dump().items()
    }
    rendered["body"] = rendered["body"].strip()
    return NotificationTemplate(**rendered)
