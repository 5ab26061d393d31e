"""Notification payloads, templates and channel delivery."""

from __future__ import annotations

from typing import Optional

from ..config import PropflowConfig, load_config
from ..contracts import NotificationChannel
from ..db import NotificationDB
from .builders import (
    build_approval_decision_notification,
    build_approval_request_notification,
    build_bill_notification,
    build_complaint_update_notification,
    build_exit_clearance_notification,
    build_invitation_notification,
    build_payment_notification,
    build_payment_reminder_notification,
    build_welcome_notification,
)
from .dispatcher import NotificationDispatcher
from .senders import (
    ChannelSender,
    HttpGatewaySender,
    InMemoryOutbox,
    OutboxMessage,
    QueueChannelSender,
)
from .templates import NOTIFICATION_TEMPLATES, render_template

_dispatcher_instance: NotificationDispatcher | None = None


def get_notification_dispatcher(
    config: Optional[PropflowConfig] = None,
) -> NotificationDispatcher:
    """Factory function to obtain the notification dispatcher.

    Every channel defaults to an in-memory outbox. ``notifications.database_url``
    routes all channels to the database queue, and ``notifications.gateway_url``
    then routes ``gateway_channels`` to the HTTP gateway.
    """

    global _dispatcher_instance
    if _dispatcher_instance is not None and config is None:
        return _dispatcher_instance

    config = config or load_config()
    settings = config.notifications

    default: ChannelSender
    if settings.database_url:
        default = QueueChannelSender(NotificationDB(settings.database_url))
    else:
        default = InMemoryOutbox()
    senders: dict[NotificationChannel, ChannelSender] = {
        channel: default for channel in NotificationChannel
    }

    if settings.gateway_url:
        gateway = HttpGatewaySender(settings.gateway_url)
        for channel in settings.gateway_channels:
            senders[channel] = gateway

    _dispatcher_instance = NotificationDispatcher(senders)
    return _dispatcher_instance


__all__ = [
    "ChannelSender",
    "HttpGatewaySender",
    "InMemoryOutbox",
    "NOTIFICATION_TEMPLATES",
    "NotificationDispatcher",
    "OutboxMessage",
    "QueueChannelSender",
    "build_approval_decision_notification",
    "build_approval_request_notification",
    "build_bill_notification",
    "build_complaint_update_notification",
    "build_exit_clearance_notification",
    "build_invitation_notification",
    "build_payment_notification",
    "build_payment_reminder_notification",
    "build_welcome_notification",
    "get_notification_dispatcher",
    "render_template",
]
