from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import SQLModel, Field
from sqlalchemy import Column, JSON

from ..contracts import utcnow


class NotificationQueueEntry(SQLModel, table=True):
    """One notification waiting to be delivered on one channel."""

    __tablename__ = "notification_queue"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    channel: str = Field(index=True)
    recipient_id: str
    recipient_role: str
    notification_type: str
    subject: Optional[str] = None
    title: str
    body: str
    action_url: Optional[str] = None
    action_label: Optional[str] = None
    data: dict = Field(default_factory=dict, sa_column=Column(JSON))
    priority: str = Field(default="normal")
    scheduled_at: datetime = Field(default_factory=utcnow)
    status: str = Field(default="pending", index=True)
    created_at: datetime = Field(default_factory=utcnow)


class InAppNotification(SQLModel, table=True):
    """Notification shown inside the application."""

    __tablename__ = "notifications"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: str = Field(index=True)
    type: str
    title: str
    body: str
    action_url: Optional[str] = None
    data: dict = Field(default_factory=dict, sa_column=Column(JSON))
    read: bool = False
    created_at: datetime = Field(default_factory=utcnow)
