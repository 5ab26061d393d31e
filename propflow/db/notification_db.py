from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlmodel import SQLModel, select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from ..contracts import (
    NotificationChannel,
    NotificationPayload,
    NotificationTemplate,
    utcnow,
)
from .models import InAppNotification, NotificationQueueEntry


class NotificationDB:
    """Async database helper for the notification queue and in-app inbox."""

    def __init__(self, database_url: str) -> None:
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine) as session:
            yield session

    async def enqueue(
        self,
        channel: NotificationChannel,
        payload: NotificationPayload,
        template: NotificationTemplate,
    ) -> NotificationQueueEntry:
        entry = NotificationQueueEntry(
            channel=channel.value,
            recipient_id=payload.recipient_id,
            recipient_role=payload.recipient_role.value,
            notification_type=payload.type.value,
            subject=template.subject,
            title=template.title,
            body=template.body,
            action_url=template.action_url,
            action_label=template.action_label,
            data=payload.data,
            priority=payload.priority.value,
            scheduled_at=payload.scheduled_at or utcnow(),
        )
        async with self.session() as session:
            session.add(entry)
            await session.commit()
            await session.refresh(entry)
        return entry

    async def create_in_app(
        self, payload: NotificationPayload, template: NotificationTemplate
    ) -> InAppNotification:
        row = InAppNotification(
            user_id=payload.recipient_id,
            type=payload.type.value,
            title=template.title,
            body=template.body,
            action_url=template.action_url,
            data=payload.data,
        )
        async with self.session() as session:
            session.add(row)
            await session.commit()
            await session.refresh(row)
        return row

    async def list_pending(
        self, channel: Optional[NotificationChannel] = None
    ) -> list[NotificationQueueEntry]:
        stmt = select(NotificationQueueEntry).where(NotificationQueueEntry.status == "pending")
        if channel is not None:
            stmt = stmt.where(NotificationQueueEntry.channel == channel.value)
        async with self.session() as session:
            rows = await session.execute(stmt.order_by(NotificationQueueEntry.created_at))
            return list(rows.scalars().all())

    async def list_in_app(self, user_id: str) -> list[InAppNotification]:
        stmt = select(InAppNotification).where(InAppNotification.user_id == user_id)
        async with self.session() as session:
            rows = await session.execute(stmt.order_by(InAppNotification.created_at))
            return list(rows.scalars().all())
