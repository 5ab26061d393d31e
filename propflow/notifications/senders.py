"""Channel senders the dispatcher hands rendered notifications to."""

from __future__ import annotations

import abc
import uuid
from typing import Any, List, Optional

import httpx
from pydantic import BaseModel

from ..contracts import NotificationChannel, NotificationPayload, NotificationTemplate
from ..db import NotificationDB


class ChannelSender(metaclass=abc.ABCMeta):
    """Abstract delivery backend for one or more channels."""

    async def connect(self) -> None:
        """Open resources (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Release resources (no-op by default)."""
        pass

    @abc.abstractmethod
    async def send(
        self,
        channel: NotificationChannel,
        payload: NotificationPayload,
        template: NotificationTemplate,
    ) -> str:
        """Deliver or enqueue one notification and return its delivery id."""
        raise NotImplementedError


class OutboxMessage(BaseModel):
    id: str
    channel: NotificationChannel
    payload: NotificationPayload
    template: NotificationTemplate


class InMemoryOutbox(ChannelSender):
    """Collects notifications in memory. Default sender and test double."""

    def __init__(self) -> None:
        self.messages: List[OutboxMessage] = []

    async def send(
        self,
        channel: NotificationChannel,
        payload: NotificationPayload,
        template: NotificationTemplate,
    ) -> str:
        message = OutboxMessage(
            id=f"{channel.value}_{uuid.uuid4().hex[:12]}",
            channel=channel,
            payload=payload,
            template=template,
        )
        self.messages.append(message)
        return message.id


class QueueChannelSender(ChannelSender):
    """Writes to the ``notification_queue`` table for a separate worker.

    In-app notifications additionally get a row in ``notifications`` so they
    show up in the recipient's inbox right away.
    """

    def __init__(self, db: NotificationDB) -> None:
        self.db = db
        self._initialized = False

    async def connect(self) -> None:
        if not self._initialized:
            await self.db.init_db()
            self._initialized = True

    async def disconnect(self) -> None:
        await self.db.engine.dispose()
        self._initialized = False

    async def send(
        self,
        channel: NotificationChannel,
        payload: NotificationPayload,
        template: NotificationTemplate,
    ) -> str:
        await self.connect()
        entry = await self.db.enqueue(channel, payload, template)
        if channel == NotificationChannel.IN_APP:
            await self.db.create_in_app(payload, template)
        return str(entry.id)


class HttpGatewaySender(ChannelSender):
    """Posts notifications to an HTTP delivery gateway.

    The gateway is expected to answer ``POST {base_url}/notifications/{channel}``
    with a JSON body containing the delivery ``id``.
    """

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)

    async def disconnect(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _body(
        self, payload: NotificationPayload, template: NotificationTemplate
    ) -> dict[str, Any]:
        body = payload.model_dump(mode="json", exclude={"channels"})
        body["template"] = template.model_dump(mode="json", exclude_none=True)
        return body

    async def send(
        self,
        channel: NotificationChannel,
        payload: NotificationPayload,
        template: NotificationTemplate,
    ) -> str:
        await self.connect()
        response = await self._client.post(
            f"{self.base_url}/notifications/{channel.value}",
            json=self._body(payload, template),
        )
        response.raise_for_status()
        return str(response.json()["id"])
