"""Fan notification payloads out to the configured channel senders."""

from __future__ import annotations

import logging
from typing import Iterable, Mapping

from ..contracts import NotificationChannel, NotificationPayload
from ..errors import ErrorCode, ServiceResult, error_result, service_error, success_result
from .senders import ChannelSender
from .templates import render_template

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Render each payload once and hand it to the sender of every channel.

    Delivery is best-effort per channel: a channel without a sender or whose
    sender fails is logged and skipped, and the remaining channels still go
    out.
    """

    def __init__(self, senders: Mapping[NotificationChannel, ChannelSender]) -> None:
        self.senders = dict(senders)

    async def send_notification(self, payload: NotificationPayload) -> ServiceResult[str]:
        try:
            template = render_template(payload.type, payload.data)
        except Exception as exc:
            logger.exception(f"Failed to render {payload.type.value} notification")
            return error_result(
                service_error(
                    ErrorCode.UNKNOWN_ERROR,
                    "Exception sending notification",
                    original_error=exc,
                )
            )

        delivery_ids: list[str] = []
        for channel in payload.channels:
            sender = self.senders.get(channel)
            if sender is None:
                logger.warning(
                    f"No sender configured for {channel.value}; skipping "
                    f"{payload.type.value} to {payload.recipient_id}"
                )
                continue
            try:
                delivery_ids.append(await sender.send(channel, payload, template))
            except Exception:
                logger.exception(
                    f"Sending {payload.type.value} via {channel.value} to "
                    f"{payload.recipient_id} failed"
                )

        return success_result(",".join(delivery_ids))

    async def send_notifications(
        self, payloads: Iterable[NotificationPayload]
    ) -> ServiceResult[list[str]]:
        sent: list[str] = []
        for payload in payloads:
            result = await self.send_notification(payload)
            if result.success and result.data:
                sent.append(result.data)
        return success_result(sent)

    async def close(self) -> None:
        for sender in {id(s): s for s in self.senders.values()}.values():
            await sender.disconnect()
