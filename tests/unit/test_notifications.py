"""Tests for notification templates, builders, dispatcher and senders."""

import json

import httpx
import pytest

from propflow.contracts import (
    ActorRole,
    NotificationChannel,
    NotificationPriority,
    NotificationTemplate,
    NotificationType,
)
from propflow.db import NotificationDB
from propflow.errors import ErrorCode
from propflow.notifications import (
    NOTIFICATION_TEMPLATES,
    ChannelSender,
    HttpGatewaySender,
    InMemoryOutbox,
    NotificationDispatcher,
    QueueChannelSender,
    build_approval_decision_notification,
    build_approval_request_notification,
    build_bill_notification,
    build_exit_clearance_notification,
    build_invitation_notification,
    build_payment_reminder_notification,
    build_welcome_notification,
    render_template,
)


class FailingSender(ChannelSender):
    async def send(self, channel, payload, template):
        raise ConnectionError("gateway down")


def _bill():
    return build_bill_notification(
        "t_1", bill_id="b_1", bill_number="BILL-202602-0001", amount="12845.50", month="2026-02"
    )


class TestTemplates:
    def test_every_type_has_a_template(self):
        assert set(NOTIFICATION_TEMPLATES) == set(NotificationType)

    def test_render_fills_fields(self):
        template = render_template(NotificationType.BILL_GENERATED, _bill().data)

        assert template.subject == "New Bill Generated - BILL-202602-0001"
        assert template.body == (
            "Your bill #BILL-202602-0001 for 2026-02 has been generated. Amount: 12845.50"
        )
        assert template.action_url == "/tenant/bills/b_1"

    def test_missing_fields_render_empty(self):
        template = render_template(NotificationType.WELCOME, {})
        assert template.subject == "Welcome to !"

    def test_approval_decision_without_notes(self):
        payload = build_approval_decision_notification(
            "t_1", approval_id="a_1", request_type="room transfer", decision="Rejected"
        )

        template = render_template(payload.type, payload.data)

        assert template.title == "Request Rejected"
        assert template.body == "Your room transfer request has been rejected."

    def test_approval_decision_with_notes(self):
        payload = build_approval_decision_notification(
            "t_1",
            approval_id="a_1",
            request_type="room transfer",
            decision="Approved",
            notes="Move on Monday.",
        )

        template = render_template(payload.type, payload.data)

        assert template.body == "Your room transfer request has been approved. Move on Monday."


class TestBuilders:
    def test_bill_goes_to_tenant_by_email_and_in_app(self):
        payload = _bill()
        assert payload.recipient_role == ActorRole.TENANT
        assert payload.channels == [NotificationChannel.EMAIL, NotificationChannel.IN_APP]
        assert payload.priority == NotificationPriority.NORMAL

    def test_reminder_uses_all_messaging_channels(self):
        payload = build_payment_reminder_notification(
            "t_1", bill_id="b_1", bill_number="B-1", amount="100.00", due_date="2026-02-10"
        )
        assert NotificationChannel.WHATSAPP in payload.channels
        assert payload.data["due_date"] == "2026-02-10"

    def test_approval_request_is_high_priority_for_owner(self):
        payload = build_approval_request_notification(
            "owner_1", approval_id="a_1", tenant_name="Asha", request_type="refund"
        )
        assert payload.recipient_role == ActorRole.OWNER
        assert payload.priority == NotificationPriority.HIGH

    def test_exit_clearance_stage_selects_type(self):
        started = build_exit_clearance_notification(
            "owner_1", ActorRole.OWNER, "initiated", clearance_id="c_1", tenant_name="Asha",
            exit_date="2026-03-31",
        )
        finished = build_exit_clearance_notification(
            "t_1", ActorRole.TENANT, "completed", clearance_id="c_1", tenant_name="Asha",
            settlement_amount="4000.00",
        )
        assert started.type == NotificationType.EXIT_CLEARANCE_INITIATED
        assert finished.type == NotificationType.EXIT_CLEARANCE_COMPLETED
        assert "settlement_amount" not in started.data

    def test_invitation_is_email_only(self):
        payload = build_invitation_notification(
            "staff_1", ActorRole.STAFF, workspace_name="Maple", inviter_name="Owner", token="abc"
        )
        template = render_template(payload.type, payload.data)

        assert payload.channels == [NotificationChannel.EMAIL]
        assert template.action_url == "/accept-invite?token=abc"
        assert "as a staff" in template.body

    def test_builders_are_deterministic(self):
        assert _bill() == _bill()


class TestDispatcher:
    @pytest.mark.asyncio
    async def test_sends_on_every_channel(self):
        outbox = InMemoryOutbox()
        dispatcher = NotificationDispatcher({c: outbox for c in NotificationChannel})

        result = await dispatcher.send_notification(_bill())

        assert result.success is True
        assert [m.channel for m in outbox.messages] == [
            NotificationChannel.EMAIL,
            NotificationChannel.IN_APP,
        ]
        assert result.data == ",".join(m.id for m in outbox.messages)

    @pytest.mark.asyncio
    async def test_failing_channel_does_not_block_others(self):
        outbox = InMemoryOutbox()
        dispatcher = NotificationDispatcher(
            {NotificationChannel.EMAIL: FailingSender(), NotificationChannel.IN_APP: outbox}
        )

        result = await dispatcher.send_notification(_bill())

        assert result.success is True
        assert [m.channel for m in outbox.messages] == [NotificationChannel.IN_APP]

    @pytest.mark.asyncio
    async def test_channel_without_sender_is_skipped(self):
        dispatcher = NotificationDispatcher({})

        result = await dispatcher.send_notification(_bill())

        assert result.success is True
        assert result.data == ""

    @pytest.mark.asyncio
    async def test_render_failure_is_an_error_result(self, monkeypatch):
        import propflow.notifications.dispatcher as dispatcher_module

        def broken(notification_type, data):
            raise KeyError("template")

        monkeypatch.setattr(dispatcher_module, "render_template", broken)
        outbox = InMemoryOutbox()
        dispatcher = NotificationDispatcher({c: outbox for c in NotificationChannel})

        result = await dispatcher.send_notification(_bill())

        assert result.success is False
        assert result.error.code == ErrorCode.UNKNOWN_ERROR
        assert outbox.messages == []

    @pytest.mark.asyncio
    async def test_send_notifications_collects_delivered_payloads(self):
        outbox = InMemoryOutbox()
        dispatcher = NotificationDispatcher({NotificationChannel.EMAIL: outbox})
        welcome = build_welcome_notification("t_1", property_name="Maple", tenant_name="Asha")

        result = await dispatcher.send_notifications([_bill(), welcome])

        assert len(result.data) == 2
        assert len(outbox.messages) == 2


@pytest.mark.asyncio
async def test_queue_sender_writes_queue_and_inbox(tmp_path):
    db = NotificationDB(f"sqlite+aiosqlite:///{tmp_path / 'notifications.db'}")
    sender = QueueChannelSender(db)
    dispatcher = NotificationDispatcher({c: sender for c in NotificationChannel})

    try:
        result = await dispatcher.send_notification(_bill())

        pending = await db.list_pending()
        assert sorted(e.channel for e in pending) == ["email", "in_app"]
        assert {str(e.id) for e in pending} == set(result.data.split(","))
        email = (await db.list_pending(NotificationChannel.EMAIL))[0]
        assert email.subject == "New Bill Generated - BILL-202602-0001"
        assert email.data["bill_id"] == "b_1"

        inbox = await db.list_in_app("t_1")
        assert len(inbox) == 1
        assert inbox[0].read is False
        assert inbox[0].type == "bill_generated"
    finally:
        await dispatcher.close()


@pytest.mark.asyncio
async def test_http_gateway_sender_posts_rendered_notification():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"id": "msg_1"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    sender = HttpGatewaySender("http://gateway.local/", client=client)
    template = NotificationTemplate(subject="Hi", title="Hi", body="Hello")

    try:
        delivery_id = await sender.send(NotificationChannel.WHATSAPP, _bill(), template)
    finally:
        await client.aclose()

    assert delivery_id == "msg_1"
    assert str(requests[0].url) == "http://gateway.local/notifications/whatsapp"
    body = json.loads(requests[0].content)
    assert body["recipient_id"] == "t_1"
    assert body["template"] == {"subject": "Hi", "title": "Hi", "body": "Hello"}
    assert "channels" not in body


@pytest.mark.asyncio
async def test_http_gateway_errors_raise():
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(503))
    )
    sender = HttpGatewaySender("http://gateway.local", client=client)

    with pytest.raises(httpx.HTTPStatusError):
        await sender.send(
            NotificationChannel.EMAIL, _bill(), NotificationTemplate(title="t", body="b")
        )
    await client.aclose()
