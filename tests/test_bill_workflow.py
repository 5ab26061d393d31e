import asyncio
from datetime import date

import pytest

from propflow.contracts import ActorRole, NotificationType
from propflow.errors import ErrorCode
from propflow.workflows import (
    BillGenerateInput,
    BillGenerateOutput,
    BillLineItem,
    build_bill_generate_workflow,
)


def _input(month="2026-02"):
    return BillGenerateInput(
        tenant_id="t_1",
        month=month,
        due_date=date(2026, 2, 10),
        line_items=[
            BillLineItem(description="Rent", amount=12000),
            BillLineItem(description="Electricity", amount=845.5),
        ],
    )


async def _seed(store):
    await store.insert(
        "tenants",
        {"id": "t_1", "name": "Asha Rao", "status": "active", "workspace_id": "ws_1"},
    )
    return store


async def _generate(engine, store, input, **options):
    definition = build_bill_generate_workflow(store)
    return await engine.execute(
        definition, input, "owner_1", ActorRole.OWNER, "ws_1", **options
    )


@pytest.mark.asyncio
async def test_concurrent_callers_with_same_key_create_one_bill(engine, entity_store):
    seeded_store = await _seed(entity_store)
    first, second = await asyncio.gather(
        _generate(engine, seeded_store, _input(), idempotency_key="bill-t_1-2026-02"),
        _generate(engine, seeded_store, _input(), idempotency_key="bill-t_1-2026-02"),
    )
    await engine.drain()

    bills = await seeded_store.find("bills", tenant_id="t_1")
    assert len(bills) == 1
    assert first.success and second.success
    assert isinstance(second.data, BillGenerateOutput)
    assert first.data.bill_id == second.data.bill_id == bills[0]["id"]


@pytest.mark.asyncio
async def test_bill_generation_applies_cascade_audit_and_notification(
    engine, entity_store, audit, outbox
):
    seeded_store = await _seed(entity_store)
    result = await _generate(engine, seeded_store, _input())

    assert result.success is True
    assert result.data.total_amount == 12845.5
    assert result.data.bill_number == "BILL-202602-0001"

    tenant = await seeded_store.get("tenants", "t_1")
    assert tenant["last_billed_month"] == "2026-02"

    assert [e.entity_id for e in audit.events] == [result.data.bill_id]
    assert all(m.payload.type == NotificationType.BILL_GENERATED for m in outbox.messages)
    email = next(m for m in outbox.messages if m.channel.value == "email")
    assert email.template.subject == "New Bill Generated - BILL-202602-0001"
    assert "12845.50" in email.template.body


@pytest.mark.asyncio
async def test_second_bill_for_same_month_is_rejected(engine, entity_store):
    seeded_store = await _seed(entity_store)
    await _generate(engine, seeded_store, _input())

    result = await _generate(engine, seeded_store, _input())

    assert result.success is False
    assert result.errors[0].code == ErrorCode.DUPLICATE_ENTRY
    assert len(await seeded_store.find("bills")) == 1


@pytest.mark.asyncio
async def test_unknown_tenant_creates_no_bill(engine, entity_store, audit):
    result = await _generate(engine, entity_store, _input())

    assert result.success is False
    assert result.errors[0].code == ErrorCode.NOT_FOUND
    assert result.steps_completed == 0
    assert await entity_store.find("bills") == []
    assert audit.events == []


@pytest.mark.asyncio
async def test_inactive_tenant_is_rejected(engine, entity_store):
    await entity_store.insert(
        "tenants", {"id": "t_1", "name": "A", "status": "exited", "workspace_id": "ws_1"}
    )

    result = await _generate(engine, entity_store, _input())

    assert result.errors[0].code == ErrorCode.TENANT_STATUS_INVALID
