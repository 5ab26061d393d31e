"""Monthly bill generation workflow."""

from __future__ import annotations

from datetime import date
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field

from ..audit import create_audit_event
from ..cascade import EntityStore
from ..contracts import (
    AuditAction,
    AuditEvent,
    CascadeEffect,
    EntityType,
    NotificationPayload,
    WorkflowContext,
)
from ..definition import StepDefinition, WorkflowDefinition
from ..errors import ErrorCode, ServiceResult, error_result, service_error, success_result
from ..notifications import build_bill_notification

BILL_GENERATE = "bill_generate"


class BillLineItem(BaseModel):
    description: str
    amount: float = Field(ge=0)


class BillGenerateInput(BaseModel):
    tenant_id: str
    month: str = Field(pattern=r"^\d{4}-\d{2}$")
    due_date: date
    line_items: list[BillLineItem] = Field(min_length=1)

    @property
    def total_amount(self) -> float:
        return round(sum(item.amount for item in self.line_items), 2)


class TenantSnapshot(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    status: str


class BillRow(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    bill_number: str
    tenant_id: str
    month: str
    total_amount: float


class BillGenerateResults(BaseModel):
    validate_tenant: TenantSnapshot
    create_bill: BillRow


class BillGenerateOutput(BaseModel):
    bill_id: str
    bill_number: str
    total_amount: float


def build_bill_generate_workflow(
    store: EntityStore,
) -> WorkflowDefinition[BillGenerateInput, BillGenerateOutput]:
    """Generate one bill per tenant and month.

    Concurrent requests for the same bill must share an idempotency key; the
    duplicate check in ``validate_tenant`` alone does not serialize them.
    """

    async def validate_tenant(
        context: WorkflowContext, input: BillGenerateInput, results: Mapping[str, Any]
    ) -> ServiceResult[TenantSnapshot]:
        tenant = await store.get("tenants", input.tenant_id)
        if tenant is None or tenant.get("workspace_id") != context.workspace_id:
            return error_result(
                service_error(
                    ErrorCode.NOT_FOUND,
                    "Tenant not found",
                    details={"tenant_id": input.tenant_id},
                )
            )
        if tenant.get("status") != "active":
            return error_result(
                service_error(
                    ErrorCode.TENANT_STATUS_INVALID,
                    f"Cannot bill a tenant with status {tenant.get('status')}",
                    details={"tenant_id": input.tenant_id},
                )
            )
        if await store.find("bills", tenant_id=input.tenant_id, month=input.month):
            return error_result(
                service_error(
                    ErrorCode.DUPLICATE_ENTRY,
                    f"A bill for {input.month} already exists",
                    details={"tenant_id": input.tenant_id, "month": input.month},
                )
            )
        return success_result(TenantSnapshot.model_validate(tenant))

    async def create_bill(
        context: WorkflowContext, input: BillGenerateInput, results: Mapping[str, Any]
    ) -> ServiceResult[BillRow]:
        existing = await store.find("bills", workspace_id=context.workspace_id)
        bill = await store.insert(
            "bills",
            {
                "bill_number": f"BILL-{input.month.replace('-', '')}-{len(existing) + 1:04d}",
                "tenant_id": input.tenant_id,
                "workspace_id": context.workspace_id,
                "month": input.month,
                "due_date": input.due_date.isoformat(),
                "line_items": [item.model_dump() for item in input.line_items],
                "total_amount": input.total_amount,
                "status": "pending",
            },
        )
        return success_result(BillRow.model_validate(bill))

    async def delete_bill(
        context: WorkflowContext, input: BillGenerateInput, bill: BillRow
    ) -> None:
        await store.delete("bills", bill.id)

    def cascades(
        context: WorkflowContext, input: BillGenerateInput, results: BillGenerateResults
    ) -> list[CascadeEffect]:
        return [
            CascadeEffect(
                entity_type=EntityType.TENANT,
                entity_id=input.tenant_id,
                action=AuditAction.UPDATE,
                data={"last_billed_month": input.month},
            )
        ]

    def audit_events(
        context: WorkflowContext, input: BillGenerateInput, results: BillGenerateResults
    ) -> list[AuditEvent]:
        bill = results.create_bill
        return [
            create_audit_event(
                EntityType.BILL,
                bill.id,
                AuditAction.CREATE,
                actor_id=context.actor_id,
                actor_role=context.actor_role,
                workspace_id=context.workspace_id,
                after=bill.model_dump(),
                metadata={"workflow_id": context.workflow_id},
            )
        ]

    def notifications(
        context: WorkflowContext, input: BillGenerateInput, results: BillGenerateResults
    ) -> list[NotificationPayload]:
        bill = results.create_bill
        return [
            build_bill_notification(
                input.tenant_id,
                bill_id=bill.id,
                bill_number=bill.bill_number,
                amount=f"{bill.total_amount:.2f}",
                month=input.month,
            )
        ]

    def build_output(results: BillGenerateResults) -> BillGenerateOutput:
        bill = results.create_bill
        return BillGenerateOutput(
            bill_id=bill.id, bill_number=bill.bill_number, total_amount=bill.total_amount
        )

    return WorkflowDefinition(
        name=BILL_GENERATE,
        steps=[
            StepDefinition(
                "validate_tenant",
                validate_tenant,
                no_rollback_reason="read-only lookup",
            ),
            StepDefinition("create_bill", create_bill, rollback=delete_bill),
        ],
        cascades=cascades,
        audit_events=audit_events,
        notifications=notifications,
        build_output=build_output,
        results_type=BillGenerateResults,
        output_type=BillGenerateOutput,
    )
