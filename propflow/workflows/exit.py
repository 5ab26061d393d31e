"""Exit clearance workflows: initiating a tenant's exit and completing it."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..audit import create_audit_event
from ..cascade import EntityStore
from ..contracts import (
    ActorRole,
    AuditAction,
    AuditEvent,
    EntityType,
    NotificationPayload,
    WorkflowContext,
    isoformat_utc,
    utcnow,
)
from ..definition import StepDefinition, WorkflowDefinition
from ..errors import ErrorCode, ServiceResult, error_result, service_error, success_result
from ..notifications import build_exit_clearance_notification

logger = logging.getLogger(__name__)

EXIT_CLEARANCE = "exit_clearance"
COMPLETE_EXIT = "complete_exit"

OPEN_CLEARANCE_STATUSES = ("initiated", "in_progress")
UNPAID_BILL_STATUSES = ("pending", "partial", "overdue")


class ExitDeduction(BaseModel):
    description: str
    amount: float = Field(ge=0)


class ExitClearanceInput(BaseModel):
    tenant_id: str
    property_id: str
    room_id: str
    bed_id: Optional[str] = None
    requested_exit_date: date
    exit_reason: str
    notice_date: Optional[date] = None
    items_checklist: dict[str, bool] = Field(default_factory=dict)
    deductions: list[ExitDeduction] = Field(default_factory=list)
    notes: Optional[str] = None


class ExitTenant(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    status: str
    user_id: Optional[str] = None
    security_deposit: float = 0


class Settlement(BaseModel):
    total_dues: float
    deposit_amount: float
    deductions: float
    refund_amount: float
    additional_payment: float


class StatusChange(BaseModel):
    previous_status: str
    new_status: str
    changed: bool


class ClearanceRow(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    tenant_id: str
    status: str


class ExitClearanceResults(BaseModel):
    validate_tenant: ExitTenant
    calculate_settlement: Settlement
    update_tenant_status: StatusChange
    create_clearance_record: ClearanceRow


class ExitClearanceOutput(BaseModel):
    clearance_id: str
    tenant_id: str
    settlement: Settlement
    status: str


def _outstanding(bill: Mapping[str, Any]) -> float:
    if bill.get("balance_due") is not None:
        return float(bill["balance_due"])
    return float(bill.get("total_amount", 0)) - float(bill.get("paid_amount") or 0)


def build_exit_clearance_workflow(
    store: EntityStore,
) -> WorkflowDefinition[ExitClearanceInput, ExitClearanceOutput]:
    """Open an exit clearance and put the tenant on notice.

    The settlement nets the security deposit against unpaid bills and
    deductions; a negative balance becomes ``additional_payment``.
    """

    async def validate_tenant(
        context: WorkflowContext, input: ExitClearanceInput, results: Mapping[str, Any]
    ) -> ServiceResult[ExitTenant]:
        tenant = await store.get("tenants", input.tenant_id)
        if tenant is None or tenant.get("workspace_id") != context.workspace_id:
            return error_result(
                service_error(
                    ErrorCode.NOT_FOUND,
                    "Tenant not found",
                    details={"tenant_id": input.tenant_id},
                )
            )
        if tenant.get("status") == "checked_out":
            return error_result(
                service_error(
                    ErrorCode.TENANT_ALREADY_EXITED,
                    "Tenant has already exited",
                    details={"tenant_id": input.tenant_id},
                )
            )
        clearances = await store.find("exit_clearance", tenant_id=input.tenant_id)
        if any(c.get("status") in OPEN_CLEARANCE_STATUSES for c in clearances):
            return error_result(
                service_error(
                    ErrorCode.EXIT_ALREADY_INITIATED,
                    "Exit clearance already initiated",
                    details={"tenant_id": input.tenant_id},
                )
            )
        return success_result(ExitTenant.model_validate(tenant))

    async def calculate_settlement(
        context: WorkflowContext, input: ExitClearanceInput, results: Mapping[str, Any]
    ) -> ServiceResult[Settlement]:
        tenant: ExitTenant = results["validate_tenant"]
        bills = await store.find("bills", tenant_id=input.tenant_id)
        total_dues = round(
            sum(_outstanding(b) for b in bills if b.get("status") in UNPAID_BILL_STATUSES),
            2,
        )
        deductions = round(sum(d.amount for d in input.deductions), 2)
        net = round(tenant.security_deposit - total_dues - deductions, 2)
        return success_result(
            Settlement(
                total_dues=total_dues,
                deposit_amount=tenant.security_deposit,
                deductions=deductions,
                refund_amount=max(0, net),
                additional_payment=max(0, -net),
            )
        )

    async def update_tenant_status(
        context: WorkflowContext, input: ExitClearanceInput, results: Mapping[str, Any]
    ) -> ServiceResult[StatusChange]:
        tenant: ExitTenant = results["validate_tenant"]
        if tenant.status != "active":
            return success_result(
                StatusChange(
                    previous_status=tenant.status, new_status=tenant.status, changed=False
                )
            )
        await store.update(
            "tenants",
            input.tenant_id,
            {
                "status": "notice_period",
                "notice_date": (input.notice_date or date.today()).isoformat(),
                "expected_exit_date": input.requested_exit_date.isoformat(),
                "updated_at": isoformat_utc(utcnow()),
            },
        )
        return success_result(
            StatusChange(previous_status="active", new_status="notice_period", changed=True)
        )

    async def restore_tenant_status(
        context: WorkflowContext, input: ExitClearanceInput, change: StatusChange
    ) -> None:
        if change.changed:
            await store.update(
                "tenants",
                input.tenant_id,
                {
                    "status": change.previous_status,
                    "notice_date": None,
                    "expected_exit_date": None,
                },
            )

    async def create_clearance_record(
        context: WorkflowContext, input: ExitClearanceInput, results: Mapping[str, Any]
    ) -> ServiceResult[ClearanceRow]:
        settlement: Settlement = results["calculate_settlement"]
        clearance = await store.insert(
            "exit_clearance",
            {
                "tenant_id": input.tenant_id,
                "property_id": input.property_id,
                "room_id": input.room_id,
                "bed_id": input.bed_id,
                "workspace_id": context.workspace_id,
                "initiated_by": context.actor_id,
                "notice_date": (input.notice_date or date.today()).isoformat(),
                "requested_exit_date": input.requested_exit_date.isoformat(),
                "exit_reason": input.exit_reason,
                "status": "initiated",
                "items_checklist": dict(input.items_checklist),
                "deductions": [d.model_dump() for d in input.deductions],
                "total_dues": settlement.total_dues,
                "deposit_amount": settlement.deposit_amount,
                "deduction_amount": settlement.deductions,
                "refund_amount": settlement.refund_amount,
                "additional_payment": settlement.additional_payment,
                "notes": input.notes,
                "created_at": isoformat_utc(utcnow()),
            },
        )
        return success_result(ClearanceRow.model_validate(clearance))

    async def delete_clearance_record(
        context: WorkflowContext, input: ExitClearanceInput, clearance: ClearanceRow
    ) -> None:
        await store.delete("exit_clearance", clearance.id)

    def audit_events(
        context: WorkflowContext, input: ExitClearanceInput, results: ExitClearanceResults
    ) -> list[AuditEvent]:
        clearance = results.create_clearance_record
        events = [
            create_audit_event(
                EntityType.EXIT_CLEARANCE,
                clearance.id,
                AuditAction.CREATE,
                actor_id=context.actor_id,
                actor_role=context.actor_role,
                workspace_id=context.workspace_id,
                after={
                    "tenant_id": input.tenant_id,
                    "exit_reason": input.exit_reason,
                    "requested_exit_date": input.requested_exit_date.isoformat(),
                    "settlement": results.calculate_settlement.model_dump(),
                },
                metadata={"workflow_id": context.workflow_id},
            )
        ]
        change = results.update_tenant_status
        if change.changed:
            events.append(
                create_audit_event(
                    EntityType.TENANT,
                    input.tenant_id,
                    AuditAction.STATUS_CHANGE,
                    actor_id=context.actor_id,
                    actor_role=context.actor_role,
                    workspace_id=context.workspace_id,
                    before={"status": change.previous_status},
                    after={"status": change.new_status},
                    metadata={"clearance_id": clearance.id},
                )
            )
        return events

    def notifications(
        context: WorkflowContext, input: ExitClearanceInput, results: ExitClearanceResults
    ) -> list[NotificationPayload]:
        tenant = results.validate_tenant
        details = dict(
            clearance_id=results.create_clearance_record.id,
            tenant_name=tenant.name,
            exit_date=input.requested_exit_date.isoformat(),
        )
        payloads = [
            build_exit_clearance_notification(
                context.actor_id, ActorRole.OWNER, "initiated", **details
            )
        ]
        if tenant.user_id:
            payloads.append(
                build_exit_clearance_notification(
                    tenant.user_id, ActorRole.TENANT, "initiated", **details
                )
            )
        return payloads

    def build_output(results: ExitClearanceResults) -> ExitClearanceOutput:
        clearance = results.create_clearance_record
        return ExitClearanceOutput(
            clearance_id=clearance.id,
            tenant_id=clearance.tenant_id,
            settlement=results.calculate_settlement,
            status=clearance.status,
        )

    return WorkflowDefinition(
        name=EXIT_CLEARANCE,
        steps=[
            StepDefinition(
                "validate_tenant", validate_tenant, no_rollback_reason="read-only lookup"
            ),
            StepDefinition(
                "calculate_settlement",
                calculate_settlement,
                no_rollback_reason="read-only calculation",
            ),
            StepDefinition(
                "update_tenant_status", update_tenant_status, rollback=restore_tenant_status
            ),
            StepDefinition(
                "create_clearance_record",
                create_clearance_record,
                rollback=delete_clearance_record,
            ),
        ],
        audit_events=audit_events,
        notifications=notifications,
        build_output=build_output,
        results_type=ExitClearanceResults,
        output_type=ExitClearanceOutput,
    )


# ----------------------------------------------------------------------
# Completing an exit


class CompleteExitInput(BaseModel):
    clearance_id: str
    actual_exit_date: date
    final_settlement_mode: Optional[Literal["cash", "bank_transfer", "upi", "adjustment"]] = None
    settlement_reference: Optional[str] = None
    final_notes: Optional[str] = None


class OpenClearance(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    tenant_id: str
    status: str
    room_id: Optional[str] = None
    bed_id: Optional[str] = None
    exit_reason: Optional[str] = None
    refund_amount: float = 0
    additional_payment: float = 0
    tenant_name: str
    tenant_user_id: Optional[str] = None


class TenantCheckout(BaseModel):
    tenant_id: str
    previous_status: str
    previous_room_id: Optional[str] = None


class StayCompletion(BaseModel):
    stay_id: Optional[str] = None


class RoomRelease(BaseModel):
    room_id: Optional[str] = None
    room_released: bool = False
    previous_status: Optional[str] = None
    previous_occupied_beds: Optional[int] = None
    occupied_beds: Optional[int] = None
    status: Optional[str] = None


class BedRelease(BaseModel):
    bed_id: Optional[str] = None
    previous_tenant_id: Optional[str] = None
    previous_status: Optional[str] = None


class ClearanceCompletion(BaseModel):
    previous_status: str
    completed_at: str


class CompleteExitResults(BaseModel):
    validate_clearance: OpenClearance
    update_tenant_status: TenantCheckout
    complete_tenant_stay: Optional[StayCompletion] = None
    release_room: Optional[RoomRelease] = None
    release_bed: Optional[BedRelease] = None
    complete_clearance: ClearanceCompletion


class CompleteExitOutput(BaseModel):
    clearance_id: str
    tenant_id: str
    room_released: bool
    tenant_status: str


def build_complete_exit_workflow(
    store: EntityStore,
) -> WorkflowDefinition[CompleteExitInput, CompleteExitOutput]:
    """Check the tenant out and free their room and bed.

    Closing the tenant stay and releasing the room and bed are optional: a
    tenant without those records can still be checked out.
    """

    async def validate_clearance(
        context: WorkflowContext, input: CompleteExitInput, results: Mapping[str, Any]
    ) -> ServiceResult[OpenClearance]:
        clearance = await store.get("exit_clearance", input.clearance_id)
        if clearance is None or clearance.get("workspace_id") != context.workspace_id:
            return error_result(
                service_error(
                    ErrorCode.NOT_FOUND,
                    "Exit clearance not found",
                    details={"clearance_id": input.clearance_id},
                )
            )
        if clearance.get("status") == "completed":
            return error_result(
                service_error(
                    ErrorCode.VALIDATION_ERROR,
                    "Exit clearance already completed",
                    details={"clearance_id": input.clearance_id},
                )
            )
        if clearance.get("additional_payment") and input.final_settlement_mode is None:
            return error_result(
                service_error(
                    ErrorCode.PENDING_DUES,
                    "The tenant owes "
                    f"{clearance['additional_payment']:.2f}; record how it was settled",
                    details={"clearance_id": input.clearance_id},
                )
            )
        tenant = await store.get("tenants", clearance["tenant_id"])
        if tenant is None:
            return error_result(
                service_error(
                    ErrorCode.NOT_FOUND,
                    "Tenant not found",
                    details={"tenant_id": clearance["tenant_id"]},
                )
            )
        return success_result(
            OpenClearance.model_validate(
                {
                    **clearance,
                    "tenant_name": tenant["name"],
                    "tenant_user_id": tenant.get("user_id"),
                }
            )
        )

    async def update_tenant_status(
        context: WorkflowContext, input: CompleteExitInput, results: Mapping[str, Any]
    ) -> ServiceResult[TenantCheckout]:
        clearance: OpenClearance = results["validate_clearance"]
        tenant = await store.get("tenants", clearance.tenant_id) or {}
        await store.update(
            "tenants",
            clearance.tenant_id,
            {
                "status": "checked_out",
                "check_out_date": input.actual_exit_date.isoformat(),
                "room_id": None,
                "updated_at": isoformat_utc(utcnow()),
            },
        )
        return success_result(
            TenantCheckout(
                tenant_id=clearance.tenant_id,
                previous_status=tenant.get("status", "notice_period"),
                previous_room_id=tenant.get("room_id"),
            )
        )

    async def restore_tenant(
        context: WorkflowContext, input: CompleteExitInput, checkout: TenantCheckout
    ) -> None:
        await store.update(
            "tenants",
            checkout.tenant_id,
            {
                "status": checkout.previous_status,
                "check_out_date": None,
                "room_id": checkout.previous_room_id,
            },
        )

    async def complete_tenant_stay(
        context: WorkflowContext, input: CompleteExitInput, results: Mapping[str, Any]
    ) -> ServiceResult[StayCompletion]:
        clearance: OpenClearance = results["validate_clearance"]
        stays = await store.find("tenant_stays", tenant_id=clearance.tenant_id, status="active")
        if not stays:
            return success_result(StayCompletion())
        stay_id = stays[0]["id"]
        await store.update(
            "tenant_stays",
            stay_id,
            {
                "exit_date": input.actual_exit_date.isoformat(),
                "exit_reason": clearance.exit_reason,
                "status": "completed",
                "updated_at": isoformat_utc(utcnow()),
            },
        )
        return success_result(StayCompletion(stay_id=stay_id))

    async def reopen_tenant_stay(
        context: WorkflowContext, input: CompleteExitInput, completion: StayCompletion
    ) -> None:
        if completion.stay_id:
            await store.update(
                "tenant_stays",
                completion.stay_id,
                {"status": "active", "exit_date": None, "exit_reason": None},
            )

    async def release_room(
        context: WorkflowContext, input: CompleteExitInput, results: Mapping[str, Any]
    ) -> ServiceResult[RoomRelease]:
        clearance: OpenClearance = results["validate_clearance"]
        room = await store.get("rooms", clearance.room_id) if clearance.room_id else None
        if room is None:
            return success_result(RoomRelease(room_id=clearance.room_id))
        previous_beds = room.get("occupied_beds")
        occupied = max(0, (previous_beds or 1) - 1)
        status = "available" if occupied == 0 else "occupied"
        await store.update(
            "rooms",
            room["id"],
            {"occupied_beds": occupied, "status": status, "updated_at": isoformat_utc(utcnow())},
        )
        return success_result(
            RoomRelease(
                room_id=room["id"],
                room_released=True,
                previous_status=room.get("status"),
                previous_occupied_beds=previous_beds,
                occupied_beds=occupied,
                status=status,
            )
        )

    async def restore_room(
        context: WorkflowContext, input: CompleteExitInput, release: RoomRelease
    ) -> None:
        if release.room_released:
            await store.update(
                "rooms",
                release.room_id,
                {
                    "occupied_beds": release.previous_occupied_beds,
                    "status": release.previous_status,
                },
            )

    async def release_bed(
        context: WorkflowContext, input: CompleteExitInput, results: Mapping[str, Any]
    ) -> ServiceResult[BedRelease]:
        clearance: OpenClearance = results["validate_clearance"]
        if not clearance.bed_id:
            return success_result(BedRelease())
        bed = await store.get("beds", clearance.bed_id)
        if bed is None:
            logger.warning(f"[{context.workflow_id}] Bed {clearance.bed_id} not found")
            return success_result(BedRelease())
        await store.update(
            "beds",
            clearance.bed_id,
            {
                "current_tenant_id": None,
                "status": "available",
                "updated_at": isoformat_utc(utcnow()),
            },
        )
        return success_result(
            BedRelease(
                bed_id=clearance.bed_id,
                previous_tenant_id=bed.get("current_tenant_id"),
                previous_status=bed.get("status"),
            )
        )

    async def restore_bed(
        context: WorkflowContext, input: CompleteExitInput, release: BedRelease
    ) -> None:
        if release.bed_id:
            await store.update(
                "beds",
                release.bed_id,
                {
                    "current_tenant_id": release.previous_tenant_id,
                    "status": release.previous_status,
                },
            )

    async def complete_clearance(
        context: WorkflowContext, input: CompleteExitInput, results: Mapping[str, Any]
    ) -> ServiceResult[ClearanceCompletion]:
        clearance: OpenClearance = results["validate_clearance"]
        completed_at = isoformat_utc(utcnow())
        await store.update(
            "exit_clearance",
            input.clearance_id,
            {
                "status": "completed",
                "actual_exit_date": input.actual_exit_date.isoformat(),
                "settlement_mode": input.final_settlement_mode,
                "settlement_reference": input.settlement_reference,
                "final_notes": input.final_notes,
                "completed_at": completed_at,
                "completed_by": context.actor_id,
                "updated_at": completed_at,
            },
        )
        return success_result(
            ClearanceCompletion(previous_status=clearance.status, completed_at=completed_at)
        )

    async def reopen_clearance(
        context: WorkflowContext, input: CompleteExitInput, completion: ClearanceCompletion
    ) -> None:
        await store.update(
            "exit_clearance",
            input.clearance_id,
            {
                "status": completion.previous_status,
                "actual_exit_date": None,
                "completed_at": None,
                "completed_by": None,
            },
        )

    def audit_events(
        context: WorkflowContext, input: CompleteExitInput, results: CompleteExitResults
    ) -> list[AuditEvent]:
        clearance = results.validate_clearance
        checkout = results.update_tenant_status
        actor = dict(
            actor_id=context.actor_id,
            actor_role=context.actor_role,
            workspace_id=context.workspace_id,
        )
        events = [
            create_audit_event(
                EntityType.EXIT_CLEARANCE,
                input.clearance_id,
                AuditAction.COMPLETE,
                after={
                    "actual_exit_date": input.actual_exit_date.isoformat(),
                    "settlement_mode": input.final_settlement_mode,
                },
                **actor,
            ),
            create_audit_event(
                EntityType.TENANT,
                checkout.tenant_id,
                AuditAction.STATUS_CHANGE,
                before={"status": checkout.previous_status},
                after={"status": "checked_out"},
                metadata={"clearance_id": input.clearance_id},
                **actor,
            ),
        ]
        if clearance.room_id:
            events.append(
                create_audit_event(
                    EntityType.ROOM,
                    clearance.room_id,
                    AuditAction.UPDATE,
                    metadata={"action": "tenant_exit", "tenant_id": checkout.tenant_id},
                    **actor,
                )
            )
        return events

    def notifications(
        context: WorkflowContext, input: CompleteExitInput, results: CompleteExitResults
    ) -> list[NotificationPayload]:
        clearance = results.validate_clearance
        if not clearance.tenant_user_id:
            return []
        settlement = clearance.refund_amount or clearance.additional_payment
        return [
            build_exit_clearance_notification(
                clearance.tenant_user_id,
                ActorRole.TENANT,
                "completed",
                clearance_id=input.clearance_id,
                tenant_name=clearance.tenant_name,
                settlement_amount=f"{settlement:.2f}",
            )
        ]

    def build_output(results: CompleteExitResults) -> CompleteExitOutput:
        room = results.release_room
        return CompleteExitOutput(
            clearance_id=results.validate_clearance.id,
            tenant_id=results.update_tenant_status.tenant_id,
            room_released=bool(room and room.room_released),
            tenant_status="checked_out",
        )

    return WorkflowDefinition(
        name=COMPLETE_EXIT,
        steps=[
            StepDefinition(
                "validate_clearance", validate_clearance, no_rollback_reason="read-only lookup"
            ),
            StepDefinition("update_tenant_status", update_tenant_status, rollback=restore_tenant),
            StepDefinition(
                "complete_tenant_stay",
                complete_tenant_stay,
                rollback=reopen_tenant_stay,
                optional=True,
            ),
            StepDefinition("release_room", release_room, rollback=restore_room, optional=True),
            StepDefinition("release_bed", release_bed, rollback=restore_bed, optional=True),
            StepDefinition("complete_clearance", complete_clearance, rollback=reopen_clearance),
        ],
        audit_events=audit_events,
        notifications=notifications,
        build_output=build_output,
        results_type=CompleteExitResults,
        output_type=CompleteExitOutput,
    )
