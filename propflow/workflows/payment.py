"""Payment recording and refund workflows."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict

from ..audit import create_audit_event
from ..cascade import EntityStore
from ..contracts import (
    AuditAction,
    AuditEvent,
    CascadeEffect,
    EntityType,
    NotificationPayload,
    WorkflowContext,
    isoformat_utc,
    utcnow,
)
from ..definition import StepDefinition, WorkflowDefinition
from ..errors import ErrorCode, ServiceResult, error_result, service_error, success_result
from ..notifications import build_payment_notification

logger = logging.getLogger(__name__)

PAYMENT_RECORD = "payment_record"
PAYMENT_REFUND = "payment_refund"

PaymentMethod = Literal["cash", "upi", "bank_transfer", "card", "cheque", "other"]


class PaymentRecordInput(BaseModel):
    tenant_id: str
    property_id: str
    bill_id: str
    amount: float
    payment_date: date
    payment_method: PaymentMethod
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    is_advance: bool = False
    send_receipt: bool = False


class BillSnapshot(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    bill_number: str
    tenant_id: str
    status: str
    total_amount: float
    paid_amount: float = 0
    balance_due: Optional[float] = None

    @property
    def outstanding(self) -> float:
        if self.balance_due is not None:
            return self.balance_due
        return round(self.total_amount - self.paid_amount, 2)


class PaymentValidation(BaseModel):
    bill: BillSnapshot
    tenant_user_id: Optional[str] = None
    remaining_balance: float


class ReceiptNumber(BaseModel):
    receipt_number: str


class PaymentRow(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    receipt_number: str
    amount: float


class BillUpdate(BaseModel):
    bill_id: str
    previous_status: str
    previous_paid_amount: float
    previous_balance_due: Optional[float] = None
    new_status: str
    new_paid_amount: float
    new_balance: float


class AdvanceCredit(BaseModel):
    credited: float = 0
    previous_balance: float = 0


class PaymentRecordResults(BaseModel):
    validate_bill: PaymentValidation
    generate_receipt_number: ReceiptNumber
    create_payment: PaymentRow
    update_bill: BillUpdate
    update_advance_balance: Optional[AdvanceCredit] = None


class PaymentRecordOutput(BaseModel):
    payment_id: str
    receipt_number: str
    bill_status: str
    remaining_balance: float
    advance_credited: float = 0


async def _restore_bill(store: EntityStore, update: BillUpdate) -> None:
    await store.update(
        "bills",
        update.bill_id,
        {
            "status": update.previous_status,
            "paid_amount": update.previous_paid_amount,
            "balance_due": update.previous_balance_due,
        },
    )


def build_payment_record_workflow(
    store: EntityStore,
) -> WorkflowDefinition[PaymentRecordInput, PaymentRecordOutput]:
    """Record a payment against a bill and settle the bill's balance.

    An advance payment may exceed what the bill still owes; the bill is
    settled and the excess is credited to the tenant's advance balance.
    """

    async def validate_bill(
        context: WorkflowContext, input: PaymentRecordInput, results: Mapping[str, Any]
    ) -> ServiceResult[PaymentValidation]:
        if input.amount <= 0:
            return error_result(
                service_error(
                    ErrorCode.VALIDATION_ERROR,
                    "Payment amount must be greater than zero",
                    details={"field": "amount"},
                )
            )
        bill = await store.get("bills", input.bill_id)
        if bill is None or bill.get("workspace_id") != context.workspace_id:
            return error_result(
                service_error(
                    ErrorCode.NOT_FOUND, "Bill not found", details={"bill_id": input.bill_id}
                )
            )
        snapshot = BillSnapshot.model_validate(bill)
        if snapshot.tenant_id != input.tenant_id:
            return error_result(
                service_error(
                    ErrorCode.VALIDATION_ERROR,
                    "Bill does not belong to the specified tenant",
                    details={"bill_id": input.bill_id, "tenant_id": input.tenant_id},
                )
            )
        if snapshot.status == "paid":
            return error_result(
                service_error(
                    ErrorCode.BILL_ALREADY_PAID,
                    "Bill is already fully paid",
                    details={"bill_id": input.bill_id},
                )
            )
        remaining = snapshot.outstanding
        if input.amount > remaining and not input.is_advance:
            return error_result(
                service_error(
                    ErrorCode.PAYMENT_EXCEEDS_DUE,
                    f"Payment amount ({input.amount:.2f}) exceeds remaining balance "
                    f"({remaining:.2f})",
                    details={"bill_id": input.bill_id, "remaining_balance": remaining},
                )
            )
        tenant = await store.get("tenants", input.tenant_id) or {}
        return success_result(
            PaymentValidation(
                bill=snapshot,
                tenant_user_id=tenant.get("user_id"),
                remaining_balance=remaining,
            )
        )

    async def generate_receipt_number(
        context: WorkflowContext, input: PaymentRecordInput, results: Mapping[str, Any]
    ) -> ServiceResult[ReceiptNumber]:
        existing = await store.find("payments", workspace_id=context.workspace_id)
        return success_result(ReceiptNumber(receipt_number=f"RCP-{len(existing) + 1:06d}"))

    async def create_payment(
        context: WorkflowContext, input: PaymentRecordInput, results: Mapping[str, Any]
    ) -> ServiceResult[PaymentRow]:
        receipt: ReceiptNumber = results["generate_receipt_number"]
        payment = await store.insert(
            "payments",
            {
                "tenant_id": input.tenant_id,
                "property_id": input.property_id,
                "bill_id": input.bill_id,
                "amount": input.amount,
                "payment_date": input.payment_date.isoformat(),
                "payment_method": input.payment_method,
                "reference_number": input.reference_number,
                "receipt_number": receipt.receipt_number,
                "notes": input.notes,
                "is_advance": input.is_advance,
                "status": "completed",
                "refunded_amount": 0,
                "workspace_id": context.workspace_id,
                "owner_id": context.actor_id,
                "created_at": isoformat_utc(utcnow()),
            },
        )
        return success_result(PaymentRow.model_validate(payment))

    async def delete_payment(
        context: WorkflowContext, input: PaymentRecordInput, payment: PaymentRow
    ) -> None:
        await store.delete("payments", payment.id)

    async def update_bill(
        context: WorkflowContext, input: PaymentRecordInput, results: Mapping[str, Any]
    ) -> ServiceResult[BillUpdate]:
        validation: PaymentValidation = results["validate_bill"]
        bill = validation.bill
        applied = min(input.amount, validation.remaining_balance)
        paid = round(bill.paid_amount + applied, 2)
        balance = max(round(bill.total_amount - paid, 2), 0)
        status = "paid" if balance <= 0 else "partial"
        await store.update(
            "bills",
            bill.id,
            {
                "paid_amount": paid,
                "balance_due": balance,
                "status": status,
                "last_payment_date": input.payment_date.isoformat(),
                "updated_at": isoformat_utc(utcnow()),
            },
        )
        if bill.status == "overdue" and status == "paid":
            logger.info(f"[{context.workflow_id}] Overdue bill {bill.bill_number} settled")
        return success_result(
            BillUpdate(
                bill_id=bill.id,
                previous_status=bill.status,
                previous_paid_amount=bill.paid_amount,
                previous_balance_due=bill.balance_due,
                new_status=status,
                new_paid_amount=paid,
                new_balance=balance,
            )
        )

    async def restore_bill(
        context: WorkflowContext, input: PaymentRecordInput, update: BillUpdate
    ) -> None:
        await _restore_bill(store, update)

    async def update_advance_balance(
        context: WorkflowContext, input: PaymentRecordInput, results: Mapping[str, Any]
    ) -> ServiceResult[AdvanceCredit]:
        validation: PaymentValidation = results["validate_bill"]
        excess = round(input.amount - validation.remaining_balance, 2)
        if not input.is_advance or excess <= 0:
            return success_result(AdvanceCredit())
        tenant = await store.get("tenants", input.tenant_id)
        if tenant is None:
            return error_result(
                service_error(
                    ErrorCode.NOT_FOUND,
                    "Tenant not found",
                    details={"tenant_id": input.tenant_id},
                )
            )
        previous = float(tenant.get("advance_balance") or 0)
        await store.update(
            "tenants",
            input.tenant_id,
            {"advance_balance": round(previous + excess, 2), "updated_at": isoformat_utc(utcnow())},
        )
        return success_result(AdvanceCredit(credited=excess, previous_balance=previous))

    async def restore_advance_balance(
        context: WorkflowContext, input: PaymentRecordInput, credit: AdvanceCredit
    ) -> None:
        if credit.credited:
            await store.update(
                "tenants", input.tenant_id, {"advance_balance": credit.previous_balance}
            )

    def cascades(
        context: WorkflowContext, input: PaymentRecordInput, results: PaymentRecordResults
    ) -> list[CascadeEffect]:
        return [
            CascadeEffect(
                entity_type=EntityType.TENANT,
                entity_id=input.tenant_id,
                action=AuditAction.UPDATE,
                data={"last_payment_date": input.payment_date.isoformat()},
            )
        ]

    def audit_events(
        context: WorkflowContext, input: PaymentRecordInput, results: PaymentRecordResults
    ) -> list[AuditEvent]:
        payment = results.create_payment
        bill = results.update_bill
        actor = dict(
            actor_id=context.actor_id,
            actor_role=context.actor_role,
            workspace_id=context.workspace_id,
        )
        return [
            create_audit_event(
                EntityType.PAYMENT,
                payment.id,
                AuditAction.CREATE,
                after={
                    "amount": input.amount,
                    "payment_method": input.payment_method,
                    "bill_id": input.bill_id,
                    "receipt_number": payment.receipt_number,
                },
                metadata={"workflow_id": context.workflow_id},
                **actor,
            ),
            create_audit_event(
                EntityType.BILL,
                input.bill_id,
                AuditAction.UPDATE,
                before={"status": bill.previous_status, "paid_amount": bill.previous_paid_amount},
                after={"status": bill.new_status, "paid_amount": bill.new_paid_amount},
                metadata={"payment_id": payment.id},
                **actor,
            ),
        ]

    def notifications(
        context: WorkflowContext, input: PaymentRecordInput, results: PaymentRecordResults
    ) -> list[NotificationPayload]:
        if not input.send_receipt:
            return []
        validation = results.validate_bill
        return [
            build_payment_notification(
                validation.tenant_user_id or input.tenant_id,
                payment_id=results.create_payment.id,
                amount=f"{input.amount:.2f}",
                bill_number=validation.bill.bill_number,
            )
        ]

    def build_output(results: PaymentRecordResults) -> PaymentRecordOutput:
        credit = results.update_advance_balance
        return PaymentRecordOutput(
            payment_id=results.create_payment.id,
            receipt_number=results.generate_receipt_number.receipt_number,
            bill_status=results.update_bill.new_status,
            remaining_balance=results.update_bill.new_balance,
            advance_credited=credit.credited if credit else 0,
        )

    return WorkflowDefinition(
        name=PAYMENT_RECORD,
        steps=[
            StepDefinition(
                "validate_bill", validate_bill, no_rollback_reason="read-only lookup"
            ),
            StepDefinition(
                "generate_receipt_number",
                generate_receipt_number,
                no_rollback_reason="nothing is reserved",
            ),
            StepDefinition("create_payment", create_payment, rollback=delete_payment),
            StepDefinition("update_bill", update_bill, rollback=restore_bill),
            StepDefinition(
                "update_advance_balance",
                update_advance_balance,
                rollback=restore_advance_balance,
                optional=True,
            ),
        ],
        cascades=cascades,
        audit_events=audit_events,
        notifications=notifications,
        build_output=build_output,
        results_type=PaymentRecordResults,
        output_type=PaymentRecordOutput,
    )


# ----------------------------------------------------------------------
# Refunds


class RefundPaymentInput(BaseModel):
    payment_id: str
    refund_amount: float
    refund_reason: str
    refund_method: Literal["cash", "upi", "bank_transfer"]
    refund_reference: Optional[str] = None


class PaymentSnapshot(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    amount: float
    status: str
    refunded_amount: float = 0
    bill_id: Optional[str] = None


class RefundRow(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    amount: float


class PaymentRefundMark(BaseModel):
    previous_status: str
    previous_refunded_amount: float
    new_status: str


class RefundPaymentResults(BaseModel):
    validate_payment: PaymentSnapshot
    create_refund: RefundRow
    mark_payment_refunded: PaymentRefundMark
    update_bill: Optional[BillUpdate] = None


class RefundPaymentOutput(BaseModel):
    refund_id: str
    original_payment_id: str
    bill_updated: bool


def build_payment_refund_workflow(
    store: EntityStore,
) -> WorkflowDefinition[RefundPaymentInput, RefundPaymentOutput]:
    """Refund all or part of a recorded payment and reopen its bill.

    Several partial refunds may be issued until the payment is fully
    refunded.
    """

    async def validate_payment(
        context: WorkflowContext, input: RefundPaymentInput, results: Mapping[str, Any]
    ) -> ServiceResult[PaymentSnapshot]:
        if input.refund_amount <= 0:
            return error_result(
                service_error(
                    ErrorCode.VALIDATION_ERROR,
                    "Refund amount must be greater than zero",
                    details={"field": "refund_amount"},
                )
            )
        payment = await store.get("payments", input.payment_id)
        if payment is None or payment.get("workspace_id") != context.workspace_id:
            return error_result(
                service_error(
                    ErrorCode.NOT_FOUND,
                    "Payment not found",
                    details={"payment_id": input.payment_id},
                )
            )
        snapshot = PaymentSnapshot.model_validate(payment)
        if snapshot.status == "refunded":
            return error_result(
                service_error(
                    ErrorCode.REFUND_ALREADY_PROCESSED,
                    "Payment has already been refunded",
                    details={"payment_id": input.payment_id},
                )
            )
        refundable = round(snapshot.amount - snapshot.refunded_amount, 2)
        if input.refund_amount > refundable:
            return error_result(
                service_error(
                    ErrorCode.REFUND_EXCEEDS_BALANCE,
                    f"Refund amount ({input.refund_amount:.2f}) exceeds the refundable "
                    f"balance ({refundable:.2f})",
                    details={"payment_id": input.payment_id, "refundable": refundable},
                )
            )
        return success_result(snapshot)

    async def create_refund(
        context: WorkflowContext, input: RefundPaymentInput, results: Mapping[str, Any]
    ) -> ServiceResult[RefundRow]:
        refund = await store.insert(
            "payment_refunds",
            {
                "payment_id": input.payment_id,
                "amount": input.refund_amount,
                "reason": input.refund_reason,
                "refund_method": input.refund_method,
                "reference_number": input.refund_reference,
                "processed_by": context.actor_id,
                "workspace_id": context.workspace_id,
                "created_at": isoformat_utc(utcnow()),
            },
        )
        return success_result(RefundRow.model_validate(refund))

    async def delete_refund(
        context: WorkflowContext, input: RefundPaymentInput, refund: RefundRow
    ) -> None:
        await store.delete("payment_refunds", refund.id)

    async def mark_payment_refunded(
        context: WorkflowContext, input: RefundPaymentInput, results: Mapping[str, Any]
    ) -> ServiceResult[PaymentRefundMark]:
        payment: PaymentSnapshot = results["validate_payment"]
        refunded = round(payment.refunded_amount + input.refund_amount, 2)
        status = "refunded" if refunded >= payment.amount else "partially_refunded"
        await store.update(
            "payments",
            payment.id,
            {"refunded_amount": refunded, "status": status, "updated_at": isoformat_utc(utcnow())},
        )
        return success_result(
            PaymentRefundMark(
                previous_status=payment.status,
                previous_refunded_amount=payment.refunded_amount,
                new_status=status,
            )
        )

    async def unmark_payment_refunded(
        context: WorkflowContext, input: RefundPaymentInput, mark: PaymentRefundMark
    ) -> None:
        await store.update(
            "payments",
            input.payment_id,
            {"status": mark.previous_status, "refunded_amount": mark.previous_refunded_amount},
        )

    async def update_bill(
        context: WorkflowContext, input: RefundPaymentInput, results: Mapping[str, Any]
    ) -> ServiceResult[Optional[BillUpdate]]:
        payment: PaymentSnapshot = results["validate_payment"]
        bill = await store.get("bills", payment.bill_id) if payment.bill_id else None
        if bill is None:
            return success_result(None)
        snapshot = BillSnapshot.model_validate(bill)
        paid = max(round(snapshot.paid_amount - input.refund_amount, 2), 0)
        balance = round(snapshot.total_amount - paid, 2)
        if paid <= 0:
            status = "pending"
        elif balance > 0:
            status = "partial"
        else:
            status = snapshot.status
        await store.update(
            "bills",
            snapshot.id,
            {
                "paid_amount": paid,
                "balance_due": balance,
                "status": status,
                "updated_at": isoformat_utc(utcnow()),
            },
        )
        return success_result(
            BillUpdate(
                bill_id=snapshot.id,
                previous_status=snapshot.status,
                previous_paid_amount=snapshot.paid_amount,
                previous_balance_due=snapshot.balance_due,
                new_status=status,
                new_paid_amount=paid,
                new_balance=balance,
            )
        )

    async def restore_bill(
        context: WorkflowContext, input: RefundPaymentInput, update: Optional[BillUpdate]
    ) -> None:
        if update is not None:
            await _restore_bill(store, update)

    def audit_events(
        context: WorkflowContext, input: RefundPaymentInput, results: RefundPaymentResults
    ) -> list[AuditEvent]:
        mark = results.mark_payment_refunded
        return [
            create_audit_event(
                EntityType.PAYMENT,
                input.payment_id,
                AuditAction.UPDATE,
                actor_id=context.actor_id,
                actor_role=context.actor_role,
                workspace_id=context.workspace_id,
                before={"status": mark.previous_status},
                after={
                    "status": mark.new_status,
                    "refund_amount": input.refund_amount,
                    "refund_reason": input.refund_reason,
                    "refund_id": results.create_refund.id,
                },
                metadata={"action": "refund", "workflow_id": context.workflow_id},
            )
        ]

    def build_output(results: RefundPaymentResults) -> RefundPaymentOutput:
        return RefundPaymentOutput(
            refund_id=results.create_refund.id,
            original_payment_id=results.validate_payment.id,
            bill_updated=results.update_bill is not None,
        )

    return WorkflowDefinition(
        name=PAYMENT_REFUND,
        steps=[
            StepDefinition(
                "validate_payment", validate_payment, no_rollback_reason="read-only lookup"
            ),
            StepDefinition("create_refund", create_refund, rollback=delete_refund),
            StepDefinition(
                "mark_payment_refunded",
                mark_payment_refunded,
                rollback=unmark_payment_refunded,
            ),
            StepDefinition("update_bill", update_bill, rollback=restore_bill, optional=True),
        ],
        audit_events=audit_events,
        build_output=build_output,
        results_type=RefundPaymentResults,
        output_type=RefundPaymentOutput,
    )
