"""Built-in workflow definitions."""

from .billing import (
    BILL_GENERATE,
    BillGenerateInput,
    BillGenerateOutput,
    BillLineItem,
    build_bill_generate_workflow,
)
from .exit import (
    COMPLETE_EXIT,
    EXIT_CLEARANCE,
    CompleteExitInput,
    CompleteExitOutput,
    ExitClearanceInput,
    ExitClearanceOutput,
    ExitDeduction,
    build_complete_exit_workflow,
    build_exit_clearance_workflow,
)
from .payment import (
    PAYMENT_RECORD,
    PAYMENT_REFUND,
    PaymentRecordInput,
    PaymentRecordOutput,
    RefundPaymentInput,
    RefundPaymentOutput,
    build_payment_record_workflow,
    build_payment_refund_workflow,
)
from .tenant import (
    TENANT_CREATE,
    TenantCreateInput,
    TenantCreateOutput,
    build_tenant_create_workflow,
)

__all__ = [
    "BILL_GENERATE",
    "BillGenerateInput",
    "BillGenerateOutput",
    "BillLineItem",
    "COMPLETE_EXIT",
    "CompleteExitInput",
    "CompleteExitOutput",
    "EXIT_CLEARANCE",
    "ExitClearanceInput",
    "ExitClearanceOutput",
    "ExitDeduction",
    "PAYMENT_RECORD",
    "PAYMENT_REFUND",
    "PaymentRecordInput",
    "PaymentRecordOutput",
    "RefundPaymentInput",
    "RefundPaymentOutput",
    "TENANT_CREATE",
    "TenantCreateInput",
    "TenantCreateOutput",
    "build_bill_generate_workflow",
    "build_complete_exit_workflow",
    "build_exit_clearance_workflow",
    "build_payment_record_workflow",
    "build_payment_refund_workflow",
    "build_tenant_create_workflow",
]
