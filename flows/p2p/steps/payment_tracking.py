"""Step 8: track payment of the submitted invoice.

Gated on an external party: until the payment completes the flow waits for a
``payment_status_update`` webhook.
"""

from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from flows.p2p.steps.base import StepContext, StepHandler, connector_failure
from flows.p2p.types import (
    P2PFlowInstance,
    P2PPaymentData,
    P2PStepConfig,
    P2PStepResult,
    P2PStepType,
    P2PVendorInvoiceData,
    PaymentMethod,
    PaymentStatus,
    POStatus,
    VendorInvoiceStatus,
)
from core.observability import get_logger

logger = get_logger(__name__)

PAYMENT_STATUS_ENDPOINT = "get_payment_status"

PAYABLE_INVOICE_STATUSES = {
    VendorInvoiceStatus.SUBMITTED,
    VendorInvoiceStatus.APPROVED,
    VendorInvoiceStatus.PAID,
}
PAYMENT_STATUS_ALIASES = {"paid": "completed"}

WAITING_PAYMENT_STATUSES = {PaymentStatus.PENDING, PaymentStatus.SCHEDULED, PaymentStatus.PROCESSING}

NON_RETRYABLE_CODES = {"NO_INVOICE_DATA", "INVALID_INVOICE_STATUS"}
MAX_ATTEMPTS = 5


def new_payment(invoice: P2PVendorInvoiceData, context: StepContext) -> P2PPaymentData:
    amount_due = invoice.amount_due if invoice.amount_due > 0 else invoice.total - invoice.amount_paid
    scheduled = invoice.due_date or context.clock() + timedelta(days=context.settings.payment_terms_days)
    return P2PPaymentData(
        payment_id=f"PAY-{invoice.invoice_number or invoice.invoice_id}",
        invoice_id=invoice.invoice_id,
        status=PaymentStatus.PENDING,
        method=PaymentMethod.ACH,
        amount=amount_due,
        currency=invoice.currency,
        scheduled_date=scheduled,
    )


def apply_payment_update(payment: P2PPaymentData, data: Dict[str, Any]) -> None:
    """Copy known fields of a remote payment record onto ``payment``."""
    status = data.get("status")
    if status:
        try:
            payment.status = PaymentStatus(PAYMENT_STATUS_ALIASES.get(status, status))
        except ValueError:
            logger.warning(f"Ignoring unknown payment status: {status}")
    for key in ("transaction_id", "bank_reference", "error_code", "error_message", "external_payment_id"):
        if data.get(key):
            setattr(payment, key, str(data[key]))
    if data.get("completed_at"):
        payment.completed_at = P2PPaymentData.model_validate(
            {"payment_id": payment.payment_id, "completed_at": data["completed_at"]}
        ).completed_at


class PaymentTrackingStep(StepHandler):
    step_type = P2PStepType.PAYMENT_TRACKING

    def can_retry(self, error_code: str, attempt: int) -> Optional[bool]:
        if error_code in NON_RETRYABLE_CODES:
            return False
        return attempt < MAX_ATTEMPTS

    async def run(self, flow: P2PFlowInstance, step_config: P2PStepConfig, context: StepContext) -> P2PStepResult:
        invoice = flow.invoice_data
        if invoice is None:
            return P2PStepResult.fail("No invoice data for payment tracking", "NO_INVOICE_DATA")
        if invoice.status not in PAYABLE_INVOICE_STATUSES:
            return P2PStepResult.fail(
                f"Invoice status {invoice.status.value} is not payable",
                "INVALID_INVOICE_STATUS",
            )

        if flow.payment_data is None:
            flow.payment_data = new_payment(invoice, context)
        payment = flow.payment_data

        if context.features.enable_auto_payment and payment.status == PaymentStatus.PENDING:
            payment.status = PaymentStatus.SCHEDULED

        connector = context.connector_for(PAYMENT_STATUS_ENDPOINT)
        if connector is not None:
            result = await connector.call(
                PAYMENT_STATUS_ENDPOINT,
                {
                    "payment_id": payment.payment_id,
                    "external_payment_id": payment.external_payment_id,
                    "invoice_id": invoice.invoice_id,
                },
                correlation_id=context.correlation_id,
            )
            if not result.success:
                return connector_failure(result, "Payment status lookup")
            if isinstance(result.data, dict):
                apply_payment_update(payment, result.data)
        if payment.external_payment_id:
            flow.external_payment_id = payment.external_payment_id

        output = {
            "payment_id": payment.payment_id,
            "status": payment.status.value,
            "amount": str(payment.amount),
        }

        if payment.status == PaymentStatus.COMPLETED:
            payment.completed_at = payment.completed_at or context.clock()
            invoice.status = VendorInvoiceStatus.PAID
            invoice.amount_paid = invoice.total
            invoice.amount_due = Decimal("0")
            flow.po_data.status = POStatus.PAID
            output["completed_at"] = payment.completed_at.isoformat()
            return P2PStepResult.ok(output, next_step=P2PStepType.FLOW_COMPLETION)

        if payment.status in WAITING_PAYMENT_STATUSES:
            output["message"] = "Waiting for payment to be processed"
            return P2PStepResult.ok(output)

        code = "PAYMENT_CANCELLED" if payment.status == PaymentStatus.CANCELLED else "PAYMENT_FAILED"
        message = payment.error_message or f"Payment {payment.status.value}"
        return P2PStepResult.fail(message, code, retryable=False, output=output)
