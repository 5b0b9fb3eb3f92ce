"""Step 7: submit the matched invoice for payment."""

from typing import Optional

from flows.p2p.steps.base import StepContext, StepHandler, connector_failure
from flows.p2p.types import (
    P2PFlowInstance,
    P2PStepConfig,
    P2PStepResult,
    P2PStepType,
    POStatus,
    ThreeWayMatchResult,
    VendorInvoiceStatus,
)

SUBMIT_ENDPOINT = "submit_invoice"

NON_RETRYABLE_CODES = {"NO_INVOICE_DATA", "MATCH_NOT_APPROVED"}
MAX_ATTEMPTS = 3


class InvoiceSubmissionStep(StepHandler):
    step_type = P2PStepType.INVOICE_SUBMISSION

    def can_retry(self, error_code: str, attempt: int) -> Optional[bool]:
        if error_code in NON_RETRYABLE_CODES:
            return False
        return attempt < MAX_ATTEMPTS

    async def run(self, flow: P2PFlowInstance, step_config: P2PStepConfig, context: StepContext) -> P2PStepResult:
        invoice = flow.invoice_data
        if invoice is None:
            return P2PStepResult.fail("No invoice data to submit", "NO_INVOICE_DATA")

        match = flow.match_data
        if context.features.enable_three_way_match and match is None:
            return P2PStepResult.fail("Three-way match has not been performed", "NO_MATCH_DATA", retryable=True)

        if match is not None and match.status == ThreeWayMatchResult.NOT_MATCHED and not match.approved_by:
            return P2PStepResult.fail(
                "Invoice does not match and has not been approved",
                "MATCH_NOT_APPROVED",
                retryable=False,
                requires_approval=True,
            )

        connector = context.connector_for(SUBMIT_ENDPOINT)
        if connector is not None:
            result = await connector.call(
                SUBMIT_ENDPOINT,
                {
                    "invoice": invoice.model_dump(mode="json"),
                    "po_number": flow.po_data.po_number,
                    "match_id": match.match_id if match else None,
                },
                correlation_id=context.correlation_id,
            )
            if not result.success:
                return connector_failure(result, "Invoice submission")
            if isinstance(result.data, dict):
                external_id = result.data.get("external_invoice_id") or result.data.get("id")
                if external_id:
                    invoice.external_invoice_id = str(external_id)
                    flow.external_invoice_id = str(external_id)

        now = context.clock()
        invoice.status = VendorInvoiceStatus.SUBMITTED
        invoice.submitted_at = now
        flow.po_data.status = POStatus.INVOICED

        return P2PStepResult.ok({
            "invoice_number": invoice.invoice_number,
            "submitted_at": now.isoformat(),
            "external_invoice_id": invoice.external_invoice_id,
        })
