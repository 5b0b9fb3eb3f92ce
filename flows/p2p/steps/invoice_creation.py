"""Step 5: obtain the vendor invoice.

Gated on an external party: without an invoice the flow waits for an
``invoice_created`` webhook.
"""

from pydantic import ValidationError

from flows.p2p.steps.base import StepContext, StepHandler, connector_failure
from flows.p2p.types import (
    P2PFlowInstance,
    P2PStepConfig,
    P2PStepResult,
    P2PStepType,
    P2PVendorInvoiceData,
)
from core.observability import get_logger

logger = get_logger(__name__)

INVOICE_ENDPOINT = "get_invoice"


class InvoiceCreationStep(StepHandler):
    step_type = P2PStepType.INVOICE_CREATION

    async def run(self, flow: P2PFlowInstance, step_config: P2PStepConfig, context: StepContext) -> P2PStepResult:
        invoice = flow.invoice_data

        if invoice is None:
            connector = context.connector_for(INVOICE_ENDPOINT)
            if connector is not None:
                result = await connector.call(
                    INVOICE_ENDPOINT,
                    {"po_id": flow.po_data.po_id, "po_number": flow.po_data.po_number},
                    correlation_id=context.correlation_id,
                )
                if not result.success:
                    return connector_failure(result, "Invoice lookup")
                if result.data:
                    try:
                        invoice = P2PVendorInvoiceData.model_validate(result.data)
                    except ValidationError as e:
                        logger.warning(f"Ignoring malformed invoice for flow {flow.id}: {e}")

        if invoice is None:
            return P2PStepResult.ok({"status": "waiting", "message": "Waiting for vendor invoice"})

        flow.invoice_data = invoice
        if invoice.external_invoice_id:
            flow.external_invoice_id = invoice.external_invoice_id

        return P2PStepResult.ok(
            {
                "invoice_id": invoice.invoice_id,
                "invoice_number": invoice.invoice_number,
                "total": str(invoice.total),
            },
            next_step=P2PStepType.THREE_WAY_MATCH,
        )
