"""Step 1: take ownership of the incoming purchase order."""

from flows.p2p.steps.base import StepContext, StepHandler
from flows.p2p.types import P2PFlowInstance, P2PStepConfig, P2PStepResult, P2PStepType, POStatus


class POReceiptStep(StepHandler):
    step_type = P2PStepType.PO_RECEIPT

    async def run(self, flow: P2PFlowInstance, step_config: P2PStepConfig, context: StepContext) -> P2PStepResult:
        po = flow.po_data
        if po is None or not po.po_id:
            return P2PStepResult.fail("No purchase order data", "NO_PO_DATA")

        po.status = POStatus.RECEIVED
        return P2PStepResult.ok({
            "po_number": po.po_number,
            "po_id": po.po_id,
            "vendor_id": po.vendor_id,
            "item_count": len(po.items),
            "total": str(po.total),
        })
