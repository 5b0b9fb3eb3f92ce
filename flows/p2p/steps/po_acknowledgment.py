"""Step 3: acknowledge the purchase order to the vendor."""

from flows.p2p.steps.base import StepContext, StepHandler, connector_failure
from flows.p2p.types import P2PFlowInstance, P2PStepConfig, P2PStepResult, P2PStepType, POStatus

ACKNOWLEDGE_ENDPOINT = "acknowledge_po"


class POAcknowledgmentStep(StepHandler):
    step_type = P2PStepType.PO_ACKNOWLEDGMENT

    async def run(self, flow: P2PFlowInstance, step_config: P2PStepConfig, context: StepContext) -> P2PStepResult:
        if not context.features.enable_auto_acknowledgment:
            return P2PStepResult.ok({"acknowledged": False, "reason": "Auto-acknowledgment disabled"})

        po = flow.po_data
        now = context.clock()
        acknowledgment_number = f"ACK-{po.po_number}-{int(now.timestamp() * 1000)}"

        connector = context.connector_for(ACKNOWLEDGE_ENDPOINT)
        if connector is not None:
            result = await connector.call(
                ACKNOWLEDGE_ENDPOINT,
                {"po_id": po.po_id, "po_number": po.po_number, "vendor_id": po.vendor_id},
                correlation_id=context.correlation_id,
            )
            if not result.success:
                return connector_failure(result, "PO acknowledgment")
            if isinstance(result.data, dict) and result.data.get("acknowledgment_number"):
                acknowledgment_number = str(result.data["acknowledgment_number"])

        po.status = POStatus.ACKNOWLEDGED
        flow.metadata["acknowledgment_number"] = acknowledgment_number
        flow.metadata["acknowledged_at"] = now.isoformat()

        return P2PStepResult.ok({
            "acknowledged": True,
            "acknowledgment_number": acknowledgment_number,
            "acknowledged_at": now.isoformat(),
        })
