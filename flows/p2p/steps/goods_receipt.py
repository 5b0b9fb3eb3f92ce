"""Step 4: record goods received against the purchase order.

Gated on an external party: without a complete receipt the flow waits for a
``goods_receipt_update`` webhook.
"""

from decimal import Decimal
from typing import Optional, Tuple

from pydantic import ValidationError

from flows.p2p.steps.base import StepContext, StepHandler, connector_failure
from flows.p2p.types import (
    GoodsReceiptStatus,
    P2PFlowInstance,
    P2PGoodsReceiptData,
    P2PGoodsReceiptItem,
    P2PStepConfig,
    P2PStepResult,
    P2PStepType,
    POStatus,
)
from core.observability import get_logger

logger = get_logger(__name__)

GOODS_RECEIPT_ENDPOINT = "get_goods_receipt"


def apply_receipt(flow: P2PFlowInstance, receipt: P2PGoodsReceiptData) -> bool:
    """Update PO line received quantities from a receipt.

    Returns:
        True if every PO line is fully received
    """
    po = flow.po_data
    for item in po.items:
        lines = [r for r in receipt.items if r.po_line_number == item.line_number]
        if lines:
            item.quantity_received = sum(
                (r.quantity_received - r.quantity_rejected for r in lines), Decimal("0")
            )

    fully_received = bool(po.items) and all(i.quantity_received >= i.quantity for i in po.items)
    po.status = POStatus.FULLY_RECEIVED if fully_received else POStatus.PARTIALLY_RECEIVED
    return fully_received


def auto_receipt(flow: P2PFlowInstance, context: StepContext) -> P2PGoodsReceiptData:
    """A receipt that accepts every PO line in full."""
    po = flow.po_data
    now = context.clock()
    return P2PGoodsReceiptData(
        receipt_id=f"GR-{po.po_number}-{int(now.timestamp() * 1000)}",
        po_id=po.po_id,
        po_number=po.po_number,
        status=GoodsReceiptStatus.COMPLETE,
        received_at=now,
        received_by="system",
        items=[
            P2PGoodsReceiptItem(
                line_number=item.line_number,
                po_line_number=item.line_number,
                sku=item.sku,
                description=item.description,
                quantity_ordered=item.quantity,
                quantity_received=item.quantity,
            )
            for item in po.items
        ],
        notes="Auto-generated goods receipt",
    )


class GoodsReceiptStep(StepHandler):
    step_type = P2PStepType.GOODS_RECEIPT

    async def run(self, flow: P2PFlowInstance, step_config: P2PStepConfig, context: StepContext) -> P2PStepResult:
        receipt, source, failure = await self._find_receipt(flow, context)
        if failure is not None:
            return failure

        if receipt is None:
            return P2PStepResult.ok({"status": "waiting", "message": "Waiting for goods receipt"})

        flow.goods_receipt_data = receipt
        complete = apply_receipt(flow, receipt)

        output = {
            "receipt_id": receipt.receipt_id,
            "source": source,
            "complete": complete,
            "po_status": flow.po_data.status.value,
        }
        if not complete:
            output["message"] = "Partial receipt, waiting for remaining goods"
            return P2PStepResult.ok(output)

        receipt.status = GoodsReceiptStatus.COMPLETE
        return P2PStepResult.ok(output, next_step=P2PStepType.INVOICE_CREATION)

    async def _find_receipt(
        self,
        flow: P2PFlowInstance,
        context: StepContext,
    ) -> Tuple[Optional[P2PGoodsReceiptData], Optional[str], Optional[P2PStepResult]]:
        if flow.goods_receipt_data is not None:
            return flow.goods_receipt_data, "existing", None

        connector = context.connector_for(GOODS_RECEIPT_ENDPOINT)
        if connector is not None:
            result = await connector.call(
                GOODS_RECEIPT_ENDPOINT,
                {"po_id": flow.po_data.po_id, "po_number": flow.po_data.po_number},
                correlation_id=context.correlation_id,
            )
            if not result.success:
                return None, None, connector_failure(result, "Goods receipt lookup")
            if result.data:
                try:
                    return P2PGoodsReceiptData.model_validate(result.data), "connector", None
                except ValidationError as e:
                    logger.warning(f"Ignoring malformed goods receipt for flow {flow.id}: {e}")

        if context.features.enable_auto_goods_receipt:
            return auto_receipt(flow, context), "auto", None

        return None, None, None
