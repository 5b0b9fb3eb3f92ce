"""Step 6: three-way match of purchase order, goods receipt and invoice.

For every PO line the invoiced quantity is compared with the received
quantity (the ordered quantity when no receipt exists) and the invoice unit
price with the PO unit price, using the tenant's match tolerances.

Any difference beyond the tolerance percentage is a discrepancy. Severity is
"error" when the difference percentage exceeds twice the tolerance,
"warning" otherwise; a price difference whose extended amount stays within
the absolute amount tolerance is always a warning. Missing invoice or
receipt lines are always errors. Any error, or an overall NOT_MATCHED
status, requires approval.
"""

import uuid
from decimal import Decimal
from typing import List, Optional, Tuple

from flows.p2p.steps.base import StepContext, StepHandler
from flows.p2p.types import (
    MatchTolerances,
    P2PFlowInstance,
    P2PGoodsReceiptData,
    P2PMatchData,
    P2PMatchDiscrepancy,
    P2PMatchItem,
    P2PPurchaseOrderItem,
    P2PStepConfig,
    P2PStepResult,
    P2PStepType,
    P2PVendorInvoiceData,
    ThreeWayMatchResult,
)

HUNDRED = Decimal("100")
ZERO = Decimal("0")
CENT = Decimal("0.01")


def difference_percent(expected: Decimal, actual: Decimal) -> Decimal:
    """Absolute difference as a percentage of ``expected``."""
    difference = abs(actual - expected)
    if expected == 0:
        return ZERO if difference == 0 else HUNDRED
    return difference / abs(expected) * HUNDRED


def _severity(percent: Decimal, tolerance: Decimal) -> str:
    return "error" if percent > tolerance * 2 else "warning"


def _invoice_lines(invoice: P2PVendorInvoiceData, po_item: P2PPurchaseOrderItem):
    return [
        line for line in invoice.items
        if line.po_line_number == po_item.line_number
        or (line.po_line_number is None and line.sku and line.sku == po_item.sku)
    ]


def _received_quantity(
    receipt: Optional[P2PGoodsReceiptData],
    po_item: P2PPurchaseOrderItem,
) -> Optional[Decimal]:
    """Accepted quantity for a PO line, or None if the receipt lacks the line."""
    if receipt is None:
        return po_item.quantity
    lines = [r for r in receipt.items if r.po_line_number == po_item.line_number]
    if not lines:
        return None
    return sum((r.quantity_received - r.quantity_rejected for r in lines), ZERO)


def match_line(
    po_item: P2PPurchaseOrderItem,
    invoice: P2PVendorInvoiceData,
    receipt: Optional[P2PGoodsReceiptData],
    tolerances: MatchTolerances,
) -> Tuple[P2PMatchItem, List[P2PMatchDiscrepancy]]:
    """Match one PO line and return its match row and discrepancies."""
    discrepancies = []
    item = P2PMatchItem(
        line_number=po_item.line_number,
        sku=po_item.sku,
        po_quantity=po_item.quantity,
        po_unit_price=po_item.unit_price,
    )

    invoice_lines = _invoice_lines(invoice, po_item)
    if not invoice_lines:
        discrepancies.append(P2PMatchDiscrepancy(
            line_number=po_item.line_number,
            sku=po_item.sku,
            type="missing_invoice",
            severity="error",
            expected=po_item.quantity,
            actual=ZERO,
            difference=-po_item.quantity,
            difference_percent=HUNDRED,
            message=f"Line {po_item.line_number} ({po_item.sku}) is not on the invoice",
        ))
        return item, discrepancies

    invoiced_quantity = sum((line.quantity for line in invoice_lines), ZERO)
    invoice_unit_price = invoice_lines[0].unit_price
    item.invoiced_quantity = invoiced_quantity
    item.invoice_unit_price = invoice_unit_price

    received = _received_quantity(receipt, po_item)
    if received is None:
        discrepancies.append(P2PMatchDiscrepancy(
            line_number=po_item.line_number,
            sku=po_item.sku,
            type="missing_receipt",
            severity="error",
            expected=invoiced_quantity,
            actual=ZERO,
            difference=-invoiced_quantity,
            difference_percent=HUNDRED,
            message=f"Line {po_item.line_number} ({po_item.sku}) has no goods receipt",
        ))
    else:
        item.received_quantity = received
        item.quantity_matched = invoiced_quantity == received
        percent = difference_percent(received, invoiced_quantity)
        if percent > tolerances.quantity_tolerance_percent:
            discrepancies.append(P2PMatchDiscrepancy(
                line_number=po_item.line_number,
                sku=po_item.sku,
                type="quantity",
                severity=_severity(percent, tolerances.quantity_tolerance_percent),
                expected=received,
                actual=invoiced_quantity,
                difference=invoiced_quantity - received,
                difference_percent=percent.quantize(CENT),
                message=(
                    f"Line {po_item.line_number}: invoiced quantity {invoiced_quantity} "
                    f"differs from received {received} by {percent.quantize(CENT)}%"
                ),
            ))

    item.price_matched = invoice_unit_price == po_item.unit_price
    percent = difference_percent(po_item.unit_price, invoice_unit_price)
    extended_difference = abs(invoice_unit_price - po_item.unit_price) * invoiced_quantity
    if percent > tolerances.price_tolerance_percent:
        if extended_difference <= tolerances.amount_tolerance_absolute:
            severity = "warning"
        else:
            severity = _severity(percent, tolerances.price_tolerance_percent)
        discrepancies.append(P2PMatchDiscrepancy(
            line_number=po_item.line_number,
            sku=po_item.sku,
            type="price",
            severity=severity,
            expected=po_item.unit_price,
            actual=invoice_unit_price,
            difference=invoice_unit_price - po_item.unit_price,
            difference_percent=percent.quantize(CENT),
            message=(
                f"Line {po_item.line_number}: invoice unit price {invoice_unit_price} "
                f"differs from PO price {po_item.unit_price} by {percent.quantize(CENT)}%"
            ),
        ))

    item.within_tolerance = not discrepancies
    return item, discrepancies


def overall_status(items: List[P2PMatchItem], discrepancies: List[P2PMatchDiscrepancy]) -> ThreeWayMatchResult:
    if not discrepancies:
        return ThreeWayMatchResult.MATCHED
    kinds = {d.type for d in discrepancies}
    if kinds == {"quantity"}:
        return ThreeWayMatchResult.QUANTITY_MISMATCH
    if kinds == {"price"}:
        return ThreeWayMatchResult.PRICE_MISMATCH
    if any(item.within_tolerance for item in items):
        return ThreeWayMatchResult.PARTIAL_MATCH
    return ThreeWayMatchResult.NOT_MATCHED


def perform_match(flow: P2PFlowInstance, tolerances: MatchTolerances, match_id: str) -> P2PMatchData:
    invoice = flow.invoice_data
    receipt = flow.goods_receipt_data

    items = []
    discrepancies = []
    for po_item in flow.po_data.items:
        item, found = match_line(po_item, invoice, receipt, tolerances)
        items.append(item)
        discrepancies.extend(found)

    status = overall_status(items, discrepancies)
    requires_approval = status == ThreeWayMatchResult.NOT_MATCHED or any(
        d.severity == "error" for d in discrepancies
    )
    return P2PMatchData(
        match_id=match_id,
        po_id=flow.po_data.po_id,
        receipt_id=receipt.receipt_id if receipt else None,
        invoice_id=invoice.invoice_id,
        status=status,
        items=items,
        discrepancies=discrepancies,
        requires_approval=requires_approval,
    )


class ThreeWayMatchStep(StepHandler):
    step_type = P2PStepType.THREE_WAY_MATCH

    async def run(self, flow: P2PFlowInstance, step_config: P2PStepConfig, context: StepContext) -> P2PStepResult:
        if not context.features.enable_three_way_match:
            return P2PStepResult.ok({"skipped": True, "reason": "Three-way match disabled"})

        invoice = flow.invoice_data
        if invoice is None:
            return P2PStepResult.fail("No invoice data available for matching", "NO_INVOICE_DATA")

        existing = flow.match_data
        if existing is not None and existing.approved_by and existing.invoice_id == invoice.invoice_id:
            return P2PStepResult.ok({
                "match_id": existing.match_id,
                "status": existing.status.value,
                "discrepancy_count": len(existing.discrepancies),
                "requires_approval": False,
                "approved_by": existing.approved_by,
            })

        match = perform_match(flow, context.match_tolerances, f"MATCH-{uuid.uuid4().hex[:12]}")
        match.matched_at = context.clock()
        flow.match_data = match

        needs_approval = match.requires_approval and context.features.require_approval_for_mismatch
        return P2PStepResult.ok(
            {
                "match_id": match.match_id,
                "status": match.status.value,
                "discrepancy_count": len(match.discrepancies),
                "requires_approval": needs_approval,
            },
            requires_approval=needs_approval,
        )
