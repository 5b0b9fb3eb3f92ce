"""Step 2: structural and arithmetic checks on the purchase order."""

from decimal import Decimal
from typing import List, Optional, Tuple

from flows.p2p.steps.base import StepContext, StepHandler
from flows.p2p.types import (
    P2PFlowInstance,
    P2PPurchaseOrderData,
    P2PStepConfig,
    P2PStepResult,
    P2PStepType,
)
from core.observability import get_logger

logger = get_logger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")


def validate_purchase_order(po: P2PPurchaseOrderData) -> Tuple[List[str], List[str]]:
    """Return (errors, warnings) for a purchase order."""
    errors = []
    warnings = []

    if not po.po_number:
        errors.append("PO number is required")
    if not po.vendor_id:
        errors.append("Vendor ID is required")
    if not po.items:
        errors.append("PO must have at least one line item")
    if not po.currency or len(po.currency) != 3 or not po.currency.isalpha():
        errors.append(f"Invalid currency code: {po.currency!r}")
    if po.total <= 0:
        errors.append("PO total must be positive")

    for item in po.items:
        if item.quantity <= 0:
            errors.append(f"Line {item.line_number}: quantity must be positive")
        if item.unit_price < 0:
            errors.append(f"Line {item.line_number}: unit price cannot be negative")

    if po.items:
        line_sum = sum((item.total for item in po.items), Decimal("0"))
        if abs(line_sum - po.subtotal) > AMOUNT_TOLERANCE:
            warnings.append(f"Line totals ({line_sum}) do not match subtotal ({po.subtotal})")

    computed_total = po.subtotal + po.tax + po.shipping
    if abs(computed_total - po.total) > AMOUNT_TOLERANCE:
        warnings.append(f"Subtotal + tax + shipping ({computed_total}) does not match total ({po.total})")

    if _before(po.expected_delivery_date, po.po_date):
        warnings.append("Expected delivery date is before PO date")

    return errors, warnings


def _before(first, second) -> bool:
    if first is None or second is None:
        return False
    try:
        return first < second
    except TypeError:
        # naive vs aware datetimes
        return first.replace(tzinfo=None) < second.replace(tzinfo=None)


class POValidationStep(StepHandler):
    step_type = P2PStepType.PO_VALIDATION

    def can_retry(self, error_code: str, attempt: int) -> Optional[bool]:
        return False

    async def run(self, flow: P2PFlowInstance, step_config: P2PStepConfig, context: StepContext) -> P2PStepResult:
        errors, warnings = validate_purchase_order(flow.po_data)

        for warning in warnings:
            logger.warning(f"PO {flow.po_number}: {warning}", extra_fields={"flow_id": flow.id})

        if errors:
            return P2PStepResult.fail(
                f"PO validation failed: {'; '.join(errors)}",
                "PO_VALIDATION_FAILED",
                retryable=False,
                output={"errors": errors, "warnings": warnings},
            )

        return P2PStepResult.ok({"valid": True, "warnings": warnings})
