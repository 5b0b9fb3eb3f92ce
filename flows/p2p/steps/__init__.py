"""P2P step handlers, one per step type."""

from typing import Dict

from flows.p2p.steps.base import StepConnector, StepContext, StepHandler, connector_failure
from flows.p2p.steps.po_receipt import POReceiptStep
from flows.p2p.steps.po_validation import POValidationStep, validate_purchase_order
from flows.p2p.steps.po_acknowledgment import POAcknowledgmentStep
from flows.p2p.steps.goods_receipt import GoodsReceiptStep
from flows.p2p.steps.invoice_creation import InvoiceCreationStep
from flows.p2p.steps.three_way_match import ThreeWayMatchStep, perform_match
from flows.p2p.steps.invoice_submission import InvoiceSubmissionStep
from flows.p2p.steps.payment_tracking import PaymentTrackingStep
from flows.p2p.steps.flow_completion import FlowCompletionStep
from flows.p2p.types import P2PStepType


def default_step_handlers() -> Dict[P2PStepType, StepHandler]:
    handlers = [
        POReceiptStep(),
        POValidationStep(),
        POAcknowledgmentStep(),
        GoodsReceiptStep(),
        InvoiceCreationStep(),
        ThreeWayMatchStep(),
        InvoiceSubmissionStep(),
        PaymentTrackingStep(),
        FlowCompletionStep(),
    ]
    return {handler.step_type: handler for handler in handlers}


__all__ = [
    "StepConnector",
    "StepContext",
    "StepHandler",
    "connector_failure",
    "POReceiptStep",
    "POValidationStep",
    "validate_purchase_order",
    "POAcknowledgmentStep",
    "GoodsReceiptStep",
    "InvoiceCreationStep",
    "ThreeWayMatchStep",
    "perform_match",
    "InvoiceSubmissionStep",
    "PaymentTrackingStep",
    "FlowCompletionStep",
    "default_step_handlers",
]
