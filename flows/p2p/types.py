"""Procure-to-Pay (P2P) flow data models.

Domain payloads (purchase order, goods receipt, vendor invoice, match,
payment), per-tenant flow configuration and the flow instance aggregate.
Money and quantities are Decimal. Models accept snake_case or camelCase keys
so payloads from external systems can be validated directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic.functional_validators import BeforeValidator
from typing_extensions import Annotated


def _parse_decimal(value):
    """Parse decimal from numbers or strings (commas and $ allowed)."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        return Decimal(int(value))
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        s = value.strip().replace("$", "").replace(",", "")
        if s == "":
            return None
        return Decimal(s)
    return value


DecimalValue = Annotated[Decimal, BeforeValidator(_parse_decimal)]


class P2PModel(BaseModel):
    """Base model for P2P structures."""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


# =============================================================================
# Enums
# =============================================================================

class P2PFlowStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    WAITING_EXTERNAL = "waiting_external"
    WAITING_APPROVAL = "waiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({P2PFlowStatus.COMPLETED, P2PFlowStatus.FAILED, P2PFlowStatus.CANCELLED})


class P2PStepType(str, Enum):
    PO_RECEIPT = "po_receipt"
    PO_VALIDATION = "po_validation"
    PO_ACKNOWLEDGMENT = "po_acknowledgment"
    GOODS_RECEIPT = "goods_receipt"
    INVOICE_CREATION = "invoice_creation"
    THREE_WAY_MATCH = "three_way_match"
    INVOICE_SUBMISSION = "invoice_submission"
    PAYMENT_TRACKING = "payment_tracking"
    FLOW_COMPLETION = "flow_completion"


# Declared execution order
STEP_ORDER: List[P2PStepType] = list(P2PStepType)

# Steps that wait on an external party when they finish without a next step
EXTERNALLY_GATED_STEPS = frozenset({
    P2PStepType.GOODS_RECEIPT,
    P2PStepType.INVOICE_CREATION,
    P2PStepType.PAYMENT_TRACKING,
})


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    RETRYING = "retrying"


class POStatus(str, Enum):
    DRAFT = "draft"
    RECEIVED = "received"
    ACKNOWLEDGED = "acknowledged"
    PARTIALLY_RECEIVED = "partially_received"
    FULLY_RECEIVED = "fully_received"
    INVOICED = "invoiced"
    PAID = "paid"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class GoodsReceiptStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    COMPLETE = "complete"
    REJECTED = "rejected"
    RETURNED = "returned"


class ThreeWayMatchResult(str, Enum):
    MATCHED = "matched"
    QUANTITY_MISMATCH = "quantity_mismatch"
    PRICE_MISMATCH = "price_mismatch"
    PARTIAL_MATCH = "partial_match"
    NOT_MATCHED = "not_matched"
    PENDING = "pending"


class VendorInvoiceStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"
    PARTIAL_PAID = "partial_paid"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    ACH = "ach"
    WIRE = "wire"
    CHECK = "check"
    VIRTUAL_CARD = "virtual_card"
    CREDIT_CARD = "credit_card"
    OTHER = "other"


# =============================================================================
# Configuration
# =============================================================================

class P2PFlowFeatures(P2PModel):
    enable_auto_acknowledgment: bool = True
    enable_auto_goods_receipt: bool = False
    enable_three_way_match: bool = True
    enable_auto_invoice_submission: bool = True
    enable_auto_payment: bool = False
    require_approval_for_mismatch: bool = True
    enable_edi_integration: bool = True
    enable_notifications: bool = True


class MatchTolerances(P2PModel):
    """Three-way match tolerances. Percentages are 0-100."""
    quantity_tolerance_percent: DecimalValue = Decimal("5")
    price_tolerance_percent: DecimalValue = Decimal("2")
    amount_tolerance_absolute: DecimalValue = Decimal("10")
    amount_tolerance_currency: str = "USD"


class RetryPolicyConfig(P2PModel):
    max_attempts: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0
    retryable_errors: Optional[List[str]] = None


ConditionOperator = Literal["eq", "ne", "gt", "gte", "lt", "lte", "in", "not_in", "notIn", "contains"]


class StepCondition(P2PModel):
    """Guard evaluated against a dotted field of the flow instance."""
    field: str
    operator: ConditionOperator
    value: Any = None


class P2PStepConfig(P2PModel):
    step_type: P2PStepType
    enabled: bool = True
    order: int = 0
    timeout: Optional[int] = None  # milliseconds
    retry_policy: Optional[RetryPolicyConfig] = None
    conditions: List[StepCondition] = Field(default_factory=list)
    connector_capability: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class P2PFlowSettings(P2PModel):
    default_timeout_ms: int = 30000
    max_concurrent_flows: int = 100
    polling_interval_ms: int = 60000
    payment_terms_days: int = 30
    max_flow_duration_ms: int = 7 * 24 * 60 * 60 * 1000
    dead_letter_after_attempts: int = 5


class P2PFlowConfig(P2PModel):
    """Per-tenant flow configuration."""
    tenant_id: str
    name: str = "Default P2P Flow"
    description: Optional[str] = "Standard Procure-to-Pay flow"
    enabled: bool = True

    erp_connector_id: Optional[str] = None
    ap_connector_id: Optional[str] = None
    banking_connector_id: Optional[str] = None

    features: P2PFlowFeatures = Field(default_factory=P2PFlowFeatures)
    steps: List[P2PStepConfig] = Field(default_factory=list)
    settings: P2PFlowSettings = Field(default_factory=P2PFlowSettings)
    match_tolerances: MatchTolerances = Field(default_factory=MatchTolerances)

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def get_step_config(self, step_type: P2PStepType) -> Optional[P2PStepConfig]:
        return next((s for s in self.steps if s.step_type == step_type), None)

    def ordered_steps(self) -> List[P2PStepConfig]:
        return sorted(self.steps, key=lambda s: s.order)


# =============================================================================
# Domain payloads
# =============================================================================

class P2PAddress(P2PModel):
    name: Optional[str] = None
    company: Optional[str] = None
    street1: str = ""
    street2: Optional[str] = None
    city: str = ""
    state: Optional[str] = None
    postal_code: str = ""
    country: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None


class P2PPurchaseOrderItem(P2PModel):
    line_number: int
    product_id: Optional[str] = None
    sku: str = ""
    description: str = ""
    quantity: DecimalValue = Decimal("0")
    quantity_received: DecimalValue = Decimal("0")
    unit_price: DecimalValue = Decimal("0")
    tax: DecimalValue = Decimal("0")
    total: DecimalValue = Decimal("0")
    uom: Optional[str] = None
    expected_delivery_date: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class P2PPurchaseOrderData(P2PModel):
    po_id: str
    po_number: str = ""
    external_po_number: Optional[str] = None
    status: POStatus = POStatus.DRAFT
    vendor_id: str = ""
    vendor_name: Optional[str] = None
    buyer_id: str = ""
    buyer_name: Optional[str] = None

    subtotal: DecimalValue = Decimal("0")
    tax: DecimalValue = Decimal("0")
    shipping: DecimalValue = Decimal("0")
    total: DecimalValue = Decimal("0")
    currency: str = "USD"

    ship_to_address: Optional[P2PAddress] = None
    bill_to_address: Optional[P2PAddress] = None
    items: List[P2PPurchaseOrderItem] = Field(default_factory=list)

    po_date: Optional[datetime] = None
    expected_delivery_date: Optional[datetime] = None
    payment_due_date: Optional[datetime] = None
    payment_terms: Optional[str] = None

    contract_id: Optional[str] = None
    requisition_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class P2PGoodsReceiptItem(P2PModel):
    line_number: int
    po_line_number: int
    sku: str = ""
    description: Optional[str] = None
    quantity_ordered: DecimalValue = Decimal("0")
    quantity_received: DecimalValue = Decimal("0")
    quantity_rejected: DecimalValue = Decimal("0")
    lot_number: Optional[str] = None
    serial_numbers: List[str] = Field(default_factory=list)
    condition_code: Optional[str] = None
    notes: Optional[str] = None


class P2PGoodsReceiptData(P2PModel):
    receipt_id: str
    external_receipt_id: Optional[str] = None
    po_id: str = ""
    po_number: str = ""
    status: GoodsReceiptStatus = GoodsReceiptStatus.PENDING
    received_at: Optional[datetime] = None
    received_by: Optional[str] = None
    warehouse_id: Optional[str] = None
    warehouse_name: Optional[str] = None
    items: List[P2PGoodsReceiptItem] = Field(default_factory=list)
    notes: Optional[str] = None


class P2PVendorInvoiceItem(P2PModel):
    line_number: int
    po_line_number: Optional[int] = None
    sku: Optional[str] = None
    description: str = ""
    quantity: DecimalValue = Decimal("0")
    unit_price: DecimalValue = Decimal("0")
    tax: DecimalValue = Decimal("0")
    total: DecimalValue = Decimal("0")


class P2PVendorInvoiceData(P2PModel):
    invoice_id: str
    external_invoice_id: Optional[str] = None
    invoice_number: str = ""
    status: VendorInvoiceStatus = VendorInvoiceStatus.PENDING
    vendor_id: str = ""
    vendor_name: Optional[str] = None
    po_id: str = ""
    po_number: str = ""
    receipt_id: Optional[str] = None
    invoice_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    subtotal: DecimalValue = Decimal("0")
    tax: DecimalValue = Decimal("0")
    shipping: DecimalValue = Decimal("0")
    total: DecimalValue = Decimal("0")
    currency: str = "USD"
    amount_paid: DecimalValue = Decimal("0")
    amount_due: DecimalValue = Decimal("0")
    payment_terms: Optional[str] = None
    items: List[P2PVendorInvoiceItem] = Field(default_factory=list)
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejection_reason: Optional[str] = None


class P2PMatchItem(P2PModel):
    line_number: int
    sku: str = ""
    po_quantity: DecimalValue = Decimal("0")
    received_quantity: DecimalValue = Decimal("0")
    invoiced_quantity: DecimalValue = Decimal("0")
    po_unit_price: DecimalValue = Decimal("0")
    invoice_unit_price: DecimalValue = Decimal("0")
    quantity_matched: bool = False
    price_matched: bool = False
    within_tolerance: bool = False


DiscrepancyType = Literal["quantity", "price", "missing_receipt", "missing_invoice"]
DiscrepancySeverity = Literal["warning", "error"]


class P2PMatchDiscrepancy(P2PModel):
    line_number: int
    sku: str = ""
    type: DiscrepancyType
    severity: DiscrepancySeverity
    expected: DecimalValue = Decimal("0")
    actual: DecimalValue = Decimal("0")
    difference: DecimalValue = Decimal("0")
    difference_percent: DecimalValue = Decimal("0")
    message: str = ""


class P2PMatchData(P2PModel):
    match_id: str
    po_id: str = ""
    receipt_id: Optional[str] = None
    invoice_id: Optional[str] = None
    status: ThreeWayMatchResult = ThreeWayMatchResult.PENDING
    matched_at: Optional[datetime] = None
    items: List[P2PMatchItem] = Field(default_factory=list)
    discrepancies: List[P2PMatchDiscrepancy] = Field(default_factory=list)
    requires_approval: bool = False
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    notes: Optional[str] = None


class P2PPaymentData(P2PModel):
    payment_id: str
    external_payment_id: Optional[str] = None
    invoice_id: str = ""
    status: PaymentStatus = PaymentStatus.PENDING
    method: PaymentMethod = PaymentMethod.ACH
    amount: DecimalValue = Decimal("0")
    currency: str = "USD"
    scheduled_date: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    transaction_id: Optional[str] = None
    bank_reference: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Flow instance
# =============================================================================

class P2PStepExecution(P2PModel):
    """Execution record of one step. Reused across retries of that step."""
    step_type: P2PStepType
    status: StepStatus = StepStatus.PENDING
    attempt: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    input: Optional[Dict[str, Any]] = None
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: Optional[bool] = None


class P2PFlowInstance(P2PModel):
    """The flow aggregate. Mutated only by the orchestrator."""
    id: str
    tenant_id: str
    config_id: str = "default"
    purchase_order_id: str
    po_number: str = ""
    status: P2PFlowStatus = P2PFlowStatus.PENDING
    current_step: Optional[P2PStepType] = None

    external_po_id: Optional[str] = None
    external_invoice_id: Optional[str] = None
    external_payment_id: Optional[str] = None

    steps: List[P2PStepExecution] = Field(default_factory=list)

    po_data: P2PPurchaseOrderData
    goods_receipt_data: Optional[P2PGoodsReceiptData] = None
    invoice_data: Optional[P2PVendorInvoiceData] = None
    match_data: Optional[P2PMatchData] = None
    payment_data: Optional[P2PPaymentData] = None

    last_error: Optional[str] = None
    error_count: int = 0

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None

    correlation_id: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    config_snapshot: Optional[P2PFlowConfig] = None

    def get_step(self, step_type: P2PStepType) -> Optional[P2PStepExecution]:
        return next((s for s in self.steps if s.step_type == step_type), None)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# =============================================================================
# Step handler contract
# =============================================================================

@dataclass
class P2PStepResult:
    """What a step handler reports back to the orchestrator."""
    success: bool
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False
    requires_approval: bool = False
    next_step: Optional[P2PStepType] = None

    @classmethod
    def ok(cls, output: Optional[Dict[str, Any]] = None, **kwargs) -> "P2PStepResult":
        return cls(success=True, output=output or {}, **kwargs)

    @classmethod
    def fail(cls, error: str, error_code: str, retryable: bool = False, **kwargs) -> "P2PStepResult":
        return cls(success=False, error=error, error_code=error_code, retryable=retryable, **kwargs)


LogLevel = Literal["debug", "info", "warn", "error"]


@dataclass
class P2PFlowLogEntry:
    id: str
    flow_id: str
    tenant_id: str
    level: str
    message: str
    timestamp: datetime
    step: Optional[P2PStepType] = None
    data: Dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "flow_id": self.flow_id,
            "tenant_id": self.tenant_id,
            "level": self.level,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "step": self.step.value if self.step else None,
            "data": self.data,
            "correlation_id": self.correlation_id,
        }
