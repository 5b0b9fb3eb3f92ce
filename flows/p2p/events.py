"""Typed publish/subscribe for P2P lifecycle and domain events.

Subscribers are called in registration order. A failing subscriber is logged
and skipped; it never fails the publish call or blocks later subscribers.

Events built by the orchestrator carry ``source="orchestrator"``. The default
handlers registered by ``register_default_handlers`` only react to events
from other sources, so the orchestrator never re-enters itself.
"""

import inspect
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Union

from flows.p2p.types import (
    P2PFlowInstance,
    P2PFlowStatus,
    P2PMatchData,
    P2PStepType,
)
from core.observability import get_logger, with_correlation

if TYPE_CHECKING:
    from flows.p2p.orchestrator import P2PFlowOrchestrator

logger = get_logger(__name__)

ORCHESTRATOR_SOURCE = "orchestrator"
EXTERNAL_SOURCE = "external"


class P2PEventType(str, Enum):
    # Purchase order
    PO_RECEIVED = "p2p.po.received"
    PO_VALIDATED = "p2p.po.validated"
    PO_ACKNOWLEDGED = "p2p.po.acknowledged"
    PO_REJECTED = "p2p.po.rejected"

    # Goods receipt
    GOODS_RECEIPT_CREATED = "p2p.goods_receipt.created"
    GOODS_RECEIPT_UPDATED = "p2p.goods_receipt.updated"
    GOODS_RECEIPT_COMPLETED = "p2p.goods_receipt.completed"

    # Invoice
    INVOICE_CREATED = "p2p.invoice.created"
    INVOICE_SUBMITTED = "p2p.invoice.submitted"
    INVOICE_APPROVED = "p2p.invoice.approved"
    INVOICE_REJECTED = "p2p.invoice.rejected"

    # Matching
    MATCH_COMPLETED = "p2p.match.completed"
    MATCH_DISCREPANCY_FOUND = "p2p.match.discrepancy_found"
    MATCH_APPROVAL_REQUIRED = "p2p.match.approval_required"
    MATCH_APPROVED = "p2p.match.approved"

    # Payment
    PAYMENT_SCHEDULED = "p2p.payment.scheduled"
    PAYMENT_PROCESSING = "p2p.payment.processing"
    PAYMENT_COMPLETED = "p2p.payment.completed"
    PAYMENT_FAILED = "p2p.payment.failed"

    # Flow
    FLOW_STARTED = "p2p.flow.started"
    FLOW_COMPLETED = "p2p.flow.completed"
    FLOW_FAILED = "p2p.flow.failed"
    FLOW_PAUSED = "p2p.flow.paused"
    FLOW_RESUMED = "p2p.flow.resumed"
    FLOW_CANCELLED = "p2p.flow.cancelled"
    FLOW_DEAD_LETTERED = "p2p.flow.dead_lettered"

    # Step
    STEP_STARTED = "p2p.step.started"
    STEP_COMPLETED = "p2p.step.completed"
    STEP_FAILED = "p2p.step.failed"


@dataclass
class P2PEvent:
    type: P2PEventType
    tenant_id: str
    flow_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = EXTERNAL_SOURCE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "tenant_id": self.tenant_id,
            "flow_id": self.flow_id,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
        }


EventHandler = Callable[[P2PEvent], Union[Awaitable[None], None]]


class P2PEventDispatcher:
    """Ordered subscriber lists per event type.

    Usage:
        dispatcher = P2PEventDispatcher()
        dispatcher.on(P2PEventType.FLOW_COMPLETED, notify_buyer)
        await dispatcher.emit(P2PEvent(type=P2PEventType.PO_RECEIVED, tenant_id="t-1", payload={...}))
    """

    def __init__(self):
        self._handlers: Dict[P2PEventType, List[EventHandler]] = {}
        self._lock = threading.Lock()

    def on(self, event_type: P2PEventType, handler: EventHandler) -> None:
        with self._lock:
            self._handlers.setdefault(P2PEventType(event_type), []).append(handler)

    def off(self, event_type: P2PEventType, handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.get(P2PEventType(event_type), [])
            if handler in handlers:
                handlers.remove(handler)

    def handler_count(self, event_type: P2PEventType) -> int:
        with self._lock:
            return len(self._handlers.get(P2PEventType(event_type), []))

    async def emit(self, event: P2PEvent) -> int:
        """Deliver an event to its subscribers.

        Returns:
            Number of subscribers that completed without raising
        """
        with self._lock:
            handlers = list(self._handlers.get(event.type, []))

        logger.debug(f"Emitting event: {event.type.value} to {len(handlers)} handler(s)")

        delivered = 0
        with with_correlation(tenant_id=event.tenant_id, flow_id=event.flow_id):
            for handler in handlers:
                try:
                    result = handler(event)
                    if inspect.isawaitable(result):
                        await result
                    delivered += 1
                except Exception:
                    logger.exception(f"Error handling event {event.type.value}")
        return delivered


# =============================================================================
# Event builders
# =============================================================================

STEP_EVENT_TYPES: Dict[P2PStepType, P2PEventType] = {
    P2PStepType.PO_VALIDATION: P2PEventType.PO_VALIDATED,
    P2PStepType.PO_ACKNOWLEDGMENT: P2PEventType.PO_ACKNOWLEDGED,
    P2PStepType.GOODS_RECEIPT: P2PEventType.GOODS_RECEIPT_COMPLETED,
    P2PStepType.INVOICE_CREATION: P2PEventType.INVOICE_CREATED,
    P2PStepType.THREE_WAY_MATCH: P2PEventType.MATCH_COMPLETED,
    P2PStepType.INVOICE_SUBMISSION: P2PEventType.INVOICE_SUBMITTED,
    P2PStepType.PAYMENT_TRACKING: P2PEventType.PAYMENT_COMPLETED,
}


def _flow_event(flow: P2PFlowInstance, event_type: P2PEventType, payload: Dict[str, Any]) -> P2PEvent:
    return P2PEvent(
        type=event_type,
        tenant_id=flow.tenant_id,
        flow_id=flow.id,
        payload={"flow_id": flow.id, "po_number": flow.po_number, **payload},
        source=ORCHESTRATOR_SOURCE,
    )


def flow_status_event(flow: P2PFlowInstance, previous_status: P2PFlowStatus) -> Optional[P2PEvent]:
    """Lifecycle event for a status change, or None for waiting states."""
    if flow.status == P2PFlowStatus.RUNNING:
        event_type = P2PEventType.FLOW_STARTED if previous_status == P2PFlowStatus.PENDING else P2PEventType.FLOW_RESUMED
    elif flow.status == P2PFlowStatus.COMPLETED:
        event_type = P2PEventType.FLOW_COMPLETED
    elif flow.status == P2PFlowStatus.FAILED:
        event_type = P2PEventType.FLOW_FAILED
    elif flow.status == P2PFlowStatus.PAUSED:
        event_type = P2PEventType.FLOW_PAUSED
    elif flow.status == P2PFlowStatus.CANCELLED:
        event_type = P2PEventType.FLOW_CANCELLED
    else:
        return None

    return _flow_event(flow, event_type, {
        "status": flow.status.value,
        "previous_status": previous_status.value,
        "current_step": flow.current_step.value if flow.current_step else None,
    })


def step_completed_event(flow: P2PFlowInstance, step_type: P2PStepType, output: Dict[str, Any]) -> Optional[P2PEvent]:
    event_type = STEP_EVENT_TYPES.get(step_type)
    if event_type is None:
        return None
    return _flow_event(flow, event_type, {"step_type": step_type.value, "output": output})


def match_discrepancy_event(flow: P2PFlowInstance, match_data: P2PMatchData) -> Optional[P2PEvent]:
    discrepancies = [d.model_dump(mode="json") for d in match_data.discrepancies]
    if match_data.requires_approval:
        return _flow_event(flow, P2PEventType.MATCH_APPROVAL_REQUIRED, {
            "match_id": match_data.match_id,
            "status": match_data.status.value,
            "discrepancies": discrepancies,
        })
    if discrepancies:
        return _flow_event(flow, P2PEventType.MATCH_DISCREPANCY_FOUND, {
            "match_id": match_data.match_id,
            "discrepancies": discrepancies,
        })
    return None


async def _emit_if_any(dispatcher: P2PEventDispatcher, event: Optional[P2PEvent]) -> None:
    if event is not None:
        await dispatcher.emit(event)


async def emit_flow_status_change(
    dispatcher: P2PEventDispatcher,
    flow: P2PFlowInstance,
    previous_status: P2PFlowStatus,
) -> None:
    await _emit_if_any(dispatcher, flow_status_event(flow, previous_status))


async def emit_step_completed(
    dispatcher: P2PEventDispatcher,
    flow: P2PFlowInstance,
    step_type: P2PStepType,
    output: Dict[str, Any],
) -> None:
    await _emit_if_any(dispatcher, step_completed_event(flow, step_type, output))


async def emit_match_discrepancy(
    dispatcher: P2PEventDispatcher,
    flow: P2PFlowInstance,
    match_data: P2PMatchData,
) -> None:
    await _emit_if_any(dispatcher, match_discrepancy_event(flow, match_data))


# =============================================================================
# Default handlers
# =============================================================================

def register_default_handlers(dispatcher: P2PEventDispatcher, orchestrator: "P2PFlowOrchestrator") -> None:
    """Wire inbound domain events to orchestrator transitions."""

    async def handle_po_received(event: P2PEvent) -> None:
        if event.source == ORCHESTRATOR_SOURCE:
            return
        po_data = event.payload.get("po_data")
        if not po_data:
            logger.warning("No PO data in event payload")
            return
        flow = await orchestrator.start_flow(
            event.tenant_id,
            po_data,
            connector_context=event.payload.get("connector_context"),
        )
        logger.info(f"Started P2P flow {flow.id} for PO {flow.po_number}")

    async def handle_goods_receipt_completed(event: P2PEvent) -> None:
        if event.source == ORCHESTRATOR_SOURCE:
            return
        if not event.flow_id:
            logger.warning("No flow ID in goods receipt event")
            return
        await orchestrator.handle_webhook(
            event.flow_id, "goods_receipt_update", {"receipt_data": event.payload.get("receipt_data")}
        )

    async def handle_invoice_submitted(event: P2PEvent) -> None:
        if event.source == ORCHESTRATOR_SOURCE:
            return
        if not event.flow_id:
            logger.warning("No flow ID in invoice event")
            return
        await orchestrator.handle_webhook(
            event.flow_id,
            "invoice_status_update",
            {"status": "submitted", "submitted_at": event.timestamp.isoformat()},
        )

    async def handle_match_approved(event: P2PEvent) -> None:
        if event.source == ORCHESTRATOR_SOURCE:
            return
        if not event.flow_id:
            logger.warning("No flow ID in match approval event")
            return
        await orchestrator.handle_webhook(
            event.flow_id,
            "match_approval",
            {"approved": True, "approved_by": event.payload.get("approved_by")},
        )
        flow = await orchestrator.get_flow_status(event.flow_id)
        if flow is not None and flow.status == P2PFlowStatus.WAITING_APPROVAL:
            await orchestrator.resume_flow(event.flow_id)

    async def handle_payment_completed(event: P2PEvent) -> None:
        if event.source == ORCHESTRATOR_SOURCE:
            return
        if not event.flow_id:
            logger.warning("No flow ID in payment event")
            return
        payload = {"status": "completed", "completed_at": event.timestamp.isoformat()}
        for key in ("amount", "transaction_id", "bank_reference"):
            if event.payload.get(key) is not None:
                payload[key] = event.payload[key]
        await orchestrator.handle_webhook(event.flow_id, "payment_status_update", payload)

    dispatcher.on(P2PEventType.PO_RECEIVED, handle_po_received)
    dispatcher.on(P2PEventType.GOODS_RECEIPT_COMPLETED, handle_goods_receipt_completed)
    dispatcher.on(P2PEventType.INVOICE_SUBMITTED, handle_invoice_submitted)
    dispatcher.on(P2PEventType.MATCH_APPROVED, handle_match_approved)
    dispatcher.on(P2PEventType.PAYMENT_COMPLETED, handle_payment_completed)
