"""P2P flow activities.

Thin wrappers that let a Temporal workflow drive the P2P orchestrator. The
orchestrator and its in-memory state live in the worker process; the worker
installs the shared service with ``set_p2p_service`` before it starts polling.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from temporalio import activity

from flows.p2p.service import P2PService
from flows.p2p.types import P2PFlowInstance


_service: Optional[P2PService] = None


def get_p2p_service() -> P2PService:
    """The process-wide service, created on first use."""
    global _service
    if _service is None:
        _service = P2PService()
    return _service


def set_p2p_service(service: Optional[P2PService]) -> None:
    global _service
    _service = service


@dataclass
class StartP2PFlowInput:
    """Input for start_p2p_flow activity.

    Attributes:
        tenant_id: Owning tenant
        po_data: Purchase order as a JSON-compatible dict
        config_overrides: Per-flow config overrides (deep-merged)
        connector_context: ``{"config_id": ...}`` naming a registered connector
    """
    tenant_id: str
    po_data: Dict[str, Any]
    config_overrides: Optional[Dict[str, Any]] = None
    connector_context: Optional[Dict[str, Any]] = None


@dataclass
class DeliverWebhookInput:
    flow_id: str
    webhook_type: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ApproveMatchInput:
    flow_id: str
    approved_by: str
    notes: Optional[str] = None


def flow_summary(flow: P2PFlowInstance) -> Dict[str, Any]:
    """Small JSON-compatible view of a flow for workflow decisions."""
    config = flow.config_snapshot
    return {
        "flow_id": flow.id,
        "tenant_id": flow.tenant_id,
        "po_number": flow.po_number,
        "status": flow.status.value,
        "current_step": flow.current_step.value if flow.current_step else None,
        "last_error": flow.last_error,
        "error_count": flow.error_count,
        "polling_interval_ms": config.settings.polling_interval_ms if config else None,
    }


@activity.defn
async def start_p2p_flow(input: StartP2PFlowInput) -> dict:
    """Create a P2P flow and run it until it stops.

    Returns:
        Flow summary dict (see ``flow_summary``)
    """
    activity.logger.info(f"Starting P2P flow for tenant {input.tenant_id}")
    flow = await get_p2p_service().start_flow(
        input.tenant_id,
        input.po_data,
        config_overrides=input.config_overrides,
        connector_context=input.connector_context,
    )
    activity.logger.info(f"P2P flow {flow.id} started, status {flow.status.value}")
    return flow_summary(flow)


@activity.defn
async def get_p2p_flow_status(flow_id: str) -> dict:
    flow = await get_p2p_service().orchestrator.get_flow(flow_id)
    return flow_summary(flow)


@activity.defn
async def deliver_p2p_webhook(input: DeliverWebhookInput) -> dict:
    activity.logger.info(f"Delivering {input.webhook_type} to flow {input.flow_id}")
    flow = await get_p2p_service().handle_webhook(input.flow_id, input.webhook_type, input.payload)
    return flow_summary(flow)


@activity.defn
async def approve_p2p_match(input: ApproveMatchInput) -> dict:
    activity.logger.info(f"Approving match for flow {input.flow_id} by {input.approved_by}")
    flow = await get_p2p_service().approve_match_discrepancy(input.flow_id, input.approved_by, input.notes)
    return flow_summary(flow)
