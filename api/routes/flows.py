"""P2P flow operator endpoints.

Start, inspect and steer flows. Orchestrator errors are translated to HTTP
status codes by the handlers installed in ``api.server``.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from api.dependencies import get_service
from flows.p2p.service import P2PService
from flows.p2p.types import P2PFlowInstance, P2PFlowStatus, P2PStepType


router = APIRouter()


class StartFlowRequest(BaseModel):
    """Request to start a P2P flow."""
    tenant_id: str
    po_data: Dict[str, Any]
    config_overrides: Optional[Dict[str, Any]] = None
    connector_context: Optional[Dict[str, Any]] = Field(
        default=None,
        description='Connector to use for external calls, e.g. {"config_id": "erp"}',
    )


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


class WebhookRequest(BaseModel):
    """External update for a single flow."""
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class ApproveMatchRequest(BaseModel):
    approved_by: str
    notes: Optional[str] = None


def flow_response(flow: P2PFlowInstance) -> Dict[str, Any]:
    return flow.model_dump(mode="json")


@router.post("", status_code=201)
async def start_flow(request: StartFlowRequest, service: P2PService = Depends(get_service)) -> Dict[str, Any]:
    """Start a flow and run it until it stops or waits."""
    flow = await service.start_flow(
        request.tenant_id,
        request.po_data,
        config_overrides=request.config_overrides,
        connector_context=request.connector_context,
    )
    return flow_response(flow)


@router.get("")
async def list_flows(
    tenant_id: str,
    status: Optional[P2PFlowStatus] = None,
    limit: int = 100,
    service: P2PService = Depends(get_service),
) -> List[Dict[str, Any]]:
    """Tenant flows, most recently started first."""
    flows = await service.list_flows(tenant_id, status, limit)
    return [flow_response(flow) for flow in flows]


@router.get("/stats")
async def flow_stats(tenant_id: str, service: P2PService = Depends(get_service)) -> Dict[str, Any]:
    return await service.get_flow_stats(tenant_id)


@router.get("/dashboard")
async def flow_dashboard(tenant_id: str, service: P2PService = Depends(get_service)) -> Dict[str, Any]:
    return await service.get_dashboard(tenant_id)


@router.get("/{flow_id}")
async def get_flow(flow_id: str, service: P2PService = Depends(get_service)) -> Dict[str, Any]:
    flow = await service.get_flow_status(flow_id)
    if flow is None:
        raise HTTPException(status_code=404, detail=f"Flow {flow_id} not found")
    return flow_response(flow)


@router.post("/{flow_id}/pause")
async def pause_flow(
    flow_id: str,
    request: Optional[ReasonRequest] = None,
    service: P2PService = Depends(get_service),
) -> Dict[str, Any]:
    flow = await service.pause_flow(flow_id, request.reason if request else None)
    return flow_response(flow)


@router.post("/{flow_id}/resume")
async def resume_flow(flow_id: str, service: P2PService = Depends(get_service)) -> Dict[str, Any]:
    flow = await service.resume_flow(flow_id)
    return flow_response(flow)


@router.post("/{flow_id}/cancel")
async def cancel_flow(
    flow_id: str,
    request: Optional[ReasonRequest] = None,
    service: P2PService = Depends(get_service),
) -> Dict[str, Any]:
    flow = await service.cancel_flow(flow_id, request.reason if request else None)
    return flow_response(flow)


@router.post("/{flow_id}/steps/{step_type}/retry")
async def retry_step(flow_id: str, step_type: str, service: P2PService = Depends(get_service)) -> Dict[str, Any]:
    """Re-run a failed step; unknown step names give 409 like other step errors."""
    flow = await service.retry_step(flow_id, step_type)
    return flow_response(flow)


@router.post("/{flow_id}/webhook")
async def flow_webhook(
    flow_id: str,
    request: WebhookRequest,
    service: P2PService = Depends(get_service),
) -> Dict[str, Any]:
    flow = await service.handle_webhook(flow_id, request.type, request.payload)
    return flow_response(flow)


@router.post("/{flow_id}/approve-match")
async def approve_match(
    flow_id: str,
    request: ApproveMatchRequest,
    service: P2PService = Depends(get_service),
) -> Dict[str, Any]:
    flow = await service.approve_match_discrepancy(flow_id, request.approved_by, request.notes)
    return flow_response(flow)


@router.get("/{flow_id}/logs")
async def flow_logs(
    flow_id: str,
    level: Optional[str] = None,
    step: Optional[P2PStepType] = None,
    limit: Optional[int] = None,
    service: P2PService = Depends(get_service),
) -> List[Dict[str, Any]]:
    """A flow's log entries in chronological order."""
    entries = await service.get_flow_logs(flow_id, level=level, step=step, limit=limit)
    return [entry.to_dict() for entry in entries]
