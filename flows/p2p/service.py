"""Facade over the P2P orchestrator, config store and flow log.

Used by the HTTP routes and the Temporal activities so that neither needs to
know how the orchestrator is wired.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from flows.p2p.config import P2PFlowConfigStore
from flows.p2p.events import P2PEventDispatcher, register_default_handlers
from flows.p2p.flow_log import P2PFlowLog
from flows.p2p.orchestrator import P2PFlowOrchestrator
from flows.p2p.types import (
    P2PFlowConfig,
    P2PFlowInstance,
    P2PFlowLogEntry,
    P2PFlowStatus,
    P2PGoodsReceiptData,
    P2PPurchaseOrderData,
    P2PStepType,
    P2PVendorInvoiceData,
)
from core.errors import InvalidFlowStateError
from core.observability import get_logger

logger = get_logger(__name__)

DASHBOARD_RECENT_LOGS = 20


def _dump(model: Union[Dict[str, Any], Any]) -> Dict[str, Any]:
    if isinstance(model, dict):
        return model
    return model.model_dump(mode="json")


class P2PService:
    """Entry point for P2P operations.

    Usage:
        service = P2PService()
        flow = await service.handle_incoming_po("t-1", po_data)
        flow = await service.handle_goods_receipt_update(flow.id, receipt)
    """

    def __init__(self, orchestrator: Optional[P2PFlowOrchestrator] = None, register_handlers: bool = True):
        self.orchestrator = orchestrator or P2PFlowOrchestrator(dispatcher=P2PEventDispatcher())
        if register_handlers:
            register_default_handlers(self.orchestrator.dispatcher, self.orchestrator)

    @property
    def config_store(self) -> P2PFlowConfigStore:
        return self.orchestrator.config_store

    @property
    def flow_log(self) -> P2PFlowLog:
        return self.orchestrator.flow_log

    @property
    def dispatcher(self) -> P2PEventDispatcher:
        return self.orchestrator.dispatcher

    # =========================================================================
    # Flow management
    # =========================================================================

    async def start_flow(
        self,
        tenant_id: str,
        po_data: Union[P2PPurchaseOrderData, Dict[str, Any]],
        config_overrides: Optional[Dict[str, Any]] = None,
        connector_context: Optional[Dict[str, Any]] = None,
    ) -> P2PFlowInstance:
        return await self.orchestrator.start_flow(
            tenant_id,
            po_data,
            config_overrides=config_overrides,
            connector_context=connector_context,
        )

    async def get_flow_status(self, flow_id: str) -> Optional[P2PFlowInstance]:
        return await self.orchestrator.get_flow_status(flow_id)

    async def pause_flow(self, flow_id: str, reason: Optional[str] = None) -> P2PFlowInstance:
        return await self.orchestrator.pause_flow(flow_id, reason)

    async def resume_flow(self, flow_id: str) -> P2PFlowInstance:
        return await self.orchestrator.resume_flow(flow_id)

    async def cancel_flow(self, flow_id: str, reason: Optional[str] = None) -> P2PFlowInstance:
        return await self.orchestrator.cancel_flow(flow_id, reason)

    async def retry_step(self, flow_id: str, step_type: Union[P2PStepType, str]) -> P2PFlowInstance:
        return await self.orchestrator.retry_step(flow_id, step_type)

    async def handle_webhook(self, flow_id: str, webhook_type: str, payload: Dict[str, Any]) -> P2PFlowInstance:
        return await self.orchestrator.handle_webhook(flow_id, webhook_type, payload)

    # =========================================================================
    # Inbound business events
    # =========================================================================

    async def handle_incoming_po(
        self,
        tenant_id: str,
        po_data: Union[P2PPurchaseOrderData, Dict[str, Any]],
        connector_context: Optional[Dict[str, Any]] = None,
    ) -> P2PFlowInstance:
        """Start a flow for a purchase order received from an external system."""
        po = po_data if isinstance(po_data, P2PPurchaseOrderData) else P2PPurchaseOrderData.model_validate(po_data)
        logger.info(f"Processing incoming PO {po.po_number}")
        return await self.orchestrator.start_flow(tenant_id, po, connector_context=connector_context)

    async def handle_goods_receipt_update(
        self,
        flow_id: str,
        receipt: Union[P2PGoodsReceiptData, Dict[str, Any]],
    ) -> P2PFlowInstance:
        logger.info(f"Processing goods receipt for flow {flow_id}")
        return await self.orchestrator.handle_webhook(flow_id, "goods_receipt_update", {"receipt_data": _dump(receipt)})

    async def handle_invoice_creation(
        self,
        flow_id: str,
        invoice: Union[P2PVendorInvoiceData, Dict[str, Any]],
    ) -> P2PFlowInstance:
        logger.info(f"Processing invoice for flow {flow_id}")
        return await self.orchestrator.handle_webhook(flow_id, "invoice_created", {"invoice_data": _dump(invoice)})

    async def approve_match_discrepancy(
        self,
        flow_id: str,
        approved_by: str,
        notes: Optional[str] = None,
    ) -> P2PFlowInstance:
        """Approve a match discrepancy and let the flow continue.

        Raises:
            FlowNotFoundError: Unknown flow
            InvalidFlowStateError: Flow is not waiting for approval
        """
        logger.info(f"Approving match discrepancy for flow {flow_id}")
        flow = await self.orchestrator.get_flow(flow_id)
        if flow.status != P2PFlowStatus.WAITING_APPROVAL:
            raise InvalidFlowStateError(f"Flow {flow_id} is not waiting for approval", flow_id)
        return await self.orchestrator.approve_match(flow_id, approved_by, notes)

    async def handle_payment_update(
        self,
        flow_id: str,
        status: str,
        completed_at: Optional[datetime] = None,
        **details: Any,
    ) -> P2PFlowInstance:
        """Forward a payment status change; extra keyword fields (e.g. transaction_id) are passed along."""
        logger.info(f"Processing payment update for flow {flow_id}: {status}")
        payload: Dict[str, Any] = {"status": status, **details}
        if completed_at is not None:
            payload["completed_at"] = completed_at.isoformat()
        return await self.orchestrator.handle_webhook(flow_id, "payment_status_update", payload)

    # =========================================================================
    # Configuration
    # =========================================================================

    async def get_config(self, tenant_id: str) -> P2PFlowConfig:
        return await self.config_store.get_config(tenant_id)

    async def save_config(self, tenant_id: str, config: P2PFlowConfig) -> P2PFlowConfig:
        return await self.config_store.save_config(tenant_id, config)

    async def update_match_tolerances(self, tenant_id: str, tolerances: Dict[str, Any]) -> P2PFlowConfig:
        return await self.config_store.update_match_tolerances(tenant_id, tolerances)

    async def update_features(self, tenant_id: str, features: Dict[str, Any]) -> P2PFlowConfig:
        return await self.config_store.update_features(tenant_id, features)

    async def update_settings(self, tenant_id: str, settings: Dict[str, Any]) -> P2PFlowConfig:
        return await self.config_store.update_settings(tenant_id, settings)

    async def update_step_config(
        self,
        tenant_id: str,
        step_type: Union[P2PStepType, str],
        changes: Dict[str, Any],
    ) -> P2PFlowConfig:
        return await self.config_store.update_step_config(tenant_id, P2PStepType(step_type), changes)

    async def reset_config(self, tenant_id: str) -> P2PFlowConfig:
        return await self.config_store.reset_config(tenant_id)

    # =========================================================================
    # Queries
    # =========================================================================

    async def list_flows(
        self,
        tenant_id: str,
        status: Optional[P2PFlowStatus] = None,
        limit: int = 100,
    ) -> List[P2PFlowInstance]:
        return await self.orchestrator.list_flows(tenant_id, status, limit)

    async def get_flows_requiring_approval(self, tenant_id: str) -> List[P2PFlowInstance]:
        return await self.list_flows(tenant_id, P2PFlowStatus.WAITING_APPROVAL)

    async def get_failed_flows(self, tenant_id: str) -> List[P2PFlowInstance]:
        return await self.list_flows(tenant_id, P2PFlowStatus.FAILED)

    async def get_flow_by_po(self, tenant_id: str, po_number: str) -> Optional[P2PFlowInstance]:
        return await self.orchestrator.get_flow_by_po(tenant_id, po_number)

    async def get_flow_stats(self, tenant_id: str) -> Dict[str, Any]:
        return await self.orchestrator.get_flow_stats(tenant_id)

    async def get_flow_logs(
        self,
        flow_id: str,
        level: Optional[str] = None,
        step: Optional[P2PStepType] = None,
        limit: Optional[int] = None,
    ) -> List[P2PFlowLogEntry]:
        return await self.flow_log.get_flow_logs(flow_id, level=level, step=step, limit=limit)

    async def get_dashboard(self, tenant_id: str) -> Dict[str, Any]:
        """Flow statistics, flows needing attention and recent log entries."""
        stats = await self.orchestrator.get_flow_stats(tenant_id)
        awaiting = await self.get_flows_requiring_approval(tenant_id)
        failed = await self.get_failed_flows(tenant_id)
        logs = await self.flow_log.get_tenant_logs(tenant_id, limit=DASHBOARD_RECENT_LOGS)
        return {
            "tenant_id": tenant_id,
            "stats": stats,
            "awaiting_approval": [f.id for f in awaiting],
            "failed": [f.id for f in failed],
            "recent_logs": [entry.to_dict() for entry in logs],
        }
