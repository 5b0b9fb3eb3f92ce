"""
P2P Flow Workflow

Durable driver for one Procure-to-Pay flow:
START → (wait for signal or polling interval → deliver → check status)* → terminal

The orchestrator does the actual work inside activities. This workflow keeps
the flow alive across worker restarts, forwards external updates it receives
as signals, and finishes once the flow reaches COMPLETED, FAILED or CANCELLED.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError

with workflow.unsafe.imports_passed_through():
    from activities.p2p_flow import (
        start_p2p_flow,
        get_p2p_flow_status,
        deliver_p2p_webhook,
        approve_p2p_match,
        StartP2PFlowInput,
        DeliverWebhookInput,
        ApproveMatchInput,
    )


TERMINAL_FLOW_STATUSES = {"completed", "failed", "cancelled"}
DEFAULT_POLLING_INTERVAL_MS = 60000

# Orchestrator errors that will not change on retry
NON_RETRYABLE_ERRORS = [
    "FlowNotFoundError",
    "InvalidFlowStateError",
    "StepNotFoundError",
    "FlowLimitExceededError",
    "ValidationError",
]


@dataclass
class P2PFlowWorkflowInput:
    """Input for P2P flow workflow"""
    tenant_id: str
    po_data: Dict[str, Any]
    config_overrides: Optional[Dict[str, Any]] = None
    connector_context: Optional[Dict[str, Any]] = None

    # Falls back to the flow's configured polling interval
    polling_interval_ms: Optional[int] = None


@dataclass
class P2PFlowWorkflowOutput:
    flow_id: str
    status: str
    current_step: Optional[str] = None
    last_error: Optional[str] = None
    signals_delivered: int = 0
    status_checks: int = 0


@dataclass
class _PendingWebhook:
    webhook_type: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class _PendingApproval:
    approved_by: str
    notes: Optional[str] = None


@workflow.defn
class P2PFlowWorkflow:
    """
    Drives one P2P flow to a terminal status.

    Signals:
        webhook(webhook_type, payload) - forwarded to the orchestrator's handle_webhook
        approve(approved_by, notes)    - approves a pending match discrepancy

    Query:
        status() - last known flow status
    """

    def __init__(self):
        self.flow_id: Optional[str] = None
        self.flow_status: Optional[str] = None
        self._webhooks: List[_PendingWebhook] = []
        self._approvals: List[_PendingApproval] = []

    @workflow.signal
    def webhook(self, webhook_type: str, payload: Dict[str, Any]) -> None:
        self._webhooks.append(_PendingWebhook(webhook_type, payload or {}))

    @workflow.signal
    def approve(self, approved_by: str, notes: Optional[str] = None) -> None:
        self._approvals.append(_PendingApproval(approved_by, notes))

    @workflow.query
    def status(self) -> Optional[str]:
        return self.flow_status

    @workflow.run
    async def run(self, input: P2PFlowWorkflowInput) -> P2PFlowWorkflowOutput:
        """Execute the P2P flow workflow."""
        activity_options = {
            "start_to_close_timeout": timedelta(minutes=5),
            "retry_policy": RetryPolicy(
                maximum_attempts=3,
                initial_interval=timedelta(seconds=1),
                maximum_interval=timedelta(seconds=30),
                backoff_coefficient=2.0,
                non_retryable_error_types=NON_RETRYABLE_ERRORS,
            ),
        }

        summary = await workflow.execute_activity(
            start_p2p_flow,
            StartP2PFlowInput(
                tenant_id=input.tenant_id,
                po_data=input.po_data,
                config_overrides=input.config_overrides,
                connector_context=input.connector_context,
            ),
            **activity_options,
        )
        self.flow_id = summary["flow_id"]
        self.flow_status = summary["status"]
        workflow.logger.info(f"P2P flow {self.flow_id} started for PO {summary.get('po_number')}")

        interval_ms = input.polling_interval_ms or summary.get("polling_interval_ms") or DEFAULT_POLLING_INTERVAL_MS
        interval = timedelta(milliseconds=interval_ms)

        output = P2PFlowWorkflowOutput(flow_id=self.flow_id, status=self.flow_status)

        while self.flow_status not in TERMINAL_FLOW_STATUSES:
            try:
                await workflow.wait_condition(lambda: bool(self._webhooks or self._approvals), timeout=interval)
            except asyncio.TimeoutError:
                pass

            while self._approvals and self.flow_status not in TERMINAL_FLOW_STATUSES:
                approval = self._approvals.pop(0)
                summary = await self._deliver(
                    approve_p2p_match,
                    ApproveMatchInput(self.flow_id, approval.approved_by, approval.notes),
                    activity_options,
                )
                output.signals_delivered += 1

            while self._webhooks and self.flow_status not in TERMINAL_FLOW_STATUSES:
                pending = self._webhooks.pop(0)
                summary = await self._deliver(
                    deliver_p2p_webhook,
                    DeliverWebhookInput(self.flow_id, pending.webhook_type, pending.payload),
                    activity_options,
                )
                output.signals_delivered += 1

            summary = await workflow.execute_activity(get_p2p_flow_status, self.flow_id, **activity_options)
            self.flow_status = summary["status"]
            output.status_checks += 1

        workflow.logger.info(f"P2P flow {self.flow_id} finished with status {self.flow_status}")
        output.status = self.flow_status
        output.current_step = summary.get("current_step")
        output.last_error = summary.get("last_error")
        return output

    async def _deliver(self, activity_fn, activity_input, activity_options: Dict[str, Any]) -> Dict[str, Any]:
        """Run a delivery activity; a rejected delivery is logged and the flow keeps going."""
        try:
            summary = await workflow.execute_activity(activity_fn, activity_input, **activity_options)
        except ActivityError as e:
            workflow.logger.warning(f"Delivery to flow {self.flow_id} rejected: {e.cause or e}")
            return {"status": self.flow_status}
        self.flow_status = summary["status"]
        return summary
