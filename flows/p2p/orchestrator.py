"""P2P flow orchestrator.

Owns the flow state machine:

    PENDING -> RUNNING <-> {PAUSED, WAITING_EXTERNAL, WAITING_APPROVAL}
            -> {COMPLETED, FAILED, CANCELLED}

Each flow runs its steps one at a time under a per-flow ``asyncio.Lock``.
Handlers work on a copy of the flow; the copy's domain data is adopted only
when the step succeeds, so a step that times out cannot change the flow.
Pause and cancel do not wait for the lock: they flip the status and the run
loop stops before its next step.

Events produced while a flow is locked are published after the lock is
released, so subscribers may call back into the orchestrator.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic.alias_generators import to_snake

from connectors.rest import ConnectorExecutor, ConnectorRegistry
from flows.p2p.config import P2PFlowConfigStore, merge_config
from flows.p2p.events import (
    ORCHESTRATOR_SOURCE,
    P2PEvent,
    P2PEventDispatcher,
    P2PEventType,
    flow_status_event,
    match_discrepancy_event,
    step_completed_event,
)
from flows.p2p.flow_log import P2PFlowLog
from flows.p2p.steps import StepConnector, StepContext, StepHandler, default_step_handlers
from flows.p2p.steps.payment_tracking import apply_payment_update, new_payment
from flows.p2p.store import FlowRepository, InMemoryFlowRepository
from flows.p2p.types import (
    EXTERNALLY_GATED_STEPS,
    STEP_ORDER,
    TERMINAL_STATUSES,
    P2PFlowConfig,
    P2PFlowInstance,
    P2PFlowStatus,
    P2PGoodsReceiptData,
    P2PPaymentData,
    P2PPurchaseOrderData,
    P2PStepConfig,
    P2PStepExecution,
    P2PStepResult,
    P2PStepType,
    P2PVendorInvoiceData,
    StepCondition,
    StepStatus,
    VendorInvoiceStatus,
)
from core.config import get_settings
from core.errors import FlowLimitExceededError, FlowNotFoundError, InvalidFlowStateError, StepNotFoundError
from core.observability import get_logger, get_metrics, with_correlation

logger = get_logger(__name__)

DEFAULT_RETRY_BASE_MS = 1000
DEFAULT_RETRY_MAX_MS = 30000

RESUMABLE_STATUSES = {P2PFlowStatus.PAUSED, P2PFlowStatus.WAITING_APPROVAL}

# Which connector binding of the flow config a step uses
STEP_CONNECTOR_BINDINGS = {
    P2PStepType.PO_ACKNOWLEDGMENT: "erp_connector_id",
    P2PStepType.GOODS_RECEIPT: "erp_connector_id",
    P2PStepType.INVOICE_CREATION: "ap_connector_id",
    P2PStepType.INVOICE_SUBMISSION: "ap_connector_id",
    P2PStepType.PAYMENT_TRACKING: "banking_connector_id",
}

WEBHOOK_TYPES = (
    "goods_receipt_update",
    "invoice_created",
    "invoice_status_update",
    "payment_status_update",
    "match_approval",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_step_after(step_type: P2PStepType) -> Optional[P2PStepType]:
    """The declared step after ``step_type``, or None after the last."""
    index = STEP_ORDER.index(step_type)
    return STEP_ORDER[index + 1] if index + 1 < len(STEP_ORDER) else None


# =============================================================================
# Step conditions
# =============================================================================

def resolve_field(data: Any, path: str) -> Any:
    """Follow a dotted path (snake_case or camelCase segments) through dicts."""
    current = data
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment in current:
                current = current[segment]
            else:
                current = current.get(to_snake(segment))
        elif isinstance(current, list) and segment.lstrip("-").isdigit():
            index = int(segment)
            current = current[index] if -len(current) <= index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def evaluate_condition(data: Dict[str, Any], condition: StepCondition) -> bool:
    actual = resolve_field(data, condition.field)
    expected = condition.value
    operator = condition.operator
    try:
        if operator == "eq":
            return actual == expected
        if operator == "ne":
            return actual != expected
        if operator == "gt":
            return actual is not None and actual > expected
        if operator == "gte":
            return actual is not None and actual >= expected
        if operator == "lt":
            return actual is not None and actual < expected
        if operator == "lte":
            return actual is not None and actual <= expected
        if operator == "in":
            return actual in (expected or [])
        if operator in ("not_in", "notIn"):
            return actual not in (expected or [])
        if operator == "contains":
            return actual is not None and expected in actual
    except TypeError:
        return False
    return False


def conditions_hold(flow: P2PFlowInstance, conditions: List[StepCondition]) -> bool:
    if not conditions:
        return True
    data = flow.model_dump(exclude={"config_snapshot"})
    return all(evaluate_condition(data, c) for c in conditions)


def _pick(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


class P2PFlowOrchestrator:
    """Runs P2P flows.

    Usage:
        orchestrator = P2PFlowOrchestrator()
        flow = await orchestrator.start_flow("t-1", po_data)
        flow = await orchestrator.handle_webhook(flow.id, "goods_receipt_update", {"receipt_data": receipt})
    """

    def __init__(
        self,
        config_store: Optional[P2PFlowConfigStore] = None,
        flow_log: Optional[P2PFlowLog] = None,
        repository: Optional[FlowRepository] = None,
        dispatcher: Optional[P2PEventDispatcher] = None,
        handlers: Optional[Dict[P2PStepType, StepHandler]] = None,
        connectors: Optional[ConnectorRegistry] = None,
        executor: Optional[ConnectorExecutor] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        default_max_attempts: Optional[int] = None,
    ):
        """Initialize the orchestrator.

        Args:
            config_store: Tenant flow configuration
            flow_log: Structured flow log
            repository: Flow instance storage
            dispatcher: Event dispatcher for lifecycle and domain events
            handlers: Step handlers by step type (defaults to all nine)
            connectors: Registered tenant connectors used by step handlers
            executor: Connector executor for step handler calls
            clock: Returns the current aware datetime
            sleep: Awaitable sleep in seconds, used for retry backoff
            default_max_attempts: Step retry cap when a step has no retry policy
        """
        self.clock = clock or _utcnow
        self.config_store = config_store or P2PFlowConfigStore(clock=self.clock)
        self.flow_log = flow_log or P2PFlowLog(clock=self.clock)
        self.repository = repository or InMemoryFlowRepository()
        self.dispatcher = dispatcher or P2PEventDispatcher()
        self.handlers = handlers if handlers is not None else default_step_handlers()
        self.connectors = connectors
        self.executor = executor
        self.sleep = sleep or asyncio.sleep
        self.default_max_attempts = (
            default_max_attempts if default_max_attempts is not None else get_settings().p2p_default_max_attempts
        )
        self._locks: Dict[str, asyncio.Lock] = {}
        self._start_lock = asyncio.Lock()

        logger.info(f"Registered {len(self.handlers)} P2P step handlers")

    # =========================================================================
    # Operator surface
    # =========================================================================

    async def start_flow(
        self,
        tenant_id: str,
        po_data: Union[P2PPurchaseOrderData, Dict[str, Any]],
        config_overrides: Optional[Dict[str, Any]] = None,
        connector_context: Optional[Dict[str, Any]] = None,
    ) -> P2PFlowInstance:
        """Create a flow for a purchase order and run it until it stops.

        Args:
            tenant_id: Owning tenant
            po_data: Purchase order (model or raw dict)
            config_overrides: Deep-merged over the tenant configuration for this flow only
            connector_context: ``{"config_id": ...}`` naming a registered connector

        Raises:
            FlowLimitExceededError: Tenant has ``max_concurrent_flows`` active flows
            InvalidFlowStateError: P2P flows are disabled for the tenant
        """
        po = po_data if isinstance(po_data, P2PPurchaseOrderData) else P2PPurchaseOrderData.model_validate(po_data)
        logger.info(f"Starting P2P flow for PO {po.po_number} (tenant: {tenant_id})")

        config = merge_config(await self.config_store.get_config(tenant_id), config_overrides)
        if not config.enabled:
            raise InvalidFlowStateError(f"P2P flows are disabled for tenant {tenant_id}")

        now = self.clock()
        flow = P2PFlowInstance(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            config_id=config.tenant_id or tenant_id,
            purchase_order_id=po.po_id,
            po_number=po.po_number,
            po_data=po,
            status=P2PFlowStatus.PENDING,
            current_step=STEP_ORDER[0],
            steps=[P2PStepExecution(step_type=step_type) for step_type in STEP_ORDER],
            started_at=now,
            last_activity_at=now,
            correlation_id=str(uuid.uuid4()),
            metadata={"initiated_by": "system"},
            config_snapshot=config,
        )
        if connector_context:
            flow.metadata["connector_context"] = dict(connector_context)

        async with self._start_lock:
            active = [f for f in await self.repository.list(tenant_id) if f.status not in TERMINAL_STATUSES]
            limit = config.settings.max_concurrent_flows
            if len(active) >= limit:
                raise FlowLimitExceededError(
                    f"Tenant {tenant_id} already has {len(active)} active flows (max: {limit})"
                )
            await self.repository.put(flow)

        get_metrics().record_flow_started(flow.id)
        await self.flow_log.log(flow, "info", "Flow started", {"po_number": po.po_number, "tenant_id": tenant_id})

        outbox: List[P2PEvent] = []
        async with self._lock_for(flow.id):
            await self._set_status(flow, P2PFlowStatus.RUNNING, outbox)
            await self._run(flow, outbox)
        await self._publish(outbox)
        return flow

    async def get_flow_status(self, flow_id: str) -> Optional[P2PFlowInstance]:
        return await self.repository.get(flow_id)

    async def get_flow(self, flow_id: str) -> P2PFlowInstance:
        """Like ``get_flow_status`` but raises FlowNotFoundError."""
        flow = await self.repository.get(flow_id)
        if flow is None:
            raise FlowNotFoundError(flow_id)
        return flow

    async def pause_flow(self, flow_id: str, reason: Optional[str] = None) -> P2PFlowInstance:
        flow = await self.get_flow(flow_id)
        if flow.status in TERMINAL_STATUSES or flow.status == P2PFlowStatus.PAUSED:
            raise InvalidFlowStateError(f"Flow {flow_id} cannot be paused from {flow.status.value}", flow_id)

        outbox: List[P2PEvent] = []
        flow.metadata["pause_reason"] = reason
        flow.metadata["paused_at"] = self.clock().isoformat()
        await self._set_status(flow, P2PFlowStatus.PAUSED, outbox)
        await self.flow_log.log(flow, "info", "Flow paused", {"reason": reason})
        await self.repository.put(flow)
        await self._publish(outbox)
        return flow

    async def resume_flow(self, flow_id: str) -> P2PFlowInstance:
        """Continue a PAUSED or WAITING_APPROVAL flow from its current step.

        Raises:
            InvalidFlowStateError: Flow is in any other state; it is left untouched
        """
        outbox: List[P2PEvent] = []
        async with self._lock_for(flow_id):
            flow = await self.get_flow(flow_id)
            if flow.status not in RESUMABLE_STATUSES:
                raise InvalidFlowStateError(
                    f"Flow {flow_id} is not paused or waiting for approval (status: {flow.status.value})",
                    flow_id,
                )
            flow.metadata.pop("pause_reason", None)
            flow.metadata.pop("paused_at", None)
            await self._set_status(flow, P2PFlowStatus.RUNNING, outbox)
            await self.flow_log.log(flow, "info", "Flow resumed", {})
            await self._run(flow, outbox)
        await self._publish(outbox)
        return flow

    async def cancel_flow(self, flow_id: str, reason: Optional[str] = None) -> P2PFlowInstance:
        """Cancel a flow. A step already executing runs to completion."""
        flow = await self.get_flow(flow_id)
        if flow.status in (P2PFlowStatus.COMPLETED, P2PFlowStatus.CANCELLED):
            raise InvalidFlowStateError(f"Flow {flow_id} is already {flow.status.value}", flow_id)

        outbox: List[P2PEvent] = []
        flow.completed_at = self.clock()
        flow.metadata["cancel_reason"] = reason
        await self._set_status(flow, P2PFlowStatus.CANCELLED, outbox)
        await self.flow_log.log(flow, "info", "Flow cancelled", {"reason": reason})
        get_metrics().record_flow_finished(flow.id, P2PFlowStatus.CANCELLED.value, self._duration_ms(flow))
        await self.repository.put(flow)
        await self._publish(outbox)
        return flow

    async def retry_step(self, flow_id: str, step_type: Union[P2PStepType, str]) -> P2PFlowInstance:
        """Re-run a FAILED step and continue the flow from there.

        Raises:
            StepNotFoundError: Unknown step type
            InvalidFlowStateError: Step is not FAILED, or the flow was cancelled
        """
        try:
            step_type = P2PStepType(step_type)
        except ValueError:
            raise StepNotFoundError(f"Step {step_type} not found in flow {flow_id}", flow_id)

        outbox: List[P2PEvent] = []
        async with self._lock_for(flow_id):
            flow = await self.get_flow(flow_id)
            execution = flow.get_step(step_type)
            if execution is None:
                raise StepNotFoundError(f"Step {step_type.value} not found in flow {flow_id}", flow_id)
            if execution.status != StepStatus.FAILED:
                raise InvalidFlowStateError(f"Step {step_type.value} is not in failed state", flow_id)
            if flow.status == P2PFlowStatus.CANCELLED:
                raise InvalidFlowStateError(f"Flow {flow_id} is cancelled", flow_id)

            execution.status = StepStatus.PENDING
            execution.error = None
            execution.error_code = None
            execution.attempt += 1
            flow.current_step = step_type
            flow.completed_at = None
            await self.flow_log.log_step(flow, step_type, "info", "Step retry initiated", {"attempt": execution.attempt})
            await self._set_status(flow, P2PFlowStatus.RUNNING, outbox)
            await self._run(flow, outbox)
        await self._publish(outbox)
        return flow

    async def approve_match(self, flow_id: str, approved_by: str, notes: Optional[str] = None) -> P2PFlowInstance:
        """Sign off a three-way match discrepancy and continue the flow."""
        outbox: List[P2PEvent] = []
        async with self._lock_for(flow_id):
            flow = await self.get_flow(flow_id)
            if flow.status != P2PFlowStatus.WAITING_APPROVAL:
                raise InvalidFlowStateError(f"Flow {flow_id} is not waiting for approval", flow_id)
            if flow.match_data is None:
                raise InvalidFlowStateError(f"Flow {flow_id} has no match data to approve", flow_id)

            flow.match_data.approved_by = approved_by
            flow.match_data.approved_at = self.clock()
            if notes:
                flow.match_data.notes = notes
            await self.flow_log.log(flow, "info", "Match approved", {"approved_by": approved_by, "notes": notes})
            outbox.append(P2PEvent(
                type=P2PEventType.MATCH_APPROVED,
                tenant_id=flow.tenant_id,
                flow_id=flow.id,
                payload={"flow_id": flow.id, "match_id": flow.match_data.match_id, "approved_by": approved_by},
                source=ORCHESTRATOR_SOURCE,
            ))
            await self._set_status(flow, P2PFlowStatus.RUNNING, outbox)
            await self._run(flow, outbox)
        await self._publish(outbox)
        return flow

    async def handle_webhook(self, flow_id: str, webhook_type: str, payload: Dict[str, Any]) -> P2PFlowInstance:
        """Apply an external update to a flow; resumes it if WAITING_EXTERNAL.

        Raises:
            FlowNotFoundError: Unknown flow
            InvalidFlowStateError: Flow already finished
            ValueError: Payload does not validate
        """
        payload = payload or {}
        outbox: List[P2PEvent] = []
        async with self._lock_for(flow_id):
            flow = await self.get_flow(flow_id)
            if flow.status in (P2PFlowStatus.COMPLETED, P2PFlowStatus.CANCELLED):
                raise InvalidFlowStateError(f"Flow {flow_id} is already {flow.status.value}", flow_id)

            logger.info(f"Handling webhook {webhook_type} for flow {flow_id}")
            flow.last_activity_at = self.clock()
            await self.flow_log.log(flow, "info", f"Webhook received: {webhook_type}", {"payload": payload})

            self._apply_webhook(flow, webhook_type, payload)
            await self.repository.put(flow)

            if flow.status == P2PFlowStatus.WAITING_EXTERNAL:
                await self._set_status(flow, P2PFlowStatus.RUNNING, outbox)
                await self._run(flow, outbox)
        await self._publish(outbox)
        return flow

    def _apply_webhook(self, flow: P2PFlowInstance, webhook_type: str, payload: Dict[str, Any]) -> None:
        now = self.clock()

        if webhook_type == "goods_receipt_update":
            receipt = _pick(payload, "receipt_data", "receiptData")
            if receipt is None:
                logger.warning(f"goods_receipt_update for flow {flow.id} carried no receipt data")
                return
            flow.goods_receipt_data = P2PGoodsReceiptData.model_validate(receipt)

        elif webhook_type == "invoice_created":
            invoice = _pick(payload, "invoice_data", "invoiceData")
            if invoice is None:
                logger.warning(f"invoice_created for flow {flow.id} carried no invoice data")
                return
            flow.invoice_data = P2PVendorInvoiceData.model_validate(invoice)

        elif webhook_type == "invoice_status_update":
            status = payload.get("status")
            if flow.invoice_data is None or not status:
                return
            flow.invoice_data.status = VendorInvoiceStatus(status)
            if flow.invoice_data.status == VendorInvoiceStatus.SUBMITTED and flow.invoice_data.submitted_at is None:
                flow.invoice_data.submitted_at = now
            if flow.invoice_data.status == VendorInvoiceStatus.APPROVED:
                flow.invoice_data.approved_at = now
                flow.invoice_data.approved_by = _pick(payload, "approved_by", "approvedBy")
            if flow.invoice_data.status == VendorInvoiceStatus.REJECTED:
                flow.invoice_data.rejection_reason = _pick(payload, "rejection_reason", "reason")

        elif webhook_type == "payment_status_update":
            if flow.payment_data is None:
                flow.payment_data = self._payment_from_webhook(flow, payload)
            apply_payment_update(flow.payment_data, {to_snake(k): v for k, v in payload.items()})

        elif webhook_type == "match_approval":
            if flow.match_data is not None and payload.get("approved"):
                flow.match_data.approved_by = _pick(payload, "approved_by", "approvedBy")
                flow.match_data.approved_at = now

        else:
            logger.warning(f"Unknown webhook type: {webhook_type}")

    def _payment_from_webhook(self, flow: P2PFlowInstance, payload: Dict[str, Any]) -> P2PPaymentData:
        if flow.invoice_data is not None:
            context = self._build_context(flow, self._config_of(flow), None)
            payment = new_payment(flow.invoice_data, context)
        else:
            payment = P2PPaymentData(payment_id=f"PAY-{flow.po_number or flow.id}")
        payment_id = _pick(payload, "payment_id", "paymentId")
        if payment_id:
            payment.payment_id = str(payment_id)
        amount = payload.get("amount")
        if amount is not None:
            payment.amount = P2PPaymentData.model_validate({"payment_id": payment.payment_id, "amount": amount}).amount
        return payment

    # =========================================================================
    # Queries
    # =========================================================================

    async def list_flows(
        self,
        tenant_id: str,
        status: Optional[P2PFlowStatus] = None,
        limit: int = 100,
    ) -> List[P2PFlowInstance]:
        """Tenant flows, most recently started first."""
        flows = await self.repository.list(tenant_id, P2PFlowStatus(status) if status else None)
        flows.sort(key=lambda f: f.started_at or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        return flows[:limit]

    async def get_flow_by_po(self, tenant_id: str, po_number: str) -> Optional[P2PFlowInstance]:
        flows = [f for f in await self.list_flows(tenant_id, limit=10**9) if f.po_number == po_number]
        return flows[0] if flows else None

    async def get_flow_stats(self, tenant_id: str) -> Dict[str, Any]:
        flows = await self.repository.list(tenant_id)
        by_status = {status.value: 0 for status in P2PFlowStatus}
        durations = []
        for flow in flows:
            by_status[flow.status.value] += 1
            if flow.status == P2PFlowStatus.COMPLETED:
                duration = self._duration_ms(flow)
                if duration is not None:
                    durations.append(duration)
        return {
            "total": len(flows),
            "by_status": by_status,
            "average_duration_ms": round(sum(durations) / len(durations)) if durations else 0,
            "error_count": sum(f.error_count for f in flows),
        }

    # =========================================================================
    # Run loop
    # =========================================================================

    async def _run(self, flow: P2PFlowInstance, outbox: List[P2PEvent]) -> None:
        """Execute steps while the flow is RUNNING. Caller holds the flow lock."""
        config = self._config_of(flow)

        with with_correlation(tenant_id=flow.tenant_id, flow_id=flow.id, correlation_id=flow.correlation_id):
            while flow.status == P2PFlowStatus.RUNNING and flow.current_step is not None:
                step_type = flow.current_step
                step_config = config.get_step_config(step_type)

                if step_config is None or not step_config.enabled:
                    await self._skip_step(flow, step_type, "Step disabled", outbox)
                    continue
                if not conditions_hold(flow, step_config.conditions):
                    await self._skip_step(flow, step_type, "Step conditions not met", outbox)
                    continue

                handler = self.handlers.get(step_type)
                execution = flow.get_step(step_type)
                if handler is None or execution is None:
                    message = f"No handler or execution record for step {step_type.value}"
                    logger.error(message)
                    await self._fail_flow(flow, message, "FLOW_VALIDATION_ERROR", outbox)
                    break

                with with_correlation(step=step_type.value):
                    result = await self._execute_step(flow, handler, step_config, execution, config, outbox)

                if result.success:
                    await self._after_success(flow, step_type, result, outbox)
                elif await self._should_retry(flow, handler, step_config, execution, result):
                    continue
                else:
                    flow.last_error = result.error
                    if flow.status == P2PFlowStatus.RUNNING:
                        await self._fail_flow(flow, result.error, result.error_code, outbox)

                await self.repository.put(flow)

        await self.repository.put(flow)

    async def _execute_step(
        self,
        flow: P2PFlowInstance,
        handler: StepHandler,
        step_config: P2PStepConfig,
        execution: P2PStepExecution,
        config: P2PFlowConfig,
        outbox: List[P2PEvent],
    ) -> P2PStepResult:
        step_type = execution.step_type
        started = self.clock()
        execution.status = StepStatus.RUNNING
        execution.started_at = started
        execution.completed_at = None
        execution.input = {"po_number": flow.po_number, "attempt": execution.attempt}

        await self.flow_log.log_step(flow, step_type, "info", "Step started", {"attempt": execution.attempt})
        outbox.append(self._step_event(flow, P2PEventType.STEP_STARTED, step_type, {"attempt": execution.attempt}))

        timeout_ms = step_config.timeout or config.settings.default_timeout_ms
        working = flow.model_copy(deep=True)
        context = self._build_context(flow, config, step_type)

        try:
            if not await handler.validate(working, step_config):
                result = P2PStepResult.fail("Step validation failed", "VALIDATION_FAILED")
            else:
                result = await asyncio.wait_for(
                    handler.execute(working, step_config, context),
                    timeout=timeout_ms / 1000,
                )
        except asyncio.TimeoutError:
            result = P2PStepResult.fail(f"Step timeout after {timeout_ms}ms", "EXECUTION_ERROR", retryable=True)
        except Exception as e:
            logger.exception(f"Step {step_type.value} raised for flow {flow.id}")
            result = P2PStepResult.fail(str(e) or type(e).__name__, "EXECUTION_ERROR", retryable=True)

        completed = self.clock()
        execution.completed_at = completed
        execution.duration_ms = (completed - started).total_seconds() * 1000
        execution.output = result.output or {}
        flow.last_activity_at = completed

        if result.success:
            self._adopt(flow, working)
            execution.status = StepStatus.COMPLETED
            execution.retryable = None
            await self.flow_log.log_step(flow, step_type, "info", "Step completed", result.output)
            get_metrics().record_step_outcome(step_type.value, "completed", execution.duration_ms)
            outbox.append(self._step_event(flow, P2PEventType.STEP_COMPLETED, step_type, {"output": result.output}))
        else:
            execution.status = StepStatus.FAILED
            execution.error = result.error
            execution.error_code = result.error_code
            execution.retryable = result.retryable
            flow.error_count += 1
            await self.flow_log.log_step(flow, step_type, "error", "Step failed", {
                "error": result.error,
                "error_code": result.error_code,
                "retryable": result.retryable,
            })
            get_metrics().record_step_outcome(step_type.value, "failed", execution.duration_ms)
            outbox.append(self._step_event(flow, P2PEventType.STEP_FAILED, step_type, {
                "error": result.error,
                "error_code": result.error_code,
            }))
        return result

    async def _after_success(
        self,
        flow: P2PFlowInstance,
        step_type: P2PStepType,
        result: P2PStepResult,
        outbox: List[P2PEvent],
    ) -> None:
        if step_type == P2PStepType.THREE_WAY_MATCH and flow.match_data is not None and not flow.match_data.approved_by:
            self._append(outbox, match_discrepancy_event(flow, flow.match_data))

        if result.next_step is None and step_type in EXTERNALLY_GATED_STEPS:
            if flow.status == P2PFlowStatus.RUNNING:
                await self._set_status(flow, P2PFlowStatus.WAITING_EXTERNAL, outbox)
            return

        self._append(outbox, step_completed_event(flow, step_type, result.output))

        if result.requires_approval:
            if flow.status == P2PFlowStatus.RUNNING:
                await self._set_status(flow, P2PFlowStatus.WAITING_APPROVAL, outbox)
            return

        next_step = result.next_step or next_step_after(step_type)
        if next_step is not None:
            flow.current_step = next_step
        elif flow.status == P2PFlowStatus.RUNNING:
            await self._complete_flow(flow, outbox)

    async def _should_retry(
        self,
        flow: P2PFlowInstance,
        handler: StepHandler,
        step_config: P2PStepConfig,
        execution: P2PStepExecution,
        result: P2PStepResult,
    ) -> bool:
        """Back off and re-arm the step if the failure may be retried."""
        if not result.retryable or flow.status != P2PFlowStatus.RUNNING:
            return False
        if not self._can_retry(handler, step_config, result.error_code or "", execution.attempt):
            return False

        execution.attempt += 1
        execution.status = StepStatus.RETRYING
        get_metrics().record_step_outcome(execution.step_type.value, "retried")
        delay_ms = self._retry_delay_ms(step_config, execution.attempt)
        await self.flow_log.log_step(flow, execution.step_type, "warn", f"Retrying step in {delay_ms}ms", {
            "attempt": execution.attempt,
            "error_code": result.error_code,
        })
        await self.repository.put(flow)
        await self.sleep(delay_ms / 1000)
        execution.status = StepStatus.PENDING
        return True

    def _can_retry(self, handler: StepHandler, step_config: P2PStepConfig, error_code: str, attempt: int) -> bool:
        decision = handler.can_retry(error_code, attempt)
        if decision is not None:
            return decision
        policy = step_config.retry_policy
        max_attempts = policy.max_attempts if policy else self.default_max_attempts
        if attempt >= max_attempts:
            return False
        if policy and policy.retryable_errors is not None and error_code not in policy.retryable_errors:
            return False
        return True

    @staticmethod
    def _retry_delay_ms(step_config: P2PStepConfig, attempt: int) -> int:
        policy = step_config.retry_policy
        if policy is None:
            return min(DEFAULT_RETRY_BASE_MS * 2 ** (attempt - 1), DEFAULT_RETRY_MAX_MS)
        delay = policy.initial_delay_ms * policy.backoff_multiplier ** (attempt - 1)
        return int(min(delay, policy.max_delay_ms))

    async def _skip_step(self, flow: P2PFlowInstance, step_type: P2PStepType, reason: str,
                         outbox: List[P2PEvent]) -> None:
        execution = flow.get_step(step_type)
        if execution is not None:
            execution.status = StepStatus.SKIPPED
            execution.completed_at = self.clock()
        await self.flow_log.log_step(flow, step_type, "info", "Step skipped", {"reason": reason})
        get_metrics().record_step_outcome(step_type.value, "skipped")

        next_step = next_step_after(step_type)
        if next_step is None:
            await self._complete_flow(flow, outbox)
        else:
            flow.current_step = next_step

    async def _complete_flow(self, flow: P2PFlowInstance, outbox: List[P2PEvent]) -> None:
        flow.completed_at = self.clock()
        await self._set_status(flow, P2PFlowStatus.COMPLETED, outbox)
        duration_ms = self._duration_ms(flow)
        await self.flow_log.log(flow, "info", "Flow completed", {"duration_ms": duration_ms})
        get_metrics().record_flow_finished(flow.id, P2PFlowStatus.COMPLETED.value, duration_ms)

    async def _fail_flow(self, flow: P2PFlowInstance, error: Optional[str], error_code: Optional[str],
                         outbox: List[P2PEvent]) -> None:
        flow.last_error = error
        await self._set_status(flow, P2PFlowStatus.FAILED, outbox)
        await self.flow_log.log(flow, "error", "Flow failed", {
            "step": flow.current_step.value if flow.current_step else None,
            "error": error,
            "error_code": error_code,
        })
        get_metrics().record_flow_finished(flow.id, P2PFlowStatus.FAILED.value, self._duration_ms(flow))

        threshold = self._config_of(flow).settings.dead_letter_after_attempts
        if flow.error_count >= threshold and not flow.metadata.get("dead_lettered"):
            flow.metadata["dead_lettered"] = True
            flow.metadata["dead_lettered_at"] = self.clock().isoformat()
            await self.flow_log.log(flow, "warn", "Flow dead-lettered", {"error_count": flow.error_count})
            outbox.append(P2PEvent(
                type=P2PEventType.FLOW_DEAD_LETTERED,
                tenant_id=flow.tenant_id,
                flow_id=flow.id,
                payload={"flow_id": flow.id, "po_number": flow.po_number, "error_count": flow.error_count,
                         "last_error": error},
                source=ORCHESTRATOR_SOURCE,
            ))

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _set_status(self, flow: P2PFlowInstance, status: P2PFlowStatus, outbox: List[P2PEvent]) -> None:
        previous = flow.status
        if previous == status:
            return
        flow.status = status
        flow.last_activity_at = self.clock()
        logger.info(
            f"Flow {flow.id}: {previous.value} -> {status.value}",
            extra_fields={"flow_id": flow.id, "tenant_id": flow.tenant_id},
        )
        self._append(outbox, flow_status_event(flow, previous))

    def _lock_for(self, flow_id: str) -> asyncio.Lock:
        return self._locks.setdefault(flow_id, asyncio.Lock())

    def _config_of(self, flow: P2PFlowInstance) -> P2PFlowConfig:
        if flow.config_snapshot is None:
            raise InvalidFlowStateError(f"Flow {flow.id} has no configuration snapshot", flow.id)
        return flow.config_snapshot

    def _build_context(
        self,
        flow: P2PFlowInstance,
        config: P2PFlowConfig,
        step_type: Optional[P2PStepType],
    ) -> StepContext:
        return StepContext(
            tenant_id=flow.tenant_id,
            correlation_id=flow.correlation_id,
            match_tolerances=config.match_tolerances,
            features=config.features,
            settings=config.settings,
            connector=self._connector_for(flow, config, step_type) if step_type else None,
            clock=self.clock,
        )

    def _connector_for(
        self,
        flow: P2PFlowInstance,
        config: P2PFlowConfig,
        step_type: P2PStepType,
    ) -> Optional[StepConnector]:
        """Connector for a step: explicit flow context first, then config bindings."""
        if self.connectors is None:
            return None

        context = flow.metadata.get("connector_context") or {}
        tenant_id = context.get("tenant_id") or flow.tenant_id
        config_id = context.get("config_id")
        if not config_id:
            binding = STEP_CONNECTOR_BINDINGS.get(step_type)
            config_id = (getattr(config, binding) if binding else None) or config.erp_connector_id
        if not config_id:
            return None

        connector_config = self.connectors.get(tenant_id, config_id)
        if connector_config is None:
            logger.warning(f"Connector {config_id} is not registered for tenant {tenant_id}")
            return None

        if self.executor is None:
            self.executor = ConnectorExecutor()
        return StepConnector(
            executor=self.executor,
            config=connector_config,
            config_id=config_id,
            tenant_id=tenant_id,
        )

    @staticmethod
    def _adopt(flow: P2PFlowInstance, working: P2PFlowInstance) -> None:
        """Take over the domain data a handler changed on its working copy."""
        flow.po_data = working.po_data
        flow.goods_receipt_data = working.goods_receipt_data
        flow.invoice_data = working.invoice_data
        flow.match_data = working.match_data
        flow.payment_data = working.payment_data
        flow.external_po_id = working.external_po_id
        flow.external_invoice_id = working.external_invoice_id
        flow.external_payment_id = working.external_payment_id
        flow.metadata.update(working.metadata)

    def _step_event(self, flow: P2PFlowInstance, event_type: P2PEventType, step_type: P2PStepType,
                    payload: Dict[str, Any]) -> P2PEvent:
        return P2PEvent(
            type=event_type,
            tenant_id=flow.tenant_id,
            flow_id=flow.id,
            payload={"flow_id": flow.id, "step_type": step_type.value, **payload},
            timestamp=self.clock(),
            source=ORCHESTRATOR_SOURCE,
        )

    @staticmethod
    def _append(outbox: List[P2PEvent], event: Optional[P2PEvent]) -> None:
        if event is not None:
            outbox.append(event)

    async def _publish(self, outbox: List[P2PEvent]) -> None:
        for event in outbox:
            await self.dispatcher.emit(event)

    @staticmethod
    def _duration_ms(flow: P2PFlowInstance) -> Optional[float]:
        if flow.started_at is None or flow.completed_at is None:
            return None
        return (flow.completed_at - flow.started_at).total_seconds() * 1000
