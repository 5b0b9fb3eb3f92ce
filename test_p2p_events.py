"""
P2P event dispatcher tests, plus an event-driven run through the default
handlers.
"""

import asyncio

from flows.p2p import P2PEvent, P2PEventDispatcher, P2PEventType, P2PFlowOrchestrator, register_default_handlers
from flows.p2p.events import (
    ORCHESTRATOR_SOURCE,
    emit_flow_status_change,
    emit_match_discrepancy,
    emit_step_completed,
    flow_status_event,
    match_discrepancy_event,
    step_completed_event,
)
from flows.p2p.types import (
    P2PFlowInstance,
    P2PFlowStatus,
    P2PMatchData,
    P2PMatchDiscrepancy,
    P2PPurchaseOrderData,
    P2PStepType,
)
from conftest import FakeClock, RecordingSleep, sample_invoice, sample_po, sample_receipt


def flow_in(status=P2PFlowStatus.RUNNING):
    po = P2PPurchaseOrderData.model_validate(sample_po())
    return P2PFlowInstance(id="f-1", tenant_id="t-1", purchase_order_id=po.po_id, po_number=po.po_number,
                           po_data=po, status=status, current_step=P2PStepType.GOODS_RECEIPT)


class TestDispatcher:

    def test_handlers_run_in_order_and_count_deliveries(self):
        dispatcher = P2PEventDispatcher()
        seen = []

        async def second(event):
            seen.append("second")

        dispatcher.on(P2PEventType.FLOW_STARTED, lambda event: seen.append("first"))
        dispatcher.on(P2PEventType.FLOW_STARTED, second)

        delivered = asyncio.run(dispatcher.emit(P2PEvent(type=P2PEventType.FLOW_STARTED, tenant_id="t-1")))
        assert delivered == 2
        assert seen == ["first", "second"]

    def test_failing_handler_is_isolated(self):
        dispatcher = P2PEventDispatcher()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        dispatcher.on(P2PEventType.FLOW_FAILED, broken)
        dispatcher.on(P2PEventType.FLOW_FAILED, seen.append)

        delivered = asyncio.run(dispatcher.emit(P2PEvent(type=P2PEventType.FLOW_FAILED, tenant_id="t-1")))
        assert delivered == 1
        assert len(seen) == 1

    def test_off_and_handler_count(self):
        dispatcher = P2PEventDispatcher()
        handler = [].append
        dispatcher.on("p2p.flow.paused", handler)
        assert dispatcher.handler_count(P2PEventType.FLOW_PAUSED) == 1
        dispatcher.off(P2PEventType.FLOW_PAUSED, handler)
        assert dispatcher.handler_count(P2PEventType.FLOW_PAUSED) == 0

    def test_emit_without_handlers(self):
        event = P2PEvent(type=P2PEventType.PO_REJECTED, tenant_id="t-1")
        assert asyncio.run(P2PEventDispatcher().emit(event)) == 0


class TestBuilders:

    def test_status_events(self):
        assert flow_status_event(flow_in(), P2PFlowStatus.PENDING).type == P2PEventType.FLOW_STARTED
        assert flow_status_event(flow_in(), P2PFlowStatus.PAUSED).type == P2PEventType.FLOW_RESUMED
        assert flow_status_event(flow_in(P2PFlowStatus.WAITING_EXTERNAL), P2PFlowStatus.RUNNING) is None

        event = flow_status_event(flow_in(P2PFlowStatus.FAILED), P2PFlowStatus.RUNNING)
        assert event.source == ORCHESTRATOR_SOURCE
        assert event.payload == {
            "flow_id": "f-1",
            "po_number": "PO-1001",
            "status": "failed",
            "previous_status": "running",
            "current_step": "goods_receipt",
        }

    def test_step_completed_events(self):
        event = step_completed_event(flow_in(), P2PStepType.INVOICE_SUBMISSION, {"ok": True})
        assert event.type == P2PEventType.INVOICE_SUBMITTED
        assert event.payload["output"] == {"ok": True}
        assert step_completed_event(flow_in(), P2PStepType.PO_RECEIPT, {}) is None

    def test_match_events(self):
        discrepancy = P2PMatchDiscrepancy(line_number=1, type="price", severity="warning")
        warning = P2PMatchData(match_id="M-1", discrepancies=[discrepancy])
        assert match_discrepancy_event(flow_in(), warning).type == P2PEventType.MATCH_DISCREPANCY_FOUND

        blocking = P2PMatchData(match_id="M-2", discrepancies=[discrepancy], requires_approval=True)
        assert match_discrepancy_event(flow_in(), blocking).type == P2PEventType.MATCH_APPROVAL_REQUIRED

        assert match_discrepancy_event(flow_in(), P2PMatchData(match_id="M-3")) is None

    def test_emit_helper(self):
        dispatcher = P2PEventDispatcher()
        seen = []
        dispatcher.on(P2PEventType.FLOW_COMPLETED, seen.append)
        asyncio.run(emit_flow_status_change(dispatcher, flow_in(P2PFlowStatus.COMPLETED), P2PFlowStatus.RUNNING))
        asyncio.run(emit_flow_status_change(dispatcher, flow_in(P2PFlowStatus.WAITING_APPROVAL), P2PFlowStatus.RUNNING))
        assert len(seen) == 1

    def test_step_and_match_emit_helpers(self):
        dispatcher = P2PEventDispatcher()
        seen = []
        dispatcher.on(P2PEventType.PO_ACKNOWLEDGED, seen.append)
        dispatcher.on(P2PEventType.MATCH_APPROVAL_REQUIRED, seen.append)

        async def run():
            await emit_step_completed(dispatcher, flow_in(), P2PStepType.PO_ACKNOWLEDGMENT, {"ack": "A-1"})
            await emit_step_completed(dispatcher, flow_in(), P2PStepType.PO_RECEIPT, {})
            discrepancy = P2PMatchDiscrepancy(line_number=1, type="quantity", severity="error")
            await emit_match_discrepancy(dispatcher, flow_in(), P2PMatchData(
                match_id="M-1", discrepancies=[discrepancy], requires_approval=True))

        asyncio.run(run())
        assert [e.type for e in seen] == [P2PEventType.PO_ACKNOWLEDGED, P2PEventType.MATCH_APPROVAL_REQUIRED]


class TestDefaultHandlers:

    def test_event_driven_flow(self):
        """A flow started and advanced only by external events."""

        async def run():
            dispatcher = P2PEventDispatcher()
            orchestrator = P2PFlowOrchestrator(dispatcher=dispatcher, clock=FakeClock(), sleep=RecordingSleep())
            register_default_handlers(dispatcher, orchestrator)

            await dispatcher.emit(P2PEvent(type=P2PEventType.PO_RECEIVED, tenant_id="t-1",
                                           payload={"po_data": sample_po()}))
            flow = (await orchestrator.list_flows("t-1"))[0]

            await dispatcher.emit(P2PEvent(type=P2PEventType.GOODS_RECEIPT_COMPLETED, tenant_id="t-1",
                                           flow_id=flow.id, payload={"receipt_data": sample_receipt()}))
            await orchestrator.handle_webhook(flow.id, "invoice_created",
                                              {"invoice_data": sample_invoice(prices=("100.00", "110.00"))})
            awaiting = flow.status

            await dispatcher.emit(P2PEvent(type=P2PEventType.MATCH_APPROVED, tenant_id="t-1", flow_id=flow.id,
                                           payload={"approved_by": "ana"}))
            await dispatcher.emit(P2PEvent(type=P2PEventType.PAYMENT_COMPLETED, tenant_id="t-1", flow_id=flow.id,
                                           payload={"transaction_id": "T-9"}))
            return flow, awaiting, await orchestrator.list_flows("t-1")

        flow, awaiting, flows = asyncio.run(run())

        assert len(flows) == 1
        assert awaiting == P2PFlowStatus.WAITING_APPROVAL
        assert flow.match_data.approved_by == "ana"
        assert flow.status == P2PFlowStatus.COMPLETED
        assert flow.payment_data.transaction_id == "T-9"

    def test_own_events_are_ignored(self):
        async def run():
            dispatcher = P2PEventDispatcher()
            orchestrator = P2PFlowOrchestrator(dispatcher=dispatcher, clock=FakeClock())
            register_default_handlers(dispatcher, orchestrator)
            await dispatcher.emit(P2PEvent(type=P2PEventType.PO_RECEIVED, tenant_id="t-1",
                                           payload={"po_data": sample_po()}, source=ORCHESTRATOR_SOURCE))
            await dispatcher.emit(P2PEvent(type=P2PEventType.PO_RECEIVED, tenant_id="t-1", payload={}))
            return await orchestrator.list_flows("t-1")

        assert asyncio.run(run()) == []
