"""Step 9: summarize the finished flow."""

from flows.p2p.steps.base import StepContext, StepHandler
from flows.p2p.types import P2PFlowInstance, P2PStepConfig, P2PStepResult, P2PStepType, StepStatus


class FlowCompletionStep(StepHandler):
    step_type = P2PStepType.FLOW_COMPLETION

    async def run(self, flow: P2PFlowInstance, step_config: P2PStepConfig, context: StepContext) -> P2PStepResult:
        now = context.clock()
        duration_ms = (now - flow.started_at).total_seconds() * 1000 if flow.started_at else None

        return P2PStepResult.ok({
            "po_number": flow.po_number,
            "invoice_number": flow.invoice_data.invoice_number if flow.invoice_data else None,
            "payment_status": flow.payment_data.status.value if flow.payment_data else None,
            "steps_completed": sum(1 for s in flow.steps if s.status == StepStatus.COMPLETED),
            "steps_skipped": sum(1 for s in flow.steps if s.status == StepStatus.SKIPPED),
            "duration_ms": duration_ms,
        })
