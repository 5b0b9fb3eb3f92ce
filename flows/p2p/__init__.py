"""Procure-to-Pay flow orchestration."""

from flows.p2p.config import DEFAULT_P2P_FLOW_CONFIG, P2PFlowConfigStore, merge_config
from flows.p2p.events import (
    P2PEvent,
    P2PEventDispatcher,
    P2PEventType,
    emit_flow_status_change,
    emit_match_discrepancy,
    emit_step_completed,
    register_default_handlers,
)
from flows.p2p.flow_log import P2PFlowLog
from flows.p2p.orchestrator import P2PFlowOrchestrator
from flows.p2p.service import P2PService
from flows.p2p.store import (
    ConfigRepository,
    FlowRepository,
    InMemoryConfigRepository,
    InMemoryFlowRepository,
)
from flows.p2p.types import (
    P2PFlowConfig,
    P2PFlowInstance,
    P2PFlowStatus,
    P2PStepResult,
    P2PStepType,
    StepStatus,
)

__all__ = [
    "DEFAULT_P2P_FLOW_CONFIG",
    "P2PFlowConfigStore",
    "merge_config",
    "P2PEvent",
    "P2PEventDispatcher",
    "P2PEventType",
    "emit_flow_status_change",
    "emit_match_discrepancy",
    "emit_step_completed",
    "register_default_handlers",
    "P2PFlowLog",
    "P2PFlowOrchestrator",
    "P2PService",
    "ConfigRepository",
    "FlowRepository",
    "InMemoryConfigRepository",
    "InMemoryFlowRepository",
    "P2PFlowConfig",
    "P2PFlowInstance",
    "P2PFlowStatus",
    "P2PStepResult",
    "P2PStepType",
    "StepStatus",
]
