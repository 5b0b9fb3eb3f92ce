"""Activity definitions module."""

from activities.p2p_flow import (
    start_p2p_flow,
    get_p2p_flow_status,
    deliver_p2p_webhook,
    approve_p2p_match,
    get_p2p_service,
    set_p2p_service,
    StartP2PFlowInput,
    DeliverWebhookInput,
    ApproveMatchInput,
)

__all__ = [
    # P2P flow activities
    "start_p2p_flow",
    "get_p2p_flow_status",
    "deliver_p2p_webhook",
    "approve_p2p_match",
    "get_p2p_service",
    "set_p2p_service",
    "StartP2PFlowInput",
    "DeliverWebhookInput",
    "ApproveMatchInput",
]
