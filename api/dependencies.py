"""Application state shared by the API routes.

One ``AppState`` is built per process on first use: a connector registry,
an executor, a webhook receiver and the P2P service wired to both. Tests
install their own with ``set_app_state``.
"""

from typing import Any, Dict, Optional

from connectors.rest import ConnectorExecutor, ConnectorRegistry, WebhookEvent, WebhookReceiver
from flows.p2p.orchestrator import WEBHOOK_TYPES, P2PFlowOrchestrator
from flows.p2p.service import P2PService
from core.config import get_settings
from core.errors import FlowError
from core.observability import get_logger

logger = get_logger(__name__)


class AppState:
    """Long-lived objects behind the routes."""

    def __init__(
        self,
        connectors: Optional[ConnectorRegistry] = None,
        executor: Optional[ConnectorExecutor] = None,
        receiver: Optional[WebhookReceiver] = None,
        service: Optional[P2PService] = None,
    ):
        self.connectors = connectors or ConnectorRegistry()
        self.executor = executor or ConnectorExecutor()
        self.receiver = receiver or WebhookReceiver(capacity=get_settings().webhook_event_capacity)
        self.service = service or P2PService(
            P2PFlowOrchestrator(connectors=self.connectors, executor=self.executor)
        )
        bridge_webhooks_to_flows(self.receiver, self.service)


def _flow_id_of(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    return payload.get("flow_id") or payload.get("flowId")


def bridge_webhooks_to_flows(receiver: WebhookReceiver, service: P2PService) -> None:
    """Forward accepted webhooks named after a flow webhook type to that flow.

    The payload must carry ``flow_id``; the rest of the payload is passed to
    the orchestrator unchanged.
    """

    async def forward(event: WebhookEvent) -> None:
        flow_id = _flow_id_of(event.payload)
        if not flow_id:
            logger.warning(f"Webhook {event.id} ({event.event_type}) carries no flow_id")
            return
        payload: Dict[str, Any] = {k: v for k, v in event.payload.items() if k not in ("flow_id", "flowId")}
        try:
            await service.handle_webhook(flow_id, event.event_type, payload)
        except FlowError as e:
            logger.warning(f"Webhook {event.id} not applied to flow {flow_id}: {e}")

    for webhook_type in WEBHOOK_TYPES:
        receiver.on_event(webhook_type, forward)


_state: Optional[AppState] = None


def get_app_state() -> AppState:
    global _state
    if _state is None:
        _state = AppState()
    return _state


def set_app_state(state: Optional[AppState]) -> None:
    global _state
    _state = state


def get_service() -> P2PService:
    return get_app_state().service


def get_connectors() -> ConnectorRegistry:
    return get_app_state().connectors


def get_executor() -> ConnectorExecutor:
    return get_app_state().executor


def get_receiver() -> WebhookReceiver:
    return get_app_state().receiver
