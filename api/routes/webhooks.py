"""Webhook ingress.

Partners post to ``/webhooks/{tenant_id}/{config_id}``; the call is verified
against the webhook settings of the registered connector config.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.dependencies import get_connectors, get_receiver
from connectors.rest import ConnectorRegistry, WebhookReceiver


router = APIRouter()


@router.get("/events")
async def list_webhook_events(
    tenant_id: Optional[str] = None,
    config_id: Optional[str] = None,
    event_type: Optional[str] = None,
    limit: int = 100,
    receiver: WebhookReceiver = Depends(get_receiver),
) -> List[Dict[str, Any]]:
    """Recently accepted webhook events, newest first."""
    events = receiver.get_events(tenant_id=tenant_id, config_id=config_id, event_type=event_type, limit=limit)
    return [event.to_dict() for event in events]


@router.post("/{tenant_id}/{config_id}")
async def receive_webhook(
    tenant_id: str,
    config_id: str,
    request: Request,
    connectors: ConnectorRegistry = Depends(get_connectors),
    receiver: WebhookReceiver = Depends(get_receiver),
):
    """Verify and dispatch one webhook call."""
    config = connectors.get(tenant_id, config_id)
    if config is None or config.webhook is None or not config.webhook.enabled:
        raise HTTPException(status_code=404, detail=f"No webhook configured for {tenant_id}/{config_id}")

    raw_body = await request.body()
    result = await receiver.process_webhook(
        config.webhook,
        tenant_id,
        config_id,
        config_id,
        raw_body,
        dict(request.headers),
    )
    if not result.valid:
        return JSONResponse(status_code=401, content={"accepted": False, "error": result.error})

    return {"accepted": True, "event_id": result.event.id, "event_type": result.event.event_type}
