"""Connector management endpoints.

Validates and registers declarative REST connector configurations and
exposes the executor's request log.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from api.dependencies import get_connectors, get_executor
from connectors.rest import ConnectorExecutor, ConnectorRegistry, RestConnectorConfig


router = APIRouter()


class ValidationResponse(BaseModel):
    """Result of validating a connector configuration."""
    valid: bool
    errors: List[str] = Field(default_factory=list)


class RegisterResponse(BaseModel):
    tenant_id: str
    config_id: str
    endpoints: List[str]
    webhook_enabled: bool


@router.post("/validate", response_model=ValidationResponse)
async def validate_connector(
    config: RestConnectorConfig,
    executor: ConnectorExecutor = Depends(get_executor),
) -> ValidationResponse:
    """Check a configuration without registering it."""
    result = executor.validate_config(config)
    return ValidationResponse(valid=result.valid, errors=result.errors)


@router.put("/{tenant_id}/{config_id}", response_model=RegisterResponse)
async def register_connector(
    tenant_id: str,
    config_id: str,
    config: RestConnectorConfig,
    connectors: ConnectorRegistry = Depends(get_connectors),
    executor: ConnectorExecutor = Depends(get_executor),
):
    """Register (or replace) a tenant connector. Invalid configs are rejected with 422."""
    result = executor.validate_config(config)
    if not result.valid:
        return JSONResponse(status_code=422, content={"valid": False, "errors": result.errors})

    connectors.register(tenant_id, config_id, config)
    return RegisterResponse(
        tenant_id=tenant_id,
        config_id=config_id,
        endpoints=sorted(config.endpoints),
        webhook_enabled=bool(config.webhook and config.webhook.enabled),
    )


@router.get("/logs")
async def connector_logs(
    correlation_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    config_id: Optional[str] = None,
    limit: int = 100,
    executor: ConnectorExecutor = Depends(get_executor),
) -> List[Dict[str, Any]]:
    """Recent connector requests, newest first."""
    entries = executor.get_logs(correlation_id=correlation_id, tenant_id=tenant_id, config_id=config_id, limit=limit)
    return [entry.to_dict() for entry in entries]


@router.get("/logs/stats")
async def connector_log_stats(executor: ConnectorExecutor = Depends(get_executor)) -> Dict[str, Any]:
    return executor.get_log_stats()


@router.get("/{tenant_id}")
async def list_connectors(
    tenant_id: str,
    connectors: ConnectorRegistry = Depends(get_connectors),
) -> Dict[str, Any]:
    """Config ids registered for a tenant."""
    return {"tenant_id": tenant_id, "config_ids": connectors.list_config_ids(tenant_id)}
