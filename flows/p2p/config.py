"""Per-tenant P2P flow configuration.

A tenant's configuration is created from ``DEFAULT_P2P_FLOW_CONFIG`` on first
access and changed afterwards through partial updates. Keys in partial
updates may be snake_case or camelCase.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel
from pydantic.alias_generators import to_snake

from flows.p2p.store import ConfigRepository, InMemoryConfigRepository
from flows.p2p.types import (
    STEP_ORDER,
    MatchTolerances,
    P2PFlowConfig,
    P2PFlowFeatures,
    P2PFlowSettings,
    P2PStepConfig,
    P2PStepType,
)
from core.config import get_settings
from core.observability import get_logger

logger = get_logger(__name__)


DEFAULT_P2P_FLOW_CONFIG = P2PFlowConfig(
    tenant_id="",
    name="Default P2P Flow",
    description="Standard Procure-to-Pay flow",
    enabled=True,
    features=P2PFlowFeatures(),
    steps=[P2PStepConfig(step_type=step, enabled=True, order=i + 1) for i, step in enumerate(STEP_ORDER)],
    settings=P2PFlowSettings(),
    match_tolerances=MatchTolerances(),
)

# Keys whose values are replaced rather than merged
_OPAQUE_KEYS = {"metadata", "conditions", "retry_policy"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_flow_config(tenant_id: str, now: Optional[datetime] = None) -> P2PFlowConfig:
    """Fresh copy of the default configuration for a tenant."""
    now = now or _utcnow()
    config = DEFAULT_P2P_FLOW_CONFIG.model_copy(
        deep=True,
        update={"tenant_id": tenant_id, "created_at": now, "updated_at": now},
    )
    config.settings.default_timeout_ms = get_settings().p2p_step_timeout_ms
    return config


def _as_dict(value: Any) -> Dict[str, Any]:
    if isinstance(value, BaseModel):
        return value.model_dump(exclude_unset=True)
    return dict(value or {})


def deep_merge(base: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``changes`` into a copy of ``base``, normalizing keys to snake_case."""
    merged = dict(base)
    for raw_key, value in changes.items():
        key = to_snake(raw_key)
        if key not in _OPAQUE_KEYS and isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def merge_config(base: P2PFlowConfig, overrides: Optional[Dict[str, Any]]) -> P2PFlowConfig:
    """Apply overrides to a configuration.

    Step overrides are matched to base steps by ``step_type``; overrides for
    step types missing from the base are appended.
    """
    if not overrides:
        return base.model_copy(deep=True)

    base_dict = base.model_dump()
    overrides = {to_snake(k): v for k, v in _as_dict(overrides).items()}
    step_overrides = overrides.pop("steps", None)

    merged = deep_merge(base_dict, overrides)
    if step_overrides:
        steps = [dict(s) for s in base_dict["steps"]]
        for override in step_overrides:
            override = _as_dict(override)
            step_type = override.get("step_type", override.get("stepType"))
            target = next((s for s in steps if s["step_type"] == P2PStepType(step_type)), None)
            if target is None:
                steps.append(override)
            else:
                target.update(deep_merge(target, override))
        merged["steps"] = steps

    return P2PFlowConfig.model_validate(merged)


class P2PFlowConfigStore:
    """Reads and updates tenant flow configuration.

    Usage:
        store = P2PFlowConfigStore()
        config = await store.get_config("t-1")
        await store.update_features("t-1", {"enable_auto_payment": True})
    """

    def __init__(
        self,
        repository: Optional[ConfigRepository] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository or InMemoryConfigRepository()
        self.clock = clock or _utcnow

    async def get_config(self, tenant_id: str) -> P2PFlowConfig:
        """Tenant configuration, created from the default on first access."""
        config = await self.repository.get(tenant_id)
        if config is None:
            config = default_flow_config(tenant_id, self.clock())
            await self.repository.put(config)
            logger.info(f"Created default P2P config for tenant {tenant_id}")
        return config

    async def save_config(self, tenant_id: str, config: P2PFlowConfig) -> P2PFlowConfig:
        existing = await self.repository.get(tenant_id)
        saved = config.model_copy(
            deep=True,
            update={
                "tenant_id": tenant_id,
                "created_at": existing.created_at if existing else config.created_at or self.clock(),
                "updated_at": self.clock(),
            },
        )
        await self.repository.put(saved)
        logger.info(f"Saved P2P config for tenant {tenant_id}")
        return saved

    async def update_match_tolerances(self, tenant_id: str, tolerances: Dict[str, Any]) -> P2PFlowConfig:
        return await self._update_section(tenant_id, "match_tolerances", tolerances)

    async def update_features(self, tenant_id: str, features: Dict[str, Any]) -> P2PFlowConfig:
        return await self._update_section(tenant_id, "features", features)

    async def update_settings(self, tenant_id: str, settings: Dict[str, Any]) -> P2PFlowConfig:
        return await self._update_section(tenant_id, "settings", settings)

    async def update_step_config(
        self,
        tenant_id: str,
        step_type: P2PStepType,
        changes: Dict[str, Any],
    ) -> P2PFlowConfig:
        config = await self.get_config(tenant_id)
        step_override = {**_as_dict(changes), "step_type": P2PStepType(step_type)}
        updated = merge_config(config, {"steps": [step_override]})
        return await self._store(updated)

    async def reset_config(self, tenant_id: str) -> P2PFlowConfig:
        config = default_flow_config(tenant_id, self.clock())
        await self.repository.put(config)
        logger.info(f"Reset P2P config for tenant {tenant_id}")
        return config

    async def list_tenants(self) -> List[str]:
        return await self.repository.list_tenant_ids()

    async def _update_section(self, tenant_id: str, section: str, changes: Dict[str, Any]) -> P2PFlowConfig:
        config = await self.get_config(tenant_id)
        updated = merge_config(config, {section: _as_dict(changes)})
        return await self._store(updated)

    async def _store(self, config: P2PFlowConfig) -> P2PFlowConfig:
        config = config.model_copy(update={"updated_at": self.clock()})
        await self.repository.put(config)
        return config
