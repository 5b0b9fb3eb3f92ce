"""Storage interfaces for P2P flows and per-tenant flow configuration.

Provides:
- FlowRepository / InMemoryFlowRepository: flow instances by id
- ConfigRepository / InMemoryConfigRepository: flow configuration by tenant

The orchestrator and config store only talk to these interfaces, so a
database-backed implementation can replace the in-memory ones.
"""

import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from flows.p2p.types import P2PFlowConfig, P2PFlowInstance, P2PFlowStatus


class FlowRepository(ABC):
    """Abstract base class for flow instance storage."""

    @abstractmethod
    async def get(self, flow_id: str) -> Optional[P2PFlowInstance]:
        pass

    @abstractmethod
    async def put(self, flow: P2PFlowInstance) -> None:
        """Insert or replace a flow."""
        pass

    @abstractmethod
    async def list(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[P2PFlowStatus] = None,
    ) -> List[P2PFlowInstance]:
        """Flows in insertion order, optionally filtered."""
        pass


class InMemoryFlowRepository(FlowRepository):
    """Process-local flow storage."""

    def __init__(self):
        self._flows: Dict[str, P2PFlowInstance] = {}
        self._lock = threading.Lock()

    async def get(self, flow_id: str) -> Optional[P2PFlowInstance]:
        with self._lock:
            return self._flows.get(flow_id)

    async def put(self, flow: P2PFlowInstance) -> None:
        with self._lock:
            self._flows[flow.id] = flow

    async def list(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[P2PFlowStatus] = None,
    ) -> List[P2PFlowInstance]:
        with self._lock:
            flows = list(self._flows.values())
        if tenant_id:
            flows = [f for f in flows if f.tenant_id == tenant_id]
        if status:
            flows = [f for f in flows if f.status == status]
        return flows


class ConfigRepository(ABC):
    """Abstract base class for per-tenant flow configuration storage."""

    @abstractmethod
    async def get(self, tenant_id: str) -> Optional[P2PFlowConfig]:
        pass

    @abstractmethod
    async def put(self, config: P2PFlowConfig) -> None:
        pass

    @abstractmethod
    async def delete(self, tenant_id: str) -> bool:
        pass

    @abstractmethod
    async def list_tenant_ids(self) -> List[str]:
        pass


class InMemoryConfigRepository(ConfigRepository):

    def __init__(self):
        self._configs: Dict[str, P2PFlowConfig] = {}
        self._lock = threading.Lock()

    async def get(self, tenant_id: str) -> Optional[P2PFlowConfig]:
        with self._lock:
            return self._configs.get(tenant_id)

    async def put(self, config: P2PFlowConfig) -> None:
        with self._lock:
            self._configs[config.tenant_id] = config

    async def delete(self, tenant_id: str) -> bool:
        with self._lock:
            return self._configs.pop(tenant_id, None) is not None

    async def list_tenant_ids(self) -> List[str]:
        with self._lock:
            return list(self._configs)
