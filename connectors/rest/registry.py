"""Registered connector configurations, keyed by tenant and config id."""

import threading
from typing import Dict, List, Optional, Tuple

from connectors.rest.models import RestConnectorConfig
from core.observability import get_logger

logger = get_logger(__name__)


class ConnectorRegistry:
    """Thread-safe lookup of connector configurations.

    Usage:
        registry = ConnectorRegistry()
        registry.register("t-1", "erp", RestConnectorConfig.model_validate(raw))
        config = registry.get("t-1", "erp")
    """

    def __init__(self):
        self._configs: Dict[Tuple[str, str], RestConnectorConfig] = {}
        self._lock = threading.Lock()

    def register(self, tenant_id: str, config_id: str, config: RestConnectorConfig) -> None:
        with self._lock:
            self._configs[(tenant_id, config_id)] = config
        logger.info(f"Registered connector {config_id} for tenant {tenant_id}")

    def get(self, tenant_id: str, config_id: str) -> Optional[RestConnectorConfig]:
        with self._lock:
            return self._configs.get((tenant_id, config_id))

    def remove(self, tenant_id: str, config_id: str) -> bool:
        with self._lock:
            return self._configs.pop((tenant_id, config_id), None) is not None

    def list_config_ids(self, tenant_id: str) -> List[str]:
        with self._lock:
            return [config_id for (tenant, config_id) in self._configs if tenant == tenant_id]
