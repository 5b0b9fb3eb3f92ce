"""Step handler contract shared by the nine P2P steps."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from connectors.rest import ConnectorExecutor, ExecutionResult, RequestContext, RestConnectorConfig
from flows.p2p.types import (
    MatchTolerances,
    P2PFlowFeatures,
    P2PFlowInstance,
    P2PFlowSettings,
    P2PStepConfig,
    P2PStepResult,
    P2PStepType,
)
from core.observability import get_logger

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StepConnector:
    """A tenant connector bound for use by step handlers."""
    executor: ConnectorExecutor
    config: RestConnectorConfig
    config_id: str
    tenant_id: Optional[str] = None

    def has_endpoint(self, name: str) -> bool:
        return name in self.config.endpoints

    async def call(
        self,
        endpoint: str,
        input: Dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> ExecutionResult:
        context = RequestContext(
            endpoint=endpoint,
            input=input,
            tenant_id=self.tenant_id,
            config_id=self.config_id,
            correlation_id=correlation_id,
        )
        return await self.executor.execute(self.config, context)


@dataclass
class StepContext:
    tenant_id: str
    correlation_id: str
    match_tolerances: MatchTolerances = field(default_factory=MatchTolerances)
    features: P2PFlowFeatures = field(default_factory=P2PFlowFeatures)
    settings: P2PFlowSettings = field(default_factory=P2PFlowSettings)
    connector: Optional[StepConnector] = None
    clock: Callable[[], datetime] = _utcnow

    def connector_for(self, endpoint: str) -> Optional[StepConnector]:
        """The bound connector if it declares ``endpoint``."""
        if self.connector is not None and self.connector.has_endpoint(endpoint):
            return self.connector
        return None


def connector_failure(result: ExecutionResult, action: str) -> P2PStepResult:
    """Step failure carrying a connector error's code and retryability."""
    error = result.error
    if error is None:
        return P2PStepResult.fail(f"{action} failed", "EXECUTION_ERROR", retryable=True)
    return P2PStepResult.fail(
        f"{action} failed: {error.message}",
        error.code,
        retryable=error.retryable,
        output={"status_code": error.status_code},
    )


class StepHandler(ABC):
    """Base class for P2P step handlers.

    Subclasses implement ``run``. ``execute`` converts unexpected exceptions
    into a retryable ``<STEP>_ERROR`` failure.
    """

    step_type: P2PStepType

    async def validate(self, flow: P2PFlowInstance, step_config: P2PStepConfig) -> bool:
        """Whether the step may run at all."""
        return True

    def can_retry(self, error_code: str, attempt: int) -> Optional[bool]:
        """Retry decision for a failure, or None to use the step's retry policy."""
        return None

    async def execute(
        self,
        flow: P2PFlowInstance,
        step_config: P2PStepConfig,
        context: StepContext,
    ) -> P2PStepResult:
        try:
            return await self.run(flow, step_config, context)
        except Exception as e:
            logger.exception(f"Step {self.step_type.value} raised for flow {flow.id}")
            return P2PStepResult.fail(str(e), f"{self.step_type.value.upper()}_ERROR", retryable=True)

    @abstractmethod
    async def run(
        self,
        flow: P2PFlowInstance,
        step_config: P2PStepConfig,
        context: StepContext,
    ) -> P2PStepResult:
        pass
