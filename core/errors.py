"""Exception hierarchy for the integration engine.

Connector calls report expected failures through ``ExecutionResult`` and never
raise them. The classes here cover the cases that must surface loudly:
misconfiguration, credential acquisition failures and invalid operator
transitions on flows.
"""

from typing import Optional


class IntegrationError(Exception):
    """Base exception for all integration engine errors."""
    pass


class ConfigurationError(IntegrationError):
    """Invalid or missing configuration."""
    pass


# =============================================================================
# Connector errors
# =============================================================================

class ConnectorError(IntegrationError):
    """Base exception for connector-level failures that must propagate."""
    pass


class AuthenticationFailedError(ConnectorError):
    """Token request or refresh was rejected by the authorization server."""

    def __init__(self, message: str, status_code: int = 0, response_body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class UnsupportedGrantTypeError(ConnectorError):
    """OAuth2 grant type that cannot be fulfilled without user interaction."""

    def __init__(self, grant_type: str):
        super().__init__(f"Unsupported OAuth2 grant type: {grant_type}")
        self.grant_type = grant_type


# =============================================================================
# Flow errors
# =============================================================================

class FlowError(IntegrationError):
    """Base exception for flow orchestration caller errors."""

    def __init__(self, message: str, flow_id: Optional[str] = None):
        super().__init__(message)
        self.flow_id = flow_id


class FlowNotFoundError(FlowError):
    """No flow with the given id exists."""

    def __init__(self, flow_id: str):
        super().__init__(f"Flow {flow_id} not found", flow_id)


class InvalidFlowStateError(FlowError):
    """Requested transition is not allowed from the flow's current state."""
    pass


class StepNotFoundError(FlowError):
    """Step type is not part of the flow."""
    pass


class FlowLimitExceededError(FlowError):
    """Tenant already has the maximum number of active flows."""
    pass
