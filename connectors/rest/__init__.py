"""Configuration-driven REST connector framework.

A connector is declared as data (``RestConnectorConfig``): base URL, auth,
endpoints with request/response mappings, pagination, retry and error rules.
``ConnectorExecutor`` runs calls against it; ``WebhookReceiver`` handles the
inbound direction.
"""

from connectors.rest.models import (
    RestConnectorConfig,
    EndpointConfig,
    FieldMapping,
    RequestMapping,
    ResponseMapping,
    PaginationConfig,
    ErrorMappingRule,
    RetryConfig,
    TimeoutConfig,
    LoggingConfig,
    WebhookConfig,
    NoAuthConfig,
    BasicAuthConfig,
    BearerAuthConfig,
    ApiKeyAuthConfig,
    OAuth2AuthConfig,
    RequestContext,
    PaginationRequest,
    PaginationInfo,
    ExecutionError,
    ExecutionMetadata,
    ExecutionResult,
    ValidationResult,
)
from connectors.rest.mapper import FieldMapper, MappedRequest
from connectors.rest.transport import HttpTransport, AiohttpTransport, HttpRequest, HttpResponse
from connectors.rest.auth import AuthProvider, validate_auth_config
from connectors.rest.pagination import PaginationHandler, PaginatedResponse, validate_pagination_config
from connectors.rest.errors import (
    ErrorMapper,
    is_retryable_failure,
    is_retryable_status_code,
    validate_error_mapping_rules,
)
from connectors.rest.request_log import RequestLogger, RequestLogEntry
from connectors.rest.webhooks import WebhookReceiver, WebhookEvent, WebhookResult, validate_webhook_config
from connectors.rest.executor import ConnectorExecutor, ENDPOINT_NOT_FOUND
from connectors.rest.registry import ConnectorRegistry

__all__ = [
    # Configuration
    "RestConnectorConfig",
    "EndpointConfig",
    "FieldMapping",
    "RequestMapping",
    "ResponseMapping",
    "PaginationConfig",
    "ErrorMappingRule",
    "RetryConfig",
    "TimeoutConfig",
    "LoggingConfig",
    "WebhookConfig",
    "NoAuthConfig",
    "BasicAuthConfig",
    "BearerAuthConfig",
    "ApiKeyAuthConfig",
    "OAuth2AuthConfig",
    # Per-call types
    "RequestContext",
    "PaginationRequest",
    "PaginationInfo",
    "ExecutionError",
    "ExecutionMetadata",
    "ExecutionResult",
    "ValidationResult",
    # Components
    "FieldMapper",
    "MappedRequest",
    "HttpTransport",
    "AiohttpTransport",
    "HttpRequest",
    "HttpResponse",
    "AuthProvider",
    "PaginationHandler",
    "PaginatedResponse",
    "ErrorMapper",
    "RequestLogger",
    "RequestLogEntry",
    "WebhookReceiver",
    "WebhookEvent",
    "WebhookResult",
    "ConnectorExecutor",
    "ConnectorRegistry",
    # Validators and predicates
    "validate_auth_config",
    "validate_pagination_config",
    "validate_error_mapping_rules",
    "validate_webhook_config",
    "is_retryable_failure",
    "is_retryable_status_code",
    "ENDPOINT_NOT_FOUND",
]
