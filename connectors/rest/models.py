"""Connector configuration models and execution result types.

Connector configurations are declared data (usually stored as JSON per tenant),
so they are pydantic models that accept both snake_case and camelCase keys.
Per-call values (request context, results) are plain dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing_extensions import Annotated


DEFAULT_RETRY_STATUS_CODES: List[int] = [408, 429, 500, 502, 503, 504]


class ConnectorModel(BaseModel):
    """Base model for connector configuration structures."""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


# =============================================================================
# Authentication
# =============================================================================

class NoAuthConfig(ConnectorModel):
    type: Literal["none"] = "none"


class BasicAuthConfig(ConnectorModel):
    type: Literal["basic"] = "basic"
    username: Optional[str] = None
    password: Optional[str] = None


class BearerAuthConfig(ConnectorModel):
    type: Literal["bearer"] = "bearer"
    token: Optional[str] = None
    prefix: str = "Bearer"


class ApiKeyAuthConfig(ConnectorModel):
    type: Literal["api_key"] = "api_key"
    api_key: Optional[str] = None
    key_name: Optional[str] = None
    placement: Optional[Literal["header", "query", "cookie"]] = None


class OAuth2AuthConfig(ConnectorModel):
    """OAuth2 settings. Only client_credentials can be fulfilled unattended."""
    type: Literal["oauth2"] = "oauth2"
    grant_type: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    token_url: Optional[str] = None
    refresh_url: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)
    extra_params: Dict[str, str] = Field(default_factory=dict)


AuthConfig = Annotated[
    Union[NoAuthConfig, BasicAuthConfig, BearerAuthConfig, ApiKeyAuthConfig, OAuth2AuthConfig],
    Field(discriminator="type"),
]


# =============================================================================
# Field mapping
# =============================================================================

class FieldMapping(ConnectorModel):
    """Copy one value from a JSON path into a (possibly dotted) target key."""
    source: str = ""
    target: str = ""
    default_value: Any = None
    transform: Optional[str] = None  # string|number|boolean|date|array|object


class RequestMapping(ConnectorModel):
    body: List[FieldMapping] = Field(default_factory=list)
    query: List[FieldMapping] = Field(default_factory=list)
    headers: List[FieldMapping] = Field(default_factory=list)
    path: List[FieldMapping] = Field(default_factory=list)


class ResponseMapping(ConnectorModel):
    data: List[FieldMapping] = Field(default_factory=list)
    meta: List[FieldMapping] = Field(default_factory=list)
    error: List[FieldMapping] = Field(default_factory=list)


# =============================================================================
# Pagination
# =============================================================================

PaginationType = Literal["offset", "cursor", "page", "link", "none"]


class PaginationConfig(ConnectorModel):
    """Pagination declaration; which fields apply depends on ``type``."""
    type: PaginationType = "none"
    items_path: Optional[str] = None

    # offset
    offset_param: Optional[str] = None
    limit_param: Optional[str] = None
    default_limit: Optional[int] = None
    max_limit: Optional[int] = None
    total_path: Optional[str] = None

    # cursor
    cursor_param: Optional[str] = None
    next_cursor_path: Optional[str] = None
    prev_cursor_path: Optional[str] = None
    has_more_path: Optional[str] = None

    # link
    next_link_path: Optional[str] = None
    prev_link_path: Optional[str] = None
    parse_link_header: bool = False

    # page
    page_param: Optional[str] = None
    page_size_param: Optional[str] = None
    default_page_size: Optional[int] = None
    max_page_size: Optional[int] = None
    total_pages_path: Optional[str] = None
    total_items_path: Optional[str] = None


# =============================================================================
# Errors, retry, timeout, logging
# =============================================================================

class StatusRange(ConnectorModel):
    min: int
    max: int


class ErrorMappingRule(ConnectorModel):
    """Classify an HTTP failure. Every present condition must hold."""
    status_code: Optional[Union[int, List[int]]] = None
    status_range: Optional[StatusRange] = None
    error_code_path: Optional[str] = None
    error_code_match: Optional[Union[str, List[str]]] = None
    message_path: Optional[str] = None
    retryable: Optional[bool] = None
    mapped_code: Optional[str] = None
    default_message: Optional[str] = None


class RetryConfig(ConnectorModel):
    max_retries: int = 3
    retry_delay: int = 1000  # milliseconds
    retry_backoff: Literal["linear", "exponential"] = "exponential"
    retry_on: List[int] = Field(default_factory=lambda: list(DEFAULT_RETRY_STATUS_CODES))


class TimeoutConfig(ConnectorModel):
    request_timeout: Optional[int] = None  # milliseconds


class LoggingConfig(ConnectorModel):
    log_requests: bool = True
    log_responses: bool = True
    log_headers: bool = False
    log_body: bool = True
    mask_fields: List[str] = Field(default_factory=list)
    max_body_size: int = 10000
    log_level: Literal["debug", "info", "warn", "error"] = "info"


class WebhookConfig(ConnectorModel):
    enabled: bool = True
    secret: Optional[str] = None
    signature_header: Optional[str] = None
    signature_algorithm: str = "hmac-sha256"
    timestamp_header: Optional[str] = None
    timestamp_tolerance: Optional[int] = None  # seconds
    event_type_path: Optional[str] = None
    payload_path: Optional[str] = None


# =============================================================================
# Endpoints and connector
# =============================================================================

class EndpointConfig(ConnectorModel):
    name: Optional[str] = None
    method: Optional[str] = None
    path: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    query_params: Dict[str, str] = Field(default_factory=dict)
    request_mapping: Optional[RequestMapping] = None
    response_mapping: Optional[ResponseMapping] = None
    pagination: Optional[PaginationConfig] = None
    error_mappings: List[ErrorMappingRule] = Field(default_factory=list)
    retry: Optional[RetryConfig] = None
    timeout: Optional[TimeoutConfig] = None
    logging: Optional[LoggingConfig] = None


class RestConnectorConfig(ConnectorModel):
    """Declarative description of one third-party REST API."""
    base_url: str = ""
    auth: Optional[AuthConfig] = None
    default_headers: Dict[str, str] = Field(default_factory=dict)
    default_query_params: Dict[str, str] = Field(default_factory=dict)
    endpoints: Dict[str, EndpointConfig] = Field(default_factory=dict)
    pagination: Optional[PaginationConfig] = None
    error_mappings: List[ErrorMappingRule] = Field(default_factory=list)
    retry: Optional[RetryConfig] = None
    timeout: Optional[TimeoutConfig] = None
    logging: Optional[LoggingConfig] = None
    webhook: Optional[WebhookConfig] = None

    def has_endpoint(self, name: str) -> bool:
        return name in self.endpoints


# =============================================================================
# Per-call types
# =============================================================================

@dataclass
class RequestContext:
    """Identifies one logical connector call."""
    endpoint: str
    input: Dict[str, Any] = field(default_factory=dict)
    tenant_id: Optional[str] = None
    config_id: Optional[str] = None
    correlation_id: Optional[str] = None
    user_id: Optional[str] = None


@dataclass
class PaginationRequest:
    """Requested page; unset fields fall back to the pagination config defaults."""
    limit: Optional[int] = None
    offset: Optional[int] = None
    cursor: Optional[str] = None
    page: Optional[int] = None
    page_size: Optional[int] = None
    next_url: Optional[str] = None


@dataclass
class PaginationInfo:
    has_more: bool = False
    next_cursor: Optional[str] = None
    prev_cursor: Optional[str] = None
    next_url: Optional[str] = None
    prev_url: Optional[str] = None
    total: Optional[int] = None
    page: Optional[int] = None
    page_size: Optional[int] = None
    total_pages: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class ExecutionError:
    code: str
    message: str
    retryable: bool = False
    status_code: Optional[int] = None
    details: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "status_code": self.status_code,
            "details": self.details,
        }


@dataclass
class ExecutionMetadata:
    request_id: Optional[str] = None
    duration_ms: float = 0.0
    status_code: Optional[int] = None
    retry_count: int = 0


@dataclass
class ExecutionResult:
    """Outcome of a connector call. Expected failures are reported, not raised."""
    success: bool
    data: Any = None
    error: Optional[ExecutionError] = None
    pagination: Optional[PaginationInfo] = None
    metadata: ExecutionMetadata = field(default_factory=ExecutionMetadata)

    @classmethod
    def failure(cls, code: str, message: str, retryable: bool = False, **kwargs) -> "ExecutionResult":
        return cls(success=False, error=ExecutionError(code=code, message=message, retryable=retryable, **kwargs))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error.to_dict() if self.error else None,
            "pagination": self.pagination.to_dict() if self.pagination else None,
            "metadata": {
                "request_id": self.metadata.request_id,
                "duration_ms": self.metadata.duration_ms,
                "status_code": self.metadata.status_code,
                "retry_count": self.metadata.retry_count,
            },
        }


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
