"""Connector executor.

Runs one declared endpoint call (``execute``) or drains a paginated
collection (``execute_all``) against a REST connector configuration.
Composes the auth provider, field mapper, pagination handler, error mapper
and request logger.

Failures of any kind (HTTP errors, transport faults, rejected credentials,
malformed mappings) come back as a failed ``ExecutionResult``; ``execute``
does not raise.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urljoin, urlparse

import aiohttp

from connectors.rest.auth import AuthProvider, validate_auth_config
from connectors.rest.errors import ErrorMapper, is_retryable_failure, validate_error_mapping_rules
from connectors.rest.mapper import FieldMapper, to_param_string
from connectors.rest.models import (
    ApiKeyAuthConfig,
    EndpointConfig,
    ExecutionError,
    ExecutionMetadata,
    ExecutionResult,
    LoggingConfig,
    PaginationInfo,
    PaginationRequest,
    RequestContext,
    RestConnectorConfig,
    RetryConfig,
    ValidationResult,
)
from connectors.rest.pagination import PaginationHandler, validate_pagination_config
from connectors.rest.request_log import RequestLogEntry, RequestLogger
from connectors.rest.transport import AiohttpTransport, HttpRequest, HttpResponse, HttpTransport
from connectors.rest.webhooks import validate_webhook_config
from core.config import get_settings
from core.errors import ConnectorError
from core.observability import get_logger, get_metrics, with_correlation

logger = get_logger(__name__)

ENDPOINT_NOT_FOUND = "ENDPOINT_NOT_FOUND"

TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)


def build_url(base_url: str, path: str) -> str:
    base = base_url[:-1] if base_url.endswith("/") else base_url
    path_part = path if path.startswith("/") else f"/{path}"
    return f"{base}{path_part}"


def _epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


class _AttemptOutcome:
    """Result of the retry loop: a response or the last transport fault."""

    def __init__(self, response: Optional[HttpResponse] = None, error: Optional[BaseException] = None,
                 retry_count: int = 0):
        self.response = response
        self.error = error
        self.retry_count = retry_count


class ConnectorExecutor:
    """Executes calls against declared REST connector endpoints.

    Usage:
        executor = ConnectorExecutor()
        result = await executor.execute(
            config,
            RequestContext(endpoint="get_order", input={"id": "42"}, tenant_id="t-1", config_id="erp"),
        )
        if result.success:
            order = result.data
    """

    def __init__(
        self,
        transport: Optional[HttpTransport] = None,
        auth_provider: Optional[AuthProvider] = None,
        request_logger: Optional[RequestLogger] = None,
        field_mapper: Optional[FieldMapper] = None,
        pagination_handler: Optional[PaginationHandler] = None,
        error_mapper: Optional[ErrorMapper] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        settings = get_settings()
        self.default_timeout_ms = settings.http_default_timeout_ms
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.sleep = sleep or asyncio.sleep
        self.transport = transport or AiohttpTransport(settings.http_default_timeout_ms)
        self.auth_provider = auth_provider or AuthProvider(self.transport, clock=self.clock)
        self.request_logger = request_logger or RequestLogger(settings.request_log_capacity, clock=self.clock)
        self.field_mapper = field_mapper or FieldMapper()
        self.pagination_handler = pagination_handler or PaginationHandler(self.field_mapper)
        self.error_mapper = error_mapper or ErrorMapper(self.field_mapper)

    # =========================================================================
    # Single call
    # =========================================================================

    async def execute(
        self,
        config: RestConnectorConfig,
        context: RequestContext,
        pagination_request: Optional[PaginationRequest] = None,
    ) -> ExecutionResult:
        """Execute one call against ``context.endpoint``.

        Args:
            config: Connector configuration
            context: Endpoint name, input and caller identity
            pagination_request: Page to fetch when the endpoint paginates

        Returns:
            ExecutionResult; failures carry a classified ExecutionError
        """
        endpoint = config.endpoints.get(context.endpoint)
        if endpoint is None:
            return ExecutionResult.failure(
                ENDPOINT_NOT_FOUND,
                f"Endpoint '{context.endpoint}' not found in configuration",
                retryable=False,
            )

        correlation_id = context.correlation_id or f"rest-{_epoch_ms(self.clock())}"
        started = time.monotonic()

        with with_correlation(
            tenant_id=context.tenant_id,
            correlation_id=correlation_id,
            connector_config_id=context.config_id,
            endpoint=context.endpoint,
        ):
            try:
                return await self._execute_endpoint(
                    config, endpoint, context, pagination_request, correlation_id, started
                )
            except Exception as e:
                logger.exception(f"Unexpected failure executing {context.endpoint}: {e}")
                error = self.error_mapper.map_exception(e)
                return self._failed(context, error, None, self._elapsed_ms(started), 0)

    async def _execute_endpoint(
        self,
        config: RestConnectorConfig,
        endpoint: EndpointConfig,
        context: RequestContext,
        pagination_request: Optional[PaginationRequest],
        correlation_id: str,
        started: float,
    ) -> ExecutionResult:
        try:
            request = await self._build_request(config, endpoint, context, pagination_request)
        except ConnectorError as e:
            logger.error(f"Could not authenticate request: {e}")
            result = ExecutionResult.failure("AUTHENTICATION_ERROR", str(e), retryable=False,
                                             status_code=getattr(e, "status_code", None) or None)
            result.metadata = ExecutionMetadata(duration_ms=self._elapsed_ms(started))
            get_metrics().record_connector_call(context.endpoint, False, result.metadata.duration_ms,
                                                "AUTHENTICATION_ERROR")
            return result

        logging_config = self._logging_config(config, endpoint)
        record = self.request_logger.start_request(
            request.method,
            request.full_url(),
            logging_config,
            headers=request.headers,
            body=request.body,
            correlation_id=correlation_id,
        )

        outcome = await self._send_with_retry(request, endpoint.retry or config.retry, context.endpoint)
        duration_ms = self._elapsed_ms(started)

        if outcome.response is None:
            self.request_logger.log_error(
                record,
                str(outcome.error) or type(outcome.error).__name__,
                tenant_id=context.tenant_id,
                config_id=context.config_id,
                endpoint=context.endpoint,
            )
            error = self.error_mapper.map_exception(outcome.error)
            return self._failed(context, error, record.id, duration_ms, outcome.retry_count)

        response = outcome.response
        self.request_logger.log_response(
            record,
            response.status,
            logging_config,
            headers=response.headers,
            body=response.body,
            tenant_id=context.tenant_id,
            config_id=context.config_id,
            endpoint=context.endpoint,
        )

        if not response.ok:
            rules = list(endpoint.error_mappings) + list(config.error_mappings)
            error = self.error_mapper.map_http_error(response.status, response.body, rules)
            if endpoint.response_mapping and endpoint.response_mapping.error:
                mapped = self.field_mapper.apply_mappings(response.body, endpoint.response_mapping.error)
                if mapped:
                    error.details = mapped
            return self._failed(context, error, record.id, duration_ms, outcome.retry_count)

        try:
            result = self._transform_response(response, endpoint, config, pagination_request)
        except Exception as e:
            logger.error(f"Could not map response from {context.endpoint}: {e}")
            error = self.error_mapper.map_exception(e)
            return self._failed(context, error, record.id, duration_ms, outcome.retry_count)

        result.metadata = ExecutionMetadata(
            request_id=record.id,
            duration_ms=duration_ms,
            status_code=response.status,
            retry_count=outcome.retry_count,
        )
        get_metrics().record_connector_call(context.endpoint, True, duration_ms)
        return result

    @staticmethod
    def _logging_config(config: RestConnectorConfig, endpoint: EndpointConfig) -> LoggingConfig:
        """Endpoint logging settings, with the api key name always masked."""
        logging_config = endpoint.logging or config.logging or LoggingConfig()
        auth = config.auth
        if isinstance(auth, ApiKeyAuthConfig) and auth.key_name:
            mask_fields = list(logging_config.mask_fields) + [auth.key_name]
            logging_config = logging_config.model_copy(update={"mask_fields": mask_fields})
        return logging_config

    def _failed(
        self,
        context: RequestContext,
        error: ExecutionError,
        request_id: Optional[str],
        duration_ms: float,
        retry_count: int,
    ) -> ExecutionResult:
        logger.warning(
            f"Call to {context.endpoint} failed: {error.code} {error.message}",
            extra_fields={"status_code": error.status_code, "retryable": error.retryable},
        )
        get_metrics().record_connector_call(context.endpoint, False, duration_ms, error.code)
        return ExecutionResult(
            success=False,
            error=error,
            metadata=ExecutionMetadata(
                request_id=request_id,
                duration_ms=duration_ms,
                status_code=error.status_code,
                retry_count=retry_count,
            ),
        )

    async def _build_request(
        self,
        config: RestConnectorConfig,
        endpoint: EndpointConfig,
        context: RequestContext,
        pagination_request: Optional[PaginationRequest],
    ) -> HttpRequest:
        method = (endpoint.method or "GET").upper()
        url = build_url(config.base_url, endpoint.path or "")

        body = None
        query: Dict[str, str] = dict(config.default_query_params)
        headers: Dict[str, str] = {**config.default_headers, **endpoint.headers}
        path_params: Dict[str, str] = {}

        if endpoint.request_mapping:
            mapped = self.field_mapper.transform_request(context.input, endpoint.request_mapping)
            if mapped.body:
                body = mapped.body
            query.update(mapped.query)
            headers.update(mapped.headers)
            path_params = mapped.path_params
        elif method != "GET" and context.input:
            body = context.input

        url = self.field_mapper.replace_path_params(url, path_params)
        query.update(endpoint.query_params)

        pagination_config = endpoint.pagination or config.pagination
        if pagination_request and pagination_request.next_url:
            # next links are absolute and already carry their query
            url = urljoin(url, pagination_request.next_url)
            query = {}
        elif pagination_config and pagination_request:
            params = self.pagination_handler.build_params(pagination_config, pagination_request)
            query.update({k: to_param_string(v) for k, v in params.items()})

        timeout_config = endpoint.timeout or config.timeout
        timeout_ms = (timeout_config.request_timeout if timeout_config else None) or self.default_timeout_ms

        request = HttpRequest(method=method, url=url, headers=headers, query=query, body=body, timeout_ms=timeout_ms)

        if config.auth is not None and config.auth.type != "none":
            cache_key = f"{context.tenant_id}:{context.config_id}"
            request = await self.auth_provider.apply_auth(request, config.auth, cache_key)
        return request

    async def _send_with_retry(
        self, request: HttpRequest, retry_config: Optional[RetryConfig], endpoint_name: str
    ) -> _AttemptOutcome:
        retry_config = retry_config or RetryConfig()
        max_retries = retry_config.max_retries
        retry_count = 0

        while True:
            response: Optional[HttpResponse] = None
            error: Optional[BaseException] = None
            try:
                response = await self.transport.send(request)
            except TRANSPORT_ERRORS as e:
                error = e

            if response is not None and response.ok:
                return _AttemptOutcome(response=response, retry_count=retry_count)

            status = response.status if response is not None else None
            if retry_count >= max_retries or not is_retryable_failure(status, error, retry_config.retry_on):
                return _AttemptOutcome(response=response, error=error, retry_count=retry_count)

            if retry_config.retry_backoff == "exponential":
                delay_ms = retry_config.retry_delay * (2 ** retry_count)
            else:
                delay_ms = retry_config.retry_delay * (retry_count + 1)
            if response is not None:
                header_delay = self.error_mapper.get_retry_delay(response.headers, self.clock())
                if header_delay:
                    delay_ms = header_delay

            reason = f"HTTP {status}" if status is not None else (str(error) or type(error).__name__)
            logger.warning(
                f"Request failed ({reason}, attempt {retry_count + 1}/{max_retries + 1}), "
                f"retrying in {delay_ms}ms"
            )
            get_metrics().record_connector_retry(endpoint_name)
            await self.sleep(delay_ms / 1000)
            retry_count += 1

    def _transform_response(
        self,
        response: HttpResponse,
        endpoint: EndpointConfig,
        config: RestConnectorConfig,
        pagination_request: Optional[PaginationRequest],
    ) -> ExecutionResult:
        pagination_config = endpoint.pagination or config.pagination
        pagination: Optional[PaginationInfo] = None
        if pagination_config:
            page = self.pagination_handler.parse_response(
                pagination_config, response.body, response.headers, pagination_request
            )
            items: Any = page.items
            pagination = page.info
        else:
            items = response.body

        data = items
        if endpoint.response_mapping and endpoint.response_mapping.data:
            mapped = self.field_mapper.transform_response(items, endpoint.response_mapping)
            data = mapped["data"] if mapped["data"] is not None else items

        return ExecutionResult(success=True, data=data, pagination=pagination)

    def _elapsed_ms(self, started: float) -> float:
        return round((time.monotonic() - started) * 1000, 2)

    # =========================================================================
    # Paginated drain
    # =========================================================================

    async def execute_all(
        self,
        config: RestConnectorConfig,
        context: RequestContext,
        max_pages: int = 100,
        page_size: int = 100,
        delay_between_pages_ms: int = 0,
    ) -> ExecutionResult:
        """Fetch every page and concatenate the items.

        A failure part-way returns the error plus whatever was collected.
        """
        items: List[Any] = []
        request = PaginationRequest(limit=page_size)
        page_count = 0
        started = time.monotonic()

        while page_count < max_pages:
            result = await self.execute(config, context, request)
            if not result.success:
                return ExecutionResult(
                    success=False,
                    data=items or None,
                    error=result.error,
                    metadata=ExecutionMetadata(
                        request_id=f"batch-{_epoch_ms(self.clock())}",
                        duration_ms=self._elapsed_ms(started),
                        status_code=result.metadata.status_code,
                    ),
                )

            if isinstance(result.data, list):
                items.extend(result.data)
            elif result.data is not None:
                items.append(result.data)
            page_count += 1

            info = result.pagination
            if info is None or not info.has_more:
                break

            if info.next_url:
                request = PaginationRequest(next_url=info.next_url, limit=page_size)
            elif info.next_cursor:
                request = PaginationRequest(cursor=info.next_cursor, limit=page_size)
            elif info.page is not None:
                request = PaginationRequest(page=info.page + 1, page_size=page_size)
            else:
                request = PaginationRequest(offset=len(items), limit=page_size)

            if delay_between_pages_ms:
                await self.sleep(delay_between_pages_ms / 1000)

        return ExecutionResult(
            success=True,
            data=items,
            pagination=PaginationInfo(has_more=page_count >= max_pages, total=len(items)),
            metadata=ExecutionMetadata(
                request_id=f"batch-{_epoch_ms(self.clock())}",
                duration_ms=self._elapsed_ms(started),
            ),
        )

    # =========================================================================
    # Validation and logs
    # =========================================================================

    def validate_config(self, config: RestConnectorConfig) -> ValidationResult:
        errors: List[str] = []

        if not config.base_url:
            errors.append("baseUrl is required")
        else:
            parsed = urlparse(config.base_url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                errors.append("baseUrl must be a valid URL")

        if not config.endpoints:
            errors.append("At least one endpoint is required")

        for name, endpoint in config.endpoints.items():
            if not endpoint.method:
                errors.append(f"Endpoint '{name}': method is required")
            if not endpoint.path:
                errors.append(f"Endpoint '{name}': path is required")
            if endpoint.pagination:
                errors.extend(f"Endpoint '{name}': {e}" for e in validate_pagination_config(endpoint.pagination))
            if endpoint.error_mappings:
                errors.extend(f"Endpoint '{name}': {e}" for e in validate_error_mapping_rules(endpoint.error_mappings))

        if config.auth is not None:
            errors.extend(validate_auth_config(config.auth))
        if config.pagination:
            errors.extend(validate_pagination_config(config.pagination))
        if config.error_mappings:
            errors.extend(validate_error_mapping_rules(config.error_mappings))
        if config.webhook:
            errors.extend(validate_webhook_config(config.webhook, self.field_mapper))

        return ValidationResult(valid=not errors, errors=errors)

    def get_logs(
        self,
        correlation_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        config_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[RequestLogEntry]:
        return self.request_logger.get_recent_logs(correlation_id, tenant_id, config_id, since, limit)

    def get_log_stats(self) -> Dict[str, Any]:
        return self.request_logger.get_log_stats()

    async def close(self) -> None:
        await self.transport.close()
