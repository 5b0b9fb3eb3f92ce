"""Request/response log for connector calls.

Keeps a bounded, in-memory history of outbound calls for inspection. Secrets
are masked before anything reaches the buffer or the process log.
"""

import json
import threading
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from connectors.rest.models import LoggingConfig
from core.observability import get_logger

logger = get_logger(__name__)

DEFAULT_MASK_FIELDS = [
    "password",
    "token",
    "accessToken",
    "access_token",
    "refreshToken",
    "refresh_token",
    "apiKey",
    "api_key",
    "secret",
    "authorization",
    "x-api-key",
    "cookie",
    "set-cookie",
    "clientSecret",
    "client_secret",
]

MASKED_VALUE = "***MASKED***"

_LEVELS = {"debug": "debug", "info": "info", "warn": "warning", "error": "error"}


def mask_value(value: str) -> str:
    """Keep the first and last two characters of a secret."""
    if len(value) <= 4:
        return "****"
    return f"{value[:2]}****{value[-2:]}"


def _is_sensitive(key: str, mask_fields: Iterable[str]) -> bool:
    lowered = key.lower()
    return any(f.lower() in lowered for f in mask_fields)


def mask_headers(headers: Dict[str, str], extra_fields: Optional[List[str]] = None) -> Dict[str, str]:
    mask_fields = DEFAULT_MASK_FIELDS + list(extra_fields or [])
    return {k: mask_value(v) if _is_sensitive(k, mask_fields) else v for k, v in headers.items()}


def mask_url(url: str, extra_fields: Optional[List[str]] = None) -> str:
    """Mask sensitive query parameter values, e.g. an api_key placed in the query."""
    parts = urlsplit(url)
    if not parts.query:
        return url
    mask_fields = DEFAULT_MASK_FIELDS + list(extra_fields or [])
    pairs = [
        (k, mask_value(v) if _is_sensitive(k, mask_fields) else v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
    ]
    return urlunsplit(parts._replace(query=urlencode(pairs, safe="*")))


def mask_object(value: Any, mask_fields: List[str]) -> Any:
    """Recursively mask sensitive keys in dicts and lists."""
    if isinstance(value, list):
        return [mask_object(item, mask_fields) for item in value]
    if isinstance(value, dict):
        masked = {}
        for key, item in value.items():
            if _is_sensitive(str(key), mask_fields):
                masked[key] = mask_value(item) if isinstance(item, str) else MASKED_VALUE
            else:
                masked[key] = mask_object(item, mask_fields)
        return masked
    return value


def mask_body(body: Any, extra_fields: Optional[List[str]] = None, max_size: Optional[int] = None) -> Any:
    """Mask and size-limit a body for logging."""
    if not body:
        return body
    if isinstance(body, str):
        if max_size and len(body) > max_size:
            return body[:max_size] + "...[truncated]"
        return body
    if isinstance(body, (dict, list)):
        masked = mask_object(body, DEFAULT_MASK_FIELDS + list(extra_fields or []))
        if max_size:
            serialized = json.dumps(masked, default=str)
            if len(serialized) > max_size:
                return {"_truncated": True, "_size": len(serialized)}
        return masked
    return body


@dataclass
class RequestRecord:
    """An in-flight request, returned by ``start_request``."""
    id: str
    method: str
    url: str
    timestamp: datetime
    correlation_id: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    body: Any = None


@dataclass
class RequestLogEntry:
    """One completed (or failed) call in the buffer."""
    id: str
    timestamp: datetime
    request: Dict[str, Any]
    correlation_id: Optional[str] = None
    tenant_id: Optional[str] = None
    config_id: Optional[str] = None
    endpoint: Optional[str] = None
    response: Optional[Dict[str, Any]] = None
    duration_ms: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "correlation_id": self.correlation_id,
            "tenant_id": self.tenant_id,
            "config_id": self.config_id,
            "endpoint": self.endpoint,
            "request": self.request,
            "response": self.response,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


class RequestLogger:
    """Bounded log of connector requests.

    Usage:
        record = request_logger.start_request("GET", url, logging_config, correlation_id="c-1")
        request_logger.log_response(record, 200, logging_config, body=data, tenant_id="t-1")
    """

    def __init__(self, capacity: int = 1000, clock: Optional[Callable[[], datetime]] = None):
        self.capacity = capacity
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: Deque[RequestLogEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    # =========================================================================
    # Recording
    # =========================================================================

    def start_request(
        self,
        method: str,
        url: str,
        config: Optional[LoggingConfig] = None,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        correlation_id: Optional[str] = None,
    ) -> RequestRecord:
        config = config or LoggingConfig()
        record = RequestRecord(
            id=str(uuid.uuid4()),
            method=method,
            url=mask_url(url, config.mask_fields),
            timestamp=self.clock(),
            correlation_id=correlation_id,
        )
        if config.log_headers and headers:
            record.headers = mask_headers(headers, config.mask_fields)
        if config.log_body and body:
            record.body = mask_body(body, config.mask_fields, config.max_body_size)

        if config.log_requests:
            self._emit(
                config.log_level,
                f"REST Request: {method} {record.url}",
                {"request_id": record.id, "headers": record.headers, "body": record.body},
            )
        return record

    def log_response(
        self,
        record: RequestRecord,
        status_code: int,
        config: Optional[LoggingConfig] = None,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        tenant_id: Optional[str] = None,
        config_id: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> RequestLogEntry:
        config = config or LoggingConfig()
        duration_ms = self._elapsed_ms(record)

        response: Dict[str, Any] = {"status_code": status_code}
        if config.log_headers and headers:
            response["headers"] = mask_headers(headers, config.mask_fields)
        if config.log_body and body:
            response["body"] = mask_body(body, config.mask_fields, config.max_body_size)

        if config.log_responses:
            if status_code >= 500:
                level = "error"
            elif status_code >= 400:
                level = "warn"
            else:
                level = config.log_level
            self._emit(
                level,
                f"REST Response: {status_code} ({duration_ms:.0f}ms)",
                {"request_id": record.id, "status_code": status_code, "duration_ms": duration_ms},
            )

        entry = RequestLogEntry(
            id=record.id,
            timestamp=record.timestamp,
            correlation_id=record.correlation_id,
            tenant_id=tenant_id,
            config_id=config_id,
            endpoint=endpoint,
            request=self._request_dict(record),
            response=response,
            duration_ms=duration_ms,
        )
        self._store(entry)
        return entry

    def log_error(
        self,
        record: RequestRecord,
        error: str,
        tenant_id: Optional[str] = None,
        config_id: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> RequestLogEntry:
        duration_ms = self._elapsed_ms(record)
        logger.error(
            f"Request failed: {record.method} {record.url} - {error}",
            extra_fields={"request_id": record.id, "duration_ms": duration_ms},
        )
        entry = RequestLogEntry(
            id=record.id,
            timestamp=record.timestamp,
            correlation_id=record.correlation_id,
            tenant_id=tenant_id,
            config_id=config_id,
            endpoint=endpoint,
            request=self._request_dict(record),
            duration_ms=duration_ms,
            error=error,
        )
        self._store(entry)
        return entry

    # =========================================================================
    # Queries
    # =========================================================================

    def get_recent_logs(
        self,
        correlation_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        config_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[RequestLogEntry]:
        """Filtered entries, newest first."""
        with self._lock:
            entries = list(self._entries)
        if correlation_id:
            entries = [e for e in entries if e.correlation_id == correlation_id]
        if tenant_id:
            entries = [e for e in entries if e.tenant_id == tenant_id]
        if config_id:
            entries = [e for e in entries if e.config_id == config_id]
        if since:
            entries = [e for e in entries if e.timestamp >= since]
        entries.reverse()
        return entries[:limit]

    def get_log_by_id(self, log_id: str) -> Optional[RequestLogEntry]:
        with self._lock:
            return next((e for e in self._entries if e.id == log_id), None)

    def clear_logs(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_log_stats(self) -> Dict[str, Any]:
        with self._lock:
            entries = list(self._entries)

        status_code_counts: Dict[int, int] = {}
        error_count = 0
        durations = []
        for entry in entries:
            if entry.duration_ms is not None:
                durations.append(entry.duration_ms)
            status = entry.response.get("status_code") if entry.response else None
            if status is not None:
                status_code_counts[status] = status_code_counts.get(status, 0) + 1
            if entry.error:
                error_count += 1

        return {
            "total_logs": len(entries),
            "error_count": error_count,
            "avg_duration_ms": round(sum(durations) / len(durations)) if durations else 0,
            "status_code_counts": status_code_counts,
        }

    # =========================================================================
    # Helpers
    # =========================================================================

    def _store(self, entry: RequestLogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def _elapsed_ms(self, record: RequestRecord) -> float:
        return (self.clock() - record.timestamp).total_seconds() * 1000

    @staticmethod
    def _request_dict(record: RequestRecord) -> Dict[str, Any]:
        return {
            "method": record.method,
            "url": record.url,
            "headers": record.headers,
            "body": record.body,
        }

    @staticmethod
    def _emit(level: str, message: str, details: Dict[str, Any]) -> None:
        log_method = getattr(logger, _LEVELS.get(level, "debug"))
        log_method(message, extra_fields={k: v for k, v in details.items() if v is not None})
