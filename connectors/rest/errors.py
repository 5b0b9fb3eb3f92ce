"""Error classification for connector calls.

Maps HTTP statuses and transport faults onto a fixed taxonomy with a
retryability flag, using per-endpoint rules first and status-code buckets
second. Also hosts the single retry predicate shared by the executor.
"""

import asyncio
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

import aiohttp

from connectors.rest.mapper import FieldMapper
from connectors.rest.models import DEFAULT_RETRY_STATUS_CODES, ErrorMappingRule, ExecutionError


# Error codes
CONNECTION_ERROR = "CONNECTION_ERROR"
TIMEOUT_ERROR = "TIMEOUT_ERROR"
AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
AUTHORIZATION_ERROR = "AUTHORIZATION_ERROR"
NOT_FOUND_ERROR = "NOT_FOUND_ERROR"
VALIDATION_ERROR = "VALIDATION_ERROR"
RATE_LIMIT_ERROR = "RATE_LIMIT_ERROR"
SERVER_ERROR = "SERVER_ERROR"
UNKNOWN_ERROR = "UNKNOWN_ERROR"

_NETWORK_KEYWORDS = ("network", "econnrefused", "enotfound", "econnreset", "socket", "connection refused")
_TIMEOUT_KEYWORDS = ("timeout", "timed out", "etimedout")

MESSAGE_PATHS = (
    "$.message",
    "$.error.message",
    "$.error",
    "$.errors[0].message",
    "$.errors[0]",
    "$.detail",
    "$.details",
    "$.msg",
    "$.reason",
)


def is_retryable_status_code(status_code: int, retry_on: Optional[Iterable[int]] = None) -> bool:
    codes = DEFAULT_RETRY_STATUS_CODES if retry_on is None else retry_on
    return status_code in codes


def _is_timeout_fault(error: BaseException) -> bool:
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return True
    message = str(error).lower()
    return any(keyword in message for keyword in _TIMEOUT_KEYWORDS)


def _is_network_fault(error: BaseException) -> bool:
    if isinstance(error, (aiohttp.ClientConnectionError, ConnectionError)):
        return True
    message = str(error).lower()
    return any(keyword in message for keyword in _NETWORK_KEYWORDS)


def is_retryable_failure(
    status_code: Optional[int] = None,
    error: Optional[BaseException] = None,
    retry_on: Optional[Iterable[int]] = None,
) -> bool:
    """Decide whether a failed attempt should be retried.

    HTTP responses are judged by status code; transport faults (no status)
    are retried when they look like connection or timeout problems.
    """
    if status_code is not None:
        return is_retryable_status_code(status_code, retry_on)
    if error is None:
        return False
    return _is_timeout_fault(error) or _is_network_fault(error)


class ErrorMapper:
    """Classifies connector failures into ``ExecutionError`` values.

    Usage:
        mapper = ErrorMapper()
        error = mapper.map_http_error(404, {"message": "no such order"}, rules)
        error.code  # NOT_FOUND_ERROR
    """

    def __init__(self, field_mapper: Optional[FieldMapper] = None):
        self.field_mapper = field_mapper or FieldMapper()

    # =========================================================================
    # Mapping
    # =========================================================================

    def map_error(
        self,
        status_code: Optional[int] = None,
        response_body: Any = None,
        rules: Sequence[ErrorMappingRule] = (),
        error: Optional[BaseException] = None,
    ) -> ExecutionError:
        """Classify either an HTTP failure or a transport fault."""
        if status_code is not None:
            return self.map_http_error(status_code, response_body, rules)
        return self.map_exception(error)

    def map_http_error(
        self,
        status_code: int,
        response_body: Any = None,
        rules: Sequence[ErrorMappingRule] = (),
    ) -> ExecutionError:
        for rule in rules:
            if self._rule_matches(rule, status_code, response_body):
                return self._apply_rule(rule, status_code, response_body)
        return self.map_by_status_code(status_code, response_body)

    def map_exception(self, error: Optional[BaseException]) -> ExecutionError:
        message = str(error) if error is not None else ""
        if error is not None and _is_timeout_fault(error):
            return ExecutionError(
                code=TIMEOUT_ERROR,
                message="Request timed out",
                retryable=True,
                details={"original_error": message},
            )
        if error is not None and _is_network_fault(error):
            return ExecutionError(
                code=CONNECTION_ERROR,
                message="Failed to connect to the server",
                retryable=True,
                details={"original_error": message},
            )
        return ExecutionError(
            code=UNKNOWN_ERROR,
            message=message or "An unknown error occurred",
            retryable=False,
        )

    def map_by_status_code(self, status_code: int, response_body: Any = None) -> ExecutionError:
        """Default buckets used when no rule matches."""
        message = self.extract_error_message(response_body)
        retryable = is_retryable_status_code(status_code)

        if status_code == 400:
            code, default = VALIDATION_ERROR, "Bad request"
        elif status_code == 401:
            code, default = AUTHENTICATION_ERROR, "Authentication required"
        elif status_code == 403:
            code, default = AUTHORIZATION_ERROR, "Access denied"
        elif status_code == 404:
            code, default = NOT_FOUND_ERROR, "Resource not found"
        elif status_code == 429:
            code, default = RATE_LIMIT_ERROR, "Rate limit exceeded"
        elif status_code >= 500:
            code, default = SERVER_ERROR, f"Server error ({status_code})"
        elif status_code >= 400:
            code, default = VALIDATION_ERROR, f"Client error ({status_code})"
        else:
            code, default = UNKNOWN_ERROR, f"Unexpected status ({status_code})"

        return ExecutionError(
            code=code,
            message=message or default,
            retryable=retryable,
            status_code=status_code,
            details=response_body,
        )

    def extract_error_message(self, response_body: Any) -> Optional[str]:
        """Find a human-readable message in common error body shapes."""
        if response_body is None:
            return None
        if isinstance(response_body, str):
            return response_body or None
        for path in MESSAGE_PATHS:
            value = self.field_mapper.extract_value(response_body, path)
            if isinstance(value, str) and value:
                return value
        return None

    # =========================================================================
    # Rules
    # =========================================================================

    def _rule_matches(self, rule: ErrorMappingRule, status_code: int, response_body: Any) -> bool:
        if rule.status_code is not None:
            codes = rule.status_code if isinstance(rule.status_code, list) else [rule.status_code]
            if status_code not in codes:
                return False

        if rule.status_range is not None:
            if not rule.status_range.min <= status_code <= rule.status_range.max:
                return False

        if rule.error_code_path and response_body is not None and not isinstance(response_body, str):
            error_code = self.field_mapper.extract_value(response_body, rule.error_code_path)
            if error_code is not None and rule.error_code_match is not None:
                matches = rule.error_code_match if isinstance(rule.error_code_match, list) else [rule.error_code_match]
                if str(error_code) not in [str(m) for m in matches]:
                    return False

        return True

    def _apply_rule(self, rule: ErrorMappingRule, status_code: int, response_body: Any) -> ExecutionError:
        message = None
        if rule.message_path and response_body is not None and not isinstance(response_body, str):
            value = self.field_mapper.extract_value(response_body, rule.message_path)
            if value is not None:
                message = str(value)
        if not message:
            message = rule.default_message or "An error occurred"

        retryable = rule.retryable if rule.retryable is not None else is_retryable_status_code(status_code)

        return ExecutionError(
            code=rule.mapped_code or self.map_by_status_code(status_code).code,
            message=message,
            retryable=retryable,
            status_code=status_code,
            details=response_body,
        )

    # =========================================================================
    # Retry delay
    # =========================================================================

    def get_retry_delay(self, headers: Dict[str, str], now: Optional[datetime] = None) -> Optional[int]:
        """Milliseconds to wait according to rate-limit headers, if any."""
        now = now or datetime.now(timezone.utc)
        lowered = {k.lower(): v for k, v in (headers or {}).items()}

        retry_after = lowered.get("retry-after")
        if retry_after:
            retry_after = retry_after.strip()
            if retry_after.isdigit():
                return int(retry_after) * 1000
            try:
                when = parsedate_to_datetime(retry_after)
            except (TypeError, ValueError):
                when = None
            if when is not None:
                if when.tzinfo is None:
                    when = when.replace(tzinfo=timezone.utc)
                return max(0, int((when - now).total_seconds() * 1000))

        reset = lowered.get("x-ratelimit-reset")
        if reset:
            try:
                value = float(reset.strip())
            except ValueError:
                return None
            now_ms = now.timestamp() * 1000
            if value > 1e10:
                return max(0, int(value - now_ms))
            if value > 1e9:
                return max(0, int(value * 1000 - now_ms))
            return max(0, int(value * 1000))

        return None


# =============================================================================
# Validation
# =============================================================================

def validate_error_mapping_rules(rules: Sequence[ErrorMappingRule]) -> List[str]:
    errors = []
    for i, rule in enumerate(rules):
        if rule.status_code is None and rule.status_range is None and not rule.error_code_path:
            errors.append(
                f"Rule {i}: Must have at least one matching condition "
                f"(statusCode, statusRange, or errorCodePath)"
            )
        if rule.status_range is not None and rule.status_range.min > rule.status_range.max:
            errors.append(f"Rule {i}: statusRange.min cannot be greater than statusRange.max")
    return errors


