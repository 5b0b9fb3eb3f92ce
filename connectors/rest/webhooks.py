"""Inbound webhook verification and dispatch.

Each call runs signature check, timestamp freshness, JSON parse, event type
extraction and payload extraction in order, stopping at the first failure.
Accepted events go into a bounded buffer and are dispatched to handlers
registered for their type and to wildcard ("*") handlers.
"""

import hashlib
import hmac
import inspect
import json
import secrets
import string
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

from connectors.rest.mapper import FieldMapper
from connectors.rest.models import WebhookConfig
from core.observability import get_logger, get_metrics, with_correlation

logger = get_logger(__name__)

WILDCARD = "*"

SUPPORTED_ALGORITHMS = {
    "hmac-sha1": hashlib.sha1,
    "hmac-sha256": hashlib.sha256,
    "hmac-sha512": hashlib.sha512,
}

EVENT_TYPE_HEADERS = (
    "x-event-type",
    "x-webhook-event",
    "x-github-event",
    "x-stripe-event",
    "x-gitlab-event",
)

EVENT_TYPE_PATHS = ("$.event", "$.type", "$.eventType", "$.event_type", "$.action")

_ID_ALPHABET = string.ascii_lowercase + string.digits


@dataclass
class WebhookEvent:
    """An accepted webhook call. Not modified after creation."""
    id: str
    timestamp: datetime
    tenant_id: str
    config_id: str
    event_type: str
    payload: Any
    raw_body: str
    headers: Dict[str, str] = field(default_factory=dict)
    verified: bool = True
    source: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "tenant_id": self.tenant_id,
            "config_id": self.config_id,
            "event_type": self.event_type,
            "payload": self.payload,
            "verified": self.verified,
            "source": self.source,
        }


@dataclass
class WebhookResult:
    valid: bool
    error: Optional[str] = None
    event: Optional[WebhookEvent] = None


WebhookHandler = Callable[[WebhookEvent], Union[Awaitable[None], None]]


def get_header(headers: Dict[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def compute_signature(raw_body: Union[str, bytes], secret: str, algorithm: str = "hmac-sha256") -> str:
    digest = SUPPORTED_ALGORITHMS[algorithm]
    body = raw_body.encode("utf-8") if isinstance(raw_body, str) else raw_body
    return hmac.new(secret.encode("utf-8"), body, digest).hexdigest()


def normalize_signature(signature: str, algorithm: str) -> str:
    """Strip an algorithm prefix such as ``sha256=`` and lowercase."""
    prefix = algorithm.replace("hmac-", "") + "="
    normalized = signature.strip()
    if normalized.lower().startswith(prefix):
        normalized = normalized[len(prefix):]
    return normalized.lower()


class WebhookReceiver:
    """Verifies and dispatches inbound webhooks.

    Usage:
        receiver = WebhookReceiver()
        receiver.on_event("invoice.paid", handle_invoice_paid)
        result = await receiver.process_webhook(config, "t-1", "crm", "crm", raw_body, headers)
    """

    def __init__(
        self,
        capacity: int = 1000,
        field_mapper: Optional[FieldMapper] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.capacity = capacity
        self.field_mapper = field_mapper or FieldMapper()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._events: Deque[WebhookEvent] = deque(maxlen=capacity)
        self._handlers: Dict[str, List[WebhookHandler]] = {}
        self._lock = threading.Lock()

    # =========================================================================
    # Processing
    # =========================================================================

    async def process_webhook(
        self,
        config: WebhookConfig,
        tenant_id: str,
        config_id: str,
        source: str,
        raw_body: Union[str, bytes],
        headers: Dict[str, str],
    ) -> WebhookResult:
        """Verify, record and dispatch one webhook call.

        The signature is computed over ``raw_body`` exactly as received; bytes
        are decoded as UTF-8 only after verification.

        Returns:
            WebhookResult with ``valid`` False and an error message on rejection
        """
        now = self.clock()

        error = self._check_signature(config, raw_body, headers)
        if error is None:
            error = self._check_timestamp(config, headers, now)
        if error is not None:
            return self._reject(tenant_id, config_id, error)

        if isinstance(raw_body, bytes):
            try:
                raw_body = raw_body.decode("utf-8")
            except UnicodeDecodeError:
                return self._reject(tenant_id, config_id, "Invalid body encoding: expected UTF-8")

        try:
            body = json.loads(raw_body)
        except (json.JSONDecodeError, TypeError):
            return self._reject(tenant_id, config_id, "Invalid JSON payload")

        event_type = self._extract_event_type(config, body, headers)
        if not event_type:
            return self._reject(tenant_id, config_id, "Could not determine event type")

        payload = body
        if config.payload_path:
            extracted = self.field_mapper.extract_value(body, config.payload_path)
            if extracted is not None:
                payload = extracted

        event = WebhookEvent(
            id=self._generate_event_id(now),
            timestamp=now,
            tenant_id=tenant_id,
            config_id=config_id,
            event_type=event_type,
            payload=payload,
            raw_body=raw_body,
            headers=dict(headers),
            verified=True,
            source=source,
        )
        with self._lock:
            self._events.append(event)

        get_metrics().record_webhook(accepted=True, event_type=event_type)
        logger.info(
            f"Webhook accepted: {event_type}",
            extra_fields={"webhook_event_id": event.id, "tenant_id": tenant_id, "config_id": config_id},
        )

        await self._dispatch(event)
        return WebhookResult(valid=True, event=event)

    def _reject(self, tenant_id: str, config_id: str, error: str) -> WebhookResult:
        get_metrics().record_webhook(accepted=False)
        logger.warning(
            f"Webhook rejected: {error}",
            extra_fields={"tenant_id": tenant_id, "config_id": config_id},
        )
        return WebhookResult(valid=False, error=error)

    def _check_signature(self, config: WebhookConfig, raw_body: Union[str, bytes], headers: Dict[str, str]) -> Optional[str]:
        if not config.secret or not config.signature_header:
            return None

        signature = get_header(headers, config.signature_header)
        if not signature:
            return f"Missing signature header: {config.signature_header}"

        algorithm = config.signature_algorithm or "hmac-sha256"
        if algorithm not in SUPPORTED_ALGORITHMS:
            return f"Unsupported signature algorithm: {algorithm}"

        expected = compute_signature(raw_body, config.secret, algorithm)
        supplied = normalize_signature(signature, algorithm)
        if not hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
            return "Invalid signature"
        return None

    def _check_timestamp(self, config: WebhookConfig, headers: Dict[str, str], now: datetime) -> Optional[str]:
        if not config.timestamp_header or not config.timestamp_tolerance:
            return None

        raw = get_header(headers, config.timestamp_header)
        if not raw:
            return f"Missing timestamp header: {config.timestamp_header}"

        sent_at = self._parse_timestamp(raw.strip())
        if sent_at is None:
            return "Invalid timestamp format"

        age = abs((now - sent_at).total_seconds())
        if age > config.timestamp_tolerance:
            return f"Timestamp too old: {age:g}s (max: {config.timestamp_tolerance}s)"
        return None

    @staticmethod
    def _parse_timestamp(raw: str) -> Optional[datetime]:
        if raw.lstrip("-").isdigit():
            value = int(raw)
            try:
                seconds = value / 1000 if value > 1e12 else value
                return datetime.fromtimestamp(seconds, tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                return None
        text = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _extract_event_type(self, config: WebhookConfig, body: Any, headers: Dict[str, str]) -> Optional[str]:
        if config.event_type_path:
            value = self.field_mapper.extract_value(body, config.event_type_path)
            if value:
                return str(value)

        for name in EVENT_TYPE_HEADERS:
            value = get_header(headers, name)
            if value:
                return value

        for path in EVENT_TYPE_PATHS:
            value = self.field_mapper.extract_value(body, path)
            if value:
                return str(value)
        return None

    @staticmethod
    def _generate_event_id(now: datetime) -> str:
        suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
        return f"wh_{int(now.timestamp() * 1000)}_{suffix}"

    # =========================================================================
    # Handlers
    # =========================================================================

    def on_event(self, event_type: str, handler: WebhookHandler) -> None:
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def off_event(self, event_type: str, handler: WebhookHandler) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    async def _dispatch(self, event: WebhookEvent) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, []))
            if event.event_type != WILDCARD:
                handlers += self._handlers.get(WILDCARD, [])

        with with_correlation(tenant_id=event.tenant_id, webhook_event_id=event.id):
            for handler in handlers:
                try:
                    result = handler(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception(f"Error handling webhook event {event.id}")

    # =========================================================================
    # Queries
    # =========================================================================

    def get_events(
        self,
        tenant_id: Optional[str] = None,
        config_id: Optional[str] = None,
        event_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[WebhookEvent]:
        """Buffered events, newest first."""
        with self._lock:
            events = list(self._events)
        if tenant_id:
            events = [e for e in events if e.tenant_id == tenant_id]
        if config_id:
            events = [e for e in events if e.config_id == config_id]
        if event_type:
            events = [e for e in events if e.event_type == event_type]
        if since:
            events = [e for e in events if e.timestamp >= since]
        events.reverse()
        return events[:limit]

    def get_event_by_id(self, event_id: str) -> Optional[WebhookEvent]:
        with self._lock:
            return next((e for e in self._events if e.id == event_id), None)


def validate_webhook_config(config: WebhookConfig, field_mapper: Optional[FieldMapper] = None) -> List[str]:
    field_mapper = field_mapper or FieldMapper()
    errors = []
    if not config.enabled:
        return errors
    if config.secret and not config.signature_header:
        errors.append("signatureHeader is required when secret is provided")
    if config.signature_algorithm and config.signature_algorithm not in SUPPORTED_ALGORITHMS:
        errors.append("Invalid signatureAlgorithm")
    if config.timestamp_tolerance and not config.timestamp_header:
        errors.append("timestampHeader is required when timestampTolerance is provided")
    if config.event_type_path:
        valid, error = field_mapper.validate_json_path(config.event_type_path)
        if not valid:
            errors.append(f"Invalid eventTypePath: {error}")
    if config.payload_path:
        valid, error = field_mapper.validate_json_path(config.payload_path)
        if not valid:
            errors.append(f"Invalid payloadPath: {error}")
    return errors
