"""
Structured Logging with Correlation IDs

Provides logging utilities that automatically include:
- tenant_id: Tenant that owns the connector call or flow
- flow_id: Links logs to a specific P2P flow instance
- correlation_id: Links connector calls, webhooks and flow steps end to end
- connector_config_id / endpoint: Identify the outbound connector call
- step: Current P2P step type

Usage:
    from core.observability.logging import get_logger, with_correlation

    logger = get_logger(__name__)

    with with_correlation(tenant_id="t-1", flow_id="f-123"):
        logger.info("Step started")  # Automatically includes correlation IDs
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# =============================================================================
# Correlation Context
# =============================================================================

@dataclass
class CorrelationContext:
    """Context for correlating logs across connector calls and flow steps."""
    tenant_id: Optional[str] = None
    flow_id: Optional[str] = None
    correlation_id: Optional[str] = None
    connector_config_id: Optional[str] = None
    endpoint: Optional[str] = None
    step: Optional[str] = None
    webhook_event_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict, excluding None values."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    def merge(self, **kwargs) -> "CorrelationContext":
        """Create a new context with merged values."""
        data = self.to_dict()
        data.update({k: v for k, v in kwargs.items() if v is not None})
        return CorrelationContext(**data)


# Context variable for async/thread-safe correlation
_correlation_context: ContextVar[CorrelationContext] = ContextVar(
    "correlation_context",
    default=CorrelationContext()
)


def get_correlation_context() -> CorrelationContext:
    """Get the current correlation context."""
    return _correlation_context.get()


@contextmanager
def with_correlation(**kwargs):
    """
    Context manager to set correlation IDs for logging.

    Usage:
        with with_correlation(flow_id="f-1", step="three_way_match"):
            logger.info("Matching")  # Will include flow_id and step
    """
    new_ctx = get_correlation_context().merge(**kwargs)
    token = _correlation_context.set(new_ctx)
    try:
        yield new_ctx
    finally:
        _correlation_context.reset(token)


# =============================================================================
# Formatters
# =============================================================================

class StructuredFormatter(logging.Formatter):
    """
    JSON formatter that includes correlation context.

    Output format:
    {
        "timestamp": "2024-01-09T12:00:00.000000+00:00",
        "level": "INFO",
        "logger": "connectors.rest.executor",
        "message": "Request completed",
        "tenant_id": "t-1",
        "correlation_id": "rest-1704801600000",
        "duration_ms": 150
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_data.update(get_correlation_context().to_dict())

        extra_fields = getattr(record, "extra_fields", None)
        if extra_fields:
            log_data.update(extra_fields)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable formatter that includes key correlation IDs.

    Output format:
    2024-01-09 12:00:00 [INFO ] flows.p2p.orchestrator [t-1/f-1234abcd/goods_receipt]: Step started
    """

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_correlation_context()

        parts = []
        if ctx.tenant_id:
            parts.append(ctx.tenant_id)
        if ctx.flow_id:
            parts.append(ctx.flow_id[:12])
        elif ctx.correlation_id:
            parts.append(ctx.correlation_id[:16])
        if ctx.step:
            parts.append(ctx.step)
        elif ctx.endpoint:
            parts.append(ctx.endpoint)
        correlation = "/".join(parts) if parts else "-"

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        msg = f"{timestamp} [{record.levelname:5}] {record.name} [{correlation}]: {record.getMessage()}"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


# =============================================================================
# Logger with Correlation Support
# =============================================================================

class CorrelatedLogger:
    """
    Logger wrapper that automatically includes correlation context.

    Also supports adding extra fields to individual log calls:
        logger.warning("Retrying", extra_fields={"attempt": 2})
    """

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(self, level: int, msg: str, *args, **kwargs):
        extra_fields = kwargs.pop("extra_fields", None) or {}
        exc_info = kwargs.pop("exc_info", None)
        if exc_info is True:
            exc_info = sys.exc_info()

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "(unknown file)",
            0,
            msg,
            args,
            exc_info or None,
        )
        record.extra_fields = extra_fields
        self._logger.handle(record)

    def debug(self, msg: str, *args, **kwargs):
        if self._logger.isEnabledFor(logging.DEBUG):
            self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        if self._logger.isEnabledFor(logging.INFO):
            self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        if self._logger.isEnabledFor(logging.WARNING):
            self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        if self._logger.isEnabledFor(logging.ERROR):
            self._log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs):
        kwargs["exc_info"] = True
        self.error(msg, *args, **kwargs)

    def log(self, level: int, msg: str, *args, **kwargs):
        if self._logger.isEnabledFor(level):
            self._log(level, msg, *args, **kwargs)

    def setLevel(self, level):
        self._logger.setLevel(level)

    def isEnabledFor(self, level):
        return self._logger.isEnabledFor(level)


# =============================================================================
# Logger Factory
# =============================================================================

_loggers: Dict[str, CorrelatedLogger] = {}
_configured = False


def configure_logging(level: Optional[int] = None, json_format: Optional[bool] = None):
    """
    Configure logging for the application.

    Args:
        level: Logging level; defaults to LOG_LEVEL from settings
        json_format: If True, use JSON format; defaults to LOG_JSON from settings
    """
    global _configured

    if _configured:
        return

    from core.config import get_settings
    settings = get_settings()
    if level is None:
        level = logging.getLevelName(settings.log_level)
        if not isinstance(level, int):
            level = logging.INFO
    if json_format is None:
        json_format = settings.log_json

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(StructuredFormatter() if json_format else HumanReadableFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(handler)

    for logger_name in ["connectors", "flows", "activities", "workflows", "api", "core"]:
        logging.getLogger(logger_name).setLevel(level)

    # Reduce noise from third-party libraries
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("temporalio").setLevel(logging.INFO)

    _configured = True


def get_logger(name: str) -> CorrelatedLogger:
    """
    Get a correlated logger for the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        CorrelatedLogger instance
    """
    if name not in _loggers:
        if not _configured:
            configure_logging()
        _loggers[name] = CorrelatedLogger(logging.getLogger(name))
    return _loggers[name]
