"""
Observability Module for the Integration Engine

Provides:
- Structured logging with correlation IDs
- Metrics collection (connector calls, flows, steps, webhooks)
"""

from core.observability.metrics import (
    MetricsCollector,
    get_metrics,
)

from core.observability.logging import (
    get_logger,
    configure_logging,
    CorrelationContext,
    get_correlation_context,
    with_correlation,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "get_metrics",
    # Logging
    "get_logger",
    "configure_logging",
    "CorrelationContext",
    "get_correlation_context",
    "with_correlation",
]
