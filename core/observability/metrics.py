"""
Metrics Collection for the Integration Engine

Collects and exposes metrics for:
- Connector calls (by endpoint and outcome, retries)
- P2P flow lifecycle (started, completed, failed, cancelled)
- Step and request timings (average, p95)
- Webhook ingress (accepted, rejected)

Metrics are held in memory; `get_summary()` is JSON-serializable so it can be
exposed by the API or scraped by an external collector.
"""

import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, List, Optional


# =============================================================================
# Metric Data Classes
# =============================================================================

@dataclass
class ConnectorMetrics:
    """Metrics for outbound connector calls."""
    calls: int = 0
    succeeded: int = 0
    failed: int = 0
    retries: int = 0

    by_endpoint: Dict[str, Dict[str, int]] = field(
        default_factory=lambda: defaultdict(lambda: {"calls": 0, "succeeded": 0, "failed": 0, "retries": 0})
    )
    by_error_code: Dict[str, int] = field(default_factory=lambda: defaultdict(int))


@dataclass
class FlowMetrics:
    """Metrics for P2P flow lifecycle."""
    started: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    in_progress: int = 0

    step_outcomes: Dict[str, Dict[str, int]] = field(
        default_factory=lambda: defaultdict(lambda: {"completed": 0, "failed": 0, "skipped": 0, "retried": 0})
    )


@dataclass
class WebhookMetrics:
    """Metrics for inbound webhooks."""
    accepted: int = 0
    rejected: int = 0
    by_event_type: Dict[str, int] = field(default_factory=lambda: defaultdict(int))


@dataclass
class TimingMetrics:
    """Processing time metrics."""
    max_samples: int = 1000
    by_stage: Dict[str, List[float]] = field(default_factory=lambda: defaultdict(list))

    def add_sample(self, stage: str, duration_ms: float):
        samples = self.by_stage[stage]
        samples.append(duration_ms)
        if len(samples) > self.max_samples:
            self.by_stage[stage] = samples[-self.max_samples:]

    def get_average(self, stage: str) -> float:
        samples = self.by_stage.get(stage, [])
        return statistics.mean(samples) if samples else 0.0

    def get_p95(self, stage: str) -> float:
        """Get 95th percentile processing time."""
        samples = self.by_stage.get(stage, [])
        if not samples:
            return 0.0
        sorted_samples = sorted(samples)
        idx = int(len(sorted_samples) * 0.95)
        return sorted_samples[min(idx, len(sorted_samples) - 1)]


# =============================================================================
# Metrics Collector (Singleton)
# =============================================================================

class MetricsCollector:
    """
    Thread-safe metrics collector.

    Usage:
        metrics = MetricsCollector.instance()
        metrics.record_connector_call("list_orders", success=True, duration_ms=120)
        metrics.record_flow_started("flow-1")
    """

    _instance: Optional["MetricsCollector"] = None
    _lock = Lock()

    def __init__(self):
        self.connectors = ConnectorMetrics()
        self.flows = FlowMetrics()
        self.webhooks = WebhookMetrics()
        self.timings = TimingMetrics()
        self._lock = Lock()

    @classmethod
    def instance(cls) -> "MetricsCollector":
        """Get singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton (tests)."""
        with cls._lock:
            cls._instance = None

    # =========================================================================
    # Connector Metrics
    # =========================================================================

    def record_connector_call(
        self,
        endpoint: str,
        success: bool,
        duration_ms: float = 0.0,
        error_code: Optional[str] = None,
    ):
        """Record the outcome of one logical connector call."""
        with self._lock:
            stats = self.connectors.by_endpoint[endpoint]
            self.connectors.calls += 1
            stats["calls"] += 1
            if success:
                self.connectors.succeeded += 1
                stats["succeeded"] += 1
            else:
                self.connectors.failed += 1
                stats["failed"] += 1
                if error_code:
                    self.connectors.by_error_code[error_code] += 1
            self.timings.add_sample(f"connector.{endpoint}", duration_ms)

    def record_connector_retry(self, endpoint: str):
        with self._lock:
            self.connectors.retries += 1
            self.connectors.by_endpoint[endpoint]["retries"] += 1

    # =========================================================================
    # Flow Metrics
    # =========================================================================

    def record_flow_started(self, flow_id: str):
        with self._lock:
            self.flows.started += 1
            self.flows.in_progress += 1

    def record_flow_finished(self, flow_id: str, status: str, duration_ms: Optional[float] = None):
        """Record a flow reaching a terminal status (completed, failed, cancelled)."""
        with self._lock:
            if status == "completed":
                self.flows.completed += 1
            elif status == "failed":
                self.flows.failed += 1
            elif status == "cancelled":
                self.flows.cancelled += 1
            self.flows.in_progress = max(0, self.flows.in_progress - 1)
            if duration_ms is not None:
                self.timings.add_sample("flow", duration_ms)

    def record_step_outcome(self, step_type: str, outcome: str, duration_ms: Optional[float] = None):
        """Record a step outcome: completed, failed, skipped or retried."""
        with self._lock:
            self.flows.step_outcomes[step_type][outcome] += 1
            if duration_ms is not None:
                self.timings.add_sample(f"step.{step_type}", duration_ms)

    # =========================================================================
    # Webhook Metrics
    # =========================================================================

    def record_webhook(self, accepted: bool, event_type: Optional[str] = None):
        with self._lock:
            if accepted:
                self.webhooks.accepted += 1
                if event_type:
                    self.webhooks.by_event_type[event_type] += 1
            else:
                self.webhooks.rejected += 1

    # =========================================================================
    # Summary
    # =========================================================================

    def get_timing_stats(self, stage: str) -> Dict[str, float]:
        """Get timing statistics for a stage."""
        with self._lock:
            return {
                "average_ms": self.timings.get_average(stage),
                "p95_ms": self.timings.get_p95(stage),
                "sample_count": len(self.timings.by_stage.get(stage, [])),
            }

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        with self._lock:
            return {
                "connectors": {
                    "calls": self.connectors.calls,
                    "succeeded": self.connectors.succeeded,
                    "failed": self.connectors.failed,
                    "retries": self.connectors.retries,
                    "by_endpoint": {k: dict(v) for k, v in self.connectors.by_endpoint.items()},
                    "by_error_code": dict(self.connectors.by_error_code),
                },
                "flows": {
                    "started": self.flows.started,
                    "completed": self.flows.completed,
                    "failed": self.flows.failed,
                    "cancelled": self.flows.cancelled,
                    "in_progress": self.flows.in_progress,
                    "steps": {k: dict(v) for k, v in self.flows.step_outcomes.items()},
                },
                "webhooks": {
                    "accepted": self.webhooks.accepted,
                    "rejected": self.webhooks.rejected,
                    "by_event_type": dict(self.webhooks.by_event_type),
                },
                "timings": {
                    stage: {
                        "average_ms": self.timings.get_average(stage),
                        "p95_ms": self.timings.get_p95(stage),
                    }
                    for stage in self.timings.by_stage.keys()
                },
            }


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return MetricsCollector.instance()
