"""Structured execution log for P2P flows.

Entries are kept in a ``FlowLogRepository`` and mirrored to the process
logger with the flow's correlation fields.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

from flows.p2p.types import P2PFlowInstance, P2PFlowLogEntry, P2PStepType
from core.observability import get_logger

logger = get_logger(__name__)

DEFAULT_LOG_CAPACITY = 10000

_LEVELS = {"debug": "debug", "info": "info", "warn": "warning", "error": "error"}


class FlowLogRepository(ABC):
    """Append-only store of flow log entries."""

    @abstractmethod
    async def append(self, entry: P2PFlowLogEntry) -> None:
        pass

    @abstractmethod
    async def entries(self) -> List[P2PFlowLogEntry]:
        """All retained entries, oldest first."""
        pass

    @abstractmethod
    async def remove_flow(self, flow_id: str) -> int:
        """Drop a flow's entries and return how many were removed."""
        pass


class InMemoryFlowLogRepository(FlowLogRepository):
    """Bounded in-memory store; the oldest entries are evicted first."""

    def __init__(self, capacity: int = DEFAULT_LOG_CAPACITY):
        self.capacity = capacity
        self._entries: Deque[P2PFlowLogEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    async def append(self, entry: P2PFlowLogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    async def entries(self) -> List[P2PFlowLogEntry]:
        with self._lock:
            return list(self._entries)

    async def remove_flow(self, flow_id: str) -> int:
        with self._lock:
            kept = [e for e in self._entries if e.flow_id != flow_id]
            removed = len(self._entries) - len(kept)
            self._entries = deque(kept, maxlen=self.capacity)
        return removed


class P2PFlowLog:
    """Writes and queries flow log entries.

    Usage:
        flow_log = P2PFlowLog()
        await flow_log.log(flow, "info", "Flow started", {"po_number": flow.po_number})
        entries = await flow_log.get_flow_logs(flow.id, level="error")
    """

    def __init__(
        self,
        repository: Optional[FlowLogRepository] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository or InMemoryFlowLogRepository()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def log(
        self,
        flow: P2PFlowInstance,
        level: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> P2PFlowLogEntry:
        return await self._write(flow, level, message, data, step=None)

    async def log_step(
        self,
        flow: P2PFlowInstance,
        step: P2PStepType,
        level: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> P2PFlowLogEntry:
        return await self._write(flow, level, message, data, step=step)

    async def _write(
        self,
        flow: P2PFlowInstance,
        level: str,
        message: str,
        data: Optional[Dict[str, Any]],
        step: Optional[P2PStepType],
    ) -> P2PFlowLogEntry:
        entry = P2PFlowLogEntry(
            id=str(uuid.uuid4()),
            flow_id=flow.id,
            tenant_id=flow.tenant_id,
            level=level,
            message=message,
            timestamp=self.clock(),
            step=step,
            data=dict(data or {}),
            correlation_id=flow.correlation_id,
        )
        await self.repository.append(entry)

        prefix = f"[{flow.id}]" + (f"[{step.value}]" if step else "")
        log_method = getattr(logger, _LEVELS.get(level, "info"))
        log_method(
            f"{prefix} {message}",
            extra_fields={"flow_id": flow.id, "tenant_id": flow.tenant_id, "step": step.value if step else None},
        )
        return entry

    async def get_flow_logs(
        self,
        flow_id: str,
        level: Optional[str] = None,
        step: Optional[P2PStepType] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[P2PFlowLogEntry]:
        """A flow's entries in chronological order."""
        entries = [e for e in await self.repository.entries() if e.flow_id == flow_id]
        if level:
            entries = [e for e in entries if e.level == level]
        if step:
            entries = [e for e in entries if e.step == step]
        if since:
            entries = [e for e in entries if e.timestamp >= since]
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    async def get_tenant_logs(
        self,
        tenant_id: str,
        level: Optional[str] = None,
        limit: int = 100,
    ) -> List[P2PFlowLogEntry]:
        """A tenant's entries, newest first."""
        entries = [e for e in await self.repository.entries() if e.tenant_id == tenant_id]
        if level:
            entries = [e for e in entries if e.level == level]
        entries.reverse()
        return entries[:limit]

    async def clear_flow_logs(self, flow_id: str) -> int:
        return await self.repository.remove_flow(flow_id)
