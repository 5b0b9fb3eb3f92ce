"""Shared fixtures: scripted HTTP transport, fixed clock, instant sleep."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

import pytest

from connectors.rest.transport import HttpRequest, HttpResponse, HttpTransport
from core.config import reset_settings
from core.observability import MetricsCollector


FIXED_NOW = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeTransport(HttpTransport):
    """Records requests and replays scripted responses or exceptions in order.

    Once the script runs out the last entry is repeated.
    """

    def __init__(self, *script: Union[HttpResponse, BaseException]):
        self.script: List[Union[HttpResponse, BaseException]] = list(script)
        self.requests: List[HttpRequest] = []
        self.closed = False

    def add(self, *entries: Union[HttpResponse, BaseException]) -> "FakeTransport":
        self.script.extend(entries)
        return self

    async def send(self, request: HttpRequest) -> HttpResponse:
        self.requests.append(request)
        if not self.script:
            return HttpResponse(status=200, body={})
        entry = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(entry, BaseException):
            raise entry
        return entry

    async def close(self) -> None:
        self.closed = True


def json_response(status: int, body: Any = None, headers: Optional[Dict[str, str]] = None) -> HttpResponse:
    return HttpResponse(status=status, headers=headers or {}, body=body, text="" if body is None else str(body))


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSleep:
    """Async sleep replacement that records requested delays (seconds)."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture(autouse=True)
def fresh_state(monkeypatch):
    """Isolate settings and metrics between tests."""
    monkeypatch.delenv("TOKEN_ENCRYPTION_KEY", raising=False)
    reset_settings()
    MetricsCollector.reset()
    yield
    reset_settings()
    MetricsCollector.reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


def sample_po(**overrides) -> Dict[str, Any]:
    """Two-line purchase order whose totals add up."""
    po = {
        "po_id": "po-1001",
        "po_number": "PO-1001",
        "vendor_id": "V-42",
        "vendor_name": "Acme Supplies",
        "buyer_id": "B-7",
        "subtotal": "1500.00",
        "tax": "0",
        "shipping": "0",
        "total": "1500.00",
        "currency": "USD",
        "items": [
            {"line_number": 1, "sku": "WID-1", "description": "Widget", "quantity": 10,
             "unit_price": "100.00", "total": "1000.00"},
            {"line_number": 2, "sku": "GAD-2", "description": "Gadget", "quantity": 5,
             "unit_price": "100.00", "total": "500.00"},
        ],
    }
    po.update(overrides)
    return po


def sample_receipt(quantities=(10, 5), rejected=(0, 0)) -> Dict[str, Any]:
    return {
        "receipt_id": "GR-1",
        "po_id": "po-1001",
        "po_number": "PO-1001",
        "status": "complete",
        "items": [
            {"line_number": i + 1, "po_line_number": i + 1, "quantity_received": q, "quantity_rejected": r}
            for i, (q, r) in enumerate(zip(quantities, rejected))
        ],
    }


def sample_invoice(quantities=(10, 5), prices=("100.00", "100.00")) -> Dict[str, Any]:
    items = []
    total = Decimal("0")
    for i, (q, p) in enumerate(zip(quantities, prices)):
        line_total = Decimal(str(q)) * Decimal(p)
        total += line_total
        items.append({"line_number": i + 1, "po_line_number": i + 1, "quantity": q, "unit_price": p,
                      "total": str(line_total)})
    return {
        "invoice_id": "inv-1",
        "invoice_number": "INV-1",
        "vendor_id": "V-42",
        "po_id": "po-1001",
        "po_number": "PO-1001",
        "subtotal": str(total),
        "total": str(total),
        "items": items,
    }
