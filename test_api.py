"""
HTTP API tests through FastAPI's TestClient.

Each test gets its own AppState wired to an in-memory orchestrator and a
fake transport, so nothing leaves the process.
"""

import json

import pytest
from fastapi.testclient import TestClient

from api.dependencies import AppState, set_app_state
from api.server import create_app, status_code_for
from connectors.rest import ConnectorExecutor, ConnectorRegistry
from connectors.rest.webhooks import compute_signature
from flows.p2p import P2PFlowOrchestrator, P2PService
from core.errors import FlowLimitExceededError, FlowNotFoundError, InvalidFlowStateError, StepNotFoundError
from conftest import FakeClock, FakeTransport, RecordingSleep, sample_po, sample_receipt


SECRET = "whsec_api"

CONNECTOR = {
    "baseUrl": "https://erp.example.com/api",
    "endpoints": {"create_po": {"method": "POST", "path": "/purchase-orders"}},
    "webhook": {"secret": SECRET, "signatureHeader": "X-Signature", "eventTypePath": "$.event"},
}


@pytest.fixture
def client():
    registry = ConnectorRegistry()
    executor = ConnectorExecutor(transport=FakeTransport(), sleep=RecordingSleep(), clock=FakeClock())
    orchestrator = P2PFlowOrchestrator(
        connectors=registry,
        executor=executor,
        clock=FakeClock(),
        sleep=RecordingSleep(),
    )
    set_app_state(AppState(connectors=registry, executor=executor, service=P2PService(orchestrator)))
    with TestClient(create_app()) as test_client:
        yield test_client
    set_app_state(None)


def start(client, **po_overrides):
    response = client.post("/flows", json={"tenant_id": "t-1", "po_data": sample_po(**po_overrides)})
    assert response.status_code == 201
    return response.json()


class TestHealth:

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["version"] == "1.0.0"
        assert body["services"]["api"] == "up"

    def test_probes(self, client):
        assert client.get("/ready").json() == {"status": "ready"}
        assert client.get("/live").json() == {"status": "alive"}


class TestFlowRoutes:

    def test_start_and_inspect(self, client):
        flow = start(client)
        assert flow["status"] == "waiting_external"
        assert flow["current_step"] == "goods_receipt"

        assert client.get(f"/flows/{flow['id']}").json()["po_number"] == "PO-1001"
        assert [f["id"] for f in client.get("/flows", params={"tenant_id": "t-1"}).json()] == [flow["id"]]
        assert client.get("/flows", params={"tenant_id": "t-1", "status": "failed"}).json() == []

        logs = client.get(f"/flows/{flow['id']}/logs").json()
        assert logs[0]["message"] == "Flow started"

        stats = client.get("/flows/stats", params={"tenant_id": "t-1"}).json()
        assert stats["total"] == 1
        dashboard = client.get("/flows/dashboard", params={"tenant_id": "t-1"}).json()
        assert dashboard["failed"] == []

    def test_flow_webhook_advances_flow(self, client):
        flow = start(client)
        response = client.post(f"/flows/{flow['id']}/webhook", json={
            "type": "goods_receipt_update",
            "payload": {"receipt_data": sample_receipt()},
        })
        assert response.status_code == 200
        assert response.json()["current_step"] == "invoice_creation"

    def test_pause_resume_cancel(self, client):
        flow = start(client)
        paused = client.post(f"/flows/{flow['id']}/pause", json={"reason": "audit"})
        assert paused.json()["status"] == "paused"

        resumed = client.post(f"/flows/{flow['id']}/resume")
        assert resumed.json()["status"] == "waiting_external"

        cancelled = client.post(f"/flows/{flow['id']}/cancel")
        assert cancelled.json()["status"] == "cancelled"

    def test_unknown_flow_is_404(self, client):
        assert client.get("/flows/nope").status_code == 404
        response = client.post("/flows/nope/pause")
        assert response.status_code == 404
        assert response.json() == {"error": "FlowNotFoundError", "detail": "Flow nope not found"}

    def test_invalid_transitions_are_409(self, client):
        flow = start(client)
        assert client.post(f"/flows/{flow['id']}/resume").status_code == 409
        response = client.post(f"/flows/{flow['id']}/approve-match", json={"approved_by": "ana"})
        assert response.status_code == 409
        assert "not waiting for approval" in response.json()["detail"]
        assert client.post(f"/flows/{flow['id']}/steps/bogus/retry").status_code == 409

    def test_flow_limit_is_429(self, client):
        start(client)
        response = client.post("/flows", json={
            "tenant_id": "t-1",
            "po_data": sample_po(po_number="PO-2"),
            "config_overrides": {"settings": {"maxConcurrentFlows": 1}},
        })
        assert response.status_code == 429


class TestConnectorRoutes:

    def test_validate(self, client):
        body = client.post("/connectors/validate", json={"baseUrl": "ftp://nowhere", "endpoints": {}}).json()
        assert body["valid"] is False
        assert "baseUrl must be a valid URL" in body["errors"]
        assert "At least one endpoint is required" in body["errors"]

    def test_register_and_list(self, client):
        response = client.put("/connectors/t-1/erp", json=CONNECTOR)
        assert response.status_code == 200
        assert response.json() == {
            "tenant_id": "t-1",
            "config_id": "erp",
            "endpoints": ["create_po"],
            "webhook_enabled": True,
        }
        assert client.get("/connectors/t-1").json() == {"tenant_id": "t-1", "config_ids": ["erp"]}

    def test_invalid_config_is_rejected(self, client):
        response = client.put("/connectors/t-1/erp", json={"baseUrl": ""})
        assert response.status_code == 422
        assert client.get("/connectors/t-1").json()["config_ids"] == []

    def test_request_log(self, client):
        assert client.get("/connectors/logs").json() == []
        assert client.get("/connectors/logs/stats").status_code == 200


class TestWebhookRoutes:

    @staticmethod
    def post_signed(client, body, secret=SECRET):
        raw = json.dumps(body)
        return client.post("/webhooks/t-1/erp", content=raw, headers={
            "Content-Type": "application/json",
            "X-Signature": compute_signature(raw, secret),
        })

    def test_unconfigured_connector_is_404(self, client):
        assert client.post("/webhooks/t-1/erp", json={}).status_code == 404

    def test_signed_webhook_reaches_flow(self, client):
        client.put("/connectors/t-1/erp", json=CONNECTOR)
        flow = start(client)

        response = self.post_signed(client, {
            "event": "goods_receipt_update",
            "flow_id": flow["id"],
            "receipt_data": sample_receipt(),
        })

        assert response.status_code == 200
        assert response.json()["event_type"] == "goods_receipt_update"
        assert client.get(f"/flows/{flow['id']}").json()["current_step"] == "invoice_creation"

        events = client.get("/webhooks/events", params={"tenant_id": "t-1"}).json()
        assert len(events) == 1

    def test_bad_signature_is_401(self, client):
        client.put("/connectors/t-1/erp", json=CONNECTOR)
        response = self.post_signed(client, {"event": "goods_receipt_update"}, secret="wrong")
        assert response.status_code == 401
        assert response.json() == {"accepted": False, "error": "Invalid signature"}

    def test_signed_non_utf8_body_is_not_a_signature_failure(self, client):
        client.put("/connectors/t-1/erp", json=CONNECTOR)
        raw = b'{"event": "invoice_created", "note": "\xe9"}'
        response = client.post("/webhooks/t-1/erp", content=raw, headers={
            "Content-Type": "application/json",
            "X-Signature": compute_signature(raw, SECRET),
        })
        assert response.status_code == 401
        assert response.json() == {"accepted": False, "error": "Invalid body encoding: expected UTF-8"}

    def test_webhook_for_unknown_flow_is_accepted(self, client):
        client.put("/connectors/t-1/erp", json=CONNECTOR)
        response = self.post_signed(client, {"event": "invoice_created", "flow_id": "nope"})
        assert response.status_code == 200


@pytest.mark.parametrize("error, status_code", [
    (FlowNotFoundError("f-1"), 404),
    (InvalidFlowStateError("bad"), 409),
    (StepNotFoundError("bad"), 409),
    (FlowLimitExceededError("full"), 429),
    (ValueError("bad"), 422),
    (RuntimeError("boom"), 500),
])
def test_status_code_for(error, status_code):
    assert status_code_for(error) == status_code
