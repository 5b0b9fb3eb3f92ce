"""
Webhook receiver tests: signature and timestamp verification, event type and
payload extraction, handler dispatch and the event buffer.
"""

import asyncio
import json
from datetime import timedelta

import pytest

from connectors.rest.models import WebhookConfig
from connectors.rest.webhooks import (
    WILDCARD,
    WebhookReceiver,
    compute_signature,
    normalize_signature,
    validate_webhook_config,
)
from core.observability import get_metrics
from conftest import FIXED_NOW, FakeClock


SECRET = "whsec_test"


def signed(body: dict, algorithm: str = "hmac-sha256", prefix: str = ""):
    raw = json.dumps(body)
    return raw, {"X-Signature": prefix + compute_signature(raw, SECRET, algorithm)}


def process(receiver, config, raw, headers):
    return asyncio.run(receiver.process_webhook(config, "t-1", "erp", "erp", raw, headers))


@pytest.fixture
def receiver():
    return WebhookReceiver(clock=FakeClock())


@pytest.fixture
def config():
    return WebhookConfig(secret=SECRET, signature_header="X-Signature", event_type_path="$.event")


class TestVerification:

    def test_valid_signature_accepted(self, receiver, config):
        raw, headers = signed({"event": "order.created", "id": 1})
        result = process(receiver, config, raw, headers)

        assert result.valid is True
        assert result.event.event_type == "order.created"
        assert result.event.verified is True
        assert result.event.id.startswith("wh_")

    def test_prefixed_signature_accepted(self, receiver, config):
        raw, headers = signed({"event": "x"}, prefix="sha256=")
        assert process(receiver, config, raw, headers).valid is True

    def test_sha512(self, receiver):
        config = WebhookConfig(secret=SECRET, signature_header="X-Signature", signature_algorithm="hmac-sha512")
        raw, headers = signed({"type": "x"}, algorithm="hmac-sha512")
        assert process(receiver, config, raw, headers).valid is True

    def test_bad_signature_rejected(self, receiver, config):
        raw, _ = signed({"event": "x"})
        result = process(receiver, config, raw, {"X-Signature": "deadbeef"})
        assert result.valid is False
        assert result.error == "Invalid signature"
        assert receiver.get_events() == []
        assert get_metrics().get_summary()["webhooks"]["rejected"] == 1

    def test_one_changed_byte_invalidates_signature(self, receiver, config):
        raw, headers = signed({"event": "x", "amount": 100})
        assert raw.endswith("100}")
        tampered = raw[:-2] + "1" + raw[-1:]

        result = process(receiver, config, tampered, headers)
        assert result.valid is False
        assert result.error == "Invalid signature"
        assert process(receiver, config, raw, headers).valid is True

    def test_bytes_body_is_verified_as_received(self, receiver, config):
        raw = '{"event": "café"}'.encode("utf-8")
        result = process(receiver, config, raw, {"X-Signature": compute_signature(raw, SECRET)})
        assert result.valid is True
        assert result.event.event_type == "café"
        assert result.event.raw_body == '{"event": "café"}'

    def test_signed_body_that_is_not_utf8(self, receiver, config):
        raw = b'{"event": "x", "name": "\xff"}'
        result = process(receiver, config, raw, {"X-Signature": compute_signature(raw, SECRET)})
        assert result.valid is False
        assert result.error == "Invalid body encoding: expected UTF-8"

    def test_missing_signature_header(self, receiver, config):
        result = process(receiver, config, '{"event": "x"}', {})
        assert result.error == "Missing signature header: X-Signature"

    def test_no_secret_skips_signature_check(self, receiver):
        result = process(receiver, WebhookConfig(), '{"event": "x"}', {})
        assert result.valid is True

    def test_timestamp_tolerance(self, receiver):
        config = WebhookConfig(timestamp_header="X-Timestamp", timestamp_tolerance=300)
        fresh = str(int((FIXED_NOW - timedelta(seconds=60)).timestamp()))
        stale = str(int((FIXED_NOW - timedelta(seconds=600)).timestamp()))

        assert process(receiver, config, '{"event": "x"}', {"X-Timestamp": fresh}).valid is True
        result = process(receiver, config, '{"event": "x"}', {"X-Timestamp": stale})
        assert result.valid is False
        assert result.error.startswith("Timestamp too old")
        assert process(receiver, config, '{"event": "x"}', {"X-Timestamp": "yesterday"}).error == \
            "Invalid timestamp format"

    def test_out_of_range_timestamp(self, receiver):
        config = WebhookConfig(timestamp_header="X-Timestamp", timestamp_tolerance=300)
        result = process(receiver, config, '{"event": "x"}', {"X-Timestamp": "99999999999999999999"})
        assert result.valid is False
        assert result.error == "Invalid timestamp format"

    def test_invalid_json(self, receiver):
        assert process(receiver, WebhookConfig(), "not json", {}).error == "Invalid JSON payload"


class TestExtraction:

    def test_event_type_from_header(self, receiver):
        result = process(receiver, WebhookConfig(), '{"id": 1}', {"X-GitHub-Event": "push"})
        assert result.event.event_type == "push"

    def test_event_type_from_common_fields(self, receiver):
        assert process(receiver, WebhookConfig(), '{"eventType": "a.b"}', {}).event.event_type == "a.b"

    def test_event_type_required(self, receiver):
        assert process(receiver, WebhookConfig(), '{"id": 1}', {}).error == "Could not determine event type"

    def test_payload_path(self, receiver):
        config = WebhookConfig(payload_path="$.data.object")
        result = process(receiver, config, '{"type": "x", "data": {"object": {"id": 9}}}', {})
        assert result.event.payload == {"id": 9}


class TestDispatch:

    def test_specific_and_wildcard_handlers(self, receiver):
        seen = []

        async def on_created(event):
            seen.append(("created", event.payload["id"]))

        receiver.on_event("order.created", on_created)
        receiver.on_event(WILDCARD, lambda event: seen.append(("any", event.event_type)))

        process(receiver, WebhookConfig(), '{"event": "order.created", "id": 1}', {})
        process(receiver, WebhookConfig(), '{"event": "order.deleted", "id": 2}', {})

        assert seen == [("created", 1), ("any", "order.created"), ("any", "order.deleted")]

    def test_failing_handler_does_not_stop_others(self, receiver):
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        receiver.on_event("x", broken)
        receiver.on_event("x", lambda event: seen.append(event.id))

        result = process(receiver, WebhookConfig(), '{"event": "x"}', {})
        assert result.valid is True
        assert seen == [result.event.id]

    def test_off_event(self, receiver):
        seen = []
        handler = seen.append
        receiver.on_event("x", handler)
        receiver.off_event("x", handler)
        process(receiver, WebhookConfig(), '{"event": "x"}', {})
        assert seen == []


class TestEventBuffer:

    def test_bounded_and_newest_first(self):
        receiver = WebhookReceiver(capacity=2, clock=FakeClock())
        ids = [process(receiver, WebhookConfig(), json.dumps({"event": f"e{i}"}), {}).event.id for i in range(3)]

        events = receiver.get_events()
        assert [e.id for e in events] == [ids[2], ids[1]]
        assert receiver.get_event_by_id(ids[0]) is None
        assert receiver.get_event_by_id(ids[2]).event_type == "e2"

    def test_filters(self, receiver):
        process(receiver, WebhookConfig(), '{"event": "a"}', {})
        asyncio.run(receiver.process_webhook(WebhookConfig(), "t-2", "crm", "crm", '{"event": "b"}', {}))

        assert [e.event_type for e in receiver.get_events(tenant_id="t-2")] == ["b"]
        assert [e.event_type for e in receiver.get_events(event_type="a")] == ["a"]
        assert receiver.get_events(config_id="nope") == []


def test_normalize_signature():
    assert normalize_signature(" SHA256=ABC ", "hmac-sha256") == "abc"
    assert normalize_signature("abc", "hmac-sha1") == "abc"


def test_validate_webhook_config():
    errors = validate_webhook_config(WebhookConfig(secret="s", timestamp_tolerance=10, signature_algorithm="md5"))
    assert "signatureHeader is required when secret is provided" in errors
    assert "Invalid signatureAlgorithm" in errors
    assert "timestampHeader is required when timestampTolerance is provided" in errors
    assert validate_webhook_config(WebhookConfig(enabled=False, secret="s")) == []
