"""
Request log tests: masking, truncation, bounded buffer and queries.
"""

from connectors.rest.models import LoggingConfig
from connectors.rest.request_log import (
    MASKED_VALUE,
    RequestLogger,
    mask_body,
    mask_headers,
    mask_url,
    mask_value,
)
from conftest import FakeClock


class TestMasking:

    def test_mask_value(self):
        assert mask_value("abcd") == "****"
        assert mask_value("supersecret") == "su****et"

    def test_mask_headers_is_case_insensitive(self):
        masked = mask_headers({"Authorization": "Bearer abcdef", "X-API-KEY": "k123456", "Accept": "json"})
        assert masked["Authorization"] == "Be****ef"
        assert masked["X-API-KEY"] == "k1****56"
        assert masked["Accept"] == "json"

    def test_mask_body_nested(self):
        body = {"user": {"password": "hunter22", "name": "ada"}, "tokens": [{"access_token": 12345}]}
        masked = mask_body(body)
        assert masked["user"]["password"] == "hu****22"
        assert masked["user"]["name"] == "ada"
        # Key "tokens" itself matches "token", so the whole list is masked
        assert masked["tokens"] == MASKED_VALUE

    def test_mask_url_query(self):
        masked = mask_url("https://api.io/v1/orders?api_key=sk_live_abcdef&page=2")
        assert masked == "https://api.io/v1/orders?api_key=sk****ef&page=2"
        assert mask_url("https://api.io/v1/orders?key=abcdef", ["key"]) == "https://api.io/v1/orders?key=ab****ef"
        assert mask_url("https://api.io/v1/orders") == "https://api.io/v1/orders"

    def test_extra_mask_fields(self):
        assert mask_body({"ssn": "123-45-6789"}, ["ssn"])["ssn"] == "12****89"

    def test_truncation(self):
        assert mask_body("x" * 20, max_size=5) == "xxxxx...[truncated]"
        truncated = mask_body({"data": "y" * 100}, max_size=10)
        assert truncated["_truncated"] is True

    def test_original_body_untouched(self):
        body = {"password": "hunter22"}
        mask_body(body)
        assert body["password"] == "hunter22"


class TestRequestLogger:

    def test_request_and_response_are_recorded(self):
        clock = FakeClock()
        log = RequestLogger(clock=clock)
        config = LoggingConfig(log_headers=True)

        record = log.start_request("GET", "https://api/x", config, headers={"Authorization": "Bearer abcdef"},
                                   correlation_id="c-1")
        clock.advance(milliseconds=150)
        entry = log.log_response(record, 200, config, body={"ok": True}, tenant_id="t-1", config_id="erp",
                                 endpoint="get_x")

        assert entry.duration_ms == 150
        assert entry.request["headers"]["Authorization"] == "Be****ef"
        assert entry.response == {"status_code": 200, "body": {"ok": True}}
        assert log.get_log_by_id(record.id) is entry

    def test_headers_skipped_by_default(self):
        log = RequestLogger(clock=FakeClock())
        record = log.start_request("GET", "https://api/x", headers={"Authorization": "Bearer abcdef"})
        assert record.headers is None

    def test_buffer_is_bounded(self):
        log = RequestLogger(capacity=3, clock=FakeClock())
        ids = []
        for i in range(5):
            record = log.start_request("GET", f"https://api/{i}")
            log.log_response(record, 200)
            ids.append(record.id)

        recent = log.get_recent_logs()
        assert [e.id for e in recent] == list(reversed(ids[2:]))

    def test_filters_and_limit(self):
        log = RequestLogger(clock=FakeClock())
        for tenant in ("t-1", "t-2", "t-1"):
            record = log.start_request("GET", "https://api/x", correlation_id=f"c-{tenant}")
            log.log_response(record, 200, tenant_id=tenant)

        assert len(log.get_recent_logs(tenant_id="t-1")) == 2
        assert len(log.get_recent_logs(correlation_id="c-t-2")) == 1
        assert len(log.get_recent_logs(limit=1)) == 1

    def test_stats(self):
        clock = FakeClock()
        log = RequestLogger(clock=clock)

        ok = log.start_request("GET", "https://api/a")
        clock.advance(milliseconds=100)
        log.log_response(ok, 200)

        failed = log.start_request("GET", "https://api/b")
        clock.advance(milliseconds=300)
        log.log_error(failed, "connection refused")

        stats = log.get_log_stats()
        assert stats == {
            "total_logs": 2,
            "error_count": 1,
            "avg_duration_ms": 200,
            "status_code_counts": {200: 1},
        }

    def test_clear(self):
        log = RequestLogger(clock=FakeClock())
        log.log_response(log.start_request("GET", "https://api/x"), 200)
        log.clear_logs()
        assert log.get_recent_logs() == []
