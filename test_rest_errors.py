"""
Error classification tests: status buckets, mapping rules, transport faults,
retry predicate and rate-limit headers.
"""

import asyncio
from datetime import timedelta

import aiohttp
import pytest

from connectors.rest.errors import (
    AUTHENTICATION_ERROR,
    CONNECTION_ERROR,
    NOT_FOUND_ERROR,
    RATE_LIMIT_ERROR,
    SERVER_ERROR,
    TIMEOUT_ERROR,
    UNKNOWN_ERROR,
    VALIDATION_ERROR,
    ErrorMapper,
    is_retryable_failure,
    is_retryable_status_code,
    validate_error_mapping_rules,
)
from connectors.rest.models import ErrorMappingRule, StatusRange
from conftest import FIXED_NOW


@pytest.fixture
def mapper():
    return ErrorMapper()


class TestStatusBuckets:

    @pytest.mark.parametrize("status,code,retryable", [
        (400, VALIDATION_ERROR, False),
        (401, AUTHENTICATION_ERROR, False),
        (404, NOT_FOUND_ERROR, False),
        (422, VALIDATION_ERROR, False),
        (429, RATE_LIMIT_ERROR, True),
        (503, SERVER_ERROR, True),
        (501, SERVER_ERROR, False),
    ])
    def test_default_classification(self, mapper, status, code, retryable):
        error = mapper.map_http_error(status, None)
        assert error.code == code
        assert error.retryable is retryable
        assert error.status_code == status

    def test_message_extracted_from_body(self, mapper):
        assert mapper.map_http_error(404, {"error": {"message": "no such order"}}).message == "no such order"
        assert mapper.map_http_error(400, {"errors": [{"message": "bad field"}]}).message == "bad field"
        assert mapper.map_http_error(404, None).message == "Resource not found"


class TestRules:

    def test_first_matching_rule_wins(self, mapper):
        rules = [
            ErrorMappingRule(status_code=[409], mapped_code="CONFLICT", default_message="Duplicate"),
            ErrorMappingRule(status_range=StatusRange(min=400, max=499), mapped_code="CLIENT"),
        ]
        assert mapper.map_http_error(409, {}, rules).code == "CONFLICT"
        assert mapper.map_http_error(418, {}, rules).code == "CLIENT"

    def test_error_code_match_and_message_path(self, mapper):
        rule = ErrorMappingRule(
            status_code=400,
            error_code_path="$.code",
            error_code_match=["INSUFFICIENT_FUNDS"],
            message_path="$.detail",
            mapped_code="FUNDS",
            retryable=True,
        )
        error = mapper.map_http_error(400, {"code": "INSUFFICIENT_FUNDS", "detail": "Top up"}, [rule])
        assert (error.code, error.message, error.retryable) == ("FUNDS", "Top up", True)

        other = mapper.map_http_error(400, {"code": "OTHER"}, [rule])
        assert other.code == VALIDATION_ERROR

    def test_rule_without_mapped_code_uses_bucket(self, mapper):
        rule = ErrorMappingRule(status_code=503, default_message="Maintenance")
        error = mapper.map_http_error(503, None, [rule])
        assert error.code == SERVER_ERROR
        assert error.message == "Maintenance"
        assert error.retryable is True

    def test_validate_rules(self):
        errors = validate_error_mapping_rules([
            ErrorMappingRule(mapped_code="X"),
            ErrorMappingRule(status_range=StatusRange(min=500, max=400)),
        ])
        assert errors[0].startswith("Rule 0: Must have at least one matching condition")
        assert errors[1] == "Rule 1: statusRange.min cannot be greater than statusRange.max"


class TestExceptions:

    def test_timeout(self, mapper):
        error = mapper.map_exception(asyncio.TimeoutError())
        assert error.code == TIMEOUT_ERROR
        assert error.retryable is True

    def test_connection(self, mapper):
        error = mapper.map_exception(aiohttp.ClientConnectionError("connection refused"))
        assert error.code == CONNECTION_ERROR
        assert error.retryable is True

    def test_unknown(self, mapper):
        error = mapper.map_exception(RuntimeError("boom"))
        assert error.code == UNKNOWN_ERROR
        assert error.retryable is False
        assert error.message == "boom"


class TestRetryPredicate:

    def test_status_codes(self):
        assert is_retryable_status_code(502)
        assert not is_retryable_status_code(400)
        assert is_retryable_status_code(400, retry_on=[400])

    def test_failure_without_status(self):
        assert is_retryable_failure(None, ConnectionResetError("reset"))
        assert is_retryable_failure(None, asyncio.TimeoutError())
        assert not is_retryable_failure(None, ValueError("bad"))
        assert not is_retryable_failure(None, None)


class TestRetryDelay:

    def test_retry_after_seconds(self, mapper):
        assert mapper.get_retry_delay({"Retry-After": "3"}, FIXED_NOW) == 3000

    def test_retry_after_http_date(self, mapper):
        headers = {"retry-after": "Mon, 15 Jan 2024 12:00:10 GMT"}
        assert mapper.get_retry_delay(headers, FIXED_NOW) == 10000

    def test_ratelimit_reset_epoch_seconds(self, mapper):
        reset = int((FIXED_NOW + timedelta(seconds=5)).timestamp())
        assert mapper.get_retry_delay({"X-RateLimit-Reset": str(reset)}, FIXED_NOW) == 5000

    def test_ratelimit_reset_relative_seconds(self, mapper):
        assert mapper.get_retry_delay({"X-RateLimit-Reset": "2"}, FIXED_NOW) == 2000

    def test_no_headers(self, mapper):
        assert mapper.get_retry_delay({}, FIXED_NOW) is None
