"""
Field mapper tests: path extraction, mappings, transforms and validation.
"""

import pytest

from connectors.rest.mapper import FieldMapper, parse_path, to_param_string
from connectors.rest.models import FieldMapping, RequestMapping, ResponseMapping


@pytest.fixture
def mapper():
    return FieldMapper()


ORDER = {
    "order": {"id": 7, "customer": {"name": "Ada"}},
    "items": [{"sku": "A", "qty": 1}, {"sku": "B", "qty": 2}, {"sku": "C", "qty": 3}],
    "odd key": "yes",
}


class TestExtraction:
    """Path evaluation against nested documents."""

    def test_nested_keys(self, mapper):
        assert mapper.extract_value(ORDER, "$.order.customer.name") == "Ada"

    def test_dollar_prefix_is_optional(self, mapper):
        assert mapper.extract_value(ORDER, "order.id") == 7

    def test_root_returns_document(self, mapper):
        assert mapper.extract_value(ORDER, "$") is ORDER

    def test_list_index_and_negative_index(self, mapper):
        assert mapper.extract_value(ORDER, "$.items[0].sku") == "A"
        assert mapper.extract_value(ORDER, "$.items[-1].sku") == "C"

    def test_wildcard_returns_all_matches(self, mapper):
        assert mapper.extract_value(ORDER, "$.items[*].sku") == ["A", "B", "C"]

    def test_bracketed_key(self, mapper):
        assert mapper.extract_value(ORDER, "$['odd key']") == "yes"

    def test_missing_path_is_none(self, mapper):
        """A missing key or out-of-range index yields None, never raises."""
        assert mapper.extract_value(ORDER, "$.order.missing") is None
        assert mapper.extract_value(ORDER, "$.items[10].sku") is None

    def test_extract_values_always_returns_list(self, mapper):
        assert mapper.extract_values(ORDER, "$.order.id") == [7]
        assert mapper.extract_values(ORDER, "$.nope") == []

    def test_malformed_path_raises(self):
        with pytest.raises(ValueError):
            parse_path("$.items[abc")


class TestMappings:
    """apply_mapping(s) and request/response shaping."""

    def test_default_used_when_source_missing(self, mapper):
        target, value = mapper.apply_mapping(ORDER, FieldMapping(source="$.nope", target="x", default_value=5))
        assert (target, value) == ("x", 5)

    def test_dotted_targets_build_nested_objects(self, mapper):
        result = mapper.apply_mappings(ORDER, [
            FieldMapping(source="$.order.id", target="ref.id"),
            FieldMapping(source="$.order.customer.name", target="ref.customer"),
        ])
        assert result == {"ref": {"id": 7, "customer": "Ada"}}

    def test_none_values_are_left_out(self, mapper):
        result = mapper.apply_mappings(ORDER, [FieldMapping(source="$.nope", target="gone")])
        assert result == {}

    def test_transform_request_splits_parts(self, mapper):
        mapping = RequestMapping(
            body=[FieldMapping(source="$.name", target="customer.name")],
            query=[FieldMapping(source="$.active", target="active")],
            headers=[FieldMapping(source="$.trace", target="X-Trace")],
            path=[FieldMapping(source="$.id", target="id")],
        )
        mapped = mapper.transform_request({"name": "Ada", "active": True, "trace": "t-1", "id": 42}, mapping)

        assert mapped.body == {"customer": {"name": "Ada"}}
        assert mapped.query == {"active": "true"}
        assert mapped.headers == {"X-Trace": "t-1"}
        assert mapped.path_params == {"id": "42"}

    def test_transform_response_maps_each_list_element(self, mapper):
        mapping = ResponseMapping(data=[FieldMapping(source="$.sku", target="code")])
        result = mapper.transform_response(ORDER["items"], mapping)
        assert result["data"] == [{"code": "A"}, {"code": "B"}, {"code": "C"}]
        assert result["meta"] == {}

    def test_transform_response_without_data_mapping_passes_body(self, mapper):
        result = mapper.transform_response({"a": 1}, ResponseMapping(meta=[FieldMapping(source="$.a", target="n")]))
        assert result == {"data": {"a": 1}, "meta": {"n": 1}}

    def test_replace_path_params_encodes_values(self, mapper):
        path = mapper.replace_path_params("/orders/{id}/lines/{line}", {"id": "a/b c"})
        assert path == "/orders/a%2Fb%20c/lines/{line}"


class TestTransforms:
    """Value coercions."""

    def test_number(self, mapper):
        assert mapper.transform_value("42", "number") == 42
        assert mapper.transform_value("4.5", "number") == 4.5
        assert mapper.transform_value("abc", "number") is None

    def test_boolean(self, mapper):
        assert mapper.transform_value("yes", "boolean") is True
        assert mapper.transform_value("0", "boolean") is False
        assert mapper.transform_value(0, "boolean") is False

    def test_date_from_epoch_millis_and_iso(self, mapper):
        assert mapper.transform_value(1705320000000, "date") == "2024-01-15T12:00:00+00:00"
        assert mapper.transform_value("2024-01-15T12:00:00Z", "date") == "2024-01-15T12:00:00+00:00"
        assert mapper.transform_value("not a date", "date") is None

    def test_array_and_object(self, mapper):
        assert mapper.transform_value(3, "array") == [3]
        assert mapper.transform_value('{"a": 1}', "object") == {"a": 1}
        assert mapper.transform_value("[1]", "object") is None

    def test_param_string(self):
        assert to_param_string(False) == "false"
        assert to_param_string({"a": 1}) == '{"a": 1}'
        assert to_param_string(None) is None


class TestValidation:

    def test_validate_json_path(self, mapper):
        assert mapper.validate_json_path("$.a[0].b") == (True, None)
        assert mapper.validate_json_path("")[0] is True
        valid, error = mapper.validate_json_path("$.a[")
        assert valid is False
        assert error

    def test_validate_mapping(self, mapper):
        errors = mapper.validate_mapping(FieldMapping(source="", target="", transform="weird"))
        assert "Mapping source is required" in errors
        assert "Mapping target is required" in errors
        assert "Invalid transform type: weird" in errors
