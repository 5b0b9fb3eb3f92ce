"""JSON path field mapper.

Moves values between arbitrary JSON shapes for request and response shaping.
Supports the path subset connector configurations use in practice:

    $                   whole document
    $.a.b               nested keys
    $.items[0].name     list index (negative indexes count from the end)
    $.items[*].name     every element
    $['odd key']        bracketed key
    a.b                 leading "$." is optional

Usage:
    mapper = FieldMapper()
    mapper.extract_value({"user": {"id": 7}}, "$.user.id")  # 7
    mapper.apply_mappings(body, [FieldMapping(source="$.id", target="order.id")])
"""

import json
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

from connectors.rest.models import FieldMapping, RequestMapping, ResponseMapping


VALID_TRANSFORMS = ("string", "number", "boolean", "date", "array", "object")

_KEY = "key"
_INDEX = "index"
_WILDCARD = "wildcard"

_BRACKET_RE = re.compile(r"""\[\s*(?:(\*)|(-?\d+)|'([^']*)'|"([^"]*)")\s*\]""")
_NAME_RE = re.compile(r"[^.\[\]]+")
_PATH_PARAM_RE = re.compile(r"\{([^{}]+)\}")


def parse_path(path: str) -> List[Tuple[str, Any]]:
    """Split a path into (kind, value) segments.

    Raises:
        ValueError: If the path is malformed
    """
    text = (path or "").strip()
    if text.startswith("$"):
        text = text[1:]
    segments: List[Tuple[str, Any]] = []
    pos = 0
    while pos < len(text):
        char = text[pos]
        if char == ".":
            pos += 1
            if pos < len(text) and text[pos] == "*":
                segments.append((_WILDCARD, None))
                pos += 1
                continue
            match = _NAME_RE.match(text, pos)
            if not match:
                raise ValueError(f"Expected property name at position {pos} in '{path}'")
            segments.append((_KEY, match.group(0)))
            pos = match.end()
        elif char == "[":
            match = _BRACKET_RE.match(text, pos)
            if not match:
                raise ValueError(f"Malformed bracket expression at position {pos} in '{path}'")
            star, index, single, double = match.groups()
            if star:
                segments.append((_WILDCARD, None))
            elif index is not None:
                segments.append((_INDEX, int(index)))
            else:
                segments.append((_KEY, single if single is not None else double))
            pos = match.end()
        elif pos == 0:
            # Bare dotted path without "$."
            match = _NAME_RE.match(text, pos)
            segments.append((_KEY, match.group(0)))
            pos = match.end()
        else:
            raise ValueError(f"Unexpected character '{char}' at position {pos} in '{path}'")
    return segments


def _evaluate(data: Any, segments: Sequence[Tuple[str, Any]]) -> List[Any]:
    nodes = [data]
    for kind, value in segments:
        next_nodes = []
        for node in nodes:
            if kind == _KEY:
                if isinstance(node, dict) and value in node:
                    next_nodes.append(node[value])
            elif kind == _INDEX:
                if isinstance(node, list) and -len(node) <= value < len(node):
                    next_nodes.append(node[value])
            elif isinstance(node, list):
                next_nodes.extend(node)
            elif isinstance(node, dict):
                next_nodes.extend(node.values())
        nodes = next_nodes
        if not nodes:
            break
    return nodes


def _has_wildcard(segments: Sequence[Tuple[str, Any]]) -> bool:
    return any(kind == _WILDCARD for kind, _ in segments)


def to_param_string(value: Any) -> Optional[str]:
    """Render a value the way it should appear in a query string or header."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


@dataclass
class MappedRequest:
    """Request parts produced by a request mapping."""
    body: Optional[Dict[str, Any]] = None
    query: Dict[str, str] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    path_params: Dict[str, str] = field(default_factory=dict)


class FieldMapper:
    """Extracts and reshapes JSON values using path expressions."""

    # =========================================================================
    # Extraction
    # =========================================================================

    def extract_value(self, data: Any, path: str) -> Any:
        """Return the value at ``path``.

        Paths with a wildcard return the list of all matches; other paths
        return the single match or None when nothing is there.
        """
        segments = parse_path(path)
        if not segments:
            return data
        nodes = _evaluate(data, segments)
        if _has_wildcard(segments):
            return nodes
        return nodes[0] if nodes else None

    def extract_values(self, data: Any, path: str) -> List[Any]:
        """Return every value matched by ``path`` ([] when nothing matches)."""
        segments = parse_path(path)
        if not segments:
            return [data]
        return _evaluate(data, segments)

    # =========================================================================
    # Mapping
    # =========================================================================

    def apply_mapping(self, data: Any, mapping: FieldMapping) -> Tuple[str, Any]:
        """Resolve one mapping against ``data``.

        Returns:
            (target key, transformed value or default)
        """
        value = self.extract_value(data, mapping.source)
        if value is None or value == []:
            value = mapping.default_value
        elif mapping.transform:
            value = self.transform_value(value, mapping.transform)
        return mapping.target, value

    def apply_mappings(self, data: Any, mappings: Sequence[FieldMapping]) -> Dict[str, Any]:
        """Build an object from mappings; dotted targets create nested objects.

        Mappings that resolve to None are left out of the result.
        """
        result: Dict[str, Any] = {}
        for mapping in mappings:
            target, value = self.apply_mapping(data, mapping)
            if value is None:
                continue
            self._set_nested(result, target, value)
        return result

    def transform_request(self, data: Dict[str, Any], mapping: RequestMapping) -> MappedRequest:
        """Split input into body, query, headers and path params."""
        mapped = MappedRequest()
        if mapping.body:
            mapped.body = self.apply_mappings(data, mapping.body)
        mapped.query = self._string_values(self.apply_mappings(data, mapping.query))
        mapped.headers = self._string_values(self.apply_mappings(data, mapping.headers))
        mapped.path_params = self._string_values(self.apply_mappings(data, mapping.path))
        return mapped

    def transform_response(self, body: Any, mapping: ResponseMapping) -> Dict[str, Any]:
        """Shape a response body into ``{"data": ..., "meta": ...}``.

        A list body has the data mappings applied to each element.
        """
        if mapping.data:
            if isinstance(body, list):
                data = [self.apply_mappings(item, mapping.data) for item in body]
            else:
                data = self.apply_mappings(body, mapping.data)
        else:
            data = body
        meta = self.apply_mappings(body, mapping.meta) if mapping.meta else {}
        return {"data": data, "meta": meta}

    def replace_path_params(self, path: str, params: Dict[str, Any]) -> str:
        """Substitute ``{name}`` placeholders with URL-encoded values.

        Unknown placeholders are left in place.
        """
        def _sub(match: "re.Match[str]") -> str:
            name = match.group(1)
            if name not in params or params[name] is None:
                return match.group(0)
            return quote(to_param_string(params[name]), safe="")
        return _PATH_PARAM_RE.sub(_sub, path)

    # =========================================================================
    # Transforms
    # =========================================================================

    def transform_value(self, value: Any, transform: str) -> Any:
        if transform == "string":
            return to_param_string(value)
        if transform == "number":
            return self._to_number(value)
        if transform == "boolean":
            return self._to_boolean(value)
        if transform == "date":
            return self._to_date(value)
        if transform == "array":
            return value if isinstance(value, list) else [value]
        if transform == "object":
            if isinstance(value, dict):
                return value
            if isinstance(value, str):
                try:
                    parsed = json.loads(value)
                except json.JSONDecodeError:
                    return None
                return parsed if isinstance(parsed, dict) else None
            return None
        return value

    @staticmethod
    def _to_number(value: Any) -> Any:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, Decimal):
            return float(value)
        if isinstance(value, str):
            text = value.strip()
            try:
                return int(text)
            except ValueError:
                pass
            try:
                return float(text)
            except ValueError:
                return None
        return None

    @staticmethod
    def _to_boolean(value: Any) -> bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() in ("true", "1", "yes", "y", "on")
        if isinstance(value, (int, float, Decimal)):
            return value != 0
        return bool(value)

    @staticmethod
    def _to_date(value: Any) -> Optional[str]:
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, date):
            return value.isoformat()
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            seconds = value / 1000 if value > 1e11 else value
            return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()
        if isinstance(value, str):
            text = value.strip()
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            try:
                return datetime.fromisoformat(text).isoformat()
            except ValueError:
                return None
        return None

    # =========================================================================
    # Validation
    # =========================================================================

    def validate_json_path(self, path: str) -> Tuple[bool, Optional[str]]:
        """Check path syntax. The empty path is valid (whole document)."""
        if not path:
            return True, None
        try:
            parse_path(path)
        except ValueError as e:
            return False, str(e)
        return True, None

    def validate_mapping(self, mapping: FieldMapping) -> List[str]:
        errors = []
        if not mapping.source:
            errors.append("Mapping source is required")
        else:
            valid, error = self.validate_json_path(mapping.source)
            if not valid:
                errors.append(f"Invalid source path: {error}")
        if not mapping.target:
            errors.append("Mapping target is required")
        if mapping.transform and mapping.transform not in VALID_TRANSFORMS:
            errors.append(f"Invalid transform type: {mapping.transform}")
        return errors

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _set_nested(target: Dict[str, Any], key: str, value: Any) -> None:
        if key.startswith("$."):
            key = key[2:]
        parts = [p for p in key.split(".") if p]
        if not parts:
            return
        node = target
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value

    @staticmethod
    def _string_values(values: Dict[str, Any]) -> Dict[str, str]:
        result = {}
        for key, value in values.items():
            text = to_param_string(value)
            if text is not None:
                result[key] = text
        return result
