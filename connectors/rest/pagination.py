"""Pagination handling for connector endpoints.

Builds request parameters for a requested page and parses a response body
(plus headers, for RFC 5988 Link pagination) into items and the position of
the next page.

Without an explicit total, offset and page styles treat a non-empty page as
"there may be more", so a full drain ends with one extra empty-page request.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from connectors.rest.mapper import FieldMapper
from connectors.rest.models import PaginationConfig, PaginationInfo, PaginationRequest


DEFAULT_LIMIT = 20
DEFAULT_MAX_LIMIT = 100

_LINK_PART_RE = re.compile(r'<([^>]+)>.*rel="?([^";\s]+)"?')


@dataclass
class PaginatedResponse:
    """Items of one page plus where the next page is."""
    items: List[Any] = field(default_factory=list)
    info: PaginationInfo = field(default_factory=PaginationInfo)


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_link_header(header: Optional[str]) -> Dict[str, str]:
    """Parse an RFC 5988 Link header into ``{rel: url}``."""
    links: Dict[str, str] = {}
    if not header:
        return links
    for part in header.split(","):
        match = _LINK_PART_RE.search(part.strip())
        if match:
            url, rel = match.groups()
            links[rel.lower()] = url
    return links


class PaginationHandler:
    """Translates pagination configs into request params and page results."""

    def __init__(self, field_mapper: Optional[FieldMapper] = None):
        self.field_mapper = field_mapper or FieldMapper()

    # =========================================================================
    # Request side
    # =========================================================================

    def build_params(self, config: PaginationConfig, request: Optional[PaginationRequest] = None) -> Dict[str, Any]:
        """Return query parameters for the requested page.

        Requested sizes are clamped to the configured maximum, so feeding the
        result back in yields the same values.
        """
        request = request or PaginationRequest()
        params: Dict[str, Any] = {}

        if config.type == "offset":
            limit = self._clamp(request.limit, config.default_limit, config.max_limit)
            params[config.limit_param or "limit"] = limit
            params[config.offset_param or "offset"] = request.offset or 0

        elif config.type == "cursor":
            limit = self._clamp(request.limit, config.default_limit, config.max_limit)
            params[config.limit_param or "limit"] = limit
            if request.cursor:
                params[config.cursor_param or "cursor"] = request.cursor

        elif config.type == "page":
            page_size = self._clamp(request.page_size or request.limit, config.default_page_size, config.max_page_size)
            params[config.page_param or "page"] = request.page or 1
            params[config.page_size_param or "pageSize"] = page_size

        # link pagination follows absolute URLs; none has nothing to add
        return params

    @staticmethod
    def _clamp(requested: Optional[int], default: Optional[int], maximum: Optional[int]) -> int:
        value = requested or default or DEFAULT_LIMIT
        return min(value, maximum or DEFAULT_MAX_LIMIT)

    # =========================================================================
    # Response side
    # =========================================================================

    def parse_response(
        self,
        config: PaginationConfig,
        body: Any,
        headers: Optional[Dict[str, str]] = None,
        request: Optional[PaginationRequest] = None,
    ) -> PaginatedResponse:
        request = request or PaginationRequest()
        items = self._extract_items(config, body)

        if config.type == "offset":
            return PaginatedResponse(items=items, info=self._parse_offset(config, body, items, request))
        if config.type == "cursor":
            return PaginatedResponse(items=items, info=self._parse_cursor(config, body))
        if config.type == "link":
            return PaginatedResponse(items=items, info=self._parse_link(config, body, headers))
        if config.type == "page":
            return PaginatedResponse(items=items, info=self._parse_page(config, body, items, request))
        return PaginatedResponse(items=items, info=PaginationInfo(has_more=False))

    def _extract_items(self, config: PaginationConfig, body: Any) -> List[Any]:
        path = config.items_path or ("$" if config.type == "none" else "$.data")
        items = self.field_mapper.extract_value(body, path)
        if items is None:
            return []
        if not isinstance(items, list):
            return [items] if config.type == "none" else []
        return items

    def _parse_offset(
        self, config: PaginationConfig, body: Any, items: List[Any], request: PaginationRequest
    ) -> PaginationInfo:
        total = _to_int(self.field_mapper.extract_value(body, config.total_path)) if config.total_path else None
        offset = request.offset or 0
        if total is not None:
            has_more = offset + len(items) < total
        else:
            has_more = len(items) > 0
        return PaginationInfo(has_more=has_more, total=total)

    def _parse_cursor(self, config: PaginationConfig, body: Any) -> PaginationInfo:
        next_cursor = self.field_mapper.extract_value(body, config.next_cursor_path) if config.next_cursor_path else None
        prev_cursor = self.field_mapper.extract_value(body, config.prev_cursor_path) if config.prev_cursor_path else None
        has_more = bool(next_cursor)
        if config.has_more_path:
            explicit = self.field_mapper.extract_value(body, config.has_more_path)
            if explicit is not None:
                has_more = bool(explicit)
        return PaginationInfo(
            has_more=has_more,
            next_cursor=str(next_cursor) if next_cursor else None,
            prev_cursor=str(prev_cursor) if prev_cursor else None,
        )

    def _parse_link(self, config: PaginationConfig, body: Any, headers: Optional[Dict[str, str]]) -> PaginationInfo:
        next_url = self.field_mapper.extract_value(body, config.next_link_path) if config.next_link_path else None
        prev_url = self.field_mapper.extract_value(body, config.prev_link_path) if config.prev_link_path else None

        if config.parse_link_header and headers:
            header = next((v for k, v in headers.items() if k.lower() == "link"), None)
            links = parse_link_header(header)
            next_url = next_url or links.get("next")
            prev_url = prev_url or links.get("prev") or links.get("previous")

        return PaginationInfo(
            has_more=bool(next_url),
            next_url=next_url or None,
            prev_url=prev_url or None,
        )

    def _parse_page(
        self, config: PaginationConfig, body: Any, items: List[Any], request: PaginationRequest
    ) -> PaginationInfo:
        page = request.page or 1
        page_size = self._clamp(request.page_size or request.limit, config.default_page_size, config.max_page_size)
        total_pages = (
            _to_int(self.field_mapper.extract_value(body, config.total_pages_path)) if config.total_pages_path else None
        )
        total = (
            _to_int(self.field_mapper.extract_value(body, config.total_items_path)) if config.total_items_path else None
        )
        if total_pages is None and total is not None and page_size:
            total_pages = -(-total // page_size)

        if total_pages is not None:
            has_more = page < total_pages
        else:
            has_more = len(items) > 0
        return PaginationInfo(
            has_more=has_more,
            page=page,
            page_size=page_size,
            total=total,
            total_pages=total_pages,
        )


def validate_pagination_config(config: PaginationConfig) -> List[str]:
    errors = []
    if config.type == "offset":
        if not config.offset_param:
            errors.append("Offset pagination requires offsetParam")
        if not config.limit_param:
            errors.append("Offset pagination requires limitParam")
    elif config.type == "cursor":
        if not config.cursor_param:
            errors.append("Cursor pagination requires cursorParam")
        if not config.limit_param:
            errors.append("Cursor pagination requires limitParam")
    elif config.type == "page":
        if not config.page_param:
            errors.append("Page pagination requires pageParam")
        if not config.page_size_param:
            errors.append("Page pagination requires pageSizeParam")
    return errors
