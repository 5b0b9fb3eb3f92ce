"""HTTP transport for connector calls.

The executor and auth provider never talk to aiohttp directly; they send
``HttpRequest`` objects through an ``HttpTransport``. Production code uses
``AiohttpTransport``; tests inject a fake that replays scripted responses.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import aiohttp

from core.observability import get_logger

logger = get_logger(__name__)


@dataclass
class HttpRequest:
    """Outbound request.

    ``body`` is JSON-encoded unless it is already a string, in which case it is
    sent as-is (form bodies for token requests).
    """
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    timeout_ms: Optional[int] = None

    def full_url(self) -> str:
        if not self.query:
            return self.url
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{urlencode(self.query)}"

    def get_header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


@dataclass
class HttpResponse:
    """Response with the body already decoded.

    ``body`` holds parsed JSON when the payload is JSON, otherwise the text
    (None for an empty payload).
    """
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    text: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def get_header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


def decode_body(text: str) -> Any:
    """Parse JSON text, falling back to the raw string."""
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


class HttpTransport(ABC):
    """Sends requests. Transport faults raise; HTTP error statuses do not."""

    @abstractmethod
    async def send(self, request: HttpRequest) -> HttpResponse:
        pass

    async def close(self) -> None:
        pass


class AiohttpTransport(HttpTransport):
    """Transport backed by a shared ``aiohttp.ClientSession``.

    The session is created lazily on first use and reused across calls.

    Usage:
        transport = AiohttpTransport()
        response = await transport.send(HttpRequest("GET", "https://api.example.com/items"))
        await transport.close()
    """

    def __init__(self, default_timeout_ms: int = 30000):
        self.default_timeout_ms = default_timeout_ms
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def send(self, request: HttpRequest) -> HttpResponse:
        session = await self._get_session()
        timeout = aiohttp.ClientTimeout(total=(request.timeout_ms or self.default_timeout_ms) / 1000)

        kwargs: Dict[str, Any] = {
            "headers": request.headers,
            "params": request.query or None,
            "timeout": timeout,
        }
        if request.body is not None:
            if isinstance(request.body, (str, bytes)):
                kwargs["data"] = request.body
            else:
                kwargs["data"] = json.dumps(request.body, default=str)
                if request.get_header("Content-Type") is None:
                    kwargs["headers"] = {**request.headers, "Content-Type": "application/json"}

        async with session.request(request.method, request.url, **kwargs) as response:
            text = await response.text()
            logger.debug(
                f"{request.method} {request.url} -> {response.status}",
                extra_fields={"status_code": response.status},
            )
            return HttpResponse(
                status=response.status,
                headers={k: v for k, v in response.headers.items()},
                body=decode_body(text),
                text=text,
            )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
