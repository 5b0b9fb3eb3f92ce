"""Authentication for connector requests.

Applies basic, bearer, API key and OAuth2 client-credentials auth to an
outbound ``HttpRequest``. OAuth2 tokens are cached per cache key and
refreshed with the refresh-token grant when the connector declares a
refresh URL.
"""

import asyncio
import base64
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from connectors.rest.models import (
    ApiKeyAuthConfig,
    BasicAuthConfig,
    BearerAuthConfig,
    NoAuthConfig,
    OAuth2AuthConfig,
)
from connectors.rest.transport import HttpRequest, HttpTransport
from core.config import get_settings
from core.errors import AuthenticationFailedError, UnsupportedGrantTypeError
from core.observability import get_logger
from core.security import CachedToken, EncryptedTokenCache, InMemoryTokenCache, TokenCache, TokenEncryption

logger = get_logger(__name__)

DEFAULT_EXPIRES_IN = 3600


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_token_cache() -> TokenCache:
    """Encrypted cache when TOKEN_ENCRYPTION_KEY is set, plain otherwise."""
    key = get_settings().token_encryption_key
    if key:
        return EncryptedTokenCache(TokenEncryption(key))
    return InMemoryTokenCache()


class AuthProvider:
    """Resolves credentials for connector requests.

    Usage:
        provider = AuthProvider(transport)
        request = await provider.apply_auth(request, config.auth, cache_key="t-1:crm")
    """

    def __init__(
        self,
        transport: HttpTransport,
        token_cache: Optional[TokenCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
        expiry_skew_seconds: Optional[int] = None,
    ):
        """Initialize the provider.

        Args:
            transport: Used for token and refresh requests
            token_cache: Token storage backend (defaults per settings)
            clock: Returns the current aware datetime
            expiry_skew_seconds: Tokens closer than this to expiry are renewed
        """
        self.transport = transport
        self.token_cache = token_cache or default_token_cache()
        self.clock = clock or _utcnow
        self.expiry_skew_seconds = (
            expiry_skew_seconds if expiry_skew_seconds is not None else get_settings().oauth_expiry_skew_seconds
        )
        self._locks: Dict[str, asyncio.Lock] = {}

    # =========================================================================
    # Applying auth
    # =========================================================================

    async def apply_auth(self, request: HttpRequest, auth_config: Any, cache_key: Optional[str] = None) -> HttpRequest:
        """Return a copy of ``request`` with credentials applied."""
        if auth_config is None or isinstance(auth_config, NoAuthConfig):
            return request
        if isinstance(auth_config, BasicAuthConfig):
            return self._apply_basic(request, auth_config)
        if isinstance(auth_config, BearerAuthConfig):
            return self._apply_bearer(request, auth_config)
        if isinstance(auth_config, ApiKeyAuthConfig):
            return self._apply_api_key(request, auth_config)
        if isinstance(auth_config, OAuth2AuthConfig):
            token = await self.get_oauth2_token(auth_config, cache_key)
            return replace(request, headers={**request.headers, "Authorization": f"Bearer {token}"})

        logger.warning("Unknown auth type, skipping authentication")
        return request

    @staticmethod
    def _apply_basic(request: HttpRequest, config: BasicAuthConfig) -> HttpRequest:
        credentials = base64.b64encode(f"{config.username}:{config.password}".encode("utf-8")).decode("ascii")
        return replace(request, headers={**request.headers, "Authorization": f"Basic {credentials}"})

    @staticmethod
    def _apply_bearer(request: HttpRequest, config: BearerAuthConfig) -> HttpRequest:
        prefix = config.prefix if config.prefix is not None else "Bearer"
        return replace(request, headers={**request.headers, "Authorization": f"{prefix} {config.token}"})

    @staticmethod
    def _apply_api_key(request: HttpRequest, config: ApiKeyAuthConfig) -> HttpRequest:
        if config.placement == "header":
            return replace(request, headers={**request.headers, config.key_name: config.api_key})
        if config.placement == "query":
            return replace(request, query={**request.query, config.key_name: config.api_key})
        if config.placement == "cookie":
            headers = dict(request.headers)
            existing_key = next((k for k in headers if k.lower() == "cookie"), None)
            existing = headers.pop(existing_key) if existing_key else ""
            cookie = f"{config.key_name}={config.api_key}"
            headers["Cookie"] = f"{existing}; {cookie}" if existing else cookie
            return replace(request, headers=headers)
        return request

    # =========================================================================
    # OAuth2
    # =========================================================================

    async def get_oauth2_token(self, config: OAuth2AuthConfig, cache_key: Optional[str] = None) -> str:
        """Return a usable access token, requesting or refreshing as needed.

        Concurrent callers with the same cache key share one token request.

        Raises:
            AuthenticationFailedError: Token endpoint rejected the request
            UnsupportedGrantTypeError: Grant type needs user interaction
        """
        key = cache_key or f"{config.client_id}:{config.token_url}"
        lock = self._locks.setdefault(key, asyncio.Lock())

        async with lock:
            cached = await self.token_cache.get(key)
            if cached and cached.is_valid_at(self.clock(), self.expiry_skew_seconds):
                return cached.access_token

            if cached and cached.refresh_token and config.refresh_url:
                try:
                    refreshed = await self._refresh_token(config, cached.refresh_token)
                except AuthenticationFailedError as e:
                    logger.warning(
                        "Token refresh failed, requesting new token",
                        extra_fields={"cache_key": key, "status_code": e.status_code},
                    )
                else:
                    await self.token_cache.put(key, refreshed)
                    return refreshed.access_token

            token = await self._request_token(config)
            await self.token_cache.put(key, token)
            return token.access_token

    async def _request_token(self, config: OAuth2AuthConfig) -> CachedToken:
        if config.grant_type != "client_credentials":
            raise UnsupportedGrantTypeError(config.grant_type or "")

        form = {
            "grant_type": "client_credentials",
            "client_id": config.client_id or "",
            "client_secret": config.client_secret or "",
        }
        if config.scopes:
            form["scope"] = " ".join(config.scopes)
        form.update(config.extra_params)

        data = await self._post_form(config.token_url, form, "OAuth2 token request failed")
        return self._token_from_response(data)

    async def _refresh_token(self, config: OAuth2AuthConfig, refresh_token: str) -> CachedToken:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": config.client_id or "",
            "client_secret": config.client_secret or "",
        }
        url = config.refresh_url or config.token_url
        data = await self._post_form(url, form, "OAuth2 token refresh failed")
        return self._token_from_response(data, previous_refresh_token=refresh_token)

    async def _post_form(self, url: str, form: Dict[str, str], failure_message: str) -> Dict[str, Any]:
        request = HttpRequest(
            method="POST",
            url=url,
            headers={"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"},
            body=urlencode(form),
        )
        try:
            response = await self.transport.send(request)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            logger.error(f"{failure_message}: {e}")
            raise AuthenticationFailedError(f"{failure_message}: {e}")

        if not response.ok or not isinstance(response.body, dict) or not response.body.get("access_token"):
            logger.error(f"{failure_message}: HTTP {response.status}", extra_fields={"url": url})
            raise AuthenticationFailedError(
                f"{failure_message}: HTTP {response.status}",
                status_code=response.status,
                response_body=response.text,
            )
        return response.body

    def _token_from_response(self, data: Dict[str, Any], previous_refresh_token: Optional[str] = None) -> CachedToken:
        expires_in = data.get("expires_in") or DEFAULT_EXPIRES_IN
        return CachedToken(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            expires_at=self.clock() + timedelta(seconds=int(expires_in)),
            token_type=data.get("token_type") or "Bearer",
        )

    async def clear_token_cache(self, cache_key: Optional[str] = None) -> None:
        if cache_key:
            await self.token_cache.delete(cache_key)
        else:
            await self.token_cache.clear()


def validate_auth_config(auth_config: Any) -> List[str]:
    """Return the missing-field violations for an auth config."""
    errors = []
    if auth_config is None or isinstance(auth_config, NoAuthConfig):
        return errors
    if isinstance(auth_config, BasicAuthConfig):
        if not auth_config.username:
            errors.append("Basic auth requires username")
        if not auth_config.password:
            errors.append("Basic auth requires password")
    elif isinstance(auth_config, BearerAuthConfig):
        if not auth_config.token:
            errors.append("Bearer auth requires token")
    elif isinstance(auth_config, ApiKeyAuthConfig):
        if not auth_config.api_key:
            errors.append("API key auth requires apiKey")
        if not auth_config.key_name:
            errors.append("API key auth requires keyName")
        if not auth_config.placement:
            errors.append("API key auth requires placement")
    elif isinstance(auth_config, OAuth2AuthConfig):
        if not auth_config.client_id:
            errors.append("OAuth2 requires clientId")
        if not auth_config.client_secret:
            errors.append("OAuth2 requires clientSecret")
        if not auth_config.token_url:
            errors.append("OAuth2 requires tokenUrl")
        if not auth_config.grant_type:
            errors.append("OAuth2 requires grantType")
    else:
        errors.append("Unknown auth type")
    return errors
