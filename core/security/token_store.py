"""Token cache backends for the connector auth provider.

Provides different storage backends for OAuth2 access tokens:
- InMemoryTokenCache: Plain in-process cache
- EncryptedTokenCache: In-process cache that keeps tokens AES-GCM encrypted

Backends only store and fetch; freshness decisions belong to the auth provider.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from core.security.encryption import EncryptedBlob, TokenEncryption


@dataclass
class CachedToken:
    """OAuth2 token with absolute expiry."""
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"

    def is_valid_at(self, now: datetime, skew_seconds: int = 60) -> bool:
        """True if the token still has more than ``skew_seconds`` of lifetime."""
        return self.expires_at > now + timedelta(seconds=skew_seconds)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "expires_at": self.expires_at.isoformat(),
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CachedToken":
        return cls(
            access_token=data["access_token"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
            refresh_token=data.get("refresh_token"),
            token_type=data.get("token_type", "Bearer"),
        )


class TokenCache(ABC):
    """Abstract base class for token caches."""

    @abstractmethod
    async def get(self, key: str) -> Optional[CachedToken]:
        """Retrieve a cached token."""
        pass

    @abstractmethod
    async def put(self, key: str, token: CachedToken) -> None:
        """Store a token, replacing any previous entry for the key."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a cached token."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Drop every cached token."""
        pass


class InMemoryTokenCache(TokenCache):
    """In-memory token cache.

    Tokens are lost on restart, which only costs one extra token request.
    """

    def __init__(self):
        self._tokens: Dict[str, CachedToken] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[CachedToken]:
        with self._lock:
            return self._tokens.get(key)

    async def put(self, key: str, token: CachedToken) -> None:
        with self._lock:
            self._tokens[key] = token

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._tokens.pop(key, None) is not None

    async def clear(self) -> None:
        with self._lock:
            self._tokens.clear()


class EncryptedTokenCache(TokenCache):
    """Token cache that never holds credentials in cleartext.

    Each entry is encrypted with AES-256-GCM and bound to its cache key.
    """

    def __init__(self, encryption: TokenEncryption):
        self._encryption = encryption
        self._blobs: Dict[str, EncryptedBlob] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[CachedToken]:
        with self._lock:
            blob = self._blobs.get(key)
        if blob is None:
            return None
        return CachedToken.from_dict(self._encryption.decrypt(blob))

    async def put(self, key: str, token: CachedToken) -> None:
        blob = self._encryption.encrypt(token.to_dict(), bound_to=key)
        with self._lock:
            self._blobs[key] = blob

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._blobs.pop(key, None) is not None

    async def clear(self) -> None:
        with self._lock:
            self._blobs.clear()
