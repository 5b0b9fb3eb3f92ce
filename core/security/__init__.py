"""Security module - credential encryption and token caching."""

from core.security.encryption import (
    TokenEncryption,
    EncryptedBlob,
    generate_encryption_key,
)
from core.security.token_store import (
    TokenCache,
    CachedToken,
    InMemoryTokenCache,
    EncryptedTokenCache,
)

__all__ = [
    "TokenEncryption",
    "EncryptedBlob",
    "generate_encryption_key",
    "TokenCache",
    "CachedToken",
    "InMemoryTokenCache",
    "EncryptedTokenCache",
]
