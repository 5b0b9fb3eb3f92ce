"""Token encryption using AES-GCM.

Keeps cached OAuth credentials encrypted while they sit in process memory.
Uses AES-256-GCM for authenticated encryption; the cache key is bound to each
ciphertext as additional authenticated data so one tenant's blob cannot be
replayed under another tenant's key.
"""

import base64
import binascii
import json
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


def generate_encryption_key() -> str:
    """Generate a new 256-bit encryption key.

    Returns:
        Base64-encoded 32-byte key suitable for AES-256
    """
    return base64.b64encode(secrets.token_bytes(32)).decode("utf-8")


@dataclass(frozen=True)
class EncryptedBlob:
    """Encrypted payload with the metadata needed to decrypt it."""
    ciphertext: str  # Base64, GCM tag appended
    nonce: str       # Base64 96-bit nonce
    bound_to: str    # Associated data (cache key)
    created_at: str
    key_version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ciphertext": self.ciphertext,
            "nonce": self.nonce,
            "bound_to": self.bound_to,
            "created_at": self.created_at,
            "key_version": self.key_version,
        }


class TokenEncryption:
    """AES-256-GCM encryption for cached credentials.

    Usage:
        enc = TokenEncryption(generate_encryption_key())
        blob = enc.encrypt({"access_token": "..."}, bound_to="tenant-1:crm")
        data = enc.decrypt(blob)
    """

    def __init__(self, encryption_key: str, key_version: int = 1):
        """Initialize with base64-encoded encryption key.

        Args:
            encryption_key: Base64-encoded 32-byte key (from generate_encryption_key())
            key_version: Version stamped on blobs produced by this instance

        Raises:
            ValueError: If the key is not valid base64 or not 32 bytes
        """
        try:
            key = base64.b64decode(encryption_key, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid encryption key: {e}")
        if len(key) != 32:
            raise ValueError("Invalid encryption key: key must be 32 bytes (256 bits)")

        self._aesgcm = AESGCM(key)
        self.key_version = key_version

    def encrypt(self, data: Dict[str, Any], bound_to: str) -> EncryptedBlob:
        """Encrypt a JSON-serializable dict."""
        plaintext = json.dumps(data, default=str).encode("utf-8")
        nonce = os.urandom(12)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext, bound_to.encode("utf-8"))

        return EncryptedBlob(
            ciphertext=base64.b64encode(ciphertext).decode("utf-8"),
            nonce=base64.b64encode(nonce).decode("utf-8"),
            bound_to=bound_to,
            created_at=datetime.now(timezone.utc).isoformat(),
            key_version=self.key_version,
        )

    def decrypt(self, blob: EncryptedBlob) -> Dict[str, Any]:
        """Decrypt a blob produced by encrypt().

        Raises:
            ValueError: If decryption fails (wrong key, tampered data, wrong binding)
        """
        try:
            plaintext = self._aesgcm.decrypt(
                base64.b64decode(blob.nonce),
                base64.b64decode(blob.ciphertext),
                blob.bound_to.encode("utf-8"),
            )
        except (InvalidTag, binascii.Error, ValueError) as e:
            raise ValueError(f"Token decryption failed: {e!r}")
        return json.loads(plaintext.decode("utf-8"))
