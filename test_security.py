"""
Security tests: AES-GCM token encryption and the token cache backends.
"""

import asyncio
import base64
from dataclasses import replace
from datetime import timedelta

import pytest

from core.security import (
    CachedToken,
    EncryptedTokenCache,
    InMemoryTokenCache,
    TokenEncryption,
    generate_encryption_key,
)
from conftest import FIXED_NOW


def token(**overrides):
    values = {"access_token": "tok-1", "expires_at": FIXED_NOW + timedelta(hours=1), "refresh_token": "r-1"}
    values.update(overrides)
    return CachedToken(**values)


class TestTokenEncryption:

    def test_round_trip(self):
        enc = TokenEncryption(generate_encryption_key(), key_version=3)
        blob = enc.encrypt({"access_token": "secret"}, bound_to="t-1:crm")

        assert "secret" not in blob.ciphertext
        assert blob.key_version == 3
        assert enc.decrypt(blob) == {"access_token": "secret"}

    def test_nonce_differs_per_call(self):
        enc = TokenEncryption(generate_encryption_key())
        first = enc.encrypt({"a": 1}, bound_to="k")
        second = enc.encrypt({"a": 1}, bound_to="k")
        assert first.nonce != second.nonce
        assert first.ciphertext != second.ciphertext

    def test_binding_is_authenticated(self):
        enc = TokenEncryption(generate_encryption_key())
        blob = enc.encrypt({"a": 1}, bound_to="t-1:crm")
        with pytest.raises(ValueError, match="Token decryption failed"):
            enc.decrypt(replace(blob, bound_to="t-2:crm"))

    def test_wrong_key_fails(self):
        blob = TokenEncryption(generate_encryption_key()).encrypt({"a": 1}, bound_to="k")
        with pytest.raises(ValueError):
            TokenEncryption(generate_encryption_key()).decrypt(blob)

    @pytest.mark.parametrize("key", ["not base64!", base64.b64encode(b"short").decode()])
    def test_invalid_key(self, key):
        with pytest.raises(ValueError, match="Invalid encryption key"):
            TokenEncryption(key)


class TestCachedToken:

    def test_validity_respects_skew(self):
        cached = token(expires_at=FIXED_NOW + timedelta(seconds=90))
        assert cached.is_valid_at(FIXED_NOW, skew_seconds=60) is True
        assert cached.is_valid_at(FIXED_NOW + timedelta(seconds=31), skew_seconds=60) is False

    def test_dict_round_trip(self):
        cached = token()
        assert CachedToken.from_dict(cached.to_dict()) == cached


class TestTokenCaches:

    @pytest.fixture(params=["plain", "encrypted"])
    def cache(self, request):
        if request.param == "plain":
            return InMemoryTokenCache()
        return EncryptedTokenCache(TokenEncryption(generate_encryption_key()))

    def test_put_get_delete(self, cache):
        async def run():
            await cache.put("t-1:crm", token())
            fetched = await cache.get("t-1:crm")
            deleted = await cache.delete("t-1:crm")
            missing = await cache.get("t-1:crm")
            return fetched, deleted, missing

        fetched, deleted, missing = asyncio.run(run())
        assert fetched == token()
        assert deleted is True
        assert missing is None

    def test_clear(self, cache):
        async def run():
            await cache.put("a", token())
            await cache.put("b", token())
            await cache.clear()
            return await cache.get("a"), await cache.delete("b")

        assert asyncio.run(run()) == (None, False)

    def test_encrypted_cache_holds_no_cleartext(self):
        cache = EncryptedTokenCache(TokenEncryption(generate_encryption_key()))
        asyncio.run(cache.put("k", token(access_token="very-secret-token")))
        stored = cache._blobs["k"]
        assert "very-secret-token" not in stored.ciphertext
        assert stored.bound_to == "k"
