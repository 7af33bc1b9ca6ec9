"""Tests for AES-256-GCM token encryption.

Covers the nonce:tag:ciphertext blob format, nonce freshness, tamper and
wrong-key detection, malformed blobs and key configuration rules.
"""

from __future__ import annotations

import pytest

from src.app.config import Environment, Settings
from src.app.integrations import encryption
from src.app.integrations.encryption import TokenCipher, decrypt, encrypt, generate_key
from src.app.integrations.exceptions import (
    AuthenticationError,
    ConfigurationError,
    FormatError,
)


class TestTokenCipher:
    def test_round_trip(self):
        """decrypt(encrypt(x)) returns x, including non-ASCII text."""
        cipher = TokenCipher(generate_key())
        for plaintext in ("", "pat-na1-abc123", "tökén ✓"):
            assert cipher.decrypt(cipher.encrypt(plaintext)) == plaintext

    def test_round_trip_with_delimiter_in_plaintext(self):
        """Colons in the plaintext do not confuse the colon-separated blob."""
        cipher = TokenCipher(generate_key())
        for plaintext in ("a:b:c", ":", "sf:00D:token::"):
            blob = cipher.encrypt(plaintext)
            assert blob.count(":") == 2
            assert cipher.decrypt(blob) == plaintext

    def test_blob_format(self):
        """Blob is three hex segments: 16-byte nonce, 16-byte tag, ciphertext."""
        blob = TokenCipher(generate_key()).encrypt("secret")
        nonce, tag, ciphertext = blob.split(":")
        assert len(nonce) == 32
        assert len(tag) == 32
        assert len(ciphertext) == len("secret") * 2
        int(nonce + tag + ciphertext, 16)

    def test_fresh_nonce_per_call(self):
        """Encrypting the same value twice yields different blobs."""
        cipher = TokenCipher(generate_key())
        assert cipher.encrypt("same") != cipher.encrypt("same")

    def test_tampered_ciphertext_fails_authentication(self):
        """Flipping a ciphertext nibble raises AuthenticationError."""
        cipher = TokenCipher(generate_key())
        nonce, tag, ciphertext = cipher.encrypt("secret-token").split(":")
        flipped = ("1" if ciphertext[0] == "0" else "0") + ciphertext[1:]
        with pytest.raises(AuthenticationError):
            cipher.decrypt(f"{nonce}:{tag}:{flipped}")

    def test_wrong_key_fails_authentication(self):
        """A blob sealed under one key does not open under another."""
        blob = TokenCipher(generate_key()).encrypt("secret-token")
        with pytest.raises(AuthenticationError):
            TokenCipher(generate_key()).decrypt(blob)

    @pytest.mark.parametrize(
        "blob",
        ["", "abc", "a:b", "a:b:c:d", "zz:zz:zz", "00:00:00"],
    )
    def test_malformed_blob_raises_format_error(self, blob):
        """Wrong segment count, non-hex data and short nonces are FormatError."""
        with pytest.raises(FormatError):
            TokenCipher(generate_key()).decrypt(blob)

    def test_invalid_key_rejected(self):
        """Keys must be 64 hex characters."""
        with pytest.raises(ConfigurationError):
            TokenCipher("abcd")
        with pytest.raises(ConfigurationError):
            TokenCipher("zz" * 32)


class TestConfiguredCipher:
    def test_module_helpers_use_configured_key(self):
        """encrypt()/decrypt() round trip with the development fallback key."""
        assert decrypt(encrypt("hubspot-token")) == "hubspot-token"

    def test_missing_key_in_production_is_configuration_error(self, monkeypatch):
        """Production refuses to start without TOKEN_ENCRYPTION_KEY."""
        settings = Settings(ENVIRONMENT=Environment.production, TOKEN_ENCRYPTION_KEY="")
        monkeypatch.setattr(encryption, "get_settings", lambda: settings)
        encryption.get_cipher.cache_clear()
        with pytest.raises(ConfigurationError):
            encrypt("anything")

    def test_configured_key_is_used(self, monkeypatch):
        """A blob sealed under TOKEN_ENCRYPTION_KEY opens with a cipher on that key."""
        key = generate_key()
        settings = Settings(TOKEN_ENCRYPTION_KEY=key)
        monkeypatch.setattr(encryption, "get_settings", lambda: settings)
        encryption.get_cipher.cache_clear()
        assert TokenCipher(key).decrypt(encrypt("value")) == "value"
