"""Authenticated encryption for OAuth tokens and webhook secrets at rest.

AES-256-GCM with a fresh 16-byte nonce per call. Blobs are stored as
``nonce_hex:tag_hex:ciphertext_hex`` so they survive a text column and can be
inspected without a binary-safe client.

The key comes from TOKEN_ENCRYPTION_KEY (64 hex characters). Outside
production a missing key falls back to an all-zero key with a warning; in
production a missing key is a ConfigurationError.
"""

from __future__ import annotations

import os
from functools import lru_cache

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from src.app.config import get_settings
from src.app.integrations.exceptions import (
    AuthenticationError,
    ConfigurationError,
    FormatError,
)

logger = structlog.get_logger(__name__)

KEY_BYTES = 32
NONCE_BYTES = 16
TAG_BYTES = 16

_DEV_FALLBACK_KEY = "0" * (KEY_BYTES * 2)


def generate_key() -> str:
    """Return a new random key in the hex form TOKEN_ENCRYPTION_KEY expects."""
    return os.urandom(KEY_BYTES).hex()


def _parse_key(key_hex: str) -> bytes:
    try:
        key = bytes.fromhex(key_hex)
    except ValueError as exc:
        raise ConfigurationError("TOKEN_ENCRYPTION_KEY must be hex encoded") from exc
    if len(key) != KEY_BYTES:
        raise ConfigurationError(
            f"TOKEN_ENCRYPTION_KEY must be {KEY_BYTES * 2} hex characters, got {len(key_hex)}"
        )
    return key


class TokenCipher:
    """AES-256-GCM cipher over a single key.

    Args:
        key_hex: 64-character hex key.
    """

    def __init__(self, key_hex: str) -> None:
        self._aead = AESGCM(_parse_key(key_hex))

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, blob: str) -> str:
        parts = blob.split(":")
        if len(parts) != 3:
            raise FormatError("Encrypted value must have exactly three ':' separated parts")
        try:
            nonce, tag, ciphertext = (bytes.fromhex(p) for p in parts)
        except ValueError as exc:
            raise FormatError("Encrypted value contains non-hex data") from exc
        if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise FormatError("Encrypted value has an invalid nonce or tag length")

        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise AuthenticationError("Encrypted value failed authentication") from exc
        return plaintext.decode("utf-8")


@lru_cache
def get_cipher() -> TokenCipher:
    """Build the process-wide cipher from settings.

    Raises:
        ConfigurationError: Key missing in production, or malformed anywhere.
    """
    settings = get_settings()
    key_hex = settings.TOKEN_ENCRYPTION_KEY
    if not key_hex:
        if settings.is_production:
            raise ConfigurationError("TOKEN_ENCRYPTION_KEY is required in production")
        logger.warning(
            "encryption.insecure_fallback_key",
            detail="TOKEN_ENCRYPTION_KEY not set; using all-zero development key. "
            "Stored tokens are NOT protected.",
            environment=settings.ENVIRONMENT.value,
        )
        key_hex = _DEV_FALLBACK_KEY
    return TokenCipher(key_hex)


def encrypt(plaintext: str) -> str:
    """Encrypt with the configured key."""
    return get_cipher().encrypt(plaintext)


def decrypt(blob: str) -> str:
    """Decrypt a blob produced by encrypt().

    Raises:
        FormatError: Blob is not three hex segments of the right sizes.
        AuthenticationError: Tag does not verify.
    """
    return get_cipher().decrypt(blob)
