"""
Lightspeed token encryption at rest (AES-256-GCM).
Envelope format is nonce:authTag:ciphertext, each hex encoded, so values written
by other services sharing the key stay readable.
"""

import os
import string

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from posbridge.config import settings
from posbridge.integrations.lightspeed.errors import (
    AuthenticationFailed,
    ConfigurationError,
    InvalidFormat,
)

logger = structlog.get_logger()

NONCE_BYTES = 12  # 96-bit nonce for GCM
TAG_BYTES = 16
KEY_HEX_LENGTH = 64

_cipher: "TokenCipher | None" = None


class TokenCipher:
    """Symmetric AEAD cipher for OAuth tokens."""

    def __init__(self, key: bytes):
        if len(key) != 32:
            raise ConfigurationError("Token encryption key must be exactly 32 bytes")
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_hex(cls, hex_key: str | None) -> "TokenCipher":
        """
        Build a cipher from a 64-character hex key.

        Raises:
            ConfigurationError: If the key is absent or not 64 hex characters.
        """
        key = (hex_key or "").strip()
        if not key:
            raise ConfigurationError("token_encryption_key is not configured")
        if len(key) != KEY_HEX_LENGTH or any(c not in string.hexdigits for c in key):
            raise ConfigurationError(
                "token_encryption_key must be exactly 64 hex characters (32 bytes)"
            )
        return cls(bytes.fromhex(key))

    def encrypt(self, plaintext: str) -> str:
        """Encrypt with a fresh random nonce. Returns nonce:authTag:ciphertext (hex)."""
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        # cryptography appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, envelope: str) -> str:
        """
        Decrypt a nonce:authTag:ciphertext envelope.

        Raises:
            InvalidFormat: If the envelope is not three hex fields of the right sizes.
            AuthenticationFailed: If the tag does not verify (tamper or wrong key).
        """
        parts = envelope.split(":") if isinstance(envelope, str) else []
        if len(parts) != 3:
            raise InvalidFormat("Invalid encrypted token format")

        nonce_hex, tag_hex, ciphertext_hex = parts
        try:
            nonce = bytes.fromhex(nonce_hex)
            tag = bytes.fromhex(tag_hex)
            ciphertext = bytes.fromhex(ciphertext_hex)
        except ValueError as e:
            raise InvalidFormat("Encrypted token fields must be hex encoded") from e

        if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise InvalidFormat("Invalid nonce or auth tag length")

        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            raise AuthenticationFailed("Token authentication failed") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidFormat("Decrypted token is not valid UTF-8") from e


def get_token_cipher() -> TokenCipher:
    """Return the process-wide cipher built from settings (loaded once)."""
    global _cipher
    if _cipher is None:
        _cipher = TokenCipher.from_hex(settings.token_encryption_key)
        logger.debug("Token cipher initialized")
    return _cipher
