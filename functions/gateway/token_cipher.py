"""
Token encryption at rest.

AES-256-GCM with a fresh random 16-byte IV per call. Stored format:

    <32-hex-iv>:<32-hex-auth-tag>:<hex-ciphertext>

The key is supplied by configuration; this module never generates or
persists keys.
"""

import os
import re
import threading
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from gateway.config import get_settings, parse_token_key
from gateway.constants import TOKEN_KEY_BYTES
from gateway.errors import ConfigurationError, DecryptionError

IV_LENGTH = 16
AUTH_TAG_LENGTH = 16

_HEX_RE = re.compile(r"^[0-9a-fA-F]*$")


class TokenCipher:
    """Authenticated encryption for OAuth tokens."""

    def __init__(self, key: bytes):
        if not isinstance(key, (bytes, bytearray)) or len(key) != TOKEN_KEY_BYTES:
            raise ConfigurationError(f"Token encryption key must be exactly {TOKEN_KEY_BYTES} bytes")
        self._aead = AESGCM(bytes(key))

    @classmethod
    def from_hex(cls, hex_key: str) -> "TokenCipher":
        return cls(parse_token_key(hex_key))

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a token for storage."""
        if not plaintext:
            raise ValueError("Cannot encrypt an empty token")

        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        """
        Decrypt a stored token.

        Raises:
            DecryptionError: malformed input, wrong key, or tampered tag/ciphertext
        """
        if not isinstance(token, str):
            raise DecryptionError("Invalid encrypted token format")

        parts = token.split(":")
        if len(parts) != 3 or not all(parts):
            raise DecryptionError("Invalid encrypted token format")

        iv_hex, tag_hex, data_hex = parts
        if not all(_HEX_RE.match(p) for p in parts):
            raise DecryptionError("Invalid encrypted token format")
        if len(iv_hex) != IV_LENGTH * 2 or len(tag_hex) != AUTH_TAG_LENGTH * 2 or len(data_hex) % 2:
            raise DecryptionError("Invalid encrypted token format")

        iv = bytes.fromhex(iv_hex)
        sealed = bytes.fromhex(data_hex) + bytes.fromhex(tag_hex)
        try:
            plaintext = self._aead.decrypt(iv, sealed, None)
        except InvalidTag:
            raise DecryptionError("Token authentication failed") from None

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionError("Decrypted token is not valid UTF-8") from None

    @staticmethod
    def is_encrypted(value: Optional[str]) -> bool:
        """Structural check only: three segments, first two are 32 hex chars."""
        if not value:
            return False
        parts = value.split(":")
        return (
            len(parts) == 3
            and len(parts[0]) == IV_LENGTH * 2
            and len(parts[1]) == AUTH_TAG_LENGTH * 2
            and bool(_HEX_RE.match(parts[0]))
            and bool(_HEX_RE.match(parts[1]))
        )

    def decrypt_if_encrypted(self, value: Optional[str], flagged: bool = False) -> Optional[str]:
        """
        Read a stored token that may predate encryption.

        Legacy plaintext values pass through unchanged so connections created
        before encryption was rolled out keep working.
        """
        if not value:
            return value
        if flagged or self.is_encrypted(value):
            return self.decrypt(value)
        return value


_cipher: Optional[TokenCipher] = None
_cipher_lock = threading.Lock()


def get_token_cipher() -> TokenCipher:
    """Process-wide cipher built from the configured key."""
    global _cipher
    with _cipher_lock:
        if _cipher is None:
            _cipher = TokenCipher(get_settings().token_encryption_key)
        return _cipher


def reset_token_cipher() -> None:
    """Drop the cached cipher. Used in tests for clean state."""
    global _cipher
    with _cipher_lock:
        _cipher = None


def encrypt_token(token: str) -> str:
    return get_token_cipher().encrypt(token)


def decrypt_token(encrypted_token: str) -> str:
    return get_token_cipher().decrypt(encrypted_token)


def is_encrypted_token(token: Optional[str]) -> bool:
    return TokenCipher.is_encrypted(token)
