"""
HMAC-signed OAuth state parameters.

The state carries caller data through the OAuth redirect round trip. It is
signed, not encrypted: anyone can read it, nobody without the secret can
forge or extend it.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import time
from typing import Callable, Optional

from gateway.config import get_settings
from gateway.constants import MIN_STATE_SECRET_LENGTH, SIGNED_STATE_TTL_MS
from gateway.errors import ConfigurationError

logger = logging.getLogger(__name__)


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    raw = base64.b64decode(value + padding, altchars=b"-_", validate=True)
    # Reject non-canonical encodings so every character is significant
    if _b64url_encode(raw) != value:
        raise ValueError("Non-canonical base64url encoding")
    return raw


class SignedStateCodec:
    def __init__(self, secret: str, clock: Optional[Callable[[], float]] = None):
        if not secret or len(secret) < MIN_STATE_SECRET_LENGTH:
            raise ConfigurationError(f"State signing secret must be at least {MIN_STATE_SECRET_LENGTH} characters")
        self._key = secret.encode("utf-8")
        self._clock = clock

    def _now_ms(self) -> int:
        now = self._clock() if self._clock is not None else time.time()
        return int(now * 1000)

    def _digest(self, payload_str: str) -> str:
        return hmac.new(self._key, payload_str.encode("utf-8"), hashlib.sha256).hexdigest()

    def sign(self, payload: dict, ttl_ms: int = SIGNED_STATE_TTL_MS) -> str:
        """
        Produce a signed, expiring state token.

        Args:
            payload: JSON-serializable caller data
            ttl_ms: Lifetime in milliseconds

        Returns:
            Unpadded base64url string safe for use in a redirect URL
        """
        body = dict(payload)
        body["exp"] = self._now_ms() + ttl_ms
        body["nonce"] = secrets.token_hex(8)
        payload_str = json.dumps(body, separators=(",", ":"))

        envelope = {"payload": payload_str, "hmac": self._digest(payload_str)}
        return _b64url_encode(json.dumps(envelope, separators=(",", ":")).encode("utf-8"))

    def verify(self, token: str) -> Optional[dict]:
        """
        Validate a state token and return the original payload.

        Returns None for a bad signature, an expired token, or anything that
        fails to decode. Never raises.
        """
        try:
            envelope = json.loads(_b64url_decode(token).decode("utf-8"))
            payload_str = envelope["payload"]
            provided = envelope["hmac"]
            if not isinstance(payload_str, str) or not isinstance(provided, str):
                logger.warning("Signed state has malformed envelope")
                return None
        except (ValueError, TypeError, KeyError, binascii.Error, UnicodeDecodeError):
            logger.warning("Failed to decode signed state")
            return None

        expected = self._digest(payload_str)
        if not hmac.compare_digest(expected.encode("ascii"), provided.encode("utf-8")):
            logger.warning("Signed state HMAC mismatch")
            return None

        try:
            payload = json.loads(payload_str)
        except ValueError:
            logger.warning("Signed state payload is not valid JSON")
            return None
        if not isinstance(payload, dict):
            return None

        exp = payload.pop("exp", None)
        payload.pop("nonce", None)
        if not isinstance(exp, (int, float)) or self._now_ms() > exp:
            logger.info("Signed state expired")
            return None

        return payload


def create_signed_state(payload: dict, ttl_ms: int = SIGNED_STATE_TTL_MS) -> str:
    return SignedStateCodec(get_settings().state_signing_secret).sign(payload, ttl_ms)


def verify_signed_state(token: str) -> Optional[dict]:
    return SignedStateCodec(get_settings().state_signing_secret).verify(token)
