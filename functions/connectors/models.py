"""
Types for ad platform connections.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class Platform(str, Enum):
    GA4 = "ga4"
    GOOGLE_ADS = "google_ads"
    META = "meta"
    LINKEDIN = "linkedin"
    TIKTOK = "tiktok"
    SNAPCHAT = "snapchat"

    @classmethod
    def parse(cls, value) -> Optional["Platform"]:
        """Return the Platform for value, or None if it is not a known platform."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass
class PlatformConnection:
    """
    One user's OAuth connection to one platform.

    Tokens on this object are always plaintext; encryption happens at the
    store boundary.
    """

    platform: Platform
    connected: bool = False
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    token_encrypted: bool = False
    expired: bool = False
    needs_reauth: bool = False
    account_id: Optional[str] = None
    account_name: Optional[str] = None
    property_id: Optional[str] = None  # GA4 only


@dataclass(frozen=True)
class TokenBundle:
    """Result of a successful refresh."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
