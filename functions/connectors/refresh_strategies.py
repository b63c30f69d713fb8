"""
Per-platform OAuth token refresh.

Each platform speaks one of three refresh dialects:
- RefreshTokenGrant: standard form-encoded refresh_token grant (Google,
  LinkedIn, Snapchat)
- TokenExchangeGrant: Meta exchanges the current long-lived access token
  for a new one (there is no refresh token)
- TikTokRefreshGrant: JSON body, answers inside a {code, message, data}
  envelope where code != 0 means rejection

A strategy raises RefreshRejectedError when the platform refuses the
credential; the orchestrator turns that into a re-auth requirement.
Transport and 5xx failures propagate unchanged so the connection is not
marked for re-auth on an outage.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from gateway.config import OAuthClient, Settings
from gateway.constants import (
    GOOGLE_TOKEN_URL,
    LINKEDIN_TOKEN_URL,
    META_LONG_LIVED_TOKEN_SECONDS,
    META_TOKEN_URL,
    SNAPCHAT_TOKEN_URL,
    TIKTOK_TOKEN_URL,
)
from gateway.errors import HttpError
from gateway.http_client import ResilientHttpClient
from connectors.models import Platform, PlatformConnection, TokenBundle

logger = logging.getLogger(__name__)

# Token endpoint statuses that mean the credential itself was refused
REJECTION_STATUSES = frozenset({400, 401, 403})

DEFAULT_ACCESS_TOKEN_SECONDS = 3600


class RefreshRejectedError(Exception):
    """The platform refused the credential; only the user can fix it."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


def _expires_at(expires_in, default_seconds: int) -> datetime:
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        seconds = default_seconds
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


def _json_body(response: httpx.Response, service: str) -> dict:
    try:
        body = response.json()
    except ValueError:
        raise HttpError(service, response, "Token endpoint returned a non-JSON body") from None
    if not isinstance(body, dict):
        raise HttpError(service, response, "Token endpoint returned an unexpected body")
    return body


class RefreshStrategy:
    """Base class for platform refresh dialects."""

    def __init__(self, name: str, token_url: str, client: OAuthClient, http: ResilientHttpClient, service: str):
        self.name = name
        self.token_url = token_url
        self.client = client
        self.http = http
        self.service = service

    async def refresh(self, connection: PlatformConnection) -> TokenBundle:
        raise NotImplementedError

    def _require_client(self) -> None:
        if not self.client.configured:
            raise RefreshRejectedError(f"{self.name} OAuth client is not configured")

    def _check_status(self, response: httpx.Response) -> None:
        if response.status_code in REJECTION_STATUSES:
            logger.warning(
                f"{self.name} token endpoint rejected refresh",
                extra={"service": self.service, "status_code": response.status_code},
            )
            raise RefreshRejectedError(f"token endpoint returned {response.status_code}")
        if not response.is_success:
            raise HttpError(self.service, response)


class RefreshTokenGrant(RefreshStrategy):
    """grant_type=refresh_token, form-encoded."""

    async def refresh(self, connection: PlatformConnection) -> TokenBundle:
        if not connection.refresh_token:
            raise RefreshRejectedError("no refresh token stored")
        self._require_client()

        response = await self.http.request(
            "POST",
            self.token_url,
            self.service,
            data={
                "grant_type": "refresh_token",
                "refresh_token": connection.refresh_token,
                "client_id": self.client.client_id,
                "client_secret": self.client.client_secret,
            },
        )
        self._check_status(response)
        body = _json_body(response, self.service)

        access_token = body.get("access_token")
        if not access_token:
            raise RefreshRejectedError("token endpoint returned no access token")

        return TokenBundle(
            access_token=access_token,
            # Google only issues a new refresh token occasionally
            refresh_token=body.get("refresh_token") or connection.refresh_token,
            expires_at=_expires_at(body.get("expires_in"), DEFAULT_ACCESS_TOKEN_SECONDS),
        )


class TokenExchangeGrant(RefreshStrategy):
    """Meta fb_exchange_token: trade the current access token for a fresh one."""

    async def refresh(self, connection: PlatformConnection) -> TokenBundle:
        if not connection.access_token:
            raise RefreshRejectedError("no access token to exchange")
        self._require_client()

        response = await self.http.request(
            "GET",
            self.token_url,
            self.service,
            params={
                "grant_type": "fb_exchange_token",
                "client_id": self.client.client_id,
                "client_secret": self.client.client_secret,
                "fb_exchange_token": connection.access_token,
            },
        )
        self._check_status(response)
        body = _json_body(response, self.service)

        access_token = body.get("access_token")
        if not access_token:
            raise RefreshRejectedError("token exchange returned no access token")

        return TokenBundle(
            access_token=access_token,
            refresh_token=connection.refresh_token,
            expires_at=_expires_at(body.get("expires_in"), META_LONG_LIVED_TOKEN_SECONDS),
        )


class TikTokRefreshGrant(RefreshStrategy):
    """TikTok Business API refresh, JSON in and JSON envelope out."""

    async def refresh(self, connection: PlatformConnection) -> TokenBundle:
        if not connection.refresh_token:
            raise RefreshRejectedError("no refresh token stored")
        self._require_client()

        response = await self.http.request(
            "POST",
            self.token_url,
            self.service,
            json={
                "app_id": self.client.client_id,
                "secret": self.client.client_secret,
                "refresh_token": connection.refresh_token,
            },
        )
        self._check_status(response)
        envelope = _json_body(response, self.service)

        if envelope.get("code") != 0:
            logger.warning(
                "TikTok rejected refresh",
                extra={"service": self.service, "tiktok_code": envelope.get("code")},
            )
            raise RefreshRejectedError(envelope.get("message") or "TikTok refresh rejected")

        data = envelope.get("data") or {}
        access_token = data.get("access_token")
        if not access_token:
            raise RefreshRejectedError("TikTok refresh returned no access token")

        return TokenBundle(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or connection.refresh_token,
            expires_at=_expires_at(data.get("expires_in"), DEFAULT_ACCESS_TOKEN_SECONDS),
        )


def build_refresh_strategies(
    settings: Settings,
    http: ResilientHttpClient,
    token_urls: Optional[dict[str, str]] = None,
) -> dict[Platform, RefreshStrategy]:
    """
    Strategy per platform. GA4 and Google Ads share one Google client.

    Args:
        settings: Source of OAuth client credentials
        http: Client all token endpoint calls go through
        token_urls: Endpoint overrides keyed by credential group
    """
    urls = {
        "google": GOOGLE_TOKEN_URL,
        "meta": META_TOKEN_URL,
        "linkedin": LINKEDIN_TOKEN_URL,
        "tiktok": TIKTOK_TOKEN_URL,
        "snapchat": SNAPCHAT_TOKEN_URL,
        **(token_urls or {}),
    }

    google = RefreshTokenGrant("Google", urls["google"], settings.oauth_client("google"), http, "google-oauth")
    return {
        Platform.GA4: google,
        Platform.GOOGLE_ADS: google,
        Platform.META: TokenExchangeGrant("Meta", urls["meta"], settings.oauth_client("meta"), http, "meta-oauth"),
        Platform.LINKEDIN: RefreshTokenGrant(
            "LinkedIn", urls["linkedin"], settings.oauth_client("linkedin"), http, "linkedin-oauth"
        ),
        Platform.TIKTOK: TikTokRefreshGrant(
            "TikTok", urls["tiktok"], settings.oauth_client("tiktok"), http, "tiktok-oauth"
        ),
        Platform.SNAPCHAT: RefreshTokenGrant(
            "Snapchat", urls["snapchat"], settings.oauth_client("snapchat"), http, "snap-oauth"
        ),
    }
