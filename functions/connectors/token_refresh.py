"""
Token refresh orchestration.

Hands out valid access tokens for a user's platform connection, refreshing
expired ones through the platform's RefreshStrategy, and retries an API call
exactly once after a 401.

The orchestrator is the only writer of needs_reauth/expired and of the token
fields after a refresh.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar, Union

import httpx

from gateway.constants import TOKEN_EXPIRY_BUFFER_SECONDS
from gateway.errors import HttpError, ReauthRequiredError
from connectors.connection_store import ConnectionStore
from connectors.models import Platform, PlatformConnection, TokenBundle
from connectors.refresh_strategies import RefreshRejectedError, RefreshStrategy

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_token_expired(
    expires_at: Optional[datetime],
    buffer_seconds: int = TOKEN_EXPIRY_BUFFER_SECONDS,
) -> bool:
    """
    True if the token expires within buffer_seconds (default 5 minutes).

    A missing expiry counts as expired.
    """
    if expires_at is None:
        return True
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc) >= expires_at - timedelta(seconds=buffer_seconds)


def _is_unauthorized(error: Exception) -> bool:
    if isinstance(error, HttpError):
        return error.status_code == 401
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code == 401
    return False


class TokenRefreshOrchestrator:
    def __init__(self, store: ConnectionStore, strategies: dict[Platform, RefreshStrategy]):
        self.store = store
        self.strategies = strategies

    async def _load(self, user_id: str, platform: Platform) -> PlatformConnection:
        connection = await self.store.get(user_id, platform)
        if connection is None or not connection.connected or not connection.access_token:
            raise ReauthRequiredError(platform.value, user_id, "platform is not connected")
        return connection

    async def _refresh(self, connection: PlatformConnection, user_id: str) -> TokenBundle:
        platform = connection.platform
        strategy = self.strategies.get(platform)

        try:
            if strategy is None:
                raise RefreshRejectedError(f"no refresh strategy for {platform.value}")
            bundle = await strategy.refresh(connection)
        except RefreshRejectedError as e:
            logger.warning(
                f"Token refresh rejected for {platform.value}, marking for re-auth",
                extra={"platform": platform.value, "user_id": user_id, "reason": e.reason},
            )
            await self.store.mark_needs_reauth(user_id, platform)
            connection.expired = True
            connection.needs_reauth = True
            raise ReauthRequiredError(platform.value, user_id, e.reason) from e

        await self.store.save_tokens(user_id, platform, bundle)
        connection.access_token = bundle.access_token
        connection.refresh_token = bundle.refresh_token or connection.refresh_token
        connection.expires_at = bundle.expires_at
        connection.expired = False
        connection.needs_reauth = False

        logger.info(
            f"Refreshed token for {platform.value}",
            extra={"platform": platform.value, "user_id": user_id},
        )
        return bundle

    async def get_valid_token(self, connection: PlatformConnection, user_id: str) -> str:
        """
        Return a usable access token for an already-loaded connection.

        Raises:
            ReauthRequiredError: not connected, flagged for re-auth, or the
                platform refused the refresh
            ApiClientError: the token endpoint could not be reached
        """
        if not connection.connected or not connection.access_token:
            raise ReauthRequiredError(connection.platform.value, user_id, "platform is not connected")
        if connection.needs_reauth:
            raise ReauthRequiredError(connection.platform.value, user_id, "connection flagged for re-auth")

        if not is_token_expired(connection.expires_at):
            return connection.access_token

        logger.info(f"Token expired for {connection.platform.value}, refreshing")
        bundle = await self._refresh(connection, user_id)
        return bundle.access_token

    async def get_valid_access_token(self, user_id: str, platform: Union[Platform, str]) -> str:
        platform = Platform(platform)
        connection = await self._load(user_id, platform)
        return await self.get_valid_token(connection, user_id)

    async def force_refresh(self, user_id: str, platform: Union[Platform, str]) -> str:
        """Refresh regardless of the stored expiry (used after a 401)."""
        platform = Platform(platform)
        connection = await self._load(user_id, platform)
        bundle = await self._refresh(connection, user_id)
        return bundle.access_token

    async def with_token_refresh(
        self,
        user_id: str,
        platform: Union[Platform, str],
        api_call: Callable[[str], Awaitable[T]],
    ) -> T:
        """
        Run api_call with a valid token; on 401 refresh once and retry once.

        A second 401 propagates to the caller.
        """
        platform = Platform(platform)
        access_token = await self.get_valid_access_token(user_id, platform)

        try:
            return await api_call(access_token)
        except (HttpError, httpx.HTTPStatusError) as e:
            if not _is_unauthorized(e):
                raise
            logger.info(f"Got 401 for {platform.value}, forcing token refresh")

        access_token = await self.force_refresh(user_id, platform)
        return await api_call(access_token)
