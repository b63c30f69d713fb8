"""
Persistence for platform connections.

Tokens are encrypted with TokenCipher on every write and decrypted on read.
Records written before encryption was rolled out hold plaintext tokens and
are read as-is.

DynamoDB schema (CONNECTIONS_TABLE):
    pk: user_id
    sk: "connection#{platform}"
    connected, token_encrypted, expired, needs_reauth: BOOL
    access_token, refresh_token: S (iv:tag:ciphertext)
    expires_at, updated_at: S (ISO 8601)
    account_id, account_name, property_id: S
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from gateway.aws_clients import get_dynamodb
from gateway.errors import DecryptionError
from gateway.token_cipher import TokenCipher
from connectors.models import Platform, PlatformConnection, TokenBundle

logger = logging.getLogger(__name__)


class ConnectionStore(ABC):
    """Where the orchestrator reads and writes connections."""

    @abstractmethod
    async def get(self, user_id: str, platform: Platform) -> Optional[PlatformConnection]:
        ...

    @abstractmethod
    async def save_tokens(self, user_id: str, platform: Platform, bundle: TokenBundle) -> None:
        """Persist refreshed tokens and clear expired/needs_reauth."""

    @abstractmethod
    async def mark_needs_reauth(self, user_id: str, platform: Platform) -> None:
        """Persist expired=True, needs_reauth=True."""


def _sort_key(platform: Platform) -> str:
    return f"connection#{platform.value}"


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        logger.warning(f"Ignoring unparseable expires_at: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class DynamoDBConnectionStore(ConnectionStore):
    def __init__(self, table_name: str, cipher: TokenCipher):
        self.table_name = table_name
        self.cipher = cipher

    def _table(self):
        return get_dynamodb().Table(self.table_name)

    def _from_item(self, item: dict, platform: Platform) -> PlatformConnection:
        flagged = bool(item.get("token_encrypted", False))
        access_token = self.cipher.decrypt_if_encrypted(item.get("access_token"), flagged)

        try:
            refresh_token = self.cipher.decrypt_if_encrypted(item.get("refresh_token"), flagged)
        except DecryptionError:
            # Without a usable refresh token the next refresh forces re-auth
            logger.warning(f"Failed to decrypt refresh token for {platform.value}")
            refresh_token = None

        return PlatformConnection(
            platform=platform,
            connected=bool(item.get("connected", False)),
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=_parse_datetime(item.get("expires_at")),
            token_encrypted=flagged,
            expired=bool(item.get("expired", False)),
            needs_reauth=bool(item.get("needs_reauth", False)),
            account_id=item.get("account_id"),
            account_name=item.get("account_name"),
            property_id=item.get("property_id"),
        )

    def _get_sync(self, user_id: str, platform: Platform) -> Optional[PlatformConnection]:
        response = self._table().get_item(Key={"pk": user_id, "sk": _sort_key(platform)})
        item = response.get("Item")
        if not item:
            return None
        return self._from_item(item, platform)

    async def get(self, user_id: str, platform: Platform) -> Optional[PlatformConnection]:
        """
        Load a connection with plaintext tokens.

        Raises:
            DecryptionError: the stored access token cannot be decrypted
        """
        return await asyncio.to_thread(self._get_sync, user_id, platform)

    def _put_sync(self, user_id: str, connection: PlatformConnection) -> None:
        item = {
            "pk": user_id,
            "sk": _sort_key(connection.platform),
            "connected": connection.connected,
            "token_encrypted": True,
            "expired": connection.expired,
            "needs_reauth": connection.needs_reauth,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        if connection.access_token:
            item["access_token"] = self.cipher.encrypt(connection.access_token)
        if connection.refresh_token:
            item["refresh_token"] = self.cipher.encrypt(connection.refresh_token)
        if connection.expires_at:
            item["expires_at"] = connection.expires_at.isoformat()
        for attr in ("account_id", "account_name", "property_id"):
            value = getattr(connection, attr)
            if value:
                item[attr] = value

        self._table().put_item(Item=item)

    async def put(self, user_id: str, connection: PlatformConnection) -> None:
        """Store a full connection (OAuth callback)."""
        await asyncio.to_thread(self._put_sync, user_id, connection)

    def _save_tokens_sync(self, user_id: str, platform: Platform, bundle: TokenBundle) -> None:
        set_parts = [
            "access_token = :access_token",
            "token_encrypted = :true",
            "expired = :false",
            "needs_reauth = :false",
            "updated_at = :now",
        ]
        values = {
            ":access_token": self.cipher.encrypt(bundle.access_token),
            ":true": True,
            ":false": False,
            ":now": datetime.now(timezone.utc).isoformat(),
        }
        if bundle.refresh_token:
            set_parts.append("refresh_token = :refresh_token")
            values[":refresh_token"] = self.cipher.encrypt(bundle.refresh_token)
        if bundle.expires_at:
            set_parts.append("expires_at = :expires_at")
            values[":expires_at"] = bundle.expires_at.isoformat()

        self._table().update_item(
            Key={"pk": user_id, "sk": _sort_key(platform)},
            UpdateExpression="SET " + ", ".join(set_parts),
            ExpressionAttributeValues=values,
        )

    async def save_tokens(self, user_id: str, platform: Platform, bundle: TokenBundle) -> None:
        await asyncio.to_thread(self._save_tokens_sync, user_id, platform, bundle)

    def _mark_needs_reauth_sync(self, user_id: str, platform: Platform) -> None:
        self._table().update_item(
            Key={"pk": user_id, "sk": _sort_key(platform)},
            UpdateExpression="SET expired = :true, needs_reauth = :true, updated_at = :now",
            ExpressionAttributeValues={
                ":true": True,
                ":now": datetime.now(timezone.utc).isoformat(),
            },
        )

    async def mark_needs_reauth(self, user_id: str, platform: Platform) -> None:
        await asyncio.to_thread(self._mark_needs_reauth_sync, user_id, platform)
