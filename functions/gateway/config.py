"""
Process configuration for the outbound access layer.

Secrets are read once at startup, either straight from the environment or
from AWS Secrets Manager when the matching *_ARN variable is set. A key or
secret of the wrong shape raises ConfigurationError immediately; the layer
never runs with a derived or truncated key.
"""

import json
import logging
import os
import re
import threading
from dataclasses import dataclass, field
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from gateway.aws_clients import get_secretsmanager
from gateway.constants import MIN_STATE_SECRET_LENGTH, TOKEN_KEY_BYTES
from gateway.errors import ConfigurationError

logger = logging.getLogger(__name__)

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")

# Environment variable names for each OAuth client, keyed by credential group
OAUTH_CLIENT_ENV = {
    "google": ("GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET"),
    "meta": ("META_APP_ID", "META_APP_SECRET"),
    "linkedin": ("LINKEDIN_CLIENT_ID", "LINKEDIN_CLIENT_SECRET"),
    "tiktok": ("TIKTOK_APP_ID", "TIKTOK_APP_SECRET"),
    "snapchat": ("SNAP_CLIENT_ID", "SNAP_CLIENT_SECRET"),
}


@dataclass(frozen=True)
class OAuthClient:
    """Client credentials registered with an ad platform."""

    client_id: str
    client_secret: str

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class Settings:
    """Validated runtime settings."""

    token_encryption_key: bytes
    state_signing_secret: str
    rate_limit_table: Optional[str] = None
    connections_table: str = "adgateway-connections"
    oauth_clients: dict[str, OAuthClient] = field(default_factory=dict)

    def oauth_client(self, group: str) -> OAuthClient:
        return self.oauth_clients.get(group, OAuthClient("", ""))


def parse_token_key(value: str) -> bytes:
    """Decode a 64-hex-character token encryption key into 32 raw bytes."""
    value = (value or "").strip()
    if len(value) != TOKEN_KEY_BYTES * 2:
        raise ConfigurationError(
            f"TOKEN_ENCRYPTION_KEY must be exactly {TOKEN_KEY_BYTES * 2} hex characters ({TOKEN_KEY_BYTES} bytes)"
        )
    if not _HEX_RE.match(value):
        raise ConfigurationError("TOKEN_ENCRYPTION_KEY must be a valid hex string")
    return bytes.fromhex(value)


def validate_state_secret(value: str) -> str:
    if not value or len(value) < MIN_STATE_SECRET_LENGTH:
        raise ConfigurationError(f"STATE_SIGNING_SECRET must be at least {MIN_STATE_SECRET_LENGTH} characters")
    return value


def fetch_secret(secret_arn: str, json_field: str = "key") -> str:
    """
    Retrieve a secret string from Secrets Manager.

    JSON secrets are unwrapped by json_field; anything else is used raw.
    """
    try:
        response = get_secretsmanager().get_secret_value(SecretId=secret_arn)
    except (ClientError, BotoCoreError) as e:
        raise ConfigurationError(f"Failed to retrieve secret {secret_arn}: {e}") from e

    secret_value = response.get("SecretString", "")
    try:
        secret_json = json.loads(secret_value)
    except json.JSONDecodeError:
        return secret_value
    if isinstance(secret_json, dict):
        return secret_json.get(json_field) or ""
    return secret_value


def _read_secret(env_name: str, arn_env_name: str) -> str:
    value = os.environ.get(env_name)
    if value:
        return value
    secret_arn = os.environ.get(arn_env_name)
    if secret_arn:
        return fetch_secret(secret_arn)
    raise ConfigurationError(f"{env_name} environment variable is not set")


def load_settings() -> Settings:
    """Read and validate settings from the environment."""
    token_key = parse_token_key(_read_secret("TOKEN_ENCRYPTION_KEY", "TOKEN_ENCRYPTION_KEY_SECRET_ARN"))
    state_secret = validate_state_secret(_read_secret("STATE_SIGNING_SECRET", "STATE_SIGNING_SECRET_ARN"))

    oauth_clients = {}
    for group, (id_env, secret_env) in OAUTH_CLIENT_ENV.items():
        client = OAuthClient(os.environ.get(id_env, ""), os.environ.get(secret_env, ""))
        if not client.configured:
            logger.warning(f"OAuth client for {group} is not configured; refreshes will require re-auth")
        oauth_clients[group] = client

    return Settings(
        token_encryption_key=token_key,
        state_signing_secret=state_secret,
        rate_limit_table=os.environ.get("RATE_LIMIT_TABLE") or None,
        connections_table=os.environ.get("CONNECTIONS_TABLE", "adgateway-connections"),
        oauth_clients=oauth_clients,
    )


_settings: Optional[Settings] = None
_settings_lock = threading.Lock()


def get_settings() -> Settings:
    """Load settings once per process."""
    global _settings
    with _settings_lock:
        if _settings is None:
            _settings = load_settings()
        return _settings


def reset_settings() -> None:
    """Drop cached settings. Used in tests for clean state."""
    global _settings
    with _settings_lock:
        _settings = None
