"""
Tests for settings loading and secret validation.
"""

import json

import boto3
import pytest
from moto import mock_aws

from gateway.config import (
    OAuthClient,
    fetch_secret,
    get_settings,
    load_settings,
    parse_token_key,
    reset_settings,
    validate_state_secret,
)
from gateway.errors import ConfigurationError
from conftest import TEST_STATE_SECRET, TEST_TOKEN_KEY


class TestParseTokenKey:
    def test_valid_hex_key(self):
        assert parse_token_key(TEST_TOKEN_KEY) == bytes(range(32))

    def test_uppercase_and_whitespace(self):
        assert parse_token_key(f"  {TEST_TOKEN_KEY.upper()}\n") == bytes(range(32))

    @pytest.mark.parametrize("value", ["", "abcd", TEST_TOKEN_KEY + "00", TEST_TOKEN_KEY[:-2]])
    def test_wrong_length_rejected(self, value):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_token_key(value)
        assert "64 hex characters" in exc_info.value.message

    def test_non_hex_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_token_key("z" * 64)


class TestStateSecret:
    def test_minimum_length(self):
        assert validate_state_secret("x" * 32) == "x" * 32

    @pytest.mark.parametrize("value", ["", None, "x" * 31])
    def test_short_secret_rejected(self, value):
        with pytest.raises(ConfigurationError):
            validate_state_secret(value)


class TestLoadSettings:
    def test_from_environment(self):
        settings = load_settings()

        assert settings.token_encryption_key == bytes(range(32))
        assert settings.state_signing_secret == TEST_STATE_SECRET
        assert settings.rate_limit_table is None
        assert settings.connections_table == "adgateway-connections"
        assert settings.oauth_client("meta") == OAuthClient("meta-app-id", "meta-app-secret")

    def test_rate_limit_table(self, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_TABLE", "adgateway-rate-limits")
        assert load_settings().rate_limit_table == "adgateway-rate-limits"

    def test_missing_key_fails_fast(self, monkeypatch):
        monkeypatch.delenv("TOKEN_ENCRYPTION_KEY")
        with pytest.raises(ConfigurationError) as exc_info:
            load_settings()
        assert "TOKEN_ENCRYPTION_KEY" in exc_info.value.message

    def test_short_key_is_not_padded(self, monkeypatch):
        monkeypatch.setenv("TOKEN_ENCRYPTION_KEY", "deadbeef")
        with pytest.raises(ConfigurationError):
            load_settings()

    def test_unconfigured_oauth_client_logged(self, monkeypatch, caplog):
        monkeypatch.delenv("TIKTOK_APP_SECRET")
        with caplog.at_level("WARNING"):
            settings = load_settings()
        assert settings.oauth_client("tiktok").configured is False
        assert "tiktok" in caplog.text

    def test_unknown_group_is_unconfigured(self):
        assert load_settings().oauth_client("myspace").configured is False

    def test_get_settings_is_cached(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("RATE_LIMIT_TABLE", "changed")
        assert get_settings() is first

        reset_settings()
        assert get_settings().rate_limit_table == "changed"


class TestSecretsManager:
    @mock_aws
    def test_json_secret_unwrapped(self, monkeypatch):
        client = boto3.client("secretsmanager", region_name="us-east-1")
        arn = client.create_secret(Name="adgateway/token-key", SecretString=json.dumps({"key": TEST_TOKEN_KEY}))["ARN"]
        monkeypatch.delenv("TOKEN_ENCRYPTION_KEY")
        monkeypatch.setenv("TOKEN_ENCRYPTION_KEY_SECRET_ARN", arn)

        assert load_settings().token_encryption_key == bytes(range(32))

    @mock_aws
    def test_plain_secret_used_raw(self):
        client = boto3.client("secretsmanager", region_name="us-east-1")
        arn = client.create_secret(Name="adgateway/state", SecretString=TEST_STATE_SECRET)["ARN"]

        assert fetch_secret(arn) == TEST_STATE_SECRET

    @mock_aws
    def test_missing_secret_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            fetch_secret("arn:aws:secretsmanager:us-east-1:123456789012:secret:missing")

    def test_environment_value_wins_over_arn(self, monkeypatch):
        monkeypatch.setenv("TOKEN_ENCRYPTION_KEY_SECRET_ARN", "arn:never-fetched")
        assert load_settings().token_encryption_key == bytes(range(32))
