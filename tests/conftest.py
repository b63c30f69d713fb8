"""
Shared pytest fixtures for adgateway tests.
"""

import os
import sys

import boto3
import httpx
import pytest
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

TEST_TOKEN_KEY = "000102030405060708090a0b0c0d0e0f101112131415161718191a1b1c1d1e1f"
TEST_STATE_SECRET = "test-state-signing-secret-0123456789abcdef"

TEST_ENV = {
    "TOKEN_ENCRYPTION_KEY": TEST_TOKEN_KEY,
    "STATE_SIGNING_SECRET": TEST_STATE_SECRET,
    "CONNECTIONS_TABLE": "adgateway-connections",
    "GOOGLE_CLIENT_ID": "google-client-id",
    "GOOGLE_CLIENT_SECRET": "google-client-secret",
    "META_APP_ID": "meta-app-id",
    "META_APP_SECRET": "meta-app-secret",
    "LINKEDIN_CLIENT_ID": "linkedin-client-id",
    "LINKEDIN_CLIENT_SECRET": "linkedin-client-secret",
    "TIKTOK_APP_ID": "tiktok-app-id",
    "TIKTOK_APP_SECRET": "tiktok-app-secret",
    "SNAP_CLIENT_ID": "snap-client-id",
    "SNAP_CLIENT_SECRET": "snap-client-secret",
}


def pytest_configure(config):
    """Set AWS credentials before test collection.

    This runs before test collection starts, ensuring boto3 resource
    creation during imports doesn't fail with NoRegionError.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")

    # Fresh httpx client per request so httpx.MockTransport injection works
    os.environ["USE_CONNECTION_POOLING"] = "false"


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def gateway_env(monkeypatch):
    """Valid secrets and OAuth clients; tests override individual variables."""
    for name, value in TEST_ENV.items():
        monkeypatch.setenv(name, value)
    monkeypatch.delenv("RATE_LIMIT_TABLE", raising=False)
    monkeypatch.delenv("TOKEN_ENCRYPTION_KEY_SECRET_ARN", raising=False)
    monkeypatch.delenv("STATE_SIGNING_SECRET_ARN", raising=False)


@pytest.fixture(autouse=True)
def reset_process_state():
    """Reset cached clients, settings and wiring between tests to prevent pollution."""
    _reset_all()
    yield
    _reset_all()


def _reset_all():
    from gateway.aws_clients import reset_clients
    from gateway.config import reset_settings
    from gateway.token_cipher import reset_token_cipher
    from connectors.runtime import reset_runtime

    reset_clients()
    reset_settings()
    reset_token_cipher()
    reset_runtime()


class FakeClock:
    """Controllable time source (epoch seconds) for breakers and limiters."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def token_key():
    return bytes.fromhex(TEST_TOKEN_KEY)


@pytest.fixture
def cipher(token_key):
    from gateway.token_cipher import TokenCipher

    return TokenCipher(token_key)


@pytest.fixture
def no_sleep():
    """Backoff sleep that records requested delays instead of waiting."""
    delays = []

    async def sleep(seconds):
        delays.append(seconds)

    sleep.delays = delays
    return sleep


def create_mock_client(handler) -> httpx.AsyncClient:
    """httpx client whose requests are answered by handler(request)."""

    async def mock_handler(request: httpx.Request) -> httpx.Response:
        return handler(request)

    return httpx.AsyncClient(transport=httpx.MockTransport(mock_handler))


@pytest.fixture
def mock_client():
    return create_mock_client


def create_dynamodb_tables(dynamodb):
    """Create the rate limit and connections tables."""
    dynamodb.create_table(
        TableName="adgateway-rate-limits",
        KeySchema=[{"AttributeName": "pk", "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": "pk", "AttributeType": "S"}],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="adgateway-connections",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},   # user_id
            {"AttributeName": "sk", "KeyType": "RANGE"},  # connection#{platform}
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def mock_dynamodb():
    """Provide mocked DynamoDB with tables."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb
