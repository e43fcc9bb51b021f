from __future__ import annotations

import os
import urllib.request

import pytest

from src.adapters.aws import dynamodb_client

BROADCAST_TEST_TABLE = "bus-tracker-locations-test"


def _localstack_healthy(endpoint_url: str) -> bool:
    url = endpoint_url.rstrip("/") + "/_localstack/health"
    try:
        with urllib.request.urlopen(url, timeout=1.5) as resp:  # nosec B310
            return 200 <= resp.status < 300
    except OSError:
        return False


@pytest.fixture(scope="session", autouse=True)
def localstack_env() -> None:
    """Point boto3 at LocalStack unless the environment says otherwise."""

    os.environ.setdefault("USE_LOCALSTACK", "true")
    os.environ.setdefault("ENDPOINT_URL", "http://localhost:4566")
    os.environ.setdefault("AWS_REGION", "eu-west-1")

    # boto3 requires some credentials to be present, even for LocalStack.
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "test")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")


@pytest.fixture(scope="session")
def require_localstack(localstack_env: None) -> str:
    endpoint_url = os.environ.get("ENDPOINT_URL", "http://localhost:4566")
    if not _localstack_healthy(endpoint_url):
        msg = f"LocalStack not reachable at {endpoint_url}"

        # CI starts LocalStack, so a missing one there is a failure.
        if (
            os.getenv("CI")
            or os.getenv("GITHUB_ACTIONS")
            or os.getenv("REQUIRE_LOCALSTACK")
        ):
            pytest.fail(msg, pytrace=False)

        pytest.skip(f"{msg}; skipping integration tests")
    return endpoint_url


@pytest.fixture(scope="session")
def broadcast_table(require_localstack: str) -> str:
    """DynamoDB table keyed by ``broadcast_key``, created on first use."""

    ddb = dynamodb_client()
    existing = ddb.list_tables().get("TableNames", [])
    if BROADCAST_TEST_TABLE not in existing:
        ddb.create_table(
            TableName=BROADCAST_TEST_TABLE,
            BillingMode="PAY_PER_REQUEST",
            AttributeDefinitions=[
                {"AttributeName": "broadcast_key", "AttributeType": "S"}
            ],
            KeySchema=[{"AttributeName": "broadcast_key", "KeyType": "HASH"}],
        )
        ddb.get_waiter("table_exists").wait(TableName=BROADCAST_TEST_TABLE)

    os.environ["BROADCAST_TABLE"] = BROADCAST_TEST_TABLE
    return BROADCAST_TEST_TABLE
