"""
E2E test fixtures for Sofa SDK.

These tests require a running CouchDB-compatible server, configured through
the SOFA_* environment variables (see ClientSettings).
"""

import os
import socket
import time
import uuid

import pytest
import pytest_asyncio

from sdk.sofa_sdk.client import DbClient
from sdk.sofa_sdk.config import ClientSettings

# Skip E2E tests if not in E2E mode
E2E_ENABLED = os.environ.get("SOFA_E2E_TESTS", "0") == "1"

pytestmark = pytest.mark.skipif(
    not E2E_ENABLED,
    reason="E2E tests disabled. Set SOFA_E2E_TESTS=1 to enable."
)


def wait_for_service(host: str, port: int, timeout: int = 60) -> bool:
    """Wait for a service to become available."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            with socket.create_connection((host, port), timeout=1):
                return True
        except OSError:
            time.sleep(1)
    return False


@pytest.fixture(scope="session")
def settings() -> ClientSettings:
    """Settings of the live server; waits until it accepts connections."""
    settings = ClientSettings()
    if E2E_ENABLED:
        assert wait_for_service(settings.host, settings.port), "Database server not ready"
    return settings


@pytest.fixture
def database_prefix() -> str:
    """Per-test prefix so runs never collide."""
    return f"sofa_e2e_{uuid.uuid4().hex[:8]}_"


@pytest_asyncio.fixture
async def client(settings, database_prefix):
    """Client connected to the live server; drops the test's databases afterwards."""
    async with DbClient(settings=settings, database_prefix=database_prefix) as client:
        yield client
        await client.delete_databases(f"^{database_prefix}")
