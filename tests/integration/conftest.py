"""
Integration test fixtures.

Every test gets a DbClient wired to a fresh in-memory server, so the full
client stack (documents, HTTP, error mapping) runs without a live server.
"""

import pytest
import pytest_asyncio

from sdk.sofa_sdk.client import DbClient
from sdk.sofa_sdk.config import ClientSettings
from sdk.sofa_sdk.memory import InMemoryCouch


@pytest.fixture
def couch():
    """Fresh in-memory server."""
    return InMemoryCouch()


@pytest_asyncio.fixture
async def client(couch):
    """Connected client talking to the in-memory server."""
    settings = ClientSettings(host="couch", port=5984)
    async with DbClient(settings=settings, transport=couch.transport()) as client:
        yield client


@pytest_asyncio.fixture
async def db(client):
    """Empty 'garage' database."""
    return await client.get_new_database("garage")
