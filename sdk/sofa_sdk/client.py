"""
Sofa Client for Python SDK.

This module provides the main client interface:
- DbClient: Connection to a CouchDB-compatible server
- Server-level database management (create, delete, list)
- Database handles for document operations

Example:
    >>> async with DbClient("localhost:5984") as client:
    ...     db = await client.get_database("garage")
    ...     car = Car(make="Hoopty", model="Type R", horse_powers=5)
    ...     await db.save_document(car)

Invariants:
    - Every database opened through a client gets the client's name prefix
    - database() never performs I/O; get_database() makes sure it exists
"""

from __future__ import annotations

import logging
import re
from typing import Any, TypeVar
from urllib.parse import quote

import httpx

from ._http_client import HttpClient, HttpResponse
from .config import ClientSettings
from .database import Database
from .errors import ConflictError, ConnectionError, NotFoundError, RequestError

logger = logging.getLogger(__name__)

DB = TypeVar("DB", bound=Database)


class DbClient:
    """Client for connecting to a database server.

    Provides a clean Python API over the server's HTTP interface.
    Handles connection management and database lifecycle.

    Example:
        >>> async with DbClient("localhost:5984") as client:
        ...     names = await client.database_names()
    """

    def __init__(
        self,
        address: str | None = None,
        *,
        settings: ClientSettings | None = None,
        database_prefix: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize client.

        Args:
            address: Server address (URL, host:port or just host); taken from
                settings when omitted
            settings: Client settings (loaded from environment when omitted)
            database_prefix: Prefix for every database name; overrides settings
            transport: Optional httpx transport, e.g. InMemoryCouch().transport()
        """
        self.settings = settings or ClientSettings()

        # Parse address
        if address is None:
            base_url = self.settings.base_url
        elif "://" in address:
            base_url = address
        elif ":" in address:
            host, port_str = address.rsplit(":", 1)
            base_url = f"{self.settings.scheme}://{host}:{int(port_str)}"
        else:
            base_url = f"{self.settings.scheme}://{address}:5984"

        self._http = HttpClient(base_url, timeout=self.settings.timeout, transport=transport)
        self.database_prefix = (
            database_prefix if database_prefix is not None else self.settings.database_prefix
        )
        self._connected = False

    @property
    def base_url(self) -> str:
        return self._http.base_url

    async def connect(self) -> None:
        """Connect to the server."""
        if self._connected:
            return

        try:
            await self._http.connect()
            self._connected = True
        except Exception as e:
            raise ConnectionError(
                f"Failed to connect: {e}",
                address=self._http.base_url,
            ) from e

    async def close(self) -> None:
        """Close the connection."""
        if self._connected:
            await self._http.close()
            self._connected = False

    async def __aenter__(self) -> DbClient:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def request(self, method: str, path: str, **kwargs: Any) -> HttpResponse:
        """Send a request relative to the server root.

        See HttpClient.request for the keyword arguments.
        """
        return await self._http.request(method, path, **kwargs)

    async def server_info(self) -> dict[str, Any]:
        """The server's welcome object (name and version)."""
        return (await self.request("GET", "/")).json()

    # ------------------------------------------------------------------
    # Databases
    # ------------------------------------------------------------------

    @staticmethod
    def _db_path(name: str) -> str:
        return "/" + quote(name, safe="")

    async def has_database(self, name: str) -> bool:
        """Whether a database exists.

        Args:
            name: Full database name (prefix included)
        """
        try:
            await self.request("HEAD", self._db_path(name))
        except NotFoundError:
            return False
        return True

    async def create_database(self, name: str) -> None:
        """Create a database.

        Raises:
            ConflictError: If the database already exists
        """
        try:
            await self.request(
                "PUT",
                self._db_path(name),
                error_message=f"Failed to create database {name}",
            )
        except RequestError as e:
            if e.status_code != 412:
                raise
            raise ConflictError(
                e.message,
                e.status_code,
                error=e.error,
                reason=e.reason,
                method=e.method,
                path=e.path,
            ) from e
        logger.info(f"Created database {name}")

    async def delete_database(self, name: str) -> None:
        """Delete a database.

        Raises:
            NotFoundError: If the database does not exist
        """
        await self.request(
            "DELETE",
            self._db_path(name),
            error_message=f"Failed to delete database {name}",
        )
        logger.info(f"Deleted database {name}")

    async def database_names(self) -> list[str]:
        """Names of every database on the server."""
        return list((await self.request("GET", "/_all_dbs")).json())

    async def delete_databases(self, pattern: str) -> list[str]:
        """Delete every database whose name matches a regular expression.

        Returns:
            Names of the deleted databases
        """
        regex = re.compile(pattern)
        deleted = []
        for name in await self.database_names():
            if regex.search(name):
                await self.delete_database(name)
                deleted.append(name)
        return deleted

    async def delete_all_databases(self) -> list[str]:
        """Delete every user database on the server (testing aid).

        System databases (leading underscore) are kept.
        """
        return await self.delete_databases(r"^[^_]")

    def database(self, name: str, cls: type[DB] = Database) -> DB:  # type: ignore[assignment]
        """Get a handle to a database without contacting the server.

        Args:
            name: Database name without the client's prefix
            cls: Database subclass to instantiate
        """
        return cls(self, name)

    async def get_database(self, name: str, cls: type[DB] = Database) -> DB:  # type: ignore[assignment]
        """Get a database, creating and initializing it if missing."""
        db = self.database(name, cls)
        await db.create()
        return db

    async def get_new_database(self, name: str, cls: type[DB] = Database) -> DB:  # type: ignore[assignment]
        """Drop a database if it exists and create it empty (testing aid)."""
        db = self.database(name, cls)
        await db.delete()
        await db.create()
        return db
