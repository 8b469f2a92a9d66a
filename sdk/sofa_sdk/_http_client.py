"""
Internal HTTP client for Sofa SDK.

This module provides the low-level HTTP communication layer.
It is internal to the SDK and should not be used directly by users.

Users should use DbClient and Database instead, which provide a clean
Python API.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping
from urllib.parse import quote

import httpx

from .errors import ConnectionError, error_for_status

logger = logging.getLogger(__name__)

DESIGN_PREFIX = "_design/"
JSON_CONTENT_TYPE = "application/json"


def quote_doc_id(doc_id: str) -> str:
    """URL-quote a document id for use as a path segment.

    Design document ids keep the slash after ``_design``.
    """
    if doc_id.startswith(DESIGN_PREFIX):
        return DESIGN_PREFIX + quote(doc_id[len(DESIGN_PREFIX):], safe="")
    return quote(doc_id, safe="")


def strip_etag(value: str | None) -> str | None:
    """Remove the quotes the server wraps ETags in."""
    if value is None:
        return None
    if value.startswith("W/"):
        value = value[2:]
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1]
    return value


@dataclass
class HttpResponse:
    """Internal response representation."""

    status_code: int
    headers: Mapping[str, str] = field(default_factory=dict)
    content: bytes = b""

    @property
    def etag(self) -> str | None:
        """Unquoted ETag header."""
        return strip_etag(self.headers.get("etag"))

    @property
    def not_modified(self) -> bool:
        """True for 304 responses to conditional requests."""
        return self.status_code == 304

    def json(self) -> Any:
        """Parse the body as JSON (None for an empty body)."""
        if not self.content:
            return None
        return json.loads(self.content)


class HttpClient:
    """Internal HTTP client for the database server.

    This class handles all HTTP communication with the server.
    It manages connection lifecycle and maps error responses to SDK
    exceptions.

    This is an internal class - users should use DbClient instead.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 3600.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the HTTP client.

        Args:
            base_url: Server root URL
            timeout: Request timeout in seconds
            transport: Optional httpx transport (e.g. an in-memory server)
        """
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Open the connection pool."""
        if self._client is not None:
            return

        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
            headers={"Accept": JSON_CONTENT_TYPE},
        )
        logger.debug(f"Connected to server at {self._base_url}")

    async def close(self) -> None:
        """Close the connection pool."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.debug("Disconnected from server")

    async def __aenter__(self) -> HttpClient:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def _ensure_connected(self) -> httpx.AsyncClient:
        """Ensure we're connected and return the client."""
        if self._client is None:
            raise RuntimeError("Not connected. Call connect() first.")
        return self._client

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json_body: Any = None,
        content: bytes | str | None = None,
        content_type: str | None = None,
        etag: str | None = None,
        error_message: str | None = None,
    ) -> HttpResponse:
        """Send a request and return the response.

        Args:
            method: HTTP method
            path: Path relative to the server root
            params: Query parameters
            json_body: Body to send as JSON
            content: Raw body
            content_type: Content-Type of a raw body
            etag: Known ETag; sent as If-None-Match so unchanged resources
                answer 304
            error_message: Context prefixed to error messages

        Returns:
            HttpResponse (2xx or 304)

        Raises:
            ConflictError: On 409
            NotFoundError: On 404
            RequestError: On any other error status
            ConnectionError: If the server cannot be reached
        """
        client = self._ensure_connected()

        headers: dict[str, str] = {}
        if etag is not None:
            headers["If-None-Match"] = f'"{etag}"'

        body: bytes | str | None = content
        if json_body is not None:
            body = json.dumps(json_body)
            headers["Content-Type"] = JSON_CONTENT_TYPE
        elif content is not None and content_type:
            headers["Content-Type"] = content_type

        try:
            response = await client.request(
                method,
                path,
                params=_encode_params(params),
                content=body,
                headers=headers,
            )
        except httpx.TransportError as e:
            raise ConnectionError(
                f"{method} {path} failed: {e}",
                address=self._base_url,
            ) from e

        logger.debug(f"{method} {path} -> {response.status_code}")

        if response.status_code == 304 or response.is_success:
            return HttpResponse(
                status_code=response.status_code,
                headers=response.headers,
                content=response.content,
            )

        error, reason = _error_fields(response)
        raise error_for_status(
            response.status_code,
            error_message or f"{method} {path} failed",
            error=error,
            reason=reason,
            method=method,
            path=path,
        )


def _encode_params(params: Mapping[str, Any] | None) -> dict[str, str] | None:
    """Render query values: booleans as true/false, drop Nones."""
    if not params:
        return None
    encoded: dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            encoded[key] = "true" if value else "false"
        else:
            encoded[key] = str(value)
    return encoded


def _error_fields(response: httpx.Response) -> tuple[str | None, str | None]:
    """Pull the server's error/reason members out of an error body."""
    try:
        body = response.json()
    except ValueError:
        return None, response.text or None
    if isinstance(body, dict):
        return body.get("error"), body.get("reason")
    return None, None
