"""
Unit tests for the internal HTTP client.

Tests cover:
- Path and ETag helpers
- Connection lifecycle
- Request encoding
- Error mapping
"""

import json

import httpx
import pytest

from sdk.sofa_sdk._http_client import HttpClient, quote_doc_id, strip_etag
from sdk.sofa_sdk.errors import ConflictError, ConnectionError, NotFoundError, RequestError


class Recorder:
    """httpx handler that records requests and answers a canned response."""

    def __init__(self, response: httpx.Response) -> None:
        self.response = response
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response


def make_client(handler) -> HttpClient:
    return HttpClient("http://couch:5984/", transport=httpx.MockTransport(handler))


class TestHelpers:
    """Tests for path and header helpers."""

    def test_quote_doc_id(self):
        assert quote_doc_id("car-1") == "car-1"
        assert quote_doc_id("a/b c") == "a%2Fb%20c"

    def test_quote_design_id_keeps_prefix(self):
        assert quote_doc_id("_design/cars") == "_design/cars"
        assert quote_doc_id("_design/a/b") == "_design/a%2Fb"

    def test_strip_etag(self):
        assert strip_etag('"1-abc"') == "1-abc"
        assert strip_etag('W/"1-abc"') == "1-abc"
        assert strip_etag("1-abc") == "1-abc"
        assert strip_etag(None) is None


class TestHttpClient:
    """Tests for HttpClient."""

    @pytest.mark.asyncio
    async def test_requires_connection(self):
        client = make_client(Recorder(httpx.Response(200)))

        with pytest.raises(RuntimeError, match="Not connected"):
            await client.request("GET", "/")

    @pytest.mark.asyncio
    async def test_connect_close(self):
        client = make_client(Recorder(httpx.Response(200)))

        assert not client.is_connected
        async with client:
            assert client.is_connected
        assert not client.is_connected
        assert client.base_url == "http://couch:5984"

    @pytest.mark.asyncio
    async def test_sends_json_body_and_params(self):
        recorder = Recorder(httpx.Response(201, json={"ok": True}))

        async with make_client(recorder) as client:
            response = await client.request(
                "PUT",
                "/garage/car-1",
                params={"batch": "ok", "include_docs": True, "rev": None},
                json_body={"make": "Hoopty"},
            )

        request = recorder.requests[0]
        assert response.json() == {"ok": True}
        assert request.method == "PUT"
        assert request.url.path == "/garage/car-1"
        assert dict(request.url.params) == {"batch": "ok", "include_docs": "true"}
        assert request.headers["content-type"] == "application/json"
        assert json.loads(request.content) == {"make": "Hoopty"}

    @pytest.mark.asyncio
    async def test_raw_content(self):
        recorder = Recorder(httpx.Response(201, json={"ok": True}))

        async with make_client(recorder) as client:
            await client.request("PUT", "/db/doc/att", content=b"\x00\x01", content_type="image/png")

        request = recorder.requests[0]
        assert request.content == b"\x00\x01"
        assert request.headers["content-type"] == "image/png"

    @pytest.mark.asyncio
    async def test_etag_sent_as_if_none_match(self):
        recorder = Recorder(httpx.Response(304, headers={"ETag": '"1-abc"'}))

        async with make_client(recorder) as client:
            response = await client.request("GET", "/db/doc", etag="1-abc")

        assert recorder.requests[0].headers["if-none-match"] == '"1-abc"'
        assert response.not_modified
        assert response.etag == "1-abc"
        assert response.json() is None

    @pytest.mark.asyncio
    async def test_conflict_maps_to_conflict_error(self):
        recorder = Recorder(
            httpx.Response(409, json={"error": "conflict", "reason": "Document update conflict."})
        )

        async with make_client(recorder) as client:
            with pytest.raises(ConflictError) as exc_info:
                await client.request("PUT", "/db/doc", error_message="Failed to write document doc")

        error = exc_info.value
        assert error.status_code == 409
        assert error.reason == "Document update conflict."
        assert error.method == "PUT"
        assert error.path == "/db/doc"
        assert str(error) == "Failed to write document doc: Document update conflict."

    @pytest.mark.asyncio
    async def test_not_found_without_body(self):
        """HEAD errors carry no body."""
        async with make_client(Recorder(httpx.Response(404))) as client:
            with pytest.raises(NotFoundError):
                await client.request("HEAD", "/db/doc")

    @pytest.mark.asyncio
    async def test_other_status_maps_to_request_error(self):
        recorder = Recorder(httpx.Response(500, text="boom"))

        async with make_client(recorder) as client:
            with pytest.raises(RequestError) as exc_info:
                await client.request("GET", "/db")

        assert exc_info.value.status_code == 500
        assert exc_info.value.reason == "boom"

    @pytest.mark.asyncio
    async def test_transport_error_maps_to_connection_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(refuse) as client:
            with pytest.raises(ConnectionError) as exc_info:
                await client.request("GET", "/")

        assert exc_info.value.address == "http://couch:5984"
