"""
View queries for Sofa SDK.

This module provides:
- ViewQuery: fluent builder for view options, with ETag caching
- ViewResult: parsed rows of a view response
- ViewRow: id, key, value and revision of one row

Key options (key, startkey, endkey) are JSON-encoded before they are sent.
A ``keys`` list is sent as a POST body so large key sets do not hit URL
length limits.

ETag caching:
    A query keeps its last result. Running it again with unchanged options
    sends the result's ETag as If-None-Match; a 304 answer returns the cached
    result. check_etag_using_head() probes with HEAD first instead.

Example:
    >>> result = await db.query(by_make).key("Hoopty").include_docs().get_result()
    >>> cars = result.documents(Car)
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterator, TypeVar

from .document import Document, JsonDocument

if TYPE_CHECKING:
    from .design import ViewDefinition

D = TypeVar("D", bound=Document)


@dataclass(frozen=True)
class ViewRow:
    """One row of a view result.

    Attributes:
        id: Id of the emitting document (None for reduced rows)
        key: Emitted key
        value: Emitted value
        rev: Document revision when the value carries one
    """

    id: str | None
    key: Any
    value: Any
    rev: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ViewRow:
        value = row.get("value")
        rev = None
        if isinstance(value, dict):
            rev = value.get("rev") or value.get("_rev")
        return cls(id=row.get("id"), key=row.get("key"), value=value, rev=rev)


class ViewResult:
    """Parsed view response.

    Attributes:
        etag: ETag the server sent with the result
    """

    def __init__(self, data: dict[str, Any], etag: str | None = None) -> None:
        self._data = data
        self.etag = etag

    @property
    def total_rows(self) -> int:
        return int(self._data.get("total_rows", len(self.rows)))

    @property
    def offset(self) -> int:
        return int(self._data.get("offset", 0))

    @property
    def rows(self) -> list[dict[str, Any]]:
        return self._data.get("rows") or []

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(self.rows)

    def row_documents(self) -> list[ViewRow]:
        """Rows as ViewRow records; error rows are skipped."""
        return [ViewRow.from_row(row) for row in self.rows if "error" not in row]

    def documents(self, cls: type[D] = JsonDocument) -> list[D]:  # type: ignore[assignment]
        """Documents included with include_docs, built as the given type.

        Rows without a document (missing or deleted ids) are skipped.
        """
        return [
            cls.from_json(row["doc"])
            for row in self.rows
            if isinstance(row.get("doc"), dict)
        ]

    def document(self, cls: type[D] = JsonDocument) -> D | None:  # type: ignore[assignment]
        """First included document, or None."""
        documents = self.documents(cls)
        return documents[0] if documents else None

    def json_documents(self) -> list[JsonDocument]:
        return self.documents(JsonDocument)

    def values(self, cls: type[D] = JsonDocument) -> list[D]:  # type: ignore[assignment]
        """Emitted values that are JSON objects, built as the given type."""
        return [
            cls.from_json(row["value"])
            for row in self.rows
            if isinstance(row.get("value"), dict)
        ]

    def value(self, cls: type[D] = JsonDocument) -> D | None:  # type: ignore[assignment]
        """First emitted object value, or None."""
        values = self.values(cls)
        return values[0] if values else None

    def raw(self) -> dict[str, Any]:
        """The response body as received."""
        return self._data

    def __repr__(self) -> str:
        return f"ViewResult(total_rows={self.total_rows}, rows={len(self.rows)}, etag={self.etag!r})"


class ViewQuery:
    """Fluent builder and runner for a view query.

    Option methods return the query so they can be chained. Keys are
    JSON-encoded; booleans are rendered as true/false.

    Attributes:
        view: The view being queried
        options: Query string options
        result: Last result (reused while its ETag is still current)
    """

    def __init__(self, view: ViewDefinition) -> None:
        self.view = view
        self.options: dict[str, str] = {}
        self.post_data: dict[str, Any] | None = None
        self.result: ViewResult | None = None
        self._result_signature: tuple[Any, ...] | None = None
        self._check_etag_using_head = False

    def clear_options(self) -> ViewQuery:
        """Drop every option and any POST body."""
        self.options = {}
        self.post_data = None
        return self

    def data(self, body: dict[str, Any]) -> ViewQuery:
        """Send the query as POST with the given JSON body."""
        self.post_data = body
        return self

    def keys(self, keys: list[Any]) -> ViewQuery:
        """Restrict to rows with the given keys (sent as POST body)."""
        return self.data({"keys": list(keys)})

    def key(self, value: Any) -> ViewQuery:
        self.options["key"] = json.dumps(value)
        return self

    def start_key(self, value: Any) -> ViewQuery:
        self.options["startkey"] = json.dumps(value)
        return self

    def end_key(self, value: Any) -> ViewQuery:
        self.options["endkey"] = json.dumps(value)
        return self

    def start_key_doc_id(self, doc_id: str) -> ViewQuery:
        self.options["startkey_docid"] = doc_id
        return self

    def end_key_doc_id(self, doc_id: str) -> ViewQuery:
        self.options["endkey_docid"] = doc_id
        return self

    def limit(self, count: int) -> ViewQuery:
        self.options["limit"] = str(count)
        return self

    def skip(self, count: int) -> ViewQuery:
        self.options["skip"] = str(count)
        return self

    def stale(self) -> ViewQuery:
        """Accept a possibly outdated index instead of waiting for an update."""
        self.options["stale"] = "ok"
        return self

    def descending(self) -> ViewQuery:
        self.options["descending"] = "true"
        return self

    def include_docs(self) -> ViewQuery:
        self.options["include_docs"] = "true"
        return self

    def reduce(self, enabled: bool = True) -> ViewQuery:
        self.options["reduce"] = "true" if enabled else "false"
        return self

    def group(self) -> ViewQuery:
        self.options["group"] = "true"
        return self

    def group_level(self, level: int) -> ViewQuery:
        self.options["group_level"] = str(level)
        return self

    def check_etag_using_head(self) -> ViewQuery:
        """Probe a cached result with HEAD before fetching the rows."""
        self._check_etag_using_head = True
        return self

    def _signature(self) -> tuple[Any, ...]:
        return (
            tuple(sorted(self.options.items())),
            json.dumps(self.post_data, sort_keys=True),
        )

    def _cached_etag(self) -> str | None:
        if self.result is None or self._result_signature != self._signature():
            return None
        return self.result.etag

    async def _head_matches(self, etag: str) -> bool:
        db = self.view.db
        response = await db.request("HEAD", self.view.path(), params=self.options, etag=etag)
        return response.not_modified or response.etag == etag

    async def get_result(self) -> ViewResult:
        """Run the query, reusing the cached result while it is current.

        Raises:
            NotFoundError: If the database or view does not exist
        """
        db = self.view.db
        cached = self.result
        etag = self._cached_etag()

        use_head = self._check_etag_using_head and self.post_data is None
        if cached is not None and etag is not None and use_head:
            if await self._head_matches(etag):
                return cached

        response = await db.request(
            "POST" if self.post_data is not None else "GET",
            self.view.path(),
            params=self.options,
            json_body=self.post_data,
            etag=etag,
            error_message=f"Query of view '{self.view.name}' failed",
        )
        if response.not_modified and cached is not None:
            return cached

        self.result = ViewResult(response.json() or {}, etag=response.etag)
        self._result_signature = self._signature()
        return self.result

    async def is_cached_and_valid(self) -> bool:
        """Whether the cached result is still current on the server."""
        etag = self._cached_etag()
        if etag is None:
            return False
        return await self._head_matches(etag)

    def __repr__(self) -> str:
        return f"ViewQuery(view={self.view.name!r}, options={self.options!r})"
