"""
In-memory database server for testing.

This module provides a CouchDB-compatible HTTP backend that lives in process
memory. Plug it into a client as an httpx transport:

    >>> couch = InMemoryCouch()
    >>> client = DbClient("localhost:5984", transport=couch.transport())

Supported:
- Databases: create, delete, info, _all_dbs
- Documents: GET/HEAD/PUT/POST/DELETE with revision checks and ETags
- Attachments: PUT/GET/HEAD/DELETE
- _bulk_docs and _all_docs (keys, ranges, include_docs)
- Views whose map and reduce functions are Python callables registered with
  register_view(); keys collate like the server collates JSON

Invariants:
    - All data is lost on process exit
    - A write naming a stale revision answers 409 and changes nothing
    - Revisions are "<generation>-<md5 hex>"
    - Thread-safe for concurrent access

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep the wire format identical to the real server's
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import unquote

import httpx

from ._http_client import DESIGN_PREFIX, strip_etag

logger = logging.getLogger(__name__)

IN_MEMORY_VERSION = "3.3.0-memory"

MapFunction = Callable[[Dict[str, Any]], Iterable[Tuple[Any, Any]]]
ReduceFunction = Callable[[List[Any], List[Any]], Any]

_UNSET = object()


class _CouchError(Exception):
    """Error answered to the client as {"error", "reason"}."""

    def __init__(self, status_code: int, error: str, reason: str) -> None:
        super().__init__(reason)
        self.status_code = status_code
        self.error = error
        self.reason = reason


def _conflict() -> _CouchError:
    return _CouchError(409, "conflict", "Document update conflict.")


def collate_key(value: Any) -> Tuple[Any, ...]:
    """Sort key ordering JSON values the way view keys are collated.

    null < false < true < numbers < strings < arrays < objects
    """
    if value is None:
        return (0,)
    if value is False:
        return (1, 0)
    if value is True:
        return (1, 1)
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, str):
        return (3, value)
    if isinstance(value, list):
        return (4, tuple(collate_key(v) for v in value))
    if isinstance(value, dict):
        return (5, tuple((k, collate_key(v)) for k, v in value.items()))
    raise TypeError(f"Cannot collate {type(value).__name__}")


@dataclass
class StoredDocument:
    """A revision of a document as held by the server."""

    doc_id: str
    rev: str
    body: Dict[str, Any] = field(default_factory=dict)
    deleted: bool = False
    attachments: Dict[str, Tuple[str, bytes]] = field(default_factory=dict)

    @property
    def generation(self) -> int:
        return int(self.rev.split("-", 1)[0])

    def to_json(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"_id": self.doc_id, "_rev": self.rev}
        result.update(self.body)
        if self.attachments:
            result["_attachments"] = {
                name: {"content_type": content_type, "length": len(data), "stub": True}
                for name, (content_type, data) in self.attachments.items()
            }
        return result


@dataclass
class InMemoryDatabase:
    """In-memory database storage."""

    name: str
    docs: Dict[str, StoredDocument] = field(default_factory=dict)
    update_seq: int = 0

    def live_documents(self) -> List[StoredDocument]:
        return sorted(
            (doc for doc in self.docs.values() if not doc.deleted),
            key=lambda doc: doc.doc_id,
        )


@dataclass
class RegisteredView:
    map_fn: MapFunction
    reduce_fn: Optional[ReduceFunction] = None


class InMemoryCouch:
    """In-memory implementation of the server's HTTP interface for testing.

    Attributes:
        write_count: Document writes attempted (conflicting ones included)
        conflict_count: Writes rejected as conflicts

    Example:
        >>> couch = InMemoryCouch()
        >>> couch.register_view("garage", "cars", "by_make",
        ...                     lambda doc: [(doc.get("make"), None)])
        >>> async with DbClient(transport=couch.transport()) as client:
        ...     db = await client.get_database("garage")
    """

    def __init__(self) -> None:
        self._databases: Dict[str, InMemoryDatabase] = {}
        self._views: Dict[Tuple[str, str, str], RegisteredView] = {}
        self._lock = threading.Lock()
        self.write_count = 0
        self.conflict_count = 0

    def transport(self) -> httpx.MockTransport:
        """An httpx transport answering requests from this server."""
        return httpx.MockTransport(self.handle)

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def register_view(
        self,
        db_name: str,
        design_name: str,
        view_name: str,
        map_fn: MapFunction,
        reduce_fn: Optional[ReduceFunction] = None,
    ) -> None:
        """Provide the implementation of a view.

        The view answers once its design document is stored. map_fn gets a
        document's JSON and returns (key, value) pairs; reduce_fn gets the
        keys and values of a group.
        """
        with self._lock:
            self._views[(db_name, design_name, view_name)] = RegisteredView(map_fn, reduce_fn)

    def put_raw(self, db_name: str, doc_id: str, body: Dict[str, Any]) -> str:
        """Write a document without a revision check (a concurrent writer).

        Returns:
            The new revision
        """
        with self._lock:
            db = self._require_db(db_name)
            previous = db.docs.get(doc_id)
            content = {k: v for k, v in body.items() if not k.startswith("_")}
            attachments = dict(previous.attachments) if previous and not previous.deleted else {}
            return self._commit(db, doc_id, previous, content, False, attachments).rev

    def get_raw(self, db_name: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Stored JSON of a live document, or None."""
        with self._lock:
            db = self._databases.get(db_name)
            doc = db.docs.get(doc_id) if db else None
            if doc is None or doc.deleted:
                return None
            return doc.to_json()

    def database_names(self) -> List[str]:
        with self._lock:
            return sorted(self._databases)

    # ------------------------------------------------------------------
    # Request handling
    # ------------------------------------------------------------------

    def handle(self, request: httpx.Request) -> httpx.Response:
        """Answer one HTTP request."""
        with self._lock:
            try:
                response = self._route(request)
            except _CouchError as e:
                response = self._respond(
                    request, e.status_code, {"error": e.error, "reason": e.reason}
                )
        logger.debug(f"{request.method} {request.url.path} -> {response.status_code}")
        return response

    def _route(self, request: httpx.Request) -> httpx.Response:
        segments = _segments(request)

        if not segments:
            return self._respond(
                request, 200, {"couchdb": "Welcome", "version": IN_MEMORY_VERSION}
            )
        if segments == ["_all_dbs"]:
            return self._respond(request, 200, sorted(self._databases))

        if len(segments) == 1:
            return self._database_request(request, segments[0])

        db = self._require_db(segments[0])
        if segments[1] == "_all_docs":
            return self._all_docs(request, db)
        if segments[1] == "_bulk_docs":
            _require_method(request, "POST")
            return self._bulk_docs(request, db)

        if segments[1] == "_design":
            if len(segments) < 3:
                raise _CouchError(404, "not_found", "missing")
            doc_id = DESIGN_PREFIX + segments[2]
            rest = segments[3:]
            if len(rest) == 2 and rest[0] == "_view":
                return self._view(request, db, segments[2], rest[1])
        else:
            doc_id = segments[1]
            rest = segments[2:]

        if not rest:
            return self._document_request(request, db, doc_id)
        if len(rest) == 1:
            return self._attachment_request(request, db, doc_id, rest[0])
        raise _CouchError(404, "not_found", "missing")

    def _respond(
        self,
        request: httpx.Request,
        status_code: int,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        if request.method == "HEAD" or body is None:
            return httpx.Response(status_code, headers=headers)
        return httpx.Response(status_code, json=body, headers=headers)

    def _require_db(self, name: str) -> InMemoryDatabase:
        db = self._databases.get(name)
        if db is None:
            raise _CouchError(404, "not_found", "Database does not exist.")
        return db

    # ------------------------------------------------------------------
    # Databases
    # ------------------------------------------------------------------

    def _database_request(self, request: httpx.Request, name: str) -> httpx.Response:
        method = request.method

        if method in ("GET", "HEAD"):
            db = self._require_db(name)
            live = db.live_documents()
            return self._respond(
                request,
                200,
                {
                    "db_name": name,
                    "doc_count": len(live),
                    "doc_del_count": len(db.docs) - len(live),
                    "update_seq": db.update_seq,
                },
            )

        if method == "PUT":
            if name in self._databases:
                raise _CouchError(
                    412,
                    "file_exists",
                    "The database could not be created, the file already exists.",
                )
            self._databases[name] = InMemoryDatabase(name)
            return self._respond(request, 201, {"ok": True})

        if method == "DELETE":
            self._require_db(name)
            del self._databases[name]
            return self._respond(request, 200, {"ok": True})

        if method == "POST":
            db = self._require_db(name)
            body = _json_body(request)
            doc_id = body.get("_id") or uuid.uuid4().hex
            stored = self._write(db, doc_id, body)
            return self._respond(
                request,
                201,
                {"ok": True, "id": stored.doc_id, "rev": stored.rev},
                {"ETag": f'"{stored.rev}"'},
            )

        raise _method_not_allowed()

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def _live_document(self, db: InMemoryDatabase, doc_id: str) -> StoredDocument:
        doc = db.docs.get(doc_id)
        if doc is None:
            raise _CouchError(404, "not_found", "missing")
        if doc.deleted:
            raise _CouchError(404, "not_found", "deleted")
        return doc

    def _document_request(
        self,
        request: httpx.Request,
        db: InMemoryDatabase,
        doc_id: str,
    ) -> httpx.Response:
        method = request.method

        if method in ("GET", "HEAD"):
            doc = self._live_document(db, doc_id)
            headers = {"ETag": f'"{doc.rev}"'}
            if _etag_matches(request, doc.rev):
                return httpx.Response(304, headers=headers)
            return self._respond(request, 200, doc.to_json(), headers)

        if method == "PUT":
            stored = self._write(db, doc_id, _json_body(request), request.url.params.get("rev"))
            headers = {"ETag": f'"{stored.rev}"'}
            if request.url.params.get("batch") == "ok":
                return self._respond(request, 202, {"ok": True, "id": doc_id}, headers)
            return self._respond(request, 201, {"ok": True, "id": doc_id, "rev": stored.rev}, headers)

        if method == "DELETE":
            stored = self._write(db, doc_id, {"_deleted": True}, request.url.params.get("rev"))
            return self._respond(request, 200, {"ok": True, "id": doc_id, "rev": stored.rev})

        raise _method_not_allowed()

    def _check_rev(self, existing: Optional[StoredDocument], supplied: Optional[str]) -> None:
        if existing is None:
            ok = supplied is None
        elif existing.deleted:
            ok = supplied is None or supplied == existing.rev
        else:
            ok = supplied == existing.rev
        if not ok:
            self.conflict_count += 1
            raise _conflict()

    def _write(
        self,
        db: InMemoryDatabase,
        doc_id: str,
        body: Dict[str, Any],
        rev: Optional[str] = None,
    ) -> StoredDocument:
        """Store a new revision of a document, checking the supplied revision."""
        content = dict(body)
        content.pop("_id", None)
        supplied = content.pop("_rev", None) or rev
        deleted = bool(content.pop("_deleted", False))
        keep_attachments = content.pop("_attachments", None) is not None

        self.write_count += 1
        existing = db.docs.get(doc_id)
        if deleted and (existing is None or existing.deleted):
            raise _CouchError(404, "not_found", "missing" if existing is None else "deleted")
        self._check_rev(existing, supplied)

        attachments: Dict[str, Tuple[str, bytes]] = {}
        if existing is not None and keep_attachments and not existing.deleted:
            attachments = dict(existing.attachments)
        return self._commit(db, doc_id, existing, {} if deleted else content, deleted, attachments)

    def _commit(
        self,
        db: InMemoryDatabase,
        doc_id: str,
        previous: Optional[StoredDocument],
        content: Dict[str, Any],
        deleted: bool,
        attachments: Dict[str, Tuple[str, bytes]],
    ) -> StoredDocument:
        generation = previous.generation + 1 if previous else 1
        digest = hashlib.md5(
            json.dumps(
                [previous.rev if previous else None, deleted, content, sorted(attachments)],
                sort_keys=True,
            ).encode()
        ).hexdigest()
        stored = StoredDocument(
            doc_id=doc_id,
            rev=f"{generation}-{digest}",
            body=content,
            deleted=deleted,
            attachments=attachments,
        )
        db.docs[doc_id] = stored
        db.update_seq += 1
        return stored

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def _attachment_request(
        self,
        request: httpx.Request,
        db: InMemoryDatabase,
        doc_id: str,
        name: str,
    ) -> httpx.Response:
        method = request.method

        if method in ("GET", "HEAD"):
            doc = self._live_document(db, doc_id)
            if name not in doc.attachments:
                raise _CouchError(404, "not_found", "Document is missing attachment")
            content_type, data = doc.attachments[name]
            headers = {"Content-Type": content_type, "ETag": f'"{doc.rev}"'}
            if method == "HEAD":
                return httpx.Response(200, headers=headers)
            return httpx.Response(200, content=data, headers=headers)

        existing = db.docs.get(doc_id)
        rev = request.url.params.get("rev")

        if method == "PUT":
            self._check_rev(existing, rev)
            live = existing is not None and not existing.deleted
            attachments = dict(existing.attachments) if live else {}
            attachments[name] = (
                request.headers.get("content-type", "application/octet-stream"),
                request.content,
            )
            body = dict(existing.body) if live else {}
            stored = self._commit(db, doc_id, existing, body, False, attachments)
            return self._respond(request, 201, {"ok": True, "id": doc_id, "rev": stored.rev})

        if method == "DELETE":
            doc = self._live_document(db, doc_id)
            self._check_rev(doc, rev)
            if name not in doc.attachments:
                raise _CouchError(404, "not_found", "Document is missing attachment")
            attachments = {k: v for k, v in doc.attachments.items() if k != name}
            stored = self._commit(db, doc_id, doc, dict(doc.body), False, attachments)
            return self._respond(request, 200, {"ok": True, "id": doc_id, "rev": stored.rev})

        raise _method_not_allowed()

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    def _bulk_docs(self, request: httpx.Request, db: InMemoryDatabase) -> httpx.Response:
        docs = _json_body(request).get("docs")
        if not isinstance(docs, list):
            raise _CouchError(400, "bad_request", "POST body must include `docs` parameter.")

        results = []
        for doc in docs:
            doc_id = doc.get("_id") or uuid.uuid4().hex
            try:
                stored = self._write(db, doc_id, doc)
            except _CouchError as e:
                results.append({"id": doc_id, "error": e.error, "reason": e.reason})
            else:
                results.append({"ok": True, "id": doc_id, "rev": stored.rev})
        return self._respond(request, 201, results)

    def _all_docs(self, request: httpx.Request, db: InMemoryDatabase) -> httpx.Response:
        if request.method not in ("GET", "HEAD", "POST"):
            raise _method_not_allowed()

        etag = _result_etag(request, db, "_all_docs")
        if _etag_matches(request, etag):
            return httpx.Response(304, headers={"ETag": f'"{etag}"'})

        params = request.url.params
        include_docs = params.get("include_docs") == "true"
        live = db.live_documents()
        keys = _requested_keys(request)

        def row_for(doc: StoredDocument) -> Dict[str, Any]:
            row: Dict[str, Any] = {"id": doc.doc_id, "key": doc.doc_id, "value": {"rev": doc.rev}}
            if include_docs:
                row["doc"] = doc.to_json()
            return row

        if keys is not None:
            rows = []
            for key in keys:
                doc = db.docs.get(key) if isinstance(key, str) else None
                if doc is None:
                    rows.append({"key": key, "error": "not_found"})
                elif doc.deleted:
                    row = {"id": doc.doc_id, "key": key, "value": {"rev": doc.rev, "deleted": True}}
                    if include_docs:
                        row["doc"] = None
                    rows.append(row)
                else:
                    rows.append(row_for(doc))
            offset = 0
        else:
            rows, offset = _select_rows([row_for(doc) for doc in live], params)

        return self._respond(
            request,
            200,
            {"total_rows": len(live), "offset": offset, "rows": rows},
            {"ETag": f'"{etag}"'},
        )

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def _view(
        self,
        request: httpx.Request,
        db: InMemoryDatabase,
        design_name: str,
        view_name: str,
    ) -> httpx.Response:
        if request.method not in ("GET", "HEAD", "POST"):
            raise _method_not_allowed()

        self._live_document(db, DESIGN_PREFIX + design_name)
        view = self._views.get((db.name, design_name, view_name))
        if view is None:
            raise _CouchError(404, "not_found", "missing_named_view")

        etag = _result_etag(request, db, f"{design_name}/{view_name}")
        if _etag_matches(request, etag):
            return httpx.Response(304, headers={"ETag": f'"{etag}"'})
        headers = {"ETag": f'"{etag}"'}

        emitted: List[Dict[str, Any]] = []
        for doc in db.live_documents():
            if doc.doc_id.startswith(DESIGN_PREFIX):
                continue
            for key, value in view.map_fn(doc.to_json()) or ():
                emitted.append({"id": doc.doc_id, "key": key, "value": value})
        emitted.sort(key=lambda row: (collate_key(row["key"]), row["id"]))

        params = request.url.params
        keys = _requested_keys(request)
        if keys is not None:
            emitted = [row for key in keys for row in emitted if row["key"] == key]

        if view.reduce_fn is not None and params.get("reduce") != "false":
            selected, _ = _select_rows(emitted, params, paginate=False)
            rows = _reduce_rows(selected, view.reduce_fn, params)
            return self._respond(request, 200, {"rows": _paginate(rows, params)}, headers)

        rows, offset = _select_rows(emitted, params)
        if params.get("include_docs") == "true":
            rows = [dict(row, doc=db.docs[row["id"]].to_json()) for row in rows]
        return self._respond(
            request,
            200,
            {"total_rows": len(emitted), "offset": offset, "rows": rows},
            headers,
        )


def _segments(request: httpx.Request) -> List[str]:
    raw_path = request.url.raw_path.split(b"?", 1)[0].decode("ascii")
    return [unquote(segment) for segment in raw_path.split("/") if segment]


def _require_method(request: httpx.Request, method: str) -> None:
    if request.method != method:
        raise _method_not_allowed()


def _method_not_allowed() -> _CouchError:
    return _CouchError(405, "method_not_allowed", "Method not allowed.")


def _json_body(request: httpx.Request) -> Dict[str, Any]:
    if not request.content:
        return {}
    try:
        body = json.loads(request.content)
    except ValueError as e:
        raise _CouchError(400, "bad_request", "invalid UTF-8 JSON") from e
    if not isinstance(body, dict):
        raise _CouchError(400, "bad_request", "Document must be a JSON object")
    return body


def _json_param(params: httpx.QueryParams, name: str) -> Any:
    if name not in params:
        return _UNSET
    try:
        return json.loads(params[name])
    except ValueError as e:
        raise _CouchError(400, "bad_request", f"Invalid JSON for {name}") from e


def _requested_keys(request: httpx.Request) -> Optional[List[Any]]:
    if request.method == "POST":
        keys = _json_body(request).get("keys")
    else:
        keys = _json_param(request.url.params, "keys")
        if keys is _UNSET:
            keys = None
    if keys is not None and not isinstance(keys, list):
        raise _CouchError(400, "bad_request", "`keys` member must be an array.")
    return keys


def _etag_matches(request: httpx.Request, etag: str) -> bool:
    return strip_etag(request.headers.get("if-none-match")) == etag


def _result_etag(request: httpx.Request, db: InMemoryDatabase, source: str) -> str:
    """ETag of a query result: changes with the database and the query."""
    params = sorted(request.url.params.multi_items())
    body = request.content.decode() if request.method == "POST" else ""
    signature = json.dumps([db.name, db.update_seq, source, params, body])
    return hashlib.md5(signature.encode()).hexdigest()


def _select_rows(
    rows: List[Dict[str, Any]],
    params: httpx.QueryParams,
    paginate: bool = True,
) -> Tuple[List[Dict[str, Any]], int]:
    """Apply key, range, direction and paging options to sorted rows.

    Returns:
        Selected rows and the offset of the first one
    """
    descending = params.get("descending") == "true"
    ordered = list(reversed(rows)) if descending else list(rows)

    key = _json_param(params, "key")
    if key is not _UNSET:
        ordered = [row for row in ordered if row["key"] == key]

    start = _json_param(params, "startkey")
    end = _json_param(params, "endkey")

    def before_start(row: Dict[str, Any]) -> bool:
        if start is _UNSET:
            return False
        k, s = collate_key(row["key"]), collate_key(start)
        return k > s if descending else k < s

    def after_end(row: Dict[str, Any]) -> bool:
        if end is _UNSET:
            return False
        k, e = collate_key(row["key"]), collate_key(end)
        return k < e if descending else k > e

    skipped = sum(1 for row in ordered if before_start(row))
    selected = [row for row in ordered if not before_start(row) and not after_end(row)]
    if not paginate:
        return selected, skipped
    return _paginate(selected, params), skipped + int(params.get("skip", 0))


def _paginate(rows: List[Dict[str, Any]], params: httpx.QueryParams) -> List[Dict[str, Any]]:
    rows = rows[int(params.get("skip", 0)):]
    if "limit" in params:
        rows = rows[:int(params["limit"])]
    return rows


def _reduce_rows(
    rows: List[Dict[str, Any]],
    reduce_fn: ReduceFunction,
    params: httpx.QueryParams,
) -> List[Dict[str, Any]]:
    group_level = params.get("group_level")
    if params.get("group") != "true" and group_level is None:
        if not rows:
            return []
        return [{"key": None, "value": reduce_fn([r["key"] for r in rows], [r["value"] for r in rows])}]

    level = int(group_level) if group_level is not None else None
    groups: Dict[str, Tuple[Any, List[Any], List[Any]]] = {}
    for row in rows:
        key = row["key"]
        if level is not None and isinstance(key, list):
            key = key[:level]
        group = groups.setdefault(json.dumps(key, sort_keys=True), (key, [], []))
        group[1].append(row["key"])
        group[2].append(row["value"])
    return [{"key": key, "value": reduce_fn(keys, values)} for key, keys, values in groups.values()]
