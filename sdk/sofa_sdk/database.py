"""
Database handle for Sofa SDK.

This module provides the main API to work with one named database:
- Document create/read/update/delete and attachments
- save_document(): write with conflict reconciliation
- Bulk reads, writes and deletes
- Design documents and view queries

Example:
    >>> async with DbClient("localhost:5984") as client:
    ...     db = await client.get_database("garage")
    ...     car = Car(make="Hoopty", model="Type R", horse_powers=5)
    ...     await db.save_document(car)

Invariants:
    - save_document() recovers at most one conflict per call
    - A snapshot is refreshed only after a write was confirmed
    - NotFoundError is never swallowed while reconciling
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any, TypeVar
from urllib.parse import quote

from ._http_client import HttpResponse, quote_doc_id
from .design import DesignDocument, ViewDefinition
from .document import Document, JsonDocument
from .errors import (
    BulkWriteError,
    ConflictError,
    DocumentError,
    NotFoundError,
    UnmergeableConflictError,
)
from .query import ViewQuery
from .reconcile import can_reconcile, has_baseline, reconcile
from .snapshot import capture_snapshot, restore_snapshot

if TYPE_CHECKING:
    from .client import DbClient

logger = logging.getLogger(__name__)

D = TypeVar("D", bound=Document)

DEFAULT_ATTACHMENT = "attachment"


class Database:
    """A named database on a server.

    Subclass to bundle a database's design documents and helpers; override
    initialize() to run extra setup when the database is created.

    Attributes:
        client: Owning DbClient
        design_documents: Design documents synchronized by initialize()
    """

    def __init__(self, client: DbClient, name: str) -> None:
        """Initialize a database handle (no I/O).

        Args:
            client: Connected DbClient
            name: Database name without the client's prefix
        """
        self.client = client
        self._name = name
        self.design_documents: list[DesignDocument] = []

    @property
    def name(self) -> str:
        """Full database name, including the client's prefix."""
        return self.client.database_prefix + self._name

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _path(self, relative: str = "") -> str:
        path = "/" + quote(self.name, safe="")
        if relative:
            path += "/" + relative
        return path

    def _doc_path(self, doc_id: str, attachment: str | None = None) -> str:
        relative = quote_doc_id(doc_id)
        if attachment is not None:
            relative += "/" + quote(attachment, safe="")
        return self._path(relative)

    async def request(self, method: str, relative: str = "", **kwargs: Any) -> HttpResponse:
        """Send a request to a path inside this database."""
        return await self.client.request(method, self._path(relative), **kwargs)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def exists(self) -> bool:
        """Whether the database exists on the server."""
        return await self.client.has_database(self.name)

    async def create(self) -> None:
        """Create the database if missing, then initialize it."""
        if not await self.exists():
            await self.client.create_database(self.name)
            await self.initialize()

    async def delete(self) -> None:
        """Delete the database if it exists."""
        if await self.exists():
            await self.client.delete_database(self.name)

    async def initialize(self) -> None:
        """Prepare a newly created database.

        Saves new or changed design documents. Override in subclasses for
        extra setup.
        """
        await self.sync_design_documents()

    async def count_documents(self) -> int:
        """Number of live documents, design documents included."""
        info = (await self.client.request("GET", self._path())).json()
        return int(info["doc_count"])

    # ------------------------------------------------------------------
    # Design documents and views
    # ------------------------------------------------------------------

    def new_design_document(self, name: str) -> DesignDocument:
        """Create a design document owned by this database."""
        design = DesignDocument(name, self)
        self.design_documents.append(design)
        return design

    async def sync_design_documents(self) -> None:
        """Save every design document whose stored copy is missing or differs.

        The code is the master; stored design documents that are not
        declared here are left alone.
        """
        for design in self.design_documents:
            await design.sync()

    def query(self, view: ViewDefinition) -> ViewQuery:
        """Build a query against a view."""
        return ViewQuery(view)

    def query_view(self, design_name: str, view_name: str) -> ViewQuery:
        """Build a query against a view known to exist on the server."""
        return ViewQuery(ViewDefinition(view_name, DesignDocument(design_name, self)))

    def query_all_documents(self) -> ViewQuery:
        """Build a query against the built-in _all_docs view."""
        return ViewQuery(ViewDefinition("_all_docs", db=self))

    async def touch_view(self, design_name: str, view_name: str) -> None:
        """Make the server bring a view index up to date."""
        await self.query_view(design_name, view_name).limit(0).get_result()

    async def touch_views(self, views: Iterable[ViewDefinition | None] | None) -> None:
        """Touch each of the given views."""
        if views is None:
            return
        for view in views:
            if view is not None:
                await view.touch()

    # ------------------------------------------------------------------
    # Writing documents
    # ------------------------------------------------------------------

    async def _post(self, document: Document) -> None:
        result = (
            await self.client.request(
                "POST",
                self._path(),
                json_body=document.to_json(),
                error_message="Failed to create document",
            )
        ).json()
        document.id = result["id"]
        document.rev = result["rev"]

    async def _put(self, document: Document, batch: bool = False) -> None:
        if document.id is None:
            raise DocumentError(
                "Failed to write document using PUT because it lacks an id, "
                "use create_document() to let the server allocate one"
            )
        result = (
            await self.client.request(
                "PUT",
                self._doc_path(document.id),
                params={"batch": "ok"} if batch else None,
                json_body=document.to_json(),
                error_message=f"Failed to write document {document.id}",
            )
        ).json()
        document.id = result["id"]
        # Batched writes are acknowledged before a revision exists
        if "rev" in result:
            document.rev = result["rev"]

    async def _store(self, document: Document) -> None:
        if document.id is None:
            await self._post(document)
        else:
            await self._put(document)

    async def create_document(self, document: D) -> D:
        """Create a document with POST; the server allocates an id if absent.

        Returns:
            The document with id and rev set
        """
        await self._post(document)
        document.save_committed()
        return document

    async def write_document(self, document: D, batch: bool = False) -> D:
        """Write a document with PUT, overwriting the revision it names.

        Args:
            document: Document with an id
            batch: Let the server acknowledge before committing

        Returns:
            The document with the new rev set

        Raises:
            DocumentError: If the document has no id
            ConflictError: If the revision is stale
        """
        await self._put(document, batch)
        document.save_committed()
        return document

    async def save_document(self, document: D) -> D:
        """Create or update a document, reconciling one write conflict.

        A document without an id is created (POST), otherwise written (PUT).
        When the server reports a conflict and the document's strategy
        allows it, the server copy is fetched, merged into the document, and
        the result is written once more. A conflict on that second write is
        raised with the document put back to its state before the merge.

        Args:
            document: Document to save

        Returns:
            The document with id and rev set

        Raises:
            ConflictError: If reconciliation is disabled or the resubmit
                conflicts again
            UnmergeableConflictError: If the document conflicts without
                a synchronized baseline
            NotFoundError: If the server copy vanished while reconciling
        """
        try:
            await self._store(document)
        except ConflictError as conflict:
            if not can_reconcile(document):
                raise
            if not has_baseline(document):
                raise UnmergeableConflictError(
                    f"Conflict saving {document.id}: no synchronized baseline to merge against",
                    conflict.status_code,
                    error=conflict.error,
                    reason=conflict.reason,
                    method=conflict.method,
                    path=conflict.path,
                ) from conflict

            logger.info(
                f"Conflict saving {type(document).__name__} {document.id} at rev "
                f"{document.rev}; reconciling by {document.reconcile_by.value}"
            )
            database_copy = await document.get_database_copy(self)
            pending = capture_snapshot(document)
            reconcile(document, database_copy)

            try:
                await self._store(document)
            except ConflictError:
                # Undo the merge; the old baseline only describes the caller's edits
                restore_snapshot(document, pending)
                logger.warning(
                    f"Conflict persisted after reconciling {document.id}; not retrying"
                )
                raise

        document.save_committed()
        return document

    async def delete_document(self, document: Document) -> None:
        """Delete a document at its current revision."""
        if document.id is None or document.rev is None:
            raise DocumentError("Cannot delete a document without id and rev", doc_id=document.id)
        result = (
            await self.client.request(
                "DELETE",
                self._doc_path(document.id),
                params={"rev": document.rev},
                error_message=f"Failed to delete document {document.id}",
            )
        ).json()
        document.rev = result.get("rev", document.rev)

    # ------------------------------------------------------------------
    # Reading documents
    # ------------------------------------------------------------------

    async def read_document_json(self, doc_id: str) -> dict[str, Any]:
        """Read a document as a JSON object.

        Raises:
            NotFoundError: If the document does not exist
        """
        return (
            await self.client.request(
                "GET",
                self._doc_path(doc_id),
                error_message=f"Failed to read document {doc_id}",
            )
        ).json()

    async def read_document(self, document: Document) -> None:
        """Refill a document in place from the server, even if unchanged."""
        if document.id is None:
            raise DocumentError("Cannot read a document without an id")
        document.read_json(await self.read_document_json(document.id))
        document.save_committed()

    async def read_document_if_changed(self, document: Document) -> bool:
        """Refill a document only when the server holds a newer revision.

        Returns:
            True if the document was refreshed
        """
        if document.id is None:
            raise DocumentError("Cannot read a document without an id")
        response = await self.client.request(
            "GET",
            self._doc_path(document.id),
            etag=document.rev,
            error_message=f"Failed to read document {document.id}",
        )
        if response.not_modified:
            return False
        document.read_json(response.json())
        document.save_committed()
        return True

    async def read_document_as(self, cls: type[D], doc_id: str) -> D:
        """Read a document into a new instance of the given type.

        Raises:
            NotFoundError: If the document does not exist
        """
        return cls.from_json(await self.read_document_json(doc_id))

    async def get_document(self, cls: type[D], doc_id: str) -> D | None:
        """Read a document, or None if it does not exist."""
        try:
            return await self.read_document_as(cls, doc_id)
        except NotFoundError:
            return None

    async def get_json_document(self, doc_id: str) -> JsonDocument | None:
        """Read a document as a JsonDocument, or None if it does not exist."""
        return await self.get_document(JsonDocument, doc_id)

    async def has_document(self, document: Document | str) -> bool:
        """Whether a document exists (HEAD request)."""
        doc_id = document if isinstance(document, str) else document.id
        if doc_id is None:
            return False
        try:
            await self.client.request("HEAD", self._doc_path(doc_id))
        except NotFoundError:
            return False
        return True

    async def has_document_changed(self, document: Document) -> bool:
        """Whether the server's revision differs from the document's."""
        if document.id is None:
            raise DocumentError("Cannot check a document without an id")
        response = await self.client.request("HEAD", self._doc_path(document.id))
        return response.etag != document.rev

    async def get_documents(
        self,
        doc_ids: Sequence[str],
        cls: type[D] = JsonDocument,  # type: ignore[assignment]
    ) -> list[D]:
        """Read several documents in one request; missing ids are skipped."""
        result = await self.query_all_documents().keys(list(doc_ids)).include_docs().get_result()
        return result.documents(cls)

    async def get_all_documents(self, cls: type[D] = JsonDocument) -> list[D]:  # type: ignore[assignment]
        """Read every document in the database (testing aid)."""
        result = await self.query_all_documents().include_docs().get_result()
        return result.documents(cls)

    async def get_all_documents_without_content(self) -> list[Document]:
        """Ids and revisions of every document in the database."""
        result = await self.query_all_documents().get_result()
        return [Document(id=row.id, rev=row.rev) for row in result.row_documents()]

    # ------------------------------------------------------------------
    # Bulk writes
    # ------------------------------------------------------------------

    async def _bulk_docs(self, body: dict[str, Any], message: str) -> list[dict[str, Any]]:
        return (
            await self.client.request(
                "POST",
                self._path("_bulk_docs"),
                json_body=body,
                error_message=message,
            )
        ).json()

    async def _save_chunk(self, documents: Sequence[Document], all_or_nothing: bool) -> None:
        body: dict[str, Any] = {"docs": [doc.to_json() for doc in documents]}
        if all_or_nothing:
            body["all_or_nothing"] = True

        results = await self._bulk_docs(body, "Failed to save bulk documents")

        failures: list[dict[str, Any]] = []
        for document, row in zip(documents, results):
            if "error" in row:
                failures.append(
                    {"id": row.get("id"), "error": row["error"], "reason": row.get("reason")}
                )
                continue
            document.id = row["id"]
            document.rev = row["rev"]
            document.save_committed()

        if failures:
            raise BulkWriteError(
                f"{len(failures)} of {len(documents)} document(s) were not saved",
                failures=failures,
            )

    async def save_documents(
        self,
        documents: Sequence[Document],
        *,
        all_or_nothing: bool = False,
        chunk_size: int | None = None,
        views: Iterable[ViewDefinition | None] | None = None,
    ) -> None:
        """Create or update documents with _bulk_docs.

        Documents without ids get server allocated ones. Conflicting rows are
        not reconciled; they are reported in BulkWriteError after the
        remaining rows were stored.

        Args:
            documents: Documents to store
            all_or_nothing: Ask the server to commit all rows or none
            chunk_size: Documents per request (all in one when None)
            views: Views to touch after each chunk to keep indexes warm

        Raises:
            BulkWriteError: If any row failed
        """
        views = list(views) if views is not None else None
        if not chunk_size or chunk_size <= 0:
            chunk_size = max(len(documents), 1)

        failures: list[dict[str, Any]] = []
        for start in range(0, len(documents), chunk_size):
            chunk = documents[start:start + chunk_size]
            try:
                await self._save_chunk(chunk, all_or_nothing)
            except BulkWriteError as e:
                failures.extend(e.failures)
            await self.touch_views(views)

        if failures:
            raise BulkWriteError(
                f"{len(failures)} of {len(documents)} document(s) were not saved",
                failures=failures,
            )

    async def delete_documents(self, documents: Iterable[Document]) -> None:
        """Delete documents with _bulk_docs.

        Raises:
            BulkWriteError: If any document was not deleted
        """
        docs = [
            {"_id": doc.id, "_rev": doc.rev, "_deleted": True}
            for doc in documents
        ]
        if not docs:
            return

        results = await self._bulk_docs({"docs": docs}, "Failed to bulk delete documents")
        failures = [
            {"id": row.get("id"), "error": row["error"], "reason": row.get("reason")}
            for row in results
            if "error" in row
        ]
        if failures:
            raise BulkWriteError(
                f"{len(failures)} of {len(docs)} document(s) were not deleted",
                failures=failures,
            )

    async def delete_documents_in_range(self, start_key: str, end_key: str) -> None:
        """Delete all documents whose ids fall in [start_key, end_key]."""
        result = await self.query_all_documents().start_key(start_key).end_key(end_key).get_result()
        await self.delete_documents(
            Document(id=row.id, rev=row.rev) for row in result.row_documents()
        )

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    async def write_attachment(
        self,
        document: D,
        data: bytes | str,
        content_type: str = "application/octet-stream",
        name: str = DEFAULT_ATTACHMENT,
    ) -> D:
        """Add or replace an attachment of an existing document.

        Returns:
            The document with its new rev
        """
        if document.id is None:
            raise DocumentError("Failed to add attachment because the document lacks an id")
        result = (
            await self.client.request(
                "PUT",
                self._doc_path(document.id, name),
                params={"rev": document.rev},
                content=data,
                content_type=content_type,
                error_message=f"Failed to write attachment {name} of {document.id}",
            )
        ).json()
        document.rev = result["rev"]
        return document

    async def read_attachment(
        self,
        document: Document | str,
        name: str = DEFAULT_ATTACHMENT,
    ) -> bytes:
        """Read an attachment's content."""
        doc_id = document if isinstance(document, str) else document.id
        if doc_id is None:
            raise DocumentError("Cannot read an attachment of a document without an id")
        response = await self.client.request(
            "GET",
            self._doc_path(doc_id, name),
            error_message=f"Failed to read attachment {name} of {doc_id}",
        )
        return response.content

    async def delete_attachment(self, document: D, name: str = DEFAULT_ATTACHMENT) -> D:
        """Remove an attachment; the document gets a new rev."""
        if document.id is None:
            raise DocumentError("Cannot delete an attachment of a document without an id")
        result = (
            await self.client.request(
                "DELETE",
                self._doc_path(document.id, name),
                params={"rev": document.rev},
                error_message=f"Failed to delete attachment {name} of {document.id}",
            )
        ).json()
        document.rev = result["rev"]
        return document

    async def has_attachment(
        self,
        document: Document | str,
        name: str = DEFAULT_ATTACHMENT,
    ) -> bool:
        """Whether a document has the named attachment."""
        doc_id = document if isinstance(document, str) else document.id
        if doc_id is None:
            return False
        try:
            await self.client.request("HEAD", self._doc_path(doc_id, name))
        except NotFoundError:
            return False
        return True
