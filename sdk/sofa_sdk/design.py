"""
Design documents and views for Sofa SDK.

A design document is stored under ``_design/<name>`` and carries view
definitions (map and optional reduce source). Databases declare their design
documents in code; initialize() writes any that are missing on the server or
differ from the stored copy.

Example:
    >>> design = db.new_design_document("cars")
    >>> by_make = design.add_view(
    ...     "by_make",
    ...     "function(doc) { if (doc.make) emit(doc.make, null); }",
    ... )
    >>> await db.sync_design_documents()
    >>> cars = await by_make.by_key(Car, "Hoopty")
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping, TypeVar
from urllib.parse import quote

from ._http_client import DESIGN_PREFIX, quote_doc_id
from .document import Document, JsonDocument
from .errors import DocumentError
from .query import ViewQuery

if TYPE_CHECKING:
    from .database import Database

D = TypeVar("D", bound=Document)

DEFAULT_LANGUAGE = "javascript"


class ViewDefinition:
    """A view of a design document, or the built-in _all_docs view.

    Attributes:
        name: View name
        design: Owning design document (None for _all_docs)
        map: Map function source
        reduce: Reduce function source, if any
    """

    def __init__(
        self,
        name: str,
        design: DesignDocument | None = None,
        map: str | None = None,
        reduce: str | None = None,
        *,
        db: Database | None = None,
    ) -> None:
        self.name = name
        self.design = design
        self.map = map
        self.reduce = reduce
        self._db = db

    @property
    def db(self) -> Database:
        """Database the view is queried on."""
        db = self.design.owner if self.design is not None else self._db
        if db is None:
            raise DocumentError(f"View '{self.name}' is not attached to a database")
        return db

    def path(self) -> str:
        """Path of the view relative to the database."""
        if self.design is None:
            return quote(self.name, safe="_")
        return f"{quote_doc_id(self.design.id or '')}/_view/{quote(self.name, safe='')}"

    def to_json(self) -> dict[str, Any]:
        result: dict[str, Any] = {"map": self.map}
        if self.reduce:
            result["reduce"] = self.reduce
        return result

    def query(self) -> ViewQuery:
        """Start a query against this view."""
        return ViewQuery(self)

    async def touch(self) -> None:
        """Make the server update the view index without returning rows."""
        await self.query().limit(0).get_result()

    def _documents_query(self) -> ViewQuery:
        query = self.query().include_docs()
        if self.reduce:
            query.reduce(False)
        return query

    async def by_key(self, cls: type[D], key: Any) -> list[D]:
        """Documents emitted under exactly the given key."""
        result = await self._documents_query().key(key).get_result()
        return result.documents(cls)

    async def by_range(self, cls: type[D], start: Any, end: Any) -> list[D]:
        """Documents emitted under keys in [start, end]."""
        result = await self._documents_query().start_key(start).end_key(end).get_result()
        return result.documents(cls)

    async def all(self, cls: type[D] = JsonDocument) -> list[D]:  # type: ignore[assignment]
        """Every document emitted by the view."""
        result = await self._documents_query().get_result()
        return result.documents(cls)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ViewDefinition):
            return NotImplemented
        return (self.name, self.map, self.reduce) == (other.name, other.map, other.reduce)

    def __hash__(self) -> int:
        return hash((self.name, self.map, self.reduce))

    def __repr__(self) -> str:
        return f"ViewDefinition(name={self.name!r}, path={self.path()!r})"


class DesignDocument(Document):
    """A design document holding view definitions.

    Design documents are written wholesale; they never take part in conflict
    reconciliation.
    """

    supports_reconcile = False

    def __init__(
        self,
        name: str | None = None,
        owner: Database | None = None,
        language: str = DEFAULT_LANGUAGE,
    ) -> None:
        super().__init__(id=DESIGN_PREFIX + name if name else None)
        self.owner = owner
        self.language = language
        self.views: list[ViewDefinition] = []

    @property
    def name(self) -> str | None:
        """Name without the ``_design/`` prefix."""
        if self.id is None:
            return None
        return self.id[len(DESIGN_PREFIX):] if self.id.startswith(DESIGN_PREFIX) else self.id

    def add_view(self, name: str, map: str, reduce: str | None = None) -> ViewDefinition:
        """Add a view definition and return it."""
        view = ViewDefinition(name, self, map, reduce)
        self.views.append(view)
        return view

    def remove_view(self, view: ViewDefinition) -> None:
        self.views.remove(view)

    def remove_view_named(self, name: str) -> None:
        self.remove_view(self.find_view(name))

    def find_view(self, name: str) -> ViewDefinition:
        """Look up a view by name.

        Raises:
            KeyError: If the design document has no such view
        """
        for view in self.views:
            if view.name == name:
                return view
        raise KeyError(f"Design document {self.id} has no view named '{name}'")

    def has_view(self, name: str) -> bool:
        return any(view.name == name for view in self.views)

    def write_json(self) -> dict[str, Any]:
        return {
            "language": self.language,
            "views": {view.name: view.to_json() for view in self.views},
        }

    def read_json(self, obj: Mapping[str, Any]) -> None:
        self.id = obj.get("_id")
        self.rev = obj.get("_rev")
        self.language = obj.get("language", DEFAULT_LANGUAGE)
        self.views = [
            ViewDefinition(name, self, body.get("map"), body.get("reduce"))
            for name, body in (obj.get("views") or {}).items()
        ]

    async def sync(self) -> None:
        """Save this design document unless the stored copy is identical.

        Raises:
            DocumentError: If the design document has no name or no owning
                database
        """
        if self.owner is None:
            raise DocumentError("Design document has no owning database", doc_id=self.id)
        if self.id is None:
            raise DocumentError("Design document has no name")

        stored = await self.owner.get_document(DesignDocument, self.id)
        if stored is None:
            self.rev = None
            await self.owner.save_document(self)
            return

        self.rev = stored.rev
        if stored != self:
            await self.owner.write_document(self)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DesignDocument):
            return NotImplemented
        return (
            self.id == other.id
            and self.language == other.language
            and sorted(self.views, key=lambda v: v.name) == sorted(other.views, key=lambda v: v.name)
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"DesignDocument(id={self.id!r}, views={[v.name for v in self.views]!r})"
