"""
Documents for Sofa SDK.

This module provides the document base classes:
- Document: identity (id, revision), JSON mapping of persisted fields and
  the per-instance reconciliation settings
- JsonDocument: a light-weight document holding its content as a dict

Domain documents are dataclasses deriving from Document. Identity and
reconciliation state are ordinary attributes, not dataclass fields, so they
never take part in the persisted field set.

Example:
    >>> @register_document
    ... @dataclass
    ... class Car(Document):
    ...     reconcile_by = ReconcileStrategy.AUTO_MERGE
    ...
    ...     make: str = ""
    ...     model: str = ""
    ...     horse_powers: int = persisted(json_name="Hps", default=0)
    >>>
    >>> car = Car(make="Hoopty", model="Type R", horse_powers=5)
    >>> await db.save_document(car)
    >>> car.id, car.rev
    ('4c1e...', '1-9f0a...')

Invariants:
    - A document with no id has not been created on the server
    - A document with an id but no revision has never been synchronized
    - Each instance owns its snapshot; snapshots are never shared
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Mapping, TypeVar

from .errors import DocumentError
from .reconcile import ReconcileStrategy
from .registry import type_def_for
from .snapshot import Snapshot, on_save_committed

if TYPE_CHECKING:
    from .database import Database

D = TypeVar("D", bound="Document")


class Document:
    """Base class for documents stored on the server.

    Attributes:
        id: Document id (None until created)
        rev: Current revision token (None until synchronized)
        reconcile_by: Conflict strategy; set on the class for a type-wide
            default or on an instance before its first save
        merger: Optional callable ``merger(document, database_copy)`` used by
            MANUAL_MERGE instead of overriding merge(); set on the instance
            or on the class
    """

    id: str | None = None
    rev: str | None = None
    reconcile_by: ReconcileStrategy = ReconcileStrategy.NONE
    merger: Callable[[Any, Any], None] | None = None
    supports_reconcile: ClassVar[bool] = True
    _snapshot: Snapshot | None = None

    def __init__(self, id: str | None = None, rev: str | None = None) -> None:
        self.id = id
        self.rev = rev

    @property
    def snapshot(self) -> Snapshot | None:
        """Last-known-synchronized state, if tracked."""
        return self._snapshot

    def write_json(self) -> dict[str, Any]:
        """Persisted fields as JSON members (identity excluded)."""
        type_def = type_def_for(type(self))
        return {f.json_name: f.get(self) for f in type_def.fields}

    def read_json(self, obj: Mapping[str, Any]) -> None:
        """Populate identity and persisted fields from a server object."""
        self.id = obj.get("_id")
        self.rev = obj.get("_rev")
        type_def = type_def_for(type(self))
        for f in type_def.fields:
            if f.json_name in obj:
                f.set(self, obj[f.json_name])

    def to_json(self) -> dict[str, Any]:
        """Complete JSON body including _id and _rev when set."""
        result: dict[str, Any] = {}
        if self.id is not None:
            result["_id"] = self.id
        if self.rev is not None:
            result["_rev"] = self.rev
        result.update(self.write_json())
        return result

    @classmethod
    def from_json(cls: type[D], obj: Mapping[str, Any]) -> D:
        """Build a document from server JSON and start tracking it."""
        document = cls()
        document.read_json(obj)
        # Freshly read state is the baseline for later merges
        document.save_committed()
        return document

    def save_committed(self) -> None:
        """Refresh the snapshot after the document matched the server."""
        on_save_committed(self)

    def merge(self, database_copy: Document) -> None:
        """Merge hook for MANUAL_MERGE.

        Override to fold the server copy into this instance. Implementations
        must adopt ``database_copy.rev``.

        Raises:
            NotImplementedError: If neither merge() nor merger is provided
        """
        # Looked up unbound so a merger set on the class is not passed self twice
        merger = vars(self).get("merger", getattr(type(self), "merger", None))
        if merger is None:
            raise NotImplementedError(
                f"{type(self).__name__} uses MANUAL_MERGE but defines no merge()"
            )
        merger(self, database_copy)

    async def get_database_copy(self: D, db: Database) -> D:
        """Fetch the server's current copy of this document.

        Raises:
            DocumentError: If the document has no id
            NotFoundError: If the document no longer exists
        """
        if self.id is None:
            raise DocumentError("Cannot fetch a document without an id")
        return await db.read_document_as(type(self), self.id)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r}, rev={self.rev!r})"


class JsonDocument(Document):
    """Document whose content is a plain JSON object.

    The id and revision live inside the object as ``_id`` and ``_rev``.
    JsonDocument does not take part in conflict reconciliation.

    Example:
        >>> doc = JsonDocument({"name": "Hoopty"}, id="car-1")
        >>> doc["name"]
        'Hoopty'
    """

    supports_reconcile: ClassVar[bool] = False

    def __init__(
        self,
        data: Mapping[str, Any] | str | None = None,
        id: str | None = None,
        rev: str | None = None,
    ) -> None:
        if isinstance(data, str):
            data = json.loads(data)
        self.data: dict[str, Any] = dict(data or {})
        if id is not None:
            self.id = id
        if rev is not None:
            self.rev = rev

    @property  # type: ignore[override]
    def id(self) -> str | None:
        return self.data.get("_id")

    @id.setter
    def id(self, value: str | None) -> None:
        if value is None:
            self.data.pop("_id", None)
        else:
            self.data["_id"] = value

    @property  # type: ignore[override]
    def rev(self) -> str | None:
        return self.data.get("_rev")

    @rev.setter
    def rev(self, value: str | None) -> None:
        if value is None:
            self.data.pop("_rev", None)
        else:
            self.data["_rev"] = value

    def write_json(self) -> dict[str, Any]:
        return {k: v for k, v in self.data.items() if k not in ("_id", "_rev")}

    def read_json(self, obj: Mapping[str, Any]) -> None:
        self.data = dict(obj)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self.data[key] = value

    def __contains__(self, key: object) -> bool:
        return key in self.data

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, JsonDocument):
            return NotImplemented
        return self.data == other.data

    def __repr__(self) -> str:
        return f"JsonDocument({json.dumps(self.data, sort_keys=True)})"
