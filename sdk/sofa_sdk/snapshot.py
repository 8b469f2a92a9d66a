"""
Change-tracking snapshots for Sofa SDK.

A snapshot is an immutable copy of a document's persisted fields as they
were when the document was last known to match the server. Conflict
reconciliation compares the live document against it to tell local edits
from untouched fields.

Lifecycle:
    - Taken when a document is populated from server JSON
    - Replaced (never mutated) after every successful save
    - Owned by exactly one document instance

Invariants:
    - Field values are deep copies with no link back to the document
    - Snapshots are stamped ReconcileStrategy.NONE and are never tracked
      themselves
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping

from .reconcile import ReconcileStrategy
from .registry import type_def_for

if TYPE_CHECKING:
    from .document import Document


def _empty_values() -> Mapping[str, Any]:
    return MappingProxyType({})


@dataclass(frozen=True)
class Snapshot:
    """Last-known-synchronized state of a document.

    Attributes:
        doc_id: Document id at capture time
        rev: Document revision at capture time
        values: Persisted field values keyed by attribute name
        identity_only: True when only id and revision were captured
        reconcile_by: Always NONE
    """

    doc_id: str | None
    rev: str | None
    values: Mapping[str, Any] = field(default_factory=_empty_values)
    identity_only: bool = False
    reconcile_by: ReconcileStrategy = ReconcileStrategy.NONE

    def value_of(self, name: str) -> Any:
        """Get the captured value of a field.

        Raises:
            KeyError: If the field was not captured
        """
        return self.values[name]

    def has_value(self, name: str) -> bool:
        """Whether a field value was captured."""
        return name in self.values


def capture_snapshot(document: Document) -> Snapshot:
    """Deep-copy every persisted field of a document.

    Args:
        document: Document to capture

    Returns:
        Independent Snapshot of the document
    """
    type_def = type_def_for(type(document))
    values = {f.name: copy.deepcopy(f.get(document)) for f in type_def.fields}
    return Snapshot(
        doc_id=document.id,
        rev=document.rev,
        values=MappingProxyType(values),
    )


def identity_snapshot(document: Document) -> Snapshot:
    """Capture only the id and revision of a document."""
    return Snapshot(doc_id=document.id, rev=document.rev, identity_only=True)


def on_save_committed(document: Document) -> None:
    """Refresh a document's snapshot after it was confirmed synchronized.

    Called once per successful write, and when a document has been populated
    from the server.

    - NONE: no snapshot is kept
    - AUTO_MERGE: full field copy
    - MANUAL_MERGE: identity only; the document's merge logic compares itself
    """
    strategy = document.reconcile_by
    if not getattr(document, "supports_reconcile", False) or strategy is ReconcileStrategy.NONE:
        document._snapshot = None
    elif strategy is ReconcileStrategy.AUTO_MERGE:
        document._snapshot = capture_snapshot(document)
    else:
        document._snapshot = identity_snapshot(document)


def restore_snapshot(document: Document, snapshot: Snapshot) -> None:
    """Put captured field values and the captured revision back on a document.

    Used to undo a merge whose resubmit was rejected, so the document again
    holds only the caller's own edits against its unchanged baseline.
    """
    type_def = type_def_for(type(document))
    for f in type_def.fields:
        if snapshot.has_value(f.name):
            f.set(document, copy.deepcopy(snapshot.value_of(f.name)))
    document.rev = snapshot.rev
