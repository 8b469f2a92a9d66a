"""
Conflict reconciliation for Sofa SDK.

When the server rejects a write because the document's revision is stale,
the save path can merge the application's pending edits into the server's
current copy and resubmit once. How (and whether) that happens is chosen per
document instance with ``ReconcileStrategy``:

- NONE: the conflict is raised to the caller
- AUTO_MERGE: field-by-field three-way merge with the last snapshot as the
  common ancestor. A field still equal to its snapshot value was not touched
  locally and takes the server's value; any other field keeps the local edit.
- MANUAL_MERGE: the document's own ``merge()`` decides the outcome

Invariants:
    - The merged document always carries the server copy's revision
    - A document without a synchronized baseline is never merged
    - Equality is by value and None-safe
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any

from .errors import DocumentError, UnmergeableConflictError
from .registry import type_def_for

if TYPE_CHECKING:
    from .document import Document

logger = logging.getLogger(__name__)


class ReconcileStrategy(Enum):
    """Conflict reconciliation strategies."""

    NONE = "none"
    AUTO_MERGE = "auto_merge"
    MANUAL_MERGE = "manual_merge"

    @classmethod
    def from_str(cls, value: str) -> ReconcileStrategy:
        """Convert string to ReconcileStrategy."""
        for strategy in cls:
            if strategy.value == value:
                return strategy
        raise ValueError(f"Invalid reconcile strategy: {value}")


def values_equal(a: Any, b: Any) -> bool:
    """Compare two field values by value; two Nones are equal."""
    if a is None or b is None:
        return a is None and b is None
    return bool(a == b)


def can_reconcile(document: Document) -> bool:
    """Whether the document opts into reconciliation at all."""
    return bool(getattr(document, "supports_reconcile", False)) and (
        document.reconcile_by is not ReconcileStrategy.NONE
    )


def has_baseline(document: Document) -> bool:
    """Whether the document holds a snapshot the merge can diff against."""
    snapshot = document.snapshot
    if document.rev is None or snapshot is None:
        return False
    if document.reconcile_by is ReconcileStrategy.AUTO_MERGE and snapshot.identity_only:
        return False
    return True


def auto_merge(document: Document, database_copy: Document) -> Document:
    """Merge pending local edits into the server's copy, field by field.

    Args:
        document: Local document with pending edits (mine)
        database_copy: Server's current copy (theirs)

    Returns:
        The local document, merged in place

    Raises:
        UnmergeableConflictError: If the document has no full snapshot
    """
    snapshot = document.snapshot
    if snapshot is None or snapshot.identity_only:
        raise UnmergeableConflictError(
            f"Document {document.id} has no snapshot to merge against",
            409,
            error="conflict",
        )

    type_def = type_def_for(type(document))
    taken: list[str] = []
    for f in type_def.fields:
        if values_equal(f.get(document), snapshot.value_of(f.name)):
            f.set(document, f.get(database_copy))
            taken.append(f.name)

    document.rev = database_copy.rev
    logger.debug(
        f"Auto-merged {document.id}: took {len(taken)} of {len(type_def.fields)} "
        f"field(s) from server rev {database_copy.rev}"
    )
    return document


def manual_merge(document: Document, database_copy: Document) -> Document:
    """Delegate the merge to the document itself.

    The document's merge logic is expected to adopt the server revision;
    if it does not, the revision is adopted here so the resubmit can succeed.
    """
    document.merge(database_copy)

    if document.rev != database_copy.rev:
        logger.warning(
            f"merge() of {type(document).__name__} {document.id} did not adopt "
            f"server revision {database_copy.rev}; adopting it"
        )
        document.rev = database_copy.rev
    return document


def reconcile(document: Document, database_copy: Document) -> Document:
    """Merge a conflicting document with the server's current copy.

    Only called after a conflict was detected and the document was found
    eligible (see can_reconcile / has_baseline).

    Args:
        document: Local document (mine)
        database_copy: Freshly fetched server copy (theirs)

    Returns:
        The merged document, ready to be resubmitted

    Raises:
        DocumentError: If the copies are of different documents
        UnmergeableConflictError: If there is no baseline to merge against
        ValueError: If the document's strategy is NONE
    """
    if database_copy.id != document.id:
        raise DocumentError(
            f"Cannot reconcile {document.id} with a copy of {database_copy.id}",
            doc_id=document.id,
        )

    strategy = document.reconcile_by
    if strategy is ReconcileStrategy.AUTO_MERGE:
        return auto_merge(document, database_copy)
    if strategy is ReconcileStrategy.MANUAL_MERGE:
        return manual_merge(document, database_copy)
    raise ValueError(f"Reconciliation is disabled for document {document.id}")
