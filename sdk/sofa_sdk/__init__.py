"""
Sofa Python SDK - Client library for CouchDB-compatible document databases.

This SDK maps Python classes to JSON documents and keeps concurrent edits
from being lost:
- Document types (dataclasses deriving from Document)
- Registry of document types and their persisted fields
- DbClient and Database for server and document operations
- Conflict reconciliation (AUTO_MERGE, MANUAL_MERGE) on save
- Design documents, views and cached view queries

Example:
    >>> from dataclasses import dataclass
    >>> from sofa_sdk import DbClient, Document, ReconcileStrategy, register_document
    >>>
    >>> # Define types
    >>> @register_document
    ... @dataclass
    ... class Car(Document):
    ...     reconcile_by = ReconcileStrategy.AUTO_MERGE
    ...     make: str = ""
    ...     model: str = ""
    >>>
    >>> # Connect and save
    >>> async with DbClient("localhost:5984") as client:
    ...     db = await client.get_database("garage")
    ...     await db.save_document(Car(make="Hoopty", model="Type R"))

Invariants:
    - A save recovers from at most one write conflict
    - Merged documents always carry the server's revision
    - Snapshots are refreshed only after confirmed writes

Version: 1.0.0
"""

__version__ = "1.0.0"

from .client import DbClient
from .config import ClientSettings, setup_logging
from .database import Database
from .design import DesignDocument, ViewDefinition
from .document import Document, JsonDocument
from .errors import (
    BulkWriteError,
    ConflictError,
    ConnectionError,
    DocumentError,
    NotFoundError,
    RequestError,
    SchemaError,
    SofaError,
    UnmergeableConflictError,
)
from .memory import InMemoryCouch
from .query import ViewQuery, ViewResult, ViewRow
from .reconcile import ReconcileStrategy, reconcile
from .registry import (
    SchemaRegistry,
    get_registry,
    register_document,
)
from .schema import (
    DocumentTypeDef,
    FieldDef,
    persisted,
    transient,
)
from .snapshot import Snapshot

__all__ = [
    # Version
    "__version__",
    # Documents
    "Document",
    "JsonDocument",
    "DocumentTypeDef",
    "FieldDef",
    "persisted",
    "transient",
    "Snapshot",
    # Registry
    "SchemaRegistry",
    "get_registry",
    "register_document",
    # Reconciliation
    "ReconcileStrategy",
    "reconcile",
    # Client
    "DbClient",
    "Database",
    "ClientSettings",
    "setup_logging",
    # Views
    "DesignDocument",
    "ViewDefinition",
    "ViewQuery",
    "ViewResult",
    "ViewRow",
    # Testing
    "InMemoryCouch",
    # Errors
    "SofaError",
    "ConnectionError",
    "RequestError",
    "ConflictError",
    "UnmergeableConflictError",
    "NotFoundError",
    "DocumentError",
    "SchemaError",
    "BulkWriteError",
]
