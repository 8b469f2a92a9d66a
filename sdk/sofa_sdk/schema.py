"""
Document type definitions for Sofa SDK.

This module describes the persisted shape of a document class:
- FieldDef: One persisted field (attribute name, JSON key, accessors)
- DocumentTypeDef: The complete, ordered field set of a document class
- persisted() / transient(): dataclass field helpers

Document classes are plain dataclasses deriving from ``Document``. Their
field set is enumerated once, when the type is registered, and reused for
serialization and for field-by-field merging during conflict reconciliation.

Invariants:
    - Every dataclass field is persisted unless declared transient()
    - Non-public fields (leading underscore) are persisted too; their JSON key
      drops the underscores because the server reserves "_"-prefixed members
    - JSON keys are unique within a type
    - A registered type is constructible without arguments
    - A non-dataclass type must override write_json() and read_json()

Example:
    >>> @dataclass
    ... class Car(Document):
    ...     make: str = ""
    ...     model: str = ""
    ...     horse_powers: int = persisted(json_name="Hps", default=0)
    ...     cache: dict = transient(default_factory=dict)
"""

from __future__ import annotations

import dataclasses
from dataclasses import MISSING, dataclass
from typing import Any

from .errors import SchemaError

PERSIST_KEY = "sofa_persist"
JSON_NAME_KEY = "sofa_json_name"

# Identity and reconciliation members live outside the field set
RESERVED_NAMES = frozenset(
    {"id", "rev", "_id", "_rev", "reconcile_by", "merger", "supports_reconcile", "_snapshot"}
)


@dataclass(frozen=True)
class FieldDef:
    """A persisted field of a document type.

    Attributes:
        name: Python attribute name
        json_name: Member name in the JSON document
    """

    name: str
    json_name: str

    def get(self, document: Any) -> Any:
        """Read this field from a document instance."""
        return getattr(document, self.name, None)

    def set(self, document: Any, value: Any) -> None:
        """Assign this field on a document instance."""
        setattr(document, self.name, value)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"name": self.name, "json_name": self.json_name}


def persisted(
    *,
    json_name: str | None = None,
    default: Any = MISSING,
    default_factory: Any = MISSING,
    repr: bool = True,
    compare: bool = True,
) -> Any:
    """Declare a persisted dataclass field, optionally under another JSON key.

    Args:
        json_name: Member name in the JSON document (defaults to the attribute name)
        default: Default value
        default_factory: Factory for mutable defaults
        repr: Include in the generated __repr__
        compare: Include in the generated __eq__

    Example:
        >>> horse_powers: int = persisted(json_name="Hps", default=0)
    """
    metadata: dict[str, Any] = {PERSIST_KEY: True}
    if json_name:
        metadata[JSON_NAME_KEY] = json_name
    return dataclasses.field(
        default=default,
        default_factory=default_factory,
        repr=repr,
        compare=compare,
        metadata=metadata,
    )


def transient(
    *,
    default: Any = MISSING,
    default_factory: Any = MISSING,
) -> Any:
    """Declare a dataclass field that is neither stored nor merged."""
    return dataclasses.field(
        default=default,
        default_factory=default_factory,
        repr=False,
        compare=False,
        metadata={PERSIST_KEY: False},
    )


def _default_json_name(name: str) -> str:
    stripped = name.lstrip("_")
    return stripped or name


@dataclass(frozen=True)
class DocumentTypeDef:
    """Definition of a document type.

    Attributes:
        name: Registration name (module.qualname of the class by default)
        document_class: The Document subclass
        fields: Ordered persisted fields
    """

    name: str
    document_class: type
    fields: tuple[FieldDef, ...] = ()

    def __post_init__(self) -> None:
        """Validate the field set."""
        if not self.name:
            raise SchemaError("Document type name cannot be empty")

        json_names = [f.json_name for f in self.fields]
        if len(json_names) != len(set(json_names)):
            dupes = sorted({n for n in json_names if json_names.count(n) > 1})
            raise SchemaError(
                f"Duplicate JSON member(s) {dupes} in document type '{self.name}'",
                type_name=self.name,
            )

    def get_field(self, name: str) -> FieldDef | None:
        """Get field by attribute name or JSON name."""
        for f in self.fields:
            if f.name == name or f.json_name == name:
                return f
        return None

    def get_field_names(self) -> list[str]:
        """Get list of attribute names."""
        return [f.name for f in self.fields]

    def new(self) -> Any:
        """Construct a blank instance of the document class."""
        return self.document_class()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "fields": [f.to_dict() for f in self.fields],
        }

    def __hash__(self) -> int:
        return hash(self.document_class)


def _serializes_itself(cls: type) -> bool:
    """Whether a non-dataclass document maps its own JSON."""
    from .document import Document

    if cls is Document or not issubclass(cls, Document):
        return True
    return (
        cls.write_json is not Document.write_json
        and cls.read_json is not Document.read_json
    )


def build_type_def(cls: type, name: str | None = None) -> DocumentTypeDef:
    """Enumerate the persisted fields of a document class.

    Args:
        cls: Document class (a dataclass, or a class that overrides
            write_json() and read_json())
        name: Registration name (defaults to module.qualname of the class)

    Returns:
        DocumentTypeDef for the class

    Raises:
        SchemaError: If the class is neither a dataclass nor maps its own
            JSON, cannot be constructed without arguments, declares a
            reserved member, or maps two fields to one JSON key
    """
    if not isinstance(cls, type):
        raise SchemaError(f"Expected a class, got {type(cls).__name__}")

    type_name = name or f"{cls.__module__}.{cls.__qualname__}"
    fields: list[FieldDef] = []

    if dataclasses.is_dataclass(cls):
        for f in dataclasses.fields(cls):
            if not f.metadata.get(PERSIST_KEY, True):
                continue
            json_name = f.metadata.get(JSON_NAME_KEY) or _default_json_name(f.name)
            if f.name in RESERVED_NAMES or json_name in RESERVED_NAMES:
                raise SchemaError(
                    f"Field '{f.name}' of '{type_name}' uses a reserved document member name",
                    type_name=type_name,
                )
            fields.append(FieldDef(name=f.name, json_name=json_name))
    elif not _serializes_itself(cls):
        raise SchemaError(
            f"Document type '{type_name}' must be a dataclass or override "
            f"write_json() and read_json()",
            type_name=type_name,
        )

    type_def = DocumentTypeDef(name=type_name, document_class=cls, fields=tuple(fields))

    # Documents read from the server are built blank and then populated
    try:
        type_def.new()
    except TypeError as e:
        raise SchemaError(
            f"Document type '{type_name}' must be constructible without arguments: {e}",
            type_name=type_name,
        ) from e

    return type_def
