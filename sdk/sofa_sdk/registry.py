"""
Document type registry for Sofa SDK.

This module provides a local registry for:
- Registering document classes
- Type lookup by class or name
- Building each type's field set exactly once

Registering at import time (with the ``register_document`` decorator) makes a
misdeclared type fail when the module loads rather than on the first save.
Types that were never registered are registered on first use.

Example:
    >>> from sofa_sdk import Document, register_document
    >>>
    >>> @register_document
    ... @dataclass
    ... class Car(Document):
    ...     make: str = ""
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from typing import TypeVar

from .errors import SchemaError
from .schema import DocumentTypeDef, build_type_def

T = TypeVar("T", bound=type)

# Global registry
_global_registry: SchemaRegistry | None = None
_registry_lock = threading.Lock()


class SchemaRegistry:
    """Local registry of document types.

    The registry stores one DocumentTypeDef per document class and provides
    lookup by class or registration name.

    Example:
        >>> registry = SchemaRegistry()
        >>> registry.register_document_type(Car)
        >>> registry.get_type_def(Car).get_field_names()
        ['make', 'model', 'horse_powers']
    """

    def __init__(self) -> None:
        """Initialize empty registry."""
        self._types: dict[type, DocumentTypeDef] = {}
        self._types_by_name: dict[str, DocumentTypeDef] = {}
        self._lock = threading.Lock()

    def register_document_type(self, cls: type, name: str | None = None) -> DocumentTypeDef:
        """Register a document class.

        Registering the same class twice returns the existing definition.

        Args:
            cls: Document class
            name: Registration name (defaults to module.qualname of the class)

        Returns:
            The type definition

        Raises:
            SchemaError: If the class is invalid or the name is taken by
                another class
        """
        with self._lock:
            existing = self._types.get(cls)
            if existing is not None:
                return existing

            type_def = build_type_def(cls, name)

            other = self._types_by_name.get(type_def.name)
            if other is not None and other.document_class is not cls:
                raise SchemaError(
                    f"Document type name '{type_def.name}' already registered "
                    f"for {other.document_class.__module__}.{other.document_class.__qualname__}",
                    type_name=type_def.name,
                )

            self._types[cls] = type_def
            self._types_by_name[type_def.name] = type_def
            return type_def

    def get_type_def(self, cls_or_name: type | str) -> DocumentTypeDef | None:
        """Get type definition by class or name."""
        if isinstance(cls_or_name, str):
            return self._types_by_name.get(cls_or_name)
        return self._types.get(cls_or_name)

    def type_def_for(self, cls: type) -> DocumentTypeDef:
        """Get the type definition of a class, registering it on first use."""
        type_def = self._types.get(cls)
        if type_def is None:
            type_def = self.register_document_type(cls)
        return type_def

    def document_types(self) -> Iterator[DocumentTypeDef]:
        """Iterate over all registered types."""
        yield from self._types.values()

    def __contains__(self, cls: object) -> bool:
        return cls in self._types

    def __len__(self) -> int:
        return len(self._types)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "document_types": [
                self._types_by_name[name].to_dict() for name in sorted(self._types_by_name)
            ],
        }


def get_registry() -> SchemaRegistry:
    """Get the global document type registry."""
    global _global_registry
    with _registry_lock:
        if _global_registry is None:
            _global_registry = SchemaRegistry()
        return _global_registry


def register_document(cls: T) -> T:
    """Class decorator registering a document type in the global registry."""
    get_registry().register_document_type(cls)
    return cls


def type_def_for(cls: type) -> DocumentTypeDef:
    """Get (or create) the global registry entry for a class."""
    return get_registry().type_def_for(cls)


def reset_registry() -> None:
    """Reset the global registry (for testing only)."""
    global _global_registry
    with _registry_lock:
        _global_registry = None
