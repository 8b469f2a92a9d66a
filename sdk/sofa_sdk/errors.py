"""
Error types for Sofa SDK.

This module defines all exception types raised by the SDK:
- SofaError: Base exception
- ConnectionError: Server connection issues
- RequestError: Server answered with an HTTP error
- ConflictError: Write rejected because the revision is stale (HTTP 409)
- UnmergeableConflictError: Conflict with no baseline to merge against
- NotFoundError: Document or database does not exist (HTTP 404)
- DocumentError: Document is not in a state the operation accepts
- SchemaError: Document type cannot be registered
- BulkWriteError: One or more rows of a bulk request failed

Invariants:
    - All errors inherit from SofaError
    - HTTP status codes map to exactly one error class
    - Errors include context for debugging
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class SofaError(Exception):
    """Base exception for all Sofa SDK errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "SOFA_ERROR"
        self.details = details or {}


class ConnectionError(SofaError):
    """Failed to talk to the database server.

    Raised when:
    - Server is unreachable
    - Connection times out
    - The connection drops mid-request
    """

    def __init__(
        self,
        message: str,
        address: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="CONNECTION_ERROR",
            details={"address": address},
        )
        self.address = address


class RequestError(SofaError):
    """The server answered a request with an error status.

    Attributes:
        status_code: HTTP status code
        error: Server error identifier (e.g. "conflict")
        reason: Server supplied explanation
        method: HTTP method of the failed request
        path: Request path
    """

    default_code = "REQUEST_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        *,
        error: Optional[str] = None,
        reason: Optional[str] = None,
        method: Optional[str] = None,
        path: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code=self.default_code,
            details={
                "status_code": status_code,
                "error": error,
                "reason": reason,
                "method": method,
                "path": path,
            },
        )
        self.status_code = status_code
        self.error = error
        self.reason = reason
        self.method = method
        self.path = path


class ConflictError(RequestError):
    """Write rejected because the supplied revision is stale.

    Raised when:
    - Updating a document with an outdated revision
    - Creating a document whose id already exists
    - Reconciliation was disabled, impossible or already used once
    """

    default_code = "CONFLICT"


class UnmergeableConflictError(ConflictError):
    """Conflict on a document that has no synchronized baseline.

    A document that was never read from or saved to the server carries no
    snapshot, so there is nothing to compute local edits against.
    """

    default_code = "UNMERGEABLE_CONFLICT"


class NotFoundError(RequestError):
    """Resource not found.

    Raised when:
    - Document doesn't exist (or was deleted)
    - Database doesn't exist
    - Attachment doesn't exist
    """

    default_code = "NOT_FOUND"


class DocumentError(SofaError):
    """Document is not in a state the operation accepts.

    Raised when:
    - Writing with PUT a document that has no id
    - Deleting a document that has no revision
    """

    def __init__(self, message: str, doc_id: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="DOCUMENT_ERROR",
            details={"doc_id": doc_id},
        )
        self.doc_id = doc_id


class SchemaError(SofaError):
    """Document type registration failed.

    Raised when:
    - Type cannot be constructed without arguments
    - Type name is already registered to another class
    - Type is not a Document subclass
    """

    def __init__(self, message: str, type_name: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="SCHEMA_ERROR",
            details={"type_name": type_name},
        )
        self.type_name = type_name


class BulkWriteError(SofaError):
    """One or more rows of a bulk write or delete failed.

    Attributes:
        failures: Per-row failures as dicts with id, error and reason
    """

    def __init__(
        self,
        message: str,
        failures: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        failures = failures or []
        super().__init__(
            message,
            code="BULK_WRITE_ERROR",
            details={"failures": failures},
        )
        self.failures = failures


def error_for_status(
    status_code: int,
    message: str,
    *,
    error: Optional[str] = None,
    reason: Optional[str] = None,
    method: Optional[str] = None,
    path: Optional[str] = None,
) -> RequestError:
    """Build the exception matching an HTTP error status.

    Args:
        status_code: HTTP status code of the response
        message: Context for the failed operation
        error: Server error identifier
        reason: Server supplied explanation
        method: HTTP method
        path: Request path

    Returns:
        ConflictError for 409, NotFoundError for 404, RequestError otherwise
    """
    detail = reason or error
    if detail:
        message = f"{message}: {detail}"

    if status_code == 409:
        cls: type[RequestError] = ConflictError
    elif status_code == 404:
        cls = NotFoundError
    else:
        cls = RequestError

    return cls(
        message,
        status_code,
        error=error,
        reason=reason,
        method=method,
        path=path,
    )
