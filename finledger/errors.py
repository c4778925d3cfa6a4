"""
Ledger Error Taxonomy

Every failure a ledger service reports to its caller is a LedgerError.
Each carries a stable machine-readable code and the HTTP status the
outer API layer should render it with.

CRITICAL: Validation failures are raised BEFORE any balance moves.
A rejected call leaves no trace in storage.
"""

from typing import Any, Optional
from uuid import UUID


class LedgerError(Exception):
    """Base exception for all ledger operations."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Payload for the API layer."""
        payload: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(LedgerError):
    """Input rejected by a business rule."""

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.field = field
        details = dict(details or {})
        if field:
            details.setdefault("field", field)
        super().__init__(message, details)


class InsufficientFundsError(ValidationError):
    """Debit would take a non-credit-card balance below zero."""

    code = "INSUFFICIENT_FUNDS"

    def __init__(self, message: str = "insufficient balance", field: Optional[str] = "amount"):
        super().__init__(message, field=field)


class NotFoundError(LedgerError):
    """Requested resource does not exist."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, resource_id: Optional[UUID] = None):
        self.resource = resource
        self.resource_id = resource_id
        details = {"resource": resource}
        if resource_id is not None:
            details["id"] = str(resource_id)
        super().__init__(f"{resource} not found", details)


class UserNotFoundError(NotFoundError):
    code = "USER_NOT_FOUND"

    def __init__(self, user_id: Optional[UUID] = None):
        super().__init__("user", user_id)


class ResourceNotOwnedError(LedgerError):
    """Resource exists but belongs to another user."""

    code = "RESOURCE_NOT_OWNED"
    status_code = 403

    def __init__(self, resource: str):
        self.resource = resource
        super().__init__(
            f"{resource} does not belong to the user",
            {"resource": resource},
        )


class ConflictError(LedgerError):
    """Resource already exists or its state forbids the operation."""

    code = "CONFLICT"
    status_code = 409


class DatabaseError(LedgerError):
    """
    Storage backend failure.

    Always raised `from` the underlying storage exception.
    """

    code = "DATABASE_ERROR"
    status_code = 500


class PartiallyFailedError(LedgerError):
    """
    A movement failed and at least one compensating action could not be applied.

    The movement intent stays in the journal as COMPENSATION_FAILED and is
    retried by reconciliation on the next startup.
    """

    code = "PARTIALLY_FAILED"
    status_code = 500

    def __init__(self, message: str, movement_id: UUID):
        self.movement_id = movement_id
        super().__init__(message, {"movement_id": str(movement_id)})
