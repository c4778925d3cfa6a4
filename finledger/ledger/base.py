"""
Shared plumbing for ledger services.

Ownership checks, amount validation and translation of storage failures
into the ledger error taxonomy.
"""

from contextlib import contextmanager
from decimal import Decimal, InvalidOperation
from typing import Iterator, Optional, TypeVar
from uuid import UUID

import structlog
from pydantic import ValidationError as ModelValidationError

from finledger.audit import AuditLogger
from finledger.errors import (
    DatabaseError,
    NotFoundError,
    ResourceNotOwnedError,
    UserNotFoundError,
    ValidationError,
)
from finledger.models.ledger import quantize_money
from finledger.services.storage import (
    ConstraintViolationError,
    RecordNotFoundError,
    StorageError,
    UserDirectoryInterface,
)


T = TypeVar("T")


def positive_amount(amount, field: str = "amount") -> Decimal:
    """
    Coerce an amount to cents and require it to be greater than zero.

    Raises:
        ValidationError: If the amount is not a number or is <= 0
    """
    try:
        value = quantize_money(Decimal(str(amount)))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", field=field)
    if value <= 0:
        raise ValidationError(f"{field} must be greater than zero", field=field)
    return value


@contextmanager
def storage_errors(
    resource: str,
    constraint_message: Optional[str] = None,
) -> Iterator[None]:
    """
    Translate storage exceptions raised inside the block.

    A guarded increment that would cross its floor becomes a
    ValidationError carrying constraint_message when one is given.
    """
    try:
        yield
    except RecordNotFoundError as e:
        raise NotFoundError(resource) from e
    except ConstraintViolationError as e:
        if constraint_message is None:
            raise DatabaseError(f"storage failure on {resource}: {e}") from e
        raise ValidationError(constraint_message, field="amount") from e
    except StorageError as e:
        raise DatabaseError(f"storage failure on {resource}: {e}") from e


@contextmanager
def model_errors(resource: str) -> Iterator[None]:
    """
    Re-raise model constraint failures inside the block as ValidationError.

    The field of the first failing constraint is reported.
    """
    try:
        yield
    except ModelValidationError as e:
        errors = e.errors()
        first = errors[0] if errors else {}
        loc = first.get("loc") or ()
        field = str(loc[0]) if loc else None
        message = first.get("msg", "invalid value")
        if field:
            message = f"{resource} {field}: {message}"
        raise ValidationError(message, field=field) from e


class LedgerService:
    """
    Base class for ledger services.

    Holds the user directory and the audit logger every service needs.
    """

    def __init__(
        self,
        users: UserDirectoryInterface,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._users = users
        self._audit_logger = audit_logger or AuditLogger()
        self._logger = structlog.get_logger(type(self).__module__)

    async def ensure_user_exists(self, user_id: UUID) -> None:
        with storage_errors("user"):
            exists = await self._users.user_exists(user_id)
        if not exists:
            raise UserNotFoundError(user_id)

    @staticmethod
    def check_owner(record: Optional[T], user_id: UUID, resource: str) -> T:
        """
        Return record if it exists and belongs to user_id.

        Raises:
            NotFoundError: If record is None
            ResourceNotOwnedError: If it belongs to someone else
        """
        if record is None:
            raise NotFoundError(resource)
        if record.user_id != user_id:
            raise ResourceNotOwnedError(resource)
        return record
