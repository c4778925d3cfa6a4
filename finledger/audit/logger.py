"""
Audit Logger

DESIGN DECISION: Every movement of money is logged.
This provides:
1. Traceability of every balance change
2. A record of compensations, including the ones that failed
3. Debugging capability

The audit logger:
- Is async so services can await it inline
- Gracefully handles failures (an audit sink outage never fails a movement)
- Uses the movement id as correlation id to tie a movement's events together
"""

import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

import structlog

from finledger.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from finledger.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def configure_logging(log_level: str = "INFO") -> None:
    """Route structlog output through the stdlib root logger at the given level."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, log_level.upper()))


_LEVELS = {
    AuditSeverity.DEBUG: "debug",
    AuditSeverity.INFO: "info",
    AuditSeverity.WARNING: "warning",
    AuditSeverity.ERROR: "error",
    AuditSeverity.CRITICAL: "critical",
}


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence), when configured
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("finledger.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()
        getattr(self._logger, _LEVELS[event.severity])("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_movement_started(
        self,
        movement_id: UUID,
        kind: str,
        user_id: UUID,
        reference: dict[str, str],
    ) -> None:
        await self.log(AuditEventBuilder.movement_started(
            movement_id=movement_id,
            kind=kind,
            user_id=user_id,
            reference=reference,
        ))

    async def log_movement_completed(
        self,
        movement_id: UUID,
        kind: str,
        user_id: UUID,
        steps: list[str],
    ) -> None:
        await self.log(AuditEventBuilder.movement_completed(
            movement_id=movement_id,
            kind=kind,
            user_id=user_id,
            steps=steps,
        ))

    async def log_movement_compensated(
        self,
        movement_id: UUID,
        kind: str,
        user_id: UUID,
        undone: list[str],
        error_message: Optional[str] = None,
    ) -> None:
        """Log a movement rolled back after a failed step."""
        await self.log(AuditEventBuilder.movement_compensated(
            movement_id=movement_id,
            kind=kind,
            user_id=user_id,
            undone=undone,
            error_message=error_message,
        ))

    async def log_compensation_failed(
        self,
        movement_id: UUID,
        kind: str,
        user_id: UUID,
        compensation: str,
        error_message: str,
    ) -> None:
        """Log a compensating action that could not be applied."""
        await self.log(AuditEventBuilder.compensation_failed(
            movement_id=movement_id,
            kind=kind,
            user_id=user_id,
            compensation=compensation,
            error_message=error_message,
        ))

    async def log_movement_reconciled(
        self,
        movement_id: UUID,
        kind: str,
        user_id: UUID,
        status: str,
    ) -> None:
        await self.log(AuditEventBuilder.movement_reconciled(
            movement_id=movement_id,
            kind=kind,
            user_id=user_id,
            status=status,
        ))

    async def log_transfer(
        self,
        from_account_id: UUID,
        to_account_id: UUID,
        user_id: UUID,
        amount: Decimal,
    ) -> None:
        await self.log(AuditEventBuilder.transfer_completed(
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            user_id=user_id,
            amount=amount,
        ))

    async def log_goal_status_changed(
        self,
        goal_id: UUID,
        user_id: UUID,
        completed: bool,
        current_amount: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.goal_status_changed(
            goal_id=goal_id,
            user_id=user_id,
            completed=completed,
            current_amount=current_amount,
            correlation_id=correlation_id,
        ))

    async def log_invoice_payment(
        self,
        invoice_id: UUID,
        user_id: UUID,
        amount: Decimal,
        status: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.invoice_payment_applied(
            invoice_id=invoice_id,
            user_id=user_id,
            amount=amount,
            status=status,
            correlation_id=correlation_id,
        ))

    async def log_recurring_processed(
        self,
        recurring_id: UUID,
        user_id: UUID,
        transaction_id: UUID,
        next_due: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.recurring_processed(
            recurring_id=recurring_id,
            user_id=user_id,
            transaction_id=transaction_id,
            next_due=next_due,
            correlation_id=correlation_id,
        ))

    async def log_recurring_failed(
        self,
        recurring_id: UUID,
        user_id: UUID,
        error_code: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.recurring_failed(
            recurring_id=recurring_id,
            user_id=user_id,
            error_code=error_code,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Movements use their own id; use this for anything else that spans
    several calls (e.g., one scheduler run).
    """
    return uuid4()
