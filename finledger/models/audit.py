"""
Audit Models for finledger

Every movement of money, every compensation and every status
transition is recorded as an audit event.
This provides:
1. Traceability of every balance change back to the operation that made it
2. Evidence when a compensation could not be applied
3. Ability to reconstruct history

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from finledger.models.ledger import utcnow


class AuditEventType(str, Enum):
    """
    Types of events we audit.
    """
    # Movements (sagas)
    MOVEMENT_STARTED = "movement_started"
    MOVEMENT_COMPLETED = "movement_completed"
    MOVEMENT_COMPENSATED = "movement_compensated"
    COMPENSATION_FAILED = "compensation_failed"
    MOVEMENT_RECONCILED = "movement_reconciled"

    # Accounts
    TRANSFER_COMPLETED = "transfer_completed"

    # Status transitions
    GOAL_COMPLETED = "goal_completed"
    GOAL_REACTIVATED = "goal_reactivated"
    INVOICE_PAYMENT_APPLIED = "invoice_payment_applied"

    # Scheduler
    RECURRING_PROCESSED = "recurring_processed"
    RECURRING_FAILED = "recurring_failed"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'movement', 'goal', 'invoice')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )
    user_id: Optional[UUID] = Field(
        default=None,
        description="Owner of the entity"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events of one movement)"
    )

    # Event details
    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    # Additional data (event-specific)
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "user_id": str(self.user_id) if self.user_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.movement_started(movement_id, kind, user_id)
        event = AuditEventBuilder.goal_completed(goal_id, user_id, amount)
    """

    @staticmethod
    def movement_started(
        movement_id: UUID,
        kind: str,
        user_id: UUID,
        reference: dict[str, str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MOVEMENT_STARTED,
            severity=AuditSeverity.DEBUG,
            entity_type="movement",
            entity_id=movement_id,
            user_id=user_id,
            correlation_id=movement_id,
            description=f"Movement started: {kind}",
            details={"kind": kind, "reference": reference},
        )

    @staticmethod
    def movement_completed(
        movement_id: UUID,
        kind: str,
        user_id: UUID,
        steps: list[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MOVEMENT_COMPLETED,
            entity_type="movement",
            entity_id=movement_id,
            user_id=user_id,
            correlation_id=movement_id,
            description=f"Movement completed: {kind}",
            details={"kind": kind, "steps": steps},
        )

    @staticmethod
    def movement_compensated(
        movement_id: UUID,
        kind: str,
        user_id: UUID,
        undone: list[str],
        error_message: Optional[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MOVEMENT_COMPENSATED,
            severity=AuditSeverity.WARNING,
            entity_type="movement",
            entity_id=movement_id,
            user_id=user_id,
            correlation_id=movement_id,
            description=f"Movement rolled back: {kind} ({len(undone)} steps undone)",
            details={"kind": kind, "undone": undone},
            error_message=error_message,
        )

    @staticmethod
    def compensation_failed(
        movement_id: UUID,
        kind: str,
        user_id: UUID,
        compensation: str,
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.COMPENSATION_FAILED,
            severity=AuditSeverity.CRITICAL,
            entity_type="movement",
            entity_id=movement_id,
            user_id=user_id,
            correlation_id=movement_id,
            description=f"Compensation failed for {kind}: {compensation}",
            details={"kind": kind, "compensation": compensation},
            error_code="PARTIALLY_FAILED",
            error_message=error_message,
        )

    @staticmethod
    def movement_reconciled(
        movement_id: UUID,
        kind: str,
        user_id: UUID,
        status: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MOVEMENT_RECONCILED,
            severity=AuditSeverity.WARNING,
            entity_type="movement",
            entity_id=movement_id,
            user_id=user_id,
            correlation_id=movement_id,
            description=f"Unfinished movement reconciled on startup: {kind}",
            details={"kind": kind, "status": status},
        )

    @staticmethod
    def transfer_completed(
        from_account_id: UUID,
        to_account_id: UUID,
        user_id: UUID,
        amount: Decimal,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSFER_COMPLETED,
            entity_type="account",
            entity_id=from_account_id,
            user_id=user_id,
            description=f"Transferred {amount} between accounts",
            details={
                "from_account_id": str(from_account_id),
                "to_account_id": str(to_account_id),
                "amount": str(amount),
            },
        )

    @staticmethod
    def goal_status_changed(
        goal_id: UUID,
        user_id: UUID,
        completed: bool,
        current_amount: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.GOAL_COMPLETED
                if completed
                else AuditEventType.GOAL_REACTIVATED
            ),
            entity_type="goal",
            entity_id=goal_id,
            user_id=user_id,
            correlation_id=correlation_id,
            description="Goal completed" if completed else "Goal back to active",
            details={"current_amount": str(current_amount)},
        )

    @staticmethod
    def invoice_payment_applied(
        invoice_id: UUID,
        user_id: UUID,
        amount: Decimal,
        status: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INVOICE_PAYMENT_APPLIED,
            entity_type="invoice",
            entity_id=invoice_id,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"Invoice payment of {amount}, now {status}",
            details={"amount": str(amount), "status": status},
        )

    @staticmethod
    def recurring_processed(
        recurring_id: UUID,
        user_id: UUID,
        transaction_id: UUID,
        next_due: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_PROCESSED,
            entity_type="recurring_transaction",
            entity_id=recurring_id,
            user_id=user_id,
            correlation_id=correlation_id,
            description="Recurring transaction materialized",
            details={"transaction_id": str(transaction_id), "next_due": next_due},
        )

    @staticmethod
    def recurring_failed(
        recurring_id: UUID,
        user_id: UUID,
        error_code: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="recurring_transaction",
            entity_id=recurring_id,
            user_id=user_id,
            correlation_id=correlation_id,
            description="Recurring transaction could not be materialized",
            error_code=error_code,
            error_message=error_message,
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            correlation_id=correlation_id,
            description=f"System error: {error_type}",
            details=details or {},
            error_code=error_type,
            error_message=error_message,
        )
