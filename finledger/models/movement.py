"""
Movement Journal Models for finledger

A movement is one cross-aggregate operation (goal contribution, invoice
payment, ...). It runs as a sequence of steps against different
aggregates with no single database transaction around them.

DESIGN DECISION: The intent is written to the journal BEFORE the first
step, and every completed step is journaled together with the typed
action that undoes it. After a crash, the journal alone is enough to
roll an unfinished movement back.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from finledger.models.ledger import utcnow


class MovementKind(str, Enum):
    TRANSACTION_POSTING = "transaction_posting"
    TRANSACTION_REVERSAL = "transaction_reversal"
    GOAL_CONTRIBUTION = "goal_contribution"
    GOAL_WITHDRAWAL = "goal_withdrawal"
    GOAL_CONTRIBUTION_REVERSAL = "goal_contribution_reversal"
    INVESTMENT_CREATION = "investment_creation"
    INVESTMENT_CONTRIBUTION = "investment_contribution"
    INVESTMENT_WITHDRAWAL = "investment_withdrawal"
    CARD_CREATION = "card_creation"
    CARD_LIMIT_CHANGE = "card_limit_change"
    CARD_CHARGE = "card_charge"
    INVOICE_PAYMENT = "invoice_payment"


class MovementStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    COMPENSATED = "COMPENSATED"
    COMPENSATION_FAILED = "COMPENSATION_FAILED"

    @property
    def needs_reconciliation(self) -> bool:
        return self in (MovementStatus.IN_PROGRESS, MovementStatus.COMPENSATION_FAILED)


class CompensationKind(str, Enum):
    """Typed undo actions. Each one names the aggregate it touches."""
    ADJUST_ACCOUNT_BALANCE = "adjust_account_balance"
    DELETE_ACCOUNT = "delete_account"
    DELETE_TRANSACTION = "delete_transaction"
    RESTORE_TRANSACTION = "restore_transaction"
    DELETE_CONTRIBUTION = "delete_contribution"
    RESTORE_CONTRIBUTION = "restore_contribution"
    ADJUST_GOAL_AMOUNT = "adjust_goal_amount"
    DELETE_INVESTMENT = "delete_investment"
    ADJUST_INVESTMENT_BALANCE = "adjust_investment_balance"
    DELETE_CREDIT_CARD = "delete_credit_card"
    DELETE_CHARGE = "delete_charge"
    ADJUST_INVOICE_TOTAL = "adjust_invoice_total"
    RESTORE_INVOICE_PAYMENT = "restore_invoice_payment"
    ADJUST_AVAILABLE_LIMIT = "adjust_available_limit"


class Compensation(BaseModel):
    """
    One undo action.

    amount is the signed delta to apply for ADJUST_* kinds. payload holds
    the extra state a RESTORE_* kind needs (serialized form).
    """

    kind: CompensationKind
    target_id: UUID
    user_id: Optional[UUID] = None
    amount: Optional[Decimal] = None
    payload: dict[str, Any] = Field(default_factory=dict)

    def describe(self) -> str:
        text = f"{self.kind.value}({self.target_id}"
        if self.amount is not None:
            text += f", {self.amount}"
        return text + ")"


class MovementStep(BaseModel):
    """A completed step and how to undo it."""

    name: str
    compensation: Optional[Compensation] = None
    compensated: bool = False
    completed_at: datetime = Field(default_factory=utcnow)


class MovementIntent(BaseModel):
    """Journal record of one movement."""

    id: UUID = Field(default_factory=uuid4)
    kind: MovementKind
    user_id: UUID
    status: MovementStatus = MovementStatus.IN_PROGRESS
    reference: dict[str, str] = Field(
        default_factory=dict,
        description="Ids of the aggregates involved, for humans reading the journal"
    )
    steps: list[MovementStep] = Field(default_factory=list)
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def pending_compensations(self) -> list[MovementStep]:
        """Steps still to undo, most recent first."""
        return [
            step for step in reversed(self.steps)
            if step.compensation is not None and not step.compensated
        ]
