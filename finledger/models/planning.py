"""
Planning Models for finledger

Monthly category budgets and recurring transaction definitions.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from finledger.models.ledger import ZERO, Money, TransactionType, quantize_money, utcnow


# =============================================================================
# BUDGETS
# =============================================================================

class BudgetStatus(str, Enum):
    """Derived from spent / amount; never stored."""
    OK = "OK"
    WARNING = "WARNING"
    EXCEEDED = "EXCEEDED"


class Budget(BaseModel):
    """
    Spending cap for one category in one month.

    Unique per (user_id, category_id, month, year).
    """

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    category_id: UUID
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=2000, le=2100)
    amount: Money = Field(..., gt=0)
    spent: Money = Field(default=ZERO)
    alert_at: int = Field(
        default=80,
        ge=1,
        le=100,
        description="Percentage of amount that triggers WARNING"
    )
    is_recurring: bool = Field(
        default=False,
        description="Copied into every new month"
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def percentage(self) -> Decimal:
        if self.amount == 0:
            return ZERO
        return quantize_money(self.spent / self.amount * 100)

    @property
    def remaining(self) -> Decimal:
        return max(self.amount - self.spent, ZERO)

    @property
    def status(self) -> BudgetStatus:
        # unrounded; percentage is for display only
        if self.spent >= self.amount:
            return BudgetStatus.EXCEEDED
        if self.spent * 100 >= self.amount * self.alert_at:
            return BudgetStatus.WARNING
        return BudgetStatus.OK


class BudgetStatusReport(BaseModel):
    """Snapshot of one budget's consumption."""

    budget_id: UUID
    category_id: UUID
    amount: Decimal
    spent: Decimal
    remaining: Decimal
    percentage: Decimal
    status: BudgetStatus

    @classmethod
    def of(cls, budget: Budget) -> "BudgetStatusReport":
        return cls(
            budget_id=budget.id,
            category_id=budget.category_id,
            amount=budget.amount,
            spent=budget.spent,
            remaining=budget.remaining,
            percentage=budget.percentage,
            status=budget.status,
        )


class BudgetSummary(BaseModel):
    """Totals over every budget of a month."""

    month: int
    year: int
    total_budget: Decimal = ZERO
    total_spent: Decimal = ZERO
    total_remaining: Decimal = ZERO
    percentage: Decimal = ZERO
    budgets_count: int = 0
    warning_count: int = 0
    exceeded_count: int = 0


# =============================================================================
# RECURRING TRANSACTIONS
# =============================================================================

class Frequency(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class RecurringTransaction(BaseModel):
    """
    Template that materializes a RECEIPT or EXPENSE on a schedule.

    day_of_month is used by MONTHLY, day_of_week (0=Sunday .. 6=Saturday)
    by WEEKLY.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    type: TransactionType
    category_id: UUID
    account_id: Optional[UUID] = Field(
        default=None,
        description="Account to post to; definitions without one are skipped"
    )
    amount: Money = Field(..., gt=0)
    description: str = Field(default="", max_length=255)
    frequency: Frequency
    day_of_month: int = Field(default=1, ge=1, le=31)
    day_of_week: int = Field(default=0, ge=0, le=6)
    start_date: date
    end_date: Optional[date] = None
    last_processed: Optional[date] = None
    next_due: date
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, on: date) -> bool:
        return self.end_date is not None and on > self.end_date


class RecurringRunSummary(BaseModel):
    """Outcome of one pass over due recurring definitions."""

    run_date: date
    processed: list[UUID] = Field(default_factory=list)
    skipped: list[UUID] = Field(default_factory=list)
    failed: list[UUID] = Field(default_factory=list)
