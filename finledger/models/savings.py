"""
Savings Models for finledger

Goals with their contributions, and investments.

CRITICAL: Goal.current_amount and Investment.current_balance are only
changed through atomic deltas in storage. Goal.status is only changed
through the transition methods below.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from finledger.models.ledger import ZERO, Money, quantize_money, utcnow


class StatusTransitionError(ValueError):
    """Requested status change is not allowed from the current status."""

    def __init__(self, entity: str, current: Enum, target: Enum):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(
            f"{entity} cannot move from {current.value} to {target.value}"
        )


# =============================================================================
# GOALS
# =============================================================================

class GoalStatus(str, Enum):
    """
    Goal lifecycle.

    ACTIVE <-> COMPLETED, driven only by current_amount crossing target_amount.
    """
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


GOAL_TRANSITIONS: dict[GoalStatus, frozenset[GoalStatus]] = {
    GoalStatus.ACTIVE: frozenset({GoalStatus.COMPLETED}),
    GoalStatus.COMPLETED: frozenset({GoalStatus.ACTIVE}),
}


class ContributionType(str, Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"


class Goal(BaseModel):
    """
    A savings target.

    current_amount == sum(deposits) - sum(withdrawals).
    status == COMPLETED exactly when current_amount >= target_amount.
    """
    model_config = ConfigDict(str_strip_whitespace=True, validate_assignment=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    name: str = Field(..., min_length=1, max_length=100)
    target_amount: Money = Field(..., gt=0)
    current_amount: Money = Field(default=ZERO)
    status: GoalStatus = GoalStatus.ACTIVE
    target_date: Optional[date] = Field(
        default=None,
        description="Date the user wants to reach the target by"
    )
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = Field(
        default=None,
        description="When the goal was completed"
    )
    icon: Optional[str] = Field(default=None, max_length=50)
    color: Optional[str] = Field(default=None, max_length=7)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_reached(self) -> bool:
        return self.current_amount >= self.target_amount

    def _transition(self, target: GoalStatus) -> None:
        if target not in GOAL_TRANSITIONS[self.status]:
            raise StatusTransitionError("goal", self.status, target)
        self.status = target
        self.updated_at = utcnow()

    def complete(self, at: Optional[datetime] = None) -> None:
        """ACTIVE -> COMPLETED. Requires the target to be reached."""
        if not self.is_reached:
            raise StatusTransitionError("goal", self.status, GoalStatus.COMPLETED)
        self._transition(GoalStatus.COMPLETED)
        self.ended_at = at or utcnow()

    def reactivate(self) -> None:
        """COMPLETED -> ACTIVE. Requires the amount to be below target."""
        if self.is_reached:
            raise StatusTransitionError("goal", self.status, GoalStatus.ACTIVE)
        self._transition(GoalStatus.ACTIVE)
        self.ended_at = None


class Contribution(BaseModel):
    """Immutable record of money moved into or out of a goal."""
    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    goal_id: UUID
    user_id: UUID
    account_id: UUID
    transaction_id: Optional[UUID] = Field(
        default=None,
        description="GOAL transaction leg recorded for a deposit"
    )
    type: ContributionType
    amount: Money = Field(..., gt=0)
    description: str = Field(default="", max_length=255)
    created_at: datetime = Field(default_factory=utcnow)


class GoalProgress(BaseModel):
    """Derived view of how far a goal is."""

    goal_id: UUID
    name: str
    target_amount: Decimal
    current_amount: Decimal
    remaining: Decimal
    percentage: Decimal
    status: GoalStatus

    @classmethod
    def of(cls, goal: Goal) -> "GoalProgress":
        percentage = ZERO
        if goal.target_amount > 0:
            percentage = quantize_money(goal.current_amount / goal.target_amount * 100)
        return cls(
            goal_id=goal.id,
            name=goal.name,
            target_amount=goal.target_amount,
            current_amount=goal.current_amount,
            remaining=max(goal.target_amount - goal.current_amount, ZERO),
            percentage=percentage,
            status=goal.status,
        )


# =============================================================================
# INVESTMENTS
# =============================================================================

class InvestmentType(str, Enum):
    CDB = "CDB"
    LCI = "LCI"
    LCA = "LCA"
    TESOURO_DIRETO = "TESOURO_DIRETO"
    ACOES = "ACOES"
    FUNDOS = "FUNDOS"
    CRIPTOMOEDAS = "CRIPTOMOEDAS"
    PREVIDENCIA = "PREVIDENCIA"


class Investment(BaseModel):
    """
    A position the user holds.

    return_balance = current_balance - total_invested and
    return_rate = return_balance / total_invested * 100, both zero when
    nothing is invested. total_invested is derived from the transaction log.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    type: InvestmentType
    name: str = Field(..., min_length=1, max_length=100)
    current_balance: Money = Field(default=ZERO)
    return_balance: Money = Field(default=ZERO)
    return_rate: Money = Field(
        default=ZERO,
        description="Return over total invested, in percent"
    )
    application_date: date = Field(default_factory=lambda: utcnow().date())
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class InvestmentReturn(BaseModel):
    """Profit and percentage return of an investment."""

    total_invested: Decimal
    profit: Decimal
    return_percentage: Decimal
