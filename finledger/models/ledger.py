"""
Core Ledger Models for finledger

Accounts, the transaction log and categories.

These models are designed to:
1. Enforce money precision (two decimal places, ROUND_HALF_UP)
2. Encode the sign convention of every transaction type in one place
3. Be serializable for storage and logging

CRITICAL: Account.balance is only ever changed through signed deltas.
It is set directly only when the account is created.
"""

from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Annotated, Optional
from uuid import UUID, uuid4

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


# =============================================================================
# MONEY
# =============================================================================

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")

DESCRIPTION_MAX_LENGTH = 255


def quantize_money(value: Decimal) -> Decimal:
    """Round an amount to cents, half up."""
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


Money = Annotated[Decimal, AfterValidator(quantize_money)]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Field types named `date` shadow the builtin inside model bodies
CalendarDate = date


# =============================================================================
# ENUMS
# =============================================================================

class AccountType(str, Enum):
    """
    Kinds of account a user can hold.

    CRITICAL: CREDIT_CARD accounts are the only ones allowed to go negative.
    They are the 1:1 shadow of a CreditCard.
    """
    CHECKING = "CHECKING"
    SAVINGS = "SAVINGS"
    CREDIT_CARD = "CREDIT_CARD"
    CASH = "CASH"
    INVESTMENT = "INVESTMENT"
    OTHER = "OTHER"


class TransactionType(str, Enum):
    """
    Transaction log entry types.

    The balance effect on the referenced account is derived from the type:
    RECEIPT credits, EXPENSE debits, INVESTMENT (money into an investment)
    debits, WITHDRAW (money out of an investment) credits. GOAL rows are the
    audit leg of a goal contribution and carry no balance effect of their
    own; the goal engine applies the debit itself.
    """
    RECEIPT = "RECEIPT"
    EXPENSE = "EXPENSE"
    INVESTMENT = "INVESTMENT"
    WITHDRAW = "WITHDRAW"
    GOAL = "GOAL"

    @property
    def balance_sign(self) -> int:
        return _BALANCE_SIGNS[self]

    @property
    def requires_category(self) -> bool:
        return self in (TransactionType.RECEIPT, TransactionType.EXPENSE)


_BALANCE_SIGNS = {
    TransactionType.RECEIPT: 1,
    TransactionType.EXPENSE: -1,
    TransactionType.INVESTMENT: -1,
    TransactionType.WITHDRAW: 1,
    TransactionType.GOAL: 0,
}


# =============================================================================
# ACCOUNT
# =============================================================================

class Account(BaseModel):
    """
    A place where a user's money sits.

    balance is the sum of every delta applied since creation.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    name: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Display name of the account"
    )
    type: AccountType
    balance: Money = Field(
        default=ZERO,
        description="Current balance"
    )
    color: Optional[str] = Field(default=None, max_length=7)
    icon: Optional[str] = Field(default=None, max_length=50)
    include_in_total: bool = Field(
        default=True,
        description="Counts towards the user's total balance"
    )
    is_active: bool = True
    credit_card_id: Optional[UUID] = Field(
        default=None,
        description="Card this account shadows (CREDIT_CARD accounts only)"
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_credit_card(self) -> bool:
        return self.type == AccountType.CREDIT_CARD

    @property
    def balance_floor(self) -> Optional[Decimal]:
        """Lowest balance this account may reach, or None when unbounded."""
        return None if self.is_credit_card else ZERO

    def can_apply(self, delta: Decimal) -> bool:
        """Would applying delta keep the account within its floor?"""
        floor = self.balance_floor
        return floor is None or self.balance + delta >= floor


# =============================================================================
# TRANSACTION LOG
# =============================================================================

class Transaction(BaseModel):
    """
    Immutable record of a movement on an account.

    amount is always non-negative; see TransactionType for the sign.
    """
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    account_id: UUID
    type: TransactionType
    category_id: Optional[UUID] = None
    investment_id: Optional[UUID] = Field(
        default=None,
        description="Investment this leg moved money into or out of"
    )
    amount: Money = Field(..., ge=0)
    description: str = Field(default="", max_length=DESCRIPTION_MAX_LENGTH)
    date: CalendarDate = Field(default_factory=lambda: utcnow().date())
    recurring_id: Optional[UUID] = Field(
        default=None,
        description="Recurring definition that materialized this transaction"
    )
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def balance_delta(self) -> Decimal:
        """Signed effect of this transaction on its account."""
        return self.amount * self.type.balance_sign


class Category(BaseModel):
    """A spending/income category."""
    model_config = ConfigDict(frozen=True)

    id: UUID
    user_id: UUID
    name: str
    icon: Optional[str] = None
    is_default: bool = False
