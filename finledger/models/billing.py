"""
Credit-Card Billing Models for finledger

Cards, their monthly invoices and the charges attached to them.

CRITICAL: available_limit == credit_limit - sum(unpaid charges).
Exactly one invoice exists per (card, reference_month, reference_year).
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from finledger.models.ledger import ZERO, Money, utcnow
from finledger.models.savings import StatusTransitionError


# =============================================================================
# ENUMS
# =============================================================================

class CardBrand(str, Enum):
    VISA = "VISA"
    MASTERCARD = "MASTERCARD"
    ELO = "ELO"
    AMEX = "AMEX"
    HIPERCARD = "HIPERCARD"
    OTHER = "OTHER"


class InvoiceStatus(str, Enum):
    """
    Invoice lifecycle.

    OPEN -> CLOSED (closing date) and * -> OVERDUE (due date) are driven
    by an external scheduler. Payments drive PARTIAL and PAID.
    PAID only leaves for PARTIAL, when a new charge lands on the invoice.
    """
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    OVERDUE = "OVERDUE"


INVOICE_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.OPEN: frozenset({
        InvoiceStatus.CLOSED,
        InvoiceStatus.PARTIAL,
        InvoiceStatus.PAID,
        InvoiceStatus.OVERDUE,
    }),
    InvoiceStatus.CLOSED: frozenset({
        InvoiceStatus.PARTIAL,
        InvoiceStatus.PAID,
        InvoiceStatus.OVERDUE,
    }),
    InvoiceStatus.PARTIAL: frozenset({
        InvoiceStatus.PARTIAL,
        InvoiceStatus.PAID,
        InvoiceStatus.OVERDUE,
    }),
    InvoiceStatus.OVERDUE: frozenset({
        InvoiceStatus.PARTIAL,
        InvoiceStatus.PAID,
    }),
    InvoiceStatus.PAID: frozenset(),
}


# =============================================================================
# CARD
# =============================================================================

class CreditCard(BaseModel):
    """A credit card and its limit."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    account_id: UUID = Field(
        ...,
        description="Account the card is linked to (paid from by default)"
    )
    name: str = Field(..., min_length=1, max_length=100)
    credit_limit: Money = Field(..., gt=0)
    available_limit: Money
    closing_day: int = Field(..., ge=1, le=31)
    due_day: int = Field(..., ge=1, le=31)
    brand: CardBrand
    last_four_digits: Optional[str] = Field(default=None, max_length=4)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator('last_four_digits')
    @classmethod
    def validate_last_four(cls, v: Optional[str]) -> Optional[str]:
        if v and (len(v) != 4 or not v.isdigit()):
            raise ValueError("last_four_digits must be 4 digits")
        return v or None


# =============================================================================
# INVOICE
# =============================================================================

class Invoice(BaseModel):
    """Monthly bill of a card."""
    model_config = ConfigDict(validate_assignment=True)

    id: UUID = Field(default_factory=uuid4)
    credit_card_id: UUID
    user_id: UUID
    reference_month: int = Field(..., ge=1, le=12)
    reference_year: int
    opening_date: date
    closing_date: date
    due_date: date
    total_amount: Money = Field(default=ZERO)
    paid_amount: Money = Field(default=ZERO)
    status: InvoiceStatus = InvoiceStatus.OPEN
    paid_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def remaining_amount(self) -> Decimal:
        return max(self.total_amount - self.paid_amount, ZERO)

    def _transition(self, target: InvoiceStatus) -> None:
        if target not in INVOICE_TRANSITIONS[self.status]:
            raise StatusTransitionError("invoice", self.status, target)
        self.status = target
        self.updated_at = utcnow()

    def apply_payment(self, amount: Decimal, at: Optional[datetime] = None) -> None:
        """
        Register a payment.

        Moves to PAID (stamping paid_at) once paid_amount covers
        total_amount, otherwise to PARTIAL.
        """
        paid = self.paid_amount + amount
        if paid >= self.total_amount:
            self._transition(InvoiceStatus.PAID)
            self.paid_at = at or utcnow()
        else:
            self._transition(InvoiceStatus.PARTIAL)
        self.paid_amount = paid

    def reopen(self) -> None:
        """
        PAID -> PARTIAL after a new charge raised the total past what was paid.

        Clears paid_at. The only way out of PAID.
        """
        if self.status != InvoiceStatus.PAID or self.paid_amount >= self.total_amount:
            raise StatusTransitionError("invoice", self.status, InvoiceStatus.PARTIAL)
        self.status = InvoiceStatus.PARTIAL
        self.paid_at = None
        self.updated_at = utcnow()

    def close(self) -> None:
        """
        -> CLOSED on the closing date.

        Called by the billing scheduler that runs outside this package;
        the ledger engines never close invoices themselves.
        """
        self._transition(InvoiceStatus.CLOSED)

    def mark_overdue(self) -> None:
        """
        -> OVERDUE once the due date passes unpaid.

        Called by the billing scheduler that runs outside this package.
        """
        self._transition(InvoiceStatus.OVERDUE)


class CreditCardTransaction(BaseModel):
    """Immutable charge on a card, attached to an invoice."""
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    credit_card_id: UUID
    invoice_id: UUID
    user_id: UUID
    category_id: UUID
    amount: Money = Field(..., gt=0)
    description: str = Field(default="", max_length=255)
    charged_on: date = Field(default_factory=lambda: utcnow().date())
    installments: int = Field(default=1, ge=1)
    current_installment: int = Field(default=1, ge=1)
    is_recurring: bool = False
    created_at: datetime = Field(default_factory=utcnow)
