"""
Data Models Package

This package contains all Pydantic models used by finledger.
Every aggregate the ledger services move money between is defined here.
"""

from finledger.models.ledger import (
    ZERO,
    Account,
    AccountType,
    Category,
    Money,
    Transaction,
    TransactionType,
    quantize_money,
    utcnow,
)
from finledger.models.savings import (
    Contribution,
    ContributionType,
    Goal,
    GoalProgress,
    GoalStatus,
    Investment,
    InvestmentReturn,
    InvestmentType,
    StatusTransitionError,
)
from finledger.models.billing import (
    CardBrand,
    CreditCard,
    CreditCardTransaction,
    Invoice,
    InvoiceStatus,
)
from finledger.models.planning import (
    Budget,
    BudgetStatus,
    BudgetStatusReport,
    BudgetSummary,
    Frequency,
    RecurringRunSummary,
    RecurringTransaction,
)
from finledger.models.movement import (
    Compensation,
    CompensationKind,
    MovementIntent,
    MovementKind,
    MovementStatus,
    MovementStep,
)
from finledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "ZERO",
    "Account",
    "AccountType",
    "Category",
    "Money",
    "Transaction",
    "TransactionType",
    "quantize_money",
    "utcnow",
    # Savings models
    "Contribution",
    "ContributionType",
    "Goal",
    "GoalProgress",
    "GoalStatus",
    "Investment",
    "InvestmentReturn",
    "InvestmentType",
    "StatusTransitionError",
    # Billing models
    "CardBrand",
    "CreditCard",
    "CreditCardTransaction",
    "Invoice",
    "InvoiceStatus",
    # Planning models
    "Budget",
    "BudgetStatus",
    "BudgetStatusReport",
    "BudgetSummary",
    "Frequency",
    "RecurringRunSummary",
    "RecurringTransaction",
    # Movement journal models
    "Compensation",
    "CompensationKind",
    "MovementIntent",
    "MovementKind",
    "MovementStatus",
    "MovementStep",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
