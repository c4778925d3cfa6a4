"""
Ledger Services Package

The balance-consistency engine: every operation that moves value between
an account and another aggregate.
"""

from finledger.ledger.accounts import AccountLedger
from finledger.ledger.budgets import BudgetTracker
from finledger.ledger.categories import (
    DEFAULT_CATEGORIES,
    GOALS_CATEGORY,
    INVESTMENTS_CATEGORY,
    ContentAddressedCategoryResolver,
    DefaultCategoryResolver,
)
from finledger.ledger.credit_cards import CreditCardEngine
from finledger.ledger.goals import GoalEngine
from finledger.ledger.investments import InvestmentEngine
from finledger.ledger.recurring import RecurringScheduler, calculate_next_due
from finledger.ledger.saga import Compensator, MovementCoordinator, Saga
from finledger.ledger.transactions import TransactionService

__all__ = [
    # Engines
    "AccountLedger",
    "BudgetTracker",
    "CreditCardEngine",
    "GoalEngine",
    "InvestmentEngine",
    "RecurringScheduler",
    "TransactionService",
    "calculate_next_due",
    # Movements
    "Compensator",
    "MovementCoordinator",
    "Saga",
    # Categories
    "DEFAULT_CATEGORIES",
    "GOALS_CATEGORY",
    "INVESTMENTS_CATEGORY",
    "ContentAddressedCategoryResolver",
    "DefaultCategoryResolver",
]
