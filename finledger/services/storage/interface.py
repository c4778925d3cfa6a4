"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface per aggregate.
Ledger services only ever talk to these interfaces, so the same
business logic runs on the in-memory backend (tests, embedding) and on
any database backend that implements them.

CRITICAL: Balances are never written by full-record updates.
Every `update_*` method persists everything EXCEPT the running balance of
its aggregate (account balance, goal current_amount, investment
current_balance, card available_limit, invoice total_amount, budget
spent). Those change only through the atomic `increment_*` methods, which
apply a signed delta in a single storage operation and, where a floor is
given, refuse to cross it.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from typing import AsyncContextManager, Optional
from uuid import UUID

from finledger.models.audit import AuditEvent
from finledger.models.billing import CreditCard, CreditCardTransaction, Invoice
from finledger.models.ledger import Account, Transaction, TransactionType
from finledger.models.movement import MovementIntent
from finledger.models.planning import Budget, RecurringTransaction
from finledger.models.savings import Contribution, Goal, GoalStatus, Investment


class UserDirectoryInterface(ABC):
    """Lookup of the users the ledger serves."""

    @abstractmethod
    async def user_exists(self, user_id: UUID) -> bool:
        pass


class AccountStorageInterface(ABC):
    """
    Abstract interface for account storage operations.
    """

    @abstractmethod
    async def create_account(self, account: Account) -> Account:
        pass

    @abstractmethod
    async def get_account(self, account_id: UUID) -> Optional[Account]:
        pass

    @abstractmethod
    async def get_account_by_credit_card(self, credit_card_id: UUID) -> Optional[Account]:
        pass

    @abstractmethod
    async def update_account(self, account: Account) -> Account:
        """
        Persist account details (everything except balance).

        Raises:
            RecordNotFoundError: If the account doesn't exist
        """
        pass

    @abstractmethod
    async def delete_account(self, account_id: UUID) -> bool:
        pass

    @abstractmethod
    async def list_accounts(
        self,
        user_id: UUID,
        active_only: bool = False,
    ) -> list[Account]:
        pass

    @abstractmethod
    async def increment_balance(
        self,
        account_id: UUID,
        delta: Decimal,
        floor: Optional[Decimal] = None,
    ) -> Account:
        """
        Atomically add delta to the account balance.

        Args:
            account_id: The account to change
            delta: Signed amount to add
            floor: Lowest balance allowed after the change (None = unbounded)

        Returns:
            The account after the change

        Raises:
            RecordNotFoundError: If the account doesn't exist
            ConstraintViolationError: If the new balance would be below floor
        """
        pass

    @abstractmethod
    def atomic(self) -> AsyncContextManager[None]:
        """
        Unit of work over account writes.

        Every account write made inside the block by the current task is
        undone if the block raises.
        """
        pass


class TransactionStorageInterface(ABC):
    """
    Abstract interface for the transaction log.

    Transactions are immutable: they are created and deleted, never updated.
    """

    @abstractmethod
    async def create_transaction(self, transaction: Transaction) -> Transaction:
        pass

    @abstractmethod
    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def delete_transaction(self, transaction_id: UUID) -> bool:
        pass

    @abstractmethod
    async def list_transactions(
        self,
        user_id: Optional[UUID] = None,
        account_id: Optional[UUID] = None,
        investment_id: Optional[UUID] = None,
        transaction_type: Optional[TransactionType] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[Transaction]:
        """
        List transactions with optional filters, oldest first.

        Args:
            user_id: Filter by owner
            account_id: Filter by account
            investment_id: Filter by linked investment
            transaction_type: Filter by type
            date_from: Filter transactions on or after this date
            date_to: Filter transactions on or before this date

        Returns:
            List of matching transactions
        """
        pass


class GoalStorageInterface(ABC):
    """
    Abstract interface for goals and their contributions.
    """

    @abstractmethod
    async def create_goal(self, goal: Goal) -> Goal:
        pass

    @abstractmethod
    async def get_goal(self, goal_id: UUID) -> Optional[Goal]:
        pass

    @abstractmethod
    async def update_goal(self, goal: Goal) -> Goal:
        """
        Persist goal details (everything except current_amount and status).

        Raises:
            RecordNotFoundError: If the goal doesn't exist
        """
        pass

    @abstractmethod
    async def update_goal_status(
        self,
        goal_id: UUID,
        status: GoalStatus,
        ended_at: Optional[datetime],
    ) -> Goal:
        """
        Persist a status transition already validated by the Goal model.

        Raises:
            RecordNotFoundError: If the goal doesn't exist
        """
        pass

    @abstractmethod
    async def delete_goal(self, goal_id: UUID) -> bool:
        pass

    @abstractmethod
    async def list_goals(
        self,
        user_id: UUID,
        status: Optional[GoalStatus] = None,
    ) -> list[Goal]:
        pass

    @abstractmethod
    async def increment_current_amount(self, goal_id: UUID, delta: Decimal) -> Goal:
        """
        Atomically add delta to current_amount (never below zero).

        Raises:
            RecordNotFoundError: If the goal doesn't exist
            ConstraintViolationError: If current_amount would go negative
        """
        pass

    @abstractmethod
    async def create_contribution(self, contribution: Contribution) -> Contribution:
        pass

    @abstractmethod
    async def get_contribution(self, contribution_id: UUID) -> Optional[Contribution]:
        pass

    @abstractmethod
    async def get_contribution_by_transaction(
        self,
        transaction_id: UUID,
    ) -> Optional[Contribution]:
        pass

    @abstractmethod
    async def delete_contribution(self, contribution_id: UUID) -> bool:
        pass

    @abstractmethod
    async def list_contributions(self, goal_id: UUID) -> list[Contribution]:
        pass


class InvestmentStorageInterface(ABC):
    """
    Abstract interface for investments.
    """

    @abstractmethod
    async def create_investment(self, investment: Investment) -> Investment:
        pass

    @abstractmethod
    async def get_investment(self, investment_id: UUID) -> Optional[Investment]:
        pass

    @abstractmethod
    async def update_investment(self, investment: Investment) -> Investment:
        """
        Persist investment details (everything except current_balance).

        Raises:
            RecordNotFoundError: If the investment doesn't exist
        """
        pass

    @abstractmethod
    async def delete_investment(self, investment_id: UUID) -> bool:
        pass

    @abstractmethod
    async def list_investments(self, user_id: UUID) -> list[Investment]:
        pass

    @abstractmethod
    async def increment_current_balance(
        self,
        investment_id: UUID,
        delta: Decimal,
    ) -> Investment:
        """
        Atomically add delta to current_balance (never below zero).

        Raises:
            RecordNotFoundError: If the investment doesn't exist
            ConstraintViolationError: If current_balance would go negative
        """
        pass


class CreditCardStorageInterface(ABC):
    """
    Abstract interface for cards, invoices and charges.
    """

    @abstractmethod
    async def create_credit_card(self, card: CreditCard) -> CreditCard:
        pass

    @abstractmethod
    async def get_credit_card(self, card_id: UUID) -> Optional[CreditCard]:
        pass

    @abstractmethod
    async def get_credit_card_by_account(self, account_id: UUID) -> Optional[CreditCard]:
        pass

    @abstractmethod
    async def update_credit_card(self, card: CreditCard) -> CreditCard:
        """
        Persist card details (everything except available_limit).

        Raises:
            RecordNotFoundError: If the card doesn't exist
        """
        pass

    @abstractmethod
    async def delete_credit_card(self, card_id: UUID) -> bool:
        pass

    @abstractmethod
    async def list_credit_cards(self, user_id: UUID) -> list[CreditCard]:
        pass

    @abstractmethod
    async def increment_available_limit(self, card_id: UUID, delta: Decimal) -> CreditCard:
        """
        Atomically add delta to available_limit (never below zero).

        Raises:
            RecordNotFoundError: If the card doesn't exist
            ConstraintViolationError: If available_limit would go negative
        """
        pass

    @abstractmethod
    async def create_invoice(self, invoice: Invoice) -> Invoice:
        """
        Insert an invoice.

        Raises:
            DuplicateRecordError: If the card already has an invoice
                for the same reference month and year
        """
        pass

    @abstractmethod
    async def get_invoice(self, invoice_id: UUID) -> Optional[Invoice]:
        pass

    @abstractmethod
    async def get_invoice_by_reference(
        self,
        card_id: UUID,
        month: int,
        year: int,
    ) -> Optional[Invoice]:
        pass

    @abstractmethod
    async def update_invoice(self, invoice: Invoice) -> Invoice:
        """
        Persist invoice payment state (everything except total_amount).

        Raises:
            RecordNotFoundError: If the invoice doesn't exist
        """
        pass

    @abstractmethod
    async def list_invoices(self, card_id: UUID) -> list[Invoice]:
        pass

    @abstractmethod
    async def increment_invoice_total(self, invoice_id: UUID, delta: Decimal) -> Invoice:
        pass

    @abstractmethod
    async def create_charge(self, charge: CreditCardTransaction) -> CreditCardTransaction:
        pass

    @abstractmethod
    async def delete_charge(self, charge_id: UUID) -> bool:
        pass

    @abstractmethod
    async def list_charges(
        self,
        card_id: UUID,
        invoice_id: Optional[UUID] = None,
    ) -> list[CreditCardTransaction]:
        pass


class BudgetStorageInterface(ABC):
    """
    Abstract interface for budgets.
    """

    @abstractmethod
    async def create_budget(self, budget: Budget) -> Budget:
        """
        Insert a budget.

        Raises:
            DuplicateRecordError: If the user already has a budget for the
                same category, month and year
        """
        pass

    @abstractmethod
    async def get_budget(self, budget_id: UUID) -> Optional[Budget]:
        pass

    @abstractmethod
    async def get_budget_for_category(
        self,
        user_id: UUID,
        category_id: UUID,
        month: int,
        year: int,
    ) -> Optional[Budget]:
        pass

    @abstractmethod
    async def update_budget(self, budget: Budget) -> Budget:
        """Persist budget details (everything except spent)."""
        pass

    @abstractmethod
    async def delete_budget(self, budget_id: UUID) -> bool:
        pass

    @abstractmethod
    async def list_budgets(
        self,
        user_id: UUID,
        month: Optional[int] = None,
        year: Optional[int] = None,
        recurring_only: bool = False,
    ) -> list[Budget]:
        pass

    @abstractmethod
    async def increment_spent(self, budget_id: UUID, delta: Decimal) -> Budget:
        pass


class RecurringStorageInterface(ABC):
    """
    Abstract interface for recurring transaction definitions.
    """

    @abstractmethod
    async def create_recurring(self, recurring: RecurringTransaction) -> RecurringTransaction:
        pass

    @abstractmethod
    async def get_recurring(self, recurring_id: UUID) -> Optional[RecurringTransaction]:
        pass

    @abstractmethod
    async def update_recurring(self, recurring: RecurringTransaction) -> RecurringTransaction:
        pass

    @abstractmethod
    async def delete_recurring(self, recurring_id: UUID) -> bool:
        pass

    @abstractmethod
    async def list_recurring(
        self,
        user_id: UUID,
        active_only: bool = False,
    ) -> list[RecurringTransaction]:
        pass

    @abstractmethod
    async def list_due(self, on: date) -> list[RecurringTransaction]:
        """
        Active definitions whose next_due is on or before the given date.

        Args:
            on: The processing date

        Returns:
            Due definitions across all users, ordered by next_due
        """
        pass


class MovementJournalInterface(ABC):
    """
    Durable record of cross-aggregate movements.

    An intent is saved before its first step and re-saved after every step
    and every compensation.
    """

    @abstractmethod
    async def save_intent(self, intent: MovementIntent) -> None:
        """
        Insert or replace an intent.

        Raises:
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def get_intent(self, movement_id: UUID) -> Optional[MovementIntent]:
        pass

    @abstractmethod
    async def list_unfinished(self) -> list[MovementIntent]:
        """
        Intents left IN_PROGRESS or COMPENSATION_FAILED, oldest first.
        """
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - no update or delete operations.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Args:
            event: The audit event to log

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one movement).

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events (newest first).
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class RecordNotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateRecordError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ConstraintViolationError(StorageError):
    """An atomic delta would cross the record's floor."""
    pass
