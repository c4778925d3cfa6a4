"""
In-Memory Storage Implementation

Implements every storage interface over plain dictionaries.
Used by the test-suite and by callers embedding the ledger without a
database.

Records are copied on the way in and on the way out, so callers never hold
a reference to stored state. Every mutating call runs under one asyncio
lock and contains no await between its read and its write, which makes
each `increment_*` call atomic with respect to other tasks.

`atomic()` keeps a per-task undo log in a context variable: every write
the task makes inside the block registers its inverse, and the inverses
run in reverse order if the block raises. Balance deltas are undone by
applying the opposite delta, so concurrent writers to the same record are
not overwritten by a rollback.
"""

import asyncio
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional, TypeVar
from uuid import UUID, uuid4

from pydantic import BaseModel

from finledger.models.audit import AuditEvent
from finledger.models.billing import CreditCard, CreditCardTransaction, Invoice
from finledger.models.ledger import Account, Transaction, TransactionType, quantize_money, utcnow
from finledger.models.movement import MovementIntent
from finledger.models.planning import Budget, RecurringTransaction
from finledger.models.savings import Contribution, Goal, GoalStatus, Investment
from finledger.services.storage.interface import (
    AccountStorageInterface,
    AuditStorageInterface,
    BudgetStorageInterface,
    ConstraintViolationError,
    CreditCardStorageInterface,
    DuplicateRecordError,
    GoalStorageInterface,
    InvestmentStorageInterface,
    MovementJournalInterface,
    RecordNotFoundError,
    RecurringStorageInterface,
    TransactionStorageInterface,
    UserDirectoryInterface,
)


R = TypeVar("R", bound=BaseModel)

_undo_log: ContextVar[Optional[list[Callable[[], None]]]] = ContextVar(
    "finledger_undo_log",
    default=None,
)


class InMemoryLedgerStorage(
    UserDirectoryInterface,
    AccountStorageInterface,
    TransactionStorageInterface,
    GoalStorageInterface,
    InvestmentStorageInterface,
    CreditCardStorageInterface,
    BudgetStorageInterface,
    RecurringStorageInterface,
):
    """
    Dictionary-backed storage for every ledger aggregate.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self._users: set[UUID] = set()
        self._accounts: dict[UUID, Account] = {}
        self._transactions: dict[UUID, Transaction] = {}
        self._goals: dict[UUID, Goal] = {}
        self._contributions: dict[UUID, Contribution] = {}
        self._investments: dict[UUID, Investment] = {}
        self._cards: dict[UUID, CreditCard] = {}
        self._invoices: dict[UUID, Invoice] = {}
        self._charges: dict[UUID, CreditCardTransaction] = {}
        self._budgets: dict[UUID, Budget] = {}
        self._recurring: dict[UUID, RecurringTransaction] = {}

    # -------------------------------------------------------------------------
    # Generic table operations
    # -------------------------------------------------------------------------

    @staticmethod
    def _remember(undo: Callable[[], None]) -> None:
        log = _undo_log.get()
        if log is not None:
            log.append(undo)

    @staticmethod
    def _copy(record: Optional[R]) -> Optional[R]:
        return record.model_copy(deep=True) if record is not None else None

    def _insert(self, table: dict[UUID, R], record: R) -> R:
        if record.id in table:
            raise DuplicateRecordError(f"{type(record).__name__} already exists: {record.id}")
        table[record.id] = record.model_copy(deep=True)
        self._remember(lambda: table.pop(record.id, None))
        return record.model_copy(deep=True)

    def _replace(self, table: dict[UUID, R], record: R, keep: tuple[str, ...] = ()) -> R:
        existing = table.get(record.id)
        if existing is None:
            raise RecordNotFoundError(f"{type(record).__name__} not found: {record.id}")
        update = {name: getattr(existing, name) for name in keep}
        update["updated_at"] = utcnow()
        table[record.id] = record.model_copy(update=update, deep=True)
        self._remember(lambda: table.__setitem__(record.id, existing))
        return table[record.id].model_copy(deep=True)

    def _delete(self, table: dict[UUID, R], record_id: UUID) -> bool:
        existing = table.pop(record_id, None)
        if existing is None:
            return False
        self._remember(lambda: table.__setitem__(record_id, existing))
        return True

    @staticmethod
    def _shift(table: dict[UUID, R], record_id: UUID, field: str, delta: Decimal) -> Optional[R]:
        record = table.get(record_id)
        if record is None:
            return None
        value = quantize_money(getattr(record, field) + delta)
        table[record_id] = record.model_copy(update={field: value, "updated_at": utcnow()})
        return table[record_id]

    def _increment(
        self,
        table: dict[UUID, R],
        record_id: UUID,
        field: str,
        delta: Decimal,
        floor: Optional[Decimal] = None,
    ) -> R:
        record = table.get(record_id)
        if record is None:
            raise RecordNotFoundError(f"record not found: {record_id}")
        if floor is not None and getattr(record, field) + delta < floor:
            raise ConstraintViolationError(
                f"{field} of {record_id} would drop below {floor}"
            )
        updated = self._shift(table, record_id, field, delta)
        self._remember(lambda: self._shift(table, record_id, field, -delta))
        return updated.model_copy(deep=True)

    @asynccontextmanager
    async def atomic(self):
        if _undo_log.get() is not None:
            # Nested blocks join the outermost unit of work
            yield
            return
        log: list[Callable[[], None]] = []
        token = _undo_log.set(log)
        try:
            yield
        except BaseException:
            async with self._lock:
                for undo in reversed(log):
                    undo()
            raise
        finally:
            _undo_log.reset(token)

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    def add_user(self, user_id: Optional[UUID] = None) -> UUID:
        """Register a user (the user directory is owned elsewhere in production)."""
        user_id = user_id or uuid4()
        self._users.add(user_id)
        return user_id

    async def user_exists(self, user_id: UUID) -> bool:
        return user_id in self._users

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    async def create_account(self, account: Account) -> Account:
        async with self._lock:
            return self._insert(self._accounts, account)

    async def get_account(self, account_id: UUID) -> Optional[Account]:
        return self._copy(self._accounts.get(account_id))

    async def get_account_by_credit_card(self, credit_card_id: UUID) -> Optional[Account]:
        for account in self._accounts.values():
            if account.credit_card_id == credit_card_id:
                return self._copy(account)
        return None

    async def update_account(self, account: Account) -> Account:
        async with self._lock:
            return self._replace(self._accounts, account, keep=("balance", "created_at"))

    async def delete_account(self, account_id: UUID) -> bool:
        async with self._lock:
            return self._delete(self._accounts, account_id)

    async def list_accounts(self, user_id: UUID, active_only: bool = False) -> list[Account]:
        accounts = [
            a for a in self._accounts.values()
            if a.user_id == user_id and (a.is_active or not active_only)
        ]
        return [self._copy(a) for a in sorted(accounts, key=lambda a: a.created_at)]

    async def increment_balance(
        self,
        account_id: UUID,
        delta: Decimal,
        floor: Optional[Decimal] = None,
    ) -> Account:
        async with self._lock:
            return self._increment(self._accounts, account_id, "balance", delta, floor)

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    async def create_transaction(self, transaction: Transaction) -> Transaction:
        async with self._lock:
            return self._insert(self._transactions, transaction)

    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        return self._copy(self._transactions.get(transaction_id))

    async def delete_transaction(self, transaction_id: UUID) -> bool:
        async with self._lock:
            return self._delete(self._transactions, transaction_id)

    async def list_transactions(
        self,
        user_id: Optional[UUID] = None,
        account_id: Optional[UUID] = None,
        investment_id: Optional[UUID] = None,
        transaction_type: Optional[TransactionType] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[Transaction]:
        results = []
        for tx in self._transactions.values():
            if user_id and tx.user_id != user_id:
                continue
            if account_id and tx.account_id != account_id:
                continue
            if investment_id and tx.investment_id != investment_id:
                continue
            if transaction_type and tx.type != transaction_type:
                continue
            if date_from and tx.date < date_from:
                continue
            if date_to and tx.date > date_to:
                continue
            results.append(tx)
        results.sort(key=lambda t: (t.date, t.created_at))
        return [self._copy(t) for t in results]

    # -------------------------------------------------------------------------
    # Goals
    # -------------------------------------------------------------------------

    async def create_goal(self, goal: Goal) -> Goal:
        async with self._lock:
            return self._insert(self._goals, goal)

    async def get_goal(self, goal_id: UUID) -> Optional[Goal]:
        return self._copy(self._goals.get(goal_id))

    async def update_goal(self, goal: Goal) -> Goal:
        async with self._lock:
            return self._replace(
                self._goals,
                goal,
                keep=("current_amount", "status", "ended_at", "created_at"),
            )

    async def update_goal_status(
        self,
        goal_id: UUID,
        status: GoalStatus,
        ended_at: Optional[datetime],
    ) -> Goal:
        async with self._lock:
            existing = self._goals.get(goal_id)
            if existing is None:
                raise RecordNotFoundError(f"Goal not found: {goal_id}")
            self._goals[goal_id] = existing.model_copy(
                update={"status": status, "ended_at": ended_at, "updated_at": utcnow()}
            )
            self._remember(lambda: self._goals.__setitem__(goal_id, existing))
            return self._copy(self._goals[goal_id])

    async def delete_goal(self, goal_id: UUID) -> bool:
        async with self._lock:
            return self._delete(self._goals, goal_id)

    async def list_goals(
        self,
        user_id: UUID,
        status: Optional[GoalStatus] = None,
    ) -> list[Goal]:
        goals = [
            g for g in self._goals.values()
            if g.user_id == user_id and (status is None or g.status == status)
        ]
        return [self._copy(g) for g in sorted(goals, key=lambda g: g.created_at)]

    async def increment_current_amount(self, goal_id: UUID, delta: Decimal) -> Goal:
        async with self._lock:
            return self._increment(self._goals, goal_id, "current_amount", delta, Decimal("0"))

    async def create_contribution(self, contribution: Contribution) -> Contribution:
        async with self._lock:
            return self._insert(self._contributions, contribution)

    async def get_contribution(self, contribution_id: UUID) -> Optional[Contribution]:
        return self._copy(self._contributions.get(contribution_id))

    async def get_contribution_by_transaction(
        self,
        transaction_id: UUID,
    ) -> Optional[Contribution]:
        for contribution in self._contributions.values():
            if contribution.transaction_id == transaction_id:
                return self._copy(contribution)
        return None

    async def delete_contribution(self, contribution_id: UUID) -> bool:
        async with self._lock:
            return self._delete(self._contributions, contribution_id)

    async def list_contributions(self, goal_id: UUID) -> list[Contribution]:
        contributions = [c for c in self._contributions.values() if c.goal_id == goal_id]
        return [self._copy(c) for c in sorted(contributions, key=lambda c: c.created_at)]

    # -------------------------------------------------------------------------
    # Investments
    # -------------------------------------------------------------------------

    async def create_investment(self, investment: Investment) -> Investment:
        async with self._lock:
            return self._insert(self._investments, investment)

    async def get_investment(self, investment_id: UUID) -> Optional[Investment]:
        return self._copy(self._investments.get(investment_id))

    async def update_investment(self, investment: Investment) -> Investment:
        async with self._lock:
            return self._replace(
                self._investments,
                investment,
                keep=("current_balance", "created_at"),
            )

    async def delete_investment(self, investment_id: UUID) -> bool:
        async with self._lock:
            return self._delete(self._investments, investment_id)

    async def list_investments(self, user_id: UUID) -> list[Investment]:
        investments = [i for i in self._investments.values() if i.user_id == user_id]
        return [self._copy(i) for i in sorted(investments, key=lambda i: i.created_at)]

    async def increment_current_balance(
        self,
        investment_id: UUID,
        delta: Decimal,
    ) -> Investment:
        async with self._lock:
            return self._increment(
                self._investments, investment_id, "current_balance", delta, Decimal("0")
            )

    # -------------------------------------------------------------------------
    # Credit cards, invoices, charges
    # -------------------------------------------------------------------------

    async def create_credit_card(self, card: CreditCard) -> CreditCard:
        async with self._lock:
            return self._insert(self._cards, card)

    async def get_credit_card(self, card_id: UUID) -> Optional[CreditCard]:
        return self._copy(self._cards.get(card_id))

    async def get_credit_card_by_account(self, account_id: UUID) -> Optional[CreditCard]:
        for card in self._cards.values():
            if card.account_id == account_id:
                return self._copy(card)
        return None

    async def update_credit_card(self, card: CreditCard) -> CreditCard:
        async with self._lock:
            return self._replace(self._cards, card, keep=("available_limit", "created_at"))

    async def delete_credit_card(self, card_id: UUID) -> bool:
        async with self._lock:
            return self._delete(self._cards, card_id)

    async def list_credit_cards(self, user_id: UUID) -> list[CreditCard]:
        cards = [c for c in self._cards.values() if c.user_id == user_id]
        return [self._copy(c) for c in sorted(cards, key=lambda c: c.created_at)]

    async def increment_available_limit(self, card_id: UUID, delta: Decimal) -> CreditCard:
        async with self._lock:
            return self._increment(self._cards, card_id, "available_limit", delta, Decimal("0"))

    async def create_invoice(self, invoice: Invoice) -> Invoice:
        async with self._lock:
            for existing in self._invoices.values():
                if (
                    existing.credit_card_id == invoice.credit_card_id
                    and existing.reference_month == invoice.reference_month
                    and existing.reference_year == invoice.reference_year
                ):
                    raise DuplicateRecordError(
                        f"Invoice already exists for {invoice.reference_month}/"
                        f"{invoice.reference_year} on card {invoice.credit_card_id}"
                    )
            return self._insert(self._invoices, invoice)

    async def get_invoice(self, invoice_id: UUID) -> Optional[Invoice]:
        return self._copy(self._invoices.get(invoice_id))

    async def get_invoice_by_reference(
        self,
        card_id: UUID,
        month: int,
        year: int,
    ) -> Optional[Invoice]:
        for invoice in self._invoices.values():
            if (
                invoice.credit_card_id == card_id
                and invoice.reference_month == month
                and invoice.reference_year == year
            ):
                return self._copy(invoice)
        return None

    async def update_invoice(self, invoice: Invoice) -> Invoice:
        async with self._lock:
            return self._replace(self._invoices, invoice, keep=("total_amount", "created_at"))

    async def list_invoices(self, card_id: UUID) -> list[Invoice]:
        invoices = [i for i in self._invoices.values() if i.credit_card_id == card_id]
        invoices.sort(key=lambda i: (i.reference_year, i.reference_month), reverse=True)
        return [self._copy(i) for i in invoices]

    async def increment_invoice_total(self, invoice_id: UUID, delta: Decimal) -> Invoice:
        async with self._lock:
            return self._increment(self._invoices, invoice_id, "total_amount", delta, Decimal("0"))

    async def create_charge(self, charge: CreditCardTransaction) -> CreditCardTransaction:
        async with self._lock:
            return self._insert(self._charges, charge)

    async def delete_charge(self, charge_id: UUID) -> bool:
        async with self._lock:
            return self._delete(self._charges, charge_id)

    async def list_charges(
        self,
        card_id: UUID,
        invoice_id: Optional[UUID] = None,
    ) -> list[CreditCardTransaction]:
        charges = [
            c for c in self._charges.values()
            if c.credit_card_id == card_id and (invoice_id is None or c.invoice_id == invoice_id)
        ]
        return [self._copy(c) for c in sorted(charges, key=lambda c: c.created_at)]

    # -------------------------------------------------------------------------
    # Budgets
    # -------------------------------------------------------------------------

    async def create_budget(self, budget: Budget) -> Budget:
        async with self._lock:
            for existing in self._budgets.values():
                if (
                    existing.user_id == budget.user_id
                    and existing.category_id == budget.category_id
                    and existing.month == budget.month
                    and existing.year == budget.year
                ):
                    raise DuplicateRecordError(
                        f"Budget already exists for category {budget.category_id} "
                        f"in {budget.month}/{budget.year}"
                    )
            return self._insert(self._budgets, budget)

    async def get_budget(self, budget_id: UUID) -> Optional[Budget]:
        return self._copy(self._budgets.get(budget_id))

    async def get_budget_for_category(
        self,
        user_id: UUID,
        category_id: UUID,
        month: int,
        year: int,
    ) -> Optional[Budget]:
        for budget in self._budgets.values():
            if (
                budget.user_id == user_id
                and budget.category_id == category_id
                and budget.month == month
                and budget.year == year
            ):
                return self._copy(budget)
        return None

    async def update_budget(self, budget: Budget) -> Budget:
        async with self._lock:
            return self._replace(self._budgets, budget, keep=("spent", "created_at"))

    async def delete_budget(self, budget_id: UUID) -> bool:
        async with self._lock:
            return self._delete(self._budgets, budget_id)

    async def list_budgets(
        self,
        user_id: UUID,
        month: Optional[int] = None,
        year: Optional[int] = None,
        recurring_only: bool = False,
    ) -> list[Budget]:
        budgets = [
            b for b in self._budgets.values()
            if b.user_id == user_id
            and (month is None or b.month == month)
            and (year is None or b.year == year)
            and (b.is_recurring or not recurring_only)
        ]
        budgets.sort(key=lambda b: (b.year, b.month, b.created_at))
        return [self._copy(b) for b in budgets]

    async def increment_spent(self, budget_id: UUID, delta: Decimal) -> Budget:
        async with self._lock:
            return self._increment(self._budgets, budget_id, "spent", delta)

    # -------------------------------------------------------------------------
    # Recurring transactions
    # -------------------------------------------------------------------------

    async def create_recurring(self, recurring: RecurringTransaction) -> RecurringTransaction:
        async with self._lock:
            return self._insert(self._recurring, recurring)

    async def get_recurring(self, recurring_id: UUID) -> Optional[RecurringTransaction]:
        return self._copy(self._recurring.get(recurring_id))

    async def update_recurring(self, recurring: RecurringTransaction) -> RecurringTransaction:
        async with self._lock:
            return self._replace(self._recurring, recurring, keep=("created_at",))

    async def delete_recurring(self, recurring_id: UUID) -> bool:
        async with self._lock:
            return self._delete(self._recurring, recurring_id)

    async def list_recurring(
        self,
        user_id: UUID,
        active_only: bool = False,
    ) -> list[RecurringTransaction]:
        items = [
            r for r in self._recurring.values()
            if r.user_id == user_id and (r.is_active or not active_only)
        ]
        return [self._copy(r) for r in sorted(items, key=lambda r: r.created_at)]

    async def list_due(self, on: date) -> list[RecurringTransaction]:
        due = [r for r in self._recurring.values() if r.is_active and r.next_due <= on]
        return [self._copy(r) for r in sorted(due, key=lambda r: r.next_due)]


class InMemoryMovementJournal(MovementJournalInterface):
    """Movement journal kept in process memory."""

    def __init__(self):
        self._intents: dict[UUID, MovementIntent] = {}

    async def save_intent(self, intent: MovementIntent) -> None:
        self._intents[intent.id] = intent.model_copy(deep=True)

    async def get_intent(self, movement_id: UUID) -> Optional[MovementIntent]:
        intent = self._intents.get(movement_id)
        return intent.model_copy(deep=True) if intent else None

    async def list_unfinished(self) -> list[MovementIntent]:
        unfinished = [i for i in self._intents.values() if i.status.needs_reconciliation]
        return [i.model_copy(deep=True) for i in sorted(unfinished, key=lambda i: i.started_at)]


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only audit log kept in process memory."""

    def __init__(self):
        self._events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_events_by_correlation_id(self, correlation_id: UUID) -> list[AuditEvent]:
        return [e for e in self._events if e.correlation_id == correlation_id]

    async def get_events_by_entity(self, entity_type: str, entity_id: UUID) -> list[AuditEvent]:
        return [
            e for e in self._events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        return list(reversed(self._events))[:limit]
