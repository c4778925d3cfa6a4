"""
Transaction Service

Records RECEIPT and EXPENSE transactions and keeps the account balance and
the category budget in step with them.

DESIGN DECISION: Recording the row and moving the balance are two writes
against two aggregates, so they run as a saga. The budget update comes
after the saga: a budget is a spending report, and a failure there is
logged instead of undoing a posted transaction.

Legs written by other engines (INVESTMENT, WITHDRAW, GOAL) are owned by
those engines. A GOAL leg is deleted through the goal engine; investment
legs only disappear together with their investment.
"""

from datetime import date
from decimal import Decimal
from typing import Optional, Protocol
from uuid import UUID

from finledger.audit import AuditLogger
from finledger.errors import InsufficientFundsError, LedgerError, ValidationError
from finledger.ledger.accounts import AccountLedger
from finledger.ledger.base import LedgerService, model_errors, positive_amount, storage_errors
from finledger.ledger.budgets import BudgetTracker
from finledger.ledger.saga import MovementCoordinator
from finledger.models.ledger import Transaction, TransactionType, utcnow
from finledger.models.movement import Compensation, CompensationKind, MovementKind
from finledger.services.storage import TransactionStorageInterface, UserDirectoryInterface


class GoalLegHandler(Protocol):
    """What the service needs from the goal engine."""

    async def delete_contribution_by_transaction(
        self,
        transaction_id: UUID,
        user_id: UUID,
    ) -> None:
        ...


class TransactionService(LedgerService):
    """
    Posting and reversal of account transactions.
    """

    def __init__(
        self,
        transactions: TransactionStorageInterface,
        accounts: AccountLedger,
        budgets: BudgetTracker,
        movements: MovementCoordinator,
        users: UserDirectoryInterface,
        audit_logger: Optional[AuditLogger] = None,
    ):
        super().__init__(users, audit_logger)
        self._transactions = transactions
        self._accounts = accounts
        self._budgets = budgets
        self._movements = movements
        self._goal_legs: Optional[GoalLegHandler] = None

    def attach_goal_engine(self, goal_engine: GoalLegHandler) -> None:
        """Wire the goal engine in; it depends on this service's collaborators."""
        self._goal_legs = goal_engine

    async def create_transaction(
        self,
        user_id: UUID,
        account_id: UUID,
        transaction_type: TransactionType,
        amount: Decimal,
        category_id: Optional[UUID] = None,
        description: str = "",
        on: Optional[date] = None,
        recurring_id: Optional[UUID] = None,
    ) -> Transaction:
        """
        Post a RECEIPT or EXPENSE against an account.

        Credit-card accounts accept only EXPENSE and their balance is left
        alone; the card's invoice carries the debt.

        Args:
            user_id: Owner of the account
            account_id: Account the transaction is posted to
            transaction_type: RECEIPT or EXPENSE
            amount: Positive amount
            category_id: Required for RECEIPT and EXPENSE
            description: Free text
            on: Transaction date (today by default)
            recurring_id: Set when a recurring definition produced it

        Returns:
            The recorded transaction

        Raises:
            ValidationError: On a bad amount, type or missing category
            InsufficientFundsError: If an EXPENSE exceeds the balance
            PartiallyFailedError: If a failed posting could not be undone
        """
        amount = positive_amount(amount)
        if transaction_type not in (TransactionType.RECEIPT, TransactionType.EXPENSE):
            raise ValidationError(
                f"{transaction_type.value} transactions are recorded by their own engine",
                field="type",
            )
        if category_id is None:
            raise ValidationError("category is required", field="category_id")

        await self.ensure_user_exists(user_id)
        account = await self._accounts.get_account(account_id, user_id)
        if account.is_credit_card and transaction_type != TransactionType.EXPENSE:
            raise ValidationError(
                "credit card accounts only accept expenses",
                field="type",
            )
        if (
            transaction_type == TransactionType.EXPENSE
            and not account.can_apply(-amount)
        ):
            raise InsufficientFundsError()

        with model_errors("transaction"):
            transaction = Transaction(
                user_id=user_id,
                account_id=account_id,
                type=transaction_type,
                category_id=category_id,
                amount=amount,
                description=description,
                recurring_id=recurring_id,
                date=on or utcnow().date(),
            )

        async with self._movements.begin(
            MovementKind.TRANSACTION_POSTING,
            user_id,
            transaction_id=transaction.id,
            account_id=account_id,
        ) as saga:
            created = await saga.step(
                "record_transaction",
                lambda: self._record(transaction),
                compensation=Compensation(
                    kind=CompensationKind.DELETE_TRANSACTION,
                    target_id=transaction.id,
                    user_id=user_id,
                ),
            )
            if not account.is_credit_card:
                delta = transaction.balance_delta
                await saga.step(
                    "apply_balance",
                    lambda: self._accounts.update_balance(account_id, user_id, delta),
                    compensation=Compensation(
                        kind=CompensationKind.ADJUST_ACCOUNT_BALANCE,
                        target_id=account_id,
                        user_id=user_id,
                        amount=-delta,
                    ),
                )

        if created.type == TransactionType.EXPENSE:
            await self._shift_budget(created, created.amount)

        self._logger.info(
            "transaction_created",
            transaction_id=str(created.id),
            user_id=str(user_id),
            type=created.type.value,
            amount=str(created.amount),
        )
        return created

    async def _record(self, transaction: Transaction) -> Transaction:
        with storage_errors("transaction"):
            return await self._transactions.create_transaction(transaction)

    async def _remove(self, transaction_id: UUID) -> None:
        with storage_errors("transaction"):
            await self._transactions.delete_transaction(transaction_id)

    async def _shift_budget(self, transaction: Transaction, delta: Decimal) -> None:
        try:
            await self._budgets.update_spent(
                transaction.category_id,
                transaction.user_id,
                delta,
                on=transaction.date,
            )
        except LedgerError as e:
            self._logger.warning(
                "budget_update_failed",
                transaction_id=str(transaction.id),
                category_id=str(transaction.category_id),
                error_code=e.code,
                error=e.message,
            )

    async def get_transaction(self, transaction_id: UUID, user_id: UUID) -> Transaction:
        with storage_errors("transaction"):
            transaction = await self._transactions.get_transaction(transaction_id)
        return self.check_owner(transaction, user_id, "transaction")

    async def list_transactions(
        self,
        user_id: UUID,
        account_id: Optional[UUID] = None,
        investment_id: Optional[UUID] = None,
        transaction_type: Optional[TransactionType] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[Transaction]:
        await self.ensure_user_exists(user_id)
        with storage_errors("transaction"):
            return await self._transactions.list_transactions(
                user_id=user_id,
                account_id=account_id,
                investment_id=investment_id,
                transaction_type=transaction_type,
                date_from=date_from,
                date_to=date_to,
            )

    async def delete_transaction(self, transaction_id: UUID, user_id: UUID) -> None:
        """
        Remove a transaction and undo its effects.

        Raises:
            ValidationError: For INVESTMENT / WITHDRAW legs
            InsufficientFundsError: If undoing a RECEIPT would overdraw
                the account
        """
        transaction = await self.get_transaction(transaction_id, user_id)

        if transaction.type == TransactionType.GOAL:
            if self._goal_legs is None:
                raise ValidationError("goal legs cannot be deleted here", field="type")
            await self._goal_legs.delete_contribution_by_transaction(transaction_id, user_id)
            return
        if transaction.type in (TransactionType.INVESTMENT, TransactionType.WITHDRAW):
            raise ValidationError(
                "investment movements are removed together with their investment",
                field="type",
            )

        account = await self._accounts.get_account(transaction.account_id, user_id)

        async with self._movements.begin(
            MovementKind.TRANSACTION_REVERSAL,
            user_id,
            transaction_id=transaction_id,
            account_id=account.id,
        ) as saga:
            if not account.is_credit_card:
                delta = -transaction.balance_delta
                await saga.step(
                    "revert_balance",
                    lambda: self._accounts.update_balance(account.id, user_id, delta),
                    compensation=Compensation(
                        kind=CompensationKind.ADJUST_ACCOUNT_BALANCE,
                        target_id=account.id,
                        user_id=user_id,
                        amount=-delta,
                    ),
                )
            await saga.step(
                "delete_transaction",
                lambda: self._remove(transaction_id),
                compensation=Compensation(
                    kind=CompensationKind.RESTORE_TRANSACTION,
                    target_id=transaction_id,
                    user_id=user_id,
                    payload={"transaction": transaction.model_dump(mode="json")},
                ),
            )

        if transaction.type == TransactionType.EXPENSE:
            await self._shift_budget(transaction, -transaction.amount)

        self._logger.info(
            "transaction_deleted",
            transaction_id=str(transaction_id),
            user_id=str(user_id),
            type=transaction.type.value,
        )
