"""
Investment Movement Engine

Moves money between accounts and investment positions.

Every movement leaves an INVESTMENT (money in) or WITHDRAW (money out)
transaction leg tied to the investment. Those legs are the record of what
was invested: total_invested = sum(INVESTMENT legs) - sum(WITHDRAW legs).

CRITICAL: current_balance only changes through the storage's atomic delta.
The stored return_balance and return_rate are refreshed as the last step
of each movement.
"""

from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID

from finledger.audit import AuditLogger
from finledger.errors import InsufficientFundsError, NotFoundError, ValidationError
from finledger.ledger.accounts import AccountLedger
from finledger.ledger.base import LedgerService, model_errors, positive_amount, storage_errors
from finledger.ledger.categories import INVESTMENTS_CATEGORY, DefaultCategoryResolver
from finledger.ledger.saga import MovementCoordinator
from finledger.models.ledger import (
    ZERO,
    Account,
    Transaction,
    TransactionType,
    quantize_money,
    utcnow,
)
from finledger.models.movement import Compensation, CompensationKind, MovementKind
from finledger.models.savings import Investment, InvestmentReturn, InvestmentType
from finledger.services.storage import (
    InvestmentStorageInterface,
    TransactionStorageInterface,
    UserDirectoryInterface,
)


class InvestmentEngine(LedgerService):
    """
    Investment CRUD, contributions, withdrawals and return calculation.
    """

    def __init__(
        self,
        investments: InvestmentStorageInterface,
        transactions: TransactionStorageInterface,
        accounts: AccountLedger,
        movements: MovementCoordinator,
        categories: DefaultCategoryResolver,
        users: UserDirectoryInterface,
        audit_logger: Optional[AuditLogger] = None,
    ):
        super().__init__(users, audit_logger)
        self._investments = investments
        self._transactions = transactions
        self._accounts = accounts
        self._movements = movements
        self._categories = categories

    async def _funding_account(self, account_id: UUID, user_id: UUID) -> Account:
        account = await self._accounts.get_account(account_id, user_id)
        if account.is_credit_card:
            raise ValidationError(
                "credit card accounts cannot move money into investments",
                field="account_id",
            )
        return account

    def _leg(
        self,
        investment_id: UUID,
        account_id: UUID,
        user_id: UUID,
        leg_type: TransactionType,
        amount: Decimal,
        description: str,
    ) -> Transaction:
        with model_errors("transaction"):
            return Transaction(
                user_id=user_id,
                account_id=account_id,
                type=leg_type,
                category_id=self._categories.category_id(user_id, INVESTMENTS_CATEGORY),
                investment_id=investment_id,
                amount=amount,
                description=description,
            )

    async def create_investment(
        self,
        user_id: UUID,
        account_id: UUID,
        investment_type: InvestmentType,
        name: str,
        initial_amount: Decimal,
        application_date: Optional[date] = None,
    ) -> Investment:
        """
        Open an investment funded from an account.

        Steps: insert the investment holding the initial amount, debit the
        account, record the INVESTMENT leg, refresh returns.

        Raises:
            ValidationError: If the name is empty, the amount is not
                positive or the account is a credit card
            InsufficientFundsError: If the account can't cover the amount
        """
        await self.ensure_user_exists(user_id)
        initial_amount = positive_amount(initial_amount, field="initial_amount")
        if not name or not name.strip():
            raise ValidationError("name is required", field="name")
        account = await self._funding_account(account_id, user_id)
        if not account.can_apply(-initial_amount):
            raise InsufficientFundsError(field="initial_amount")

        with model_errors("investment"):
            investment = Investment(
                user_id=user_id,
                type=investment_type,
                name=name,
                current_balance=initial_amount,
                application_date=application_date or utcnow().date(),
            )
        leg = self._leg(
            investment.id,
            account_id,
            user_id,
            TransactionType.INVESTMENT,
            initial_amount,
            f"Initial contribution - {investment.name}",
        )

        async with self._movements.begin(
            MovementKind.INVESTMENT_CREATION,
            user_id,
            investment_id=investment.id,
            account_id=account_id,
        ) as saga:
            await saga.step(
                "insert_investment",
                lambda: self._insert(investment),
                compensation=Compensation(
                    kind=CompensationKind.DELETE_INVESTMENT,
                    target_id=investment.id,
                    user_id=user_id,
                ),
            )
            await saga.step(
                "debit_account",
                lambda: self._accounts.update_balance(account_id, user_id, -initial_amount),
                compensation=Compensation(
                    kind=CompensationKind.ADJUST_ACCOUNT_BALANCE,
                    target_id=account_id,
                    user_id=user_id,
                    amount=initial_amount,
                ),
            )
            await saga.step(
                "record_investment_leg",
                lambda: self._record_leg(leg),
                compensation=Compensation(
                    kind=CompensationKind.DELETE_TRANSACTION,
                    target_id=leg.id,
                    user_id=user_id,
                ),
            )
            created = await saga.step(
                "refresh_returns",
                lambda: self._refresh_returns(investment.id),
            )

        self._logger.info(
            "investment_created",
            investment_id=str(created.id),
            user_id=str(user_id),
            type=created.type.value,
            amount=str(initial_amount),
        )
        return created

    async def make_contribution(
        self,
        investment_id: UUID,
        account_id: UUID,
        user_id: UUID,
        amount: Decimal,
        description: str = "",
    ) -> Investment:
        """
        Add money from an account to an investment.

        Steps: debit the account, record the INVESTMENT leg, add to the
        investment balance, refresh returns.
        """
        amount = positive_amount(amount)
        await self.get_investment(investment_id, user_id)
        account = await self._funding_account(account_id, user_id)
        if not account.can_apply(-amount):
            raise InsufficientFundsError()

        leg = self._leg(
            investment_id,
            account_id,
            user_id,
            TransactionType.INVESTMENT,
            amount,
            description.strip() or "Contribution",
        )

        async with self._movements.begin(
            MovementKind.INVESTMENT_CONTRIBUTION,
            user_id,
            investment_id=investment_id,
            account_id=account_id,
        ) as saga:
            await saga.step(
                "debit_account",
                lambda: self._accounts.update_balance(account_id, user_id, -amount),
                compensation=Compensation(
                    kind=CompensationKind.ADJUST_ACCOUNT_BALANCE,
                    target_id=account_id,
                    user_id=user_id,
                    amount=amount,
                ),
            )
            await saga.step(
                "record_investment_leg",
                lambda: self._record_leg(leg),
                compensation=Compensation(
                    kind=CompensationKind.DELETE_TRANSACTION,
                    target_id=leg.id,
                    user_id=user_id,
                ),
            )
            await saga.step(
                "increment_investment",
                lambda: self._shift_balance(investment_id, amount),
                compensation=Compensation(
                    kind=CompensationKind.ADJUST_INVESTMENT_BALANCE,
                    target_id=investment_id,
                    user_id=user_id,
                    amount=-amount,
                ),
            )
            updated = await saga.step(
                "refresh_returns",
                lambda: self._refresh_returns(investment_id),
            )
        return updated

    async def make_withdraw(
        self,
        investment_id: UUID,
        account_id: UUID,
        user_id: UUID,
        amount: Decimal,
        description: str = "",
    ) -> Investment:
        """
        Take money out of an investment into an account.

        Steps: take it off the investment, credit the account, record the
        WITHDRAW leg, refresh returns.

        Raises:
            ValidationError: If amount exceeds the investment balance
        """
        amount = positive_amount(amount)
        investment = await self.get_investment(investment_id, user_id)
        if amount > investment.current_balance:
            raise ValidationError("amount exceeds the investment balance", field="amount")
        await self._funding_account(account_id, user_id)

        leg = self._leg(
            investment_id,
            account_id,
            user_id,
            TransactionType.WITHDRAW,
            amount,
            description.strip() or "Withdrawal",
        )

        async with self._movements.begin(
            MovementKind.INVESTMENT_WITHDRAWAL,
            user_id,
            investment_id=investment_id,
            account_id=account_id,
        ) as saga:
            await saga.step(
                "decrement_investment",
                lambda: self._shift_balance(investment_id, -amount),
                compensation=Compensation(
                    kind=CompensationKind.ADJUST_INVESTMENT_BALANCE,
                    target_id=investment_id,
                    user_id=user_id,
                    amount=amount,
                ),
            )
            await saga.step(
                "credit_account",
                lambda: self._accounts.update_balance(account_id, user_id, amount),
                compensation=Compensation(
                    kind=CompensationKind.ADJUST_ACCOUNT_BALANCE,
                    target_id=account_id,
                    user_id=user_id,
                    amount=-amount,
                ),
            )
            await saga.step(
                "record_withdraw_leg",
                lambda: self._record_leg(leg),
                compensation=Compensation(
                    kind=CompensationKind.DELETE_TRANSACTION,
                    target_id=leg.id,
                    user_id=user_id,
                ),
            )
            updated = await saga.step(
                "refresh_returns",
                lambda: self._refresh_returns(investment_id),
            )
        return updated

    async def get_investment(self, investment_id: UUID, user_id: UUID) -> Investment:
        with storage_errors("investment"):
            investment = await self._investments.get_investment(investment_id)
        return self.check_owner(investment, user_id, "investment")

    async def list_investments(self, user_id: UUID) -> list[Investment]:
        await self.ensure_user_exists(user_id)
        with storage_errors("investment"):
            return await self._investments.list_investments(user_id)

    async def get_total_invested(self, investment_id: UUID, user_id: UUID) -> Decimal:
        """Money put in minus money taken out, from the transaction legs."""
        await self.get_investment(investment_id, user_id)
        return await self._total_invested(investment_id)

    async def _total_invested(self, investment_id: UUID) -> Decimal:
        with storage_errors("transaction"):
            legs = await self._transactions.list_transactions(investment_id=investment_id)
        total = ZERO
        for leg in legs:
            if leg.type == TransactionType.INVESTMENT:
                total += leg.amount
            elif leg.type == TransactionType.WITHDRAW:
                total -= leg.amount
        return total

    async def calculate_return(self, investment_id: UUID, user_id: UUID) -> InvestmentReturn:
        """
        profit = current_balance - total_invested
        return_percentage = profit / total_invested * 100

        Both are zero when nothing is invested.
        """
        investment = await self.get_investment(investment_id, user_id)
        return self._returns(investment, await self._total_invested(investment_id))

    @staticmethod
    def _returns(investment: Investment, total_invested: Decimal) -> InvestmentReturn:
        if total_invested == 0:
            return InvestmentReturn(
                total_invested=total_invested,
                profit=ZERO,
                return_percentage=ZERO,
            )
        profit = investment.current_balance - total_invested
        return InvestmentReturn(
            total_invested=total_invested,
            profit=profit,
            return_percentage=quantize_money(profit / total_invested * 100),
        )

    async def _refresh_returns(self, investment_id: UUID) -> Investment:
        with storage_errors("investment"):
            investment = await self._investments.get_investment(investment_id)
        if investment is None:
            raise NotFoundError("investment", investment_id)
        result = self._returns(investment, await self._total_invested(investment_id))
        investment.return_balance = result.profit
        investment.return_rate = result.return_percentage
        with storage_errors("investment"):
            return await self._investments.update_investment(investment)

    async def update_investment(
        self,
        investment_id: UUID,
        user_id: UUID,
        name: Optional[str] = None,
        investment_type: Optional[InvestmentType] = None,
        current_balance: Optional[Decimal] = None,
    ) -> Investment:
        """
        Change details, or mark the position to market.

        current_balance is the market value of the position. It moves by
        the difference to the stored value, so a concurrent contribution
        is not lost; no account is touched.
        """
        investment = await self.get_investment(investment_id, user_id)
        if name is not None:
            if not name.strip():
                raise ValidationError("name is required", field="name")
            investment.name = name.strip()
        if investment_type is not None:
            investment.type = investment_type
        if current_balance is not None:
            current_balance = quantize_money(Decimal(str(current_balance)))
            if current_balance < 0:
                raise ValidationError("balance cannot be negative", field="current_balance")

        with storage_errors("investment"):
            await self._investments.update_investment(investment)
        if current_balance is not None and current_balance != investment.current_balance:
            await self._shift_balance(investment_id, current_balance - investment.current_balance)
            self._logger.info(
                "investment_revalued",
                investment_id=str(investment_id),
                previous=str(investment.current_balance),
                current=str(current_balance),
            )
        return await self._refresh_returns(investment_id)

    async def delete_investment(self, investment_id: UUID, user_id: UUID) -> None:
        """
        Remove an investment together with its transaction legs.

        Raises:
            ValidationError: Unless the balance is zero
        """
        investment = await self.get_investment(investment_id, user_id)
        if investment.current_balance != 0:
            raise ValidationError(
                "withdraw the balance before deleting the investment",
                field="current_balance",
            )
        with storage_errors("investment"):
            legs = await self._transactions.list_transactions(investment_id=investment_id)
            for leg in legs:
                await self._transactions.delete_transaction(leg.id)
            await self._investments.delete_investment(investment_id)
        self._logger.info(
            "investment_deleted",
            investment_id=str(investment_id),
            user_id=str(user_id),
            legs_deleted=len(legs),
        )

    # -------------------------------------------------------------------------
    # Storage steps
    # -------------------------------------------------------------------------

    async def _insert(self, investment: Investment) -> Investment:
        with storage_errors("investment"):
            return await self._investments.create_investment(investment)

    async def _record_leg(self, leg: Transaction) -> Transaction:
        with storage_errors("transaction"):
            return await self._transactions.create_transaction(leg)

    async def _shift_balance(self, investment_id: UUID, delta: Decimal) -> Investment:
        with storage_errors("investment", "amount exceeds the investment balance"):
            return await self._investments.increment_current_balance(investment_id, delta)
