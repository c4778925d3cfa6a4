"""
Goal Contribution Engine

Moves money between accounts and savings goals.

CRITICAL: goal.current_amount must always equal the sum of its DEPOSIT
contributions minus its WITHDRAW contributions, and the account side must
move by exactly the same amount. Every movement is a saga; a failure part
way through undoes the completed steps in reverse order.

DESIGN DECISION: The goal status is re-evaluated as the LAST step of each
movement, from the amount storage returned after the atomic increment.
The status step has nothing to undo: the amount it reads is already final.
"""

from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID

from finledger.audit import AuditLogger
from finledger.errors import InsufficientFundsError, NotFoundError, ValidationError
from finledger.ledger.accounts import AccountLedger
from finledger.ledger.base import LedgerService, model_errors, positive_amount, storage_errors
from finledger.ledger.categories import GOALS_CATEGORY, DefaultCategoryResolver
from finledger.ledger.saga import MovementCoordinator
from finledger.models.ledger import Transaction, TransactionType, utcnow
from finledger.models.movement import Compensation, CompensationKind, MovementKind
from finledger.models.savings import (
    Contribution,
    ContributionType,
    Goal,
    GoalProgress,
    GoalStatus,
)
from finledger.services.storage import (
    GoalStorageInterface,
    TransactionStorageInterface,
    UserDirectoryInterface,
)


class GoalEngine(LedgerService):
    """
    Goal CRUD, contributions, withdrawals and their reversal.
    """

    def __init__(
        self,
        goals: GoalStorageInterface,
        transactions: TransactionStorageInterface,
        accounts: AccountLedger,
        movements: MovementCoordinator,
        categories: DefaultCategoryResolver,
        users: UserDirectoryInterface,
        audit_logger: Optional[AuditLogger] = None,
    ):
        super().__init__(users, audit_logger)
        self._goals = goals
        self._transactions = transactions
        self._accounts = accounts
        self._movements = movements
        self._categories = categories

    # =========================================================================
    # GOALS
    # =========================================================================

    @staticmethod
    def _check_target_date(target_date: Optional[date], today: Optional[date]) -> None:
        if target_date is not None and target_date < (today or utcnow().date()):
            raise ValidationError("target date cannot be in the past", field="target_date")

    async def create_goal(
        self,
        user_id: UUID,
        name: str,
        target_amount: Decimal,
        target_date: Optional[date] = None,
        icon: Optional[str] = None,
        color: Optional[str] = None,
        today: Optional[date] = None,
    ) -> Goal:
        """
        Create an ACTIVE goal with nothing saved yet.

        Raises:
            ValidationError: If the name is empty, the target is not
                positive or the target date is in the past
        """
        if not name or not name.strip():
            raise ValidationError("name is required", field="name")
        target_amount = positive_amount(target_amount, field="target_amount")
        self._check_target_date(target_date, today)
        await self.ensure_user_exists(user_id)

        with model_errors("goal"):
            goal = Goal(
                user_id=user_id,
                name=name,
                target_amount=target_amount,
                target_date=target_date,
                icon=icon,
                color=color,
            )
        with storage_errors("goal"):
            created = await self._goals.create_goal(goal)
        self._logger.info("goal_created", goal_id=str(created.id), user_id=str(user_id))
        return created

    async def get_goal(self, goal_id: UUID, user_id: UUID) -> Goal:
        with storage_errors("goal"):
            goal = await self._goals.get_goal(goal_id)
        return self.check_owner(goal, user_id, "goal")

    async def list_goals(
        self,
        user_id: UUID,
        status: Optional[GoalStatus] = None,
    ) -> list[Goal]:
        await self.ensure_user_exists(user_id)
        with storage_errors("goal"):
            return await self._goals.list_goals(user_id, status=status)

    async def get_goal_progress(self, goal_id: UUID, user_id: UUID) -> GoalProgress:
        goal = await self.get_goal(goal_id, user_id)
        return GoalProgress.of(goal)

    async def update_goal(
        self,
        goal_id: UUID,
        user_id: UUID,
        name: Optional[str] = None,
        target_amount: Optional[Decimal] = None,
        target_date: Optional[date] = None,
        icon: Optional[str] = None,
        color: Optional[str] = None,
        today: Optional[date] = None,
    ) -> Goal:
        """
        Change goal details.

        Changing the target re-evaluates the status: lowering it below the
        saved amount completes the goal, raising it above reactivates it.
        """
        goal = await self.get_goal(goal_id, user_id)
        if name is not None and not name.strip():
            raise ValidationError("name is required", field="name")
        if target_amount is not None:
            target_amount = positive_amount(target_amount, field="target_amount")
        if target_date is not None:
            self._check_target_date(target_date, today)

        with model_errors("goal"):
            if name is not None:
                goal.name = name
            if target_amount is not None:
                goal.target_amount = target_amount
            if target_date is not None:
                goal.target_date = target_date
            if icon is not None:
                goal.icon = icon
            if color is not None:
                goal.color = color

        with storage_errors("goal"):
            updated = await self._goals.update_goal(goal)
        return await self._settle_status(updated)

    async def delete_goal(self, goal_id: UUID, user_id: UUID) -> None:
        """
        Remove a goal and its contribution history.

        Raises:
            ValidationError: If money is still saved in the goal
        """
        goal = await self.get_goal(goal_id, user_id)
        if goal.current_amount != 0:
            raise ValidationError(
                "withdraw the saved amount before deleting the goal",
                field="current_amount",
            )
        with storage_errors("goal"):
            for contribution in await self._goals.list_contributions(goal_id):
                await self._goals.delete_contribution(contribution.id)
            await self._goals.delete_goal(goal_id)
        self._logger.info("goal_deleted", goal_id=str(goal_id), user_id=str(user_id))

    async def _settle_status(
        self,
        goal: Goal,
        correlation_id: Optional[UUID] = None,
    ) -> Goal:
        """Bring the status in line with current_amount, if it isn't already."""
        if goal.status == GoalStatus.ACTIVE and goal.is_reached:
            goal.complete()
        elif goal.status == GoalStatus.COMPLETED and not goal.is_reached:
            goal.reactivate()
        else:
            return goal

        with storage_errors("goal"):
            updated = await self._goals.update_goal_status(goal.id, goal.status, goal.ended_at)
        await self._audit_logger.log_goal_status_changed(
            goal_id=goal.id,
            user_id=goal.user_id,
            completed=updated.status == GoalStatus.COMPLETED,
            current_amount=updated.current_amount,
            correlation_id=correlation_id,
        )
        return updated

    async def _shift_amount(self, goal_id: UUID, delta: Decimal) -> Goal:
        with storage_errors("goal", "amount exceeds the goal's saved amount"):
            return await self._goals.increment_current_amount(goal_id, delta)

    # =========================================================================
    # CONTRIBUTIONS
    # =========================================================================

    async def _funding_account(self, account_id: UUID, user_id: UUID):
        account = await self._accounts.get_account(account_id, user_id)
        if account.is_credit_card:
            raise ValidationError(
                "credit card accounts cannot fund or receive goal money",
                field="account_id",
            )
        return account

    async def make_contribution(
        self,
        goal_id: UUID,
        account_id: UUID,
        user_id: UUID,
        amount: Decimal,
        description: Optional[str] = None,
    ) -> Contribution:
        """
        Move money from an account into a goal.

        Steps: debit the account, record the GOAL leg, record the DEPOSIT,
        add to the goal, then complete the goal if the target is reached.

        Raises:
            ValidationError: If the goal is not ACTIVE or the account is a
                credit card
            InsufficientFundsError: If the account can't cover the amount
            PartiallyFailedError: If a failure could not be fully undone
        """
        amount = positive_amount(amount)
        goal = await self.get_goal(goal_id, user_id)
        if goal.status != GoalStatus.ACTIVE:
            raise ValidationError("goal is not active", field="goal_id")
        account = await self._funding_account(account_id, user_id)
        if not account.can_apply(-amount):
            raise InsufficientFundsError()

        description = description or f"Contribution to goal: {goal.name}"
        with model_errors("transaction"):
            leg = Transaction(
                user_id=user_id,
                account_id=account_id,
                type=TransactionType.GOAL,
                category_id=self._categories.category_id(user_id, GOALS_CATEGORY),
                amount=amount,
                description=description,
            )
        with model_errors("contribution"):
            contribution = Contribution(
                goal_id=goal_id,
                user_id=user_id,
                account_id=account_id,
                transaction_id=leg.id,
                type=ContributionType.DEPOSIT,
                amount=amount,
                description=description,
            )

        async with self._movements.begin(
            MovementKind.GOAL_CONTRIBUTION,
            user_id,
            goal_id=goal_id,
            account_id=account_id,
            contribution_id=contribution.id,
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
                "record_goal_leg",
                lambda: self._record_leg(leg),
                compensation=Compensation(
                    kind=CompensationKind.DELETE_TRANSACTION,
                    target_id=leg.id,
                    user_id=user_id,
                ),
            )
            created = await saga.step(
                "record_contribution",
                lambda: self._record_contribution(contribution),
                compensation=Compensation(
                    kind=CompensationKind.DELETE_CONTRIBUTION,
                    target_id=contribution.id,
                    user_id=user_id,
                ),
            )
            updated = await saga.step(
                "increment_goal",
                lambda: self._shift_amount(goal_id, amount),
                compensation=Compensation(
                    kind=CompensationKind.ADJUST_GOAL_AMOUNT,
                    target_id=goal_id,
                    user_id=user_id,
                    amount=-amount,
                ),
            )
            await saga.step(
                "settle_status",
                lambda: self._settle_status(updated, correlation_id=saga.movement_id),
            )

        self._logger.info(
            "goal_contribution_made",
            goal_id=str(goal_id),
            account_id=str(account_id),
            amount=str(amount),
        )
        return created

    async def withdraw_from_goal(
        self,
        goal_id: UUID,
        account_id: UUID,
        user_id: UUID,
        amount: Decimal,
        description: Optional[str] = None,
    ) -> Contribution:
        """
        Move money from a goal back into an account.

        Steps: record the WITHDRAW, take it off the goal, credit the
        account, then reactivate a COMPLETED goal that fell below target.

        Raises:
            ValidationError: If the amount exceeds what the goal holds or
                the account is a credit card
        """
        amount = positive_amount(amount)
        goal = await self.get_goal(goal_id, user_id)
        if amount > goal.current_amount:
            raise ValidationError("amount exceeds the goal's saved amount", field="amount")
        await self._funding_account(account_id, user_id)

        with model_errors("contribution"):
            contribution = Contribution(
                goal_id=goal_id,
                user_id=user_id,
                account_id=account_id,
                type=ContributionType.WITHDRAW,
                amount=amount,
                description=description or f"Withdrawal from goal: {goal.name}",
            )

        async with self._movements.begin(
            MovementKind.GOAL_WITHDRAWAL,
            user_id,
            goal_id=goal_id,
            account_id=account_id,
            contribution_id=contribution.id,
        ) as saga:
            created = await saga.step(
                "record_withdrawal",
                lambda: self._record_contribution(contribution),
                compensation=Compensation(
                    kind=CompensationKind.DELETE_CONTRIBUTION,
                    target_id=contribution.id,
                    user_id=user_id,
                ),
            )
            updated = await saga.step(
                "decrement_goal",
                lambda: self._shift_amount(goal_id, -amount),
                compensation=Compensation(
                    kind=CompensationKind.ADJUST_GOAL_AMOUNT,
                    target_id=goal_id,
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
                "settle_status",
                lambda: self._settle_status(updated, correlation_id=saga.movement_id),
            )

        self._logger.info(
            "goal_withdrawal_made",
            goal_id=str(goal_id),
            account_id=str(account_id),
            amount=str(amount),
        )
        return created

    async def get_contributions(self, goal_id: UUID, user_id: UUID) -> list[Contribution]:
        await self.get_goal(goal_id, user_id)
        with storage_errors("contribution"):
            return await self._goals.list_contributions(goal_id)

    async def delete_contribution(self, contribution_id: UUID, user_id: UUID) -> None:
        """
        Reverse a DEPOSIT: the money goes back to its account and the GOAL
        leg is removed.

        Raises:
            ValidationError: For WITHDRAW records, or when the goal no
                longer holds the deposited amount
        """
        with storage_errors("contribution"):
            contribution = await self._goals.get_contribution(contribution_id)
        contribution = self.check_owner(contribution, user_id, "contribution")
        await self._reverse_deposit(contribution)

    async def delete_contribution_by_transaction(
        self,
        transaction_id: UUID,
        user_id: UUID,
    ) -> None:
        """Reverse the deposit behind a GOAL leg being deleted."""
        with storage_errors("contribution"):
            contribution = await self._goals.get_contribution_by_transaction(transaction_id)
        if contribution is not None:
            contribution = self.check_owner(contribution, user_id, "contribution")
            await self._reverse_deposit(contribution)
            return

        # Leg whose goal is gone; the money already went back on withdrawal
        with storage_errors("transaction"):
            leg = await self._transactions.get_transaction(transaction_id)
        self.check_owner(leg, user_id, "transaction")
        with storage_errors("transaction"):
            await self._transactions.delete_transaction(transaction_id)

    async def _reverse_deposit(self, contribution: Contribution) -> None:
        if contribution.type != ContributionType.DEPOSIT:
            raise ValidationError("only deposits can be deleted", field="type")
        user_id = contribution.user_id
        goal = await self.get_goal(contribution.goal_id, user_id)
        if goal.current_amount < contribution.amount:
            raise ValidationError(
                "the goal no longer holds this contribution",
                field="amount",
            )
        account = await self._accounts.get_account(contribution.account_id, user_id)
        leg = None
        if contribution.transaction_id is not None:
            with storage_errors("transaction"):
                leg = await self._transactions.get_transaction(contribution.transaction_id)

        amount = contribution.amount
        async with self._movements.begin(
            MovementKind.GOAL_CONTRIBUTION_REVERSAL,
            user_id,
            goal_id=goal.id,
            account_id=account.id,
            contribution_id=contribution.id,
        ) as saga:
            await saga.step(
                "delete_contribution",
                lambda: self._remove_contribution(contribution.id),
                compensation=Compensation(
                    kind=CompensationKind.RESTORE_CONTRIBUTION,
                    target_id=contribution.id,
                    user_id=user_id,
                    payload={"contribution": contribution.model_dump(mode="json")},
                ),
            )
            updated = await saga.step(
                "decrement_goal",
                lambda: self._shift_amount(goal.id, -amount),
                compensation=Compensation(
                    kind=CompensationKind.ADJUST_GOAL_AMOUNT,
                    target_id=goal.id,
                    user_id=user_id,
                    amount=amount,
                ),
            )
            await saga.step(
                "credit_account",
                lambda: self._accounts.update_balance(account.id, user_id, amount),
                compensation=Compensation(
                    kind=CompensationKind.ADJUST_ACCOUNT_BALANCE,
                    target_id=account.id,
                    user_id=user_id,
                    amount=-amount,
                ),
            )
            if leg is not None:
                await saga.step(
                    "delete_goal_leg",
                    lambda: self._remove_leg(leg.id),
                    compensation=Compensation(
                        kind=CompensationKind.RESTORE_TRANSACTION,
                        target_id=leg.id,
                        user_id=user_id,
                        payload={"transaction": leg.model_dump(mode="json")},
                    ),
                )
            await saga.step(
                "settle_status",
                lambda: self._settle_status(updated, correlation_id=saga.movement_id),
            )

        self._logger.info(
            "goal_contribution_deleted",
            contribution_id=str(contribution.id),
            goal_id=str(goal.id),
            amount=str(amount),
        )

    # -------------------------------------------------------------------------
    # Storage steps
    # -------------------------------------------------------------------------

    async def _record_leg(self, leg: Transaction) -> Transaction:
        with storage_errors("transaction"):
            return await self._transactions.create_transaction(leg)

    async def _remove_leg(self, transaction_id: UUID) -> None:
        with storage_errors("transaction"):
            await self._transactions.delete_transaction(transaction_id)

    async def _record_contribution(self, contribution: Contribution) -> Contribution:
        with storage_errors("contribution"):
            return await self._goals.create_contribution(contribution)

    async def _remove_contribution(self, contribution_id: UUID) -> None:
        with storage_errors("contribution"):
            if not await self._goals.delete_contribution(contribution_id):
                raise NotFoundError("contribution", contribution_id)

