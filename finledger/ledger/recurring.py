"""
Recurring Scheduler

Definitions that materialize a RECEIPT or EXPENSE on a schedule.

The timer that calls process_due_transactions() lives outside this
package. Every materialized transaction goes through the Transaction
service, so it moves balances and budgets like any other.

DESIGN DECISION: A definition that fails to post is logged, audited and
left due; it is not retried within the same run.
"""

import calendar
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional
from uuid import UUID

from finledger.audit import AuditLogger, create_correlation_id
from finledger.errors import LedgerError, ValidationError
from finledger.ledger.accounts import AccountLedger
from finledger.ledger.base import LedgerService, model_errors, positive_amount, storage_errors
from finledger.ledger.transactions import TransactionService
from finledger.models.ledger import DESCRIPTION_MAX_LENGTH, Transaction, TransactionType, utcnow
from finledger.models.planning import Frequency, RecurringRunSummary, RecurringTransaction
from finledger.services.storage import RecurringStorageInterface, UserDirectoryInterface


RECURRING_SUFFIX = " (recurring)"


def recurring_description(description: str) -> str:
    """Tag a description as recurring, cutting it to fit the transaction limit."""
    room = DESCRIPTION_MAX_LENGTH - len(RECURRING_SUFFIX)
    return description[:room].rstrip() + RECURRING_SUFFIX


def calculate_next_due(
    from_date: date,
    frequency: Frequency,
    day_of_month: int = 1,
    day_of_week: int = 0,
) -> date:
    """
    Next occurrence strictly after from_date.

    DAILY: the next day.
    WEEKLY: the next day_of_week (0=Sunday .. 6=Saturday); a full week
        when from_date already falls on it.
    MONTHLY: day_of_month of the following calendar month, clamped to that
        month's last day (Jan 31 -> Feb 29 -> Mar 31).
    YEARLY: same month and day next year; Feb 29 becomes Feb 28.
    """
    if frequency == Frequency.DAILY:
        return from_date + timedelta(days=1)

    if frequency == Frequency.WEEKLY:
        # date.weekday() is 0=Monday; shift to 0=Sunday
        current = (from_date.weekday() + 1) % 7
        days_until = (day_of_week - current + 7) % 7
        return from_date + timedelta(days=days_until or 7)

    if frequency == Frequency.MONTHLY:
        year, month = (
            (from_date.year + 1, 1) if from_date.month == 12
            else (from_date.year, from_date.month + 1)
        )
        last_day = calendar.monthrange(year, month)[1]
        return date(year, month, min(day_of_month, last_day))

    if frequency == Frequency.YEARLY:
        year = from_date.year + 1
        last_day = calendar.monthrange(year, from_date.month)[1]
        return date(year, from_date.month, min(from_date.day, last_day))

    raise ValidationError(f"unknown frequency: {frequency}", field="frequency")


class RecurringScheduler(LedgerService):
    """
    Recurring definition CRUD and processing.
    """

    def __init__(
        self,
        recurring: RecurringStorageInterface,
        transactions: TransactionService,
        accounts: AccountLedger,
        users: UserDirectoryInterface,
        audit_logger: Optional[AuditLogger] = None,
    ):
        super().__init__(users, audit_logger)
        self._recurring = recurring
        self._transactions = transactions
        self._accounts = accounts

    async def create_recurring(
        self,
        user_id: UUID,
        transaction_type: TransactionType,
        category_id: UUID,
        amount: Decimal,
        frequency: Frequency,
        start_date: date,
        account_id: Optional[UUID] = None,
        description: str = "",
        day_of_month: int = 1,
        day_of_week: int = 0,
        end_date: Optional[date] = None,
    ) -> RecurringTransaction:
        """
        Create an active definition; its first due date is computed from
        start_date.

        Raises:
            ValidationError: On a bad amount, type, day or date range
        """
        await self.ensure_user_exists(user_id)
        amount = positive_amount(amount)
        if transaction_type not in (TransactionType.RECEIPT, TransactionType.EXPENSE):
            raise ValidationError("type must be RECEIPT or EXPENSE", field="type")
        if frequency == Frequency.MONTHLY and not 1 <= day_of_month <= 31:
            raise ValidationError("day_of_month must be between 1 and 31", field="day_of_month")
        if frequency == Frequency.WEEKLY and not 0 <= day_of_week <= 6:
            raise ValidationError(
                "day_of_week must be between 0 (Sunday) and 6 (Saturday)",
                field="day_of_week",
            )
        if end_date is not None and end_date < start_date:
            raise ValidationError("end_date is before start_date", field="end_date")
        if account_id is not None:
            await self._accounts.get_account(account_id, user_id)

        with model_errors("recurring transaction"):
            recurring = RecurringTransaction(
                user_id=user_id,
                type=transaction_type,
                category_id=category_id,
                account_id=account_id,
                amount=amount,
                description=description.strip(),
                frequency=frequency,
                day_of_month=day_of_month,
                day_of_week=day_of_week,
                start_date=start_date,
                end_date=end_date,
                next_due=calculate_next_due(start_date, frequency, day_of_month, day_of_week),
            )
        with storage_errors("recurring transaction"):
            created = await self._recurring.create_recurring(recurring)
        self._logger.info(
            "recurring_created",
            recurring_id=str(created.id),
            user_id=str(user_id),
            frequency=frequency.value,
            next_due=created.next_due.isoformat(),
        )
        return created

    async def get_recurring(self, recurring_id: UUID, user_id: UUID) -> RecurringTransaction:
        with storage_errors("recurring transaction"):
            recurring = await self._recurring.get_recurring(recurring_id)
        return self.check_owner(recurring, user_id, "recurring transaction")

    async def list_recurring(
        self,
        user_id: UUID,
        active_only: bool = False,
    ) -> list[RecurringTransaction]:
        await self.ensure_user_exists(user_id)
        with storage_errors("recurring transaction"):
            return await self._recurring.list_recurring(user_id, active_only=active_only)

    async def update_recurring(
        self,
        recurring_id: UUID,
        user_id: UUID,
        amount: Optional[Decimal] = None,
        description: Optional[str] = None,
        account_id: Optional[UUID] = None,
        is_active: Optional[bool] = None,
        end_date: Optional[date] = None,
        next_due: Optional[date] = None,
    ) -> RecurringTransaction:
        recurring = await self.get_recurring(recurring_id, user_id)
        if amount is not None:
            recurring.amount = positive_amount(amount)
        if description is not None:
            recurring.description = description.strip()
        if account_id is not None:
            await self._accounts.get_account(account_id, user_id)
            recurring.account_id = account_id
        if is_active is not None:
            recurring.is_active = is_active
        if end_date is not None:
            if end_date < recurring.start_date:
                raise ValidationError("end_date is before start_date", field="end_date")
            recurring.end_date = end_date
        if next_due is not None:
            recurring.next_due = next_due
        with storage_errors("recurring transaction"):
            return await self._recurring.update_recurring(recurring)

    async def delete_recurring(self, recurring_id: UUID, user_id: UUID) -> None:
        await self.get_recurring(recurring_id, user_id)
        with storage_errors("recurring transaction"):
            await self._recurring.delete_recurring(recurring_id)

    async def _materialize(
        self,
        recurring: RecurringTransaction,
        on: date,
        correlation_id: Optional[UUID] = None,
    ) -> Transaction:
        """Post the transaction for one occurrence and advance the schedule."""
        transaction = await self._transactions.create_transaction(
            user_id=recurring.user_id,
            account_id=recurring.account_id,
            transaction_type=recurring.type,
            amount=recurring.amount,
            category_id=recurring.category_id,
            description=recurring_description(recurring.description),
            on=on,
            recurring_id=recurring.id,
        )
        recurring.last_processed = on
        recurring.next_due = calculate_next_due(
            on, recurring.frequency, recurring.day_of_month, recurring.day_of_week
        )
        with storage_errors("recurring transaction"):
            await self._recurring.update_recurring(recurring)

        await self._audit_logger.log_recurring_processed(
            recurring_id=recurring.id,
            user_id=recurring.user_id,
            transaction_id=transaction.id,
            next_due=recurring.next_due.isoformat(),
            correlation_id=correlation_id,
        )
        return transaction

    async def process_due_transactions(
        self,
        today: Optional[date] = None,
    ) -> RecurringRunSummary:
        """
        Post every active definition due on or before today.

        Definitions past their end date or without an account are skipped.
        A failure is logged and audited, and the run moves on.
        """
        today = today or utcnow().date()
        summary = RecurringRunSummary(run_date=today)
        run_id = create_correlation_id()
        with storage_errors("recurring transaction"):
            due = await self._recurring.list_due(today)

        for recurring in due:
            if recurring.is_expired(today) or recurring.account_id is None:
                summary.skipped.append(recurring.id)
                continue
            try:
                await self._materialize(recurring, today, correlation_id=run_id)
            except LedgerError as e:
                summary.failed.append(recurring.id)
                self._logger.warning(
                    "recurring_processing_failed",
                    recurring_id=str(recurring.id),
                    user_id=str(recurring.user_id),
                    error_code=e.code,
                    error=e.message,
                )
                await self._audit_logger.log_recurring_failed(
                    recurring_id=recurring.id,
                    user_id=recurring.user_id,
                    error_code=e.code,
                    error_message=e.message,
                    correlation_id=run_id,
                )
                continue
            except Exception as e:
                summary.failed.append(recurring.id)
                self._logger.exception(
                    "recurring_processing_crashed",
                    recurring_id=str(recurring.id),
                    user_id=str(recurring.user_id),
                )
                await self._audit_logger.log_recurring_failed(
                    recurring_id=recurring.id,
                    user_id=recurring.user_id,
                    error_code="INTERNAL_ERROR",
                    error_message=str(e),
                    correlation_id=run_id,
                )
                continue
            summary.processed.append(recurring.id)

        self._logger.info(
            "recurring_run_finished",
            run_id=str(run_id),
            run_date=today.isoformat(),
            processed=len(summary.processed),
            skipped=len(summary.skipped),
            failed=len(summary.failed),
        )
        return summary

    async def process_recurring_manually(
        self,
        recurring_id: UUID,
        user_id: UUID,
        process_date: Optional[date] = None,
    ) -> Transaction:
        """
        Post one occurrence on request, dated process_date (today by default).

        Raises:
            ValidationError: If the definition is paused, has no account,
                the date is outside start_date..end_date, or it was already
                processed on that date
        """
        recurring = await self.get_recurring(recurring_id, user_id)
        on = process_date or utcnow().date()

        if not recurring.is_active:
            raise ValidationError("recurring transaction is paused", field="is_active")
        if recurring.account_id is None:
            raise ValidationError("recurring transaction has no account", field="account_id")
        if recurring.is_expired(on):
            raise ValidationError("process date is after the end date", field="process_date")
        if on < recurring.start_date:
            raise ValidationError("process date is before the start date", field="process_date")
        if recurring.last_processed == on:
            raise ValidationError(
                "recurring transaction was already processed on this date",
                field="process_date",
            )

        return await self._materialize(recurring, on)
