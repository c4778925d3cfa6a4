"""
Budget Spend Tracker

Keeps Budget.spent in step with the EXPENSE transactions of its category
and month. Status (OK / WARNING / EXCEEDED) is derived on read and never
stored.
"""

from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID

from finledger.audit import AuditLogger
from finledger.config import LedgerSettings, get_settings
from finledger.errors import ConflictError, ValidationError
from finledger.ledger.base import LedgerService, model_errors, positive_amount, storage_errors
from finledger.models.ledger import ZERO, quantize_money, utcnow
from finledger.models.planning import (
    Budget,
    BudgetStatus,
    BudgetStatusReport,
    BudgetSummary,
)
from finledger.services.storage import (
    BudgetStorageInterface,
    DuplicateRecordError,
    UserDirectoryInterface,
)


MIN_YEAR = 2000
MAX_YEAR = 2100


class BudgetTracker(LedgerService):
    """
    Budget CRUD and spend tracking.
    """

    def __init__(
        self,
        budgets: BudgetStorageInterface,
        users: UserDirectoryInterface,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        super().__init__(users, audit_logger)
        self._budgets = budgets
        self._settings = settings or get_settings().ledger

    def _normalize_alert_at(self, alert_at: Optional[int]) -> int:
        if alert_at is None or alert_at <= 0:
            return self._settings.default_budget_alert_at
        if alert_at > 100:
            raise ValidationError("alert_at must be between 1 and 100", field="alert_at")
        return alert_at

    @staticmethod
    def _normalize_period(
        month: Optional[int],
        year: Optional[int],
        today: Optional[date] = None,
    ) -> tuple[int, int]:
        today = today or utcnow().date()
        month = month if month is not None else today.month
        year = year if year is not None else today.year
        if not 1 <= month <= 12:
            raise ValidationError("month must be between 1 and 12", field="month")
        if not MIN_YEAR <= year <= MAX_YEAR:
            raise ValidationError(
                f"year must be between {MIN_YEAR} and {MAX_YEAR}",
                field="year",
            )
        return month, year

    async def create_budget(
        self,
        user_id: UUID,
        category_id: UUID,
        amount: Decimal,
        month: Optional[int] = None,
        year: Optional[int] = None,
        alert_at: Optional[int] = None,
        is_recurring: bool = False,
    ) -> Budget:
        """
        Create a budget for one category and month.

        Month and year default to the current period; alert_at defaults to
        the configured threshold when missing or not positive.

        Raises:
            ValidationError: On invalid amount, month, year or alert_at
            ConflictError: If the category already has a budget that month
        """
        amount = positive_amount(amount)
        month, year = self._normalize_period(month, year)
        alert_at = self._normalize_alert_at(alert_at)
        await self.ensure_user_exists(user_id)

        with model_errors("budget"):
            budget = Budget(
                user_id=user_id,
                category_id=category_id,
                month=month,
                year=year,
                amount=amount,
                alert_at=alert_at,
                is_recurring=is_recurring,
            )
        with storage_errors("budget"):
            try:
                return await self._budgets.create_budget(budget)
            except DuplicateRecordError as e:
                raise ConflictError(
                    "a budget already exists for this category and period",
                    {"category_id": str(category_id), "month": month, "year": year},
                ) from e

    async def get_budget(self, budget_id: UUID, user_id: UUID) -> Budget:
        with storage_errors("budget"):
            budget = await self._budgets.get_budget(budget_id)
        return self.check_owner(budget, user_id, "budget")

    async def list_budgets(
        self,
        user_id: UUID,
        month: Optional[int] = None,
        year: Optional[int] = None,
    ) -> list[Budget]:
        await self.ensure_user_exists(user_id)
        with storage_errors("budget"):
            return await self._budgets.list_budgets(user_id, month=month, year=year)

    async def update_budget(
        self,
        budget_id: UUID,
        user_id: UUID,
        amount: Optional[Decimal] = None,
        alert_at: Optional[int] = None,
        is_recurring: Optional[bool] = None,
    ) -> Budget:
        budget = await self.get_budget(budget_id, user_id)
        if amount is not None:
            budget.amount = positive_amount(amount)
        if alert_at is not None:
            budget.alert_at = self._normalize_alert_at(alert_at)
        if is_recurring is not None:
            budget.is_recurring = is_recurring
        with storage_errors("budget"):
            return await self._budgets.update_budget(budget)

    async def delete_budget(self, budget_id: UUID, user_id: UUID) -> None:
        await self.get_budget(budget_id, user_id)
        with storage_errors("budget"):
            await self._budgets.delete_budget(budget_id)

    async def update_spent(
        self,
        category_id: UUID,
        user_id: UUID,
        delta: Decimal,
        on: Optional[date] = None,
    ) -> Optional[Budget]:
        """
        Add delta to the spent amount of the category's budget for the
        month of `on` (today by default).

        A category without a budget that month is not an error.

        Returns:
            The updated budget, or None when there is none
        """
        on = on or utcnow().date()
        with storage_errors("budget"):
            budget = await self._budgets.get_budget_for_category(
                user_id, category_id, on.month, on.year
            )
            if budget is None:
                self._logger.debug(
                    "budget_not_found_for_category",
                    category_id=str(category_id),
                    user_id=str(user_id),
                    month=on.month,
                    year=on.year,
                )
                return None
            return await self._budgets.increment_spent(budget.id, quantize_money(delta))

    async def get_budget_status(self, budget_id: UUID, user_id: UUID) -> BudgetStatusReport:
        budget = await self.get_budget(budget_id, user_id)
        return BudgetStatusReport.of(budget)

    async def get_budget_summary(
        self,
        user_id: UUID,
        month: Optional[int] = None,
        year: Optional[int] = None,
    ) -> BudgetSummary:
        """Totals over every budget of one month (current month by default)."""
        month, year = self._normalize_period(month, year)
        budgets = await self.list_budgets(user_id, month=month, year=year)

        total_budget = sum((b.amount for b in budgets), ZERO)
        total_spent = sum((b.spent for b in budgets), ZERO)
        percentage = ZERO
        if total_budget > 0:
            percentage = quantize_money(total_spent / total_budget * 100)

        return BudgetSummary(
            month=month,
            year=year,
            total_budget=total_budget,
            total_spent=total_spent,
            total_remaining=max(total_budget - total_spent, ZERO),
            percentage=percentage,
            budgets_count=len(budgets),
            warning_count=sum(1 for b in budgets if b.status == BudgetStatus.WARNING),
            exceeded_count=sum(1 for b in budgets if b.status == BudgetStatus.EXCEEDED),
        )

    async def create_recurring_budgets(
        self,
        user_id: UUID,
        today: Optional[date] = None,
    ) -> list[Budget]:
        """
        Copy every recurring budget into the current month.

        Categories that already have a budget this month are left alone.
        The most recent recurring budget of a category is the template.

        Returns:
            The budgets created
        """
        month, year = self._normalize_period(None, None, today)
        await self.ensure_user_exists(user_id)
        with storage_errors("budget"):
            recurring = await self._budgets.list_budgets(user_id, recurring_only=True)

        templates: dict[UUID, Budget] = {}
        for budget in recurring:
            # list is ordered by period, so later entries win
            templates[budget.category_id] = budget

        created = []
        for category_id, template in templates.items():
            with storage_errors("budget"):
                existing = await self._budgets.get_budget_for_category(
                    user_id, category_id, month, year
                )
                if existing is not None:
                    continue
                try:
                    budget = await self._budgets.create_budget(Budget(
                        user_id=user_id,
                        category_id=category_id,
                        month=month,
                        year=year,
                        amount=template.amount,
                        alert_at=template.alert_at,
                        is_recurring=True,
                    ))
                except DuplicateRecordError:
                    # Created concurrently
                    continue
            created.append(budget)

        if created:
            self._logger.info(
                "recurring_budgets_created",
                user_id=str(user_id),
                month=month,
                year=year,
                count=len(created),
            )
        return created
