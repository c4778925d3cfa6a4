"""
Tests for finledger models

Test strategy:
1. Unit tests for money handling and sign conventions
2. Status transition rules of goals and invoices
3. Derived views (budget status, goal progress) and audit builders
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from finledger.ledger import DEFAULT_CATEGORIES, GOALS_CATEGORY, ContentAddressedCategoryResolver

from finledger.models import (
    ZERO,
    Account,
    AccountType,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
    Budget,
    BudgetStatus,
    BudgetStatusReport,
    CardBrand,
    Compensation,
    CompensationKind,
    CreditCard,
    Goal,
    GoalProgress,
    GoalStatus,
    Invoice,
    InvoiceStatus,
    MovementIntent,
    MovementKind,
    MovementStatus,
    MovementStep,
    StatusTransitionError,
    Transaction,
    TransactionType,
    quantize_money,
)


class TestMoney:
    """Tests for amount precision."""

    def test_quantize_rounds_half_up(self):
        """Test that half a cent rounds away from zero."""
        assert quantize_money(Decimal("10.005")) == Decimal("10.01")
        assert quantize_money(Decimal("10.004")) == Decimal("10.00")

    def test_money_fields_are_quantized(self):
        """Test that model money fields keep two decimal places."""
        account = Account(
            user_id=uuid4(),
            name="Wallet",
            type=AccountType.CASH,
            balance=Decimal("12.345"),
        )
        assert account.balance == Decimal("12.35")
        assert account.balance.as_tuple().exponent == -2


class TestAccountModel:
    """Tests for Account balance rules."""

    def test_regular_account_has_zero_floor(self):
        """Test that non-credit-card accounts can't go negative."""
        account = Account(
            user_id=uuid4(),
            name="Checking",
            type=AccountType.CHECKING,
            balance=Decimal("100.00"),
        )
        assert account.balance_floor == ZERO
        assert account.can_apply(Decimal("-100.00"))
        assert not account.can_apply(Decimal("-100.01"))

    def test_credit_card_account_is_unbounded(self):
        """Test that a CREDIT_CARD account accepts any delta."""
        account = Account(user_id=uuid4(), name="Card", type=AccountType.CREDIT_CARD)
        assert account.balance_floor is None
        assert account.can_apply(Decimal("-5000.00"))

    def test_name_is_stripped(self):
        """Test that whitespace is stripped from account names."""
        account = Account(user_id=uuid4(), name="  Savings  ", type=AccountType.SAVINGS)
        assert account.name == "Savings"


class TestTransactionModel:
    """Tests for transaction sign conventions."""

    @pytest.mark.parametrize("tx_type,expected", [
        (TransactionType.RECEIPT, Decimal("50.00")),
        (TransactionType.EXPENSE, Decimal("-50.00")),
        (TransactionType.INVESTMENT, Decimal("-50.00")),
        (TransactionType.WITHDRAW, Decimal("50.00")),
        (TransactionType.GOAL, Decimal("0.00")),
    ])
    def test_balance_delta_follows_type(self, tx_type, expected):
        """Test the signed effect of each transaction type."""
        tx = Transaction(
            user_id=uuid4(),
            account_id=uuid4(),
            type=tx_type,
            amount=Decimal("50.00"),
        )
        assert tx.balance_delta == expected

    def test_transaction_is_immutable(self):
        """Test that a recorded transaction can't be edited."""
        tx = Transaction(
            user_id=uuid4(),
            account_id=uuid4(),
            type=TransactionType.EXPENSE,
            amount=Decimal("10.00"),
        )
        with pytest.raises(PydanticValidationError):
            tx.amount = Decimal("20.00")

    def test_negative_amount_rejected(self):
        """Test that amounts are stored unsigned."""
        with pytest.raises(PydanticValidationError):
            Transaction(
                user_id=uuid4(),
                account_id=uuid4(),
                type=TransactionType.EXPENSE,
                amount=Decimal("-1.00"),
            )

    def test_only_receipts_and_expenses_require_category(self):
        """Test which types need a category."""
        assert TransactionType.RECEIPT.requires_category
        assert TransactionType.EXPENSE.requires_category
        assert not TransactionType.GOAL.requires_category


class TestGoalModel:
    """Tests for goal status transitions."""

    def _goal(self, current: str, target: str = "1000.00") -> Goal:
        return Goal(
            user_id=uuid4(),
            name="Trip",
            target_amount=Decimal(target),
            current_amount=Decimal(current),
        )

    def test_complete_when_target_reached(self):
        """Test ACTIVE -> COMPLETED stamps ended_at."""
        goal = self._goal("1000.00")
        goal.complete()
        assert goal.status == GoalStatus.COMPLETED
        assert goal.ended_at is not None

    def test_complete_below_target_rejected(self):
        """Test that a goal can't complete before reaching its target."""
        goal = self._goal("999.99")
        with pytest.raises(StatusTransitionError):
            goal.complete()
        assert goal.status == GoalStatus.ACTIVE

    def test_reactivate_clears_ended_at(self):
        """Test COMPLETED -> ACTIVE once the amount drops below target."""
        goal = self._goal("1000.00")
        goal.complete()
        goal.current_amount = Decimal("400.00")
        goal.reactivate()
        assert goal.status == GoalStatus.ACTIVE
        assert goal.ended_at is None

    def test_reactivate_while_reached_rejected(self):
        """Test that a reached goal can't go back to ACTIVE."""
        goal = self._goal("1000.00")
        goal.complete()
        with pytest.raises(StatusTransitionError):
            goal.reactivate()

    def test_target_must_be_positive(self):
        """Test that a zero target is rejected."""
        with pytest.raises(PydanticValidationError):
            self._goal("0.00", target="0")

    def test_progress_caps_remaining_at_zero(self):
        """Test progress of an over-funded goal."""
        progress = GoalProgress.of(self._goal("1200.00"))
        assert progress.remaining == ZERO
        assert progress.percentage == Decimal("120.00")

    def test_progress_percentage(self):
        """Test progress of a partly funded goal."""
        progress = GoalProgress.of(self._goal("250.00"))
        assert progress.remaining == Decimal("750.00")
        assert progress.percentage == Decimal("25.00")


class TestInvoiceModel:
    """Tests for invoice payment transitions."""

    def _invoice(self, total: str) -> Invoice:
        today = datetime.now(timezone.utc).date()
        return Invoice(
            credit_card_id=uuid4(),
            user_id=uuid4(),
            reference_month=today.month,
            reference_year=today.year,
            opening_date=today,
            closing_date=today,
            due_date=today,
            total_amount=Decimal(total),
        )

    def test_partial_payment(self):
        """Test that paying less than the total leaves it PARTIAL."""
        invoice = self._invoice("300.00")
        invoice.apply_payment(Decimal("100.00"))
        assert invoice.status == InvoiceStatus.PARTIAL
        assert invoice.paid_amount == Decimal("100.00")
        assert invoice.remaining_amount == Decimal("200.00")
        assert invoice.paid_at is None

    def test_full_payment_marks_paid(self):
        """Test that covering the total marks it PAID with a timestamp."""
        invoice = self._invoice("300.00")
        invoice.apply_payment(Decimal("100.00"))
        invoice.apply_payment(Decimal("200.00"))
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.paid_at is not None
        assert invoice.remaining_amount == ZERO

    def test_paid_is_terminal(self):
        """Test that payments and the scheduler can't move a PAID invoice."""
        invoice = self._invoice("50.00")
        invoice.apply_payment(Decimal("50.00"))
        with pytest.raises(StatusTransitionError):
            invoice.apply_payment(Decimal("1.00"))
        with pytest.raises(StatusTransitionError):
            invoice.mark_overdue()

    def test_reopen_after_new_charge(self):
        """Test PAID -> PARTIAL once the total grows past what was paid."""
        invoice = self._invoice("50.00")
        invoice.apply_payment(Decimal("50.00"))
        with pytest.raises(StatusTransitionError):
            invoice.reopen()

        invoice.total_amount = Decimal("80.00")
        invoice.reopen()
        assert invoice.status == InvoiceStatus.PARTIAL
        assert invoice.paid_at is None
        invoice.apply_payment(Decimal("30.00"))
        assert invoice.status == InvoiceStatus.PAID

    def test_reopen_requires_paid(self):
        """Test that only PAID invoices reopen."""
        invoice = self._invoice("50.00")
        with pytest.raises(StatusTransitionError):
            invoice.reopen()

    def test_closed_invoice_cannot_reopen(self):
        """Test that CLOSED can't go back to OPEN by closing again."""
        invoice = self._invoice("50.00")
        invoice.close()
        assert invoice.status == InvoiceStatus.CLOSED
        with pytest.raises(StatusTransitionError):
            invoice.close()


class TestCreditCardModel:
    """Tests for CreditCard validation."""

    def _card(self, **overrides) -> CreditCard:
        data = dict(
            user_id=uuid4(),
            account_id=uuid4(),
            name="Visa Gold",
            credit_limit=Decimal("5000.00"),
            available_limit=Decimal("5000.00"),
            closing_day=10,
            due_day=20,
            brand=CardBrand.VISA,
        )
        data.update(overrides)
        return CreditCard(**data)

    def test_last_four_digits_accepted(self):
        """Test valid last four digits."""
        assert self._card(last_four_digits="1234").last_four_digits == "1234"

    def test_last_four_digits_rejected(self):
        """Test that non-digit card endings are rejected."""
        with pytest.raises(PydanticValidationError):
            self._card(last_four_digits="12a4")

    def test_closing_day_range(self):
        """Test that closing_day must be a day of the month."""
        with pytest.raises(PydanticValidationError):
            self._card(closing_day=32)


class TestBudgetModel:
    """Tests for derived budget status."""

    def _budget(self, spent: str, alert_at: int = 80) -> Budget:
        return Budget(
            user_id=uuid4(),
            category_id=uuid4(),
            month=5,
            year=2026,
            amount=Decimal("500.00"),
            spent=Decimal(spent),
            alert_at=alert_at,
        )

    @pytest.mark.parametrize("spent,expected", [
        ("0.00", BudgetStatus.OK),
        ("399.99", BudgetStatus.OK),
        ("400.00", BudgetStatus.WARNING),
        ("499.99", BudgetStatus.WARNING),
        ("500.00", BudgetStatus.EXCEEDED),
        ("750.00", BudgetStatus.EXCEEDED),
    ])
    def test_status_thresholds(self, spent, expected):
        """Test OK / WARNING / EXCEEDED boundaries."""
        assert self._budget(spent).status == expected

    def test_status_ignores_display_rounding(self):
        """Test that a percentage rounded up to 100.00 still reports WARNING."""
        report = BudgetStatusReport.of(self._budget("499.99"))
        assert report.percentage == Decimal("100.00")
        assert report.status == BudgetStatus.WARNING

    def test_report_remaining_never_negative(self):
        """Test that an exceeded budget reports nothing remaining."""
        report = BudgetStatusReport.of(self._budget("600.00"))
        assert report.remaining == ZERO
        assert report.percentage == Decimal("120.00")

    def test_alert_at_out_of_range(self):
        """Test that alert_at must be a percentage."""
        with pytest.raises(PydanticValidationError):
            self._budget("0.00", alert_at=101)


class TestMovementModels:
    """Tests for the movement journal records."""

    def test_pending_compensations_most_recent_first(self):
        """Test that undo order is the reverse of the step order."""
        target = uuid4()
        intent = MovementIntent(kind=MovementKind.GOAL_CONTRIBUTION, user_id=uuid4())
        intent.steps = [
            MovementStep(
                name="debit_account",
                compensation=Compensation(
                    kind=CompensationKind.ADJUST_ACCOUNT_BALANCE,
                    target_id=target,
                    amount=Decimal("10.00"),
                ),
            ),
            MovementStep(
                name="record_goal_leg",
                compensation=Compensation(
                    kind=CompensationKind.DELETE_TRANSACTION,
                    target_id=uuid4(),
                ),
            ),
            MovementStep(name="settle_status"),
        ]
        names = [s.name for s in intent.pending_compensations()]
        assert names == ["record_goal_leg", "debit_account"]

    def test_compensated_steps_are_skipped(self):
        """Test that already undone steps are not pending."""
        intent = MovementIntent(kind=MovementKind.CARD_CHARGE, user_id=uuid4())
        intent.steps = [
            MovementStep(
                name="record_charge",
                compensation=Compensation(kind=CompensationKind.DELETE_CHARGE, target_id=uuid4()),
                compensated=True,
            ),
        ]
        assert intent.pending_compensations() == []

    def test_needs_reconciliation(self):
        """Test which statuses reconciliation picks up."""
        assert MovementStatus.IN_PROGRESS.needs_reconciliation
        assert MovementStatus.COMPENSATION_FAILED.needs_reconciliation
        assert not MovementStatus.COMPLETED.needs_reconciliation
        assert not MovementStatus.COMPENSATED.needs_reconciliation

    def test_intent_round_trips_through_json(self):
        """Test that a journaled intent can be read back."""
        intent = MovementIntent(
            kind=MovementKind.INVOICE_PAYMENT,
            user_id=uuid4(),
            reference={"invoice_id": str(uuid4())},
        )
        intent.steps.append(MovementStep(
            name="debit_account",
            compensation=Compensation(
                kind=CompensationKind.ADJUST_ACCOUNT_BALANCE,
                target_id=uuid4(),
                amount=Decimal("42.50"),
            ),
        ))
        restored = MovementIntent.model_validate_json(intent.model_dump_json())
        assert restored == intent


class TestAuditModels:
    """Tests for audit-related models."""

    def test_compensation_failed_is_critical(self):
        """Test the builder for failed compensations."""
        movement_id = uuid4()
        event = AuditEventBuilder.compensation_failed(
            movement_id=movement_id,
            kind="goal_contribution",
            user_id=uuid4(),
            compensation="delete_contribution(x)",
            error_message="disk full",
        )
        assert event.event_type == AuditEventType.COMPENSATION_FAILED
        assert event.severity == AuditSeverity.CRITICAL
        assert event.correlation_id == movement_id
        assert event.error_code == "PARTIALLY_FAILED"

    def test_goal_status_changed_picks_event_type(self):
        """Test completion vs reactivation events."""
        completed = AuditEventBuilder.goal_status_changed(
            goal_id=uuid4(), user_id=uuid4(), completed=True, current_amount=Decimal("10"),
        )
        reactivated = AuditEventBuilder.goal_status_changed(
            goal_id=uuid4(), user_id=uuid4(), completed=False, current_amount=Decimal("5"),
        )
        assert completed.event_type == AuditEventType.GOAL_COMPLETED
        assert reactivated.event_type == AuditEventType.GOAL_REACTIVATED

    def test_to_log_dict(self):
        """Test conversion to a structured log dictionary."""
        event = AuditEventBuilder.transfer_completed(
            from_account_id=uuid4(),
            to_account_id=uuid4(),
            user_id=uuid4(),
            amount=Decimal("25.00"),
        )
        log_dict = event.to_log_dict()
        assert log_dict["event_type"] == "transfer_completed"
        assert log_dict["details"]["amount"] == "25.00"
        assert isinstance(log_dict["timestamp"], str)


class TestDefaultCategories:
    """Tests for content-addressed default category ids."""

    def test_ids_are_stable(self):
        """Test that the same user and name always give the same id."""
        user_id = uuid4()
        first = ContentAddressedCategoryResolver()
        second = ContentAddressedCategoryResolver()
        assert first.category_id(user_id, GOALS_CATEGORY) == second.category_id(user_id, GOALS_CATEGORY)

    def test_ids_differ_per_user(self):
        """Test that users don't share default category ids."""
        resolver = ContentAddressedCategoryResolver()
        assert resolver.category_id(uuid4(), "Food") != resolver.category_id(uuid4(), "Food")

    def test_default_categories(self):
        """Test the full catalogue and membership checks."""
        resolver = ContentAddressedCategoryResolver()
        user_id = uuid4()
        categories = resolver.default_categories(user_id)

        assert len(categories) == len(DEFAULT_CATEGORIES)
        assert all(c.is_default and c.user_id == user_id for c in categories)
        goals_id = resolver.category_id(user_id, GOALS_CATEGORY)
        assert resolver.is_default(user_id, goals_id)
        assert resolver.find(user_id, goals_id).name == GOALS_CATEGORY
        assert not resolver.is_default(user_id, uuid4())
        assert not resolver.is_default(uuid4(), goals_id)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
