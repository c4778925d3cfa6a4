"""
Tests for the goal contribution engine

Every contribution moves the account and the goal by the same amount;
a failure part way through leaves both where they started.
"""

import pytest
from datetime import date, timedelta
from decimal import Decimal

from finledger.errors import (
    DatabaseError,
    InsufficientFundsError,
    PartiallyFailedError,
    ValidationError,
)
from finledger.ledger import GOALS_CATEGORY, ContentAddressedCategoryResolver
from finledger.models import (
    AccountType,
    AuditEventType,
    ContributionType,
    GoalStatus,
    MovementStatus,
    TransactionType,
)
from finledger.services.storage import StorageError


@pytest.fixture
async def goal(ledger, user_id):
    return await ledger.goals.create_goal(
        user_id=user_id,
        name="Vacation",
        target_amount=Decimal("500.00"),
    )


class TestGoalCrud:
    """Tests for goal creation and edits."""

    async def test_create_goal(self, goal):
        """Test that a new goal starts ACTIVE and empty."""
        assert goal.status == GoalStatus.ACTIVE
        assert goal.current_amount == Decimal("0.00")
        assert goal.ended_at is None

    async def test_target_date_in_past_rejected(self, ledger, user_id):
        """Test that a goal can't be due before today."""
        with pytest.raises(ValidationError):
            await ledger.goals.create_goal(
                user_id=user_id,
                name="Late",
                target_amount=Decimal("100.00"),
                target_date=date(2026, 1, 1),
                today=date(2026, 2, 1),
            )

    async def test_non_positive_target_rejected(self, ledger, user_id):
        """Test that the target must be positive."""
        with pytest.raises(ValidationError):
            await ledger.goals.create_goal(user_id=user_id, name="Zero", target_amount=Decimal("0"))

    async def test_name_too_long(self, ledger, user_id):
        """Test that an oversized goal name is a ValidationError."""
        with pytest.raises(ValidationError) as exc_info:
            await ledger.goals.create_goal(user_id=user_id, name="n" * 101, target_amount=Decimal("10.00"))
        assert exc_info.value.field == "name"
        assert await ledger.goals.list_goals(user_id) == []

    async def test_lowering_target_completes_goal(self, ledger, user_id, checking, goal):
        """Test that editing the target re-evaluates the status."""
        await ledger.goals.make_contribution(goal.id, checking.id, user_id, Decimal("300.00"))

        updated = await ledger.goals.update_goal(goal.id, user_id, target_amount=Decimal("250.00"))
        assert updated.status == GoalStatus.COMPLETED

        updated = await ledger.goals.update_goal(goal.id, user_id, target_amount=Decimal("1000.00"))
        assert updated.status == GoalStatus.ACTIVE
        assert updated.ended_at is None

    async def test_delete_requires_empty_goal(self, ledger, user_id, checking, goal):
        """Test that saved money must be withdrawn before deleting."""
        await ledger.goals.make_contribution(goal.id, checking.id, user_id, Decimal("100.00"))
        with pytest.raises(ValidationError):
            await ledger.goals.delete_goal(goal.id, user_id)

        await ledger.goals.withdraw_from_goal(goal.id, checking.id, user_id, Decimal("100.00"))
        await ledger.goals.delete_goal(goal.id, user_id)
        assert await ledger.goals.list_goals(user_id) == []

    async def test_progress(self, ledger, user_id, checking, goal):
        """Test the derived progress view."""
        await ledger.goals.make_contribution(goal.id, checking.id, user_id, Decimal("125.00"))
        progress = await ledger.goals.get_goal_progress(goal.id, user_id)
        assert progress.percentage == Decimal("25.00")
        assert progress.remaining == Decimal("375.00")


class TestContributions:
    """Tests for moving money into a goal."""

    async def test_contribution_moves_money(self, ledger, user_id, checking, goal):
        """Test that a contribution debits the account and credits the goal."""
        contribution = await ledger.goals.make_contribution(
            goal.id, checking.id, user_id, Decimal("200.00")
        )

        account = await ledger.accounts.get_account(checking.id, user_id)
        updated = await ledger.goals.get_goal(goal.id, user_id)
        assert account.balance == Decimal("800.00")
        assert updated.current_amount == Decimal("200.00")
        assert contribution.type == ContributionType.DEPOSIT
        assert contribution.description == "Contribution to goal: Vacation"

    async def test_contribution_records_goal_leg(self, ledger, user_id, checking, goal):
        """Test that the account side is recorded as a GOAL transaction."""
        contribution = await ledger.goals.make_contribution(
            goal.id, checking.id, user_id, Decimal("200.00")
        )
        legs = await ledger.transactions.list_transactions(
            user_id, transaction_type=TransactionType.GOAL
        )
        assert len(legs) == 1
        assert legs[0].id == contribution.transaction_id
        assert legs[0].amount == Decimal("200.00")
        assert legs[0].category_id == ContentAddressedCategoryResolver().category_id(
            user_id, GOALS_CATEGORY
        )

    async def test_reaching_target_completes_goal(self, ledger, user_id, checking, goal, events_of):
        """Test that crossing the target flips the goal to COMPLETED."""
        await ledger.goals.make_contribution(goal.id, checking.id, user_id, Decimal("450.00"))
        await ledger.goals.make_contribution(goal.id, checking.id, user_id, Decimal("100.00"))

        updated = await ledger.goals.get_goal(goal.id, user_id)
        assert updated.current_amount == Decimal("550.00")
        assert updated.status == GoalStatus.COMPLETED
        assert updated.ended_at is not None
        assert len(await events_of(AuditEventType.GOAL_COMPLETED)) == 1

    async def test_completed_goal_rejects_contributions(self, ledger, user_id, checking, goal):
        """Test that only ACTIVE goals take money."""
        await ledger.goals.make_contribution(goal.id, checking.id, user_id, Decimal("500.00"))
        with pytest.raises(ValidationError):
            await ledger.goals.make_contribution(goal.id, checking.id, user_id, Decimal("1.00"))

    async def test_insufficient_funds(self, ledger, user_id, checking, goal):
        """Test that a contribution can't overdraw the account."""
        with pytest.raises(InsufficientFundsError):
            await ledger.goals.make_contribution(goal.id, checking.id, user_id, Decimal("1000.01"))
        assert (await ledger.goals.get_goal(goal.id, user_id)).current_amount == Decimal("0.00")

    async def test_description_too_long(self, ledger, user_id, checking, goal):
        """Test that an oversized description is a ValidationError and moves nothing."""
        with pytest.raises(ValidationError) as exc_info:
            await ledger.goals.make_contribution(
                goal.id, checking.id, user_id, Decimal("10.00"), description="d" * 300
            )
        assert exc_info.value.code == "VALIDATION_ERROR"
        assert exc_info.value.field == "description"
        assert (await ledger.accounts.get_account(checking.id, user_id)).balance == Decimal("1000.00")
        assert (await ledger.goals.get_goal(goal.id, user_id)).current_amount == Decimal("0.00")

    async def test_credit_card_account_rejected(self, ledger, user_id, goal):
        """Test that goals are not funded from credit card accounts."""
        card_account = await ledger.accounts.create_account(
            user_id=user_id,
            name="Card",
            account_type=AccountType.CREDIT_CARD,
        )
        with pytest.raises(ValidationError):
            await ledger.goals.make_contribution(goal.id, card_account.id, user_id, Decimal("10.00"))

    async def test_failed_goal_increment_rolls_back(
        self, ledger, storage, user_id, checking, goal, monkeypatch, events_of
    ):
        """Test that every completed step is undone when the goal can't move."""
        async def failing_increment(goal_id, delta):
            raise StorageError("connection lost")

        monkeypatch.setattr(storage, "increment_current_amount", failing_increment)

        with pytest.raises(DatabaseError):
            await ledger.goals.make_contribution(goal.id, checking.id, user_id, Decimal("200.00"))

        account = await ledger.accounts.get_account(checking.id, user_id)
        assert account.balance == Decimal("1000.00")
        assert await ledger.goals.get_contributions(goal.id, user_id) == []
        assert await ledger.transactions.list_transactions(user_id) == []

        compensated = await events_of(AuditEventType.MOVEMENT_COMPENSATED)
        assert compensated[0].details["undone"] == [
            "record_contribution",
            "record_goal_leg",
            "debit_account",
        ]

    async def test_failed_compensation_surfaces_partial_failure(
        self, ledger, storage, user_id, checking, goal, monkeypatch, events_of
    ):
        """Test that an undo that keeps failing is reported and reconciled later."""
        async def failing_increment(goal_id, delta):
            raise StorageError("connection lost")

        async def failing_delete(contribution_id):
            raise StorageError("connection lost")

        original_delete = storage.delete_contribution
        monkeypatch.setattr(storage, "increment_current_amount", failing_increment)
        monkeypatch.setattr(storage, "delete_contribution", failing_delete)

        with pytest.raises(PartiallyFailedError) as exc_info:
            await ledger.goals.make_contribution(goal.id, checking.id, user_id, Decimal("200.00"))

        movement_id = exc_info.value.movement_id
        intent = await ledger.journal.get_intent(movement_id)
        assert intent.status == MovementStatus.COMPENSATION_FAILED
        # The other steps were still undone
        account = await ledger.accounts.get_account(checking.id, user_id)
        assert account.balance == Decimal("1000.00")
        assert len(await events_of(AuditEventType.COMPENSATION_FAILED)) == 1

        monkeypatch.setattr(storage, "delete_contribution", original_delete)
        reconciled = await ledger.movements.reconcile_pending_movements()

        assert [i.id for i in reconciled] == [movement_id]
        assert reconciled[0].status == MovementStatus.COMPENSATED
        assert await ledger.goals.get_contributions(goal.id, user_id) == []


class TestWithdrawals:
    """Tests for moving money out of a goal."""

    async def test_withdraw_credits_account(self, ledger, user_id, checking, savings, goal):
        """Test that a withdrawal can land in a different account."""
        await ledger.goals.make_contribution(goal.id, checking.id, user_id, Decimal("300.00"))
        withdrawal = await ledger.goals.withdraw_from_goal(
            goal.id, savings.id, user_id, Decimal("120.00")
        )

        assert withdrawal.type == ContributionType.WITHDRAW
        assert withdrawal.description == "Withdrawal from goal: Vacation"
        assert (await ledger.goals.get_goal(goal.id, user_id)).current_amount == Decimal("180.00")
        assert (await ledger.accounts.get_account(savings.id, user_id)).balance == Decimal("120.00")
        assert (await ledger.accounts.get_account(checking.id, user_id)).balance == Decimal("700.00")

    async def test_withdraw_more_than_saved(self, ledger, user_id, checking, goal):
        """Test that a goal can't go below zero."""
        await ledger.goals.make_contribution(goal.id, checking.id, user_id, Decimal("100.00"))
        with pytest.raises(ValidationError):
            await ledger.goals.withdraw_from_goal(goal.id, checking.id, user_id, Decimal("100.01"))

    async def test_withdraw_reactivates_completed_goal(self, ledger, user_id, checking, goal, events_of):
        """Test that dropping below target flips COMPLETED back to ACTIVE."""
        await ledger.goals.make_contribution(goal.id, checking.id, user_id, Decimal("500.00"))
        await ledger.goals.withdraw_from_goal(goal.id, checking.id, user_id, Decimal("50.00"))

        updated = await ledger.goals.get_goal(goal.id, user_id)
        assert updated.status == GoalStatus.ACTIVE
        assert updated.ended_at is None
        assert len(await events_of(AuditEventType.GOAL_REACTIVATED)) == 1

    async def test_withdraw_from_completed_goal_allowed(self, ledger, user_id, checking, goal):
        """Test that completed goals can still be withdrawn from."""
        await ledger.goals.make_contribution(goal.id, checking.id, user_id, Decimal("500.00"))
        await ledger.goals.withdraw_from_goal(goal.id, checking.id, user_id, Decimal("500.00"))
        assert (await ledger.accounts.get_account(checking.id, user_id)).balance == Decimal("1000.00")


class TestContributionReversal:
    """Tests for deleting deposits."""

    async def test_delete_contribution_returns_money(self, ledger, user_id, checking, goal):
        """Test that a deleted deposit goes back to its account with its leg."""
        contribution = await ledger.goals.make_contribution(
            goal.id, checking.id, user_id, Decimal("200.00")
        )
        await ledger.goals.delete_contribution(contribution.id, user_id)

        assert (await ledger.accounts.get_account(checking.id, user_id)).balance == Decimal("1000.00")
        assert (await ledger.goals.get_goal(goal.id, user_id)).current_amount == Decimal("0.00")
        assert await ledger.transactions.list_transactions(user_id) == []

    async def test_deleting_goal_leg_reverses_contribution(self, ledger, user_id, checking, goal):
        """Test that removing the GOAL transaction goes through the goal engine."""
        contribution = await ledger.goals.make_contribution(
            goal.id, checking.id, user_id, Decimal("500.00")
        )
        assert (await ledger.goals.get_goal(goal.id, user_id)).status == GoalStatus.COMPLETED

        await ledger.transactions.delete_transaction(contribution.transaction_id, user_id)

        updated = await ledger.goals.get_goal(goal.id, user_id)
        assert updated.current_amount == Decimal("0.00")
        assert updated.status == GoalStatus.ACTIVE
        assert await ledger.goals.get_contributions(goal.id, user_id) == []
        assert (await ledger.accounts.get_account(checking.id, user_id)).balance == Decimal("1000.00")

    async def test_withdrawals_cannot_be_deleted(self, ledger, user_id, checking, goal):
        """Test that only deposits are reversible."""
        await ledger.goals.make_contribution(goal.id, checking.id, user_id, Decimal("200.00"))
        withdrawal = await ledger.goals.withdraw_from_goal(
            goal.id, checking.id, user_id, Decimal("50.00")
        )
        with pytest.raises(ValidationError):
            await ledger.goals.delete_contribution(withdrawal.id, user_id)

    async def test_delete_deposit_already_withdrawn(self, ledger, user_id, checking, goal):
        """Test that a deposit the goal no longer holds can't be reversed."""
        contribution = await ledger.goals.make_contribution(
            goal.id, checking.id, user_id, Decimal("200.00")
        )
        await ledger.goals.withdraw_from_goal(goal.id, checking.id, user_id, Decimal("150.00"))
        with pytest.raises(ValidationError):
            await ledger.goals.delete_contribution(contribution.id, user_id)

    async def test_failed_leg_delete_restores_everything(
        self, ledger, storage, user_id, checking, goal, monkeypatch
    ):
        """Test that a reversal failing on its last step is fully undone."""
        contribution = await ledger.goals.make_contribution(
            goal.id, checking.id, user_id, Decimal("200.00")
        )

        async def failing_delete(transaction_id):
            raise StorageError("connection lost")

        monkeypatch.setattr(storage, "delete_transaction", failing_delete)

        with pytest.raises(DatabaseError):
            await ledger.goals.delete_contribution(contribution.id, user_id)

        assert (await ledger.accounts.get_account(checking.id, user_id)).balance == Decimal("800.00")
        assert (await ledger.goals.get_goal(goal.id, user_id)).current_amount == Decimal("200.00")
        assert await ledger.goals.get_contributions(goal.id, user_id) == [contribution]


class TestGoalDates:
    """Tests for goal target dates."""

    async def test_future_target_date_accepted(self, ledger, user_id):
        """Test that a target date from today on is accepted."""
        today = date(2026, 3, 1)
        goal = await ledger.goals.create_goal(
            user_id=user_id,
            name="House",
            target_amount=Decimal("50000.00"),
            target_date=today + timedelta(days=365),
            today=today,
        )
        assert goal.target_date == date(2027, 3, 1)
        assert goal.ended_at is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
