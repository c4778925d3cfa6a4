"""
Tests for movement coordination

Sagas journal every step with its undo action; failures and crashes are
rolled back from the journal alone.
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from finledger.config import get_settings
from finledger.errors import PartiallyFailedError
from finledger.ledger import Compensator
from finledger.models import (
    AccountType,
    AuditEventType,
    CardBrand,
    Compensation,
    CompensationKind,
    InvoiceStatus,
    MovementIntent,
    MovementKind,
    MovementStatus,
    MovementStep,
)
from finledger.orchestrator import create_app_components
from finledger.services.storage import FileMovementJournal, StorageError


def debit(account_id, user_id, amount):
    return Compensation(
        kind=CompensationKind.ADJUST_ACCOUNT_BALANCE,
        target_id=account_id,
        user_id=user_id,
        amount=Decimal(amount),
    )


class TestSaga:
    """Tests for running movements."""

    async def test_completed_movement(self, ledger, user_id, checking, events_of):
        """Test that a clean exit marks the intent COMPLETED."""
        async with ledger.movements.begin(
            MovementKind.TRANSACTION_POSTING, user_id, account_id=checking.id
        ) as saga:
            await saga.step(
                "debit_account",
                lambda: ledger.accounts.update_balance(checking.id, user_id, Decimal("-10.00")),
                compensation=debit(checking.id, user_id, "10.00"),
            )

        intent = await ledger.journal.get_intent(saga.movement_id)
        assert intent.status == MovementStatus.COMPLETED
        assert intent.finished_at is not None
        assert intent.reference == {"account_id": str(checking.id)}
        completed = await events_of(AuditEventType.MOVEMENT_COMPLETED)
        assert completed[-1].details["steps"] == ["debit_account"]

    async def test_compensation_built_from_result(self, ledger, user_id):
        """Test a compensation built from what the step returned."""
        async with ledger.movements.begin(MovementKind.CARD_CREATION, user_id) as saga:
            account = await saga.step(
                "create_account",
                lambda: ledger.accounts.create_account(
                    user_id=user_id, name="Wallet", account_type=AccountType.CASH
                ),
                compensation=lambda created: Compensation(
                    kind=CompensationKind.DELETE_ACCOUNT,
                    target_id=created.id,
                ),
            )

        intent = await ledger.journal.get_intent(saga.movement_id)
        assert intent.steps[0].compensation.target_id == account.id

    async def test_failure_undoes_in_reverse(self, ledger, user_id, checking, savings, events_of):
        """Test that completed steps are undone, most recent first."""
        with pytest.raises(RuntimeError):
            async with ledger.movements.begin(MovementKind.TRANSACTION_POSTING, user_id) as saga:
                await saga.step(
                    "debit_checking",
                    lambda: ledger.accounts.update_balance(checking.id, user_id, Decimal("-100.00")),
                    compensation=debit(checking.id, user_id, "100.00"),
                )
                await saga.step(
                    "credit_savings",
                    lambda: ledger.accounts.update_balance(savings.id, user_id, Decimal("100.00")),
                    compensation=debit(savings.id, user_id, "-100.00"),
                )
                raise RuntimeError("boom")

        assert (await ledger.accounts.get_account(checking.id, user_id)).balance == Decimal("1000.00")
        assert (await ledger.accounts.get_account(savings.id, user_id)).balance == Decimal("0.00")

        intent = await ledger.journal.get_intent(saga.movement_id)
        assert intent.status == MovementStatus.COMPENSATED
        assert intent.error == "boom"
        assert all(step.compensated for step in intent.steps)

        compensated = await events_of(AuditEventType.MOVEMENT_COMPENSATED)
        assert compensated[-1].details["undone"] == ["credit_savings", "debit_checking"]

    async def test_compensation_retried(self, ledger, storage, user_id, checking, monkeypatch):
        """Test that a compensation failing once is retried."""
        original = storage.increment_balance
        calls = []

        async def flaky_increment(account_id, delta, floor=None):
            calls.append(delta)
            if len(calls) == 1:
                raise StorageError("connection reset")
            return await original(account_id, delta, floor=floor)

        with pytest.raises(RuntimeError):
            async with ledger.movements.begin(MovementKind.TRANSACTION_POSTING, user_id) as saga:
                await saga.step(
                    "debit_account",
                    lambda: ledger.accounts.update_balance(checking.id, user_id, Decimal("-50.00")),
                    compensation=debit(checking.id, user_id, "50.00"),
                )
                monkeypatch.setattr(storage, "increment_balance", flaky_increment)
                raise RuntimeError("boom")

        assert len(calls) == 2
        assert (await ledger.accounts.get_account(checking.id, user_id)).balance == Decimal("1000.00")
        assert (await ledger.journal.get_intent(saga.movement_id)).status == MovementStatus.COMPENSATED

    async def test_exhausted_compensation(
        self, ledger, storage, user_id, checking, savings, monkeypatch, events_of
    ):
        """Test PartiallyFailedError when an undo keeps failing."""
        original = storage.increment_balance

        async def broken_for_checking(account_id, delta, floor=None):
            if account_id == checking.id:
                raise StorageError("disk full")
            return await original(account_id, delta, floor=floor)

        with pytest.raises(PartiallyFailedError) as exc_info:
            async with ledger.movements.begin(MovementKind.TRANSACTION_POSTING, user_id) as saga:
                await saga.step(
                    "debit_checking",
                    lambda: ledger.accounts.update_balance(checking.id, user_id, Decimal("-100.00")),
                    compensation=debit(checking.id, user_id, "100.00"),
                )
                await saga.step(
                    "credit_savings",
                    lambda: ledger.accounts.update_balance(savings.id, user_id, Decimal("100.00")),
                    compensation=debit(savings.id, user_id, "-100.00"),
                )
                monkeypatch.setattr(storage, "increment_balance", broken_for_checking)
                raise RuntimeError("boom")

        assert exc_info.value.movement_id == saga.movement_id
        assert isinstance(exc_info.value.__cause__, RuntimeError)

        # The remaining undo still ran
        assert (await ledger.accounts.get_account(savings.id, user_id)).balance == Decimal("0.00")
        intent = await ledger.journal.get_intent(saga.movement_id)
        assert intent.status == MovementStatus.COMPENSATION_FAILED
        assert [s.name for s in intent.pending_compensations()] == ["debit_checking"]
        assert len(await events_of(AuditEventType.COMPENSATION_FAILED)) == 1


class TestReconciliation:
    """Tests for rolling back movements left behind by a crash."""

    async def test_startup_rolls_back_unfinished(self, ledger, user_id, checking, events_of):
        """Test a movement interrupted between steps."""
        saga = ledger.movements.begin(MovementKind.GOAL_CONTRIBUTION, user_id)
        await saga.__aenter__()
        await saga.step(
            "debit_account",
            lambda: ledger.accounts.update_balance(checking.id, user_id, Decimal("-200.00")),
            compensation=debit(checking.id, user_id, "200.00"),
        )
        # Process dies here

        reconciled = await ledger.startup()

        assert [i.id for i in reconciled] == [saga.movement_id]
        assert reconciled[0].status == MovementStatus.COMPENSATED
        assert (await ledger.accounts.get_account(checking.id, user_id)).balance == Decimal("1000.00")
        events = await events_of(AuditEventType.MOVEMENT_RECONCILED)
        assert events[0].entity_id == saga.movement_id
        assert events[0].details["status"] == MovementStatus.COMPENSATED.value

        assert await ledger.startup() == []

    async def test_unrecoverable_movement_reported(
        self, ledger, storage, user_id, checking, monkeypatch, events_of
    ):
        """Test that a movement still failing to roll back is kept and reported."""
        saga = ledger.movements.begin(MovementKind.INVESTMENT_CONTRIBUTION, user_id)
        await saga.__aenter__()
        await saga.step(
            "debit_account",
            lambda: ledger.accounts.update_balance(checking.id, user_id, Decimal("-200.00")),
            compensation=debit(checking.id, user_id, "200.00"),
        )

        async def failing_increment(account_id, delta, floor=None):
            raise StorageError("disk full")

        monkeypatch.setattr(storage, "increment_balance", failing_increment)

        reconciled = await ledger.startup()

        assert reconciled[0].status == MovementStatus.COMPENSATION_FAILED
        errors = await events_of(AuditEventType.SYSTEM_ERROR)
        assert errors[0].correlation_id == saga.movement_id
        assert errors[0].details["pending"] == ["debit_account"]
        assert [i.id for i in await ledger.journal.list_unfinished()] == [saga.movement_id]

    async def test_reconcile_across_restart(self, storage, audit_storage, user_id, checking, tmp_path):
        """Test that a file journal survives a restart and is compacted."""
        path = tmp_path / "movements.jsonl"
        before = create_app_components(
            storage=storage, journal=FileMovementJournal(path), audit_storage=audit_storage
        )
        async with before.movements.begin(MovementKind.TRANSACTION_POSTING, user_id) as done:
            await done.step("noop", lambda: before.accounts.get_account(checking.id, user_id))
        crashed = before.movements.begin(MovementKind.INVOICE_PAYMENT, user_id)
        await crashed.__aenter__()
        await crashed.step(
            "debit_account",
            lambda: before.accounts.update_balance(checking.id, user_id, Decimal("-300.00")),
            compensation=debit(checking.id, user_id, "300.00"),
        )

        after = create_app_components(
            storage=storage, journal=FileMovementJournal(path), audit_storage=audit_storage
        )
        reconciled = await after.startup()

        assert [i.id for i in reconciled] == [crashed.movement_id]
        assert (await after.accounts.get_account(checking.id, user_id)).balance == Decimal("1000.00")
        assert path.read_text(encoding="utf-8") == ""

    async def test_journal_path_from_settings(self, monkeypatch, tmp_path):
        """Test that LEDGER_MOVEMENT_JOURNAL_PATH selects the file journal."""
        monkeypatch.setenv("LEDGER_MOVEMENT_JOURNAL_PATH", str(tmp_path / "j.jsonl"))
        get_settings.cache_clear()
        components = create_app_components()
        assert isinstance(components.journal, FileMovementJournal)


class TestFileMovementJournal:
    """Tests for the JSONL journal."""

    @pytest.fixture
    def journal(self, tmp_path):
        return FileMovementJournal(tmp_path / "journal.jsonl")

    async def test_latest_line_wins(self, journal):
        """Test that re-saving an intent replaces its earlier state."""
        intent = MovementIntent(kind=MovementKind.CARD_CHARGE, user_id=uuid4())
        await journal.save_intent(intent)
        intent.steps.append(MovementStep(name="record_charge"))
        intent.status = MovementStatus.COMPLETED
        await journal.save_intent(intent)

        loaded = await journal.get_intent(intent.id)
        assert loaded.status == MovementStatus.COMPLETED
        assert [s.name for s in loaded.steps] == ["record_charge"]
        assert await journal.list_unfinished() == []

    async def test_torn_line_skipped(self, journal, tmp_path):
        """Test that a half-written final line doesn't hide earlier intents."""
        intent = MovementIntent(kind=MovementKind.GOAL_WITHDRAWAL, user_id=uuid4())
        await journal.save_intent(intent)
        with (tmp_path / "journal.jsonl").open("a", encoding="utf-8") as fh:
            fh.write('{"id": "trunc')

        assert [i.id for i in await journal.list_unfinished()] == [intent.id]

    async def test_compact_keeps_unfinished(self, journal, tmp_path):
        """Test that compaction drops finished intents."""
        finished = MovementIntent(
            kind=MovementKind.CARD_CHARGE, user_id=uuid4(), status=MovementStatus.COMPENSATED
        )
        failed = MovementIntent(
            kind=MovementKind.INVOICE_PAYMENT,
            user_id=uuid4(),
            status=MovementStatus.COMPENSATION_FAILED,
        )
        running = MovementIntent(kind=MovementKind.CARD_CREATION, user_id=uuid4())
        for intent in (finished, failed, running):
            await journal.save_intent(intent)

        assert await journal.compact() == 2
        lines = (tmp_path / "journal.jsonl").read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        assert await journal.get_intent(finished.id) is None
        assert {i.id for i in await journal.list_unfinished()} == {failed.id, running.id}

    async def test_missing_file_is_empty(self, journal):
        """Test reading a journal that was never written."""
        assert await journal.list_unfinished() == []
        assert await journal.get_intent(uuid4()) is None


class TestCompensator:
    """Tests for typed undo actions."""

    @pytest.fixture
    def compensator(self, storage):
        return Compensator(storage, storage, storage, storage, storage)

    async def test_restore_invoice_payment(
        self, ledger, compensator, user_id, checking, category_id
    ):
        """Test putting an invoice back to its state before a payment."""
        card = await ledger.credit_cards.create_credit_card(
            user_id=user_id,
            account_id=checking.id,
            name="Card",
            credit_limit=Decimal("1000.00"),
            closing_day=10,
            due_day=20,
            brand=CardBrand.VISA,
        )
        charge = await ledger.credit_cards.create_charge(
            card.id, user_id, category_id, Decimal("300.00")
        )
        await ledger.credit_cards.pay_invoice(
            card.id, charge.invoice_id, checking.id, user_id, Decimal("300.00")
        )

        await compensator.apply(Compensation(
            kind=CompensationKind.RESTORE_INVOICE_PAYMENT,
            target_id=charge.invoice_id,
            payload={"paid_amount": "0.00", "status": "OPEN", "paid_at": None},
        ))

        invoice = await ledger.credit_cards.get_invoice(charge.invoice_id, user_id)
        assert invoice.status == InvoiceStatus.OPEN
        assert invoice.paid_amount == Decimal("0.00")
        assert invoice.paid_at is None
        assert invoice.total_amount == Decimal("300.00")

    async def test_delete_of_missing_record_is_applied(self, compensator):
        """Test that undoing an insert that never landed is a no-op."""
        await compensator.apply(Compensation(
            kind=CompensationKind.DELETE_TRANSACTION,
            target_id=uuid4(),
        ))

    async def test_credit_back_ignores_floor(self, ledger, compensator, user_id, savings):
        """Test that compensations bypass the balance floor."""
        await compensator.apply(debit(savings.id, user_id, "-25.00"))
        assert (await ledger.accounts.get_account(savings.id, user_id)).balance == Decimal("-25.00")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
