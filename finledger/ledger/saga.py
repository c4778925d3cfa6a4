"""
Movement Coordination (sagas)

A movement touches several aggregates (account, goal, invoice, ...) with
no transaction spanning them. Each one runs as a saga:

1. The MovementIntent is journaled BEFORE the first step
2. Every step that succeeds is journaled with the typed action that undoes it
3. If a step fails, completed steps are undone in reverse order
4. Each undo is retried; one that still fails leaves the intent
   COMPENSATION_FAILED and surfaces PartiallyFailedError
5. On startup, intents left IN_PROGRESS or COMPENSATION_FAILED are rolled back

Usage:
    async with movements.begin(MovementKind.GOAL_CONTRIBUTION, user_id) as saga:
        await saga.step(
            "debit_account",
            lambda: accounts.update_balance(account_id, user_id, -amount),
            compensation=Compensation(...),
        )
"""

from decimal import Decimal
from typing import Awaitable, Callable, Optional, TypeVar, Union
from uuid import UUID

import structlog
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from finledger.audit import AuditLogger
from finledger.config import LedgerSettings, get_settings
from finledger.errors import DatabaseError, LedgerError, PartiallyFailedError
from finledger.models.billing import Invoice, InvoiceStatus
from finledger.models.ledger import Transaction, utcnow
from finledger.models.movement import (
    Compensation,
    CompensationKind,
    MovementIntent,
    MovementKind,
    MovementStatus,
    MovementStep,
)
from finledger.models.savings import Contribution
from finledger.services.storage import (
    AccountStorageInterface,
    CreditCardStorageInterface,
    DuplicateRecordError,
    GoalStorageInterface,
    InvestmentStorageInterface,
    MovementJournalInterface,
    RecordNotFoundError,
    StorageError,
    TransactionStorageInterface,
)


logger = structlog.get_logger(__name__)

T = TypeVar("T")


class Compensator:
    """
    Applies typed compensating actions directly against storage.

    Compensations bypass business rules (a credit-back may not be refused
    for lack of funds). Deletes of missing records and re-inserts of
    existing ones count as already applied.
    """

    def __init__(
        self,
        accounts: AccountStorageInterface,
        transactions: TransactionStorageInterface,
        goals: GoalStorageInterface,
        investments: InvestmentStorageInterface,
        cards: CreditCardStorageInterface,
    ):
        self._accounts = accounts
        self._transactions = transactions
        self._goals = goals
        self._investments = investments
        self._cards = cards
        self._handlers: dict[CompensationKind, Callable[[Compensation], Awaitable[None]]] = {
            CompensationKind.ADJUST_ACCOUNT_BALANCE: self._adjust_account_balance,
            CompensationKind.DELETE_ACCOUNT: self._delete_account,
            CompensationKind.DELETE_TRANSACTION: self._delete_transaction,
            CompensationKind.RESTORE_TRANSACTION: self._restore_transaction,
            CompensationKind.DELETE_CONTRIBUTION: self._delete_contribution,
            CompensationKind.RESTORE_CONTRIBUTION: self._restore_contribution,
            CompensationKind.ADJUST_GOAL_AMOUNT: self._adjust_goal_amount,
            CompensationKind.DELETE_INVESTMENT: self._delete_investment,
            CompensationKind.ADJUST_INVESTMENT_BALANCE: self._adjust_investment_balance,
            CompensationKind.DELETE_CREDIT_CARD: self._delete_credit_card,
            CompensationKind.DELETE_CHARGE: self._delete_charge,
            CompensationKind.ADJUST_INVOICE_TOTAL: self._adjust_invoice_total,
            CompensationKind.RESTORE_INVOICE_PAYMENT: self._restore_invoice_payment,
            CompensationKind.ADJUST_AVAILABLE_LIMIT: self._adjust_available_limit,
        }

    async def apply(self, compensation: Compensation) -> None:
        await self._handlers[compensation.kind](compensation)

    async def _adjust_account_balance(self, c: Compensation) -> None:
        await self._accounts.increment_balance(c.target_id, c.amount, floor=None)

    async def _delete_account(self, c: Compensation) -> None:
        await self._accounts.delete_account(c.target_id)

    async def _delete_transaction(self, c: Compensation) -> None:
        await self._transactions.delete_transaction(c.target_id)

    async def _restore_transaction(self, c: Compensation) -> None:
        try:
            await self._transactions.create_transaction(
                Transaction.model_validate(c.payload["transaction"])
            )
        except DuplicateRecordError:
            pass

    async def _delete_contribution(self, c: Compensation) -> None:
        await self._goals.delete_contribution(c.target_id)

    async def _restore_contribution(self, c: Compensation) -> None:
        try:
            await self._goals.create_contribution(
                Contribution.model_validate(c.payload["contribution"])
            )
        except DuplicateRecordError:
            pass

    async def _adjust_goal_amount(self, c: Compensation) -> None:
        await self._goals.increment_current_amount(c.target_id, c.amount)

    async def _delete_investment(self, c: Compensation) -> None:
        await self._investments.delete_investment(c.target_id)

    async def _adjust_investment_balance(self, c: Compensation) -> None:
        await self._investments.increment_current_balance(c.target_id, c.amount)

    async def _delete_credit_card(self, c: Compensation) -> None:
        await self._cards.delete_credit_card(c.target_id)

    async def _delete_charge(self, c: Compensation) -> None:
        await self._cards.delete_charge(c.target_id)

    async def _adjust_invoice_total(self, c: Compensation) -> None:
        await self._cards.increment_invoice_total(c.target_id, c.amount)

    async def _restore_invoice_payment(self, c: Compensation) -> None:
        invoice = await self._cards.get_invoice(c.target_id)
        if invoice is None:
            raise RecordNotFoundError(f"Invoice not found: {c.target_id}")
        restored = Invoice.model_validate({
            **invoice.model_dump(),
            "paid_amount": Decimal(c.payload["paid_amount"]),
            "status": InvoiceStatus(c.payload["status"]),
            "paid_at": c.payload.get("paid_at"),
        })
        await self._cards.update_invoice(restored)

    async def _adjust_available_limit(self, c: Compensation) -> None:
        await self._cards.increment_available_limit(c.target_id, c.amount)


class MovementCoordinator:
    """
    Starts sagas and rolls back movements left unfinished by a crash.
    """

    def __init__(
        self,
        journal: MovementJournalInterface,
        compensator: Compensator,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self._journal = journal
        self._compensator = compensator
        self._audit_logger = audit_logger or AuditLogger()
        self._settings = settings or get_settings().ledger

    @property
    def journal(self) -> MovementJournalInterface:
        return self._journal

    @property
    def audit_logger(self) -> AuditLogger:
        return self._audit_logger

    def begin(
        self,
        kind: MovementKind,
        user_id: UUID,
        **reference: UUID,
    ) -> "Saga":
        """Create a saga for one movement; use it as an async context manager."""
        intent = MovementIntent(
            kind=kind,
            user_id=user_id,
            reference={name: str(value) for name, value in reference.items()},
        )
        return Saga(intent, self)

    async def save(self, intent: MovementIntent) -> None:
        try:
            await self._journal.save_intent(intent)
        except StorageError as e:
            raise DatabaseError(f"movement journal unavailable: {e}") from e

    async def _apply_with_retry(self, compensation: Compensation) -> None:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._settings.compensation_retry_attempts),
            wait=wait_exponential(
                multiplier=self._settings.compensation_retry_wait_seconds,
                max=self._settings.compensation_retry_max_wait_seconds,
            ),
            reraise=True,
        ):
            with attempt:
                await self._compensator.apply(compensation)

    async def compensate(self, intent: MovementIntent) -> list[str]:
        """
        Undo every completed step of intent, most recent first.

        Each successful undo is journaled. A failing undo is logged and
        skipped so the remaining steps are still undone.

        Returns:
            Descriptions of the compensations that failed
        """
        failed: list[str] = []
        for step in intent.pending_compensations():
            compensation = step.compensation
            try:
                await self._apply_with_retry(compensation)
            except Exception as e:
                failed.append(compensation.describe())
                logger.critical(
                    "compensation_failed",
                    movement_id=str(intent.id),
                    kind=intent.kind.value,
                    step=step.name,
                    compensation=compensation.describe(),
                    error=str(e),
                )
                await self._audit_logger.log_compensation_failed(
                    movement_id=intent.id,
                    kind=intent.kind.value,
                    user_id=intent.user_id,
                    compensation=compensation.describe(),
                    error_message=str(e),
                )
                continue
            step.compensated = True
            try:
                await self._journal.save_intent(intent)
            except StorageError as e:
                logger.error(
                    "journal_write_failed",
                    movement_id=str(intent.id),
                    step=step.name,
                    error=str(e),
                )

        intent.status = (
            MovementStatus.COMPENSATION_FAILED if failed else MovementStatus.COMPENSATED
        )
        intent.finished_at = utcnow()
        try:
            await self._journal.save_intent(intent)
        except StorageError as e:
            logger.error("journal_write_failed", movement_id=str(intent.id), error=str(e))
        return failed

    async def reconcile_pending_movements(self) -> list[MovementIntent]:
        """
        Roll back every movement the journal shows as unfinished.

        Call once on startup, before serving requests.

        Returns:
            The reconciled intents with their final status
        """
        try:
            pending = await self._journal.list_unfinished()
        except StorageError as e:
            raise DatabaseError(f"movement journal unavailable: {e}") from e

        for intent in pending:
            previous = intent.status
            failed = await self.compensate(intent)
            logger.warning(
                "movement_reconciled",
                movement_id=str(intent.id),
                kind=intent.kind.value,
                previous_status=previous.value,
                status=intent.status.value,
                failed=failed,
            )
            await self._audit_logger.log_movement_reconciled(
                movement_id=intent.id,
                kind=intent.kind.value,
                user_id=intent.user_id,
                status=intent.status.value,
            )
        return pending


class Saga:
    """
    One running movement.

    Exiting the block normally marks the movement COMPLETED. Exiting with
    an exception undoes the completed steps and re-raises; if an undo
    fails, PartiallyFailedError is raised instead, chained to the
    original exception.
    """

    def __init__(self, intent: MovementIntent, coordinator: MovementCoordinator):
        self.intent = intent
        self._coordinator = coordinator

    @property
    def movement_id(self) -> UUID:
        return self.intent.id

    async def __aenter__(self) -> "Saga":
        await self._coordinator.save(self.intent)
        await self._coordinator.audit_logger.log_movement_started(
            movement_id=self.intent.id,
            kind=self.intent.kind.value,
            user_id=self.intent.user_id,
            reference=self.intent.reference,
        )
        return self

    async def step(
        self,
        name: str,
        action: Callable[[], Awaitable[T]],
        compensation: Union[Compensation, Callable[[T], Compensation], None] = None,
    ) -> T:
        """
        Run one step and journal it with its compensation.

        Args:
            name: Step name recorded in the journal
            action: Zero-argument coroutine function performing the step
            compensation: How to undo the step, or a function building it
                from the step's result (None for the final step or for
                steps with nothing to undo)

        Returns:
            Whatever action returned
        """
        result = await action()
        if callable(compensation):
            compensation = compensation(result)
        self.intent.steps.append(MovementStep(name=name, compensation=compensation))
        await self._coordinator.save(self.intent)
        return result

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc is None:
            self.intent.status = MovementStatus.COMPLETED
            self.intent.finished_at = utcnow()
            try:
                await self._coordinator.journal.save_intent(self.intent)
            except StorageError as e:
                # Every step succeeded; a stale IN_PROGRESS record would make
                # reconciliation undo a finished movement
                logger.critical(
                    "journal_completion_write_failed",
                    movement_id=str(self.intent.id),
                    error=str(e),
                )
            await self._coordinator.audit_logger.log_movement_completed(
                movement_id=self.intent.id,
                kind=self.intent.kind.value,
                user_id=self.intent.user_id,
                steps=[s.name for s in self.intent.steps],
            )
            return False

        self.intent.error = str(exc)
        undone = [s.name for s in self.intent.pending_compensations()]
        logger.warning(
            "movement_failed",
            movement_id=str(self.intent.id),
            kind=self.intent.kind.value,
            completed_steps=[s.name for s in self.intent.steps],
            error=str(exc),
            error_code=getattr(exc, "code", type(exc).__name__),
        )
        failed = await self._coordinator.compensate(self.intent)
        if failed:
            raise PartiallyFailedError(
                f"{self.intent.kind.value} failed and could not be fully rolled back",
                movement_id=self.intent.id,
            ) from exc

        await self._coordinator.audit_logger.log_movement_compensated(
            movement_id=self.intent.id,
            kind=self.intent.kind.value,
            user_id=self.intent.user_id,
            undone=undone,
            error_message=exc.message if isinstance(exc, LedgerError) else str(exc),
        )
        return False
