"""
Main Orchestrator for finledger

Wires storage, the movement journal, the audit logger and every ledger
engine together, and runs the startup reconciliation.

DESIGN DECISION: Movements left unfinished by a crash are rolled back
BEFORE any request is served. A half-applied contribution must never be
visible to a new movement on the same aggregates.
"""

from typing import Optional

import structlog

from finledger.audit import AuditLogger, configure_logging
from finledger.config import Settings, get_settings
from finledger.ledger import (
    AccountLedger,
    BudgetTracker,
    Compensator,
    ContentAddressedCategoryResolver,
    CreditCardEngine,
    GoalEngine,
    InvestmentEngine,
    MovementCoordinator,
    RecurringScheduler,
    TransactionService,
)
from finledger.models.movement import MovementIntent, MovementStatus
from finledger.services.storage import (
    AuditStorageInterface,
    FileMovementJournal,
    InMemoryAuditStorage,
    InMemoryLedgerStorage,
    InMemoryMovementJournal,
    MovementJournalInterface,
)


logger = structlog.get_logger(__name__)


class LedgerComponents:
    """Every engine of one ledger instance, sharing storage and journal."""

    def __init__(
        self,
        storage: InMemoryLedgerStorage,
        journal: MovementJournalInterface,
        audit_logger: AuditLogger,
        movements: MovementCoordinator,
        accounts: AccountLedger,
        budgets: BudgetTracker,
        transactions: TransactionService,
        goals: GoalEngine,
        investments: InvestmentEngine,
        credit_cards: CreditCardEngine,
        recurring: RecurringScheduler,
    ):
        self.storage = storage
        self.journal = journal
        self.audit_logger = audit_logger
        self.movements = movements
        self.accounts = accounts
        self.budgets = budgets
        self.transactions = transactions
        self.goals = goals
        self.investments = investments
        self.credit_cards = credit_cards
        self.recurring = recurring

    async def startup(self) -> list[MovementIntent]:
        """
        Roll back movements the journal shows as unfinished.

        Movements that still can't be rolled back are reported as
        SYSTEM_ERROR audit events and stay in the journal for the next run.

        A file journal is compacted afterwards so it only keeps what
        still needs attention.

        Returns:
            The reconciled intents
        """
        reconciled = await self.movements.reconcile_pending_movements()
        for intent in reconciled:
            if intent.status == MovementStatus.COMPENSATION_FAILED:
                await self.audit_logger.log_error(
                    error_type="reconciliation_incomplete",
                    error_message=f"{intent.kind.value} still has compensations pending",
                    details={"pending": [s.name for s in intent.pending_compensations()]},
                    correlation_id=intent.id,
                )
        if isinstance(self.journal, FileMovementJournal):
            await self.journal.compact()
        logger.info("ledger_started", reconciled=len(reconciled))
        return reconciled


def create_app_components(
    storage: Optional[InMemoryLedgerStorage] = None,
    journal: Optional[MovementJournalInterface] = None,
    audit_storage: Optional[AuditStorageInterface] = None,
    settings: Optional[Settings] = None,
) -> LedgerComponents:
    """
    Factory function to create all application components.

    Args:
        storage: Aggregate storage (in-memory when omitted)
        journal: Movement journal. Defaults to a JSONL file when
                 LEDGER_MOVEMENT_JOURNAL_PATH is set, in-memory otherwise.
        audit_storage: Where audit events are persisted
        settings: Settings to use instead of the cached ones

    Returns:
        The wired components; call `await components.startup()` before use
    """
    settings = settings or get_settings()
    ledger_settings = settings.ledger
    configure_logging(settings.app.log_level)

    storage = storage or InMemoryLedgerStorage()
    if journal is None:
        if ledger_settings.movement_journal_path is not None:
            journal = FileMovementJournal(ledger_settings.movement_journal_path)
        else:
            journal = InMemoryMovementJournal()
    audit_logger = AuditLogger(audit_storage or InMemoryAuditStorage())

    compensator = Compensator(
        accounts=storage,
        transactions=storage,
        goals=storage,
        investments=storage,
        cards=storage,
    )
    movements = MovementCoordinator(journal, compensator, audit_logger, ledger_settings)
    categories = ContentAddressedCategoryResolver()

    accounts = AccountLedger(storage, storage, audit_logger)
    budgets = BudgetTracker(storage, storage, audit_logger, ledger_settings)
    transactions = TransactionService(
        transactions=storage,
        accounts=accounts,
        budgets=budgets,
        movements=movements,
        users=storage,
        audit_logger=audit_logger,
    )
    goals = GoalEngine(
        goals=storage,
        transactions=storage,
        accounts=accounts,
        movements=movements,
        categories=categories,
        users=storage,
        audit_logger=audit_logger,
    )
    transactions.attach_goal_engine(goals)
    investments = InvestmentEngine(
        investments=storage,
        transactions=storage,
        accounts=accounts,
        movements=movements,
        categories=categories,
        users=storage,
        audit_logger=audit_logger,
    )
    credit_cards = CreditCardEngine(
        cards=storage,
        accounts=accounts,
        movements=movements,
        users=storage,
        audit_logger=audit_logger,
    )
    recurring = RecurringScheduler(
        recurring=storage,
        transactions=transactions,
        accounts=accounts,
        users=storage,
        audit_logger=audit_logger,
    )

    return LedgerComponents(
        storage=storage,
        journal=journal,
        audit_logger=audit_logger,
        movements=movements,
        accounts=accounts,
        budgets=budgets,
        transactions=transactions,
        goals=goals,
        investments=investments,
        credit_cards=credit_cards,
        recurring=recurring,
    )
