"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage.
The in-memory backend implements every interface; the movement journal can
also be kept in a JSONL file.
"""

from finledger.services.storage.interface import (
    AccountStorageInterface,
    AuditStorageInterface,
    BudgetStorageInterface,
    ConstraintViolationError,
    CreditCardStorageInterface,
    DuplicateRecordError,
    GoalStorageInterface,
    InvestmentStorageInterface,
    MovementJournalInterface,
    RecordNotFoundError,
    RecurringStorageInterface,
    StorageError,
    TransactionStorageInterface,
    UserDirectoryInterface,
)
from finledger.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryLedgerStorage,
    InMemoryMovementJournal,
)
from finledger.services.storage.journal import FileMovementJournal

__all__ = [
    # Interfaces
    "AccountStorageInterface",
    "AuditStorageInterface",
    "BudgetStorageInterface",
    "CreditCardStorageInterface",
    "GoalStorageInterface",
    "InvestmentStorageInterface",
    "MovementJournalInterface",
    "RecurringStorageInterface",
    "TransactionStorageInterface",
    "UserDirectoryInterface",
    # Exceptions
    "ConstraintViolationError",
    "DuplicateRecordError",
    "RecordNotFoundError",
    "StorageError",
    # Implementations
    "FileMovementJournal",
    "InMemoryAuditStorage",
    "InMemoryLedgerStorage",
    "InMemoryMovementJournal",
]
