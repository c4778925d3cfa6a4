"""
Shared fixtures.

Every test gets a fresh, fully wired ledger over in-memory storage, with
compensation retries that don't sleep.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from finledger.config import get_settings
from finledger.models import AccountType, AuditEventType
from finledger.orchestrator import create_app_components
from finledger.services.storage import InMemoryAuditStorage


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    """No backoff between compensation attempts, no journal file."""
    monkeypatch.setenv("LEDGER_COMPENSATION_RETRY_ATTEMPTS", "3")
    monkeypatch.setenv("LEDGER_COMPENSATION_RETRY_WAIT_SECONDS", "0")
    monkeypatch.setenv("LEDGER_COMPENSATION_RETRY_MAX_WAIT_SECONDS", "0")
    monkeypatch.delenv("LEDGER_MOVEMENT_JOURNAL_PATH", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def ledger(audit_storage):
    return create_app_components(audit_storage=audit_storage)


@pytest.fixture
def storage(ledger):
    return ledger.storage


@pytest.fixture
def user_id(storage):
    return storage.add_user()


@pytest.fixture
def other_user_id(storage):
    return storage.add_user()


@pytest.fixture
def category_id():
    return uuid4()


@pytest.fixture
async def checking(ledger, user_id):
    """Checking account holding 1000.00."""
    return await ledger.accounts.create_account(
        user_id=user_id,
        name="Checking",
        account_type=AccountType.CHECKING,
        balance=Decimal("1000.00"),
    )


@pytest.fixture
async def savings(ledger, user_id):
    """Empty savings account."""
    return await ledger.accounts.create_account(
        user_id=user_id,
        name="Savings",
        account_type=AccountType.SAVINGS,
    )


@pytest.fixture
def events_of(audit_storage):
    """Recorded audit events of one type, oldest first."""
    async def _events_of(event_type: AuditEventType):
        recent = await audit_storage.get_recent_events(limit=1000)
        return [e for e in reversed(recent) if e.event_type == event_type]
    return _events_of
