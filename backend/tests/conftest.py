"""
Pytest configuration and fixtures for the ledger integrity test suite

Markers:
    - unit: Fast unit tests
    - property: Property-based tests (Hypothesis)
    - integration: Engine runs against an in-memory database
"""

import pytest
import sys
import os
from datetime import datetime, timedelta
from decimal import Decimal

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import integrity_models
from integrity_models import utcnow
from integrity_config import ReconciliationConfig, TransactionValidationConfig
from ledger_checks import BetRecord, SettlementRecord, UserBalanceRecord
from validation_checks import BetOutcome, LedgerEntry


# ═══════════════════════════════════════════════════════════════════════════════
# PYTEST CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "property: Property-based tests (Hypothesis)")
    config.addinivalue_line("markers", "integration: Engine runs against an in-memory database")


# ═══════════════════════════════════════════════════════════════════════════════
# DATABASE
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.fixture
def test_engine():
    """Create a test database engine."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    integrity_models.Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def db_session(test_engine):
    """Create a fresh database session for each test"""
    Session = sessionmaker(bind=test_engine)
    session = Session()
    yield session
    session.close()


# ═══════════════════════════════════════════════════════════════════════════════
# FAKE COLLABORATORS
# ═══════════════════════════════════════════════════════════════════════════════

class FakeEntityRepository:
    """In-memory domain lookups for rule checks."""

    def __init__(self):
        self.entries = {}
        self.bets = {}
        self.spins = {}
        self.stakes = {}
        self.offchain = {}
        self.onchain = {}

    def add_entry(self, entry: LedgerEntry):
        self.entries.setdefault(entry.transaction_id, []).append(entry)

    def get_ledger_entries(self, transaction_id):
        return list(self.entries.get(transaction_id, []))

    def get_bet(self, bet_id):
        return self.bets.get(bet_id)

    def get_spin(self, spin_id):
        return self.spins.get(spin_id)

    def get_stake(self, stake_id):
        return self.stakes.get(stake_id)

    def get_offchain_balance(self, user_id):
        return self.offchain.get(user_id, Decimal("0"))

    def get_onchain_balance(self, user_id):
        return self.onchain.get(user_id, Decimal("0"))


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    def notify(self, report_id, items):
        self.calls.append((report_id, list(items)))


class ExplodingNotifier:
    def notify(self, report_id, items):
        raise ConnectionError("alerting backend unavailable")


class FakeAuditSource:
    def __init__(self, balances=(), orphaned=(), settlements=(), pending=()):
        self.balances = list(balances)
        self.orphaned = list(orphaned)
        self.settlements = list(settlements)
        self.pending = list(pending)

    def list_user_balances(self):
        return self.balances

    def list_orphaned_bets(self):
        return self.orphaned

    def list_settlements(self):
        return self.settlements

    def list_pending_settlements(self):
        return self.pending


@pytest.fixture
def repository():
    return FakeEntityRepository()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def reconciliation_config():
    return ReconciliationConfig()


@pytest.fixture
def validation_config():
    return TransactionValidationConfig()


@pytest.fixture
def settled_bet(repository):
    """
    A consistent winning bet settlement: tx-bet-1 credits 150 to user-1,
    balances agree on and off chain.
    """
    repository.add_entry(LedgerEntry(
        entry_id="e-1",
        transaction_id="tx-bet-1",
        user_id="user-1",
        amount=Decimal("150"),
        balance_before=Decimal("100"),
        balance_after=Decimal("250"),
        created_at=datetime(2026, 1, 1, 12, 0, 0),
    ))
    repository.bets["bet-1"] = BetOutcome(
        bet_id="bet-1",
        user_id="user-1",
        status="won",
        stake=Decimal("50"),
        payout=Decimal("150"),
    )
    repository.offchain["user-1"] = Decimal("250")
    repository.onchain["user-1"] = Decimal("250")
    return repository


@pytest.fixture
def audit_source():
    now = utcnow()
    return FakeAuditSource(
        balances=[
            UserBalanceRecord("user-1", Decimal("10")),
            UserBalanceRecord("user-2", Decimal("-5")),
        ],
        orphaned=[BetRecord("bet-9", "user-1", "match-gone")],
        settlements=[
            SettlementRecord("s-1", "bet-1", Decimal("150"), Decimal("150"), "settled", now),
            SettlementRecord("s-2", "bet-2", Decimal("90"), Decimal("100"), "settled", now),
        ],
        pending=[
            SettlementRecord("s-3", "bet-3", Decimal("10"), Decimal("10"), "pending", now - timedelta(hours=30)),
            SettlementRecord("s-4", "bet-4", Decimal("10"), Decimal("10"), "pending", now - timedelta(hours=1)),
        ],
    )
