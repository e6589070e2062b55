"""
Ledger Integrity Models

Persistent storage for reconciliation reports, transaction validation reports
and the compensating entries written by rollbacks.
"""

from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, ForeignKey, JSON, Text,
    CheckConstraint, Index
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
import enum

from integrity_errors import InvalidTransitionError


Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class ReportStatus(str, enum.Enum):
    """Status of a reconciliation run."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ReportType(str, enum.Enum):
    """What triggered a reconciliation run."""
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    LEDGER_CONSISTENCY = "ledger_consistency"


class InconsistencyType(str, enum.Enum):
    """Category of a ledger inconsistency."""
    NEGATIVE_BALANCE = "negative_balance"
    ORPHANED_BET = "orphaned_bet"
    MISMATCHED_SETTLEMENT = "mismatched_settlement"
    STUCK_PENDING_SETTLEMENT = "stuck_pending_settlement"
    LEDGER_MISMATCH = "ledger_mismatch"
    ONCHAIN_BALANCE_DISCREPANCY = "onchain_balance_discrepancy"
    OFFCHAIN_BALANCE_DISCREPANCY = "offchain_balance_discrepancy"
    ROUNDING_DIFFERENCE = "rounding_difference"


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DiscrepancyStatus(str, enum.Enum):
    """Lifecycle of a single balance discrepancy."""
    DETECTED = "detected"
    FLAGGED = "flagged"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class ValidationStatus(str, enum.Enum):
    """Status of a transaction validation run."""
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class TransactionType(str, enum.Enum):
    """Financial operations that can be validated."""
    BET_SETTLEMENT = "bet_settlement"
    SPIN_PAYOUT = "spin_payout"
    STAKING_REWARD = "staking_reward"
    STAKING_PENALTY = "staking_penalty"
    WALLET_TRANSFER = "wallet_transfer"


class ValidationType(str, enum.Enum):
    BALANCE_INTEGRITY = "balance_integrity"
    STATE_CONSISTENCY = "state_consistency"
    ATOMICITY_CHECK = "atomicity_check"
    ONCHAIN_RECONCILIATION = "onchain_reconciliation"


class ViolationType(str, enum.Enum):
    """Category of a failed transaction invariant."""
    PARTIAL_UPDATE = "partial_update"
    BALANCE_MISMATCH = "balance_mismatch"
    STATE_INCONSISTENCY = "state_inconsistency"
    ONCHAIN_DISCREPANCY = "onchain_discrepancy"
    TRANSACTION_ROLLBACK = "transaction_rollback"


# Allowed forward moves; anything else is rejected by check_transition()
REPORT_TRANSITIONS = {
    ReportStatus.RUNNING: {ReportStatus.COMPLETED, ReportStatus.FAILED},
    ReportStatus.COMPLETED: set(),
    ReportStatus.FAILED: set(),
}

VALIDATION_TRANSITIONS = {
    ValidationStatus.PENDING: {ValidationStatus.PASSED, ValidationStatus.FAILED},
    ValidationStatus.PASSED: set(),
    ValidationStatus.FAILED: {ValidationStatus.ROLLED_BACK},
    ValidationStatus.ROLLED_BACK: set(),
}

DISCREPANCY_TRANSITIONS = {
    DiscrepancyStatus.DETECTED: {
        DiscrepancyStatus.FLAGGED,
        DiscrepancyStatus.RESOLVED,
        DiscrepancyStatus.IGNORED,
    },
    DiscrepancyStatus.FLAGGED: set(),
    DiscrepancyStatus.RESOLVED: set(),
    DiscrepancyStatus.IGNORED: set(),
}


def check_transition(subject: str, transitions: dict, current, target) -> None:
    """Raise InvalidTransitionError unless current -> target is a forward move."""
    current = type(target)(current)
    if target not in transitions.get(current, set()):
        raise InvalidTransitionError(subject, current.value, target.value)


# ═══════════════════════════════════════════════════════════════════════════════
# RECONCILIATION REPORT MODEL
# ═══════════════════════════════════════════════════════════════════════════════

class ReconciliationReport(Base):
    """
    One reconciliation run across the user base.
    """
    __tablename__ = "reconciliation_reports"

    id = Column(Integer, primary_key=True, index=True)
    status = Column(String(20), nullable=False, default=ReportStatus.RUNNING.value)
    report_type = Column(String(30), nullable=False)

    # Timing
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    # Ledger-level counters
    negative_balance_count = Column(Integer, default=0)
    orphaned_bet_count = Column(Integer, default=0)
    mismatched_settlement_count = Column(Integer, default=0)
    stuck_pending_settlement_count = Column(Integer, default=0)

    # Balance consistency counters
    ledger_mismatch_count = Column(Integer, default=0)
    onchain_discrepancy_count = Column(Integer, default=0)
    offchain_discrepancy_count = Column(Integer, default=0)
    rounding_difference_count = Column(Integer, default=0)
    total_inconsistencies = Column(Integer, default=0)

    tolerance_threshold = Column(Numeric(18, 8), nullable=True)
    total_users_checked = Column(Integer, default=0)
    users_with_discrepancies = Column(Integer, default=0)
    users_within_tolerance = Column(Integer, default=0)
    total_discrepancy_amount = Column(Numeric(28, 8), default=0)
    average_discrepancy = Column(Numeric(28, 8), default=0)
    max_discrepancy = Column(Numeric(28, 8), default=0)
    min_discrepancy = Column(Numeric(28, 8), default=0)

    # Embedded documents
    inconsistencies_json = Column(JSON, nullable=True)
    """
    [IntegrityViolation.to_dict(), ...] from the ledger-level detectors
    """
    ledger_consistency_json = Column(JSON, nullable=True)
    """
    {
        "discrepancies_by_severity": {"low": int, ...},
        "discrepancies_by_type": {"ledger_mismatch": int, ...}
    }
    """
    balance_discrepancies_json = Column(JSON, nullable=True)
    """
    [BalanceDiscrepancy.to_dict(), ...]
    """

    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('running', 'completed', 'failed')",
            name="ck_reconciliation_report_status"
        ),
        CheckConstraint(
            "report_type IN ('scheduled', 'manual', 'ledger_consistency')",
            name="ck_reconciliation_report_type"
        ),
        Index("ix_reconciliation_report_status_created", "status", "created_at"),
        Index("ix_reconciliation_report_type", "report_type"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status != ReportStatus.RUNNING.value


# ═══════════════════════════════════════════════════════════════════════════════
# TRANSACTION VALIDATION REPORT MODEL
# ═══════════════════════════════════════════════════════════════════════════════

class TransactionValidationReport(Base):
    """
    Result of validating one financial transaction against its rule set.
    """
    __tablename__ = "transaction_validation_reports"

    id = Column(Integer, primary_key=True, index=True)
    status = Column(String(20), nullable=False, default=ValidationStatus.PENDING.value)
    transaction_type = Column(String(50), nullable=False, index=True)
    validation_type = Column(String(50), nullable=False, index=True)

    transaction_id = Column(String(100), nullable=False, index=True)
    reference_id = Column(String(100), nullable=True)
    user_id = Column(String(100), nullable=True)

    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    validation_rules_json = Column(JSON, nullable=False)
    validation_results_json = Column(JSON, nullable=True)
    violations_json = Column(JSON, nullable=True)

    total_checks = Column(Integer, default=0)
    passed_checks = Column(Integer, default=0)
    failed_checks = Column(Integer, default=0)
    critical_violations = Column(Integer, default=0)

    rollback_triggered = Column(Boolean, default=False, nullable=False)
    rollback_reason = Column(Text, nullable=True)
    rollback_completed_at = Column(DateTime, nullable=True)

    metadata_json = Column("metadata", JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    compensating_entries = relationship(
        "CompensatingEntry", back_populates="report", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'passed', 'failed', 'rolled_back')",
            name="ck_transaction_validation_status"
        ),
        CheckConstraint(
            "passed_checks + failed_checks <= total_checks",
            name="ck_transaction_validation_check_counts"
        ),
        Index("ix_transaction_validation_status_created", "status", "created_at"),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# COMPENSATING ENTRY MODEL
# ═══════════════════════════════════════════════════════════════════════════════

class CompensatingEntry(Base):
    """
    A reversing ledger write produced by a rollback.
    """
    __tablename__ = "compensating_entries"

    id = Column(Integer, primary_key=True, index=True)
    report_id = Column(
        Integer, ForeignKey("transaction_validation_reports.id"), nullable=False, index=True
    )
    transaction_id = Column(String(100), nullable=False, index=True)
    user_id = Column(String(100), nullable=True)
    original_entry_id = Column(String(100), nullable=True)
    amount = Column(Numeric(28, 8), nullable=False)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    report = relationship("TransactionValidationReport", back_populates="compensating_entries")
