"""
Ledger-level inconsistency detectors

Checks that run alongside balance reconciliation:
1. Negative balance: no user ledger balance below zero
2. Orphaned bet: every bet references an existing match
3. Mismatched settlement: settled amount == bet payout
4. Stuck pending settlement: no settlement pending past the threshold
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Protocol, Sequence

from integrity_models import InconsistencyType, Severity, utcnow
from integrity_types import IntegrityViolation, to_decimal


@dataclass(frozen=True)
class UserBalanceRecord:
    user_id: str
    balance: Decimal
    user_email: Optional[str] = None


@dataclass(frozen=True)
class BetRecord:
    bet_id: str
    user_id: str
    match_id: Optional[str]


@dataclass(frozen=True)
class SettlementRecord:
    settlement_id: str
    bet_id: str
    amount: Decimal
    expected_payout: Decimal
    status: str
    created_at: datetime


class LedgerAuditSource(Protocol):
    """Read-only views the detectors need from the domain repositories."""

    def list_user_balances(self) -> Sequence[UserBalanceRecord]:
        ...

    def list_orphaned_bets(self) -> Sequence[BetRecord]:
        ...

    def list_settlements(self) -> Sequence[SettlementRecord]:
        ...

    def list_pending_settlements(self) -> Sequence[SettlementRecord]:
        ...


def detect_negative_balances(source: LedgerAuditSource) -> List[IntegrityViolation]:
    violations = []
    for record in source.list_user_balances():
        balance = to_decimal(record.balance)
        if balance < 0:
            violations.append(IntegrityViolation(
                violation_type=InconsistencyType.NEGATIVE_BALANCE.value,
                severity=Severity.CRITICAL,
                description=f"User {record.user_id} has negative balance {balance}",
                affected_entity="User",
                affected_id=record.user_id,
                current_value=balance,
                expected_value=Decimal("0"),
            ))
    return violations


def detect_orphaned_bets(source: LedgerAuditSource) -> List[IntegrityViolation]:
    return [
        IntegrityViolation(
            violation_type=InconsistencyType.ORPHANED_BET.value,
            severity=Severity.HIGH,
            description=f"Bet {bet.bet_id} references missing match {bet.match_id}",
            affected_entity="Bet",
            affected_id=bet.bet_id,
            current_value=bet.match_id,
        )
        for bet in source.list_orphaned_bets()
    ]


def detect_mismatched_settlements(source: LedgerAuditSource) -> List[IntegrityViolation]:
    violations = []
    for settlement in source.list_settlements():
        amount = to_decimal(settlement.amount)
        expected = to_decimal(settlement.expected_payout)
        if amount != expected:
            violations.append(IntegrityViolation(
                violation_type=InconsistencyType.MISMATCHED_SETTLEMENT.value,
                severity=Severity.HIGH,
                description=(
                    f"Settlement {settlement.settlement_id} for bet {settlement.bet_id} "
                    f"paid {amount}, bet payout is {expected}"
                ),
                affected_entity="Settlement",
                affected_id=settlement.settlement_id,
                current_value=amount,
                expected_value=expected,
            ))
    return violations


def detect_stuck_settlements(
    source: LedgerAuditSource,
    threshold_hours: int = 24,
    now: Optional[datetime] = None,
) -> List[IntegrityViolation]:
    cutoff = (now or utcnow()) - timedelta(hours=threshold_hours)
    violations = []
    for settlement in source.list_pending_settlements():
        if settlement.created_at < cutoff:
            violations.append(IntegrityViolation(
                violation_type=InconsistencyType.STUCK_PENDING_SETTLEMENT.value,
                severity=Severity.MEDIUM,
                description=(
                    f"Settlement {settlement.settlement_id} pending since "
                    f"{settlement.created_at.isoformat()} (> {threshold_hours}h)"
                ),
                affected_entity="Settlement",
                affected_id=settlement.settlement_id,
                current_value=settlement.status,
                expected_value="settled",
            ))
    return violations


def run_ledger_checks(
    source: LedgerAuditSource,
    stuck_threshold_hours: int = 24,
    now: Optional[datetime] = None,
) -> Dict[InconsistencyType, List[IntegrityViolation]]:
    """Run every detector; result is keyed by inconsistency category."""
    return {
        InconsistencyType.NEGATIVE_BALANCE: detect_negative_balances(source),
        InconsistencyType.ORPHANED_BET: detect_orphaned_bets(source),
        InconsistencyType.MISMATCHED_SETTLEMENT: detect_mismatched_settlements(source),
        InconsistencyType.STUCK_PENDING_SETTLEMENT: detect_stuck_settlements(
            source, stuck_threshold_hours, now
        ),
    }
