"""
Ledger-level detector tests.
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from integrity_models import InconsistencyType, Severity
from ledger_checks import (
    SettlementRecord, UserBalanceRecord, detect_mismatched_settlements,
    detect_negative_balances, detect_orphaned_bets, detect_stuck_settlements,
    run_ledger_checks
)
from conftest import FakeAuditSource


NOW = datetime(2026, 3, 1, 12, 0, 0)


@pytest.mark.unit
class TestLedgerDetectors:

    def test_negative_balances(self):
        source = FakeAuditSource(balances=[
            UserBalanceRecord("u-1", Decimal("0")),
            UserBalanceRecord("u-2", -0.01),
        ])
        violations = detect_negative_balances(source)

        assert len(violations) == 1
        assert violations[0].affected_id == "u-2"
        assert violations[0].severity == Severity.CRITICAL
        assert violations[0].is_critical
        assert violations[0].current_value == Decimal("-0.01")

    def test_orphaned_bets(self, audit_source):
        violations = detect_orphaned_bets(audit_source)

        assert [v.affected_id for v in violations] == ["bet-9"]
        assert violations[0].violation_type == InconsistencyType.ORPHANED_BET.value
        assert violations[0].severity == Severity.HIGH

    def test_mismatched_settlements(self, audit_source):
        violations = detect_mismatched_settlements(audit_source)

        assert [v.affected_id for v in violations] == ["s-2"]
        assert violations[0].current_value == Decimal("90")
        assert violations[0].expected_value == Decimal("100")

    def test_stuck_settlements(self):
        source = FakeAuditSource(pending=[
            SettlementRecord("old", "b-1", Decimal("1"), Decimal("1"), "pending", NOW - timedelta(hours=25)),
            SettlementRecord("edge", "b-2", Decimal("1"), Decimal("1"), "pending", NOW - timedelta(hours=24)),
            SettlementRecord("new", "b-3", Decimal("1"), Decimal("1"), "pending", NOW - timedelta(hours=2)),
        ])

        assert [v.affected_id for v in detect_stuck_settlements(source, 24, NOW)] == ["old"]
        assert [v.affected_id for v in detect_stuck_settlements(source, 1, NOW)] == ["old", "edge", "new"]
        assert detect_stuck_settlements(source, 24, NOW)[0].severity == Severity.MEDIUM

    def test_run_ledger_checks_groups_by_category(self, audit_source):
        results = run_ledger_checks(audit_source)

        assert set(results) == {
            InconsistencyType.NEGATIVE_BALANCE,
            InconsistencyType.ORPHANED_BET,
            InconsistencyType.MISMATCHED_SETTLEMENT,
            InconsistencyType.STUCK_PENDING_SETTLEMENT,
        }
        assert {k: len(v) for k, v in results.items()} == {
            InconsistencyType.NEGATIVE_BALANCE: 1,
            InconsistencyType.ORPHANED_BET: 1,
            InconsistencyType.MISMATCHED_SETTLEMENT: 1,
            InconsistencyType.STUCK_PENDING_SETTLEMENT: 1,
        }

    def test_clean_ledger(self):
        results = run_ledger_checks(FakeAuditSource(), now=NOW)
        assert all(found == [] for found in results.values())

    def test_violation_serialization(self, audit_source):
        data = detect_negative_balances(audit_source)[0].to_dict()

        assert data["type"] == "negative_balance"
        assert data["severity"] == "critical"
        assert data["affected_entity"] == "User"
        assert data["current_value"] == "-5"
        assert data["resolved_at"] is None
