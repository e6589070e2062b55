"""
Reconciliation Engine

Compares off-chain ledger balances with on-chain balances across the whole
user base, classifies each divergence, auto-resolves rounding-scale drift and
persists one ReconciliationReport per run.

Classification of a user whose difference exceeds the tolerance:
1. difference <= auto_correction_threshold (auto-correct on) => rounding_difference / low
2. difference > 1                                            => onchain_balance_discrepancy / high
3. otherwise                                                 => ledger_mismatch / medium
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, time as dt_time
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple
import logging

from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from balance_source import BalancePair, BalanceSource
from integrity_config import ReconciliationConfig
from integrity_models import (
    ReconciliationReport, ReportStatus, ReportType, InconsistencyType, Severity,
    DiscrepancyStatus, REPORT_TRANSITIONS, DISCREPANCY_TRANSITIONS,
    check_transition, utcnow
)
from integrity_types import BalanceDiscrepancy, IntegrityViolation
from ledger_checks import LedgerAuditSource, run_ledger_checks
from notifier import LoggingNotifier, Notifier, notify_safely
from report_store import PaginatedReports, ReportStore

logger = logging.getLogger(__name__)

AUTO_CORRECTION_NOTE = "Auto-corrected rounding difference"

# Absolute difference above which a discrepancy is treated as a real on-chain divergence
ONCHAIN_DISCREPANCY_FLOOR = Decimal("1")

# Scale of the report amount columns
AMOUNT_QUANTUM = Decimal("0.00000001")

_CATEGORY_COUNTERS = {
    InconsistencyType.NEGATIVE_BALANCE: "negative_balance_count",
    InconsistencyType.ORPHANED_BET: "orphaned_bet_count",
    InconsistencyType.MISMATCHED_SETTLEMENT: "mismatched_settlement_count",
    InconsistencyType.STUCK_PENDING_SETTLEMENT: "stuck_pending_settlement_count",
    InconsistencyType.LEDGER_MISMATCH: "ledger_mismatch_count",
    InconsistencyType.ONCHAIN_BALANCE_DISCREPANCY: "onchain_discrepancy_count",
    InconsistencyType.OFFCHAIN_BALANCE_DISCREPANCY: "offchain_discrepancy_count",
    InconsistencyType.ROUNDING_DIFFERENCE: "rounding_difference_count",
}


# ═══════════════════════════════════════════════════════════════════════════════
# DATA STRUCTURES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class LedgerConsistencySummary:
    """Aggregates of one balance comparison."""
    total_users_checked: int = 0
    users_with_discrepancies: int = 0
    users_within_tolerance: int = 0
    total_discrepancy_amount: Decimal = Decimal("0")
    average_discrepancy: Decimal = Decimal("0")
    max_discrepancy: Decimal = Decimal("0")
    min_discrepancy: Decimal = Decimal("0")
    discrepancies_by_severity: Dict[Severity, int] = field(
        default_factory=lambda: {s: 0 for s in Severity}
    )
    discrepancies_by_type: Dict[InconsistencyType, int] = field(
        default_factory=lambda: {t: 0 for t in InconsistencyType}
    )


@dataclass
class ReconciliationSummary:
    latest_report: Optional[ReconciliationReport]
    total_reports_today: int
    total_inconsistencies_today: int
    critical_issues_count: int
    last_run_at: Optional[datetime]


def classify_difference(
    difference: Decimal, config: ReconciliationConfig
) -> Tuple[InconsistencyType, Severity]:
    """Category and severity of a difference already known to exceed the tolerance."""
    if config.auto_correct_rounding_differences and difference <= config.auto_correction_threshold:
        return InconsistencyType.ROUNDING_DIFFERENCE, Severity.LOW
    if difference > ONCHAIN_DISCREPANCY_FLOOR:
        return InconsistencyType.ONCHAIN_BALANCE_DISCREPANCY, Severity.HIGH
    return InconsistencyType.LEDGER_MISMATCH, Severity.MEDIUM


def compare_balances(
    pairs: Sequence[BalancePair], config: ReconciliationConfig
) -> Tuple[List[BalanceDiscrepancy], LedgerConsistencySummary]:
    """
    Compare every user's balances and aggregate the result.

    Users within tolerance are counted but produce no discrepancy record.
    """
    discrepancies: List[BalanceDiscrepancy] = []
    summary = LedgerConsistencySummary(total_users_checked=len(pairs))

    for pair in pairs:
        difference = abs(pair.offchain_balance - pair.onchain_balance)
        if difference <= config.tolerance_threshold:
            summary.users_within_tolerance += 1
            continue

        category, severity = classify_difference(difference, config)
        discrepancies.append(BalanceDiscrepancy.between(
            user_id=pair.user_id,
            user_email=pair.user_email,
            offchain_balance=pair.offchain_balance,
            onchain_balance=pair.onchain_balance,
            tolerance_threshold=config.tolerance_threshold,
            category=category,
            severity=severity,
        ))
        summary.discrepancies_by_type[category] += 1
        summary.discrepancies_by_severity[severity] += 1

    summary.users_with_discrepancies = len(discrepancies)
    if discrepancies:
        differences = [d.difference for d in discrepancies]
        summary.total_discrepancy_amount = sum(differences, Decimal("0"))
        summary.average_discrepancy = (
            summary.total_discrepancy_amount / len(differences)
        ).quantize(AMOUNT_QUANTUM)
        summary.max_discrepancy = max(differences)
        summary.min_discrepancy = min(differences)

    return discrepancies, summary


def auto_correct_rounding_differences(
    discrepancies: Sequence[BalanceDiscrepancy], config: ReconciliationConfig
) -> int:
    """
    Mark rounding-scale discrepancies as resolved.

    Only discrepancies still `detected` with tolerance < difference <=
    auto_correction_threshold are touched, so calling this twice is a no-op
    the second time. Balances themselves are never rewritten here.

    Returns:
        Number of discrepancies resolved by this call
    """
    if not config.auto_correct_rounding_differences:
        return 0

    corrected = 0
    for discrepancy in discrepancies:
        if discrepancy.status != DiscrepancyStatus.DETECTED:
            continue
        if config.tolerance_threshold < discrepancy.difference <= config.auto_correction_threshold:
            discrepancy.status = DiscrepancyStatus.RESOLVED
            discrepancy.resolved_at = utcnow()
            discrepancy.resolution_notes = AUTO_CORRECTION_NOTE
            corrected += 1
            logger.info(
                f"Auto-corrected rounding difference for user {discrepancy.user_email or discrepancy.user_id}: "
                f"{discrepancy.difference}"
            )
    return corrected


# ═══════════════════════════════════════════════════════════════════════════════
# RECONCILIATION ENGINE
# ═══════════════════════════════════════════════════════════════════════════════

class ReconciliationEngine:
    """
    Runs balance reconciliation and persists the report.

    Runs are expected not to overlap on the same users: two concurrent runs
    could both resolve the same discrepancy. Mutual exclusion (for example an
    advisory lock keyed on the report type) is the scheduler's job.
    """

    def __init__(
        self,
        db: Session,
        balance_source: BalanceSource,
        audit_source: Optional[LedgerAuditSource] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.db = db
        self.balance_source = balance_source
        self.audit_source = audit_source
        self.notifier = notifier or LoggingNotifier()
        self.store = ReportStore(db)

    def run_ledger_consistency(
        self,
        config: Optional[ReconciliationConfig] = None,
        report_type: ReportType = ReportType.LEDGER_CONSISTENCY,
    ) -> ReconciliationReport:
        """
        Compare off-chain and on-chain balances for every user.

        Returns:
            The completed ReconciliationReport

        Raises:
            Whatever the balance source or the computation raised, after the
            report has been stored as failed
        """
        config = config or ReconciliationConfig.from_env()
        return self._run(report_type, config, ledger_checks=False, balance_check=True)

    def run_reconciliation(
        self,
        report_type: ReportType = ReportType.MANUAL,
        include_ledger_consistency: bool = True,
        config: Optional[ReconciliationConfig] = None,
    ) -> ReconciliationReport:
        """
        Full reconciliation: ledger-level detectors plus, when enabled, the
        balance comparison, all recorded on one report.
        """
        config = config or ReconciliationConfig.from_env()
        balance_check = include_ledger_consistency and config.enable_ledger_consistency_check
        return self._run(report_type, config, ledger_checks=True, balance_check=balance_check)

    def _run(
        self,
        report_type: ReportType,
        config: ReconciliationConfig,
        ledger_checks: bool,
        balance_check: bool,
    ) -> ReconciliationReport:
        logger.info(f"Starting {report_type.value} reconciliation...")

        # Persist before doing any work so an interrupted run stays visible as running
        report = ReconciliationReport(
            status=ReportStatus.RUNNING.value,
            report_type=report_type.value,
            started_at=utcnow(),
            tolerance_threshold=config.tolerance_threshold,
        )
        self.db.add(report)
        self.db.commit()
        self.db.refresh(report)

        try:
            ledger_violations: Dict[InconsistencyType, List[IntegrityViolation]] = {}
            if ledger_checks and self.audit_source is not None:
                ledger_violations = run_ledger_checks(
                    self.audit_source,
                    stuck_threshold_hours=config.stuck_settlement_threshold_hours,
                )

            discrepancies: List[BalanceDiscrepancy] = []
            summary = LedgerConsistencySummary()
            if balance_check:
                pairs = self.balance_source.snapshot()
                discrepancies, summary = compare_balances(pairs, config)
                auto_correct_rounding_differences(discrepancies, config)

            self._apply_results(report, ledger_violations, discrepancies, summary, balance_check)
            check_transition(
                f"reconciliation report {report.id}", REPORT_TRANSITIONS,
                report.status, ReportStatus.COMPLETED
            )
            report.status = ReportStatus.COMPLETED.value
            report.completed_at = utcnow()
            self.db.commit()
        except Exception as e:
            self._mark_failed(report, e)
            raise

        logger.info(f"{report_type.value} reconciliation completed (report {report.id}).")
        logger.info(f"  Total users checked: {summary.total_users_checked}")
        logger.info(f"  Users with discrepancies: {summary.users_with_discrepancies}")
        logger.info(f"  Users within tolerance: {summary.users_within_tolerance}")
        logger.info(f"  Total discrepancy amount: {summary.total_discrepancy_amount}")

        self._notify(report, config, discrepancies, ledger_violations)
        return report

    def _apply_results(
        self,
        report: ReconciliationReport,
        ledger_violations: Dict[InconsistencyType, List[IntegrityViolation]],
        discrepancies: List[BalanceDiscrepancy],
        summary: LedgerConsistencySummary,
        balance_check: bool,
    ) -> None:
        for category, found in ledger_violations.items():
            setattr(report, _CATEGORY_COUNTERS[category], len(found))
        inconsistencies = [v for found in ledger_violations.values() for v in found]
        report.inconsistencies_json = [v.to_dict() for v in inconsistencies]

        report.total_users_checked = summary.total_users_checked
        report.users_with_discrepancies = summary.users_with_discrepancies
        report.users_within_tolerance = summary.users_within_tolerance
        report.total_discrepancy_amount = summary.total_discrepancy_amount
        report.average_discrepancy = summary.average_discrepancy
        report.max_discrepancy = summary.max_discrepancy
        report.min_discrepancy = summary.min_discrepancy

        for category in (
            InconsistencyType.LEDGER_MISMATCH,
            InconsistencyType.ONCHAIN_BALANCE_DISCREPANCY,
            InconsistencyType.OFFCHAIN_BALANCE_DISCREPANCY,
            InconsistencyType.ROUNDING_DIFFERENCE,
        ):
            setattr(report, _CATEGORY_COUNTERS[category], summary.discrepancies_by_type[category])

        report.total_inconsistencies = len(inconsistencies) + len(discrepancies)

        if balance_check:
            report.ledger_consistency_json = {
                "discrepancies_by_severity": {
                    s.value: n for s, n in summary.discrepancies_by_severity.items()
                },
                "discrepancies_by_type": {
                    t.value: n for t, n in summary.discrepancies_by_type.items()
                },
            }
            report.balance_discrepancies_json = [d.to_dict() for d in discrepancies]

    def _mark_failed(self, report: ReconciliationReport, error: Exception) -> None:
        # Discard anything half-written by the failed run
        self.db.rollback()
        report.status = ReportStatus.FAILED.value
        report.completed_at = utcnow()
        report.error_message = str(error)
        report.balance_discrepancies_json = None
        report.ledger_consistency_json = None
        report.inconsistencies_json = None
        self.db.commit()
        logger.error(f"Reconciliation {report.id} failed: {report.error_message}")

    def _notify(
        self,
        report: ReconciliationReport,
        config: ReconciliationConfig,
        discrepancies: List[BalanceDiscrepancy],
        ledger_violations: Dict[InconsistencyType, List[IntegrityViolation]],
    ) -> None:
        if not config.notify_on_critical_discrepancies:
            return

        findings = [d for d in discrepancies if d.difference > config.auto_correction_threshold]
        if findings:
            logger.error(
                f"CRITICAL: {len(findings)} balance discrepancies exceed auto-correction threshold!"
            )
        findings += [
            v for found in ledger_violations.values() for v in found
            if v.severity == Severity.CRITICAL
        ]
        if findings:
            notify_safely(self.notifier, report.id, findings)

    # ═══════════════════════════════════════════════════════════════════════════
    # DISCREPANCY RESOLUTION
    # ═══════════════════════════════════════════════════════════════════════════

    def resolve_discrepancy(
        self,
        report_id: int,
        user_id: str,
        status: DiscrepancyStatus,
        resolution_notes: Optional[str] = None,
    ) -> BalanceDiscrepancy:
        """
        Move one detected discrepancy to flagged, resolved or ignored.

        Report aggregates are not touched.

        Raises:
            ReportNotFoundError: Unknown report
            KeyError: No discrepancy for that user in the report
            InvalidTransitionError: Discrepancy already left `detected`
        """
        report = self.store.get(ReconciliationReport, report_id)
        entries = list(report.balance_discrepancies_json or [])

        for index, entry in enumerate(entries):
            if entry["user_id"] != user_id:
                continue
            discrepancy = BalanceDiscrepancy.from_dict(entry)
            check_transition(
                f"discrepancy for user {user_id}", DISCREPANCY_TRANSITIONS,
                discrepancy.status, status
            )
            discrepancy.status = status
            discrepancy.resolution_notes = resolution_notes
            if status in (DiscrepancyStatus.RESOLVED, DiscrepancyStatus.IGNORED):
                discrepancy.resolved_at = utcnow()

            entries[index] = discrepancy.to_dict()
            report.balance_discrepancies_json = entries
            flag_modified(report, "balance_discrepancies_json")
            self.db.commit()

            logger.info(f"Discrepancy for user {user_id} in report {report_id} marked {status.value}")
            return discrepancy

        raise KeyError(f"No discrepancy for user {user_id} in report {report_id}")

    # ═══════════════════════════════════════════════════════════════════════════
    # QUERIES
    # ═══════════════════════════════════════════════════════════════════════════

    def get_report(self, report_id: int) -> ReconciliationReport:
        return self.store.get(ReconciliationReport, report_id)

    def list_reports(
        self,
        report_type: Optional[ReportType] = None,
        status: Optional[ReportStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: int = 1,
        limit: int = 50,
    ) -> PaginatedReports:
        return self.store.list(
            ReconciliationReport,
            filters={"report_type": report_type, "status": status},
            start_date=start_date,
            end_date=end_date,
            page=page,
            limit=limit,
        )

    def get_summary(self, now: Optional[datetime] = None) -> ReconciliationSummary:
        """
        Today's activity. Critical issues are on-chain discrepancies plus
        negative balances across today's completed reports.
        """
        now = now or utcnow()
        start_of_day = datetime.combine(now.date(), dt_time.min)

        today = (
            self.db.query(ReconciliationReport)
            .filter(ReconciliationReport.created_at >= start_of_day)
            .all()
        )
        completed_today = [r for r in today if r.status == ReportStatus.COMPLETED.value]
        latest = self.store.latest(ReconciliationReport)

        return ReconciliationSummary(
            latest_report=latest,
            total_reports_today=len(today),
            total_inconsistencies_today=sum(r.total_inconsistencies or 0 for r in completed_today),
            critical_issues_count=sum(
                (r.onchain_discrepancy_count or 0) + (r.negative_balance_count or 0)
                for r in completed_today
            ),
            last_run_at=latest.started_at if latest else None,
        )

    def find_stuck_reports(self, older_than: timedelta = timedelta(hours=1)) -> List[ReconciliationReport]:
        return self.store.find_stuck(ReconciliationReport, older_than)
