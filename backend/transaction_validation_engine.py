"""
Transaction Validation Engine

Runs the invariant rules registered for a transaction type right after the
financial operation completes, records every result and violation on a
TransactionValidationReport, and hands critical failures to the rollback
coordinator.

Status decision, after every rule has run:
1. critical_violations >= critical_violation_threshold => failed (+ rollback if enabled)
2. failed_checks > 0                                     => failed
3. otherwise                                             => passed
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union
import logging

from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from integrity_config import TransactionValidationConfig
from integrity_errors import InvalidTransitionError, ValidationDisabledError
from integrity_models import (
    TransactionValidationReport, TransactionType, ValidationType, ValidationStatus,
    ViolationType, Severity, VALIDATION_TRANSITIONS, check_transition, utcnow
)
from integrity_types import IntegrityViolation, ValidationResult, ValidationRule, json_value
from notifier import LoggingNotifier, Notifier, notify_safely
from report_store import PaginatedReports, ReportStore
from rollback_coordinator import RollbackCoordinator
from validation_checks import EntityRepository, ValidationContext
from validation_rules import affected_entity_for, rules_for

logger = logging.getLogger(__name__)

ROLLBACK_REASON = "Critical validation violations detected"


@dataclass
class ValidationRequest:
    """A transaction to validate."""
    transaction_id: str
    transaction_type: Union[TransactionType, str]
    validation_type: ValidationType = ValidationType.BALANCE_INTEGRITY
    reference_id: Optional[str] = None
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RuleOutcome:
    """Counters accumulated while running a rule set."""
    results: List[ValidationResult] = field(default_factory=list)
    violations: List[IntegrityViolation] = field(default_factory=list)
    passed: int = 0
    failed: int = 0
    critical: int = 0


class TransactionValidationEngine:
    """
    Validates individual transactions.

    Rules run sequentially in registry order and never short-circuit: the
    report carries the complete violation set even when an early rule already
    crossed the rollback threshold.
    """

    def __init__(
        self,
        db: Session,
        repository: EntityRepository,
        notifier: Optional[Notifier] = None,
        rollback_coordinator: Optional[RollbackCoordinator] = None,
        registry: Callable[[Any], Tuple[ValidationRule, ...]] = rules_for,
    ):
        self.db = db
        self.repository = repository
        self.notifier = notifier or LoggingNotifier()
        self.rollback_coordinator = rollback_coordinator or RollbackCoordinator(db, repository)
        self.registry = registry
        self.store = ReportStore(db)

    # ═══════════════════════════════════════════════════════════════════════════
    # VALIDATION
    # ═══════════════════════════════════════════════════════════════════════════

    @staticmethod
    def should_validate(
        transaction_type: Union[TransactionType, str],
        config: TransactionValidationConfig,
    ) -> bool:
        """Whether a post-transaction hook should request validation for this type."""
        if not config.enabled:
            return False
        kind = getattr(transaction_type, "value", transaction_type)
        if kind == TransactionType.BET_SETTLEMENT.value:
            return config.validate_on_settlement
        if kind == TransactionType.SPIN_PAYOUT.value:
            return config.validate_on_spin
        if kind in (TransactionType.STAKING_REWARD.value, TransactionType.STAKING_PENALTY.value):
            return config.validate_on_staking
        return True

    def validate_transaction(
        self,
        request: ValidationRequest,
        config: Optional[TransactionValidationConfig] = None,
    ) -> TransactionValidationReport:
        """
        Validate one transaction and persist the report.

        Returns:
            The report; its status field is authoritative

        Raises:
            ValidationDisabledError: validation is disabled (no report is created)
            RollbackError: critical violations were found but compensation failed
            Exception: any error outside the rule loop, after the report was
                stored as failed
        """
        config = config or TransactionValidationConfig.from_env()
        if not config.enabled:
            logger.debug("Transaction validation is disabled")
            raise ValidationDisabledError("Transaction validation is disabled")

        transaction_type = getattr(request.transaction_type, "value", request.transaction_type)
        logger.info(f"Starting validation for transaction {request.transaction_id} ({transaction_type})")

        report = TransactionValidationReport(
            status=ValidationStatus.PENDING.value,
            transaction_type=transaction_type,
            validation_type=getattr(request.validation_type, "value", request.validation_type),
            transaction_id=request.transaction_id,
            reference_id=request.reference_id,
            user_id=request.user_id,
            started_at=utcnow(),
            validation_rules_json=[],
            metadata_json=json_value(dict(request.metadata)) or None,
        )
        self.db.add(report)
        self.db.commit()
        self.db.refresh(report)

        try:
            rules = self.registry(request.transaction_type)
            report.validation_rules_json = [rule.to_dict() for rule in rules]
            report.total_checks = len(rules)
            self.db.commit()

            context = ValidationContext(
                transaction_id=request.transaction_id,
                transaction_type=request.transaction_type,
                repository=self.repository,
                reference_id=request.reference_id,
                user_id=request.user_id,
                onchain_tolerance=config.onchain_tolerance,
                metadata=dict(request.metadata),
            )
            outcome = self._run_rules(rules, context, transaction_type)

            rollback_needed = False
            if outcome.critical >= config.critical_violation_threshold:
                status = ValidationStatus.FAILED
                rollback_needed = config.auto_rollback_on_critical
            elif outcome.failed > 0:
                status = ValidationStatus.FAILED
            else:
                status = ValidationStatus.PASSED

            if not rules:
                logger.warning(
                    f"No validation rules for transaction type {transaction_type}; "
                    f"transaction {request.transaction_id} passes vacuously"
                )
                report.metadata_json = {**(report.metadata_json or {}), "vacuous_pass": True}

            check_transition(
                f"validation report {report.id}", VALIDATION_TRANSITIONS, report.status, status
            )
            report.status = status.value
            report.passed_checks = outcome.passed
            report.failed_checks = outcome.failed
            report.critical_violations = outcome.critical
            report.validation_results_json = [r.to_dict() for r in outcome.results]
            report.violations_json = [v.to_dict() for v in outcome.violations]
            report.completed_at = utcnow()
            # Stored before compensating so a failed rollback leaves this state behind
            self.db.commit()

            if rollback_needed:
                self.rollback_coordinator.rollback(report, ROLLBACK_REASON, outcome.violations)
        except Exception as e:
            self._mark_failed(report, e)
            raise

        logger.info(
            f"Transaction validation {report.status} for {request.transaction_id}. "
            f"Passed: {report.passed_checks}, Failed: {report.failed_checks}, "
            f"Critical: {report.critical_violations}"
        )

        if outcome.violations and config.notify_on_violations:
            notify_safely(self.notifier, report.id, outcome.violations)

        return report

    def _run_rules(
        self,
        rules: Sequence[ValidationRule],
        context: ValidationContext,
        transaction_type: str,
    ) -> RuleOutcome:
        outcome = RuleOutcome()
        affected_entity = affected_entity_for(transaction_type)

        for rule in rules:
            try:
                result = rule.check(context)
                result.rule_name = rule.name
                result.timestamp = utcnow()
            except Exception as e:
                # An unverifiable invariant counts as a critical failure
                logger.error(f"Error executing validation rule {rule.name}: {e}")
                outcome.results.append(ValidationResult(
                    rule_name=rule.name,
                    passed=False,
                    message=str(e),
                ))
                outcome.violations.append(IntegrityViolation(
                    violation_type=ViolationType.TRANSACTION_ROLLBACK.value,
                    severity=Severity.CRITICAL,
                    description=f"Validation rule execution failed: {e}",
                    affected_entity=affected_entity,
                    affected_id=context.transaction_id,
                ))
                outcome.failed += 1
                outcome.critical += 1
                continue

            outcome.results.append(result)
            logger.debug(f"Validation rule {rule.name}: {'PASSED' if result.passed else 'FAILED'}")

            if result.passed:
                outcome.passed += 1
                continue

            outcome.failed += 1
            outcome.violations.append(IntegrityViolation(
                violation_type=rule.violation_type.value,
                severity=Severity.CRITICAL if rule.critical else Severity.HIGH,
                description=result.message or f"Validation failed for rule: {rule.name}",
                affected_entity=affected_entity,
                affected_id=context.transaction_id,
                current_value=result.actual_value,
                expected_value=result.expected_value,
            ))
            if rule.critical:
                outcome.critical += 1

        return outcome

    def _mark_failed(self, report: TransactionValidationReport, error: Exception) -> None:
        self.db.rollback()
        if report.status == ValidationStatus.PENDING.value:
            report.status = ValidationStatus.FAILED.value
        if report.completed_at is None:
            report.completed_at = utcnow()
        report.error_message = str(error)
        self.db.commit()
        logger.error(f"Transaction validation failed for {report.transaction_id}: {error}")

    def validate_batch(
        self,
        requests: Sequence[ValidationRequest],
        config: Optional[TransactionValidationConfig] = None,
    ) -> List[TransactionValidationReport]:
        """
        Scheduled batch mode. Each request gets its own report; an error on
        one request is logged and the batch moves on.
        """
        config = config or TransactionValidationConfig.from_env()
        if not config.enabled:
            raise ValidationDisabledError("Transaction validation is disabled")

        reports = []
        for request in requests:
            attempted_at = utcnow()
            try:
                reports.append(self.validate_transaction(request, config))
            except Exception:
                logger.exception(f"Batch validation error for transaction {request.transaction_id}")
                self.db.rollback()
                report = self.store.latest(
                    TransactionValidationReport, transaction_id=request.transaction_id
                )
                # Only a report written by this attempt, never an earlier run's
                if report is not None and report.started_at >= attempted_at:
                    reports.append(report)

        logger.info(f"Batch validation finished: {len(reports)} of {len(requests)} reports stored")
        return reports

    # ═══════════════════════════════════════════════════════════════════════════
    # VIOLATION RESOLUTION AND QUERIES
    # ═══════════════════════════════════════════════════════════════════════════

    def resolve_violation(self, report_id: int, index: int, resolution_notes: str) -> IntegrityViolation:
        """
        Stamp resolution metadata on one violation of a report.

        Raises:
            ReportNotFoundError: Unknown report
            IndexError: No violation at that position
            InvalidTransitionError: Violation already resolved
        """
        report = self.store.get(TransactionValidationReport, report_id)
        entries = list(report.violations_json or [])
        if not 0 <= index < len(entries):
            raise IndexError(f"Report {report_id} has no violation #{index}")

        violation = IntegrityViolation.from_dict(entries[index])
        if violation.resolved_at is not None:
            raise InvalidTransitionError(f"violation #{index} of report {report_id}", "resolved", "resolved")

        violation.resolved_at = utcnow()
        violation.resolution_notes = resolution_notes
        entries[index] = violation.to_dict()
        report.violations_json = entries
        flag_modified(report, "violations_json")
        self.db.commit()

        logger.info(f"Violation #{index} of report {report_id} resolved")
        return violation

    def get_report(self, report_id: int) -> TransactionValidationReport:
        return self.store.get(TransactionValidationReport, report_id)

    def list_reports(
        self,
        transaction_type: Optional[TransactionType] = None,
        status: Optional[ValidationStatus] = None,
        validation_type: Optional[ValidationType] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: int = 1,
        limit: int = 50,
    ) -> PaginatedReports:
        return self.store.list(
            TransactionValidationReport,
            filters={
                "transaction_type": transaction_type,
                "status": status,
                "validation_type": validation_type,
            },
            start_date=start_date,
            end_date=end_date,
            page=page,
            limit=limit,
        )
