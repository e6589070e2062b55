"""
Rollback Coordinator

Applies compensating writes for a transaction whose validation found critical
violations. All writes plus the report's rollback fields are committed in a
single database transaction: either everything is visible or nothing is.
"""

from typing import Callable, Dict, Optional, Sequence
import logging

from sqlalchemy.orm import Session

from integrity_errors import RollbackError
from integrity_models import (
    CompensatingEntry, TransactionValidationReport, TransactionType, ValidationStatus,
    VALIDATION_TRANSITIONS, check_transition, utcnow
)
from integrity_types import IntegrityViolation
from validation_checks import COMMITTED, EntityRepository

logger = logging.getLogger(__name__)

# (db, report, repository, reason) -> number of compensating writes staged
Compensator = Callable[[Session, TransactionValidationReport, EntityRepository, str], int]


def reverse_ledger_entries(
    db: Session,
    report: TransactionValidationReport,
    repository: EntityRepository,
    reason: str,
) -> int:
    """Stage one negating CompensatingEntry per committed ledger entry of the transaction."""
    staged = 0
    for entry in repository.get_ledger_entries(report.transaction_id):
        if entry.status != COMMITTED:
            continue
        db.add(CompensatingEntry(
            report_id=report.id,
            transaction_id=report.transaction_id,
            user_id=entry.user_id,
            original_entry_id=entry.entry_id,
            amount=-entry.amount,
            reason=reason,
        ))
        staged += 1
    return staged


class RollbackCoordinator:
    """
    Reverses a validated transaction.

    The default compensator reverses ledger entries; callers can register a
    different one per transaction type.
    """

    def __init__(
        self,
        db: Session,
        repository: EntityRepository,
        compensators: Optional[Dict[TransactionType, Compensator]] = None,
    ):
        self.db = db
        self.repository = repository
        self.compensators = dict(compensators or {})

    def compensator_for(self, transaction_type: str) -> Compensator:
        try:
            return self.compensators.get(TransactionType(transaction_type), reverse_ledger_entries)
        except ValueError:
            return reverse_ledger_entries

    def rollback(
        self,
        report: TransactionValidationReport,
        reason: str,
        violations: Sequence[IntegrityViolation],
    ) -> TransactionValidationReport:
        """
        Compensate the report's transaction and mark the report rolled back.

        Raises:
            RollbackError: compensating writes failed; the session was rolled
                back so the report keeps status failed and rollback_triggered False
        """
        transaction_id = report.transaction_id
        logger.warning(
            f"Triggering rollback for transaction {transaction_id}: {reason} "
            f"({len(violations)} violations)"
        )

        try:
            check_transition(
                f"validation report {report.id}", VALIDATION_TRANSITIONS,
                report.status, ValidationStatus.ROLLED_BACK
            )
            compensate = self.compensator_for(report.transaction_type)
            staged = compensate(self.db, report, self.repository, reason)

            report.rollback_triggered = True
            report.rollback_reason = reason
            report.rollback_completed_at = utcnow()
            report.status = ValidationStatus.ROLLED_BACK.value
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Rollback failed for transaction {transaction_id}: {e}")
            raise RollbackError(transaction_id, str(e)) from e

        logger.info(f"Rollback completed for transaction {transaction_id} ({staged} compensating entries)")
        return report
