"""
Ledger Integrity Errors

Error taxonomy shared by the reconciliation and transaction validation engines.
"""


class LedgerIntegrityError(Exception):
    """Base class for integrity engine errors"""
    pass


class ValidationDisabledError(LedgerIntegrityError):
    """Raised when validation is requested while disabled by configuration"""
    pass


class RollbackError(LedgerIntegrityError):
    """
    Raised when compensating writes for a transaction could not be committed.

    Nothing written by the failed rollback is visible; the validation report
    keeps rollback_triggered = False.
    """

    def __init__(self, transaction_id: str, message: str):
        self.transaction_id = transaction_id
        super().__init__(f"Rollback failed for transaction {transaction_id}: {message}")


class InvalidTransitionError(LedgerIntegrityError):
    """Raised when a status change would move a report or discrepancy backwards"""

    def __init__(self, subject: str, current: str, target: str):
        self.subject = subject
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {subject} from {current} to {target}")


class ReportNotFoundError(LedgerIntegrityError):
    """Raised when a report id does not exist"""
    pass
