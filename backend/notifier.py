"""
Violation and discrepancy notification.

Delivery (email, chat, pager) lives outside this service; engines hand their
findings to a Notifier and never let a notification failure change a report.
"""

from typing import Protocol, Sequence, Union
import logging

from integrity_models import Severity
from integrity_types import BalanceDiscrepancy, IntegrityViolation

logger = logging.getLogger(__name__)

Finding = Union[IntegrityViolation, BalanceDiscrepancy]


class Notifier(Protocol):
    def notify(self, report_id: int, items: Sequence[Finding]) -> None:
        ...


class LoggingNotifier:
    """Default notifier: writes findings to the application log."""

    def notify(self, report_id: int, items: Sequence[Finding]) -> None:
        critical = [i for i in items if i.severity == Severity.CRITICAL]
        high = [i for i in items if i.severity == Severity.HIGH]

        if critical:
            logger.error(
                f"CRITICAL findings in report {report_id}: {len(critical)} critical issues"
            )
        if high:
            logger.warning(
                f"High severity findings in report {report_id}: {len(high)} issues"
            )
        if not critical and not high:
            logger.info(f"Report {report_id}: {len(items)} low/medium findings")


def notify_safely(notifier: Notifier, report_id: int, items: Sequence[Finding]) -> bool:
    """
    Fire-and-forget delivery. Returns False if the notifier raised.
    """
    try:
        notifier.notify(report_id, items)
        return True
    except Exception:
        logger.exception(f"Notifier failed for report {report_id}")
        return False
