"""
Report Store

Query access to persisted reconciliation and validation reports: lookup by id,
filtered pagination, and detection of runs stuck in their initial state.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Type, Union
import math

from sqlalchemy.orm import Session

from integrity_errors import ReportNotFoundError
from integrity_models import (
    ReconciliationReport, TransactionValidationReport,
    ReportStatus, ValidationStatus, utcnow
)

AnyReport = Union[ReconciliationReport, TransactionValidationReport]

# Status a report holds while its run is still in progress
_IN_PROGRESS = {
    ReconciliationReport: ReportStatus.RUNNING.value,
    TransactionValidationReport: ValidationStatus.PENDING.value,
}


@dataclass
class PaginatedReports:
    data: List[Any]
    total: int
    page: int
    limit: int
    total_pages: int


class ReportStore:
    """Read side of the report tables."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, model: Type[AnyReport], report_id: int) -> AnyReport:
        report = self.db.query(model).filter(model.id == report_id).first()
        if not report:
            raise ReportNotFoundError(f"{model.__name__} {report_id} not found")
        return report

    def latest(self, model: Type[AnyReport], **filters) -> Optional[AnyReport]:
        """Most recently created report matching equality filters."""
        query = self.db.query(model)
        for column, value in filters.items():
            query = query.filter(getattr(model, column) == _plain(value))
        return query.order_by(model.created_at.desc(), model.id.desc()).first()

    def list(
        self,
        model: Type[AnyReport],
        filters: Optional[Dict[str, Any]] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: int = 1,
        limit: int = 50,
    ) -> PaginatedReports:
        """
        Paginated listing, newest first.

        Args:
            model: Report class to query
            filters: column name -> value equality filters; None values are skipped
            start_date: Inclusive lower bound on created_at
            end_date: Inclusive upper bound on created_at
            page: 1-based page number
            limit: Page size
        """
        page = max(page, 1)
        limit = max(limit, 1)

        query = self.db.query(model)
        for column, value in (filters or {}).items():
            if value is not None:
                query = query.filter(getattr(model, column) == _plain(value))
        if start_date is not None:
            query = query.filter(model.created_at >= start_date)
        if end_date is not None:
            query = query.filter(model.created_at <= end_date)

        total = query.count()
        data = (
            query.order_by(model.created_at.desc(), model.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return PaginatedReports(
            data=data,
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        )

    def find_stuck(
        self,
        model: Type[AnyReport],
        older_than: timedelta,
        now: Optional[datetime] = None,
    ) -> List[AnyReport]:
        """Reports still in their in-progress state that started before now - older_than."""
        cutoff = (now or utcnow()) - older_than
        return (
            self.db.query(model)
            .filter(model.status == _IN_PROGRESS[model])
            .filter(model.started_at < cutoff)
            .order_by(model.started_at.asc())
            .all()
        )


def _plain(value: Any) -> Any:
    return getattr(value, "value", value)
