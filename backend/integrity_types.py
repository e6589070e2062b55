"""
Value types embedded in integrity reports.

These are stored as JSON documents on their parent report; they are never
persisted or referenced on their own.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, Optional

from integrity_models import (
    DiscrepancyStatus, InconsistencyType, Severity, ViolationType, utcnow
)


def to_decimal(value: Any) -> Decimal:
    """
    Convert a balance from any collaborator into a Decimal.

    Floats go through str() so that 99.99999999 stays 99.99999999.
    None counts as zero.
    """
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Not a numeric amount: {value!r}")


def json_value(value: Any) -> Any:
    """Make a value safe for a JSON column."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_value(v) for v in value]
    return value


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ═══════════════════════════════════════════════════════════════════════════════
# BALANCE DISCREPANCY
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class BalanceDiscrepancy:
    """Off-chain vs on-chain balance difference for one user."""
    user_id: str
    user_email: Optional[str]
    offchain_balance: Decimal
    onchain_balance: Decimal
    difference: Decimal
    tolerance_threshold: Decimal
    is_within_tolerance: bool
    category: InconsistencyType
    severity: Severity
    status: DiscrepancyStatus = DiscrepancyStatus.DETECTED
    detected_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None

    @classmethod
    def between(
        cls,
        user_id: str,
        user_email: Optional[str],
        offchain_balance: Decimal,
        onchain_balance: Decimal,
        tolerance_threshold: Decimal,
        category: InconsistencyType,
        severity: Severity,
    ) -> "BalanceDiscrepancy":
        """Build a discrepancy with difference and tolerance flag derived from the balances."""
        difference = abs(offchain_balance - onchain_balance)
        return cls(
            user_id=user_id,
            user_email=user_email,
            offchain_balance=offchain_balance,
            onchain_balance=onchain_balance,
            difference=difference,
            tolerance_threshold=tolerance_threshold,
            is_within_tolerance=difference <= tolerance_threshold,
            category=category,
            severity=severity,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "user_email": self.user_email,
            "offchain_balance": json_value(self.offchain_balance),
            "onchain_balance": json_value(self.onchain_balance),
            "difference": json_value(self.difference),
            "tolerance_threshold": json_value(self.tolerance_threshold),
            "is_within_tolerance": self.is_within_tolerance,
            "category": self.category.value,
            "severity": self.severity.value,
            "status": self.status.value,
            "detected_at": json_value(self.detected_at),
            "resolved_at": json_value(self.resolved_at),
            "resolution_notes": self.resolution_notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BalanceDiscrepancy":
        return cls(
            user_id=data["user_id"],
            user_email=data.get("user_email"),
            offchain_balance=Decimal(data["offchain_balance"]),
            onchain_balance=Decimal(data["onchain_balance"]),
            difference=Decimal(data["difference"]),
            tolerance_threshold=Decimal(data["tolerance_threshold"]),
            is_within_tolerance=data["is_within_tolerance"],
            category=InconsistencyType(data["category"]),
            severity=Severity(data["severity"]),
            status=DiscrepancyStatus(data["status"]),
            detected_at=_parse_datetime(data.get("detected_at")),
            resolved_at=_parse_datetime(data.get("resolved_at")),
            resolution_notes=data.get("resolution_notes"),
        )


# ═══════════════════════════════════════════════════════════════════════════════
# VALIDATION RULES AND RESULTS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ValidationRule:
    """
    A named invariant check for one transaction type.

    `check` is the callable that evaluates the invariant; `critical` decides
    whether a failure counts toward the rollback threshold.
    """
    name: str
    description: str
    check: Callable[..., "ValidationResult"]
    critical: bool
    violation_type: ViolationType = ViolationType.TRANSACTION_ROLLBACK

    @property
    def check_name(self) -> str:
        return f"{self.check.__module__}.{self.check.__qualname__}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "check": self.check_name,
            "critical": self.critical,
            "violation_type": self.violation_type.value,
        }


@dataclass
class ValidationResult:
    """Outcome of one rule execution."""
    rule_name: str
    passed: bool
    actual_value: Any = None
    expected_value: Any = None
    message: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_name": self.rule_name,
            "passed": self.passed,
            "actual_value": json_value(self.actual_value),
            "expected_value": json_value(self.expected_value),
            "message": self.message,
            "timestamp": json_value(self.timestamp),
        }


# ═══════════════════════════════════════════════════════════════════════════════
# INTEGRITY VIOLATION
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class IntegrityViolation:
    """A failed invariant, owned by the report that detected it."""
    violation_type: str
    severity: Severity
    description: str
    affected_entity: str
    affected_id: str
    current_value: Any = None
    expected_value: Any = None
    detected_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None

    @property
    def is_critical(self) -> bool:
        return self.severity == Severity.CRITICAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.violation_type,
            "severity": self.severity.value,
            "description": self.description,
            "affected_entity": self.affected_entity,
            "affected_id": self.affected_id,
            "current_value": json_value(self.current_value),
            "expected_value": json_value(self.expected_value),
            "detected_at": json_value(self.detected_at),
            "resolved_at": json_value(self.resolved_at),
            "resolution_notes": self.resolution_notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IntegrityViolation":
        return cls(
            violation_type=data["type"],
            severity=Severity(data["severity"]),
            description=data["description"],
            affected_entity=data["affected_entity"],
            affected_id=data["affected_id"],
            current_value=data.get("current_value"),
            expected_value=data.get("expected_value"),
            detected_at=_parse_datetime(data.get("detected_at")),
            resolved_at=_parse_datetime(data.get("resolved_at")),
            resolution_notes=data.get("resolution_notes"),
        )
