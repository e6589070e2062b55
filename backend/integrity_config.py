"""
Integrity Engine Configuration

Explicit configuration objects for both engines. Each engine invocation
receives its configuration as a parameter; from_env() builds one from
environment variables with the documented defaults.
"""

import os
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from integrity_types import to_decimal


RECONCILIATION_ENV_PREFIX = "RECONCILIATION_"
VALIDATION_ENV_PREFIX = "TRANSACTION_VALIDATION_"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _env_value(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


class ReconciliationConfig(BaseModel):
    """Settings for a balance reconciliation run."""
    tolerance_threshold: Decimal = Field(default=Decimal("0.00000001"), ge=0, le=1, decimal_places=8)
    auto_correct_rounding_differences: bool = True
    auto_correction_threshold: Decimal = Field(default=Decimal("0.000001"), ge=0, decimal_places=8)
    enable_ledger_consistency_check: bool = True
    notify_on_critical_discrepancies: bool = True
    stuck_settlement_threshold_hours: int = Field(default=24, gt=0)

    @field_validator("tolerance_threshold", "auto_correction_threshold", mode="before")
    @classmethod
    def _coerce_amount(cls, value):
        return to_decimal(value)

    @model_validator(mode="after")
    def _check_thresholds(self):
        if self.auto_correction_threshold < self.tolerance_threshold:
            raise ValueError(
                "auto_correction_threshold must be >= tolerance_threshold "
                f"({self.auto_correction_threshold} < {self.tolerance_threshold})"
            )
        return self

    @classmethod
    def from_env(cls) -> "ReconciliationConfig":
        p = RECONCILIATION_ENV_PREFIX
        return cls(
            tolerance_threshold=_env_value(f"{p}TOLERANCE_THRESHOLD", "0.00000001"),
            auto_correct_rounding_differences=_env_bool(f"{p}AUTO_CORRECT_ROUNDING_DIFFERENCES", True),
            auto_correction_threshold=_env_value(f"{p}AUTO_CORRECTION_THRESHOLD", "0.000001"),
            enable_ledger_consistency_check=_env_bool(f"{p}ENABLE_LEDGER_CONSISTENCY_CHECK", True),
            notify_on_critical_discrepancies=_env_bool(f"{p}NOTIFY_ON_CRITICAL_DISCREPANCIES", True),
            stuck_settlement_threshold_hours=int(_env_value(f"{p}STUCK_SETTLEMENT_THRESHOLD_HOURS", "24")),
        )


class TransactionValidationConfig(BaseModel):
    """Settings for post-transaction validation."""
    enabled: bool = True
    auto_rollback_on_critical: bool = True
    critical_violation_threshold: int = Field(default=1, ge=1)
    notify_on_violations: bool = True

    # Which post-transaction hooks should request validation at all
    validate_on_settlement: bool = True
    validate_on_spin: bool = True
    validate_on_staking: bool = True

    # Tolerance used by the on-chain reconciliation rule
    onchain_tolerance: Decimal = Field(default=Decimal("0.00000001"), ge=0, decimal_places=8)

    @field_validator("onchain_tolerance", mode="before")
    @classmethod
    def _coerce_amount(cls, value):
        return to_decimal(value)

    @classmethod
    def from_env(cls) -> "TransactionValidationConfig":
        p = VALIDATION_ENV_PREFIX
        return cls(
            enabled=_env_bool(f"{p}ENABLED", True),
            auto_rollback_on_critical=_env_bool(f"{p}AUTO_ROLLBACK_ON_CRITICAL", True),
            critical_violation_threshold=int(_env_value(f"{p}CRITICAL_VIOLATION_THRESHOLD", "1")),
            notify_on_violations=_env_bool(f"{p}NOTIFY_ON_VIOLATIONS", True),
            validate_on_settlement=_env_bool(f"{p}VALIDATE_ON_SETTLEMENT", True),
            validate_on_spin=_env_bool(f"{p}VALIDATE_ON_SPIN", True),
            validate_on_staking=_env_bool(f"{p}VALIDATE_ON_STAKING", True),
            onchain_tolerance=_env_value(f"{p}ONCHAIN_TOLERANCE", "0.00000001"),
        )
