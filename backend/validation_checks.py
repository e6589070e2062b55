"""
Transaction invariant checks

Each check takes a ValidationContext and returns a ValidationResult. Checks
only read state through the context's EntityRepository; a missing record is
a failed result, while a repository error is left to propagate so the engine
can record it as an unverifiable (critical) check.

The engine stamps rule_name and timestamp on every result.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Sequence

from integrity_models import TransactionType
from integrity_types import ValidationResult


PENALTY_QUANTUM = Decimal("0.00000001")
COMMITTED = "committed"


# ═══════════════════════════════════════════════════════════════════════════════
# DOMAIN RECORDS AND REPOSITORY CONTRACT
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class LedgerEntry:
    """One balance movement written by a financial operation."""
    entry_id: str
    transaction_id: str
    user_id: str
    amount: Decimal  # signed: credit > 0, debit < 0
    balance_before: Decimal
    balance_after: Decimal
    status: str = COMMITTED
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class BetOutcome:
    bet_id: str
    user_id: str
    status: str  # pending, won, lost
    stake: Decimal
    payout: Decimal


@dataclass(frozen=True)
class SpinRecord:
    spin_id: str
    user_id: str
    payout: Decimal


@dataclass(frozen=True)
class StakeRecord:
    stake_id: str
    user_id: str
    principal: Decimal
    expected_reward: Decimal
    penalty_rate: Decimal
    last_transaction_id: Optional[str] = None


class EntityRepository(Protocol):
    """Read-only lookups over the domain stores."""

    def get_ledger_entries(self, transaction_id: str) -> Sequence[LedgerEntry]:
        ...

    def get_bet(self, bet_id: str) -> Optional[BetOutcome]:
        ...

    def get_spin(self, spin_id: str) -> Optional[SpinRecord]:
        ...

    def get_stake(self, stake_id: str) -> Optional[StakeRecord]:
        ...

    def get_offchain_balance(self, user_id: str) -> Decimal:
        ...

    def get_onchain_balance(self, user_id: str) -> Decimal:
        ...


@dataclass
class ValidationContext:
    transaction_id: str
    transaction_type: TransactionType
    repository: EntityRepository
    reference_id: Optional[str] = None
    user_id: Optional[str] = None
    onchain_tolerance: Decimal = Decimal("0.00000001")
    metadata: Dict[str, Any] = field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════════════

def _result(passed: bool, message: str, actual: Any = None, expected: Any = None) -> ValidationResult:
    return ValidationResult(
        rule_name="",
        passed=passed,
        actual_value=actual,
        expected_value=expected,
        message=message,
    )


def _user_entry(context: ValidationContext) -> Optional[LedgerEntry]:
    """The entry of the context user, or the only entry when no user is given."""
    entries = context.repository.get_ledger_entries(context.transaction_id)
    if context.user_id is not None:
        for entry in entries:
            if entry.user_id == context.user_id:
                return entry
        return None
    return entries[0] if len(entries) == 1 else None


def _missing(what: str, context: ValidationContext) -> ValidationResult:
    return _result(False, f"{what} not found for transaction {context.transaction_id}")


def _balance_arithmetic(context: ValidationContext, label: str) -> ValidationResult:
    entry = _user_entry(context)
    if entry is None:
        return _missing("Ledger entry", context)

    expected = entry.balance_before + entry.amount
    if entry.balance_after != expected:
        return _result(
            False,
            f"{label}: balance after {entry.balance_after} != {entry.balance_before} + {entry.amount}",
            actual=entry.balance_after,
            expected=expected,
        )
    return _result(True, f"{label} check passed", actual=entry.balance_after, expected=expected)


def _uncommitted(entries: Sequence[LedgerEntry]) -> List[str]:
    return [e.entry_id for e in entries if e.status != COMMITTED]


# ═══════════════════════════════════════════════════════════════════════════════
# BALANCE CHECKS
# ═══════════════════════════════════════════════════════════════════════════════

def check_balance_integrity(context: ValidationContext) -> ValidationResult:
    """User balance equals the expected post-settlement value."""
    return _balance_arithmetic(context, "Balance integrity")


def check_wallet_balance(context: ValidationContext) -> ValidationResult:
    return _balance_arithmetic(context, "Wallet balance")


def check_wallet_balance_integrity(context: ValidationContext) -> ValidationResult:
    return _balance_arithmetic(context, "Wallet balance integrity")


def check_balance_deduction(context: ValidationContext) -> ValidationResult:
    """Penalty entry is a debit and the balance dropped by exactly that amount."""
    entry = _user_entry(context)
    if entry is None:
        return _missing("Ledger entry", context)
    if entry.amount >= 0:
        return _result(False, f"Penalty entry {entry.entry_id} is not a debit", actual=entry.amount)
    return _balance_arithmetic(context, "Balance deduction")


def check_onchain_reconciliation(context: ValidationContext) -> ValidationResult:
    """Off-chain and on-chain balance of the user agree within tolerance."""
    user_id = context.user_id
    if user_id is None:
        entry = _user_entry(context)
        if entry is None:
            return _missing("Ledger entry", context)
        user_id = entry.user_id

    offchain = context.repository.get_offchain_balance(user_id)
    onchain = context.repository.get_onchain_balance(user_id)
    difference = abs(offchain - onchain)
    if difference > context.onchain_tolerance:
        return _result(
            False,
            f"On-chain balance {onchain} differs from off-chain {offchain} by {difference}",
            actual=onchain,
            expected=offchain,
        )
    return _result(True, "On-chain reconciliation check passed", actual=onchain, expected=offchain)


# ═══════════════════════════════════════════════════════════════════════════════
# STATE CHECKS
# ═══════════════════════════════════════════════════════════════════════════════

def check_bet_state_consistency(context: ValidationContext) -> ValidationResult:
    """Bet status matches the settlement outcome and the credited payout."""
    if context.reference_id is None:
        return _result(False, "Bet settlement has no bet reference")
    bet = context.repository.get_bet(context.reference_id)
    if bet is None:
        return _missing(f"Bet {context.reference_id}", context)

    if bet.status not in ("won", "lost"):
        return _result(False, f"Bet {bet.bet_id} is still {bet.status}", actual=bet.status, expected="won|lost")
    if bet.status == "won" and bet.payout <= 0:
        return _result(False, f"Bet {bet.bet_id} won with payout {bet.payout}", actual=bet.payout)
    if bet.status == "lost" and bet.payout != 0:
        return _result(False, f"Bet {bet.bet_id} lost with payout {bet.payout}", actual=bet.payout, expected=Decimal("0"))

    entries = context.repository.get_ledger_entries(context.transaction_id)
    credited = sum((e.amount for e in entries if e.user_id == bet.user_id and e.amount > 0), Decimal("0"))
    if credited != bet.payout:
        return _result(
            False,
            f"Credited {credited} for bet {bet.bet_id}, payout is {bet.payout}",
            actual=credited,
            expected=bet.payout,
        )
    return _result(True, "Bet state consistency check passed", actual=bet.status)


def check_atomicity(context: ValidationContext) -> ValidationResult:
    """Every record written by the transaction was committed."""
    entries = context.repository.get_ledger_entries(context.transaction_id)
    if not entries:
        return _missing("Ledger entries", context)

    pending = _uncommitted(entries)
    if pending:
        return _result(
            False,
            f"{len(pending)} of {len(entries)} entries not committed: {', '.join(pending)}",
            actual=len(entries) - len(pending),
            expected=len(entries),
        )
    return _result(True, "Atomicity check passed", actual=len(entries), expected=len(entries))


def check_transaction_chain(context: ValidationContext) -> ValidationResult:
    """
    Entries are committed and chain per user: each balance_before equals the
    previous entry's balance_after.
    """
    entries = context.repository.get_ledger_entries(context.transaction_id)
    if not entries:
        return _missing("Ledger entries", context)

    pending = _uncommitted(entries)
    if pending:
        return _result(False, f"Uncommitted entries in chain: {', '.join(pending)}")

    last_after: Dict[str, Decimal] = {}
    ordered = sorted(entries, key=lambda e: (e.created_at or datetime.min, e.entry_id))
    for entry in ordered:
        previous = last_after.get(entry.user_id)
        if previous is not None and entry.balance_before != previous:
            return _result(
                False,
                f"Entry {entry.entry_id} starts at {entry.balance_before}, previous entry ended at {previous}",
                actual=entry.balance_before,
                expected=previous,
            )
        last_after[entry.user_id] = entry.balance_after
    return _result(True, "Transaction chain validation passed", actual=len(entries))


def check_spin_record_integrity(context: ValidationContext) -> ValidationResult:
    if context.reference_id is None:
        return _result(False, "Spin payout has no spin reference")
    spin = context.repository.get_spin(context.reference_id)
    if spin is None:
        return _missing(f"Spin {context.reference_id}", context)

    entries = context.repository.get_ledger_entries(context.transaction_id)
    credited = sum((e.amount for e in entries if e.user_id == spin.user_id and e.amount > 0), Decimal("0"))
    if credited != spin.payout:
        return _result(
            False,
            f"Spin {spin.spin_id} payout {spin.payout} but {credited} credited",
            actual=credited,
            expected=spin.payout,
        )
    return _result(True, "Spin record integrity check passed", actual=credited, expected=spin.payout)


# ═══════════════════════════════════════════════════════════════════════════════
# STAKING CHECKS
# ═══════════════════════════════════════════════════════════════════════════════

def _stake(context: ValidationContext) -> Optional[StakeRecord]:
    if context.reference_id is None:
        return None
    return context.repository.get_stake(context.reference_id)


def check_reward_amount(context: ValidationContext) -> ValidationResult:
    stake = _stake(context)
    if stake is None:
        return _missing(f"Stake {context.reference_id}", context)
    entry = _user_entry(context)
    if entry is None:
        return _missing("Ledger entry", context)

    if entry.amount != stake.expected_reward:
        return _result(
            False,
            f"Reward credited {entry.amount}, stake {stake.stake_id} expects {stake.expected_reward}",
            actual=entry.amount,
            expected=stake.expected_reward,
        )
    return _result(True, "Reward amount validation passed", actual=entry.amount, expected=stake.expected_reward)


def check_staking_record_consistency(context: ValidationContext) -> ValidationResult:
    """Stake record points at this transaction as its latest applied change."""
    stake = _stake(context)
    if stake is None:
        return _missing(f"Stake {context.reference_id}", context)
    if stake.last_transaction_id != context.transaction_id:
        return _result(
            False,
            f"Stake {stake.stake_id} last updated by {stake.last_transaction_id}",
            actual=stake.last_transaction_id,
            expected=context.transaction_id,
        )
    return _result(True, "Staking record consistency check passed")


def check_penalty_calculation(context: ValidationContext) -> ValidationResult:
    """Deducted penalty == principal * penalty_rate, rounded to 8 places."""
    stake = _stake(context)
    if stake is None:
        return _missing(f"Stake {context.reference_id}", context)
    entry = _user_entry(context)
    if entry is None:
        return _missing("Ledger entry", context)

    expected = (stake.principal * stake.penalty_rate).quantize(PENALTY_QUANTUM)
    deducted = -entry.amount
    if deducted != expected:
        return _result(
            False,
            f"Penalty deducted {deducted}, expected {expected}",
            actual=deducted,
            expected=expected,
        )
    return _result(True, "Penalty calculation check passed", actual=deducted, expected=expected)


# ═══════════════════════════════════════════════════════════════════════════════
# TRANSFER CHECKS
# ═══════════════════════════════════════════════════════════════════════════════

def check_sender_balance(context: ValidationContext) -> ValidationResult:
    """Sender had enough funds for every debit."""
    entries = context.repository.get_ledger_entries(context.transaction_id)
    debits = [e for e in entries if e.amount < 0]
    if not debits:
        return _missing("Debit entry", context)

    for debit in debits:
        if debit.balance_before < -debit.amount:
            return _result(
                False,
                f"Sender {debit.user_id} had {debit.balance_before}, transferred {-debit.amount}",
                actual=debit.balance_before,
                expected=-debit.amount,
            )
    return _result(True, "Sender balance check passed")


def check_recipient_balance(context: ValidationContext) -> ValidationResult:
    """Every credit landed on the recipient's balance."""
    entries = context.repository.get_ledger_entries(context.transaction_id)
    credits = [e for e in entries if e.amount > 0]
    if not credits:
        return _missing("Credit entry", context)

    for credit in credits:
        expected = credit.balance_before + credit.amount
        if credit.balance_after != expected:
            return _result(
                False,
                f"Recipient {credit.user_id} balance {credit.balance_after}, expected {expected}",
                actual=credit.balance_after,
                expected=expected,
            )
    return _result(True, "Recipient balance check passed")


def check_transfer_amount_integrity(context: ValidationContext) -> ValidationResult:
    """Debits and credits of the transfer net to zero."""
    entries = context.repository.get_ledger_entries(context.transaction_id)
    if not any(e.amount < 0 for e in entries) or not any(e.amount > 0 for e in entries):
        return _result(False, "Transfer must have both a debit and a credit entry", actual=len(entries))

    net = sum((e.amount for e in entries), Decimal("0"))
    if net != 0:
        return _result(False, f"Transfer entries net to {net}", actual=net, expected=Decimal("0"))
    return _result(True, "Transfer amount integrity check passed", actual=net, expected=Decimal("0"))
