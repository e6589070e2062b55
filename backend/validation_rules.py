"""
Validation Rule Registry

Static, ordered rule sets per transaction type. The registry is immutable
and safe to share between engine instances.
"""

from types import MappingProxyType
from typing import Mapping, Tuple, Union

from integrity_models import TransactionType, ViolationType
from integrity_types import ValidationRule
import validation_checks as checks


RULES: Mapping[TransactionType, Tuple[ValidationRule, ...]] = MappingProxyType({
    TransactionType.BET_SETTLEMENT: (
        ValidationRule(
            name="balance_integrity_check",
            description="Verify user balance matches expected post-settlement value",
            check=checks.check_balance_integrity,
            critical=True,
            violation_type=ViolationType.BALANCE_MISMATCH,
        ),
        ValidationRule(
            name="bet_state_consistency",
            description="Verify bet status matches settlement outcome",
            check=checks.check_bet_state_consistency,
            critical=True,
            violation_type=ViolationType.STATE_INCONSISTENCY,
        ),
        ValidationRule(
            name="atomicity_verification",
            description="Verify all related records updated consistently",
            check=checks.check_atomicity,
            critical=True,
            violation_type=ViolationType.PARTIAL_UPDATE,
        ),
        ValidationRule(
            name="onchain_reconciliation",
            description="Verify on-chain state matches off-chain records",
            check=checks.check_onchain_reconciliation,
            critical=False,
            violation_type=ViolationType.ONCHAIN_DISCREPANCY,
        ),
    ),
    TransactionType.SPIN_PAYOUT: (
        ValidationRule(
            name="wallet_balance_check",
            description="Verify user wallet balance after spin payout",
            check=checks.check_wallet_balance,
            critical=True,
            violation_type=ViolationType.BALANCE_MISMATCH,
        ),
        ValidationRule(
            name="spin_record_integrity",
            description="Verify spin record matches payout amount",
            check=checks.check_spin_record_integrity,
            critical=True,
            violation_type=ViolationType.STATE_INCONSISTENCY,
        ),
        ValidationRule(
            name="transaction_chain_validation",
            description="Verify all related transactions are consistent",
            check=checks.check_transaction_chain,
            critical=True,
            violation_type=ViolationType.PARTIAL_UPDATE,
        ),
    ),
    TransactionType.STAKING_REWARD: (
        ValidationRule(
            name="reward_amount_validation",
            description="Verify staking reward amount calculation",
            check=checks.check_reward_amount,
            critical=True,
        ),
        ValidationRule(
            name="wallet_balance_integrity",
            description="Verify wallet balance after reward distribution",
            check=checks.check_wallet_balance_integrity,
            critical=True,
        ),
        ValidationRule(
            name="staking_record_consistency",
            description="Verify staking records are properly updated",
            check=checks.check_staking_record_consistency,
            critical=True,
        ),
    ),
    TransactionType.STAKING_PENALTY: (
        ValidationRule(
            name="penalty_calculation_check",
            description="Verify penalty amount calculation",
            check=checks.check_penalty_calculation,
            critical=True,
        ),
        ValidationRule(
            name="balance_deduction_validation",
            description="Verify balance deduction matches penalty",
            check=checks.check_balance_deduction,
            critical=True,
        ),
    ),
    TransactionType.WALLET_TRANSFER: (
        ValidationRule(
            name="sender_balance_check",
            description="Verify sender has sufficient balance",
            check=checks.check_sender_balance,
            critical=True,
        ),
        ValidationRule(
            name="recipient_balance_check",
            description="Verify recipient balance updated correctly",
            check=checks.check_recipient_balance,
            critical=True,
        ),
        ValidationRule(
            name="transaction_amount_integrity",
            description="Verify transfer amount consistency",
            check=checks.check_transfer_amount_integrity,
            critical=True,
        ),
    ),
})


# Entity named on violations for each transaction type
AFFECTED_ENTITY = MappingProxyType({
    TransactionType.BET_SETTLEMENT: "Bet",
    TransactionType.SPIN_PAYOUT: "Spin",
    TransactionType.STAKING_REWARD: "Staking",
    TransactionType.STAKING_PENALTY: "Staking",
    TransactionType.WALLET_TRANSFER: "Transaction",
})


def rules_for(transaction_type: Union[TransactionType, str]) -> Tuple[ValidationRule, ...]:
    """Ordered rules for a transaction type; unknown types get no rules."""
    try:
        transaction_type = TransactionType(transaction_type)
    except ValueError:
        return ()
    return RULES.get(transaction_type, ())


def affected_entity_for(transaction_type: Union[TransactionType, str]) -> str:
    try:
        return AFFECTED_ENTITY[TransactionType(transaction_type)]
    except (ValueError, KeyError):
        return "Transaction"
