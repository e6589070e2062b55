"""
Transaction invariant check tests.
Each check is exercised directly against the in-memory repository.
"""

import pytest
from datetime import datetime
from decimal import Decimal

from integrity_models import TransactionType
from validation_checks import (
    BetOutcome, LedgerEntry, SpinRecord, StakeRecord, ValidationContext,
    check_atomicity, check_balance_deduction, check_balance_integrity,
    check_bet_state_consistency, check_onchain_reconciliation, check_penalty_calculation,
    check_recipient_balance, check_reward_amount, check_sender_balance,
    check_spin_record_integrity, check_staking_record_consistency,
    check_transaction_chain, check_transfer_amount_integrity, check_wallet_balance
)


def context_for(repository, transaction_id, transaction_type, reference_id=None, user_id=None, **kwargs):
    return ValidationContext(
        transaction_id=transaction_id,
        transaction_type=transaction_type,
        repository=repository,
        reference_id=reference_id,
        user_id=user_id,
        **kwargs
    )


def entry(entry_id, tx, user, amount, before, after, status="committed", at=None):
    return LedgerEntry(
        entry_id=entry_id,
        transaction_id=tx,
        user_id=user,
        amount=Decimal(amount),
        balance_before=Decimal(before),
        balance_after=Decimal(after),
        status=status,
        created_at=at,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# BET SETTLEMENT
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.mark.unit
class TestBetSettlementChecks:

    def ctx(self, repository, **kwargs):
        kwargs.setdefault("reference_id", "bet-1")
        kwargs.setdefault("user_id", "user-1")
        return context_for(repository, "tx-bet-1", TransactionType.BET_SETTLEMENT, **kwargs)

    def test_consistent_settlement_passes_everything(self, settled_bet):
        ctx = self.ctx(settled_bet)
        for check in (
            check_balance_integrity, check_bet_state_consistency,
            check_atomicity, check_onchain_reconciliation,
        ):
            assert check(ctx).passed, check.__name__

    def test_balance_integrity_mismatch(self, repository):
        repository.add_entry(entry("e-1", "tx-bet-1", "user-1", "150", "100", "260"))
        result = check_balance_integrity(self.ctx(repository))

        assert not result.passed
        assert result.actual_value == Decimal("260")
        assert result.expected_value == Decimal("250")

    def test_balance_integrity_without_entry(self, repository):
        result = check_balance_integrity(self.ctx(repository))
        assert not result.passed
        assert "not found" in result.message

    def test_balance_integrity_picks_single_entry_without_user(self, repository):
        repository.add_entry(entry("e-1", "tx-bet-1", "user-1", "150", "100", "250"))
        assert check_balance_integrity(self.ctx(repository, user_id=None)).passed

    def test_bet_still_pending(self, settled_bet):
        settled_bet.bets["bet-1"] = BetOutcome("bet-1", "user-1", "pending", Decimal("50"), Decimal("0"))
        result = check_bet_state_consistency(self.ctx(settled_bet))

        assert not result.passed
        assert result.actual_value == "pending"

    def test_lost_bet_with_payout(self, settled_bet):
        settled_bet.bets["bet-1"] = BetOutcome("bet-1", "user-1", "lost", Decimal("50"), Decimal("10"))
        assert not check_bet_state_consistency(self.ctx(settled_bet)).passed

    def test_credited_amount_differs_from_payout(self, settled_bet):
        settled_bet.bets["bet-1"] = BetOutcome("bet-1", "user-1", "won", Decimal("50"), Decimal("200"))
        result = check_bet_state_consistency(self.ctx(settled_bet))

        assert not result.passed
        assert result.actual_value == Decimal("150")
        assert result.expected_value == Decimal("200")

    def test_missing_bet_reference(self, settled_bet):
        assert not check_bet_state_consistency(self.ctx(settled_bet, reference_id=None)).passed
        assert not check_bet_state_consistency(self.ctx(settled_bet, reference_id="bet-404")).passed

    def test_partial_update(self, settled_bet):
        settled_bet.add_entry(entry("e-2", "tx-bet-1", "house", "-150", "1000", "850", status="pending"))
        result = check_atomicity(self.ctx(settled_bet))

        assert not result.passed
        assert "e-2" in result.message
        assert result.actual_value == 1
        assert result.expected_value == 2

    def test_onchain_drift_beyond_tolerance(self, settled_bet):
        settled_bet.onchain["user-1"] = Decimal("249.9")
        result = check_onchain_reconciliation(self.ctx(settled_bet))

        assert not result.passed
        assert result.actual_value == Decimal("249.9")

    def test_onchain_drift_within_tolerance(self, settled_bet):
        settled_bet.onchain["user-1"] = Decimal("249.99999999")
        assert check_onchain_reconciliation(self.ctx(settled_bet)).passed

    def test_onchain_uses_context_tolerance(self, settled_bet):
        settled_bet.onchain["user-1"] = Decimal("249.9")
        ctx = self.ctx(settled_bet, onchain_tolerance=Decimal("0.5"))
        assert check_onchain_reconciliation(ctx).passed


# ═══════════════════════════════════════════════════════════════════════════════
# SPIN PAYOUT
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.mark.unit
class TestSpinChecks:

    @pytest.fixture
    def spin(self, repository):
        repository.add_entry(entry("s-e1", "tx-spin", "user-1", "5", "10", "15", at=datetime(2026, 1, 1, 10)))
        repository.spins["spin-1"] = SpinRecord("spin-1", "user-1", Decimal("5"))
        return context_for(repository, "tx-spin", TransactionType.SPIN_PAYOUT, "spin-1", "user-1")

    def test_consistent_spin(self, spin):
        assert check_wallet_balance(spin).passed
        assert check_spin_record_integrity(spin).passed
        assert check_transaction_chain(spin).passed

    def test_spin_payout_mismatch(self, spin, repository):
        repository.spins["spin-1"] = SpinRecord("spin-1", "user-1", Decimal("7"))
        result = check_spin_record_integrity(spin)

        assert not result.passed
        assert result.expected_value == Decimal("7")

    def test_broken_chain(self, spin, repository):
        repository.add_entry(entry("s-e2", "tx-spin", "user-1", "1", "14", "15", at=datetime(2026, 1, 1, 11)))
        result = check_transaction_chain(spin)

        assert not result.passed
        assert result.actual_value == Decimal("14")
        assert result.expected_value == Decimal("15")

    def test_chain_rejects_uncommitted(self, spin, repository):
        repository.add_entry(entry("s-e2", "tx-spin", "user-1", "1", "15", "16", status="failed"))
        assert not check_transaction_chain(spin).passed


# ═══════════════════════════════════════════════════════════════════════════════
# STAKING
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.mark.unit
class TestStakingChecks:

    @pytest.fixture
    def stake(self, repository):
        repository.stakes["stake-1"] = StakeRecord(
            stake_id="stake-1",
            user_id="user-1",
            principal=Decimal("1000"),
            expected_reward=Decimal("12.5"),
            penalty_rate=Decimal("0.1"),
            last_transaction_id="tx-reward",
        )
        return repository

    def test_reward(self, stake):
        stake.add_entry(entry("r-1", "tx-reward", "user-1", "12.5", "100", "112.5"))
        ctx = context_for(stake, "tx-reward", TransactionType.STAKING_REWARD, "stake-1", "user-1")

        assert check_reward_amount(ctx).passed
        assert check_staking_record_consistency(ctx).passed

    def test_wrong_reward(self, stake):
        stake.add_entry(entry("r-1", "tx-reward", "user-1", "13", "100", "113"))
        ctx = context_for(stake, "tx-reward", TransactionType.STAKING_REWARD, "stake-1", "user-1")

        result = check_reward_amount(ctx)
        assert not result.passed
        assert result.expected_value == Decimal("12.5")

    def test_stale_stake_record(self, stake):
        ctx = context_for(stake, "tx-other", TransactionType.STAKING_REWARD, "stake-1", "user-1")
        result = check_staking_record_consistency(ctx)

        assert not result.passed
        assert result.actual_value == "tx-reward"

    def test_penalty(self, stake):
        stake.add_entry(entry("p-1", "tx-penalty", "user-1", "-100", "1000", "900"))
        ctx = context_for(stake, "tx-penalty", TransactionType.STAKING_PENALTY, "stake-1", "user-1")

        assert check_penalty_calculation(ctx).passed
        assert check_balance_deduction(ctx).passed

    def test_penalty_miscalculated(self, stake):
        stake.add_entry(entry("p-1", "tx-penalty", "user-1", "-90", "1000", "910"))
        ctx = context_for(stake, "tx-penalty", TransactionType.STAKING_PENALTY, "stake-1", "user-1")

        result = check_penalty_calculation(ctx)
        assert not result.passed
        assert result.actual_value == Decimal("90")
        assert result.expected_value == Decimal("100")

    def test_penalty_credit_is_not_a_deduction(self, stake):
        stake.add_entry(entry("p-1", "tx-penalty", "user-1", "100", "1000", "1100"))
        ctx = context_for(stake, "tx-penalty", TransactionType.STAKING_PENALTY, "stake-1", "user-1")
        assert not check_balance_deduction(ctx).passed

    def test_missing_stake(self, repository):
        ctx = context_for(repository, "tx-reward", TransactionType.STAKING_REWARD, "stake-404", "user-1")
        assert not check_reward_amount(ctx).passed
        assert not check_staking_record_consistency(ctx).passed
        assert not check_penalty_calculation(ctx).passed


# ═══════════════════════════════════════════════════════════════════════════════
# WALLET TRANSFER
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.mark.unit
class TestTransferChecks:

    def ctx(self, repository):
        return context_for(repository, "tx-transfer", TransactionType.WALLET_TRANSFER)

    def test_balanced_transfer(self, repository):
        repository.add_entry(entry("t-1", "tx-transfer", "alice", "-20", "50", "30"))
        repository.add_entry(entry("t-2", "tx-transfer", "bob", "20", "5", "25"))
        ctx = self.ctx(repository)

        assert check_sender_balance(ctx).passed
        assert check_recipient_balance(ctx).passed
        assert check_transfer_amount_integrity(ctx).passed

    def test_overdrawn_sender(self, repository):
        repository.add_entry(entry("t-1", "tx-transfer", "alice", "-20", "10", "-10"))
        repository.add_entry(entry("t-2", "tx-transfer", "bob", "20", "5", "25"))
        assert not check_sender_balance(self.ctx(repository)).passed

    def test_recipient_not_credited(self, repository):
        repository.add_entry(entry("t-1", "tx-transfer", "alice", "-20", "50", "30"))
        repository.add_entry(entry("t-2", "tx-transfer", "bob", "20", "5", "5"))
        result = check_recipient_balance(self.ctx(repository))

        assert not result.passed
        assert result.expected_value == Decimal("25")

    def test_amounts_do_not_net_to_zero(self, repository):
        repository.add_entry(entry("t-1", "tx-transfer", "alice", "-20", "50", "30"))
        repository.add_entry(entry("t-2", "tx-transfer", "bob", "19", "5", "24"))
        result = check_transfer_amount_integrity(self.ctx(repository))

        assert not result.passed
        assert result.actual_value == Decimal("-1")

    def test_one_sided_transfer(self, repository):
        repository.add_entry(entry("t-2", "tx-transfer", "bob", "20", "5", "25"))
        assert not check_transfer_amount_integrity(self.ctx(repository)).passed
        assert not check_sender_balance(self.ctx(repository)).passed
