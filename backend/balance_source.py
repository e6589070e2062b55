"""
Balance Source Adapter

Contract for the two systems of record the reconciliation engine compares:
the off-chain ledger and the on-chain balance authority.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

from integrity_types import to_decimal


@dataclass(frozen=True)
class BalancePair:
    """Off-chain and on-chain balance of one user at fetch time."""
    user_id: str
    user_email: Optional[str]
    offchain_balance: Decimal
    onchain_balance: Decimal


def pair_balances(
    offchain: Mapping[str, Any],
    onchain: Mapping[str, Any],
    contacts: Optional[Mapping[str, str]] = None,
) -> List[BalancePair]:
    """
    Pair every off-chain user with its on-chain balance.

    A user missing from the on-chain map is paired with 0, never skipped.
    On-chain entries without an off-chain user are not part of the user base
    and are ignored. Output is ordered by user id.
    """
    contacts = contacts or {}
    pairs = []
    for user_id in sorted(offchain, key=str):
        pairs.append(BalancePair(
            user_id=str(user_id),
            user_email=contacts.get(user_id),
            offchain_balance=to_decimal(offchain[user_id]),
            onchain_balance=to_decimal(onchain.get(user_id)),
        ))
    return pairs


class BalanceSource(ABC):
    """
    Base class for balance providers.

    Implementations own how balances are fetched (SQL, contract calls, ...);
    the engine only consumes snapshot().
    """

    @abstractmethod
    def get_offchain_balances(self) -> Dict[str, Any]:
        """Current ledger balance of every user, keyed by user id."""
        pass

    @abstractmethod
    def get_onchain_balances(self, user_ids: Iterable[str]) -> Dict[str, Any]:
        """Batch on-chain balance lookup, keyed by user id."""
        pass

    def get_user_contacts(self) -> Dict[str, str]:
        """Contact reference (email) per user id. Optional."""
        return {}

    def snapshot(self) -> List[BalancePair]:
        offchain = self.get_offchain_balances()
        onchain = self.get_onchain_balances(list(offchain.keys()))
        return pair_balances(offchain, onchain, self.get_user_contacts())


class StaticBalanceSource(BalanceSource):
    """Balance source over fixed maps, for replays and tests."""

    def __init__(
        self,
        offchain: Mapping[str, Any],
        onchain: Mapping[str, Any],
        contacts: Optional[Mapping[str, str]] = None,
    ):
        self.offchain = dict(offchain)
        self.onchain = dict(onchain)
        self.contacts = dict(contacts or {})

    def get_offchain_balances(self) -> Dict[str, Any]:
        return dict(self.offchain)

    def get_onchain_balances(self, user_ids: Iterable[str]) -> Dict[str, Any]:
        wanted = set(user_ids)
        return {k: v for k, v in self.onchain.items() if k in wanted}

    def get_user_contacts(self) -> Dict[str, str]:
        return dict(self.contacts)
