from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterator, Tuple

from .core import InsufficientBalance, StateError, require_amount, require_principal

@dataclass
class HolderAccount:
    holder_id: str
    shares: int = 0
    reward_checkpoint: int = 0
    stored_rewards: int = 0

@dataclass(frozen=True)
class SettledBalance:
    """
    Proof that a holder's rewards were settled against their current share balance.
    Issued by RewardAccrualEngine.checkpoint and consumed by ShareLedger.mint/burn.
    """
    holder_id: str
    shares: int
    checkpoint: int

class ShareLedger:
    def __init__(self) -> None:
        self.accounts: Dict[str, HolderAccount] = {}
        self.total_shares: int = 0

    def account(self, holder_id: str) -> HolderAccount:
        """Get or create; accounts persist at zero balance to keep their checkpoint."""
        require_principal(holder_id, "holder")
        acct = self.accounts.get(holder_id)
        if acct is None:
            acct = HolderAccount(holder_id=holder_id)
            self.accounts[holder_id] = acct
        return acct

    def shares_of(self, holder_id: str) -> int:
        acct = self.accounts.get(holder_id)
        return acct.shares if acct else 0

    def holders(self) -> Iterator[HolderAccount]:
        return iter(self.accounts.values())

    def _check_receipt(self, settled: SettledBalance) -> HolderAccount:
        acct = self.account(settled.holder_id)
        if acct.shares != settled.shares or acct.reward_checkpoint != settled.checkpoint:
            raise StateError(f"stale settlement for {settled.holder_id}; checkpoint before changing shares")
        return acct

    def mint(self, settled: SettledBalance, amount: int) -> int:
        require_amount(amount)
        acct = self._check_receipt(settled)
        acct.shares += amount
        self.total_shares += amount
        return acct.shares

    def burn(self, settled: SettledBalance, amount: int) -> int:
        require_amount(amount)
        acct = self._check_receipt(settled)
        if acct.shares < amount:
            raise InsufficientBalance(f"{acct.holder_id} holds {acct.shares} shares, burn needs {amount}")
        acct.shares -= amount
        self.total_shares -= amount
        return acct.shares

    def snapshot(self) -> Tuple[Dict[str, tuple], int]:
        accounts = {
            hid: (a.shares, a.reward_checkpoint, a.stored_rewards)
            for hid, a in self.accounts.items()
        }
        return accounts, self.total_shares

    def restore(self, state: Tuple[Dict[str, tuple], int]) -> None:
        accounts, total = state
        self.accounts = {
            hid: HolderAccount(hid, shares, checkpoint, stored)
            for hid, (shares, checkpoint, stored) in accounts.items()
        }
        self.total_shares = total
