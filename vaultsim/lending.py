from __future__ import annotations
from typing import Dict, Protocol, Tuple
import logging

from .core import AssetLedger, require_amount

logger = logging.getLogger(__name__)

class LendingProtocol(Protocol):
    """Yield source a StrategyUnit deploys idle funds into."""

    def deposit(self, depositor: str, asset_id: str, amount: int) -> None: ...

    def withdraw(self, depositor: str, asset_id: str, amount: int) -> int: ...

    def get_balance(self, depositor: str, asset_id: str) -> int: ...

    def claim_rewards(self, depositor: str, asset_id: str) -> int: ...

    def snapshot(self) -> object: ...

    def restore(self, state: object) -> None: ...

class InMemoryLendingPool:
    """Lending market stand-in: holds principal per depositor and pays simple per-tick yield."""

    def __init__(self, ledger: AssetLedger, pool_id: str = "lending:pool") -> None:
        self.ledger = ledger
        self.pool_id = pool_id
        self.deposits: Dict[Tuple[str, str], int] = {}
        self.yields: Dict[Tuple[str, str], int] = {}

    def deposit(self, depositor: str, asset_id: str, amount: int) -> None:
        require_amount(amount)
        self.ledger.transfer(asset_id, depositor, self.pool_id, amount)
        key = (depositor, asset_id)
        self.deposits[key] = self.deposits.get(key, 0) + amount

    def withdraw(self, depositor: str, asset_id: str, amount: int) -> int:
        key = (depositor, asset_id)
        actual = min(int(amount), self.deposits.get(key, 0))
        if actual <= 0:
            return 0
        self.deposits[key] -= actual
        self.ledger.transfer(asset_id, self.pool_id, depositor, actual)
        return actual

    def get_balance(self, depositor: str, asset_id: str) -> int:
        return self.deposits.get((depositor, asset_id), 0)

    def pending_rewards(self, depositor: str, asset_id: str) -> int:
        return self.yields.get((depositor, asset_id), 0)

    def accrue_yield(self, rate: float) -> int:
        """Mint `rate` of each principal as claimable yield; returns the total minted."""
        minted = 0
        for (depositor, asset_id), principal in self.deposits.items():
            earned = int(principal * rate)
            if earned <= 0:
                continue
            self.ledger.mint(asset_id, self.pool_id, earned)
            key = (depositor, asset_id)
            self.yields[key] = self.yields.get(key, 0) + earned
            minted += earned
        return minted

    def claim_rewards(self, depositor: str, asset_id: str) -> int:
        key = (depositor, asset_id)
        amount = self.yields.pop(key, 0)
        if amount > 0:
            self.ledger.transfer(asset_id, self.pool_id, depositor, amount)
            logger.debug("yield claimed depositor=%s asset=%s amount=%d", depositor, asset_id, amount)
        return amount

    def snapshot(self) -> tuple:
        return dict(self.deposits), dict(self.yields)

    def restore(self, state: tuple) -> None:
        deposits, yields = state
        self.deposits = dict(deposits)
        self.yields = dict(yields)
