from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Literal
import logging

from .core import AssetLedger, NoShares, StateError, TickClock, require_amount
from .shares import HolderAccount, SettledBalance, ShareLedger

logger = logging.getLogger(__name__)

RewardPolicy = Literal["instant", "streamed"]

@dataclass
class RewardAccumulator:
    cumulative_reward_per_share: int = 0
    total_distributed: int = 0
    # streamed release only
    reward_rate: int = 0
    period_finish: int = 0
    last_update: int = 0
    stranded: int = 0   # released while no shares were outstanding
    carry: int = 0      # amount % duration, released when the period ends

class InstantRelease:
    """Every distribution lands in the accumulator immediately."""

    name = "instant"

    def pending_delta(self, acc: RewardAccumulator, total_shares: int, now: int, precision: int) -> int:
        return 0

    def update(self, acc: RewardAccumulator, total_shares: int, now: int, precision: int) -> None:
        return None

    def notify(self, acc: RewardAccumulator, amount: int, total_shares: int, now: int, precision: int) -> None:
        # floor division; the remainder is dust that never reaches a holder
        acc.cumulative_reward_per_share += amount * precision // total_shares
        acc.total_distributed += amount

class StreamedRelease:
    """
    Distributions are released at a constant rate over `duration` ticks.
    Adding rewards mid-period folds the unreleased remainder into a new rate.
    Whatever the rate cannot express (amount % duration) is released in full
    when the period ends, so every distributed unit is eventually released.
    """

    name = "streamed"

    def __init__(self, duration: int) -> None:
        if duration <= 0:
            raise ValueError("duration must be positive")
        self.duration = int(duration)

    def _elapsed(self, acc: RewardAccumulator, now: int) -> int:
        return max(0, min(now, acc.period_finish) - acc.last_update)

    def _ends_period(self, acc: RewardAccumulator, now: int) -> bool:
        return acc.last_update < acc.period_finish <= now

    def _released(self, acc: RewardAccumulator, now: int) -> int:
        released = acc.reward_rate * self._elapsed(acc, now)
        if self._ends_period(acc, now):
            released += acc.carry
        return released

    def pending_delta(self, acc: RewardAccumulator, total_shares: int, now: int, precision: int) -> int:
        if total_shares <= 0:
            return 0
        return self._released(acc, now) * precision // total_shares

    def update(self, acc: RewardAccumulator, total_shares: int, now: int, precision: int) -> None:
        released = self._released(acc, now)
        if self._ends_period(acc, now):
            acc.carry = 0
        if released:
            if total_shares > 0:
                acc.cumulative_reward_per_share += released * precision // total_shares
                acc.total_distributed += released
            else:
                acc.stranded += released
        acc.last_update = max(acc.last_update, min(now, acc.period_finish))

    def notify(self, acc: RewardAccumulator, amount: int, total_shares: int, now: int, precision: int) -> None:
        pool = amount
        if now < acc.period_finish:
            pool += (acc.period_finish - now) * acc.reward_rate + acc.carry
        acc.reward_rate = pool // self.duration
        acc.carry = pool - acc.reward_rate * self.duration
        acc.last_update = now
        acc.period_finish = now + self.duration

class RewardAccrualEngine:
    """
    Global reward-per-share accumulator with lazy per-holder settlement.

    Every change to a holder's share balance must be preceded by checkpoint()
    with the balance as it stands before the change; ShareLedger only accepts
    the SettledBalance that checkpoint() returns.
    """

    def __init__(
        self,
        shares: ShareLedger,
        ledger: AssetLedger,
        reward_asset_id: str,
        vault_id: str,
        precision: int,
        policy: RewardPolicy = "instant",
        duration: int = 1,
        clock: TickClock | None = None,
    ) -> None:
        self.shares = shares
        self.ledger = ledger
        self.reward_asset_id = reward_asset_id
        self.vault_id = vault_id
        self.precision = int(precision)
        self.clock = clock or TickClock()
        self.release = StreamedRelease(duration) if policy == "streamed" else InstantRelease()
        self.acc = RewardAccumulator()

    @property
    def policy(self) -> str:
        return self.release.name

    def reward_per_share(self) -> int:
        """Accumulator value as of now, including any not-yet-synced streamed release."""
        total = self.shares.total_shares
        return self.acc.cumulative_reward_per_share + self.release.pending_delta(
            self.acc, total, self.clock.now(), self.precision
        )

    def sync(self) -> int:
        before = self.acc.cumulative_reward_per_share
        self.release.update(self.acc, self.shares.total_shares, self.clock.now(), self.precision)
        if self.acc.cumulative_reward_per_share < before:
            raise StateError("reward accumulator decreased")
        return self.acc.cumulative_reward_per_share

    def distribute(self, amount: int) -> int:
        require_amount(amount)
        total = self.shares.total_shares
        if total <= 0:
            raise NoShares("cannot distribute rewards with no shares outstanding")
        self.sync()
        self.release.notify(self.acc, amount, total, self.clock.now(), self.precision)
        logger.debug(
            "rewards distributed amount=%d policy=%s acc=%d",
            amount, self.policy, self.acc.cumulative_reward_per_share,
        )
        return self.acc.cumulative_reward_per_share

    def _settle(self, account: HolderAccount, old_shares: int) -> int:
        current = self.sync()
        accrued = old_shares * (current - account.reward_checkpoint) // self.precision
        account.stored_rewards += accrued
        account.reward_checkpoint = current
        return accrued

    def checkpoint(self, account: HolderAccount, old_shares: int, new_shares: int) -> SettledBalance:
        if old_shares != account.shares:
            raise StateError(
                f"checkpoint for {account.holder_id} must use the pre-change balance "
                f"{account.shares}, got {old_shares}"
            )
        if new_shares < 0:
            raise StateError(f"negative share balance for {account.holder_id}")
        self._settle(account, old_shares)
        return SettledBalance(account.holder_id, account.shares, account.reward_checkpoint)

    def accrued_of(self, account: HolderAccount) -> int:
        current = self.reward_per_share()
        return account.stored_rewards + account.shares * (current - account.reward_checkpoint) // self.precision

    def claim(self, account: HolderAccount) -> int:
        self._settle(account, account.shares)
        amount = account.stored_rewards
        if amount <= 0:
            return 0
        account.stored_rewards = 0
        self.ledger.transfer(self.reward_asset_id, self.vault_id, account.holder_id, amount)
        return amount

    def snapshot(self) -> RewardAccumulator:
        return replace(self.acc)

    def restore(self, state: RewardAccumulator) -> None:
        self.acc = replace(state)
