from __future__ import annotations
from typing import Dict, Optional, Tuple
import logging

from .config import BPS
from .core import (
    AssetLedger, InsufficientLiquidity, InsufficientReserve, ValidationError, require_amount,
    saturating_sub,
)
from .strategy import StrategyUnit

logger = logging.getLogger(__name__)

class LiquidityController:
    """
    Reserve policy for the pooled asset.

    reserve_required = max(reserve_ratio_bps * total_assets / 10000, min_liquidity)
    Only liquid funds above that line may be allocated to strategies.
    """

    def __init__(self, ledger: AssetLedger, asset_id: str, vault_id: str,
                 reserve_ratio_bps: int, min_liquidity: int) -> None:
        self.ledger = ledger
        self.asset_id = asset_id
        self.vault_id = vault_id
        self.reserve_ratio_bps = int(reserve_ratio_bps)
        self.min_liquidity = int(min_liquidity)
        self.total_allocated: int = 0
        self.allocated_by_strategy: Dict[str, int] = {}
        self.saturation_count: int = 0

    # -- views --
    def liquid_balance(self) -> int:
        return self.ledger.balance_of(self.asset_id, self.vault_id)

    def total_assets(self) -> int:
        return self.liquid_balance() + self.total_allocated

    def reserve_required(self) -> int:
        return max(self.reserve_ratio_bps * self.total_assets() // BPS, self.min_liquidity)

    def max_allocatable(self) -> int:
        return max(self.liquid_balance() - self.reserve_required(), 0)

    def can_withdraw_simple(self, amount: int) -> Tuple[bool, str]:
        remaining = self.liquid_balance() - amount
        if remaining < 0:
            return False, "insufficient_liquidity"
        if remaining < self.reserve_required():
            return False, "reserve_guardrail"
        if remaining < self.min_liquidity:
            return False, "min_liquidity_guardrail"
        return True, "ok"

    # -- parameters --
    def set_reserve_ratio(self, bps: int) -> None:
        if isinstance(bps, bool) or not isinstance(bps, int) or not 0 <= bps <= BPS:
            raise ValidationError(f"reserve ratio must be within 0..{BPS} bps, got {bps!r}")
        self.reserve_ratio_bps = bps

    def set_min_liquidity(self, amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise ValidationError(f"min liquidity must be a non-negative integer, got {amount!r}")
        self.min_liquidity = amount

    # -- allocation --
    def _reduce_allocated(self, strategy_id: str, amount: int) -> None:
        self.total_allocated, saturated = saturating_sub(self.total_allocated, amount, "total_allocated")
        if saturated:
            self.saturation_count += 1
        self.allocated_by_strategy[strategy_id], _ = saturating_sub(
            self.allocated_by_strategy.get(strategy_id, 0), amount, f"allocated[{strategy_id}]"
        )

    def allocate(self, strategy: StrategyUnit, amount: int) -> int:
        require_amount(amount)
        headroom = self.max_allocatable()
        if amount > headroom:
            raise InsufficientReserve(
                f"allocation of {amount} exceeds allocatable {headroom} "
                f"(liquid={self.liquid_balance()} reserve={self.reserve_required()})"
            )
        self.total_allocated += amount
        sid = strategy.strategy_id
        self.allocated_by_strategy[sid] = self.allocated_by_strategy.get(sid, 0) + amount
        self.ledger.approve(self.asset_id, self.vault_id, sid, amount)
        strategy.deposit(self.vault_id, self.asset_id, amount)
        return amount

    def deallocate(self, strategy: StrategyUnit, amount: int) -> int:
        """Ask the strategy for `amount`; what it actually returns is authoritative."""
        require_amount(amount)
        withdrawn = strategy.withdraw(self.vault_id, self.asset_id, amount)
        self._reduce_allocated(strategy.strategy_id, withdrawn)
        return withdrawn

    def emergency_deallocate(self, strategy: StrategyUnit, amount: int) -> int:
        require_amount(amount)
        provided = strategy.provide_emergency_liquidity(self.vault_id, self.asset_id, amount)
        self._reduce_allocated(strategy.strategy_id, provided)
        return provided

    def write_off(self, strategy_id: str, amount: int) -> None:
        """Drop funds that left a strategy without coming back to the vault."""
        if amount > 0:
            self._reduce_allocated(strategy_id, amount)

    def resolve_withdrawal(self, requested: int, strategy: Optional[StrategyUnit]) -> int:
        """
        Make `requested` liquid: ordinary strategy withdrawal first, emergency
        liquidity for whatever remains. Returns the amount recalled from the strategy.
        Raises InsufficientLiquidity when the vault still cannot cover the request.
        """
        liquid = self.liquid_balance()
        if liquid >= requested:
            return 0
        if strategy is None:
            raise InsufficientLiquidity(f"withdrawal of {requested} exceeds liquid balance {liquid}")
        shortfall = requested - liquid
        withdrawn = self.deallocate(strategy, shortfall)
        emergency = 0
        if withdrawn < shortfall:
            emergency = self.emergency_deallocate(strategy, shortfall - withdrawn)
        liquid = self.liquid_balance()
        if liquid < requested:
            raise InsufficientLiquidity(
                f"withdrawal of {requested} exceeds recoverable liquidity {liquid} "
                f"(strategy={withdrawn} emergency={emergency})"
            )
        logger.info(
            "shortfall resolved requested=%d shortfall=%d strategy=%d emergency=%d",
            requested, shortfall, withdrawn, emergency,
        )
        return withdrawn + emergency

    def snapshot(self) -> tuple:
        return (
            self.reserve_ratio_bps, self.min_liquidity, self.total_allocated,
            dict(self.allocated_by_strategy), self.saturation_count,
        )

    def restore(self, state: tuple) -> None:
        (self.reserve_ratio_bps, self.min_liquidity, self.total_allocated,
         allocated, self.saturation_count) = state
        self.allocated_by_strategy = dict(allocated)
