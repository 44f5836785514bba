from __future__ import annotations
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple
import logging
import threading

from .config import VaultConfig
from .core import (
    AssetLedger, AuthorizationError, CapabilityPolicy, Event, EventLog, InsufficientBalance,
    InsufficientLiquidity, InsufficientReserve, NoShares, ReentrantCall, StateError,
    StrategyAlreadyRegistered, StrategyExecutionFailed, StrategyNotFound, TickClock, VaultError, atomic,
    require_amount, require_principal,
)
from .liquidity import LiquidityController
from .rewards import RewardAccrualEngine
from .shares import ShareLedger
from .strategy import ActionResult, StrategyUnit

logger = logging.getLogger(__name__)

class Vault:
    """
    Pooled custody vault.

    Depositors receive shares 1:1 with the pooled asset, earn the reward asset
    pro rata through a lazily settled accumulator, and withdraw through a
    liquidity controller that can recall funds from the default strategy.

    Every mutating operation is serialized, runs with checkpoint and share
    changes committed before any asset leaves the vault, and is rolled back
    entirely if any step raises.
    """

    def __init__(self, cfg: VaultConfig, ledger: AssetLedger, capabilities: CapabilityPolicy,
                 clock: Optional[TickClock] = None) -> None:
        self.cfg = cfg
        self.vault_id = cfg.vault_id
        self.asset_id = cfg.asset_id
        self.reward_asset_id = cfg.reward_asset_id
        self.ledger = ledger
        self.capabilities = capabilities
        self.clock = clock or TickClock()
        self.log = EventLog(maxlen=cfg.event_log_maxlen)

        self.shares = ShareLedger()
        self.rewards = RewardAccrualEngine(
            self.shares,
            ledger,
            reward_asset_id=cfg.reward_asset_id,
            vault_id=cfg.vault_id,
            precision=cfg.precision,
            policy=cfg.reward_policy,
            duration=cfg.reward_duration_ticks,
            clock=self.clock,
        )
        self.liquidity = LiquidityController(
            ledger,
            asset_id=cfg.asset_id,
            vault_id=cfg.vault_id,
            reserve_ratio_bps=cfg.reserve_ratio_bps,
            min_liquidity=cfg.min_liquidity,
        )
        self.strategies: Dict[str, StrategyUnit] = {}
        self.default_strategy_key: Optional[str] = None

        self._lock = threading.RLock()
        self._busy = False
        self._last_reward_per_share = 0

    # -----------------------------
    # Transactions
    # -----------------------------
    def _participants(self) -> list:
        parts = [self.ledger, self.shares, self.rewards, self.liquidity, self.log, self]
        for strategy in self.strategies.values():
            parts.append(strategy)
            if strategy.lending is not None:
                parts.append(strategy.lending)
            if strategy.log is not self.log:
                parts.append(strategy.log)
        return parts

    @contextmanager
    def _transaction(self, op: str) -> Iterator[None]:
        # the ledger is shared with other writers; hold it until commit or restore
        with self.ledger.lock, self._lock:
            if self._busy:
                raise ReentrantCall(f"{op} called while another vault operation is in flight")
            self._busy = True
            try:
                with atomic(*self._participants()):
                    yield
            finally:
                self._busy = False

    def snapshot(self) -> tuple:
        return dict(self.strategies), self.default_strategy_key

    def restore(self, state: tuple) -> None:
        strategies, self.default_strategy_key = state
        self.strategies = dict(strategies)

    def _record(self, event_type: str, actor: Optional[str], amount: Optional[int] = None,
                asset_id: Optional[str] = None, strategy_id: Optional[str] = None, **meta) -> None:
        self.log.add(Event(
            self.clock.now(), event_type, actor_id=actor, strategy_id=strategy_id,
            asset_id=asset_id or self.asset_id, amount=amount, meta=meta,
        ))

    # -----------------------------
    # Strategy registry
    # -----------------------------
    def strategy(self, key: Optional[str] = None) -> StrategyUnit:
        key = key if key is not None else self.default_strategy_key
        strategy = self.strategies.get(key) if key is not None else None
        if strategy is None:
            raise StrategyNotFound(f"no strategy registered under {key!r}")
        return strategy

    def register_strategy(self, caller: str, key: str, strategy: StrategyUnit, make_default: bool = False) -> None:
        self.capabilities.require(caller, "admin")
        require_principal(key, "strategy key")
        with self._transaction("register_strategy"):
            if key in self.strategies:
                raise StrategyAlreadyRegistered(f"strategy {key!r} is already registered")
            self.strategies[key] = strategy
            if make_default or self.default_strategy_key is None:
                self.default_strategy_key = key
            self._record("STRATEGY_REGISTERED", caller, strategy_id=strategy.strategy_id, key=key)

    def unregister_strategy(self, caller: str, key: str) -> None:
        self.capabilities.require(caller, "admin")
        with self._transaction("unregister_strategy"):
            strategy = self.strategy(key)
            allocated = self.liquidity.allocated_by_strategy.get(strategy.strategy_id, 0)
            if strategy.total_tracked() > 0 or allocated > 0:
                raise StateError(f"strategy {key!r} still holds funds; deallocate first")
            del self.strategies[key]
            if self.default_strategy_key == key:
                self.default_strategy_key = next(iter(self.strategies), None)
            self._record("STRATEGY_UNREGISTERED", caller, strategy_id=strategy.strategy_id, key=key)

    def set_default_strategy(self, caller: str, key: str) -> None:
        self.capabilities.require(caller, "admin")
        with self._transaction("set_default_strategy"):
            self.strategy(key)
            self.default_strategy_key = key

    # -----------------------------
    # Holder operations
    # -----------------------------
    def deposit(self, caller: str, amount: int) -> int:
        require_principal(caller, "caller")
        require_amount(amount)
        with self._transaction("deposit"):
            acct = self.shares.account(caller)
            settled = self.rewards.checkpoint(acct, acct.shares, acct.shares + amount)
            new_shares = self.shares.mint(settled, amount)
            self.ledger.transfer_from(self.asset_id, self.vault_id, caller, self.vault_id, amount)
            self._record("DEPOSIT", caller, amount, shares=new_shares)
        return new_shares

    def withdraw(self, caller: str, amount: int) -> int:
        require_principal(caller, "caller")
        require_amount(amount)
        held = self.shares.shares_of(caller)
        if held < amount:
            raise InsufficientBalance(f"{caller} holds {held} shares, withdrawal needs {amount}")
        with self._transaction("withdraw"):
            acct = self.shares.account(caller)
            settled = self.rewards.checkpoint(acct, acct.shares, acct.shares - amount)
            recalled = 0
            if self.cfg.withdraw_mode == "simple":
                ok, reason = self.liquidity.can_withdraw_simple(amount)
                if not ok:
                    logger.info("withdraw rejected holder=%s amount=%d reason=%s", caller, amount, reason)
                    if reason == "insufficient_liquidity":
                        raise InsufficientLiquidity(f"withdrawal of {amount} exceeds liquid balance")
                    raise InsufficientReserve(f"withdrawal of {amount} breaches {reason}")
            else:
                default = self.strategies.get(self.default_strategy_key) if self.default_strategy_key else None
                recalled = self.liquidity.resolve_withdrawal(amount, default)
            remaining = self.shares.burn(settled, amount)
            self.ledger.transfer(self.asset_id, self.vault_id, caller, amount)
            self._record("WITHDRAW", caller, amount, shares=remaining, recalled=recalled)
        return remaining

    def distribute_rewards(self, caller: str, amount: int) -> int:
        require_principal(caller, "caller")
        require_amount(amount)
        if self.shares.total_shares <= 0:
            raise NoShares("cannot distribute rewards with no shares outstanding")
        with self._transaction("distribute_rewards"):
            acc = self.rewards.distribute(amount)
            self.ledger.transfer_from(self.reward_asset_id, self.vault_id, caller, self.vault_id, amount)
            self._record("REWARDS_DISTRIBUTED", caller, amount, asset_id=self.reward_asset_id,
                         reward_per_share=acc)
        return acc

    def claim_rewards(self, caller: str) -> int:
        require_principal(caller, "caller")
        if caller not in self.shares.accounts:
            return 0
        with self._transaction("claim_rewards"):
            claimed = self.rewards.claim(self.shares.account(caller))
            if claimed > 0:
                self._record("REWARDS_CLAIMED", caller, claimed, asset_id=self.reward_asset_id)
        return claimed

    def get_accrued_rewards(self, holder: str) -> int:
        with self._lock:
            acct = self.shares.accounts.get(holder)
            return self.rewards.accrued_of(acct) if acct is not None else 0

    # -----------------------------
    # Agent / admin / guardian operations
    # -----------------------------
    def allocate_to_strategy(self, caller: str, key: str, amount: int) -> int:
        self.capabilities.require(caller, "agent")
        require_amount(amount)
        with self._transaction("allocate_to_strategy"):
            strategy = self.strategy(key)
            self.liquidity.allocate(strategy, amount)
            self._record("ALLOCATED", caller, amount, strategy_id=strategy.strategy_id)
        return self.liquidity.total_allocated

    def withdraw_from_strategy(self, caller: str, key: str, amount: int) -> int:
        self.capabilities.require(caller, "agent")
        require_amount(amount)
        with self._transaction("withdraw_from_strategy"):
            strategy = self.strategy(key)
            returned = self.liquidity.deallocate(strategy, amount)
            self._record("DEALLOCATED", caller, returned, strategy_id=strategy.strategy_id, requested=amount)
        return returned

    def harvest_strategy(self, caller: str, key: Optional[str] = None) -> int:
        self.capabilities.require(caller, "agent")
        with self._transaction("harvest_strategy"):
            strategy = self.strategy(key)
            harvested = strategy.claim_rewards(self.vault_id, self.asset_id)
            if harvested > 0:
                self._record("HARVESTED", caller, harvested, strategy_id=strategy.strategy_id)
        return harvested

    def validate_agent_action(self, action_id: int, payload) -> Tuple[bool, str]:
        with self._lock:
            return self.strategy().validate_action(action_id, payload)

    def execute_agent_action(self, caller: str, action_id: int, payload) -> Tuple[bool, dict]:
        self.capabilities.require(caller, "agent")
        with self._transaction("execute_agent_action"):
            strategy = self.strategy()
            try:
                result: ActionResult = strategy.execute_action(caller, action_id, payload)
            except AuthorizationError:
                raise
            except VaultError as exc:
                raise StrategyExecutionFailed(action_id, str(exc)) from exc
            if not result.ok:
                raise StrategyExecutionFailed(action_id, result.reason)
        return True, dict(result.result)

    def set_reserve_ratio(self, caller: str, bps: int) -> None:
        self.capabilities.require(caller, "admin")
        with self._transaction("set_reserve_ratio"):
            self.liquidity.set_reserve_ratio(bps)
            self._record("RESERVE_RATIO_SET", caller, bps=bps)

    def set_min_liquidity(self, caller: str, amount: int) -> None:
        self.capabilities.require(caller, "admin")
        with self._transaction("set_min_liquidity"):
            self.liquidity.set_min_liquidity(amount)
            self._record("MIN_LIQUIDITY_SET", caller, amount)

    def pause_strategy(self, caller: str, key: Optional[str] = None) -> None:
        self.capabilities.require(caller, "guardian")
        with self._transaction("pause_strategy"):
            self.strategy(key).pause(caller)

    def resume_strategy(self, caller: str, key: Optional[str] = None) -> None:
        self.capabilities.require(caller, "admin")
        with self._transaction("resume_strategy"):
            self.strategy(key).unpause(self.vault_id)

    def emergency_withdraw_strategy(self, caller: str, key: Optional[str] = None,
                                    asset_id: Optional[str] = None) -> int:
        self.capabilities.require(caller, "guardian")
        asset_id = asset_id or self.asset_id
        with self._transaction("emergency_withdraw_strategy"):
            strategy = self.strategy(key)
            tracked = strategy.get_balance(asset_id)
            drained = strategy.emergency_withdraw(caller, asset_id)
            if asset_id == self.asset_id:
                self.liquidity.write_off(strategy.strategy_id, tracked)
            self._record("EMERGENCY_WITHDRAW", caller, drained, asset_id=asset_id,
                         strategy_id=strategy.strategy_id, tracked=tracked)
        return drained

    # -----------------------------
    # Views
    # -----------------------------
    def shares_of(self, holder: str) -> int:
        with self._lock:
            return self.shares.shares_of(holder)

    @property
    def total_shares(self) -> int:
        with self._lock:
            return self.shares.total_shares

    def liquid_balance(self) -> int:
        with self._lock:
            return self.liquidity.liquid_balance()

    def total_assets(self) -> int:
        with self._lock:
            return self.liquidity.total_assets()

    def reserve_required(self) -> int:
        with self._lock:
            return self.liquidity.reserve_required()

    def max_allocatable(self) -> int:
        with self._lock:
            return self.liquidity.max_allocatable()

    def can_withdraw(self, holder: str, amount: int) -> Tuple[bool, str]:
        with self._lock:
            if amount <= 0:
                return False, "invalid_amount"
            if self.shares.shares_of(holder) < amount:
                return False, "insufficient_shares"
            if self.cfg.withdraw_mode == "simple":
                return self.liquidity.can_withdraw_simple(amount)
            recoverable = self.liquidity.liquid_balance()
            if self.default_strategy_key in self.strategies:
                recoverable += self.strategies[self.default_strategy_key].get_balance(self.asset_id)
            if recoverable < amount:
                return False, "insufficient_liquidity"
            return True, "ok"

    def state(self) -> dict:
        with self._lock:
            liq = self.liquidity
            return {
                "tick": self.clock.now(),
                "total_shares": self.shares.total_shares,
                "holders": len(self.shares.accounts),
                "liquid": liq.liquid_balance(),
                "total_allocated": liq.total_allocated,
                "total_assets": liq.total_assets(),
                "reserve_ratio_bps": liq.reserve_ratio_bps,
                "min_liquidity": liq.min_liquidity,
                "reserve_required": liq.reserve_required(),
                "max_allocatable": liq.max_allocatable(),
                "reward_per_share": self.rewards.reward_per_share(),
                "rewards_distributed": self.rewards.acc.total_distributed,
                "reward_balance": self.ledger.balance_of(self.reward_asset_id, self.vault_id),
                "saturations": liq.saturation_count + sum(s.saturation_count for s in self.strategies.values()),
            }

    def holders(self) -> List[dict]:
        with self._lock:
            return [
                {
                    "holder_id": a.holder_id,
                    "shares": a.shares,
                    "stored_rewards": a.stored_rewards,
                    "accrued_rewards": self.rewards.accrued_of(a),
                    "reward_checkpoint": a.reward_checkpoint,
                }
                for a in self.shares.holders()
            ]

    def check_invariants(self) -> List[str]:
        """Names of violated invariants; empty when the vault is consistent."""
        violations: List[str] = []
        with self._lock:
            if sum(a.shares for a in self.shares.holders()) != self.shares.total_shares:
                violations.append("share_supply")
            liq = self.liquidity
            if sum(liq.allocated_by_strategy.values()) != liq.total_allocated:
                violations.append("allocation_ledger")
            if liq.total_assets() != liq.liquid_balance() + liq.total_allocated:
                violations.append("asset_accounting")
            current = self.rewards.reward_per_share()
            if current < self._last_reward_per_share:
                violations.append("reward_monotonic")
            self._last_reward_per_share = current
            owed = sum(self.rewards.accrued_of(a) for a in self.shares.holders())
            if owed > self.ledger.balance_of(self.reward_asset_id, self.vault_id):
                violations.append("reward_solvency")
            for s in self.strategies.values():
                if any(v < 0 for v in s.state.balances.values()):
                    violations.append(f"strategy_balance:{s.strategy_id}")
        return violations
