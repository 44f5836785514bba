from __future__ import annotations
from collections import Counter
from typing import Dict, List, Optional
import logging
import numpy as np
import random

from .config import ScenarioConfig
from .core import Event, VaultError
from .factory import VaultDeployment, VaultFactory
from .metrics import MetricsStore
from .strategy import ActionId, DepositAction

logger = logging.getLogger(__name__)

class SimulationEngine:
    """
    Drives one vault through seeded random holder activity, periodic reward
    distributions and an operator agent that allocates toward a utilization target.
    Business-rule rejections are counted, not raised.
    """

    def __init__(self, cfg: ScenarioConfig, seed: int = 1) -> None:
        self.cfg = cfg
        self.seed = seed
        self.rng = random.Random(seed)
        self.np_rng = np.random.default_rng(seed)

        self.metrics = MetricsStore()
        self.deployment: VaultDeployment = VaultFactory(
            cfg.vault, cfg.strategy, agent_id=cfg.agent_id,
        ).deploy()
        self.vault = self.deployment.vault

        self.holder_ids: List[str] = []
        self.failures_total: Counter = Counter()
        self.violations: List[tuple] = []
        self._failures_tick: Counter = Counter()
        self._ops_tick: Counter = Counter()
        self._yield_minted_total: int = 0

        self._bootstrap()

    @property
    def tick(self) -> int:
        return self.deployment.clock.now()

    def _bootstrap(self) -> None:
        for _ in range(self.cfg.initial_holders):
            self.add_holder()
        self.snapshot_metrics()

    def add_holder(self, initial_balance: Optional[int] = None) -> str:
        holder_id = f"holder_{len(self.holder_ids) + 1:04d}"
        amount = int(self.cfg.holder_initial_balance if initial_balance is None else initial_balance)
        if amount > 0:
            self.deployment.fund_holder(holder_id, amount)
        self.holder_ids.append(holder_id)
        self.vault.log.add(Event(self.tick, "HOLDER_ADDED", actor_id=holder_id, amount=amount))
        return holder_id

    def _attempt(self, op: str, fn, *args):
        try:
            result = fn(*args)
        except VaultError as exc:
            key = f"{op}:{type(exc).__name__}"
            self._failures_tick[key] += 1
            self.failures_total[key] += 1
            logger.debug("tick=%d op=%s rejected: %s", self.tick, op, exc)
            return None
        self._ops_tick[op] += 1
        return result

    def _sample_amount(self, mean: float) -> int:
        return max(1, int(self.np_rng.exponential(mean)))

    # -----------------------------
    # Activity
    # -----------------------------
    def _holder_activity(self) -> None:
        cfg = self.cfg
        vault = self.vault
        ledger = self.deployment.ledger
        holders = list(self.holder_ids)
        self.rng.shuffle(holders)
        for holder_id in holders:
            if cfg.holder_inflow_per_tick > 0:
                self.deployment.fund_holder(holder_id, cfg.holder_inflow_per_tick)
            if self.rng.random() < cfg.p_deposit:
                wallet = ledger.balance_of(vault.asset_id, holder_id)
                amount = min(wallet, self._sample_amount(cfg.deposit_size_mean))
                if amount > 0:
                    self._attempt("deposit", vault.deposit, holder_id, amount)
            if self.rng.random() < cfg.p_withdraw:
                shares = vault.shares_of(holder_id)
                amount = int(shares * cfg.withdraw_size_frac)
                if amount > 0:
                    self._attempt("withdraw", vault.withdraw, holder_id, amount)
            if self.rng.random() < cfg.p_claim:
                self._attempt("claim", vault.claim_rewards, holder_id)

    def _distribute_rewards(self) -> None:
        cfg = self.cfg
        stride = max(1, int(cfg.reward_stride_ticks or 1))
        if self.tick % stride != 0 or self.vault.total_shares <= 0:
            return
        amount = self._sample_amount(cfg.reward_amount_mean)
        self.deployment.fund_distributor(cfg.distributor_id, amount)
        self._attempt("distribute", self.vault.distribute_rewards, cfg.distributor_id, amount)

    def _agent_step(self) -> None:
        cfg = self.cfg
        if not cfg.agent_enabled or self.deployment.strategy is None:
            return
        vault = self.vault
        agent = cfg.agent_id
        key = self.deployment.strategy_key
        strategy = self.deployment.strategy

        total = vault.total_assets()
        allocated = vault.liquidity.total_allocated
        target = int(total * cfg.target_utilization)
        if allocated < target:
            amount = min(target - allocated, vault.max_allocatable())
            if amount > 0:
                self._attempt("allocate", vault.allocate_to_strategy, agent, key, amount)
        elif allocated > target * 1.1:
            self._attempt("deallocate", vault.withdraw_from_strategy, agent, key, allocated - target)

        if strategy.lending is not None and not strategy.paused:
            idle = int(strategy.idle_balance(vault.asset_id) * cfg.deploy_idle_share)
            if idle > 0:
                action = DepositAction(asset_id=vault.asset_id, amount=idle)
                ok, _reason = vault.validate_agent_action(ActionId.DEPOSIT, action)
                if ok:
                    self._attempt("agent_action", vault.execute_agent_action, agent, ActionId.DEPOSIT, action)

        harvest_stride = max(1, int(cfg.harvest_stride_ticks or 1))
        if self.tick % harvest_stride == 0:
            self._attempt("harvest", vault.harvest_strategy, agent, key)

    def _accrue_lending_yield(self) -> None:
        lending = self.deployment.lending
        if lending is None or self.cfg.lending_yield_per_tick <= 0:
            return
        self._yield_minted_total += lending.accrue_yield(self.cfg.lending_yield_per_tick)

    def step(self, n_ticks: int = 1) -> None:
        for _ in range(n_ticks):
            self.deployment.clock.advance(1)
            self._failures_tick = Counter()
            self._ops_tick = Counter()

            self._holder_activity()
            self._distribute_rewards()
            self._agent_step()
            self._accrue_lending_yield()

            broken = self.vault.check_invariants()
            if broken:
                logger.error("tick=%d invariant violations: %s", self.tick, ", ".join(broken))
                self.violations.extend((self.tick, name) for name in broken)
            self.snapshot_metrics()

    # -----------------------------
    # Metrics
    # -----------------------------
    def snapshot_metrics(self, force: bool = False) -> None:
        stride = int(self.cfg.metrics_stride or 0)
        if not force and (stride <= 0 or self.tick % stride != 0):
            return
        state = self.vault.state()
        strategy = self.deployment.strategy
        asset_id = self.vault.asset_id
        total_assets = max(1, state["total_assets"])
        row: Dict[str, object] = dict(state)
        row.update({
            "utilization": state["total_allocated"] / total_assets,
            "strategy_tracked": strategy.get_balance(asset_id) if strategy else 0,
            "strategy_idle": strategy.idle_balance(asset_id) if strategy else 0,
            "strategy_deployed": strategy.deployed_balance(asset_id) if strategy else 0,
            "strategy_paused": bool(strategy.paused) if strategy else False,
            "yield_minted_total": self._yield_minted_total,
            "ops_tick": int(sum(self._ops_tick.values())),
            "failed_ops_tick": int(sum(self._failures_tick.values())),
            "invariant_violations_total": len(self.violations),
        })
        for key, count in self._failures_tick.items():
            row[f"fail:{key}"] = count
        self.metrics.add_vault(row)
        self.metrics.add_holder_rows([dict(h, tick=self.tick) for h in self.vault.holders()])
