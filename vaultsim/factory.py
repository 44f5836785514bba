from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional
import logging

from .config import StrategyConfig, VaultConfig
from .core import AssetLedger, CapabilityPolicy, CapabilityStore, TickClock
from .lending import InMemoryLendingPool
from .strategy import StrategyUnit
from .vault import Vault

logger = logging.getLogger(__name__)

@dataclass
class VaultDeployment:
    vault: Vault
    ledger: AssetLedger
    store: CapabilityStore
    clock: TickClock
    strategy: Optional[StrategyUnit]
    lending: Optional[InMemoryLendingPool]
    admin_id: str
    agent_id: str
    guardian_id: str
    strategy_key: Optional[str] = None
    funded: dict = field(default_factory=dict)

    def fund_holder(self, holder_id: str, amount: int) -> None:
        """Mint pooled asset to a holder and approve the vault to pull it."""
        vault = self.vault
        self.ledger.mint(vault.asset_id, holder_id, amount)
        current = self.ledger.allowance(vault.asset_id, holder_id, vault.vault_id)
        self.ledger.approve(vault.asset_id, holder_id, vault.vault_id, current + amount)
        self.funded[holder_id] = self.funded.get(holder_id, 0) + amount

    def fund_distributor(self, distributor_id: str, amount: int) -> None:
        vault = self.vault
        self.ledger.mint(vault.reward_asset_id, distributor_id, amount)
        current = self.ledger.allowance(vault.reward_asset_id, distributor_id, vault.vault_id)
        self.ledger.approve(vault.reward_asset_id, distributor_id, vault.vault_id, current + amount)

class VaultFactory:
    def __init__(
        self,
        vault_cfg: Optional[VaultConfig] = None,
        strategy_cfg: Optional[StrategyConfig] = None,
        *,
        admin_id: str = "admin:root",
        agent_id: str = "agent:operator",
        guardian_id: str = "guardian:safety",
        strategy_key: str = "lending",
    ) -> None:
        self.vault_cfg = vault_cfg or VaultConfig()
        self.strategy_cfg = strategy_cfg or StrategyConfig(supported_assets=[self.vault_cfg.asset_id])
        self.admin_id = admin_id
        self.agent_id = agent_id
        self.guardian_id = guardian_id
        self.strategy_key = strategy_key

    def deploy(self, *, with_strategy: bool = True, with_lending: bool = True) -> VaultDeployment:
        cfg = self.vault_cfg
        ledger = AssetLedger(debug=cfg.debug_ledger)
        store = CapabilityStore()
        policy = CapabilityPolicy(store)
        clock = TickClock()

        store.grant(self.admin_id, "admin")
        store.grant(self.agent_id, "agent")
        store.grant(self.guardian_id, "guardian")
        store.grant(cfg.vault_id, "vault")

        vault = Vault(cfg, ledger, policy, clock=clock)
        strategy = None
        lending = None
        if with_strategy:
            if with_lending:
                lending = InMemoryLendingPool(ledger, pool_id=f"lending:{self.strategy_key}")
            strategy = StrategyUnit(self.strategy_cfg, ledger, policy, lending=lending, clock=clock, log=vault.log)
            vault.register_strategy(self.admin_id, self.strategy_key, strategy, make_default=True)
        logger.info(
            "vault deployed id=%s asset=%s reward=%s strategy=%s policy=%s",
            cfg.vault_id, cfg.asset_id, cfg.reward_asset_id,
            strategy.strategy_id if strategy else None, cfg.reward_policy,
        )
        return VaultDeployment(
            vault=vault,
            ledger=ledger,
            store=store,
            clock=clock,
            strategy=strategy,
            lending=lending,
            admin_id=self.admin_id,
            agent_id=self.agent_id,
            guardian_id=self.guardian_id,
            strategy_key=self.strategy_key if with_strategy else None,
        )
