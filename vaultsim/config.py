from dataclasses import dataclass, field

from .core import ValidationError

BPS = 10_000
PRECISION = 10**18

@dataclass
class VaultConfig:
    vault_id: str = "vault:main"
    asset_id: str = "USDC"
    reward_asset_id: str = "RWD"

    # Liquidity
    reserve_ratio_bps: int = 2_000    # 20% of total assets stays liquid
    min_liquidity: int = 100          # absolute floor, whichever binds tighter applies
    withdraw_mode: str = "escalate"   # "escalate" or "simple"

    # Rewards
    precision: int = PRECISION
    reward_policy: str = "instant"    # "instant" or "streamed"
    reward_duration_ticks: int = 4    # streamed release period

    # Debug
    debug_ledger: bool = False
    event_log_maxlen: int | None = None

    def __post_init__(self) -> None:
        if self.asset_id == self.reward_asset_id:
            raise ValidationError("reward asset must differ from the pooled asset")
        if not 0 <= int(self.reserve_ratio_bps) <= BPS:
            raise ValidationError(f"reserve_ratio_bps out of range: {self.reserve_ratio_bps}")
        if self.min_liquidity < 0:
            raise ValidationError("min_liquidity must be non-negative")
        if self.withdraw_mode not in ("escalate", "simple"):
            raise ValidationError(f"unknown withdraw_mode: {self.withdraw_mode}")
        if self.reward_policy not in ("instant", "streamed"):
            raise ValidationError(f"unknown reward_policy: {self.reward_policy}")
        if self.precision <= 0:
            raise ValidationError("precision must be positive")
        if self.reward_duration_ticks <= 0:
            raise ValidationError("reward_duration_ticks must be positive")

@dataclass
class StrategyConfig:
    strategy_id: str = "strategy:lending"
    supported_assets: list[str] = field(default_factory=lambda: ["USDC"])
    reserve_ratio_pct: int = 20
    min_liquidity: int = 0
    risk_level: int = 1
    emergency_recipient: str = "treasury:emergency"
    max_reserve_ratio_pct: int = 50
    strict_min_liquidity: bool = True

    def __post_init__(self) -> None:
        if not self.supported_assets:
            raise ValidationError("a strategy must support at least one asset")
        if not 0 <= self.reserve_ratio_pct <= self.max_reserve_ratio_pct:
            raise ValidationError(f"reserve_ratio_pct out of range: {self.reserve_ratio_pct}")
        if not 0 < self.max_reserve_ratio_pct <= 100:
            raise ValidationError(f"max_reserve_ratio_pct out of range: {self.max_reserve_ratio_pct}")
        if not 1 <= self.risk_level <= 5:
            raise ValidationError(f"risk_level must be in 1..5, got {self.risk_level}")
        if self.min_liquidity < 0:
            raise ValidationError("min_liquidity must be non-negative")

@dataclass
class ScenarioConfig:
    vault: VaultConfig = field(default_factory=VaultConfig)
    strategy: StrategyConfig = field(default_factory=StrategyConfig)

    # Holders
    initial_holders: int = 8
    holder_initial_balance: int = 50_000
    holder_inflow_per_tick: int = 0

    # Activity (probability per holder per tick)
    p_deposit: float = 0.30
    p_withdraw: float = 0.15
    p_claim: float = 0.10
    deposit_size_mean: float = 1_000.0
    withdraw_size_frac: float = 0.25   # share of the holder's shares per withdrawal

    # Rewards
    reward_stride_ticks: int = 4
    reward_amount_mean: float = 500.0
    distributor_id: str = "distributor:rewards"

    # Agent
    agent_enabled: bool = True
    agent_id: str = "agent:operator"
    target_utilization: float = 0.6    # allocated / total assets the agent steers toward
    deploy_idle_share: float = 1.0     # share of strategy idle balance pushed into lending
    harvest_stride_ticks: int = 8

    # Lending yield
    lending_yield_per_tick: float = 0.001

    # Metrics
    metrics_stride: int = 1

    def __post_init__(self) -> None:
        if self.strategy.supported_assets == ["USDC"] and self.vault.asset_id != "USDC":
            self.strategy.supported_assets = [self.vault.asset_id]
        for name in ("p_deposit", "p_withdraw", "p_claim", "target_utilization", "deploy_idle_share"):
            value = float(getattr(self, name))
            if not 0.0 <= value <= 1.0:
                raise ValidationError(f"{name} must be within [0, 1], got {value}")
