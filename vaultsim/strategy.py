from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import ClassVar, Dict, Iterator, Mapping, Optional, Set, Tuple, Union
import logging

from .config import StrategyConfig
from .core import (
    AssetLedger, CapabilityPolicy, Event, EventLog, StrategyPaused, ReentrantCall, TickClock,
    UnknownAction, UnsupportedAsset, ValidationError, atomic, require_amount, require_principal,
    saturating_sub,
)
from .lending import LendingProtocol

logger = logging.getLogger(__name__)

RISK_LEVELS = range(1, 6)

# -----------------------------
# Actions
# -----------------------------
class ActionId(IntEnum):
    DEPOSIT = 1
    WITHDRAW = 2
    SET_RESERVE_RATIO = 3
    SET_MIN_LIQUIDITY = 4
    SET_RISK_LEVEL = 5
    ADD_SUPPORTED_ASSET = 6

@dataclass(frozen=True)
class DepositAction:
    """Move idle funds held by the unit into its lending protocol."""
    asset_id: str
    amount: int
    action_id: ClassVar[ActionId] = ActionId.DEPOSIT

@dataclass(frozen=True)
class WithdrawAction:
    """Pull deployed funds back from the lending protocol into the unit's idle balance."""
    asset_id: str
    amount: int
    action_id: ClassVar[ActionId] = ActionId.WITHDRAW

@dataclass(frozen=True)
class SetReserveRatioAction:
    pct: int
    action_id: ClassVar[ActionId] = ActionId.SET_RESERVE_RATIO

@dataclass(frozen=True)
class SetMinLiquidityAction:
    amount: int
    action_id: ClassVar[ActionId] = ActionId.SET_MIN_LIQUIDITY

@dataclass(frozen=True)
class SetRiskLevelAction:
    level: int
    action_id: ClassVar[ActionId] = ActionId.SET_RISK_LEVEL

@dataclass(frozen=True)
class AddSupportedAssetAction:
    asset_id: str
    action_id: ClassVar[ActionId] = ActionId.ADD_SUPPORTED_ASSET

StrategyAction = Union[
    DepositAction,
    WithdrawAction,
    SetReserveRatioAction,
    SetMinLiquidityAction,
    SetRiskLevelAction,
    AddSupportedAssetAction,
]

ACTION_TYPES: Dict[ActionId, type] = {
    cls.action_id: cls
    for cls in (
        DepositAction,
        WithdrawAction,
        SetReserveRatioAction,
        SetMinLiquidityAction,
        SetRiskLevelAction,
        AddSupportedAssetAction,
    )
}

def decode_action(action_id: int, payload: Union[StrategyAction, Mapping, None]) -> StrategyAction:
    """Turn an (action id, payload) pair into its typed action, accepting either the action itself or a mapping of its fields."""
    try:
        aid = ActionId(action_id)
    except ValueError:
        raise UnknownAction(f"unknown action id {action_id!r}") from None
    cls = ACTION_TYPES[aid]
    if isinstance(payload, cls):
        return payload
    if isinstance(payload, Mapping):
        try:
            return cls(**payload)
        except TypeError as exc:
            raise ValidationError(f"malformed payload for {aid.name}: {exc}") from exc
    raise ValidationError(f"payload for {aid.name} must be {cls.__name__} or a mapping, got {type(payload).__name__}")

@dataclass(frozen=True)
class ActionResult:
    ok: bool
    action_id: int
    reason: str = "ok"
    result: dict = field(default_factory=dict)

def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


# -----------------------------
# Strategy
# -----------------------------
@dataclass
class StrategyState:
    supported_assets: Set[str]
    balances: Dict[str, int]
    reserve_ratio_pct: int
    min_liquidity: int
    risk_level: int
    emergency_recipient: str
    paused: bool = False

class StrategyUnit:
    """
    One allocation target. Tracks `balances[asset]` as everything the vault placed
    here (idle on the unit plus deployed to its lending protocol).

    The vault-facing `withdraw` is best-effort: it caps the amount at what the unit's
    own reserve policy allows and returns what it actually sent.
    """

    def __init__(
        self,
        cfg: StrategyConfig,
        ledger: AssetLedger,
        capabilities: CapabilityPolicy,
        lending: Optional[LendingProtocol] = None,
        clock: Optional[TickClock] = None,
        log: Optional[EventLog] = None,
    ) -> None:
        require_principal(cfg.strategy_id, "strategy_id")
        require_principal(cfg.emergency_recipient, "emergency_recipient")
        self.strategy_id = cfg.strategy_id
        self.max_reserve_ratio_pct = cfg.max_reserve_ratio_pct
        self.strict_min_liquidity = cfg.strict_min_liquidity
        self.ledger = ledger
        self.capabilities = capabilities
        self.lending = lending
        self.clock = clock or TickClock()
        self.log = log or EventLog()
        self.state = StrategyState(
            supported_assets=set(cfg.supported_assets),
            balances={a: 0 for a in cfg.supported_assets},
            reserve_ratio_pct=cfg.reserve_ratio_pct,
            min_liquidity=cfg.min_liquidity,
            risk_level=cfg.risk_level,
            emergency_recipient=cfg.emergency_recipient,
        )
        self.saturation_count = 0
        self._executing = False

    # -- views --
    @property
    def paused(self) -> bool:
        return self.state.paused

    def get_balance(self, asset_id: str) -> int:
        return self.state.balances.get(asset_id, 0)

    def total_tracked(self) -> int:
        return sum(self.state.balances.values())

    def idle_balance(self, asset_id: str) -> int:
        return self.ledger.balance_of(asset_id, self.strategy_id)

    def deployed_balance(self, asset_id: str) -> int:
        if self.lending is None:
            return 0
        return self.lending.get_balance(self.strategy_id, asset_id)

    def reserve_amount(self, asset_id: str) -> int:
        return self.get_balance(asset_id) * self.state.reserve_ratio_pct // 100

    def withdrawable(self, asset_id: str) -> int:
        balance = self.get_balance(asset_id)
        above_floor = balance - self.state.min_liquidity
        above_reserve = balance - self.reserve_amount(asset_id)
        return max(0, min(above_floor, above_reserve))

    def _participants(self) -> tuple:
        if self.lending is None:
            return (self.ledger, self, self.log)
        return (self.ledger, self, self.lending, self.log)

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        with self.ledger.lock, atomic(*self._participants()):
            yield

    def _require_supported(self, asset_id: str) -> None:
        if asset_id not in self.state.supported_assets:
            raise UnsupportedAsset(f"{self.strategy_id} does not support {asset_id!r}")

    def _record(self, event_type: str, actor: Optional[str], asset_id: Optional[str] = None,
                amount: Optional[int] = None, **meta) -> None:
        self.log.add(Event(
            self.clock.now(), event_type, actor_id=actor, strategy_id=self.strategy_id,
            asset_id=asset_id, amount=amount, meta=meta,
        ))

    def _debit(self, asset_id: str, amount: int) -> None:
        remaining, saturated = saturating_sub(
            self.get_balance(asset_id), amount, f"{self.strategy_id}.balances[{asset_id}]"
        )
        if saturated:
            self.saturation_count += 1
        self.state.balances[asset_id] = remaining

    def _release(self, asset_id: str, amount: int, recipient: str) -> None:
        idle = self.idle_balance(asset_id)
        if idle < amount and self.lending is not None:
            self.lending.withdraw(self.strategy_id, asset_id, amount - idle)
        self.ledger.transfer(asset_id, self.strategy_id, recipient, amount)

    # -- dispatch --
    def validate_action(self, action_id: int, payload) -> Tuple[bool, str]:
        try:
            action = decode_action(action_id, payload)
        except UnknownAction:
            return False, "unknown_action"
        except ValidationError:
            return False, "malformed_payload"

        st = self.state
        if isinstance(action, (DepositAction, WithdrawAction)):
            if not isinstance(action.asset_id, str):
                return False, "invalid_asset"
            if action.asset_id not in st.supported_assets:
                return False, "unsupported_asset"
            if not _is_int(action.amount) or action.amount <= 0:
                return False, "invalid_amount"
            if self.lending is None:
                return False, "no_lending_protocol"
            if isinstance(action, DepositAction):
                if self.idle_balance(action.asset_id) < action.amount:
                    return False, "insufficient_idle_balance"
            elif self.deployed_balance(action.asset_id) < action.amount:
                return False, "insufficient_deployed_balance"
            return True, "ok"
        if isinstance(action, SetReserveRatioAction):
            if not _is_int(action.pct) or not 0 <= action.pct <= self.max_reserve_ratio_pct:
                return False, "reserve_ratio_out_of_range"
            return True, "ok"
        if isinstance(action, SetMinLiquidityAction):
            if not _is_int(action.amount) or action.amount < 0:
                return False, "invalid_amount"
            if self.strict_min_liquidity and action.amount == 0:
                return False, "min_liquidity_zero"
            return True, "ok"
        if isinstance(action, SetRiskLevelAction):
            if not _is_int(action.level) or action.level not in RISK_LEVELS:
                return False, "risk_level_out_of_range"
            return True, "ok"
        if isinstance(action, AddSupportedAssetAction):
            if not isinstance(action.asset_id, str) or not action.asset_id.strip():
                return False, "invalid_asset"
            if action.asset_id in st.supported_assets:
                return False, "asset_already_supported"
            return True, "ok"
        return False, "unknown_action"

    def execute_action(self, caller: str, action_id: int, payload) -> ActionResult:
        self.capabilities.require(caller, "agent")
        if self.state.paused:
            raise StrategyPaused(f"{self.strategy_id} is paused")
        if self._executing:
            raise ReentrantCall(f"{self.strategy_id} is already executing an action")
        self._executing = True
        try:
            ok, reason = self.validate_action(action_id, payload)
            if not ok:
                logger.info("action rejected strategy=%s action=%s reason=%s", self.strategy_id, action_id, reason)
                return ActionResult(ok=False, action_id=int(action_id), reason=reason)
            action = decode_action(action_id, payload)
            with self._transaction():
                result = self._apply(action)
                self._record("AGENT_ACTION", caller, action=action.action_id.name, **result)
            return ActionResult(ok=True, action_id=int(action.action_id), result=result)
        finally:
            self._executing = False

    def _apply(self, action: StrategyAction) -> dict:
        st = self.state
        if isinstance(action, DepositAction):
            self.lending.deposit(self.strategy_id, action.asset_id, action.amount)
            return {"deployed": self.deployed_balance(action.asset_id)}
        if isinstance(action, WithdrawAction):
            pulled = self.lending.withdraw(self.strategy_id, action.asset_id, action.amount)
            return {"withdrawn": pulled, "deployed": self.deployed_balance(action.asset_id)}
        if isinstance(action, SetReserveRatioAction):
            st.reserve_ratio_pct = action.pct
            return {"reserve_ratio_pct": action.pct}
        if isinstance(action, SetMinLiquidityAction):
            st.min_liquidity = action.amount
            return {"min_liquidity": action.amount}
        if isinstance(action, SetRiskLevelAction):
            st.risk_level = action.level
            return {"risk_level": action.level}
        if isinstance(action, AddSupportedAssetAction):
            st.supported_assets.add(action.asset_id)
            st.balances.setdefault(action.asset_id, 0)
            return {"supported_assets": sorted(st.supported_assets)}
        raise UnknownAction(f"no handler for {type(action).__name__}")

    # -- vault-facing contract --
    def deposit(self, caller: str, asset_id: str, amount: int) -> int:
        self.capabilities.require(caller, "vault")
        if self.state.paused:
            raise StrategyPaused(f"{self.strategy_id} is paused")
        self._require_supported(asset_id)
        require_amount(amount)
        with self._transaction():
            self.state.balances[asset_id] = self.get_balance(asset_id) + amount
            self.ledger.transfer_from(asset_id, self.strategy_id, caller, self.strategy_id, amount)
            self._record("STRATEGY_DEPOSIT", caller, asset_id, amount)
        return self.get_balance(asset_id)

    def withdraw(self, caller: str, asset_id: str, amount: int) -> int:
        self.capabilities.require(caller, "vault")
        self._require_supported(asset_id)
        require_amount(amount)
        actual = min(amount, self.withdrawable(asset_id))
        if actual <= 0:
            logger.info("strategy=%s withdraw of %d capped to 0 by reserve policy", self.strategy_id, amount)
            return 0
        with self._transaction():
            self._debit(asset_id, actual)
            self._release(asset_id, actual, caller)
            self._record("STRATEGY_WITHDRAW", caller, asset_id, actual, requested=amount)
        return actual

    def provide_emergency_liquidity(self, caller: str, asset_id: str, amount: int) -> int:
        self.capabilities.require(caller, "vault")
        self._require_supported(asset_id)
        require_amount(amount)
        actual = min(amount, self.get_balance(asset_id))
        if actual <= 0:
            return 0
        with self._transaction():
            self._debit(asset_id, actual)
            self._release(asset_id, actual, caller)
            self._record("EMERGENCY_LIQUIDITY", caller, asset_id, actual, requested=amount)
        logger.warning(
            "emergency liquidity strategy=%s asset=%s requested=%d provided=%d",
            self.strategy_id, asset_id, amount, actual,
        )
        return actual

    def emergency_withdraw(self, caller: str, asset_id: str) -> int:
        """
        Drain the tracked balance of `asset_id` to the emergency recipient and zero it.
        The tracked balance is reset even when the funds actually available differ from it.
        """
        self.capabilities.require(caller, "guardian")
        self._require_supported(asset_id)
        tracked = self.get_balance(asset_id)
        available = self.idle_balance(asset_id) + self.deployed_balance(asset_id)
        drained = min(tracked, available)
        with self._transaction():
            self.state.balances[asset_id] = 0
            if drained > 0:
                self._release(asset_id, drained, self.state.emergency_recipient)
            self._record("EMERGENCY_WITHDRAW", caller, asset_id, drained, tracked=tracked)
        if drained != tracked:
            logger.warning(
                "emergency withdraw strategy=%s asset=%s tracked=%d available=%d; tracked balance reset to 0",
                self.strategy_id, asset_id, tracked, available,
            )
        else:
            logger.warning("emergency withdraw strategy=%s asset=%s amount=%d", self.strategy_id, asset_id, drained)
        return drained

    def claim_rewards(self, caller: str, asset_id: str) -> int:
        self.capabilities.require(caller, "vault")
        self._require_supported(asset_id)
        if self.lending is None:
            return 0
        with self._transaction():
            claimed = self.lending.claim_rewards(self.strategy_id, asset_id)
            if claimed > 0:
                self.ledger.transfer(asset_id, self.strategy_id, caller, claimed)
                self._record("STRATEGY_HARVEST", caller, asset_id, claimed)
        return claimed

    def pause(self, caller: str) -> None:
        self.capabilities.require(caller, "guardian")
        if not self.state.paused:
            self.state.paused = True
            self._record("STRATEGY_PAUSED", caller)
            logger.warning("strategy=%s paused by %s", self.strategy_id, caller)

    def unpause(self, caller: str) -> None:
        self.capabilities.require(caller, "vault")
        if self.state.paused:
            self.state.paused = False
            self._record("STRATEGY_UNPAUSED", caller)

    def snapshot(self) -> StrategyState:
        return replace(
            self.state,
            supported_assets=set(self.state.supported_assets),
            balances=dict(self.state.balances),
        )

    def restore(self, state: StrategyState) -> None:
        self.state = replace(
            state,
            supported_assets=set(state.supported_assets),
            balances=dict(state.balances),
        )
