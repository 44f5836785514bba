from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Literal, Optional, Set, Tuple
from collections import deque
import logging
import threading

logger = logging.getLogger(__name__)

Capability = Literal["admin", "agent", "guardian", "vault"]
TransferHook = Callable[[str, str, str, int], None]

def format_inventory(inv: Dict[str, int]) -> str:
    if not inv:
        return "(empty)"
    items = sorted(inv.items(), key=lambda kv: kv[0])
    return ", ".join(f"{asset}:{amount}" for asset, amount in items)

# -----------------------------
# Errors
# -----------------------------
class VaultError(Exception):
    """Base class for every rejection raised by the vault and its collaborators."""

class ValidationError(VaultError):
    pass

class InsufficientBalance(ValidationError):
    pass

class InsufficientAllowance(ValidationError):
    pass

class UnsupportedAsset(ValidationError):
    pass

class AuthorizationError(VaultError):
    pass

class LiquidityError(VaultError):
    pass

class InsufficientReserve(LiquidityError):
    pass

class InsufficientLiquidity(LiquidityError):
    pass

class NoShares(LiquidityError):
    pass

class StateError(VaultError):
    pass

class StrategyNotFound(StateError):
    pass

class StrategyAlreadyRegistered(StateError):
    pass

class UnknownAction(StateError):
    pass

class StrategyPaused(StateError):
    pass

class ReentrantCall(StateError):
    pass

class StrategyExecutionFailed(VaultError):
    def __init__(self, action_id: int, reason: str) -> None:
        super().__init__(f"action {action_id} failed: {reason}")
        self.action_id = action_id
        self.reason = reason


def require_amount(amount: int, name: str = "amount") -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(f"{name} must be an integer, got {amount!r}")
    if amount <= 0:
        raise ValidationError(f"{name} must be positive, got {amount}")
    return amount

def require_principal(principal: Optional[str], name: str = "principal") -> str:
    if not isinstance(principal, str) or not principal.strip():
        raise ValidationError(f"invalid {name}: {principal!r}")
    return principal

def saturating_sub(total: int, amount: int, label: str = "") -> Tuple[int, bool]:
    """
    Return (max(total - amount, 0), saturated).
    Saturation means a tracked total drifted below what actually left it.
    """
    if amount <= total:
        return total - amount, False
    logger.warning("saturating subtraction on %s: total=%d amount=%d", label or "value", total, amount)
    return 0, True


# -----------------------------
# Transactions
# -----------------------------
@contextmanager
def atomic(*participants) -> Iterator[None]:
    """
    Snapshot every participant, run the body, and restore all snapshots if it raises.
    Participants expose snapshot() -> state and restore(state).
    """
    saved = [(p, p.snapshot()) for p in participants]
    try:
        yield
    except BaseException:
        for p, state in reversed(saved):
            p.restore(state)
        raise


# -----------------------------
# Clock
# -----------------------------
class TickClock:
    def __init__(self, start: int = 0) -> None:
        self.tick = int(start)

    def now(self) -> int:
        return self.tick

    def advance(self, n_ticks: int = 1) -> int:
        self.tick += max(0, int(n_ticks))
        return self.tick


# -----------------------------
# Events
# -----------------------------
@dataclass
class Event:
    tick: int
    event_type: str
    actor_id: Optional[str] = None
    strategy_id: Optional[str] = None
    asset_id: Optional[str] = None
    amount: Optional[int] = None
    meta: dict = field(default_factory=dict)

class EventLog:
    def __init__(self, maxlen: Optional[int] = None) -> None:
        self.events = deque(maxlen=maxlen)

    def add(self, e: Event) -> None:
        self.events.append(e)

    def tail(self, n: int = 200) -> List[Event]:
        if n <= 0:
            return []
        if n >= len(self.events):
            return list(self.events)
        return list(self.events)[-n:]

    def snapshot(self) -> deque:
        return deque(self.events, maxlen=self.events.maxlen)

    def restore(self, state: deque) -> None:
        self.events = state


# -----------------------------
# Asset ledger
# -----------------------------
class AssetLedger:
    """
    In-memory fungible asset ledger keyed by (asset_id, holder).
    Stands in for the external token contracts the vault moves funds through.

    Writes hold `lock`. A caller that snapshots the ledger for rollback must hold
    it from snapshot to commit or restore, so no other writer lands in between.
    Lock order is ledger first, then any vault lock.
    """

    def __init__(self, debug: bool = False) -> None:
        self.debug = debug
        self.lock = threading.RLock()
        self.balances: Dict[Tuple[str, str], int] = {}
        self.allowances: Dict[Tuple[str, str, str], int] = {}
        self.total_supply: Dict[str, int] = {}
        self._hooks: List[TransferHook] = []

    def _debug_change(self, action: str, asset_id: str, holder: str, amount: int,
                      before: Dict[str, int], after: Dict[str, int]) -> None:
        if not self.debug or not logger.isEnabledFor(logging.DEBUG):
            return
        logger.debug(
            "[LEDGER] holder=%s action=%s asset=%s amount=%d before={ %s } after={ %s }",
            holder,
            action,
            asset_id,
            amount,
            format_inventory(before),
            format_inventory(after),
        )

    def add_transfer_hook(self, hook: TransferHook) -> None:
        self._hooks.append(hook)

    def remove_transfer_hook(self, hook: TransferHook) -> None:
        if hook in self._hooks:
            self._hooks.remove(hook)

    def balance_of(self, asset_id: str, holder: str) -> int:
        return int(self.balances.get((asset_id, holder), 0))

    def allowance(self, asset_id: str, owner: str, spender: str) -> int:
        return int(self.allowances.get((asset_id, owner, spender), 0))

    def inventory(self, holder: str) -> Dict[str, int]:
        return {a: amt for (a, h), amt in self.balances.items() if h == holder and amt > 0}

    def approve(self, asset_id: str, owner: str, spender: str, amount: int) -> None:
        require_principal(owner, "owner")
        require_principal(spender, "spender")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise ValidationError(f"allowance must be a non-negative integer, got {amount!r}")
        with self.lock:
            self.allowances[(asset_id, owner, spender)] = amount

    def mint(self, asset_id: str, to: str, amount: int) -> None:
        require_principal(to, "recipient")
        require_amount(amount)
        with self.lock:
            debug = self.debug and logger.isEnabledFor(logging.DEBUG)
            if debug:
                before = self.inventory(to)
            self.balances[(asset_id, to)] = self.balance_of(asset_id, to) + amount
            self.total_supply[asset_id] = self.total_supply.get(asset_id, 0) + amount
            if debug:
                self._debug_change("mint", asset_id, to, amount, before, self.inventory(to))

    def transfer(self, asset_id: str, sender: str, recipient: str, amount: int) -> None:
        require_principal(sender, "sender")
        require_principal(recipient, "recipient")
        require_amount(amount)
        with self.lock:
            have = self.balance_of(asset_id, sender)
            if have < amount:
                raise InsufficientBalance(f"{sender} holds {have} {asset_id}, needs {amount}")
            debug = self.debug and logger.isEnabledFor(logging.DEBUG)
            if debug:
                before = self.inventory(sender)
            self.balances[(asset_id, sender)] = have - amount
            self.balances[(asset_id, recipient)] = self.balance_of(asset_id, recipient) + amount
            if debug:
                self._debug_change("transfer_out", asset_id, sender, amount, before, self.inventory(sender))
            for hook in list(self._hooks):
                hook(asset_id, sender, recipient, amount)

    def transfer_from(self, asset_id: str, spender: str, owner: str, recipient: str, amount: int) -> None:
        require_amount(amount)
        with self.lock:
            allowed = self.allowance(asset_id, owner, spender)
            if allowed < amount:
                raise InsufficientAllowance(f"{spender} may move {allowed} {asset_id} of {owner}, needs {amount}")
            self.allowances[(asset_id, owner, spender)] = allowed - amount
            self.transfer(asset_id, owner, recipient, amount)

    def snapshot(self) -> tuple:
        with self.lock:
            return dict(self.balances), dict(self.allowances), dict(self.total_supply)

    def restore(self, state: tuple) -> None:
        balances, allowances, total_supply = state
        with self.lock:
            self.balances = dict(balances)
            self.allowances = dict(allowances)
            self.total_supply = dict(total_supply)


# -----------------------------
# Capabilities
# -----------------------------
class CapabilityStore:
    def __init__(self) -> None:
        self.grants: Dict[str, Set[str]] = {}

    def grant(self, principal: str, capability: Capability) -> None:
        require_principal(principal)
        self.grants.setdefault(principal, set()).add(capability)

    def revoke(self, principal: str, capability: Capability) -> None:
        caps = self.grants.get(principal)
        if caps:
            caps.discard(capability)

    def has_capability(self, principal: str, capability: Capability) -> bool:
        return capability in self.grants.get(principal, ())

class CapabilityPolicy:
    """Capability check queried at the start of every privileged operation."""

    def __init__(self, store: CapabilityStore) -> None:
        self.store = store

    def allows(self, principal: Optional[str], capability: Capability) -> bool:
        if not isinstance(principal, str) or not principal:
            return False
        return self.store.has_capability(principal, capability)

    def require(self, principal: Optional[str], capability: Capability) -> None:
        if not self.allows(principal, capability):
            logger.info("denied: principal=%s lacks capability=%s", principal, capability)
            raise AuthorizationError(f"{principal!r} lacks capability {capability!r}")
