"""
Tests for the share ledger and the reward accrual engine.
"""

import pytest

from vaultsim.config import PRECISION
from vaultsim.core import AssetLedger, InsufficientBalance, NoShares, StateError, TickClock
from vaultsim.rewards import RewardAccrualEngine
from vaultsim.shares import ShareLedger


def _engine(policy="instant", duration=1):
    shares = ShareLedger()
    ledger = AssetLedger()
    clock = TickClock()
    engine = RewardAccrualEngine(
        shares, ledger, reward_asset_id="RWD", vault_id="vault",
        precision=PRECISION, policy=policy, duration=duration, clock=clock,
    )
    return shares, ledger, clock, engine


def _mint(shares, engine, holder, amount):
    acct = shares.account(holder)
    settled = engine.checkpoint(acct, acct.shares, acct.shares + amount)
    shares.mint(settled, amount)


def _burn(shares, engine, holder, amount):
    acct = shares.account(holder)
    settled = engine.checkpoint(acct, acct.shares, acct.shares - amount)
    shares.burn(settled, amount)


class TestShareLedger:
    """Mint/burn bookkeeping and settlement receipts."""

    def test_mint_and_burn_track_total(self):
        shares, _, _, engine = _engine()
        _mint(shares, engine, "alice", 100)
        _mint(shares, engine, "bob", 50)
        _burn(shares, engine, "alice", 30)

        assert shares.shares_of("alice") == 70
        assert shares.total_shares == 120
        assert sum(a.shares for a in shares.holders()) == shares.total_shares

    def test_burn_more_than_held_fails(self):
        shares, _, _, engine = _engine()
        _mint(shares, engine, "alice", 10)

        acct = shares.account("alice")
        settled = engine.checkpoint(acct, 10, 0)
        with pytest.raises(InsufficientBalance):
            shares.burn(settled, 11)

    def test_zero_balance_account_persists(self):
        shares, _, _, engine = _engine()
        _mint(shares, engine, "alice", 10)
        _burn(shares, engine, "alice", 10)
        assert "alice" in shares.accounts
        assert shares.shares_of("alice") == 0

    def test_stale_receipt_rejected(self):
        shares, _, _, engine = _engine()
        acct = shares.account("alice")
        settled = engine.checkpoint(acct, 0, 100)
        shares.mint(settled, 100)

        with pytest.raises(StateError):
            shares.mint(settled, 50)

    def test_checkpoint_requires_pre_change_balance(self):
        shares, _, _, engine = _engine()
        _mint(shares, engine, "alice", 100)

        with pytest.raises(StateError):
            engine.checkpoint(shares.account("alice"), 150, 200)


class TestInstantRelease:
    """Instant distribution into the reward-per-share accumulator."""

    def test_proportional_split(self):
        shares, _, _, engine = _engine()
        _mint(shares, engine, "alice", 1000)
        _mint(shares, engine, "bob", 500)

        engine.distribute(1500)

        assert engine.accrued_of(shares.account("alice")) == 1000
        assert engine.accrued_of(shares.account("bob")) == 500

    def test_distribution_without_shares_fails(self):
        _, _, _, engine = _engine()
        with pytest.raises(NoShares):
            engine.distribute(100)

    def test_rounding_dust_is_bounded(self):
        shares, _, _, engine = _engine()
        for holder in ("a", "b", "c"):
            _mint(shares, engine, holder, 1)

        engine.distribute(10)

        total = sum(engine.accrued_of(a) for a in shares.holders())
        assert total <= 10
        assert 10 - total < 3

    def test_late_joiner_does_not_share_earlier_rewards(self):
        shares, _, _, engine = _engine()
        _mint(shares, engine, "alice", 100)
        engine.distribute(100)
        _mint(shares, engine, "bob", 100)
        engine.distribute(100)

        assert engine.accrued_of(shares.account("alice")) == 150
        assert engine.accrued_of(shares.account("bob")) == 50

    def test_accrual_is_settled_before_burn(self):
        shares, _, _, engine = _engine()
        _mint(shares, engine, "alice", 100)
        engine.distribute(40)
        _burn(shares, engine, "alice", 100)

        acct = shares.account("alice")
        assert acct.stored_rewards == 40
        assert engine.accrued_of(acct) == 40

    def test_claim_transfers_and_is_idempotent(self):
        shares, ledger, _, engine = _engine()
        ledger.mint("RWD", "vault", 1000)
        _mint(shares, engine, "alice", 100)
        engine.distribute(300)

        assert engine.claim(shares.account("alice")) == 300
        assert engine.claim(shares.account("alice")) == 0
        assert ledger.balance_of("RWD", "alice") == 300
        assert ledger.balance_of("RWD", "vault") == 700

    def test_accumulator_never_decreases(self):
        shares, _, _, engine = _engine()
        _mint(shares, engine, "alice", 7)
        seen = [engine.reward_per_share()]
        for amount in (3, 11, 1, 250):
            engine.distribute(amount)
            _mint(shares, engine, "bob", amount)
            seen.append(engine.reward_per_share())
        assert seen == sorted(seen)


class TestStreamedRelease:
    """Rewards released at a constant rate over a fixed period."""

    def test_release_over_period(self):
        shares, _, clock, engine = _engine("streamed", duration=4)
        _mint(shares, engine, "alice", 1000)
        engine.distribute(400)

        alice = shares.account("alice")
        assert engine.accrued_of(alice) == 0
        clock.advance(2)
        assert engine.accrued_of(alice) == 200
        clock.advance(10)
        assert engine.accrued_of(alice) == 400

    def test_top_up_mid_period_folds_remainder(self):
        shares, _, clock, engine = _engine("streamed", duration=4)
        _mint(shares, engine, "alice", 1000)
        engine.distribute(400)
        clock.advance(2)
        engine.distribute(400)

        assert engine.acc.reward_rate == 150
        assert engine.acc.period_finish == 6
        clock.advance(4)
        assert engine.accrued_of(shares.account("alice")) == 800

    def test_late_joiner_shares_only_the_remaining_stream(self):
        shares, _, clock, engine = _engine("streamed", duration=4)
        _mint(shares, engine, "alice", 1000)
        engine.distribute(400)
        clock.advance(2)
        _mint(shares, engine, "bob", 1000)
        clock.advance(2)

        assert engine.accrued_of(shares.account("alice")) == 300
        assert engine.accrued_of(shares.account("bob")) == 100

    def test_amount_below_duration_is_released_at_period_end(self):
        shares, _, clock, engine = _engine("streamed", duration=4)
        _mint(shares, engine, "alice", 1000)
        engine.distribute(3)

        alice = shares.account("alice")
        assert engine.acc.reward_rate == 0
        clock.advance(2)
        assert engine.accrued_of(alice) == 0
        clock.advance(8)
        assert engine.accrued_of(alice) == 3

        engine.sync()
        assert engine.acc.carry == 0
        assert engine.acc.total_distributed == 3

    def test_remainder_is_released_with_the_last_tick(self):
        shares, _, clock, engine = _engine("streamed", duration=4)
        _mint(shares, engine, "alice", 1000)
        engine.distribute(10)

        assert (engine.acc.reward_rate, engine.acc.carry) == (2, 2)
        clock.advance(2)
        assert engine.accrued_of(shares.account("alice")) == 4
        clock.advance(2)
        assert engine.accrued_of(shares.account("alice")) == 10

    def test_top_up_folds_carried_remainder(self):
        shares, _, clock, engine = _engine("streamed", duration=4)
        _mint(shares, engine, "alice", 1000)
        engine.distribute(10)
        clock.advance(2)
        engine.distribute(10)

        assert (engine.acc.reward_rate, engine.acc.carry) == (4, 0)
        assert engine.acc.period_finish == 6
        clock.advance(4)
        assert engine.accrued_of(shares.account("alice")) == 20

    def test_release_with_no_shares_is_stranded(self):
        shares, _, clock, engine = _engine("streamed", duration=4)
        _mint(shares, engine, "alice", 100)
        engine.distribute(400)
        clock.advance(1)
        _burn(shares, engine, "alice", 100)
        clock.advance(3)
        _mint(shares, engine, "alice", 100)

        assert engine.acc.stranded == 300
        assert engine.accrued_of(shares.account("alice")) == 100
