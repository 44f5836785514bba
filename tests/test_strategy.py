"""
Tests for StrategyUnit: action dispatch, capped withdrawals, emergency paths and pausing.
"""

import logging

import pytest

from vaultsim.core import AuthorizationError, StrategyPaused, UnknownAction, ValidationError
from vaultsim.strategy import (
    ActionId, AddSupportedAssetAction, DepositAction, SetMinLiquidityAction, SetReserveRatioAction,
    SetRiskLevelAction, WithdrawAction, decode_action,
)


@pytest.fixture
def allocated(funded):
    """1000 deposited, 800 allocated to the default strategy (idle on the unit)."""
    funded.vault.deposit("alice", 1000)
    funded.vault.allocate_to_strategy(funded.agent_id, funded.strategy_key, 800)
    return funded


class TestDecodeAction:
    def test_mapping_payload(self):
        action = decode_action(ActionId.SET_RISK_LEVEL, {"level": 3})
        assert action == SetRiskLevelAction(level=3)

    def test_typed_payload_passes_through(self):
        action = DepositAction(asset_id="USDC", amount=5)
        assert decode_action(1, action) is action

    def test_unknown_id(self):
        with pytest.raises(UnknownAction):
            decode_action(99, {})

    def test_wrong_fields(self):
        with pytest.raises(ValidationError):
            decode_action(ActionId.SET_RESERVE_RATIO, {"ratio": 10})

    def test_payload_of_another_action_rejected(self):
        with pytest.raises(ValidationError):
            decode_action(ActionId.WITHDRAW, DepositAction(asset_id="USDC", amount=5))


CASES = [
    (ActionId.DEPOSIT, DepositAction("USDC", 300), True, "ok"),
    (ActionId.DEPOSIT, DepositAction("USDC", 801), False, "insufficient_idle_balance"),
    (ActionId.DEPOSIT, DepositAction("DAI", 10), False, "unsupported_asset"),
    (ActionId.DEPOSIT, {"asset_id": "USDC", "amount": 0}, False, "invalid_amount"),
    (ActionId.WITHDRAW, WithdrawAction("USDC", 1), False, "insufficient_deployed_balance"),
    (ActionId.SET_RESERVE_RATIO, SetReserveRatioAction(50), True, "ok"),
    (ActionId.SET_RESERVE_RATIO, SetReserveRatioAction(51), False, "reserve_ratio_out_of_range"),
    (ActionId.SET_MIN_LIQUIDITY, SetMinLiquidityAction(25), True, "ok"),
    (ActionId.SET_MIN_LIQUIDITY, SetMinLiquidityAction(0), False, "min_liquidity_zero"),
    (ActionId.SET_RISK_LEVEL, SetRiskLevelAction(5), True, "ok"),
    (ActionId.SET_RISK_LEVEL, SetRiskLevelAction(6), False, "risk_level_out_of_range"),
    (ActionId.ADD_SUPPORTED_ASSET, AddSupportedAssetAction("DAI"), True, "ok"),
    (ActionId.ADD_SUPPORTED_ASSET, AddSupportedAssetAction("USDC"), False, "asset_already_supported"),
    (ActionId.ADD_SUPPORTED_ASSET, {"asset_id": "  "}, False, "invalid_asset"),
    (ActionId.DEPOSIT, {"asset_id": ["USDC"], "amount": 5}, False, "invalid_asset"),
    (ActionId.WITHDRAW, {"asset_id": {"USDC": 1}, "amount": 5}, False, "invalid_asset"),
    (ActionId.ADD_SUPPORTED_ASSET, {"asset_id": ["DAI"]}, False, "invalid_asset"),
    (ActionId.SET_RESERVE_RATIO, {"pct": [10]}, False, "reserve_ratio_out_of_range"),
    (ActionId.SET_RISK_LEVEL, {"level": {}}, False, "risk_level_out_of_range"),
    (ActionId.SET_RISK_LEVEL, {"risk": 2}, False, "malformed_payload"),
    (42, {}, False, "unknown_action"),
]


class TestValidateExecuteParity:
    """validate_action predicts exactly whether execute_action succeeds."""

    @pytest.mark.parametrize("action_id,payload,expected_ok,expected_reason", CASES)
    def test_validate(self, allocated, action_id, payload, expected_ok, expected_reason):
        assert allocated.strategy.validate_action(action_id, payload) == (expected_ok, expected_reason)

    @pytest.mark.parametrize("action_id,payload,expected_ok,expected_reason", CASES)
    def test_execute_agrees(self, allocated, action_id, payload, expected_ok, expected_reason):
        strategy = allocated.strategy
        before = strategy.snapshot()
        result = strategy.execute_action(allocated.agent_id, action_id, payload)

        assert result.ok is expected_ok
        assert result.reason == expected_reason
        if not expected_ok:
            assert strategy.snapshot() == before


class TestExecuteAction:
    def test_requires_agent(self, allocated):
        with pytest.raises(AuthorizationError):
            allocated.strategy.execute_action(allocated.guardian_id, ActionId.SET_RISK_LEVEL, {"level": 2})

    def test_paused_unit_rejects_actions(self, allocated):
        allocated.vault.pause_strategy(allocated.guardian_id)
        with pytest.raises(StrategyPaused):
            allocated.strategy.execute_action(allocated.agent_id, ActionId.SET_RISK_LEVEL, {"level": 2})

    def test_deploy_and_pull_from_lending(self, allocated):
        strategy = allocated.strategy
        result = strategy.execute_action(allocated.agent_id, ActionId.DEPOSIT, DepositAction("USDC", 800))

        assert result.result == {"deployed": 800}
        assert strategy.idle_balance("USDC") == 0
        assert strategy.deployed_balance("USDC") == 800
        assert strategy.get_balance("USDC") == 800

        result = strategy.execute_action(allocated.agent_id, ActionId.WITHDRAW, WithdrawAction("USDC", 300))
        assert result.result == {"withdrawn": 300, "deployed": 500}
        assert strategy.idle_balance("USDC") == 300

    def test_add_supported_asset(self, allocated):
        strategy = allocated.strategy
        strategy.execute_action(allocated.agent_id, ActionId.ADD_SUPPORTED_ASSET, {"asset_id": "DAI"})
        assert "DAI" in strategy.state.supported_assets
        assert strategy.get_balance("DAI") == 0

    def test_action_is_recorded(self, allocated):
        allocated.strategy.execute_action(allocated.agent_id, ActionId.SET_RISK_LEVEL, {"level": 4})
        event = allocated.vault.log.tail(1)[0]
        assert event.event_type == "AGENT_ACTION"
        assert event.meta["action"] == "SET_RISK_LEVEL"


class TestVaultFacingWithdraw:
    def test_withdraw_is_capped_by_unit_reserve(self, allocated):
        vault = allocated.vault
        returned = vault.withdraw_from_strategy(allocated.agent_id, allocated.strategy_key, 700)

        assert returned == 640
        assert allocated.strategy.get_balance("USDC") == 160
        assert vault.liquidity.total_allocated == 160
        assert vault.liquid_balance() == 840

    def test_withdraw_pulls_deployed_funds(self, allocated):
        strategy = allocated.strategy
        strategy.execute_action(allocated.agent_id, ActionId.DEPOSIT, DepositAction("USDC", 800))

        returned = allocated.vault.withdraw_from_strategy(allocated.agent_id, allocated.strategy_key, 400)

        assert returned == 400
        assert strategy.deployed_balance("USDC") == 400
        assert strategy.idle_balance("USDC") == 0

    def test_withdraw_requires_vault_capability(self, allocated):
        with pytest.raises(AuthorizationError):
            allocated.strategy.withdraw(allocated.agent_id, "USDC", 10)

    def test_nothing_withdrawable_returns_zero(self, make_deployment):
        dep = make_deployment(strategy={"reserve_ratio_pct": 50, "min_liquidity": 1000})
        dep.fund_holder("alice", 1000)
        dep.vault.deposit("alice", 1000)
        dep.vault.allocate_to_strategy(dep.agent_id, dep.strategy_key, 800)

        assert dep.vault.withdraw_from_strategy(dep.agent_id, dep.strategy_key, 100) == 0
        assert dep.vault.liquidity.total_allocated == 800

    def test_emergency_liquidity_ignores_reserve(self, allocated, caplog):
        strategy = allocated.strategy
        with caplog.at_level(logging.WARNING, logger="vaultsim.strategy"):
            provided = strategy.provide_emergency_liquidity(allocated.vault.vault_id, "USDC", 900)

        assert provided == 800
        assert strategy.get_balance("USDC") == 0
        assert "emergency liquidity" in caplog.text


class TestPauseAndEmergency:
    def test_pause_blocks_deposits_not_withdrawals(self, allocated):
        vault = allocated.vault
        vault.pause_strategy(allocated.guardian_id)

        assert vault.withdraw_from_strategy(allocated.agent_id, allocated.strategy_key, 100) == 100
        with pytest.raises(StrategyPaused):
            vault.allocate_to_strategy(allocated.agent_id, allocated.strategy_key, 10)
        assert vault.liquidity.total_allocated == 700

    def test_guardian_cannot_unpause(self, allocated):
        allocated.vault.pause_strategy(allocated.guardian_id)
        with pytest.raises(AuthorizationError):
            allocated.strategy.unpause(allocated.guardian_id)
        assert allocated.strategy.paused

    def test_only_guardian_pauses(self, allocated):
        with pytest.raises(AuthorizationError):
            allocated.vault.pause_strategy(allocated.agent_id)
        with pytest.raises(AuthorizationError):
            allocated.strategy.pause(allocated.vault.vault_id)

    def test_admin_resumes_through_vault(self, allocated):
        vault = allocated.vault
        vault.pause_strategy(allocated.guardian_id)
        vault.resume_strategy(allocated.admin_id)
        assert not allocated.strategy.paused

    def test_emergency_withdraw_through_vault(self, allocated):
        vault = allocated.vault
        drained = vault.emergency_withdraw_strategy(allocated.guardian_id)

        assert drained == 800
        assert allocated.ledger.balance_of("USDC", "treasury:emergency") == 800
        assert allocated.strategy.get_balance("USDC") == 0
        assert vault.liquidity.total_allocated == 0
        assert vault.check_invariants() == []

    def test_emergency_withdraw_drains_deployed_funds(self, allocated):
        strategy = allocated.strategy
        strategy.execute_action(allocated.agent_id, ActionId.DEPOSIT, DepositAction("USDC", 500))

        assert strategy.emergency_withdraw(allocated.guardian_id, "USDC") == 800
        assert strategy.deployed_balance("USDC") == 0
        assert strategy.idle_balance("USDC") == 0

    def test_emergency_withdraw_leaves_untracked_surplus(self, allocated):
        strategy = allocated.strategy
        allocated.ledger.mint("USDC", strategy.strategy_id, 50)

        assert strategy.emergency_withdraw(allocated.guardian_id, "USDC") == 800
        assert strategy.idle_balance("USDC") == 50

    def test_emergency_withdraw_with_missing_funds(self, allocated, caplog):
        strategy = allocated.strategy
        allocated.ledger.transfer("USDC", strategy.strategy_id, "elsewhere", 500)

        with caplog.at_level(logging.WARNING, logger="vaultsim.strategy"):
            drained = strategy.emergency_withdraw(allocated.guardian_id, "USDC")

        assert drained == 300
        assert strategy.get_balance("USDC") == 0
        assert "tracked=800" in caplog.text

    def test_emergency_withdraw_requires_guardian(self, allocated):
        with pytest.raises(AuthorizationError):
            allocated.strategy.emergency_withdraw(allocated.admin_id, "USDC")


class TestHarvest:
    def test_lending_yield_is_harvested_to_vault(self, allocated):
        strategy = allocated.strategy
        strategy.execute_action(allocated.agent_id, ActionId.DEPOSIT, DepositAction("USDC", 800))
        assert allocated.lending.accrue_yield(0.01) == 8

        harvested = allocated.vault.harvest_strategy(allocated.agent_id)

        assert harvested == 8
        assert allocated.vault.liquid_balance() == 208
        assert allocated.vault.harvest_strategy(allocated.agent_id) == 0

    def test_harvest_without_lending(self, make_deployment):
        dep = make_deployment(with_lending=False)
        assert dep.vault.harvest_strategy(dep.agent_id) == 0
