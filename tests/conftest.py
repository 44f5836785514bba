"""
Shared fixtures: a fresh in-memory deployment per test.
"""

import pytest

from vaultsim.config import StrategyConfig, VaultConfig
from vaultsim.factory import VaultFactory


@pytest.fixture
def make_deployment():
    """Build a deployment from keyword overrides for the vault and strategy configs."""
    def _make(vault=None, strategy=None, with_strategy=True, with_lending=True):
        vault_cfg = VaultConfig(**(vault or {}))
        strategy_cfg = StrategyConfig(**{"supported_assets": [vault_cfg.asset_id], **(strategy or {})})
        factory = VaultFactory(vault_cfg, strategy_cfg)
        return factory.deploy(with_strategy=with_strategy, with_lending=with_lending)
    return _make


@pytest.fixture
def deployment(make_deployment):
    return make_deployment()


@pytest.fixture
def funded(deployment):
    """Default deployment with two funded holders and a funded reward distributor."""
    deployment.fund_holder("alice", 10_000)
    deployment.fund_holder("bob", 10_000)
    deployment.fund_distributor("distributor", 1_000_000)
    return deployment
