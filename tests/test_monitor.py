"""Unit tests for scheduled environment-wallet sweeps."""

import asyncio

import pytest

from conftest import DEST_A, ETH, KEY_1, KEY_2, make_coordinator
from fund_distribution.accounts import Account
from fund_distribution.config import ConfigError
from fund_distribution.distribution_coordinator import AccountState
from fund_distribution.monitor import DistributionMonitor, load_env_wallets
from fund_distribution.validation import ValidationError


class TestEnvWallets:
    """Test reading wallets from the environment."""

    def test_wallets_ordered_by_number(self):
        """Test numbering order and blank entries."""
        environ = {
            'WALLET_2_PRIVATE_KEY': KEY_2,
            'WALLET_1_PRIVATE_KEY': KEY_1,
            'WALLET_3_PRIVATE_KEY': '  ',
            'MAIN_WALLET_ADDRESS': DEST_A,
        }

        accounts, destinations = load_env_wallets(environ)

        assert [a.address for a in accounts] == [
            Account.from_credential(KEY_1).address,
            Account.from_credential(KEY_2).address,
        ]
        assert len(destinations) == 1
        assert destinations[0].address == DEST_A
        assert destinations[0].weight_percentage == 100.0

    def test_missing_main_wallet(self):
        """Test MAIN_WALLET_ADDRESS is required."""
        with pytest.raises(ConfigError, match="MAIN_WALLET_ADDRESS"):
            load_env_wallets({'WALLET_1_PRIVATE_KEY': KEY_1})

    def test_no_source_wallets(self):
        """Test at least one source wallet is required."""
        with pytest.raises(ConfigError, match="No WALLET_"):
            load_env_wallets({'MAIN_WALLET_ADDRESS': DEST_A})

    def test_malformed_key(self):
        """Test a bad key names its variable."""
        with pytest.raises(ValidationError, match="WALLET_1_PRIVATE_KEY"):
            load_env_wallets({'WALLET_1_PRIVATE_KEY': '0x12', 'MAIN_WALLET_ADDRESS': DEST_A})


class ScriptedCoordinator:
    """Coordinator stand-in that fails its first run"""

    def __init__(self, stop_after):
        self.calls = 0
        self.stop_after = stop_after
        self.stop_event = None

    async def run(self, accounts, destinations, distribution_method=None, fee_tier=None):
        self.calls += 1
        if self.calls >= self.stop_after:
            self.stop_event.set()
        if self.calls == 1:
            raise RuntimeError("rpc unavailable")
        return []


class TestMonitor:
    """Test the sweep schedule."""

    def test_run_once_sweeps_into_main_wallet(self, network, config, clock, account):
        """Test a single sweep sends to the main wallet."""
        network.fund(account, ETH)
        accounts, destinations = load_env_wallets({'WALLET_1_PRIVATE_KEY': KEY_1, 'MAIN_WALLET_ADDRESS': DEST_A})
        monitor = DistributionMonitor(make_coordinator(network, config, clock), accounts, destinations)

        statuses = asyncio.run(monitor.run_once())

        assert statuses[0].state == AccountState.SUCCESS
        assert network.accepted[0].instruction.destination_address == DEST_A
        assert monitor.runs == 1

    def test_failed_run_does_not_stop_schedule(self):
        """Test the loop continues after an error and stops on the event."""
        coordinator = ScriptedCoordinator(stop_after=2)
        monitor = DistributionMonitor(coordinator, [], [], interval_seconds=0.01)

        async def scenario():
            stop_event = asyncio.Event()
            coordinator.stop_event = stop_event
            await monitor.run_forever(stop_event)

        asyncio.run(scenario())

        assert coordinator.calls == 2
        assert monitor.runs == 1

    def test_on_run_callback(self, network, config, clock, account):
        """Test the per-run callback receives the statuses."""
        network.fund(account, ETH)
        seen = []
        accounts, destinations = load_env_wallets({'WALLET_1_PRIVATE_KEY': KEY_1, 'MAIN_WALLET_ADDRESS': DEST_A})
        monitor = DistributionMonitor(
            make_coordinator(network, config, clock), accounts, destinations, on_run=seen.append,
        )

        asyncio.run(monitor.run_once())

        assert len(seen) == 1
        assert seen[0][0].address == account.address
