"""Tests for the command-line entry point."""

import sys

import pytest
from loguru import logger

from conftest import DEST_A, KEY_1
from fund_distribution.cli import main


@pytest.fixture
def no_rpc(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ('RPC_URL', 'INFURA_PROJECT_ID', 'MAIN_WALLET_ADDRESS', 'WALLET_1_PRIVATE_KEY'):
        monkeypatch.delenv(name, raising=False)
    yield monkeypatch
    logger.remove()
    logger.add(sys.stderr)


class TestExitCodes:
    """Test validation and configuration errors exit with 2."""

    def test_bad_key(self, no_rpc, capsys):
        """Test a malformed key is rejected before any network call."""
        code = main(['distribute', '--keys', '0x1234', '--destinations', f'{DEST_A}:100'])

        assert code == 2
        assert "Wallet 1" in capsys.readouterr().err

    def test_bad_destination(self, no_rpc, capsys):
        """Test a malformed destination is rejected."""
        code = main(['distribute', '--keys', KEY_1, '--destinations', '0x1234:100'])

        assert code == 2
        assert "Destination 1" in capsys.readouterr().err

    def test_no_rpc_endpoint(self, no_rpc, capsys):
        """Test a missing RPC endpoint is a configuration error."""
        code = main(['gas-price'])

        assert code == 2
        assert "No RPC endpoint configured" in capsys.readouterr().err

    def test_monitor_without_main_wallet(self, no_rpc, capsys):
        """Test monitor mode requires MAIN_WALLET_ADDRESS."""
        no_rpc.setenv('WALLET_1_PRIVATE_KEY', KEY_1)

        code = main(['monitor', '--once'])

        assert code == 2
        assert "MAIN_WALLET_ADDRESS" in capsys.readouterr().err

    def test_keys_required(self, no_rpc):
        """Test argparse rejects a distribute call without keys."""
        with pytest.raises(SystemExit):
            main(['distribute', '--destinations', f'{DEST_A}:100'])
