"""Shared fakes for the fund distribution tests."""

import asyncio
from typing import Dict, List, Optional

import pytest

from fund_distribution.accounts import Account, SignedInstruction
from fund_distribution.config import load_config
from fund_distribution.distribution_coordinator import DistributionCoordinator
from fund_distribution.gas_oracle import GasOracleReading
from fund_distribution.network import FeeSnapshot, Receipt

GWEI = 10 ** 9
ETH = 10 ** 18

KEY_1 = '0x' + '01' * 32
KEY_2 = '0x' + '02' * 32
KEY_3 = '0x' + '03' * 32
KEY_4 = '0x' + '04' * 32

DEST_A = '0x' + 'a' * 40
DEST_B = '0x' + 'b' * 40
DEST_C = '0x' + 'c' * 40

SEPOLIA_CHAIN_ID = 11155111


class FakeClock:
    """Monotonic clock whose sleep advances virtual time instantly"""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeNetwork:
    """
    In-memory chain

    - balances / nonces per address
    - broadcast_errors: queue of exceptions (or None for success), one per broadcast
    - always_fail: source address -> exception raised on every broadcast
    - receipt_script: queue of receipt modes, one per accepted broadcast
      ('confirm', 'revert', 'pending', 'dropped'); default_mode otherwise
    """

    def __init__(self, chain_id: int = SEPOLIA_CHAIN_ID):
        self.chain_id = chain_id
        self.balances: Dict[str, int] = {}
        self.nonces: Dict[str, int] = {}
        self.balance_errors: Dict[str, Exception] = {}
        self.fee_snapshot = FeeSnapshot(base_fee=10 * GWEI, priority_fee=2 * GWEI)
        self.fee_error: Optional[Exception] = None

        self.broadcast_errors: List[Optional[Exception]] = []
        self.always_fail: Dict[str, Exception] = {}
        self.broadcast_gate: Optional[asyncio.Event] = None
        self.receipt_script: List[str] = []
        self.default_mode = 'confirm'

        self.broadcasts: List[SignedInstruction] = []
        self.accepted: List[SignedInstruction] = []
        self.tx_modes: Dict[str, str] = {}
        self.fee_calls = 0
        self.balance_reads = 0
        self.sequence_reads = 0
        self.block_number = 100

    def fund(self, account: Account, amount: int, nonce: int = 0):
        self.balances[account.address] = amount
        self.nonces[account.address] = nonce

    async def get_balance(self, address: str) -> int:
        self.balance_reads += 1
        await asyncio.sleep(0)
        if address in self.balance_errors:
            raise self.balance_errors[address]
        return self.balances.get(address, 0)

    async def get_fee_snapshot(self) -> FeeSnapshot:
        self.fee_calls += 1
        await asyncio.sleep(0)
        if self.fee_error is not None:
            raise self.fee_error
        return self.fee_snapshot

    async def get_sequence_count(self, address: str, pending: bool = True) -> int:
        self.sequence_reads += 1
        return self.nonces.get(address, 0)

    async def get_chain_id(self) -> int:
        return self.chain_id

    async def broadcast(self, signed: SignedInstruction) -> str:
        self.broadcasts.append(signed)
        if self.broadcast_gate is not None:
            await self.broadcast_gate.wait()

        instruction = signed.instruction
        if instruction.source_address in self.always_fail:
            raise self.always_fail[instruction.source_address]
        if self.broadcast_errors:
            error = self.broadcast_errors.pop(0)
            if error is not None:
                raise error

        self.accepted.append(signed)
        self.tx_modes[signed.tx_hash] = self.receipt_script.pop(0) if self.receipt_script else self.default_mode

        source = instruction.source_address
        self.nonces[source] = max(self.nonces.get(source, 0), instruction.nonce + 1)
        self.balances[source] = self.balances.get(source, 0) - instruction.amount - instruction.max_fee_cost
        return signed.tx_hash

    async def get_receipt(self, tx_id: str) -> Optional[Receipt]:
        await asyncio.sleep(0)
        mode = self.tx_modes.get(tx_id, self.default_mode)
        if mode == 'confirm':
            return Receipt(tx_id=tx_id, block_number=self.block_number, status=1)
        if mode == 'revert':
            return Receipt(tx_id=tx_id, block_number=self.block_number, status=0)
        return None

    async def get_transaction(self, tx_id: str) -> Optional[dict]:
        if self.tx_modes.get(tx_id) == 'pending':
            return {'hash': tx_id}
        return None


class FakeGasOracle:
    """Scripted stand-in for EtherscanGasOracle"""

    def __init__(self, reading: Optional[GasOracleReading] = None):
        self.reading = reading
        self.calls = 0

    async def get_gas_oracle(self) -> Optional[GasOracleReading]:
        self.calls += 1
        return self.reading


def make_coordinator(network: FakeNetwork, config, clock: FakeClock, gas_oracle=None) -> DistributionCoordinator:
    return DistributionCoordinator.from_config(config, network, gas_oracle, sleep=clock.sleep, clock=clock)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def config():
    return load_config(use_env=False)


@pytest.fixture
def account():
    return Account.from_credential(KEY_1)


@pytest.fixture
def accounts():
    return [Account.from_credential(key) for key in (KEY_1, KEY_2, KEY_3, KEY_4)]
