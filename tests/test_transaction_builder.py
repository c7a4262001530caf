"""Unit tests for transaction building and signing."""

import asyncio

from conftest import DEST_A, DEST_B, DEST_C, ETH, GWEI, SEPOLIA_CHAIN_ID
from fund_distribution.allocation_planner import AllocationPlanner, DestinationSpec
from fund_distribution.fee_oracle import FeeOracle, FeeQuote, FeeSource, FeeTier
from fund_distribution.transaction_builder import TransactionBuilder
from web3 import Web3


def build(network, config, clock, account, destinations, price_gwei=12):
    oracle = FeeOracle.from_config(config, network, clock=clock)
    quote = FeeQuote(tier=FeeTier.AVERAGE, price=int(price_gwei * GWEI), observed_at=0.0, source=FeeSource.NETWORK)
    plan = AllocationPlanner(config.planner).plan(ETH, destinations, quote, len(destinations))
    return asyncio.run(TransactionBuilder(network, oracle).build(account, plan, quote))


class TestNonceSequencing:
    """Test sequence number assignment."""

    def test_contiguous_from_pending_count(self, network, config, clock, account):
        """Test nonces start at the pending count with no gaps."""
        network.fund(account, ETH, nonce=7)
        destinations = [
            DestinationSpec(DEST_A, 25), DestinationSpec(DEST_B, 25),
            DestinationSpec(DEST_C, 25), DestinationSpec(DEST_A, 25),
        ]

        instructions = build(network, config, clock, account, destinations)

        assert [i.nonce for i in instructions] == [7, 8, 9, 10]
        assert [i.destination_address for i in instructions] == [DEST_A, DEST_B, DEST_C, DEST_A]
        assert all(i.source_address == account.address for i in instructions)

    def test_fresh_account_starts_at_zero(self, network, config, clock, account):
        """Test an account with no history."""
        network.fund(account, ETH)

        instructions = build(network, config, clock, account, [DestinationSpec(DEST_A, 100)])

        assert [i.nonce for i in instructions] == [0]


class TestFeeFields:
    """Test fee fields derived from the quote."""

    def test_fees_follow_quote(self, network, config, clock, account):
        """Test max fee = quote price and the 2 Gwei priority fee."""
        network.fund(account, ETH)

        instruction = build(network, config, clock, account, [DestinationSpec(DEST_A, 100)])[0]

        assert instruction.max_fee_per_gas == 12 * GWEI
        assert instruction.max_priority_fee_per_gas == 2 * GWEI
        assert instruction.gas_limit == 21000
        assert instruction.chain_id == SEPOLIA_CHAIN_ID

    def test_priority_fee_capped_by_price(self, network, config, clock, account):
        """Test priority fee never exceeds the max fee."""
        network.fund(account, ETH)

        instruction = build(network, config, clock, account, [DestinationSpec(DEST_A, 100)], price_gwei=1.5)[0]

        assert instruction.max_priority_fee_per_gas == 1_500_000_000


class TestTransferInstruction:
    """Test the immutable instruction."""

    def test_transaction_dict(self, network, config, clock, account):
        """Test the EIP-1559 transaction fields."""
        network.fund(account, ETH, nonce=3)

        instruction = build(network, config, clock, account, [DestinationSpec(DEST_A, 100)])[0]
        tx = instruction.to_transaction_dict()

        assert tx['type'] == 2
        assert tx['nonce'] == 3
        assert tx['to'] == Web3.to_checksum_address(DEST_A)
        assert tx['value'] == instruction.amount
        assert tx['gas'] == 21000

    def test_with_fees_returns_copy(self, network, config, clock, account):
        """Test that fee bumps clone rather than mutate."""
        network.fund(account, ETH)
        instruction = build(network, config, clock, account, [DestinationSpec(DEST_A, 100)])[0]

        bumped = instruction.with_fees(20 * GWEI, 30 * GWEI)

        assert instruction.max_fee_per_gas == 12 * GWEI
        assert bumped.max_fee_per_gas == 20 * GWEI
        assert bumped.max_priority_fee_per_gas == 20 * GWEI
        assert bumped.nonce == instruction.nonce

    def test_signing(self, network, config, clock, account):
        """Test that signing yields raw bytes and a transaction hash."""
        network.fund(account, ETH)
        instruction = build(network, config, clock, account, [DestinationSpec(DEST_A, 100)])[0]

        signed = account.sign(instruction)

        assert signed.instruction is instruction
        assert isinstance(signed.raw_transaction, bytes)
        assert signed.tx_hash.startswith('0x')
        assert len(signed.tx_hash) == 66
