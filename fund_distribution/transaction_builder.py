"""
Transaction Builder

Turns an allocation plan into nonce-sequenced EIP-1559 transfer
instructions for one source account.
"""

from dataclasses import dataclass, replace
from typing import List

from loguru import logger
from web3 import Web3

from .accounts import Account
from .allocation_planner import AllocationPlan
from .fee_oracle import SIMPLE_TRANSFER_GAS, FeeOracle, FeeQuote
from .network import NetworkReader


@dataclass(frozen=True)
class TransferInstruction:
    """One native-asset transfer; immutable once built"""
    source_address: str
    destination_address: str
    amount: int
    nonce: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    chain_id: int
    gas_limit: int = SIMPLE_TRANSFER_GAS

    def with_fees(self, max_fee_per_gas: int, max_priority_fee_per_gas: int) -> 'TransferInstruction':
        return replace(
            self,
            max_fee_per_gas=max_fee_per_gas,
            max_priority_fee_per_gas=min(max_priority_fee_per_gas, max_fee_per_gas),
        )

    def with_amount(self, amount: int) -> 'TransferInstruction':
        return replace(self, amount=amount)

    def with_nonce(self, nonce: int) -> 'TransferInstruction':
        return replace(self, nonce=nonce)

    @property
    def max_fee_cost(self) -> int:
        return self.max_fee_per_gas * self.gas_limit

    def to_transaction_dict(self) -> dict:
        return {
            'type': 2,
            'chainId': self.chain_id,
            'nonce': self.nonce,
            'to': Web3.to_checksum_address(self.destination_address),
            'value': self.amount,
            'gas': self.gas_limit,
            'maxFeePerGas': self.max_fee_per_gas,
            'maxPriorityFeePerGas': self.max_priority_fee_per_gas,
        }


class TransactionBuilder:
    """Assigns sequence numbers and fee fields to planned transfers"""

    def __init__(self, network: NetworkReader, fee_oracle: FeeOracle):
        self.network = network
        self.fee_oracle = fee_oracle

    async def build(self, account: Account, plan: AllocationPlan, fee_quote: FeeQuote) -> List[TransferInstruction]:
        """
        Build one instruction per planned transfer

        Nonces start at the account's pending transaction count and
        increase by one per destination, in plan order.

        Args:
            account: Source account
            plan: Allocation plan
            fee_quote: Resolved fee quote

        Returns:
            List of TransferInstruction
        """
        start_nonce = await self.network.get_sequence_count(account.address, pending=True)
        chain_id = await self.network.get_chain_id()
        priority_fee = self.fee_oracle.priority_fee_for(fee_quote)

        logger.info(f"Starting nonce for {account.label}: {start_nonce}")

        instructions = []
        for offset, planned in enumerate(plan.transfers):
            instructions.append(TransferInstruction(
                source_address=account.address,
                destination_address=planned.destination.address,
                amount=planned.amount,
                nonce=start_nonce + offset,
                max_fee_per_gas=fee_quote.price,
                max_priority_fee_per_gas=priority_fee,
                chain_id=chain_id,
            ))

        return instructions
