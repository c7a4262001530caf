"""
Balance Gate

Reads an account's spendable balance and classifies it against the
minimum operating threshold. The threshold adapts to live network cost:
the larger of a fixed floor and a multiple of one simple transfer's fee.
"""

from dataclasses import dataclass

from loguru import logger
from web3 import Web3

from .accounts import Account
from .config import BalanceSettings, eth_to_wei
from .fee_oracle import FeeOracle, FeeTier, scale_price
from .network import NetworkReader


@dataclass(frozen=True)
class BalanceCheck:
    address: str
    balance: int
    sufficient: bool
    min_required: int

    @property
    def balance_eth(self) -> str:
        return str(Web3.from_wei(self.balance, 'ether'))


class BalanceGate:
    """Balance gate for source accounts"""

    def __init__(self, network: NetworkReader, fee_oracle: FeeOracle, settings: BalanceSettings):
        self.network = network
        self.fee_oracle = fee_oracle
        self.min_balance = eth_to_wei(settings.min_balance_eth)
        self.fee_multiple = settings.fee_multiple

    async def min_required(self) -> int:
        quote = await self.fee_oracle.resolve(FeeTier.AVERAGE)
        return max(self.min_balance, scale_price(quote.fee_cost(), self.fee_multiple))

    async def check(self, account: Account) -> BalanceCheck:
        """
        Check whether an account holds enough to operate

        Returns:
            BalanceCheck (sufficient=False rather than raising when below threshold)

        Raises:
            NetworkError: If the balance cannot be read
        """
        balance = await self.network.get_balance(account.address)
        min_required = await self.min_required()
        sufficient = balance >= min_required

        if sufficient:
            logger.info(f"Wallet {account.label} balance: {Web3.from_wei(balance, 'ether')} ETH")
        else:
            logger.warning(
                f"Wallet {account.label} balance too low: {Web3.from_wei(balance, 'ether')} ETH "
                f"(< {Web3.from_wei(min_required, 'ether')} ETH)"
            )

        return BalanceCheck(
            address=account.address, balance=balance,
            sufficient=sufficient, min_required=min_required,
        )
