"""
Network Client

Narrow reader/writer interfaces over the chain RPC, plus the web3-backed
implementation used in production.

Reads (balance, fee snapshot, sequence count) retry transient transport
failures with exponential backoff before raising NetworkError.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

from loguru import logger
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import TransactionNotFound

from .accounts import SignedInstruction, short_address


RETRYABLE_KEYWORDS = [
    'timeout', 'timed out', 'network', 'connection', 'rate limit',
    'temporarily', 'unavailable', 'reset', '429', '502', '503', '504',
]


class NetworkError(Exception):
    """Raised when the network cannot be read after bounded retries."""


@dataclass(frozen=True)
class FeeSnapshot:
    """Current network fee fields (wei); any may be missing"""
    base_fee: Optional[int] = None
    priority_fee: Optional[int] = None
    gas_price: Optional[int] = None


@dataclass(frozen=True)
class Receipt:
    tx_id: str
    block_number: int
    status: int

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class NetworkReader(Protocol):
    async def get_balance(self, address: str) -> int: ...

    async def get_fee_snapshot(self) -> FeeSnapshot: ...

    async def get_sequence_count(self, address: str, pending: bool = True) -> int: ...

    async def get_receipt(self, tx_id: str) -> Optional[Receipt]: ...

    async def get_transaction(self, tx_id: str) -> Optional[dict]: ...

    async def get_chain_id(self) -> int: ...


class NetworkWriter(Protocol):
    async def broadcast(self, signed: SignedInstruction) -> str: ...


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
        return True
    error_str = str(error).lower()
    return any(keyword in error_str for keyword in RETRYABLE_KEYWORDS)


async def call_with_retry(
    operation: Callable[[], Awaitable[Any]],
    description: str,
    max_retries: int = 3,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Any:
    """
    Run a network read with retry logic for transient failures

    Args:
        operation: Zero-argument coroutine factory
        description: What is being read (for logs and errors)
        max_retries: Retries after the first attempt
        sleep: Sleep function (injectable for tests)

    Returns:
        The operation's result

    Raises:
        NetworkError: On a non-retryable error or when retries are exhausted
    """
    last_error: Optional[BaseException] = None

    for attempt in range(max_retries + 1):
        try:
            return await operation()
        except Exception as e:
            last_error = e
            if not is_retryable(e):
                logger.warning(f"Non-retryable error reading {description}: {str(e)[:100]}")
                raise NetworkError(f"Failed to read {description}: {e}") from e
            logger.warning(f"Retryable error reading {description} (attempt {attempt + 1}): {str(e)[:100]}")

        if attempt < max_retries:
            wait_time = 2 ** attempt  # 1s, 2s, 4s
            logger.debug(f"Waiting {wait_time}s before retry...")
            await sleep(wait_time)

    raise NetworkError(
        f"Failed to read {description} after {max_retries + 1} attempts: {last_error}"
    ) from last_error


class Web3NetworkClient:
    """
    JSON-RPC network client backed by AsyncWeb3

    Implements both NetworkReader and NetworkWriter.
    """

    def __init__(self, rpc_url: str, request_timeout_seconds: float = 30, read_retries: int = 3):
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={'timeout': request_timeout_seconds}))
        self.read_retries = read_retries
        self._chain_id: Optional[int] = None
        logger.info(f"Network client initialized ({rpc_url.split('/v3/')[0]})")

    async def get_balance(self, address: str) -> int:
        return await call_with_retry(
            lambda: self.w3.eth.get_balance(address),
            f"balance of {short_address(address)}",
            self.read_retries,
        )

    async def get_fee_snapshot(self) -> FeeSnapshot:
        block = await call_with_retry(
            lambda: self.w3.eth.get_block('latest'), "latest block", self.read_retries
        )
        base_fee = block.get('baseFeePerGas')

        priority_fee = None
        gas_price = None
        try:
            priority_fee = await self.w3.eth.max_priority_fee
        except Exception as e:
            logger.debug(f"max_priority_fee unavailable: {e}")

        if base_fee is None or priority_fee is None:
            try:
                gas_price = await self.w3.eth.gas_price
            except Exception as e:
                logger.debug(f"gas_price unavailable: {e}")

        return FeeSnapshot(base_fee=base_fee, priority_fee=priority_fee, gas_price=gas_price)

    async def get_sequence_count(self, address: str, pending: bool = True) -> int:
        block_identifier = 'pending' if pending else 'latest'
        return await call_with_retry(
            lambda: self.w3.eth.get_transaction_count(address, block_identifier),
            f"nonce of {short_address(address)}",
            self.read_retries,
        )

    async def get_receipt(self, tx_id: str) -> Optional[Receipt]:
        try:
            receipt = await self.w3.eth.get_transaction_receipt(tx_id)
        except TransactionNotFound:
            return None
        return Receipt(tx_id=tx_id, block_number=receipt['blockNumber'], status=receipt['status'])

    async def get_transaction(self, tx_id: str) -> Optional[dict]:
        try:
            return dict(await self.w3.eth.get_transaction(tx_id))
        except TransactionNotFound:
            return None

    async def get_chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = await call_with_retry(
                lambda: self.w3.eth.chain_id, "chain id", self.read_retries
            )
        return self._chain_id

    async def broadcast(self, signed: SignedInstruction) -> str:
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return self.w3.to_hex(tx_hash)

    async def close(self):
        """Close the underlying HTTP session"""
        provider = self.w3.provider
        if hasattr(provider, 'disconnect'):
            try:
                await provider.disconnect()
            except Exception as e:
                logger.debug(f"Error closing network client: {e}")
