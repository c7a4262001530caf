"""
Etherscan Gas Oracle

Client for the Etherscan gas tracker (`module=gastracker&action=gasoracle`).
Responses are cached for a short window and requests are rate limited,
since the free API tier allows only a few calls per second.
"""

import asyncio
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Optional

import httpx
from loguru import logger


ETHERSCAN_API_URLS = {
    'mainnet': 'https://api.etherscan.io/api',
    'goerli': 'https://api-goerli.etherscan.io/api',
    'sepolia': 'https://api-sepolia.etherscan.io/api',
}


@dataclass(frozen=True)
class GasOracleReading:
    """Gas oracle prices converted to wei"""
    safe: int
    propose: int
    fast: int
    base_fee: Optional[int]
    last_block: Optional[int] = None

    def price_for_tier(self, tier: str) -> int:
        return {'slow': self.safe, 'average': self.propose, 'fast': self.fast}[tier]


def _gwei_string_to_wei(value: str) -> int:
    return int(Decimal(value) * Decimal(10 ** 9))


class EtherscanGasOracle:
    """
    Etherscan gas price client

    Features:
    - Per-network API endpoint (mainnet, goerli, sepolia)
    - Response cache (default 2 minutes)
    - Minimum interval between outgoing requests
    - Never raises on remote failure: returns None instead
    """

    def __init__(
        self,
        network: str = 'sepolia',
        api_key: Optional[str] = None,
        timeout_seconds: float = 10,
        cache_ttl_seconds: float = 120,
        min_interval_seconds: float = 0.25,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize gas oracle client

        Args:
            network: Network name
            api_key: Optional Etherscan API key
            timeout_seconds: HTTP timeout
            cache_ttl_seconds: How long a reading stays valid
            min_interval_seconds: Minimum spacing between HTTP requests
            client: Optional preconfigured httpx client (tests inject a MockTransport)
            clock: Monotonic clock
        """
        if network not in ETHERSCAN_API_URLS:
            raise ValueError(f"Unsupported network for gas oracle: {network}")

        self.network = network
        self.api_url = ETHERSCAN_API_URLS[network]
        self.api_key = api_key
        self.cache_ttl = cache_ttl_seconds
        self.min_interval = min_interval_seconds
        self.clock = clock
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))

        self._cached: Optional[GasOracleReading] = None
        self._cached_at: float = 0.0
        self._last_request_at: Optional[float] = None
        self._lock = asyncio.Lock()

    def _cache_valid(self) -> bool:
        return self._cached is not None and self.clock() - self._cached_at < self.cache_ttl

    async def get_gas_oracle(self) -> Optional[GasOracleReading]:
        """
        Get current gas oracle prices

        Returns:
            GasOracleReading or None if the request fails
        """
        if self._cache_valid():
            logger.debug(f"💾 Gas oracle cache HIT ({self.network})")
            return self._cached

        async with self._lock:
            if self._cache_valid():
                return self._cached

            if self._last_request_at is not None:
                elapsed = self.clock() - self._last_request_at
                if elapsed < self.min_interval:
                    await asyncio.sleep(self.min_interval - elapsed)

            reading = await self._fetch()
            if reading is not None:
                self._cached = reading
                self._cached_at = self.clock()
            return reading

    async def _fetch(self) -> Optional[GasOracleReading]:
        params: Dict[str, str] = {'module': 'gastracker', 'action': 'gasoracle'}
        if self.api_key:
            params['apikey'] = self.api_key

        self._last_request_at = self.clock()
        try:
            response = await self.client.get(self.api_url, params=params)
        except httpx.HTTPError as e:
            logger.warning(f"Error fetching gas price from Etherscan: {e}")
            return None

        if response.status_code != 200:
            logger.warning(f"Etherscan API returned status {response.status_code}")
            return None

        try:
            data = response.json()
        except ValueError:
            logger.warning("Etherscan API returned a non-JSON body")
            return None

        if data.get('status') != '1' or not isinstance(data.get('result'), dict):
            logger.warning(f"Etherscan API returned error: {data.get('message')}")
            return None

        result = data['result']
        try:
            reading = GasOracleReading(
                safe=_gwei_string_to_wei(result['SafeGasPrice']),
                propose=_gwei_string_to_wei(result['ProposeGasPrice']),
                fast=_gwei_string_to_wei(result['FastGasPrice']),
                base_fee=_gwei_string_to_wei(result['suggestBaseFee']) if result.get('suggestBaseFee') else None,
                last_block=int(result['LastBlock']) if result.get('LastBlock') else None,
            )
        except (KeyError, InvalidOperation, ValueError) as e:
            logger.warning(f"Unusable Etherscan gas oracle payload: {e}")
            return None

        logger.debug(
            f"Etherscan gas oracle: safe={result['SafeGasPrice']} propose={result['ProposeGasPrice']} "
            f"fast={result['FastGasPrice']} Gwei"
        )
        return reading

    async def close(self):
        await self.client.aclose()
