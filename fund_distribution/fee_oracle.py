"""
Fee Oracle

Resolves a fee price (wei per gas) for a speed tier.

Resolution order:
1. Live network fee data (base fee + priority fee, scaled by tier multiplier)
2. External gas oracle (Etherscan safe / propose / fast)
3. Hard-coded fallback table

Every path yields a quote. Quotes are cached per tier for a short window,
then a floor and a ceiling policy are applied on top of the cached price.
"""

import asyncio
import time
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional

from loguru import logger

from .config import DistributionConfig, FeeSettings, gwei_to_wei
from .gas_oracle import EtherscanGasOracle
from .network import NetworkReader


SIMPLE_TRANSFER_GAS = 21000


class FeeTier(str, Enum):
    SLOW = 'slow'
    AVERAGE = 'average'
    FAST = 'fast'

    @property
    def rank(self) -> int:
        return TIER_ORDER.index(self)

    def at_least(self, other: 'FeeTier') -> 'FeeTier':
        return self if self.rank >= other.rank else other


TIER_ORDER = [FeeTier.SLOW, FeeTier.AVERAGE, FeeTier.FAST]


class FeeSource(str, Enum):
    NETWORK = 'network'
    EXTERNAL_ORACLE = 'external_oracle'
    FALLBACK_DEFAULT = 'fallback_default'


@dataclass(frozen=True)
class FeeQuote:
    """Resolved fee price for one tier"""
    tier: FeeTier
    price: int  # wei per unit of gas
    observed_at: float
    source: FeeSource
    base_fee: Optional[int] = None
    adjustment: Optional[str] = None  # set when the floor/ceiling policy changed the price

    def fee_cost(self, gas_units: int = SIMPLE_TRANSFER_GAS) -> int:
        return self.price * gas_units

    @property
    def price_gwei(self) -> float:
        return self.price / 10 ** 9


def scale_price(price: int, factor: float) -> int:
    return int(Decimal(price) * Decimal(str(factor)))


class FeeCache:
    """
    Per-tier quote cache

    Entries are populated on miss and expire on read. Each tier has its own
    lock so that concurrent resolutions trigger a single refresh. Locks belong
    to the running event loop and are recreated when the cache is used from
    a new one.
    """

    def __init__(self, ttl_seconds: float = 120, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl_seconds
        self.clock = clock
        self._entries: Dict[FeeTier, FeeQuote] = {}
        self._locks: Dict[FeeTier, asyncio.Lock] = {}
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None

    def get(self, tier: FeeTier, now: Optional[float] = None) -> Optional[FeeQuote]:
        now = self.clock() if now is None else now
        entry = self._entries.get(tier)
        if entry is None:
            return None
        if now - entry.observed_at >= self.ttl:
            logger.debug(f"⏰ Fee cache EXPIRED: {tier.value}")
            del self._entries[tier]
            return None
        logger.debug(f"💾 Fee cache HIT: {tier.value} = {entry.price_gwei:.2f} Gwei")
        return entry

    def put(self, quote: FeeQuote):
        self._entries[quote.tier] = quote

    def lock(self, tier: FeeTier) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if loop is not self._lock_loop:
            self._locks = {}
            self._lock_loop = loop
        if tier not in self._locks:
            self._locks[tier] = asyncio.Lock()
        return self._locks[tier]

    def clear(self):
        self._entries.clear()


class FeeStrategy:
    """One fee source; returns a quote, or None on a miss"""

    name = 'strategy'

    async def quote(self, tier: FeeTier, now: float) -> Optional[FeeQuote]:
        raise NotImplementedError


class NetworkFeeStrategy(FeeStrategy):
    name = 'network'

    def __init__(self, network: NetworkReader, tier_multipliers: Dict[str, float]):
        self.network = network
        self.tier_multipliers = tier_multipliers

    async def quote(self, tier: FeeTier, now: float) -> Optional[FeeQuote]:
        try:
            snapshot = await self.network.get_fee_snapshot()
        except Exception as e:
            logger.warning(f"Network fee data unavailable: {e}")
            return None

        if snapshot.base_fee is not None and snapshot.priority_fee is not None:
            raw_price = snapshot.base_fee + snapshot.priority_fee
        elif snapshot.gas_price is not None:
            raw_price = snapshot.gas_price
        else:
            logger.debug("Network returned no usable fee fields")
            return None

        price = scale_price(raw_price, self.tier_multipliers[tier.value])
        logger.debug(f"Network suggested {raw_price / 10 ** 9:.2f} Gwei, {tier.value} -> {price / 10 ** 9:.2f} Gwei")
        return FeeQuote(
            tier=tier, price=price, observed_at=now,
            source=FeeSource.NETWORK, base_fee=snapshot.base_fee,
        )


class ExternalOracleStrategy(FeeStrategy):
    name = 'external_oracle'

    def __init__(self, gas_oracle: EtherscanGasOracle):
        self.gas_oracle = gas_oracle

    async def quote(self, tier: FeeTier, now: float) -> Optional[FeeQuote]:
        reading = await self.gas_oracle.get_gas_oracle()
        if reading is None:
            return None
        return FeeQuote(
            tier=tier, price=reading.price_for_tier(tier.value), observed_at=now,
            source=FeeSource.EXTERNAL_ORACLE, base_fee=reading.base_fee,
        )


class FallbackTableStrategy(FeeStrategy):
    name = 'fallback_default'

    def __init__(self, fallback_gwei: Dict[str, float]):
        self.table = {tier: gwei_to_wei(fallback_gwei[tier.value]) for tier in TIER_ORDER}

    async def quote(self, tier: FeeTier, now: float) -> FeeQuote:
        logger.warning(f"Using default fee price for {tier.value}: {self.table[tier] / 10 ** 9:.2f} Gwei")
        return FeeQuote(tier=tier, price=self.table[tier], observed_at=now, source=FeeSource.FALLBACK_DEFAULT)


class FeeResolutionError(Exception):
    """Raised only when no strategy can produce a quote (misconfiguration)."""


class FeeOracle:
    """
    Fee price resolver with multi-source fallback

    Features:
    - Ordered strategy chain (network -> external oracle -> fallback table)
    - Per-tier cache with single in-flight refresh
    - Price floor against degenerate near-zero reports
    - Ceiling heuristic: prefer a materially cheaper slow price, then clamp
    """

    def __init__(
        self,
        strategies: List[FeeStrategy],
        settings: FeeSettings,
        cache: Optional[FeeCache] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not strategies:
            raise FeeResolutionError("At least one fee strategy is required")

        self.strategies = strategies
        self.settings = settings
        self.clock = clock
        self.cache = cache or FeeCache(settings.cache_ttl_seconds, clock)

        self.min_price = gwei_to_wei(settings.min_price_gwei)
        self.high_price = gwei_to_wei(settings.high_price_gwei)
        self.hard_ceiling = gwei_to_wei(settings.hard_ceiling_gwei)
        self.safe_price = gwei_to_wei(settings.safe_price_gwei)
        self.priority_fee = gwei_to_wei(settings.priority_fee_gwei)
        self.provider_timeout = settings.provider_timeout_seconds

        logger.info(f"💰 Fee oracle initialized ({' -> '.join(s.name for s in strategies)})")

    @classmethod
    def from_config(
        cls,
        config: DistributionConfig,
        network: NetworkReader,
        gas_oracle: Optional[EtherscanGasOracle] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> 'FeeOracle':
        strategies: List[FeeStrategy] = [NetworkFeeStrategy(network, config.fees.tier_multipliers)]
        if gas_oracle is not None:
            strategies.append(ExternalOracleStrategy(gas_oracle))
        strategies.append(FallbackTableStrategy(config.fees.fallback_gwei))
        return cls(strategies, config.fees, clock=clock)

    async def resolve(self, tier: FeeTier, now: Optional[float] = None) -> FeeQuote:
        """
        Resolve a fee quote for a tier

        Args:
            tier: Requested speed tier
            now: Observation time (defaults to the oracle clock)

        Returns:
            FeeQuote with floor and ceiling policy applied
        """
        tier = FeeTier(tier)
        now = self.clock() if now is None else now

        quote = self._apply_floor(await self._resolve_cached(tier, now))

        if quote.price > self.high_price and tier != FeeTier.SLOW:
            logger.info(f"Fee price is very high ({quote.price_gwei:.2f} Gwei), checking slow tier...")
            slow = self._apply_floor(await self._resolve_cached(FeeTier.SLOW, now))
            if slow.price < scale_price(quote.price, self.settings.slow_discount):
                logger.info(f"Using slow tier price {slow.price_gwei:.2f} Gwei to save on fees")
                quote = replace(quote, price=slow.price, source=slow.source, adjustment='slow_tier')

        if quote.price > self.hard_ceiling:
            logger.warning(
                f"Fee price is extremely high ({quote.price_gwei:.2f} Gwei), "
                f"using fixed {self.safe_price / 10 ** 9:.2f} Gwei"
            )
            quote = replace(quote, price=self.safe_price, adjustment='clamped')

        return quote

    async def _resolve_cached(self, tier: FeeTier, now: float) -> FeeQuote:
        cached = self.cache.get(tier, now)
        if cached is not None:
            return cached

        async with self.cache.lock(tier):
            cached = self.cache.get(tier, now)
            if cached is not None:
                return cached

            for strategy in self.strategies:
                try:
                    quote = await asyncio.wait_for(strategy.quote(tier, now), self.provider_timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"Fee source '{strategy.name}' timed out after {self.provider_timeout}s")
                    continue

                if quote is not None:
                    logger.info(f"Fee price ({tier.value}): {quote.price_gwei:.2f} Gwei from {quote.source.value}")
                    self.cache.put(quote)
                    return quote

                logger.debug(f"Fee source '{strategy.name}' had no quote for {tier.value}")

        raise FeeResolutionError(f"No fee source produced a quote for {tier.value}")

    def _apply_floor(self, quote: FeeQuote) -> FeeQuote:
        if quote.price < self.min_price:
            logger.debug(f"Raising {quote.price_gwei:.4f} Gwei to floor {self.min_price / 10 ** 9:.2f} Gwei")
            return replace(quote, price=self.min_price, adjustment='floor')
        return quote

    def priority_fee_for(self, quote: FeeQuote) -> int:
        """Priority fee paired with a quote, never above the quote price."""
        return min(self.priority_fee, quote.price)

    async def summary(self, now: Optional[float] = None) -> Dict[str, object]:
        """
        Resolve all tiers at once for display

        Returns:
            Dict with one FeeQuote per tier, base fee (wei, if known) and per-tier sources
        """
        now = self.clock() if now is None else now
        quotes = {tier.value: await self.resolve(tier, now) for tier in TIER_ORDER}
        base_fee = next((q.base_fee for q in quotes.values() if q.base_fee is not None), None)
        return {
            'quotes': quotes,
            'base_fee': base_fee,
            'sources': {name: quote.source.value for name, quote in quotes.items()},
        }
