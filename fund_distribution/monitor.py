"""
Distribution Monitor

Scheduled mode: sweeps every wallet configured in the environment into a
single main wallet, immediately on start and then on a fixed interval.

Environment:
    WALLET_1_PRIVATE_KEY, WALLET_2_PRIVATE_KEY, ...   source wallets
    MAIN_WALLET_ADDRESS                               destination (100%)
"""

import asyncio
import os
import re
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from loguru import logger

from .accounts import Account
from .allocation_planner import DestinationSpec, DistributionMethod
from .config import ConfigError
from .distribution_coordinator import AccountState, AccountStatus, DistributionCoordinator
from .fee_oracle import FeeTier
from .validation import ValidationError, validate_address


WALLET_KEY_PATTERN = re.compile(r'^WALLET_(\d+)_PRIVATE_KEY$')


def load_env_wallets(environ: Optional[Mapping[str, str]] = None) -> Tuple[List[Account], List[DestinationSpec]]:
    """
    Read source wallets and the main wallet from the environment

    Blank WALLET_n_PRIVATE_KEY entries are skipped.

    Returns:
        (accounts ordered by wallet number, [main wallet destination])

    Raises:
        ConfigError: No main wallet, or no source wallets
        ValidationError: A key or the main address is malformed
    """
    environ = os.environ if environ is None else environ

    main_address = (environ.get('MAIN_WALLET_ADDRESS') or '').strip()
    if not main_address:
        raise ConfigError("Main wallet address not found in environment variables (MAIN_WALLET_ADDRESS)")
    validate_address(main_address).raise_for_error("MAIN_WALLET_ADDRESS")

    numbered: Dict[int, str] = {}
    for name, value in environ.items():
        match = WALLET_KEY_PATTERN.match(name)
        if not match:
            continue
        if not value or not value.strip():
            logger.warning(f"⚠ {name} is empty, skipping")
            continue
        numbered[int(match.group(1))] = value.strip()

    if not numbered:
        raise ConfigError("No WALLET_<n>_PRIVATE_KEY variables found in environment")

    accounts = []
    for number in sorted(numbered):
        try:
            accounts.append(Account.from_credential(numbered[number]))
        except ValidationError as e:
            raise ValidationError(f"WALLET_{number}_PRIVATE_KEY: {e}") from e

    logger.info(f"Loaded {len(accounts)} wallets from environment")
    return accounts, [DestinationSpec(address=main_address, weight_percentage=100.0)]


class DistributionMonitor:
    """
    Periodic sweep of environment wallets

    Features:
    - Immediate first run, then one run per interval
    - A failed run is logged and the schedule continues
    - Stops between runs when the stop event is set
    """

    def __init__(
        self,
        coordinator: DistributionCoordinator,
        accounts: List[Account],
        destinations: List[DestinationSpec],
        interval_seconds: float = 3600,
        fee_tier: FeeTier = FeeTier.AVERAGE,
        on_run: Optional[Callable[[List[AccountStatus]], None]] = None,
    ):
        self.coordinator = coordinator
        self.accounts = accounts
        self.destinations = destinations
        self.interval = interval_seconds
        self.fee_tier = fee_tier
        self.on_run = on_run
        self.runs = 0

    async def run_once(self) -> List[AccountStatus]:
        logger.info(f"⏰ Running scheduled balance check at {datetime.now().isoformat()}")

        statuses = await self.coordinator.run(
            self.accounts, self.destinations,
            distribution_method=DistributionMethod.PERCENTAGE,
            fee_tier=self.fee_tier,
        )
        self.runs += 1

        for number, status in enumerate(statuses, start=1):
            if status.state == AccountState.ERROR:
                logger.warning(f"Wallet {number} failed: {status.error}. Will try again in the next run.")

        logger.info("Scheduled check completed")
        if self.on_run is not None:
            self.on_run(statuses)
        return statuses

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None):
        """
        Run until the stop event is set

        Args:
            stop_event: Set to stop after the current run
        """
        stop_event = stop_event or asyncio.Event()
        logger.info(f"Starting monitoring service (every {self.interval:g}s)")

        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"✗ Error in scheduled check: {e}")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue

        logger.info("Monitoring service stopped")
