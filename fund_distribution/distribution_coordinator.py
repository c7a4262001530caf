"""
Distribution Coordinator

Runs the distribution pipeline for a batch of source accounts:

    balance gate -> fee quote -> allocation plan -> build -> submit -> fold

Each account ends in exactly one of idle / low_balance / success / error.
Accounts run concurrently up to a worker limit; one account's failure never
stops the others. The per-account timeout is advisory: a pipeline that
outlives it keeps running in the background, since broadcasts cannot be
revoked.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set

from loguru import logger
from web3 import Web3

from .accounts import Account
from .allocation_planner import AllocationPlanner, DestinationSpec, DistributionMethod, validate_destinations
from .balance_gate import BalanceGate
from .config import CoordinatorSettings, DistributionConfig
from .fee_oracle import FeeOracle, FeeTier
from .gas_oracle import ETHERSCAN_API_URLS, EtherscanGasOracle
from .network import NetworkReader, Web3NetworkClient
from .submitter import SubmissionOutcome, Submitter
from .transaction_builder import TransactionBuilder


class AccountState(str, Enum):
    IDLE = 'idle'
    PROCESSING = 'processing'
    SUCCESS = 'success'
    ERROR = 'error'
    LOW_BALANCE = 'low_balance'


@dataclass
class AccountStatus:
    """Status of one source account within a batch"""
    address: str
    state: AccountState
    balance: Optional[int] = None
    error: Optional[str] = None
    outcomes: List[SubmissionOutcome] = field(default_factory=list)

    @property
    def balance_eth(self) -> str:
        return str(Web3.from_wei(self.balance or 0, 'ether'))

    @property
    def succeeded_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.succeeded)

    def to_dict(self) -> Dict:
        return {
            'address': self.address,
            'status': self.state.value,
            'balance': self.balance_eth,
            'error': self.error,
            'transfers': [outcome.to_dict() for outcome in self.outcomes],
        }


StatusCallback = Callable[[int, AccountStatus], None]


class DistributionCoordinator:
    """
    Batch orchestrator for fund distribution

    Features:
    - Bounded parallelism across accounts
    - Strictly sequential submission within an account
    - Advisory per-account timeout with best-effort balance re-read
    - Cooperative stop: unstarted accounts stay idle
    """

    def __init__(
        self,
        network: NetworkReader,
        fee_oracle: FeeOracle,
        balance_gate: BalanceGate,
        planner: AllocationPlanner,
        builder: TransactionBuilder,
        submitter: Submitter,
        settings: CoordinatorSettings,
        weight_epsilon: float = 0.01,
    ):
        self.network = network
        self.fee_oracle = fee_oracle
        self.balance_gate = balance_gate
        self.planner = planner
        self.builder = builder
        self.submitter = submitter
        self.max_workers = settings.max_workers
        self.account_timeout = settings.account_timeout_seconds
        self.weight_epsilon = weight_epsilon

        self._background: Set[asyncio.Task] = set()
        self._resources: List[object] = []

    @classmethod
    def from_config(
        cls,
        config: DistributionConfig,
        network,
        gas_oracle: Optional[EtherscanGasOracle] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> 'DistributionCoordinator':
        """Wire the pipeline components around a network client"""
        fee_oracle = FeeOracle.from_config(config, network, gas_oracle, clock=clock)
        return cls(
            network=network,
            fee_oracle=fee_oracle,
            balance_gate=BalanceGate(network, fee_oracle, config.balance),
            planner=AllocationPlanner(config.planner),
            builder=TransactionBuilder(network, fee_oracle),
            submitter=Submitter(network, fee_oracle, config.submitter, sleep=sleep, clock=clock),
            settings=config.coordinator,
            weight_epsilon=config.planner.weight_epsilon,
        )

    @classmethod
    def connect(cls, config: DistributionConfig) -> 'DistributionCoordinator':
        """
        Create a coordinator talking to the configured RPC endpoint

        Raises:
            ConfigError: If no RPC endpoint is configured
        """
        network = Web3NetworkClient(
            config.require_rpc_url(),
            request_timeout_seconds=config.network.request_timeout_seconds,
            read_retries=config.network.read_retries,
        )

        gas_oracle = None
        if config.network.name in ETHERSCAN_API_URLS:
            gas_oracle = EtherscanGasOracle(
                network=config.network.name,
                api_key=config.fees.etherscan_api_key,
                timeout_seconds=config.fees.provider_timeout_seconds,
                cache_ttl_seconds=config.fees.cache_ttl_seconds,
                min_interval_seconds=config.fees.oracle_min_interval_seconds,
            )
        else:
            logger.warning(f"No gas oracle for network '{config.network.name}', using network data and defaults")

        coordinator = cls.from_config(config, network, gas_oracle)
        coordinator._resources = [r for r in (network, gas_oracle) if r is not None]
        return coordinator

    async def run(
        self,
        accounts: Sequence[Account],
        destinations: Sequence[DestinationSpec],
        distribution_method: DistributionMethod = DistributionMethod.PERCENTAGE,
        fee_tier: FeeTier = FeeTier.AVERAGE,
        stop_event: Optional[asyncio.Event] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> List[AccountStatus]:
        """
        Distribute funds from every source account

        Args:
            accounts: Validated source accounts
            destinations: Weighted destinations
            distribution_method: equal / percentage / custom
            fee_tier: Requested speed tier
            stop_event: When set, accounts not yet started are left idle
            on_status: Called with (index, status) on every state change

        Returns:
            One AccountStatus per account, in input order

        Raises:
            ValidationError: If the destinations are malformed
        """
        method = DistributionMethod(distribution_method)
        tier = FeeTier(fee_tier)
        validate_destinations(destinations, method, self.weight_epsilon)

        statuses = [AccountStatus(address=account.address, state=AccountState.IDLE) for account in accounts]
        finalized: Set[int] = set()

        def publish(index: int, status: AccountStatus):
            # A pipeline that outlived its timeout must not reopen a terminal status
            if index in finalized:
                logger.debug(f"Ignoring late {status.state.value} update for wallet {index + 1}")
                return
            statuses[index] = status
            if on_status is not None:
                on_status(index, status)

        def finish(index: int, status: AccountStatus):
            publish(index, status)
            finalized.add(index)

        semaphore = asyncio.Semaphore(self.max_workers)

        async def worker(index: int, account: Account):
            async with semaphore:
                if stop_event is not None and stop_event.is_set():
                    logger.info(f"Stop requested, skipping wallet {index + 1} ({account.label})")
                    finish(index, AccountStatus(
                        address=account.address, state=AccountState.IDLE, error="Stopped before processing",
                    ))
                    return

                logger.info(f"Processing wallet {index + 1}/{len(accounts)} ({account.label})")
                status = await self._run_with_timeout(index, account, destinations, method, tier, publish)
                finish(index, status)

        await asyncio.gather(*(worker(i, account) for i, account in enumerate(accounts)))

        succeeded = sum(1 for s in statuses if s.state == AccountState.SUCCESS)
        logger.info(f"Distribution completed: {succeeded}/{len(accounts)} wallets succeeded")
        return list(statuses)

    async def _run_with_timeout(
        self,
        index: int,
        account: Account,
        destinations: Sequence[DestinationSpec],
        method: DistributionMethod,
        tier: FeeTier,
        publish: Callable[[int, AccountStatus], None],
    ) -> AccountStatus:
        task = asyncio.ensure_future(self.process_account(index, account, destinations, method, tier, publish))
        done, _ = await asyncio.wait({task}, timeout=self.account_timeout)

        if task in done:
            return task.result()

        self._background.add(task)
        task.add_done_callback(self._background.discard)

        logger.warning(f"⚠ Wallet {account.label} timed out after {self.account_timeout}s")
        balance = await self._best_effort_balance(account)
        return AccountStatus(
            address=account.address,
            state=AccountState.ERROR,
            balance=balance,
            error=f"Timed out after {self.account_timeout:g}s; transfers may still be processing",
        )

    async def process_account(
        self,
        index: int,
        account: Account,
        destinations: Sequence[DestinationSpec],
        method: DistributionMethod,
        tier: FeeTier,
        publish: Optional[Callable[[int, AccountStatus], None]] = None,
    ) -> AccountStatus:
        """
        Run the pipeline for one account

        Returns:
            Terminal AccountStatus (never raises for pipeline failures)
        """
        try:
            check = await self.balance_gate.check(account)
        except Exception as e:
            logger.error(f"✗ Error reading balance of wallet {account.label}: {e}")
            return AccountStatus(
                address=account.address, state=AccountState.ERROR, error=f"Failed to read balance: {e}",
            )

        if not check.sufficient:
            return AccountStatus(
                address=account.address,
                state=AccountState.LOW_BALANCE,
                balance=check.balance,
                error=f"Balance too low to transfer (< {Web3.from_wei(check.min_required, 'ether')} ETH)",
            )

        if publish is not None:
            publish(index, AccountStatus(
                address=account.address, state=AccountState.PROCESSING, balance=check.balance,
            ))

        try:
            quote = await self.fee_oracle.resolve(tier)
            plan = self.planner.plan(check.balance, destinations, quote, len(destinations), method)
            instructions = await self.builder.build(account, plan, quote)
            outcomes = await self.submitter.submit(account, instructions, tier)
        except Exception as e:
            logger.error(f"✗ Error processing wallet {account.label}: {e}")
            balance = await self._best_effort_balance(account)
            return AccountStatus(
                address=account.address,
                state=AccountState.ERROR,
                balance=check.balance if balance is None else balance,
                error=str(e),
            )

        balance = await self._best_effort_balance(account)
        if balance is None:
            balance = check.balance

        if any(outcome.succeeded for outcome in outcomes):
            succeeded = sum(1 for outcome in outcomes if outcome.succeeded)
            logger.info(f"✅ Wallet {account.label}: {succeeded}/{len(outcomes)} transfers succeeded")
            return AccountStatus(
                address=account.address, state=AccountState.SUCCESS, balance=balance, outcomes=outcomes,
            )

        failures = "; ".join(
            f"{outcome.destination_address[:10]}...: {outcome.error}" for outcome in outcomes
        )
        logger.error(f"❌ Wallet {account.label}: all {len(outcomes)} transfers failed")
        return AccountStatus(
            address=account.address,
            state=AccountState.ERROR,
            balance=balance,
            error=f"All {len(outcomes)} transfers failed: {failures}",
            outcomes=outcomes,
        )

    async def balances(self, accounts: Sequence[Account]) -> List[AccountStatus]:
        """
        Read balances for many accounts

        Returns:
            idle status with balance, or error status when the read fails
        """
        results = []
        for account in accounts:
            try:
                balance = await self.network.get_balance(account.address)
                results.append(AccountStatus(address=account.address, state=AccountState.IDLE, balance=balance))
            except Exception as e:
                logger.error(f"Error getting wallet balance for {account.label}: {e}")
                results.append(AccountStatus(
                    address=account.address, state=AccountState.ERROR, balance=0, error=str(e),
                ))
        return results

    async def _best_effort_balance(self, account: Account) -> Optional[int]:
        try:
            return await self.network.get_balance(account.address)
        except Exception as e:
            logger.warning(f"Could not re-read balance of {account.label}: {e}")
            return None

    async def wait_for_background(self, timeout: Optional[float] = None) -> int:
        """
        Wait for pipelines that outlived their account timeout

        Returns:
            Number of pipelines still running afterwards
        """
        if not self._background:
            return 0
        logger.info(f"Waiting for {len(self._background)} background wallet pipelines...")
        _, pending = await asyncio.wait(set(self._background), timeout=timeout)
        return len(pending)

    async def close(self):
        """Release network and oracle clients created by connect()"""
        for resource in self._resources:
            try:
                await resource.close()
            except Exception as e:
                logger.debug(f"Error closing {type(resource).__name__}: {e}")
        self._resources = []
