"""
Fund Distribution

Moves testnet ETH from several source wallets to weighted destination
wallets, adapting to network fee conditions.

Components:
- fee_oracle: Fee price per speed tier (network -> Etherscan -> defaults)
- balance_gate: Minimum operating balance check
- allocation_planner: Percentage split with fee reserve
- transaction_builder: Nonce-sequenced EIP-1559 transfers
- submitter: Broadcast, confirmation polling, fee-escalating retry
- distribution_coordinator: Per-wallet pipeline with bounded parallelism
- monitor: Scheduled sweep of environment wallets

Pipeline per source wallet:
1. Balance Gate - low_balance when below threshold
2. Fee Quote - resolved once for the wallet
3. Allocation Plan - amounts after fee reserve
4. Build - one transfer per destination, contiguous nonces
5. Submit - sequential, with retries
6. Fold - success if any transfer succeeded, else error
"""

from .accounts import (
    Account,
    resolve_address,
)
from .allocation_planner import (
    AllocationPlan,
    AllocationPlanner,
    DestinationSpec,
    DistributionMethod,
    PlanningError,
)
from .balance_gate import (
    BalanceCheck,
    BalanceGate,
)
from .config import (
    ConfigError,
    DistributionConfig,
    load_config,
)
from .distribution_coordinator import (
    AccountState,
    AccountStatus,
    DistributionCoordinator,
)
from .fee_oracle import (
    FeeCache,
    FeeOracle,
    FeeQuote,
    FeeSource,
    FeeTier,
)
from .gas_oracle import (
    EtherscanGasOracle,
    GasOracleReading,
)
from .monitor import (
    DistributionMonitor,
    load_env_wallets,
)
from .network import (
    NetworkError,
    Web3NetworkClient,
)
from .submitter import (
    SubmissionOutcome,
    Submitter,
)
from .transaction_builder import (
    TransactionBuilder,
    TransferInstruction,
)
from .validation import (
    ValidationError,
    validate_address,
    validate_private_key,
)

__all__ = [
    # Pipeline
    'DistributionCoordinator',
    'AccountState',
    'AccountStatus',

    # Fees
    'FeeOracle',
    'FeeCache',
    'FeeQuote',
    'FeeSource',
    'FeeTier',
    'EtherscanGasOracle',
    'GasOracleReading',

    # Stages
    'BalanceGate',
    'BalanceCheck',
    'AllocationPlanner',
    'AllocationPlan',
    'DestinationSpec',
    'DistributionMethod',
    'PlanningError',
    'TransactionBuilder',
    'TransferInstruction',
    'Submitter',
    'SubmissionOutcome',

    # Accounts and network
    'Account',
    'resolve_address',
    'Web3NetworkClient',
    'NetworkError',

    # Input and config
    'validate_address',
    'validate_private_key',
    'ValidationError',
    'DistributionConfig',
    'load_config',
    'ConfigError',

    # Scheduled mode
    'DistributionMonitor',
    'load_env_wallets',
]

__version__ = '1.0.0'
__description__ = 'Multi-wallet testnet ETH distribution with adaptive fees'
