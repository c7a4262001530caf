"""
Distribution Config

Loads distribution settings from a YAML file, merged over built-in defaults,
with environment overrides for the RPC endpoint and API keys.
"""

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from loguru import logger


WEI_PER_GWEI = 10 ** 9
WEI_PER_ETH = 10 ** 18

INFURA_URLS = {
    'mainnet': 'https://mainnet.infura.io/v3/{project_id}',
    'goerli': 'https://goerli.infura.io/v3/{project_id}',
    'sepolia': 'https://sepolia.infura.io/v3/{project_id}',
}

DEFAULT_CONFIG: Dict[str, Dict[str, Any]] = {
    'network': {
        'name': 'sepolia',
        'rpc_url': None,
        'request_timeout_seconds': 30,
        'read_retries': 3,
    },
    'fees': {
        'tier_multipliers': {'slow': 0.8, 'average': 1.0, 'fast': 1.3},
        'fallback_gwei': {'slow': 20, 'average': 35, 'fast': 50},
        'min_price_gwei': 1,
        'high_price_gwei': 100,
        'slow_discount': 0.8,
        'hard_ceiling_gwei': 150,
        'safe_price_gwei': 50,
        'cache_ttl_seconds': 120,
        'priority_fee_gwei': 2,
        'provider_timeout_seconds': 10,
        'oracle_min_interval_seconds': 0.25,
        'etherscan_api_key': None,
    },
    'balance': {
        'min_balance_eth': 0.005,
        'fee_multiple': 3,
    },
    'planner': {
        'reserve_multiplier': 1.2,
        'weight_epsilon': 0.01,
    },
    'submitter': {
        'max_attempts': 3,
        'price_boosts': [1.0, 1.3, 1.6],
        'poll_interval_seconds': 3,
        'confirmation_timeout_seconds': 60,
        'retry_delay_seconds': 5,
        'amount_reduction_percent': 10,
        'min_transfer_eth': 0.001,
    },
    'coordinator': {
        'max_workers': 3,
        'account_timeout_seconds': 240,
    },
    'monitor': {
        'interval_seconds': 3600,
    },
}


class ConfigError(Exception):
    """Raised when configuration cannot be loaded or is invalid."""


def gwei_to_wei(value: float) -> int:
    return int(round(float(value) * WEI_PER_GWEI))


def eth_to_wei(value: float) -> int:
    return int(round(float(value) * WEI_PER_ETH))


@dataclass
class NetworkSettings:
    name: str = 'sepolia'
    rpc_url: Optional[str] = None
    request_timeout_seconds: float = 30
    read_retries: int = 3


@dataclass
class FeeSettings:
    tier_multipliers: Dict[str, float] = field(default_factory=dict)
    fallback_gwei: Dict[str, float] = field(default_factory=dict)
    min_price_gwei: float = 1
    high_price_gwei: float = 100
    slow_discount: float = 0.8
    hard_ceiling_gwei: float = 150
    safe_price_gwei: float = 50
    cache_ttl_seconds: float = 120
    priority_fee_gwei: float = 2
    provider_timeout_seconds: float = 10
    oracle_min_interval_seconds: float = 0.25
    etherscan_api_key: Optional[str] = None


@dataclass
class BalanceSettings:
    min_balance_eth: float = 0.005
    fee_multiple: float = 3


@dataclass
class PlannerSettings:
    reserve_multiplier: float = 1.2
    weight_epsilon: float = 0.01


@dataclass
class SubmitterSettings:
    max_attempts: int = 3
    price_boosts: List[float] = field(default_factory=lambda: [1.0, 1.3, 1.6])
    poll_interval_seconds: float = 3
    confirmation_timeout_seconds: float = 60
    retry_delay_seconds: float = 5
    amount_reduction_percent: float = 10
    min_transfer_eth: float = 0.001


@dataclass
class CoordinatorSettings:
    max_workers: int = 3
    account_timeout_seconds: float = 240


@dataclass
class MonitorSettings:
    interval_seconds: float = 3600


@dataclass
class DistributionConfig:
    """Complete distribution configuration"""
    network: NetworkSettings
    fees: FeeSettings
    balance: BalanceSettings
    planner: PlannerSettings
    submitter: SubmitterSettings
    coordinator: CoordinatorSettings
    monitor: MonitorSettings

    @classmethod
    def from_dict(cls, data: Dict[str, Dict[str, Any]]) -> 'DistributionConfig':
        """
        Build config from a (merged) settings dict

        Raises:
            ConfigError: On unknown keys or invalid values
        """
        try:
            config = cls(
                network=NetworkSettings(**data['network']),
                fees=FeeSettings(**data['fees']),
                balance=BalanceSettings(**data['balance']),
                planner=PlannerSettings(**data['planner']),
                submitter=SubmitterSettings(**data['submitter']),
                coordinator=CoordinatorSettings(**data['coordinator']),
                monitor=MonitorSettings(**data['monitor']),
            )
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

        config.validate()
        return config

    def validate(self):
        tiers = {'slow', 'average', 'fast'}
        if set(self.fees.tier_multipliers) != tiers:
            raise ConfigError(f"fees.tier_multipliers must define exactly {sorted(tiers)}")
        if set(self.fees.fallback_gwei) != tiers:
            raise ConfigError(f"fees.fallback_gwei must define exactly {sorted(tiers)}")
        if self.fees.min_price_gwei < 0:
            raise ConfigError("fees.min_price_gwei must be non-negative")
        if self.planner.reserve_multiplier < 1.0:
            raise ConfigError("planner.reserve_multiplier must be >= 1.0")
        if self.balance.fee_multiple < 3:
            raise ConfigError("balance.fee_multiple must be >= 3")
        if self.submitter.max_attempts < 1:
            raise ConfigError("submitter.max_attempts must be >= 1")
        if len(self.submitter.price_boosts) < self.submitter.max_attempts:
            raise ConfigError("submitter.price_boosts needs one factor per attempt")
        if not 0 < self.submitter.amount_reduction_percent < 100:
            raise ConfigError("submitter.amount_reduction_percent must be between 0 and 100")
        if self.coordinator.max_workers < 1:
            raise ConfigError("coordinator.max_workers must be >= 1")

    def require_rpc_url(self) -> str:
        if not self.network.rpc_url:
            raise ConfigError(
                "No RPC endpoint configured (set network.rpc_url, RPC_URL or INFURA_PROJECT_ID)"
            )
        return self.network.rpc_url


def _merge(defaults: Dict[str, Dict[str, Any]], overrides: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    merged = copy.deepcopy(defaults)
    for section, values in overrides.items():
        if section not in merged:
            raise ConfigError(f"Unknown config section: {section}")
        if not isinstance(values, dict):
            raise ConfigError(f"Config section '{section}' must be a mapping")
        merged[section].update(values)
    return merged


def _apply_env(settings: Dict[str, Dict[str, Any]]):
    network = settings['network']
    if os.getenv('FUND_NETWORK'):
        network['name'] = os.environ['FUND_NETWORK']

    if os.getenv('RPC_URL'):
        network['rpc_url'] = os.environ['RPC_URL']
    elif not network.get('rpc_url') and os.getenv('INFURA_PROJECT_ID'):
        template = INFURA_URLS.get(network['name'])
        if template is None:
            raise ConfigError(f"No Infura endpoint known for network '{network['name']}'")
        network['rpc_url'] = template.format(project_id=os.environ['INFURA_PROJECT_ID'])

    if os.getenv('ETHERSCAN_API_KEY'):
        settings['fees']['etherscan_api_key'] = os.environ['ETHERSCAN_API_KEY']


def load_config(config_path: Optional[str] = None, use_env: bool = True) -> DistributionConfig:
    """
    Load distribution config

    Priority (highest first):
    1. Environment variables (RPC_URL, INFURA_PROJECT_ID, ETHERSCAN_API_KEY, FUND_NETWORK)
    2. YAML file values
    3. Built-in defaults

    Args:
        config_path: Optional path to a YAML config file
        use_env: Read .env / environment overrides

    Returns:
        DistributionConfig
    """
    overrides: Dict[str, Any] = {}

    if config_path:
        config_file = Path(config_path)
        if config_file.exists():
            try:
                with open(config_file, 'r', encoding='utf-8') as f:
                    overrides = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Malformed config file {config_file}: {e}") from e

            if not isinstance(overrides, dict):
                raise ConfigError(f"Config file {config_file} must contain a mapping")
            logger.info(f"Loaded config from {config_file}")
        else:
            logger.warning(f"Config file {config_file} not found, using defaults")

    settings = _merge(DEFAULT_CONFIG, overrides)

    if use_env:
        load_dotenv()
        _apply_env(settings)

    return DistributionConfig.from_dict(settings)
