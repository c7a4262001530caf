"""Command-line entry point for fund distribution."""

import argparse
import asyncio
import signal
import sys
from typing import List, Optional

from loguru import logger
from web3 import Web3

from .accounts import Account, short_address
from .allocation_planner import DestinationSpec, DistributionMethod
from .config import ConfigError, load_config
from .distribution_coordinator import AccountState, AccountStatus, DistributionCoordinator
from .fee_oracle import FeeTier
from .monitor import DistributionMonitor, load_env_wallets
from .validation import ValidationError
from .wallet_sheet_parser import (
    WalletSheetParser,
    load_accounts,
    parse_destinations_text,
    parse_keys_text,
)


LOG_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}"


def main(argv: Optional[List[str]] = None) -> int:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", help="YAML config file")
    common.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    parser = argparse.ArgumentParser(
        prog="fund-distribution",
        description="Distribute testnet ETH from source wallets to weighted destinations",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    distribute_parser = subparsers.add_parser("distribute", parents=[common])
    _add_key_args(distribute_parser)
    destinations = distribute_parser.add_mutually_exclusive_group(required=True)
    destinations.add_argument("--destinations", help="Comma-separated address:percentage pairs")
    destinations.add_argument("--destinations-file", help="CSV/Excel sheet with address and percentage columns")
    distribute_parser.add_argument(
        "--method", choices=[m.value for m in DistributionMethod], default=DistributionMethod.PERCENTAGE.value,
    )
    distribute_parser.add_argument(
        "--speed", choices=[t.value for t in FeeTier], default=FeeTier.AVERAGE.value,
    )
    distribute_parser.set_defaults(func=_distribute)

    balances_parser = subparsers.add_parser("balances", parents=[common])
    _add_key_args(balances_parser)
    balances_parser.set_defaults(func=_balances)

    gas_parser = subparsers.add_parser("gas-price", parents=[common])
    gas_parser.set_defaults(func=_gas_price)

    monitor_parser = subparsers.add_parser("monitor", parents=[common])
    monitor_parser.add_argument("--interval", type=float, help="Seconds between runs (default from config)")
    monitor_parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    monitor_parser.set_defaults(func=_monitor)

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        return asyncio.run(args.func(args))
    except (ValidationError, ConfigError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2


def _add_key_args(parser: argparse.ArgumentParser):
    keys = parser.add_mutually_exclusive_group(required=True)
    keys.add_argument("--keys", help="Comma-separated private keys")
    keys.add_argument("--keys-file", help="CSV/Excel sheet with a private_key column")


def _configure_logging(verbose: bool):
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO", format=LOG_FORMAT)


def _load_accounts(args: argparse.Namespace) -> List[Account]:
    if args.keys_file:
        keys = WalletSheetParser(args.keys_file).read_keys()
    else:
        keys = parse_keys_text(args.keys)
    return load_accounts(keys)


def _load_destinations(args: argparse.Namespace) -> List[DestinationSpec]:
    if args.destinations_file:
        return WalletSheetParser(args.destinations_file).read_destinations()
    return parse_destinations_text(args.destinations)


def _install_stop_handler(stop_event: asyncio.Event):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            logger.debug(f"Signal handler for {sig.name} not supported here")


def _print_statuses(title: str, statuses: List[AccountStatus]):
    print("\n" + "=" * 80)
    print(title)
    print("=" * 80)

    for number, status in enumerate(statuses, start=1):
        print(f"  [{number}] {short_address(status.address)}  {status.state.value:<12} {status.balance_eth} ETH")
        if status.error:
            print(f"      {status.error}")
        for outcome in status.outcomes:
            amount = Web3.from_wei(outcome.amount, 'ether')
            if outcome.succeeded:
                detail = "pending" if outcome.pending else f"confirmed in block {outcome.confirmed_block}"
                print(f"      -> {short_address(outcome.destination_address)} {amount} ETH {detail} ({outcome.tx_id})")
            else:
                print(f"      -> {short_address(outcome.destination_address)} {amount} ETH failed: {outcome.error}")

    print("=" * 80 + "\n")


def _exit_code(statuses: List[AccountStatus]) -> int:
    return 1 if any(status.state == AccountState.ERROR for status in statuses) else 0


async def _distribute(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    accounts = _load_accounts(args)
    destinations = _load_destinations(args)

    coordinator = DistributionCoordinator.connect(config)
    stop_event = asyncio.Event()
    _install_stop_handler(stop_event)

    try:
        statuses = await coordinator.run(
            accounts, destinations,
            distribution_method=DistributionMethod(args.method),
            fee_tier=FeeTier(args.speed),
            stop_event=stop_event,
        )
        _print_statuses("DISTRIBUTION RESULTS", statuses)
        await coordinator.wait_for_background()
    finally:
        await coordinator.close()

    return _exit_code(statuses)


async def _balances(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    accounts = _load_accounts(args)

    coordinator = DistributionCoordinator.connect(config)
    try:
        statuses = await coordinator.balances(accounts)
    finally:
        await coordinator.close()

    _print_statuses("WALLET BALANCES", statuses)
    return _exit_code(statuses)


async def _gas_price(args: argparse.Namespace) -> int:
    config = load_config(args.config)

    coordinator = DistributionCoordinator.connect(config)
    try:
        summary = await coordinator.fee_oracle.summary()
    finally:
        await coordinator.close()

    print("\n" + "=" * 80)
    print(f"GAS PRICE ({config.network.name})")
    print("=" * 80)
    for tier, quote in summary['quotes'].items():
        note = f" [{quote.adjustment}]" if quote.adjustment else ""
        print(f"  {tier:<8} {quote.price_gwei:>10.2f} Gwei  ({quote.source.value}){note}")
    if summary['base_fee'] is not None:
        print(f"  {'base fee':<8} {summary['base_fee'] / 10 ** 9:>10.2f} Gwei")
    print("=" * 80 + "\n")
    return 0


async def _monitor(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    accounts, destinations = load_env_wallets()

    coordinator = DistributionCoordinator.connect(config)
    monitor = DistributionMonitor(
        coordinator, accounts, destinations,
        interval_seconds=args.interval or config.monitor.interval_seconds,
        on_run=lambda statuses: _print_statuses("SCHEDULED SWEEP", statuses),
    )

    try:
        if args.once:
            statuses = await monitor.run_once()
            await coordinator.wait_for_background()
            return _exit_code(statuses)

        stop_event = asyncio.Event()
        _install_stop_handler(stop_event)
        print("Press Ctrl+C to stop the service")
        await monitor.run_forever(stop_event)
        await coordinator.wait_for_background()
        return 0
    finally:
        await coordinator.close()
