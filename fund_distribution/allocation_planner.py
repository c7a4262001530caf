"""
Allocation Planner

Splits a spendable balance across weighted destinations after reserving
enough for the transfers' fees. Amounts are floor-rounded so the plan can
never over-allocate; rounding dust stays in the source account.
"""

from dataclasses import dataclass
from enum import Enum
from fractions import Fraction
from typing import List, Sequence

from loguru import logger
from web3 import Web3

from .config import PlannerSettings
from .fee_oracle import FeeQuote
from .validation import ValidationError, validate_address, validate_weights


class DistributionMethod(str, Enum):
    EQUAL = 'equal'
    PERCENTAGE = 'percentage'
    CUSTOM = 'custom'


class PlanningError(Exception):
    """No distributable funds after the fee reserve. Terminal for the account."""


@dataclass(frozen=True)
class DestinationSpec:
    address: str
    weight_percentage: float


@dataclass(frozen=True)
class PlannedTransfer:
    destination: DestinationSpec
    amount: int
    weight: Fraction


@dataclass(frozen=True)
class AllocationPlan:
    transfers: List[PlannedTransfer]
    reserve: int
    distributable: int

    @property
    def total(self) -> int:
        return sum(t.amount for t in self.transfers)


def validate_destinations(
    destinations: Sequence[DestinationSpec],
    method: DistributionMethod = DistributionMethod.PERCENTAGE,
    epsilon: float = 0.01,
):
    """
    Reject malformed destination sets before pipeline entry

    Raises:
        ValidationError: Bad address, or weights not summing to 100
    """
    if not destinations:
        raise ValidationError("At least one destination is required")

    for destination in destinations:
        validate_address(destination.address).raise_for_error("destination address")

    if DistributionMethod(method) != DistributionMethod.EQUAL:
        validate_weights([d.weight_percentage for d in destinations], epsilon).raise_for_error("percentages")


class AllocationPlanner:
    """Percentage-based allocation with fee reserve"""

    def __init__(self, settings: PlannerSettings):
        self.reserve_multiplier = Fraction(str(settings.reserve_multiplier))
        self.weight_epsilon = settings.weight_epsilon

    def fee_reserve(self, fee_quote: FeeQuote, instruction_count: int) -> int:
        reserve = Fraction(fee_quote.fee_cost() * instruction_count) * self.reserve_multiplier
        return reserve.numerator // reserve.denominator

    def plan(
        self,
        spendable_balance: int,
        destinations: Sequence[DestinationSpec],
        fee_quote: FeeQuote,
        instruction_count: int,
        method: DistributionMethod = DistributionMethod.PERCENTAGE,
    ) -> AllocationPlan:
        """
        Compute per-destination amounts

        Args:
            spendable_balance: Balance in wei
            destinations: Weighted destinations
            fee_quote: Resolved fee price used for the reserve
            instruction_count: Number of transfers the reserve must cover
            method: equal overrides weights to 100/len(destinations)

        Returns:
            AllocationPlan (sum of amounts <= distributable pool)

        Raises:
            ValidationError: Weights do not sum to 100 (percentage/custom)
            PlanningError: Nothing left after the fee reserve
        """
        method = DistributionMethod(method)
        validate_destinations(destinations, method, self.weight_epsilon)

        reserve = self.fee_reserve(fee_quote, instruction_count)
        distributable = spendable_balance - reserve

        logger.info(
            f"Fee reserve {Web3.from_wei(reserve, 'ether')} ETH, "
            f"available for transfer: {Web3.from_wei(max(distributable, 0), 'ether')} ETH"
        )

        if distributable <= 0:
            raise PlanningError(
                f"Insufficient funds after fee reserve: need at least "
                f"{Web3.from_wei(reserve, 'ether')} ETH for fees"
            )

        if method == DistributionMethod.EQUAL:
            weights = [Fraction(100, len(destinations))] * len(destinations)
        else:
            weights = [Fraction(str(d.weight_percentage)) for d in destinations]

        # Shares are taken of the actual weight total, which may differ from 100 by epsilon
        total_weight = sum(weights)
        transfers = []
        for destination, weight in zip(destinations, weights):
            share = distributable * weight / total_weight
            amount = share.numerator // share.denominator
            transfers.append(PlannedTransfer(destination=destination, amount=amount, weight=weight))
            logger.debug(
                f"Planned {Web3.from_wei(amount, 'ether')} ETH ({float(weight):g}%) to {destination.address[:10]}..."
            )

        return AllocationPlan(transfers=transfers, reserve=reserve, distributable=distributable)
