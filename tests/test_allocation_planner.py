"""Unit tests for allocation planning."""

import pytest

from conftest import DEST_A, DEST_B, DEST_C, ETH, GWEI
from fund_distribution.allocation_planner import (
    AllocationPlanner,
    DestinationSpec,
    DistributionMethod,
    PlanningError,
)
from fund_distribution.fee_oracle import FeeQuote, FeeSource, FeeTier
from fund_distribution.validation import ValidationError


def quote_at(gwei):
    return FeeQuote(tier=FeeTier.AVERAGE, price=gwei * GWEI, observed_at=0.0, source=FeeSource.NETWORK)


@pytest.fixture
def planner(config):
    return AllocationPlanner(config.planner)


class TestFeeReserve:
    """Test the fee reserve."""

    def test_reserve_formula(self, planner):
        """Test fee cost * count * 1.2."""
        # 10 Gwei * 21000 * 3 * 1.2
        assert planner.fee_reserve(quote_at(10), 3) == 756_000_000_000_000

    def test_reserve_multiplier_configurable(self, config):
        """Test a 1.0 multiplier reserves exactly the fee cost."""
        config.planner.reserve_multiplier = 1.0
        planner = AllocationPlanner(config.planner)

        assert planner.fee_reserve(quote_at(10), 2) == 420_000_000_000_000


class TestPercentagePlan:
    """Test percentage-based splits."""

    def test_seventy_thirty_split(self, planner, monkeypatch):
        """Test 1 ETH, 70/30, reserve 0.006 ETH."""
        monkeypatch.setattr(planner, 'fee_reserve', lambda quote, count: 6 * 10 ** 15)
        destinations = [DestinationSpec(DEST_A, 70), DestinationSpec(DEST_B, 30)]

        plan = planner.plan(ETH, destinations, quote_at(10), 2)

        assert plan.distributable == 994 * 10 ** 15
        assert [t.amount for t in plan.transfers] == [
            695_800_000_000_000_000,
            298_200_000_000_000_000,
        ]
        assert plan.total <= plan.distributable

    def test_rounding_never_over_allocates(self, planner):
        """Test floor rounding with uneven weights."""
        destinations = [
            DestinationSpec(DEST_A, 33.33),
            DestinationSpec(DEST_B, 33.33),
            DestinationSpec(DEST_C, 33.34),
        ]

        plan = planner.plan(1_000_000_000_000_000_007, destinations, quote_at(12), 3)

        assert plan.total <= plan.distributable
        assert plan.distributable == 1_000_000_000_000_000_007 - plan.reserve
        assert plan.distributable - plan.total < 3

    def test_even_split_uses_whole_pool(self, planner, monkeypatch):
        """Test that weights dividing the pool evenly leave no dust."""
        monkeypatch.setattr(planner, 'fee_reserve', lambda quote, count: 0)
        destinations = [DestinationSpec(DEST_A, 50), DestinationSpec(DEST_B, 50)]

        plan = planner.plan(10 ** 18, destinations, quote_at(10), 2)

        assert plan.total == plan.distributable

    def test_plan_order_follows_destinations(self, planner):
        """Test that transfers keep destination order."""
        destinations = [DestinationSpec(DEST_C, 20), DestinationSpec(DEST_A, 80)]

        plan = planner.plan(ETH, destinations, quote_at(10), 2)

        assert [t.destination.address for t in plan.transfers] == [DEST_C, DEST_A]

    def test_weights_within_epsilon_accepted(self, planner):
        """Test that 99.995% is accepted."""
        destinations = [DestinationSpec(DEST_A, 60), DestinationSpec(DEST_B, 39.995)]

        plan = planner.plan(ETH, destinations, quote_at(10), 2)

        assert len(plan.transfers) == 2

    def test_weights_above_100_within_epsilon(self, planner):
        """Test that a 100.005% total stays inside the pool."""
        destinations = [DestinationSpec(DEST_A, 60.005), DestinationSpec(DEST_B, 40)]

        plan = planner.plan(ETH, destinations, quote_at(10), 2)

        assert plan.total <= plan.distributable
        assert plan.distributable - plan.total < 2


class TestEqualPlan:
    """Test equal distribution."""

    def test_equal_overrides_weights(self, planner):
        """Test that weights are ignored in equal mode."""
        destinations = [DestinationSpec(DEST_A, 0), DestinationSpec(DEST_B, 0), DestinationSpec(DEST_C, 0)]

        plan = planner.plan(ETH, destinations, quote_at(10), 3, DistributionMethod.EQUAL)

        amounts = [t.amount for t in plan.transfers]
        assert amounts[0] == amounts[1] == amounts[2]
        assert amounts[0] == plan.distributable // 3
        assert plan.total <= plan.distributable


class TestPlanRejections:
    """Test planning failures."""

    def test_nothing_left_after_reserve(self, planner):
        """Test that a pool <= 0 raises PlanningError."""
        with pytest.raises(PlanningError, match="Insufficient funds after fee reserve"):
            planner.plan(100_000, [DestinationSpec(DEST_A, 100)], quote_at(10), 1)

    def test_weights_not_summing_to_100(self, planner):
        """Test that 90% is rejected."""
        destinations = [DestinationSpec(DEST_A, 60), DestinationSpec(DEST_B, 30)]

        with pytest.raises(ValidationError, match="sum to 100"):
            planner.plan(ETH, destinations, quote_at(10), 2)

    def test_invalid_destination_address(self, planner):
        """Test that a malformed address is rejected."""
        with pytest.raises(ValidationError, match="destination address"):
            planner.plan(ETH, [DestinationSpec('0x1234', 100)], quote_at(10), 1)

    def test_no_destinations(self, planner):
        """Test that an empty destination list is rejected."""
        with pytest.raises(ValidationError, match="At least one destination"):
            planner.plan(ETH, [], quote_at(10), 0)
