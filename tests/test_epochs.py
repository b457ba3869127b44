"""
Tests for dkgincentives/protocol/epochs.py

Tests epoch-range funding, remainder carry, payouts and finalization.
"""

import random

import pytest

from dkgincentives.chronos import Chronos, ManualClock
from dkgincentives.config import SCALE18
from dkgincentives.errors import InvariantViolation
from dkgincentives.protocol.epochs import EpochPoolAccountant


# ============================================================================
# TEST DATA
# ============================================================================

START = 1_700_000_000
EPOCH = 3600


def create_test_pools(now: int = START):
    """Create an accountant with a manual clock."""
    clock = ManualClock(now)
    return EpochPoolAccountant(Chronos(START, EPOCH, clock=clock)), clock


# ============================================================================
# FUNDING TESTS
# ============================================================================

class TestEpochRangeFunding:
    """Tests for add_tokens_to_epoch_range and pool queries."""

    def test_single_range(self):
        """Test an even split over five epochs."""
        pools, _ = create_test_pools()
        assert pools.add_tokens_to_epoch_range(1, 5, 9, 1000) == 200
        for epoch in range(5, 10):
            assert pools.get_epoch_pool(1, epoch) == 200
        assert pools.get_epoch_pool(1, 4) == 0
        assert pools.get_epoch_pool(1, 10) == 0
        assert pools.get_accumulated_remainder(1) == 0

    def test_overlapping_ranges(self):
        """Test that overlapping ranges add up per epoch."""
        pools, _ = create_test_pools()
        pools.add_tokens_to_epoch_range(11, 2, 5, 4000)
        pools.add_tokens_to_epoch_range(11, 4, 6, 3000)
        assert [pools.get_epoch_pool(11, e) for e in range(2, 7)] == [1000, 1000, 2000, 2000, 1000]

    def test_remainder_carry(self):
        """Test that indivisible amounts go to the shard remainder."""
        pools, _ = create_test_pools()
        pools.add_tokens_to_epoch_range(9, 2, 4, 3000)
        pools.add_tokens_to_epoch_range(9, 3, 5, 2000)
        assert [pools.get_epoch_pool(9, e) for e in range(2, 6)] == [1000, 1666, 1666, 666]
        assert pools.get_accumulated_remainder(9) == 2
        assert pools.get_epoch_range_pool(9, 2, 5) + pools.get_accumulated_remainder(9) == 5000

    def test_range_pool(self):
        """Test range sums over partially funded spans."""
        pools, _ = create_test_pools()
        pools.add_tokens_to_epoch_range(13, 5, 7, 2100)
        pools.add_tokens_to_epoch_range(13, 6, 8, 1800)
        assert pools.get_epoch_range_pool(13, 5, 8) == 3900
        assert pools.get_epoch_range_pool(13, 6, 7) == 2600
        with pytest.raises(ValueError):
            pools.get_epoch_range_pool(13, 8, 5)

    def test_disjoint_ranges(self):
        """Test back-to-back ranges with different rates."""
        pools, _ = create_test_pools()
        pools.add_tokens_to_epoch_range(18, 1, 2, 1000)
        pools.add_tokens_to_epoch_range(18, 3, 4, 2000)
        pools.add_tokens_to_epoch_range(18, 5, 6, 3000)
        assert [pools.get_epoch_pool(18, e) for e in range(1, 7)] == [500, 500, 1000, 1000, 1500, 1500]

    def test_long_range_remainder(self):
        """Test a ten-epoch range with a remainder."""
        pools, _ = create_test_pools()
        pools.add_tokens_to_epoch_range(5, 1, 10, 9999)
        pools.add_tokens_to_epoch_range(5, 1, 5, 555)
        assert pools.get_epoch_pool(5, 1) == 1110
        assert pools.get_epoch_pool(5, 10) == 999
        assert pools.get_accumulated_remainder(5) == 9
        assert pools.verify_conservation(5)

    def test_invalid_ranges(self):
        """Test range validation."""
        pools, _ = create_test_pools()
        with pytest.raises(ValueError):
            pools.add_tokens_to_epoch_range(1, 5, 4, 100)
        with pytest.raises(ValueError):
            pools.add_tokens_to_epoch_range(1, 0, 4, 100)
        with pytest.raises(ValueError):
            pools.add_tokens_to_epoch_range(1, 1, 4, -1)

    def test_unknown_shard_is_empty(self):
        """Test queries on a shard that was never funded."""
        pools, _ = create_test_pools()
        assert pools.get_epoch_pool(42, 1) == 0
        assert pools.get_epoch_range_pool(42, 1, 3) == 0
        assert pools.verify_conservation(42)


# ============================================================================
# FINALIZATION TESTS
# ============================================================================

class TestFinalization:
    """Tests for the finalization cursor."""

    def test_finalize_keeps_pools(self):
        """Test that finalizing doesn't change pool values."""
        pools, _ = create_test_pools()
        pools.add_tokens_to_epoch_range(1, 1, 5, 500)
        pools.finalize_epochs(1, 3)
        assert pools.get_last_finalized_epoch(1) == 3
        assert [pools.get_epoch_pool(1, e) for e in range(1, 7)] == [100, 100, 100, 100, 100, 0]

    def test_fund_across_cursor(self):
        """Test funding a range that straddles finalized and future epochs."""
        pools, _ = create_test_pools()
        pools.add_tokens_to_epoch_range(1, 1, 5, 500)
        pools.finalize_epochs(1, 3)
        pools.add_tokens_to_epoch_range(1, 2, 4, 300)
        assert [pools.get_epoch_pool(1, e) for e in range(1, 7)] == [100, 200, 200, 200, 100, 0]
        assert pools.verify_conservation(1)

    def test_fund_ending_at_cursor(self):
        """Test funding a range whose last epoch is the cursor epoch."""
        pools, _ = create_test_pools()
        pools.add_tokens_to_epoch_range(1, 1, 5, 500)
        pools.finalize_epochs(1, 3)
        pools.add_tokens_to_epoch_range(1, 2, 3, 300)
        assert [pools.get_epoch_pool(1, e) for e in range(1, 6)] == [100, 250, 250, 100, 100]

    def test_fund_fully_finalized_range(self):
        """Test funding epochs that are all behind the cursor."""
        pools, _ = create_test_pools()
        pools.add_tokens_to_epoch_range(1, 1, 5, 500)
        pools.finalize_epochs(1, 4)
        pools.add_tokens_to_epoch_range(1, 1, 2, 200)
        assert [pools.get_epoch_pool(1, e) for e in range(1, 6)] == [200, 200, 100, 100, 100]

    def test_finalize_all(self):
        """Test finalizing every shard at once."""
        pools, _ = create_test_pools()
        pools.add_tokens_to_epoch_range(1, 1, 3, 300)
        pools.add_tokens_to_epoch_range(2, 2, 4, 600)
        pools.finalize_all(2)
        assert pools.get_last_finalized_epoch(1) == 2
        assert pools.get_last_finalized_epoch(2) == 2
        assert pools.get_epoch_pool(2, 2) == 200
        assert pools.get_epoch_pool(2, 4) == 200

    def test_finalize_drops_diff_keys(self):
        """Test that finalized epochs leave the sorted diff keys."""
        pools, _ = create_test_pools()
        pools.add_tokens_to_epoch_range(1, 4, 6, 300)
        pools.add_tokens_to_epoch_range(1, 2, 3, 200)
        ledger = pools._shards[1]
        assert ledger.diff_epochs == [2, 4, 7]

        pools.finalize_epochs(1, 4)
        assert ledger.diff_epochs == [7]
        assert [pools.get_epoch_pool(1, e) for e in range(1, 8)] == [0, 100, 100, 100, 100, 100, 0]


# ============================================================================
# RANGE QUERY TESTS
# ============================================================================

class TestRangeQueries:
    """Tests for range pool queries over the diff keys."""

    def test_range_matches_per_epoch_pools(self):
        """Test range sums against per-epoch pools around the cursor."""
        rng = random.Random(5)
        pools, _ = create_test_pools()
        for step in range(60):
            start = rng.randint(1, 40)
            pools.add_tokens_to_epoch_range(3, start, start + rng.randint(0, 15), rng.randint(0, 5000))
            if step % 10 == 9:
                pools.finalize_epochs(3, rng.randint(0, 30))

            low = rng.randint(1, 60)
            high = low + rng.randint(0, 20)
            expected = sum(pools.get_epoch_pool(3, e) for e in range(low, high + 1))
            assert pools.get_epoch_range_pool(3, low, high) == expected
        assert pools.verify_conservation(3)

    def test_long_range_is_not_walked(self):
        """Test that a billion-epoch range is summed from its diff keys."""
        pools, _ = create_test_pools()
        epochs = 10 ** 9
        pools.add_tokens_to_epoch_range(1, 1, epochs, 3 * epochs + 7)
        pools.finalize_epochs(1, 5)

        assert pools.get_epoch_pool(1, epochs) == 3
        assert pools.get_epoch_range_pool(1, 1, epochs) == 3 * epochs
        assert pools.get_epoch_range_pool(1, 4, epochs + 10) == 3 * (epochs - 3)
        assert pools.get_accumulated_remainder(1) == 7
        assert pools.verify_conservation(1)


# ============================================================================
# PAYOUT / MOVE / RELEASE TESTS
# ============================================================================

class TestPayouts:
    """Tests for payouts, moves and remainder releases."""

    def test_pay_out(self):
        """Test payout bookkeeping."""
        pools, _ = create_test_pools()
        pools.add_tokens_to_epoch_range(1, 1, 2, 1000)
        pools.pay_out_epoch_tokens(1, 1, 7, 300)
        pools.pay_out_epoch_tokens(1, 2, 7, 100)
        assert pools.get_epoch_distributed(1, 1) == 300
        assert pools.get_epoch_undistributed(1, 1) == 200
        assert pools.get_node_epoch_paid_out(1, 7, 1) == 300
        assert pools.get_node_paid_out(1, 7) == 400

    def test_overpay_is_invariant_violation(self):
        """Test that paying more than the pool is fatal and writes nothing."""
        pools, _ = create_test_pools()
        pools.add_tokens_to_epoch_range(1, 1, 2, 1000)
        pools.pay_out_epoch_tokens(1, 1, 7, 400)
        with pytest.raises(InvariantViolation):
            pools.pay_out_epoch_tokens(1, 1, 8, 101)
        assert pools.get_epoch_distributed(1, 1) == 400
        assert pools.get_node_paid_out(1, 8) == 0

    def test_move_tokens(self):
        """Test moving undistributed tokens between epochs."""
        pools, _ = create_test_pools()
        pools.add_tokens_to_epoch_range(1, 1, 2, 1000)
        pools.move_epoch_tokens(1, 1, 2, 200)
        assert pools.get_epoch_pool(1, 1) == 300
        assert pools.get_epoch_pool(1, 2) == 700
        assert pools.verify_conservation(1)

    def test_move_more_than_undistributed(self):
        """Test that distributed tokens cannot be moved."""
        pools, _ = create_test_pools()
        pools.add_tokens_to_epoch_range(1, 1, 2, 1000)
        pools.pay_out_epoch_tokens(1, 1, 7, 500)
        with pytest.raises(InvariantViolation):
            pools.move_epoch_tokens(1, 1, 2, 1)
        with pytest.raises(ValueError):
            pools.move_epoch_tokens(1, 2, 1, 0)

    def test_release_remainder(self):
        """Test explicit release of the remainder carry."""
        pools, _ = create_test_pools()
        pools.add_tokens_to_epoch_range(1, 1, 3, 1000)
        assert pools.get_accumulated_remainder(1) == 1
        pools.release_remainder(1, 3, 1)
        assert pools.get_epoch_pool(1, 3) == 334
        assert pools.get_accumulated_remainder(1) == 0
        assert pools.verify_conservation(1)
        with pytest.raises(InvariantViolation):
            pools.release_remainder(1, 3, 1)

    def test_random_operations_conserve(self):
        """Test conservation across random funding, moves, releases and finalization."""
        rng = random.Random(11)
        pools, _ = create_test_pools()
        shard = 3
        finalized = 0

        for _ in range(300):
            op = rng.random()
            if op < 0.4:
                start = rng.randint(max(1, finalized - 2), finalized + 5)
                end = start + rng.randint(0, 6)
                pools.add_tokens_to_epoch_range(shard, start, end, rng.randint(0, 5000))
            elif op < 0.6:
                source = rng.randint(1, finalized + 8)
                amount = min(rng.randint(1, 500), pools.get_epoch_undistributed(shard, source))
                if amount > 0:
                    pools.move_epoch_tokens(shard, source, rng.randint(1, finalized + 8), amount)
            elif op < 0.75:
                remainder = pools.get_accumulated_remainder(shard)
                if remainder > 0:
                    pools.release_remainder(shard, rng.randint(1, finalized + 8), rng.randint(1, remainder))
            elif op < 0.9:
                epoch = rng.randint(1, finalized + 8)
                amount = min(rng.randint(1, 300), pools.get_epoch_undistributed(shard, epoch))
                if amount > 0:
                    pools.pay_out_epoch_tokens(shard, epoch, rng.randint(1, 5), amount)
            else:
                finalized += rng.randint(0, 2)
                pools.finalize_epochs(shard, finalized)

            assert pools.verify_conservation(shard)


# ============================================================================
# CURRENT EPOCH / KNOWLEDGE VALUE TESTS
# ============================================================================

class TestCurrentEpochQueries:
    """Tests for chronos-relative wrappers."""

    def test_current_and_previous(self):
        """Test current and previous epoch pool wrappers."""
        pools, clock = create_test_pools()
        pools.add_tokens_to_epoch_range(1, 1, 4, 400)
        pools.add_tokens_to_epoch_range(1, 3, 3, 50)
        assert pools.get_previous_epoch_pool(1) == 0
        clock.set(START + 2 * EPOCH)
        assert pools.get_current_epoch_pool(1) == 150
        assert pools.get_previous_epoch_pool(1) == 100

    def test_requires_chronos(self):
        """Test that current-epoch queries need a clock."""
        pools = EpochPoolAccountant()
        with pytest.raises(RuntimeError):
            pools.get_current_epoch_pool(1)

    def test_knowledge_value(self):
        """Test produced knowledge value statistics."""
        pools, _ = create_test_pools()
        pools.add_epoch_produced_knowledge_value(1, 5, 300)
        pools.add_epoch_produced_knowledge_value(2, 5, 100)
        assert pools.get_epoch_produced_knowledge_value(5) == 400
        assert pools.get_epoch_node_max_produced_knowledge_value(5) == 300
        assert pools.get_node_epoch_produced_knowledge_value_percentage(1, 5) == 3 * SCALE18 // 4
        assert pools.get_node_epoch_produced_knowledge_value_percentage(1, 6) == 0
        with pytest.raises(ValueError):
            pools.add_epoch_produced_knowledge_value(1, 5, -1)

    def test_current_knowledge_value(self):
        """Test current-epoch knowledge wrappers."""
        pools, clock = create_test_pools()
        pools.add_current_epoch_produced_knowledge_value(1, 50)
        clock.set(START + EPOCH)
        assert pools.get_node_previous_epoch_produced_knowledge_value(1) == 50
        assert pools.get_previous_epoch_produced_knowledge_value() == 50
        assert pools.get_node_current_epoch_produced_knowledge_value(1) == 0
        assert pools.get_node_previous_epoch_produced_knowledge_value_percentage(1) == SCALE18
