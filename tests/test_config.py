"""
Tests for dkgincentives/config.py and dkgincentives/chronos.py

Tests protocol parameter validation and the epoch clock.
"""

import pytest

from dkgincentives.chronos import Chronos, ManualClock
from dkgincentives.config import (
    TOKEN,
    LinearSumParameters,
    Log2PLDSFParameters,
    ProtocolParameters,
)


# ============================================================================
# TEST DATA
# ============================================================================

START = 1_700_000_000
EPOCH = 3600


def create_test_chronos(now: int = START):
    """Create a Chronos driven by a manual clock."""
    clock = ManualClock(now)
    return Chronos(START, EPOCH, clock=clock), clock


# ============================================================================
# PROTOCOL PARAMETERS TESTS
# ============================================================================

class TestProtocolParameters:
    """Tests for ProtocolParameters."""

    def test_defaults(self):
        """Test default parameter values."""
        params = ProtocolParameters()
        assert params.minimum_stake == 50_000 * TOKEN
        assert params.maximum_stake == 2_000_000 * TOKEN
        assert (params.r0, params.r1, params.r2) == (3, 8, 20)
        assert params.commit_window_duration_perc == 25
        assert params.proof_window_offset_perc == 50
        assert params.proof_window_duration_perc == 25
        assert params.default_shard_id == 1
        params.validate()

    def test_r0_above_r1_rejected(self):
        """Test that r0 > r1 is rejected."""
        with pytest.raises(ValueError):
            ProtocolParameters(r0=9, r1=8).validate()

    def test_proof_window_past_epoch_end_rejected(self):
        """Test that offset + duration > 100 is rejected."""
        with pytest.raises(ValueError):
            ProtocolParameters(proof_window_offset_perc=80, proof_window_duration_perc=25).validate()

    def test_minimum_above_maximum_rejected(self):
        """Test inverted stake bounds."""
        with pytest.raises(ValueError):
            ProtocolParameters(minimum_stake=10, maximum_stake=5).validate()

    def test_round_trip(self):
        """Test to_dict/from_dict round trip, including nested score parameters."""
        params = ProtocolParameters(
            r0=2,
            r1=4,
            linear_sum=LinearSumParameters(w1=3, w2=1),
            log2pldsf=Log2PLDSFParameters(multiplier=5000),
        )
        restored = ProtocolParameters.from_dict(params.to_dict())
        assert restored == params

    def test_from_dict_uses_defaults(self):
        """Test that missing keys fall back to defaults."""
        params = ProtocolParameters.from_dict({"r2": 10})
        assert params.r2 == 10
        assert params.r0 == 3
        assert params.linear_sum == LinearSumParameters()

    def test_from_dict_validates(self):
        """Test that from_dict rejects inconsistent values."""
        with pytest.raises(ValueError):
            ProtocolParameters.from_dict({"r0": 5, "r1": 2})


# ============================================================================
# CHRONOS TESTS
# ============================================================================

class TestChronos:
    """Tests for Chronos."""

    def test_invalid_construction(self):
        """Test that non-positive start or length is rejected."""
        with pytest.raises(ValueError):
            Chronos(0, EPOCH)
        with pytest.raises(ValueError):
            Chronos(START, 0)

    def test_epoch_numbering(self):
        """Test epoch boundaries."""
        chronos, _ = create_test_chronos()
        assert chronos.epoch_at_timestamp(START - 10) == 1
        assert chronos.epoch_at_timestamp(START) == 1
        assert chronos.epoch_at_timestamp(START + EPOCH - 1) == 1
        assert chronos.epoch_at_timestamp(START + EPOCH) == 2
        assert chronos.epoch_at_timestamp(START + 5 * EPOCH + 7) == 6

    def test_timestamp_for_epoch(self):
        """Test epoch start timestamps."""
        chronos, _ = create_test_chronos()
        assert chronos.timestamp_for_epoch(0) == 0
        assert chronos.timestamp_for_epoch(1) == START
        assert chronos.timestamp_for_epoch(3) == START + 2 * EPOCH

    def test_time_until_next_epoch(self):
        """Test countdown to the next boundary."""
        chronos, clock = create_test_chronos(START + 100)
        assert chronos.time_until_next_epoch() == EPOCH - 100
        clock.set(START + EPOCH)
        assert chronos.time_until_next_epoch() == EPOCH

    def test_before_start(self):
        """Test clock readings before the start time."""
        chronos, _ = create_test_chronos(START - 100)
        assert chronos.get_current_epoch() == 1
        assert chronos.time_until_next_epoch() == EPOCH + 100
        assert chronos.elapsed_time_in_current_epoch() == 0
        assert chronos.total_elapsed_time() == 0
        assert chronos.is_active() is False

    def test_elapsed(self):
        """Test elapsed-time helpers."""
        chronos, clock = create_test_chronos(START + 2 * EPOCH + 30)
        assert chronos.get_current_epoch() == 3
        assert chronos.elapsed_time_in_current_epoch() == 30
        assert chronos.total_elapsed_time() == 2 * EPOCH + 30
        assert chronos.has_epoch_elapsed(2) is True
        assert chronos.has_epoch_elapsed(3) is False
        assert chronos.is_active() is True

    def test_manual_clock_never_moves_backwards(self):
        """Test that ManualClock rejects going back in time."""
        clock = ManualClock(100)
        clock.advance(5)
        assert clock() == 105
        with pytest.raises(ValueError):
            clock.set(50)
