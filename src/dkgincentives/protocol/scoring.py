"""
dkgincentives/protocol/scoring.py

Commit score functions.

Linear sum (id 2):
    score = (w1 * proximity +/- w2 * stake) rescaled into 40 bits

    Proximity normalizes the node's distance to the key by the smaller of
    the neighborhood's own maximum distance and an "ideal" distance
    (ring size / node count * ceil(r2 / 2)), so it stays meaningful as the
    network grows. A node farther than the divisor gets a negative
    proximity that is subtracted from its stake score, floored at zero.

    Arithmetic stays within 256-bit unsigned bounds: when
    distance * distance_scale_factor would overflow, the scale factor is
    capped and the divisor shrunk by the same ratio instead.

Log2PLDSF (id 1, legacy):
    score = multiplier * log2(c + mapped_stake^a * 1e18 / mapped_distance^b)
"""

import logging
from dataclasses import dataclass, asdict
from enum import IntEnum
from typing import Optional

from ..config import (
    HASH_RING_SIZE,
    SCALE18,
    UINT40_MAX,
    UINT64_MAX,
    UINT256_MAX,
    LinearSumParameters,
    Log2PLDSFParameters,
)

logger = logging.getLogger("dkgincentives.protocol.scoring")


class ScoreFunction(IntEnum):
    LOG2PLDSF = 1
    LINEAR_SUM = 2

    @classmethod
    def parse(cls, value: int) -> Optional["ScoreFunction"]:
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass
class ScoreBreakdown:
    """Intermediate values of a linear-sum score, for diagnostics."""
    distance: int
    divisor: int
    normalized_distance: int
    normalized_stake: int
    proximity_score: int
    stake_score: int
    is_positive: bool
    score: int

    def to_dict(self) -> dict:
        return asdict(self)


# ============================================================================
# LINEAR SUM
# ============================================================================

def ideal_neighborhood_distance(nodes_count: int, r2: int) -> int:
    """Expected half-width of a neighborhood of r2 nodes in a ring of nodes_count."""
    if nodes_count <= 0:
        return HASH_RING_SIZE
    return HASH_RING_SIZE // nodes_count * ((r2 + 1) // 2)


def normalize_distance(
    distance: int,
    max_neighborhood_distance: int,
    nodes_count: int,
    r2: int,
    distance_scale_factor: int = SCALE18,
) -> tuple:
    """
    Distance scaled so that 1e18 equals the neighborhood divisor.

    Returns:
        (normalized_distance, divisor)
    """
    divisor = min(max_neighborhood_distance, ideal_neighborhood_distance(nodes_count, r2))
    if divisor == 0:
        divisor = 1
    if distance == 0:
        return 0, divisor

    compensation = 1
    max_multiplier = UINT256_MAX // distance
    if distance_scale_factor > max_multiplier:
        compensation = distance_scale_factor // max_multiplier
        distance_scale_factor = max_multiplier

    effective_divisor = max(divisor // compensation, 1)
    return distance * distance_scale_factor // effective_divisor, divisor


def normalize_stake(stake: int, minimum_stake: int, maximum_stake: int, stake_scale_factor: int = SCALE18) -> int:
    """Stake linearly mapped from [min, max] onto [0, stake_scale_factor]."""
    if maximum_stake <= minimum_stake:
        return stake_scale_factor if stake >= maximum_stake else 0
    clamped = min(max(stake, minimum_stake), maximum_stake)
    return stake_scale_factor * (clamped - minimum_stake) // (maximum_stake - minimum_stake)


def linear_sum_breakdown(
    distance: int,
    stake: int,
    max_neighborhood_distance: int,
    r2: int,
    nodes_count: int,
    minimum_stake: int,
    maximum_stake: int,
    params: Optional[LinearSumParameters] = None,
) -> ScoreBreakdown:
    params = params or LinearSumParameters()
    normalized_distance, divisor = normalize_distance(
        distance, max_neighborhood_distance, nodes_count, r2, params.distance_scale_factor
    )
    normalized_stake = normalize_stake(stake, minimum_stake, maximum_stake, params.stake_scale_factor)

    is_positive = SCALE18 >= normalized_distance
    if is_positive:
        proximity_score = (SCALE18 - normalized_distance) * params.w1
    else:
        proximity_score = (normalized_distance - SCALE18) * params.w1
    stake_score = normalized_stake * params.w2

    if is_positive:
        final = proximity_score + stake_score
    elif stake_score >= proximity_score:
        final = stake_score - proximity_score
    else:
        final = 0

    score = final * UINT40_MAX // (SCALE18 * (params.w1 + params.w2))
    return ScoreBreakdown(
        distance=distance,
        divisor=divisor,
        normalized_distance=normalized_distance,
        normalized_stake=normalized_stake,
        proximity_score=proximity_score,
        stake_score=stake_score,
        is_positive=is_positive,
        score=min(score, UINT64_MAX),
    )


def calculate_linear_sum_score(
    distance: int,
    stake: int,
    max_neighborhood_distance: int,
    r2: int,
    nodes_count: int,
    minimum_stake: int,
    maximum_stake: int,
    params: Optional[LinearSumParameters] = None,
) -> int:
    """Linear-sum commit score (score function 2)."""
    return linear_sum_breakdown(
        distance, stake, max_neighborhood_distance, r2, nodes_count,
        minimum_stake, maximum_stake, params,
    ).score


# ============================================================================
# LOG2PLDSF (legacy)
# ============================================================================

def _log2_fixed(x: int) -> int:
    """log2(x / 1e18) scaled by 1e18, for x >= 1e18."""
    if x < SCALE18:
        return 0
    integer_part = (x // SCALE18).bit_length() - 1
    result = integer_part * SCALE18
    y = x >> integer_part
    # Fractional bits by repeated squaring
    delta = SCALE18 // 2
    for _ in range(60):
        y = y * y // SCALE18
        if y >= 2 * SCALE18:
            result += delta
            y //= 2
        delta //= 2
        if delta == 0:
            break
    return result


def calculate_log2pldsf_score(
    distance: int,
    stake: int,
    maximum_stake: int,
    params: Optional[Log2PLDSFParameters] = None,
) -> int:
    """Legacy commit score (score function 1), independent of neighborhood size."""
    params = params or Log2PLDSFParameters()
    clamped = min(stake, maximum_stake)
    mapped_stake = clamped * params.stake_range_max // maximum_stake if maximum_stake else 0
    mapped_distance = distance * params.distance_range_max // HASH_RING_SIZE + 1

    ratio = (mapped_stake ** params.stake_exponent) * SCALE18 // (mapped_distance ** params.distance_exponent)
    argument = params.log_argument_constant * SCALE18 + ratio
    score = params.multiplier * _log2_fixed(argument) // SCALE18
    return min(score, UINT40_MAX)
