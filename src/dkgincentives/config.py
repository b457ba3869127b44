"""
dkgincentives/config.py

Configuration constants and data classes for dkgincentives.

Protocol parameters are read-only for the core: they are loaded once by
whatever owns the network configuration and handed to the engine.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict


# Fixed-point scale used by every percentage and normalized value
SCALE18 = 10 ** 18

# Integer widths carried over from the hash-ring arithmetic
UINT256_MAX = 2 ** 256 - 1
UINT64_MAX = 2 ** 64 - 1
UINT40_MAX = 2 ** 40 - 1

# SHA-256 output spans the whole ring
HASH_RING_SIZE = UINT256_MAX

# Operator fee is expressed in basis points
BASIS_POINTS = 10_000

# Score function selectors stored on agreements
SCORE_FUNCTION_LOG2PLDSF = 1
SCORE_FUNCTION_LINEAR_SUM = 2

TOKEN = 10 ** 18

DEFAULT_EPOCH_LENGTH = 3600             # seconds
DEFAULT_WITHDRAWAL_DELAY = 28 * 24 * 60 * 60


@dataclass
class LinearSumParameters:
    """Coefficients of the linear-sum (id 2) score function."""
    distance_scale_factor: int = SCALE18
    stake_scale_factor: int = SCALE18
    w1: int = 1                     # proximity weight
    w2: int = 1                     # stake weight

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "LinearSumParameters":
        """Create from dictionary."""
        return cls(
            distance_scale_factor=int(data.get("distance_scale_factor", SCALE18)),
            stake_scale_factor=int(data.get("stake_scale_factor", SCALE18)),
            w1=int(data.get("w1", 1)),
            w2=int(data.get("w2", 1)),
        )


@dataclass
class Log2PLDSFParameters:
    """Coefficients of the legacy (id 1) score function."""
    multiplier: int = 10_000
    log_argument_constant: int = 1
    stake_range_max: int = 1_000
    distance_range_max: int = 1_000
    stake_exponent: int = 1
    distance_exponent: int = 2

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Log2PLDSFParameters":
        """Create from dictionary."""
        defaults = cls()
        return cls(**{
            name: int(data.get(name, getattr(defaults, name)))
            for name in defaults.to_dict()
        })


@dataclass
class ProtocolParameters:
    """
    Network-wide protocol constants.

    r0: number of top-ranked commits allowed to submit a proof
    r1: maximum length of the ranked commit list
    r2: neighborhood size
    Percentages are whole percents of the agreement epoch length.
    """
    minimum_stake: int = 50_000 * TOKEN
    maximum_stake: int = 2_000_000 * TOKEN
    r0: int = 3
    r1: int = 8
    r2: int = 20
    commit_window_duration_perc: int = 25
    proof_window_offset_perc: int = 50
    proof_window_duration_perc: int = 25
    epoch_length: int = DEFAULT_EPOCH_LENGTH
    stake_withdrawal_delay: int = DEFAULT_WITHDRAWAL_DELAY
    operator_fee_withdrawal_delay: int = DEFAULT_WITHDRAWAL_DELAY
    max_operator_fee: int = BASIS_POINTS
    sharding_table_size_limit: int = 500
    ask_lower_bound_factor: int = 533 * 10 ** 15
    ask_upper_bound_factor: int = 1_467 * 10 ** 15
    default_shard_id: int = 1
    linear_sum: LinearSumParameters = field(default_factory=LinearSumParameters)
    log2pldsf: Log2PLDSFParameters = field(default_factory=Log2PLDSFParameters)

    def validate(self) -> None:
        """Raise ValueError if the parameters are inconsistent."""
        if self.minimum_stake <= 0 or self.minimum_stake > self.maximum_stake:
            raise ValueError(
                f"Invalid stake bounds: min={self.minimum_stake} max={self.maximum_stake}"
            )
        if not 0 < self.r0 <= self.r1:
            raise ValueError(f"Require 0 < r0 <= r1, got r0={self.r0} r1={self.r1}")
        if self.r2 <= 0:
            raise ValueError(f"Neighborhood size must be positive, got {self.r2}")
        if not 0 < self.commit_window_duration_perc <= 100:
            raise ValueError(
                f"Commit window must be within (0, 100]%, got {self.commit_window_duration_perc}"
            )
        if self.proof_window_duration_perc <= 0:
            raise ValueError("Proof window duration must be positive")
        if self.proof_window_offset_perc + self.proof_window_duration_perc > 100:
            raise ValueError(
                "Proof window must end within the epoch: "
                f"offset={self.proof_window_offset_perc} duration={self.proof_window_duration_perc}"
            )
        if self.epoch_length <= 0:
            raise ValueError(f"Epoch length must be positive, got {self.epoch_length}")
        if not 0 <= self.max_operator_fee <= BASIS_POINTS:
            raise ValueError(f"Max operator fee must be within 0..{BASIS_POINTS}")
        if self.sharding_table_size_limit <= 0:
            raise ValueError("Sharding table size limit must be positive")
        if self.ask_lower_bound_factor > self.ask_upper_bound_factor:
            raise ValueError("Ask lower bound factor exceeds upper bound factor")

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProtocolParameters":
        """Create from dictionary, falling back to defaults for missing keys."""
        defaults = cls()
        values = {}
        for name, default in defaults.to_dict().items():
            if name in ("linear_sum", "log2pldsf"):
                continue
            values[name] = int(data.get(name, default))
        params = cls(
            linear_sum=LinearSumParameters.from_dict(data.get("linear_sum", {})),
            log2pldsf=Log2PLDSFParameters.from_dict(data.get("log2pldsf", {})),
            **values,
        )
        params.validate()
        return params
