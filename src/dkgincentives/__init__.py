"""
dkgincentives - Incentive and consensus core for a decentralized knowledge graph

Components:
- NeighborhoodCommitManager: scores and ranks commits per agreement epoch
- ProofRewardManager: challenges, Merkle proof checks and reward settlement
- EpochPoolAccountant: per-shard, per-epoch funded pools
- MarketState + DelegationVault: stake-weighted asks, delegated shares,
  operator fees and rolling rewards

Usage:
    from dkgincentives import IncentivesEngine, ProtocolParameters

    engine = IncentivesEngine(ProtocolParameters(), start_time=1_700_000_000)
    node = engine.create_profile(b"node-id", admin="0xAdmin", ask=10)
    engine.deposit(node, "0xAdmin", 100_000 * TOKEN)

Async Usage:
    from dkgincentives.service import IncentivesService

    service = IncentivesService(engine, peers)
    await service.start(nursery)

Metrics Usage:
    from dkgincentives.metrics import MetricsCollector

    metrics = MetricsCollector(engine)
    prometheus_output = metrics.collect()
"""

from .chronos import Chronos, ManualClock
from .config import ProtocolParameters, LinearSumParameters, Log2PLDSFParameters, TOKEN
from .engine import IncentivesEngine
from .errors import IncentivesError, InvariantViolation
from .identity import IdentityRegistry
from .metrics import MetricsCollector
from .service import IncentivesService

__version__ = "0.1.0"
__all__ = [
    # Core
    "IncentivesEngine",
    "IncentivesService",
    "MetricsCollector",
    # Time
    "Chronos",
    "ManualClock",
    # Config
    "ProtocolParameters",
    "LinearSumParameters",
    "Log2PLDSFParameters",
    "TOKEN",
    # Identity
    "IdentityRegistry",
    # Errors
    "IncentivesError",
    "InvariantViolation",
]
