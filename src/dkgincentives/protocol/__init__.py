"""
dkgincentives/protocol/

Commit ranking, proof settlement, epoch pools and the staking market.
"""

from .agreements import (
    AgreementStore,
    ServiceAgreement,
    compute_key_hash,
    compute_keyword,
    generate_agreement_id,
)
from .commits import CommitEntry, CommitReceipt, NeighborhoodCommitManager, RankedCommitList
from .delegation import DelegationVault, DelegatorRewardState, RewardCredit, WithdrawalRequest
from .epochs import EpochPoolAccountant
from .market import MarketAggregate, MarketState, NodeSnapshot
from .messages import create_event, serialize_message, deserialize_message
from .proofs import Challenge, ProofReceipt, ProofRewardManager, ProofStatus, derive_chunk_index
from .scoring import (
    ScoreFunction,
    calculate_linear_sum_score,
    calculate_log2pldsf_score,
)
from .sharding import NeighborhoodProof, ShardingTable, compute_ring_distance

__all__ = [
    # Agreements
    "AgreementStore",
    "ServiceAgreement",
    "compute_key_hash",
    "compute_keyword",
    "generate_agreement_id",
    # Commits
    "CommitEntry",
    "CommitReceipt",
    "NeighborhoodCommitManager",
    "RankedCommitList",
    # Staking
    "DelegationVault",
    "DelegatorRewardState",
    "RewardCredit",
    "WithdrawalRequest",
    "MarketAggregate",
    "MarketState",
    "NodeSnapshot",
    # Pools
    "EpochPoolAccountant",
    # Proofs
    "Challenge",
    "ProofReceipt",
    "ProofRewardManager",
    "ProofStatus",
    "derive_chunk_index",
    # Scoring / topology
    "ScoreFunction",
    "calculate_linear_sum_score",
    "calculate_log2pldsf_score",
    "NeighborhoodProof",
    "ShardingTable",
    "compute_ring_distance",
    # Events
    "create_event",
    "serialize_message",
    "deserialize_message",
]
