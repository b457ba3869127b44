"""
dkgincentives/protocol/agreements.py

Service agreements.

An agreement commits the network to serving one knowledge asset for a
number of epochs against a pre-funded reward. Its id is derived from the
(asset storage address, token id, keyword) triple; the keyword is the asset
storage address followed by the assertion id, and its SHA-256 is the key
hash that locates the content on the ring.

Agreement epochs are numbered from 0 relative to the agreement's own start
time. Epoch k draws its funding from pool epoch start_pool_epoch + k.
"""

import hashlib
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from ..errors import AgreementAlreadyExists, AgreementDoesntExist

logger = logging.getLogger("dkgincentives.protocol.agreements")


def _address_bytes(address: str) -> bytes:
    hex_part = address[2:] if address.startswith("0x") else address
    return bytes.fromhex(hex_part)


def compute_keyword(asset_storage: str, assertion_id: bytes) -> bytes:
    """Keyword locating an asset: storage address bytes + assertion id."""
    return _address_bytes(asset_storage) + assertion_id


def compute_key_hash(keyword: bytes) -> int:
    """Ring position of a keyword."""
    return int.from_bytes(hashlib.sha256(keyword).digest(), "big")


def generate_agreement_id(asset_storage: str, token_id: int, keyword: bytes) -> str:
    """Agreement id: sha256(storage address || uint256 token id || keyword)."""
    packed = _address_bytes(asset_storage) + token_id.to_bytes(32, "big") + keyword
    return hashlib.sha256(packed).hexdigest()


# ============================================================================
# DATA CLASSES
# ============================================================================

@dataclass
class ServiceAgreement:
    """A funded content-serving commitment."""
    agreement_id: str
    asset_storage: str
    token_id: int
    keyword: bytes
    key_hash: int
    start_time: int
    epochs_number: int
    epoch_length: int
    token_amount: int
    score_function_id: int
    proof_window_offset_perc: int
    merkle_root: str
    chunks_number: int
    shard_id: int = 1
    start_pool_epoch: int = 1
    remaining_reward: int = 0

    # Funding split made when the agreement was created
    allotment_per_epoch: int = 0
    remainder_share: int = 0
    remainder_released: int = 0

    # Reward bookkeeping keyed by agreement epoch
    available: Dict[int, int] = field(default_factory=dict)
    rewarded_nodes: Dict[int, Set[int]] = field(default_factory=lambda: defaultdict(set))
    epoch_rewards: Dict[int, Dict[int, int]] = field(default_factory=lambda: defaultdict(dict))

    def __post_init__(self):
        if self.remaining_reward == 0:
            self.remaining_reward = self.token_amount
        if self.allotment_per_epoch == 0 and self.epochs_number:
            self.allotment_per_epoch = self.token_amount // self.epochs_number
            self.remainder_share = self.token_amount - self.allotment_per_epoch * self.epochs_number

    # ------------------------------------------------------------------
    # Time
    # ------------------------------------------------------------------

    def epoch_start(self, epoch: int) -> int:
        return self.start_time + epoch * self.epoch_length

    def epoch_at(self, timestamp: int) -> int:
        """Agreement epoch containing timestamp (may be negative or past the end)."""
        return (timestamp - self.start_time) // self.epoch_length

    def is_epoch_in_range(self, epoch: int) -> bool:
        return 0 <= epoch < self.epochs_number

    def commit_window(self, epoch: int, duration_perc: int) -> Tuple[int, int]:
        """Inclusive [open, close] timestamps of the commit window."""
        start = self.epoch_start(epoch)
        return start, start + self.epoch_length * duration_perc // 100

    def proof_window(self, epoch: int, duration_perc: int) -> Tuple[int, int]:
        """Half-open [open, close) timestamps of the proof window."""
        start = self.epoch_start(epoch)
        return (
            start + self.epoch_length * self.proof_window_offset_perc // 100,
            start + self.epoch_length * (self.proof_window_offset_perc + duration_perc) // 100,
        )

    def pool_epoch(self, epoch: int) -> int:
        return self.start_pool_epoch + epoch

    # ------------------------------------------------------------------
    # Rewards
    # ------------------------------------------------------------------

    def rewarded_in_epoch(self, epoch: int) -> int:
        return len(self.rewarded_nodes.get(epoch, ()))

    def is_rewarded(self, epoch: int, identity_id: int) -> bool:
        return identity_id in self.rewarded_nodes.get(epoch, ())

    def available_in_epoch(self, epoch: int) -> int:
        """Funding this agreement may still draw from its own slice of the epoch pool."""
        return self.available.get(epoch, self.allotment_per_epoch)

    @property
    def remainder_left(self) -> int:
        return self.remainder_share - self.remainder_released

    @property
    def total_paid(self) -> int:
        return self.token_amount - self.remaining_reward

    def to_dict(self) -> dict:
        """Summary for events and APIs."""
        return {
            "agreement_id": self.agreement_id,
            "asset_storage": self.asset_storage,
            "token_id": self.token_id,
            "keyword": self.keyword.hex(),
            "start_time": self.start_time,
            "epochs_number": self.epochs_number,
            "epoch_length": self.epoch_length,
            "token_amount": self.token_amount,
            "remaining_reward": self.remaining_reward,
            "score_function_id": self.score_function_id,
            "proof_window_offset_perc": self.proof_window_offset_perc,
            "merkle_root": self.merkle_root,
            "chunks_number": self.chunks_number,
            "shard_id": self.shard_id,
            "start_pool_epoch": self.start_pool_epoch,
        }


# ============================================================================
# STORE
# ============================================================================

class AgreementStore:
    """In-memory agreement storage keyed by agreement id."""

    def __init__(self, lock: Optional[threading.RLock] = None):
        self._lock = lock or threading.RLock()
        self._agreements: Dict[str, ServiceAgreement] = {}

    def add(self, agreement: ServiceAgreement) -> None:
        with self._lock:
            if agreement.agreement_id in self._agreements:
                raise AgreementAlreadyExists(f"Service agreement already exists: {agreement.agreement_id}")
            self._agreements[agreement.agreement_id] = agreement

    def get(self, agreement_id: str) -> ServiceAgreement:
        agreement = self._agreements.get(agreement_id)
        if agreement is None:
            raise AgreementDoesntExist(agreement_id)
        return agreement

    def exists(self, agreement_id: str) -> bool:
        return agreement_id in self._agreements

    def delete(self, agreement_id: str) -> ServiceAgreement:
        with self._lock:
            agreement = self.get(agreement_id)
            del self._agreements[agreement_id]
            return agreement

    def agreement_ids(self) -> List[str]:
        return list(self._agreements)

    def __len__(self) -> int:
        return len(self._agreements)
