"""
dkgincentives/protocol/commits.py

Neighborhood commit ranking.

During an epoch's commit window, nodes declare intent to serve an
agreement's content. Each commit is scored (see scoring.py) and kept in a
list sorted by descending score, capped at r1 entries; only the top r0 may
later submit a proof.

The ranked list is an intrusive doubly-linked list laid over a dense slot
array: entries reference neighbors by slot index, an identity -> slot map
gives O(1) lookup, and the tail pointer gives O(1) eviction of the lowest
ranked entry. Freed slots are reused.
"""

import logging
import threading
import time
from dataclasses import dataclass, asdict
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple, TYPE_CHECKING

from ..config import ProtocolParameters
from ..errors import (
    AgreementExpired,
    CommitWindowClosed,
    InvalidScoreFunctionId,
    NodeAlreadySubmittedCommit,
    NodeNotRegistered,
)
from .scoring import (
    ScoreFunction,
    calculate_linear_sum_score,
    calculate_log2pldsf_score,
)
from .sharding import NeighborhoodProof, compute_ring_distance

if TYPE_CHECKING:
    from ..identity.registry import IdentityRegistry
    from .agreements import AgreementStore, ServiceAgreement
    from .market import MarketState
    from .sharding import ShardingTable

logger = logging.getLogger("dkgincentives.protocol.commits")

NIL = -1


# ============================================================================
# RANKED LIST
# ============================================================================

@dataclass
class CommitEntry:
    """One ranked commit; prev/next are slot indices (NIL at the ends)."""
    identity_id: int
    score: int
    submitted_at: int = 0
    prev: int = NIL
    next: int = NIL

    def to_dict(self) -> dict:
        return {"identity_id": self.identity_id, "score": self.score, "submitted_at": self.submitted_at}


class RankedCommitList:
    """
    Descending-score list with bounded length.

    Entries with equal scores keep submission order.
    """

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError(f"Capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._slots: List[Optional[CommitEntry]] = []
        self._free: List[int] = []
        self._index: Dict[int, int] = {}
        self.head = NIL
        self.tail = NIL

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, identity_id: int) -> bool:
        return identity_id in self._index

    def __iter__(self) -> Iterator[CommitEntry]:
        slot = self.head
        while slot != NIL:
            entry = self._slots[slot]
            yield entry
            slot = entry.next

    def _allocate(self, entry: CommitEntry) -> int:
        if self._free:
            slot = self._free.pop()
            self._slots[slot] = entry
        else:
            slot = len(self._slots)
            self._slots.append(entry)
        self._index[entry.identity_id] = slot
        return slot

    def _unlink(self, slot: int) -> CommitEntry:
        entry = self._slots[slot]
        if entry.prev != NIL:
            self._slots[entry.prev].next = entry.next
        else:
            self.head = entry.next
        if entry.next != NIL:
            self._slots[entry.next].prev = entry.prev
        else:
            self.tail = entry.prev
        self._slots[slot] = None
        self._free.append(slot)
        del self._index[entry.identity_id]
        entry.prev = entry.next = NIL
        return entry

    def would_accept(self, score: int) -> bool:
        """True if a new entry with this score would survive eviction."""
        if len(self._index) < self.capacity:
            return True
        return score > self._slots[self.tail].score

    def insert(self, identity_id: int, score: int, submitted_at: int = 0) -> Optional[CommitEntry]:
        """
        Insert in rank order, evicting the tail if over capacity.

        Returns:
            The evicted entry (possibly the new one itself), or None
        """
        if identity_id in self._index:
            raise ValueError(f"Node {identity_id} already in ranked list")

        entry = CommitEntry(identity_id=identity_id, score=score, submitted_at=submitted_at)
        slot = self._allocate(entry)

        # First entry with a strictly lower score
        cursor = self.head
        while cursor != NIL and self._slots[cursor].score >= score:
            cursor = self._slots[cursor].next

        if cursor == NIL:
            entry.prev = self.tail
            if self.tail != NIL:
                self._slots[self.tail].next = slot
            else:
                self.head = slot
            self.tail = slot
        else:
            before = self._slots[cursor].prev
            entry.prev = before
            entry.next = cursor
            self._slots[cursor].prev = slot
            if before != NIL:
                self._slots[before].next = slot
            else:
                self.head = slot

        if len(self._index) > self.capacity:
            return self._unlink(self.tail)
        return None

    def remove(self, identity_id: int) -> Optional[CommitEntry]:
        slot = self._index.get(identity_id)
        if slot is None:
            return None
        return self._unlink(slot)

    def get(self, identity_id: int) -> Optional[CommitEntry]:
        slot = self._index.get(identity_id)
        return self._slots[slot] if slot is not None else None

    def top(self, limit: Optional[int] = None) -> List[CommitEntry]:
        result = []
        for entry in self:
            if limit is not None and len(result) >= limit:
                break
            result.append(entry)
        return result

    def rank_of(self, identity_id: int) -> Optional[int]:
        """Zero-based rank, or None if not listed."""
        if identity_id not in self._index:
            return None
        for rank, entry in enumerate(self):
            if entry.identity_id == identity_id:
                return rank
        return None


# ============================================================================
# COMMIT MANAGER
# ============================================================================

@dataclass
class CommitReceipt:
    """Result of a successful commit submission."""
    agreement_id: str
    epoch: int
    identity_id: int
    score: int
    rank: Optional[int]
    evicted_identity_id: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


class NeighborhoodCommitManager:
    """
    Ranks commits per (agreement, epoch).

    Usage:
        manager = NeighborhoodCommitManager(params, agreements, market, sharding, identities)
        if manager.is_commit_window_open(agreement_id, epoch):
            score = manager.submit_commit(agreement_id, epoch, identity_id)
        top = manager.get_top_commits(agreement_id, epoch)
    """

    def __init__(
        self,
        params: ProtocolParameters,
        agreements: "AgreementStore",
        market: "MarketState",
        sharding: "ShardingTable",
        identities: "IdentityRegistry",
        clock: Optional[Callable[[], float]] = None,
        lock: Optional[threading.RLock] = None,
    ):
        self.params = params
        self.agreements = agreements
        self.market = market
        self.sharding = sharding
        self.identities = identities
        self._clock = clock or time.time
        self._lock = lock or threading.RLock()

        self._lists: Dict[Tuple[str, int], RankedCommitList] = {}
        self._submitted: Dict[Tuple[str, int], Set[int]] = {}

        # Callbacks
        self._on_commit: List[Callable[[CommitReceipt], None]] = []

        # Counters
        self.commits_accepted = 0
        self.commits_evicted = 0

    def on_commit(self, callback: Callable[[CommitReceipt], None]) -> None:
        """Register callback for accepted commits."""
        self._on_commit.append(callback)

    def _now(self) -> int:
        return int(self._clock())

    # ------------------------------------------------------------------
    # Windows
    # ------------------------------------------------------------------

    def is_commit_window_open(self, agreement_id: str, epoch: int) -> bool:
        agreement = self.agreements.get(agreement_id)
        if not agreement.is_epoch_in_range(epoch):
            return False
        window_open, window_close = agreement.commit_window(epoch, self.params.commit_window_duration_perc)
        return window_open <= self._now() <= window_close

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit_commit(
        self,
        agreement_id: str,
        epoch: int,
        identity_id: int,
        neighborhood_proof: Optional[NeighborhoodProof] = None,
        score_function_id: Optional[int] = None,
    ) -> int:
        """
        Score and rank a node's commit.

        Args:
            agreement_id: Agreement to commit to
            epoch: Agreement epoch (0-based)
            identity_id: Committing node
            neighborhood_proof: Index proof (score function 2); built from
                the table when omitted
            score_function_id: Mode the caller expects; must match the agreement

        Returns:
            The commit score

        Raises:
            InvalidScoreFunctionId, AgreementExpired, CommitWindowClosed,
            NodeAlreadySubmittedCommit, NodeNotRegistered,
            NodeNotInNeighborhood, InvalidNeighborhoodProof
        """
        with self._lock:
            agreement = self.agreements.get(agreement_id)
            mode = ScoreFunction.parse(agreement.score_function_id)
            if mode is None:
                raise InvalidScoreFunctionId(agreement_id, None, agreement.score_function_id)
            if score_function_id is not None and score_function_id != agreement.score_function_id:
                raise InvalidScoreFunctionId(agreement_id, agreement.score_function_id, score_function_id)

            if not agreement.is_epoch_in_range(epoch):
                raise AgreementExpired(
                    f"Agreement {agreement_id} has {agreement.epochs_number} epochs, got epoch {epoch}"
                )

            now = self._now()
            window_open, window_close = agreement.commit_window(epoch, self.params.commit_window_duration_perc)
            if not window_open <= now <= window_close:
                logger.warning(f"Commit from node {identity_id} rejected: window closed for {agreement_id}/{epoch}")
                raise CommitWindowClosed(agreement_id, epoch, window_open, window_close, now)

            key = (agreement_id, epoch)
            if identity_id in self._submitted.get(key, ()):
                raise NodeAlreadySubmittedCommit(agreement_id, epoch, identity_id)

            if mode == ScoreFunction.LINEAR_SUM:
                score = self._linear_sum_score(agreement, identity_id, neighborhood_proof)
            else:
                score = self._log2pldsf_score(agreement, identity_id)

            # All checks passed; write
            ranked = self._lists.get(key)
            if ranked is None:
                ranked = RankedCommitList(self.params.r1)
                self._lists[key] = ranked
            self._submitted.setdefault(key, set()).add(identity_id)

            evicted = ranked.insert(identity_id, score, submitted_at=now)
            self.commits_accepted += 1
            if evicted is not None:
                self.commits_evicted += 1
                logger.debug(f"Evicted node {evicted.identity_id} (score {evicted.score}) from {agreement_id}/{epoch}")

            receipt = CommitReceipt(
                agreement_id=agreement_id,
                epoch=epoch,
                identity_id=identity_id,
                score=score,
                rank=ranked.rank_of(identity_id),
                evicted_identity_id=evicted.identity_id if evicted else None,
            )
            logger.debug(f"Commit {agreement_id}/{epoch} node {identity_id} score {score} rank {receipt.rank}")

        for callback in self._on_commit:
            try:
                callback(receipt)
            except Exception as e:
                logger.error(f"Commit callback error: {e}")

        return score

    def _linear_sum_score(
        self,
        agreement: "ServiceAgreement",
        identity_id: int,
        proof: Optional[NeighborhoodProof],
    ) -> int:
        if identity_id not in self.sharding:
            raise NodeNotRegistered(f"Node {identity_id} is not in the sharding table")
        r2 = self.params.r2
        if proof is None:
            proof = self.sharding.get_neighborhood_proof(agreement.key_hash, r2)
        max_distance = self.sharding.verify_neighborhood_proof(agreement.key_hash, identity_id, proof, r2)

        distance = compute_ring_distance(self.identities.ring_position(identity_id), agreement.key_hash)
        return calculate_linear_sum_score(
            distance=distance,
            stake=self.market.get_node_stake(identity_id),
            max_neighborhood_distance=max_distance,
            r2=r2,
            nodes_count=len(self.sharding),
            minimum_stake=self.params.minimum_stake,
            maximum_stake=self.params.maximum_stake,
            params=self.params.linear_sum,
        )

    def _log2pldsf_score(self, agreement: "ServiceAgreement", identity_id: int) -> int:
        if not self.identities.exists(identity_id):
            raise NodeNotRegistered(f"Node {identity_id} is not registered")
        distance = compute_ring_distance(self.identities.ring_position(identity_id), agreement.key_hash)
        stake = self.market.get_node_stake(identity_id) if self.market.has_node(identity_id) else 0
        return calculate_log2pldsf_score(distance, stake, self.params.maximum_stake, self.params.log2pldsf)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_top_commits(self, agreement_id: str, epoch: int, limit: Optional[int] = None) -> List[CommitEntry]:
        """Highest-ranked commits; limit defaults to r0."""
        ranked = self._lists.get((agreement_id, epoch))
        if ranked is None:
            return []
        return ranked.top(self.params.r0 if limit is None else limit)

    def get_commit(self, agreement_id: str, epoch: int, identity_id: int) -> Optional[CommitEntry]:
        ranked = self._lists.get((agreement_id, epoch))
        return ranked.get(identity_id) if ranked else None

    def get_rank(self, agreement_id: str, epoch: int, identity_id: int) -> Optional[int]:
        ranked = self._lists.get((agreement_id, epoch))
        return ranked.rank_of(identity_id) if ranked else None

    def has_committed(self, agreement_id: str, epoch: int, identity_id: int) -> bool:
        return identity_id in self._submitted.get((agreement_id, epoch), ())

    def is_awarded(self, agreement_id: str, epoch: int, identity_id: int) -> bool:
        """True if the node is within the top r0 commits."""
        rank = self.get_rank(agreement_id, epoch, identity_id)
        return rank is not None and rank < self.params.r0

    def clear_epoch(self, agreement_id: str, epoch: int) -> None:
        with self._lock:
            self._lists.pop((agreement_id, epoch), None)
            self._submitted.pop((agreement_id, epoch), None)

    def clear_agreement(self, agreement_id: str) -> None:
        with self._lock:
            for key in [k for k in self._lists if k[0] == agreement_id]:
                del self._lists[key]
            for key in [k for k in self._submitted if k[0] == agreement_id]:
                del self._submitted[key]
