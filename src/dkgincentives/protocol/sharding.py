"""
dkgincentives/protocol/sharding.py

Hash-ring topology.

Nodes with at least the minimum stake sit in a sharding table sorted by
ring position (SHA-256 of the node id). A content key's neighborhood is the
K nodes closest to the key hash by wraparound distance; equal distances
are ordered by ascending identity id.

Because the K nearest points to a key always form one contiguous arc of
the sorted ring, a neighborhood can be proved with three indices (closest
node, left edge, right edge) and verified in constant time.
"""

import bisect
import logging
import threading
from dataclasses import dataclass, asdict
from typing import List, Optional, Set, Tuple, TYPE_CHECKING

from ..config import HASH_RING_SIZE
from ..errors import (
    InvalidNeighborhoodProof,
    NodeNotInNeighborhood,
    NodeNotRegistered,
    ShardingTableIsFull,
)

if TYPE_CHECKING:
    from ..identity.registry import IdentityRegistry

logger = logging.getLogger("dkgincentives.protocol.sharding")


def compute_ring_distance(a: int, b: int, ring_size: int = HASH_RING_SIZE) -> int:
    """Wraparound distance between two ring positions."""
    direct = a - b if a >= b else b - a
    return min(direct, ring_size - direct)


# ============================================================================
# DATA CLASSES
# ============================================================================

@dataclass(frozen=True)
class NeighborhoodProof:
    """Indices into the position-sorted sharding table."""
    closest_index: int
    left_edge_index: int
    right_edge_index: int

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "NeighborhoodProof":
        return cls(
            closest_index=int(data["closest_index"]),
            left_edge_index=int(data["left_edge_index"]),
            right_edge_index=int(data["right_edge_index"]),
        )


@dataclass(frozen=True)
class NeighborEntry:
    """A node selected into a neighborhood."""
    identity_id: int
    ring_position: int
    distance: int


# ============================================================================
# SHARDING TABLE
# ============================================================================

class ShardingTable:
    """
    Position-sorted table of nodes eligible for neighborhoods.

    Usage:
        table = ShardingTable(registry, size_limit=500)
        table.insert(identity_id)
        neighbors = table.select_neighborhood(key_hash, 20)
        proof = table.get_neighborhood_proof(key_hash, 20)
    """

    def __init__(
        self,
        identities: "IdentityRegistry",
        size_limit: int = 500,
        lock: Optional[threading.RLock] = None,
    ):
        self.identities = identities
        self.size_limit = size_limit
        self._lock = lock or threading.RLock()
        self._entries: List[Tuple[int, int]] = []      # (ring_position, identity_id)
        self._members: Set[int] = set()

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def can_insert(self, identity_id: int) -> bool:
        return identity_id in self._members or len(self._entries) < self.size_limit

    def insert(self, identity_id: int) -> None:
        with self._lock:
            if identity_id in self._members:
                return
            if len(self._entries) >= self.size_limit:
                raise ShardingTableIsFull(
                    f"Sharding table is full ({self.size_limit}), cannot insert node {identity_id}"
                )
            position = self.identities.ring_position(identity_id)
            bisect.insort(self._entries, (position, identity_id))
            self._members.add(identity_id)
            logger.debug(f"Node {identity_id} inserted into sharding table ({len(self._entries)} nodes)")

    def remove(self, identity_id: int) -> None:
        with self._lock:
            if identity_id not in self._members:
                return
            position = self.identities.ring_position(identity_id)
            index = bisect.bisect_left(self._entries, (position, identity_id))
            del self._entries[index]
            self._members.discard(identity_id)
            logger.debug(f"Node {identity_id} removed from sharding table ({len(self._entries)} nodes)")

    def on_threshold_crossed(self, identity_id: int, above_minimum: bool) -> None:
        """
        Market-state callback keeping membership in sync with stake.

        Deposits are refused up front when the table is full, but a reward
        credit can still lift a node over the minimum; such a node stays
        staked and simply isn't listed.
        """
        if not above_minimum:
            self.remove(identity_id)
            return
        try:
            self.insert(identity_id)
        except ShardingTableIsFull as e:
            logger.warning(f"{e}; node {identity_id} left out of the sharding table")

    def __contains__(self, identity_id: int) -> bool:
        return identity_id in self._members

    def __len__(self) -> int:
        return len(self._entries)

    def nodes(self) -> List[Tuple[int, int]]:
        """(ring_position, identity_id) pairs in ring order."""
        return list(self._entries)

    def index_of(self, identity_id: int) -> int:
        if identity_id not in self._members:
            raise NodeNotRegistered(f"Node {identity_id} is not in the sharding table")
        position = self.identities.ring_position(identity_id)
        return bisect.bisect_left(self._entries, (position, identity_id))

    # ------------------------------------------------------------------
    # Neighborhoods
    # ------------------------------------------------------------------

    def _rank_key(self, index: int, key_hash: int) -> Tuple[int, int]:
        position, identity_id = self._entries[index]
        return compute_ring_distance(position, key_hash), identity_id

    def _entry(self, index: int, key_hash: int) -> NeighborEntry:
        position, identity_id = self._entries[index]
        return NeighborEntry(identity_id, position, compute_ring_distance(position, key_hash))

    def _walk(self, key_hash: int, k: int) -> Tuple[List[int], int, int]:
        """
        Expand outwards from the key's insertion point.

        Returns:
            (selected indices nearest-first, taken on the left, taken on the right)
        """
        n = len(self._entries)
        start = bisect.bisect_left(self._entries, (key_hash, -1))
        taken_left = 0
        taken_right = 0
        selected = []
        while len(selected) < k:
            right = (start + taken_right) % n
            left = (start - 1 - taken_left) % n
            if self._rank_key(right, key_hash) <= self._rank_key(left, key_hash):
                selected.append(right)
                taken_right += 1
            else:
                selected.append(left)
                taken_left += 1
        return selected, taken_left, taken_right

    def select_neighborhood(self, key_hash: int, k: int) -> List[NeighborEntry]:
        """The k nodes closest to key_hash, nearest first."""
        with self._lock:
            n = len(self._entries)
            if n <= k:
                ranked = sorted(range(n), key=lambda i: self._rank_key(i, key_hash))
                return [self._entry(i, key_hash) for i in ranked]
            selected, _, _ = self._walk(key_hash, k)
            return [self._entry(i, key_hash) for i in selected]

    def get_neighborhood_proof(self, key_hash: int, k: int) -> NeighborhoodProof:
        """Build the index proof a node submits alongside its commit."""
        with self._lock:
            n = len(self._entries)
            if n == 0:
                raise NodeNotRegistered("Sharding table is empty")
            if n <= k:
                ranked = sorted(range(n), key=lambda i: self._rank_key(i, key_hash))
                return NeighborhoodProof(ranked[0], 0, n - 1)
            selected, taken_left, taken_right = self._walk(key_hash, k)
            start = bisect.bisect_left(self._entries, (key_hash, -1))
            return NeighborhoodProof(
                closest_index=selected[0],
                left_edge_index=(start - taken_left) % n,
                right_edge_index=(start + taken_right - 1) % n,
            )

    def verify_neighborhood_proof(
        self,
        key_hash: int,
        identity_id: int,
        proof: NeighborhoodProof,
        k: int,
    ) -> int:
        """
        Check that identity_id is in the neighborhood described by proof.

        Returns:
            Maximum distance from key_hash to any node in the neighborhood

        Raises:
            NodeNotRegistered: node not in the sharding table
            InvalidNeighborhoodProof: indices don't describe the k nearest nodes
            NodeNotInNeighborhood: valid neighborhood, node outside it
        """
        with self._lock:
            index = self.index_of(identity_id)
            n = len(self._entries)

            if n <= k:
                return max(self._rank_key(i, key_hash)[0] for i in range(n))

            for name, value in asdict(proof).items():
                if not 0 <= value < n:
                    raise InvalidNeighborhoodProof(f"{name}={value} outside table of {n} nodes")

            left = proof.left_edge_index
            right = proof.right_edge_index
            span = (right - left) % n
            if span + 1 != k:
                raise InvalidNeighborhoodProof(f"Neighborhood spans {span + 1} nodes, expected {k}")

            # Key must fall inside the arc or in one of its two boundary gaps
            start = bisect.bisect_left(self._entries, (key_hash, -1)) % n
            if (start - left) % n > span + 1:
                raise InvalidNeighborhoodProof("Key hash lies outside the claimed neighborhood")

            closest = proof.closest_index
            if (closest - left) % n > span:
                raise InvalidNeighborhoodProof("Closest node lies outside the neighborhood")
            closest_key = self._rank_key(closest, key_hash)
            if (self._rank_key((start - 1) % n, key_hash) < closest_key
                    or self._rank_key(start, key_hash) < closest_key):
                raise InvalidNeighborhoodProof("Claimed closest node is not the closest")

            left_key = self._rank_key(left, key_hash)
            right_key = self._rank_key(right, key_hash)
            farthest = max(left_key, right_key)
            if (self._rank_key((left - 1) % n, key_hash) < farthest
                    or self._rank_key((right + 1) % n, key_hash) < farthest):
                raise InvalidNeighborhoodProof("A node outside the neighborhood is closer than its edge")

            if (index - left) % n > span:
                raise NodeNotInNeighborhood(identity_id, f"index {index} outside [{left}, {right}]")

            return farthest[0]
