"""
dkgincentives/blockchain/merkle.py

Merkle trees over content chunks.

Leaves and nodes are hex SHA-256 digests; a parent is the hash of the two
child hex strings concatenated. An odd node at any level is paired with
itself. Proofs are lists of (direction, sibling_hash) tuples where the
direction names the side the sibling sits on.
"""

import hashlib
import logging
from typing import Iterable, List, Optional, Tuple

logger = logging.getLogger("dkgincentives.blockchain.merkle")

ProofStep = Tuple[str, str]


def hash_chunk(chunk: bytes) -> str:
    """Leaf hash of a raw content chunk."""
    return hashlib.sha256(chunk).hexdigest()


def hash_pair(left: str, right: str) -> str:
    return hashlib.sha256((left + right).encode()).hexdigest()


def tree_depth(leaf_count: int) -> int:
    """Number of proof steps for a tree with leaf_count leaves."""
    if leaf_count <= 0:
        raise ValueError(f"Leaf count must be positive, got {leaf_count}")
    depth = 0
    width = leaf_count
    while width > 1:
        width = (width + 1) // 2
        depth += 1
    return depth


class MerkleTree:
    """
    Build merkle trees and proofs for content chunks.

    Usage:
        tree = MerkleTree.from_chunks([b"chunk-0", b"chunk-1", b"chunk-2"])
        proof = tree.get_proof(1)
        MerkleTree.verify_proof_at_index(tree.leaves[1], tree.root, proof, 1, 3)
    """

    def __init__(self, leaves: Optional[List[str]] = None):
        """
        Initialize MerkleTree.

        Args:
            leaves: List of leaf hashes (hex strings)
        """
        self.leaves = leaves or []
        self.levels: List[List[str]] = []
        self.root: str = ""

        if self.leaves:
            self._build()

    @classmethod
    def from_chunks(cls, chunks: Iterable[bytes]) -> "MerkleTree":
        return cls([hash_chunk(chunk) for chunk in chunks])

    def _build(self) -> None:
        """Build every level bottom-up."""
        current_level = list(self.leaves)
        self.levels = [current_level]

        while len(current_level) > 1:
            next_level = []
            for i in range(0, len(current_level), 2):
                left = current_level[i]
                right = current_level[i + 1] if i + 1 < len(current_level) else left
                next_level.append(hash_pair(left, right))
            self.levels.append(next_level)
            current_level = next_level

        self.root = current_level[0]

    def add_leaf(self, data: bytes) -> str:
        """Hash a chunk, append it as a leaf and rebuild."""
        leaf_hash = hash_chunk(data)
        self.leaves.append(leaf_hash)
        self._build()
        return leaf_hash

    def get_proof(self, leaf_index: int) -> List[ProofStep]:
        """
        Get merkle proof for a leaf.

        Args:
            leaf_index: Index of leaf in leaves list

        Returns:
            List of (direction, sibling_hash) tuples
        """
        if not 0 <= leaf_index < len(self.leaves):
            raise IndexError(f"Leaf index {leaf_index} out of range (0..{len(self.leaves) - 1})")

        proof = []
        idx = leaf_index
        for level in self.levels[:-1]:
            if idx % 2 == 0:
                sibling_idx = idx + 1
                direction = "right"
            else:
                sibling_idx = idx - 1
                direction = "left"

            # Odd tail pairs with itself
            sibling = level[sibling_idx] if sibling_idx < len(level) else level[idx]
            proof.append((direction, sibling))
            idx //= 2

        return proof

    @staticmethod
    def compute_root(leaf_hash: str, proof: List[ProofStep]) -> str:
        current_hash = leaf_hash
        for direction, sibling_hash in proof:
            if direction == "left":
                current_hash = hash_pair(sibling_hash, current_hash)
            elif direction == "right":
                current_hash = hash_pair(current_hash, sibling_hash)
            else:
                raise ValueError(f"Invalid proof direction: {direction!r}")
        return current_hash

    @staticmethod
    def verify_proof(leaf_hash: str, merkle_root: str, proof: List[ProofStep]) -> bool:
        """Verify a proof without regard to leaf position."""
        try:
            return MerkleTree.compute_root(leaf_hash, proof) == merkle_root
        except ValueError:
            return False

    @staticmethod
    def verify_proof_at_index(
        leaf_hash: str,
        merkle_root: str,
        proof: List[ProofStep],
        leaf_index: int,
        leaf_count: int,
    ) -> bool:
        """
        Verify a proof for a specific leaf position.

        The path must have exactly the tree depth and its directions must
        spell out leaf_index, so a valid proof for a different chunk (or for
        an inner node) is rejected.

        Args:
            leaf_hash: Hash of the chunk being proved
            merkle_root: Expected root hash
            proof: List of (direction, sibling_hash) tuples
            leaf_index: Challenged chunk index
            leaf_count: Total number of chunks in the content

        Returns:
            True if proof is valid for that index
        """
        if not 0 <= leaf_index < leaf_count:
            return False
        if len(proof) != tree_depth(leaf_count):
            return False

        idx = leaf_index
        for direction, _ in proof:
            expected = "right" if idx % 2 == 0 else "left"
            if direction != expected:
                return False
            idx //= 2

        return MerkleTree.verify_proof(leaf_hash, merkle_root, proof)
