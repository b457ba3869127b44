"""
dkgincentives/blockchain/

Hashing primitives used for content-possession proofs.
"""

from .merkle import MerkleTree, hash_chunk, hash_pair, tree_depth

__all__ = ["MerkleTree", "hash_chunk", "hash_pair", "tree_depth"]
