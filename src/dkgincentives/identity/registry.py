"""
dkgincentives/identity/registry.py

Node identity registry.

Resolves an identity id to the node's ring position (SHA-256 of its public
node id) and authorizes privileged calls against the profile admin.
Identities are never deleted.
"""

import hashlib
import logging
import threading
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional

from ..errors import OnlyProfileAdminFunction, ProfileAlreadyExists, ProfileDoesntExist

logger = logging.getLogger("dkgincentives.identity")


def compute_ring_position(node_id: bytes) -> int:
    """Position of a node on the hash ring."""
    return int.from_bytes(hashlib.sha256(node_id).digest(), "big")


@dataclass
class NodeIdentity:
    """Registered node."""
    identity_id: int
    node_id: bytes              # Public node identifier (e.g. libp2p peer id bytes)
    admin: str                  # Admin wallet address
    name: str = ""
    ring_position: int = 0

    def __post_init__(self):
        if self.ring_position == 0:
            self.ring_position = compute_ring_position(self.node_id)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        data = asdict(self)
        data["node_id"] = self.node_id.hex()
        return data


class IdentityRegistry:
    """
    In-memory identity registry.

    Usage:
        registry = IdentityRegistry()
        identity_id = registry.register(b"node-public-id", admin="0xAdmin")
        position = registry.ring_position(identity_id)
    """

    def __init__(self, lock: Optional[threading.RLock] = None):
        self._lock = lock or threading.RLock()
        self._identities: Dict[int, NodeIdentity] = {}
        self._by_node_id: Dict[bytes, int] = {}
        self._next_id = 1

    def register(self, node_id: bytes, admin: str, name: str = "") -> int:
        """
        Register a node and return its identity id.

        Raises:
            ProfileAlreadyExists: node id already registered
            ValueError: empty node id or admin
        """
        if not node_id:
            raise ValueError("Node id must not be empty")
        if not admin:
            raise ValueError("Admin address must not be empty")
        with self._lock:
            if node_id in self._by_node_id:
                raise ProfileAlreadyExists(
                    f"Node id {node_id.hex()} already registered as {self._by_node_id[node_id]}"
                )
            identity_id = self._next_id
            self._next_id += 1
            identity = NodeIdentity(identity_id=identity_id, node_id=node_id, admin=admin, name=name)
            self._identities[identity_id] = identity
            self._by_node_id[node_id] = identity_id
            logger.info(f"Registered node {identity_id} ({name or node_id.hex()[:16]})")
            return identity_id

    def exists(self, identity_id: int) -> bool:
        return identity_id in self._identities

    def get(self, identity_id: int) -> NodeIdentity:
        identity = self._identities.get(identity_id)
        if identity is None:
            raise ProfileDoesntExist(identity_id)
        return identity

    def get_identity_id(self, node_id: bytes) -> Optional[int]:
        return self._by_node_id.get(node_id)

    def ring_position(self, identity_id: int) -> int:
        return self.get(identity_id).ring_position

    def is_admin(self, identity_id: int, caller: str) -> bool:
        return self.get(identity_id).admin == caller

    def require_admin(self, identity_id: int, caller: str) -> None:
        """Raise OnlyProfileAdminFunction unless caller is the profile admin."""
        if not self.is_admin(identity_id, caller):
            raise OnlyProfileAdminFunction(identity_id, caller)

    def identity_ids(self) -> List[int]:
        return sorted(self._identities)

    def __len__(self) -> int:
        return len(self._identities)
