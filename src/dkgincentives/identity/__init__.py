"""
dkgincentives/identity/

Node identity registry - maps identity ids to ring positions and admins.
"""

from .registry import IdentityRegistry, NodeIdentity, compute_ring_position

__all__ = ["IdentityRegistry", "NodeIdentity", "compute_ring_position"]
