"""
Tests for dkgincentives/protocol/sharding.py

Tests sharding table membership, neighborhood selection and index proofs.
"""

import itertools

import pytest
from unittest.mock import Mock

from dkgincentives.config import HASH_RING_SIZE
from dkgincentives.errors import (
    InvalidNeighborhoodProof,
    NodeNotInNeighborhood,
    NodeNotRegistered,
    ShardingTableIsFull,
)
from dkgincentives.protocol.sharding import NeighborhoodProof, ShardingTable, compute_ring_distance


# ============================================================================
# TEST DATA
# ============================================================================

def create_test_identities(positions: dict) -> Mock:
    """Identity registry stub resolving ids to fixed ring positions."""
    identities = Mock()
    identities.ring_position.side_effect = positions.__getitem__
    return identities


def create_test_table(positions: dict, size_limit: int = 500) -> ShardingTable:
    """Create a sharding table holding every node in positions."""
    table = ShardingTable(create_test_identities(positions), size_limit=size_limit)
    for identity_id in positions:
        table.insert(identity_id)
    return table


LINE = {1: 100, 2: 200, 3: 300, 4: 400, 5: 500}


# ============================================================================
# MEMBERSHIP TESTS
# ============================================================================

class TestMembership:
    """Tests for sharding table membership."""

    def test_sorted_by_position(self):
        """Test that entries are kept in ring order."""
        table = create_test_table({3: 30, 1: 10, 2: 20})
        assert table.nodes() == [(10, 1), (20, 2), (30, 3)]
        assert table.index_of(2) == 1
        assert len(table) == 3

    def test_insert_is_idempotent(self):
        """Test that inserting twice keeps one entry."""
        table = create_test_table({1: 10})
        table.insert(1)
        assert len(table) == 1

    def test_remove(self):
        """Test removal and unknown lookups."""
        table = create_test_table({1: 10, 2: 20})
        table.remove(1)
        assert 1 not in table
        assert table.nodes() == [(20, 2)]
        table.remove(1)
        with pytest.raises(NodeNotRegistered):
            table.index_of(1)

    def test_size_limit(self):
        """Test that a full table refuses new nodes."""
        table = create_test_table({1: 10}, size_limit=1)
        table.identities.ring_position.side_effect = {1: 10, 2: 20}.__getitem__
        assert not table.can_insert(2)
        assert table.can_insert(1)
        with pytest.raises(ShardingTableIsFull):
            table.insert(2)

    def test_threshold_callback(self):
        """Test membership driven by stake crossings."""
        table = ShardingTable(create_test_identities({1: 10, 2: 20}), size_limit=1)
        table.on_threshold_crossed(1, True)
        assert 1 in table

        # Full table: node stays unlisted, no exception
        table.on_threshold_crossed(2, True)
        assert 2 not in table

        table.on_threshold_crossed(1, False)
        assert 1 not in table


# ============================================================================
# NEIGHBORHOOD TESTS
# ============================================================================

class TestNeighborhood:
    """Tests for neighborhood selection."""

    def test_ring_distance_wraps(self):
        """Test wraparound distance."""
        assert compute_ring_distance(10, 20, 100) == 10
        assert compute_ring_distance(5, 95, 100) == 10
        assert compute_ring_distance(HASH_RING_SIZE - 10, 0) == 10

    def test_select_nearest(self):
        """Test selection of the k nearest nodes, nearest first."""
        table = create_test_table(LINE)
        neighbors = table.select_neighborhood(310, 3)
        assert [n.identity_id for n in neighbors] == [3, 4, 2]
        assert [n.distance for n in neighbors] == [10, 90, 110]

    def test_select_across_wrap(self):
        """Test a neighborhood spanning the end of the ring."""
        table = create_test_table({1: HASH_RING_SIZE - 10, 2: 5, 3: 1000, 4: 10 ** 6})
        neighbors = table.select_neighborhood(0, 2)
        assert [n.identity_id for n in neighbors] == [2, 1]

    def test_ties_break_by_identity_id(self):
        """Test equal distances ordered by ascending identity id."""
        table = create_test_table({2: 110, 1: 90, 3: 5000})
        neighbors = table.select_neighborhood(100, 1)
        assert neighbors[0].identity_id == 1

    def test_ties_ignore_insertion_order(self):
        """Test tied selections are the same for every insertion order and every call."""
        positions = {1: 90, 2: 110, 3: 5000, 4: 200, 5: 0}
        expected = [(1, 10), (2, 10), (4, 100), (5, 100)]
        for order in itertools.permutations(positions):
            table = create_test_table({identity_id: positions[identity_id] for identity_id in order})
            for _ in range(2):
                neighbors = table.select_neighborhood(100, 4)
                assert [(n.identity_id, n.distance) for n in neighbors] == expected
            assert table.get_neighborhood_proof(100, 4) == table.get_neighborhood_proof(100, 4)

    def test_small_table_returns_everyone(self):
        """Test n <= k returns all nodes sorted by distance."""
        table = create_test_table({1: 100, 2: 200})
        neighbors = table.select_neighborhood(190, 20)
        assert [n.identity_id for n in neighbors] == [2, 1]


# ============================================================================
# PROOF TESTS
# ============================================================================

class TestNeighborhoodProof:
    """Tests for neighborhood index proofs."""

    def test_proof_round_trip(self):
        """Test that a generated proof verifies for every member."""
        table = create_test_table(LINE)
        proof = table.get_neighborhood_proof(310, 3)
        assert proof == NeighborhoodProof(closest_index=2, left_edge_index=1, right_edge_index=3)
        for identity_id in (2, 3, 4):
            assert table.verify_neighborhood_proof(310, identity_id, proof, 3) == 110

    def test_member_outside_neighborhood(self):
        """Test a valid proof presented by a node outside it."""
        table = create_test_table(LINE)
        proof = table.get_neighborhood_proof(310, 3)
        with pytest.raises(NodeNotInNeighborhood):
            table.verify_neighborhood_proof(310, 5, proof, 3)

    def test_shifted_arc_rejected(self):
        """Test an arc that skips a closer node."""
        table = create_test_table(LINE)
        with pytest.raises(InvalidNeighborhoodProof):
            table.verify_neighborhood_proof(310, 4, NeighborhoodProof(2, 2, 4), 3)

    def test_wrong_span_rejected(self):
        """Test an arc of the wrong size."""
        table = create_test_table(LINE)
        with pytest.raises(InvalidNeighborhoodProof):
            table.verify_neighborhood_proof(310, 3, NeighborhoodProof(2, 1, 4), 3)

    def test_wrong_closest_rejected(self):
        """Test a proof naming the wrong closest node."""
        table = create_test_table(LINE)
        with pytest.raises(InvalidNeighborhoodProof):
            table.verify_neighborhood_proof(310, 3, NeighborhoodProof(1, 1, 3), 3)

    def test_index_out_of_range(self):
        """Test indices outside the table."""
        table = create_test_table(LINE)
        with pytest.raises(InvalidNeighborhoodProof):
            table.verify_neighborhood_proof(310, 3, NeighborhoodProof(2, 1, 7), 3)

    def test_wraparound_proof(self):
        """Test a proof whose arc crosses the end of the ring."""
        table = create_test_table({1: HASH_RING_SIZE - 10, 2: 5, 3: 1000, 4: 10 ** 6})
        proof = table.get_neighborhood_proof(0, 2)
        assert proof == NeighborhoodProof(closest_index=0, left_edge_index=3, right_edge_index=0)
        assert table.verify_neighborhood_proof(0, 1, proof, 2) == 10
        assert table.verify_neighborhood_proof(0, 2, proof, 2) == 10

    def test_small_table_needs_no_indices(self):
        """Test n <= k returns the maximum distance of the whole table."""
        table = create_test_table({1: 100, 2: 200})
        proof = table.get_neighborhood_proof(190, 20)
        assert proof == NeighborhoodProof(1, 0, 1)
        assert table.verify_neighborhood_proof(190, 1, proof, 20) == 90

    def test_proof_serialization(self):
        """Test proof dict round trip."""
        proof = NeighborhoodProof(2, 1, 3)
        assert NeighborhoodProof.from_dict(proof.to_dict()) == proof

    def test_empty_table(self):
        """Test proofs on an empty table."""
        table = ShardingTable(create_test_identities({}))
        with pytest.raises(NodeNotRegistered):
            table.get_neighborhood_proof(0, 3)
