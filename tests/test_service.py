"""
Tests for dkgincentives/service.py

Tests the trio front end: event publishing, publish failure handling and
the epoch ticker.
"""

import pytest
import trio
from trio.testing import MockClock
from unittest.mock import AsyncMock, Mock

from dkgincentives.blockchain.merkle import MerkleTree
from dkgincentives.chronos import ManualClock
from dkgincentives.config import TOKEN, ProtocolParameters
from dkgincentives.engine import IncentivesEngine
from dkgincentives.protocol.messages import deserialize_message
from dkgincentives.protocol.proofs import ProofReceipt
from dkgincentives.service import (
    COMMITS_TOPIC,
    EPOCHS_TOPIC,
    POOLS_TOPIC,
    PROOFS_TOPIC,
    STAKING_TOPIC,
    IncentivesService,
)


# ============================================================================
# TEST DATA
# ============================================================================

START = 1_700_000_000
EPOCH = 3600
STAKE = 100_000 * TOKEN
ASSET_STORAGE = "0x" + "44" * 20
CHUNKS = [f"service-chunk-{i}".encode() for i in range(4)]
TREE = MerkleTree.from_chunks(CHUNKS)


def create_test_peers(fail: bool = False) -> Mock:
    """Publisher stub with an async broadcast."""
    peers = Mock()
    if fail:
        peers.broadcast = AsyncMock(side_effect=RuntimeError("network down"))
    else:
        peers.broadcast = AsyncMock()
    return peers


def create_test_service(peers=None, clock=None):
    """Create a service around a fresh engine starting at START."""
    clock = clock or ManualClock(START)
    engine = IncentivesEngine(
        ProtocolParameters(),
        start_time=START,
        clock=clock,
        beacon=lambda: b"\x04" * 32,
    )
    return IncentivesService(engine, peers), clock


def published(peers: Mock):
    """(topic, event) pairs broadcast so far."""
    return [
        (call.args[0], deserialize_message(call.args[1]))
        for call in peers.broadcast.await_args_list
    ]


# ============================================================================
# PUBLISHING TESTS
# ============================================================================

class TestPublishing:
    """Tests for ledger events."""

    @pytest.mark.timeout(30)
    def test_deposit_event(self):
        """Test that a deposit publishes a staking event with exact amounts."""
        async def run_test():
            peers = create_test_peers()
            service, _ = create_test_service(peers)
            node = await service.create_profile(b"node-0", "0xAdmin0", 10)
            shares = await service.deposit(node, "0xAdmin0", STAKE)
            assert shares == STAKE

            events = published(peers)
            assert [topic for topic, _ in events] == [STAKING_TOPIC, STAKING_TOPIC]
            profile_event, deposit_event = events[0][1], events[1][1]
            assert profile_event["type"] == "profile_created"
            assert profile_event["data"]["identity_id"] == node
            assert deposit_event["type"] == "stake_deposited"
            assert deposit_event["data"]["amount"] == STAKE
            assert deposit_event["data"]["result"] == STAKE
            assert deposit_event["data"]["delegator"] == "0xAdmin0"
            assert deposit_event["epoch"] == 1
            assert service.events_published == 2

        trio.run(run_test)

    @pytest.mark.timeout(30)
    def test_commit_and_proof_events(self):
        """Test that commits and accepted proofs are published."""
        async def run_test():
            peers = create_test_peers()
            service, clock = create_test_service(peers)
            node = await service.create_profile(b"node-0", "0xAdmin0", 10)
            await service.deposit(node, "0xAdmin0", STAKE)
            agreement = await service.create_agreement(
                ASSET_STORAGE, 1, b"assertion-s",
                epochs_number=1,
                token_amount=900,
                merkle_root=TREE.root,
                chunks_number=len(CHUNKS),
            )

            clock.set(START + 10)
            score = await service.submit_commit(agreement.agreement_id, 0, node)

            clock.set(START + EPOCH // 2)
            challenge = await service.get_challenge(agreement.agreement_id, 0)
            index = challenge.chunk_index
            receipt = await service.send_proof(
                agreement.agreement_id, 0, node, TREE.get_proof(index), TREE.leaves[index]
            )
            assert isinstance(receipt, ProofReceipt)

            events = published(peers)
            topics = [topic for topic, _ in events]
            assert topics[2:] == [POOLS_TOPIC, COMMITS_TOPIC, PROOFS_TOPIC]

            commit_event = events[3][1]
            assert commit_event["data"]["score"] == score
            assert commit_event["data"]["rank"] == 0

            proof_event = events[4][1]
            assert proof_event["type"] == "proof_accepted"
            assert proof_event["data"]["reward"] == receipt.reward
            assert proof_event["data"]["identity_id"] == node

        trio.run(run_test)

    @pytest.mark.timeout(30)
    def test_concurrent_commit_ranks(self):
        """Test that each published commit rank matches the rank at submission."""
        async def run_test():
            peers = create_test_peers()
            service, clock = create_test_service(peers)
            nodes = []
            for i in range(3):
                node = await service.create_profile(f"node-{i}".encode(), f"0xAdmin{i}", 10)
                await service.deposit(node, f"0xAdmin{i}", STAKE * (i + 1))
                nodes.append(node)
            agreement = await service.create_agreement(
                ASSET_STORAGE, 2, b"assertion-c",
                epochs_number=1,
                token_amount=900,
                merkle_root=TREE.root,
                chunks_number=len(CHUNKS),
            )
            receipts = []
            service.on_commit(receipts.append)

            clock.set(START + 10)
            async with trio.open_nursery() as nursery:
                for node in nodes:
                    nursery.start_soon(service.submit_commit, agreement.agreement_id, 0, node)

            commit_events = [event for topic, event in published(peers) if topic == COMMITS_TOPIC]
            assert len(commit_events) == len(receipts) == 3
            published_ranks = {event["data"]["identity_id"]: event["data"]["rank"] for event in commit_events}
            receipt_ranks = {receipt.identity_id: receipt.rank for receipt in receipts}
            assert published_ranks == receipt_ranks

        trio.run(run_test)

    @pytest.mark.timeout(30)
    def test_publish_failure_keeps_change(self):
        """Test that a failing publisher doesn't undo the ledger change."""
        async def run_test():
            peers = create_test_peers(fail=True)
            service, _ = create_test_service(peers)
            node = await service.create_profile(b"node-0", "0xAdmin0", 10)
            await service.deposit(node, "0xAdmin0", STAKE)

            assert service.engine.vault.get_delegator_stake(node, "0xAdmin0") == STAKE
            assert service.publish_failures == 2
            assert service.events_published == 0

        trio.run(run_test)

    @pytest.mark.timeout(30)
    def test_no_peers(self):
        """Test that a service without peers publishes nothing."""
        async def run_test():
            service, _ = create_test_service()
            node = await service.create_profile(b"node-0", "0xAdmin0", 10)
            await service.deposit(node, "0xAdmin0", STAKE)
            assert service.events_published == 0
            assert service.publish_failures == 0

        trio.run(run_test)

    @pytest.mark.timeout(30)
    def test_concurrent_deposits(self):
        """Test that concurrent callers are serialized."""
        async def run_test():
            service, _ = create_test_service()
            node = await service.create_profile(b"node-0", "0xAdmin0", 10)
            async with trio.open_nursery() as nursery:
                for i in range(10):
                    nursery.start_soon(service.deposit, node, f"0xDelegator{i}", 10_000 * TOKEN)

            assert service.engine.market.get_node_stake(node) == 100_000 * TOKEN
            assert len(service.engine.vault.get_delegators(node)) == 10
            service.engine.audit()

        trio.run(run_test)


# ============================================================================
# EPOCH TESTS
# ============================================================================

class TestEpochTicker:
    """Tests for epoch detection and finalization."""

    @pytest.mark.timeout(30)
    def test_tick(self):
        """Test that tick reacts only to a new epoch."""
        async def run_test():
            peers = create_test_peers()
            service, clock = create_test_service(peers)
            epochs = []
            service.on_epoch(epochs.append)
            await service.start()
            assert service.is_started

            assert await service.tick() is None

            clock.set(START + EPOCH)
            assert await service.tick() == 2
            assert await service.tick() is None
            assert epochs == [2]

            topic, event = published(peers)[-1]
            assert topic == EPOCHS_TOPIC
            assert event["data"] == {"epoch": 2, "finalized_through": 1}

            await service.stop()
            assert not service.is_started

        trio.run(run_test)

    @pytest.mark.timeout(30)
    def test_callback_error_is_contained(self):
        """Test that a failing epoch callback doesn't stop the tick."""
        async def run_test():
            service, clock = create_test_service()
            seen = []
            service.on_epoch(Mock(side_effect=RuntimeError("boom")))
            service.on_epoch(seen.append)
            await service.start()

            clock.set(START + 2 * EPOCH)
            assert await service.tick() == 3
            assert seen == [3]

        trio.run(run_test)

    @pytest.mark.timeout(30)
    def test_epoch_loop(self):
        """Test that the background loop fires once per epoch boundary."""
        async def run_test():
            t0 = trio.current_time()
            service, _ = create_test_service(clock=lambda: START + (trio.current_time() - t0))
            epochs = []
            service.on_epoch(epochs.append)

            async with trio.open_nursery() as nursery:
                await service.start(nursery)
                await trio.sleep(3 * EPOCH + EPOCH // 2)
                await service.stop()

            assert epochs == [2, 3, 4]

        trio.run(run_test, clock=MockClock(autojump_threshold=0))
