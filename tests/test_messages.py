"""
Tests for dkgincentives/protocol/messages.py

Tests event serialization of big integers, bytes and other payload types.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from dkgincentives.config import TOKEN, UINT256_MAX
from dkgincentives.protocol.messages import (
    TYPE_MARKER,
    create_event,
    deserialize_message,
    serialize_message,
)
from dkgincentives.protocol.proofs import ProofStatus


# ============================================================================
# TEST DATA
# ============================================================================

class Color(Enum):
    RED = "red"


@dataclass
class Payload:
    amount: int
    owner: str


@dataclass
class PayloadWithDict:
    amount: int

    def to_dict(self) -> dict:
        return {"amount": self.amount, "kind": "custom"}


# ============================================================================
# SERIALIZATION TESTS
# ============================================================================

class TestSerialization:
    """Tests for serialize_message / deserialize_message."""

    def test_big_ints_survive(self):
        """Test integers beyond 2**53 keep their exact value."""
        message = {"stake": 100_000 * TOKEN, "position": UINT256_MAX, "small": 42, "negative": -(2 ** 60)}
        decoded = deserialize_message(serialize_message(message))
        assert decoded == message

        raw = json.loads(serialize_message(message))
        assert raw["stake"] == {TYPE_MARKER: "bigint", "value": str(100_000 * TOKEN)}
        assert raw["small"] == 42

    def test_safe_integer_boundary(self):
        """Test the largest safe integer stays a plain number."""
        raw = json.loads(serialize_message([2 ** 53 - 1, 2 ** 53]))
        assert raw[0] == 2 ** 53 - 1
        assert raw[1][TYPE_MARKER] == "bigint"

    def test_bool_not_converted(self):
        """Test booleans stay booleans."""
        assert deserialize_message(serialize_message({"settled": True})) == {"settled": True}

    def test_bytes_and_sets(self):
        """Test bytes and sets round trip."""
        message = {"node_id": b"\x00\xffnode", "winners": {3, 1, 2}}
        decoded = deserialize_message(serialize_message(message))
        assert decoded["node_id"] == b"\x00\xffnode"
        assert decoded["winners"] == {1, 2, 3}

    def test_datetime(self):
        """Test datetimes round trip."""
        when = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert deserialize_message(serialize_message({"at": when})) == {"at": when}

    def test_enums(self):
        """Test enums serialize to their value."""
        raw = json.loads(serialize_message({"color": Color.RED, "status": ProofStatus.PROVED}))
        assert raw["color"] == "red"
        assert raw["status"] == ProofStatus.PROVED.value

    def test_dataclasses(self):
        """Test dataclasses serialize via to_dict when available."""
        decoded = deserialize_message(serialize_message({
            "plain": Payload(amount=2 ** 70, owner="0xA"),
            "custom": PayloadWithDict(amount=5),
        }))
        assert decoded["plain"] == {"amount": 2 ** 70, "owner": "0xA"}
        assert decoded["custom"] == {"amount": 5, "kind": "custom"}

    def test_unknown_marker(self):
        """Test unknown markers are passed through untouched."""
        data = json.dumps({TYPE_MARKER: "mystery", "value": 1}).encode()
        assert deserialize_message(data) == {TYPE_MARKER: "mystery", "value": 1}


# ============================================================================
# EVENT TESTS
# ============================================================================

class TestCreateEvent:
    """Tests for create_event."""

    def test_fields(self):
        """Test standard event fields."""
        event = create_event("commit_submitted", {"score": 1}, epoch=4, event_id="evt-1")
        assert event["id"] == "evt-1"
        assert event["type"] == "commit_submitted"
        assert event["epoch"] == 4
        assert event["data"] == {"score": 1}
        assert datetime.fromisoformat(event["timestamp"]).tzinfo is not None

    def test_random_ids(self):
        """Test ids are generated when omitted."""
        assert create_event("a", {})["id"] != create_event("a", {})["id"]
