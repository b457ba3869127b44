"""
dkgincentives/protocol/messages.py

Event serialization for publishing ledger changes.

Token amounts and ring positions routinely exceed 2**53, which many JSON
consumers silently round, so integers above that bound travel as decimal
strings with a type marker.
"""

import base64
import json
import logging
import uuid
from dataclasses import is_dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger("dkgincentives.protocol.messages")

TYPE_MARKER = "__dkg_type__"
SAFE_INTEGER_MAX = 2 ** 53 - 1


def serialize_message(message: Any) -> bytes:
    """
    Serialize an event for transmission.

    Handles special types:
    - int beyond 2**53 -> decimal string with marker
    - bytes -> base64 encoded with marker
    - set -> list with marker
    - datetime -> ISO format string
    - dataclasses / Enums -> dict / value

    Args:
        message: Event to serialize (dict, list, or primitive)

    Returns:
        UTF-8 encoded JSON bytes
    """
    return json.dumps(_encode_big_ints(message), cls=IncentivesEncoder).encode("utf-8")


def deserialize_message(data: bytes) -> Any:
    """Inverse of serialize_message."""
    return json.loads(data.decode("utf-8"), object_hook=incentives_decoder)


def _encode_big_ints(obj: Any) -> Any:
    # json.JSONEncoder.default never sees ints, so walk the structure first
    if isinstance(obj, bool):
        return obj
    if isinstance(obj, int) and not isinstance(obj, Enum) and abs(obj) > SAFE_INTEGER_MAX:
        return {TYPE_MARKER: "bigint", "value": str(obj)}
    if isinstance(obj, dict):
        return {key: _encode_big_ints(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_encode_big_ints(value) for value in obj]
    if is_dataclass(obj) and not isinstance(obj, type):
        data = obj.to_dict() if hasattr(obj, "to_dict") else asdict(obj)
        return _encode_big_ints(data)
    return obj


class IncentivesEncoder(json.JSONEncoder):
    """JSON encoder for event payload types."""

    def default(self, obj):
        if isinstance(obj, Enum):
            return obj.value

        if isinstance(obj, datetime):
            return {TYPE_MARKER: "datetime", "value": obj.isoformat()}

        if isinstance(obj, bytes):
            return {TYPE_MARKER: "bytes", "value": base64.b64encode(obj).decode("ascii")}

        if isinstance(obj, (set, frozenset)):
            return {TYPE_MARKER: "set", "value": sorted(obj)}

        return super().default(obj)


def incentives_decoder(obj: dict) -> Any:
    """JSON decoder hook reversing IncentivesEncoder."""
    if TYPE_MARKER not in obj:
        return obj

    type_marker = obj[TYPE_MARKER]

    if type_marker == "bigint":
        return int(obj["value"])

    if type_marker == "datetime":
        return datetime.fromisoformat(obj["value"])

    if type_marker == "bytes":
        return base64.b64decode(obj["value"])

    if type_marker == "set":
        return set(obj["value"])

    logger.warning(f"Unknown type marker in message: {type_marker}")
    return obj


def create_event(
    event_type: str,
    payload: Any,
    epoch: Optional[int] = None,
    event_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Create a standardized ledger event.

    Args:
        event_type: Event name (e.g. "commit_submitted", "proof_accepted")
        payload: Event body (dict or dataclass)
        epoch: Chronos epoch the event belongs to
        event_id: Event id (random UUID when omitted)

    Returns:
        Event dictionary ready for serialization
    """
    return {
        "id": event_id or str(uuid.uuid4()),
        "type": event_type,
        "epoch": epoch,
        "data": payload,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
