"""
dkgincentives/protocol/market.py

Stake-weighted market state.

Tracks every node's stake and ask and maintains two aggregates over the
active set (stake >= minimum stake and ask > 0):

    total_active_stake      = sum(stake_i)
    weighted_active_ask_sum = sum(ask_i * stake_i)

Aggregates are never recomputed in normal operation. Each stake or ask
mutation is applied as a single delta between two complete node snapshots
(old stake + old ask, new stake + new ask), so an old ask is never paired
with a new stake or vice versa.
"""

import logging
import threading
from dataclasses import dataclass, asdict
from typing import Callable, Dict, List, Optional, Tuple

from ..config import ProtocolParameters, SCALE18
from ..errors import InvariantViolation, ProfileDoesntExist, ZeroAsk

logger = logging.getLogger("dkgincentives.protocol.market")


# ============================================================================
# DATA CLASSES
# ============================================================================

@dataclass(frozen=True)
class NodeSnapshot:
    """Complete market-relevant state of one node."""
    stake: int = 0
    ask: int = 0

    def is_active(self, minimum_stake: int) -> bool:
        return self.stake >= minimum_stake and self.ask > 0

    def contribution(self, minimum_stake: int) -> Tuple[int, int]:
        """(stake, ask * stake) this node adds to the aggregates."""
        if not self.is_active(minimum_stake):
            return 0, 0
        return self.stake, self.ask * self.stake


@dataclass(frozen=True)
class MarketAggregate:
    """Aggregates over the active node set."""
    total_active_stake: int = 0
    weighted_active_ask_sum: int = 0

    def apply_delta(
        self,
        old: NodeSnapshot,
        new: NodeSnapshot,
        minimum_stake: int,
    ) -> "MarketAggregate":
        """
        Return the aggregate after one node moves from old to new.

        Removes the old contribution if the node was active and adds the new
        one if it is active now. Raises InvariantViolation if removal would
        drive either sum negative.
        """
        old_stake, old_weighted = old.contribution(minimum_stake)
        new_stake, new_weighted = new.contribution(minimum_stake)

        total_stake = self.total_active_stake - old_stake
        weighted_sum = self.weighted_active_ask_sum - old_weighted
        if total_stake < 0 or weighted_sum < 0:
            raise InvariantViolation(
                f"Market aggregate would go negative: stake={total_stake} weighted={weighted_sum} "
                f"(old snapshot {old}, aggregate {self})"
            )

        return MarketAggregate(
            total_active_stake=total_stake + new_stake,
            weighted_active_ask_sum=weighted_sum + new_weighted,
        )

    def average_ask(self) -> int:
        """Stake-weighted average ask, 0 when nothing is active."""
        if self.total_active_stake == 0:
            return 0
        return self.weighted_active_ask_sum // self.total_active_stake

    def to_dict(self) -> dict:
        return asdict(self)


# ============================================================================
# MARKET STATE
# ============================================================================

class MarketState:
    """
    Per-node stake/ask ledger plus the active-set aggregates.

    Stake-threshold listeners are told whenever a node crosses the minimum
    stake in either direction; the sharding table uses this to track
    membership.

    Usage:
        market = MarketState(params)
        market.set_ask(node_id, 10)
        market.set_stake(node_id, 60_000 * TOKEN)
        avg = market.get_stake_weighted_average_ask()
    """

    def __init__(
        self,
        params: Optional[ProtocolParameters] = None,
        lock: Optional[threading.RLock] = None,
    ):
        self.params = params or ProtocolParameters()
        self._lock = lock or threading.RLock()
        self._nodes: Dict[int, NodeSnapshot] = {}
        self._aggregate = MarketAggregate()

        # Callbacks: (identity_id, above_minimum)
        self._on_threshold_crossed: List[Callable[[int, bool], None]] = []

    # ------------------------------------------------------------------
    # Registration / callbacks
    # ------------------------------------------------------------------

    def add_node(self, identity_id: int, ask: int = 0) -> None:
        """Start tracking a node with zero stake."""
        with self._lock:
            if identity_id in self._nodes:
                return
            self._nodes[identity_id] = NodeSnapshot(stake=0, ask=ask)

    def has_node(self, identity_id: int) -> bool:
        return identity_id in self._nodes

    def on_threshold_crossed(self, callback: Callable[[int, bool], None]) -> None:
        """Register callback for minimum-stake crossings."""
        self._on_threshold_crossed.append(callback)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def on_stake_changed(self, identity_id: int, old_stake: int, new_stake: int) -> MarketAggregate:
        """
        Apply a stake change for a node.

        old_stake must equal the stake currently recorded; anything else
        means the caller read a stale snapshot.
        """
        if new_stake < 0:
            raise ValueError(f"Stake cannot be negative: {new_stake}")
        with self._lock:
            current = self._get(identity_id)
            if current.stake != old_stake:
                self._fail(f"Stale stake snapshot for node {identity_id}: {old_stake} != {current.stake}")
            return self._apply(identity_id, current, NodeSnapshot(stake=new_stake, ask=current.ask))

    def on_ask_changed(self, identity_id: int, old_ask: int, new_ask: int) -> MarketAggregate:
        """Apply an ask change for a node."""
        if new_ask == 0:
            raise ZeroAsk(f"Ask must be greater than zero (node {identity_id})")
        if new_ask < 0:
            raise ValueError(f"Ask cannot be negative: {new_ask}")
        with self._lock:
            current = self._get(identity_id)
            if current.ask != old_ask:
                self._fail(f"Stale ask snapshot for node {identity_id}: {old_ask} != {current.ask}")
            return self._apply(identity_id, current, NodeSnapshot(stake=current.stake, ask=new_ask))

    def set_stake(self, identity_id: int, new_stake: int) -> MarketAggregate:
        with self._lock:
            return self.on_stake_changed(identity_id, self._get(identity_id).stake, new_stake)

    def add_stake(self, identity_id: int, amount: int) -> MarketAggregate:
        with self._lock:
            current = self._get(identity_id).stake
            return self.on_stake_changed(identity_id, current, current + amount)

    def set_ask(self, identity_id: int, new_ask: int) -> MarketAggregate:
        with self._lock:
            return self.on_ask_changed(identity_id, self._get(identity_id).ask, new_ask)

    def _apply(self, identity_id: int, old: NodeSnapshot, new: NodeSnapshot) -> MarketAggregate:
        minimum = self.params.minimum_stake
        aggregate = self._aggregate.apply_delta(old, new, minimum)

        # Both writes happen together under the lock
        self._aggregate = aggregate
        self._nodes[identity_id] = new

        if old.is_active(minimum) != new.is_active(minimum):
            logger.debug(
                f"Node {identity_id} {'joined' if new.is_active(minimum) else 'left'} the active set"
            )

        was_above = old.stake >= minimum
        is_above = new.stake >= minimum
        if was_above != is_above:
            for callback in self._on_threshold_crossed:
                try:
                    callback(identity_id, is_above)
                except Exception as e:
                    logger.error(f"Threshold callback error for node {identity_id}: {e}")

        return aggregate

    def _get(self, identity_id: int) -> NodeSnapshot:
        snapshot = self._nodes.get(identity_id)
        if snapshot is None:
            raise ProfileDoesntExist(identity_id)
        return snapshot

    def _fail(self, message: str) -> None:
        logger.critical(message)
        raise InvariantViolation(message)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def aggregate(self) -> MarketAggregate:
        return self._aggregate

    @property
    def total_active_stake(self) -> int:
        return self._aggregate.total_active_stake

    @property
    def weighted_active_ask_sum(self) -> int:
        return self._aggregate.weighted_active_ask_sum

    def get_node(self, identity_id: int) -> NodeSnapshot:
        return self._get(identity_id)

    def get_node_stake(self, identity_id: int) -> int:
        return self._get(identity_id).stake

    def get_node_ask(self, identity_id: int) -> int:
        return self._get(identity_id).ask

    def is_active(self, identity_id: int) -> bool:
        return self._get(identity_id).is_active(self.params.minimum_stake)

    def active_node_ids(self) -> List[int]:
        minimum = self.params.minimum_stake
        return sorted(i for i, s in self._nodes.items() if s.is_active(minimum))

    def get_stake_weighted_average_ask(self) -> int:
        """Stake-weighted average ask; 0 when no stake is active."""
        return self._aggregate.average_ask()

    def get_ask_bounds(self) -> Tuple[int, int]:
        """(lower, upper) band around the weighted average ask."""
        average = self.get_stake_weighted_average_ask()
        return (
            average * self.params.ask_lower_bound_factor // SCALE18,
            average * self.params.ask_upper_bound_factor // SCALE18,
        )

    def recompute_aggregate(self) -> MarketAggregate:
        """Independent full recomputation, for audits."""
        with self._lock:
            total_stake = 0
            weighted_sum = 0
            for snapshot in self._nodes.values():
                stake, weighted = snapshot.contribution(self.params.minimum_stake)
                total_stake += stake
                weighted_sum += weighted
            return MarketAggregate(total_active_stake=total_stake, weighted_active_ask_sum=weighted_sum)

    def verify_aggregate(self) -> None:
        """Raise InvariantViolation if the running aggregate has drifted."""
        expected = self.recompute_aggregate()
        if expected != self._aggregate:
            self._fail(f"Market aggregate drift: running={self._aggregate} expected={expected}")
