"""
dkgincentives/protocol/epochs.py

Epoch-range token pool accounting.

A funding event spreads an amount evenly over an inclusive epoch range:
every epoch gets amount // n and the indivisible rest goes to a per-shard
remainder carry. Overlapping ranges add up per epoch.

Storage is a difference array per shard plus a finalization cursor:
funding a range of future epochs is two dictionary writes no matter how
long the range is, and epochs at or below the cursor hold their final
pool value directly. Diff keys are kept sorted, so a pool query only
visits the keys at or before the queried epoch and a range query sweeps
the keys inside the range once.

Remainder policy: the carry is never paid out implicitly. It stays on the
shard until release_remainder() moves an explicit amount into a specific
epoch's pool, after which it is distributable like any other pool tokens.

Also tracks the per-epoch "produced knowledge value" statistic, which
shares the epoch-keyed layout but none of the pool logic.
"""

import bisect
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, TYPE_CHECKING

from ..config import SCALE18
from ..errors import InvariantViolation

if TYPE_CHECKING:
    from ..chronos import Chronos

logger = logging.getLogger("dkgincentives.protocol.epochs")


# ============================================================================
# SHARD LEDGER
# ============================================================================

@dataclass
class ShardLedger:
    """Pool state for one shard."""
    diff: Dict[int, int] = field(default_factory=dict)
    diff_epochs: List[int] = field(default_factory=list)      # sorted keys of diff
    finalized: Dict[int, int] = field(default_factory=dict)
    last_finalized_epoch: int = 0
    running_pool: int = 0               # pool value at last_finalized_epoch
    accumulated_remainder: int = 0
    total_funded: int = 0
    first_funded_epoch: Optional[int] = None
    last_funded_epoch: Optional[int] = None
    distributed: Dict[int, int] = field(default_factory=lambda: defaultdict(int))
    node_paid_out: Dict[Tuple[int, int], int] = field(default_factory=lambda: defaultdict(int))
    node_total_paid_out: Dict[int, int] = field(default_factory=lambda: defaultdict(int))

    def pool(self, epoch: int) -> int:
        if epoch <= self.last_finalized_epoch:
            return self.finalized.get(epoch, 0)
        # Every diff key lies beyond the finalization cursor
        end = bisect.bisect_right(self.diff_epochs, epoch)
        return self.running_pool + sum(self.diff[key] for key in self.diff_epochs[:end])

    def range_pool(self, start: int, end: int) -> int:
        """Sum of pools over [start, end] in one sweep over the diff keys."""
        last = self.last_finalized_epoch
        total = sum(self.finalized.get(epoch, 0) for epoch in range(start, min(end, last) + 1))

        sweep_start = max(start, last + 1)
        if sweep_start > end:
            return total

        value = self.pool(sweep_start)
        previous = sweep_start
        low = bisect.bisect_right(self.diff_epochs, sweep_start)
        high = bisect.bisect_right(self.diff_epochs, end)
        for key in self.diff_epochs[low:high]:
            total += value * (key - previous)
            value += self.diff[key]
            previous = key
        return total + value * (end + 1 - previous)

    def _add_diff(self, epoch: int, delta: int) -> None:
        if epoch not in self.diff:
            bisect.insort(self.diff_epochs, epoch)
            self.diff[epoch] = 0
        self.diff[epoch] += delta

    def add_to_epochs(self, start: int, end: int, amount: int) -> None:
        """Add amount to every epoch in [start, end]."""
        if amount == 0:
            return
        last = self.last_finalized_epoch

        # Already-finalized epochs are written directly
        for epoch in range(start, min(end, last) + 1):
            self.finalized[epoch] = self.finalized.get(epoch, 0) + amount
        if start > last:
            self._add_diff(start, amount)
            self._add_diff(end + 1, -amount)
        elif end >= last:
            # Range covers the cursor epoch; later epochs drop it after end
            self.running_pool += amount
            self._add_diff(end + 1, -amount)

    def finalize(self, up_to: int) -> None:
        while self.last_finalized_epoch < up_to:
            epoch = self.last_finalized_epoch + 1
            if self.diff_epochs and self.diff_epochs[0] == epoch:
                self.diff_epochs.pop(0)
                self.running_pool += self.diff.pop(epoch)
            if self.running_pool:
                self.finalized[epoch] = self.running_pool
            self.last_finalized_epoch = epoch

    def track_extent(self, start: int, end: int) -> None:
        if self.first_funded_epoch is None or start < self.first_funded_epoch:
            self.first_funded_epoch = start
        if self.last_funded_epoch is None or end > self.last_funded_epoch:
            self.last_funded_epoch = end


# ============================================================================
# ACCOUNTANT
# ============================================================================

class EpochPoolAccountant:
    """
    Per-shard, per-epoch funded pools and payout ledger.

    Invariant (checked on every write): distributed(shard, epoch) never
    exceeds pool(shard, epoch). A violation raises InvariantViolation.

    Usage:
        pools = EpochPoolAccountant(chronos)
        pools.add_tokens_to_epoch_range(1, 5, 9, 1000)
        pools.get_epoch_pool(1, 5)          # 200
        pools.pay_out_epoch_tokens(1, 5, node_id, 150)
    """

    def __init__(
        self,
        chronos: Optional["Chronos"] = None,
        lock: Optional[threading.RLock] = None,
    ):
        self.chronos = chronos
        self._lock = lock or threading.RLock()
        self._shards: Dict[int, ShardLedger] = {}

        # Knowledge value statistic (epoch-keyed, shard-independent)
        self._node_epoch_knowledge: Dict[Tuple[int, int], int] = defaultdict(int)
        self._epoch_knowledge: Dict[int, int] = defaultdict(int)
        self._epoch_node_max_knowledge: Dict[int, int] = defaultdict(int)

    def _ledger(self, shard_id: int) -> ShardLedger:
        ledger = self._shards.get(shard_id)
        if ledger is None:
            ledger = ShardLedger()
            self._shards[shard_id] = ledger
        return ledger

    def _violation(self, message: str) -> None:
        logger.critical(message)
        raise InvariantViolation(message)

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    def add_tokens_to_epoch_range(self, shard_id: int, start_epoch: int, end_epoch: int, amount: int) -> int:
        """
        Spread amount evenly over [start_epoch, end_epoch].

        Returns:
            The per-epoch amount; the remainder goes to the shard carry
        """
        if start_epoch > end_epoch:
            raise ValueError(f"Invalid epoch range: {start_epoch} > {end_epoch}")
        if start_epoch < 1:
            raise ValueError(f"Epochs start at 1, got {start_epoch}")
        if amount < 0:
            raise ValueError(f"Amount cannot be negative: {amount}")

        epoch_count = end_epoch - start_epoch + 1
        per_epoch = amount // epoch_count
        remainder = amount - per_epoch * epoch_count

        with self._lock:
            ledger = self._ledger(shard_id)
            ledger.add_to_epochs(start_epoch, end_epoch, per_epoch)
            ledger.accumulated_remainder += remainder
            ledger.total_funded += amount
            ledger.track_extent(start_epoch, end_epoch)

        logger.debug(
            f"Funded shard {shard_id} epochs {start_epoch}..{end_epoch} with {amount} "
            f"({per_epoch}/epoch, remainder {remainder})"
        )
        return per_epoch

    def release_remainder(self, shard_id: int, epoch: int, amount: int) -> None:
        """Move amount from the shard's remainder carry into one epoch's pool."""
        if amount <= 0:
            raise ValueError(f"Release amount must be positive: {amount}")
        with self._lock:
            ledger = self._ledger(shard_id)
            if amount > ledger.accumulated_remainder:
                self._violation(
                    f"Release of {amount} exceeds shard {shard_id} remainder {ledger.accumulated_remainder}"
                )
            ledger.accumulated_remainder -= amount
            ledger.add_to_epochs(epoch, epoch, amount)
            ledger.track_extent(epoch, epoch)
        logger.debug(f"Released {amount} from shard {shard_id} remainder into epoch {epoch}")

    def move_epoch_tokens(self, shard_id: int, from_epoch: int, to_epoch: int, amount: int) -> None:
        """Move undistributed tokens from one epoch's pool to another's."""
        if amount <= 0:
            raise ValueError(f"Move amount must be positive: {amount}")
        with self._lock:
            ledger = self._ledger(shard_id)
            undistributed = ledger.pool(from_epoch) - ledger.distributed.get(from_epoch, 0)
            if amount > undistributed:
                self._violation(
                    f"Cannot move {amount} out of shard {shard_id} epoch {from_epoch}: "
                    f"only {undistributed} undistributed"
                )
            ledger.add_to_epochs(from_epoch, from_epoch, -amount)
            ledger.add_to_epochs(to_epoch, to_epoch, amount)
            ledger.track_extent(to_epoch, to_epoch)
        logger.debug(f"Moved {amount} in shard {shard_id} from epoch {from_epoch} to {to_epoch}")

    def finalize_epochs(self, shard_id: int, up_to_epoch: int) -> None:
        """Fold diff entries up to and including up_to_epoch into final pools."""
        with self._lock:
            self._ledger(shard_id).finalize(up_to_epoch)

    def finalize_all(self, up_to_epoch: int) -> None:
        with self._lock:
            for ledger in self._shards.values():
                ledger.finalize(up_to_epoch)

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    def pay_out_epoch_tokens(self, shard_id: int, epoch: int, identity_id: int, amount: int) -> None:
        """
        Record a payout from an epoch's pool.

        Raises:
            InvariantViolation: distributed would exceed the pool
        """
        if amount < 0:
            raise ValueError(f"Payout cannot be negative: {amount}")
        with self._lock:
            ledger = self._ledger(shard_id)
            distributed = ledger.distributed.get(epoch, 0) + amount
            pool = ledger.pool(epoch)
            if distributed > pool:
                self._violation(
                    f"Shard {shard_id} epoch {epoch}: distributed {distributed} exceeds pool {pool}"
                )
            ledger.distributed[epoch] = distributed
            ledger.node_paid_out[(identity_id, epoch)] += amount
            ledger.node_total_paid_out[identity_id] += amount
        logger.debug(f"Paid {amount} to node {identity_id} from shard {shard_id} epoch {epoch}")

    # ------------------------------------------------------------------
    # Pool queries
    # ------------------------------------------------------------------

    def get_epoch_pool(self, shard_id: int, epoch: int) -> int:
        ledger = self._shards.get(shard_id)
        return ledger.pool(epoch) if ledger else 0

    def get_epoch_range_pool(self, shard_id: int, start_epoch: int, end_epoch: int) -> int:
        if start_epoch > end_epoch:
            raise ValueError(f"Invalid epoch range: {start_epoch} > {end_epoch}")
        ledger = self._shards.get(shard_id)
        if ledger is None:
            return 0
        return ledger.range_pool(start_epoch, end_epoch)

    def get_accumulated_remainder(self, shard_id: int) -> int:
        ledger = self._shards.get(shard_id)
        return ledger.accumulated_remainder if ledger else 0

    def get_epoch_distributed(self, shard_id: int, epoch: int) -> int:
        ledger = self._shards.get(shard_id)
        return ledger.distributed.get(epoch, 0) if ledger else 0

    def get_epoch_undistributed(self, shard_id: int, epoch: int) -> int:
        return self.get_epoch_pool(shard_id, epoch) - self.get_epoch_distributed(shard_id, epoch)

    def get_node_epoch_paid_out(self, shard_id: int, identity_id: int, epoch: int) -> int:
        ledger = self._shards.get(shard_id)
        return ledger.node_paid_out.get((identity_id, epoch), 0) if ledger else 0

    def get_node_paid_out(self, shard_id: int, identity_id: int) -> int:
        ledger = self._shards.get(shard_id)
        return ledger.node_total_paid_out.get(identity_id, 0) if ledger else 0

    def get_total_funded(self, shard_id: int) -> int:
        ledger = self._shards.get(shard_id)
        return ledger.total_funded if ledger else 0

    def get_last_finalized_epoch(self, shard_id: int) -> int:
        ledger = self._shards.get(shard_id)
        return ledger.last_finalized_epoch if ledger else 0

    def shard_ids(self):
        return sorted(self._shards)

    def verify_conservation(self, shard_id: int) -> bool:
        """Sum of every epoch pool plus the remainder equals the total funded."""
        ledger = self._shards.get(shard_id)
        if ledger is None or ledger.first_funded_epoch is None:
            return True
        pools = self.get_epoch_range_pool(shard_id, ledger.first_funded_epoch, ledger.last_funded_epoch)
        return pools + ledger.accumulated_remainder == ledger.total_funded

    # ------------------------------------------------------------------
    # Current / previous epoch wrappers
    # ------------------------------------------------------------------

    def _current_epoch(self) -> int:
        if self.chronos is None:
            raise RuntimeError("No Chronos configured for current-epoch queries")
        return self.chronos.get_current_epoch()

    def get_current_epoch_pool(self, shard_id: int) -> int:
        return self.get_epoch_pool(shard_id, self._current_epoch())

    def get_previous_epoch_pool(self, shard_id: int) -> int:
        epoch = self._current_epoch()
        if epoch <= 1:
            return 0
        return self.get_epoch_pool(shard_id, epoch - 1)

    # ------------------------------------------------------------------
    # Produced knowledge value
    # ------------------------------------------------------------------

    def add_epoch_produced_knowledge_value(self, identity_id: int, epoch: int, value: int) -> None:
        if value < 0:
            raise ValueError(f"Knowledge value cannot be negative: {value}")
        with self._lock:
            node_value = self._node_epoch_knowledge[(identity_id, epoch)] + value
            self._node_epoch_knowledge[(identity_id, epoch)] = node_value
            self._epoch_knowledge[epoch] += value
            if node_value > self._epoch_node_max_knowledge[epoch]:
                self._epoch_node_max_knowledge[epoch] = node_value

    def get_node_epoch_produced_knowledge_value(self, identity_id: int, epoch: int) -> int:
        return self._node_epoch_knowledge.get((identity_id, epoch), 0)

    def get_epoch_produced_knowledge_value(self, epoch: int) -> int:
        return self._epoch_knowledge.get(epoch, 0)

    def get_epoch_node_max_produced_knowledge_value(self, epoch: int) -> int:
        return self._epoch_node_max_knowledge.get(epoch, 0)

    def get_node_epoch_produced_knowledge_value_percentage(self, identity_id: int, epoch: int) -> int:
        """Node's share of the epoch total, scaled by 1e18; 0 when the total is 0."""
        total = self.get_epoch_produced_knowledge_value(epoch)
        if total == 0:
            return 0
        return self.get_node_epoch_produced_knowledge_value(identity_id, epoch) * SCALE18 // total

    def add_current_epoch_produced_knowledge_value(self, identity_id: int, value: int) -> None:
        self.add_epoch_produced_knowledge_value(identity_id, self._current_epoch(), value)

    def get_node_current_epoch_produced_knowledge_value(self, identity_id: int) -> int:
        return self.get_node_epoch_produced_knowledge_value(identity_id, self._current_epoch())

    def get_node_previous_epoch_produced_knowledge_value(self, identity_id: int) -> int:
        epoch = self._current_epoch()
        if epoch <= 1:
            return 0
        return self.get_node_epoch_produced_knowledge_value(identity_id, epoch - 1)

    def get_current_epoch_produced_knowledge_value(self) -> int:
        return self.get_epoch_produced_knowledge_value(self._current_epoch())

    def get_previous_epoch_produced_knowledge_value(self) -> int:
        epoch = self._current_epoch()
        if epoch <= 1:
            return 0
        return self.get_epoch_produced_knowledge_value(epoch - 1)

    def get_node_current_epoch_produced_knowledge_value_percentage(self, identity_id: int) -> int:
        return self.get_node_epoch_produced_knowledge_value_percentage(identity_id, self._current_epoch())

    def get_node_previous_epoch_produced_knowledge_value_percentage(self, identity_id: int) -> int:
        epoch = self._current_epoch()
        if epoch <= 1:
            return 0
        return self.get_node_epoch_produced_knowledge_value_percentage(identity_id, epoch - 1)
