"""
dkgincentives/protocol/proofs.py

Proof-of-possession and reward settlement.

Once an epoch's commit window closes, a challenge picks one chunk of the
agreement's content. Each of the top r0 committed nodes may prove, during
the proof window, that it holds that chunk by sending the chunk hash and a
Merkle path to the content root. A valid proof earns

    share = remaining_reward // (r0 * (epochs_number - epoch) - rewarded_in_epoch)

so every prover in an epoch gets the same amount to within one unit and a
fully proved agreement pays out exactly its funded amount.

Payouts are booked in the epoch pools against the agreement's own slice
of each epoch's funding. When a share is larger than what is left of that
slice (earlier epochs went unproved, or rounding), the agreement first
rolls forward its own unspent slices from earlier epochs and then releases
its own part of the shard's remainder carry.
"""

import hashlib
import logging
import secrets
import threading
import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, TYPE_CHECKING

from ..blockchain.merkle import MerkleTree, ProofStep
from ..config import ProtocolParameters
from ..errors import (
    AgreementExpired,
    ChallengeNotAvailable,
    InvalidProof,
    InvariantViolation,
    NodeAlreadyRewarded,
    NodeNotAwarded,
    ProofWindowClosed,
)

if TYPE_CHECKING:
    from .agreements import AgreementStore, ServiceAgreement
    from .commits import NeighborhoodCommitManager
    from .delegation import DelegationVault
    from .epochs import EpochPoolAccountant

logger = logging.getLogger("dkgincentives.protocol.proofs")


# ============================================================================
# DATA CLASSES
# ============================================================================

class ProofStatus(Enum):
    NOT_COMMITTED = "not_committed"
    COMMITTED = "committed"
    PROVED = "proved"
    EXPIRED = "expired"         # committed, window closed without a proof


@dataclass
class Challenge:
    """Chunk a node must prove for an agreement epoch."""
    agreement_id: str
    epoch: int
    chunk_index: int
    seed: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ProofReceipt:
    """Result of an accepted proof."""
    agreement_id: str
    epoch: int
    identity_id: int
    chunk_index: int
    reward: int
    remaining_reward: int
    pool_epoch: int
    agreement_settled: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def derive_chunk_index(seed: bytes, agreement_id: str, epoch: int, chunks_number: int) -> int:
    digest = hashlib.sha256(seed + bytes.fromhex(agreement_id) + epoch.to_bytes(32, "big")).digest()
    return int.from_bytes(digest, "big") % chunks_number


def default_beacon() -> bytes:
    return secrets.token_bytes(32)


# ============================================================================
# PROOF MANAGER
# ============================================================================

class ProofRewardManager:
    """
    Verifies proofs from ranked nodes and settles rewards.

    Usage:
        manager = ProofRewardManager(params, agreements, commits, pools, vault)
        challenge = manager.get_challenge(agreement_id, epoch)
        receipt = manager.send_proof(agreement_id, epoch, node, proof, chunk_hash)
    """

    def __init__(
        self,
        params: ProtocolParameters,
        agreements: "AgreementStore",
        commits: "NeighborhoodCommitManager",
        pools: "EpochPoolAccountant",
        vault: "DelegationVault",
        clock: Optional[Callable[[], float]] = None,
        beacon: Optional[Callable[[], bytes]] = None,
        lock: Optional[threading.RLock] = None,
    ):
        """
        Initialize ProofRewardManager.

        Args:
            params: Protocol parameters
            agreements: Agreement store
            commits: Commit ranking (who may prove)
            pools: Epoch pool accountant (payout ledger)
            vault: Delegation vault (reward credit)
            clock: Time source, unix seconds
            beacon: Randomness source drawn once per agreement epoch after
                the commit window has closed
            lock: Shared engine lock
        """
        self.params = params
        self.agreements = agreements
        self.commits = commits
        self.pools = pools
        self.vault = vault
        self._clock = clock or time.time
        self._beacon = beacon or default_beacon
        self._lock = lock or threading.RLock()

        self._seeds: Dict[Tuple[str, int], bytes] = {}

        # Callbacks
        self._on_proof: List[Callable[[ProofReceipt], None]] = []

        # Counters
        self.proofs_accepted = 0
        self.proofs_rejected = 0
        self.rewards_paid = 0

    def on_proof(self, callback: Callable[[ProofReceipt], None]) -> None:
        """Register callback for accepted proofs."""
        self._on_proof.append(callback)

    def _now(self) -> int:
        return int(self._clock())

    # ------------------------------------------------------------------
    # Windows / challenges
    # ------------------------------------------------------------------

    def is_proof_window_open(self, agreement_id: str, epoch: int) -> bool:
        agreement = self.agreements.get(agreement_id)
        if not agreement.is_epoch_in_range(epoch):
            return False
        window_open, window_close = agreement.proof_window(epoch, self.params.proof_window_duration_perc)
        return window_open <= self._now() < window_close

    def get_challenge(self, agreement_id: str, epoch: int) -> Challenge:
        """
        Challenged chunk for an agreement epoch.

        The seed is drawn on the first request after the commit window
        closes and reused afterwards.
        """
        with self._lock:
            agreement = self.agreements.get(agreement_id)
            if not agreement.is_epoch_in_range(epoch):
                raise AgreementExpired(
                    f"Agreement {agreement_id} has {agreement.epochs_number} epochs, got epoch {epoch}"
                )
            key = (agreement_id, epoch)
            seed = self._seeds.get(key)
            if seed is None:
                _, commit_close = agreement.commit_window(epoch, self.params.commit_window_duration_perc)
                if self._now() <= commit_close:
                    raise ChallengeNotAvailable(
                        f"Challenge for {agreement_id} epoch {epoch} available after {commit_close}"
                    )
                seed = self._beacon()
                self._seeds[key] = seed
            return Challenge(
                agreement_id=agreement_id,
                epoch=epoch,
                chunk_index=derive_chunk_index(seed, agreement_id, epoch, agreement.chunks_number),
                seed=seed.hex(),
            )

    # ------------------------------------------------------------------
    # Proofs
    # ------------------------------------------------------------------

    def send_proof(
        self,
        agreement_id: str,
        epoch: int,
        identity_id: int,
        merkle_proof: List[ProofStep],
        chunk_hash: str,
    ) -> ProofReceipt:
        """
        Verify a node's proof and pay its reward share.

        Raises:
            AgreementDoesntExist, AgreementExpired, ProofWindowClosed,
            NodeNotAwarded, NodeAlreadyRewarded, InvalidProof
        """
        with self._lock:
            try:
                agreement = self.agreements.get(agreement_id)
                if not agreement.is_epoch_in_range(epoch):
                    raise AgreementExpired(
                        f"Agreement {agreement_id} has {agreement.epochs_number} epochs, got epoch {epoch}"
                    )

                now = self._now()
                window_open, window_close = agreement.proof_window(epoch, self.params.proof_window_duration_perc)
                if not window_open <= now < window_close:
                    raise ProofWindowClosed(agreement_id, epoch, window_open, window_close, now)

                if not self.commits.is_awarded(agreement_id, epoch, identity_id):
                    raise NodeNotAwarded(
                        agreement_id, epoch, identity_id,
                        self.commits.get_rank(agreement_id, epoch, identity_id),
                    )

                if agreement.is_rewarded(epoch, identity_id):
                    logger.warning(f"Node {identity_id} already rewarded for {agreement_id}/{epoch}")
                    raise NodeAlreadyRewarded(agreement_id, epoch, identity_id)

                challenge = self.get_challenge(agreement_id, epoch)
                if not MerkleTree.verify_proof_at_index(
                    chunk_hash, agreement.merkle_root, merkle_proof,
                    challenge.chunk_index, agreement.chunks_number,
                ):
                    raise InvalidProof(agreement_id, epoch, identity_id, challenge.chunk_index)

                share = self.calculate_reward_share(agreement, epoch)
                plan = self._plan_payout(agreement, epoch, share)
            except InvariantViolation:
                raise
            except Exception:
                self.proofs_rejected += 1
                raise

            receipt = self._settle(agreement, epoch, identity_id, share, plan, challenge.chunk_index)

        for callback in self._on_proof:
            try:
                callback(receipt)
            except Exception as e:
                logger.error(f"Proof callback error: {e}")

        return receipt

    def calculate_reward_share(self, agreement: "ServiceAgreement", epoch: int) -> int:
        """Equal split of the remaining reward over the provers still expected."""
        expected_provers = self.params.r0 * (agreement.epochs_number - epoch) - agreement.rewarded_in_epoch(epoch)
        if expected_provers <= 0:
            raise InvariantViolation(
                f"No provers expected for {agreement.agreement_id} epoch {epoch}"
            )
        return agreement.remaining_reward // expected_provers

    def _plan_payout(self, agreement: "ServiceAgreement", epoch: int, share: int) -> List[Tuple[str, int, int]]:
        """
        Funding moves needed before share can be paid from this epoch.

        Returns:
            ("roll", from_epoch, amount) and ("release", epoch, amount) steps
        """
        shortfall = share - agreement.available_in_epoch(epoch)
        steps = []
        for earlier in range(epoch):
            if shortfall <= 0:
                break
            spare = agreement.available_in_epoch(earlier)
            if spare > 0:
                take = min(spare, shortfall)
                steps.append(("roll", earlier, take))
                shortfall -= take
        if shortfall > 0 and agreement.remainder_left > 0:
            take = min(agreement.remainder_left, shortfall)
            steps.append(("release", epoch, take))
            shortfall -= take
        if shortfall > 0:
            message = (
                f"Agreement {agreement.agreement_id} cannot fund share {share} in epoch {epoch}: "
                f"short by {shortfall}"
            )
            logger.critical(message)
            raise InvariantViolation(message)
        return steps

    def _settle(
        self,
        agreement: "ServiceAgreement",
        epoch: int,
        identity_id: int,
        share: int,
        plan: List[Tuple[str, int, int]],
        chunk_index: int,
    ) -> ProofReceipt:
        shard = agreement.shard_id
        pool_epoch = agreement.pool_epoch(epoch)

        for action, source_epoch, amount in plan:
            if action == "roll":
                agreement.available[source_epoch] = agreement.available_in_epoch(source_epoch) - amount
                self.pools.move_epoch_tokens(shard, agreement.pool_epoch(source_epoch), pool_epoch, amount)
            else:
                agreement.remainder_released += amount
                self.pools.release_remainder(shard, pool_epoch, amount)
            agreement.available[epoch] = agreement.available_in_epoch(epoch) + amount

        agreement.available[epoch] = agreement.available_in_epoch(epoch) - share
        self.pools.pay_out_epoch_tokens(shard, pool_epoch, identity_id, share)
        self.vault.credit_reward(identity_id, share)

        agreement.remaining_reward -= share
        agreement.rewarded_nodes[epoch].add(identity_id)
        agreement.epoch_rewards[epoch][identity_id] = share
        self.proofs_accepted += 1
        self.rewards_paid += share

        settled = agreement.remaining_reward == 0
        if settled:
            self.agreements.delete(agreement.agreement_id)
            self.commits.clear_agreement(agreement.agreement_id)
            self.clear_agreement(agreement.agreement_id)
            logger.info(f"Agreement {agreement.agreement_id} fully paid out")

        logger.debug(
            f"Node {identity_id} proved {agreement.agreement_id}/{epoch} chunk {chunk_index}: "
            f"reward {share}, remaining {agreement.remaining_reward}"
        )
        return ProofReceipt(
            agreement_id=agreement.agreement_id,
            epoch=epoch,
            identity_id=identity_id,
            chunk_index=chunk_index,
            reward=share,
            remaining_reward=agreement.remaining_reward,
            pool_epoch=pool_epoch,
            agreement_settled=settled,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_proof_status(self, agreement_id: str, epoch: int, identity_id: int) -> ProofStatus:
        agreement = self.agreements.get(agreement_id)
        if agreement.is_rewarded(epoch, identity_id):
            return ProofStatus.PROVED
        if not self.commits.has_committed(agreement_id, epoch, identity_id):
            return ProofStatus.NOT_COMMITTED
        _, window_close = agreement.proof_window(epoch, self.params.proof_window_duration_perc)
        if self._now() >= window_close:
            return ProofStatus.EXPIRED
        return ProofStatus.COMMITTED

    def get_epoch_rewards(self, agreement_id: str, epoch: int) -> Dict[int, int]:
        """identity_id -> reward paid for one agreement epoch."""
        return dict(self.agreements.get(agreement_id).epoch_rewards.get(epoch, {}))

    def clear_agreement(self, agreement_id: str) -> None:
        with self._lock:
            for key in [k for k in self._seeds if k[0] == agreement_id]:
                del self._seeds[key]
